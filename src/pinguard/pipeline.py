"""
Refresh pipeline — fetch a policy document and hand it to the store.

  source.fetch(etag of the trusted document)
    → not modified?  store.confirm()        (reset staleness clock)
    → new document?  store.refresh(content) (parse → validate → swap)

Each stage returns Result[T]; a failed fetch or a rejected document
short-circuits and leaves the active policy untouched. This runs on the
scheduler thread or an API worker thread, never on the evaluation path.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from pinguard.domain.models import ConfigTransitionEvent, Policy, PolicyFetch, TransitionKind
from pinguard.domain.ports import PolicySource, TelemetrySink
from pinguard.railway import Result
from pinguard.store import ConfigurationStore
from pinguard.telemetry import emit_safely

log = structlog.get_logger()


def _apply(fetched: PolicyFetch, store: ConfigurationStore) -> Result[Policy]:
    if fetched.not_modified or fetched.content is None:
        return store.confirm()
    return store.refresh(fetched.content, etag=fetched.etag)


def run_refresh(source: PolicySource, store: ConfigurationStore) -> Result[Policy]:
    """
    Execute one refresh cycle.

    Returns Result[Policy] with the active policy on success, or the failure
    from the first failing stage (fetch or ingestion).
    """
    return (
        source.fetch(store.snapshot().etag)
        .flat_map(lambda fetched: _apply(fetched, store))
        .peek(lambda policy: log.info("refresh.completed", version=policy.version))
        .peek_failure(
            lambda error: log.warning("refresh.failed", error_code=error.code.value, error=error.message)
        )
    )


def check_staleness(
    store: ConfigurationStore,
    max_age: timedelta,
    telemetry: TelemetrySink | None = None,
    now: datetime | None = None,
) -> bool:
    """
    Report whether the store is stale; if so, emit a REFRESH_NEEDED signal.

    Returns True when a refresh is needed.
    """
    if not store.is_stale(now, max_age):
        return False

    age = store.policy_age(now)
    log.warning(
        "refresh.needed",
        version=store.current().version,
        age_seconds=int(age.total_seconds()) if age is not None else None,
        max_age_seconds=int(max_age.total_seconds()),
    )
    emit_safely(
        telemetry,
        ConfigTransitionEvent(
            kind=TransitionKind.REFRESH_NEEDED,
            policy_version=store.current().version,
            message="Policy older than the configured maximum age",
        ),
    )
    return True
