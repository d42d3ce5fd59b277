"""
Configuration store — owns the active / last-known-good policy pair.

Concurrency model: single writer, many lock-free readers.

  - The whole state lives in one immutable StoreSnapshot.
  - `current()` is a plain attribute read of that reference; it never takes
    a lock, so an evaluation never waits on a refresh.
  - Writers (`refresh`, `confirm`, `rollback`) serialize on a mutex, do their
    parse/validate work, then publish a new snapshot with a single reference
    assignment. A reader either sees the old snapshot or the new one.

A failed refresh leaves the snapshot untouched: the store never adopts a
broken policy. Before the first successful refresh the active policy is
`Policy.disabled()`, which pins nothing.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog

from pinguard.domain.models import ConfigTransitionEvent, Policy, TransitionKind
from pinguard.domain.ports import TelemetrySink
from pinguard.policy import parse_policy
from pinguard.railway import ConfigError, ErrorCode, Result
from pinguard.telemetry import emit_safely

log = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(UTC)


def _not_older(policy: Policy, previous: StoreSnapshot) -> Result[Policy]:
    """Integer versions only move forward once a policy has been applied."""
    active = previous.active.version
    if previous.last_refresh is None or not (isinstance(policy.version, int) and isinstance(active, int)):
        return Result.success(policy)
    if policy.version < active:
        return Result.failure(
            ErrorCode.INVALID_VERSION,
            f"Policy version {policy.version} is older than the active version {active}",
        )
    return Result.success(policy)


@dataclass(frozen=True, slots=True)
class StoreSnapshot:
    active: Policy
    last_known_good: Policy | None
    last_refresh: datetime | None
    etag: str | None = None


class ConfigurationStore:
    """
    Holds the policy every evaluation reads.

    Inject one instance wherever evaluation happens; there is no module-level
    singleton, so tests build a store with exactly the policy they need.
    """

    def __init__(
        self,
        telemetry: TelemetrySink | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._telemetry = telemetry
        self._clock = clock
        self._write_lock = threading.Lock()
        self._snapshot = StoreSnapshot(
            active=Policy.disabled(),
            last_known_good=None,
            last_refresh=None,
        )

    # ──────────────────────── Readers (lock-free) ────────────────────────

    def current(self) -> Policy:
        return self._snapshot.active

    def snapshot(self) -> StoreSnapshot:
        return self._snapshot

    def last_known_good(self) -> Policy | None:
        return self._snapshot.last_known_good

    @property
    def last_refresh(self) -> datetime | None:
        return self._snapshot.last_refresh

    def policy_age(self, now: datetime | None = None) -> timedelta | None:
        last = self._snapshot.last_refresh
        if last is None:
            return None
        return (now or self._clock()) - last

    def is_stale(self, now: datetime | None = None, max_age: timedelta = timedelta(days=1)) -> bool:
        """
        True when the policy is older than `max_age`, or was never refreshed.

        Staleness only reports; it never swaps the policy by itself.
        """
        age = self.policy_age(now)
        return age is None or age > max_age

    # ──────────────────────── Writers (serialized) ────────────────────────

    def refresh(self, raw: bytes | str, etag: str | None = None) -> Result[Policy]:
        """
        Parse, validate and — only on success — atomically adopt `raw`.

        On success: active := new, last_known_good := previous active,
        last_refresh := now. On failure the store is unchanged and the
        ConfigError is returned for the caller to log or alert on.
        """
        with self._write_lock:
            previous = self._snapshot
            return (
                parse_policy(raw)
                .flat_map(lambda policy: _not_older(policy, previous))
                .peek(lambda policy: self._adopt(policy, previous, etag))
                .peek_failure(lambda error: self._reject(error, previous))
            )

    def confirm(self) -> Result[Policy]:
        """The source reports the document is unchanged: reset the staleness clock."""
        with self._write_lock:
            previous = self._snapshot
            if previous.last_refresh is None:
                return Result.failure(
                    ErrorCode.NOT_FOUND,
                    "Cannot confirm freshness before a policy has been applied",
                )
            self._snapshot = StoreSnapshot(
                active=previous.active,
                last_known_good=previous.last_known_good,
                last_refresh=self._clock(),
                etag=previous.etag,
            )
            log.debug("store.policy_confirmed", version=previous.active.version)
            emit_safely(
                self._telemetry,
                ConfigTransitionEvent(kind=TransitionKind.CONFIRMED, policy_version=previous.active.version),
            )
            return Result.success(previous.active)

    def rollback(self) -> Result[Policy]:
        """Re-activate the last-known-good policy (operator escape hatch)."""
        with self._write_lock:
            previous = self._snapshot
            if previous.last_known_good is None:
                return Result.failure(ErrorCode.NOT_FOUND, "No last-known-good policy to roll back to")
            restored = previous.last_known_good
            self._snapshot = StoreSnapshot(
                active=restored,
                last_known_good=None,
                last_refresh=previous.last_refresh,
            )
            log.warning(
                "store.policy_rolled_back",
                version=restored.version,
                previous_version=previous.active.version,
            )
            emit_safely(
                self._telemetry,
                ConfigTransitionEvent(
                    kind=TransitionKind.ROLLED_BACK,
                    policy_version=restored.version,
                    previous_version=previous.active.version,
                ),
            )
            return Result.success(restored)

    # ──────────────────────── Internals ────────────────────────

    def _adopt(self, policy: Policy, previous: StoreSnapshot, etag: str | None) -> None:
        self._snapshot = StoreSnapshot(
            active=policy,
            last_known_good=previous.active,
            last_refresh=self._clock(),
            etag=etag,
        )
        log.info(
            "store.policy_applied",
            version=policy.version,
            previous_version=previous.active.version,
            enabled=policy.enabled,
            hosts=len(policy.hosts),
        )
        emit_safely(
            self._telemetry,
            ConfigTransitionEvent(
                kind=TransitionKind.APPLIED,
                policy_version=policy.version,
                previous_version=previous.active.version,
            ),
        )

    def _reject(self, error: ConfigError, previous: StoreSnapshot) -> None:
        log.warning(
            "store.policy_rejected",
            error_code=error.code.value,
            error=error.message,
            active_version=previous.active.version,
        )
        emit_safely(
            self._telemetry,
            ConfigTransitionEvent(
                kind=TransitionKind.REJECTED,
                policy_version=previous.active.version,
                error_code=error.code.value,
                message=error.message,
            ),
        )
