"""
Application entry point — composition root.

Creates the concrete adapters from settings and wires them into an Engine:

  1. Configure structlog
  2. Load builtin pins (embedded pin file), if configured
  3. Create the telemetry sink (structlog behind a bounded background queue)
  4. Create the store and evaluator; seed the kill-switch policy if engaged
  5. Create the HTTP policy source, unless the kill switch disables refresh

This is the ONLY place where concrete adapters are instantiated.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import structlog

from pinguard import __version__
from pinguard.adapters.http_client import HttpPolicySource
from pinguard.config import AppSettings
from pinguard.domain.models import Policy
from pinguard.domain.pins import PinSet
from pinguard.domain.ports import PolicySource
from pinguard.evaluator import PinEvaluator
from pinguard.pipeline import check_staleness, run_refresh
from pinguard.policy import KILL_SWITCH_DOCUMENT, parse_builtin_pins
from pinguard.railway import ErrorCode, Result
from pinguard.store import ConfigurationStore
from pinguard.telemetry import BackgroundTelemetrySink, StructlogTelemetrySink


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for structured logging.

    Unknown level names fall back to INFO.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@dataclass
class Engine:
    """Everything a running service needs, wired once."""

    settings: AppSettings
    store: ConfigurationStore
    evaluator: PinEvaluator
    telemetry: BackgroundTelemetrySink
    source: PolicySource | None = None
    builtin_pins: dict[str, PinSet] = field(default_factory=dict)

    @property
    def max_policy_age(self) -> timedelta:
        return timedelta(seconds=self.settings.pinning.max_policy_age_seconds)

    def refresh(self) -> Result[Policy]:
        """Fetch-now: one refresh cycle against the configured source."""
        if self.settings.pinning.kill_switch:
            return Result.failure(ErrorCode.NOT_FOUND, "Kill switch engaged; remote refresh is disabled")
        if self.source is None:
            return Result.failure(ErrorCode.NOT_FOUND, "No policy source configured")
        return run_refresh(self.source, self.store)

    def check_staleness(self) -> bool:
        return check_staleness(self.store, self.max_policy_age, self.telemetry)

    def close(self) -> None:
        self.telemetry.close()


def _load_builtin_pins(path: Path | None) -> Result[dict[str, PinSet]]:
    if path is None:
        return Result.success({})
    return Result.from_computation(
        path.read_bytes,
        ErrorCode.NOT_FOUND,
        f"Cannot read builtin pins file {path}",
    ).flat_map(parse_builtin_pins)


def build_engine(settings: AppSettings) -> Result[Engine]:
    """
    Wire an Engine from settings.

    Fails when the builtin pins file is configured but unreadable or invalid;
    a client must not start with a silently empty fallback.
    """
    log = structlog.get_logger()

    def _wire(builtin_pins: dict[str, PinSet]) -> Result[Engine]:
        telemetry = BackgroundTelemetrySink(
            StructlogTelemetrySink(),
            maxsize=settings.pinning.telemetry_queue_size,
        )
        store = ConfigurationStore(telemetry=telemetry)
        evaluator = PinEvaluator(
            store,
            telemetry=telemetry,
            builtin_pins=builtin_pins,
            max_policy_age=timedelta(seconds=settings.pinning.max_policy_age_seconds),
        )

        source: PolicySource | None = None
        if settings.pinning.kill_switch:
            log.warning("app.kill_switch_engaged")
            seeded = store.refresh(KILL_SWITCH_DOCUMENT)
            if seeded.is_failure():
                telemetry.close()
                return Result.failure_from(seeded.error())
        elif settings.source.url:
            source = HttpPolicySource(
                url=settings.source.url,
                timeout=settings.source.timeout_seconds,
                headers=settings.source.headers,
            )
        else:
            log.warning("app.no_policy_source", message="Pinning stays disabled until a policy is delivered")

        return Result.success(
            Engine(
                settings=settings,
                store=store,
                evaluator=evaluator,
                telemetry=telemetry,
                source=source,
                builtin_pins=builtin_pins,
            )
        )

    return _load_builtin_pins(settings.pinning.builtin_pins_file).flat_map(_wire)


def main() -> None:
    """Validate settings and serve the ASGI app with uvicorn."""
    try:
        settings = AppSettings()
    except Exception as e:
        print(f"FATAL: Configuration error — {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level)
    log = structlog.get_logger()
    log.info(
        "app.starting",
        version=__version__,
        log_level=settings.log_level,
        cron=settings.scheduler.cron,
        source=settings.source.url,
        kill_switch=settings.pinning.kill_switch,
    )

    import uvicorn

    uvicorn.run(
        "pinguard.asgi:app",
        host=settings.host,
        port=settings.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
