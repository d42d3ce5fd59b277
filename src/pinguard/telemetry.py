"""
Telemetry sinks — implementations of the TelemetrySink port.

  StructlogTelemetrySink   → one structured log line per event
  BackgroundTelemetrySink  → bounded queue + worker thread in front of any sink
  NullTelemetrySink        → discards everything

The evaluator calls `emit_safely`, so a misbehaving sink can cost a log line
but never a connection decision.
"""

from __future__ import annotations

import queue
import threading

import structlog

from pinguard.domain.models import (
    ConfigTransitionEvent,
    EvaluationEvent,
    TelemetryEvent,
    TransitionKind,
    Verdict,
)
from pinguard.domain.ports import TelemetrySink

log = structlog.get_logger()

_STOP = object()


def emit_safely(sink: TelemetrySink | None, event: TelemetryEvent) -> None:
    """Fire-and-forget emit: sink failures are logged, never propagated."""
    if sink is None:
        return
    try:
        sink.emit(event)
    except Exception as e:
        log.warning("telemetry.emit_failed", event_type=type(event).__name__, error=str(e))


class NullTelemetrySink:
    def emit(self, event: TelemetryEvent) -> None:
        return None


class StructlogTelemetrySink:
    """
    Write each event as a structured log line.

    Enforced mismatches and rejected documents log at WARNING so they stand
    out in the stream; everything else logs at INFO.
    """

    def __init__(self) -> None:
        self._log = structlog.get_logger().bind(channel="telemetry")

    def emit(self, event: TelemetryEvent) -> None:
        fields = event.as_dict()
        fields.pop("type")
        match event:
            case EvaluationEvent(verdict=Verdict.PIN_MISMATCH, enforced=True):
                self._log.warning("telemetry.evaluation", **fields)
            case EvaluationEvent():
                self._log.info("telemetry.evaluation", **fields)
            case ConfigTransitionEvent(kind=TransitionKind.REJECTED | TransitionKind.REFRESH_NEEDED):
                self._log.warning("telemetry.config_transition", **fields)
            case _:
                self._log.info("telemetry.config_transition", **fields)


class BackgroundTelemetrySink:
    """
    Decouple the caller from a slow sink.

    `emit` is a non-blocking enqueue; a daemon worker forwards events to the
    delegate. When the queue is full the event is dropped and counted rather
    than stalling a handshake.
    """

    def __init__(self, delegate: TelemetrySink, maxsize: int = 1024) -> None:
        self._delegate = delegate
        self._queue: queue.Queue[object] = queue.Queue(maxsize=maxsize)
        self._dropped = 0
        self._dropped_lock = threading.Lock()
        self._worker = threading.Thread(
            target=self._drain,
            name="pinguard-telemetry",
            daemon=True,
        )
        self._worker.start()

    @property
    def dropped(self) -> int:
        return self._dropped

    def emit(self, event: TelemetryEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1
                dropped = self._dropped
            if dropped == 1 or dropped % 1000 == 0:
                log.warning("telemetry.queue_full", dropped=dropped)

    def flush(self, timeout: float | None = None) -> None:
        """Block until every queued event has been handed to the delegate."""
        if timeout is None:
            self._queue.join()
            return
        with self._queue.all_tasks_done:
            self._queue.all_tasks_done.wait_for(
                lambda: self._queue.unfinished_tasks == 0,
                timeout=timeout,
            )

    def close(self, timeout: float = 5.0) -> None:
        """Drain what is queued, then stop the worker. Never raises."""
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            log.warning("telemetry.close_timeout", queued=self._queue.qsize(), timeout_seconds=timeout)
            return
        self._worker.join(timeout=timeout)
        if self._worker.is_alive():
            log.warning("telemetry.worker_timeout", timeout_seconds=timeout)

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._delegate.emit(item)  # type: ignore[arg-type]
            except Exception as e:
                log.warning("telemetry.delegate_failed", error=str(e))
            finally:
                self._queue.task_done()
