"""
Ports — Protocol-based interfaces for the engine's collaborators.

The engine itself never fetches, never logs to a backend, never touches a
socket. It talks to the outside world through these contracts:

  PolicySource   → delivers raw policy documents (HTTP poll, push, file...)
  TelemetrySink  → receives one event per evaluation and per config transition

Each port is a Protocol (structural typing): adapters satisfy the contract
by implementing the method, no inheritance required.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from pinguard.domain.models import PolicyFetch, TelemetryEvent
from pinguard.railway import Result


@runtime_checkable
class PolicySource(Protocol):
    """
    Port: fetch the latest policy document.

    `etag` identifies the document the store currently trusts; a source may
    use it to answer "not modified". Returns Result[PolicyFetch]. A failed or
    cancelled fetch is a Failure
    (FETCH_FAILED / TIMEOUT) and leaves the store untouched.
    """

    def fetch(self, etag: str | None = None) -> Result[PolicyFetch]: ...


@runtime_checkable
class TelemetrySink(Protocol):
    """
    Port: append-only structured event stream.

    `emit` must not block the caller: evaluation runs inside the TLS
    handshake's time budget. Batching, transport and storage are the
    sink's concern.
    """

    def emit(self, event: TelemetryEvent) -> None: ...
