"""
Pin evaluator — the per-handshake decision engine.

Stateless per call: each evaluation reads the store's current snapshot once
and decides from it alone.

  1. policy disabled                      → BYPASSED     GLOBAL_DISABLED
  2. client below min version             → BYPASSED     VERSION_GATED
  3. client outside global rollout        → BYPASSED     ROLLOUT_EXCLUDED
  4-5. host absent / disabled:
         builtin fallback for the host    → use builtin pins, go to 8
         otherwise                        → NOT_PINNED   HOST_NOT_CONFIGURED
  6. client outside host rollout          → NOT_PINNED   HOST_ROLLOUT_EXCLUDED
  7. use the host's pin set
  8. any observed hash pinned             → PIN_MATCH    MATCHED
  9. otherwise                            → PIN_MISMATCH NO_PIN_MATCH

Any position in the chain may match: the pin names a key, not a position.

A client version that does not parse cannot be compared, so step 2 is
skipped for it; every other step still runs.

A malformed request (no hostname or no usable hash) is never BYPASSED: it is
PIN_MISMATCH when steps 1-7 would pin the host and NOT_PINNED otherwise,
both with reason MALFORMED_REQUEST.

No I/O and no locks on this path. Telemetry is fire-and-forget.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from pinguard.domain.errors import PinMismatchError
from pinguard.domain.models import (
    EvaluationEvent,
    EvaluationRequest,
    EvaluationResult,
    FailMode,
    PinSource,
    Policy,
    Reason,
    SemVer,
    Verdict,
)
from pinguard.domain.pins import PinSet, PublicKeyHash, canonical_hostname
from pinguard.domain.ports import TelemetrySink
from pinguard.rollout import is_selected
from pinguard.store import ConfigurationStore, utcnow
from pinguard.telemetry import emit_safely

log = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class _Stop:
    """Steps 1-7 decided without looking at the observed hashes."""

    verdict: Verdict
    reason: Reason


@dataclass(frozen=True, slots=True)
class _Check:
    """Steps 1-7 produced a pin set; steps 8-9 decide."""

    pin_set: PinSet
    source: PinSource


type _Gate = _Stop | _Check


class PinEvaluator:
    """
    Decide PIN_MATCH / PIN_MISMATCH / NOT_PINNED / BYPASSED for one handshake.

    Args:
        store: The configuration store consulted on every call (never cached).
        telemetry: Receives exactly one EvaluationEvent per call.
        builtin_pins: Pins embedded in the client build, keyed by hostname.
        max_policy_age: When set and the store is older than this, hosts the
            policy's fallback rule lists use their builtin pins instead.
        clock: Time source, injectable for tests.
    """

    def __init__(
        self,
        store: ConfigurationStore,
        telemetry: TelemetrySink | None = None,
        builtin_pins: Mapping[str, PinSet] | None = None,
        max_policy_age: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._telemetry = telemetry
        self._builtin_pins = dict(builtin_pins or {})
        self._max_policy_age = max_policy_age
        self._clock = clock

    def evaluate_connection(
        self,
        hostname: str,
        observed_key_hashes: Sequence[PublicKeyHash | bytes],
        client_version: str,
        client_identifier: str,
    ) -> EvaluationResult:
        """Transport-facing entry point: one call per handshake."""
        return self.evaluate(
            EvaluationRequest(
                hostname=hostname,
                observed_key_hashes=observed_key_hashes,
                client_version=client_version,
                client_identifier=client_identifier,
            )
        )

    def evaluate(self, request: EvaluationRequest) -> EvaluationResult:
        policy = self._store.current()
        now = request.now or self._clock()

        hostname = canonical_hostname(request.hostname or "")
        observed = [h for h in map(PublicKeyHash.coerce, request.observed_key_hashes or ()) if h is not None]
        client_version = self._client_version(request.client_version, hostname)
        identifier = request.client_identifier or ""

        gate = self._gate(policy, hostname, client_version, identifier, now) if hostname else None
        if gate is None or not observed:
            result = self._malformed(policy, hostname, gate)
        else:
            result = self._decide(policy, gate, observed)

        self._report(hostname, observed, result)
        return result

    # ──────────────────────── Decision ────────────────────────

    @staticmethod
    def _client_version(text: str | None, hostname: str) -> SemVer | None:
        parsed = SemVer.parse(text or "")
        if parsed.is_failure():
            log.info("evaluator.version_unparseable", hostname=hostname, client_version=text)
            return None
        return parsed.value()

    def _gate(
        self,
        policy: Policy,
        hostname: str,
        client_version: SemVer | None,
        client_identifier: str,
        now: datetime,
    ) -> _Gate:
        """Steps 1-7."""
        if not policy.enabled:
            return _Stop(Verdict.BYPASSED, Reason.GLOBAL_DISABLED)
        if client_version is not None and client_version < policy.min_client_version:
            return _Stop(Verdict.BYPASSED, Reason.VERSION_GATED)
        if not is_selected(client_identifier, policy.global_rollout):
            return _Stop(Verdict.BYPASSED, Reason.ROLLOUT_EXCLUDED)
        return self._resolve_pin_set(policy, hostname, client_identifier, now)

    def _resolve_pin_set(
        self,
        policy: Policy,
        hostname: str,
        client_identifier: str,
        now: datetime,
    ) -> _Gate:
        """Steps 4-7: find the pin set that applies to `hostname`, if any."""
        builtin = self._builtin_for(policy, hostname)

        if builtin is not None and self._policy_is_stale(now):
            return _Check(builtin, PinSource.BUILTIN)

        host_policy = policy.host_policy(hostname)
        if host_policy is None or not host_policy.enabled:
            if builtin is not None:
                return _Check(builtin, PinSource.BUILTIN)
            return _Stop(Verdict.NOT_PINNED, Reason.HOST_NOT_CONFIGURED)

        if not is_selected(client_identifier, host_policy.rollout):
            return _Stop(Verdict.NOT_PINNED, Reason.HOST_ROLLOUT_EXCLUDED)

        return _Check(host_policy.pin_set, PinSource.REMOTE)

    def _decide(self, policy: Policy, gate: _Gate, observed: list[PublicKeyHash]) -> EvaluationResult:
        """Steps 8-9."""
        match gate:
            case _Stop(verdict, reason):
                return self._result(policy, verdict, reason)
            case _Check(pin_set, source):
                matched = pin_set.first_match(observed)
                if matched is not None:
                    return self._result(policy, Verdict.PIN_MATCH, Reason.MATCHED, matched=matched, source=source)
                return self._result(policy, Verdict.PIN_MISMATCH, Reason.NO_PIN_MATCH, source=source)
        raise TypeError(f"Unknown gate {gate!r}")

    def _builtin_for(self, policy: Policy, hostname: str) -> PinSet | None:
        fallback = policy.fallback
        if not fallback.use_builtin_pins or hostname not in fallback.builtin_hosts:
            return None
        pin_set = self._builtin_pins.get(hostname)
        if pin_set is None:
            log.warning("evaluator.builtin_pins_missing", hostname=hostname, policy_version=policy.version)
        return pin_set

    def _policy_is_stale(self, now: datetime) -> bool:
        if self._max_policy_age is None:
            return False
        return self._store.is_stale(now, self._max_policy_age)

    def _malformed(self, policy: Policy, hostname: str, gate: _Gate | None) -> EvaluationResult:
        """Fail closed: a pinned host with unusable input cannot prove a match."""
        log.warning("evaluator.malformed_request", hostname=hostname or None, pinned=isinstance(gate, _Check))
        match gate:
            case _Check(source=source):
                return self._result(policy, Verdict.PIN_MISMATCH, Reason.MALFORMED_REQUEST, source=source)
        return self._result(policy, Verdict.NOT_PINNED, Reason.MALFORMED_REQUEST)

    @staticmethod
    def _result(
        policy: Policy,
        verdict: Verdict,
        reason: Reason,
        matched: PublicKeyHash | None = None,
        source: PinSource = PinSource.NONE,
    ) -> EvaluationResult:
        enforced = not (verdict is Verdict.PIN_MISMATCH and policy.fail_mode is FailMode.OPEN)
        return EvaluationResult(
            verdict=verdict,
            reason=reason,
            policy_version=policy.version,
            matched_pin=matched,
            enforced=enforced,
            pin_source=source,
        )

    # ──────────────────────── Reporting ────────────────────────

    def _report(self, hostname: str, observed: list[PublicKeyHash], result: EvaluationResult) -> None:
        if result.verdict is Verdict.PIN_MISMATCH:
            log.warning(
                "evaluator.pin_mismatch",
                hostname=hostname,
                reason=result.reason.value,
                enforced=result.enforced,
                policy_version=result.policy_version,
            )
        emit_safely(
            self._telemetry,
            EvaluationEvent(
                hostname=hostname,
                verdict=result.verdict,
                reason=result.reason,
                policy_version=result.policy_version,
                observed_hash_prefix=observed[0].prefix() if observed else None,
                pin_source=result.pin_source,
                enforced=result.enforced,
            ),
        )


def raise_for_verdict(hostname: str, result: EvaluationResult) -> EvaluationResult:
    """
    Turn an enforced PIN_MISMATCH into PinMismatchError; pass anything else through.

        result = raise_for_verdict(host, evaluator.evaluate_connection(...))
    """
    if result.rejects_connection:
        raise PinMismatchError(hostname, result)
    return result
