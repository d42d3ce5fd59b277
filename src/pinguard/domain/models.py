"""
Domain models — immutable policy snapshot, evaluation inputs/outputs, telemetry events.

A Policy is built once by the configuration store from a validated document
and is never mutated afterwards; a refresh produces a new Policy and swaps
the reference. That immutability is what lets any number of evaluations read
a snapshot while a refresh is in flight.

All models are frozen dataclasses.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique
from functools import total_ordering
from types import MappingProxyType
from typing import Any

from pinguard.domain.pins import PinSet, PublicKeyHash
from pinguard.railway import ErrorCode, Result

# ─────────────────────── Enumerations ───────────────────────


@unique
class Verdict(Enum):
    PIN_MATCH = "PIN_MATCH"
    PIN_MISMATCH = "PIN_MISMATCH"
    NOT_PINNED = "NOT_PINNED"
    BYPASSED = "BYPASSED"


@unique
class Reason(Enum):
    GLOBAL_DISABLED = "GLOBAL_DISABLED"
    VERSION_GATED = "VERSION_GATED"
    ROLLOUT_EXCLUDED = "ROLLOUT_EXCLUDED"
    HOST_NOT_CONFIGURED = "HOST_NOT_CONFIGURED"
    HOST_ROLLOUT_EXCLUDED = "HOST_ROLLOUT_EXCLUDED"
    MATCHED = "MATCHED"
    NO_PIN_MATCH = "NO_PIN_MATCH"
    MALFORMED_REQUEST = "MALFORMED_REQUEST"


@unique
class PinSource(Enum):
    """Where the pin set used for a decision came from."""

    REMOTE = "REMOTE"
    BUILTIN = "BUILTIN"
    NONE = "NONE"


@unique
class RolloutSeed(Enum):
    """Which caller-supplied identifier buckets a client into a rollout."""

    DEVICE_ID = "device_id"
    USER_ID = "user_id"
    INSTALL_ID = "install_id"


@unique
class FailMode(Enum):
    """
    CLOSED: a mismatch rejects the connection (production).
    OPEN: a mismatch is reported but the connection proceeds (staging).
    """

    CLOSED = "closed"
    OPEN = "open"


@unique
class TransitionKind(Enum):
    APPLIED = "APPLIED"
    REJECTED = "REJECTED"
    CONFIRMED = "CONFIRMED"
    ROLLED_BACK = "ROLLED_BACK"
    REFRESH_NEEDED = "REFRESH_NEEDED"


# ─────────────────────── Semantic version ───────────────────────

_SEMVER = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)"
    r"(?:\.(?P<minor>0|[1-9]\d*))?"
    r"(?:\.(?P<patch>0|[1-9]\d*))?"
    r"(?:-(?P<pre>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)


@total_ordering
@dataclass(frozen=True, slots=True)
class SemVer:
    """
    Semantic version used for the minimum-client-version gate.

    Missing minor/patch default to 0 ("1.5" == "1.5.0"); a prerelease sorts
    below its release; build metadata is ignored.
    """

    major: int
    minor: int = 0
    patch: int = 0
    prerelease: tuple[str, ...] = ()

    @staticmethod
    def parse(text: str) -> Result[SemVer]:
        if not isinstance(text, str):
            return Result.failure(ErrorCode.INVALID_VERSION, f"Version must be a string, got {text!r}")
        m = _SEMVER.match(text.strip())
        if m is None:
            return Result.failure(ErrorCode.INVALID_VERSION, f"Unparseable version {text!r}")
        pre = m.group("pre")
        return Result.success(
            SemVer(
                major=int(m.group("major")),
                minor=int(m.group("minor") or 0),
                patch=int(m.group("patch") or 0),
                prerelease=tuple(pre.split(".")) if pre else (),
            )
        )

    def _sort_key(self) -> tuple[Any, ...]:
        if not self.prerelease:
            release: tuple[Any, ...] = (1,)
        else:
            release = (0, tuple((0, int(p), "") if p.isdigit() else (1, 0, p) for p in self.prerelease))
        return (self.major, self.minor, self.patch, release)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SemVer):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    def __str__(self) -> str:
        base = f"{self.major}.{self.minor}.{self.patch}"
        return f"{base}-{'.'.join(self.prerelease)}" if self.prerelease else base


# ─────────────────────── Policy ───────────────────────


@dataclass(frozen=True, slots=True)
class RolloutRule:
    """Fraction of clients (0..100) for which a scope applies pinning."""

    percentage: int = 100
    seed: RolloutSeed = RolloutSeed.DEVICE_ID
    sticky: bool = True


@dataclass(frozen=True, slots=True)
class FallbackRule:
    """When to fall back to pins embedded in the client at build time."""

    use_builtin_pins: bool = False
    builtin_hosts: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class HostPolicy:
    enabled: bool
    pin_set: PinSet
    rollout: RolloutRule = RolloutRule()


@dataclass(frozen=True, slots=True)
class Policy:
    """
    The atomic configuration unit.

    Either fully valid or never constructed by the parser. `hosts` is exposed
    as a read-only mapping. `target_hosts`, when non-empty, scopes pinning to
    the listed hosts only (legacy producers send it alongside `hosts`).
    """

    version: int | str
    enabled: bool
    min_client_version: SemVer
    hosts: Mapping[str, HostPolicy]
    global_rollout: RolloutRule = RolloutRule()
    fallback: FallbackRule = FallbackRule()
    fail_mode: FailMode = FailMode.CLOSED
    target_hosts: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not isinstance(self.hosts, MappingProxyType):
            object.__setattr__(self, "hosts", MappingProxyType(dict(self.hosts)))

    @staticmethod
    def disabled(version: int | str = 0) -> Policy:
        """Safe bootstrap default: pins nothing until a validated policy arrives."""
        return Policy(
            version=version,
            enabled=False,
            min_client_version=SemVer(0),
            hosts={},
        )

    def host_policy(self, hostname: str) -> HostPolicy | None:
        """Configured policy for `hostname`, honouring the target-host scope."""
        if self.target_hosts and hostname not in self.target_hosts:
            return None
        return self.hosts.get(hostname)


# ─────────────────────── Evaluation ───────────────────────


@dataclass(frozen=True, slots=True)
class EvaluationRequest:
    """
    One handshake's worth of input.

    `observed_key_hashes` holds the SPKI SHA-256 of the leaf and, optionally,
    each chain certificate. Raw 32-byte digests are accepted as-is.
    """

    hostname: str
    observed_key_hashes: Sequence[PublicKeyHash | bytes]
    client_version: str
    client_identifier: str
    now: datetime | None = None


@dataclass(frozen=True, slots=True)
class EvaluationResult:
    verdict: Verdict
    reason: Reason
    policy_version: int | str
    matched_pin: PublicKeyHash | None = None
    enforced: bool = True
    pin_source: PinSource = PinSource.NONE

    @property
    def falls_through(self) -> bool:
        """BYPASSED / NOT_PINNED: defer to standard trust-store validation."""
        return self.verdict in (Verdict.BYPASSED, Verdict.NOT_PINNED)

    @property
    def rejects_connection(self) -> bool:
        return self.verdict is Verdict.PIN_MISMATCH and self.enforced


# ─────────────────────── Telemetry events ───────────────────────


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class EvaluationEvent:
    hostname: str
    verdict: Verdict
    reason: Reason
    policy_version: int | str
    observed_hash_prefix: str | None = None
    pin_source: PinSource = PinSource.NONE
    enforced: bool = True
    timestamp: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": "evaluation",
            "hostname": self.hostname,
            "verdict": self.verdict.value,
            "reason": self.reason.value,
            "policy_version": self.policy_version,
            "observed_hash_prefix": self.observed_hash_prefix,
            "pin_source": self.pin_source.value,
            "enforced": self.enforced,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class ConfigTransitionEvent:
    kind: TransitionKind
    policy_version: int | str | None
    previous_version: int | str | None = None
    error_code: str | None = None
    message: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": "config_transition",
            "kind": self.kind.value,
            "policy_version": self.policy_version,
            "previous_version": self.previous_version,
            "error_code": self.error_code,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


type TelemetryEvent = EvaluationEvent | ConfigTransitionEvent


# ─────────────────────── Policy fetch ───────────────────────


@dataclass(frozen=True, slots=True)
class PolicyFetch:
    """
    What a policy source hands to the refresh pipeline.

    `not_modified` means the source confirmed the current document is still
    authoritative (HTTP 304); `content` is then None.
    """

    content: bytes | None
    etag: str | None = None
    not_modified: bool = False
