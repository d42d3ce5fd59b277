"""
SPKI pins — public-key hashes, exact hostnames, and per-host pin sets.

A pin is the SHA-256 of a DER SubjectPublicKeyInfo, never of a whole
certificate, so a reissued leaf with the same key keeps matching. Matching is
byte-exact set membership: no prefixes, no near matches, no wildcard hosts.
"""

from __future__ import annotations

import base64
import binascii
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from pinguard.railway import ErrorCode, Result

DIGEST_SIZE = 32
MIN_PINS = 2
_HPKP_PREFIX = "sha256/"

_LABEL = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")


def canonical_hostname(host: str) -> str:
    """Trim, lower-case and drop at most one trailing dot; no validation."""
    name = host.strip().lower()
    return name[:-1] if name.endswith(".") else name


def normalize_hostname(host: str) -> Result[str]:
    """
    Validate and canonicalize an exact DNS name.

    Lower-cases and drops a single trailing dot. Wildcard labels get their own
    error code so operators can tell "typo" apart from "forbidden pattern".
    """
    if not isinstance(host, str) or not host.strip():
        return Result.failure(ErrorCode.INVALID_HOSTNAME, "Hostname must be a non-empty string")

    name = canonical_hostname(host)

    if "*" in name:
        return Result.failure(
            ErrorCode.WILDCARD_HOSTNAME,
            f"Wildcard hostname {host!r} is not allowed; pin exact hosts only",
        )
    if len(name) > 253 or not all(_LABEL.match(label) for label in name.split(".")):
        return Result.failure(ErrorCode.INVALID_HOSTNAME, f"Malformed hostname {host!r}")
    return Result.success(name)


@dataclass(frozen=True, slots=True)
class PublicKeyHash:
    """SHA-256 digest of a DER-encoded SubjectPublicKeyInfo (32 bytes)."""

    digest: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.digest, bytes) or len(self.digest) != DIGEST_SIZE:
            raise ValueError(f"SPKI hash must be {DIGEST_SIZE} bytes")

    @staticmethod
    def parse(text: str) -> Result[PublicKeyHash]:
        """
        Decode a pin from its wire form: strict Base64, optionally "sha256/"-prefixed.

        >>> PublicKeyHash.parse("AAAA").is_failure()
        True
        """
        if not isinstance(text, str):
            return Result.failure(ErrorCode.INVALID_PIN, f"Pin must be a string, got {type(text).__name__}")
        encoded = text.strip()
        if encoded.startswith(_HPKP_PREFIX):
            encoded = encoded[len(_HPKP_PREFIX):]
        try:
            digest = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            return Result.failure(ErrorCode.INVALID_PIN, f"Pin {text!r} is not valid Base64", e)
        if len(digest) != DIGEST_SIZE:
            return Result.failure(
                ErrorCode.INVALID_PIN,
                f"Pin {text!r} decodes to {len(digest)} bytes, expected {DIGEST_SIZE}",
            )
        return Result.success(PublicKeyHash(digest))

    @staticmethod
    def coerce(value: PublicKeyHash | bytes) -> PublicKeyHash | None:
        """Accept a raw 32-byte digest from a transport; anything else is None."""
        if isinstance(value, PublicKeyHash):
            return value
        if isinstance(value, (bytes, bytearray, memoryview)) and len(value) == DIGEST_SIZE:
            return PublicKeyHash(bytes(value))
        return None

    def to_base64(self) -> str:
        return base64.b64encode(self.digest).decode("ascii")

    def prefix(self, length: int = 8) -> str:
        """Short Base64 prefix for telemetry — enough to correlate, not to copy."""
        return self.to_base64()[:length]

    def __str__(self) -> str:
        return self.to_base64()


@dataclass(frozen=True, slots=True)
class PinSet:
    """
    One host's accepted public-key hashes.

    `pins` is ordered by role: primary, backup, emergency, then any extra pins
    introduced during a rotation overlap. Lookups go through a frozenset.
    A set with a single pin is only valid while `bootstrap` is set.
    """

    host: str
    pins: tuple[PublicKeyHash, ...]
    min_pins: int = MIN_PINS
    bootstrap: bool = False
    _index: frozenset[PublicKeyHash] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        ordered = tuple(dict.fromkeys(self.pins))
        object.__setattr__(self, "pins", ordered)
        object.__setattr__(self, "_index", frozenset(ordered))

    @staticmethod
    def of(
        host: str,
        pins: Iterable[PublicKeyHash],
        *,
        bootstrap: bool = False,
    ) -> Result[PinSet]:
        """Build and validate in one step."""
        return normalize_hostname(host).flat_map(
            lambda name: PinSet(host=name, pins=tuple(pins), bootstrap=bootstrap).validate()
        )

    def contains(self, candidate: PublicKeyHash) -> bool:
        return candidate in self._index

    def first_match(self, observed: Iterable[PublicKeyHash]) -> PublicKeyHash | None:
        """Return the first observed hash that is pinned, scanning the whole chain."""
        for candidate in observed:
            if candidate in self._index:
                return candidate
        return None

    def validate(self) -> Result[PinSet]:
        """
        Enforce the publish-time invariants.

        Host must be an exact (non-wildcard) DNS name, the set non-empty, and
        at least `min_pins` strong unless the set is flagged as bootstrap.
        """
        return (
            normalize_hostname(self.host)
            .ensure(
                lambda name: name == self.host,
                ErrorCode.INVALID_HOSTNAME,
                lambda name: f"Hostname {self.host!r} is not canonical (expected {name!r})",
            )
            .map(lambda _: self)
            .ensure(
                lambda ps: len(ps.pins) > 0,
                ErrorCode.INSUFFICIENT_PINS,
                lambda ps: f"{ps.host} has no pins",
            )
            .ensure(
                lambda ps: ps.bootstrap or len(ps.pins) >= ps.min_pins,
                ErrorCode.INSUFFICIENT_PINS,
                lambda ps: (
                    f"{ps.host} has {len(ps.pins)} pin(s); at least {ps.min_pins} "
                    f"required outside bootstrap"
                ),
            )
        )

    def __len__(self) -> int:
        return len(self.pins)

    def __iter__(self) -> Iterator[PublicKeyHash]:
        return iter(self.pins)
