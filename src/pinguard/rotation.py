"""
Rotation support — builders for the next pin set / policy document.

Used by whatever process authors policy documents, not by the client hot
path. The invariant lives here because everything else relies on it: a
published pin set always carries a current key plus a backup, so retiring
a key must never leave a host with a single point of failure.

A rotation is published in two stages:

  overlap: {old, backup, new}  — clients on either key keep connecting
  final:   {backup, new}       — old key retired once the new one is live
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from pinguard.domain.models import HostPolicy, Policy, RolloutRule
from pinguard.domain.pins import PinSet, PublicKeyHash
from pinguard.railway import ErrorCode, Result


@dataclass(frozen=True, slots=True)
class RotationPlan:
    overlap: PinSet
    final: PinSet


def with_added_pin(pin_set: PinSet, new_hash: PublicKeyHash) -> PinSet:
    """New pin set with `new_hash` appended; adding an existing pin is a no-op copy."""
    return replace(pin_set, pins=(*pin_set.pins, new_hash))


def with_retired_pin(
    pin_set: PinSet,
    old_hash: PublicKeyHash,
    fallback_guaranteed: bool = False,
) -> Result[PinSet]:
    """
    New pin set without `old_hash`.

    Rejected with INSUFFICIENT_PINS when the result would drop below
    `min_pins`, unless the caller vouches that a rollback / emergency path
    exists independently of this set (`fallback_guaranteed`). Even then the
    set may never become empty.
    """
    if not pin_set.contains(old_hash):
        return Result.failure(
            ErrorCode.PIN_NOT_FOUND,
            f"Pin {old_hash.prefix()}… is not part of the {pin_set.host} pin set",
        )

    remaining = tuple(pin for pin in pin_set.pins if pin != old_hash)
    return (
        Result.success(replace(pin_set, pins=remaining))
        .ensure(
            lambda ps: len(ps) > 0,
            ErrorCode.INSUFFICIENT_PINS,
            lambda ps: f"Retiring {old_hash.prefix()}… would leave {ps.host} with no pins",
        )
        .ensure(
            lambda ps: fallback_guaranteed or ps.bootstrap or len(ps) >= ps.min_pins,
            ErrorCode.INSUFFICIENT_PINS,
            lambda ps: (
                f"Retiring {old_hash.prefix()}… would leave {ps.host} with {len(ps)} pin(s); "
                f"ship a replacement first"
            ),
        )
    )


def plan_rotation(
    pin_set: PinSet,
    old_hash: PublicKeyHash,
    new_hash: PublicKeyHash,
) -> Result[RotationPlan]:
    """Both stages of replacing `old_hash` with `new_hash`, validated up front."""
    if old_hash == new_hash:
        return Result.failure(ErrorCode.SCHEMA_VIOLATION, "Replacement pin equals the retired pin")
    if pin_set.contains(new_hash):
        return Result.failure(
            ErrorCode.SCHEMA_VIOLATION,
            f"Pin {new_hash.prefix()}… is already part of the {pin_set.host} pin set",
        )

    overlap = with_added_pin(pin_set, new_hash)
    return Result.combine(
        overlap.validate(),
        with_retired_pin(overlap, old_hash).flat_map(PinSet.validate),
        lambda staged, final: RotationPlan(overlap=staged, final=final),
    )


def with_host_pin_set(
    policy: Policy,
    pin_set: PinSet,
    version: int | str,
    rollout: RolloutRule | None = None,
) -> Result[Policy]:
    """
    Author the next policy: same settings, `pin_set` installed for its host.

    The host keeps its enabled flag and rollout unless a rollout is given;
    a host new to the policy starts enabled at the global rollout's seed.
    """
    if version == policy.version:
        return Result.failure(ErrorCode.INVALID_VERSION, f"New policy must not reuse version {version!r}")

    existing = policy.hosts.get(pin_set.host)
    default_rollout = RolloutRule(seed=policy.global_rollout.seed, sticky=policy.global_rollout.sticky)

    def _install(valid: PinSet) -> Policy:
        host_policy = HostPolicy(
            enabled=existing.enabled if existing else True,
            pin_set=valid,
            rollout=rollout or (existing.rollout if existing else default_rollout),
        )
        return replace(policy, version=version, hosts={**policy.hosts, valid.host: host_policy})

    return pin_set.validate().map(_install)
