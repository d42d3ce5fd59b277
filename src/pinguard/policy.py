"""
Policy configuration — wire document ⇄ immutable Policy.

Ingestion is a railway of stages, each returning Result:

  raw bytes
    → JSON decode                 (MALFORMED_DOCUMENT)
    → pydantic schema check       (SCHEMA_VIOLATION / OUT_OF_RANGE)
    → rollout strategy + version  (UNSUPPORTED_ROLLOUT_METHOD / INVALID_VERSION)
    → hosts and pins              (INVALID_HOSTNAME / WILDCARD_HOSTNAME /
                                   INVALID_PIN / INSUFFICIENT_PINS)
    → Policy

The first failing stage discards the whole document; there is no partial
application. Both forms of host lists (JSON array, legacy comma-separated
string) are normalized to a single representation at the boundary, so the
ambiguity never reaches the engine.

Builtin pins are NOT merged here; the evaluator resolves them per request.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
)

from pinguard.domain.models import (
    FailMode,
    FallbackRule,
    HostPolicy,
    Policy,
    RolloutRule,
    RolloutSeed,
    SemVer,
)
from pinguard.domain.pins import PinSet, PublicKeyHash, normalize_hostname
from pinguard.railway import ErrorCode, Result

KILL_SWITCH_DOCUMENT = b'{"enabled": false, "hosts": {}}'

_RANGE_ERRORS = frozenset({"greater_than_equal", "less_than_equal", "greater_than", "less_than"})


def _split_host_list(value: Any) -> Any:
    """Legacy producers send "a.example.com, b.example.com"; split and trim."""
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


HostList = Annotated[list[StrictStr], BeforeValidator(_split_host_list)]
Percentage = Annotated[StrictInt, Field(ge=0, le=100)]


# ─────────────────────── Wire schema ───────────────────────


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class PinsDocument(_WireModel):
    primary: StrictStr
    backup: StrictStr | None = None
    emergency: StrictStr | None = None
    additional: list[StrictStr] = Field(default_factory=list)


class HostDocument(_WireModel):
    enabled: StrictBool = True
    pins: PinsDocument
    rollout_percentage: Percentage = 100
    bootstrap: StrictBool = False


class RolloutStrategyDocument(_WireModel):
    method: StrictStr = "percentage"
    seed: RolloutSeed = RolloutSeed.DEVICE_ID
    sticky: StrictBool = True
    percentage: Percentage = 100


class FallbackDocument(_WireModel):
    use_builtin_pins: StrictBool = False
    builtin_pin_hosts: HostList = Field(default_factory=list)


class PolicyDocument(_WireModel):
    """The remote policy document as published by config producers."""

    version: Annotated[StrictInt, Field(ge=0)] | StrictStr | None = None
    enabled: StrictBool
    min_app_version: StrictStr = "0.0.0"
    hosts: dict[StrictStr, HostDocument]
    rollout_strategy: RolloutStrategyDocument = Field(default_factory=RolloutStrategyDocument)
    fallback: FallbackDocument = Field(default_factory=FallbackDocument)
    fail_mode: FailMode = FailMode.CLOSED
    target_hosts: HostList = Field(default_factory=list)


_BUILTIN_PINS = TypeAdapter(dict[StrictStr, list[StrictStr]])


# ─────────────────────── Stages ───────────────────────


def _decode(raw: bytes | str) -> Result[dict[str, Any]]:
    return Result.from_computation(
        lambda: json.loads(raw),
        ErrorCode.MALFORMED_DOCUMENT,
        "Policy document is not valid JSON",
    ).ensure(
        lambda data: isinstance(data, dict),
        ErrorCode.MALFORMED_DOCUMENT,
        lambda data: f"Policy document must be a JSON object, got {type(data).__name__}",
    )


def _validate_schema(model: type[BaseModel] | TypeAdapter, data: Any) -> Result[Any]:
    validate = model.validate_python if isinstance(model, TypeAdapter) else model.model_validate
    try:
        return Result.success(validate(data))
    except ValidationError as e:
        errors = e.errors()
        range_errors = [err for err in errors if err["type"] in _RANGE_ERRORS]
        code = ErrorCode.OUT_OF_RANGE if range_errors else ErrorCode.SCHEMA_VIOLATION
        first = (range_errors or errors)[0]
        location = ".".join(str(part) for part in first["loc"]) or "<root>"
        return Result.failure(
            code,
            f"Invalid field {location}: {first['msg']} ({len(errors)} error(s) total)",
            e,
        )


def _content_version(data: Mapping[str, Any]) -> str:
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def _normalize_host_list(hosts: Iterable[str]) -> Result[frozenset[str]]:
    return Result.all_of(normalize_hostname(h) for h in hosts).map(frozenset)


def _parse_pins(texts: Iterable[str]) -> Result[list[PublicKeyHash]]:
    return Result.all_of(PublicKeyHash.parse(t) for t in texts)


def _pin_set(host: str, doc: HostDocument) -> Result[PinSet]:
    pins = doc.pins
    texts = [pins.primary, pins.backup, pins.emergency, *pins.additional]
    return _parse_pins(t for t in texts if t is not None).flat_map(
        lambda hashes: PinSet(host=host, pins=tuple(hashes), bootstrap=doc.bootstrap).validate()
    )


def _host_entry(
    name: str,
    doc: HostDocument,
    strategy: RolloutStrategyDocument,
) -> Result[tuple[str, HostPolicy]]:
    rollout = RolloutRule(
        percentage=doc.rollout_percentage,
        seed=strategy.seed,
        sticky=strategy.sticky,
    )
    return normalize_hostname(name).flat_map(
        lambda host: _pin_set(host, doc).map(
            lambda pin_set: (host, HostPolicy(enabled=doc.enabled, pin_set=pin_set, rollout=rollout))
        )
    )


def _hosts(doc: PolicyDocument) -> Result[dict[str, HostPolicy]]:
    return Result.all_of(
        _host_entry(name, host_doc, doc.rollout_strategy) for name, host_doc in doc.hosts.items()
    ).ensure(
        lambda entries: len({host for host, _ in entries}) == len(entries),
        ErrorCode.SCHEMA_VIOLATION,
        "Host names collide after normalization",
    ).map(dict)


def _min_version(doc: PolicyDocument) -> Result[SemVer]:
    if doc.rollout_strategy.method != "percentage":
        return Result.failure(
            ErrorCode.UNSUPPORTED_ROLLOUT_METHOD,
            f"Unsupported rollout method {doc.rollout_strategy.method!r}",
        )
    return SemVer.parse(doc.min_app_version)


def _assemble(doc: PolicyDocument, data: Mapping[str, Any]) -> Result[Policy]:
    strategy = doc.rollout_strategy
    version = doc.version if doc.version is not None else _content_version(data)

    return Result.combine(
        _min_version(doc),
        _hosts(doc),
        lambda min_version, hosts: (min_version, hosts),
    ).flat_map(
        lambda parts: Result.combine(
            _normalize_host_list(doc.fallback.builtin_pin_hosts),
            _normalize_host_list(doc.target_hosts),
            lambda builtin_hosts, target_hosts: Policy(
                version=version,
                enabled=doc.enabled,
                min_client_version=parts[0],
                hosts=parts[1],
                global_rollout=RolloutRule(
                    percentage=strategy.percentage,
                    seed=strategy.seed,
                    sticky=strategy.sticky,
                ),
                fallback=FallbackRule(
                    use_builtin_pins=doc.fallback.use_builtin_pins,
                    builtin_hosts=builtin_hosts,
                ),
                fail_mode=doc.fail_mode,
                target_hosts=target_hosts,
            ),
        )
    )


# ─────────────────────── Public API ───────────────────────


def parse_policy(raw: bytes | str) -> Result[Policy]:
    """
    Parse and validate a policy document. All-or-nothing.

    Returns Result[Policy] on success, or a ConfigError failure naming the
    first problem found. The caller never sees a partially-built policy.
    """
    return _decode(raw).flat_map(
        lambda data: _validate_schema(PolicyDocument, data).flat_map(
            lambda doc: _assemble(doc, data)
        )
    )


def policy_to_document(policy: Policy) -> dict[str, Any]:
    """Canonical wire document for `policy` (array host lists, explicit version)."""
    strategy = policy.global_rollout
    return {
        "version": policy.version,
        "enabled": policy.enabled,
        "min_app_version": str(policy.min_client_version),
        "hosts": {host: _host_document(hp) for host, hp in sorted(policy.hosts.items())},
        "rollout_strategy": {
            "method": "percentage",
            "seed": strategy.seed.value,
            "sticky": strategy.sticky,
            "percentage": strategy.percentage,
        },
        "fallback": {
            "use_builtin_pins": policy.fallback.use_builtin_pins,
            "builtin_pin_hosts": sorted(policy.fallback.builtin_hosts),
        },
        "fail_mode": policy.fail_mode.value,
        "target_hosts": sorted(policy.target_hosts),
    }


def _host_document(host_policy: HostPolicy) -> dict[str, Any]:
    encoded = [pin.to_base64() for pin in host_policy.pin_set.pins]
    pins: dict[str, Any] = {}
    for role, value in zip(("primary", "backup", "emergency"), encoded, strict=False):
        pins[role] = value
    if len(encoded) > 3:
        pins["additional"] = encoded[3:]

    document: dict[str, Any] = {
        "enabled": host_policy.enabled,
        "pins": pins,
        "rollout_percentage": host_policy.rollout.percentage,
    }
    if host_policy.pin_set.bootstrap:
        document["bootstrap"] = True
    return document


def serialize_policy(policy: Policy) -> bytes:
    return json.dumps(policy_to_document(policy), sort_keys=True, indent=2).encode("utf-8")


def parse_builtin_pins(raw: bytes | str) -> Result[dict[str, PinSet]]:
    """
    Parse the embedded-pin document shipped with the client build.

        {"api.example.com": ["<base64>", "<base64>"]}

    Builtin sets obey the same cardinality rule as remote ones.
    """
    return _decode(raw).flat_map(lambda data: _validate_schema(_BUILTIN_PINS, data)).flat_map(
        lambda entries: Result.all_of(
            _parse_pins(texts).flat_map(lambda hashes, host=host: PinSet.of(host, hashes))
            for host, texts in entries.items()
        )
    ).map(lambda pin_sets: {ps.host: ps for ps in pin_sets})
