"""
Unit tests for policy ingestion — wire document → immutable Policy.

Tests cover:
  - Happy path and defaults for optional fields
  - Every document error code (malformed JSON, schema, range, hosts, pins)
  - Both wire forms of host lists (JSON array, comma-separated string)
  - Canonical serialization round trip
  - Builtin pin documents
"""

from __future__ import annotations

import json

import pytest

from pinguard.domain.models import FailMode, RolloutSeed, SemVer
from pinguard.domain.pins import PublicKeyHash
from pinguard.policy import (
    KILL_SWITCH_DOCUMENT,
    parse_builtin_pins,
    parse_policy,
    policy_to_document,
    serialize_policy,
)
from pinguard.railway import ErrorCode, ResultAssertions
from tests.factories import (
    API_HOST,
    H1,
    H2,
    H3,
    OTHER_HOST,
    b64,
    encode,
    host_document,
    make_hash,
    policy_document,
)

# ─────────────────────── Happy path ───────────────────────


class TestParsePolicy:
    def test_parses_scenario_document(self) -> None:
        policy = ResultAssertions.assert_success(parse_policy(encode(policy_document())))

        assert policy.version == 1
        assert policy.enabled is True
        assert policy.min_client_version == SemVer(1, 0, 0)
        host = policy.hosts[API_HOST]
        assert host.enabled is True
        assert host.pin_set.pins == (PublicKeyHash(H1), PublicKeyHash(H2))
        assert host.rollout.percentage == 100

    def test_accepts_str_input(self) -> None:
        ResultAssertions.assert_success(parse_policy(json.dumps(policy_document())))

    def test_optional_fields_take_defaults(self) -> None:
        raw = encode({"enabled": True, "hosts": {API_HOST: {"pins": {"primary": b64(H1), "backup": b64(H2)}}}})
        policy = ResultAssertions.assert_success(parse_policy(raw))

        assert policy.min_client_version == SemVer(0)
        assert policy.global_rollout.percentage == 100
        assert policy.global_rollout.seed is RolloutSeed.DEVICE_ID
        assert policy.hosts[API_HOST].enabled is True
        assert policy.hosts[API_HOST].rollout.percentage == 100
        assert policy.fallback.use_builtin_pins is False
        assert policy.fail_mode is FailMode.CLOSED

    def test_missing_version_gets_content_hash(self) -> None:
        document = policy_document()
        del document["version"]
        first = ResultAssertions.assert_success(parse_policy(encode(document)))
        again = ResultAssertions.assert_success(parse_policy(json.dumps(document, indent=4)))

        assert isinstance(first.version, str)
        assert first.version.startswith("sha256:")
        assert first.version == again.version

    def test_string_version_kept(self) -> None:
        policy = ResultAssertions.assert_success(parse_policy(encode(policy_document(version="2026-01-15"))))
        assert policy.version == "2026-01-15"

    def test_hostnames_are_canonicalized(self) -> None:
        document = policy_document(hosts={"API.Example.com.": host_document()})
        policy = ResultAssertions.assert_success(parse_policy(encode(document)))
        assert list(policy.hosts) == [API_HOST]

    def test_unknown_fields_ignored(self) -> None:
        ResultAssertions.assert_success(parse_policy(encode(policy_document(analytics={"sample": 0.1}))))

    def test_emergency_and_additional_pins_included(self) -> None:
        pins = (make_hash("a"), make_hash("b"), make_hash("c"), make_hash("d"))
        policy = ResultAssertions.assert_success(
            parse_policy(encode(policy_document(hosts={API_HOST: host_document(*pins)})))
        )
        assert policy.hosts[API_HOST].pin_set.pins == pins

    def test_bootstrap_host_allows_single_pin(self) -> None:
        document = policy_document(hosts={API_HOST: host_document(H1, bootstrap=True)})
        policy = ResultAssertions.assert_success(parse_policy(encode(document)))
        assert policy.hosts[API_HOST].pin_set.bootstrap is True

    def test_kill_switch_document_parses_to_disabled_policy(self) -> None:
        policy = ResultAssertions.assert_success(parse_policy(KILL_SWITCH_DOCUMENT))
        assert policy.enabled is False
        assert dict(policy.hosts) == {}


# ─────────────────────── Rejections ───────────────────────


class TestParsePolicyRejections:
    """
    GIVEN a document with a single defect
    WHEN it is parsed
    THEN the whole document is rejected with the matching error code.
    """

    @pytest.mark.parametrize("raw", [b"{not json", b"", b"\xff\xfe", b"[1, 2]", b'"text"', b"null"])
    def test_malformed_document(self, raw: bytes) -> None:
        ResultAssertions.assert_failure(parse_policy(raw), ErrorCode.MALFORMED_DOCUMENT)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"enabled": "yes"},
            {"hosts": []},
            {"min_app_version": 150},
            {"version": 1.5},
            {"fail_mode": "sometimes"},
            {"rollout_strategy": {"seed": "session_id"}},
        ],
    )
    def test_schema_violation(self, overrides: dict) -> None:
        ResultAssertions.assert_failure(
            parse_policy(encode(policy_document(**overrides))),
            ErrorCode.SCHEMA_VIOLATION,
        )

    def test_missing_enabled(self) -> None:
        document = policy_document()
        del document["enabled"]
        ResultAssertions.assert_failure(parse_policy(encode(document)), ErrorCode.SCHEMA_VIOLATION)

    def test_missing_primary_pin(self) -> None:
        document = policy_document(hosts={API_HOST: {"pins": {"backup": b64(H2)}}})
        ResultAssertions.assert_failure(parse_policy(encode(document)), ErrorCode.SCHEMA_VIOLATION)

    @pytest.mark.parametrize("percentage", [-1, 101])
    def test_host_rollout_out_of_range(self, percentage: int) -> None:
        document = policy_document(hosts={API_HOST: host_document(rollout_percentage=percentage)})
        ResultAssertions.assert_failure(parse_policy(encode(document)), ErrorCode.OUT_OF_RANGE)

    def test_global_rollout_out_of_range(self) -> None:
        document = policy_document(rollout_strategy={"method": "percentage", "percentage": 150})
        ResultAssertions.assert_failure(parse_policy(encode(document)), ErrorCode.OUT_OF_RANGE)

    def test_negative_version_out_of_range(self) -> None:
        ResultAssertions.assert_failure(
            parse_policy(encode(policy_document(version=-3))),
            ErrorCode.OUT_OF_RANGE,
        )

    def test_unsupported_rollout_method(self) -> None:
        document = policy_document(rollout_strategy={"method": "canary"})
        ResultAssertions.assert_failure(parse_policy(encode(document)), ErrorCode.UNSUPPORTED_ROLLOUT_METHOD)

    def test_invalid_min_version(self) -> None:
        document = policy_document(min_app_version="one.five")
        ResultAssertions.assert_failure(parse_policy(encode(document)), ErrorCode.INVALID_VERSION)

    def test_wildcard_host(self) -> None:
        document = policy_document(hosts={"*.example.com": host_document()})
        ResultAssertions.assert_failure(parse_policy(encode(document)), ErrorCode.WILDCARD_HOSTNAME)

    def test_invalid_host(self) -> None:
        document = policy_document(hosts={"bad host": host_document()})
        ResultAssertions.assert_failure(parse_policy(encode(document)), ErrorCode.INVALID_HOSTNAME)

    def test_invalid_pin(self) -> None:
        document = policy_document(hosts={API_HOST: {"pins": {"primary": "AAAA", "backup": b64(H2)}}})
        ResultAssertions.assert_failure(parse_policy(encode(document)), ErrorCode.INVALID_PIN)

    def test_single_pin_without_bootstrap(self) -> None:
        document = policy_document(hosts={API_HOST: host_document(H1)})
        ResultAssertions.assert_failure(parse_policy(encode(document)), ErrorCode.INSUFFICIENT_PINS)

    def test_duplicate_backup_counts_once(self) -> None:
        document = policy_document(hosts={API_HOST: host_document(H1, H1)})
        ResultAssertions.assert_failure(parse_policy(encode(document)), ErrorCode.INSUFFICIENT_PINS)

    def test_hosts_colliding_after_normalization(self) -> None:
        document = policy_document(hosts={API_HOST: host_document(), "API.example.com": host_document()})
        ResultAssertions.assert_failure(parse_policy(encode(document)), ErrorCode.SCHEMA_VIOLATION)

    def test_wildcard_in_builtin_host_list(self) -> None:
        document = policy_document(fallback={"use_builtin_pins": True, "builtin_pin_hosts": "*.example.com"})
        ResultAssertions.assert_failure(parse_policy(encode(document)), ErrorCode.WILDCARD_HOSTNAME)

    def test_one_bad_host_discards_everything(self) -> None:
        document = policy_document(
            hosts={API_HOST: host_document(), OTHER_HOST: host_document(H3)},
        )
        ResultAssertions.assert_failure(parse_policy(encode(document)), ErrorCode.INSUFFICIENT_PINS)


# ─────────────────────── Host list forms ───────────────────────


class TestHostListForms:
    """
    GIVEN a host list sent as a JSON array or as a comma-separated string
    WHEN the document is parsed
    THEN both forms produce the same normalized host set.
    """

    def test_target_hosts_forms_are_equivalent(self) -> None:
        as_array = parse_policy(encode(policy_document(target_hosts=[API_HOST, OTHER_HOST])))
        as_string = parse_policy(encode(policy_document(target_hosts=f"{API_HOST}, {OTHER_HOST} ")))

        array_policy = ResultAssertions.assert_success(as_array)
        string_policy = ResultAssertions.assert_success(as_string)
        assert array_policy.target_hosts == string_policy.target_hosts == frozenset({API_HOST, OTHER_HOST})

    def test_builtin_pin_hosts_forms_are_equivalent(self) -> None:
        as_array = policy_document(fallback={"use_builtin_pins": True, "builtin_pin_hosts": [API_HOST]})
        as_string = policy_document(fallback={"use_builtin_pins": True, "builtin_pin_hosts": API_HOST})

        a = ResultAssertions.assert_success(parse_policy(encode(as_array)))
        s = ResultAssertions.assert_success(parse_policy(encode(as_string)))
        assert a.fallback == s.fallback
        assert a.fallback.builtin_hosts == frozenset({API_HOST})

    def test_empty_string_means_no_hosts(self) -> None:
        policy = ResultAssertions.assert_success(parse_policy(encode(policy_document(target_hosts=""))))
        assert policy.target_hosts == frozenset()


# ─────────────────────── Serialization ───────────────────────


class TestSerialization:
    def test_round_trip_is_idempotent(self) -> None:
        document = policy_document(
            target_hosts=f"{API_HOST},{OTHER_HOST}",
            hosts={
                API_HOST: host_document(H1, H2, make_hash("c"), make_hash("d")),
                OTHER_HOST: host_document(H3, bootstrap=True, rollout_percentage=25),
            },
            fail_mode="open",
        )
        first = ResultAssertions.assert_success(parse_policy(encode(document)))
        second = ResultAssertions.assert_success(parse_policy(serialize_policy(first)))

        assert second == first
        assert serialize_policy(second) == serialize_policy(first)

    def test_canonical_document_uses_arrays_and_explicit_version(self) -> None:
        document = policy_document(target_hosts=API_HOST)
        del document["version"]
        policy = ResultAssertions.assert_success(parse_policy(encode(document)))
        canonical = policy_to_document(policy)

        assert canonical["target_hosts"] == [API_HOST]
        assert canonical["version"] == policy.version
        assert canonical["hosts"][API_HOST]["pins"] == {"primary": b64(H1), "backup": b64(H2)}


# ─────────────────────── Builtin pins ───────────────────────


class TestBuiltinPins:
    def test_parses_pin_map(self) -> None:
        raw = json.dumps({"API.example.com": [b64(H1), b64(H2)]})
        pins = ResultAssertions.assert_success(parse_builtin_pins(raw))
        assert pins[API_HOST].pins == (PublicKeyHash(H1), PublicKeyHash(H2))

    def test_single_builtin_pin_rejected(self) -> None:
        raw = json.dumps({API_HOST: [b64(H1)]})
        ResultAssertions.assert_failure(parse_builtin_pins(raw), ErrorCode.INSUFFICIENT_PINS)

    def test_wrong_shape_rejected(self) -> None:
        ResultAssertions.assert_failure(parse_builtin_pins('{"a": "b"}'), ErrorCode.SCHEMA_VIOLATION)
