"""
Unit tests for the rollout selector — determinism, monotonicity, edges.
"""

from __future__ import annotations

import pytest

from pinguard.domain.models import RolloutRule
from pinguard.rollout import BUCKETS, bucket_for, is_selected, stable_hash

IDENTIFIERS = [f"device-{n}" for n in range(500)]


class TestStableHash:
    def test_is_deterministic(self) -> None:
        assert stable_hash("device-42") == stable_hash("device-42")

    def test_is_64_bit(self) -> None:
        assert all(0 <= stable_hash(i) < 2**64 for i in IDENTIFIERS)

    def test_known_value_is_stable_across_processes(self) -> None:
        # First 8 bytes of SHA-256("") read big-endian.
        assert stable_hash("") == 0xE3B0C44298FC1C14

    def test_buckets_in_range(self) -> None:
        assert all(0 <= bucket_for(i) < BUCKETS for i in IDENTIFIERS)

    def test_buckets_spread(self) -> None:
        assert len({bucket_for(i) for i in IDENTIFIERS}) > 80


class TestIsSelected:
    def test_zero_percent_selects_nobody(self) -> None:
        rule = RolloutRule(percentage=0)
        assert not any(is_selected(i, rule) for i in IDENTIFIERS)

    def test_hundred_percent_selects_everybody(self) -> None:
        rule = RolloutRule(percentage=100)
        assert all(is_selected(i, rule) for i in IDENTIFIERS)

    def test_empty_identifier_follows_edges(self) -> None:
        assert not is_selected("", RolloutRule(percentage=0))
        assert is_selected("", RolloutRule(percentage=100))

    @pytest.mark.parametrize(("lower", "higher"), [(1, 2), (10, 50), (50, 51), (75, 99)])
    def test_monotonic_in_percentage(self, lower: int, higher: int) -> None:
        """
        GIVEN two percentages p1 <= p2
        WHEN the same identifiers are evaluated
        THEN everyone selected at p1 is still selected at p2.
        """
        selected_low = {i for i in IDENTIFIERS if is_selected(i, RolloutRule(percentage=lower))}
        selected_high = {i for i in IDENTIFIERS if is_selected(i, RolloutRule(percentage=higher))}
        assert selected_low <= selected_high

    def test_selection_tracks_percentage(self) -> None:
        share = sum(is_selected(i, RolloutRule(percentage=30)) for i in IDENTIFIERS) / len(IDENTIFIERS)
        assert 0.2 < share < 0.4

    def test_repeated_calls_agree(self) -> None:
        rule = RolloutRule(percentage=37)
        first = [is_selected(i, rule) for i in IDENTIFIERS]
        assert [is_selected(i, rule) for i in IDENTIFIERS] == first
