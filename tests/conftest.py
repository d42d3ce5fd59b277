"""
Shared fixtures for the pinguard test suite.

Every test builds its own store, clock and sink: there is no global engine
state to reset between tests.
"""

from __future__ import annotations

import pytest

from pinguard.evaluator import PinEvaluator
from pinguard.store import ConfigurationStore
from tests.factories import CapturingTelemetrySink, FakeClock, encode, policy_document


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sink() -> CapturingTelemetrySink:
    return CapturingTelemetrySink()


@pytest.fixture()
def store(sink: CapturingTelemetrySink, clock: FakeClock) -> ConfigurationStore:
    """A store that has not received any policy yet."""
    return ConfigurationStore(telemetry=sink, clock=clock)


@pytest.fixture()
def loaded_store(store: ConfigurationStore) -> ConfigurationStore:
    """A store holding the default policy document (api.example.com → H1, H2)."""
    store.refresh(encode(policy_document()))
    return store


@pytest.fixture()
def evaluator(
    loaded_store: ConfigurationStore,
    sink: CapturingTelemetrySink,
    clock: FakeClock,
) -> PinEvaluator:
    return PinEvaluator(loaded_store, telemetry=sink, clock=clock)
