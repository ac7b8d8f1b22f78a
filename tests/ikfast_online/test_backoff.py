"""Poll interval bounds: the floor, the ceiling, and monotonic growth."""

from __future__ import annotations

import asyncio

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from IKFastOnline.lifecycle import BackoffPolicy, JobLifecycleCoordinator
from IKFastOnline.parameters import TriggerParams
from IKFastOnline.settings import PollingSettings
from IKFastOnline.testing import FakeClock, ScriptedJobClient

policies = st.builds(
    lambda low, span, factor, step: BackoffPolicy(low, low + span, factor=factor, step=step),
    st.floats(min_value=5.0, max_value=60.0),
    st.floats(min_value=0.0, max_value=600.0),
    st.floats(min_value=1.0, max_value=4.0),
    st.integers(min_value=1, max_value=10),
)


@given(policies, st.one_of(st.none(), st.floats(min_value=0.0, max_value=10_000.0)))
def test_clamp_respects_bounds(policy, requested):
    value = policy.clamp(requested)

    assert policy.min_interval <= value <= policy.max_interval


@given(
    policies,
    st.one_of(st.none(), st.floats(min_value=0.0, max_value=1_000.0)),
    st.integers(min_value=0, max_value=10_000),
)
def test_interval_is_bounded_and_non_decreasing(policy, initial, poll_count):
    current = policy.interval_for(poll_count, initial)
    following = policy.interval_for(poll_count + 1, initial)

    assert policy.min_interval <= current <= policy.max_interval
    assert current <= following


def test_interval_curve_example():
    policy = BackoffPolicy(5.0, 30.0, factor=1.5, step=5)

    assert [policy.interval_for(n) for n in (0, 4, 5, 10, 15, 1_000_000)] == [
        5.0,
        5.0,
        7.5,
        11.25,
        16.875,
        30.0,
    ]
    assert policy.interval_for(0, initial=1.0) == 5.0
    assert policy.interval_for(0, initial=99.0) == 30.0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"min_interval": 0.0, "max_interval": 10.0},
        {"min_interval": 10.0, "max_interval": 5.0},
        {"min_interval": 5.0, "max_interval": 10.0, "factor": 0.5},
        {"min_interval": 5.0, "max_interval": 10.0, "step": 0},
    ],
)
def test_invalid_policies_are_rejected(kwargs):
    min_interval = kwargs.pop("min_interval")
    max_interval = kwargs.pop("max_interval")
    with pytest.raises(ValueError):
        BackoffPolicy(min_interval, max_interval, **kwargs)


def test_polling_settings_reject_sub_floor_interval():
    with pytest.raises(ValidationError):
        PollingSettings(min_interval_sec=1.0)
    with pytest.raises(ValidationError):
        PollingSettings(min_interval_sec=20.0, max_interval_sec=10.0)


def test_requested_short_interval_is_clamped_during_polling(polling):
    clock = FakeClock()
    client = ScriptedJobClient(statuses=["in_progress"] * 12 + [("completed", "success")])
    coordinator = JobLifecycleCoordinator(
        client, job_definition_id="ikfast.yml", polling=polling, clock=clock
    )
    observed = []
    coordinator.on_state_change(
        lambda previous, current, run: observed.append(coordinator.get_polling_state().current_interval)
    )

    async def scenario():
        await coordinator.trigger(TriggerParams.info(), initial_interval=0.5)
        return await coordinator.wait()

    outcome = asyncio.run(scenario())

    assert outcome.succeeded
    poll_sleeps = clock.sleeps[1:]
    assert poll_sleeps
    assert all(polling.min_interval_sec <= s <= polling.max_interval_sec for s in poll_sleeps)
    assert poll_sleeps == sorted(poll_sleeps)
    assert all(polling.min_interval_sec <= i <= polling.max_interval_sec for i in observed)
