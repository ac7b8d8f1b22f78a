# === NAVMAP v1 ===
# {
#   "module": "tests.ikfast_online.test_lifecycle",
#   "purpose": "Scenario tests for the trigger-and-poll coordinator driven by a fake clock and scripted client",
#   "sections": [
#     {"id": "tests", "name": "Test Cases", "anchor": "TST", "kind": "tests"}
#   ]
# }
# === /NAVMAP ===

"""Scenario tests for :class:`JobLifecycleCoordinator`.

Every scenario runs on :class:`FakeClock`, so a full polling budget elapses
in virtual time, and against :class:`ScriptedJobClient`, whose run statuses
are consumed one per poll.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

import httpx
import pytest

from IKFastOnline.errors import (
    AlreadyActiveError,
    JobTimeoutError,
    NetworkError,
    RemoteAPIError,
    RunIdUnresolvedWarning,
    TriggerFailedError,
)
from IKFastOnline.gate import DownloadGate
from IKFastOnline.lifecycle import JobLifecycleCoordinator
from IKFastOnline.models import (
    CoordinatorPhase,
    JobRun,
    LifecycleState,
    OutcomeReason,
    TriggerResponse,
)
from IKFastOnline.network import GitHubActionsClient
from IKFastOnline.parameters import TriggerParams
from IKFastOnline.settings import RetrySettings, Settings
from IKFastOnline.testing import ScriptedJobClient

QUEUED = LifecycleState.QUEUED
IN_PROGRESS = LifecycleState.IN_PROGRESS
COMPLETED = LifecycleState.COMPLETED
FAILED = LifecycleState.FAILED


def _coordinator(client, clock, polling) -> JobLifecycleCoordinator:
    return JobLifecycleCoordinator(
        client,
        job_definition_id="ikfast.yml",
        ref="main",
        polling=polling,
        clock=clock,
    )


def _record_transitions(coordinator):
    transitions = []
    coordinator.on_state_change(lambda previous, current, run: transitions.append((previous, current)))
    return transitions


def test_trigger_polls_through_queue_to_completion(clock, polling):
    client = ScriptedJobClient(
        statuses=["queued", "queued", "in_progress", ("completed", "success")]
    )
    coordinator = _coordinator(client, clock, polling)
    gate = DownloadGate(coordinator, client)
    transitions = _record_transitions(coordinator)
    unlocked_during_transition = []
    completions = []
    coordinator.on_state_change(
        lambda previous, current, run: unlocked_during_transition.append(gate.is_unlocked())
    )
    coordinator.on_complete(completions.append)

    async def scenario():
        result = await coordinator.trigger(TriggerParams.info())
        assert result.success
        assert result.run_id == 1001
        assert result.warning is None
        assert not gate.is_unlocked()
        assert coordinator.get_polling_state().is_polling
        return await coordinator.wait()

    outcome = asyncio.run(scenario())

    assert outcome.succeeded
    assert outcome.reason is OutcomeReason.REMOTE
    assert len(completions) == 1
    assert completions[0] is outcome
    assert transitions == [(None, QUEUED), (QUEUED, IN_PROGRESS), (IN_PROGRESS, COMPLETED)]
    assert unlocked_during_transition == [False, False, True]
    assert gate.is_unlocked()
    state = coordinator.get_polling_state()
    assert state.is_polling is False
    assert state.poll_count == 4
    assert client.call_count("get_run") == 4
    assert coordinator.phase is CoordinatorPhase.TERMINAL
    assert client.triggered == [{"mode": "info"}]


def test_timeout_reports_synthetic_failure(clock, polling):
    client = ScriptedJobClient(statuses=["in_progress"])
    coordinator = _coordinator(client, clock, polling)
    gate = DownloadGate(coordinator, client)
    completions = []
    coordinator.on_complete(completions.append)

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        return await coordinator.wait()

    outcome = asyncio.run(scenario())

    assert outcome.timed_out
    assert outcome.state is FAILED
    assert isinstance(outcome.error, JobTimeoutError)
    assert isinstance(outcome.error, TimeoutError)
    assert outcome.error.timeout_sec == polling.timeout_sec
    assert polling.timeout_sec <= outcome.error.elapsed_sec < polling.timeout_sec + 1e-6
    assert coordinator.state is FAILED
    assert coordinator.get_polling_state().is_polling is False
    assert not gate.is_unlocked()
    assert len(completions) == 1


def test_remote_failure_is_distinguishable_from_timeout(clock, polling):
    client = ScriptedJobClient(statuses=["in_progress", ("completed", "failure")])
    coordinator = _coordinator(client, clock, polling)

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        return await coordinator.wait()

    outcome = asyncio.run(scenario())

    assert outcome.state is FAILED
    assert outcome.reason is OutcomeReason.REMOTE
    assert not outcome.timed_out
    assert outcome.error is None


def test_transient_errors_are_absorbed(clock, polling, caplog):
    client = ScriptedJobClient(
        statuses=[
            NetworkError("connection reset"),
            RemoteAPIError("Server error", status_code=502, retryable=True),
            "in_progress",
            ("completed", "success"),
        ]
    )
    coordinator = _coordinator(client, clock, polling)

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        return await coordinator.wait()

    with caplog.at_level(logging.WARNING, logger="IKFastOnline.lifecycle"):
        outcome = asyncio.run(scenario())

    assert outcome.succeeded
    assert client.call_count("get_run") == 4
    assert sum("Transient error" in record.getMessage() for record in caplog.records) == 2


def test_persistent_network_failure_ends_in_timeout(clock, polling):
    client = ScriptedJobClient(statuses=[NetworkError("unreachable")])
    coordinator = _coordinator(client, clock, polling)

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        return await coordinator.wait()

    outcome = asyncio.run(scenario())

    assert outcome.timed_out
    assert client.call_count("get_run") > 1


@pytest.mark.parametrize("status_code", [401, 404, 422])
def test_non_transient_error_stops_polling(clock, polling, status_code):
    client = ScriptedJobClient(
        statuses=[RemoteAPIError("nope", status_code=status_code), "in_progress"]
    )
    coordinator = _coordinator(client, clock, polling)

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        return await coordinator.wait()

    outcome = asyncio.run(scenario())

    assert outcome.reason is OutcomeReason.ERROR
    assert outcome.state is FAILED
    assert isinstance(outcome.error, RemoteAPIError)
    assert outcome.error.status_code == status_code
    assert client.call_count("get_run") == 1
    assert coordinator.get_polling_state().is_polling is False


def test_unknown_status_keeps_polling(clock, polling, caplog):
    client = ScriptedJobClient(
        statuses=[("waiting", None), "in_progress", ("completed", "success")]
    )
    coordinator = _coordinator(client, clock, polling)
    transitions = _record_transitions(coordinator)

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        return await coordinator.wait()

    with caplog.at_level(logging.WARNING, logger="IKFastOnline.lifecycle"):
        outcome = asyncio.run(scenario())

    assert outcome.succeeded
    assert transitions[0] == (None, LifecycleState.UNKNOWN)
    assert any("unrecognised status" in record.getMessage() for record in caplog.records)


def test_skipped_conclusion_never_unlocks(clock, polling):
    client = ScriptedJobClient(statuses=[("completed", "skipped")])
    coordinator = _coordinator(client, clock, polling)
    gate = DownloadGate(coordinator, client)
    seen = []
    coordinator.on_state_change(lambda previous, current, run: seen.append(gate.is_unlocked()))

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        return await coordinator.wait()

    outcome = asyncio.run(scenario())

    assert outcome.timed_out
    assert not any(seen)
    assert not gate.is_unlocked()


def test_trigger_while_active_is_rejected(clock, polling):
    client = ScriptedJobClient(statuses=["in_progress"])
    coordinator = _coordinator(client, clock, polling)

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        with pytest.raises(AlreadyActiveError) as excinfo:
            await coordinator.trigger(TriggerParams.info())
        coordinator.stop_polling()
        return excinfo.value

    error = asyncio.run(scenario())

    assert error.run_id == 1001
    assert client.call_count("trigger_job") == 1


def test_remote_active_run_blocks_trigger(clock, polling):
    running = JobRun(id=7, raw_status="in_progress")
    client = ScriptedJobClient(existing_runs=[running])
    coordinator = _coordinator(client, clock, polling)

    with pytest.raises(AlreadyActiveError) as excinfo:
        asyncio.run(coordinator.trigger(TriggerParams.info()))

    assert excinfo.value.run_id == 7
    assert client.call_count("trigger_job") == 0
    assert coordinator.phase is CoordinatorPhase.IDLE
    assert not coordinator.is_active


def test_rejected_trigger_is_not_retried(clock, polling):
    client = ScriptedJobClient()
    client.trigger_error = RemoteAPIError("Validation failed", status_code=422)
    coordinator = _coordinator(client, clock, polling)

    with pytest.raises(TriggerFailedError) as excinfo:
        asyncio.run(coordinator.trigger(TriggerParams.info()))

    assert isinstance(excinfo.value.cause, RemoteAPIError)
    assert client.call_count("trigger_job") == 1
    assert coordinator.phase is CoordinatorPhase.IDLE
    assert coordinator.get_polling_state().is_polling is False


def test_unaccepted_trigger_response_fails(clock, polling):
    client = ScriptedJobClient()
    client.trigger_response = TriggerResponse(success=False, status_code=200)
    coordinator = _coordinator(client, clock, polling)

    with pytest.raises(TriggerFailedError, match="HTTP 200"):
        asyncio.run(coordinator.trigger(TriggerParams.info()))


def test_unresolved_run_id_warns_and_resolves_later(clock, polling):
    client = ScriptedJobClient(statuses=[("completed", "success")], lookup_misses=5)
    coordinator = _coordinator(client, clock, polling)

    async def scenario():
        result = await coordinator.trigger(TriggerParams.info())
        assert result.success
        assert result.run_id is None
        assert isinstance(result.warning, RunIdUnresolvedWarning)
        assert coordinator.get_polling_state().is_polling
        return await coordinator.wait()

    outcome = asyncio.run(scenario())

    assert outcome.succeeded
    assert coordinator.run_id == 1001
    assert client.call_count("get_run") == 1


def test_lookup_skips_runs_created_before_dispatch(clock, polling):
    stale = JobRun(
        id=5,
        raw_status="completed",
        raw_conclusion="success",
        created_at=clock.utcnow() - timedelta(hours=1),
    )
    client = ScriptedJobClient(
        statuses=[("completed", "success")], existing_runs=[stale], lookup_misses=1
    )
    coordinator = _coordinator(client, clock, polling)

    result = asyncio.run(coordinator.trigger(TriggerParams.info()))
    coordinator.stop_polling()

    assert result.run_id == 1001


def test_stop_polling_is_idempotent(clock, polling):
    client = ScriptedJobClient(statuses=["in_progress"])
    coordinator = _coordinator(client, clock, polling)

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        coordinator.stop_polling()
        snapshot = coordinator.get_polling_state()
        coordinator.stop_polling()
        for _ in range(10):
            await asyncio.sleep(0)
        return snapshot

    snapshot = asyncio.run(scenario())

    assert snapshot.is_polling is False
    assert coordinator.get_polling_state() == snapshot
    assert coordinator.phase is CoordinatorPhase.IDLE
    assert client.call_count("get_run") == 0


@pytest.mark.parametrize(
    ("statuses", "expected"),
    [
        (["in_progress", ("completed", "success")], OutcomeReason.REMOTE),
        (["in_progress"], OutcomeReason.TIMEOUT),
    ],
)
def test_stop_polling_from_terminal_observer_keeps_outcome(clock, polling, statuses, expected):
    client = ScriptedJobClient(statuses=statuses)
    coordinator = _coordinator(client, clock, polling)
    completions = []

    def stop_when_finished(previous, current, run):
        if current in (COMPLETED, FAILED):
            coordinator.stop_polling()

    coordinator.on_state_change(stop_when_finished)
    coordinator.on_complete(completions.append)

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        return await coordinator.wait()

    outcome = asyncio.run(scenario())

    assert len(completions) == 1
    assert outcome is completions[0]
    assert outcome.reason is expected
    assert coordinator.outcome is outcome
    assert coordinator.phase is CoordinatorPhase.TERMINAL


def test_reset_on_idle_coordinator_is_a_no_op(clock, polling):
    coordinator = _coordinator(ScriptedJobClient(), clock, polling)
    transitions = _record_transitions(coordinator)
    before = coordinator.get_polling_state()

    coordinator.reset()
    coordinator.reset()
    coordinator.stop_polling()

    assert transitions == []
    assert coordinator.get_polling_state() == before
    assert coordinator.state is None


def test_reset_after_completion_relocks_and_notifies_once(clock, polling):
    client = ScriptedJobClient(statuses=[("completed", "success")])
    coordinator = _coordinator(client, clock, polling)
    gate = DownloadGate(coordinator, client)
    transitions = _record_transitions(coordinator)

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        await coordinator.wait()

    asyncio.run(scenario())
    assert gate.is_unlocked()

    coordinator.reset()
    coordinator.reset()

    assert not gate.is_unlocked()
    assert transitions == [(None, COMPLETED), (COMPLETED, None)]
    assert coordinator.run is None
    assert coordinator.get_polling_state().poll_count == 0


class _BlockingClient(ScriptedJobClient):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def get_run(self, run_id, *, retry=True):
        self.entered.set()
        await self.release.wait()
        return await super().get_run(run_id, retry=retry)


def test_stale_tick_cannot_overwrite_state(clock, polling):
    client = _BlockingClient(statuses=[("completed", "success")])
    coordinator = _coordinator(client, clock, polling)
    transitions = _record_transitions(coordinator)

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        await client.entered.wait()
        coordinator.stop_polling()
        client.release.set()
        for _ in range(10):
            await asyncio.sleep(0)

    asyncio.run(scenario())

    assert coordinator.state is None
    assert transitions == []
    assert coordinator.outcome is None


def test_new_trigger_relocks_gate_before_polling(clock, polling):
    client = ScriptedJobClient(statuses=[("completed", "success"), "queued"])
    coordinator = _coordinator(client, clock, polling)
    gate = DownloadGate(coordinator, client)
    transitions = _record_transitions(coordinator)

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        await coordinator.wait()
        assert gate.is_unlocked()
        await coordinator.trigger(TriggerParams.generate(0, 6))
        unlocked = gate.is_unlocked()
        polling_state = coordinator.get_polling_state()
        coordinator.stop_polling()
        return unlocked, polling_state

    unlocked, polling_state = asyncio.run(scenario())

    assert unlocked is False
    assert polling_state.poll_count == 0
    assert polling_state.current_interval == polling.min_interval_sec
    assert (COMPLETED, None) in transitions


def test_trigger_requested_from_observer_is_deferred(clock, polling):
    client = ScriptedJobClient(statuses=[("completed", "success"), ("completed", "success")])
    coordinator = _coordinator(client, clock, polling)
    requested = []
    phases_inside_callback = []

    def retrigger(outcome):
        if requested:
            return
        requested.append(coordinator.request_trigger(TriggerParams.info()))
        phases_inside_callback.append(coordinator.phase)

    coordinator.on_complete(retrigger)

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        first = await coordinator.wait()
        second_trigger = await requested[0]
        second = await coordinator.wait()
        return first, second_trigger, second

    first, second_trigger, second = asyncio.run(scenario())

    assert phases_inside_callback == [CoordinatorPhase.TERMINAL]
    assert first.succeeded
    assert second_trigger.success
    assert second.succeeded
    assert second is not first
    assert client.call_count("trigger_job") == 2


def test_failing_observer_does_not_stop_others(clock, polling, caplog):
    client = ScriptedJobClient(statuses=[("completed", "success")])
    coordinator = _coordinator(client, clock, polling)
    seen = []

    def broken(previous, current, run):
        raise RuntimeError("observer bug")

    coordinator.on_state_change(broken)
    coordinator.on_state_change(lambda previous, current, run: seen.append(current))

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        return await coordinator.wait()

    with caplog.at_level(logging.ERROR, logger="IKFastOnline.lifecycle"):
        outcome = asyncio.run(scenario())

    assert outcome.succeeded
    assert seen == [COMPLETED]
    assert any("failed" in record.getMessage() for record in caplog.records)


def test_async_observers_are_scheduled_not_awaited(clock, polling):
    client = ScriptedJobClient(statuses=["in_progress", ("completed", "success")])
    coordinator = _coordinator(client, clock, polling)
    seen = []

    async def observer(previous, current, run):
        await asyncio.sleep(0)
        seen.append(current)

    coordinator.on_state_change(observer)

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        await coordinator.wait()
        for _ in range(5):
            await asyncio.sleep(0)

    asyncio.run(scenario())

    assert seen == [IN_PROGRESS, COMPLETED]


def test_unsubscribe_stops_notifications(clock, polling):
    client = ScriptedJobClient(statuses=["in_progress", ("completed", "success")])
    coordinator = _coordinator(client, clock, polling)
    seen = []
    unsubscribe = coordinator.on_state_change(lambda previous, current, run: seen.append(current))
    unsubscribe()
    unsubscribe()

    async def scenario():
        await coordinator.trigger(TriggerParams.info())
        await coordinator.wait()

    asyncio.run(scenario())

    assert seen == []


def test_track_attaches_to_existing_run(clock, polling):
    client = ScriptedJobClient(run_id=42, statuses=["in_progress", ("completed", "cancelled")])
    coordinator = _coordinator(client, clock, polling)

    async def scenario():
        await coordinator.track(42)
        return await coordinator.wait()

    outcome = asyncio.run(scenario())

    assert outcome.state is LifecycleState.CANCELLED
    assert coordinator.run_id == 42
    assert client.call_count("trigger_job") == 0


def test_trigger_accepts_mapping_parameters(clock, polling):
    client = ScriptedJobClient(statuses=[("completed", "success")])
    coordinator = _coordinator(client, clock, polling)

    async def scenario():
        await coordinator.trigger({"mode": "generate", "base_link": 0, "ee_link": 6})
        await coordinator.wait()

    asyncio.run(scenario())

    assert client.triggered == [
        {"mode": "generate", "base_link": "0", "ee_link": "6", "iktype": "transform6d"}
    ]


def test_each_poll_makes_exactly_one_request(clock, polling):
    payloads = [
        (503, {"message": "Service Unavailable"}),
        (429, {"message": "Too Many Requests"}),
        (200, {"id": 7, "status": "completed", "conclusion": "success"}),
    ]
    hits = []

    def handler(request: httpx.Request) -> httpx.Response:
        hits.append((request.url.path, clock.now()))
        status, body = payloads[min(len(hits), len(payloads)) - 1]
        return httpx.Response(status, json=body)

    settings = Settings(retry=RetrySettings(max_attempts=3, backoff_base=0.0, backoff_max=0.0))

    async def scenario():
        async with GitHubActionsClient(
            settings, token="ghp_test", transport=httpx.MockTransport(handler)
        ) as client:
            coordinator = _coordinator(client, clock, polling)
            await coordinator.track(7)
            outcome = await coordinator.wait()
            return coordinator, outcome

    coordinator, outcome = asyncio.run(scenario())

    assert outcome.succeeded
    assert coordinator.get_polling_state().poll_count == len(hits) == 3
    assert [path for path, _ in hits] == ["/repos/shine-tong/ikfast-online/actions/runs/7"] * 3
    assert [at for _, at in hits] == [0.0, 5.0, 10.0]
    assert clock.sleeps == [5.0, 5.0]
