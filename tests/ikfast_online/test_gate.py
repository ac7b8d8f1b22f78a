# === NAVMAP v1 ===
# {
#   "module": "tests.ikfast_online.test_gate",
#   "purpose": "Download gate: locking, bundle lookup, verification outcomes, cache invalidation",
#   "sections": [
#     {"id": "tests", "name": "Test Cases", "anchor": "TST", "kind": "tests"}
#   ]
# }
# === /NAVMAP ===

"""Download gate behaviour against a scripted run."""

from __future__ import annotations

import asyncio
import hashlib

import pytest

from IKFastOnline.errors import (
    ArtifactNotFoundError,
    ChecksumMismatchError,
    EmptyArtifactError,
    GateClosedError,
)
from IKFastOnline.gate import DownloadGate
from IKFastOnline.lifecycle import JobLifecycleCoordinator
from IKFastOnline.parameters import TriggerParams
from IKFastOnline.testing import ScriptedJobClient, build_bundle

SOLVER = b"// IKFast solver\nint main() { return 0; }\n"
SOLVER_DIGEST = hashlib.sha256(SOLVER).hexdigest()


def _build_log(digest: str) -> str:
    return (
        "Generating solver...\n"
        "IKFast: solver written\n"
        f"{digest}  outputs/ikfast_solver.cpp\n"
        "Done\n"
    )


def _setup(clock, polling, *, statuses=(("completed", "success"),)):
    client = ScriptedJobClient(statuses=list(statuses))
    coordinator = JobLifecycleCoordinator(
        client, job_definition_id="ikfast.yml", polling=polling, clock=clock
    )
    gate = DownloadGate(coordinator, client)
    return client, coordinator, gate


async def _run_to_end(coordinator, params=None):
    await coordinator.trigger(params or TriggerParams.generate(0, 6))
    return await coordinator.wait()


def test_gate_is_locked_before_any_job(clock, polling):
    _, _, gate = _setup(clock, polling)

    assert not gate.is_unlocked()
    with pytest.raises(GateClosedError, match="idle"):
        asyncio.run(gate.fetch_named_file("ikfast_solver.cpp"))


def test_fetch_without_checksum_is_unverified(clock, polling):
    client, coordinator, gate = _setup(clock, polling)
    client.add_bundle({"outputs/ikfast_solver.cpp": SOLVER, "build.log": "no digest here\n"})

    async def scenario():
        await _run_to_end(coordinator)
        return await gate.fetch_named_file("ikfast_solver.cpp")

    fetched = asyncio.run(scenario())

    assert fetched.content == SOLVER
    assert fetched.size == len(SOLVER)
    assert fetched.verification.valid
    assert not fetched.verified
    assert fetched.verification.status == "unverified"
    assert fetched.log_text == "no digest here\n"


def test_fetch_with_matching_checksum_is_verified(clock, polling):
    client, coordinator, gate = _setup(clock, polling)
    client.add_bundle(
        {"outputs/ikfast_solver.cpp": SOLVER, "build.log": _build_log(SOLVER_DIGEST.upper())}
    )

    async def scenario():
        await _run_to_end(coordinator)
        return await gate.fetch_named_file("ikfast_solver.cpp")

    fetched = asyncio.run(scenario())

    assert fetched.verified
    assert fetched.verification.expected_digest == SOLVER_DIGEST
    assert fetched.verification.actual_digest == SOLVER_DIGEST


def test_fetch_with_mismatched_checksum_raises(clock, polling):
    client, coordinator, gate = _setup(clock, polling)
    client.add_bundle(
        {"outputs/ikfast_solver.cpp": SOLVER + b"tampered", "build.log": _build_log(SOLVER_DIGEST)}
    )

    async def scenario():
        await _run_to_end(coordinator)
        return await gate.fetch_named_file("ikfast_solver.cpp")

    with pytest.raises(ChecksumMismatchError) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.expected == SOLVER_DIGEST
    assert excinfo.value.actual != SOLVER_DIGEST


def test_missing_bundle_is_reported(clock, polling):
    _, coordinator, gate = _setup(clock, polling)

    async def scenario():
        await _run_to_end(coordinator)
        return await gate.fetch_named_file("ikfast_solver.cpp")

    with pytest.raises(ArtifactNotFoundError) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.artifact_name == "ikfast-result"
    assert excinfo.value.reason == "missing"
    assert excinfo.value.filename is None


def test_expired_bundle_is_reported(clock, polling):
    client, coordinator, gate = _setup(clock, polling)
    client.add_bundle({"outputs/ikfast_solver.cpp": SOLVER}, expired=True)

    async def scenario():
        await _run_to_end(coordinator)
        return await gate.fetch_named_file("ikfast_solver.cpp")

    with pytest.raises(ArtifactNotFoundError) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.reason == "expired"
    assert client.call_count("download_artifact") == 0


def test_missing_member_is_reported(clock, polling):
    client, coordinator, gate = _setup(clock, polling)
    client.add_bundle({"build.log": "log\n"})

    async def scenario():
        await _run_to_end(coordinator)
        return await gate.fetch_named_file("ikfast_solver.cpp")

    with pytest.raises(ArtifactNotFoundError) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.filename == "ikfast_solver.cpp"


def test_empty_file_is_rejected(clock, polling):
    client, coordinator, gate = _setup(clock, polling)
    client.add_bundle({"outputs/ikfast_solver.cpp": b"", "build.log": "log\n"})

    async def scenario():
        await _run_to_end(coordinator)
        return await gate.fetch_named_file("ikfast_solver.cpp")

    with pytest.raises(EmptyArtifactError):
        asyncio.run(scenario())


@pytest.mark.parametrize("conclusion", ["failure", "cancelled", "skipped"])
def test_gate_stays_locked_unless_run_succeeded(clock, polling, conclusion):
    client, coordinator, gate = _setup(clock, polling, statuses=[("completed", conclusion)])
    client.add_bundle({"outputs/ikfast_solver.cpp": SOLVER})

    async def scenario():
        await _run_to_end(coordinator)
        assert not gate.is_unlocked()
        await gate.fetch_named_file("ikfast_solver.cpp")

    with pytest.raises(GateClosedError):
        asyncio.run(scenario())

    assert client.call_count("list_artifacts") == 0


def test_checksum_falls_back_to_run_logs(clock, polling):
    client, coordinator, gate = _setup(clock, polling)
    client.add_bundle({"outputs/ikfast_solver.cpp": SOLVER})
    client.logs[client.run_id] = build_bundle(
        {"1_setup.txt": "setup\n", "2_generate.txt": _build_log(SOLVER_DIGEST)}
    )

    async def scenario():
        await _run_to_end(coordinator)
        return await gate.fetch_named_file("ikfast_solver.cpp")

    fetched = asyncio.run(scenario())

    assert fetched.verified
    assert client.call_count("get_logs") == 1


def test_unavailable_run_logs_degrade_to_size_check(clock, polling):
    client, coordinator, gate = _setup(clock, polling)
    client.add_bundle({"outputs/ikfast_solver.cpp": SOLVER})

    async def scenario():
        await _run_to_end(coordinator)
        return await gate.fetch_named_file("ikfast_solver.cpp")

    fetched = asyncio.run(scenario())

    assert fetched.verification.status == "unverified"
    assert fetched.log_text is None


def test_non_solver_files_are_not_checksummed(clock, polling):
    client, coordinator, gate = _setup(clock, polling)
    log = _build_log("0" * 64)
    client.add_bundle({"outputs/ikfast_solver.cpp": SOLVER, "build.log": log})

    async def scenario():
        await _run_to_end(coordinator)
        return await gate.fetch_named_file("build.log")

    fetched = asyncio.run(scenario())

    assert fetched.content == log.encode()
    assert fetched.verification.status == "unverified"
    assert client.call_count("get_logs") == 0


def test_bundle_download_is_cached_per_run(clock, polling):
    client, coordinator, gate = _setup(clock, polling)
    client.add_bundle({"outputs/ikfast_solver.cpp": SOLVER, "build.log": _build_log(SOLVER_DIGEST)})

    async def scenario():
        await _run_to_end(coordinator)
        await gate.fetch_named_file("ikfast_solver.cpp")
        await gate.fetch_named_file("build.log")

    asyncio.run(scenario())

    assert client.call_count("list_artifacts") == 1
    assert client.call_count("download_artifact") == 1


def test_new_trigger_drops_cache_and_relocks(clock, polling):
    client, coordinator, gate = _setup(
        clock, polling, statuses=[("completed", "success"), ("completed", "success")]
    )
    client.add_bundle({"outputs/ikfast_solver.cpp": SOLVER})

    async def scenario():
        await _run_to_end(coordinator)
        await gate.list_artifacts()
        await coordinator.trigger(TriggerParams.info())
        locked_after_trigger = not gate.is_unlocked()
        await coordinator.wait()
        await gate.list_artifacts()
        return locked_after_trigger

    locked_after_trigger = asyncio.run(scenario())

    assert locked_after_trigger
    assert client.call_count("list_artifacts") == 2


class _ResettingClient(ScriptedJobClient):
    coordinator = None

    async def download_artifact(self, artifact_id):
        data = await super().download_artifact(artifact_id)
        self.coordinator.reset()
        return data


def test_run_change_during_fetch_discards_result(clock, polling):
    client = _ResettingClient(statuses=[("completed", "success")])
    coordinator = JobLifecycleCoordinator(
        client, job_definition_id="ikfast.yml", polling=polling, clock=clock
    )
    client.coordinator = coordinator
    gate = DownloadGate(coordinator, client)
    client.add_bundle({"outputs/ikfast_solver.cpp": SOLVER})

    async def scenario():
        await _run_to_end(coordinator)
        await gate.fetch_named_file("ikfast_solver.cpp")

    with pytest.raises(GateClosedError, match="changed"):
        asyncio.run(scenario())


def test_closed_gate_stops_listening(clock, polling):
    client, coordinator, gate = _setup(clock, polling)
    gate.close()

    asyncio.run(_run_to_end(coordinator))

    # Unlocking is derived from the coordinator, so it still reflects the run.
    assert gate.is_unlocked()
