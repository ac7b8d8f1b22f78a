# === NAVMAP v1 ===
# {
#   "module": "tests.conftest",
#   "purpose": "Shared pytest fixtures for suite",
#   "sections": [
#     {"id": "isolated-environment", "name": "isolated_environment", "anchor": "fixture-isolated-environment", "kind": "fixture"},
#     {"id": "clock", "name": "clock", "anchor": "fixture-clock", "kind": "fixture"},
#     {"id": "polling", "name": "polling", "anchor": "fixture-polling", "kind": "fixture"}
#   ]
# }
# === /NAVMAP ===

"""
Pytest Configuration

Puts ``src`` on ``sys.path``, registers a deterministic Hypothesis profile,
and isolates every test from ``IKFAST_*`` / ``GITHUB_TOKEN`` variables set in
the developer's shell.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from hypothesis import HealthCheck, settings

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from IKFastOnline.settings import PollingSettings, reset_settings  # noqa: E402
from IKFastOnline.testing import FakeClock  # noqa: E402

settings.register_profile(
    "deterministic",
    derandomize=True,
    deadline=None,
    max_examples=100,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)
settings.load_profile("deterministic")


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Strip configuration variables and keep log files inside ``tmp_path``."""

    for key in list(os.environ):
        if key.upper().startswith("IKFAST_") or key == "GITHUB_TOKEN":
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("IKFAST_LOGGING__EMIT_JSON_LOGS", "false")
    monkeypatch.setenv("IKFAST_LOGGING__LOG_DIR", str(tmp_path / "logs"))
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def polling() -> PollingSettings:
    """Short budget: 5 s floor, 30 s ceiling, 2 minute timeout."""

    return PollingSettings(
        min_interval_sec=5.0,
        max_interval_sec=30.0,
        timeout_sec=120.0,
        run_lookup_attempts=3,
        run_lookup_delay_sec=1.0,
    )
