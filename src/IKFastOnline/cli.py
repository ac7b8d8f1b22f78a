# === NAVMAP v1 ===
# {
#   "module": "IKFastOnline.cli",
#   "purpose": "Typer command line: upload a robot description, list links, generate a solver, watch runs, check quota",
#   "sections": [
#     {"id": "main", "name": "main", "anchor": "function-main", "kind": "function"},
#     {"id": "upload", "name": "upload", "anchor": "function-upload", "kind": "function"},
#     {"id": "links", "name": "links", "anchor": "function-links", "kind": "function"},
#     {"id": "generate", "name": "generate", "anchor": "function-generate", "kind": "function"},
#     {"id": "status", "name": "status", "anchor": "function-status", "kind": "function"},
#     {"id": "quota", "name": "quota", "anchor": "function-quota", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Command line interface for the remote IKFast solver generator.

Typical session::

    $ export GITHUB_TOKEN=ghp_...
    $ ikfast-online upload robot.urdf
    $ ikfast-online links
    $ ikfast-online generate --base-link 0 --ee-link 6 --output ./solver
    $ ikfast-online status --watch

Every command exits 0 on success and 1 on a reported failure, with the
reason printed to stderr.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Optional, Tuple, TypeVar

import typer
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.table import Table

from .clock import Clock, SystemClock
from .errors import ConfigurationError, IKFastOnlineError
from .gate import DownloadGate
from .lifecycle import JobLifecycleCoordinator
from .logging_config import setup_logging
from .logs import parse_link_info
from .messages import describe_error, describe_outcome
from .models import JobOutcome, JobRun, LifecycleState
from .network.client import GitHubActionsClient
from .parameters import TriggerParams
from .quota import check_quota_warning
from .settings import DEFAULT_IK_TYPE, LoggingSettings, Settings, load_settings
from .uploads import upload_input

T = TypeVar("T")

_console = Console()

app = typer.Typer(
    name="ikfast-online",
    help="Generate IKFast solvers on a remote CI runner",
    no_args_is_help=True,
)


@dataclass
class CliState:
    settings: Settings
    token: Optional[str]


def _create_client(settings: Settings, token: Optional[str]) -> GitHubActionsClient:
    return GitHubActionsClient(settings, token=token)


def _create_clock() -> Clock:
    return SystemClock()


def _fail(message: str) -> typer.Exit:
    typer.echo(f"Error: {message}", err=True)
    return typer.Exit(code=1)


def _run(awaitable: Awaitable[T]) -> T:
    try:
        return asyncio.run(awaitable)  # type: ignore[arg-type]
    except IKFastOnlineError as exc:
        raise _fail(describe_error(exc)) from exc


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj


def _echo_transition(
    previous: Optional[LifecycleState], current: Optional[LifecycleState], run: Optional[JobRun]
) -> None:
    if current is None:
        return
    label = f"run {run.id}" if run is not None else "run"
    typer.echo(f"{label}: {current.value}")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="YAML settings file", dir_okay=False
    ),
    token: Optional[str] = typer.Option(
        None, "--token", envvar="GITHUB_TOKEN", help="GitHub token with repo and workflow scope"
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
) -> None:
    """Load settings and configure logging for the invoked command."""

    try:
        settings = load_settings(config)
        if log_level:
            logging_settings = LoggingSettings(
                **{**settings.logging.model_dump(), "level": log_level}
            )
            settings = settings.model_copy(update={"logging": logging_settings})
    except PydanticValidationError as exc:
        raise _fail(f"Configuration problem: invalid --log-level {log_level!r}") from exc
    except ConfigurationError as exc:
        raise _fail(describe_error(exc)) from exc
    setup_logging(settings.logging)
    ctx.obj = CliState(settings=settings, token=token)


async def _trigger_and_wait(
    state: CliState, client: GitHubActionsClient, params: TriggerParams
) -> Tuple[DownloadGate, Optional[JobOutcome]]:
    coordinator = JobLifecycleCoordinator.from_settings(
        client, state.settings, clock=_create_clock()
    )
    gate = DownloadGate(coordinator, client, artifacts=state.settings.artifacts)
    coordinator.on_state_change(_echo_transition)
    result = await coordinator.trigger(params)
    if result.warning is not None:
        typer.echo(f"Warning: {result.warning}", err=True)
    typer.echo(f"Triggered {params.mode} job" + (f" (run {result.run_id})" if result.run_id else ""))
    return gate, await coordinator.wait()


@app.command()
def upload(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="Robot description (.urdf)"),
) -> None:
    """Validate a robot description and store it as the job input."""

    state = _state(ctx)

    async def _upload():
        async with _create_client(state.settings, state.token) as client:
            return await upload_input(
                client,
                file,
                repository=state.settings.repository,
                settings=state.settings.upload,
            )

    result = _run(_upload())
    verb = "Replaced" if result.replaced else "Created"
    typer.echo(f"{verb} {result.path} ({result.size} bytes)")


@app.command()
def links(ctx: typer.Context) -> None:
    """Run the job in info mode and print the robot's link table."""

    state = _state(ctx)

    async def _links():
        async with _create_client(state.settings, state.token) as client:
            gate, outcome = await _trigger_and_wait(state, client, TriggerParams.info())
            if outcome is None or not outcome.succeeded:
                return outcome, None
            fetched = await gate.fetch_named_file(state.settings.artifacts.info_log_filename)
            return outcome, fetched.content.decode("utf-8", errors="replace")

    outcome, log_text = _run(_links())
    if log_text is None:
        raise _fail(describe_outcome(outcome) if outcome else "The job did not run.")
    rows = parse_link_info(log_text)
    if not rows:
        raise _fail("No link information was found in the job log.")

    table = Table(title="Robot links")
    table.add_column("Index", justify="right")
    table.add_column("Name")
    table.add_column("Parent")
    table.add_column("Role")
    for link in rows:
        role = "root" if link.is_root else ("leaf" if link.is_leaf else "")
        table.add_row(str(link.index), link.name, link.parent or "-", role)
    _console.print(table)


@app.command()
def generate(
    ctx: typer.Context,
    base_link: int = typer.Option(..., "--base-link", help="Index of the base link"),
    ee_link: int = typer.Option(..., "--ee-link", help="Index of the end-effector link"),
    ik_type: str = typer.Option(DEFAULT_IK_TYPE, "--ik-type", help="IKFast solver type"),
    output: Path = typer.Option(Path("."), "--output", "-o", file_okay=False, help="Output directory"),
) -> None:
    """Generate a solver for the chosen links and download it."""

    state = _state(ctx)
    try:
        params = TriggerParams.generate(base_link, ee_link, ik_type)
    except IKFastOnlineError as exc:
        raise _fail(describe_error(exc)) from exc

    async def _generate():
        async with _create_client(state.settings, state.token) as client:
            gate, outcome = await _trigger_and_wait(state, client, params)
            if outcome is None or not outcome.succeeded:
                return outcome, None
            return outcome, await gate.fetch_named_file(state.settings.artifacts.solver_filename)

    outcome, fetched = _run(_generate())
    if fetched is None:
        raise _fail(describe_outcome(outcome) if outcome else "The job did not run.")

    output.mkdir(parents=True, exist_ok=True)
    target = output / state.settings.artifacts.solver_filename
    target.write_bytes(fetched.content)
    if fetched.log_text:
        (output / state.settings.artifacts.log_filename).write_text(fetched.log_text, encoding="utf-8")
    if fetched.verified:
        detail = f"sha256 {fetched.verification.actual_digest} verified"
    else:
        detail = "no checksum recorded, size check only"
    typer.echo(f"Wrote {target} ({fetched.size} bytes, {detail})")


@app.command()
def status(
    ctx: typer.Context,
    run_id: Optional[int] = typer.Argument(None, help="Run id; defaults to the most recent run"),
    watch: bool = typer.Option(False, "--watch", "-w", help="Poll until the run finishes"),
) -> None:
    """Show the state of a run, optionally following it to completion."""

    state = _state(ctx)
    settings = state.settings

    async def _status():
        async with _create_client(settings, state.token) as client:
            target = run_id
            if target is None:
                latest = await client.get_most_recent_run(settings.repository.workflow_file)
                if latest is None:
                    return None, None
                target = latest.id
            run = await client.get_run(target)
            if not watch or run.lifecycle_state.is_terminal:
                return run, None
            coordinator = JobLifecycleCoordinator.from_settings(
                client, settings, clock=_create_clock()
            )
            coordinator.on_state_change(_echo_transition)
            await coordinator.track(target)
            return run, await coordinator.wait()

    run, outcome = _run(_status())
    if run is None:
        typer.echo("No runs found.")
        return
    typer.echo(f"run {run.id}: {run.lifecycle_state.value}")
    if run.html_url:
        typer.echo(run.html_url)
    if outcome is not None:
        typer.echo(describe_outcome(outcome))
        if not outcome.succeeded:
            raise typer.Exit(code=1)


@app.command()
def quota(ctx: typer.Context) -> None:
    """Report GitHub Actions minutes usage."""

    state = _state(ctx)

    async def _quota():
        async with _create_client(state.settings, state.token) as client:
            return await check_quota_warning(client, state.settings.quota.warning_threshold)

    result = _run(_quota())
    if result is None:
        typer.echo("Billing usage is not visible to this token.")
        return
    prefix = "Warning: " if result.should_warn else ""
    typer.echo(f"{prefix}{result.message}")


__all__ = ["app"]
