"""mastodon-orchestrator command-line interface."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, TypeVar

import click
import structlog
import yaml
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm
from rich.table import Table

from mastodon_orchestrator.config import get_settings, load_environment, OrchestratorSettings
from mastodon_orchestrator.domain.errors import (
    ConfigValidationError,
    OrchestrationError,
    PlanAbortedError,
)
from mastodon_orchestrator.domain.models.environment import EnvironmentConfig
from mastodon_orchestrator.domain.models.plan import DeploymentPlan, PlanRun, PlanStatus
from mastodon_orchestrator.domain.models.resource import ResourceKind, ResourceRef
from mastodon_orchestrator.domain.models.secrets import SecretMaterial
from mastodon_orchestrator.domain.models.stage import StageName, StageStatus
from mastodon_orchestrator.domain.ports.cluster import ClusterAPI
from mastodon_orchestrator.domain.ports.repositories import PlanRunRepository
from mastodon_orchestrator.domain.services.orchestrator import (
    DeploymentOrchestrator,
    StageHealth,
    StageReport,
)
from mastodon_orchestrator.domain.services.planner import build_plan
from mastodon_orchestrator.infrastructure.cluster.kubectl import KubectlClusterAPI
from mastodon_orchestrator.infrastructure.messaging.event_publisher import LoggingEventPublisher
from mastodon_orchestrator.infrastructure.observability.logging import setup_logging
from mastodon_orchestrator.infrastructure.observability.metrics import export_metrics
from mastodon_orchestrator.infrastructure.observability.tracing import setup_tracing
from mastodon_orchestrator.infrastructure.persistence.database import DatabaseManager
from mastodon_orchestrator.infrastructure.persistence.repositories.plan_run_repo import (
    SqlPlanRunRepository,
)


logger = structlog.get_logger(__name__)
console = Console()

T = TypeVar("T")

EXIT_OK = 0
EXIT_STAGE_FAILED = 1
EXIT_CONFIG_INVALID = 2

STAGE_CHOICES = [stage.value for stage in StageName]

_STATUS_STYLE = {
    StageStatus.COMPLETE: "green",
    StageStatus.ABORTED: "red",
    StageStatus.FAILED: "red",
    StageStatus.PENDING: "dim",
}

_HEALTH_STYLE = {
    StageHealth.SATISFIED: "green",
    StageHealth.MISSING: "dim",
    StageHealth.DRIFTED: "yellow",
    StageHealth.NOT_READY: "yellow",
    StageHealth.FAILED: "red",
}


def kubectl_cluster(settings: OrchestratorSettings) -> ClusterAPI:
    return KubectlClusterAPI(settings.kubectl)


@dataclass
class CliState:
    """Shared state for one CLI invocation."""

    settings: OrchestratorSettings
    env_file: str | None = None
    cluster_factory: Callable[[OrchestratorSettings], ClusterAPI] = kubectl_cluster
    _cluster: ClusterAPI | None = field(default=None, repr=False)

    def environment(self) -> EnvironmentConfig:
        if not self.env_file:
            raise ConfigValidationError(
                "No environment file given; pass --env-file or set ORCH_ENV_FILE"
            )
        return load_environment(self.env_file)

    def plan(self) -> DeploymentPlan:
        return build_plan(self.environment())

    @property
    def cluster(self) -> ClusterAPI:
        if self._cluster is None:
            self._cluster = self.cluster_factory(self.settings)
        return self._cluster

    def orchestrator(
        self, plan: DeploymentPlan, run_repo: PlanRunRepository | None = None
    ) -> DeploymentOrchestrator:
        return DeploymentOrchestrator(
            plan=plan,
            cluster=self.cluster,
            event_publisher=LoggingEventPublisher(),
            run_repo=run_repo,
            retry_policy=self.settings.retry.policy(),
            poll_policy=self.settings.polling.policy(),
            rollback_on_abort=self.settings.rollback_on_abort,
        )


async def with_ledger(
    settings: OrchestratorSettings,
    action: Callable[[PlanRunRepository], Awaitable[T]],
) -> T:
    """Run ``action`` with a run repository whose writes commit on return."""
    database = DatabaseManager(settings.state)
    await database.initialize()
    try:
        async with database.session() as session:
            return await action(SqlPlanRunRepository(session))
    finally:
        await database.close()


def _fail(message: str, code: int) -> None:
    console.print(f"[bold red]{escape(message)}[/bold red]")
    raise SystemExit(code)


def run_command(coro: Coroutine[Any, Any, T]) -> T:
    """Drive a coroutine and map orchestration errors to exit codes."""
    try:
        return asyncio.run(coro)
    except ConfigValidationError as exc:
        console.print(f"[bold red]Configuration invalid:[/bold red] {escape(exc.message)}")
        for error in exc.errors:
            console.print(f"  - {escape(error)}")
        raise SystemExit(EXIT_CONFIG_INVALID) from exc
    except OrchestrationError as exc:
        console.print(f"[bold red]{escape(str(exc))}[/bold red]")
        raise SystemExit(EXIT_STAGE_FAILED) from exc


def render_ledger(run: PlanRun) -> Table:
    table = Table(title=f"Run {run.id} ({run.status.value})", box=box.SIMPLE)
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Error")
    table.add_column("Rolled back")

    for stage_run in run.stages:
        style = _STATUS_STYLE.get(stage_run.status, "yellow")
        error = f"{stage_run.error_kind}: {stage_run.error_message}" if stage_run.error_kind else ""
        table.add_row(
            stage_run.stage,
            f"[{style}]{stage_run.status.value}[/{style}]",
            str(stage_run.attempt),
            escape(error),
            "yes" if stage_run.rolled_back else "",
        )
    return table


def render_status(reports: list[StageReport]) -> Table:
    table = Table(title="Live status", box=box.SIMPLE)
    table.add_column("Stage", style="cyan")
    table.add_column("Health")
    table.add_column("Detail")
    for report in reports:
        style = _HEALTH_STYLE[report.health]
        table.add_row(report.stage, f"[{style}]{report.health.value}[/{style}]", escape(report.detail))
    return table


def masked_manifest(manifest: dict[str, Any]) -> dict[str, Any]:
    """Copy of a manifest with Secret values replaced."""
    if manifest.get("kind") != ResourceKind.SECRET.value:
        return manifest
    masked = dict(manifest)
    masked["data"] = {key: "***" for key in manifest.get("data") or {}}
    return masked


@contextlib.contextmanager
def cancel_on_signals(cancel: asyncio.Event):
    """Set ``cancel`` on SIGINT/SIGTERM while the block runs."""
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("signal_handler_unavailable", signal=sig.name)
            continue
        installed.append(sig)
    try:
        yield
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


@click.group()
@click.version_option(version="1.0.0", prog_name="mastodon-orchestrator")
@click.option(
    "--env-file",
    "-f",
    envvar="ORCH_ENV_FILE",
    type=click.Path(dir_okay=False),
    help="Environment YAML file",
)
@click.option("--log-level", default=None, help="Log level (overrides LOG_LEVEL)")
@click.option("--json-logs/--console-logs", default=None, help="Log format")
@click.pass_context
def cli(ctx: click.Context, env_file: str | None, log_level: str | None, json_logs: bool | None):
    """
    Stage-by-stage Mastodon rollout on a bare-metal cluster.

    \b
    Stages, in order:
      storage, core-services, secret-generation, config-materialization,
      application-services, migration, exposure

    \b
    Typical use:
      mastodon-orchestrator -f prod.yaml plan
      mastodon-orchestrator -f prod.yaml apply all
      mastodon-orchestrator -f prod.yaml status
    """
    state = ctx.obj if isinstance(ctx.obj, CliState) else CliState(settings=get_settings())
    if env_file:
        state.env_file = env_file
    ctx.obj = state

    observability = state.settings.observability
    setup_logging(
        log_level or observability.log_level,
        observability.json_logs if json_logs is None else json_logs,
    )
    setup_tracing(observability)
    if observability.metrics_textfile:
        ctx.call_on_close(lambda: export_metrics(observability.metrics_textfile))


@cli.command()
@click.option("--show-manifests", is_flag=True, help="Print rendered manifests (Secret data masked)")
@click.pass_obj
def plan(state: CliState, show_manifests: bool):
    """Show the stages and resources for the environment."""

    async def _plan() -> DeploymentPlan:
        return state.plan()

    deployment_plan = run_command(_plan())

    table = Table(
        title=f"Plan for {deployment_plan.environment} (namespace {deployment_plan.namespace})",
        box=box.SIMPLE,
    )
    table.add_column("#", justify="right")
    table.add_column("Stage", style="cyan")
    table.add_column("Depends on")
    table.add_column("Resources")
    table.add_column("Readiness")
    table.add_column("Rollback")
    for index, stage in enumerate(deployment_plan.topological_order(), start=1):
        table.add_row(
            str(index),
            stage.name,
            ", ".join(stage.depends_on),
            "\n".join(str(ref) for ref in stage.produced_refs()),
            "\n".join(str(probe) for probe in stage.readiness),
            "yes" if stage.rollback_allowed else "[red]manual[/red]",
        )
    console.print(table)

    if show_manifests:
        for stage, spec in deployment_plan.all_resources():
            material = None
            if spec.secret_inputs:
                material = SecretMaterial.from_plain({key: "" for key in spec.secret_inputs})
            manifest = masked_manifest(spec.manifest(deployment_plan.namespace, material))
            console.print(f"# {stage.name}: {spec.ref}", style="dim")
            console.print(
                yaml.safe_dump(manifest, sort_keys=False), end="", markup=False, highlight=False
            )
            console.print("---")


@cli.command()
@click.argument("stage", type=click.Choice(["all", *STAGE_CHOICES]))
@click.pass_obj
def apply(state: CliState, stage: str):
    """Run every stage (all) or one stage whose predecessors are live."""

    async def _apply() -> tuple[PlanRun, PlanAbortedError | None]:
        deployment_plan = state.plan()
        cancel = asyncio.Event()

        async def _execute(repo: PlanRunRepository) -> tuple[PlanRun, PlanAbortedError | None]:
            orchestrator = state.orchestrator(deployment_plan, repo)
            try:
                run = await orchestrator.execute(
                    only=None if stage == "all" else stage, cancel=cancel
                )
            except PlanAbortedError as exc:
                return exc.run, exc
            return run, None

        with cancel_on_signals(cancel):
            return await with_ledger(state.settings, _execute)

    run, aborted = run_command(_apply())
    console.print(render_ledger(run))
    if aborted is not None:
        _fail(
            f"Stage {aborted.stage} failed: {aborted.kind.value}: {aborted.message}",
            EXIT_STAGE_FAILED,
        )
    console.print(f"[bold green]Plan {run.status.value}[/bold green]")


@cli.command()
@click.pass_obj
def status(state: CliState):
    """Show live stage health and the last recorded run."""

    async def _status() -> tuple[list[StageReport], PlanRun | None]:
        deployment_plan = state.plan()
        reports = await state.orchestrator(deployment_plan).status()

        async def _latest(repo: PlanRunRepository) -> PlanRun | None:
            return await repo.latest_for_environment(deployment_plan.environment)

        return reports, await with_ledger(state.settings, _latest)

    reports, latest = run_command(_status())
    console.print(render_status(reports))
    if latest is None:
        console.print("[dim]No recorded runs[/dim]")
    else:
        console.print(render_ledger(latest))


@cli.command()
@click.option("--limit", default=10, show_default=True, help="Number of runs to show")
@click.pass_obj
def history(state: CliState, limit: int):
    """List recorded plan runs, newest first."""

    async def _history() -> list[PlanRun]:
        environment = state.environment()

        async def _list(repo: PlanRunRepository) -> list[PlanRun]:
            return await repo.list_by_environment(environment.name, limit=limit)

        return await with_ledger(state.settings, _list)

    runs = run_command(_history())
    table = Table(title="Plan runs", box=box.SIMPLE)
    table.add_column("Run", style="cyan")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Completed stages")
    table.add_column("Failed stage")
    for run in runs:
        style = "green" if run.status == PlanStatus.COMPLETE else "red"
        table.add_row(
            run.id,
            run.created_at.isoformat(timespec="seconds"),
            f"[{style}]{run.status.value}[/{style}]",
            str(len(run.completed_stages)),
            run.failed_stage or "",
        )
    console.print(table)


@cli.command()
@click.argument("stage", type=click.Choice(STAGE_CHOICES))
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_obj
def rollback(state: CliState, stage: str, yes: bool):
    """Delete the resources a stage created.

    Uses the last recorded run to find what the stage created; without
    one, every resource the stage declares is deleted.
    """
    if not yes and not Confirm.ask(
        f"[bold red]Delete the resources of stage {stage}?[/bold red]", default=False
    ):
        console.print("[yellow]Rollback cancelled[/yellow]")
        raise SystemExit(EXIT_OK)

    async def _rollback() -> list[ResourceRef]:
        deployment_plan = state.plan()
        orchestrator = state.orchestrator(deployment_plan)

        async def _created(repo: PlanRunRepository) -> list[ResourceRef] | None:
            latest = await repo.latest_for_environment(deployment_plan.environment)
            if latest is None:
                return None
            try:
                stage_run = latest.stage_run(stage)
            except KeyError:
                return None
            return list(stage_run.created_resources) or None

        created = await with_ledger(state.settings, _created)
        return await orchestrator.rollback(orchestrator.get_stage(stage), created=created)

    deleted = run_command(_rollback())
    for ref in deleted:
        console.print(f"  deleted [cyan]{ref}[/cyan]")
    console.print(f"[bold green]Rolled back {stage}: {len(deleted)} resource(s) deleted[/bold green]")


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_obj
def destroy(state: CliState, yes: bool):
    """Delete every resource of the environment, exposure first.

    \b
    Warning: the NFS exports are kept (volumes use the Retain policy),
    but the generated application secrets are deleted and cannot be
    recovered.
    """
    if not yes and not Confirm.ask(
        "[bold red]Destroy the whole Mastodon deployment?[/bold red]", default=False
    ):
        console.print("[yellow]Destroy cancelled[/yellow]")
        raise SystemExit(EXIT_OK)

    async def _destroy() -> list[ResourceRef]:
        return await state.orchestrator(state.plan()).destroy()

    deleted = run_command(_destroy())
    console.print(f"[bold]Deleted {len(deleted)} resource(s)[/bold]")
