"""Deployment orchestrator: executes a plan against the cluster API."""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any

import structlog

from mastodon_orchestrator.domain.errors import (
    ApplyFailedError,
    ClusterAPIError,
    ErrorKind,
    ExtractionIncompleteError,
    OrchestrationCancelledError,
    OrchestrationError,
    PlanAbortedError,
    PlanValidationError,
    ProbeFailedError,
    ReadinessTimeoutError,
    RollbackRefusedError,
    UnsatisfiedDependencyError,
)
from mastodon_orchestrator.domain.models.base import ValueObject
from mastodon_orchestrator.domain.models.plan import DeploymentPlan, PlanRun
from mastodon_orchestrator.domain.models.policy import PollPolicy, RetryPolicy
from mastodon_orchestrator.domain.models.resource import (
    APPLY_PRIORITY,
    IMMUTABLE_KINDS,
    manifest_matches,
    ResourceAction,
    ResourceChange,
    ResourceKind,
    ResourceRef,
    ResourceSpec,
)
from mastodon_orchestrator.domain.models.secrets import parse_secret_output, SecretMaterial
from mastodon_orchestrator.domain.models.stage import (
    ExtractionStep,
    ProbeKind,
    ReadinessProbe,
    Stage,
    StageStatus,
)
from mastodon_orchestrator.domain.ports.cluster import ClusterAPI
from mastodon_orchestrator.domain.ports.repositories import PlanRunRepository
from mastodon_orchestrator.domain.ports.services import EventPublisher
from mastodon_orchestrator.infrastructure.observability.metrics import (
    PLAN_RUNS_TOTAL,
    READINESS_POLLS_TOTAL,
    RESOURCE_OPERATIONS_TOTAL,
    STAGE_DURATION,
    STAGE_RETRIES,
    STAGE_RUNS_TOTAL,
)
from mastodon_orchestrator.infrastructure.observability.tracing import get_tracer


logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)


class StageHealth(str, Enum):
    """Live condition of a stage as seen in the cluster right now."""

    SATISFIED = "satisfied"
    MISSING = "missing"
    DRIFTED = "drifted"
    NOT_READY = "not_ready"
    FAILED = "failed"


class StageReport(ValueObject):
    stage: str
    health: StageHealth
    detail: str = ""


class DeploymentOrchestrator:
    """Runs a DeploymentPlan stage by stage against a cluster.

    Each stage goes apply -> await-ready -> (extract) -> complete. Timeouts
    and transient API failures are retried with exponential backoff; any
    other failure aborts the plan and, where the stage allows it, deletes
    what the stage created. Cluster state is re-read on every decision;
    nothing about the cluster is cached between calls.
    """

    def __init__(
        self,
        plan: DeploymentPlan,
        cluster: ClusterAPI,
        event_publisher: EventPublisher,
        run_repo: PlanRunRepository | None = None,
        retry_policy: RetryPolicy | None = None,
        poll_policy: PollPolicy | None = None,
        rollback_on_abort: bool = True,
    ) -> None:
        plan.validate()
        self._plan = plan
        self._cluster = cluster
        self._event_publisher = event_publisher
        self._run_repo = run_repo
        self._retry = retry_policy or RetryPolicy()
        self._poll = poll_policy or PollPolicy()
        self._rollback_on_abort = rollback_on_abort
        self._save_lock = asyncio.Lock()

    @property
    def plan(self) -> DeploymentPlan:
        return self._plan

    @property
    def namespace(self) -> str:
        return self._plan.namespace

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def get_stage(self, name: str) -> Stage:
        stage = self._plan.get_stage(name)
        if stage is None:
            raise PlanValidationError(
                f"Unknown stage {name}; expected one of {', '.join(self._plan.stage_names)}"
            )
        return stage

    async def _publish_events(self, run: PlanRun) -> None:
        """Collect and publish all pending domain events from the run."""
        for event in run.collect_events():
            await self._event_publisher.publish(event.event_type, event.model_dump(mode="json"))

    async def _save(self, run: PlanRun, new: bool = False) -> None:
        if self._run_repo is None:
            return
        # Stages of one wave share the repository session.
        async with self._save_lock:
            if new:
                await self._run_repo.save(run)
            else:
                await self._run_repo.update(run)

    async def _get(self, ref: ResourceRef, stage: str | None) -> dict[str, Any] | None:
        try:
            return await self._cluster.get(ref, self.namespace)
        except ClusterAPIError as exc:
            raise ApplyFailedError(
                f"cannot read {ref}: {exc}", stage=stage, transient=exc.transient
            ) from exc

    @staticmethod
    def _check_cancel(cancel: asyncio.Event | None, stage: str) -> None:
        if cancel is not None and cancel.is_set():
            raise OrchestrationCancelledError("cancellation requested", stage=stage)

    @staticmethod
    async def _sleep(delay: float, cancel: asyncio.Event | None, stage: str) -> None:
        """Sleep cooperatively; wake early and raise when cancelled."""
        if cancel is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise OrchestrationCancelledError("cancellation requested", stage=stage)

    def _extraction_step(self, stage: str) -> ExtractionStep:
        for candidate in self._plan.stages:
            if candidate.extraction is not None:
                return candidate.extraction
        raise UnsatisfiedDependencyError(
            "no stage of the plan generates secret material", stage=stage
        )

    async def _read_generated_secret(
        self, step: ExtractionStep, stage: str
    ) -> SecretMaterial | None:
        live = await self._get(step.target_ref, stage)
        if live is None:
            return None
        return SecretMaterial.from_encoded(live.get("data") or {})

    async def _material_for(self, stage: Stage) -> SecretMaterial:
        step = self._extraction_step(stage.name)
        material = await self._read_generated_secret(step, stage.name)
        if material is None:
            raise UnsatisfiedDependencyError(
                f"secret material {step.target_secret} has not been generated yet",
                stage=stage.name,
                missing=[str(step.target_ref)],
            )
        missing = material.missing(step.required_keys)
        if missing:
            raise ExtractionIncompleteError(
                f"{step.target_secret} lacks {', '.join(missing)}",
                stage=stage.name,
                missing=missing,
            )
        return material

    @staticmethod
    def _ledger_summary(run: PlanRun) -> list[str]:
        return [f"{s.stage}={s.status.value}" for s in run.stages]

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply(self, stage: Stage) -> list[ResourceChange]:
        """Submit every resource of the stage; matching resources are left alone."""
        changes: list[ResourceChange] = []
        await self._apply(stage, changes, cancel=None)
        return changes

    async def _apply(
        self,
        stage: Stage,
        changes: list[ResourceChange],
        cancel: asyncio.Event | None,
    ) -> None:
        await self._check_dependencies(stage)
        material = await self._material_for(stage) if stage.needs_secret_material else None

        for group in stage.apply_groups():
            self._check_cancel(cancel, stage.name)
            results = await asyncio.gather(
                *(self._apply_resource(stage, spec, material) for spec in group),
                return_exceptions=True,
            )
            changes.extend(r for r in results if isinstance(r, ResourceChange))
            errors = [r for r in results if isinstance(r, BaseException)]
            if errors:
                raise errors[0]

        logger.info(
            "stage_applied",
            stage=stage.name,
            mutated=[f"{c.ref}:{c.action.value}" for c in changes if c.mutated],
            unchanged=sum(1 for c in changes if not c.mutated),
        )

    async def _check_dependencies(self, stage: Stage) -> None:
        """Every referenced object outside this stage must already exist."""
        own = set(stage.produced_refs())
        external = {
            dep
            for spec in stage.resources
            for dep in spec.depends_on
            if dep not in own
        }
        missing = [
            str(dep)
            for dep in sorted(external, key=str)
            if await self._get(dep, stage.name) is None
        ]
        if missing:
            raise UnsatisfiedDependencyError(
                f"{stage.name} requires {', '.join(missing)}, which do not exist yet",
                stage=stage.name,
                missing=missing,
            )

    async def _apply_resource(
        self, stage: Stage, spec: ResourceSpec, material: SecretMaterial | None
    ) -> ResourceChange:
        manifest = spec.manifest(self.namespace, material)
        try:
            live = await self._cluster.get(spec.ref, self.namespace)
            if live is None:
                await self._cluster.create(manifest, self.namespace)
                action = ResourceAction.CREATED
            elif manifest_matches(manifest, live):
                action = ResourceAction.UNCHANGED
            elif spec.kind in IMMUTABLE_KINDS:
                await self._cluster.delete(spec.ref, self.namespace)
                await self._cluster.create(manifest, self.namespace)
                action = ResourceAction.RECREATED
            else:
                await self._cluster.update(manifest, self.namespace)
                action = ResourceAction.UPDATED
        except ClusterAPIError as exc:
            raise ApplyFailedError(
                f"{spec.ref} rejected by the cluster: {exc}",
                stage=stage.name,
                transient=exc.transient,
            ) from exc

        RESOURCE_OPERATIONS_TOTAL.labels(kind=spec.kind.value, action=action.value).inc()
        change = ResourceChange(ref=spec.ref, action=action)
        log = logger.info if change.mutated else logger.debug
        log("resource_applied", stage=stage.name, resource=str(spec.ref), action=action.value)
        return change

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    async def await_ready(
        self,
        stage: Stage,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Poll the stage's probes until all pass, with growing intervals.

        Raises ReadinessTimeoutError when the timeout elapses first and
        ProbeFailedError as soon as a member reports a failed state.
        """
        if timeout is None:
            timeout = stage.timeout_seconds or self._poll.timeout
        await self._await_probes(stage.name, stage.readiness, timeout, cancel)

    async def _await_probes(
        self,
        stage: str,
        probes: list[ReadinessProbe],
        timeout: float,
        cancel: asyncio.Event | None,
    ) -> None:
        if not probes:
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        pending = list(probes)
        interval = self._poll.interval

        while True:
            self._check_cancel(cancel, stage)
            still_pending: list[ReadinessProbe] = []
            for probe in pending:
                if not await self._probe(stage, probe):
                    still_pending.append(probe)
            pending = still_pending
            if not pending:
                logger.info("stage_ready", stage=stage, probes=[str(p) for p in probes])
                return

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise self._readiness_timeout(stage, timeout, pending)
            logger.debug("stage_not_ready", stage=stage, pending=[str(p) for p in pending])
            delay = min(interval, remaining)
            await self._sleep(delay, cancel, stage)
            # Readiness observed after the deadline does not count.
            if delay >= remaining or loop.time() >= deadline:
                raise self._readiness_timeout(stage, timeout, pending)
            interval = self._poll.next_interval(interval)

    @staticmethod
    def _readiness_timeout(
        stage: str, timeout: float, pending: list[ReadinessProbe]
    ) -> ReadinessTimeoutError:
        return ReadinessTimeoutError(
            f"not ready after {timeout:g}s, waiting on " + ", ".join(str(p) for p in pending),
            stage=stage,
        )

    async def _probe(self, stage: str, probe: ReadinessProbe) -> bool:
        try:
            if probe.kind == ProbeKind.PORT_OPEN:
                workload = await self._cluster.get(
                    ResourceRef(kind=ResourceKind.DEPLOYMENT, name=probe.target), self.namespace
                )
                if workload is not None:
                    self._raise_if_rollout_failed(stage, probe, workload)
                ready = await self._cluster.port_open(probe.target, probe.port or 0, self.namespace)
            else:
                live = await self._cluster.get(probe.ref, self.namespace)
                ready = live is not None and self._evaluate(stage, probe, live)
        except ProbeFailedError:
            READINESS_POLLS_TOTAL.labels(probe=probe.kind.value, result="failed").inc()
            raise
        except ClusterAPIError as exc:
            if not exc.transient:
                READINESS_POLLS_TOTAL.labels(probe=probe.kind.value, result="failed").inc()
                raise ProbeFailedError(f"{probe} could not be evaluated: {exc}", stage=stage) from exc
            logger.warning("readiness_probe_error", stage=stage, probe=str(probe), error=str(exc))
            ready = False

        READINESS_POLLS_TOTAL.labels(
            probe=probe.kind.value, result="ready" if ready else "pending"
        ).inc()
        return ready

    def _evaluate(self, stage: str, probe: ReadinessProbe, live: dict[str, Any]) -> bool:
        status = live.get("status") or {}

        if probe.kind == ProbeKind.CLAIM_BOUND:
            phase = status.get("phase")
            if phase == "Lost":
                raise ProbeFailedError(f"{probe}: claim lost its volume", stage=stage)
            return phase == "Bound"

        if probe.kind == ProbeKind.JOB_SUCCEEDED:
            for condition in status.get("conditions") or []:
                if condition.get("type") == "Failed" and condition.get("status") == "True":
                    raise ProbeFailedError(
                        f"{probe}: job failed ({condition.get('reason', 'unknown reason')})",
                        stage=stage,
                    )
            return int(status.get("succeeded") or 0) >= 1

        self._raise_if_rollout_failed(stage, probe, live)
        desired = int((live.get("spec") or {}).get("replicas", 1))
        generation = (live.get("metadata") or {}).get("generation")
        observed = status.get("observedGeneration")
        if generation is not None and (observed is None or observed < generation):
            return False
        return (
            int(status.get("updatedReplicas") or 0) >= desired
            and int(status.get("availableReplicas") or 0) >= desired
        )

    @staticmethod
    def _raise_if_rollout_failed(stage: str, probe: ReadinessProbe, workload: dict[str, Any]) -> None:
        for condition in (workload.get("status") or {}).get("conditions") or []:
            kind = condition.get("type")
            replica_failure = kind == "ReplicaFailure" and condition.get("status") == "True"
            deadline_exceeded = (
                kind == "Progressing"
                and condition.get("status") == "False"
                and condition.get("reason") == "ProgressDeadlineExceeded"
            )
            if replica_failure or deadline_exceeded:
                raise ProbeFailedError(
                    f"{probe}: rollout failed ({condition.get('reason', kind)}: "
                    f"{condition.get('message', '')})",
                    stage=stage,
                )

    # ------------------------------------------------------------------
    # Secret extraction
    # ------------------------------------------------------------------

    async def extract_secrets(
        self, stage: Stage, cancel: asyncio.Event | None = None
    ) -> SecretMaterial:
        """Wait for the generation job, parse KEY=value output, store it as a Secret."""
        material, _ = await self._extract(stage, cancel)
        return material

    async def _extract(
        self, stage: Stage, cancel: asyncio.Event | None
    ) -> tuple[SecretMaterial, bool]:
        step = stage.extraction
        if step is None:
            raise ValueError(f"Stage {stage.name} has no extraction step")

        existing = await self._read_generated_secret(step, stage.name)
        if existing is not None:
            missing = existing.missing(step.required_keys)
            if missing:
                raise ExtractionIncompleteError(
                    f"{step.target_secret} lacks {', '.join(missing)}",
                    stage=stage.name,
                    missing=missing,
                )
            logger.info("secrets_reused", stage=stage.name, keys=existing.keys())
            return existing, False

        job_probe = ReadinessProbe(kind=ProbeKind.JOB_SUCCEEDED, target=step.job_name)
        await self._await_probes(
            stage.name, [job_probe], stage.timeout_seconds or self._poll.timeout, cancel
        )

        lines: list[str] = []
        try:
            async for line in self._cluster.stream_logs(step.job_name, self.namespace):
                lines.append(line)
        except ClusterAPIError as exc:
            raise ApplyFailedError(
                f"cannot read output of job {step.job_name}: {exc}",
                stage=stage.name,
                transient=exc.transient,
            ) from exc

        values = parse_secret_output(lines)
        missing = [key for key in step.required_keys if key not in values]
        if missing:
            raise ExtractionIncompleteError(
                f"job {step.job_name} output lacks {', '.join(missing)}",
                stage=stage.name,
                missing=missing,
            )

        material = SecretMaterial.from_plain({key: values[key] for key in step.required_keys})
        secret = ResourceSpec(
            kind=ResourceKind.SECRET,
            name=step.target_secret,
            labels={"mastodon-orchestrator/stage": stage.name},
            body={"type": "Opaque", "data": material.encoded()},
        )
        try:
            await self._cluster.create(secret.manifest(self.namespace), self.namespace)
        except ClusterAPIError as exc:
            raise ApplyFailedError(
                f"cannot store {step.target_ref}: {exc}",
                stage=stage.name,
                transient=exc.transient,
            ) from exc

        RESOURCE_OPERATIONS_TOTAL.labels(
            kind=ResourceKind.SECRET.value, action=ResourceAction.CREATED.value
        ).inc()
        logger.info("secrets_extracted", stage=stage.name, keys=material.keys())
        return material, True

    # ------------------------------------------------------------------
    # Rollback and destroy
    # ------------------------------------------------------------------

    async def rollback(
        self, stage: Stage, created: list[ResourceRef] | None = None
    ) -> list[ResourceRef]:
        """Delete what a failed stage created (all its resources if unknown)."""
        if not stage.rollback_allowed:
            raise RollbackRefusedError(
                f"{stage.name} runs after the database migration; "
                "fix it by hand and re-run the plan",
                stage=stage.name,
            )

        refs = created if created is not None else stage.produced_refs()
        deleted: list[ResourceRef] = []
        for ref in sorted(refs, key=lambda r: APPLY_PRIORITY[r.kind], reverse=True):
            if await self._delete(ref, stage.name):
                deleted.append(ref)

        logger.warning("stage_rolled_back", stage=stage.name, deleted=[str(r) for r in deleted])
        return deleted

    async def destroy(self) -> list[ResourceRef]:
        """Delete every resource of the plan, last stage first."""
        deleted: list[ResourceRef] = []
        for stage in reversed(self._plan.topological_order()):
            for ref in reversed(stage.produced_refs()):
                if await self._delete(ref, stage.name):
                    deleted.append(ref)
        logger.warning("plan_destroyed", environment=self._plan.environment, deleted=len(deleted))
        return deleted

    async def _delete(self, ref: ResourceRef, stage: str) -> bool:
        try:
            removed = await self._cluster.delete(ref, self.namespace)
        except ClusterAPIError as exc:
            raise ApplyFailedError(
                f"cannot delete {ref}: {exc}", stage=stage, transient=exc.transient
            ) from exc
        if removed:
            RESOURCE_OPERATIONS_TOTAL.labels(
                kind=ref.kind.value, action=ResourceAction.DELETED.value
            ).inc()
        return removed

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def status(self) -> list[StageReport]:
        """Live state of every stage, re-read from the cluster."""
        return [await self._stage_report(stage) for stage in self._plan.topological_order()]

    async def _stage_report(self, stage: Stage) -> StageReport:
        def report(health: StageHealth, detail: str = "") -> StageReport:
            return StageReport(stage=stage.name, health=health, detail=detail)

        if stage.extraction is not None:
            if await self._get(stage.extraction.target_ref, stage.name) is None:
                return report(StageHealth.MISSING, str(stage.extraction.target_ref))
            return report(StageHealth.SATISFIED)

        material = None
        if stage.needs_secret_material:
            step = self._extraction_step(stage.name)
            material = await self._read_generated_secret(step, stage.name)
            if material is None or material.missing(step.required_keys):
                return report(StageHealth.MISSING, str(step.target_ref))

        for spec in stage.resources:
            live = await self._get(spec.ref, stage.name)
            if live is None:
                return report(StageHealth.MISSING, str(spec.ref))
            if not manifest_matches(spec.manifest(self.namespace, material), live):
                return report(StageHealth.DRIFTED, str(spec.ref))

        try:
            for probe in stage.readiness:
                if not await self._probe(stage.name, probe):
                    return report(StageHealth.NOT_READY, str(probe))
        except ProbeFailedError as exc:
            return report(StageHealth.FAILED, exc.message)
        return report(StageHealth.SATISFIED)

    async def _require_live_predecessors(self, stage: Stage) -> None:
        order = self._plan.stage_names
        missing: list[str] = []
        for name in sorted(self._plan.predecessors(stage.name), key=order.index):
            result = await self._stage_report(self.get_stage(name))
            if result.health != StageHealth.SATISFIED:
                missing.append(f"{name} ({result.health.value})")
        if missing:
            raise UnsatisfiedDependencyError(
                f"{stage.name} requires completed stages: {', '.join(missing)}",
                stage=stage.name,
                missing=missing,
            )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self, only: str | None = None, cancel: asyncio.Event | None = None
    ) -> PlanRun:
        """Run the whole plan, or one stage whose predecessors are already live.

        Raises PlanAbortedError carrying the cause and the ledger.
        """
        selected = [self.get_stage(only).name] if only is not None else None
        run = PlanRun.for_plan(self._plan, self._retry.max_attempts, only=selected)
        run.start()
        await self._save(run, new=True)
        structlog.contextvars.bind_contextvars(run_id=run.id, environment=run.environment)
        logger.info("plan_started", stages=[s.stage for s in run.stages])

        try:
            if only is not None:
                await self._require_live_predecessors(self.get_stage(only))

            for wave in self._plan.get_execution_order():
                stages = [s for s in wave if selected is None or s.name in selected]
                if not stages:
                    continue
                results = await asyncio.gather(
                    *(self._run_stage(stage, run, cancel) for stage in stages),
                    return_exceptions=True,
                )
                failures = [r for r in results if isinstance(r, BaseException)]
                if failures:
                    raise failures[0]

            run.complete()
        except OrchestrationError as exc:
            run.abort(exc)
            PLAN_RUNS_TOTAL.labels(environment=run.environment, outcome="aborted").inc()
            logger.error(
                "plan_aborted",
                stage=exc.stage,
                error_kind=exc.kind.value,
                error=exc.message,
                ledger=self._ledger_summary(run),
            )
            raise PlanAbortedError(exc, run) from exc
        except BaseException as exc:
            if not run.is_terminal:
                run.abort(OrchestrationCancelledError(f"plan run interrupted: {exc!r}"))
            raise
        finally:
            await self._save(run)
            await self._publish_events(run)
            structlog.contextvars.unbind_contextvars("run_id", "environment")

        PLAN_RUNS_TOTAL.labels(environment=run.environment, outcome="complete").inc()
        logger.info("plan_completed", ledger=self._ledger_summary(run))
        return run

    async def _run_stage(
        self, stage: Stage, run: PlanRun, cancel: asyncio.Event | None
    ) -> None:
        in_run = {s.stage for s in run.stages}
        unfinished = [
            dep for dep in stage.depends_on
            if dep in in_run and run.stage_run(dep).status != StageStatus.COMPLETE
        ]
        if unfinished:
            raise UnsatisfiedDependencyError(
                f"{stage.name} cannot start before {', '.join(unfinished)} complete",
                stage=stage.name,
                missing=unfinished,
            )

        stage_run = run.stage_run(stage.name)
        started = time.monotonic()

        with structlog.contextvars.bound_contextvars(stage=stage.name):
            while True:
                run.begin_stage_attempt(stage.name)
                await self._publish_events(run)
                logger.info(
                    "stage_attempt_started",
                    attempt=stage_run.attempt,
                    max_attempts=stage_run.max_attempts,
                )

                try:
                    with tracer.start_as_current_span(
                        f"stage {stage.name}",
                        attributes={"stage": stage.name, "attempt": stage_run.attempt},
                    ):
                        await self._attempt_stage(stage, run, cancel)
                except asyncio.CancelledError:
                    run.fail_stage(
                        stage.name,
                        OrchestrationCancelledError("stage task was cancelled", stage=stage.name),
                    )
                    raise
                except OrchestrationError as exc:
                    if exc.stage is None:
                        exc.stage = stage.name
                    run.fail_stage(stage.name, exc)
                    logger.warning(
                        "stage_attempt_failed",
                        attempt=stage_run.attempt,
                        error_kind=exc.kind.value,
                        error=exc.message,
                        retryable=exc.retryable,
                    )

                    if exc.retryable and stage_run.can_retry:
                        delay = self._retry.delay_for(stage_run.attempt)
                        run.schedule_retry(stage.name, delay)
                        STAGE_RETRIES.labels(stage=stage.name, error_kind=exc.kind.value).inc()
                        await self._publish_events(run)
                        await self._save(run)
                        await self._sleep(delay, cancel, stage.name)
                        continue

                    outcome = "failed"
                    if exc.kind != ErrorKind.CANCELLED:
                        run.abort_stage(stage.name)
                        await self._rollback_after_abort(stage, run)
                        outcome = "aborted"
                    STAGE_RUNS_TOTAL.labels(stage=stage.name, outcome=outcome).inc()
                    STAGE_DURATION.labels(stage=stage.name).observe(time.monotonic() - started)
                    raise

                run.complete_stage(stage.name)
                STAGE_RUNS_TOTAL.labels(stage=stage.name, outcome="complete").inc()
                STAGE_DURATION.labels(stage=stage.name).observe(time.monotonic() - started)
                logger.info("stage_completed", attempt=stage_run.attempt)
                await self._publish_events(run)
                await self._save(run)
                return

    async def _attempt_stage(
        self, stage: Stage, run: PlanRun, cancel: asyncio.Event | None
    ) -> None:
        self._check_cancel(cancel, stage.name)
        stage_run = run.stage_run(stage.name)

        # Secrets already generated: re-running the job would mint new keys.
        reuse = (
            stage.extraction is not None
            and await self._get(stage.extraction.target_ref, stage.name) is not None
        )

        if not reuse:
            changes: list[ResourceChange] = []
            try:
                await self._apply(stage, changes, cancel)
            finally:
                for change in changes:
                    if change.action in {ResourceAction.CREATED, ResourceAction.RECREATED}:
                        stage_run.record_created(change.ref)

        run.stage_awaiting_ready(stage.name)
        if not reuse:
            await self.await_ready(stage, cancel=cancel)
        run.stage_ready(stage.name)

        if stage.extraction is not None:
            _, written = await self._extract(stage, cancel)
            if written:
                stage_run.record_created(stage.extraction.target_ref)

    async def _rollback_after_abort(self, stage: Stage, run: PlanRun) -> None:
        stage_run = run.stage_run(stage.name)
        if not stage.rollback_allowed:
            logger.error("stage_needs_manual_intervention", reason=stage_run.error_message)
            return
        if not self._rollback_on_abort or not stage_run.created_resources:
            return
        try:
            deleted = await self.rollback(stage, created=list(stage_run.created_resources))
        except OrchestrationError as exc:
            logger.error("rollback_failed", error=str(exc))
            return
        run.record_rollback(stage.name, deleted)
