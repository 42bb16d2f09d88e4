"""Unit tests for the deployment plan graph and the plan run aggregate."""

from __future__ import annotations

import pytest

from mastodon_orchestrator.domain.errors import (
    InvalidStageTransitionError,
    PlanValidationError,
    ReadinessTimeoutError,
)
from mastodon_orchestrator.domain.models.plan import DeploymentPlan, PlanRun, PlanStatus
from mastodon_orchestrator.domain.models.resource import ResourceKind, ResourceRef, ResourceSpec
from mastodon_orchestrator.domain.models.stage import ProbeKind, ReadinessProbe, Stage, StageStatus


def _stage(name: str, *deps: str, **kwargs) -> Stage:
    return Stage(name=name, depends_on=list(deps), **kwargs)


@pytest.fixture
def diamond() -> DeploymentPlan:
    return DeploymentPlan(
        environment="test",
        namespace="mastodon",
        stages=[
            _stage("d", "b", "c"),
            _stage("b", "a"),
            _stage("a"),
            _stage("c", "a"),
        ],
    )


class TestExecutionOrder:
    def test_waves(self, diamond: DeploymentPlan) -> None:
        waves = [[s.name for s in wave] for wave in diamond.get_execution_order()]
        assert waves == [["a"], ["b", "c"], ["d"]]

    def test_topological_order_respects_every_edge(self, plan: DeploymentPlan) -> None:
        order = [stage.name for stage in plan.topological_order()]
        for stage in plan.stages:
            for dep in stage.depends_on:
                assert order.index(dep) < order.index(stage.name)

    def test_predecessors_are_transitive(self, diamond: DeploymentPlan) -> None:
        assert diamond.predecessors("d") == {"a", "b", "c"}
        assert diamond.predecessors("a") == set()
        assert diamond.successors("a") == {"b", "c", "d"}

    def test_cycle_rejected(self) -> None:
        plan = DeploymentPlan(
            environment="test",
            namespace="mastodon",
            stages=[_stage("a", "b"), _stage("b", "a")],
        )
        with pytest.raises(PlanValidationError, match="cycle"):
            plan.validate()


class TestPlanValidation:
    def test_unknown_predecessor(self) -> None:
        plan = DeploymentPlan(environment="t", namespace="n", stages=[_stage("a", "ghost")])
        with pytest.raises(PlanValidationError) as exc_info:
            plan.validate()
        assert "Stage a depends on unknown stage ghost" in exc_info.value.errors

    def test_duplicate_stage(self) -> None:
        plan = DeploymentPlan(environment="t", namespace="n", stages=[_stage("a"), _stage("a")])
        with pytest.raises(PlanValidationError):
            plan.validate()

    def test_reference_to_later_stage_rejected(self) -> None:
        secret = ResourceSpec(kind=ResourceKind.SECRET, name="generated")
        consumer = ResourceSpec(
            kind=ResourceKind.SECRET,
            name="env",
            depends_on=[ResourceRef(kind=ResourceKind.SECRET, name="generated")],
        )
        plan = DeploymentPlan(
            environment="t",
            namespace="n",
            stages=[
                _stage("config", resources=[consumer]),
                _stage("generate", "config", resources=[secret]),
            ],
        )
        with pytest.raises(PlanValidationError) as exc_info:
            plan.validate()
        assert any("no preceding stage provides" in e for e in exc_info.value.errors)

    def test_probe_on_unknown_resource(self) -> None:
        plan = DeploymentPlan(
            environment="t",
            namespace="n",
            stages=[
                _stage("a", readiness=[ReadinessProbe(kind=ProbeKind.CLAIM_BOUND, target="x")]),
            ],
        )
        with pytest.raises(PlanValidationError):
            plan.validate()

    def test_built_plan_is_valid(self, plan: DeploymentPlan) -> None:
        plan.validate()


class TestPlanRun:
    def test_for_plan_selects_stages(self, plan: DeploymentPlan) -> None:
        run = PlanRun.for_plan(plan, max_attempts=3, only=["migration"])
        assert [s.stage for s in run.stages] == ["migration"]

    def test_complete_requires_every_stage(self, plan: DeploymentPlan) -> None:
        run = PlanRun.for_plan(plan, max_attempts=3)
        run.start()
        with pytest.raises(InvalidStageTransitionError):
            run.complete()

    def test_stage_lifecycle_events(self, diamond: DeploymentPlan) -> None:
        run = PlanRun.for_plan(diamond, max_attempts=2, only=["a"])
        run.start()
        run.begin_stage_attempt("a")
        run.stage_awaiting_ready("a")
        run.fail_stage("a", ReadinessTimeoutError("slow", stage="a"))
        run.schedule_retry("a", 0.5)
        run.begin_stage_attempt("a")
        run.stage_awaiting_ready("a")
        run.stage_ready("a")
        run.complete_stage("a")
        run.complete()

        assert run.status == PlanStatus.COMPLETE
        assert run.stage_run("a").attempt == 2
        assert [e.event_type for e in run.collect_events()] == [
            "plan.started",
            "stage.started",
            "stage.failed",
            "stage.retrying",
            "stage.started",
            "stage.completed",
            "plan.completed",
        ]

    def test_abort_records_failure(self, diamond: DeploymentPlan) -> None:
        run = PlanRun.for_plan(diamond, max_attempts=1)
        run.start()
        run.begin_stage_attempt("a")
        error = ReadinessTimeoutError("slow", stage="a")
        run.fail_stage("a", error)
        run.abort_stage("a")
        run.abort(error)

        assert run.status == PlanStatus.ABORTED
        assert run.failed_stage == "a"
        assert run.error_kind == "Timeout"
        assert run.stage_run("a").status == StageStatus.ABORTED
        assert run.stage_run("b").status == StageStatus.PENDING
        assert run.is_terminal

    def test_unknown_stage(self, diamond: DeploymentPlan) -> None:
        run = PlanRun.for_plan(diamond, max_attempts=1)
        with pytest.raises(KeyError):
            run.stage_run("ghost")
