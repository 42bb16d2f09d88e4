"""Plan run repository implementation."""

from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mastodon_orchestrator.domain.models.plan import PlanRun, PlanStatus
from mastodon_orchestrator.domain.models.stage import StageRun
from mastodon_orchestrator.domain.ports.repositories import PlanRunRepository
from mastodon_orchestrator.infrastructure.persistence.models import PlanRunORM


class SqlPlanRunRepository(PlanRunRepository):
    """SQLAlchemy implementation of PlanRunRepository."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def save(self, run: PlanRun) -> PlanRun:
        self._session.add(self._to_orm(run))
        await self._session.flush()
        return run

    async def update(self, run: PlanRun) -> PlanRun:
        await self._session.execute(
            update(PlanRunORM)
            .where(PlanRunORM.id == run.id)
            .values(
                status=run.status.value,
                stages_data=[s.model_dump(mode="json") for s in run.stages],
                failed_stage=run.failed_stage,
                error_kind=run.error_kind,
                error_message=run.error_message,
                completed_at=run.completed_at,
                version=run.version,
                updated_at=run.updated_at,
            )
        )
        await self._session.flush()
        return run

    async def get_by_id(self, run_id: str) -> PlanRun | None:
        result = await self._session.execute(
            select(PlanRunORM).where(PlanRunORM.id == run_id)
        )
        orm = result.scalar_one_or_none()
        return self._to_domain(orm) if orm else None

    async def latest_for_environment(self, environment: str) -> PlanRun | None:
        runs = await self.list_by_environment(environment, limit=1)
        return runs[0] if runs else None

    async def list_by_environment(self, environment: str, limit: int = 20) -> list[PlanRun]:
        result = await self._session.execute(
            select(PlanRunORM)
            .where(PlanRunORM.environment == environment)
            .order_by(PlanRunORM.created_at.desc())
            .limit(limit)
        )
        return [self._to_domain(orm) for orm in result.scalars().all()]

    def _to_orm(self, run: PlanRun) -> PlanRunORM:
        return PlanRunORM(
            id=run.id,
            environment=run.environment,
            namespace=run.namespace,
            status=run.status.value,
            stages_data=[s.model_dump(mode="json") for s in run.stages],
            failed_stage=run.failed_stage,
            error_kind=run.error_kind,
            error_message=run.error_message,
            completed_at=run.completed_at,
            version=run.version,
            created_at=run.created_at,
            updated_at=run.updated_at,
        )

    def _to_domain(self, orm: PlanRunORM) -> PlanRun:
        return PlanRun(
            id=orm.id,
            environment=orm.environment,
            namespace=orm.namespace,
            status=PlanStatus(orm.status),
            stages=[StageRun.model_validate(s) for s in orm.stages_data or []],
            failed_stage=orm.failed_stage,
            error_kind=orm.error_kind or "",
            error_message=orm.error_message or "",
            completed_at=orm.completed_at,
            version=orm.version,
            created_at=orm.created_at,
            updated_at=orm.updated_at,
        )
