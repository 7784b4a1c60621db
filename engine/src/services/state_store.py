"""
Read scenario definitions and upsert execution records.

All execution writes are ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING``
keyed by (drill_id, entity id), so the full updated row comes back for
broadcasting.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from engine.src.models.db import (
    AppSetting,
    ExecutionCheckpointCriterion,
    ExecutionScenario,
    ExecutionStep,
    ManagedServer,
    Scenario,
    ScenarioStep,
    StepDependency,
)
from engine.src.models.step import (
    CriterionExecutionRecord,
    CriterionStatus,
    ScenarioExecutionRecord,
    Step,
    StepExecutionRecord,
    StepStatus,
)
from engine.src.services.errors import StatePersistenceError

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

class StateStore:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self):
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            raise StatePersistenceError(str(e)) from e

    async def _upsert(
        self,
        session: AsyncSession,
        model,
        keys: Dict[str, Any],
        values: Dict[str, Any],
    ):
        dialect = session.get_bind().dialect.name
        insert = _UPSERT_INSERTS.get(dialect)
        if insert is None:
            raise StatePersistenceError(f"Upserts are not supported on {dialect}")

        stmt = (
            insert(model)
            .values(**keys, **values)
            .on_conflict_do_update(index_elements=list(keys), set_=values)
            .returning(model)
        )
        result = await session.scalars(stmt, execution_options={"populate_existing": True})
        row = result.one()
        await session.commit()
        return row

    # Definitions

    async def load_steps(self, scenario_id: str) -> List[Step]:
        """Load a scenario's steps in order, with dependencies inside the scenario."""
        async with self._session() as session:
            result = await session.execute(
                select(ScenarioStep, ManagedServer.ip_address, ManagedServer.ssh_user)
                .outerjoin(ManagedServer, ScenarioStep.server_id == ManagedServer.id)
                .where(ScenarioStep.scenario_id == scenario_id)
                .order_by(ScenarioStep.step_order)
            )
            rows = result.all()

            step_ids = [row[0].id for row in rows]
            depends_on: Dict[str, List[str]] = {step_id: [] for step_id in step_ids}
            if step_ids:
                deps = await session.scalars(
                    select(StepDependency).where(
                        or_(
                            StepDependency.step_id.in_(step_ids),
                            StepDependency.depends_on_step_id.in_(step_ids),
                        )
                    )
                )
                for dep in deps:
                    # Only edges inside this scenario count
                    if dep.step_id in depends_on and dep.depends_on_step_id in depends_on:
                        depends_on[dep.step_id].append(dep.depends_on_step_id)

        return [
            Step(
                id=step.id,
                scenario_id=step.scenario_id,
                title=step.title,
                command=step.command,
                host=ip_address,
                user=step.server_user or ssh_user,
                step_order=step.step_order or 0,
                timeout_seconds=step.timeout_seconds,
                depends_on=depends_on[step.id],
            )
            for step, ip_address, ssh_user in rows
        ]

    async def find_scenario_id(self, step_id: str) -> Optional[str]:
        async with self._session() as session:
            return await session.scalar(
                select(ScenarioStep.scenario_id).where(ScenarioStep.id == step_id)
            )

    async def get_scenario_type(self, scenario_id: str) -> Optional[str]:
        async with self._session() as session:
            return await session.scalar(
                select(Scenario.type).where(Scenario.id == scenario_id)
            )

    async def get_setting(self, key: str) -> Optional[str]:
        async with self._session() as session:
            return await session.scalar(
                select(AppSetting.value).where(AppSetting.key == key)
            )

    # Execution records

    async def get_step_statuses(
        self, drill_id: str, step_ids: List[str]
    ) -> Dict[str, StepStatus]:
        if not step_ids:
            return {}
        async with self._session() as session:
            result = await session.execute(
                select(ExecutionStep.step_id, ExecutionStep.status)
                .where(ExecutionStep.drill_id == drill_id)
                .where(ExecutionStep.step_id.in_(step_ids))
            )
            statuses = {}
            for step_id, status in result.all():
                try:
                    statuses[step_id] = StepStatus(status)
                except ValueError:
                    logger.warning(f"Unknown status {status!r} for step {step_id} in drill {drill_id}")
            return statuses

    async def get_step_record(self, drill_id: str, step_id: str) -> Optional[StepExecutionRecord]:
        async with self._session() as session:
            row = await session.get(ExecutionStep, (drill_id, step_id))
            return StepExecutionRecord.model_validate(row) if row else None

    async def upsert_step(self, drill_id: str, step_id: str, **values) -> StepExecutionRecord:
        """Upsert a step execution record and return the full row."""
        if isinstance(values.get("status"), StepStatus):
            values["status"] = values["status"].value
        async with self._session() as session:
            row = await self._upsert(
                session,
                ExecutionStep,
                {"drill_id": drill_id, "step_id": step_id},
                values,
            )
            record = StepExecutionRecord.model_validate(row)
        logger.debug(f"Upserted step {step_id} of drill {drill_id} to {record.status.value}")
        return record

    async def save_step_log(self, drill_id: str, step_id: str, result_text: str):
        """Update only the accumulated output of a running step."""
        async with self._session() as session:
            await session.execute(
                update(ExecutionStep)
                .where(ExecutionStep.drill_id == drill_id)
                .where(ExecutionStep.step_id == step_id)
                .values(result_text=result_text)
            )
            await session.commit()

    async def upsert_scenario(
        self,
        drill_id: str,
        scenario_id: str,
        final_status: str,
        final_reason: Optional[str],
    ) -> ScenarioExecutionRecord:
        async with self._session() as session:
            row = await self._upsert(
                session,
                ExecutionScenario,
                {"drill_id": drill_id, "scenario_id": scenario_id},
                {"final_status": final_status, "final_reason": final_reason},
            )
            return ScenarioExecutionRecord.model_validate(row)

    async def upsert_criterion(
        self,
        drill_id: str,
        criterion_id: str,
        status: CriterionStatus,
        checked_by: str,
    ) -> CriterionExecutionRecord:
        async with self._session() as session:
            row = await self._upsert(
                session,
                ExecutionCheckpointCriterion,
                {"drill_id": drill_id, "criterion_id": criterion_id},
                {
                    "status": CriterionStatus(status).value,
                    "checked_by": checked_by,
                    "checked_at": datetime.utcnow(),
                },
            )
            return CriterionExecutionRecord.model_validate(row)

    async def ping(self) -> bool:
        async with self._session() as session:
            await session.execute(select(1))
        return True
