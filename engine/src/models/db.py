"""
Database models for the execution engine.

Definition tables (scenarios, steps, servers, settings) are maintained by the
management screens; the engine only reads them. Execution tables are keyed by
(drill_id, entity id) and are always written with upserts.
"""

from sqlalchemy import Column, String, DateTime, Integer, Text, PrimaryKeyConstraint

from engine.src.db.database import Base

class Scenario(Base):
    __tablename__ = "scenarios"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    type = Column(String(50), default="MANUAL")

class ManagedServer(Base):
    __tablename__ = "managed_servers"

    id = Column(String(64), primary_key=True)
    ip_address = Column(String(255))
    ssh_user = Column(String(255))

class ScenarioStep(Base):
    __tablename__ = "steps"

    id = Column(String(64), primary_key=True)
    scenario_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255))
    command = Column(Text)
    server_id = Column(String(64))
    server_user = Column(String(255))
    step_order = Column(Integer, nullable=False, default=0)
    timeout_seconds = Column(Integer)

class StepDependency(Base):
    __tablename__ = "step_dependencies"
    __table_args__ = (PrimaryKeyConstraint("step_id", "depends_on_step_id"),)

    step_id = Column(String(64), nullable=False)
    depends_on_step_id = Column(String(64), nullable=False)

class AppSetting(Base):
    __tablename__ = "app_settings"

    key = Column(String(255), primary_key=True)
    value = Column(String(255))

class ExecutionStep(Base):
    __tablename__ = "execution_steps"
    __table_args__ = (PrimaryKeyConstraint("drill_id", "step_id"),)

    drill_id = Column(String(64), nullable=False)
    step_id = Column(String(64), nullable=False)
    status = Column(String(50), default="Pending")
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    result_text = Column(Text)
    assignee = Column(String(255))

class ExecutionScenario(Base):
    __tablename__ = "execution_scenarios"
    __table_args__ = (PrimaryKeyConstraint("drill_id", "scenario_id"),)

    drill_id = Column(String(64), nullable=False)
    scenario_id = Column(String(64), nullable=False)
    final_status = Column(String(50))
    final_reason = Column(Text)

class ExecutionCheckpointCriterion(Base):
    __tablename__ = "execution_checkpoint_criteria"
    __table_args__ = (PrimaryKeyConstraint("drill_id", "criterion_id"),)

    drill_id = Column(String(64), nullable=False)
    criterion_id = Column(String(64), nullable=False)
    status = Column(String(50))
    checked_at = Column(DateTime)
    checked_by = Column(String(255))
