# backend/ram_api/models.py
from datetime import datetime
from typing import Literal, Optional

from pydantic import model_validator
from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class Project(SQLModel, table=True):
    __tablename__ = "projects"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(nullable=False, unique=True)
    description: Optional[str] = Field(default=None)
    status: str = Field(default="pending", nullable=False)   # pending | active
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Scenario(SQLModel, table=True):
    __tablename__ = "scenarios"
    __table_args__ = (
        UniqueConstraint("project_id", "name", name="scenarios_project_id_name_unique"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: int = Field(foreign_key="projects.id", nullable=False, index=True)
    name: str = Field(nullable=False)
    description: str = Field(default="")
    status: str = Field(default="pending", nullable=False)   # pending | active
    master: bool = Field(default=False, nullable=False)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class OperationRecord(SQLModel, table=True):
    __tablename__ = "operations"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(nullable=False, index=True)           # operation type
    project_id: int = Field(nullable=False, index=True)
    scenario_id: int = Field(nullable=False, index=True)
    # "type:project:scenario" while running, cleared by the terminal entry
    active_key: Optional[str] = Field(default=None, unique=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class OperationLog(SQLModel, table=True):
    __tablename__ = "operations_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    operation_id: int = Field(foreign_key="operations.id", nullable=False, index=True)
    code: str = Field(nullable=False)                        # event tag
    data: Optional[str] = Field(default=None)                # store JSON string
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ScenarioCreate(SQLModel):
    name: str
    description: Optional[str] = None
    roadNetworkSource: Literal["clone", "new"]
    roadNetworkSourceScenario: Optional[int] = None

    @model_validator(mode="after")
    def _source_scenario_for_clone(self):
        if self.roadNetworkSource == "clone" and self.roadNetworkSourceScenario is None:
            raise ValueError("roadNetworkSourceScenario is required when cloning")
        return self


class OperationLogCreate(SQLModel):
    event: str
    data: Optional[dict] = None
