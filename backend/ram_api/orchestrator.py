# backend/ram_api/orchestrator.py
"""Sequencing of the long-running business actions.

Each action runs the same protocol: check the project and scenario, refuse if
an operation for the same (type, project, scenario) is still running, start a
new operation, hand the job to a service runner and return without waiting.
A failed job is recorded as an ``error`` entry on its operation.
"""
import logging
import time
from functools import partial
from typing import Dict, Optional

from fastapi import UploadFile
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .errors import (
    DataConflictError,
    OperationNotFoundError,
    ProjectNotFoundError,
    ScenarioNotFoundError,
    SourceScenarioNotFoundError,
)
from .models import Project, Scenario, ScenarioCreate
from .operation import Operation, OperationType
from .service_runner import ServiceRunner
from .storage import save_upload_file, scenario_file_path

logger = logging.getLogger(__name__)

CONFLICT_MESSAGES = {
    OperationType.SCENARIO_CREATE: "Scenario creation already in progress",
    OperationType.GENERATE_ANALYSIS: "Result generation already running",
    OperationType.GENERATE_VECTOR_TILES: "Vector tile generation already running",
}

AWAITING_UPLOAD = "awaiting-upload"
UPLOAD_RECEIVED = "road-network-upload"


class Orchestrator:
    def __init__(self, engine, settings, runner_factory=ServiceRunner, dry_run: Optional[bool] = None):
        self.engine = engine
        self.settings = settings
        self.runner_factory = runner_factory
        self.dry_run = settings.dry_run if dry_run is None else dry_run

    def operation(self) -> Operation:
        return Operation(self.engine, atomic=self.settings.atomic_start)

    # --- lookups ---

    def _get_project(self, session: Session, project_id: int) -> Project:
        project = session.get(Project, project_id)
        if project is None:
            raise ProjectNotFoundError()
        return project

    def _get_scenario(self, session: Session, project_id: int, scenario_id: int,
                      error=ScenarioNotFoundError) -> Scenario:
        stmt = (
            select(Scenario)
            .where(Scenario.id == scenario_id)
            .where(Scenario.project_id == project_id)
        )
        scenario = session.exec(stmt).first()
        if scenario is None:
            raise error()
        return scenario

    def _insert_scenario(self, session: Session, project_id: int, name: str, description: str) -> Scenario:
        scenario = Scenario(project_id=project_id, name=name, description=description)
        session.add(scenario)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise DataConflictError(f"Scenario name already in use for this project: {name}") from None
        session.refresh(scenario)
        return scenario

    # --- protocol ---

    def start_operation(self, op_type: OperationType, project_id: int, scenario_id: int) -> Operation:
        try:
            current = self.operation().load_by_data(op_type, project_id, scenario_id)
        except OperationNotFoundError:
            # nothing ran for this triple yet
            current = None
        if current is not None and current.is_started():
            raise DataConflictError(CONFLICT_MESSAGES[op_type])
        return self.operation().start(op_type, project_id, scenario_id)

    def dispatch(self, op_type: OperationType, op: Operation, data: Dict):
        """Launch the job for ``op``. Returns the runner, or None in dry run."""
        tag = f"p{op.project_id} s{op.scenario_id}"
        if self.dry_run:
            logger.info("%s %s dispatch skipped (dry run)", tag, op_type.value)
            return None

        payload = {"projId": op.project_id, "scId": op.scenario_id, "opId": op.get_id()}
        payload.update(data)
        runner = self.runner_factory(op_type.value, payload, self.settings.process_for(op_type.value))
        runner.on("complete", partial(self._on_complete, op.get_id(), tag))
        logger.info("%s %s dispatched", tag, op_type.value)
        runner.start()
        return runner

    def _on_complete(self, op_id: int, tag: str, error):
        # Jobs may close their own operation, so only close what is still open.
        op = self.operation().load_by_id(op_id)
        if op.is_completed():
            if error is not None:
                logger.warning("%s operation %s already closed, dropping error: %s", tag, op_id, error)
            return
        if error is not None:
            op.log("error", {"error": str(error)})
        else:
            op.finish()

    # --- actions ---

    def create_scenario(self, project_id: int, data: ScenarioCreate) -> Dict:
        with Session(self.engine) as session:
            project = self._get_project(session, project_id)
            # It's not possible to create scenarios for pending projects.
            if project.status == "pending":
                raise DataConflictError("Project setup not completed")
            if data.roadNetworkSource == "clone":
                self._get_scenario(session, project_id, data.roadNetworkSourceScenario,
                                   error=SourceScenarioNotFoundError)
            scenario = self._insert_scenario(session, project_id, data.name, data.description or "")
            result = scenario.model_dump()

        op = self.start_operation(OperationType.SCENARIO_CREATE, project_id, result["id"])

        if data.roadNetworkSource == "clone":
            self.dispatch(OperationType.SCENARIO_CREATE, op, {
                "source": "clone",
                "sourceScenarioId": data.roadNetworkSourceScenario,
            })
        else:
            file_name = f"road-network_{int(time.time() * 1000)}"
            op.log(AWAITING_UPLOAD, {"fileName": file_name})
            result["roadNetworkUpload"] = {
                "fileName": file_name,
                "uploadUrl": f"/projects/{project_id}/scenarios/{result['id']}/road-network",
            }
        return result

    def duplicate_scenario(self, project_id: int, scenario_id: int) -> Dict:
        with Session(self.engine) as session:
            project = self._get_project(session, project_id)
            if project.status == "pending":
                raise DataConflictError("Project setup not completed")
            source = self._get_scenario(session, project_id, scenario_id)
            taken = set(session.exec(select(Scenario.name).where(Scenario.project_id == project_id)).all())
            n = 2
            while f"{source.name} ({n})" in taken:
                n += 1
            scenario = self._insert_scenario(session, project_id, f"{source.name} ({n})", source.description)
            result = scenario.model_dump()

        op = self.start_operation(OperationType.SCENARIO_CREATE, project_id, result["id"])
        self.dispatch(OperationType.SCENARIO_CREATE, op, {
            "source": "clone",
            "sourceScenarioId": scenario_id,
        })
        return result

    async def receive_road_network(self, project_id: int, scenario_id: int, upload: UploadFile) -> Dict:
        """Store the road network of a ``new`` scenario and start its creation job."""
        with Session(self.engine) as session:
            result = self._get_scenario(session, project_id, scenario_id).model_dump()

        try:
            op = self.operation().load_by_data(OperationType.SCENARIO_CREATE, project_id, scenario_id)
        except OperationNotFoundError:
            op = None
        if op is None or not op.is_started() or UPLOAD_RECEIVED in op.events:
            raise DataConflictError("Scenario is not waiting for a road network upload")
        pending = [
            entry for entry in op.logs
            if entry["code"] == AWAITING_UPLOAD
            and isinstance(entry["data"], dict)
            and entry["data"].get("fileName")
        ]
        if not pending:
            raise DataConflictError("Scenario is not waiting for a road network upload")

        file_name = pending[-1]["data"]["fileName"]
        # Claimed before the first await: a concurrent upload sees it and is refused.
        op.log(UPLOAD_RECEIVED, {"fileName": file_name})

        destination = scenario_file_path(self.settings.storage_dir, scenario_id, file_name)
        try:
            await save_upload_file(upload, destination)
        except Exception as e:
            op.log("error", {"error": f"Road network upload failed: {e}"})
            raise

        self.dispatch(OperationType.SCENARIO_CREATE, op, {
            "source": "new",
            "roadNetworkFile": file_name,
        })
        return result

    def generate_analysis(self, project_id: int, scenario_id: int) -> Dict:
        with Session(self.engine) as session:
            project = self._get_project(session, project_id)
            if project.status != "active":
                raise DataConflictError("Project setup not completed")
            self._get_scenario(session, project_id, scenario_id)

        op = self.start_operation(OperationType.GENERATE_ANALYSIS, project_id, scenario_id)
        self.dispatch(OperationType.GENERATE_ANALYSIS, op, {})
        return {"message": "Result generation started", "operationId": op.get_id()}
