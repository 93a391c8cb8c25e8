# backend/ram_api/main.py
import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session, select

from .db import create_db_engine, get_session, init_db
from .errors import DataConflictError, RamError, ScenarioNotFoundError
from .models import OperationLogCreate, Scenario, ScenarioCreate
from .operation import OperationType, get_operation_data
from .orchestrator import Orchestrator
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

router = APIRouter()


def setup_logging(settings: Settings):
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


async def ram_error_handler(request: Request, exc: RamError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@router.post("/projects/{project_id}/scenarios", status_code=201)
def create_scenario(
    project_id: int,
    data: ScenarioCreate,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return orchestrator.create_scenario(project_id, data)


@router.post("/projects/{project_id}/scenarios/{scenario_id}/duplicate", status_code=201)
def duplicate_scenario(
    project_id: int,
    scenario_id: int,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return orchestrator.duplicate_scenario(project_id, scenario_id)


@router.post("/projects/{project_id}/scenarios/{scenario_id}/road-network")
async def upload_road_network(
    project_id: int,
    scenario_id: int,
    file: UploadFile = File(...),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return await orchestrator.receive_road_network(project_id, scenario_id, file)


@router.get("/projects/{project_id}/scenarios/{scenario_id}")
def get_scenario(
    project_id: int,
    scenario_id: int,
    request: Request,
    db: Session = Depends(get_session),
):
    stmt = (
        select(Scenario)
        .where(Scenario.id == scenario_id)
        .where(Scenario.project_id == project_id)
    )
    scenario = db.exec(stmt).first()
    if not scenario:
        raise ScenarioNotFoundError()

    engine = request.app.state.engine
    data = scenario.model_dump()
    data["gen_analysis"] = get_operation_data(engine, OperationType.GENERATE_ANALYSIS, scenario.id)
    data["scen_create"] = get_operation_data(engine, OperationType.SCENARIO_CREATE, scenario.id)
    return data


@router.post("/projects/{project_id}/scenarios/{scenario_id}/generate")
def generate_analysis(
    project_id: int,
    scenario_id: int,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return orchestrator.generate_analysis(project_id, scenario_id)


@router.get("/operations/{op_id}")
def get_operation(op_id: int, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.operation().load_by_id(op_id).to_dict()


@router.post("/operations/{op_id}/logs")
def append_operation_log(
    op_id: int,
    entry: OperationLogCreate,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Progress reporting for jobs; ``finish`` closes the operation."""
    op = orchestrator.operation().load_by_id(op_id)
    if entry.event == "start":
        raise DataConflictError("Operation already started")
    if entry.event == "finish":
        op.finish(entry.data)
    else:
        op.log(entry.event, entry.data)
    return op.to_dict()


def create_app(settings: Optional[Settings] = None, runner_factory=None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(title=settings.app_name)
    app.state.settings = settings
    app.state.engine = create_db_engine(settings.database_url)
    orchestrator_kwargs = {}
    if runner_factory is not None:
        orchestrator_kwargs["runner_factory"] = runner_factory
    app.state.orchestrator = Orchestrator(app.state.engine, settings, **orchestrator_kwargs)

    # --- CORS for development ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RamError, ram_error_handler)
    app.include_router(router)

    @app.on_event("startup")
    def startup():
        init_db(app.state.engine)
        os.makedirs(settings.storage_dir, exist_ok=True)
        if settings.dry_run:
            logger.warning("Dry run: operations are started but jobs are never dispatched")

    return app


app = create_app()
