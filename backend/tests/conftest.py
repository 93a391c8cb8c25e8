"""Shared pytest fixtures: a throwaway SQLite database per test."""

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from ram_api.db import create_db_engine, init_db
from ram_api.main import create_app
from ram_api.models import Project, Scenario
from ram_api.settings import Settings


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'ram.db'}",
        storage_dir=str(tmp_path / "storage"),
        dry_run=True,
    )


@pytest.fixture()
def engine(settings):
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def make_project(engine):
    def _make(name="Project 1", status="active"):
        with Session(engine) as session:
            project = Project(name=name, status=status)
            session.add(project)
            session.commit()
            session.refresh(project)
            return project.id

    return _make


@pytest.fixture()
def make_scenario(engine):
    def _make(project_id, name="Main scenario", status="active", master=False):
        with Session(engine) as session:
            scenario = Scenario(project_id=project_id, name=name, status=status, master=master)
            session.add(scenario)
            session.commit()
            session.refresh(scenario)
            return scenario.id

    return _make


@pytest.fixture()
def client(settings, engine):
    app = create_app(settings)
    with TestClient(app) as client:
        yield client
