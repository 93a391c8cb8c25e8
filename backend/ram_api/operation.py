# backend/ram_api/operation.py
"""Persisted lifecycle of long-running tasks.

An operation is a row in ``operations`` plus an append-only list of entries in
``operations_logs``. Its status is never stored: it is read off the ordered
log, where ``start`` opens the operation and the first ``finish`` or ``error``
entry closes it.
"""
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .errors import DataConflictError, OperationNotFoundError
from .models import OperationLog, OperationRecord

logger = logging.getLogger(__name__)

# terminal event -> status it leaves the operation in
TERMINAL_EVENTS = {"finish": "complete", "error": "error"}


class OperationType(str, Enum):
    SCENARIO_CREATE = "scenario-create"
    GENERATE_ANALYSIS = "generate-analysis"
    GENERATE_VECTOR_TILES = "generate-vector-tiles"


def _type_name(op_type) -> str:
    return op_type.value if isinstance(op_type, Enum) else str(op_type)


def derive_status(events: Iterable[str]) -> Optional[str]:
    """Return ``running``, ``complete`` or ``error`` for an ordered event list.

    ``None`` means nothing was logged yet.
    """
    seen = False
    for event in events:
        seen = True
        if event in TERMINAL_EVENTS:
            return TERMINAL_EVENTS[event]
    return "running" if seen else None


def is_started_events(events: Iterable[str]) -> bool:
    events = list(events)
    return "start" in events and not is_completed_events(events)


def is_completed_events(events: Iterable[str]) -> bool:
    return any(event in TERMINAL_EVENTS for event in events)


def _decode(data: Optional[str]):
    if data is None:
        return None
    try:
        return json.loads(data)
    except ValueError:
        return {"raw": data}


def _entry_dict(entry: OperationLog) -> dict:
    return {
        "id": entry.id,
        "code": entry.code,
        "data": _decode(entry.data),
        "created_at": entry.created_at,
    }


def _load_logs(session: Session, operation_id: int) -> List[dict]:
    stmt = (
        select(OperationLog)
        .where(OperationLog.operation_id == operation_id)
        .order_by(OperationLog.created_at, OperationLog.id)
    )
    return [_entry_dict(entry) for entry in session.exec(stmt).all()]


class Operation:
    """Handle on one operation.

    Every call opens its own short session on ``engine``, so a handle can be
    used from a request and, later, from a service runner thread.

    With ``atomic`` set, :meth:`start` claims a unique marker for the
    (type, project, scenario) triple, so two racing starts cannot both
    succeed. The marker is released by the terminal log entry.
    """

    def __init__(self, engine, atomic: bool = True):
        self.engine = engine
        self.atomic = atomic
        self.id: Optional[int] = None
        self.type: Optional[str] = None
        self.project_id: Optional[int] = None
        self.scenario_id: Optional[int] = None
        self.logs: List[dict] = []

    def _set(self, record: OperationRecord):
        self.id = record.id
        self.type = record.name
        self.project_id = record.project_id
        self.scenario_id = record.scenario_id

    def _require_id(self):
        if self.id is None:
            raise RuntimeError("Operation was neither started nor loaded")

    def load_by_id(self, op_id: int) -> "Operation":
        with Session(self.engine) as session:
            record = session.get(OperationRecord, op_id)
            if record is None:
                raise OperationNotFoundError(f"Operation {op_id} does not exist")
            self._set(record)
            self.logs = _load_logs(session, record.id)
        return self

    def load_by_data(self, op_type, project_id: int, scenario_id: int) -> "Operation":
        """Load the most recent operation for the triple."""
        name = _type_name(op_type)
        with Session(self.engine) as session:
            stmt = (
                select(OperationRecord)
                .where(OperationRecord.name == name)
                .where(OperationRecord.project_id == project_id)
                .where(OperationRecord.scenario_id == scenario_id)
                .order_by(OperationRecord.created_at.desc(), OperationRecord.id.desc())
            )
            record = session.exec(stmt).first()
            if record is None:
                raise OperationNotFoundError(
                    f"Operation {name} does not exist for p{project_id} s{scenario_id}"
                )
            self._set(record)
            self.logs = _load_logs(session, record.id)
        return self

    def start(self, op_type, project_id: int, scenario_id: int, data=None) -> "Operation":
        """Persist a new operation together with its ``start`` entry."""
        if self.id is not None:
            raise RuntimeError("Operation already has an identity")

        name = _type_name(op_type)
        record = OperationRecord(
            name=name,
            project_id=project_id,
            scenario_id=scenario_id,
            active_key=f"{name}:{project_id}:{scenario_id}" if self.atomic else None,
        )
        if data is None:
            data = {"message": "Operation started"}

        with Session(self.engine) as session:
            try:
                session.add(record)
                session.flush()
                entry = OperationLog(operation_id=record.id, code="start", data=json.dumps(data))
                session.add(entry)
                session.commit()
            except IntegrityError:
                session.rollback()
                raise DataConflictError(f"Operation {name} already in progress") from None
            session.refresh(record)
            session.refresh(entry)
            self._set(record)
            self.logs = [_entry_dict(entry)]

        logger.info("p%s s%s operation %s (%s) started", project_id, scenario_id, self.id, name)
        return self

    def log(self, event: str, data=None) -> "Operation":
        """Append an entry. Terminal events also release the active marker."""
        self._require_id()
        now = datetime.utcnow()
        with Session(self.engine) as session:
            entry = OperationLog(
                operation_id=self.id,
                code=event,
                data=json.dumps(data) if data is not None else None,
                created_at=now,
            )
            session.add(entry)
            record = session.get(OperationRecord, self.id)
            if record is not None:
                if event in TERMINAL_EVENTS:
                    record.active_key = None
                record.updated_at = now
                session.add(record)
            session.commit()
            session.refresh(entry)
            self.logs.append(_entry_dict(entry))

        logger.debug("operation %s log %s", self.id, event)
        return self

    def finish(self, data=None) -> "Operation":
        if data is None:
            data = {"message": "Operation complete"}
        return self.log("finish", data)

    @property
    def events(self) -> List[str]:
        return [entry["code"] for entry in self.logs]

    @property
    def status(self) -> Optional[str]:
        return derive_status(self.events)

    def is_started(self) -> bool:
        return is_started_events(self.events)

    def is_completed(self) -> bool:
        return is_completed_events(self.events)

    def get_id(self) -> Optional[int]:
        return self.id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.type,
            "project_id": self.project_id,
            "scenario_id": self.scenario_id,
            "status": self.status,
            "logs": list(self.logs),
        }


def get_operation_data(engine, op_type, scenario_id: int) -> Optional[dict]:
    """Status and log of the latest operation of a type for a scenario."""
    name = _type_name(op_type)
    with Session(engine) as session:
        stmt = (
            select(OperationRecord)
            .where(OperationRecord.name == name)
            .where(OperationRecord.scenario_id == scenario_id)
            .order_by(OperationRecord.created_at.desc(), OperationRecord.id.desc())
        )
        record = session.exec(stmt).first()
        if record is None:
            return None
        logs = _load_logs(session, record.id)

    return {
        "id": record.id,
        "status": derive_status(entry["code"] for entry in logs),
        "logs": logs,
    }
