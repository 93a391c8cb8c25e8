# backend/ram_api/errors.py


class RamError(Exception):
    """Base error. ``status_code`` is what the API answers with."""

    status_code = 500
    default_message = "Internal error"

    def __init__(self, message=None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class NotFoundError(RamError):
    status_code = 404
    default_message = "Not found"


class ProjectNotFoundError(NotFoundError):
    default_message = "Project not found"


class ScenarioNotFoundError(NotFoundError):
    default_message = "Scenario not found"


class SourceScenarioNotFoundError(ScenarioNotFoundError):
    status_code = 400
    default_message = "Source scenario for cloning not found"


class OperationNotFoundError(NotFoundError):
    default_message = "Operation does not exist"


class DataConflictError(RamError):
    status_code = 409
    default_message = "Data conflict"


class TaskError(RamError):
    """An external job that exited badly or could not be launched."""

    default_message = "Task failed"

    def __init__(self, message=None, returncode=None):
        super().__init__(message)
        self.returncode = returncode
