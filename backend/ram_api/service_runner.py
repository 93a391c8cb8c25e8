# backend/ram_api/service_runner.py
import json
import logging
import os
import subprocess
import threading
from concurrent.futures import Future
from threading import Thread
from typing import Callable, Dict, List, Optional

from .errors import TaskError
from .settings import ProcessSettings

logger = logging.getLogger(__name__)

PAYLOAD_ENV = "RAM_TASK_PAYLOAD"
TASK_ENV = "RAM_TASK_NAME"

# how much of stderr ends up in the error message
STDERR_TAIL = 2000


def task_env(task_name: str, payload: Dict, process: ProcessSettings) -> Dict[str, str]:
    env = dict(process.env)
    env[TASK_ENV] = task_name
    env[PAYLOAD_ENV] = json.dumps(payload)
    return env


def build_command(task_name: str, payload: Dict, process: ProcessSettings) -> List[str]:
    """
    Return the argv that runs ``task_name``.

    docker:  docker run --rm --name ram-<task>-<opId> -e KEY=VALUE ... <container>
    local:   process.command as configured; the environment carries the payload
    """
    if process.service == "docker":
        if not process.container:
            raise TaskError(f"No container configured for task {task_name}")
        cmd = ["docker", "run", "--rm"]
        if payload.get("opId") is not None:
            cmd += ["--name", f"ram-{task_name}-{payload['opId']}"]
        for key, value in task_env(task_name, payload, process).items():
            cmd += ["-e", f"{key}={value}"]
        cmd.append(process.container)
        return cmd

    if not process.command:
        raise TaskError(f"No command configured for task {task_name}")
    return list(process.command)


class ServiceRunner:
    """
    Runs one external job and reports how it ended, once.

    created -> started -> completed. The completion value is ``None`` on success
    or a TaskError. It goes to the handler registered with ``on("complete")``
    and to ``self.future``. A runner is never restarted.
    """

    def __init__(self, task_name: str, payload: Dict, process: ProcessSettings):
        self.task_name = task_name
        self.payload = dict(payload)
        self.process = process
        self.state = "created"
        self.future: Future = Future()
        self.proc: Optional[subprocess.Popen] = None
        self._handler: Optional[Callable] = None
        self._lock = threading.Lock()
        self._thread: Optional[Thread] = None

    @property
    def _tag(self) -> str:
        return f"p{self.payload.get('projId')} s{self.payload.get('scId')} {self.task_name}"

    def on(self, event: str, handler: Callable) -> "ServiceRunner":
        if event != "complete":
            raise ValueError(f"Unknown event: {event}")
        if self._handler is not None:
            raise ValueError("A complete handler is already registered")
        self._handler = handler
        return self

    def start(self) -> "ServiceRunner":
        with self._lock:
            if self.state != "created":
                raise RuntimeError(f"Service runner already {self.state}")
            self.state = "started"
        try:
            self._thread = Thread(target=self._run, name=f"ram-{self.task_name}", daemon=True)
            self._thread.start()
        except RuntimeError as e:
            logger.exception("%s could not start a thread", self._tag)
            self._complete(TaskError(f"{self.task_name} could not start: {e}"))
        return self

    def wait(self, timeout: Optional[float] = None):
        """Block until the job ended and return its completion value."""
        return self.future.result(timeout=timeout)

    def _run(self):
        try:
            cmd = build_command(self.task_name, self.payload, self.process)
            env = os.environ.copy()
            env.update(task_env(self.task_name, self.payload, self.process))
            logger.info("%s starting: %s", self._tag, cmd[0])
            self.proc = subprocess.Popen(
                cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, env=env
            )
            stdout, stderr = self.proc.communicate()
            if self.proc.returncode != 0:
                tail = (stderr or "").strip()[-STDERR_TAIL:]
                message = f"{self.task_name} exited with code {self.proc.returncode}"
                if tail:
                    message = f"{message}: {tail}"
                error = TaskError(message, returncode=self.proc.returncode)
            else:
                error = None
        except TaskError as e:
            error = e
        except Exception as e:
            logger.exception("%s could not run", self._tag)
            error = TaskError(f"{self.task_name} could not run: {e}")
        self._complete(error)

    def _complete(self, error: Optional[Exception]):
        with self._lock:
            if self.state == "completed":
                return
            self.state = "completed"
        if error is None:
            logger.info("%s complete", self._tag)
        else:
            logger.warning("%s failed: %s", self._tag, error)

        # the handler runs before the future resolves so waiters see its effects
        if self._handler is not None:
            try:
                self._handler(error)
            except Exception:
                logger.exception("%s complete handler failed", self._tag)
        self.future.set_result(error)
