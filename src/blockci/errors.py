# errors.py
from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ConfigError(Exception):
    """
    Malformed or incomplete pipeline configuration.

    Always fatal: raised before any agent is provisioned.
    `location` is a dotted path into the document, e.g. "blocks[1].task.jobs".
    """
    reason: str
    location: str = "<document>"

    def __str__(self) -> str:
        return f"{self.location}: {self.reason}"


@dataclass
class ProvisionError(Exception):
    """An agent could not be created. Fails the job that asked for it."""
    machine_type: str
    os_image: str
    message: str

    def __str__(self) -> str:
        return f"could not provision agent ({self.machine_type}, {self.os_image}): {self.message}"


@dataclass
class CommandFailure(Exception):
    job: str
    command: str
    exit_code: int

    def __str__(self) -> str:
        return f"[{self.job}] command failed (exit={self.exit_code}): {self.command}"


@dataclass
class JobTimedOut(Exception):
    job: str
    timeout: float

    def __str__(self) -> str:
        return f"[{self.job}] exceeded execution time limit of {self.timeout:g}s"


@dataclass
class JobCancelled(Exception):
    job: str

    def __str__(self) -> str:
        return f"[{self.job}] cancelled"


class CacheError(Exception):
    """Raised by cache backends; callers degrade it to a miss."""


class ServiceError(Exception):
    """A background service could not be started."""


TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "yarn": "Install yarn (e.g., npm install -g yarn).",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "git": "Install Git or fix PATH.",
}


def tool_hint(command: str) -> str | None:
    """Best-effort hint for a command that exited 127 (command not found)."""
    words = command.strip().split()
    if not words:
        return None
    return TOOL_HINTS.get(words[0])
