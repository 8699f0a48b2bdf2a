# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


# ----------------------------------------------------------------------
# Command directives
# ----------------------------------------------------------------------
# Cache and service commands are written as ordinary shell lines in the
# document. The parser recognises them and attaches a typed directive so the
# executor can route them to the coordinator instead of the shell.

@dataclass(frozen=True)
class CacheRestore:
    keys: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CacheStore:
    key: Optional[str] = None
    path: Optional[str] = None


@dataclass(frozen=True)
class ServiceStart:
    name: str
    params: Tuple[str, ...] = ()


Directive = Union[CacheRestore, CacheStore, ServiceStart]


@dataclass(frozen=True)
class Command:
    """A single shell line. Executed in order; first non-zero exit stops the job."""
    run: str
    directive: Optional[Directive] = None

    def __str__(self) -> str:
        return self.run


# ----------------------------------------------------------------------
# Pipeline graph
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class AgentSpec:
    machine_type: str
    os_image: str = ""


@dataclass(frozen=True)
class Prologue:
    commands: Tuple[Command, ...] = ()


@dataclass(frozen=True)
class Epilogue:
    always: Tuple[Command, ...] = ()
    on_pass: Tuple[Command, ...] = ()
    on_fail: Tuple[Command, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.always or self.on_pass or self.on_fail)


@dataclass(frozen=True)
class Job:
    """
    A named command sequence. Runs on its own agent, concurrently with the
    other jobs of its block.
    """
    name: str
    commands: Tuple[Command, ...]
    env: Dict[str, str] = field(default_factory=dict)
    execution_time_limit: Optional[float] = None   # seconds
    extras: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Block:
    name: str
    jobs: Tuple[Job, ...]
    prologue: Prologue = field(default_factory=Prologue)
    epilogue: Epilogue = field(default_factory=Epilogue)
    agent: Optional[AgentSpec] = None
    env: Dict[str, str] = field(default_factory=dict)
    execution_time_limit: Optional[float] = None
    extras: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Pipeline:
    version: str
    name: str
    blocks: Tuple[Block, ...]
    agent: Optional[AgentSpec] = None
    execution_time_limit: Optional[float] = None
    extras: Dict[str, Any] = field(default_factory=dict)


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

class Status(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


@dataclass
class JobResult:
    name: str
    status: Status
    exit_code: Optional[int] = None
    duration: float = 0.0
    error: Optional[str] = None
    hint: Optional[str] = None
    log_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
        }
        if self.error is not None:
            d["error"] = self.error
        if self.hint is not None:
            d["hint"] = self.hint
        if self.log_path is not None:
            d["log_path"] = self.log_path
        return d


@dataclass
class BlockResult:
    name: str
    status: Status
    jobs: List[JobResult] = field(default_factory=list)
    duration: float = 0.0

    def job(self, name: str) -> JobResult:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "duration": round(self.duration, 3),
            "jobs": [j.to_dict() for j in self.jobs],
        }


@dataclass
class PipelineResult:
    name: str
    blocks: List[BlockResult] = field(default_factory=list)
    duration: float = 0.0
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.cancelled and all(b.status is Status.PASSED for b in self.blocks)

    def block(self, name: str) -> BlockResult:
        for b in self.blocks:
            if b.name == name:
                return b
        raise KeyError(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "success": self.success,
            "cancelled": self.cancelled,
            "duration": round(self.duration, 3),
            "blocks": [b.to_dict() for b in self.blocks],
        }
