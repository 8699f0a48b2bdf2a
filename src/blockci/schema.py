"""Document schema for pipeline files.

These pydantic models mirror the on-disk YAML layout field for field. They only
validate shape; `blockci.config` turns a validated document into the frozen
`blockci.model` graph. Unknown keys are kept (`extra="allow"`) so newer
documents still load on older runners.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class _Doc(BaseModel):
    model_config = ConfigDict(extra="allow")

    @property
    def extras(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class MachineDoc(_Doc):
    type: str
    os_image: Optional[str] = None


class AgentDoc(_Doc):
    machine: MachineDoc
    # Some documents put os_image next to machine instead of inside it.
    os_image: Optional[str] = None


class TimeLimitDoc(_Doc):
    hours: Optional[int] = Field(default=None, ge=0)
    minutes: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _one_unit(self) -> "TimeLimitDoc":
        if self.hours is None and self.minutes is None:
            raise ValueError("execution_time_limit needs 'hours' or 'minutes'")
        if self.seconds <= 0:
            raise ValueError("execution_time_limit must be greater than zero")
        return self

    @property
    def seconds(self) -> float:
        return float((self.hours or 0) * 3600 + (self.minutes or 0) * 60)


class EnvVarDoc(_Doc):
    name: str = Field(min_length=1)
    value: Any = ""

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> str:
        if v is None:
            return ""
        if isinstance(v, bool):
            return "true" if v else "false"
        if isinstance(v, (str, int, float)):
            return str(v)
        raise ValueError("env var value must be a scalar")


class CommandsDoc(_Doc):
    commands: list[str] = Field(min_length=1)


class EpilogueDoc(_Doc):
    always: Optional[CommandsDoc] = None
    on_pass: Optional[CommandsDoc] = None
    on_fail: Optional[CommandsDoc] = None


class MatrixAxisDoc(_Doc):
    env_var: str = Field(min_length=1)
    values: list[Any] = Field(min_length=1)


class JobDoc(_Doc):
    name: str = Field(min_length=1)
    commands: list[str] = Field(min_length=1)
    env_vars: list[EnvVarDoc] = Field(default_factory=list)
    execution_time_limit: Optional[TimeLimitDoc] = None
    matrix: Optional[list[MatrixAxisDoc]] = Field(default=None, min_length=1)
    parallelism: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _one_expansion(self) -> "JobDoc":
        if self.matrix is not None and self.parallelism is not None:
            raise ValueError("a job cannot declare both 'matrix' and 'parallelism'")
        return self


class TaskDoc(_Doc):
    jobs: list[JobDoc] = Field(min_length=1)
    prologue: Optional[CommandsDoc] = None
    epilogue: Optional[EpilogueDoc] = None
    env_vars: list[EnvVarDoc] = Field(default_factory=list)


class BlockDoc(_Doc):
    name: Optional[str] = None
    task: TaskDoc
    agent: Optional[AgentDoc] = None
    execution_time_limit: Optional[TimeLimitDoc] = None


class PipelineDoc(_Doc):
    version: str
    name: str = "Pipeline"
    agent: Optional[AgentDoc] = None
    execution_time_limit: Optional[TimeLimitDoc] = None
    blocks: list[BlockDoc] = Field(min_length=1)

    @field_validator("version", mode="before")
    @classmethod
    def _version_as_text(cls, v: Any) -> Any:
        # `version: 1.0` arrives from YAML as a float
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v
