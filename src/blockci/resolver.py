# resolver.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .errors import ConfigError
from .model import AgentSpec, Block, Epilogue, Job, Pipeline, Prologue
from . import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedJob:
    job: Job
    timeout: float
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.job.name


@dataclass(frozen=True)
class PlannedBlock:
    name: str
    agent: AgentSpec
    prologue: Prologue
    epilogue: Epilogue
    jobs: Tuple[PlannedJob, ...]


@dataclass(frozen=True)
class ExecutionPlan:
    pipeline: str
    blocks: Tuple[PlannedBlock, ...]

    def describe(self) -> List[str]:
        lines = []
        for i, b in enumerate(self.blocks, start=1):
            agent = b.agent.machine_type + (f" / {b.agent.os_image}" if b.agent.os_image else "")
            lines.append(f"{i}. {b.name} [{agent}]")
            for pj in b.jobs:
                lines.append(f"     - {pj.name} (timeout {pj.timeout:g}s)")
        return lines


def _timeout(job: Job, block: Block, pipeline: Pipeline, default: float) -> float:
    for limit in (job.execution_time_limit, block.execution_time_limit, pipeline.execution_time_limit):
        if limit is not None:
            return limit
    return default


def resolve(pipeline: Pipeline, *, default_timeout: Optional[float] = None) -> ExecutionPlan:
    """
    Turn a parsed Pipeline into an ExecutionPlan.

    Block order is declaration order; there is no dependency inference, so
    this only validates and merges per-block settings:
      - effective agent = block.agent or pipeline.agent (ConfigError if neither)
      - effective job timeout = job > block > pipeline > default_timeout
      - job env = block task env_vars overlaid with job env_vars
    """
    if not pipeline.blocks:
        raise ConfigError("pipeline has no blocks", "blocks")

    if default_timeout is None:
        default_timeout = settings.JOB_TIMEOUT

    planned: List[PlannedBlock] = []
    for i, block in enumerate(pipeline.blocks):
        agent = block.agent or pipeline.agent
        if agent is None:
            raise ConfigError(
                f"block {block.name!r} has no agent and the pipeline defines no default agent",
                f"blocks[{i}].agent",
            )

        jobs = tuple(
            PlannedJob(
                job=job,
                timeout=_timeout(job, block, pipeline, default_timeout),
                env={**block.env, **job.env},
            )
            for job in block.jobs
        )
        planned.append(
            PlannedBlock(
                name=block.name,
                agent=agent,
                prologue=block.prologue,
                epilogue=block.epilogue,
                jobs=jobs,
            )
        )

    logger.debug("resolved %d block(s) for pipeline %r", len(planned), pipeline.name)
    return ExecutionPlan(pipeline=pipeline.name, blocks=tuple(planned))
