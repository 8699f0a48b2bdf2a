# scheduler.py
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Optional

from .executor import Executor, JobControl
from .model import BlockResult, JobResult, Pipeline, PipelineResult, Status
from .resolver import ExecutionPlan, PlannedBlock, PlannedJob, resolve

logger = logging.getLogger(__name__)


class SchedulerEvents:
    """Observer hooks. Called from worker threads for job events."""

    def on_block_start(self, block: PlannedBlock) -> None:
        pass

    def on_job_start(self, block: PlannedBlock, job: PlannedJob) -> None:
        pass

    def on_job_finish(self, block: PlannedBlock, result: JobResult) -> None:
        pass

    def on_block_finish(self, result: BlockResult) -> None:
        pass

    def on_block_skipped(self, result: BlockResult) -> None:
        pass


class Scheduler:
    """
    Runs an ExecutionPlan:

      - blocks strictly one after another, in declaration order
      - every job of a block at once, each on its own agent
      - a block passes only if all its jobs pass; the scheduler always waits
        for the whole block before deciding
      - fail-fast: after a failed block, remaining blocks are Skipped
      - cancel(): running jobs are killed, remaining blocks are Skipped
    """

    def __init__(self, executor: Executor, events: Optional[SchedulerEvents] = None):
        self.executor = executor
        self.events = events or SchedulerEvents()
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._active_block: Optional[str] = None
        self._active: Dict[str, JobControl] = {}

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Abort the running block's jobs and keep later blocks from starting."""
        self._cancel.set()
        with self._lock:
            controls = list(self._active.values())
        logger.debug("cancelling pipeline (%d running job(s))", len(controls))
        for control in controls:
            control.cancel()

    def cancel_job(self, block: str, job: str) -> bool:
        """Cancel a single running job. Its siblings keep running."""
        with self._lock:
            if block != self._active_block or job not in self._active:
                return False
            control = self._active[job]
        control.cancel()
        return True

    # ------------------------------------------------------------------

    def run(self, plan: ExecutionPlan) -> PipelineResult:
        started = time.monotonic()
        result = PipelineResult(name=plan.pipeline)
        halted = False

        for pb in plan.blocks:
            if halted or self._cancel.is_set():
                skipped = _skipped(pb)
                result.blocks.append(skipped)
                self.events.on_block_skipped(skipped)
                continue

            br = self._run_block(pb)
            result.blocks.append(br)
            self.events.on_block_finish(br)
            if br.status is not Status.PASSED:
                logger.debug("block %r %s, halting pipeline", br.name, br.status.value)
                halted = True

        result.cancelled = self._cancel.is_set()
        result.duration = time.monotonic() - started
        return result

    def _run_block(self, pb: PlannedBlock) -> BlockResult:
        self.events.on_block_start(pb)
        started = time.monotonic()

        controls = {pj.name: JobControl() for pj in pb.jobs}
        with self._lock:
            self._active_block = pb.name
            self._active = controls
        if self._cancel.is_set():
            for control in controls.values():
                control.cancel()

        results: Dict[str, JobResult] = {}
        try:
            with ThreadPoolExecutor(max_workers=len(pb.jobs), thread_name_prefix="blockci-job") as pool:
                futures = {
                    pool.submit(self._run_job, pb, pj, controls[pj.name]): pj.name
                    for pj in pb.jobs
                }
                for future in as_completed(futures):
                    jr = future.result()
                    results[futures[future]] = jr
                    self.events.on_job_finish(pb, jr)
        finally:
            with self._lock:
                self._active_block = None
                self._active = {}

        jobs = [results[pj.name] for pj in pb.jobs]
        if all(j.status is Status.PASSED for j in jobs):
            status = Status.PASSED
        elif self._cancel.is_set():
            status = Status.CANCELLED
        else:
            status = Status.FAILED
        return BlockResult(name=pb.name, status=status, jobs=jobs, duration=time.monotonic() - started)

    def _run_job(self, pb: PlannedBlock, pj: PlannedJob, control: JobControl) -> JobResult:
        self.events.on_job_start(pb, pj)
        return self.executor.run_job(
            pb.agent,
            pb.prologue,
            pj.job,
            block=pb.name,
            epilogue=pb.epilogue,
            env=pj.env,
            timeout=pj.timeout,
            control=control,
        )


def _skipped(pb: PlannedBlock) -> BlockResult:
    return BlockResult(
        name=pb.name,
        status=Status.SKIPPED,
        jobs=[JobResult(name=pj.name, status=Status.SKIPPED) for pj in pb.jobs],
    )


def run_pipeline(
    pipeline: Pipeline,
    executor: Executor,
    events: Optional[SchedulerEvents] = None,
) -> PipelineResult:
    """Resolve and run a parsed pipeline in one call."""
    plan = resolve(pipeline, default_timeout=executor.default_timeout)
    return Scheduler(executor, events).run(plan)
