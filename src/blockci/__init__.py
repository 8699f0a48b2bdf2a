from .config import load_pipeline, parse
from .executor import Executor, JobControl
from .model import AgentSpec, Block, Job, JobResult, Pipeline, PipelineResult, Prologue, Status
from .resolver import ExecutionPlan, resolve
from .scheduler import Scheduler, run_pipeline

__all__ = [
    "parse", "load_pipeline", "resolve", "run_pipeline",
    "Scheduler", "Executor", "JobControl", "ExecutionPlan",
    "Pipeline", "Block", "Job", "Prologue", "AgentSpec",
    "PipelineResult", "JobResult", "Status",
]
