# executor.py
from __future__ import annotations

import logging
import subprocess
import tarfile
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, TextIO, Tuple, TypeVar

from .agents import AgentHandle, AgentProvisioner, acquire
from .cache import pack_path, unpack
from .coordinator import CACHE_MISS, Coordinator, ServiceScope
from .errors import (
    CommandFailure,
    JobCancelled,
    JobTimedOut,
    ProvisionError,
    ServiceError,
    tool_hint,
)
from .joblog import JobLog, LogListener, log_path
from .model import (
    AgentSpec,
    CacheRestore,
    CacheStore,
    Command,
    Epilogue,
    Job,
    JobResult,
    Prologue,
    ServiceStart,
    Status,
)
from .vcs import Checkout, CheckoutError
from . import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# how often a bounded step re-checks cancel and the deadline
_POLL_INTERVAL = 0.05


class JobControl:
    """
    Cancellation handle for one job. `cancel()` may be called from any thread;
    it kills the command currently running on the job's agent.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._agent: Optional[AgentHandle] = None
        self._proc: Optional[subprocess.Popen] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def attach(self, agent: AgentHandle, proc: subprocess.Popen) -> None:
        with self._lock:
            self._agent, self._proc = agent, proc
        if self.cancelled:
            agent.kill(proc)

    def detach(self) -> None:
        with self._lock:
            self._agent, self._proc = None, None

    def cancel(self) -> None:
        self._event.set()
        with self._lock:
            agent, proc = self._agent, self._proc
        if agent is not None and proc is not None:
            agent.kill(proc)


def _pump(stream: TextIO, log: JobLog) -> None:
    try:
        for line in stream:
            log.append(line)
    finally:
        stream.close()


class Executor:
    """
    Runs one job on one freshly provisioned agent:

      provision -> checkout -> prologue -> commands -> epilogue -> release

    The agent (and any services the job started) is torn down on every exit
    path. Output is streamed into a JobLog that observers can read while the
    job runs, and persisted under `log_dir` afterwards.
    """

    def __init__(
        self,
        provisioner: AgentProvisioner,
        *,
        coordinator: Optional[Coordinator] = None,
        checkout: Optional[Checkout] = None,
        log_dir: Optional[str | Path] = None,
        default_timeout: Optional[float] = None,
        pipeline_name: str = "",
    ):
        self.provisioner = provisioner
        self.coordinator = coordinator or Coordinator()
        self.checkout = checkout
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.default_timeout = default_timeout if default_timeout is not None else settings.JOB_TIMEOUT
        self.pipeline_name = pipeline_name
        self.live_logs: Dict[Tuple[str, str], JobLog] = {}
        self._listeners: List[LogListener] = []
        self._logs_lock = threading.Lock()

    def add_log_listener(self, listener: LogListener) -> None:
        self._listeners.append(listener)

    def log_for(self, block: str, job: str) -> Optional[JobLog]:
        with self._logs_lock:
            return self.live_logs.get((block, job))

    # ------------------------------------------------------------------

    def run_job(
        self,
        agent_spec: AgentSpec,
        prologue: Prologue,
        job: Job,
        *,
        block: str = "",
        epilogue: Optional[Epilogue] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        control: Optional[JobControl] = None,
    ) -> JobResult:
        control = control or JobControl()
        if timeout is None:
            timeout = job.execution_time_limit or self.default_timeout

        log = JobLog(job.name)
        for listener in self._listeners:
            log.subscribe(listener)
        with self._logs_lock:
            self.live_logs[(block, job.name)] = log

        result = JobResult(name=job.name, status=Status.FAILED)
        started = time.monotonic()
        try:
            if control.cancelled:
                result.status = Status.CANCELLED
                log.info("cancelled before start")
            else:
                self._execute(agent_spec, prologue, epilogue or Epilogue(), job, block,
                              env, timeout, started + timeout, log, control, result)
        except Exception as e:
            logger.exception("job %r crashed", job.name)
            result.status = Status.FAILED
            result.error = f"internal error: {type(e).__name__}: {e}"
            log.info(result.error)
        finally:
            result.duration = time.monotonic() - started
            path = log_path(self.log_dir, block, job.name)
            if path is not None:
                try:
                    result.log_path = str(log.persist(path))
                except OSError as e:
                    logger.warning("could not write log for job %r to %s: %s", job.name, path, e)

        logger.debug("job %r finished: %s", job.name, result.status.value)
        return result

    # ------------------------------------------------------------------

    def _execute(
        self,
        spec: AgentSpec,
        prologue: Prologue,
        epilogue: Epilogue,
        job: Job,
        block: str,
        env: Optional[Dict[str, str]],
        timeout: float,
        deadline: float,
        log: JobLog,
        control: JobControl,
        result: JobResult,
    ) -> None:
        try:
            with acquire(self.provisioner, spec) as agent, self.coordinator.service_scope() as services:
                log.info(f"agent {agent.agent_id} ({spec.machine_type}, {spec.os_image or 'default image'})")
                run = _CommandRunner(self, agent, services, self._job_env(spec, block, job, env),
                                     log, control, deadline, timeout, job.name)
                if self.checkout is not None:
                    run.bounded("checkout", self.checkout.checkout, agent.workdir, timeout=run.check())
                    log.info("source checked out")

                try:
                    for command in (*prologue.commands, *job.commands):
                        code = run(command)
                        if code != 0:
                            raise CommandFailure(job=job.name, command=command.run, exit_code=code)
                    result.status = Status.PASSED
                    result.exit_code = 0
                except CommandFailure as e:
                    result.status = Status.FAILED
                    result.exit_code = e.exit_code
                    result.error = str(e)
                    if e.exit_code == 127:
                        result.hint = tool_hint(e.command)
                    log.info(f"command failed (exit={e.exit_code}), skipping remaining commands")

                if epilogue:
                    self._run_epilogue(epilogue, result.status is Status.PASSED, run, log)
        except ProvisionError as e:
            result.status = Status.FAILED
            result.error = str(e)
            log.info(result.error)
        except CheckoutError as e:
            result.status = Status.FAILED
            result.error = f"checkout failed: {e}"
            log.info(result.error)
        except JobTimedOut as e:
            result.status = Status.TIMED_OUT
            result.exit_code = None
            result.error = str(e)
            log.info(f"execution time limit exceeded ({timeout:g}s), agent torn down")
        except JobCancelled:
            result.status = Status.CANCELLED
            result.exit_code = None
            log.info("cancelled, agent torn down")

    def _run_epilogue(self, epilogue: Epilogue, passed: bool, run: "_CommandRunner", log: JobLog) -> None:
        sections = [("always", epilogue.always)]
        sections.append(("on_pass", epilogue.on_pass) if passed else ("on_fail", epilogue.on_fail))
        for label, commands in sections:
            if not commands:
                continue
            log.info(f"epilogue ({label})")
            for command in commands:
                code = run(command)
                if code != 0:
                    log.info(f"epilogue command failed (exit={code}); job status unchanged")
                    break

    def _job_env(
        self,
        spec: AgentSpec,
        block: str,
        job: Job,
        env: Optional[Dict[str, str]],
    ) -> Dict[str, str]:
        out = {
            "CI": "true",
            "BLOCKCI": "true",
            "BLOCKCI_PIPELINE_NAME": self.pipeline_name,
            "BLOCKCI_BLOCK_NAME": block,
            "BLOCKCI_JOB_NAME": job.name,
            "BLOCKCI_AGENT_MACHINE_TYPE": spec.machine_type,
            "BLOCKCI_AGENT_OS_IMAGE": spec.os_image,
        }
        out.update(env if env is not None else job.env)
        return out


class _CommandRunner:
    """Runs commands for one job on one agent, enforcing deadline and cancel."""

    def __init__(
        self,
        executor: Executor,
        agent: AgentHandle,
        services: ServiceScope,
        env: Dict[str, str],
        log: JobLog,
        control: JobControl,
        deadline: float,
        timeout: float,
        job_name: str,
    ):
        self.executor = executor
        self.agent = agent
        self.services = services
        self.env = env
        self.log = log
        self.control = control
        self.deadline = deadline
        self.timeout = timeout
        self.job_name = job_name

    def check(self) -> float:
        """Raise if the job was cancelled or ran out of time; else seconds left."""
        if self.control.cancelled:
            raise JobCancelled(self.job_name)
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            raise JobTimedOut(self.job_name, self.timeout)
        return remaining

    def __call__(self, command: Command) -> int:
        remaining = self.check()

        self.log.append(f"$ {command.run}")
        if command.directive is not None:
            return self._directive(command)
        return self._shell(command.run, remaining)

    def _shell(self, run: str, remaining: float) -> int:
        proc = self.agent.spawn(run, self.env)
        self.control.attach(self.agent, proc)
        reader = threading.Thread(target=_pump, args=(proc.stdout, self.log), daemon=True)
        reader.start()
        try:
            code = proc.wait(timeout=remaining)
        except subprocess.TimeoutExpired:
            self.agent.kill(proc)
            proc.wait()
            reader.join(timeout=5)
            raise JobTimedOut(self.job_name, self.timeout)
        finally:
            self.control.detach()
        reader.join(timeout=5)
        if self.control.cancelled:
            raise JobCancelled(self.job_name)
        return code

    def bounded(self, what: str, fn: Callable[..., T], *args, **kwargs) -> T:
        """
        Run a blocking step (checkout, service start) on a helper thread and
        wait for it under the job's deadline and cancel handle.

        When the job gives up first, the step keeps running in the background;
        whatever it leaves behind is cleaned up by its owner (the agent release
        or the service scope).
        """
        done = threading.Event()
        values: List[T] = []
        errors: List[Exception] = []

        def target() -> None:
            try:
                values.append(fn(*args, **kwargs))
            except Exception as e:
                errors.append(e)
            finally:
                done.set()

        threading.Thread(target=target, name=f"blockci-{what}-{self.job_name}", daemon=True).start()
        while not done.wait(min(self.check(), _POLL_INTERVAL)):
            pass
        if errors:
            # a step killed by its own timeout is reported as the job's timeout
            self.check()
            raise errors[0]
        return values[0]

    # ---- cache / service directives ----

    def _evaluate(self, text: str) -> Optional[str]:
        """
        Expand shell syntax in a cache key inside the agent. The key is
        treated as one shell word, so it may carry its own quoting.
        """
        if "$" not in text:
            return text
        proc = self.agent.spawn(f"set -f; printf '%s' {text}", self.env)
        self.control.attach(self.agent, proc)
        try:
            out, _ = proc.communicate(timeout=self.check())
        except subprocess.TimeoutExpired:
            self.agent.kill(proc)
            proc.communicate()
            raise JobTimedOut(self.job_name, self.timeout)
        finally:
            self.control.detach()
        if self.control.cancelled:
            raise JobCancelled(self.job_name)
        if proc.returncode != 0:
            self.log.info(f"could not evaluate cache key {text!r} (exit={proc.returncode}): {(out or '').strip()}")
            return None
        return (out or "").strip()

    def _directive(self, command: Command) -> int:
        d = command.directive
        if isinstance(d, CacheRestore):
            return self._cache_restore(d)
        if isinstance(d, CacheStore):
            return self._cache_store(d)
        if isinstance(d, ServiceStart):
            return self._service_start(d)
        raise TypeError(f"unknown directive: {d!r}")

    def _cache_restore(self, d: CacheRestore) -> int:
        coordinator = self.executor.coordinator
        if not d.keys:
            self.log.info("cache restore: no keys given, nothing to restore")
            return 0
        for raw in d.keys:
            key = self._evaluate(raw)
            if key is None:
                continue
            data = coordinator.restore(key)
            if data is CACHE_MISS:
                self.log.info(f"cache miss: {key}")
                continue
            try:
                count = unpack(data, self.agent.workdir)
            except (tarfile.TarError, OSError) as e:
                self.log.info(f"cache restore failed for {key}: {e}")
                continue
            self.log.info(f"cache hit: {key} ({count} file(s) restored)")
            return 0
        self.log.info("cache restore: no key matched, continuing cold")
        return 0

    def _cache_store(self, d: CacheStore) -> int:
        if d.key is None or d.path is None:
            self.log.info("cache store: no key given, nothing to store")
            return 0
        key = self._evaluate(d.key)
        if key is None:
            return 0
        root = self.agent.workdir.resolve()
        target = (root / d.path).resolve()
        if target != root and root not in target.parents:
            self.log.info(f"cache store: {d.path} is outside the workspace, skipping")
            return 0
        if not target.exists():
            self.log.info(f"cache store: nothing to store at {d.path}")
            return 0
        data = pack_path(root, d.path)
        if self.executor.coordinator.store(key, data):
            self.log.info(f"cache stored: {key} ({len(data)} bytes)")
        else:
            self.log.info(f"cache store skipped for {key}")
        return 0

    def _service_start(self, d: ServiceStart) -> int:
        try:
            handle = self.bounded("service", self.services.start, d.name, d.params, timeout=self.check())
        except ServiceError as e:
            self.log.info(str(e))
            return 1
        # later commands reach the service through its published ports
        self.env.update(handle.env)
        self.log.info(f"service {d.name} started ({handle.service_id})")
        for key, value in sorted(handle.env.items()):
            self.log.info(f"  {key}={value}")
        return 0
