# agents.py
"""
Agent provisioning.

An agent is the isolated environment one job runs in. It is created for a
single job and destroyed when that job finishes:

    with acquire(provisioner, spec) as agent:
        proc = agent.spawn("make test", env)

Backends:
  - LocalProvisioner:  fresh temp workdir, commands run in the host shell
  - DockerProvisioner: one container per job from the block's os_image,
                       workdir mounted at /workspace, commands via `docker exec`
"""
from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import tempfile
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Protocol

from .errors import ProvisionError, TOOL_HINTS
from .model import AgentSpec

logger = logging.getLogger(__name__)


class AgentHandle:
    """A live agent. `workdir` is the host-side path of the job's workspace."""

    def __init__(self, agent_id: str, spec: AgentSpec, workdir: Path):
        self.agent_id = agent_id
        self.spec = spec
        self.workdir = workdir

    def spawn(self, command: str, env: Dict[str, str]) -> subprocess.Popen:
        raise NotImplementedError

    def kill(self, proc: subprocess.Popen) -> None:
        """Kill a spawned command together with its children."""
        if proc.poll() is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            proc.kill()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.agent_id} {self.spec.machine_type}>"


class AgentProvisioner(Protocol):
    def provision(self, machine_type: str, os_image: str) -> AgentHandle: ...

    def release(self, handle: AgentHandle) -> None: ...


class _ReleaseOnce:
    """Guards a handle so release runs exactly once, whoever triggers it."""

    def __init__(self, provisioner: AgentProvisioner, handle: AgentHandle):
        self._provisioner = provisioner
        self._handle = handle
        self._lock = threading.Lock()
        self._released = False

    def __call__(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        logger.debug("releasing agent %s", self._handle.agent_id)
        self._provisioner.release(self._handle)


@contextmanager
def acquire(provisioner: AgentProvisioner, spec: AgentSpec) -> Iterator[AgentHandle]:
    """
    Scoped agent acquisition: the agent is released on every exit path,
    including exceptions, timeouts and cancellation.
    """
    handle = provisioner.provision(spec.machine_type, spec.os_image)
    release = _ReleaseOnce(provisioner, handle)
    try:
        yield handle
    finally:
        release()


# ----------------------------------------------------------------------
# Local backend
# ----------------------------------------------------------------------

class LocalAgent(AgentHandle):
    def spawn(self, command: str, env: Dict[str, str]) -> subprocess.Popen:
        full_env = os.environ.copy()
        full_env.update(env)
        return subprocess.Popen(
            command,
            shell=True,
            executable="/bin/bash" if Path("/bin/bash").exists() else None,
            cwd=str(self.workdir),
            env=full_env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            start_new_session=True,
        )


class LocalProvisioner:
    """
    Runs jobs on this machine. Every job gets its own empty workdir under
    `work_root`, removed on release. Machine type and image are recorded but
    not enforced unless `machine_types` restricts them.
    """

    def __init__(self, work_root: str | Path, machine_types: Optional[Iterable[str]] = None):
        self.work_root = Path(work_root).resolve()
        self.machine_types = set(machine_types) if machine_types is not None else None

    def provision(self, machine_type: str, os_image: str) -> AgentHandle:
        if self.machine_types is not None and machine_type not in self.machine_types:
            raise ProvisionError(
                machine_type, os_image,
                f"unknown machine type; available: {sorted(self.machine_types)}",
            )
        try:
            self.work_root.mkdir(parents=True, exist_ok=True)
            workdir = Path(tempfile.mkdtemp(prefix="agent-", dir=self.work_root))
        except OSError as e:
            raise ProvisionError(machine_type, os_image, str(e)) from e

        handle = LocalAgent(workdir.name, AgentSpec(machine_type, os_image), workdir)
        logger.debug("provisioned local agent %s at %s", handle.agent_id, workdir)
        return handle

    def release(self, handle: AgentHandle) -> None:
        shutil.rmtree(handle.workdir, ignore_errors=True)


# ----------------------------------------------------------------------
# Docker backend
# ----------------------------------------------------------------------

# OS image names used in pipeline documents -> docker images
DEFAULT_IMAGES = {
    "ubuntu1804": "ubuntu:18.04",
    "ubuntu2004": "ubuntu:20.04",
    "ubuntu2204": "ubuntu:22.04",
    "ubuntu2404": "ubuntu:24.04",
}

CONTAINER_WORKDIR = "/workspace"


def check_docker_available() -> None:
    try:
        subprocess.run(["docker", "--version"], capture_output=True, check=True)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        raise ProvisionError("", "", f"Docker is not available. {TOOL_HINTS['docker']}") from e


class DockerAgent(AgentHandle):
    def __init__(self, agent_id: str, spec: AgentSpec, workdir: Path, container: str):
        super().__init__(agent_id, spec, workdir)
        self.container = container

    def spawn(self, command: str, env: Dict[str, str]) -> subprocess.Popen:
        cmd: List[str] = ["docker", "exec", "-i", "-w", CONTAINER_WORKDIR]
        for key, value in env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend([self.container, "sh", "-c", command])
        return subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            start_new_session=True,
        )


class DockerProvisioner:
    """
    One long-lived container per job (`sleep infinity`), removed with
    `docker rm -f` on release. Host networking keeps services started by the
    job reachable on localhost, at the ports exported as `<NAME>_PORT`.
    """

    def __init__(
        self,
        work_root: str | Path,
        images: Optional[Dict[str, str]] = None,
        network: str = "host",
    ):
        self.work_root = Path(work_root).resolve()
        self.images = dict(DEFAULT_IMAGES)
        if images:
            self.images.update(images)
        self.network = network

    def image_for(self, os_image: str) -> str:
        if not os_image:
            return self.images["ubuntu2204"]
        return self.images.get(os_image, os_image)

    def provision(self, machine_type: str, os_image: str) -> AgentHandle:
        try:
            check_docker_available()
        except ProvisionError as e:
            raise ProvisionError(machine_type, os_image, e.message) from e

        self.work_root.mkdir(parents=True, exist_ok=True)
        workdir = Path(tempfile.mkdtemp(prefix="agent-", dir=self.work_root))
        name = f"blockci-agent-{uuid.uuid4().hex[:12]}"

        cmd = [
            "docker", "run", "-d", "--rm",
            "--name", name,
            "--network", self.network,
            "-v", f"{workdir}:{CONTAINER_WORKDIR}",
            "-w", CONTAINER_WORKDIR,
            self.image_for(os_image),
            "sleep", "infinity",
        ]
        proc = subprocess.run(cmd, text=True, capture_output=True)
        if proc.returncode != 0:
            shutil.rmtree(workdir, ignore_errors=True)
            raise ProvisionError(machine_type, os_image, proc.stderr.strip() or "docker run failed")

        handle = DockerAgent(name, AgentSpec(machine_type, os_image), workdir, container=name)
        logger.debug("provisioned docker agent %s (%s)", name, self.image_for(os_image))
        return handle

    def release(self, handle: AgentHandle) -> None:
        container = getattr(handle, "container", handle.agent_id)
        proc = subprocess.run(["docker", "rm", "-f", container], text=True, capture_output=True)
        if proc.returncode != 0:
            logger.warning("could not remove container %s: %s", container, proc.stderr.strip())
        shutil.rmtree(handle.workdir, ignore_errors=True)


def make_provisioner(backend: str, work_root: str | Path) -> AgentProvisioner:
    if backend == "local":
        return LocalProvisioner(work_root)
    if backend == "docker":
        return DockerProvisioner(work_root)
    raise ValueError(f"Unknown agent backend: {backend!r} (expected 'local' or 'docker')")
