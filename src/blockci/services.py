# services.py
from __future__ import annotations

import logging
import subprocess
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, Sequence, Tuple

from .errors import ServiceError, TOOL_HINTS

logger = logging.getLogger(__name__)

# interface host-side service ports are published on
SERVICE_HOST = "127.0.0.1"


@dataclass(frozen=True)
class ServiceHandle:
    name: str
    service_id: str
    params: Tuple[str, ...] = ()
    ports: Tuple[int, ...] = ()
    # variables exported to the job's later commands, e.g. POSTGRES_PORT
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ServiceImage:
    image: str
    default_tag: str = "latest"
    ports: Tuple[int, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)


KNOWN_SERVICES: Dict[str, ServiceImage] = {
    "postgres": ServiceImage("postgres", "16", (5432,), {"POSTGRES_HOST_AUTH_METHOD": "trust"}),
    "postgis": ServiceImage("postgis/postgis", "16-3.4", (5432,), {"POSTGRES_HOST_AUTH_METHOD": "trust"}),
    "mysql": ServiceImage("mysql", "8.0", (3306,), {"MYSQL_ALLOW_EMPTY_PASSWORD": "yes"}),
    "redis": ServiceImage("redis", "7", (6379,)),
    "mongodb": ServiceImage("mongo", "7", (27017,)),
    "memcached": ServiceImage("memcached", "1.6", (11211,)),
    "rabbitmq": ServiceImage("rabbitmq", "3", (5672,)),
}


class ServiceBackend(Protocol):
    def start(self, name: str, params: Sequence[str], timeout: Optional[float] = None) -> ServiceHandle: ...

    def stop(self, handle: ServiceHandle) -> None: ...


def parse_host_port(output: str) -> int:
    """
    Host port from `docker port` output such as ``127.0.0.1:49153``
    (one mapping per line; the first one wins).
    """
    for line in output.splitlines():
        line = line.strip()
        if line:
            _, _, port = line.rpartition(":")
            return int(port)
    raise ValueError(f"no port mapping in {output!r}")


def service_env(name: str, ports: Sequence[int]) -> Dict[str, str]:
    """
    Connection variables for a started service: ``<NAME>_HOST`` and
    ``<NAME>_PORT`` for the first port, ``<NAME>_PORT_<n>`` for the rest.
    """
    prefix = name.upper().replace("-", "_")
    env = {f"{prefix}_HOST": SERVICE_HOST}
    for i, port in enumerate(ports):
        env[f"{prefix}_PORT" if i == 0 else f"{prefix}_PORT_{i}"] = str(port)
    return env


class DockerServiceBackend:
    """
    Starts services as detached containers. Each container port is published
    on an ephemeral host port, so sibling jobs never compete for the same one;
    the chosen ports are exported to the job as ``<NAME>_PORT``.
    `params[0]`, if given, is the image tag (version).
    """

    def __init__(self, images: Optional[Dict[str, ServiceImage]] = None):
        self.images = dict(KNOWN_SERVICES)
        if images:
            self.images.update(images)

    def command_for(self, name: str, params: Sequence[str], container: str) -> list[str]:
        spec = self.images.get(name)
        if spec is None:
            raise ServiceError(f"unknown service {name!r}; known: {sorted(self.images)}")
        tag = params[0] if params else spec.default_tag
        cmd = ["docker", "run", "-d", "--rm", "--name", container]
        for port in spec.ports:
            # empty host port: docker picks a free one
            cmd.extend(["-p", f"{SERVICE_HOST}::{port}"])
        for key, value in spec.env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(f"{spec.image}:{tag}")
        return cmd

    def start(self, name: str, params: Sequence[str], timeout: Optional[float] = None) -> ServiceHandle:
        container = f"blockci-svc-{name}-{uuid.uuid4().hex[:8]}"
        cmd = self.command_for(name, params, container)
        try:
            proc = subprocess.run(cmd, text=True, capture_output=True, timeout=timeout)
        except FileNotFoundError as e:
            raise ServiceError(f"cannot start {name}: {TOOL_HINTS['docker']}") from e
        except subprocess.TimeoutExpired as e:
            self._remove(container)
            raise ServiceError(f"cannot start {name}: docker run did not finish within {timeout:g}s") from e
        if proc.returncode != 0:
            raise ServiceError(f"cannot start {name}: {proc.stderr.strip()}")

        try:
            ports = tuple(self._host_port(container, port) for port in self.images[name].ports)
        except ServiceError:
            self._remove(container)
            raise
        logger.debug("started service %s as %s on ports %s", name, container, ports)
        return ServiceHandle(
            name=name,
            service_id=container,
            params=tuple(params),
            ports=ports,
            env=service_env(name, ports),
        )

    def _host_port(self, container: str, port: int) -> int:
        proc = subprocess.run(["docker", "port", container, f"{port}/tcp"], text=True, capture_output=True)
        if proc.returncode != 0:
            raise ServiceError(f"cannot find published port {port} of {container}: {proc.stderr.strip()}")
        try:
            return parse_host_port(proc.stdout)
        except ValueError as e:
            raise ServiceError(f"cannot find published port {port} of {container}: {e}") from e

    def _remove(self, container: str) -> None:
        proc = subprocess.run(["docker", "rm", "-f", container], text=True, capture_output=True)
        if proc.returncode != 0:
            logger.warning("could not stop service %s: %s", container, proc.stderr.strip())

    def stop(self, handle: ServiceHandle) -> None:
        self._remove(handle.service_id)
