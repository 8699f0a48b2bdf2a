"""Tests for agent provisioning and service command construction."""

from __future__ import annotations

import subprocess

import pytest

from blockci.agents import (
    DockerProvisioner,
    LocalProvisioner,
    acquire,
    make_provisioner,
)
from blockci.errors import ProvisionError, ServiceError, tool_hint
from blockci.model import AgentSpec
from blockci.services import DockerServiceBackend, parse_host_port, service_env
from fakes import RecordingProvisioner


AGENT = AgentSpec("e1-standard-2", "ubuntu2204")


def test_acquire_releases_once_on_error(tmp_path):
    provisioner = RecordingProvisioner(tmp_path)

    with pytest.raises(RuntimeError):
        with acquire(provisioner, AGENT) as agent:
            workdir = agent.workdir
            assert workdir.is_dir()
            raise RuntimeError("boom")

    assert provisioner.released == provisioner.provisioned
    assert len(provisioner.released) == 1
    assert not workdir.exists()


def test_each_acquire_gets_fresh_workdir(tmp_path):
    provisioner = LocalProvisioner(tmp_path)
    with acquire(provisioner, AGENT) as first, acquire(provisioner, AGENT) as second:
        assert first.workdir != second.workdir
        assert first.agent_id != second.agent_id


def test_local_agent_spawn_merges_env_and_stderr(tmp_path):
    with acquire(LocalProvisioner(tmp_path), AGENT) as agent:
        proc = agent.spawn('printf "%s" "$GREETING"; echo oops >&2', {"GREETING": "hi"})
        out, _ = proc.communicate(timeout=10)
    assert proc.returncode == 0
    assert out.startswith("hi")
    assert "oops" in out


def test_unknown_machine_type(tmp_path):
    provisioner = LocalProvisioner(tmp_path, machine_types=["e1-standard-2"])
    with pytest.raises(ProvisionError) as exc:
        provisioner.provision("f1-huge", "ubuntu2204")
    assert exc.value.machine_type == "f1-huge"


def test_make_provisioner(tmp_path):
    assert isinstance(make_provisioner("local", tmp_path), LocalProvisioner)
    assert isinstance(make_provisioner("docker", tmp_path), DockerProvisioner)
    with pytest.raises(ValueError):
        make_provisioner("cloud", tmp_path)


def test_docker_image_mapping(tmp_path):
    provisioner = DockerProvisioner(tmp_path, images={"custom": "registry/ci:1"})
    assert provisioner.image_for("ubuntu2004") == "ubuntu:20.04"
    assert provisioner.image_for("") == "ubuntu:22.04"
    assert provisioner.image_for("custom") == "registry/ci:1"
    assert provisioner.image_for("python:3.12") == "python:3.12"


def test_docker_service_command():
    cmd = DockerServiceBackend().command_for("postgres", ["15"], "svc")

    assert cmd[:6] == ["docker", "run", "-d", "--rm", "--name", "svc"]
    assert cmd[cmd.index("-p") + 1] == "127.0.0.1::5432"
    assert "POSTGRES_HOST_AUTH_METHOD=trust" in cmd
    assert cmd[-1] == "postgres:15"


def test_sibling_service_commands_do_not_share_host_ports():
    backend = DockerServiceBackend()
    first = backend.command_for("postgres", (), "job-a")
    second = backend.command_for("postgres", (), "job-b")

    def published(cmd):
        return [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-p"]

    for mapping in published(first) + published(second):
        host, _, container_port = mapping.rpartition(":")
        # no fixed host port: docker assigns a free one per container
        assert host == "127.0.0.1:"
        assert container_port == "5432"
    assert "5432:5432" not in first + second


def test_parse_host_port():
    assert parse_host_port("127.0.0.1:49153\n") == 49153
    assert parse_host_port("0.0.0.0:32768\n[::]:32768\n") == 32768
    with pytest.raises(ValueError):
        parse_host_port("")


def test_service_env():
    assert service_env("postgres", (49153,)) == {"POSTGRES_HOST": "127.0.0.1", "POSTGRES_PORT": "49153"}
    assert service_env("rabbitmq", (1, 2))["RABBITMQ_PORT_1"] == "2"


def test_docker_service_default_tag():
    assert DockerServiceBackend().command_for("redis", [], "svc")[-1] == "redis:7"


def test_unknown_service():
    with pytest.raises(ServiceError):
        DockerServiceBackend().command_for("oracle", [], "svc")


def test_tool_hint():
    assert "Node.js" in tool_hint("npm ci")
    assert tool_hint("make test") is None
    assert tool_hint("   ") is None


def test_docker_service_start_timeout_removes_container(monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append((cmd, kwargs.get("timeout")))
        if cmd[1] == "run":
            raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(subprocess, "run", fake_run)
    with pytest.raises(ServiceError) as exc:
        DockerServiceBackend().start("postgres", (), timeout=2.5)

    assert "within 2.5s" in str(exc.value)
    assert calls[0][1] == 2.5
    assert calls[1][0][:3] == ["docker", "rm", "-f"]
    assert calls[1][0][3] == calls[0][0][5]


def test_docker_service_start_exports_published_port(monkeypatch):
    def fake_run(cmd, **kwargs):
        out = "127.0.0.1:49160\n" if cmd[1] == "port" else "abc123\n"
        return subprocess.CompletedProcess(cmd, 0, out, "")

    monkeypatch.setattr(subprocess, "run", fake_run)
    handle = DockerServiceBackend().start("redis", ())

    assert handle.ports == (49160,)
    assert handle.env["REDIS_PORT"] == "49160"
