# vcs.py
# Version-control collaborator.
# Populates a fresh agent workdir with the project source before a job's
# prologue runs, and answers a few questions about the local repository for
# run headers.

from __future__ import annotations

import logging
import shutil
import subprocess
import time
from pathlib import Path
from typing import Iterable, Optional, Protocol

logger = logging.getLogger(__name__)


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError if git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def describe_source(path: str | Path) -> str:
    """
    Short human label for the project a config lives in: the origin repo
    name if there is one, otherwise the directory name.
    """
    p = Path(path).resolve()
    try:
        url = get_remote_url("origin", cwd=p)
        return url.rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return p.name


# ----------------------------------------------------------------------
# Checkout strategies
# ----------------------------------------------------------------------

class Checkout(Protocol):
    def checkout(self, workdir: Path, timeout: Optional[float] = None) -> Path: ...


class CheckoutError(RuntimeError):
    pass


DEFAULT_IGNORES = (".git", ".blockci", "__pycache__", ".venv", "node_modules")


class WorkspaceCheckout:
    """Copy a local directory into the agent workdir."""

    def __init__(self, source: str | Path, ignore: Iterable[str] = DEFAULT_IGNORES):
        self.source = Path(source).resolve()
        self.ignore = tuple(ignore)

    def checkout(self, workdir: Path, timeout: Optional[float] = None) -> Path:
        # a local copy cannot be interrupted; the caller bounds the wait
        if not self.source.is_dir():
            raise CheckoutError(f"source directory not found: {self.source}")

        by_pattern = shutil.ignore_patterns(*self.ignore)
        # agent workdirs may live inside the source tree
        agent_dirs = {workdir.resolve(), workdir.resolve().parent}

        def _ignore(directory: str, names: list[str]) -> set[str]:
            ignored = set(by_pattern(directory, names))
            ignored.update(n for n in names if (Path(directory) / n).resolve() in agent_dirs)
            return ignored

        shutil.copytree(self.source, workdir, ignore=_ignore, symlinks=True, dirs_exist_ok=True)
        return workdir


class GitCheckout:
    """Clone `repo_url` into the agent workdir and check out `ref`."""

    def __init__(self, repo_url: str, ref: str = "HEAD"):
        self.repo_url = repo_url
        self.ref = ref

    def _run(self, args: list[str], cwd: Optional[Path] = None, timeout: Optional[float] = None) -> None:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=str(cwd) if cwd else None,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError:
            raise CheckoutError("git command not found. Please install Git.")
        except subprocess.TimeoutExpired:
            raise CheckoutError(f"git {args[0]} did not finish within {timeout:g}s")
        if result.returncode != 0:
            raise CheckoutError(f"git {args[0]} failed: {result.stderr.strip()}")

    def checkout(self, workdir: Path, timeout: Optional[float] = None) -> Path:
        deadline = time.monotonic() + timeout if timeout is not None else None

        def left() -> Optional[float]:
            return None if deadline is None else max(deadline - time.monotonic(), 0.001)

        logger.debug("cloning %s@%s into %s", self.repo_url, self.ref, workdir)
        self._run(["clone", "--quiet", self.repo_url, str(workdir)], timeout=left())
        if self.ref and self.ref != "HEAD":
            self._run(["checkout", "--quiet", self.ref], cwd=workdir, timeout=left())
        return workdir
