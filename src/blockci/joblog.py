# joblog.py
from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, List, Optional

LogListener = Callable[[str, str], None]   # (job_name, line)


class JobLog:
    """
    Combined stdout/stderr of one job.

    Ordered and append-only. Safe to read from other threads while the job is
    still writing; listeners are called synchronously for each new line.
    """

    def __init__(self, job_name: str):
        self.job_name = job_name
        self._lines: List[str] = []
        self._lock = threading.Lock()
        self._listeners: List[LogListener] = []

    def subscribe(self, listener: LogListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def append(self, line: str) -> None:
        line = line.rstrip("\r\n")
        with self._lock:
            self._lines.append(line)
            listeners = list(self._listeners)
        for listener in listeners:
            listener(self.job_name, line)

    def info(self, message: str) -> None:
        """Runner-generated line (as opposed to command output)."""
        self.append(f"[blockci] {message}")

    def lines(self, start: int = 0) -> List[str]:
        with self._lock:
            return self._lines[start:]

    def text(self) -> str:
        return "\n".join(self.lines())

    def persist(self, path: str | Path) -> Path:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        content = self.text()
        p.write_text(content + "\n" if content else "", encoding="utf-8")
        return p


def log_filename(name: str) -> str:
    """File-system safe name for a block or job."""
    safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in name.strip())
    return safe or "unnamed"


def log_path(log_dir: Optional[str | Path], block: str, job: str) -> Optional[Path]:
    if log_dir is None:
        return None
    return Path(log_dir) / log_filename(block) / f"{log_filename(job)}.log"
