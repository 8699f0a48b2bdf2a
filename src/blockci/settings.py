from __future__ import annotations
import os

CACHE_DIR = os.environ.get("BLOCKCI_CACHE_DIR", ".blockci/cache")
LOG_DIR = os.environ.get("BLOCKCI_LOG_DIR", ".blockci/logs")
WORK_DIR = os.environ.get("BLOCKCI_WORK_DIR", ".blockci/agents")
JOB_TIMEOUT = float(os.environ.get("BLOCKCI_JOB_TIMEOUT", "3600"))
REDIS_URL = os.environ.get("BLOCKCI_REDIS_URL") or None
AGENT_BACKEND = os.environ.get("BLOCKCI_AGENT_BACKEND", "local")
