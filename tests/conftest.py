"""Shared fixtures.

Every test runs against a throwaway sqlite file; env vars are set before any
apiforge import so the engine binds to it. Completion and sandbox providers
are in-memory fakes.
"""

import asyncio
import os
import tempfile
import uuid

_TMP_DIR = tempfile.mkdtemp(prefix="apiforge-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR}/test.db"
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["SANDBOX_PROVIDER"] = "local"
os.environ["SANDBOX_ROOT"] = os.path.join(_TMP_DIR, "sandboxes")

# ruff: noqa: E402 - imports must come after env setup
from collections.abc import AsyncGenerator
from typing import Dict, Iterable, List, Optional

import pytest

import apiforge.models  # noqa: F401  registers every table
from apiforge.core.database import Base, SessionLocal, engine
from apiforge.core.enums import Framework, ProjectStatus
from apiforge.core.errors import GenerationTransientError
from apiforge.core.retry import RetryPolicy
from apiforge.models.project import Project
from apiforge.models.user import User
from apiforge.services.auth_service import create_token, hash_password
from apiforge.services.completion_service import FileMarkerParser
from apiforge.services.job_engine import JobEngine
from apiforge.services.orchestrator import ProjectOrchestrator
from apiforge.services.sandbox_manager import SandboxManager
from apiforge.services.sandbox_provider import ProbeResult

FAST_RETRY = RetryPolicy(maximum_attempts=3, initial_interval=0)

BOOK_API = """Here is your API.