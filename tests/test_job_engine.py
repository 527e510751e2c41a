"""Tests for the generation job engine."""

import asyncio
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, select, update

from apiforge.core.database import SessionLocal
from apiforge.core.enums import CommandType, JobStage, ModificationType
from apiforge.models.code_modification import CodeModification
from apiforge.models.generation_job import GenerationJob
from apiforge.models.types import utcnow
from apiforge.models.version import Version
from apiforge.services.event_service import list_events
from apiforge.services.job_engine import TIMEOUT_MESSAGE, JobEngine, _line_range
from apiforge.services.version_store import diff_against_previous, list_versions
from apiforge.services.workspace_service import load_tree
from tests.conftest import BOOK_API, FAST_RETRY, FakeCompletionProvider

BROKEN_MODELS = "=== FILE: models.py ===\n" + "".join(f"x{i} = {i}\n" for i in range(1, 12)) + (
    "def broken(:\n"
    "    pass\n"
    "=== END FILE ===\n"
)

MODIFY_REPLY = """Added a books router.