# FILE: apiforge/services/prompt_service.py

from __future__ import annotations

from typing import Any, Dict

from apiforge.core.enums import CommandType, Framework, exhaustive

MAX_CONTEXT_FILES = 40
MAX_CONTEXT_CHARS = 60_000

OUTPUT_RULES = """
OUTPUT FORMAT (must match exactly):
- Every file goes between marker lines, with the COMPLETE file content: