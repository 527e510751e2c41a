# FILE: apiforge/services/command_classifier.py
"""Keyword classifier mapping a follow-up prompt to a CommandType."""

import re
from dataclasses import dataclass
from typing import List, Tuple

from apiforge.core.enums import CommandType

KEYWORD_CONFIDENCE = 85
DEFAULT_CONFIDENCE = 60

QUESTION_PATTERNS = [
    r"^\s*(what|how|why|where|which|when|who|can you explain|explain|does|is|are)\b",
    r"\?\s*$",
]

FIX_PATTERNS = [
    r"\b(error|exception|traceback|stack ?trace|bug|broken|crash(es|ed)?|fails?|failing|not working)\b",
    r"\bfix\b",
    r"\b\d{3} (internal server error|bad request|not found)\b",
]

CREATE_PATTERNS = [
    r"\b(create|build|generate|make|scaffold|start)\b.*\b(api|app|service|backend|project|server)\b",
    r"\bnew (api|app|service|project|endpoint)\b",
]

MODIFY_PATTERNS = [
    r"\b(add|change|update|modify|remove|delete|rename|refactor|replace|extend|implement|move|improve|edit)\b",
]


@dataclass
class Classification:
    command_type: CommandType
    confidence: int
    matched: List[str]


def _matches(text: str, patterns: List[str]) -> List[str]:
    return [p for p in patterns if re.search(p, text, re.IGNORECASE)]


def classify_command(prompt: str, has_versions: bool, has_repo: bool = False) -> Classification:
    text = (prompt or "").strip()

    q = _matches(text, QUESTION_PATTERNS)
    # questions never produce files, even on an empty project
    if q and not _matches(text, FIX_PATTERNS):
        return Classification(CommandType.QUESTION, KEYWORD_CONFIDENCE, q)

    if not has_versions:
        return Classification(CommandType.CREATE, 100, [])

    ordered: List[Tuple[CommandType, List[str]]] = [
        (CommandType.FIX_ERROR, FIX_PATTERNS),
        (CommandType.CREATE_AND_LINK if has_repo else CommandType.CREATE, CREATE_PATTERNS),
        (CommandType.MODIFY, MODIFY_PATTERNS),
    ]
    for command_type, patterns in ordered:
        hit = _matches(text, patterns)
        if hit:
            return Classification(command_type, KEYWORD_CONFIDENCE, hit)

    return Classification(CommandType.MODIFY, DEFAULT_CONFIDENCE, [])
