# FILE: apiforge/services/completion_service.py
"""
Prompt-completion adapter.

complete(prompt, context) -> async stream of CompletionChunk(filename, chunk, is_final)

The model writes files between plain-text markers so content can be parsed
while it streams:

    === FILE: app/main.py ===
    ...content...
    === END FILE ===
    === DELETE: app/old.py ===

Text outside any FILE block is free-form answer text (filename=None).
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from apiforge.core.config import OPENAI_MODEL, get_openai_client
from apiforge.core.errors import GenerationTransientError, is_transient

logger = logging.getLogger("apiforge.completion")

FILE_START_RE = re.compile(r"^===\s*FILE:\s*(?P<path>.+?)\s*===\s*$")
FILE_END_RE = re.compile(r"^===\s*END FILE\s*===\s*$")
FILE_DELETE_RE = re.compile(r"^===\s*DELETE:\s*(?P<path>.+?)\s*===\s*$")


@dataclass
class CompletionChunk:
    filename: Optional[str]
    chunk: str
    is_final: bool = False
    action: str = "write"  # write | delete
    relevance: Optional[float] = None


class CompletionProvider(Protocol):
    def complete(self, prompt: str, context: Dict[str, Any]) -> AsyncIterator[CompletionChunk]:
        ...


def _clean_path(raw: str) -> str:
    p = raw.strip().strip("`'\"").replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/")


class FileMarkerParser:
    """Incremental parser: feed raw text deltas, get CompletionChunks back in order."""

    def __init__(self):
        self._buffer = ""
        self._current: Optional[str] = None

    def feed(self, text: str) -> List[CompletionChunk]:
        self._buffer += text
        out: List[CompletionChunk] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            out.extend(self._line(line))
        return out

    def close(self) -> List[CompletionChunk]:
        out: List[CompletionChunk] = []
        if self._buffer:
            line, self._buffer = self._buffer, ""
            out.extend(self._line(line))
        if self._current is not None:
            # stream ended inside a file block
            out.append(CompletionChunk(filename=self._current, chunk="", is_final=True))
            self._current = None
        return out

    def _line(self, line: str) -> List[CompletionChunk]:
        stripped = line.rstrip("\r")

        if self._current is None:
            m = FILE_START_RE.match(stripped)
            if m:
                self._current = _clean_path(m.group("path"))
                return [CompletionChunk(filename=self._current, chunk="")]
            m = FILE_DELETE_RE.match(stripped)
            if m:
                return [CompletionChunk(filename=_clean_path(m.group("path")), chunk="", is_final=True, action="delete")]
            if stripped.startswith("```"):
                return []
            return [CompletionChunk(filename=None, chunk=stripped + "\n")]

        if FILE_END_RE.match(stripped):
            done = self._current
            self._current = None
            return [CompletionChunk(filename=done, chunk="", is_final=True)]

        return [CompletionChunk(filename=self._current, chunk=stripped + "\n")]


class OpenAICompletionProvider:
    """Streams chat completions from OpenAI and parses file markers on the fly."""

    def __init__(self, model: str = OPENAI_MODEL, temperature: float = 0.2):
        self.model = model
        self.temperature = temperature
        self._client = None

    def _get_client(self):
        if self._client is None:
            self._client = get_openai_client()
        return self._client

    async def complete(self, prompt: str, context: Dict[str, Any]) -> AsyncIterator[CompletionChunk]:
        messages = [
            {"role": "system", "content": context.get("system_prompt") or ""},
            {"role": "user", "content": prompt},
        ]
        parser = FileMarkerParser()
        try:
            stream = await self._get_client().chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                stream=True,
            )
            async for event in stream:
                if not event.choices:
                    continue
                delta = event.choices[0].delta.content
                if not delta:
                    continue
                for chunk in parser.feed(delta):
                    yield chunk
        except Exception as e:
            if is_transient(e):
                raise GenerationTransientError(f"Completion provider unavailable: {e}") from e
            raise

        for chunk in parser.close():
            yield chunk
