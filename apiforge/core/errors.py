# apiforge/core/errors.py
from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import httpx
import openai


class ApiForgeError(Exception):
    code = "ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str = "", **extra: Any):
        super().__init__(message)
        self.message = message or self.__class__.__name__
        self.extra = {k: v for k, v in extra.items() if v is not None}

    def to_http_detail(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **self.extra,
        }


class NotFoundError(ApiForgeError):
    code = "NOT_FOUND"
    status_code = 404


class JobAlreadyInFlight(ApiForgeError):
    code = "JOB_ALREADY_IN_FLIGHT"
    status_code = 409

    def __init__(self, project_id: str, job_id: Optional[str] = None):
        super().__init__(
            "A generation is already running for this project. Wait for it to finish.",
            project_id=project_id,
            job_id=job_id,
        )
        self.project_id = project_id
        self.job_id = job_id


class GenerationTransientError(ApiForgeError):
    code = "GENERATION_TRANSIENT"
    status_code = 503
    retryable = True


class GenerationValidationError(ApiForgeError):
    code = "GENERATION_VALIDATION"
    status_code = 422

    def __init__(self, message: str, file: Optional[str] = None, line: Optional[int] = None):
        super().__init__(message, file=file, line=line)
        self.file = file
        self.line = line

    def __str__(self) -> str:
        where = self.file or ""
        if self.file and self.line:
            where = f"{self.file}:{self.line}"
        return f"{where}: {self.message}" if where else self.message


class SandboxProvisionError(ApiForgeError):
    code = "SANDBOX_PROVISION"
    status_code = 503
    retryable = True


class SandboxRestoreError(SandboxProvisionError):
    code = "SANDBOX_RESTORE"


class SandboxNotRunning(ApiForgeError):
    code = "SANDBOX_NOT_RUNNING"
    status_code = 409


class SandboxCommandError(ApiForgeError):
    code = "SANDBOX_COMMAND"
    status_code = 502


class ModificationConflict(ApiForgeError):
    code = "MODIFICATION_CONFLICT"
    status_code = 409

    def __init__(self, modification_id: str, file_path: str, reason: str):
        super().__init__(
            f"{file_path} changed since this modification was proposed ({reason}). Review it again.",
            modification_id=modification_id,
            file_path=file_path,
        )
        self.modification_id = modification_id
        self.file_path = file_path


class StaleVersionReference(ApiForgeError):
    code = "STALE_VERSION"
    status_code = 409

    def __init__(self, project_id: str, requested: int, latest: Optional[int]):
        super().__init__(
            f"Version {requested} is not the latest version (latest: {latest}).",
            project_id=project_id,
            requested=requested,
            latest=latest,
        )
        self.requested = requested
        self.latest = latest


# ---------------------------------------------------------
# provider error normalization
# ---------------------------------------------------------

def _looks_transient(msg: str) -> bool:
    m = msg.lower()
    return (
        "rate limit" in m
        or "too many requests" in m
        or "timeout" in m
        or "timed out" in m
        or "temporarily unavailable" in m
        or "bad gateway" in m
        or "service unavailable" in m
    )


def is_transient(err: BaseException) -> bool:
    """Timeouts, rate limits and upstream 5xx are worth another attempt."""
    if isinstance(err, ApiForgeError):
        return err.retryable
    if isinstance(err, (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError)):
        return True
    if isinstance(err, openai.APIStatusError):
        return err.status_code >= 500
    if isinstance(err, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError)):
        return True
    if isinstance(err, httpx.HTTPStatusError):
        return err.response.status_code == 429 or err.response.status_code >= 500
    return _looks_transient(str(err))
