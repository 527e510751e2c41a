# apiforge/core/enums.py
from enum import Enum
from typing import Mapping


class Framework(str, Enum):
    FASTAPI = "fastapi"
    FLASK = "flask"
    EXPRESS = "express"
    NEXTJS = "nextjs"
    REACT = "react"
    VUE = "vue"
    ANGULAR = "angular"


class ProjectStatus(str, Enum):
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"
    DEPLOYED = "deployed"


class JobStage(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    GENERATING = "generating"
    VALIDATING = "validating"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStage.COMPLETE, JobStage.ERROR)


NON_TERMINAL_STAGES = (JobStage.INITIALIZING, JobStage.GENERATING, JobStage.VALIDATING)


class CommandType(str, Enum):
    CREATE = "CREATE"
    MODIFY = "MODIFY"
    CREATE_AND_LINK = "CREATE_AND_LINK"
    FIX_ERROR = "FIX_ERROR"
    QUESTION = "QUESTION"


class VersionStatus(str, Enum):
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class ModificationType(str, Enum):
    EDIT = "edit"
    CREATE = "create"
    DELETE = "delete"


class ModificationStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    REJECTED = "rejected"
    CONFLICT = "conflict"


class FileStatus(str, Enum):
    ANALYZING = "analyzing"
    READING = "reading"
    WRITING = "writing"
    COMPLETE = "complete"


class SandboxState(str, Enum):
    ABSENT = "absent"
    PROVISIONING = "provisioning"
    ALIVE = "alive"
    PAUSED = "paused"
    STALE = "stale"
    RESTORING = "restoring"
    FAILED = "failed"


def exhaustive(enum_cls, table: Mapping) -> Mapping:
    """Fail at import time when a dispatch table misses a member of ``enum_cls``."""
    missing = [m.name for m in enum_cls if m not in table]
    if missing:
        raise TypeError(f"{enum_cls.__name__} not handled: {', '.join(missing)}")
    return table


