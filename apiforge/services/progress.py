# FILE: apiforge/services/progress.py
"""Progress hint for a job, computed from stage + file completion flags. Holds no state."""

from typing import Any, Dict, Mapping, Optional

from apiforge.core.enums import JobStage, exhaustive

# (floor, ceiling) percentage band per stage
STAGE_BANDS = exhaustive(JobStage, {
    JobStage.IDLE: (0, 0),
    JobStage.INITIALIZING: (0, 10),
    JobStage.GENERATING: (10, 85),
    JobStage.VALIDATING: (85, 99),
    JobStage.COMPLETE: (100, 100),
    JobStage.ERROR: (100, 100),
})

STAGE_LABELS = exhaustive(JobStage, {
    JobStage.IDLE: "Waiting",
    JobStage.INITIALIZING: "Planning the project",
    JobStage.GENERATING: "Writing files",
    JobStage.VALIDATING: "Validating generated code",
    JobStage.COMPLETE: "Done",
    JobStage.ERROR: "Failed",
})


def progress_hint(stage: JobStage, file_flags: Optional[Mapping[str, bool]] = None) -> Dict[str, Any]:
    """
    ``file_flags`` maps path -> is_complete for the in-flight file set.
    Within the generating band the percentage follows the share of finished files.
    """
    stage = JobStage(stage)
    floor, ceiling = STAGE_BANDS[stage]
    flags = dict(file_flags or {})
    total = len(flags)
    done = sum(1 for v in flags.values() if v)

    percent = floor
    if stage == JobStage.GENERATING and total:
        percent = floor + int((ceiling - floor) * done / total)

    current = next((p for p, complete in flags.items() if not complete), None)
    return {
        "percent": percent,
        "label": STAGE_LABELS[stage],
        "files_total": total,
        "files_complete": done,
        "current_file": current if stage == JobStage.GENERATING else None,
    }
