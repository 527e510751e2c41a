# FILE: apiforge/services/workspace_service.py
"""
The one write path for a project's working tree.

Version folding and modification apply both stage their changes here, inside
their own transaction, and push the committed change to a live sandbox
through push_to_sandbox().
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from apiforge.models.project_file import ProjectFile

if TYPE_CHECKING:
    from apiforge.services.sandbox_manager import SandboxManager

logger = logging.getLogger("apiforge.workspace")

LANGUAGE_BY_SUFFIX = {
    ".py": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".html": "html",
    ".css": "css",
    ".json": "json",
    ".md": "markdown",
    ".yml": "yaml",
    ".yaml": "yaml",
    ".toml": "toml",
    ".sql": "sql",
    ".sh": "bash",
    ".txt": "text",
}


def infer_language(path: str) -> str:
    p = (path or "").lower()
    for suffix, lang in LANGUAGE_BY_SUFFIX.items():
        if p.endswith(suffix):
            return lang
    if p.endswith("dockerfile"):
        return "dockerfile"
    return "text"


def normalize_path(path: str) -> str:
    p = (path or "").strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    p = p.lstrip("/")
    if not p or ".." in p.split("/"):
        raise ValueError(f"Invalid file path: {path!r}")
    return p


@dataclass
class TreeChange:
    written: Dict[str, str] = field(default_factory=dict)
    deleted: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.written and not self.deleted


async def load_tree(db: AsyncSession, project_id: str) -> Dict[str, str]:
    rows = (
        await db.execute(
            select(ProjectFile.path, ProjectFile.content).where(ProjectFile.project_id == project_id)
        )
    ).all()
    return {path: content for (path, content) in rows}


async def stage_files(
    db: AsyncSession,
    project_id: str,
    files: Dict[str, str],
    deleted: Iterable[str] = (),
) -> TreeChange:
    """Upsert ``files`` and remove ``deleted`` in the caller's transaction (no commit)."""
    change = TreeChange()
    files = {normalize_path(p): c for p, c in (files or {}).items()}
    deleted = [normalize_path(p) for p in deleted]

    if files:
        existing = {
            f.path: f
            for f in (
                await db.execute(
                    select(ProjectFile).where(
                        ProjectFile.project_id == project_id,
                        ProjectFile.path.in_(list(files)),
                    )
                )
            ).scalars()
        }
        for path, content in files.items():
            row = existing.get(path)
            if row is None:
                db.add(ProjectFile(
                    project_id=project_id,
                    path=path,
                    language=infer_language(path),
                    content=content or "",
                ))
            elif row.content == content:
                continue
            else:
                row.content = content or ""
            change.written[path] = content or ""

    if deleted:
        result = await db.execute(
            delete(ProjectFile).where(
                ProjectFile.project_id == project_id,
                ProjectFile.path.in_(deleted),
            )
        )
        if result.rowcount:
            change.deleted.extend(deleted)

    await db.flush()
    return change


async def stage_tree(db: AsyncSession, project_id: str, files: Dict[str, str]) -> TreeChange:
    """Make the working tree exactly ``files``."""
    current = await load_tree(db, project_id)
    wanted = {normalize_path(p) for p in files}
    removed = [p for p in current if p not in wanted]
    return await stage_files(db, project_id, files, deleted=removed)


async def push_to_sandbox(
    project_id: str,
    change: TreeChange,
    sandboxes: Optional["SandboxManager"],
) -> None:
    """Mirror a committed change into the live sandbox, if the project has one."""
    if sandboxes is None or change.empty:
        return
    await sandboxes.push_changes(project_id, change.written, change.deleted)
