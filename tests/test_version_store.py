"""Tests for the append-only version log."""

import asyncio

import pytest

from apiforge.core.enums import CommandType, ModificationStatus, ModificationType
from apiforge.core.errors import NotFoundError, StaleVersionReference
from apiforge.core.database import SessionLocal
from apiforge.services import modification_ledger as ledger
from apiforge.services.version_store import (
    FILE_NEW,
    append_version,
    compare_versions,
    diff_against_previous,
    export_snapshot,
    get_latest,
    get_version,
    list_versions,
    require_latest,
)
from apiforge.services.workspace_service import load_tree


class TestAppendVersion:
    """Numbering and working-tree effects of append_version."""

    async def test_first_version_is_number_one(self, db, project_id: str) -> None:
        """A project's first snapshot is version 1 with no parent."""
        v, change = await append_version(db, project_id, {"main.py": "print(1)\n"})

        assert v.version_number == 1
        assert v.parent_version_id is None
        assert change.written == {"main.py": "print(1)\n"}
        assert await load_tree(db, project_id) == {"main.py": "print(1)\n"}

    async def test_numbers_are_gap_free(self, db, project_id: str) -> None:
        first, _ = await append_version(db, project_id, {"a.py": "a = 1\n"})
        second, _ = await append_version(db, project_id, {"a.py": "a = 2\n"})
        third, _ = await append_version(db, project_id, {"a.py": "a = 3\n"})

        assert [v.version_number for v in await list_versions(db, project_id)] == [1, 2, 3]
        assert second.parent_version_id == first.id
        assert third.parent_version_id == second.id

    async def test_concurrent_appends_never_share_a_number(self, project_id: str) -> None:
        """Parallel appends on one project serialize onto distinct numbers."""

        async def _append(n: int) -> int:
            async with SessionLocal() as session:
                v, _ = await append_version(session, project_id, {"a.py": f"a = {n}\n"})
                return v.version_number

        numbers = await asyncio.gather(*[_append(n) for n in range(5)])
        assert sorted(numbers) == [1, 2, 3, 4, 5]

    async def test_working_tree_drops_files_missing_from_new_version(self, db, project_id: str) -> None:
        await append_version(db, project_id, {"a.py": "a\n", "b.py": "b\n"})
        _, change = await append_version(db, project_id, {"a.py": "a\n", "c.py": "c\n"})

        assert change.deleted == ["b.py"]
        assert change.written == {"c.py": "c\n"}
        assert await export_snapshot(db, project_id) == {"a.py": "a\n", "c.py": "c\n"}

    async def test_command_type_recorded(self, db, project_id: str) -> None:
        v, _ = await append_version(
            db, project_id, {"a.py": "a\n"}, {"command_type": CommandType.CREATE, "description": "first"}
        )
        assert v.command_type == "CREATE"
        assert v.description == "first"
        assert v.name == "Version 1"

    async def test_pending_modifications_on_older_base_become_conflicts(self, db, project_id: str) -> None:
        """A new version supersedes proposals made against the previous one."""
        await append_version(db, project_id, {"a.py": "a = 1\n"})
        [m] = await ledger.propose(
            db,
            project_id,
            "job-1",
            [ledger.ProposedModification("a.py", ModificationType.EDIT, new_content="a = 9\n", old_content="a = 1\n")],
            base_version_number=1,
        )
        await db.commit()

        await append_version(db, project_id, {"a.py": "a = 2\n"})

        refreshed = await ledger.get_modification(db, m.id)
        assert refreshed.status == ModificationStatus.CONFLICT.value


class TestReads:
    """Lookups and latest-only checks."""

    async def test_get_latest_none_for_empty_project(self, db, project_id: str) -> None:
        assert await get_latest(db, project_id) is None

    async def test_get_version_unknown_number(self, db, project_id: str) -> None:
        with pytest.raises(NotFoundError):
            await get_version(db, project_id, 7)

    async def test_require_latest_rejects_old_number(self, db, project_id: str) -> None:
        await append_version(db, project_id, {"a.py": "1\n"})
        await append_version(db, project_id, {"a.py": "2\n"})

        assert (await require_latest(db, project_id, 2)).version_number == 2
        with pytest.raises(StaleVersionReference) as exc:
            await require_latest(db, project_id, 1)
        assert exc.value.latest == 2
        assert exc.value.status_code == 409


class TestDiff:
    """Per-file status against the preceding version."""

    async def test_first_version_is_all_new(self, db, project_id: str) -> None:
        v, _ = await append_version(db, project_id, {"main.py": "x\n", "requirements.txt": "fastapi\n"})
        diff = await diff_against_previous(db, v)

        assert diff.previous_number is None
        assert set(diff.files.values()) == {FILE_NEW}
        assert diff.removed == []

    async def test_added_removed_modified_unchanged(self, db, project_id: str) -> None:
        """Removed files appear only in `removed`, never as modified or unchanged."""
        await append_version(db, project_id, {"keep.py": "k\n", "edit.py": "old\n", "gone.py": "g\n"})
        v2, _ = await append_version(db, project_id, {"keep.py": "k\n", "edit.py": "new\n", "added.py": "a\n"})

        diff = (await diff_against_previous(db, v2)).to_dict()

        assert diff["new"] == ["added.py"]
        assert diff["modified"] == ["edit.py"]
        assert diff["unchanged"] == ["keep.py"]
        assert diff["removed"] == ["gone.py"]
        assert "gone.py" not in diff["files"]
        assert diff["previous_version_number"] == 1

    async def test_statuses_are_derived_not_stored(self, db, project_id: str) -> None:
        v1, _ = await append_version(db, project_id, {"a.py": "1\n"})
        await append_version(db, project_id, {"a.py": "2\n"})

        again = await diff_against_previous(db, v1)
        assert again.files == {"a.py": FILE_NEW}

    async def test_compare_arbitrary_versions(self, db, project_id: str) -> None:
        v1, _ = await append_version(db, project_id, {"a.py": "1\n", "b.py": "b\n"})
        await append_version(db, project_id, {"a.py": "2\n", "b.py": "b\n"})
        v3, _ = await append_version(db, project_id, {"a.py": "3\n", "c.py": "c\n"})

        result = compare_versions(v1, v3)

        assert result["added"] == ["c.py"]
        assert result["modified"] == ["a.py"]
        assert result["deleted"] == ["b.py"]
        assert result["summary"] == "1 added, 1 modified, 1 deleted"
