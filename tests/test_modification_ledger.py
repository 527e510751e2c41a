"""Tests for the propose / apply / reject ledger."""

import asyncio
import gc

import pytest

from apiforge.core.database import SessionLocal
from apiforge.core.enums import ModificationStatus, ModificationType
from apiforge.core.errors import ModificationConflict, NotFoundError
from apiforge.services import modification_ledger as ledger
from apiforge.services.sandbox_manager import SandboxManager
from apiforge.services.version_store import append_version
from apiforge.services.workspace_service import load_tree


async def _seed(db, project_id: str, files=None):
    v, _ = await append_version(db, project_id, files or {"main.py": "a = 1\n"})
    return v


async def _propose_one(db, project_id: str, proposal: ledger.ProposedModification, base: int = 1):
    [m] = await ledger.propose(db, project_id, "job-1", [proposal], base_version_number=base)
    await db.commit()
    return m


def _edit(old: str = "a = 1\n", new: str = "a = 2\n", path: str = "main.py") -> ledger.ProposedModification:
    return ledger.ProposedModification(path, ModificationType.EDIT, new_content=new, old_content=old)


class TestApply:
    """Apply writes through the working tree and is idempotent."""

    async def test_apply_edit_updates_tree(self, db, project_id: str) -> None:
        await _seed(db, project_id)
        m = await _propose_one(db, project_id, _edit())

        outcome = await ledger.apply(db, m.id)

        assert outcome.outcome == ledger.APPLIED
        assert outcome.ok
        assert (await load_tree(db, project_id))["main.py"] == "a = 2\n"
        assert (await ledger.get_modification(db, m.id)).applied

    async def test_apply_twice_is_a_no_op(self, db, project_id: str) -> None:
        await _seed(db, project_id)
        m = await _propose_one(db, project_id, _edit())

        await ledger.apply(db, m.id)
        again = await ledger.apply(db, m.id)

        assert again.outcome == ledger.ALREADY_APPLIED
        assert again.ok

    async def test_apply_create_and_delete(self, db, project_id: str) -> None:
        await _seed(db, project_id, {"main.py": "x\n", "old.py": "o\n"})
        create = await _propose_one(
            db, project_id, ledger.ProposedModification("routes/books.py", ModificationType.CREATE, new_content="r\n")
        )
        remove = await _propose_one(
            db, project_id, ledger.ProposedModification("old.py", ModificationType.DELETE, old_content="o\n")
        )

        await ledger.apply(db, create.id)
        await ledger.apply(db, remove.id)

        assert await load_tree(db, project_id) == {"main.py": "x\n", "routes/books.py": "r\n"}

    async def test_apply_pushes_change_to_live_sandbox(self, db, project_id: str, sandboxes: SandboxManager,
                                                       sandbox_provider) -> None:
        await _seed(db, project_id)
        sb = await sandboxes.ensure_alive(project_id)
        m = await _propose_one(db, project_id, _edit())

        await ledger.apply(db, m.id, sandboxes=sandboxes)

        assert sandbox_provider.files[sb.provider_sandbox_id]["main.py"] == "a = 2\n"

    async def test_concurrent_applies_apply_once(self, project_id: str, db) -> None:
        """Two racing applies on one id: exactly one reports `applied`."""
        await _seed(db, project_id)
        m = await _propose_one(db, project_id, _edit())

        async def _apply():
            async with SessionLocal() as session:
                return await ledger.apply(session, m.id)

        results = await asyncio.gather(_apply(), _apply())

        assert sorted(r.outcome for r in results) == [ledger.ALREADY_APPLIED, ledger.APPLIED]

    async def test_unknown_id(self, db, project_id: str) -> None:
        with pytest.raises(NotFoundError):
            await ledger.apply(db, "missing")


class TestStaleness:
    """Proposals made against content that has since moved are flagged, not applied."""

    async def test_changed_file_raises_conflict(self, db, project_id: str) -> None:
        await _seed(db, project_id)
        first = await _propose_one(db, project_id, _edit(new="a = 2\n"))
        second = await _propose_one(db, project_id, _edit(new="a = 3\n"))

        await ledger.apply(db, first.id)
        with pytest.raises(ModificationConflict) as exc:
            await ledger.apply(db, second.id)

        assert exc.value.file_path == "main.py"
        assert exc.value.status_code == 409
        assert (await ledger.get_modification(db, second.id)).status == ModificationStatus.CONFLICT.value
        assert (await load_tree(db, project_id))["main.py"] == "a = 2\n"

    async def test_superseded_base_version_raises_conflict(self, db, project_id: str) -> None:
        await _seed(db, project_id)
        m = await _propose_one(db, project_id, _edit())
        # a later version lands with identical content for main.py
        await append_version(db, project_id, {"main.py": "a = 1\n", "extra.py": "e\n"})

        with pytest.raises(ModificationConflict):
            await ledger.apply(db, m.id)

    async def test_conflict_can_still_be_rejected(self, db, project_id: str) -> None:
        await _seed(db, project_id)
        m = await _propose_one(db, project_id, _edit(old="something else\n"))

        with pytest.raises(ModificationConflict):
            await ledger.apply(db, m.id)
        outcome = await ledger.reject(db, m.id)

        assert outcome.outcome == ledger.REJECTED


class TestReject:
    """Reject is terminal and idempotent; apply wins over reject."""

    async def test_reject_then_reject(self, db, project_id: str) -> None:
        await _seed(db, project_id)
        m = await _propose_one(db, project_id, _edit())

        first = await ledger.reject(db, m.id)
        second = await ledger.reject(db, m.id)

        assert first.outcome == ledger.REJECTED
        assert second.outcome == ledger.ALREADY_REJECTED
        assert (await load_tree(db, project_id))["main.py"] == "a = 1\n"

    async def test_apply_after_reject_does_nothing(self, db, project_id: str) -> None:
        await _seed(db, project_id)
        m = await _propose_one(db, project_id, _edit())

        await ledger.reject(db, m.id)
        outcome = await ledger.apply(db, m.id)

        assert outcome.outcome == ledger.REJECTED
        assert not outcome.ok
        assert (await load_tree(db, project_id))["main.py"] == "a = 1\n"

    async def test_reject_after_apply_keeps_change(self, db, project_id: str) -> None:
        await _seed(db, project_id)
        m = await _propose_one(db, project_id, _edit())

        await ledger.apply(db, m.id)
        outcome = await ledger.reject(db, m.id)

        assert outcome.outcome == ledger.ALREADY_APPLIED
        assert (await ledger.get_modification(db, m.id)).status == ModificationStatus.APPLIED.value
        assert (await load_tree(db, project_id))["main.py"] == "a = 2\n"

    async def test_concurrent_apply_and_reject_settle_once(self, db, project_id: str) -> None:
        """Racing apply and reject on separate sessions: exactly one takes effect."""
        await _seed(db, project_id)
        m = await _propose_one(db, project_id, _edit())

        async def _apply():
            async with SessionLocal() as session:
                return await ledger.apply(session, m.id)

        async def _reject():
            async with SessionLocal() as session:
                return await ledger.reject(session, m.id)

        applied, rejected = await asyncio.gather(_apply(), _reject())

        async with SessionLocal() as session:
            final = await ledger.get_modification(session, m.id)
            tree = await load_tree(session, project_id)
        if applied.outcome == ledger.APPLIED:
            assert rejected.outcome == ledger.ALREADY_APPLIED
            assert final.status == ModificationStatus.APPLIED.value
            assert tree["main.py"] == "a = 2\n"
        else:
            assert (applied.outcome, rejected.outcome) == (ledger.REJECTED, ledger.REJECTED)
            assert final.status == ModificationStatus.REJECTED.value
            assert tree["main.py"] == "a = 1\n"

    async def test_settled_modifications_release_their_locks(self, db, project_id: str) -> None:
        """The per-modification lock table does not grow with settled ids."""
        await _seed(db, project_id)
        ids = []
        for i in range(6):
            create = ledger.ProposedModification(f"mod{i}.py", ModificationType.CREATE, new_content=f"m = {i}\n")
            ids.append((await _propose_one(db, project_id, create)).id)

        for mid in ids[:3]:
            await ledger.reject(db, mid)
        for mid in ids[3:]:
            await ledger.apply(db, mid)
        gc.collect()

        assert len(ledger._MOD_LOCKS) == 0

    async def test_records_are_never_deleted(self, db, project_id: str) -> None:
        await _seed(db, project_id)
        kept = await _propose_one(db, project_id, _edit())
        dropped = await _propose_one(db, project_id, _edit(path="main.py", new="a = 5\n"))

        await ledger.apply(db, kept.id)
        await ledger.reject(db, dropped.id)

        statuses = {m.id: m.status for m in await ledger.list_modifications(db, project_id)}
        assert statuses == {kept.id: "applied", dropped.id: "rejected"}


class TestBatchAndQueries:
    """apply_multiple, grouping, materialize."""

    async def test_apply_multiple_reports_per_id(self, db, project_id: str) -> None:
        await _seed(db, project_id, {"a.py": "a\n", "b.py": "b\n"})
        good = await _propose_one(db, project_id, _edit(old="a\n", new="A\n", path="a.py"))
        stale = await _propose_one(db, project_id, _edit(old="not b\n", new="B\n", path="b.py"))

        results = await ledger.apply_multiple(db, [good.id, stale.id, "missing"])

        assert [r.outcome for r in results] == [ledger.APPLIED, ledger.CONFLICT, ledger.NOT_FOUND]
        assert (await load_tree(db, project_id)) == {"a.py": "A\n", "b.py": "b\n"}

    async def test_group_by_file_and_filters(self, db, project_id: str) -> None:
        await _seed(db, project_id, {"a.py": "a\n", "b.py": "b\n"})
        await _propose_one(db, project_id, _edit(old="a\n", new="A\n", path="a.py"))
        m = await _propose_one(db, project_id, _edit(old="b\n", new="B\n", path="b.py"))
        await ledger.reject(db, m.id)

        pending = await ledger.list_modifications(db, project_id, status=ModificationStatus.PENDING)
        grouped = ledger.group_by_file(await ledger.list_modifications(db, project_id))

        assert [p.file_path for p in pending] == ["a.py"]
        assert list(grouped) == ["a.py", "b.py"]
        assert await ledger.count_pending(db, project_id) == 1

    async def test_materialize_overlays_applied_changes(self, db, project_id: str) -> None:
        await _seed(db, project_id, {"a.py": "a\n", "b.py": "b\n"})
        m = await _propose_one(db, project_id, _edit(old="a\n", new="A\n", path="a.py"))
        await ledger.apply(db, m.id)

        assert await ledger.materialize(db, project_id) == {"a.py": "A\n", "b.py": "b\n"}

    async def test_materialize_empty_project(self, db, project_id: str) -> None:
        assert await ledger.materialize(db, project_id) == {}
