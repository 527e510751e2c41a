"""HTTP-level tests for the API surface."""

import asyncio
import io
import zipfile
from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from apiforge.server import app
from tests.conftest import make_project
from tests.test_job_engine import MODIFY_REPLY


@pytest.fixture
async def client(orchestrator, sandboxes) -> AsyncGenerator[AsyncClient]:
    app.state.orchestrator = orchestrator
    app.state.sandboxes = sandboxes
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


def _auth(user: dict) -> dict:
    return {"Authorization": f"Bearer {user['token']}"}


async def _create(client: AsyncClient, orchestrator, user: dict, prompt: str = "Create a book inventory API") -> dict:
    response = await client.post("/api/projects", json={"prompt": prompt}, headers=_auth(user))
    assert response.status_code == 201, response.text
    data = response.json()
    await orchestrator.wait_for_job(data["job_id"])
    return data


class TestAuth:
    """Register, login, me."""

    async def test_register_login_me(self, client: AsyncClient) -> None:
        registered = await client.post(
            "/api/auth/register", json={"email": "Ada@Example.com", "password": "secret123", "name": "Ada"}
        )
        assert registered.status_code == 200
        assert registered.json()["user"]["email"] == "ada@example.com"

        login = await client.post("/api/auth/login", json={"email": "ada@example.com", "password": "secret123"})
        token = login.json()["token"]
        me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})

        assert me.status_code == 200
        assert me.json()["name"] == "Ada"
        assert me.json()["last_login_at"] is not None
        assert me.json()["project_count"] == 0

    async def test_wrong_password(self, client: AsyncClient, user: dict) -> None:
        response = await client.post("/api/auth/login", json={"email": user["email"], "password": "nope"})
        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "INVALID_CREDENTIALS"

    async def test_duplicate_email_is_a_conflict(self, client: AsyncClient) -> None:
        body = {"email": "grace@example.com", "password": "secret123", "name": "Grace"}
        assert (await client.post("/api/auth/register", json=body)).status_code == 200

        again = await client.post("/api/auth/register", json={**body, "email": "Grace@Example.com"})

        assert again.status_code == 409
        assert again.json()["detail"]["code"] == "EMAIL_TAKEN"

    async def test_me_counts_projects(self, client: AsyncClient, user: dict) -> None:
        await make_project(user["id"])
        await make_project(user["id"])

        me = await client.get("/api/auth/me", headers=_auth(user))

        assert me.status_code == 200
        assert me.json()["project_count"] == 2

    async def test_projects_require_auth(self, client: AsyncClient) -> None:
        assert (await client.get("/api/projects")).status_code == 401


class TestProjects:
    """Project creation through to files and export."""

    async def test_create_generates_first_version(self, client: AsyncClient, orchestrator, user: dict) -> None:
        data = await _create(client, orchestrator, user)
        pid = data["project"]["id"]

        status = await client.get(f"/api/projects/{pid}/status", headers=_auth(user))
        versions = await client.get(f"/api/projects/{pid}/versions", headers=_auth(user))
        diff = await client.get(f"/api/projects/{pid}/versions/1/diff", headers=_auth(user))
        project = await client.get(f"/api/projects/{pid}", headers=_auth(user))

        assert data["project"]["name"] == "Create a book inventory API"
        assert status.json()["stage"] == "complete"
        assert status.json()["progress"]["percent"] == 100
        assert [v["version_number"] for v in versions.json()] == [1]
        assert diff.json()["new"] == ["main.py", "requirements.txt"]
        assert project.json()["latest_version_number"] == 1
        assert project.json()["file_count"] == 2
        assert project.json()["status"] == "completed"

    async def test_files_export_and_download(self, client: AsyncClient, orchestrator, user: dict) -> None:
        pid = (await _create(client, orchestrator, user))["project"]["id"]

        files = await client.get(f"/api/projects/{pid}/files", headers=_auth(user))
        export = await client.get(f"/api/projects/{pid}/export", headers=_auth(user))
        download = await client.get(f"/api/projects/{pid}/download", headers=_auth(user))

        assert [f["path"] for f in files.json()["files"]] == ["main.py", "requirements.txt"]
        assert files.json()["files"][0]["language"] == "python"
        assert export.json()["version_number"] == 1
        assert set(export.json()["files"]) == {"main.py", "requirements.txt"}
        with zipfile.ZipFile(io.BytesIO(download.content)) as zf:
            assert sorted(zf.namelist()) == ["main.py", "requirements.txt"]

    async def test_other_users_project_is_hidden(self, client: AsyncClient, user: dict, schema) -> None:
        from apiforge.core.database import SessionLocal
        from apiforge.models.user import User

        async with SessionLocal() as session:
            session.add(User(id="someone-else", email="else@example.com", password_hash="x", name="Else"))
            await session.commit()
        pid = await make_project("someone-else")

        assert (await client.get(f"/api/projects/{pid}", headers=_auth(user))).status_code == 404

    async def test_delete_refused_while_versions_exist(self, client: AsyncClient, orchestrator, user: dict) -> None:
        pid = (await _create(client, orchestrator, user))["project"]["id"]
        assert (await client.delete(f"/api/projects/{pid}", headers=_auth(user))).status_code == 409

    async def test_delete_empty_project(self, client: AsyncClient, user: dict) -> None:
        pid = await make_project(user["id"])
        response = await client.delete(f"/api/projects/{pid}", headers=_auth(user))

        assert response.status_code == 200
        assert (await client.get(f"/api/projects/{pid}", headers=_auth(user))).status_code == 404

    async def test_bind_repository(self, client: AsyncClient, user: dict) -> None:
        pid = await make_project(user["id"])
        bad = await client.put(f"/api/projects/{pid}/repository", json={"repo_url": "ftp://x"}, headers=_auth(user))
        good = await client.put(
            f"/api/projects/{pid}/repository", json={"repo_url": "https://github.com/me/books.git"}, headers=_auth(user)
        )

        assert bad.status_code == 422
        assert good.json()["repo_url"] == "https://github.com/me/books.git"


class TestJobs:
    """Prompt submission, job lookups and the event feed."""

    async def test_prompt_while_running_is_409(self, client: AsyncClient, orchestrator, completion,
                                               user: dict) -> None:
        completion.gate = asyncio.Event()
        response = await client.post("/api/projects", json={"prompt": "Create an API"}, headers=_auth(user))
        data = response.json()

        second = await client.post(
            f"/api/projects/{data['project']['id']}/prompts", json={"prompt": "add auth"}, headers=_auth(user)
        )

        assert second.status_code == 409
        assert second.json()["detail"]["code"] == "JOB_ALREADY_IN_FLIGHT"
        assert second.json()["detail"]["job_id"] == data["job_id"]
        completion.gate.set()
        await orchestrator.wait_for_job(data["job_id"])

    async def test_empty_prompt_rejected(self, client: AsyncClient, user: dict) -> None:
        pid = await make_project(user["id"])
        response = await client.post(f"/api/projects/{pid}/prompts", json={"prompt": "  "}, headers=_auth(user))
        assert response.status_code == 422

    async def test_job_and_events(self, client: AsyncClient, orchestrator, user: dict) -> None:
        data = await _create(client, orchestrator, user)
        job_id = data["job_id"]

        job = await client.get(f"/api/jobs/{job_id}", headers=_auth(user))
        first = await client.get(f"/api/jobs/{job_id}/events", headers=_auth(user))
        cursor = first.json()["next_cursor"]
        rest = await client.get(f"/api/jobs/{job_id}/events", params={"after": cursor}, headers=_auth(user))

        assert job.json()["stage"] == "complete"
        assert first.json()["events"][-1]["type"] == "complete"
        assert cursor == first.json()["events"][-1]["seq"]
        assert rest.json()["events"] == []
        assert rest.json()["next_cursor"] == cursor
        assert rest.json()["stage"] == "complete"

    async def test_unknown_job(self, client: AsyncClient, user: dict) -> None:
        assert (await client.get("/api/jobs/nope", headers=_auth(user))).status_code == 404


class TestVersionsAndModifications:
    """Version reads and the review flow."""

    async def _with_proposals(self, client, orchestrator, completion, user) -> str:
        pid = (await _create(client, orchestrator, user))["project"]["id"]
        completion.script = MODIFY_REPLY
        job = await client.post(
            f"/api/projects/{pid}/prompts", json={"prompt": "add a books router"}, headers=_auth(user)
        )
        assert job.status_code == 202
        assert job.json()["command_type"] == "MODIFY"
        await orchestrator.wait_for_job(job.json()["id"])
        return pid

    async def test_review_flow(self, client: AsyncClient, orchestrator, completion, user: dict) -> None:
        pid = await self._with_proposals(client, orchestrator, completion, user)

        grouped = await client.get(f"/api/projects/{pid}/modifications", params={"grouped": "true"},
                                   headers=_auth(user))
        mods = {m["file_path"]: m for m in (await client.get(f"/api/projects/{pid}/modifications",
                                                             headers=_auth(user))).json()}
        applied = await client.post(f"/api/modifications/{mods['routes/books.py']['id']}/apply", headers=_auth(user))
        again = await client.post(f"/api/modifications/{mods['routes/books.py']['id']}/apply", headers=_auth(user))
        rejected = await client.post(f"/api/modifications/{mods['requirements.txt']['id']}/reject",
                                     headers=_auth(user))
        files = await client.get(f"/api/projects/{pid}/files", headers=_auth(user))

        assert grouped.json()["total"] == 3
        assert sorted(grouped.json()["files"]) == ["main.py", "requirements.txt", "routes/books.py"]
        assert applied.json()["outcome"] == "applied"
        assert again.json()["outcome"] == "already_applied"
        assert rejected.json()["outcome"] == "rejected"
        paths = [f["path"] for f in files.json()["files"]]
        assert "routes/books.py" in paths
        assert "requirements.txt" in paths

    async def test_apply_multiple(self, client: AsyncClient, orchestrator, completion, user: dict) -> None:
        pid = await self._with_proposals(client, orchestrator, completion, user)
        ids = [m["id"] for m in (await client.get(f"/api/projects/{pid}/modifications", headers=_auth(user))).json()]

        response = await client.post(
            f"/api/projects/{pid}/modifications/apply", json={"ids": ids + ["foreign-id"]}, headers=_auth(user)
        )

        body = response.json()
        assert body["applied"] == 3
        assert body["failed"] == 1
        assert body["results"][-1]["outcome"] == "not_found"

    async def test_conflict_is_409(self, client: AsyncClient, orchestrator, completion, user: dict) -> None:
        pid = await self._with_proposals(client, orchestrator, completion, user)
        mods = {m["file_path"]: m for m in (await client.get(f"/api/projects/{pid}/modifications",
                                                             headers=_auth(user))).json()}
        # a fresh full generation supersedes the pending proposals
        completion.script = "=== FILE: main.py ===\napp = None\n=== END FILE ===\n"
        job = await client.post(
            f"/api/projects/{pid}/prompts",
            json={"prompt": "start over", "command_type": "CREATE"},
            headers=_auth(user),
        )
        await orchestrator.wait_for_job(job.json()["id"])

        response = await client.post(f"/api/modifications/{mods['main.py']['id']}/apply", headers=_auth(user))

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "MODIFICATION_CONFLICT"
        assert response.json()["detail"]["file_path"] == "main.py"

    async def test_compare_versions(self, client: AsyncClient, orchestrator, completion, user: dict) -> None:
        pid = (await _create(client, orchestrator, user))["project"]["id"]
        completion.script = "=== FILE: main.py ===\napp = None\n=== END FILE ===\n"
        job = await client.post(
            f"/api/projects/{pid}/prompts", json={"prompt": "start over", "command_type": "CREATE"},
            headers=_auth(user),
        )
        await orchestrator.wait_for_job(job.json()["id"])

        compare = await client.get(f"/api/projects/{pid}/versions/compare", params={"from": 1, "to": 2},
                                   headers=_auth(user))
        v2 = await client.get(f"/api/projects/{pid}/versions/2", headers=_auth(user))
        missing = await client.get(f"/api/projects/{pid}/versions/9", headers=_auth(user))

        assert compare.json()["modified"] == ["main.py"]
        assert compare.json()["deleted"] == ["requirements.txt"]
        assert v2.json()["files"] == {"main.py": "app = None\n"}
        assert missing.status_code == 404
        assert missing.json()["detail"]["code"] == "NOT_FOUND"


class TestSandboxApi:
    """Preview sandbox endpoints."""

    async def test_ensure_keepalive_restore_destroy(self, client: AsyncClient, orchestrator, sandbox_provider,
                                                    user: dict) -> None:
        pid = (await _create(client, orchestrator, user))["project"]["id"]

        before = await client.get(f"/api/projects/{pid}/sandbox", headers=_auth(user))
        ensured = await client.post(f"/api/projects/{pid}/sandbox/ensure", headers=_auth(user))
        keepalive = await client.post(f"/api/projects/{pid}/sandbox/keepalive", headers=_auth(user))

        sandbox_provider.expire(ensured.json()["url"].split("//")[1].split(".")[0])
        restored = await client.post(f"/api/projects/{pid}/sandbox/ensure", headers=_auth(user))
        restarted = await client.post(f"/api/projects/{pid}/sandbox/restart", headers=_auth(user))
        destroyed = await client.delete(f"/api/projects/{pid}/sandbox", headers=_auth(user))
        after = await client.get(f"/api/projects/{pid}/sandbox", headers=_auth(user))

        assert before.json()["state"] == "absent"
        assert ensured.json()["state"] == "alive"
        assert ensured.json()["restored_url"] is None
        assert keepalive.json()["alive"] is True
        assert restored.json()["restored_url"] == restored.json()["url"]
        assert restored.json()["url"] != ensured.json()["url"]
        assert restarted.json()["restore_count"] == 2
        assert destroyed.json() == {"ok": True}
        assert after.json()["state"] == "absent"

    async def test_provision_failure_is_503(self, client: AsyncClient, orchestrator, sandbox_provider,
                                            user: dict) -> None:
        pid = (await _create(client, orchestrator, user))["project"]["id"]
        sandbox_provider.fail_creates = 10

        response = await client.post(f"/api/projects/{pid}/sandbox/ensure", headers=_auth(user))
        view = await client.get(f"/api/projects/{pid}/sandbox", headers=_auth(user))

        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "SANDBOX_PROVISION"
        assert view.json()["preview_unavailable"] is True

    async def test_pause_resume_exec(self, client: AsyncClient, orchestrator, sandbox_provider, user: dict) -> None:
        pid = (await _create(client, orchestrator, user))["project"]["id"]
        ensured = await client.post(f"/api/projects/{pid}/sandbox/ensure", headers=_auth(user))

        ran = await client.post(f"/api/projects/{pid}/sandbox/exec", json={"command": " ls -la "},
                                headers=_auth(user))
        paused = await client.post(f"/api/projects/{pid}/sandbox/pause", headers=_auth(user))
        keepalive = await client.post(f"/api/projects/{pid}/sandbox/keepalive", headers=_auth(user))
        refused = await client.post(f"/api/projects/{pid}/sandbox/exec", json={"command": "ls"},
                                    headers=_auth(user))
        resumed = await client.post(f"/api/projects/{pid}/sandbox/resume", headers=_auth(user))

        assert ran.status_code == 200
        assert ran.json() == {"command": "ls -la", "output": "ran ls -la\n"}
        assert paused.json()["state"] == "paused"
        assert paused.json()["paused"] is True
        assert keepalive.json()["needs_restart"] is False
        assert refused.status_code == 409
        assert refused.json()["detail"]["code"] == "SANDBOX_NOT_RUNNING"
        assert resumed.json()["state"] == "alive"
        assert resumed.json()["url"] == ensured.json()["url"]
        assert resumed.json()["restored_url"] is None

    async def test_exec_rejects_empty_command(self, client: AsyncClient, user: dict) -> None:
        pid = await make_project(user["id"])

        response = await client.post(f"/api/projects/{pid}/sandbox/exec", json={"command": "   "},
                                     headers=_auth(user))

        assert response.status_code == 422

    async def test_pause_without_sandbox_is_404(self, client: AsyncClient, orchestrator, user: dict) -> None:
        pid = (await _create(client, orchestrator, user))["project"]["id"]

        response = await client.post(f"/api/projects/{pid}/sandbox/pause", headers=_auth(user))

        assert response.status_code == 404
