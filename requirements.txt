fastapi
uvicorn
=== END FILE ===
"""


# --- Fakes ---


class FakeCompletionProvider:
    """Streams a scripted reply through the real file-marker parser.

    ``fail_times`` transient failures are raised before the script plays;
    ``gate`` (when set) blocks the stream until the event is set.
    """

    def __init__(self, script: str = BOOK_API, fail_times: int = 0, gate: Optional[asyncio.Event] = None):
        self.script = script
        self.fail_times = fail_times
        self.gate = gate
        self.calls = 0
        self.prompts: List[str] = []
        self.contexts: List[dict] = []

    async def complete(self, prompt, context):
        self.calls += 1
        self.prompts.append(prompt)
        self.contexts.append(context)
        if self.calls <= self.fail_times:
            raise GenerationTransientError("rate limit exceeded")
        if self.gate is not None:
            await self.gate.wait()

        parser = FileMarkerParser()
        for line in self.script.splitlines(keepends=True):
            for chunk in parser.feed(line):
                yield chunk
        for chunk in parser.close():
            yield chunk


class FakeSandboxProvider:
    """In-memory provider; ``expire`` simulates provider-side reaping."""

    def __init__(self):
        self.files: Dict[str, Dict[str, str]] = {}
        self.alive: Dict[str, bool] = {}
        self.created = 0
        self.fail_creates = 0
        self.destroyed: List[str] = []
        self.paused: set = set()
        self.commands: List[tuple] = []
        self.exec_error: Optional[BaseException] = None

    async def create(self, files, start_command=None, port=None):
        # yield so racing callers interleave
        await asyncio.sleep(0)
        if self.fail_creates:
            self.fail_creates -= 1
            raise RuntimeError("provider unavailable")
        self.created += 1
        sid = f"fake-{self.created}"
        self.files[sid] = dict(files)
        self.alive[sid] = True
        return sid, f"https://{sid}.sandbox.test"

    async def exec(self, sandbox_id, command, background=False):
        self.commands.append((sandbox_id, command))
        if self.exec_error is not None:
            raise self.exec_error
        return f"ran {command}\n"

    async def probe(self, sandbox_id):
        return ProbeResult(alive=self.alive.get(sandbox_id, False))

    async def push_files(self, sandbox_id, files, deleted: Iterable[str] = ()):
        if not self.alive.get(sandbox_id) and sandbox_id not in self.paused:
            raise RuntimeError(f"sandbox {sandbox_id} is gone")
        tree = self.files[sandbox_id]
        tree.update(files)
        for path in deleted:
            tree.pop(path, None)

    async def pause(self, sandbox_id):
        if not self.alive.get(sandbox_id):
            raise RuntimeError(f"sandbox {sandbox_id} not found")
        self.alive[sandbox_id] = False
        self.paused.add(sandbox_id)

    async def resume(self, sandbox_id):
        if sandbox_id not in self.paused:
            raise RuntimeError(f"sandbox {sandbox_id} not found")
        self.paused.discard(sandbox_id)
        self.alive[sandbox_id] = True
        return f"https://{sandbox_id}.sandbox.test"

    async def destroy(self, sandbox_id):
        self.destroyed.append(sandbox_id)
        self.paused.discard(sandbox_id)
        self.files.pop(sandbox_id, None)
        self.alive.pop(sandbox_id, None)

    def expire(self, sandbox_id):
        self.alive[sandbox_id] = False
        self.paused.discard(sandbox_id)


# --- Database fixtures ---


@pytest.fixture
async def schema() -> AsyncGenerator[None]:
    """Fresh tables per test; pooled connections are dropped afterwards."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture
async def db(schema) -> AsyncGenerator:
    async with SessionLocal() as session:
        yield session


@pytest.fixture
async def user(schema) -> dict:
    async with SessionLocal() as session:
        u = User(
            id=str(uuid.uuid4()),
            email=f"dev-{uuid.uuid4().hex[:8]}@example.com",
            password_hash=hash_password("secret123"),
            name="Dev",
        )
        session.add(u)
        await session.commit()
        return {"id": u.id, "email": u.email, "token": create_token(u.id, u.email)}


async def make_project(user_id: str, framework: Framework = Framework.FASTAPI, repo_url: Optional[str] = None) -> str:
    async with SessionLocal() as session:
        p = Project(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name="Book inventory",
            description="",
            prompt="Create a book inventory API",
            framework=framework.value,
            status=ProjectStatus.GENERATING.value,
            repo_url=repo_url,
        )
        session.add(p)
        await session.commit()
        return p.id


@pytest.fixture
async def project_id(user) -> str:
    return await make_project(user["id"])


# --- Service fixtures ---


@pytest.fixture
def completion() -> FakeCompletionProvider:
    return FakeCompletionProvider()


@pytest.fixture
def sandbox_provider() -> FakeSandboxProvider:
    return FakeSandboxProvider()


@pytest.fixture
def sandboxes(schema, sandbox_provider) -> SandboxManager:
    return SandboxManager(sandbox_provider, retry_policy=FAST_RETRY)


@pytest.fixture
def job_engine(schema, completion) -> JobEngine:
    return JobEngine(completion, retry_policy=FAST_RETRY)


@pytest.fixture
async def orchestrator(job_engine, sandboxes) -> AsyncGenerator[ProjectOrchestrator]:
    orch = ProjectOrchestrator(job_engine, sandboxes)
    yield orch
    await orch.shutdown()
