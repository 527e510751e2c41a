# FILE: apiforge/server.py

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from apiforge.api.auth import router as auth_router
from apiforge.api.generate import router as generate_router
from apiforge.api.modifications import router as modifications_router
from apiforge.api.projects import router as projects_router
from apiforge.api.sandbox import router as sandbox_router
from apiforge.api.versions import router as versions_router
from apiforge.core.config import CORS_ORIGINS
from apiforge.core.database import engine, init_models
from apiforge.core.errors import ApiForgeError
from apiforge.services.completion_service import OpenAICompletionProvider
from apiforge.services.job_engine import JobEngine
from apiforge.services.orchestrator import ProjectOrchestrator
from apiforge.services.sandbox_manager import SandboxManager
from apiforge.services.sandbox_provider import build_sandbox_provider

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("apiforge")

app = FastAPI(title="apiforge")

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ApiForgeError)
async def apiforge_error_handler(request: Request, exc: ApiForgeError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_http_detail()})


app.include_router(auth_router)
app.include_router(projects_router)
app.include_router(generate_router)
app.include_router(versions_router)
app.include_router(modifications_router)
app.include_router(sandbox_router)


@app.get("/api/health")
async def health():
    return {"ok": True}


@app.on_event("startup")
async def startup():
    sandboxes = SandboxManager(build_sandbox_provider())
    app.state.sandboxes = sandboxes
    app.state.orchestrator = ProjectOrchestrator(JobEngine(OpenAICompletionProvider()), sandboxes)

    await init_models()
    resumed = await app.state.orchestrator.resume_incomplete_jobs()
    if resumed:
        logger.info("Resumed %s generation job(s) after restart", len(resumed))


@app.on_event("shutdown")
async def shutdown():
    await app.state.orchestrator.shutdown()
    aclose = getattr(app.state.sandboxes.provider, "aclose", None)
    if aclose is not None:
        await aclose()
    await engine.dispose()
