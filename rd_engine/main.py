from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rd_engine.api.routes import research, sessions
from rd_engine.config import settings
from rd_engine.services.session_store import get_session_manager
from rd_engine.workflow.orchestrator import ResearchEngine


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Flush queued session writes before the loop goes away
    await get_session_manager().close()


app = FastAPI(
    title="RD Engine",
    description="Multi-stage research pipeline: plan, discover, aggregate, synthesize and verify",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(research.router)
app.include_router(sessions.router)


@app.get("/api/health")
async def health():
    return ResearchEngine.health()
