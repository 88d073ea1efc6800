from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from rendezvous import services
from rendezvous.config import get_system_config, set_system_config
from rendezvous.db import init_db, session_generator
from rendezvous.models import PromptTemplate
from rendezvous.pipeline import Action, PipelineDeps, run_action
from rendezvous.schemas import (
    ActionEnvelope,
    ConfigUpdate,
    ConfigValue,
    PipelineRequest,
    ProcessingLogOut,
    PromptOut,
    PromptUpdate,
    StatsOut,
)

log = logging.getLogger(__name__)

_ERROR_STATUS = {"invalid_request": 400, "not_found": 404, "failed": 500}


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.deps = PipelineDeps()
    yield


app = FastAPI(
    title="Rendezvous",
    version="0.1.0",
    description=(
        "AI matchmaking pipeline: pair analysis, agent conversations, outcome "
        "analysis and morning-report delivery. All endpoints return JSON. "
        "No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Pipeline", "description": "Run one pipeline stage per request."},
        {"name": "Stats", "description": "Aggregate statistics."},
        {"name": "Audit", "description": "Processing log of pipeline actions."},
        {"name": "Prompts", "description": "Editable prompt templates."},
        {"name": "Config", "description": "Runtime configuration values."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def pipeline_deps() -> PipelineDeps:
    deps = getattr(app.state, "deps", None)
    if deps is None:
        deps = app.state.deps = PipelineDeps()
    return deps


def _get_prompt_or_404(session: Session, key: str) -> PromptTemplate:
    tpl = session.execute(select(PromptTemplate).where(PromptTemplate.key == key)).scalars().first()
    if not tpl:
        raise HTTPException(404, f"Prompt '{key}' not found")
    return tpl


# ---------------------------------------------------------------------------
# Routes: Pipeline
# ---------------------------------------------------------------------------


@app.post("/api/pipeline", response_model=ActionEnvelope,
          tags=["Pipeline"], summary="Run a pipeline action")
async def pipeline(
    body: PipelineRequest,
    session: Session = Depends(db_session),
    deps: PipelineDeps = Depends(pipeline_deps),
):
    envelope = await run_action(session, body.action, body.params, deps)
    if envelope.success:
        return envelope
    return JSONResponse(envelope.model_dump(), status_code=_ERROR_STATUS.get(envelope.error_code or "", 500))


@app.get("/api/pipeline/actions", tags=["Pipeline"], summary="List supported pipeline actions")
async def list_actions():
    return {"actions": [a.value for a in Action]}


# ---------------------------------------------------------------------------
# Routes: Stats & Audit
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Get aggregate statistics")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


@app.get("/api/processing-logs", response_model=list[ProcessingLogOut],
         tags=["Audit"], summary="List recent processing log entries")
async def list_processing_logs(
    action: str | None = Query(None, description="Filter by action name"),
    status: str | None = Query(None, description="started, completed or failed"),
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(db_session),
):
    try:
        return services.recent_processing_logs(session, action=action, status=status, limit=limit)
    except ValueError as exc:
        raise HTTPException(400, f"Invalid status: {status}") from exc


# ---------------------------------------------------------------------------
# Routes: Prompts
# ---------------------------------------------------------------------------


@app.get("/api/prompts", response_model=list[PromptOut],
         tags=["Prompts"], summary="List prompt templates")
async def list_prompts(session: Session = Depends(db_session)):
    rows = session.execute(select(PromptTemplate).order_by(PromptTemplate.key)).scalars().all()
    return [services.prompt_summary(t) for t in rows]


@app.put("/api/prompts/{key}", response_model=PromptOut,
         tags=["Prompts"], summary="Update a prompt template (partial update, null fields ignored)")
async def update_prompt(key: str, body: PromptUpdate, session: Session = Depends(db_session)):
    tpl = _get_prompt_or_404(session, key)
    for field_name, value in body.model_dump(exclude_none=True).items():
        setattr(tpl, field_name, value)
    session.commit()
    return services.prompt_summary(tpl)


# ---------------------------------------------------------------------------
# Routes: Config
# ---------------------------------------------------------------------------


@app.get("/api/config/{key}", response_model=ConfigValue,
         tags=["Config"], summary="Read a runtime configuration value")
async def get_config(
    key: str,
    session: Session = Depends(db_session),
    deps: PipelineDeps = Depends(pipeline_deps),
):
    value = get_system_config(session, key, None, deps.config_cache)
    if value is None:
        raise HTTPException(404, f"Config key '{key}' not found")
    return {"key": key, "value": value}


@app.put("/api/config/{key}", response_model=ConfigValue,
         tags=["Config"], summary="Set a runtime configuration value")
async def put_config(
    key: str,
    body: ConfigUpdate,
    session: Session = Depends(db_session),
    deps: PipelineDeps = Depends(pipeline_deps),
):
    set_system_config(session, key, body.value, deps.config_cache)
    session.commit()
    return {"key": key, "value": body.value}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("rendezvous.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
