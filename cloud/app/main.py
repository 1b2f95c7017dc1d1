from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .db import SessionLocal, engine
from .models import ArtifactRecord, Base, Run, StageRecord
from .settings import MAX_LIST_LIMIT

app = FastAPI(title="edgeci run audit")

# -------------------- Schemas --------------------

class StageIn(BaseModel):
    name: str
    state: str
    reason: str = ""
    duration: float = 0.0
    jobs: list[dict[str, Any]] = Field(default_factory=list)
    bundles: list[dict[str, Any]] = Field(default_factory=list)

class ArtifactIn(BaseModel):
    name: str
    producer: str
    publish_always: bool = False
    published: bool
    file_count: int = 0
    reason: str = ""

class RunReportIn(BaseModel):
    run_id: str
    pipeline: str
    status: str  # succeeded|failed|cancelled
    commit: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    started_at: str
    finished_at: str
    stages: list[StageIn]
    artifacts: list[ArtifactIn] = Field(default_factory=list)

class CreateRunResponse(BaseModel):
    run_id: str
    stage_count: int
    artifact_count: int

class RunResponse(BaseModel):
    run_id: str
    pipeline: str
    status: str
    commit: str | None
    parameters: dict[str, Any]
    outputs: dict[str, Any]
    started_at: str
    finished_at: str
    created_at: datetime

class StageResponse(BaseModel):
    name: str
    state: str
    reason: str
    duration: float
    jobs: list[dict[str, Any]]
    bundles: list[dict[str, Any]]

class ArtifactResponse(BaseModel):
    name: str
    producer: str
    publish_always: bool
    published: bool
    file_count: int
    reason: str

RUN_STATUSES = ("succeeded", "failed", "cancelled")

# -------------------- Startup --------------------

@app.on_event("startup")
async def startup() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

def _run_response(run: Run) -> RunResponse:
    return RunResponse(
        run_id=run.id,
        pipeline=run.pipeline,
        status=run.status,
        commit=run.commit,
        parameters=run.parameters,
        outputs=run.outputs,
        started_at=run.started_at,
        finished_at=run.finished_at,
        created_at=run.created_at,
    )

# -------------------- Endpoints --------------------

@app.post("/runs", response_model=CreateRunResponse)
async def create_run(req: RunReportIn):
    if req.status not in RUN_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {'|'.join(RUN_STATUSES)}")

    async with SessionLocal() as s:
        async with s.begin():
            if await s.get(Run, req.run_id):
                raise HTTPException(status_code=409, detail=f"Run {req.run_id} already recorded")

            s.add(Run(
                id=req.run_id,
                pipeline=req.pipeline,
                status=req.status,
                commit=req.commit,
                parameters=req.parameters,
                outputs=req.outputs,
                started_at=req.started_at,
                finished_at=req.finished_at,
            ))
            await s.flush()

            for position, st in enumerate(req.stages):
                s.add(StageRecord(run_id=req.run_id, position=position, **st.model_dump()))
            for art in req.artifacts:
                s.add(ArtifactRecord(run_id=req.run_id, **art.model_dump()))

    return CreateRunResponse(run_id=req.run_id, stage_count=len(req.stages), artifact_count=len(req.artifacts))

@app.get("/runs", response_model=list[RunResponse])
async def list_runs(pipeline: str | None = None, status: str | None = None, limit: int = 20):
    """Most recent runs first."""
    q = sa.select(Run).order_by(Run.created_at.desc(), Run.id).limit(max(1, min(limit, MAX_LIST_LIMIT)))
    if pipeline:
        q = q.where(Run.pipeline == pipeline)
    if status:
        q = q.where(Run.status == status)
    async with SessionLocal() as s:
        runs = (await s.execute(q)).scalars().all()
        return [_run_response(r) for r in runs]

@app.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str):
    async with SessionLocal() as s:
        run = await s.get(Run, run_id)
        if not run:
            raise HTTPException(status_code=404, detail="Run not found")
        return _run_response(run)

@app.get("/runs/{run_id}/stages", response_model=list[StageResponse])
async def get_stages(run_id: str):
    """Stage records in execution order."""
    async with SessionLocal() as s:
        if not await s.get(Run, run_id):
            raise HTTPException(status_code=404, detail="Run not found")
        q = sa.select(StageRecord).where(StageRecord.run_id == run_id).order_by(StageRecord.position)
        stages = (await s.execute(q)).scalars().all()
        return [
            StageResponse(
                name=st.name,
                state=st.state,
                reason=st.reason,
                duration=st.duration,
                jobs=st.jobs,
                bundles=st.bundles,
            )
            for st in stages
        ]

@app.get("/runs/{run_id}/artifacts", response_model=list[ArtifactResponse])
async def get_artifacts(run_id: str, published: bool | None = None):
    async with SessionLocal() as s:
        if not await s.get(Run, run_id):
            raise HTTPException(status_code=404, detail="Run not found")
        q = sa.select(ArtifactRecord).where(ArtifactRecord.run_id == run_id)
        if published is not None:
            q = q.where(ArtifactRecord.published == published)
        q = q.order_by(ArtifactRecord.name, ArtifactRecord.producer)
        artifacts = (await s.execute(q)).scalars().all()
        return [
            ArtifactResponse(
                name=a.name,
                producer=a.producer,
                publish_always=a.publish_always,
                published=a.published,
                file_count=a.file_count,
                reason=a.reason,
            )
            for a in artifacts
        ]
