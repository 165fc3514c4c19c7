"""This module contains the FastAPI application for the pod moderation service.

It exposes the moderation engine over HTTP so that a pod server, or any other
storage front end, can submit an intercepted upload and act on the verdict.
It also provides health, version and statistics endpoints.
"""
from __future__ import annotations
import os
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from prometheus_client import make_asgi_app
from pydantic import BaseModel

from .guard import PROMETHEUS_ENABLED, Method, ModerationGuard, ModerationRequest

MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", "50000000"))
VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Builds the moderation engine from the environment at startup."""
    app.state.guard = ModerationGuard()
    yield


app = FastAPI(title="Pod Guard API", lifespan=lifespan)
app.state.max_upload_size = MAX_UPLOAD_BYTES

if PROMETHEUS_ENABLED:
    app.mount("/metrics", make_asgi_app())


class ViolationModel(BaseModel):
    category: str
    score: Optional[float] = None
    reason: str


class VerdictResponse(BaseModel):
    """The response model for the /moderate endpoint."""

    outcome: str
    violations: List[ViolationModel] = []
    scores: Dict[str, float] = {}
    message: str = ""
    bypassed: bool = False


@app.get("/health")
def health():
    """Returns the health status of the service."""
    return {"status": "ok"}


@app.get("/version")
def version():
    """Returns the version of the service and the classifier backend."""
    return {"version": VERSION, "classifier": "sightengine"}


@app.get("/stats")
def stats():
    """Returns the in-process moderation statistics."""
    return app.state.guard.metrics.summary()


@app.post("/moderate", response_model=VerdictResponse)
async def moderate_endpoint(
    request: Request,
    file: UploadFile = File(...),
    path: str = Form(...),
    method: str = Form("POST"),
    actor: Optional[str] = Form(None),
):
    """Moderates one upload destined for `path`.

    Verbs that do not create or modify content bypass moderation.
    """
    mutation = Method.from_http(method)
    if mutation is None:
        return VerdictResponse(outcome="ALLOW", bypassed=True)
    cl = request.headers.get("content-length")
    if cl is not None and cl.isdigit() and int(cl) > app.state.max_upload_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large"
        )
    cap = app.state.max_upload_size + 1
    content = await file.read(cap)
    if len(content) > app.state.max_upload_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large"
        )
    verdict = await run_in_threadpool(
        app.state.guard.moderate,
        ModerationRequest(
            declared_kind=file.content_type or "",
            payload=content,
            resource_path=path,
            method=mutation,
            actor_id=actor or None,
        ),
    )
    return VerdictResponse(**verdict.to_dict())
