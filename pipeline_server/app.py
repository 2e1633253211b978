"""
Manual-approval gate service.

Exposes runs recorded by the local runner over HTTP: listing, status,
event streaming, and the two actions a person takes on a run, approving the
manual step it waits on and stopping it. The runner polls the shared store,
so an approval recorded here releases the gate.
"""

import asyncio
import json
import logging
import os
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from pipeline_common.models import Run, RunEvent, User, utcnow
from pipeline_common.repository import RunRepository
from pipeline_persistence.sqlite_repository import SQLiteRunRepository

from .auth import create_get_current_user_dependency

logger = logging.getLogger(__name__)

# Global instance (initialized at startup)
repository: RunRepository | None = None

STREAM_POLL_INTERVAL = 0.5
# Idle seconds before a keep-alive comment, e.g. while paused at the gate
STREAM_KEEPALIVE_INTERVAL = 15.0
KEEPALIVE = ": keep-alive\n\n"


def get_database_path() -> str:
    """
    Get the database path from environment or use default.

    Environment variables:
    - PIPELINE_DB_PATH: Custom database path (shared with the runner)
    """
    return os.environ.get("PIPELINE_DB_PATH", "pipeline.db")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Open the shared store on startup and close it on shutdown.

    The schema is created if missing, so the service can start before the
    first local run.
    """
    global repository

    repository = SQLiteRunRepository(get_database_path())
    await repository.initialize()

    yield

    if repository:
        await repository.close()


app = FastAPI(lifespan=lifespan)


def get_repository() -> RunRepository:
    """
    Get the global repository instance.

    Raises:
        RuntimeError: If repository is not initialized
    """
    if repository is None:
        raise RuntimeError("Repository not initialized")
    return repository


get_current_user = create_get_current_user_dependency(get_repository)


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def stream_run_events(
    run_id: str,
    repo: RunRepository,
    request: Request | None = None,
    from_beginning: bool = True,
) -> AsyncGenerator[str, None]:
    """
    Stream a run's events as SSE until the run completes.

    Args:
        run_id: UUID of the run to stream
        repo: RunRepository instance for database access
        request: Optional request, used to stop when the client disconnects
        from_beginning: If True, replay past events first. If False, only
            events recorded from now on are sent.

    Yields:
        SSE-formatted event strings, the last one of type "complete"
    """
    run = await repo.get_run(run_id)
    if run is None:
        yield _sse({"type": "log", "data": "Run not found.\n"})
        yield _sse({"type": "complete", "success": False})
        return

    position = 0 if from_beginning else len(await repo.get_events(run_id))

    if run.is_terminal and not from_beginning:
        yield _sse({"type": "log", "data": f"Run already {run.status}.\n"})
        yield _sse({"type": "complete", "success": bool(run.success)})
        return

    last_sent = time.monotonic()
    while True:
        events = await repo.get_events(run_id, from_index=position)
        for event in events:
            position += 1
            yield _sse(event.to_dict())
            if event.type == "complete":
                return
        if events:
            last_sent = time.monotonic()

        if request and await request.is_disconnected():
            return

        run = await repo.get_run(run_id)
        if run is None:
            yield _sse({"type": "log", "data": "Run disappeared.\n"})
            yield _sse({"type": "complete", "success": False})
            return
        if run.is_terminal and not events:
            # Finished without a complete event (runner crashed mid-run)
            yield _sse({"type": "complete", "success": bool(run.success)})
            return

        if time.monotonic() - last_sent >= STREAM_KEEPALIVE_INTERVAL:
            yield KEEPALIVE
            last_sent = time.monotonic()

        await asyncio.sleep(STREAM_POLL_INTERVAL)


async def _get_run_or_404(run_id: str, repo: RunRepository) -> Run:
    run = await repo.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint (no authentication required)."""
    return {"status": "ok"}


@app.get("/runs")
async def list_runs(
    user: User = Depends(get_current_user),
    repo: RunRepository = Depends(get_repository),
) -> list[dict[str, Any]]:
    """List run summaries, most recent build first."""
    runs = await repo.list_runs()
    return [run.to_summary_dict() for run in runs]


@app.get("/runs/{run_id}")
async def get_run(
    run_id: str,
    user: User = Depends(get_current_user),
    repo: RunRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Get a run with its step results.

    Raises:
        HTTPException: 404 if run_id not found
    """
    run = await _get_run_or_404(run_id, repo)
    return run.to_dict()


@app.get("/runs/{run_id}/stream")
async def stream_run(
    run_id: str,
    request: Request,
    from_beginning: bool = False,
    user: User = Depends(get_current_user),
    repo: RunRepository = Depends(get_repository),
) -> StreamingResponse:
    """
    Stream a run's events via Server-Sent Events (SSE).

    By default only events recorded after the request are sent; with
    from_beginning=true the whole history is replayed first.

    Raises:
        HTTPException: 404 if run_id not found
    """
    await _get_run_or_404(run_id, repo)

    return StreamingResponse(
        stream_run_events(run_id, repo, request, from_beginning=from_beginning),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.post("/runs/{run_id}/approve")
async def approve_run(
    run_id: str,
    user: User = Depends(get_current_user),
    repo: RunRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Approve the manual step a run is waiting on.

    Raises:
        HTTPException: 404 if run_id not found
        HTTPException: 409 if no step is awaiting approval
    """
    run = await _get_run_or_404(run_id, repo)

    step = run.awaiting_step()
    if step is None or run.is_terminal:
        raise HTTPException(status_code=409, detail="No step is awaiting approval")

    approved_at = utcnow()
    if not await repo.approve_step(run_id, step.index, user.id, approved_at):
        raise HTTPException(status_code=409, detail="Step was already approved")

    await repo.add_event(
        run_id,
        RunEvent(
            type="approved",
            data=f"Approved by {user.name}\n",
            step=step.index,
            timestamp=approved_at,
        ),
    )
    logger.info(f"Step '{step.name}' of run {run_id} approved by user {user.id}")

    return {
        "run_id": run_id,
        "step": step.index,
        "name": step.name,
        "approved_by": user.id,
    }


@app.post("/runs/{run_id}/stop")
async def stop_run(
    run_id: str,
    user: User = Depends(get_current_user),
    repo: RunRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Request that a run stops. The runner notices on its next poll.

    Raises:
        HTTPException: 404 if run_id not found
        HTTPException: 409 if the run already finished
    """
    run = await _get_run_or_404(run_id, repo)

    if run.is_terminal:
        raise HTTPException(status_code=409, detail=f"Run already {run.status}")

    await repo.request_stop(run_id)
    logger.info(f"Stop of run {run_id} requested by user {user.id}")

    return {"run_id": run_id, "stop_requested": True}
