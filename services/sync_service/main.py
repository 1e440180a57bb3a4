"""Sync Service - FastAPI application."""

import asyncio
import logging
import sys
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request, status, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import text

from services.sync_service.engine import SyncEngine, build_engine_from_env
from shared.errors import ImportRejectedError
from shared.models import EntityType, ImportJobStatus

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

# Global instance, built at startup unless already provided
engine: Optional[SyncEngine] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global engine

    logger.info("Sync Service starting up...")

    if engine is None:
        engine = build_engine_from_env()
    engine.initialize()
    logger.info("Sync engine initialized")

    yield

    # Cleanup
    await engine.shutdown()
    logger.info("Sync Service shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Sync Service",
    description="Pulls tasks, projects, contacts and time logs from Notion into a local store",
    version="0.1.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """Global error handling middleware."""
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc)
            }
        )


# Request/Response models
class JobStatusResponse(BaseModel):
    """Status of the import job for one entity type."""
    type: str
    status: str
    message: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    result_summary: Optional[dict] = None
    cancel_requested: bool = False
    pages_fetched: int = 0
    records_synced: int = 0


class QueueStatusResponse(BaseModel):
    """Response model for the import queue status."""
    all_statuses: List[JobStatusResponse]
    current_import: Optional[str] = None


class CancelResponse(BaseModel):
    """Response model for cancel requests."""
    cancelled: bool
    status: JobStatusResponse


class QuickSyncResponse(BaseModel):
    """Response model for quick sync."""
    results: List[JobStatusResponse]


def _job_response(job_status: ImportJobStatus) -> JobStatusResponse:
    return JobStatusResponse(**job_status.to_dict())


# Health check endpoint
@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    db_healthy = False
    try:
        with engine.db_ops.get_session() as session:
            session.execute(text("SELECT 1"))
        db_healthy = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")

    configured = [
        entity_type.value for entity_type in EntityType
        if engine.settings.for_type(entity_type).is_configured
    ]

    return {
        "status": "healthy" if db_healthy else "degraded",
        "service": "sync_service",
        "version": "0.1.0",
        "dependencies": {
            "database": "up" if db_healthy else "down"
        },
        "configured_types": configured
    }


@app.get("/sync/status", response_model=QueueStatusResponse, status_code=status.HTTP_200_OK)
async def get_sync_status():
    """Get the status of every entity type and the running import, if any."""
    return QueueStatusResponse(**engine.get_import_queue_status().to_dict())


@app.post("/sync/quick", response_model=QuickSyncResponse, status_code=status.HTTP_200_OK)
async def quick_sync():
    """
    Sync tasks and then projects.

    Waits for both imports to finish. Types that are not configured are
    skipped.
    """
    logger.info("Received quick sync request")
    results = await engine.quick_sync_all()
    return QuickSyncResponse(results=[_job_response(result) for result in results])


@app.post(
    "/sync/{entity_type}",
    response_model=JobStatusResponse,
    status_code=status.HTTP_202_ACCEPTED
)
async def start_sync(entity_type: EntityType):
    """
    Start an import of one entity type in the background.

    Returns immediately with the queued status. Use /sync/status or the
    /sync/events WebSocket to follow progress.

    Raises:
        HTTPException: 409 if another import blocks this one
    """
    logger.info(f"Received sync request for {entity_type.value}")
    try:
        engine.start_sync(entity_type)
    except ImportRejectedError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )
    return _job_response(engine.coordinator.get_status(entity_type))


@app.post(
    "/sync/{entity_type}/cancel",
    response_model=CancelResponse,
    status_code=status.HTTP_200_OK
)
async def cancel_sync(entity_type: EntityType):
    """Cancel the queued or running import of one entity type and wait for it to stop."""
    logger.info(f"Cancelling sync for {entity_type.value}")
    cancelled = await engine.cancel_import(entity_type)
    return CancelResponse(
        cancelled=cancelled,
        status=_job_response(engine.coordinator.get_status(entity_type))
    )


@app.websocket("/sync/events")
async def sync_events(websocket: WebSocket):
    """Stream import queue snapshots, starting with the current one."""
    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = engine.subscribe(queue.put_nowait)
    receiver = asyncio.create_task(websocket.receive_text())

    try:
        await websocket.send_json(engine.get_import_queue_status().to_dict())
        while True:
            getter = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                await websocket.send_json(getter.result().to_dict())
            else:
                getter.cancel()
            if receiver in done:
                # Client messages are ignored; receiving only detects disconnects
                receiver.result()
                receiver = asyncio.create_task(websocket.receive_text())
    except WebSocketDisconnect:
        logger.info("Status subscriber disconnected")
    finally:
        unsubscribe()
        receiver.cancel()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("SYNC_SERVICE_PORT", 8005))
    uvicorn.run(app, host="0.0.0.0", port=port)
