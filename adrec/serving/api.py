"""
FastAPI Operations Surface for the Click-to-Offer Pipeline

Exposes health, statistics, Prometheus metrics and the archive watermark
read by the retraining scheduler, plus HTTP ingest when the pipeline reads
from its in-memory event log.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
import uvicorn
from prometheus_client import CONTENT_TYPE_LATEST

from ..core.config import PipelineConfig
from ..core.engine import PipelineEngine
from ..core.metrics import render_latest
from ..streaming.event_log import InMemoryEventLog


# Pydantic models for API
class ClickEventModel(BaseModel):
    """Raw click event accepted by the ingest endpoint"""
    event_id: Optional[str] = Field(None, description="Event identifier; assigned if absent")
    user_id: str = Field(..., min_length=1, description="User identifier")
    offer_id: str = Field(..., min_length=1, description="Offer identifier")
    country_code: Optional[str] = Field(None, description="Shopper country")
    category: Optional[str] = Field(None, description="Offer category")
    merchant: Optional[str] = Field(None, description="Merchant")
    timestamp: Optional[float] = Field(None, description="Event time, epoch seconds")
    partition: int = Field(0, ge=0, description="Event log partition")


class IngestResponseModel(BaseModel):
    partition: int
    offset: int


class HealthResponseModel(BaseModel):
    """Health check response model"""
    status: str
    timestamp: float
    version: str = "1.0.0"
    components: Dict[str, Any] = Field(default_factory=dict)


class WatermarkResponseModel(BaseModel):
    """Archive watermark for the retraining scheduler"""
    watermark: Optional[float]
    batches: List[Dict[str, Any]] = Field(default_factory=list)
    records_since: int = 0


pipeline_engine: Optional[PipelineEngine] = None
pipeline_task: Optional[asyncio.Task] = None

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan"""
    global pipeline_engine, pipeline_task

    logger.info("Starting click-to-offer pipeline API...")

    if pipeline_engine is None:
        pipeline_engine = PipelineEngine(PipelineConfig.from_env())
    await pipeline_engine.start()
    pipeline_task = asyncio.create_task(pipeline_engine.run())

    logger.info("API startup complete")

    yield

    logger.info("Shutting down API...")

    await pipeline_engine.shutdown()
    try:
        await pipeline_task
    except Exception as e:
        logger.error(f"Pipeline exited with error: {e}")

    logger.info("API shutdown complete")


app = FastAPI(
    title="Click-to-Offer Pipeline",
    description="Real-time scoring of clickstream events into offer notifications",
    version="1.0.0",
    lifespan=lifespan
)


def _require_engine() -> PipelineEngine:
    if pipeline_engine is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return pipeline_engine


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "Click-to-Offer Pipeline",
        "version": "1.0.0",
        "status": "running" if pipeline_engine and pipeline_engine.is_running else "stopped",
        "docs": "/docs"
    }


@app.post("/events", response_model=IngestResponseModel, status_code=202)
async def ingest_event(event: ClickEventModel):
    """
    Append a click event to the in-memory event log

    Only available when the pipeline is not reading from Kafka.
    """
    engine = _require_engine()
    if not isinstance(engine.event_log, InMemoryEventLog):
        raise HTTPException(status_code=409, detail="Events are ingested through the event log")
    if event.partition not in engine.event_log.partitions():
        raise HTTPException(status_code=400, detail=f"Unknown partition {event.partition}")

    payload = event.model_dump(exclude={"partition"}, exclude_none=True)
    offset = engine.event_log.append(payload, partition=event.partition)
    return IngestResponseModel(partition=event.partition, offset=offset)


@app.get("/health", response_model=HealthResponseModel)
async def health_check():
    """
    Health of the pipeline components

    Degraded while the scoring circuit is not closed or consumption is
    paused by archive backpressure.
    """
    engine = _require_engine()
    try:
        health = await engine.health_check()
        return HealthResponseModel(
            status=health["status"],
            timestamp=health["timestamp"],
            components=health["components"]
        )
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return HealthResponseModel(
            status="unhealthy",
            timestamp=time.time(),
            components={"error": str(e)}
        )


@app.get("/stats")
async def get_stats():
    """Pipeline statistics"""
    engine = _require_engine()
    return {"timestamp": time.time(), "pipeline": engine.get_statistics()}


@app.get("/metrics")
async def get_metrics():
    """Prometheus exposition"""
    return Response(content=render_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/watermark", response_model=WatermarkResponseModel)
async def get_watermark(since: Optional[float] = Query(None, description="Only batches newer than this")):
    """
    Archive watermark: every event at or before it is durably archived
    """
    engine = _require_engine()
    tracker = engine.tracker
    markers = tracker.markers() if since is None else tracker.markers_since(since)
    return WatermarkResponseModel(
        watermark=tracker.watermark,
        batches=[marker.to_dict() for marker in markers],
        records_since=sum(marker.record_count for marker in markers)
    )


# Exception handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Handle HTTP exceptions"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail,
            "timestamp": time.time(),
            "path": str(request.url)
        }
    )


def main():
    """Main entry point for running the API server"""
    import argparse

    parser = argparse.ArgumentParser(description="Click-to-Offer Pipeline API")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")

    args = parser.parse_args()

    config = PipelineConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    uvicorn.run(
        "adrec.serving.api:app",
        host=args.host,
        port=args.port,
        workers=1,
        log_level="info",
        access_log=True
    )


if __name__ == "__main__":
    main()
