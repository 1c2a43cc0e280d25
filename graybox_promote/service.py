"""
HTTP surface for the promotion pipeline.

    POST /actions/{name}?blocking=true|false   run one action
    POST /schedule                             one scheduler scan
    GET  /health, /health/live, /metrics

Every action shares one PipelineContext. With the in-process invoker the
workers dispatch each other as asyncio tasks inside this service.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Set

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from . import __version__
from .clients.invoker import LocalActionInvoker, new_activation_id
from .config import ServiceConfig
from .context import PipelineContext
from .scheduler import PromotionScheduler, SchedulerAction
from .workers import PIPELINE_WORKERS, ActionWorker, setup_logging

logger = logging.getLogger(__name__)


def build_workers(context: PipelineContext) -> Dict[str, ActionWorker]:
    workers = {cls.name: cls(context) for cls in PIPELINE_WORKERS}
    workers[SchedulerAction.name] = SchedulerAction(context)
    if isinstance(context.invoker, LocalActionInvoker):
        for worker in workers.values():
            context.invoker.register(worker)
    return workers


def create_app(context: Optional[PipelineContext] = None) -> FastAPI:
    context = context or PipelineContext.from_config()
    workers = build_workers(context)
    scheduler = PromotionScheduler(context)
    background: Set[asyncio.Task] = set()
    start_time = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        loop_task = None
        if context.config.SCHEDULER_ENABLED:
            loop_task = asyncio.create_task(scheduler.run_forever())
        logger.info(f"Graybox promote service v{__version__} starting up ({len(workers)} actions)")
        yield
        logger.info("Graybox promote service shutting down...")
        if loop_task:
            loop_task.cancel()
            try:
                await loop_task
            except asyncio.CancelledError:
                pass

    app = FastAPI(
        title="Graybox Promote",
        version=__version__,
        description="Graybox to production content promotion pipeline",
        lifespan=lifespan,
    )
    app.state.context = context
    app.state.workers = workers

    @app.post("/actions/{name}")
    async def invoke_action(name: str, request: Request, blocking: bool = True):
        """Run an action with the JSON body as its parameter bag"""
        worker = workers.get(name)
        if worker is None:
            raise HTTPException(status_code=404, detail=f"Unknown action: {name}")

        try:
            params = await request.json()
        except ValueError:
            params = {}
        if not isinstance(params, dict):
            raise HTTPException(status_code=400, detail="Request body must be a JSON object")

        if not blocking:
            activation_id = new_activation_id(name)
            task = asyncio.create_task(worker.handle(params))
            background.add(task)
            task.add_done_callback(background.discard)
            logger.info(f"Accepted {name} ({activation_id})")
            return JSONResponse(status_code=202, content={'activationId': activation_id})

        result = await worker.handle(params)
        return JSONResponse(status_code=result['statusCode'], content=result)

    @app.post("/schedule")
    async def schedule():
        """Run one scheduler scan"""
        return await scheduler.run_once()

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "graybox-promote",
            "version": __version__,
            "uptime_seconds": time.time() - start_time,
            "scheduler_enabled": context.config.SCHEDULER_ENABLED,
            "actions": sorted(workers),
        }

    @app.get("/health/live")
    async def liveness_check():
        """Kubernetes liveness probe - just checks if server is running"""
        return {"status": "alive"}

    @app.get("/metrics")
    async def get_metrics() -> Dict[str, Any]:
        """Per-action request metrics"""
        return {name: worker.metrics.model_dump() for name, worker in workers.items()}

    return app


def main():
    load_dotenv()
    config = ServiceConfig()
    setup_logging(config.LOG_LEVEL)
    app = create_app(PipelineContext.from_config(config))
    logger.info(f"Starting graybox promote service on 0.0.0.0:{config.PORT}")
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)


if __name__ == "__main__":
    main()
