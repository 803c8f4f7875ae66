"""
Main FastAPI application for Herald.

The HTTP surface is limited to health probes and Prometheus metrics; the
lifespan wires the scheduler core together and runs its loops.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, Optional
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from loguru import logger
from prometheus_client import CONTENT_TYPE_LATEST
from sqlalchemy import text

from herald import __version__
from herald.config import settings
from herald.constants import TASK_MONITOR_CHECK_INTERVAL_SECONDS
from herald.database import init_db, close_db, engine, AsyncSessionLocal
from herald.endpoints import HTTPClientPool, build_default_registry
from herald.middleware.correlation import CorrelationIdMiddleware
from herald.services import (
    CronScheduler,
    DeliveryDispatcher,
    MetricsRecorder,
    NotificationQueue,
    QueueProcessor,
    RetentionService,
    TemplateEngine,
)
from herald.utils.logger import setup_logger


class BackgroundTaskMonitor:
    """
    Keeps the long-running loops (cron ticker, queue processor, retention) alive.

    Each loop is registered with a factory so a crashed loop can be started
    again; a loop that was cancelled on purpose stays down.
    """

    def __init__(self):
        self._factories: Dict[str, Callable[[], Awaitable]] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self.restarts: Dict[str, int] = {}
        self._watcher: Optional[asyncio.Task] = None
        self._running = False

    def register_task(self, name: str, factory: Callable[[], Awaitable]) -> asyncio.Task:
        """Start `factory()` as task `name` and watch it from now on."""
        self._factories[name] = factory
        self.restarts.setdefault(name, 0)
        return self._spawn(name)

    def _spawn(self, name: str) -> asyncio.Task:
        task = asyncio.create_task(self._factories[name](), name=name)
        self._tasks[name] = task
        logger.info(f"Background task '{name}' started")
        return task

    def is_alive(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def status(self) -> Dict[str, dict]:
        """Liveness and restart count per registered loop."""
        return {
            name: {"alive": self.is_alive(name), "restarts": self.restarts[name]}
            for name in self._factories
        }

    async def start_monitoring(self, check_interval: float = TASK_MONITOR_CHECK_INTERVAL_SECONDS):
        self._running = True
        self._watcher = asyncio.create_task(self._watch(check_interval), name="task_monitor")

    async def stop(self):
        """Cancel the watcher first, then every loop."""
        self._running = False
        tasks = [self._watcher] if self._watcher else []
        tasks.extend(self._tasks.values())

        for task in tasks:
            if task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.debug(f"Stopped background tasks: {', '.join(self._tasks) or 'none'}")

    async def _watch(self, check_interval: float):
        while self._running:
            try:
                await asyncio.sleep(check_interval)
                for name, task in list(self._tasks.items()):
                    if task.done() and self._crashed(name, task):
                        self.restarts[name] += 1
                        logger.warning(f"Restarting background task '{name}' (restart #{self.restarts[name]})")
                        self._spawn(name)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in task monitor: {e}")

    @staticmethod
    def _crashed(name: str, task: asyncio.Task) -> bool:
        if task.cancelled():
            logger.debug(f"Background task '{name}' was cancelled, not restarting")
            return False
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Background task '{name}' crashed: {exc}")
        else:
            logger.error(f"Background task '{name}' exited unexpectedly")
        return True


async def retention_cleanup_loop(retention: RetentionService, interval: float):
    """Background task that runs retention cleanup periodically."""
    while True:
        try:
            await asyncio.sleep(interval)
            await retention.cleanup_old_data()
        except asyncio.CancelledError:
            logger.debug("Retention cleanup task cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in retention cleanup task: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager."""
    logger.info("Starting Herald...")
    setup_logger()

    await init_db()
    logger.info("Database initialized")

    http_pool = HTTPClientPool(settings.http)
    registry = build_default_registry(http_pool)
    logger.info(f"Endpoint registry ready ({len(registry)} schemes)")

    metrics = MetricsRecorder(AsyncSessionLocal)
    templates = TemplateEngine(AsyncSessionLocal, settings.templates)
    if settings.templates.create_defaults:
        await templates.create_default_templates()

    queue = NotificationQueue(AsyncSessionLocal, settings.queue, registry=registry)
    dispatcher = DeliveryDispatcher(settings.dispatch, metrics=metrics)
    scheduler = CronScheduler(AsyncSessionLocal, queue, registry=registry)
    processor = QueueProcessor(queue, registry, dispatcher, templates=templates, metrics=metrics, scheduler=scheduler)
    retention = RetentionService(queue, metrics, settings.retention, engine=engine)

    await scheduler.start()

    app.state.session_factory = AsyncSessionLocal
    app.state.http_pool = http_pool
    app.state.registry = registry
    app.state.metrics = metrics
    app.state.templates = templates
    app.state.queue = queue
    app.state.scheduler = scheduler
    app.state.processor = processor

    task_monitor = BackgroundTaskMonitor()
    app.state.task_monitor = task_monitor
    task_monitor.register_task("cron_ticker", scheduler.run_forever)
    task_monitor.register_task("queue_processor", processor.run_forever)
    task_monitor.register_task(
        "retention_cleanup",
        lambda: retention_cleanup_loop(retention, settings.retention.interval)
    )
    await task_monitor.start_monitoring(check_interval=TASK_MONITOR_CHECK_INTERVAL_SECONDS)
    logger.info("Herald started successfully")

    yield

    logger.info("Shutting down Herald...")
    await scheduler.stop()
    await processor.stop()
    await task_monitor.stop()
    await http_pool.close()
    await close_db()
    logger.info("Herald shut down complete")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Herald",
        description="Cron-driven notification scheduler with a durable retry queue",
        version=__version__,
        lifespan=lifespan
    )

    # Correlation ID middleware (first, to capture all requests)
    app.add_middleware(CorrelationIdMiddleware)

    @app.get("/api/status/health")
    async def health_check(request: Request):
        task_monitor = getattr(request.app.state, "task_monitor", None)
        return {
            "status": "healthy",
            "version": __version__,
            "tasks": task_monitor.status() if task_monitor else {},
        }

    @app.get("/api/status/live")
    async def liveness_check():
        """Process is up; dependencies are not checked."""
        return {"status": "alive"}

    @app.get("/api/status/ready")
    async def readiness_check(request: Request):
        """
        Readiness probe - database reachable, scheduler and queue processor running.
        """
        state = request.app.state
        checks = {
            "database": False,
            "scheduler": False,
            "queue_processor": False,
        }

        session_factory = getattr(state, "session_factory", None)
        if session_factory is not None:
            try:
                async with session_factory() as db:
                    await db.execute(text("SELECT 1"))
                    checks["database"] = True
            except Exception as e:
                logger.warning(f"Readiness check - database failed: {e}")

        scheduler = getattr(state, "scheduler", None)
        checks["scheduler"] = bool(scheduler and scheduler.running)
        task_monitor = getattr(state, "task_monitor", None)
        checks["queue_processor"] = bool(task_monitor and task_monitor.is_alive("queue_processor"))

        if all(checks.values()):
            return {"status": "ready", "checks": checks}
        return JSONResponse({"status": "not_ready", "checks": checks}, status_code=503)

    @app.get("/metrics")
    async def prometheus_metrics(request: Request):
        """Prometheus scrape endpoint."""
        metrics = getattr(request.app.state, "metrics", None)
        if metrics is None:
            return Response(content=b"", media_type=CONTENT_TYPE_LATEST)
        return Response(content=metrics.export(), media_type=CONTENT_TYPE_LATEST)

    return app


# Create FastAPI app
app = create_app()


def run():
    """Console entry point."""
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
