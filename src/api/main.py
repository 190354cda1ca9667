"""FastAPI application for the study scheduler."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg
from dotenv import load_dotenv
from fastapi import FastAPI

from src.api.scheduler_routes import router as scheduler_router, set_service
from src.core.config import load_app_config, load_scheduler_settings
from src.db.pool import Database, close_database, init_database
from src.scheduler.service import SchedulingService
from src.state.sweep import SweepService
from src.stores.memory import MemoryStores
from src.stores.postgres import PostgresStores, ensure_scheduler_tables

load_dotenv()

logger = logging.getLogger(__name__)

# Global instances
scheduling_service: Optional[SchedulingService] = None
sweep_service: Optional[SweepService] = None
database: Optional[Database] = None


def build_service(stores, settings) -> SchedulingService:
    """Wire a SchedulingService to a bundle of stores."""
    return SchedulingService(
        plans=stores.plans,
        tasks=stores.tasks,
        conflicts=stores.conflicts,
        audit_store=stores.audit,
        profiles=stores.profiles,
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global scheduling_service, sweep_service, database

    app_config = load_app_config()

    logging.basicConfig(
        level=getattr(logging, app_config.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    logger.info("Initializing Study Scheduler...")
    settings = load_scheduler_settings(app_config.scheduler_config_path)

    # Initialize Database, falling back to in-memory stores
    try:
        database = await init_database()
        await ensure_scheduler_tables(database)
        stores = PostgresStores(database)
        logger.info("Database connection initialized")
    except (OSError, asyncpg.PostgresError) as e:
        logger.warning(f"Database connection failed (using in-memory stores): {e}")
        await close_database()
        database = None
        stores = MemoryStores()

    scheduling_service = build_service(stores, settings)
    sweep_service = SweepService(
        scheduling_service,
        interval_minutes=app_config.sweep_interval_minutes,
        enabled=app_config.sweep_enabled,
    )
    set_service(
        scheduling_service,
        sweep_service,
        sync_task_limit=app_config.sync_task_limit,
        database_connected=database is not None,
    )
    sweep_service.start()

    logger.info("Study Scheduler initialized")

    yield

    # Cleanup
    await sweep_service.stop()
    if database is not None:
        await close_database()
        logger.info("Database connection closed")

    logger.info("Shutting down Study Scheduler...")


app = FastAPI(
    title="Study Scheduler",
    description="Scheduling engine for study plans",
    version="1.0.0",
    lifespan=lifespan,
)

# Include scheduler routes
app.include_router(scheduler_router)


@app.get("/ping")
async def ping():
    """Lightweight health check endpoint.

    Returns a simple pong response without requiring service initialization.
    """
    return {"message": "pong"}
