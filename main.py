import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import SQLModel

from api.site_routes import router as site_router
from api.time_routes import router as time_router
from core.config import (
    CAO_TIMEZONE,
    DATABASE_URL,
    DEV_DOMAIN,
    LIBERATION_DAY_POLICY,
    LOG_LEVEL,
    OFFLINE_QUEUE_URL,
    OFFLINE_SYNC_INTERVAL_SECONDS,
    PRODUCTION_DOMAIN,
)
from db.repository import SqlTimeEntryRepository
from db.session import create_db_engine
from models.job_site import JobSite
from models.time_entry_record import ActiveTimeEntry, AppliedShiftEvent, TimeEntryRecord
from services.compliance_engine import ComplianceRuleEngine
from services.holiday_calendar import HolidayCalendar
from services.location_verifier import LocationVerifier
from services.offline_queue import OfflineQueue
from services.shift_clock import RateLookup, ShiftClock

# This file is the control center of the whole application

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
# Keep SQL statement logging out of the application log
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

STORE_TABLES = [
    JobSite.__table__,
    TimeEntryRecord.__table__,
    ActiveTimeEntry.__table__,
    AppliedShiftEvent.__table__,
]


def _allowed_origins() -> list:
    origins = [
        DEV_DOMAIN,
        PRODUCTION_DOMAIN,
        "http://localhost:3000",  # Additional fallback for React dev
        "http://127.0.0.1:5173",  # Additional fallback for Vite dev
    ]
    # Remove any None values and duplicates
    return sorted({origin for origin in origins if origin})


def create_app(
    database_url: str = DATABASE_URL,
    offline_queue_url: str = OFFLINE_QUEUE_URL,
    *,
    now_fn: Optional[Callable[[], datetime]] = None,
    rate_lookup: Optional[RateLookup] = None,
    sync_interval: Optional[float] = OFFLINE_SYNC_INTERVAL_SECONDS,
) -> FastAPI:
    engine = create_db_engine(database_url)
    queue_engine = create_db_engine(offline_queue_url)
    now_fn = now_fn or (lambda: datetime.now(timezone.utc))

    offline_queue = OfflineQueue(queue_engine)
    shift_clock = ShiftClock(
        SqlTimeEntryRepository(engine),
        LocationVerifier(),
        ComplianceRuleEngine(
            HolidayCalendar(LIBERATION_DAY_POLICY), tz=CAO_TIMEZONE, now_fn=now_fn
        ),
        offline_queue,
        rate_lookup=rate_lookup,
        now_fn=now_fn,
    )

    # When We Start, Create the DB Tables if they don't exist
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await asyncio.to_thread(SQLModel.metadata.create_all, engine, tables=STORE_TABLES)
        await asyncio.to_thread(offline_queue.create_tables)

        # Flush anything queued before the last shutdown
        report = await shift_clock.sync()
        if report.applied or report.failed or report.remaining:
            logger.info(
                f"Startup sync: {report.applied} applied, {report.failed} failed, "
                f"{report.remaining} remaining"
            )
        # Keep replaying whatever is queued while the store was unreachable
        if sync_interval:
            shift_clock.start_sync_loop(sync_interval)
        yield
        await shift_clock.shutdown()

    app = FastAPI(title="Guard Time Tracking", lifespan=lifespan)
    app.state.engine = engine
    app.state.shift_clock = shift_clock

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Connects Routes From time_routes (clock-in / out) to main app
    app.include_router(time_router, prefix="/time", tags=["Time"])
    app.include_router(site_router, prefix="/sites", tags=["Sites", "Geofence"])
    return app


app = create_app()
