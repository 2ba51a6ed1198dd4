from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from datetime import datetime, timezone
from pathlib import Path
import logging
import os

from database import check_db_connection, close_client, get_db
from diamond_wallet.config import REFILL_SWEEP_ENABLED
from diamond_wallet.ledger_engine import LedgerEngine
from diamond_wallet.refill_scheduler import schedule_daily_sweep
from diamond_wallet.routes import diamond_router

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Create the main app
app = FastAPI(title="SOGAN - Diamond Ledger")

api_router = APIRouter(prefix="/api")


@api_router.get("/health")
async def health():
    db_ok, db_error = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "ok" if db_ok else "unavailable",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


api_router.include_router(diamond_router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


@app.on_event("startup")
async def startup():
    # Fail fast if the database is unavailable
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    engine = LedgerEngine(get_db())
    await engine.accounts.ensure_indexes()
    await engine.log.ensure_indexes()

    if REFILL_SWEEP_ENABLED:
        schedule_daily_sweep(scheduler, engine)
        scheduler.start()
        logger.info("Scheduler started - daily diamond refill sweep")


@app.on_event("shutdown")
async def shutdown_db_client():
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Refill scheduler shut down")

    close_client()
