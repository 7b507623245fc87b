import logging
import sqlite3

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.settings import settings
from core.use_cases.reconciliation_use_cases import ReconciliationEngine, reconciliation_guard
from infrastructure.db.sqlite import init_db, SQLiteLedgerRepository
from infrastructure.logging_setup import setup_logging
from infrastructure.store.http_store import HTTPLedgerRepository
from infrastructure.web.controllers.wallet_controller import router as wallet_router, register_error_handlers

logger = logging.getLogger(__name__)

app = FastAPI(title="Mini wallet ledger")

# от CORS
origins = [
    "http://localhost:5173",
    "http://localhost:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def run_startup_reconciliation():
    if settings.STORE_BACKEND == "sqlite":
        conn = sqlite3.connect(settings.DB_PATH, check_same_thread=False)
        try:
            return reconciliation_guard.run_once(lambda: ReconciliationEngine(SQLiteLedgerRepository(conn)))
        finally:
            conn.close()
    repo = HTTPLedgerRepository()
    try:
        return reconciliation_guard.run_once(lambda: ReconciliationEngine(repo))
    finally:
        repo.close()


@app.on_event("startup")
def on_startup():
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    if settings.STORE_BACKEND == "sqlite":
        init_db(settings.DB_PATH)
    if settings.RECONCILE_ON_STARTUP:
        try:
            run_startup_reconciliation()
        except Exception:
            # сервис должен подняться, даже если хранилище пока недоступно
            logger.exception("Startup reconciliation failed")


@app.on_event("shutdown")
def on_shutdown():
    reconciliation_guard.reset()


register_error_handlers(app)
app.include_router(wallet_router)
