import logging
import os
import sys
from dataclasses import dataclass

from dotenv import load_dotenv
from flask import Flask

from .config import DATABASE_URL, SCHEDULER_ENABLED, STORES_FILE, SyncSettings
from .db import make_engine, make_session_factory
from .errors import StoreSyncError
from .mappings import MappingStore
from .orchestrator import SyncOrchestrator
from .repositories import EntityRepository, InMemoryStoreRepository, NullEntityRepository, StoreRepository
from .rules import RuleRepository
from .scheduler import Scheduler
from .sync_log import SyncLogTracker
from .utils import logger
from .webhooks import WebhookService


@dataclass
class Services:
    settings: SyncSettings
    stores: StoreRepository
    rules: RuleRepository
    mappings: MappingStore
    logs: SyncLogTracker
    orchestrator: SyncOrchestrator
    scheduler: Scheduler
    webhooks: WebhookService


def build_services(settings: SyncSettings, stores: StoreRepository, session_factory,
                   entities: EntityRepository | None = None, base_url: str | None = None) -> Services:
    rules = RuleRepository(session_factory, stores)
    mappings = MappingStore(session_factory)
    logs = SyncLogTracker(session_factory, settings)
    orchestrator = SyncOrchestrator(stores, mappings, logs, entities or NullEntityRepository())
    scheduler = Scheduler(rules, orchestrator, logs, settings)
    webhooks = WebhookService(session_factory, stores, scheduler, settings, base_url)
    return Services(settings, stores, rules, mappings, logs, orchestrator, scheduler, webhooks)


def create_app(settings: SyncSettings | None = None, stores: StoreRepository | None = None,
               session_factory=None, entities: EntityRepository | None = None,
               start_scheduler: bool | None = None, base_url: str | None = None):
    load_dotenv()
    app = Flask(__name__)

    # =========================================================
    # Configure logging so logs show up under gunicorn too
    # =========================================================
    gunicorn_error = logging.getLogger("gunicorn.error")
    app.logger.handlers = gunicorn_error.handlers
    app.logger.setLevel(logging.INFO)

    sh = logging.StreamHandler(sys.stdout)
    sh.setLevel(logging.INFO)
    sh.setFormatter(logging.Formatter(logger.FORMAT, logger.DATEFMT))
    app.logger.addHandler(sh)
    logger.configure(handlers=gunicorn_error.handlers)

    # =========================================================
    # Engine wiring
    # =========================================================
    settings = settings or SyncSettings.from_env()
    if session_factory is None:
        session_factory = make_session_factory(make_engine(os.getenv("DATABASE_URL", DATABASE_URL)))
    if stores is None:
        stores_file = os.getenv("STORES_FILE", STORES_FILE or "")
        stores = InMemoryStoreRepository.from_file(stores_file) if stores_file else InMemoryStoreRepository()

    services = build_services(settings, stores, session_factory, entities, base_url or os.getenv("BASE_URL"))
    app.extensions["storesync"] = services

    # =========================================================
    # Blueprints
    # =========================================================
    from .routes.register import bp as register_bp
    from .routes.sync import bp as sync_bp
    from .routes.webhooks import bp as webhooks_bp

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(register_bp, url_prefix="/webhooks")
    app.register_blueprint(sync_bp, url_prefix="/sync")

    # =========================================================
    # Errors
    # =========================================================
    @app.errorhandler(StoreSyncError)
    def handle_error(e: StoreSyncError):
        status = e.status_code or 500
        if status >= 500:
            app.logger.error(f"{type(e).__name__}: {e}")
        return {"status": "error", "message": str(e)}, status

    # =========================================================
    # Health check
    # =========================================================
    @app.get("/health")
    def health():
        return {"ok": True}, 200

    if start_scheduler is None:
        start_scheduler = SCHEDULER_ENABLED
    if start_scheduler:
        services.scheduler.start()

    return app
