import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import Settings, settings as default_settings
from .database import build_engine, build_session_factory, create_tables
from .logging_config import configure_logging
from .routers import bulk, cron, receipts, rules
from .services.ai_classifier import build_classifier
from .services.outcome import from_validation_exception
from .services.storage import LocalReceiptStorage
from .services.workspace import SummaryCache

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, classifier=None, storage=None) -> FastAPI:
    """Build the API; tests pass their own settings, classifier and storage"""
    settings = settings or default_settings
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(title=settings.PROJECT_NAME)
    engine = build_engine(settings.DATABASE_URL)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.storage = storage or LocalReceiptStorage(settings.RECEIPTS_DIR)
    app.state.classifier = classifier if classifier is not None else build_classifier(settings)
    app.state.summary_cache = SummaryCache()

    # Create database tables on startup
    @app.on_event("startup")
    async def startup_event():
        settings.ensure_directories()
        create_tables(engine)
        logger.info("%s started (AI classification %s)", settings.PROJECT_NAME,
                    "enabled" if app.state.classifier is not None else "disabled")

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        error = from_validation_exception(exc)
        return JSONResponse(status_code=error.status_code, content={"error": error.message})

    # Include API routers
    app.include_router(receipts.router, prefix=f"{settings.API_V1_STR}/receipts", tags=["receipts"])
    app.include_router(rules.router, prefix=f"{settings.API_V1_STR}/rules", tags=["rules"])
    app.include_router(bulk.router, prefix=f"{settings.API_V1_STR}/bulk", tags=["bulk"])
    app.include_router(cron.router, prefix=f"{settings.API_V1_STR}/cron", tags=["cron"])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
