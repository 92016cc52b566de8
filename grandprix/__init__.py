import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .database import init_db
from .routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover
    init_db()
    logger.info("Grand Prix Night database ready")
    yield


def create_app() -> FastAPI:
    """Application factory for the race tournament tracker."""
    app = FastAPI(title="Grand Prix Night", lifespan=lifespan)
    app.include_router(router)
    return app


app = create_app()
