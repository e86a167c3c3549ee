import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from action_engine.api import actions_router, get_action_engine, learning_router
from action_engine.db import SessionLocal
from action_engine.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = get_action_engine()
    if settings.ACTION_SCHEDULER_ENABLED:
        engine.scheduler.start(SessionLocal)
    try:
        yield
    finally:
        if settings.ACTION_SCHEDULER_ENABLED:
            engine.scheduler.stop()


app = FastAPI(title="Action Engine", version="0.1.0", lifespan=lifespan)
app.include_router(actions_router)
app.include_router(learning_router)
