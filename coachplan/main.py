import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from coachplan.api.schedule_chat import router as schedule_chat_router
from coachplan.config.settings import settings
from coachplan.core.logger import setup_logger
from coachplan.db.models import Base
from coachplan.db.session import get_engine


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Configure logging and make sure the tables exist before serving."""
    setup_logger(level=settings.log_level, log_file=settings.log_file, serialize=settings.log_json)

    # pydantic_ai reads the key from the environment
    if settings.openai_api_key and not os.getenv("OPENAI_API_KEY"):
        os.environ["OPENAI_API_KEY"] = settings.openai_api_key
        logger.info("Set OPENAI_API_KEY from settings")

    logger.info("Ensuring database tables exist")
    Base.metadata.create_all(bind=get_engine())
    logger.info("Database tables verified")
    yield


app = FastAPI(title="coachplan", lifespan=lifespan)
app.include_router(schedule_chat_router)


@app.get("/health")
def health():
    return {"status": "ok"}
