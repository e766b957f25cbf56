import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from deploy_engine.api.container import get_container
from deploy_engine.api.routes.applications import router as applications_router
from deploy_engine.infrastructure.sql.database import init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("🚀 Deploy engine API ready")
    yield
    await get_container().service.wait_for_background_tasks()


app = FastAPI(title="Deploy Engine API", lifespan=lifespan)


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(applications_router)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    logger.info("🚀 Starting Deploy Engine API...")
    logger.info("📍 Listening on 0.0.0.0:8000")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
