"""featuremap FastAPI application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from featuremap import __version__, config
from featuremap.db import connection, sqlite_migrations
from featuremap.routers.features import features_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("featuremap")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info(f"featuremap starting up (project root: {config.PROJECT_ROOT})")
    db = await connection.get_connection()
    await sqlite_migrations.run_migrations(db)

    yield

    logger.info("featuremap shutting down")
    await connection.close_connection()


app = FastAPI(
    title="featuremap API",
    description="Feature registry and change-impact analysis",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(features_router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "db": str(config.DB_PATH)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("featuremap.main:app", host=config.HOST, port=config.PORT, reload=False)
