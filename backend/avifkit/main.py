"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from avifkit.api.routes import router
from avifkit.config import CORS_ORIGINS, logger as config_logger
from avifkit.db import init_db

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    config_logger.info("avifkit API started")
    yield
    config_logger.info("avifkit API shutting down")


app = FastAPI(
    title="avifkit",
    description="On-demand AVIF and WebP variants for raster images, with admin tools.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    from avifkit.config import HOST, PORT
    uvicorn.run("avifkit.main:app", host=HOST, port=PORT, reload=True)
