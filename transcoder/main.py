"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from transcoder.api.routes import router
from transcoder.config import CORS_ORIGINS, logger as config_logger
from transcoder.db import init_db
from transcoder.session import shutdown_session_registry

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    config_logger.info("Transcoder API started")
    yield
    shutdown_session_registry()
    config_logger.info("Transcoder API shutting down")


app = FastAPI(
    title="Image Batch Transcoder API",
    description="Convert and resize batches of images to WebP, JPEG, PNG or AVIF with retry, cancellation and zip export.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Archive-Entries", "X-Failed-Images", "X-Failed-Images-Detail"],
)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    from transcoder.config import HOST, PORT
    uvicorn.run("transcoder.main:app", host=HOST, port=PORT, reload=True)
