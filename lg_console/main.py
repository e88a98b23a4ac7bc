# lg_console/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lg_console.config import get_settings
from lg_console.services.console_session import registry

settings = get_settings()

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    logger.info(f"LG console started against authority at {settings.api_base_url}.")
    yield
    await registry.close_all()
    logger.info("LG console stopped; all console sessions closed.")


app = FastAPI(
    title="LG Console API",
    description="Action orchestration layer of the Letters of Guarantee administration console.",
    version="1.0.0",
    lifespan=lifespan,
)


def configure_app_instance(fastapi_app: FastAPI) -> None:
    # CORS Middleware for frontend communication
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from lg_console.api.v1.endpoints import console

    fastapi_app.include_router(console.router, prefix="/api/v1/console", tags=["console"])

    @fastapi_app.get("/")
    async def root():
        return {"message": "LG console is running."}


configure_app_instance(app)
