from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from contextlib import asynccontextmanager
import logging

from lending_history.core.config import settings
from lending_history.core.logging_config import setup_logging
from lending_history.services.event_fetcher import close_event_fetcher
from lending_history.services.coingecko_prices import close_price_service
from lending_history.app.api.v1 import history

# Setup logging
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting Lending History API")
    yield
    logger.info("Shutting down Lending History API")
    await close_event_fetcher()
    await close_price_service()

app = FastAPI(
    title="Lending History API",
    description="Lending protocol event history from GraphQL subgraphs",
    version="0.1.0",
    lifespan=lifespan
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Validation error on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_encoder(exc.errors())},
    )


# Routes
app.include_router(history.router, prefix="/api/v1", tags=["history"])

@app.get("/")
async def root():
    return {
        "status": "operational",
        "service": "Lending History API",
        "version": "0.1.0"
    }

@app.get("/health")
async def health():
    return {"status": "healthy"}
