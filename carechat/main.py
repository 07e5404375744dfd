"""FastAPI application entry point for the CareChat relay."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from carechat.api.gateway import router as gateway_router
from carechat.api.routes.chat import router as chat_router
from carechat.api.routes.upload import router as upload_router
from carechat.config import settings
from carechat.database import init_db

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup."""
    init_db()
    logger.info("Database initialized")
    yield


app = FastAPI(
    title="CareChat API",
    description="Streaming healthcare assistant chat with persisted conversations",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


# Conversation history routes
app.include_router(chat_router)

# Spreadsheet upload
app.include_router(upload_router)

# Streaming chat socket
app.include_router(gateway_router)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Hide internal error details from clients."""
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("carechat.main:app", host="0.0.0.0", port=8000)
