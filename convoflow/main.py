"""Main FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from convoflow import __version__
from convoflow.api.endpoints import router
from convoflow.services.engine import close_engine
from convoflow.utils.logging import setup_logging

setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_engine()


# Create FastAPI application
app = FastAPI(
    title="Convoflow",
    description=(
        "Conversation orchestration engine for WhatsApp customer service: message batching, "
        "tool-calling reasoning loop, humanized delivery and automatic follow-ups."
    ),
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "Webhook",
            "description": "Inbound events from the messaging gateway. Acknowledged immediately.",
        },
        {
            "name": "Cron",
            "description": "Periodic follow-up sweep trigger.",
        },
        {
            "name": "Health",
            "description": "Service health monitoring and status checks.",
        },
    ],
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("convoflow.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
