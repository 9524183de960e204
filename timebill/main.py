"""FastAPI application entry point."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from timebill.config import settings
from timebill.database import database
from timebill.routers import payments, rates, stats, timers
from timebill.services.workspace import WorkspaceRegistry
from timebill.store.mongo import MongoDataStore
from timebill.utils.logger import configure_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events."""
    # Startup
    configure_logging(settings.log_level, settings.log_file)
    db = await database.connect()
    app.state.workspaces = WorkspaceRegistry(MongoDataStore(db), settings)
    yield
    # Shutdown
    await app.state.workspaces.close_all()
    await database.disconnect()


app = FastAPI(
    title="Timebill API",
    description="Time tracking and payment reconciliation for freelance work",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(timers.router)
app.include_router(payments.router)
app.include_router(stats.router)
app.include_router(rates.router)


@app.get("/")
async def root():
    """Root endpoint - health check."""
    return {"status": "ok", "message": "Timebill API"}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}
