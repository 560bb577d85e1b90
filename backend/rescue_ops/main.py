"""
Rescue Ops - FastAPI Application

Main entry point for the authorization and case-lifecycle engine.

Architecture:
- RoleCatalog + RoleAssignmentManager → UserRoleSet
- UserRoleSet + ActionContext → PermissionDecisionEngine → PermissionCheckResult
- BreakGlassManager / TwoPersonApprovalManager → evidence for heightened-risk actions
- CaseLifecycleManager → Case snapshots (state machine + SLA)
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import __version__, config
from .database import init_db
from .routers import access_router, scheduler_router

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Rescue Ops",
    description="""
    Rescue Ops - Authorization & Case-Lifecycle Engine

    ## Decisions
    - **allow / deny**: role catalog permissions, region scope
    - **requires_break_glass**: sensitive data behind a time-boxed, audited grant
    - **requires_two_person**: high-impact actions behind quorum approval

    ## Key Principles
    - Every change produces a new versioned snapshot
    - Every change is written with its audit entry
    - Legal-preservation entries are never purged
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Include routers
app.include_router(access_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Rescue Ops",
        "version": __version__,
        "description": "Authorization & Case-Lifecycle Engine",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}


# For running with: python -m rescue_ops.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
