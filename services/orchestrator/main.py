"""
Orchestrator Service - Main FastAPI Application

Main entry point for ExitPilot. Runs the monitor and discovery loops for
the lifetime of the app and exposes status and manual controls.
"""

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator

import structlog
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from services.orchestrator.service import OrchestratorService, get_orchestrator_service
from shared.config import configure_logging, get_settings
from shared.models import CircuitBreakerState, HealthResponse, ProviderName, TickResult

logger = structlog.get_logger(__name__)

settings = get_settings()
configure_logging(settings)

# Service instance
_orchestrator: OrchestratorService | None = None


def get_service() -> OrchestratorService:
    """Get or create orchestrator service instance."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = get_orchestrator_service()
    return _orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the loops with the app and stop them on shutdown."""
    service = get_service() if settings.api.start_scheduler else None
    if service is not None:
        await service.start()
    try:
        yield
    finally:
        if service is not None:
            await service.stop()


# Initialize FastAPI app
app = FastAPI(
    title="ExitPilot - Orchestrator",
    description="Automated take-profit, stop-loss and trailing-stop exits for Solana tokens",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# =============================================================================
# Request/Response Models
# =============================================================================


class AdmitPositionRequest(BaseModel):
    """Request model for admitting a position after a confirmed buy."""

    owner_id: str = Field(..., description="Owner identifier")
    asset_address: str = Field(..., description="Token mint address")
    entry_price: Decimal | None = Field(default=None, gt=0, description="Buy price; current price if omitted")
    quantity: Decimal | None = Field(default=None, gt=0, description="Tokens held; read from the wallet if omitted")
    decimals: int | None = Field(default=None, ge=0, description="Token decimals")


# =============================================================================
# Health Endpoints
# =============================================================================


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="healthy", version="0.1.0")


@app.get("/ready", tags=["Health"])
async def readiness_check() -> dict[str, str]:
    """Readiness check endpoint."""
    return {"status": "ready"}


@app.get("/status", tags=["Health"])
async def system_status() -> dict[str, Any]:
    """Get scheduler, position and provider status."""
    try:
        return get_service().get_system_status()
    except Exception as e:
        logger.error("status_error", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


# =============================================================================
# Position Endpoints
# =============================================================================


@app.get("/positions", tags=["Positions"])
async def list_positions() -> dict[str, Any]:
    """List monitored positions with their exit levels."""
    return get_service().monitor.get_positions_summary()


@app.get("/positions/{owner_id}/{asset_address}", tags=["Positions"])
async def get_position(owner_id: str, asset_address: str) -> dict[str, Any]:
    """Get one monitored position."""
    position = get_service().store.get(owner_id, asset_address)
    if position is None:
        raise HTTPException(status_code=404, detail="Position not monitored")
    return position.model_dump(mode="json")


@app.post("/positions", tags=["Positions"])
async def admit_position(request: AdmitPositionRequest) -> dict[str, Any]:
    """Admit a position right after a confirmed buy."""
    service = get_service()
    try:
        position = await asyncio.wait_for(
            service.admit_position(
                owner_id=request.owner_id,
                asset_address=request.asset_address,
                entry_price=request.entry_price,
                quantity=request.quantity,
                decimals=request.decimals,
            ),
            timeout=30.0,
        )
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except asyncio.TimeoutError:
        logger.error("admit_position_timeout", owner_id=request.owner_id)
        raise HTTPException(status_code=504, detail="Admission timed out")
    except Exception as e:
        logger.error("admit_position_error", owner_id=request.owner_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))

    if position is None:
        return {"admitted": False, "position": None}
    return {"admitted": True, "position": position.model_dump(mode="json")}


# =============================================================================
# Loop Endpoints
# =============================================================================


@app.post("/monitor/run", response_model=TickResult, tags=["Loops"])
async def run_monitor() -> TickResult:
    """Run one monitor tick now."""
    try:
        return await asyncio.wait_for(get_service().run_monitor(), timeout=300.0)
    except asyncio.TimeoutError:
        logger.error("monitor_run_timeout")
        raise HTTPException(status_code=504, detail="Monitor tick timed out")
    except Exception as e:
        logger.error("monitor_run_error", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/discovery/run", response_model=TickResult, tags=["Loops"])
async def run_discovery() -> TickResult:
    """Run one discovery tick now."""
    try:
        return await asyncio.wait_for(get_service().run_discovery(), timeout=120.0)
    except asyncio.TimeoutError:
        logger.error("discovery_run_timeout")
        raise HTTPException(status_code=504, detail="Discovery tick timed out")
    except Exception as e:
        logger.error("discovery_run_error", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/rules/refresh", response_model=TickResult, tags=["Loops"])
async def refresh_rules() -> TickResult:
    """Reload exit rules now."""
    try:
        return await get_service().refresh_rules()
    except Exception as e:
        logger.error("rules_refresh_error", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


# =============================================================================
# Provider Endpoints
# =============================================================================


@app.get("/providers", response_model=list[CircuitBreakerState], tags=["Providers"])
async def provider_status() -> list[CircuitBreakerState]:
    """Circuit breaker state of every swap provider."""
    return get_service().get_provider_status()


@app.post("/providers/{name}/reset", response_model=CircuitBreakerState, tags=["Providers"])
async def reset_provider(name: str) -> CircuitBreakerState:
    """Close a provider's circuit breaker."""
    try:
        return get_service().reset_provider(ProviderName(name.lower()))
    except (ValueError, KeyError):
        raise HTTPException(status_code=404, detail=f"Unknown provider: {name}")


# =============================================================================
# Main Entry Point
# =============================================================================


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.orchestrator.main:app",
        host=settings.api.host,
        port=settings.api.port,
        reload=settings.api.debug,
    )
