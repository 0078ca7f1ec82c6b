from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, HTTPException, Request, status, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from typing import List, Optional
import logging
import sqlalchemy.exc

from config.settings import get_settings
from core.database.operations import SessionLocal
from core.database.repository import DatabasePersistence
from core.domain import DiscoveryRequest, ProductListing, PriceObservation, ScrapeTask
from core.engine import ScrapeEngine
from core.exceptions import ListingNotFound

from .models import (
    DiscoveryAccepted,
    DiscoveryCreateRequest,
    DiscoveryInfo,
    EscalationInfo,
    HealthResponse,
    HistoryResponse,
    Listing,
    Observation,
    RetailerHealthInfo,
    RetailerResult,
    ScrapeRequest,
    ScrapeResponse,
    Task,
)

logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = ScrapeEngine(DatabasePersistence(SessionLocal))
    engine.start()
    app.state.engine = engine
    try:
        yield
    finally:
        engine.stop()


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="REST API for demand-driven price scraping and validation",
    version=settings.PROJECT_VERSION,
    lifespan=lifespan,
)

# Enable CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, replace with specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_engine(request: Request) -> ScrapeEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Engine is not running",
        )
    return engine


def _listing_out(listing: ProductListing) -> Listing:
    return Listing(
        id=listing.id,
        retailer_id=listing.retailer_id,
        url=listing.url,
        variant_key=listing.variant_key,
        retailer_sku=listing.retailer_sku,
        title=listing.title,
        category=listing.category,
        weight_grams=listing.weight_grams,
        currency=listing.currency,
        last_known_price=listing.last_known_price,
        last_price_at=listing.last_price_at,
        last_scraped_at=listing.last_scraped_at,
        stock_status=listing.stock_status.value,
        validation_status=listing.validation_status.value if listing.validation_status else None,
        consecutive_failures=listing.consecutive_failures,
        is_active=listing.is_active,
    )


def _observation_out(observation: PriceObservation) -> Observation:
    return Observation(
        id=observation.id,
        price=observation.price,
        previous_price=observation.previous_price,
        change_percent=observation.change_percent,
        verdict=observation.verdict.value,
        confidence=observation.confidence,
        reasons=observation.reasons,
        stock_status=observation.stock_status.value,
        recorded_at=observation.recorded_at,
    )


def _discovery_out(request: DiscoveryRequest) -> DiscoveryInfo:
    return DiscoveryInfo(
        id=request.id,
        query=request.query,
        requester_id=request.requester_id,
        target_retailers=request.target_retailers,
        status=request.status.value,
        requested_at=request.requested_at,
        started_at=request.started_at,
        completed_at=request.completed_at,
        listing_ids=request.listing_ids,
        retailer_results={
            retailer_id: RetailerResult(listing_ids=result.listing_ids, error=result.error)
            for retailer_id, result in request.retailer_results.items()
        },
        error=request.error,
    )


def _task_out(task: ScrapeTask) -> Task:
    return Task(
        id=task.id,
        listing_id=task.listing_id,
        retailer_id=task.retailer_id,
        priority=task.priority,
        source=task.source.value,
        status=task.status.value,
        attempts=task.attempts,
        max_attempts=task.max_attempts,
        scheduled_for=task.scheduled_for,
        started_at=task.started_at,
        completed_at=task.completed_at,
        last_error=task.last_error,
        response_time_ms=task.response_time_ms,
    )


@app.get("/", tags=["General"])
async def root():
    """Root endpoint providing API information."""
    return {
        "name": settings.PROJECT_NAME,
        "version": settings.PROJECT_VERSION,
        "description": "Turns product searches into validated, time-stamped retailer prices",
        "endpoints": {
            "GET /": "This information",
            "POST /discovery": "Search retailers for a product",
            "GET /discovery/{request_id}": "Status and results of a search",
            "POST /listings/{listing_id}/scrape": "Scrape a listing now",
            "GET /tasks/{task_id}": "Status of a scrape task",
            "GET /listings": "Known product listings",
            "GET /listings/{listing_id}/history": "Price history of a listing",
            "GET /health": "Queue depth, retailer success rates and circuit states",
        },
    }


@app.post(
    "/discovery",
    response_model=DiscoveryAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Discovery"],
)
def create_discovery(request: DiscoveryCreateRequest, engine: ScrapeEngine = Depends(get_engine)):
    """Start a product search; results arrive asynchronously."""
    if not request.query.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Query must not be blank")
    request_id = engine.submit_discovery_request(request.query, request.retailers, request.requester_id)
    discovery = engine.get_discovery_request(request_id)
    return DiscoveryAccepted(request_id=request_id, status=discovery.status.value if discovery else "pending")


@app.get("/discovery/{request_id}", response_model=DiscoveryInfo, tags=["Discovery"])
def get_discovery(request_id: str, engine: ScrapeEngine = Depends(get_engine)):
    """Get the status and results of a discovery request."""
    discovery = engine.get_discovery_request(request_id)
    if discovery is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Discovery request with ID {request_id} not found",
        )
    return _discovery_out(discovery)


@app.post("/listings/{listing_id}/scrape", response_model=ScrapeResponse, tags=["Scraping"])
def scrape_listing(
    listing_id: str,
    request: Optional[ScrapeRequest] = None,
    engine: ScrapeEngine = Depends(get_engine),
):
    """Queue an immediate scrape, optionally waiting a bounded time for the price."""
    request = request or ScrapeRequest()
    try:
        if request.wait is None:
            task_id = engine.submit_immediate_scrape(listing_id, request.priority)
            return ScrapeResponse(
                listing_id=listing_id,
                task_id=task_id,
                available=False,
                task_status="pending",
                message="scrape queued",
            )

        price = engine.request_price(listing_id, request.wait)
        return ScrapeResponse(
            listing_id=listing_id,
            task_id=price.task_id,
            available=price.available,
            price=price.price,
            price_at=price.price_at,
            stock_status=price.stock_status.value,
            task_status=price.task_status.value if price.task_status else None,
            message=price.message,
        )
    except ListingNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


@app.get("/tasks/{task_id}", response_model=Task, tags=["Scraping"])
def get_task(task_id: str, engine: ScrapeEngine = Depends(get_engine)):
    """Get the current state of a scrape task."""
    task = engine.get_task(task_id)
    if task is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task with ID {task_id} not found",
        )
    return _task_out(task)


@app.get("/listings", response_model=List[Listing], tags=["Listings"])
def get_listings(
    retailer: Optional[str] = None,
    limit: int = Query(50, ge=1, le=1000),
    engine: ScrapeEngine = Depends(get_engine),
):
    """Get known listings, newest first."""
    try:
        return [_listing_out(listing) for listing in engine.persistence.list_listings(retailer, limit)]
    except sqlalchemy.exc.SQLAlchemyError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Database error: {str(e)}",
        ) from e


@app.get("/listings/{listing_id}/history", response_model=HistoryResponse, tags=["Listings"])
def get_history(
    listing_id: str,
    limit: int = Query(50, ge=1, le=1000),
    engine: ScrapeEngine = Depends(get_engine),
):
    """Get a listing's price observations, newest first, including rejected ones."""
    if engine.persistence.get_listing(listing_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Listing with ID {listing_id} not found",
        )
    observations = engine.persistence.recent_observations(listing_id, limit=limit)
    return HistoryResponse(
        listing_id=listing_id,
        observations=[_observation_out(o) for o in observations],
        count=len(observations),
    )


@app.get("/health", response_model=HealthResponse, tags=["General"])
def get_health(engine: ScrapeEngine = Depends(get_engine)):
    """Engine health for monitoring."""
    health = engine.get_engine_health()
    return HealthResponse(
        queue_depth=health.queue_depth,
        in_progress=health.in_progress,
        workers_running=health.workers_running,
        retailers={
            retailer_id: RetailerHealthInfo(
                success_rate=info.success_rate,
                samples=info.samples,
                breaker_state=info.breaker_state,
            )
            for retailer_id, info in health.retailers.items()
        },
        escalations=[EscalationInfo.model_validate(e) for e in health.escalations],
    )


# Error handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(_request, exc):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def general_exception_handler(_request, exc):
    logger.exception("Unhandled API error")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": f"Unexpected error: {str(exc)}"},
    )


# Run with: uvicorn api.main:app --reload
if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=True)
