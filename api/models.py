from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from decimal import Decimal


# Request Models
class DiscoveryCreateRequest(BaseModel):
    """Request model for a product search across retailers."""

    query: str = Field(..., min_length=1, max_length=512, description="What the user searched for")
    retailers: List[str] = Field(
        default=[], description="Retailer ids to search; all active retailers when empty"
    )
    requester_id: Optional[str] = Field(default=None, description="Id of the requesting user")


class ScrapeRequest(BaseModel):
    """Request model for an immediate scrape of one listing."""

    priority: int = Field(default=9, ge=8, le=10, description="Queue priority (8-10)")
    wait: Optional[float] = Field(
        default=None,
        ge=0,
        le=120,
        description="Seconds to wait for the fresh price; return at once when omitted",
    )


# Response Models
class RetailerResult(BaseModel):
    listing_ids: List[str]
    error: Optional[str] = None


class DiscoveryInfo(BaseModel):
    """API representation of a discovery request."""

    id: str
    query: str
    requester_id: Optional[str] = None
    target_retailers: List[str]
    status: str
    requested_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    listing_ids: List[str]
    retailer_results: Dict[str, RetailerResult]
    error: Optional[str] = None


class DiscoveryAccepted(BaseModel):
    request_id: str
    status: str


class Listing(BaseModel):
    """API representation of a product listing."""

    id: str
    retailer_id: str
    url: str
    variant_key: Optional[str] = None
    retailer_sku: Optional[str] = None
    title: Optional[str] = None
    category: Optional[str] = None
    weight_grams: Optional[int] = None
    currency: str
    last_known_price: Optional[Decimal] = None
    last_price_at: Optional[datetime] = None
    last_scraped_at: Optional[datetime] = None
    stock_status: str
    validation_status: Optional[str] = None
    consecutive_failures: int
    is_active: bool


class Observation(BaseModel):
    """API representation of a price observation."""

    id: str
    price: Decimal
    previous_price: Optional[Decimal] = None
    change_percent: Optional[Decimal] = None
    verdict: str
    confidence: float
    reasons: List[str]
    stock_status: str
    recorded_at: datetime


class HistoryResponse(BaseModel):
    listing_id: str
    observations: List[Observation]
    count: int


class Task(BaseModel):
    """API representation of a scrape task."""

    id: str
    listing_id: str
    retailer_id: str
    priority: int
    source: str
    status: str
    attempts: int
    max_attempts: int
    scheduled_for: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    response_time_ms: Optional[int] = None


class ScrapeResponse(BaseModel):
    """Response for an immediate scrape."""

    listing_id: str
    task_id: str
    available: bool
    price: Optional[Decimal] = None
    price_at: Optional[datetime] = None
    stock_status: Optional[str] = None
    task_status: Optional[str] = None
    message: str


class RetailerHealthInfo(BaseModel):
    success_rate: Optional[float] = None
    samples: int
    breaker_state: str


class EscalationInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: str
    retailer_id: str
    detail: str
    task_id: Optional[str] = None
    at: datetime


class HealthResponse(BaseModel):
    queue_depth: int
    in_progress: int
    workers_running: bool
    retailers: Dict[str, RetailerHealthInfo]
    escalations: List[EscalationInfo]

