"""
Data models for Entitlements Service.
"""

from typing import Dict, Any, Optional, List, Union
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from shared.errors import InvalidTransitionError


FeatureValue = Union[bool, int, float, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementStatus(str, Enum):
    """Entitlement status values."""
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    PENDING = "pending"


ALLOWED_TRANSITIONS: Dict[EntitlementStatus, frozenset] = {
    EntitlementStatus.PENDING: frozenset({
        EntitlementStatus.PENDING, EntitlementStatus.ACTIVE, EntitlementStatus.CANCELLED,
    }),
    EntitlementStatus.ACTIVE: frozenset({
        EntitlementStatus.ACTIVE, EntitlementStatus.PENDING, EntitlementStatus.CANCELLED,
    }),
    EntitlementStatus.EXPIRED: frozenset({
        EntitlementStatus.ACTIVE, EntitlementStatus.PENDING, EntitlementStatus.CANCELLED,
    }),
    EntitlementStatus.CANCELLED: frozenset({
        EntitlementStatus.CANCELLED,
    }),
}


@dataclass
class Plan:
    """Catalog plan, read-only to this service."""
    plan_id: str
    product_id: str
    name: str
    status: str = "active"
    usage_limit: int = 0
    soft_limit_percent: Optional[float] = None
    feature_flags: Dict[str, FeatureValue] = field(default_factory=dict)
    stripe_price_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(frozen=True)
class EntitlementKey:
    """Identifies an entitlement: one per user and product."""
    user_id: str
    product_id: str


@dataclass
class Entitlement:
    """A user's right to use a product under a plan."""
    entitlement_id: str
    user_id: str
    product_id: str
    plan_id: str
    status: EntitlementStatus = EntitlementStatus.PENDING
    feature_flags: Dict[str, FeatureValue] = field(default_factory=dict)
    usage_limit: int = 0
    usage_count: int = 0
    soft_limit: int = 0
    usage_reset_at: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> EntitlementKey:
        return EntitlementKey(self.user_id, self.product_id)

    def effective_status(self, now: Optional[datetime] = None) -> EntitlementStatus:
        """Status as seen by readers; elapsed active rows read as expired."""
        now = now or utcnow()
        if (
            self.status == EntitlementStatus.ACTIVE
            and self.valid_until is not None
            and self.valid_until <= now
        ):
            return EntitlementStatus.EXPIRED
        return self.status

    def transition_to(self, target: EntitlementStatus, now: Optional[datetime] = None):
        """Apply a handler-driven status change."""
        current = self.effective_status(now)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)
        self.status = target

    def apply_plan(self, plan: Plan, default_soft_limit_percent: float = 0.1):
        """Switch to a plan, taking its limits and flags."""
        self.plan_id = plan.plan_id
        self.usage_limit = plan.usage_limit
        self.soft_limit = compute_soft_limit(plan.usage_limit, plan.soft_limit_percent, default_soft_limit_percent)
        self.feature_flags = dict(plan.feature_flags)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the cache."""
        data = asdict(self)
        data["status"] = self.status.value
        for name in ("usage_reset_at", "valid_until", "created_at", "updated_at"):
            value = data[name]
            data[name] = value.isoformat() if value else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entitlement":
        """Deserialize from the cache."""
        values = dict(data)
        values["status"] = EntitlementStatus(values["status"])
        for name in ("usage_reset_at", "valid_until", "created_at", "updated_at"):
            if values.get(name):
                values[name] = datetime.fromisoformat(values[name])
        return cls(**values)


def compute_soft_limit(usage_limit: int, soft_limit_percent: Optional[float], default_percent: float = 0.1) -> int:
    """Soft limit sits a percentage above the hard limit."""
    percent = soft_limit_percent if soft_limit_percent is not None else default_percent
    return int(usage_limit * (1 + percent))


@dataclass
class UsageSnapshot:
    """Usage figures derived from an entitlement and its live counter."""
    limit: int
    used: int
    soft_limit: int
    reset_at: Optional[datetime]

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def soft_limit_remaining(self) -> int:
        return max(0, self.soft_limit - self.used)

    @property
    def over_limit(self) -> bool:
        return self.used > self.limit

    @property
    def over_soft_limit(self) -> bool:
        return self.used > self.soft_limit


# API models

class GrantRequest(BaseModel):
    """Request model for granting an entitlement."""
    user_id: str = Field(..., min_length=1, description="User ID")
    product_id: str = Field(..., min_length=1, description="Product ID")
    plan_id: str = Field(..., min_length=1, description="Plan ID")
    usage_limit: Optional[int] = Field(None, ge=0, description="Override plan usage limit")
    soft_limit: Optional[int] = Field(None, ge=0, description="Override soft limit")
    valid_until: Optional[datetime] = Field(None, description="Entitlement expiry")
    feature_flags: Optional[Dict[str, FeatureValue]] = Field(None, description="Override plan feature flags")


class GrantResponse(BaseModel):
    """Response model for a grant."""
    entitlement_id: str
    user_id: str
    product_id: str
    plan_id: str
    status: EntitlementStatus
    granted_at: datetime


class RevokeRequest(BaseModel):
    """Request model for revoking an entitlement."""
    user_id: str = Field(..., min_length=1, description="User ID")
    product_id: str = Field(..., min_length=1, description="Product ID")
    reason: Optional[str] = Field(None, description="Revocation reason")


class RevokeResponse(BaseModel):
    """Response model for a revocation."""
    entitlement_id: str
    user_id: str
    product_id: str
    status: EntitlementStatus
    revoked_at: datetime


class UsageInfo(BaseModel):
    """Usage section of an entitlement response."""
    limit: int
    used: int
    remaining: int
    soft_limit: int
    reset_at: Optional[datetime] = None


class EntitlementResponse(BaseModel):
    """Response model for an entitlement check."""
    product_id: str
    plan_id: str
    status: EntitlementStatus
    features: Dict[str, FeatureValue] = Field(default_factory=dict)
    usage: UsageInfo
    valid_until: Optional[datetime] = None
    over_limit: bool = False
    over_soft_limit: bool = False


class UsageRequest(BaseModel):
    """Request model for recording usage."""
    product_id: str = Field(..., min_length=1, description="Product ID")
    count: int = Field(1, ge=0, description="Units consumed")


class UsageResponse(BaseModel):
    """Response model for recording usage."""
    used: int
    remaining: int
    over_limit: bool
    soft_limit_remaining: int
    over_soft_limit: bool


class WebhookStatsResponse(BaseModel):
    """Processed webhook counts by event type."""
    window_hours: int
    total: int
    by_type: Dict[str, int] = Field(default_factory=dict)


class PruneResponse(BaseModel):
    """Result of a ledger pruning run."""
    retention_days: int
    deleted: int


class WebhookAck(BaseModel):
    """Body returned to the payment provider on success."""
    received: bool = True
    duplicate: bool = False
    event_id: Optional[str] = None


def affected_keys(entitlements: List[Entitlement]) -> List[EntitlementKey]:
    """Distinct keys of a list of entitlements, in order."""
    seen = []
    for entitlement in entitlements:
        if entitlement.key not in seen:
            seen.append(entitlement.key)
    return seen
