from pydantic import BaseModel, EmailStr, Field, ConfigDict, computed_field, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import re
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"

class SubscriptionTier(str, Enum):
    FREE = "free"
    PLUS = "plus"
    PREMIUM = "premium"
    PRO = "pro"

class PlanStatus(str, Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"

class ItemKind(str, Enum):
    VINEYARD = "vineyard"
    RESTAURANT = "restaurant"

class AuditAction(str, Enum):
    # Plans
    PLAN_CREATED = "PLAN_CREATED"
    PLAN_UPDATED = "PLAN_UPDATED"
    PLAN_CONFIRMED = "PLAN_CONFIRMED"
    PLAN_EXPIRED = "PLAN_EXPIRED"
    PLAN_DELETED = "PLAN_DELETED"
    PLAN_ITEM_REMOVED = "PLAN_ITEM_REMOVED"
    PLAN_REORDERED = "PLAN_REORDERED"
    PLAN_ITEM_TIME_UPDATED = "PLAN_ITEM_TIME_UPDATED"

    # Subscription
    SUBSCRIPTION_TIER_SELECTED = "SUBSCRIPTION_TIER_SELECTED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"

    # Auth
    USER_SIGNED_UP = "USER_SIGNED_UP"
    LOGIN_CODE_SENT = "LOGIN_CODE_SENT"
    LOGIN_CODE_FAILED = "LOGIN_CODE_FAILED"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"

    # Route Guards
    ACCESS_DENIED = "ACCESS_DENIED"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive datetimes unless the client is tz-aware; treat those as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================================
# ITEM ADDRESSING
# ============================================================================

_VINEYARD_ID = re.compile(r"^vineyard-(\d+)$")
_RESTAURANT_ID = re.compile(r"^restaurant(?:-0)?$")


class ItemRef(BaseModel):
    """Address of one stop in a plan: a vineyard by position, or the restaurant slot."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    kind: ItemKind
    index: Optional[int] = None

    @computed_field
    @property
    def item_id(self) -> str:
        if self.kind == ItemKind.VINEYARD:
            return f"vineyard-{self.index}"
        return "restaurant"

    @classmethod
    def vineyard(cls, index: int) -> "ItemRef":
        return cls(kind=ItemKind.VINEYARD, index=index)

    @classmethod
    def restaurant(cls) -> "ItemRef":
        return cls(kind=ItemKind.RESTAURANT)

    @classmethod
    def parse(cls, item_id: str) -> "ItemRef":
        """Parse a wire item id ("vineyard-2", "restaurant").

        "restaurant-0" is accepted for clients that still address the restaurant
        positionally. Raises InvalidTarget for anything else.
        """
        from services.errors import InvalidTarget

        text = (item_id or "").strip()
        match = _VINEYARD_ID.match(text)
        if match:
            return cls.vineyard(int(match.group(1)))
        if _RESTAURANT_ID.match(text):
            return cls.restaurant()
        raise InvalidTarget(f"Invalid item id: {item_id!r}", details={"item_id": item_id})


# ============================================================================
# PLAN MODELS
# ============================================================================

class PlanVineyard(BaseModel):
    model_config = ConfigDict(extra="ignore")

    vineyard_id: str
    vineyard: Dict[str, Any]  # snapshot of the vineyard at selection time
    offer: Optional[Dict[str, Any]] = None
    time: Optional[str] = None

class PlanRestaurant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    restaurant_id: str
    restaurant: Dict[str, Any]
    time: Optional[str] = None

class Plan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    plan_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    title: Optional[str] = None
    vineyards: List[PlanVineyard] = Field(default_factory=list)
    restaurant: Optional[PlanRestaurant] = None
    custom_order: List[ItemRef] = Field(default_factory=list)
    status: PlanStatus = PlanStatus.DRAFT
    is_active: bool = True
    expires_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("expires_at", "confirmed_at", "created_at", "updated_at")
    @classmethod
    def ensure_utc(cls, value):
        return as_utc(value)

    def has_item(self, ref: ItemRef) -> bool:
        if ref.kind == ItemKind.VINEYARD:
            return ref.index is not None and 0 <= ref.index < len(self.vineyards)
        return self.restaurant is not None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="python")

    def to_public(self) -> Dict[str, Any]:
        doc = self.model_dump(mode="json")
        doc["id"] = doc.pop("plan_id")
        return doc


# ============================================================================
# USER MODELS
# ============================================================================

class User(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email: EmailStr
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: UserRole = UserRole.USER

    # Subscription
    selected_plan_tier: Optional[SubscriptionTier] = None
    plan_selected_at: Optional[datetime] = None
    subscription_expires_at: Optional[datetime] = None
    is_subscription_active: bool = False
    has_used_free_tier: bool = False

    is_active: bool = True
    last_login_at: Optional[datetime] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("plan_selected_at", "subscription_expires_at", "last_login_at", "created_at", "updated_at")
    @classmethod
    def ensure_utc(cls, value):
        return as_utc(value)

    @property
    def full_name(self) -> str:
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}"
        return self.first_name or self.last_name or self.email

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.user_id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "role": self.role.value,
            "selected_plan": self.selected_plan_tier.value if self.selected_plan_tier else None,
            "plan_selected_at": self.plan_selected_at.isoformat() if self.plan_selected_at else None,
            "subscription_expires_at": (
                self.subscription_expires_at.isoformat() if self.subscription_expires_at else None
            ),
            "is_subscription_active": self.is_subscription_active,
        }


class Identity(BaseModel):
    """Caller identity taken from the bearer token; never re-authenticated here."""
    owner_id: str
    email: str
    role: UserRole = UserRole.USER


# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_id: Optional[str] = None
    actor_role: Optional[UserRole] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utc_now)
