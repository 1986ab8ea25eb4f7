from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so every comparison is between aware values."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UserRole(str, Enum):
    STUDENT = "student"
    HOUSE = "house"


class Location(BaseModel):
    area: str = Field(..., min_length=1)
    address: str = ""


class StoredDocument(BaseModel):
    """
    Base for models persisted in the document store.

    ``collection`` names the store collection. The model's ``id`` is written as the
    document's ``_id`` and every other field is stored under its own name.
    """

    collection: ClassVar[str] = ""

    id: str = Field(default_factory=new_id)

    def to_document(self) -> Dict[str, Any]:
        data = self.model_dump(mode="python", exclude={"id"})
        data["_id"] = self.id
        return data

    @classmethod
    def from_document(cls, document: Dict[str, Any]):
        data = dict(document)
        data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)


# --------------------------------------------------------------------------- #
# Profiles
# --------------------------------------------------------------------------- #


class ProfileDetails(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    location: Optional[Location] = None

    @field_validator("name", "phone")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class IncompleteProfile(BaseModel):
    """A signed-in user who has not finished onboarding (role and/or details missing)."""

    id: str
    email: str
    role: Optional[UserRole] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[Location] = None

    @property
    def is_complete(self) -> bool:
        return False


class CompleteProfile(BaseModel):
    """A user allowed to order (students) or post listings (houses)."""

    id: str
    email: str
    role: UserRole
    name: str = Field(..., min_length=1)
    phone: str = ""
    location: Optional[Location] = None

    @model_validator(mode="after")
    def _house_needs_location(self) -> "CompleteProfile":
        if self.role == UserRole.HOUSE and self.location is None:
            raise ValueError("house profiles require a location")
        return self

    @property
    def is_complete(self) -> bool:
        return True


Profile = Union[CompleteProfile, IncompleteProfile]


def profile_from_document(document: Dict[str, Any]) -> Profile:
    fields = {
        "id": str(document["_id"]),
        "email": document.get("email") or "",
        "role": document.get("role"),
        "name": document.get("name"),
        "phone": document.get("phone"),
        "location": document.get("location"),
    }
    if fields["role"] and fields["name"]:
        try:
            return CompleteProfile.model_validate({**fields, "phone": fields["phone"] or ""})
        except ValueError:
            pass
    return IncompleteProfile.model_validate(fields)


# --------------------------------------------------------------------------- #
# Meals and orders
# --------------------------------------------------------------------------- #


class FoodItem(BaseModel):
    name: str
    calories: float = 0.0
    protein: float = 0.0
    is_veg: Optional[bool] = None


class OrderSummary(BaseModel):
    """Copy of an order embedded in its meal so the house sees who is coming."""

    order_id: str
    student_id: str
    student_name: str
    student_phone: str = ""
    quantity: int = Field(..., ge=1)


class ListingDraft(BaseModel):
    title: str = Field(..., min_length=1)
    price: float = Field(..., gt=0)
    pickup_time: datetime
    order_deadline: datetime
    quantity_prepared: int = Field(..., gt=0)
    food_items: List[str] = Field(..., min_length=1)

    @field_validator("pickup_time", "order_deadline")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("food_items")
    @classmethod
    def _clean_items(cls, items: List[str]) -> List[str]:
        cleaned = [item.strip() for item in items if item and item.strip()]
        if not cleaned:
            raise ValueError("at least one food item is required")
        return cleaned


class CatalogMeal(StoredDocument):
    """A meal as students see it: the listing without the per-student order summaries."""

    collection: ClassVar[str] = "meals"

    house_id: str
    house_name: str
    house_phone: str = ""
    house_location: Optional[Location] = None
    title: str
    price: float = Field(..., gt=0)
    pickup_time: datetime
    order_deadline: datetime
    quantity_prepared: int = Field(..., gt=0)
    orders_accepted: int = Field(0, ge=0)
    is_available: bool = True
    food_items: List[FoodItem] = Field(default_factory=list)
    total_calories: float = 0.0
    total_protein: float = 0.0
    is_veg: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    settled: bool = False

    @field_validator("pickup_time", "order_deadline", "created_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def remaining(self) -> int:
        return max(0, self.quantity_prepared - self.orders_accepted)

    def open_for_orders(self, now: datetime) -> bool:
        return not self.settled and self.remaining > 0 and now < self.order_deadline

    @property
    def food_item_names(self) -> List[str]:
        return [item.name for item in self.food_items]


class Meal(CatalogMeal):
    orders: List[OrderSummary] = Field(default_factory=list)

    def as_of(self, now: datetime) -> "Meal":
        # The stored flag only changes on orders and settlement, not when the deadline passes.
        return self.model_copy(update={"is_available": self.open_for_orders(now)})

    def for_students(self) -> CatalogMeal:
        return CatalogMeal.model_validate(self.model_dump(exclude={"orders"}))


class Order(StoredDocument):
    collection: ClassVar[str] = "orders"

    student_id: str
    student_name: str
    student_phone: str = ""
    meal_id: str
    quantity: int = Field(..., ge=1)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def summary(self) -> OrderSummary:
        return OrderSummary(
            order_id=self.id,
            student_id=self.student_id,
            student_name=self.student_name,
            student_phone=self.student_phone,
            quantity=self.quantity,
        )


class PastOrder(StoredDocument):
    """Settlement snapshot of a meal. Its id is the settled meal's id."""

    collection: ClassVar[str] = "pastOrders"

    house_id: str
    meal_title: str
    pickup_time: datetime
    total_orders: int
    total_revenue: float
    food_items: List[str] = Field(default_factory=list)
    orders: List[OrderSummary] = Field(default_factory=list)
    settled_at: datetime = Field(default_factory=utcnow)

    @field_validator("pickup_time", "settled_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @classmethod
    def from_meal(cls, meal: Meal, settled_at: datetime) -> "PastOrder":
        return cls(
            id=meal.id,
            house_id=meal.house_id,
            meal_title=meal.title,
            pickup_time=meal.pickup_time,
            total_orders=meal.orders_accepted,
            total_revenue=round(meal.price * meal.orders_accepted, 2),
            food_items=meal.food_item_names,
            orders=list(meal.orders),
            settled_at=settled_at,
        )


class ScheduledReminder(StoredDocument):
    collection: ClassVar[str] = "scheduledReminders"

    recipient_email: str
    meal_id: str
    meal_title: str
    pickup_time: datetime
    food_items: List[str] = Field(default_factory=list)
    reminder_time: datetime
    sent: bool = False
    sent_at: Optional[datetime] = None
    claimed_until: datetime = EPOCH
    attempts: int = 0
    last_error: Optional[str] = None

    @field_validator("pickup_time", "reminder_time", "sent_at", "claimed_until")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None


class OrderReceipt(BaseModel):
    order: Order
    meal: Meal
    message: str = ""
    reminder_id: Optional[str] = None
    confirmation_sent: bool = False


class StudentOrder(BaseModel):
    order: Order
    meal: Meal

    @property
    def amount(self) -> float:
        return self.meal.price * self.order.quantity
