"""Pothichor home-kitchen meal marketplace."""

from .config import Settings
from .listings import ListingManager
from .marketplace import Marketplace, build_marketplace
from .models import (
    CompleteProfile,
    FoodItem,
    IncompleteProfile,
    ListingDraft,
    Location,
    Meal,
    Order,
    PastOrder,
    ProfileDetails,
    ScheduledReminder,
    UserRole,
)
from .ordering import OrderingEngine
from .profiles import ProfileManager, Session
from .reminders import ReminderPoller, ReminderScheduler
from .store import DocumentStore, MemoryDocumentStore, MongoDocumentStore

__all__ = [
    "CompleteProfile",
    "DocumentStore",
    "FoodItem",
    "IncompleteProfile",
    "ListingDraft",
    "ListingManager",
    "Location",
    "Marketplace",
    "Meal",
    "MemoryDocumentStore",
    "MongoDocumentStore",
    "Order",
    "OrderingEngine",
    "PastOrder",
    "ProfileDetails",
    "ProfileManager",
    "ReminderPoller",
    "ReminderScheduler",
    "ScheduledReminder",
    "Session",
    "Settings",
    "UserRole",
    "build_marketplace",
]
