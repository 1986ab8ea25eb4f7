from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from .advisors import NutritionAdvisor
from .errors import PersistenceError, ValidationError
from .models import CompleteProfile, ListingDraft, Meal, PastOrder, UserRole, utcnow
from .profiles import require_complete
from .store import MEALS, PAST_ORDERS, DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_SETTLEMENT_GRACE = timedelta(minutes=60)
MAX_NUTRITION_WORKERS = 8


class ListingManager:
    """House-side listings: creation with nutrition estimates, enumeration and settlement."""

    def __init__(
        self,
        store: DocumentStore,
        nutrition: NutritionAdvisor,
        *,
        settlement_grace: timedelta = DEFAULT_SETTLEMENT_GRACE,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.nutrition = nutrition
        self.settlement_grace = settlement_grace
        self._clock = clock

    def create_listing(self, house: CompleteProfile, draft: ListingDraft) -> Meal:
        require_complete(house, UserRole.HOUSE)
        now = self._clock()
        if draft.order_deadline <= now:
            raise ValidationError("Order deadline must be in the future.")
        if draft.pickup_time <= draft.order_deadline:
            raise ValidationError("Pickup time must be after the order deadline.")

        with ThreadPoolExecutor(max_workers=min(MAX_NUTRITION_WORKERS, len(draft.food_items))) as pool:
            items = list(pool.map(self.nutrition.annotate, draft.food_items))

        meal = Meal(
            house_id=house.id,
            house_name=house.name,
            house_phone=house.phone,
            house_location=house.location,
            title=draft.title.strip(),
            price=draft.price,
            pickup_time=draft.pickup_time,
            order_deadline=draft.order_deadline,
            quantity_prepared=draft.quantity_prepared,
            food_items=items,
            total_calories=sum(item.calories for item in items),
            total_protein=sum(item.protein for item in items),
            is_veg=all(item.is_veg is True for item in items),
            created_at=now,
        )
        try:
            self.store.insert(MEALS, meal.to_document())
        except PersistenceError:
            logger.exception("Failed to create listing %r for house %s", meal.title, house.id)
            raise
        logger.info(
            "House %s listed meal %s (%r, %s portions, deadline %s)",
            house.id,
            meal.id,
            meal.title,
            meal.quantity_prepared,
            meal.order_deadline.isoformat(),
        )
        return meal

    def list_own_listings(self, house_id: str) -> List[Meal]:
        documents = self.store.find(MEALS, {"house_id": house_id}, sort=[("created_at", -1)])
        now = self._clock()
        return [Meal.from_document(doc).as_of(now) for doc in documents]

    def list_past_orders(self, house_id: str) -> List[PastOrder]:
        documents = self.store.find(PAST_ORDERS, {"house_id": house_id}, sort=[("pickup_time", -1)])
        return [PastOrder.from_document(doc) for doc in documents]

    def run_completion_sweep(self, house_id: Optional[str] = None) -> List[PastOrder]:
        """
        Settle every meal whose pickup window closed more than the grace period ago.

        Restricted to one house when ``house_id`` is given. Each meal is claimed with a
        conditional update on its ``settled`` flag, so concurrent or repeated sweeps
        produce exactly one ``PastOrder`` per meal.
        """

        now = self._clock()
        cutoff = now - self.settlement_grace
        filters: dict[str, Any] = {"pickup_time": {"$lte": cutoff}, "settled": {"$ne": True}}
        if house_id is not None:
            filters["house_id"] = house_id

        settled: List[PastOrder] = []
        for document in self.store.find(MEALS, filters):
            meal_id = str(document["_id"])
            try:
                record = self._settle(meal_id, cutoff, now)
            except PersistenceError:
                logger.exception("Failed to settle meal %s", meal_id)
                continue
            if record is not None:
                settled.append(record)
        if settled:
            logger.info("Settled %s meal(s) for %s", len(settled), house_id or "all houses")
        return settled

    def _settle(self, meal_id: str, cutoff: datetime, now: datetime) -> Optional[PastOrder]:
        if self.store.get(PAST_ORDERS, meal_id) is not None:
            # Record exists from an earlier run; only the flag is missing.
            self.store.update(MEALS, meal_id, {"settled": True, "is_available": False})
            return None

        def claim(txn: Any) -> Optional[PastOrder]:
            claimed = self.store.find_one_and_update(
                MEALS,
                {"_id": meal_id, "settled": {"$ne": True}, "pickup_time": {"$lte": cutoff}},
                {"$set": {"settled": True, "is_available": False}},
                session=txn,
            )
            if claimed is None:
                return None
            past = PastOrder.from_meal(Meal.from_document(claimed), settled_at=now)
            self.store.insert(PAST_ORDERS, past.to_document(), session=txn)
            return past

        record = self.store.run_transaction(claim)
        if record is None:
            return None
        logger.info(
            "Settled meal %s: %s orders, revenue %.2f", meal_id, record.total_orders, record.total_revenue
        )
        return record
