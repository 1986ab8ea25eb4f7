from __future__ import annotations

import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .advisors import QueryAdvisor
from .errors import CapacityExceeded, NotFound, OrderingClosed, PersistenceError, ValidationError
from .mailer import EmailDispatcher
from .models import CompleteProfile, Meal, Order, OrderReceipt, StudentOrder, UserRole, utcnow
from .profiles import require_complete
from .reminders import ReminderScheduler
from .store import MEALS, ORDERS, DocumentStore

logger = logging.getLogger(__name__)

HUNGRY_MESSAGES = (
    "Time to satisfy those cravings!",
    "Your taste buds will thank you!",
    "Great choice! Let's get you fed!",
    "Hungry? Not for long!",
    "Delicious food coming your way!",
    "Get ready for a tasty meal!",
    "Your stomach will be happy!",
    "Food makes everything better!",
    "Time for some yummy goodness!",
    "Making hunger history!",
)


class OrderingEngine:
    """
    Student-side catalog and reservations.

    House contact details shown in the catalog are the copy frozen on the meal when it
    was listed; the catalog never re-reads ``users``.
    """

    def __init__(
        self,
        store: DocumentStore,
        reminders: ReminderScheduler,
        dispatcher: EmailDispatcher,
        query_advisor: QueryAdvisor | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.reminders = reminders
        self.dispatcher = dispatcher
        self.query_advisor = query_advisor
        self._clock = clock

    def list_open_meals(self) -> List[Meal]:
        now = self._clock()
        documents = self.store.find(MEALS, {"order_deadline": {"$gt": now}}, sort=[("order_deadline", 1)])
        return [Meal.from_document(doc).as_of(now) for doc in documents]

    def search_meals(self, question: str) -> List[Meal]:
        question = question.strip()
        if not question:
            raise ValidationError("Ask a question about today's meals.")
        if self.query_advisor is None:
            return []
        return self.query_advisor.select(question, self.list_open_meals())

    def get_meal(self, meal_id: str) -> Meal:
        document = self.store.get(MEALS, meal_id)
        if document is None:
            raise NotFound(f"Meal {meal_id} does not exist.")
        return Meal.from_document(document)

    def place_order(self, student: CompleteProfile, meal_id: str, quantity: int = 1) -> OrderReceipt:
        """
        Reserve ``quantity`` portions of a meal for ``student``.

        The capacity check, counter increment, embedded summary and ``Order`` insert
        happen in one transaction around a conditional update that only matches while
        ``orders_accepted + quantity <= quantity_prepared`` still holds. The store may
        run that body again after a write conflict, so it only touches the store.
        Reminder and confirmation email are attempted afterwards and never undo the order.
        """

        require_complete(student, UserRole.STUDENT)
        if quantity < 1:
            raise ValidationError("Order at least one portion.")

        now = self._clock()
        meal = self.get_meal(meal_id)
        if meal.settled or now >= meal.order_deadline:
            raise OrderingClosed(f"Ordering for {meal.title!r} has closed.")
        if quantity > meal.remaining:
            raise CapacityExceeded(meal_id, quantity, meal.remaining)

        order = Order(
            student_id=student.id,
            student_name=student.name,
            student_phone=student.phone,
            meal_id=meal_id,
            quantity=quantity,
            created_at=now,
        )

        def reserve(txn: Any) -> Dict[str, Any]:
            updated = self.store.find_one_and_update(
                MEALS,
                {
                    "_id": meal_id,
                    "settled": {"$ne": True},
                    "order_deadline": {"$gt": now},
                    "orders_accepted": {"$lte": meal.quantity_prepared - quantity},
                },
                {
                    "$inc": {"orders_accepted": quantity},
                    "$push": {"orders": order.summary().model_dump()},
                },
                session=txn,
            )
            if updated is None:
                raise CapacityExceeded(meal_id, quantity, self._remaining_after_race(meal_id, txn))
            if updated["orders_accepted"] >= updated["quantity_prepared"]:
                self.store.update(MEALS, meal_id, {"is_available": False}, session=txn)
                updated["is_available"] = False
            self.store.insert(ORDERS, order.to_document(), session=txn)
            return updated

        try:
            updated = self.store.run_transaction(reserve)
        except CapacityExceeded as exc:
            logger.info(
                "Order by %s for %s x%s rejected: %s left", student.id, meal_id, quantity, exc.remaining
            )
            raise
        except PersistenceError:
            logger.exception("Order by %s for meal %s x%s failed", student.id, meal_id, quantity)
            raise

        booked = Meal.from_document(updated).as_of(now)
        logger.info(
            "Order %s: %s reserved %s of meal %s (%s/%s)",
            order.id,
            student.id,
            quantity,
            meal_id,
            booked.orders_accepted,
            booked.quantity_prepared,
        )
        receipt = OrderReceipt(order=order, meal=booked, message=random.choice(HUNGRY_MESSAGES))
        receipt.reminder_id = self._schedule_reminder(student.email, booked, order.id)
        receipt.confirmation_sent = self._send_confirmation(student.email, booked, order.id)
        return receipt

    def list_student_orders(self, student_id: str) -> List[StudentOrder]:
        now = self._clock()
        documents = self.store.find(ORDERS, {"student_id": student_id}, sort=[("created_at", -1)])
        results: List[StudentOrder] = []
        for document in documents:
            order = Order.from_document(document)
            meal_document = self.store.get(MEALS, order.meal_id)
            if meal_document is None:
                logger.warning("Order %s references missing meal %s", order.id, order.meal_id)
                continue
            results.append(StudentOrder(order=order, meal=Meal.from_document(meal_document).as_of(now)))
        return results

    def _remaining_after_race(self, meal_id: str, txn: Any = None) -> int:
        document = self.store.get(MEALS, meal_id, session=txn)
        if document is None:
            return 0
        return max(0, int(document["quantity_prepared"]) - int(document.get("orders_accepted", 0)))

    def _schedule_reminder(self, email: str, meal: Meal, order_id: str) -> Optional[str]:
        try:
            return self.reminders.schedule(email, meal)
        except Exception:
            logger.exception("Pickup reminder for order %s to %s could not be scheduled", order_id, email)
            return None

    def _send_confirmation(self, email: str, meal: Meal, order_id: str) -> bool:
        try:
            self.dispatcher.send_order_confirmation(email, meal)
        except Exception:
            logger.exception("Order confirmation email for order %s to %s failed", order_id, email)
            return False
        return True


def total_spent(orders: List[StudentOrder]) -> float:
    return round(sum(item.amount for item in orders), 2)

