import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from pothichor.errors import CapacityExceeded, DependencyError, Forbidden, NotFound, OrderingClosed, PersistenceError
from pothichor.models import CompleteProfile, UserRole
from pothichor.ordering import HUNGRY_MESSAGES, total_spent
from pothichor.store import MEALS, ORDERS, REMINDERS


def _students(count):
    return [
        CompleteProfile(
            id=f"student-{index}",
            email=f"student{index}@example.com",
            role=UserRole.STUDENT,
            name=f"Student {index}",
        )
        for index in range(count)
    ]


def test_place_order_reserves_and_notifies(market, house, student, make_draft, dispatcher, store):
    meal = market.listings.create_listing(house, make_draft(quantity_prepared=3))

    receipt = market.ordering.place_order(student, meal.id, 2)

    assert receipt.meal.orders_accepted == 2
    assert receipt.meal.is_available is True
    assert receipt.meal.orders[0].student_name == "Asha"
    assert receipt.meal.orders[0].quantity == 2
    assert receipt.message in HUNGRY_MESSAGES
    assert receipt.confirmation_sent is True
    assert store.get(ORDERS, receipt.order.id)["meal_id"] == meal.id

    reminder = store.get(REMINDERS, receipt.reminder_id)
    assert reminder["recipient_email"] == "asha@example.com"
    assert reminder["reminder_time"] == meal.pickup_time - timedelta(minutes=15)
    assert reminder["sent"] is False

    [confirmation] = dispatcher.messages_to("asha@example.com")
    assert confirmation["meal_title"] == "Thali"


def test_second_student_is_refused_once_sold_out(market, house, student, other_student, make_draft, store):
    meal = market.listings.create_listing(house, make_draft(quantity_prepared=2))
    market.ordering.place_order(student, meal.id, 2)

    with pytest.raises(CapacityExceeded) as excinfo:
        market.ordering.place_order(other_student, meal.id, 1)

    assert excinfo.value.remaining == 0
    stored = store.get(MEALS, meal.id)
    assert stored["orders_accepted"] == 2
    assert stored["is_available"] is False
    assert len(stored["orders"]) == 1
    assert len(store.find(ORDERS)) == 1


def test_concurrent_orders_never_oversell(market, house, make_draft, store):
    capacity = 5
    meal = market.listings.create_listing(house, make_draft(quantity_prepared=capacity))
    students = _students(20)
    start = threading.Barrier(len(students))

    def attempt(profile):
        start.wait()
        try:
            market.ordering.place_order(profile, meal.id, 1)
        except CapacityExceeded:
            return False
        return True

    with ThreadPoolExecutor(max_workers=len(students)) as pool:
        outcomes = list(pool.map(attempt, students))

    assert outcomes.count(True) == capacity
    stored = store.get(MEALS, meal.id)
    assert stored["orders_accepted"] == capacity
    assert len(stored["orders"]) == capacity
    assert len(store.find(ORDERS, {"meal_id": meal.id})) == capacity
    assert stored["is_available"] is False


def test_failed_order_insert_leaves_meal_untouched(market, house, student, make_draft, store, monkeypatch):
    meal = market.listings.create_listing(house, make_draft())
    real_insert = store.insert

    def flaky_insert(collection, document, **kwargs):
        if collection == ORDERS:
            raise PersistenceError("insert into orders", reason=PersistenceError.UNKNOWN)
        return real_insert(collection, document, **kwargs)

    monkeypatch.setattr(store, "insert", flaky_insert)

    with pytest.raises(PersistenceError):
        market.ordering.place_order(student, meal.id, 1)

    stored = store.get(MEALS, meal.id)
    assert stored["orders_accepted"] == 0
    assert stored["orders"] == []
    assert store.find(REMINDERS) == []


def test_order_after_deadline_is_closed(market, house, student, make_draft, clock):
    meal = market.listings.create_listing(house, make_draft())
    clock.advance(hours=2)

    with pytest.raises(OrderingClosed):
        market.ordering.place_order(student, meal.id, 1)


def test_order_for_more_than_remaining(market, house, student, make_draft):
    meal = market.listings.create_listing(house, make_draft(quantity_prepared=2))

    with pytest.raises(CapacityExceeded) as excinfo:
        market.ordering.place_order(student, meal.id, 3)

    assert excinfo.value.remaining == 2


def test_unknown_meal_and_wrong_role(market, house, student, make_draft):
    with pytest.raises(NotFound):
        market.ordering.place_order(student, "missing", 1)

    meal = market.listings.create_listing(house, make_draft())
    with pytest.raises(Forbidden):
        market.ordering.place_order(house, meal.id, 1)


def test_notification_failures_do_not_undo_the_order(
    market, house, student, make_draft, dispatcher, store, monkeypatch
):
    meal = market.listings.create_listing(house, make_draft())
    dispatcher.fail_always = True

    def broken_schedule(email, meal):
        raise RuntimeError("reminder store unavailable")

    monkeypatch.setattr(market.reminders, "schedule", broken_schedule)

    receipt = market.ordering.place_order(student, meal.id, 1)

    assert receipt.reminder_id is None
    assert receipt.confirmation_sent is False
    assert store.get(MEALS, meal.id)["orders_accepted"] == 1
    assert store.get(ORDERS, receipt.order.id) is not None


def test_reminder_store_failure_is_swallowed_by_schedule(market, house, student, make_draft, store, monkeypatch):
    meal = market.listings.create_listing(house, make_draft())
    real_insert = store.insert

    def insert(collection, document, **kwargs):
        if collection == REMINDERS:
            raise PersistenceError("insert into scheduledReminders")
        return real_insert(collection, document, **kwargs)

    monkeypatch.setattr(store, "insert", insert)

    receipt = market.ordering.place_order(student, meal.id, 1)

    assert receipt.reminder_id is None
    assert receipt.confirmation_sent is True


def test_catalog_lists_open_meals_by_deadline(market, house, make_draft, clock):
    late = market.listings.create_listing(house, make_draft(title="Dinner", order_deadline=clock() + timedelta(hours=2)))
    soon = market.listings.create_listing(
        house,
        make_draft(title="Lunch", order_deadline=clock() + timedelta(hours=1), pickup_time=clock() + timedelta(hours=2)),
    )

    assert [meal.id for meal in market.ordering.list_open_meals()] == [soon.id, late.id]

    clock.advance(hours=1, minutes=30)
    assert [meal.id for meal in market.ordering.list_open_meals()] == [late.id]


def test_catalog_shows_contact_copied_at_listing_time(market, house, make_draft, store):
    meal = market.listings.create_listing(house, make_draft())
    store.update("users", house.id, {"phone": "changed"}, upsert=True)

    [listed] = market.ordering.list_open_meals()

    assert listed.id == meal.id
    assert listed.house_phone == "+91 98000 00001"


def test_student_orders_with_total(market, house, student, other_student, make_draft, clock):
    lunch = market.listings.create_listing(house, make_draft(title="Lunch", price=80, quantity_prepared=5))
    dinner = market.listings.create_listing(house, make_draft(title="Dinner", price=120.5, quantity_prepared=5))
    market.ordering.place_order(student, lunch.id, 2)
    clock.advance(minutes=1)
    market.ordering.place_order(student, dinner.id, 1)
    market.ordering.place_order(other_student, dinner.id, 3)

    orders = market.ordering.list_student_orders(student.id)

    assert [item.meal.title for item in orders] == ["Dinner", "Lunch"]
    assert total_spent(orders) == 280.5


def test_search_returns_meals_chosen_by_advisor(market, house, make_draft, llm):
    veg = market.listings.create_listing(house, make_draft(title="Veg Thali"))
    market.listings.create_listing(house, make_draft(title="Chicken Thali", food_items=["Chicken Curry"]))
    llm.responder = lambda content, system: f'Here you go: ["{veg.id}", "unknown"]'

    assert [meal.id for meal in market.ordering.search_meals("something vegetarian")] == [veg.id]


def test_search_failure_is_a_dependency_error(market, house, make_draft, llm):
    market.listings.create_listing(house, make_draft())
    llm.responder = lambda content, system: "I cannot help with that."

    with pytest.raises(DependencyError):
        market.ordering.search_meals("anything light?")
