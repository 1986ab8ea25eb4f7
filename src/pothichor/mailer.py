from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

import requests
from dateutil import tz

from .errors import DispatchError
from .models import Meal, ScheduledReminder

logger = logging.getLogger(__name__)

EMAILJS_SEND_URL = "https://api.emailjs.com/api/v1.0/email/send"
FROM_NAME = "Pothichor"


class EmailDispatcher:
    """
    Transactional email over the EmailJS REST API.

    With ``dry_run`` set, messages are logged instead of sent and every send counts as
    delivered. Anything other than a 2xx answer from EmailJS is a ``DispatchError``.
    """

    def __init__(
        self,
        *,
        service_id: str | None = None,
        public_key: str | None = None,
        private_key: str | None = None,
        order_template_id: str | None = None,
        reminder_template_id: str | None = None,
        display_timezone: str = "Asia/Kolkata",
        dry_run: bool = False,
        timeout: float = 10.0,
        url: str = EMAILJS_SEND_URL,
        session: requests.Session | None = None,
    ):
        if not dry_run and not (service_id and public_key):
            raise ValueError("EmailJS service id and public key are required unless dry_run is set.")
        self.service_id = service_id
        self.public_key = public_key
        self.private_key = private_key
        self.order_template_id = order_template_id
        self.reminder_template_id = reminder_template_id or order_template_id
        self.display_tz = tz.gettz(display_timezone) or timezone.utc
        self.dry_run = dry_run
        self.timeout = timeout
        self.url = url
        self._http = session or requests.Session()

    def send(self, recipient: str, template_id: str | None, params: Mapping[str, Any]) -> int:
        """Send one templated email and return the HTTP status code."""

        template_params: Dict[str, Any] = {"to_email": recipient, **params}
        if self.dry_run:
            logger.info("[dry-run] email to %s via template %s: %s", recipient, template_id, template_params)
            return 200
        if not template_id:
            raise DispatchError("No EmailJS template configured for this message.")

        payload: Dict[str, Any] = {
            "service_id": self.service_id,
            "template_id": template_id,
            "user_id": self.public_key,
            "template_params": template_params,
        }
        if self.private_key:
            payload["accessToken"] = self.private_key
        try:
            response = self._http.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise DispatchError(f"EmailJS request to {recipient} failed: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise DispatchError(
                f"EmailJS responded with status {response.status_code}: {response.text[:200]}"
            )
        return response.status_code

    def send_order_confirmation(self, recipient: str, meal: Meal) -> int:
        pickup = self.format_time(meal.pickup_time)
        params = {
            "meal_title": meal.title,
            "pickup_time": pickup,
            "price": f"Rs. {meal.price:g}",
            "food_items": ", ".join(meal.food_item_names),
            "from_name": FROM_NAME,
            "message": f"Your order for {meal.title} has been confirmed! Please pick up your meal at {pickup}.",
        }
        return self.send(recipient, self.order_template_id, params)

    def send_pickup_reminder(self, reminder: ScheduledReminder) -> int:
        pickup = self.format_time(reminder.pickup_time)
        params = {
            "meal_title": reminder.meal_title,
            "pickup_time": pickup,
            "food_items": ", ".join(reminder.food_items),
            "from_name": FROM_NAME,
            "message": (
                f'Your meal "{reminder.meal_title}" is ready for pickup soon! '
                f"Please pick up your meal at {pickup}."
            ),
        }
        return self.send(reminder.recipient_email, self.reminder_template_id, params)

    def format_time(self, value: datetime) -> str:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(self.display_tz).strftime("%d %b %Y, %I:%M %p")
