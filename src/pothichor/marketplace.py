from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from .advisors import NutritionAdvisor, QueryAdvisor
from .config import Settings
from .identity import GoogleIdentityProvider
from .listings import ListingManager
from .llm_client import ChatCompletionsClient
from .mailer import EmailDispatcher
from .models import utcnow
from .ordering import OrderingEngine
from .profiles import ProfileManager
from .reminders import ReminderScheduler
from .store import DocumentStore, open_store

logger = logging.getLogger(__name__)


@dataclass
class Marketplace:
    """Every marketplace component, wired against one store and one clock."""

    settings: Settings
    store: DocumentStore
    dispatcher: EmailDispatcher
    profiles: ProfileManager
    listings: ListingManager
    ordering: OrderingEngine
    reminders: ReminderScheduler


def build_marketplace(
    settings: Settings,
    *,
    store: Optional[DocumentStore] = None,
    identity_provider: Optional[GoogleIdentityProvider] = None,
    llm_client: Optional[ChatCompletionsClient] = None,
    dispatcher: Optional[EmailDispatcher] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Marketplace:
    store = store or open_store(settings.database_url, settings.database_name)

    if llm_client is None and settings.llm_api_key:
        llm_client = ChatCompletionsClient(
            settings.llm_api_key,
            model=settings.llm_model,
            url=settings.llm_url,
            timeout=settings.advisor_timeout_seconds,
        )
    if llm_client is None:
        logger.warning("No LLM API key configured; nutrition estimates are zeroed and meal search is off.")

    if dispatcher is None:
        dispatcher = EmailDispatcher(
            service_id=settings.emailjs_service_id,
            public_key=settings.emailjs_public_key,
            private_key=settings.emailjs_private_key,
            order_template_id=settings.emailjs_order_template_id,
            reminder_template_id=settings.emailjs_reminder_template_id,
            display_timezone=settings.display_timezone,
            dry_run=settings.email_dry_run,
        )
    if dispatcher.dry_run:
        logger.info("Email dispatcher in dry-run mode; messages are logged, not sent.")

    identity_provider = identity_provider or GoogleIdentityProvider(settings.google_client_id)
    reminders = ReminderScheduler(
        store,
        dispatcher,
        lead=timedelta(minutes=settings.reminder_lead_minutes),
        clock=clock,
    )
    return Marketplace(
        settings=settings,
        store=store,
        dispatcher=dispatcher,
        profiles=ProfileManager(store, identity_provider, clock=clock),
        listings=ListingManager(
            store,
            NutritionAdvisor(llm_client),
            settlement_grace=timedelta(minutes=settings.settlement_grace_minutes),
            clock=clock,
        ),
        ordering=OrderingEngine(store, reminders, dispatcher, QueryAdvisor(llm_client), clock=clock),
        reminders=reminders,
    )
