from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import pytest

from pothichor import Settings, build_marketplace
from pothichor.errors import AuthError, DispatchError
from pothichor.identity import Identity
from pothichor.llm_client import LLMError
from pothichor.mailer import EmailDispatcher
from pothichor.models import CompleteProfile, ListingDraft, Location, UserRole
from pothichor.store import MemoryDocumentStore

START = datetime(2025, 3, 14, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeLLM:
    """Stands in for the chat-completions client; answers come from ``responder``."""

    def __init__(self, responder: Optional[Callable[[str, str], str]] = None):
        self.responder = responder or self.nutrition_table
        self.calls: List[str] = []
        self.menu: Dict[str, str] = {
            "dal": '{"calories": 180, "protein": 9, "vegetarian": true}',
            "rice": '{"calories": 200, "protein": 4, "vegetarian": true}',
            "chicken curry": '{"calories": 350, "protein": 28, "vegetarian": false}',
        }
        self._lock = threading.Lock()

    def chat(self, messages, *, system_prompt=None, response_format=None) -> str:
        content = list(messages)[-1]["content"]
        with self._lock:
            self.calls.append(content)
        return self.responder(content, system_prompt or "")

    def nutrition_table(self, content: str, system_prompt: str) -> str:
        name = content.split(":", 1)[-1].strip().lower()
        if name not in self.menu:
            raise LLMError(f"no answer for {name}")
        return self.menu[name]


class RecordingDispatcher(EmailDispatcher):
    """Dry-run dispatcher that records sends and can be told to fail."""

    def __init__(self):
        super().__init__(dry_run=True, display_timezone="Asia/Kolkata")
        self.sent: List[tuple] = []
        self.failures_left = 0
        self.fail_always = False
        self._lock = threading.Lock()

    def send(self, recipient, template_id, params):
        with self._lock:
            if self.fail_always or self.failures_left > 0:
                self.failures_left = max(0, self.failures_left - 1)
                raise DispatchError("EmailJS responded with status 500: down")
            self.sent.append((recipient, dict(params)))
        return 200

    def messages_to(self, recipient: str) -> List[dict]:
        return [params for to, params in self.sent if to == recipient]


class FakeIdentityProvider:
    def __init__(self):
        self.tokens: Dict[str, Identity] = {
            "student-token": Identity(subject="student-1", email="asha@example.com"),
            "student2-token": Identity(subject="student-2", email="ravi@example.com"),
            "house-token": Identity(subject="house-1", email="kitchen@example.com"),
        }
        self.signed_out: List[str] = []

    def verify(self, token: str) -> Identity:
        identity = self.tokens.get(token)
        if identity is None:
            raise AuthError("Google rejected the sign-in token: bad token")
        return identity

    def sign_out(self, identity: Identity) -> None:
        self.signed_out.append(identity.subject)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def identity_provider():
    return FakeIdentityProvider()


@pytest.fixture
def settings():
    config = Settings()
    config.enable_background_sweeps = False
    config.reminder_lead_minutes = 15
    config.settlement_grace_minutes = 60
    config.reminder_poll_interval_seconds = 60
    config.frontend_origins = ("http://localhost:5173",)
    return config


@pytest.fixture
def market(settings, store, identity_provider, llm, dispatcher, clock):
    return build_marketplace(
        settings,
        store=store,
        identity_provider=identity_provider,
        llm_client=llm,
        dispatcher=dispatcher,
        clock=clock,
    )


@pytest.fixture
def house():
    return CompleteProfile(
        id="house-1",
        email="kitchen@example.com",
        role=UserRole.HOUSE,
        name="Maa's Kitchen",
        phone="+91 98000 00001",
        location=Location(area="Salt Lake", address="CF-12"),
    )


@pytest.fixture
def student():
    return CompleteProfile(
        id="student-1",
        email="asha@example.com",
        role=UserRole.STUDENT,
        name="Asha",
        phone="+91 98000 00002",
    )


@pytest.fixture
def other_student():
    return CompleteProfile(
        id="student-2",
        email="ravi@example.com",
        role=UserRole.STUDENT,
        name="Ravi",
        phone="+91 98000 00003",
    )


@pytest.fixture
def make_draft(clock):
    def _make(**overrides) -> ListingDraft:
        fields = {
            "title": "Thali",
            "price": 80,
            "order_deadline": clock() + timedelta(hours=2),
            "pickup_time": clock() + timedelta(hours=3),
            "quantity_prepared": 2,
            "food_items": ["Dal", "Rice"],
        }
        fields.update(overrides)
        return ListingDraft(**fields)

    return _make
