from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .errors import AuthError, Forbidden, NotAuthenticated, PersistenceError, ProfileIncomplete, ValidationError
from .identity import GoogleIdentityProvider, Identity
from .models import CompleteProfile, Profile, ProfileDetails, UserRole, profile_from_document, utcnow
from .reminders import ReminderPoller
from .store import USERS, DocumentStore

logger = logging.getLogger(__name__)


def require_complete(profile: Profile, role: UserRole | None = None) -> CompleteProfile:
    """Narrow a profile to ``CompleteProfile`` (optionally of one role) or raise."""

    if not isinstance(profile, CompleteProfile):
        raise ProfileIncomplete("Finish setting up your profile (role and name) first.")
    if role is not None and profile.role != role:
        raise Forbidden(f"Only {role.value} accounts can do this.")
    return profile


@dataclass
class Session:
    """An authenticated user plus whatever background work belongs to them."""

    identity: Identity
    profile: Profile
    started_at: datetime = field(default_factory=utcnow)
    reminder_poller: Optional[ReminderPoller] = None

    @property
    def user_id(self) -> str:
        return self.identity.subject

    def complete(self, role: UserRole | None = None) -> CompleteProfile:
        return require_complete(self.profile, role)


class ProfileManager:
    """Owns sign-in, onboarding (role + details) and sign-out; the only writer of ``users``."""

    def __init__(
        self,
        store: DocumentStore,
        identity_provider: GoogleIdentityProvider,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.identity_provider = identity_provider
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def sign_in(self, token: str) -> Session:
        identity = self.identity_provider.verify(token)
        try:
            profile = self._ensure_profile(identity)
        except PersistenceError as exc:
            logger.exception("Profile lookup failed during sign-in for %s", identity.subject)
            raise AuthError(f"Signed in, but the profile could not be loaded. {exc.hint}") from exc

        with self._lock:
            session = self._sessions.get(identity.subject)
            if session is None:
                session = Session(identity=identity, profile=profile)
                self._sessions[identity.subject] = session
            else:
                session.profile = profile
        logger.info("Signed in %s (%s)", identity.subject, "complete" if profile.is_complete else "onboarding")
        return session

    def authenticate(self, token: str) -> Session:
        """Resolve a bearer token to its active session."""
        identity = self.identity_provider.verify(token)
        return self.session_for(identity.subject)

    def session_for(self, user_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(user_id)
        if session is None:
            raise NotAuthenticated("Sign in first.")
        return session

    def active_sessions(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def set_role(self, user_id: str, role: UserRole) -> Profile:
        session = self.session_for(user_id)
        current = session.profile.role
        if current is not None and current != role:
            raise ValidationError(f"Role is already set to {current.value}.")
        self._write(session, {"role": role.value})
        return session.profile

    def set_profile_details(self, user_id: str, details: ProfileDetails) -> Profile:
        session = self.session_for(user_id)
        role = session.profile.role
        if role is None:
            raise ProfileIncomplete("Choose whether you are a student or a house first.")
        fields: dict[str, object] = {"name": details.name, "phone": details.phone}
        if role == UserRole.HOUSE:
            if details.location is None:
                raise ValidationError("Houses must provide a pickup location.")
            fields["location"] = details.location.model_dump()
        self._write(session, fields)
        return session.profile

    def sign_out(self, user_id: str) -> Optional[Session]:
        """Forget the session. Signing out twice is harmless."""
        with self._lock:
            session = self._sessions.pop(user_id, None)
        if session is not None:
            self.identity_provider.sign_out(session.identity)
            logger.info("Signed out %s", user_id)
        return session

    def _ensure_profile(self, identity: Identity) -> Profile:
        document = self.store.get(USERS, identity.subject)
        if document is None:
            document = {"_id": identity.subject, "email": identity.email, "created_at": self._clock()}
            try:
                self.store.insert(USERS, document)
            except PersistenceError as exc:
                if exc.reason != PersistenceError.DUPLICATE:
                    raise
                # A concurrent sign-in created it first.
                document = self.store.get(USERS, identity.subject)
                if document is None:
                    raise
            else:
                logger.info("Created profile for %s", identity.subject)
        return profile_from_document(document)

    def _write(self, session: Session, fields: dict[str, object]) -> None:
        update = {**fields, "email": session.identity.email, "updated_at": self._clock()}
        try:
            self.store.update(USERS, session.user_id, update, upsert=True)
            document = self.store.get(USERS, session.user_id)
        except PersistenceError:
            logger.exception("Profile update failed for %s (%s)", session.user_id, sorted(fields))
            raise
        if document is not None:
            session.profile = profile_from_document(document)
