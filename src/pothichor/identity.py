from __future__ import annotations

import logging
from dataclasses import dataclass

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2 import id_token

from .errors import AuthError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Who the identity provider says the caller is."""

    subject: str
    email: str


class GoogleIdentityProvider:
    """Verifies Google Sign-In ID tokens issued to the web client."""

    def __init__(self, client_id: str | None, *, request: Request | None = None):
        self.client_id = client_id
        self._request = request or Request()

    def verify(self, token: str) -> Identity:
        if not token:
            raise AuthError("Missing ID token.")
        try:
            claims = id_token.verify_oauth2_token(token, self._request, audience=self.client_id)
        except (ValueError, GoogleAuthError) as exc:
            raise AuthError(f"Google rejected the sign-in token: {exc}") from exc

        subject = claims.get("sub")
        email = claims.get("email")
        if not subject or not email:
            raise AuthError("Sign-in token has no subject or email claim.")
        if claims.get("email_verified") is False:
            raise AuthError(f"Email {email} is not verified with Google.")
        return Identity(subject=str(subject), email=str(email))

    def sign_out(self, identity: Identity) -> None:
        # ID tokens are stateless; the client drops its copy and the session is torn down.
        logger.debug("Signed out %s", identity.subject)
