"""Authentication state, guest session identity and local persistence."""

import json
import logging
import os
import random
import string
import time
from pathlib import Path
from typing import Any, Optional

from .errors import CartIntegrityError
from .models import Cart, SessionData, SessionIdentity, User

logger = logging.getLogger(__name__)

_SESSION_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def generate_session_id() -> str:
    """Build a guest cart-correlation key: epoch millis plus a random suffix."""
    suffix = "".join(random.choices(_SESSION_SUFFIX_ALPHABET, k=9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


class AuthManager:
    """Manages authentication state and session persistence."""

    def __init__(self, session_file: Optional[str] = None) -> None:
        """
        Initialize the authentication manager.

        Args:
            session_file: Path to store session data. Defaults to ~/.techstore_session.json
        """
        if session_file is None:
            session_file = str(Path.home() / ".techstore_session.json")
        self.session_file = session_file
        self.session: SessionData = self._load_session()

    def _load_session(self) -> SessionData:
        """Load session data from file if it exists."""
        if os.path.exists(self.session_file):
            try:
                with open(self.session_file, "r") as f:
                    data = json.load(f)
                    return SessionData(**data)
            except (json.JSONDecodeError, ValueError, CartIntegrityError) as e:
                # If file is corrupted, start fresh
                logger.warning(f"Could not load session from {self.session_file}: {e}")
        return SessionData()

    def _save_session(self) -> None:
        """Save session data to file."""
        with open(self.session_file, "w") as f:
            json.dump(self.session.model_dump(mode="json"), f, indent=2)
        # Set restrictive permissions on session file
        os.chmod(self.session_file, 0o600)

    def get_or_create_session_id(self) -> str:
        """
        Return the persisted guest session ID, generating it on first use.

        The value only correlates a guest cart on the server; it is not a credential.
        """
        if not self.session.session_id:
            self.session.session_id = generate_session_id()
            self._save_session()
            logger.info(f"Generated guest session {self.session.session_id}")
        return self.session.session_id

    @property
    def session_id(self) -> Optional[str]:
        return self.session.session_id

    @property
    def token(self) -> Optional[str]:
        return self.session.token

    @property
    def user(self) -> Optional[User]:
        return self.session.user

    def is_authenticated(self) -> bool:
        """Check if there's an active authenticated session."""
        return bool(self.session.token) and self.session.user is not None

    @property
    def identity(self) -> SessionIdentity:
        if self.is_authenticated():
            return SessionIdentity(user_id=self.session.user.id)
        return SessionIdentity(session_id=self.get_or_create_session_id())

    def save_auth(self, token: str, user: Optional[User] = None) -> None:
        """
        Save authentication session.

        Args:
            token: Bearer token from login, registration or guest checkout
            user: User returned with the token, if the response carried one
        """
        self.session.token = token
        self.session.user = user
        self._save_session()
        logger.info(f"Token saved for {user.email if user else 'unknown user'}")

    def update_user(self, **fields: Any) -> Optional[User]:
        """Merge profile fields into the cached user."""
        if self.session.user is None:
            return None
        self.session.user = User.model_validate({**self.session.user.model_dump(), **fields})
        self._save_session()
        return self.session.user

    def clear_auth(self) -> None:
        """Forget the token and cached user, keeping the guest session ID."""
        self.session.token = None
        self.session.user = None
        self._save_session()

    def save_cart(self, cart: Cart) -> None:
        self.session.cart = cart
        self._save_session()

    def load_cart(self) -> Optional[Cart]:
        return self.session.cart

    def clear_session(self) -> None:
        """Clear the current session."""
        self.session = SessionData()
        if os.path.exists(self.session_file):
            os.remove(self.session_file)
