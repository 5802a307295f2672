from __future__ import annotations

import logging
import re
import secrets
import threading
import time
from typing import Callable

from werkzeug.security import check_password_hash, generate_password_hash

from game_errors import AuthError, NoSessionError, ValidationError
from game_models import Identity

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
SIGN_IN_ATTEMPTS = 3
SIGN_IN_RETRY_DELAY_SECONDS = 1.0


def validate_registration(name: str, email: str, password: str) -> tuple[str, str]:
    name = re.sub(r"\s+", " ", str(name or "")).strip()
    email = str(email or "").strip()
    if not name or not email or not password:
        raise ValidationError("Please fill all fields.")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
        )
    return name, email


def validate_login(email: str, password: str) -> str:
    email = str(email or "").strip()
    if not email or not password:
        raise ValidationError("Please fill all fields.")
    return email


def register_and_sign_in(
    auth,
    *,
    name: str,
    email: str,
    password: str,
    attempts: int = SIGN_IN_ATTEMPTS,
    delay_seconds: float = SIGN_IN_RETRY_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> Identity | None:
    """Register, then sign in with a few retries.

    Returns None when the account was created but every sign-in attempt failed;
    the caller should ask the user to log in manually.
    """
    name, email = validate_registration(name, email, password)
    auth.sign_up(email, password, name)

    for attempt in range(1, attempts + 1):
        try:
            return auth.sign_in(email, password)
        except AuthError as exc:
            logger.warning(
                "Sign-in after registration failed (attempt %s/%s): %s",
                attempt,
                attempts,
                exc,
            )
            if attempt < attempts:
                sleep(delay_seconds)
    return None


class LocalAccounts:
    """Account directory shared by every in-memory auth session."""

    def __init__(self):
        self._lock = threading.Lock()
        self._users: dict[str, dict] = {}

    def add(self, email: str, password: str, name: str) -> Identity:
        key = email.strip().lower()
        with self._lock:
            if key in self._users:
                raise AuthError("User with this email already exists.", 409)
            user = {
                "id": secrets.token_hex(10),
                "name": name,
                "email": email,
                "password_hash": generate_password_hash(password),
            }
            self._users[key] = user
        return Identity(user_id=user["id"], name=name or email)

    def verify(self, email: str, password: str) -> Identity | None:
        with self._lock:
            user = self._users.get(email.strip().lower())
        if not user or not check_password_hash(user["password_hash"], password):
            return None
        return Identity(user_id=user["id"], name=user["name"] or user["email"])


class InMemoryAuthService:
    def __init__(self, accounts: LocalAccounts):
        self.accounts = accounts
        self._current: Identity | None = None

    def sign_up(self, email: str, password: str, name: str) -> Identity:
        return self.accounts.add(email, password, name)

    def sign_in(self, email: str, password: str) -> Identity:
        self._current = None
        identity = self.accounts.verify(email, password)
        if identity is None:
            raise AuthError("Login failed. Please check your credentials.")
        self._current = identity
        return identity

    def current_identity(self) -> Identity:
        if self._current is None:
            raise NoSessionError("No active session.")
        return self._current

    def sign_out(self) -> None:
        self._current = None
