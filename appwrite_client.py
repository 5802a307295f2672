"""Appwrite REST wrappers for documents and accounts."""

import json
import logging
import re
from typing import List, Optional
from urllib.parse import quote

import requests

from game_errors import (
    AuthError,
    ConflictError,
    DocumentNotFound,
    GameError,
    NoSessionError,
    RemoteError,
    SchemaError,
    TransientBackendError,
    ValidationError,
)
from game_models import UNIQUE_ID, Identity

logger = logging.getLogger(__name__)

UNKNOWN_ATTRIBUTE_RE = re.compile(r'Unknown attribute[:\s]*"?([^"\s]+)"?', re.IGNORECASE)
LIST_LIMIT = 100


def parse_unknown_attribute(message: str) -> str:
    match = UNKNOWN_ATTRIBUTE_RE.search(message or "")
    return match.group(1) if match else ""


class AppwriteHttp:
    """Shared request plumbing: headers, cookies and error mapping."""

    def __init__(
        self,
        endpoint: str,
        project_id: str,
        api_key: Optional[str] = None,
        timeout: float = 10,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.project_id = project_id
        self.api_key = api_key
        self.timeout = timeout
        self.cookies = requests.cookies.RequestsCookieJar()

    def _headers(self) -> dict:
        headers = {
            "Content-Type": "application/json",
            "X-Appwrite-Project": self.project_id,
            "X-Appwrite-Response-Format": "1.5.0",
        }
        if self.api_key:
            headers["X-Appwrite-Key"] = self.api_key
        return headers

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        url = self._url(path)
        if params:
            logger.info("Appwrite request: %s %s params=%s", method, url, params)
        else:
            logger.info("Appwrite request: %s %s", method, url)
        try:
            response = requests.request(
                method,
                url,
                json=payload,
                params=params,
                headers=self._headers(),
                cookies=self.cookies,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransientBackendError(f"Backend request failed: {exc}") from exc

        self.cookies.update(response.cookies)
        if response.status_code >= 400:
            raise self._error_from_response(response)
        if response.status_code == 204:
            return {}
        return response.json()

    @staticmethod
    def _error_from_response(response) -> GameError:
        status = int(response.status_code)
        try:
            body = response.json() or {}
        except ValueError:
            body = {}
        message = str(body.get("message") or f"HTTP {status}")

        attribute = parse_unknown_attribute(message)
        if attribute:
            return SchemaError(message, attribute=attribute)
        if status == 404:
            return DocumentNotFound(message)
        if status == 409:
            return ConflictError(message)
        if status in (401, 403):
            return AuthError(message, status)
        if status == 429 or status >= 500:
            return TransientBackendError(message)
        if status == 400:
            return ValidationError(message)
        return RemoteError(message)

    def _url(self, path: str) -> str:
        return f"{self.endpoint}/{path.lstrip('/')}"


class AppwriteDocumentStore(AppwriteHttp):
    """DocumentStore backed by the Appwrite Databases API."""

    def __init__(
        self,
        endpoint: str,
        project_id: str,
        database_id: str,
        api_key: Optional[str] = None,
        timeout: float = 10,
    ):
        super().__init__(endpoint, project_id, api_key=api_key, timeout=timeout)
        self.database_id = database_id

    def create(self, collection: str, document_id: Optional[str], fields: dict) -> dict:
        return self._request(
            "POST",
            self._documents_path(collection),
            {"documentId": document_id or UNIQUE_ID, "data": fields},
        )

    def get(self, collection: str, document_id: str) -> Optional[dict]:
        try:
            return self._request("GET", self._document_path(collection, document_id))
        except DocumentNotFound:
            return None

    def update(self, collection: str, document_id: str, fields: dict) -> dict:
        return self._request(
            "PATCH",
            self._document_path(collection, document_id),
            {"data": fields},
        )

    def delete(self, collection: str, document_id: str) -> None:
        self._request("DELETE", self._document_path(collection, document_id))

    def list(self, collection: str, filters: Optional[dict] = None) -> List[dict]:
        queries = [
            json.dumps({"method": "equal", "attribute": key, "values": [value]})
            for key, value in (filters or {}).items()
        ]
        # Newest first: pollers only ever see the first LIST_LIMIT documents.
        queries.append(json.dumps({"method": "orderDesc", "attribute": "$createdAt"}))
        queries.append(json.dumps({"method": "limit", "values": [LIST_LIMIT]}))
        payload = self._request(
            "GET", self._documents_path(collection), params={"queries[]": queries}
        )
        return list(payload.get("documents", []))

    def _documents_path(self, collection: str) -> str:
        return (
            f"/databases/{quote(self.database_id)}"
            f"/collections/{quote(collection)}/documents"
        )

    def _document_path(self, collection: str, document_id: str) -> str:
        return f"{self._documents_path(collection)}/{quote(document_id)}"


class AppwriteAuthService(AppwriteHttp):
    """AuthService backed by the Appwrite Account API (cookie session)."""

    def sign_up(self, email: str, password: str, name: str) -> Identity:
        try:
            user = self._request(
                "POST",
                "/account",
                {"userId": UNIQUE_ID, "email": email, "password": password, "name": name},
            )
        except ConflictError as exc:
            raise AuthError("User with this email already exists.", 409) from exc
        return self._identity_from_user(user)

    def sign_in(self, email: str, password: str) -> Identity:
        try:
            self._request("DELETE", "/account/sessions/current")
        except GameError:
            pass  # no session to replace

        try:
            self._request(
                "POST", "/account/sessions/email", {"email": email, "password": password}
            )
            user = self._request("GET", "/account")
        except GameError as exc:
            logger.warning("Appwrite sign-in failed for %s: %s", email, exc)
            raise AuthError("Login failed. Please check your credentials.") from exc
        return self._identity_from_user(user)

    def current_identity(self) -> Identity:
        try:
            user = self._request("GET", "/account")
        except (AuthError, DocumentNotFound) as exc:
            raise NoSessionError("No active session.") from exc
        return self._identity_from_user(user)

    def sign_out(self) -> None:
        try:
            self._request("DELETE", "/account/sessions/current")
        except GameError as exc:
            logger.warning("Appwrite sign-out failed: %s", exc)
        self.cookies.clear()

    @staticmethod
    def _identity_from_user(user: dict) -> Identity:
        return Identity(
            user_id=str(user.get("$id", "")),
            name=str(user.get("name") or user.get("email") or ""),
        )
