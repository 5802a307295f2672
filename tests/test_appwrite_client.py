import json

import pytest
import requests

from appwrite_client import AppwriteAuthService, AppwriteDocumentStore, parse_unknown_attribute
from game_errors import (
    AuthError,
    NoSessionError,
    RemoteError,
    SchemaError,
    TransientBackendError,
    ValidationError,
)


class FakeResponse:
    def __init__(self, payload, status_code=200, cookies=None):
        self._payload = payload
        self.status_code = status_code
        self.cookies = cookies or {}

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


def _store():
    return AppwriteDocumentStore(
        endpoint="https://appwrite.example.com/v1/",
        project_id="jest",
        database_id="jestblank_db",
        api_key="secret-key",
    )


def test_parse_unknown_attribute_variants():
    assert parse_unknown_attribute('Invalid document structure: Unknown attribute: "round"') == "round"
    assert parse_unknown_attribute("Unknown attribute round") == "round"
    assert parse_unknown_attribute("Document not found") == ""


def test_create_document_request_shape(monkeypatch):
    captured = {}

    def fake_request(method, url, json=None, params=None, headers=None, cookies=None, timeout=10):
        captured.update(method=method, url=url, json=json, headers=headers, timeout=timeout)
        return FakeResponse({"$id": "doc1", **json["data"]}, status_code=201)

    monkeypatch.setattr("appwrite_client.requests.request", fake_request)

    record = _store().create("games", None, {"code": "ABCD"})

    assert record["$id"] == "doc1"
    assert captured["method"] == "POST"
    assert captured["url"] == (
        "https://appwrite.example.com/v1/databases/jestblank_db/collections/games/documents"
    )
    assert captured["json"] == {"documentId": "unique()", "data": {"code": "ABCD"}}
    assert captured["headers"]["X-Appwrite-Project"] == "jest"
    assert captured["headers"]["X-Appwrite-Key"] == "secret-key"


def test_list_documents_sends_json_queries(monkeypatch):
    captured = {}

    def fake_request(method, url, json=None, params=None, headers=None, cookies=None, timeout=10):
        captured["params"] = params
        return FakeResponse({"total": 1, "documents": [{"$id": "g1", "code": "ABCD"}]})

    monkeypatch.setattr("appwrite_client.requests.request", fake_request)

    records = _store().list("games", {"code": "ABCD"})

    assert records == [{"$id": "g1", "code": "ABCD"}]
    queries = [json.loads(q) for q in captured["params"]["queries[]"]]
    assert {"method": "equal", "attribute": "code", "values": ["ABCD"]} in queries
    assert {"method": "limit", "values": [100]} in queries


def test_update_uses_patch_and_missing_get_returns_none(monkeypatch):
    calls = []

    def fake_request(method, url, json=None, params=None, headers=None, cookies=None, timeout=10):
        calls.append((method, url, json))
        if method == "GET":
            return FakeResponse({"message": "Document with the requested ID could not be found."}, 404)
        return FakeResponse({"$id": "g1", **json["data"]})

    monkeypatch.setattr("appwrite_client.requests.request", fake_request)
    store = _store()

    assert store.update("games", "g1", {"status": "waiting"})["status"] == "waiting"
    assert store.get("games", "g1") is None
    assert calls[0][0] == "PATCH"
    assert calls[0][1].endswith("/collections/games/documents/g1")
    assert calls[0][2] == {"data": {"status": "waiting"}}


@pytest.mark.parametrize(
    "status, message, expected",
    [
        (400, 'Invalid document structure: Unknown attribute: "round"', SchemaError),
        (400, "Invalid query", ValidationError),
        (503, "Service unavailable", TransientBackendError),
        (429, "Too many requests", TransientBackendError),
        (418, "Teapot", RemoteError),
    ],
)
def test_error_mapping(monkeypatch, status, message, expected):
    monkeypatch.setattr(
        "appwrite_client.requests.request",
        lambda *args, **kwargs: FakeResponse({"message": message}, status),
    )
    with pytest.raises(expected):
        _store().create("answers", None, {"round": 1})


def test_unknown_attribute_error_carries_attribute(monkeypatch):
    monkeypatch.setattr(
        "appwrite_client.requests.request",
        lambda *args, **kwargs: FakeResponse(
            {"message": 'Invalid document structure: Unknown attribute: "round"'}, 400
        ),
    )
    with pytest.raises(SchemaError) as excinfo:
        _store().create("answers", None, {"round": 1})
    assert excinfo.value.attribute == "round"


def test_network_failure_is_transient(monkeypatch):
    def fake_request(*args, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr("appwrite_client.requests.request", fake_request)
    with pytest.raises(TransientBackendError):
        _store().list("games")


def test_sign_in_replaces_existing_session(monkeypatch):
    calls = []

    def fake_request(method, url, json=None, params=None, headers=None, cookies=None, timeout=10):
        calls.append((method, url.rsplit("/v1", 1)[1]))
        if method == "DELETE":
            return FakeResponse({"message": "No session"}, 401)
        if method == "POST":
            return FakeResponse({"$id": "s1"}, 201, cookies={"a_session_jest": "cookie"})
        return FakeResponse({"$id": "u1", "name": "", "email": "alice@example.com"})

    monkeypatch.setattr("appwrite_client.requests.request", fake_request)
    auth = AppwriteAuthService(endpoint="https://appwrite.example.com/v1", project_id="jest")

    identity = auth.sign_in("alice@example.com", "password123")

    assert identity.user_id == "u1"
    assert identity.name == "alice@example.com"
    assert calls == [
        ("DELETE", "/account/sessions/current"),
        ("POST", "/account/sessions/email"),
        ("GET", "/account"),
    ]
    assert auth.cookies.get("a_session_jest") == "cookie"


def test_sign_in_failure_message(monkeypatch):
    monkeypatch.setattr(
        "appwrite_client.requests.request",
        lambda *args, **kwargs: FakeResponse({"message": "Invalid credentials"}, 401),
    )
    auth = AppwriteAuthService(endpoint="https://appwrite.example.com/v1", project_id="jest")
    with pytest.raises(AuthError, match="Login failed. Please check your credentials."):
        auth.sign_in("alice@example.com", "wrong-password")


def test_sign_up_conflict_and_session_checks(monkeypatch):
    def fake_request(method, url, json=None, params=None, headers=None, cookies=None, timeout=10):
        if url.endswith("/account") and method == "POST":
            return FakeResponse({"message": "A user with the same id already exists"}, 409)
        if url.endswith("/account") and method == "GET":
            return FakeResponse({"message": "User (role: guests) missing scope (account)"}, 401)
        return FakeResponse(None, 204)

    monkeypatch.setattr("appwrite_client.requests.request", fake_request)
    auth = AppwriteAuthService(endpoint="https://appwrite.example.com/v1", project_id="jest")

    with pytest.raises(AuthError, match="User with this email already exists."):
        auth.sign_up("alice@example.com", "password123", "Alice")
    with pytest.raises(NoSessionError):
        auth.current_identity()
    auth.sign_out()
