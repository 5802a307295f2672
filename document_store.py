"""Document storage backends: in-memory for local play, Appwrite for remote."""

from __future__ import annotations

import copy
import itertools
import logging
import secrets
import threading
import time
from datetime import datetime, timezone

from appwrite_client import AppwriteDocumentStore
from change_feed import CREATED, DELETED, UPDATED, ChangeEvent, ChangeFeed
from game_config import AppConfig
from game_errors import ConflictError, DocumentNotFound, SchemaError
from game_models import UNIQUE_ID

logger = logging.getLogger(__name__)


class InMemoryDocumentStore:
    """Process-local document store with Appwrite-like semantics.

    ``schema`` optionally maps a collection name to its known attribute names;
    writes carrying any other attribute are rejected with the same
    "Unknown attribute" error the hosted backend returns. Every mutation is
    published on ``feed`` after the store lock is released.
    """

    def __init__(
        self,
        *,
        feed: ChangeFeed | None = None,
        schema: dict[str, set[str]] | None = None,
        clock=time.time,
    ):
        self.feed = feed if feed is not None else ChangeFeed()
        self.schema = {name: set(attrs) for name, attrs in (schema or {}).items()}
        self._clock = clock
        self._lock = threading.Lock()
        self._documents: dict[str, dict[str, dict]] = {}
        self._sequence = itertools.count(1)
        self._order: dict[tuple[str, str], int] = {}
        self._last_tick = 0.0

    def create(self, collection: str, document_id: str | None, fields: dict) -> dict:
        self._check_schema(collection, fields)
        with self._lock:
            bucket = self._documents.setdefault(collection, {})
            doc_id = document_id
            if not doc_id or doc_id == UNIQUE_ID:
                doc_id = self._new_id()
            if doc_id in bucket:
                raise ConflictError("Document with the requested ID already exists.")
            stamp = self._timestamp()
            record = copy.deepcopy(dict(fields))
            record.update(
                {
                    "$id": doc_id,
                    "$collectionId": collection,
                    "$createdAt": stamp,
                    "$updatedAt": stamp,
                }
            )
            bucket[doc_id] = record
            self._order[(collection, doc_id)] = next(self._sequence)
            snapshot = copy.deepcopy(record)

        self.feed.publish(ChangeEvent(CREATED, collection, copy.deepcopy(snapshot)))
        return snapshot

    def get(self, collection: str, document_id: str) -> dict | None:
        with self._lock:
            record = self._documents.get(collection, {}).get(document_id)
            return copy.deepcopy(record) if record else None

    def update(self, collection: str, document_id: str, fields: dict) -> dict:
        self._check_schema(collection, fields)
        with self._lock:
            record = self._documents.get(collection, {}).get(document_id)
            if record is None:
                raise DocumentNotFound("Document with the requested ID could not be found.")
            record.update(copy.deepcopy(dict(fields)))
            record["$updatedAt"] = self._timestamp()
            snapshot = copy.deepcopy(record)

        self.feed.publish(ChangeEvent(UPDATED, collection, copy.deepcopy(snapshot)))
        return snapshot

    def delete(self, collection: str, document_id: str) -> None:
        with self._lock:
            record = self._documents.get(collection, {}).pop(document_id, None)
            if record is None:
                raise DocumentNotFound("Document with the requested ID could not be found.")
            self._order.pop((collection, document_id), None)

        self.feed.publish(ChangeEvent(DELETED, collection, record))

    def list(self, collection: str, filters: dict | None = None) -> list[dict]:
        filters = filters or {}
        with self._lock:
            records = [
                record
                for record in self._documents.get(collection, {}).values()
                if all(record.get(key) == value for key, value in filters.items())
            ]
            records.sort(key=lambda r: self._order.get((collection, r["$id"]), 0))
            return copy.deepcopy(records)

    def _check_schema(self, collection: str, fields: dict) -> None:
        known = self.schema.get(collection)
        if known is None:
            return
        for key in fields:
            if key.startswith("$") or key in known:
                continue
            raise SchemaError(
                f'Invalid document structure: Unknown attribute: "{key}"',
                attribute=key,
            )

    def _timestamp(self) -> str:
        # Stamps must differ between writes so pollers can detect every change.
        self._last_tick = max(float(self._clock()), self._last_tick + 0.000001)
        return datetime.fromtimestamp(self._last_tick, tz=timezone.utc).isoformat(
            timespec="microseconds"
        )

    @staticmethod
    def _new_id() -> str:
        return secrets.token_hex(10)


def get_document_store(config: AppConfig):
    backend = config.backend
    if backend.standalone:
        logger.info("Document store: using in-memory backend")
        return InMemoryDocumentStore()

    store = AppwriteDocumentStore(
        endpoint=backend.endpoint,
        project_id=backend.project_id,
        database_id=backend.database_id,
        api_key=backend.api_key or None,
    )
    logger.info("Document store: using Appwrite at %s", store.endpoint)
    return store
