"""Write and subscription gateway over a DocumentStore and ChangeFeed."""

from __future__ import annotations

import logging
from typing import Callable

from appwrite_client import parse_unknown_attribute
from change_feed import ChangeEvent
from game_errors import SchemaError, WriteRetriesExhausted
from game_models import UNIQUE_ID

logger = logging.getLogger(__name__)


class DocumentSyncGateway:
    """Tolerant writes plus a teardown registry for subscriptions.

    Writes rejected because the backend does not know one of the attributes are
    retried without that attribute, so extra fields are best-effort. Only that
    signal is retried; every other error reaches the caller untouched.
    """

    MAX_WRITE_ATTEMPTS = 3

    def __init__(self, store, feed, *, max_attempts: int = MAX_WRITE_ATTEMPTS):
        self.store = store
        self.feed = feed
        self.max_attempts = max(1, int(max_attempts))
        self.pruned_attributes: list[tuple[str, str]] = []
        self._subscriptions: list[tuple[str, Callable[[], None]]] = []

    # ------------------------
    # Writes
    # ------------------------

    def create_record(
        self, collection: str, fields: dict, document_id: str = UNIQUE_ID
    ) -> dict:
        return self._write(
            "create",
            collection,
            fields,
            lambda payload: self.store.create(collection, document_id, payload),
        )

    def update_record(self, collection: str, document_id: str, fields: dict) -> dict:
        return self._write(
            "update",
            collection,
            fields,
            lambda payload: self.store.update(collection, document_id, payload),
        )

    def _write(self, action: str, collection: str, fields: dict, send) -> dict:
        payload = dict(fields)
        for _ in range(self.max_attempts):
            try:
                return send(payload)
            except SchemaError as exc:
                attribute = exc.attribute or parse_unknown_attribute(str(exc))
                if not attribute or attribute not in payload:
                    raise
                payload.pop(attribute)
                self.pruned_attributes.append((collection, attribute))
                logger.warning(
                    "Backend rejected unknown attribute %r on %s %s; retrying without it.",
                    attribute,
                    action,
                    collection,
                )
        raise WriteRetriesExhausted(
            f"Unable to {action} {collection} record after {self.max_attempts} attempts."
        )

    # ------------------------
    # Reads
    # ------------------------

    def get_record(self, collection: str, document_id: str) -> dict | None:
        return self.store.get(collection, document_id)

    def list_records(self, collection: str, filters: dict | None = None) -> list[dict]:
        return self.store.list(collection, filters)

    def delete_record(self, collection: str, document_id: str) -> None:
        self.store.delete(collection, document_id)

    # ------------------------
    # Subscriptions
    # ------------------------

    def subscribe(
        self, topic: str, callback: Callable[[ChangeEvent], None]
    ) -> Callable[[], None]:
        unsubscribe = self.feed.subscribe(topic, callback)
        self._subscriptions.append((topic, unsubscribe))
        logger.info("Subscribed to %s", topic)
        return unsubscribe

    @property
    def active_subscriptions(self) -> list[str]:
        return [topic for topic, _ in self._subscriptions]

    def close_subscriptions(self) -> int:
        subscriptions, self._subscriptions = self._subscriptions, []
        for topic, unsubscribe in subscriptions:
            try:
                unsubscribe()
            except Exception as exc:
                logger.error("Error cleaning up subscription %s: %s", topic, exc)
        return len(subscriptions)
