"""Push-style change notification for shared documents.

Topics are either a whole collection (``"answers"``) or a single document
(``"games/<id>"``, see :func:`document_topic`). Every event is delivered to the
subscribers of both the collection topic and the document topic.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from game_errors import GameError

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
DELETED = "deleted"

Callback = Callable[["ChangeEvent"], None]


@dataclass(frozen=True)
class ChangeEvent:
    kind: str
    collection: str
    record: dict

    @property
    def document_id(self) -> str:
        return str(self.record.get("$id", ""))


def document_topic(collection: str, document_id: str) -> str:
    return f"{collection}/{document_id}"


def split_topic(topic: str) -> tuple[str, str]:
    collection, _, document_id = topic.partition("/")
    return collection, document_id


class ChangeFeed:
    """In-process publish/subscribe feed."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subscribers: dict[str, dict[int, Callback]] = {}

    def subscribe(self, topic: str, callback: Callback) -> Callable[[], None]:
        with self._lock:
            handle = next(self._ids)
            self._subscribers.setdefault(topic, {})[handle] = callback

        def _unsubscribe() -> None:
            with self._lock:
                bucket = self._subscribers.get(topic)
                if not bucket:
                    return
                bucket.pop(handle, None)
                if not bucket:
                    self._subscribers.pop(topic, None)

        return _unsubscribe

    def topics(self) -> list[str]:
        with self._lock:
            return list(self._subscribers)

    def subscriber_count(self, topic: str | None = None) -> int:
        with self._lock:
            if topic is not None:
                return len(self._subscribers.get(topic, {}))
            return sum(len(bucket) for bucket in self._subscribers.values())

    def publish(self, event: ChangeEvent) -> int:
        topics = [event.collection]
        if event.document_id:
            topics.append(document_topic(event.collection, event.document_id))

        with self._lock:
            callbacks = [
                callback
                for topic in topics
                for callback in self._subscribers.get(topic, {}).values()
            ]

        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Change feed subscriber failed for %s %s/%s",
                    event.kind,
                    event.collection,
                    event.document_id,
                )
        return len(callbacks)


class PollingChangeFeed(ChangeFeed):
    """Feed that discovers changes by polling a DocumentStore.

    Each subscribed topic is re-read on :meth:`poll`; records whose
    ``$updatedAt`` stamp moved are published as updates, unseen records as
    creations. Records present when a topic is first subscribed are treated as
    already seen.
    """

    def __init__(self, store, *, interval_seconds: float = 1.0, clock=time.monotonic):
        super().__init__()
        self.store = store
        self.interval_seconds = max(0.0, float(interval_seconds))
        self._clock = clock
        self._last_poll_at: float | None = None
        self._seen: dict[tuple[str, str], str] = {}

    def subscribe(self, topic: str, callback: Callback) -> Callable[[], None]:
        unsubscribe = super().subscribe(topic, callback)
        try:
            for record in self._read_topic(topic):
                self._seen[self._key(topic, record)] = self._stamp(record)
        except GameError as exc:
            logger.warning("Unable to prime change feed topic %s: %s", topic, exc)
        return unsubscribe

    def poll(self, force: bool = False) -> int:
        now = self._clock()
        if (
            not force
            and self._last_poll_at is not None
            and now - self._last_poll_at < self.interval_seconds
        ):
            return 0
        self._last_poll_at = now

        events: list[ChangeEvent] = []
        for topic in self.topics():
            collection, _ = split_topic(topic)
            try:
                records = self._read_topic(topic)
            except GameError as exc:
                logger.warning("Change feed poll failed for %s: %s", topic, exc)
                continue
            for record in records:
                key = self._key(topic, record)
                stamp = self._stamp(record)
                previous = self._seen.get(key)
                if previous == stamp:
                    continue
                self._seen[key] = stamp
                kind = CREATED if previous is None else UPDATED
                events.append(ChangeEvent(kind=kind, collection=collection, record=record))

        for event in events:
            self.publish(event)
        return len(events)

    def _read_topic(self, topic: str) -> list[dict]:
        collection, document_id = split_topic(topic)
        if document_id:
            record = self.store.get(collection, document_id)
            return [record] if record else []
        return self.store.list(collection)

    @staticmethod
    def _key(topic: str, record: dict) -> tuple[str, str]:
        return split_topic(topic)[0], str(record.get("$id", ""))

    @staticmethod
    def _stamp(record: dict) -> str:
        return str(record.get("$updatedAt") or record.get("$createdAt") or "")
