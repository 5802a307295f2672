from __future__ import annotations

import logging
import os
import random
import secrets
import threading
import time as timelib
from contextlib import contextmanager
from dataclasses import dataclass

from flask import session

from appwrite_client import AppwriteAuthService
from auth_service import (
    InMemoryAuthService,
    LocalAccounts,
    register_and_sign_in,
    validate_login,
)
from change_feed import PollingChangeFeed
from countdown_timers import CountdownTimers
from document_store import InMemoryDocumentStore, get_document_store
from game_config import AppConfig, validate_runtime_config
from game_errors import AuthError, GameError, NoSessionError
from game_models import Identity
from player_roster import PlayerRoster
from presence import PresenceReconciler
from prompt_pool import PromptPool
from round_machine import RoundStateMachine, SessionContext
from sync_gateway import DocumentSyncGateway
from voting_engine import VotingEngine


class MaxSizeFileHandler(logging.FileHandler):
    def __init__(self, filename: str, max_bytes: int, **kwargs):
        self.max_bytes = max_bytes
        super().__init__(filename, **kwargs)

    def emit(self, record):
        try:
            if os.path.exists(self.baseFilename):
                if os.path.getsize(self.baseFilename) >= self.max_bytes:
                    return
            super().emit(record)
        except Exception:
            self.handleError(record)


@dataclass
class ClientSession:
    """One browser session: its auth handle and, once signed in, its game client."""

    token: str
    auth: object
    lock: threading.RLock
    machine: RoundStateMachine | None = None
    feed: object | None = None
    created_at: float = 0.0
    last_seen_at: float = 0.0


class GameServices:
    STALE_SESSION_SECONDS = 12 * 60 * 60

    def __init__(
        self,
        app,
        config: AppConfig,
        *,
        store=None,
        accounts: LocalAccounts | None = None,
        clock=timelib.monotonic,
        rng: random.Random | None = None,
        sign_in_delay_seconds: float = 1.0,
    ):
        self.app = app
        self.config = config
        self.store = store if store is not None else get_document_store(config)
        self.accounts = accounts or LocalAccounts()
        self.clock = clock
        self.rng = rng or random.Random()
        self.sign_in_delay_seconds = sign_in_delay_seconds

        # In-memory stores push every write to every client synchronously, so
        # all clients share one lock. Polled clients only touch their own state.
        self.local = isinstance(self.store, InMemoryDocumentStore)
        self._shared_lock = threading.RLock()
        self._sessions_lock = threading.Lock()
        self._sessions: dict[str, ClientSession] = {}
        self._tick_lock = threading.Lock()
        self._last_tick_all_at = float("-inf")
        self.tick_interval_seconds = 1.0

        self.metrics_lock = threading.Lock()
        self.runtime_metrics: dict[str, int] = {
            "sessions_started": 0,
            "sessions_ended": 0,
            "sessions_expired": 0,
            "registrations": 0,
            "login_failed": 0,
            "games_created": 0,
            "games_joined": 0,
            "games_started": 0,
            "prompts_submitted": 0,
            "answers_submitted": 0,
            "votes_cast": 0,
            "rounds_advanced": 0,
            "timers_fired": 0,
            "feed_poll_errors": 0,
            "orphans_deleted": 0,
            "orphans_reset": 0,
            "hosts_backfilled": 0,
        }

    # ------------------------
    # Runtime validation + metrics
    # ------------------------

    def validate_runtime_config(self) -> list[str]:
        warnings = validate_runtime_config(self.config)
        if warnings:
            for warning in warnings:
                self.app.logger.warning("Config warning: %s", warning)
        else:
            self.app.logger.info("Runtime configuration checks passed.")
        return warnings

    def increment_metric(self, name: str, amount: int = 1) -> None:
        if amount <= 0:
            return
        with self.metrics_lock:
            self.runtime_metrics[name] = self.runtime_metrics.get(name, 0) + amount

    def get_runtime_metrics(self) -> dict:
        with self.metrics_lock:
            snapshot = dict(self.runtime_metrics)
        with self._sessions_lock:
            sessions = list(self._sessions.values())
        machines = [s.machine for s in sessions if s.machine is not None]
        snapshot["active_sessions"] = len(sessions)
        snapshot["signed_in_sessions"] = len(machines)
        snapshot["open_subscriptions"] = sum(
            len(m.gateway.active_subscriptions) for m in machines
        )
        snapshot["attributes_pruned"] = sum(
            len(m.gateway.pruned_attributes) for m in machines
        )
        snapshot["backend"] = "memory" if self.local else "appwrite"
        snapshot["vote_mode"] = "ledger" if self.config.vote_ledger else "counter"
        return snapshot

    # ------------------------
    # Sessions
    # ------------------------

    @staticmethod
    def get_client_token() -> str:
        token = session.get("client_token")
        if not token:
            token = secrets.token_urlsafe(24)
            session["client_token"] = token
        return token

    def _new_auth(self):
        if self.local:
            return InMemoryAuthService(self.accounts)
        backend = self.config.backend
        return AppwriteAuthService(endpoint=backend.endpoint, project_id=backend.project_id)

    def get_session(self, token: str) -> ClientSession:
        with self._sessions_lock:
            now = self.clock()
            client = self._sessions.get(token)
            if client is None:
                client = ClientSession(
                    token=token,
                    auth=self._new_auth(),
                    lock=self._shared_lock if self.local else threading.RLock(),
                    created_at=now,
                )
                self._sessions[token] = client
            client.last_seen_at = now
            return client

    def find_session(self, token: str) -> ClientSession | None:
        """Look up an existing session without registering a new one."""
        with self._sessions_lock:
            client = self._sessions.get(token)
            if client is not None:
                client.last_seen_at = self.clock()
            return client

    def _cleanup_stale_sessions(self) -> int:
        cutoff = self.clock() - self.STALE_SESSION_SECONDS
        with self._sessions_lock:
            stale = [c for c in self._sessions.values() if c.last_seen_at < cutoff]
            for client in stale:
                del self._sessions[client.token]

        for client in stale:
            with client.lock:
                if client.machine is not None:
                    client.machine.reset()
                    client.machine = None
                try:
                    client.auth.sign_out()
                except GameError as exc:
                    self.app.logger.warning("Sign-out of expired session failed: %s", exc)
        if stale:
            self.increment_metric("sessions_expired", len(stale))
            self.app.logger.info("Expired %s idle session(s)", len(stale))
        return len(stale)

    def build_machine(self, identity: Identity) -> tuple[RoundStateMachine, object]:
        collections = self.config.backend.collections
        settings = self.config.settings
        if self.local:
            feed = self.store.feed
        else:
            feed = PollingChangeFeed(
                self.store,
                interval_seconds=self.config.feed_poll_interval_seconds,
                clock=self.clock,
            )
        gateway = DocumentSyncGateway(self.store, feed)
        machine = RoundStateMachine(
            SessionContext(identity=identity),
            gateway,
            settings=settings,
            collections=collections,
            roster=PlayerRoster(gateway, collections.games),
            prompt_pool=PromptPool(
                gateway,
                prompts_collection=collections.prompts,
                games_collection=collections.games,
                max_length=settings.max_prompt_length,
                rng=self.rng,
            ),
            voting=VotingEngine(
                gateway,
                answers_collection=collections.answers,
                votes_collection=collections.votes,
                ledger=self.config.vote_ledger,
                rng=self.rng,
            ),
            presence=PresenceReconciler(gateway, collections.games),
            timers=CountdownTimers(clock=self.clock),
            rng=self.rng,
            debug=self.config.debug_mode,
        )
        return machine, feed

    def _start_client(self, client: ClientSession, identity: Identity) -> RoundStateMachine:
        if client.machine is not None:
            client.machine.reset()
        client.machine, client.feed = self.build_machine(identity)
        self.increment_metric("sessions_started")
        self.app.logger.info("Session started for %s", identity.user_id)
        self.sweep_orphans(client.machine)
        return client.machine

    def sweep_orphans(self, machine: RoundStateMachine) -> dict[str, int]:
        counts = machine.presence.sweep_orphans()
        self.increment_metric("orphans_deleted", counts["deleted"])
        self.increment_metric("orphans_reset", counts["reset"])
        self.increment_metric("hosts_backfilled", counts["hosts_backfilled"])
        return counts

    def register(self, token: str, *, name: str, email: str, password: str) -> Identity | None:
        client = self.get_session(token)
        with client.lock:
            identity = register_and_sign_in(
                client.auth,
                name=name,
                email=email,
                password=password,
                delay_seconds=self.sign_in_delay_seconds,
            )
            self.increment_metric("registrations")
            if identity is None:
                self.app.logger.warning("Registered %s but automatic sign-in failed", email)
                return None
            self._start_client(client, identity)
            return identity

    def login(self, token: str, *, email: str, password: str) -> Identity:
        client = self.get_session(token)
        with client.lock:
            email = validate_login(email, password)
            try:
                identity = client.auth.sign_in(email, password)
            except AuthError:
                self.increment_metric("login_failed")
                raise
            self._start_client(client, identity)
            return identity

    def resume(self, token: str) -> RoundStateMachine | None:
        """Return the session's game client, restoring it from a live backend session."""
        client = self.find_session(token)
        if client is None:
            return None
        with client.lock:
            if client.machine is not None:
                return client.machine
            try:
                identity = client.auth.current_identity()
            except AuthError:
                return None
            return self._start_client(client, identity)

    def logout(self, token: str) -> None:
        with self._sessions_lock:
            client = self._sessions.pop(token, None)
        if client is None:
            return
        with client.lock:
            if client.machine is not None:
                client.machine.reset()
                client.machine = None
            client.auth.sign_out()
        self.increment_metric("sessions_ended")
        self.app.logger.info("Session ended")

    def submit_global_prompt(self, token: str, text: str) -> str:
        client = self.find_session(token)
        if client is not None:
            with client.lock:
                if client.machine is not None:
                    return client.machine.submit_global_prompt(text)
        with self._shared_lock:
            collections = self.config.backend.collections
            pool = PromptPool(
                DocumentSyncGateway(self.store, None),
                prompts_collection=collections.prompts,
                games_collection=collections.games,
                max_length=self.config.settings.max_prompt_length,
            )
            return pool.submit_global_prompt(None, text).text

    @contextmanager
    def client(self, token: str):
        """Yield the signed-in game client for ``token`` under its session lock."""
        client = self.find_session(token)
        if client is None:
            raise NoSessionError("Please log in first.")
        with client.lock:
            if client.machine is None:
                raise NoSessionError("Please log in first.")
            self._tick_locked(client)
            yield client.machine

    # ------------------------
    # Cooperative scheduling
    # ------------------------

    def _tick_locked(self, client: ClientSession) -> list[str]:
        if isinstance(client.feed, PollingChangeFeed):
            try:
                client.feed.poll()
            except GameError as exc:
                self.increment_metric("feed_poll_errors")
                self.app.logger.warning("Change feed poll failed: %s", exc)
        fired = client.machine.tick()
        self.increment_metric("timers_fired", len(fired))
        return fired

    def tick(self, token: str) -> list[str]:
        client = self.find_session(token)
        if client is None:
            return []
        with client.lock:
            if client.machine is None:
                return []
            return self._tick_locked(client)

    def maybe_tick_all_opportunistically(self, force: bool = False) -> int:
        """Drive every session's timers and feed from live requests.

        Countdowns only fire when something ticks them, so expired rounds of idle
        players still advance while any other player is making requests. Sessions
        idle for longer than ``STALE_SESSION_SECONDS`` are closed on the same pass.
        """
        now = self.clock()
        with self._tick_lock:
            if not force and now - self._last_tick_all_at < self.tick_interval_seconds:
                return 0
            self._last_tick_all_at = now
        self._cleanup_stale_sessions()
        return self.tick_all()

    def tick_all(self) -> int:
        with self._sessions_lock:
            clients = list(self._sessions.values())
        fired = 0
        for client in clients:
            with client.lock:
                if client.machine is not None:
                    fired += len(self._tick_locked(client))
        return fired

    # ------------------------
    # Logging + request hooks
    # ------------------------

    def configure_logging(self, log_file: str | None = "app.log") -> None:
        formatter = logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s")
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(formatter)

        self.app.logger.handlers.clear()
        self.app.logger.setLevel(logging.INFO)
        self.app.logger.propagate = False
        self.app.logger.addHandler(console_handler)
        if log_file:
            file_handler = MaxSizeFileHandler(log_file, max_bytes=2 * 1024 * 1024)
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(formatter)
            self.app.logger.addHandler(file_handler)
        logging.getLogger("werkzeug").setLevel(logging.ERROR)
        self.app.logger.info("Logging initialised")
