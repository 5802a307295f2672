import random
import sys
from dataclasses import replace
from pathlib import Path

import pytest
from flask import Flask

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app import create_app
from document_store import InMemoryDocumentStore
from game_config import AppConfig, GameSettings
from game_models import Identity
from game_services import GameServices


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def make_services(store, clock):
    def _make(*, vote_ledger: bool = False, **settings_overrides) -> GameServices:
        config = AppConfig(
            settings=replace(GameSettings(), **settings_overrides),
            vote_ledger=vote_ledger,
            secret_key="test-secret",
        )
        return GameServices(
            Flask(__name__),
            config,
            store=store,
            clock=clock,
            rng=random.Random(7),
            sign_in_delay_seconds=0,
        )

    return _make


@pytest.fixture
def game_services(make_services):
    return make_services()


@pytest.fixture
def make_player(game_services):
    def _make(name: str, services: GameServices | None = None):
        owner = services or game_services
        machine, _feed = owner.build_machine(
            Identity(user_id=f"user-{name.lower()}", name=name)
        )
        return machine

    return _make


@pytest.fixture
def lobby(make_player):
    """A waiting game with Alice hosting and Bob joined, both prompts submitted."""
    host = make_player("Alice")
    guest = make_player("Bob")
    game = host.create_game()
    guest.join_game(game.code)
    host.submit_prompt("The worst thing to hear from a pilot is ___")
    guest.submit_prompt("My secret talent is ___")
    return host, guest


@pytest.fixture
def app_ctx(tmp_path, store):
    config = AppConfig(secret_key="test-secret")
    app = create_app(config, store=store, log_file=str(tmp_path / "app.log"))
    app.config["TESTING"] = True
    services = app.extensions["game_services"]
    services.sign_in_delay_seconds = 0
    return {"app": app, "services": services, "store": store}


@pytest.fixture
def app(app_ctx):
    return app_ctx["app"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app_ctx):
    return app_ctx["services"]
