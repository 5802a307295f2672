from __future__ import annotations

import logging
import random
import re
import string
from typing import Iterable

from game_models import Game, Identity

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.digits + string.ascii_uppercase
CODE_LENGTH = 4
MAX_NAME_LENGTH = 28


def parse_entry(entry: str) -> tuple[str, str]:
    player_id, _, name = str(entry).partition(":")
    return player_id, name or player_id


def format_entry(player_id: str, name: str) -> str:
    return f"{player_id}:{name}"


def entry_id(entry: str) -> str:
    return parse_entry(entry)[0]


def dedupe(entries: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for entry in entries or []:
        player_id = entry_id(entry)
        if player_id in seen:
            continue
        seen.add(player_id)
        out.append(entry)
    return out


def player_ids(game: Game) -> list[str]:
    return [entry_id(entry) for entry in dedupe(game.players)]


def resolve_host(game: Game) -> str:
    if game.host_id:
        return game.host_id
    if game.players:
        return entry_id(game.players[0])
    return ""


def display_name(game: Game, player_id: str) -> str:
    for entry in game.players:
        entry_player_id, name = parse_entry(entry)
        if entry_player_id == player_id:
            return name
    return player_id


def host_display_name(game: Game) -> str:
    host_id = resolve_host(game)
    return display_name(game, host_id) if host_id else ""


def sanitize_display_name(name: str) -> str:
    collapsed = re.sub(r"\s+", " ", str(name or "")).strip()
    if not collapsed:
        return "Player"
    return collapsed[:MAX_NAME_LENGTH]


def normalize_code(code: str) -> str:
    if not code:
        return ""
    return re.sub(r"[^A-Z0-9]", "", str(code).upper())[:CODE_LENGTH]


def new_game_code(rng: random.Random | None = None) -> str:
    rng = rng or random
    return "".join(rng.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


class PlayerRoster:
    """Persists roster changes for a game document."""

    def __init__(self, gateway, games_collection: str):
        self.gateway = gateway
        self.games_collection = games_collection

    def join(self, game: Game, identity: Identity) -> Game:
        if identity.user_id in player_ids(game):
            return game

        # Two tabs can join concurrently and double-insert before either
        # write is observed, so the list is re-deduped on every write.
        players = dedupe(
            [*game.players, format_entry(identity.user_id, sanitize_display_name(identity.name))]
        )
        record = self.gateway.update_record(
            self.games_collection, game.id, {"players": players}
        )
        logger.info("Player %s joined game %s", identity.user_id, game.code or game.id)
        return Game.from_record(record)
