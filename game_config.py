"""Runtime configuration for the JestBlank client, read from the environment."""

from __future__ import annotations

import os
import re
import secrets
from dataclasses import dataclass, field
from typing import Mapping

DEFAULT_ENDPOINT = "https://nyc.cloud.appwrite.io/v1"
TRUE_VALUES = {"1", "true", "t", "yes", "y"}


@dataclass(frozen=True)
class Collections:
    games: str = "games"
    prompts: str = "prompts"
    answers: str = "answers"
    votes: str = "votes"


@dataclass(frozen=True)
class GameSettings:
    min_players: int = 2
    max_players: int = 8
    prompt_timer_seconds: int = 30
    voting_timer_seconds: int = 20
    rounds_per_game: int = 5
    max_prompt_length: int = 500
    max_answer_length: int = 500


@dataclass(frozen=True)
class BackendConfig:
    endpoint: str = DEFAULT_ENDPOINT
    project_id: str = "jest"
    database_id: str = "jestblank_db"
    api_key: str = ""
    standalone: bool = True
    collections: Collections = field(default_factory=Collections)


@dataclass(frozen=True)
class AppConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    settings: GameSettings = field(default_factory=GameSettings)
    vote_ledger: bool = False
    feed_poll_interval_seconds: float = 1.0
    debug_mode: bool = False
    show_debug_button: bool = False
    secret_key: str = ""
    host: str = "127.0.0.1"
    port: int = 8040
    is_prod: bool = False


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in TRUE_VALUES


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    try:
        return int(env.get(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    try:
        return float(env.get(name, default))
    except (TypeError, ValueError):
        return default


def _env_str(env: Mapping[str, str], name: str, default: str) -> str:
    value = (env.get(name) or "").strip()
    return value or default


def load_config(environ: Mapping[str, str] | None = None) -> AppConfig:
    """Build an AppConfig from environment variables (``os.environ`` by default)."""
    env = os.environ if environ is None else environ

    collections = Collections(
        games=_env_str(env, "GAMES_COLLECTION", "games"),
        prompts=_env_str(env, "PROMPTS_COLLECTION", "prompts"),
        answers=_env_str(env, "ANSWERS_COLLECTION", "answers"),
        votes=(env.get("VOTES_COLLECTION", "votes") or "").strip(),
    )
    backend = BackendConfig(
        endpoint=_env_str(env, "APPWRITE_ENDPOINT", DEFAULT_ENDPOINT).rstrip("/"),
        project_id=_env_str(env, "APPWRITE_PROJECT_ID", "jest"),
        database_id=_env_str(env, "APPWRITE_DATABASE_ID", "jestblank_db"),
        api_key=(env.get("APPWRITE_API_KEY") or "").strip(),
        standalone=_env_bool(env, "APP_STANDALONE", True),
        collections=collections,
    )
    settings = GameSettings(
        min_players=_env_int(env, "MIN_PLAYERS", 2),
        max_players=_env_int(env, "MAX_PLAYERS", 8),
        prompt_timer_seconds=_env_int(env, "PROMPT_TIMER_SECONDS", 30),
        voting_timer_seconds=_env_int(env, "VOTING_TIMER_SECONDS", 20),
        rounds_per_game=_env_int(env, "ROUNDS_PER_GAME", 5),
    )
    return AppConfig(
        backend=backend,
        settings=settings,
        vote_ledger=_env_bool(env, "VOTE_LEDGER", False),
        feed_poll_interval_seconds=_env_float(env, "FEED_POLL_INTERVAL_SECONDS", 1.0),
        debug_mode=_env_bool(env, "DEBUG_MODE", False),
        show_debug_button=_env_bool(env, "SHOW_DEBUG_BUTTON", False),
        secret_key=(env.get("SECRET_KEY") or "").strip() or secrets.token_hex(32),
        host=_env_str(env, "HOST", "127.0.0.1"),
        port=_env_int(env, "PORT", 8040),
        is_prod=_env_bool(env, "IS_PROD", False),
    )


def validate_runtime_config(config: AppConfig) -> list[str]:
    warnings: list[str] = []
    settings = config.settings

    if settings.min_players < 1:
        warnings.append("MIN_PLAYERS should be at least 1.")
    if settings.min_players > settings.max_players:
        warnings.append("MIN_PLAYERS is greater than MAX_PLAYERS; no game can start.")
    if settings.prompt_timer_seconds <= 0 or settings.voting_timer_seconds <= 0:
        warnings.append(
            "PROMPT_TIMER_SECONDS and VOTING_TIMER_SECONDS should be greater than 0."
        )
    if settings.rounds_per_game <= 0:
        warnings.append("ROUNDS_PER_GAME should be greater than 0.")

    backend = config.backend
    if not backend.standalone:
        if not re.match(r"^https?://", backend.endpoint or "", re.IGNORECASE):
            warnings.append("APPWRITE_ENDPOINT should start with http:// or https://.")
        if not backend.project_id:
            warnings.append("APPWRITE_PROJECT_ID is required when APP_STANDALONE is false.")

    if config.vote_ledger and not backend.collections.votes:
        warnings.append("VOTE_LEDGER is enabled but VOTES_COLLECTION is empty.")

    if config.feed_poll_interval_seconds < 0:
        warnings.append("FEED_POLL_INTERVAL_SECONDS should be 0 or greater.")

    return warnings
