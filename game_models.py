from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

GAME_WAITING = "waiting"
GAME_IN_PROGRESS = "in-progress"
GLOBAL_POOL = "global"
UNIQUE_ID = "unique()"


def _as_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return [str(value)]


@dataclass(frozen=True)
class Identity:
    user_id: str
    name: str

    @property
    def entry(self) -> str:
        return f"{self.user_id}:{self.name}"


@dataclass
class Game:
    id: str
    code: str = ""
    host_id: str = ""
    players: list[str] = field(default_factory=list)
    status: str = GAME_WAITING
    submitted_prompts: list[str] = field(default_factory=list)
    current_prompt: str = ""
    updated_at: str = ""

    @classmethod
    def from_record(cls, record: dict) -> "Game":
        return cls(
            id=str(record.get("$id", "")),
            code=str(record.get("code") or ""),
            host_id=str(record.get("hostId") or ""),
            players=_as_list(record.get("players")),
            status=str(record.get("status") or GAME_WAITING),
            submitted_prompts=_as_list(record.get("submittedPrompts")),
            current_prompt=str(record.get("currentPrompt") or ""),
            updated_at=str(record.get("$updatedAt") or ""),
        )

    def to_fields(self) -> dict:
        return {
            "code": self.code,
            "hostId": self.host_id,
            "players": list(self.players),
            "status": self.status,
            "submittedPrompts": list(self.submitted_prompts),
            "currentPrompt": self.current_prompt,
        }

    @property
    def in_progress(self) -> bool:
        return self.status == GAME_IN_PROGRESS


@dataclass
class Prompt:
    id: str
    text: str
    submitted_by: str = ""
    game_id: str = GLOBAL_POOL

    @classmethod
    def from_record(cls, record: dict) -> "Prompt":
        return cls(
            id=str(record.get("$id", "")),
            text=str(record.get("text") or ""),
            submitted_by=str(record.get("submittedBy") or ""),
            game_id=str(record.get("gameId") or GLOBAL_POOL),
        )

    @property
    def is_global(self) -> bool:
        return self.game_id == GLOBAL_POOL


@dataclass
class Answer:
    id: str
    game_id: str
    player_id: str
    text: str
    votes: int = 0
    round_number: int | None = None

    @classmethod
    def from_record(cls, record: dict) -> "Answer":
        raw_round = record.get("round")
        try:
            round_number = int(raw_round) if raw_round is not None else None
        except (TypeError, ValueError):
            round_number = None
        try:
            votes = int(record.get("votes") or 0)
        except (TypeError, ValueError):
            votes = 0
        return cls(
            id=str(record.get("$id", "")),
            game_id=str(record.get("gameId") or ""),
            player_id=str(record.get("playerId") or ""),
            # The answer text lives in the historical "promptText" attribute.
            text=str(record.get("promptText") or ""),
            votes=votes,
            round_number=round_number,
        )


@dataclass
class VoteOption:
    answer_id: str
    player_id: str
    text: str
    votable: bool = True
    votes: int = 0


@dataclass
class VotePair:
    first: VoteOption
    second: VoteOption

    def options(self) -> tuple[VoteOption, VoteOption]:
        return self.first, self.second


@dataclass
class ScoreLine:
    player_id: str
    name: str
    points: int = 0
