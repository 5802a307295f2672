from __future__ import annotations

import logging
import random
from typing import Iterable

from game_errors import GameError, NoPromptsAvailable, ValidationError
from game_models import GLOBAL_POOL, Game, Identity, Prompt

logger = logging.getLogger(__name__)

ANONYMOUS_SUBMITTER = "anon"


def record_submission(game: Game, player_id: str) -> list[str]:
    submitted = list(game.submitted_prompts)
    if player_id not in submitted:
        submitted.append(player_id)
    return submitted


class PromptPool:
    def __init__(
        self,
        gateway,
        *,
        prompts_collection: str,
        games_collection: str,
        max_length: int = 500,
        rng: random.Random | None = None,
    ):
        self.gateway = gateway
        self.prompts_collection = prompts_collection
        self.games_collection = games_collection
        self.max_length = max_length
        self.rng = rng or random.Random()

    record_submission = staticmethod(record_submission)

    def _clean_text(self, text: str) -> str:
        cleaned = str(text or "").strip()
        if not cleaned:
            raise ValidationError("Type a prompt!")
        if len(cleaned) > self.max_length:
            raise ValidationError(
                f"Prompt is too long! Maximum {self.max_length} characters."
            )
        return cleaned

    def submit_prompt(self, game: Game, identity: Identity, text: str) -> tuple[Prompt, Game]:
        """Store a prompt for ``game`` and mark the player as having submitted."""
        cleaned = self._clean_text(text)
        record = self.gateway.create_record(
            self.prompts_collection,
            {"text": cleaned, "submittedBy": identity.user_id, "gameId": game.id},
        )
        prompt = Prompt.from_record(record)

        # Merge into the stored list, which other players may have extended.
        try:
            latest = self.gateway.get_record(self.games_collection, game.id)
        except GameError as exc:
            logger.warning("Unable to refresh game %s before prompt tracking: %s", game.id, exc)
            latest = None
        if latest:
            game = Game.from_record(latest)

        submitted = record_submission(game, identity.user_id)
        if submitted != game.submitted_prompts:
            game_record = self.gateway.update_record(
                self.games_collection, game.id, {"submittedPrompts": submitted}
            )
            game = Game.from_record(game_record)
        logger.info("Prompt submitted to game %s by %s", game.id, identity.user_id)
        return prompt, game

    def submit_global_prompt(self, identity: Identity | None, text: str) -> Prompt:
        cleaned = self._clean_text(text)
        record = self.gateway.create_record(
            self.prompts_collection,
            {
                "text": cleaned,
                "submittedBy": identity.user_id if identity else ANONYMOUS_SUBMITTER,
                "gameId": GLOBAL_POOL,
            },
        )
        return Prompt.from_record(record)

    def list_prompts(self, game_id: str) -> list[Prompt]:
        records = self.gateway.list_records(self.prompts_collection, {"gameId": game_id})
        return [Prompt.from_record(record) for record in records]

    def pick_prompt(self, game_id: str, excluding: Iterable[str] = ()) -> str:
        excluded = set(excluding or ())
        candidates = [
            prompt.text
            for prompt in self.list_prompts(game_id)
            if prompt.text and prompt.text not in excluded
        ]
        if not candidates:
            raise NoPromptsAvailable("No prompts available for this game.")
        return self.rng.choice(candidates)
