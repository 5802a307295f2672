"""Head-to-head answer voting and score tallies."""

from __future__ import annotations

import logging
import random
from collections import Counter
from typing import Iterable

from game_errors import (
    AlreadyVotedError,
    DocumentNotFound,
    GameError,
    RemoteError,
    SelfVoteError,
    ValidationError,
)
from game_models import Answer, Game, ScoreLine, VoteOption, VotePair
from player_roster import dedupe, parse_entry

logger = logging.getLogger(__name__)

SELF_OPTION_ID = "self"
SKIP_OPTION_ID = "skip"
SKIP_PLAYER_ID = "dummy"
SKIP_TEXT = "Randomly skipped"


def skip_option() -> VoteOption:
    return VoteOption(
        answer_id=SKIP_OPTION_ID, player_id=SKIP_PLAYER_ID, text=SKIP_TEXT, votable=False
    )


def pair_answers(
    answers: Iterable[Answer],
    self_answer: Answer,
    rng: random.Random | None = None,
) -> list[VotePair]:
    """Shuffle every other player's answer plus the voter's own, two per pair.

    The voter's answer is shown but cannot be voted for. An odd leftover is
    matched against a skip placeholder that cannot be voted for either.
    """
    rng = rng or random.Random()
    candidates = [
        VoteOption(
            answer_id=answer.id,
            player_id=answer.player_id,
            text=answer.text,
            votes=answer.votes,
        )
        for answer in answers
        if answer.player_id != self_answer.player_id
    ]
    candidates.append(
        VoteOption(
            answer_id=SELF_OPTION_ID,
            player_id=self_answer.player_id,
            text=self_answer.text,
            votable=False,
        )
    )
    rng.shuffle(candidates)

    pairs: list[VotePair] = []
    for index in range(0, len(candidates), 2):
        first = candidates[index]
        second = candidates[index + 1] if index + 1 < len(candidates) else skip_option()
        pairs.append(VotePair(first=first, second=second))
    return pairs


class VotingEngine:
    MODE_COUNTER = "counter"
    MODE_LEDGER = "ledger"

    def __init__(
        self,
        gateway,
        *,
        answers_collection: str,
        votes_collection: str = "votes",
        ledger: bool = False,
        rng: random.Random | None = None,
    ):
        self.gateway = gateway
        self.answers_collection = answers_collection
        self.votes_collection = votes_collection
        self.mode = self.MODE_LEDGER if ledger else self.MODE_COUNTER
        self.rng = rng or random.Random()
        self.game_id = ""
        self.round_number = 1
        self.has_voted = False

    def start_round(self, round_number: int, game_id: str = "") -> None:
        self.round_number = round_number
        if game_id:
            self.game_id = game_id
        self.has_voted = False

    def reset(self) -> None:
        self.game_id = ""
        self.round_number = 1
        self.has_voted = False

    def pair_answers(self, answers: Iterable[Answer], self_answer: Answer) -> list[VotePair]:
        return pair_answers(answers, self_answer, self.rng)

    def cast_vote(self, answer_id: str, answer_owner_id: str, voter_id: str) -> None:
        if self.has_voted:
            raise AlreadyVotedError("You've already voted this round!")
        if answer_id == SELF_OPTION_ID or answer_owner_id == voter_id:
            raise SelfVoteError("You can't vote for your own answer!")
        if not answer_id or answer_id == SKIP_OPTION_ID:
            raise ValidationError("That option cannot receive a vote.")

        self.has_voted = True
        try:
            if self.mode == self.MODE_LEDGER:
                self._append_vote(answer_id, answer_owner_id, voter_id)
            else:
                self._increment_votes(answer_id)
        except GameError as exc:
            self.has_voted = False
            logger.error("Failed to record vote for answer %s: %s", answer_id, exc)
            raise RemoteError("Failed to record vote. Please try again.") from exc
        logger.info("Vote recorded by %s for answer %s", voter_id, answer_id)

    def _increment_votes(self, answer_id: str) -> int:
        # Read-increment-write: concurrent voters can overwrite each other's
        # increment. Ledger mode does not have this problem.
        record = self.gateway.get_record(self.answers_collection, answer_id)
        if record is None:
            raise DocumentNotFound("Answer not found.")
        votes = int(record.get("votes") or 0) + 1
        self.gateway.update_record(self.answers_collection, answer_id, {"votes": votes})
        return votes

    def _append_vote(self, answer_id: str, answer_owner_id: str, voter_id: str) -> None:
        self.gateway.create_record(
            self.votes_collection,
            {
                "gameId": self.game_id,
                "answerId": answer_id,
                "answerOwnerId": answer_owner_id,
                "voterId": voter_id,
                "round": self.round_number,
            },
        )

    def tally_scores(self, game: Game) -> list[ScoreLine]:
        totals: Counter = Counter()
        if self.mode == self.MODE_LEDGER:
            for row in self.gateway.list_records(self.votes_collection, {"gameId": game.id}):
                totals[str(row.get("answerOwnerId") or "")] += 1
        else:
            for record in self.gateway.list_records(
                self.answers_collection, {"gameId": game.id}
            ):
                answer = Answer.from_record(record)
                totals[answer.player_id] += answer.votes

        lines = []
        for entry in dedupe(game.players):
            player_id, name = parse_entry(entry)
            lines.append(ScoreLine(player_id=player_id, name=name, points=totals[player_id]))
        return sorted(lines, key=lambda line: -line.points)
