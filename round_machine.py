"""Client-side game session state machine.

Every player runs one :class:`RoundStateMachine` over its own
:class:`SessionContext`. Machines never talk to each other: they write the
shared game and answer documents through the sync gateway and re-derive their
phase from whatever the change feed delivers.
"""

from __future__ import annotations

import logging
import random
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Iterable

from change_feed import CREATED, DELETED, UPDATED, ChangeEvent, document_topic
from countdown_timers import PROMPT_TIMER, VOTING_TIMER, CountdownTimers
from game_config import Collections, GameSettings
from game_errors import (
    GameError,
    GameNotFoundError,
    NoPromptsAvailable,
    NotHostError,
    StartGateError,
    StateConflictError,
    ValidationError,
)
from game_models import (
    GAME_IN_PROGRESS,
    GAME_WAITING,
    Answer,
    Game,
    Identity,
    ScoreLine,
    VoteOption,
    VotePair,
)
from player_roster import (
    PlayerRoster,
    display_name,
    format_entry,
    host_display_name,
    new_game_code,
    normalize_code,
    player_ids,
    resolve_host,
    sanitize_display_name,
)
from presence import PresenceReconciler
from prompt_pool import PromptPool
from voting_engine import VotingEngine

logger = logging.getLogger(__name__)

NO_ANSWER = "(No answer)"
MAX_NOTICES = 5


class Phase(str, Enum):
    LOBBY = "lobby"
    PROMPT_COLLECTION = "prompt_collection"
    ANSWERING = "answering"
    VOTING = "voting"
    SCORING = "scoring"
    GAME_END = "game_end"


WAITING_PHASES = (Phase.LOBBY, Phase.PROMPT_COLLECTION)


def lobby_phase(game: Game, settings: GameSettings) -> Phase:
    if len(player_ids(game)) < settings.min_players:
        return Phase.LOBBY
    return Phase.PROMPT_COLLECTION


def submitted_count(game: Game) -> int:
    return len(set(game.submitted_prompts) & set(player_ids(game)))


def start_gate_error(game: Game, settings: GameSettings) -> str:
    """Return why ``game`` cannot start yet, or an empty string."""
    count = len(player_ids(game))
    if count < settings.min_players:
        return f"Need at least {settings.min_players} players to start the game."
    if count > settings.max_players:
        return f"Too many players! Maximum is {settings.max_players}."
    if submitted_count(game) < count:
        return "All players must submit a prompt before starting the game."
    return ""


def ready_for_voting(answers: Iterable[Answer], players: Iterable[str]) -> bool:
    expected = set(players)
    if not expected:
        return False
    answered = {answer.player_id for answer in answers}
    return expected <= answered


@dataclass
class SessionContext:
    """Everything one client knows about its current game.

    Created at login, cleared by :meth:`reset` when the player starts over,
    discarded at logout.
    """

    identity: Identity
    game: Game | None = None
    phase: Phase = Phase.LOBBY
    round_number: int = 1
    round_prompt: str = ""
    used_prompts: set[str] = field(default_factory=set)
    answers: dict[int, dict[str, Answer]] = field(default_factory=dict)
    my_answer: Answer | None = None
    draft_answer: str = ""
    voting_started: bool = False
    pairs: list[VotePair] = field(default_factory=list)
    scores: list[ScoreLine] = field(default_factory=list)
    my_prompts: list[str] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)
    in_flight: set[str] = field(default_factory=set)

    def reset(self) -> None:
        fresh = SessionContext(identity=self.identity)
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(fresh, name))

    def round_answers(self) -> list[Answer]:
        return list(self.answers.get(self.round_number, {}).values())

    def notify(self, message: str) -> None:
        self.notices.append(message)
        del self.notices[:-MAX_NOTICES]


class RoundStateMachine:
    def __init__(
        self,
        context: SessionContext,
        gateway,
        *,
        settings: GameSettings,
        collections: Collections,
        roster: PlayerRoster,
        prompt_pool: PromptPool,
        voting: VotingEngine,
        presence: PresenceReconciler,
        timers: CountdownTimers | None = None,
        rng: random.Random | None = None,
        debug: bool = False,
    ):
        self.context = context
        self.gateway = gateway
        self.settings = settings
        self.collections = collections
        self.roster = roster
        self.prompt_pool = prompt_pool
        self.voting = voting
        self.presence = presence
        self.timers = timers or CountdownTimers()
        self.rng = rng or random.Random()
        self.debug = debug

    @property
    def identity(self) -> Identity:
        return self.context.identity

    @property
    def phase(self) -> Phase:
        return self.context.phase

    # ------------------------
    # Helpers
    # ------------------------

    @contextmanager
    def _transition(self, name: str):
        if name in self.context.in_flight:
            raise StateConflictError(f"The {name} request is already in progress.")
        self.context.in_flight.add(name)
        try:
            yield
        finally:
            self.context.in_flight.discard(name)

    def _require_game(self) -> Game:
        if self.context.game is None:
            raise StateConflictError("Join or create a game first.")
        return self.context.game

    def _adopt(self, game: Game) -> bool:
        current = self.context.game
        if (
            current is not None
            and current.id == game.id
            and game.updated_at
            and current.updated_at
            and game.updated_at < current.updated_at
        ):
            return False
        self.context.game = game
        return True

    # ------------------------
    # Lobby intents
    # ------------------------

    def create_game(self) -> Game:
        if self.context.game is not None:
            raise StateConflictError("You are already in a game.")
        identity = self.identity
        record = self.gateway.create_record(
            self.collections.games,
            {
                "code": new_game_code(self.rng),
                "players": [format_entry(identity.user_id, sanitize_display_name(identity.name))],
                "hostId": identity.user_id,
                "status": GAME_WAITING,
                "submittedPrompts": [],
            },
        )
        game = Game.from_record(record)
        logger.info("Game %s created by %s", game.code, identity.user_id)
        self._enter_game(game)
        return game

    def join_game(self, code: str) -> Game:
        if self.context.game is not None:
            raise StateConflictError("You are already in a game.")
        normalized = normalize_code(code)
        if not normalized:
            raise ValidationError("Enter a game code.")
        records = self.gateway.list_records(self.collections.games, {"code": normalized})
        if not records:
            raise GameNotFoundError("Game not found!")
        game = self.roster.join(Game.from_record(records[0]), self.identity)
        self._enter_game(game)
        return game

    def _enter_game(self, game: Game) -> None:
        self.context.game = game
        self.context.phase = lobby_phase(game, self.settings)
        self.voting.start_round(self.context.round_number, game.id)
        self.gateway.subscribe(
            document_topic(self.collections.games, game.id), self.on_game_event
        )
        self.gateway.subscribe(self.collections.answers, self.on_answer_event)
        if game.in_progress and game.current_prompt:
            self._enter_answering(game.current_prompt)

    def submit_prompt(self, text: str) -> Game:
        game = self._require_game()
        prompt, updated = self.prompt_pool.submit_prompt(game, self.identity, text)
        self.context.my_prompts.append(prompt.text)
        if self._adopt(updated) and self.context.phase in WAITING_PHASES:
            self.context.phase = lobby_phase(updated, self.settings)
        return self.context.game

    def submit_global_prompt(self, text: str) -> str:
        return self.prompt_pool.submit_global_prompt(self.identity, text).text

    def start_game(self) -> Game:
        game = self._require_game()
        with self._transition("start"):
            try:
                record = self.gateway.get_record(self.collections.games, game.id)
            except GameError as exc:
                logger.warning("Unable to refresh game %s before start: %s", game.id, exc)
                record = None
            if record:
                game = Game.from_record(record)
                self._adopt(game)

            if resolve_host(game) != self.identity.user_id:
                raise NotHostError("Only the host can start the game.")
            if game.status == GAME_IN_PROGRESS:
                raise StateConflictError("This game already started.")
            problem = start_gate_error(game, self.settings)
            if problem:
                raise StartGateError(problem)

            try:
                prompt = self.prompt_pool.pick_prompt(game.id)
            except NoPromptsAvailable as exc:
                raise NoPromptsAvailable(
                    "No prompts available! Each player must submit at least one prompt."
                ) from exc

            # Every client, this one included, enters the round when the
            # in-progress document arrives on the feed.
            record = self.gateway.update_record(
                self.collections.games,
                game.id,
                {"status": GAME_IN_PROGRESS, "currentPrompt": prompt},
            )
            logger.info("Game %s started by host %s", game.code, self.identity.user_id)
            return Game.from_record(record)

    # ------------------------
    # Feed handlers
    # ------------------------

    def on_game_event(self, event: ChangeEvent) -> None:
        if event.kind == DELETED:
            self.context.notify("This game was closed.")
            return
        if event.kind not in (CREATED, UPDATED):
            return

        game = Game.from_record(event.record)
        if not self._adopt(game):
            return
        self.presence.reconcile(game)
        if self.context.game is not game:
            # Reconciling wrote a newer document that was already handled.
            return
        self._apply_game(game)

    def _apply_game(self, game: Game) -> None:
        phase = self.context.phase
        if phase == Phase.GAME_END or not game.players:
            return

        if game.in_progress:
            if phase in WAITING_PHASES and game.current_prompt:
                self._enter_answering(game.current_prompt)
            elif (
                phase == Phase.SCORING
                and game.current_prompt
                and game.current_prompt != self.context.round_prompt
            ):
                self._begin_next_round(game.current_prompt)
            return

        if phase in WAITING_PHASES:
            self.context.phase = lobby_phase(game, self.settings)

    def on_answer_event(self, event: ChangeEvent) -> None:
        game = self.context.game
        if game is None or event.kind not in (CREATED, UPDATED):
            return
        answer = Answer.from_record(event.record)
        if answer.game_id != game.id:
            return

        round_number = answer.round_number or self.context.round_number
        bucket = self.context.answers.setdefault(round_number, {})
        if event.kind == CREATED:
            bucket.setdefault(answer.player_id, answer)
            self._maybe_start_voting()
            return

        known = bucket.get(answer.player_id)
        if known is None:
            bucket[answer.player_id] = answer
        elif known.id == answer.id:
            known.votes = answer.votes
        for pair in self.context.pairs:
            for option in pair.options():
                if option.answer_id == answer.id:
                    option.votes = answer.votes
        if self.context.phase == Phase.SCORING:
            self._refresh_scores(game)

    # ------------------------
    # Round flow
    # ------------------------

    def _enter_answering(self, prompt: str) -> None:
        game = self._require_game()
        ctx = self.context
        ctx.phase = Phase.ANSWERING
        ctx.round_prompt = prompt
        if prompt:
            ctx.used_prompts.add(prompt)
        ctx.my_answer = None
        ctx.draft_answer = ""
        ctx.voting_started = False
        ctx.pairs = []
        self.voting.start_round(ctx.round_number, game.id)
        self.timers.cancel(VOTING_TIMER)
        self.timers.start(
            PROMPT_TIMER, self.settings.prompt_timer_seconds, self._on_prompt_timeout
        )
        logger.info("Round %s answering: %s", ctx.round_number, prompt)
        self._maybe_start_voting()

    def _begin_next_round(self, prompt: str) -> None:
        next_round = self.context.round_number + 1
        if next_round > self.settings.rounds_per_game:
            self._end_game()
            return
        self.context.round_number = next_round
        self._enter_answering(prompt)

    def update_draft(self, text: str) -> None:
        self.context.draft_answer = str(text or "")

    def submit_answer(self, text: str | None = None) -> Answer:
        game = self._require_game()
        ctx = self.context
        if ctx.phase != Phase.ANSWERING:
            raise StateConflictError("Answers are not being collected right now.")
        if ctx.my_answer is not None:
            raise StateConflictError("You already answered this round.")

        raw = ctx.draft_answer if text is None else text
        answer_text = str(raw or "").strip() or NO_ANSWER
        if len(answer_text) > self.settings.max_answer_length:
            raise ValidationError(
                f"Answer is too long! Maximum {self.settings.max_answer_length} characters."
            )

        round_number = ctx.round_number
        with self._transition("answer"):
            record = self.gateway.create_record(
                self.collections.answers,
                {
                    "gameId": game.id,
                    "playerId": self.identity.user_id,
                    "promptText": answer_text,
                    "votes": 0,
                    "round": round_number,
                },
            )
        answer = Answer.from_record(record)
        if answer.round_number is None:
            answer.round_number = round_number
        ctx.answers.setdefault(round_number, {}).setdefault(answer.player_id, answer)
        if ctx.round_number == round_number:
            ctx.my_answer = answer
            ctx.draft_answer = answer_text
            self.timers.cancel(PROMPT_TIMER)
            self._maybe_start_voting()
        return answer

    def _on_prompt_timeout(self) -> None:
        ctx = self.context
        if ctx.phase != Phase.ANSWERING or ctx.my_answer is not None:
            return
        logger.info("Prompt timer expired; submitting answer for %s", self.identity.user_id)
        try:
            self.submit_answer(ctx.draft_answer)
        except GameError as exc:
            logger.warning("Automatic answer submission failed: %s", exc)
            ctx.notify("Failed to submit answer. Please try again.")

    def _maybe_start_voting(self) -> None:
        ctx = self.context
        game = ctx.game
        if game is None or ctx.phase != Phase.ANSWERING or ctx.voting_started:
            return
        if not ready_for_voting(ctx.round_answers(), player_ids(game)):
            return
        ctx.voting_started = True
        self._enter_voting(game)

    def _enter_voting(self, game: Game) -> None:
        ctx = self.context
        me = self.identity.user_id
        by_player = ctx.answers.get(ctx.round_number, {})
        self_answer = ctx.my_answer or by_player.get(me)
        if self_answer is None:
            self_answer = Answer(
                id="",
                game_id=game.id,
                player_id=me,
                text=ctx.draft_answer.strip() or NO_ANSWER,
            )
        others = [answer for pid, answer in by_player.items() if pid != me]

        self.timers.cancel(PROMPT_TIMER)
        ctx.pairs = self.voting.pair_answers(others, self_answer)
        ctx.phase = Phase.VOTING
        self.timers.start(
            VOTING_TIMER, self.settings.voting_timer_seconds, self._on_voting_timeout
        )
        logger.info("Round %s voting with %s answers", ctx.round_number, len(by_player))

    def _find_option(self, answer_id: str) -> VoteOption | None:
        for pair in self.context.pairs:
            for option in pair.options():
                if option.answer_id == answer_id:
                    return option
        return None

    def cast_vote(self, answer_id: str) -> None:
        self._require_game()
        already_voted = self.voting.has_voted
        if self.context.phase != Phase.VOTING and not already_voted:
            raise StateConflictError("Voting is not open right now.")
        option = self._find_option(answer_id)
        if option is None and not already_voted:
            raise ValidationError("That answer is not part of this vote.")

        self.voting.cast_vote(
            answer_id, option.player_id if option else "", self.identity.user_id
        )
        if self.context.phase == Phase.VOTING:
            self.show_scores()

    def _on_voting_timeout(self) -> None:
        if self.context.phase == Phase.VOTING:
            logger.info("Voting timer expired; showing scores")
            self.show_scores()

    def show_scores(self) -> list[ScoreLine]:
        game = self._require_game()
        self.timers.cancel(VOTING_TIMER)
        self.context.phase = Phase.SCORING
        self._refresh_scores(game)
        return self.context.scores

    def _refresh_scores(self, game: Game) -> None:
        try:
            self.context.scores = self.voting.tally_scores(game)
        except GameError as exc:
            logger.warning("Unable to tally scores for game %s: %s", game.id, exc)
            self.context.notify("Failed to load scores.")

    def advance_round(self) -> Phase:
        game = self._require_game()
        ctx = self.context
        if ctx.phase != Phase.SCORING:
            raise StateConflictError("Finish this round before starting the next one.")

        with self._transition("advance"):
            if ctx.round_number + 1 > self.settings.rounds_per_game:
                self._end_game()
                return ctx.phase

            try:
                record = self.gateway.get_record(self.collections.games, game.id)
            except GameError as exc:
                logger.warning("Unable to refresh game %s before advancing: %s", game.id, exc)
                record = None
            if record:
                latest = Game.from_record(record)
                if self._adopt(latest):
                    game = latest

            if game.current_prompt and game.current_prompt != ctx.round_prompt:
                # Another client already advanced; follow its prompt.
                prompt = game.current_prompt
            else:
                try:
                    prompt = self.prompt_pool.pick_prompt(game.id, excluding=ctx.used_prompts)
                except NoPromptsAvailable:
                    ctx.notify("All prompts have been used!")
                    self._end_game()
                    return ctx.phase
                self.gateway.update_record(
                    self.collections.games, game.id, {"currentPrompt": prompt}
                )

            # The write may already have been applied through the feed.
            if ctx.phase == Phase.SCORING:
                self._begin_next_round(prompt)
            return ctx.phase

    def _end_game(self) -> None:
        self.timers.cancel_all()
        self.context.phase = Phase.GAME_END
        logger.info("Game finished after %s rounds", self.context.round_number)

    # ------------------------
    # Lifecycle
    # ------------------------

    def reset(self) -> None:
        closed = self.gateway.close_subscriptions()
        self.timers.cancel_all()
        self.voting.reset()
        self.context.reset()
        logger.info("Session reset for %s (%s subscriptions closed)", self.identity.user_id, closed)

    def tick(self) -> list[str]:
        return self.timers.fire_due()

    # ------------------------
    # Render model
    # ------------------------

    def _start_button(self, game: Game | None, is_host: bool) -> dict:
        if game is None:
            return {"enabled": False, "label": "Start Game"}
        if game.in_progress:
            return {"enabled": False, "label": "Game in progress"}
        players = player_ids(game)
        if players and submitted_count(game) == len(players):
            if is_host:
                return {"enabled": True, "label": "Start Game"}
            return {"enabled": False, "label": "Waiting for host..."}
        return {"enabled": False, "label": "Waiting for prompts..."}

    def snapshot(self) -> dict:
        ctx = self.context
        game = ctx.game
        me = self.identity.user_id
        host_id = resolve_host(game) if game else ""
        is_host = bool(game) and host_id == me

        game_payload = None
        if game is not None:
            submitted = set(game.submitted_prompts)
            players = []
            for player_id in player_ids(game):
                players.append(
                    {
                        "id": player_id,
                        "name": display_name(game, player_id),
                        "is_host": player_id == host_id,
                        "submitted_prompt": player_id in submitted,
                    }
                )
            game_payload = {
                "id": game.id,
                "code": game.code,
                "status": game.status,
                "host_name": host_display_name(game),
                "players": players,
                "player_count": len(players),
                "submitted_count": submitted_count(game),
            }

        payload = {
            "phase": ctx.phase.value,
            "round": ctx.round_number,
            "rounds_per_game": self.settings.rounds_per_game,
            "player": {"id": me, "name": self.identity.name},
            "game": game_payload,
            "is_host": is_host,
            "start_button": self._start_button(game, is_host),
            "prompt": ctx.round_prompt,
            "draft_answer": ctx.draft_answer,
            "answered": ctx.my_answer is not None,
            "answers_in": len(ctx.round_answers()),
            "timers": {
                PROMPT_TIMER: self.timers.remaining(PROMPT_TIMER),
                VOTING_TIMER: self.timers.remaining(VOTING_TIMER),
            },
            "vote_pairs": [
                [asdict(option) for option in pair.options()] for pair in ctx.pairs
            ],
            "has_voted": self.voting.has_voted,
            "scores": [asdict(line) for line in ctx.scores],
            "final": ctx.phase == Phase.GAME_END,
            "my_prompts": list(ctx.my_prompts),
            "notices": list(ctx.notices),
        }
        if self.debug and game is not None:
            payload["debug_game"] = {"$id": game.id, **game.to_fields()}
        return payload
