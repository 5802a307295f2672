import pytest

from change_feed import UPDATED, ChangeEvent
from countdown_timers import PROMPT_TIMER, VOTING_TIMER
from game_errors import (
    AlreadyVotedError,
    GameNotFoundError,
    NoPromptsAvailable,
    NotHostError,
    SelfVoteError,
    StartGateError,
    StateConflictError,
    ValidationError,
)
from player_roster import CODE_ALPHABET
from round_machine import NO_ANSWER, Phase, ready_for_voting
from game_models import Answer
from voting_engine import SELF_OPTION_ID

PROMPTS = {"The worst thing to hear from a pilot is ___", "My secret talent is ___"}


def _votable_answer_id(machine):
    return next(
        option.answer_id
        for pair in machine.context.pairs
        for option in pair.options()
        if option.votable
    )


def _play_to_voting(host, guest):
    host.start_game()
    host.submit_answer("Oops")
    guest.submit_answer("Juggling chainsaws")


def test_create_game_makes_creator_host_of_waiting_game(make_player, store):
    host = make_player("Alice")
    game = host.create_game()

    assert len(game.code) == 4
    assert all(char in CODE_ALPHABET for char in game.code)
    assert game.host_id == "user-alice"
    assert game.players == ["user-alice:Alice"]
    assert game.status == "waiting"
    assert game.submitted_prompts == []
    assert host.phase is Phase.LOBBY
    assert sorted(host.gateway.active_subscriptions) == ["answers", f"games/{game.id}"]

    stored = store.get("games", game.id)
    assert stored["hostId"] == "user-alice"


def test_join_moves_everyone_to_prompt_collection(make_player, store):
    host = make_player("Alice")
    guest = make_player("Bob")
    game = host.create_game()

    joined = guest.join_game(game.code.lower())

    assert joined.id == game.id
    assert guest.phase is Phase.PROMPT_COLLECTION
    assert host.phase is Phase.PROMPT_COLLECTION
    assert host.context.game.players == ["user-alice:Alice", "user-bob:Bob"]
    assert store.get("games", game.id)["players"] == ["user-alice:Alice", "user-bob:Bob"]


def test_join_rejects_unknown_or_blank_codes(make_player):
    guest = make_player("Bob")
    with pytest.raises(GameNotFoundError, match="Game not found!"):
        guest.join_game("ZZZZ")
    with pytest.raises(ValidationError):
        guest.join_game("  ")
    assert guest.context.game is None


def test_start_is_host_only(lobby):
    _host, guest = lobby
    with pytest.raises(NotHostError, match="Only the host can start the game."):
        guest.start_game()


def test_start_requires_every_player_to_submit_a_prompt(make_player):
    host = make_player("Alice")
    guest = make_player("Bob")
    game = host.create_game()
    guest.join_game(game.code)
    host.submit_prompt("Never trust a ___")

    with pytest.raises(StartGateError, match="All players must submit a prompt"):
        host.start_game()
    assert host.phase is Phase.PROMPT_COLLECTION


def test_start_enforces_player_limits(make_services, make_player):
    strict = make_services(min_players=3)
    host = make_player("Alice", strict)
    guest = make_player("Bob", strict)
    game = host.create_game()
    guest.join_game(game.code)
    host.submit_prompt("One")
    guest.submit_prompt("Two")
    assert host.phase is Phase.LOBBY

    with pytest.raises(StartGateError, match="Need at least 3 players to start the game."):
        host.start_game()


def test_start_rejects_oversized_rooms(make_services, make_player):
    small = make_services(max_players=2)
    players = [make_player(name, small) for name in ("Alice", "Bob", "Cara")]
    game = players[0].create_game()
    for player in players[1:]:
        player.join_game(game.code)
    for index, player in enumerate(players):
        player.submit_prompt(f"Prompt {index}")

    with pytest.raises(StartGateError, match="Too many players! Maximum is 2."):
        players[0].start_game()


def test_start_without_any_prompt_documents(make_player, store):
    host = make_player("Alice")
    guest = make_player("Bob")
    game = host.create_game()
    guest.join_game(game.code)
    store.update("games", game.id, {"submittedPrompts": ["user-alice", "user-bob"]})

    with pytest.raises(NoPromptsAvailable, match="No prompts available!"):
        host.start_game()
    assert store.get("games", game.id)["status"] == "waiting"


def test_start_moves_every_client_into_the_same_round(lobby, store):
    host, guest = lobby
    host.start_game()

    assert host.phase is Phase.ANSWERING
    assert guest.phase is Phase.ANSWERING
    assert host.context.round_prompt in PROMPTS
    assert guest.context.round_prompt == host.context.round_prompt
    assert host.context.round_prompt in host.context.used_prompts
    assert host.timers.is_running(PROMPT_TIMER)
    assert guest.timers.is_running(PROMPT_TIMER)

    stored = store.get("games", host.context.game.id)
    assert stored["status"] == "in-progress"
    assert stored["currentPrompt"] == host.context.round_prompt


def test_voting_starts_once_every_player_answered(lobby):
    host, guest = lobby
    host.start_game()

    host.submit_answer("Oops")
    assert host.phase is Phase.ANSWERING
    assert host.context.my_answer.round_number == 1
    assert not host.timers.is_running(PROMPT_TIMER)

    guest.submit_answer("Juggling chainsaws")
    for machine in (host, guest):
        assert machine.phase is Phase.VOTING
        assert machine.timers.is_running(VOTING_TIMER)
        assert not machine.timers.is_running(PROMPT_TIMER)
        assert len(machine.context.pairs) == 1

    own = [
        option
        for pair in host.context.pairs
        for option in pair.options()
        if option.player_id == "user-alice"
    ]
    assert len(own) == 1
    assert own[0].answer_id == SELF_OPTION_ID
    assert own[0].votable is False
    assert own[0].text == "Oops"


def test_answer_rules(lobby):
    host, _guest = lobby
    host.start_game()

    with pytest.raises(ValidationError, match="Answer is too long!"):
        host.submit_answer("x" * 501)
    assert host.context.my_answer is None

    answer = host.submit_answer("   ")
    assert answer.text == NO_ANSWER

    with pytest.raises(StateConflictError):
        host.submit_answer("second thoughts")


def test_answers_outside_answering_phase_are_rejected(lobby):
    host, _guest = lobby
    with pytest.raises(StateConflictError):
        host.submit_answer("too early")


def test_prompt_timeout_submits_the_draft(lobby, clock):
    host, guest = lobby
    host.start_game()
    host.update_draft("half typed")
    guest.submit_answer("Juggling chainsaws")

    clock.advance(31)
    assert host.tick() == [PROMPT_TIMER]

    assert host.context.my_answer is not None
    assert host.context.my_answer.text == "half typed"
    assert host.phase is Phase.VOTING
    assert guest.phase is Phase.VOTING


def test_prompt_timeout_with_empty_draft_submits_placeholder(lobby, clock):
    host, guest = lobby
    host.start_game()
    guest.submit_answer("Juggling chainsaws")

    clock.advance(30)
    host.tick()

    assert host.context.my_answer.text == NO_ANSWER


def test_vote_moves_voter_to_scoring(lobby):
    host, guest = lobby
    _play_to_voting(host, guest)

    with pytest.raises(SelfVoteError):
        host.cast_vote(SELF_OPTION_ID)

    host.cast_vote(_votable_answer_id(host))

    assert host.phase is Phase.SCORING
    assert not host.timers.is_running(VOTING_TIMER)
    assert [(line.name, line.points) for line in host.context.scores] == [
        ("Bob", 1),
        ("Alice", 0),
    ]
    assert guest.phase is Phase.VOTING

    with pytest.raises(AlreadyVotedError):
        host.cast_vote(_votable_answer_id(host))


def test_vote_counts_reach_other_clients(lobby):
    host, guest = lobby
    _play_to_voting(host, guest)

    guest.cast_vote(_votable_answer_id(guest))

    mine = host.context.answers[1]["user-alice"]
    assert mine.votes == 1


def test_unknown_vote_target_is_rejected(lobby):
    host, guest = lobby
    _play_to_voting(host, guest)
    with pytest.raises(ValidationError):
        host.cast_vote("not-an-answer")
    assert host.phase is Phase.VOTING


def test_voting_timeout_shows_scores(lobby, clock):
    host, guest = lobby
    _play_to_voting(host, guest)

    clock.advance(21)
    assert host.tick() == [VOTING_TIMER]

    assert host.phase is Phase.SCORING
    assert [line.points for line in host.context.scores] == [0, 0]
    with pytest.raises(StateConflictError):
        host.cast_vote(_votable_answer_id(host))


def test_advance_requires_scoring(lobby):
    host, guest = lobby
    _play_to_voting(host, guest)
    with pytest.raises(StateConflictError):
        host.advance_round()


def test_advance_picks_unused_prompt_and_scoring_clients_follow(lobby, store):
    host, guest = lobby
    _play_to_voting(host, guest)
    first_prompt = host.context.round_prompt
    guest.cast_vote(_votable_answer_id(guest))
    host.cast_vote(_votable_answer_id(host))

    assert host.advance_round() is Phase.ANSWERING

    second_prompt = host.context.round_prompt
    assert second_prompt != first_prompt
    assert second_prompt in PROMPTS
    assert host.context.round_number == 2
    assert guest.phase is Phase.ANSWERING
    assert guest.context.round_number == 2
    assert guest.context.round_prompt == second_prompt
    assert not guest.voting.has_voted
    assert store.get("games", host.context.game.id)["currentPrompt"] == second_prompt


def test_late_client_adopts_prompt_chosen_by_another(lobby):
    host, guest = lobby
    _play_to_voting(host, guest)
    host.cast_vote(_votable_answer_id(host))
    host.advance_round()

    # Bob was still voting when Alice advanced.
    assert guest.phase is Phase.VOTING
    guest.cast_vote(_votable_answer_id(guest))
    assert guest.advance_round() is Phase.ANSWERING

    assert guest.context.round_number == 2
    assert guest.context.round_prompt == host.context.round_prompt


def test_answers_from_next_round_wait_for_their_round(lobby):
    host, guest = lobby
    _play_to_voting(host, guest)
    host.cast_vote(_votable_answer_id(host))
    host.advance_round()
    host.submit_answer("Round two answer")

    assert 2 in guest.context.answers
    guest.cast_vote(_votable_answer_id(guest))
    guest.advance_round()

    assert guest.phase is Phase.ANSWERING
    guest.submit_answer("Also round two")
    assert guest.phase is Phase.VOTING
    assert host.phase is Phase.VOTING


def test_running_out_of_prompts_ends_the_game(lobby):
    host, guest = lobby
    _play_to_voting(host, guest)
    host.cast_vote(_votable_answer_id(host))
    guest.cast_vote(_votable_answer_id(guest))
    host.advance_round()

    host.submit_answer("A")
    guest.submit_answer("B")
    host.cast_vote(_votable_answer_id(host))
    guest.cast_vote(_votable_answer_id(guest))

    assert host.advance_round() is Phase.GAME_END
    assert "All prompts have been used!" in host.context.notices
    assert host.timers.remaining(PROMPT_TIMER) is None
    assert host.snapshot()["final"] is True

    assert guest.advance_round() is Phase.GAME_END


def test_round_limit_ends_the_game(make_services, make_player):
    short = make_services(rounds_per_game=1)
    host = make_player("Alice", short)
    guest = make_player("Bob", short)
    game = host.create_game()
    guest.join_game(game.code)
    host.submit_prompt("One ___")
    guest.submit_prompt("Two ___")
    _play_to_voting(host, guest)
    host.cast_vote(_votable_answer_id(host))

    assert host.advance_round() is Phase.GAME_END
    assert host.context.round_number == 1


def test_duplicate_and_foreign_answers_do_not_trigger_voting(lobby, store):
    host, guest = lobby
    host.start_game()
    game_id = host.context.game.id

    for text in ("first", "duplicate"):
        store.create(
            "answers",
            None,
            {"gameId": game_id, "playerId": "user-alice", "promptText": text, "votes": 0, "round": 1},
        )
    store.create(
        "answers",
        None,
        {"gameId": "other-game", "playerId": "user-bob", "promptText": "x", "votes": 0, "round": 1},
    )

    assert guest.phase is Phase.ANSWERING
    assert guest.context.answers[1]["user-alice"].text == "first"

    guest.submit_answer("Juggling chainsaws")
    assert guest.phase is Phase.VOTING


def test_ready_for_voting_waits_for_every_roster_player():
    def answer(player_id):
        return Answer(id=f"a-{player_id}", game_id="g", player_id=player_id, text="t")

    assert ready_for_voting([answer("a"), answer("b")], ["a", "b"]) is True
    assert ready_for_voting([answer("a"), answer("a")], ["a", "b"]) is False
    assert ready_for_voting([], []) is False
    assert ready_for_voting([answer("a"), answer("ghost")], ["a", "b"]) is False
    assert ready_for_voting([answer("a"), answer("b"), answer("ghost")], ["a", "b"]) is True


def test_stale_game_documents_are_ignored(lobby, store):
    host, _guest = lobby
    game_id = host.context.game.id
    waiting_record = store.get("games", game_id)
    host.start_game()

    host.on_game_event(ChangeEvent(UPDATED, "games", waiting_record))

    assert host.phase is Phase.ANSWERING
    assert host.context.game.status == "in-progress"


def test_reset_tears_down_subscriptions(lobby, store):
    host, guest = lobby
    game_id = host.context.game.id
    before = store.feed.subscriber_count()

    host.reset()

    assert host.gateway.active_subscriptions == []
    assert store.feed.subscriber_count() == before - 2
    assert host.context.game is None
    assert host.phase is Phase.LOBBY
    assert host.context.identity.user_id == "user-alice"

    guest.submit_prompt("Another one")
    assert host.context.game is None
    assert store.get("games", game_id) is not None


def test_snapshot_start_button_labels(make_player):
    host = make_player("Alice")
    guest = make_player("Bob")
    game = host.create_game()
    guest.join_game(game.code)

    assert host.snapshot()["start_button"] == {
        "enabled": False,
        "label": "Waiting for prompts...",
    }

    host.submit_prompt("One ___")
    guest.submit_prompt("Two ___")

    assert host.snapshot()["start_button"] == {"enabled": True, "label": "Start Game"}
    assert guest.snapshot()["start_button"] == {
        "enabled": False,
        "label": "Waiting for host...",
    }
    snapshot = guest.snapshot()
    assert snapshot["game"]["host_name"] == "Alice"
    assert snapshot["game"]["submitted_count"] == 2
    assert [p["is_host"] for p in snapshot["game"]["players"]] == [True, False]
