from __future__ import annotations

import logging

from game_errors import GameError
from game_models import GAME_IN_PROGRESS, GAME_WAITING, Game
from player_roster import entry_id

logger = logging.getLogger(__name__)


class PresenceReconciler:
    """Best-effort repairs of game documents based on who is still in them.

    Nothing here is allowed to fail the caller: every backend error is logged
    and swallowed.
    """

    def __init__(self, gateway, games_collection: str):
        self.gateway = gateway
        self.games_collection = games_collection

    def reconcile(self, game: Game) -> Game:
        if not game.players:
            if game.status != GAME_WAITING:
                if self._update(game, {"status": GAME_WAITING}):
                    game.status = GAME_WAITING
            return game

        if not game.host_id:
            host_id = entry_id(game.players[0])
            if self._update(game, {"hostId": host_id}):
                game.host_id = host_id
        return game

    def sweep_orphans(self) -> dict[str, int]:
        counts = {"deleted": 0, "reset": 0, "hosts_backfilled": 0}
        try:
            waiting = self.gateway.list_records(
                self.games_collection, {"status": GAME_WAITING}
            )
            active = self.gateway.list_records(
                self.games_collection, {"status": GAME_IN_PROGRESS}
            )
        except GameError as exc:
            logger.warning("Orphaned game sweep skipped: %s", exc)
            return counts

        for record in waiting:
            if record.get("players"):
                continue
            try:
                self.gateway.delete_record(self.games_collection, record["$id"])
                counts["deleted"] += 1
            except GameError as exc:
                logger.warning("Unable to delete orphaned game %s: %s", record.get("$id"), exc)

        for record in active:
            game = Game.from_record(record)
            if not game.players:
                if self._update(game, {"status": GAME_WAITING}):
                    counts["reset"] += 1
            elif not game.host_id:
                if self._update(game, {"hostId": entry_id(game.players[0])}):
                    counts["hosts_backfilled"] += 1

        if any(counts.values()):
            logger.info("Orphaned game sweep: %s", counts)
        return counts

    def _update(self, game: Game, fields: dict) -> bool:
        try:
            self.gateway.update_record(self.games_collection, game.id, fields)
            return True
        except GameError as exc:
            logger.warning("Presence update for game %s failed: %s", game.id, exc)
            return False
