from flask import Blueprint, current_app, jsonify

from api_errors import error_response, game_error_response
from blueprints.api_routes.auth import register_auth_api_routes
from blueprints.api_routes.games import register_game_api_routes


def create_api_blueprint(*, services, show_debug_button: bool = False):
    bp = Blueprint("api", __name__)

    def respond(fn, *, log_label: str = "Game", status: int = 200):
        try:
            payload = fn()
            return jsonify(payload), status
        except Exception as exc:
            return game_error_response(exc, log_label=log_label)

    context = {"services": services, "respond": respond}

    @bp.route("/api/bootstrap", methods=["GET"], endpoint="api_bootstrap")
    def api_bootstrap():
        token = services.get_client_token()

        def _run():
            settings = services.config.settings
            machine = services.resume(token)
            player = None
            if machine is not None:
                player = {"id": machine.identity.user_id, "name": machine.identity.name}
            return {
                "signed_in": machine is not None,
                "player": player,
                "settings": {
                    "min_players": settings.min_players,
                    "max_players": settings.max_players,
                    "prompt_timer_seconds": settings.prompt_timer_seconds,
                    "voting_timer_seconds": settings.voting_timer_seconds,
                    "rounds_per_game": settings.rounds_per_game,
                    "max_prompt_length": settings.max_prompt_length,
                    "max_answer_length": settings.max_answer_length,
                },
                "show_debug_button": bool(show_debug_button),
            }

        return respond(_run, log_label="Bootstrap")

    @bp.route("/api/state", methods=["GET"], endpoint="api_state")
    def api_state():
        token = services.get_client_token()
        if services.resume(token) is None:
            return error_response(
                status=401, code="no_session", message="Please log in first."
            )

        def _run():
            with services.client(token) as machine:
                return machine.snapshot()

        return respond(_run, log_label="State")

    @bp.route("/api/ops/metrics", methods=["GET"], endpoint="api_ops_metrics")
    def api_ops_metrics():
        current_app.logger.info("Runtime metrics requested")
        return jsonify(metrics=services.get_runtime_metrics())

    register_auth_api_routes(bp, context)
    register_game_api_routes(bp, context)
    return bp
