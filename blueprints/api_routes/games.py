from flask import request


def register_game_api_routes(bp, context):
    services = context["services"]
    respond = context["respond"]

    def _with_client(action, *, metric: str = ""):
        """Run ``action(machine, data)`` for the caller's session and return its state."""
        data = request.get_json(silent=True) or {}
        token = services.get_client_token()

        def _run():
            with services.client(token) as machine:
                result = action(machine, data)
                if metric:
                    services.increment_metric(metric)
                payload = {"ok": True, "state": machine.snapshot()}
                if result is not None:
                    payload["result"] = result
                return payload

        return respond(_run)

    @bp.route("/api/games", methods=["POST"], endpoint="api_create_game")
    def api_create_game():
        def _create(machine, _data):
            return {"code": machine.create_game().code}

        return _with_client(_create, metric="games_created")

    @bp.route("/api/games/join", methods=["POST"], endpoint="api_join_game")
    def api_join_game():
        def _join(machine, data):
            return {"code": machine.join_game((data.get("code") or "").strip()).code}

        return _with_client(_join, metric="games_joined")

    @bp.route("/api/games/start", methods=["POST"], endpoint="api_start_game")
    def api_start_game():
        def _start(machine, _data):
            machine.start_game()

        return _with_client(_start, metric="games_started")

    @bp.route("/api/games/reset", methods=["POST"], endpoint="api_reset_game")
    def api_reset_game():
        def _reset(machine, _data):
            machine.reset()

        return _with_client(_reset)

    @bp.route("/api/prompts", methods=["POST"], endpoint="api_submit_prompt")
    def api_submit_prompt():
        def _submit(machine, data):
            machine.submit_prompt(data.get("text") or "")

        return _with_client(_submit, metric="prompts_submitted")

    @bp.route("/api/prompts/global", methods=["POST"], endpoint="api_submit_global_prompt")
    def api_submit_global_prompt():
        data = request.get_json(silent=True) or {}
        token = services.get_client_token()

        def _run():
            text = services.submit_global_prompt(token, data.get("text") or "")
            services.increment_metric("prompts_submitted")
            return {"ok": True, "text": text, "message": "Prompt added to the global pool!"}

        return respond(_run, status=201)

    @bp.route("/api/answers", methods=["POST"], endpoint="api_submit_answer")
    def api_submit_answer():
        def _answer(machine, data):
            answer = machine.submit_answer(data.get("text"))
            return {"answer_id": answer.id}

        return _with_client(_answer, metric="answers_submitted")

    @bp.route("/api/answers/draft", methods=["POST"], endpoint="api_update_draft")
    def api_update_draft():
        def _draft(machine, data):
            machine.update_draft(data.get("text") or "")

        return _with_client(_draft)

    @bp.route("/api/votes", methods=["POST"], endpoint="api_cast_vote")
    def api_cast_vote():
        def _vote(machine, data):
            machine.cast_vote(str(data.get("answer_id") or "").strip())

        return _with_client(_vote, metric="votes_cast")

    @bp.route("/api/rounds/next", methods=["POST"], endpoint="api_next_round")
    def api_next_round():
        def _next(machine, _data):
            return {"phase": machine.advance_round().value}

        return _with_client(_next, metric="rounds_advanced")
