from flask import request, session


def register_auth_api_routes(bp, context):
    services = context["services"]
    respond = context["respond"]

    def _identity_payload(identity):
        return {"id": identity.user_id, "name": identity.name}

    @bp.route("/api/auth/register", methods=["POST"], endpoint="api_auth_register")
    def api_auth_register():
        data = request.get_json(silent=True) or {}
        token = services.get_client_token()

        def _run():
            identity = services.register(
                token,
                name=data.get("name") or "",
                email=data.get("email") or "",
                password=data.get("password") or "",
            )
            if identity is None:
                return {
                    "ok": True,
                    "signed_in": False,
                    "message": "Registration successful! Please log in manually.",
                }
            return {"ok": True, "signed_in": True, "player": _identity_payload(identity)}

        return respond(_run, log_label="Register", status=201)

    @bp.route("/api/auth/login", methods=["POST"], endpoint="api_auth_login")
    def api_auth_login():
        data = request.get_json(silent=True) or {}
        token = services.get_client_token()

        def _run():
            identity = services.login(
                token,
                email=data.get("email") or "",
                password=data.get("password") or "",
            )
            return {"ok": True, "signed_in": True, "player": _identity_payload(identity)}

        return respond(_run, log_label="Login")

    @bp.route("/api/auth/logout", methods=["POST"], endpoint="api_auth_logout")
    def api_auth_logout():
        token = session.pop("client_token", None)

        def _run():
            if token:
                services.logout(token)
            return {"ok": True, "signed_in": False}

        return respond(_run, log_label="Logout")
