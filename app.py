import logging
import time as timelib

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from blueprints.api import create_api_blueprint
from game_config import load_config
from game_services import GameServices

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s: %(message)s",
)


def create_app(config=None, *, store=None, log_file="app.log", services=None):
    if config is None:
        config = load_config()

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.secret_key
    app.config.update(
        SESSION_COOKIE_HTTPONLY=True,  # prevents JS from reading cookie
        SESSION_COOKIE_SECURE=config.is_prod,
        SESSION_COOKIE_SAMESITE="Lax",
    )

    if services is None:
        services = GameServices(app, config, store=store)
    services.configure_logging(log_file)
    services.validate_runtime_config()
    app.extensions["game_services"] = services

    @app.before_request
    def start_timer():
        g.start_time = timelib.time()
        services.maybe_tick_all_opportunistically()

    @app.after_request
    def log_request(response):
        duration = round(timelib.time() - g.get("start_time", timelib.time()), 3)
        app.logger.info(
            "%s %s (%s) -> %s [%ss]",
            request.method,
            request.path,
            request.endpoint,
            response.status_code,
            duration,
        )
        return response

    @app.teardown_request
    def log_exception(exception):
        if exception:
            app.logger.warning(
                "Unhandled exception on %s %s: %s",
                request.method,
                request.path,
                type(exception).__name__,
            )

    @app.route("/health")
    def health():
        return jsonify(
            status="ok",
            backend="memory" if config.backend.standalone else "appwrite",
        )

    app.register_blueprint(
        create_api_blueprint(
            services=services,
            show_debug_button=config.show_debug_button,
        )
    )

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify(error=e.name, description=e.description), e.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        app.logger.error(
            "Unhandled exception",
            exc_info=(type(e), e, e.__traceback__),
        )
        description = (
            "The server encountered an internal error and was unable to complete your request."
        )
        return jsonify(error="Internal Server Error", description=description), 500

    return app


if __name__ == "__main__":
    # Load the .env file
    load_dotenv()
    settings = load_config()
    app = create_app(settings)
    app.run(debug=not settings.is_prod, host=settings.host, port=settings.port)
