"""
app.py
======
HTTP/JSON front end for the passkey relying party.

Routes:
- POST /register/options {username}              -> creation options
- POST /register/verify  {username, credential}  -> {"verified": bool}
- POST /login/options    {username}              -> request options
- POST /login/verify     {username, credential}  -> {"verified": bool}
- GET  /debug/users                               -> user table (DEBUG_ENDPOINTS only)
- GET  /healthz                                   -> "ok"

Every ceremony error becomes 400 {"error": message}. Option and credential
payloads pass through untouched.
"""

from __future__ import annotations

import logging
from typing import Optional

from flask import Flask, abort, jsonify, request
from flask_cors import CORS

from errors import CeremonyError
from rp_policy import RpPolicy, ServerSettings
from server import PasskeyServer

logger = logging.getLogger(__name__)


def _body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def create_app(
    server: Optional[PasskeyServer] = None,
    settings: Optional[ServerSettings] = None,
) -> Flask:
    """Build the Flask application around a PasskeyServer."""
    server = server or PasskeyServer(RpPolicy.from_env())
    settings = settings or ServerSettings()

    app = Flask(__name__)
    app.config["PASSKEY_SERVER"] = server
    CORS(app, origins=list(server.policy.origins), supports_credentials=False)

    @app.errorhandler(CeremonyError)
    def handle_ceremony_error(exc: CeremonyError):
        logger.warning("%s %s rejected: %s: %s", request.method, request.path, type(exc).__name__, exc.message)
        return jsonify({"error": exc.message}), exc.status_code

    @app.post("/register/options")
    def register_options():
        return jsonify(server.registration_options(_body().get("username")))

    @app.post("/register/verify")
    def register_verify():
        body = _body()
        return jsonify(server.verify_registration(body.get("username"), body.get("credential")))

    @app.post("/login/options")
    def login_options():
        return jsonify(server.authentication_options(_body().get("username")))

    @app.post("/login/verify")
    def login_verify():
        body = _body()
        return jsonify(server.verify_authentication(body.get("username"), body.get("credential")))

    @app.get("/debug/users")
    def debug_users():
        if not settings.debug_endpoints:
            abort(404)
        return jsonify(server.debug_dump())

    @app.get("/healthz")
    def healthz():
        return "ok"

    return app


def main() -> None:
    """Run the development server with configuration from the environment."""
    settings = ServerSettings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    policy = RpPolicy.from_env()
    app = create_app(PasskeyServer(policy), settings)
    logger.info("Relying party %r listening on port %d (origins: %s)", policy.rp_id, settings.port, ", ".join(policy.origins))
    app.run(host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
