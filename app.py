import json
import logging
import os

from authlib.integrations.flask_client import OAuth
from dotenv import load_dotenv
from flask import Flask, current_app, request, session
from flask_sock import Sock
from openai import OpenAI
from simple_websocket import ConnectionClosed

import storage
from ai_service import AIService
from auth import bp as auth_bp
from errors import register_error_handlers
from google_service import SCOPES, GoogleService, build_credentials, refresh_if_expired
from live import ConnectionRegistry
from models import db
from routes import bp as api_bp
from slack_service import SlackNotifier

load_dotenv(os.getenv("ENV_PATH", ".env"))

REQUIRED_SETTINGS = (
    "SQLALCHEMY_DATABASE_URI",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "OPENAI_API_KEY",
    "SLACK_BOT_TOKEN",
)


def _split(value):
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def google_factory(app):
    """Build a GoogleService for a user, persisting a refreshed access token."""
    def for_user(user):
        creds = build_credentials(
            user, app.config["GOOGLE_CLIENT_ID"], app.config["GOOGLE_CLIENT_SECRET"]
        )
        if refresh_if_expired(creds):
            app.logger.info(f"[Auth] Refreshed Google token for {user.email}")
            storage.update_user_tokens(user, creds.token, creds.refresh_token, creds.expiry)
        return GoogleService(creds)
    return for_user


def create_app(overrides=None):
    app = Flask(__name__, template_folder="templates")
    app.config.update(
        SECRET_KEY=os.getenv("SECRET_KEY", "dev-secret"),
        SQLALCHEMY_DATABASE_URI=os.getenv("DATABASE_URL"),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        GOOGLE_CLIENT_ID=os.getenv("GOOGLE_CLIENT_ID"),
        GOOGLE_CLIENT_SECRET=os.getenv("GOOGLE_CLIENT_SECRET"),
        GOOGLE_REDIRECT_URI=os.getenv("GOOGLE_REDIRECT_URI"),
        OPENAI_API_KEY=os.getenv("OPENAI_API_KEY"),
        OPENAI_MODEL=os.getenv("OPENAI_MODEL", "gpt-4o"),
        SLACK_BOT_TOKEN=os.getenv("SLACK_BOT_TOKEN"),
        SLACK_WEBHOOK_URL=os.getenv("SLACK_WEBHOOK_URL"),
        ALLOWED_EMAIL_DOMAINS=_split(os.getenv("ALLOWED_EMAIL_DOMAINS")),
        DEFAULT_TIMEZONE=os.getenv("DEFAULT_TIMEZONE", "America/New_York"),
        EMAIL_FETCH_LIMIT=int(os.getenv("EMAIL_FETCH_LIMIT", 10)),
        HTTP_TIMEOUT=int(os.getenv("HTTP_TIMEOUT", 30)),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
        LOG_FORMAT=os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
    )
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(level=app.config["LOG_LEVEL"], format=app.config["LOG_FORMAT"])

    missing = [key for key in REQUIRED_SETTINGS if not app.config.get(key)]
    if missing and not app.config.get("TESTING"):
        raise RuntimeError(f"Missing required configuration: {', '.join(missing)}")

    db.init_app(app)
    with app.app_context():
        db.create_all()

    oauth = OAuth(app)
    oauth.register(
        name="google",
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_id=app.config["GOOGLE_CLIENT_ID"],
        client_secret=app.config["GOOGLE_CLIENT_SECRET"],
        client_kwargs={"scope": " ".join(SCOPES)},
        authorize_params={"access_type": "offline", "prompt": "consent"},
    )

    app.extensions["oauth"] = oauth
    app.extensions["live"] = ConnectionRegistry()
    app.extensions["google_factory"] = google_factory(app)
    app.extensions["ai"] = AIService(
        OpenAI(api_key=app.config["OPENAI_API_KEY"], timeout=app.config["HTTP_TIMEOUT"]),
        model=app.config["OPENAI_MODEL"],
    )
    app.extensions["slack"] = SlackNotifier(
        app.config["SLACK_BOT_TOKEN"],
        webhook_url=app.config["SLACK_WEBHOOK_URL"],
        timeout=app.config["HTTP_TIMEOUT"],
    )

    app.register_blueprint(auth_bp)
    app.register_blueprint(api_bp)
    register_error_handlers(app)
    register_live_channel(app)
    return app


def serve_live_updates(ws, registry):
    """Hold one /ws connection open for the signed-in user until the client leaves."""
    user_id = request.args.get("userId")
    if not user_id or session.get("user_id") != user_id or not storage.get_user(user_id):
        current_app.logger.warning(f"[Live] Refused connection for user {user_id!r}")
        ws.close(reason=1008, message="Unknown user")
        return

    registry.register(user_id, ws)
    try:
        while True:
            message = ws.receive()
            try:
                payload = json.loads(message) if message else {}
            except (TypeError, ValueError):
                continue
            if isinstance(payload, dict) and payload.get("type") == "ping":
                ws.send(json.dumps({"type": "pong"}))
    except ConnectionClosed:
        pass
    finally:
        registry.unregister(user_id, ws)


def register_live_channel(app):
    sock = Sock(app)

    @sock.route("/ws")
    def live_updates(ws):
        serve_live_updates(ws, app.extensions["live"])

    return sock


if __name__ == "__main__":
    create_app().run(port=int(os.getenv("PORT", 8000)), debug=True)
