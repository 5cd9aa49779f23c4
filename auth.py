from datetime import datetime, timezone

from flask import (
    Blueprint, current_app, jsonify, redirect, render_template,
    session, url_for
)

import storage
from errors import AuthError

bp = Blueprint("auth", __name__)


def current_user():
    """The user bound to this session; raises AuthError when there is none."""
    user_id = session.get("user_id")
    user = storage.get_user(user_id) if user_id else None
    if user is None:
        raise AuthError("No authenticated user")
    return user


def email_domain_allowed(email, allowed_domains):
    if not allowed_domains:
        return True
    domain = email.rsplit("@", 1)[-1].lower()
    return domain in {d.lower().lstrip("@") for d in allowed_domains}


def _token_expiry(token):
    expires_at = token.get("expires_at")
    if not expires_at:
        return None
    return datetime.fromtimestamp(expires_at, timezone.utc).replace(tzinfo=None)


def _google():
    return current_app.extensions["oauth"].google


@bp.route("/api/auth/google")
def login_google():
    redirect_uri = (
        current_app.config.get("GOOGLE_REDIRECT_URI")
        or url_for("auth.google_callback", _external=True)
    )
    return _google().authorize_redirect(redirect_uri)


@bp.route("/auth/google/callback")
def google_callback():
    try:
        token = _google().authorize_access_token()
        userinfo = token.get("userinfo") or _google().userinfo(token=token)
        email = userinfo.get("email")
        if not email:
            raise ValueError("Google did not return an email address")

        if not email_domain_allowed(email, current_app.config.get("ALLOWED_EMAIL_DOMAINS")):
            current_app.logger.warning(f"[Auth] Rejected login from {email}: domain not allowed")
            return redirect("/login?error=unauthorized_domain")

        expiry = _token_expiry(token)
        user = storage.get_user_by_email(email)
        if user:
            storage.update_user_tokens(
                user, token["access_token"], token.get("refresh_token"), expiry
            )
            current_app.logger.info(f"[Auth] Refreshed tokens for {email}")
        else:
            user = storage.create_user(
                email=email,
                name=userinfo.get("name") or email,
                google_id=userinfo.get("sub") or userinfo.get("id"),
                access_token=token["access_token"],
                refresh_token=token.get("refresh_token"),
                token_expiry=expiry,
            )
            current_app.logger.info(f"[Auth] Created user {email}")
    except Exception:
        current_app.logger.exception("[Auth] OAuth callback failed")
        return redirect("/login?auth=error")

    session.clear()
    session["user_id"] = user.id
    return redirect("/dashboard?auth=success")


@bp.route("/api/auth/status")
def auth_status():
    try:
        user = current_user()
    except AuthError:
        return jsonify({"authenticated": False})
    return jsonify({"authenticated": True, "user": user.to_dict()})


@bp.route("/api/auth/signout", methods=["POST"])
def signout():
    session.clear()
    return jsonify({"success": True})


@bp.route("/")
def index():
    if session.get("user_id"):
        return redirect(url_for("auth.dashboard"))
    return redirect(url_for("auth.login"))


@bp.route("/login")
def login():
    return render_template("login.html")


@bp.route("/dashboard")
def dashboard():
    try:
        user = current_user()
    except AuthError:
        return redirect(url_for("auth.login"))
    return render_template("index.html", user=user)
