from functools import wraps

from flask import current_app, jsonify

from models import db


class ApiError(Exception):
    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class BadRequestError(ApiError):
    status_code = 400


class AuthError(ApiError):
    status_code = 401


class NotFoundError(ApiError):
    status_code = 404


class ConflictError(ApiError):
    status_code = 409


class UpstreamError(ApiError):
    """A Google, OpenAI or Slack call failed."""
    status_code = 500


def upstream_errors(message):
    """Turn anything unexpected raised by a route into a flat 500 with `message`.

    Client-side ApiErrors (4xx) pass through untouched so they keep their own
    text; UpstreamErrors collapse into the same static message.
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except ApiError as err:
                if not isinstance(err, UpstreamError):
                    raise
                current_app.logger.error(f"{message}: {err.message}")
            except Exception:
                current_app.logger.exception(message)
            db.session.rollback()
            return jsonify({"error": message}), 500
        return wrapper
    return decorator


def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def handle_api_error(err):
        if err.status_code >= 500:
            current_app.logger.error(f"{err.__class__.__name__}: {err.message}")
        return jsonify({"error": err.message}), err.status_code
