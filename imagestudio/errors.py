from flask import jsonify


class StudioError(Exception):
    """Base for every error that crosses the request boundary."""

    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"error": self.message}


class AuthError(StudioError):
    status_code = 401


class ValidationError(StudioError):
    status_code = 400


class QuotaExceeded(StudioError):
    status_code = 429

    def __init__(self, current_usage, limit, subscription_tier):
        super().__init__("usage limit reached")
        self.current_usage = current_usage
        self.limit = limit
        self.subscription_tier = subscription_tier

    def to_dict(self):
        return {
            "error": self.message,
            "current_usage": self.current_usage,
            "limit": self.limit,
            "subscription_tier": self.subscription_tier,
        }


class ProviderError(StudioError):
    """A billing, identity or image provider call failed."""

    status_code = 502

    def __init__(self, message, step=None, status_code=None):
        super().__init__(message, status_code=status_code)
        self.step = step


class WebhookError(StudioError):
    status_code = 400


class StoreError(StudioError):
    status_code = 503


def register_error_handlers(app):
    @app.errorhandler(StudioError)
    def handle_studio_error(err):
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(413)
    def handle_too_large(err):
        return jsonify(error="Upload too large."), 413
