from flask import Flask

from .config import Config
from .errors import register_error_handlers
from .extensions import db, login_manager
from .logs import configure_logging

__version__ = "0.1.0"


def create_app(config_overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    configure_logging(app.config["LOG_LEVEL"])
    db.init_app(app)
    login_manager.init_app(app)
    register_error_handlers(app)

    from .routes import api

    app.register_blueprint(api)

    with app.app_context():
        db.create_all()

    return app
