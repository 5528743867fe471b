import logging
from collections.abc import Mapping

from flask import Flask

from .config import Config
from .extensions import cors, db
from .notifier import QueueBroadcaster
from .queue_service import BarberLocks
from .routes import register_routes


def create_app(config_object=None):
    app = Flask(__name__, instance_relative_config=True)

    app.config.from_object(Config)
    if isinstance(config_object, Mapping):
        app.config.from_mapping(config_object)
    elif config_object:
        app.config.from_object(config_object)
    else:
        app.config.from_envvar("APP_SETTINGS", silent=True)

    app.logger.setLevel(app.config["LOG_LEVEL"])
    logging.getLogger(__name__).setLevel(app.config["LOG_LEVEL"])

    db.init_app(app)

    # One broadcaster per process; every open /queue/stream registers here.
    app.extensions["queue_broadcaster"] = QueueBroadcaster(
        channel_buffer=app.config["QUEUE_CHANNEL_BUFFER"],
    )
    app.extensions["queue_locks"] = BarberLocks()

    # Browser clients send the session token as a bearer header or cookie.
    cors.init_app(app,
                  origins=app.config["CORS_ORIGINS"],
                  supports_credentials=True,
                  allow_headers=["Content-Type", "Authorization", "Cache-Control"],
                  methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"])

    register_routes(app)

    return app
