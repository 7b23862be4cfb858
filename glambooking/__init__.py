from flask import Flask
from flask_cors import CORS

from .config import Config
from .errors import register_error_handlers
from .extensions import db
from .routes import bp
from .routes_extended import bp_ext
from .services import EXTENSION_KEY, build_services


def create_app(config_object=None):
    app = Flask(__name__, instance_relative_config=True)

    app.config.from_object(Config)
    app.config.from_envvar("APP_SETTINGS", silent=True)
    if config_object:
        if isinstance(config_object, dict):
            app.config.from_mapping(config_object)
        else:
            app.config.from_object(config_object)

    db.init_app(app)

    # Booking page and dashboard are served from other origins
    CORS(app,
         origins=app.config["CORS_ORIGINS"],
         supports_credentials=True,
         allow_headers=["Content-Type", "Authorization"],
         methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"]
    )

    register_error_handlers(app)
    app.extensions[EXTENSION_KEY] = build_services(app)

    app.register_blueprint(bp)
    app.register_blueprint(bp_ext)

    return app
