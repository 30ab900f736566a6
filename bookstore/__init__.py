# --- bookstore/__init__.py ---
from flask import Flask, jsonify

from .config import Config, Policy
from .errors import register_error_handlers
from .extensions import cors, db, jwt, migrate
from .utils.logging import configure_logging


def create_app(config_object=Config, overrides=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object)
    if overrides:
        app.config.update(overrides)
    config_object.init_app(app)

    configure_logging(app.config.get("LOG_LEVEL", "INFO"))
    app.extensions["policy"] = Policy.from_config(app.config)

    # Init extensions
    db.init_app(app)
    jwt.init_app(app)
    cors.init_app(app, resources={r"/*": {"origins": "*"}})
    migrate.init_app(app, db)

    register_error_handlers(app)

    # Register blueprints
    from .cart import bp as cart_bp; app.register_blueprint(cart_bp)
    from .order import bp as order_bp; app.register_blueprint(order_bp)
    from .admin import bp as admin_bp; app.register_blueprint(admin_bp)
    from .wallet import bp as wallet_bp; app.register_blueprint(wallet_bp)

    from .cli import register_cli
    register_cli(app)

    @app.get("/")
    def health():
        return jsonify(ok=True, msg="API running")

    with app.app_context():
        from . import model  # noqa: F401  (register tables)
        db.create_all()

    return app
