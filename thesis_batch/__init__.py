from flask import Flask, jsonify
from flasgger import Swagger
from prometheus_flask_exporter import PrometheusMetrics
from flask_cors import CORS
import logging
import os

from .logging_setup import setup_logging
from .errors import BatchError
from .routes import batch_routes, health
from .config import DevelopmentConfig, ProductionConfig, TestingConfig

logger = logging.getLogger(__name__)


def create_app(config_name: str = "development"):
    app = Flask(__name__)

    config_map = {
        "development": DevelopmentConfig,
        "production": ProductionConfig,
        "testing": TestingConfig,
    }
    app.config.from_object(config_map.get(config_name.lower(), DevelopmentConfig))

    setup_logging(app)

    # CORS from CORS_ORIGINS
    # - unset or '*' -> any origin
    # - "https://app.example.com,https://admin.example.com" -> only those
    cors_origin = os.getenv("CORS_ORIGINS", "*").strip()
    cors_common_kwargs = dict(
        supports_credentials=False,
        methods=["GET", "POST", "OPTIONS", "HEAD"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "X-Requested-With",
            "X-Request-ID",
            "X-User-Id",
            "Accept",
            "Origin",
            "Cache-Control",
        ],
    )
    if cors_origin == "*" or cors_origin == "":
        CORS(app, resources={r"/*": {"origins": "*"}}, **cors_common_kwargs)
    else:
        origins_list = [o.strip() for o in cors_origin.split(",") if o.strip()]
        CORS(app, resources={r"/*": {"origins": origins_list}}, **cors_common_kwargs)

    from .models import init_app as init_models
    init_models(app)

    # Swagger
    swagger_template = {
        "swagger": "2.0",
        "info": {
            "title": "Thesis Batch Analysis API",
            "description": "Batch analysis jobs over thesis fragments.",
            "version": "1.0.0",
        },
        "basePath": "/",
        "schemes": ["https"],
    }
    swagger_config = {
        "headers": [],
        "specs": [
            {
                "endpoint": "apispec_1",
                "route": "/apispec_1.json",
                "rule_filter": lambda rule: True,
                "model_filter": lambda tag: True,
            }
        ],
        "static_url_path": "/flasgger_static",
        "swagger_ui": True,
        "specs_route": "/apidocs/",
    }
    Swagger(app, template=swagger_template, config=swagger_config)

    # Blueprints
    app.register_blueprint(health.bp)
    app.register_blueprint(batch_routes.bp, url_prefix="/api/thesis-batch")

    @app.errorhandler(BatchError)
    def handle_batch_error(e: BatchError):
        if e.status_code >= 500:
            logger.error(f"{e.code}: {e.message}")
        return jsonify({"ok": False, "error": e.to_dict()}), e.status_code

    # Metrics
    metrics = PrometheusMetrics(app, path="/metrics")
    metrics.info("app_info", "Thesis batch analysis service", version="1.0.0")

    return app
