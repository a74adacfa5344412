"""
Flask application factory and server entry-point.
"""

import os
import sys

import structlog
from flask import Flask
from flask_cors import CORS

from securehealth.api.auth import SessionPrincipalResolver
from securehealth.api.routes import register_routes
from securehealth.audit import AuditSink, SqlAuditStore
from securehealth.config import (
    AUDIT_SIGNING_KEY, ENCRYPTION_KEYS, LOG_LEVEL, POLICY_FILE, PROJECTION_WORKERS,
    TOKEN_EXPIRY_HOURS,
)
from securehealth.database import PERSISTED_FIELDS, init_engine
from securehealth.encryption import FernetEncryptionGateway
from securehealth.errors import ConfigurationError, EncryptionFailure
from securehealth.logging_config import configure_logging
from securehealth.policy_config import (
    ConfigurationHolder, default_configuration, load_configuration_file,
)
from securehealth.projector import ResponseProjector
from securehealth.rbac import MetadataRelationshipLookup

logger = structlog.get_logger()


def build_configurations(policy_file=POLICY_FILE) -> ConfigurationHolder:
    """Load the security configuration (file or built-in catalog) into a reload holder."""
    lookup = MetadataRelationshipLookup()
    if policy_file:
        configuration = load_configuration_file(policy_file, lookup)
    else:
        configuration = default_configuration(lookup)
    return ConfigurationHolder(configuration, PERSISTED_FIELDS, lookup)


def create_app(engine=None, configurations=None, gateway=None, audit_store=None, resolver=None):
    """Build and return a fully configured Flask application."""
    app = Flask(__name__)
    CORS(app)

    # ── Initialise shared resources ──────────────────────────────────
    try:
        if engine is None:
            logger.info("Initializing database connection")
            engine = init_engine()

        if configurations is None:
            logger.info("Loading security configuration", policy_file=POLICY_FILE or "built-in")
            configurations = build_configurations()

        if gateway is None:
            if not ENCRYPTION_KEYS:
                logger.warning("No encryption keys configured; encrypted fields are unavailable")
            gateway = FernetEncryptionGateway(ENCRYPTION_KEYS)

        if audit_store is None:
            audit_store = SqlAuditStore(engine, AUDIT_SIGNING_KEY)
    except (ConfigurationError, EncryptionFailure) as e:
        logger.critical("Failed to initialize", error=str(e))
        sys.exit(1)

    audit_sink = AuditSink(audit_store, configurations)
    projector = ResponseProjector(
        configurations, gateway, audit_sink, max_workers=PROJECTION_WORKERS
    )
    resolver = resolver or SessionPrincipalResolver()

    # ── Register routes ──────────────────────────────────────────────
    register_routes(app, engine, configurations, projector, audit_sink, resolver)
    logger.info("API server ready")

    return app


def main():
    """Run the development server."""
    configure_logging(LOG_LEVEL)
    app = create_app()

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "8000"))
    debug = os.getenv("FLASK_ENV") == "development"

    logger.info(
        "Starting Flask API",
        host=host,
        port=port,
        debug=debug,
        session_expiry_hours=TOKEN_EXPIRY_HOURS,
    )
    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":
    main()
