"""
Centralized Blueprint Registration
All blueprints MUST be registered inside register_all_blueprints(app)
"""

import logging

logger = logging.getLogger(__name__)


def register_all_blueprints(app):

    # Root
    from batchtrace.routes.root_routes import root_bp
    app.register_blueprint(root_bp)

    # Batches
    from batchtrace.routes.batch_routes import batch_bp
    app.register_blueprint(batch_bp)

    logger.info("✓ All blueprints registered")
