"""
REST API for the Family Chat server.
Aggregates the sub-blueprints and provides the health check.
"""

from datetime import datetime, timezone

from flask import Blueprint, jsonify

# Create the main API blueprint
api_bp = Blueprint('api', __name__)

# Import sub-module blueprints after creating the main blueprint
from .users_api import users_bp
from .conversations_api import conversations_bp
from .settings_api import settings_bp
from .push_api import push_bp

# Register sub-module blueprints with the main API blueprint
api_bp.register_blueprint(users_bp)
api_bp.register_blueprint(conversations_bp)
api_bp.register_blueprint(settings_bp)
api_bp.register_blueprint(push_bp)


@api_bp.route('/health', methods=['GET'])
def health_check():
    """Liveness check"""
    return jsonify({
        'status': 'ok',
        'timestamp': datetime.now(timezone.utc).isoformat(),
    })
