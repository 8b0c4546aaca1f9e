"""Health check endpoints."""
from flask import Blueprint, current_app
from sqlalchemy import text

bp = Blueprint("health", __name__)


@bp.route("/health")
def health_check():
    """Basic health check endpoint."""
    return ("ok", 200, {"Content-Type": "text/plain"})


@bp.route("/ready")
def readiness_check():
    """Readiness check: the identity store must answer a trivial query."""
    session = current_app.config["SESSION_FACTORY"]()
    try:
        session.execute(text("SELECT 1"))
    except Exception as exc:
        current_app.logger.error(f"Readiness check failed: {exc}")
        return ("not ready", 503, {"Content-Type": "text/plain"})
    finally:
        session.close()
    return ("ready", 200, {"Content-Type": "text/plain"})
