"""Error handlers for the application."""
from flask import jsonify
from werkzeug.exceptions import HTTPException

from authservice.core.exceptions import AuthServiceError, ConflictError, NotFoundError, ValidationError
from authservice.store import EmailConflictError


def register_error_handlers(app):
    """Register JSON error handlers with the Flask app."""

    @app.errorhandler(ValidationError)
    def validation_error(error):
        app.logger.warning(f"Validation failed: {error.message}")
        return jsonify({"error": "Bad Request", "message": error.message}), 400

    @app.errorhandler(NotFoundError)
    def not_found_error(error):
        app.logger.warning(f"Not found: {error.message}")
        return jsonify({"error": "Not Found", "message": error.message}), 404

    @app.errorhandler(ConflictError)
    @app.errorhandler(EmailConflictError)
    def conflict_error(error):
        message = getattr(error, "message", None) or str(error)
        app.logger.warning(f"Conflict: {message}")
        return jsonify({"error": "Conflict", "message": message}), 409

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({"error": "Bad Request", "message": _description(error, "Invalid request")}), 400

    @app.errorhandler(401)
    def unauthorized(error):
        return jsonify({"error": "Unauthorized", "message": "Authentication required"}), 401

    @app.errorhandler(403)
    def forbidden(error):
        return jsonify({"error": "Forbidden", "message": _description(error, "Insufficient permissions")}), 403

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": "Not Found", "message": "Resource not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({"error": "Method Not Allowed", "message": _description(error, "Method not allowed")}), 405

    @app.errorhandler(Exception)
    def handle_exception(error):
        """Handle uncaught exceptions."""
        # Pass through HTTP errors
        if isinstance(error, HTTPException):
            return error

        # ALWAYS log the error (even in production) - logs are secure
        app.logger.error(f"Unhandled exception: {error}", exc_info=True)
        if isinstance(error, AuthServiceError) and error.status < 500:
            return jsonify({"error": type(error).__name__, "message": error.message}), error.status
        return jsonify({"error": "Internal Server Error", "message": "An unexpected error occurred"}), 500


def _description(error, default: str) -> str:
    description = getattr(error, "description", None)
    if not description or description.startswith("The browser (or proxy) sent a request"):
        return default
    return str(description)
