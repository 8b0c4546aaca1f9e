"""Staff Auth Service package.

To use the Flask app:
    from authservice.flask_app import create_app

To use the core services without Flask:
    from authservice.core.gate import AuthorizationGate
    from authservice.core.reconciler import RoleReconciler
    from authservice.core.audit import AuditLogWriter
"""
# Note: flask_app is not imported here so CLI scripts that only need the
# store or the directory client do not pull in Flask.
