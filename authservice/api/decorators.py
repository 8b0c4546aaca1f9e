"""Session-based authorization decorators for the admin API."""
import logging
from functools import wraps

from flask import abort, current_app

from authservice.api.context import current_authorities, current_user, is_authenticated

logger = logging.getLogger(__name__)


def require_authority(authority: str):
    """Require an authenticated session whose authorities contain ``authority``.

    Returns:
        401 when there is no session, 403 when the authority is missing
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not is_authenticated():
                abort(401)
            if authority not in current_authorities():
                logger.warning(
                    f"Access denied for {current_user().get('email')}: missing authority {authority}"
                )
                abort(403, description=f"Required role: {authority}")
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def require_admin(fn):
    """Require the presented form of the administrative group (``ROLE_ADMIN`` by default)."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        authz = current_app.config["APP_CONFIG"].authz
        return require_authority(f"{authz.authority_prefix}{authz.admin_group}")(fn)(*args, **kwargs)
    return wrapper
