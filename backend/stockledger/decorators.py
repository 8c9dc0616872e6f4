# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g, current_app

from .errors import LedgerError, TenantContextError
from .extensions import db
from .services import tenant_service


def require_tenant(f):
    """
    Resolve the tenant context once, at the API boundary.

    MULTI-TENANT: Sets g.tenant_context (a TenantContext) from the
    X-Tenant-ID / X-Actor-ID headers. Route handlers pass it explicitly into
    every service call.

    Returns 401 if the tenant header is missing, malformed, or names an
    unknown/inactive tenant.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            context = tenant_service.resolve_tenant_context(request.headers)
        except TenantContextError as e:
            current_app.logger.warning("Tenant context rejected on %s: %s", request.path, e)
            return jsonify(e.to_dict()), e.status_code

        g.tenant_context = context
        return f(*args, **kwargs)

    return decorated_function


def handle_ledger_errors(action: str):
    """
    Translate core errors into JSON responses.

    LedgerError -> {"error", "code", "details"} with the error's status code.
    Anything else is logged and answered with 500.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            try:
                return f(*args, **kwargs)
            except LedgerError as e:
                return jsonify(e.to_dict()), e.status_code
            except Exception:
                db.session.rollback()
                current_app.logger.exception("Failed to %s", action)
                return jsonify({"error": f"Failed to {action}"}), 500

        return decorated_function

    return decorator
