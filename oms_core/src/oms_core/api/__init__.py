"""HTTP edge: FastAPI application and bearer-token verification."""

from oms_core.api.auth import TokenVerifier, current_user
from oms_core.api.http import HTTP_STATUS, create_app, status_for

__all__ = ["HTTP_STATUS", "TokenVerifier", "create_app", "current_user", "status_for"]
