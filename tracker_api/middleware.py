"""Organization scoping middleware using ContextVar.

Extracts the organization from the X-Organization-ID request header and
stores it in the ContextVar the logging filter reads, so every log line
emitted while serving the request carries the organization id.
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from tracker_core.observability.logging_setup import current_organization_id


def get_current_organization() -> str | None:
    """Return the organization ID for the current request, if the caller sent one."""
    return current_organization_id.get()


class OrganizationMiddleware(BaseHTTPMiddleware):
    """Bind X-Organization-ID to the request context."""

    async def dispatch(self, request: Request, call_next) -> Response:
        organization_id = request.headers.get("X-Organization-ID") or None
        token = current_organization_id.set(organization_id)
        try:
            response = await call_next(request)
            return response
        finally:
            current_organization_id.reset(token)
