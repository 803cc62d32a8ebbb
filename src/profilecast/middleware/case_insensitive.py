"""Case-insensitive routing — lowercase the request URI before dispatch.

Learn: Starlette matches routes against scope["path"] exactly. Rather than
teaching every route about case, this middleware rewrites the scope once:
path, raw_path and query string are lowercased, so /PROFILES/{id},
/Profiles/{id} and /profiles/{id} are the same request by the time the
router sees them.

Handlers can still see what the client sent:
- request.state.original_uri   — path + query exactly as received
- request.state.canonical_path — the lowercased path used for routing

Only HTTP requests go through here (BaseHTTPMiddleware passes WebSocket
scopes straight through), matching where case-insensitive routing applies.
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


class CaseInsensitivePathMiddleware(BaseHTTPMiddleware):
    """Route on the lowercased URI, keep the original on request.state."""

    async def dispatch(self, request: Request, call_next) -> Response:
        scope = request.scope
        query = scope.get("query_string", b"")
        original_uri = scope["path"] + (f"?{query.decode('latin-1')}" if query else "")

        canonical_path = scope["path"].lower()
        scope["path"] = canonical_path
        if scope.get("raw_path"):
            scope["raw_path"] = scope["raw_path"].lower()
        scope["query_string"] = query.lower()

        request.state.original_uri = original_uri
        request.state.canonical_path = canonical_path
        return await call_next(request)
