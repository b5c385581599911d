from typing import Callable

from fastapi import Request, Response, status
from starlette.middleware.base import BaseHTTPMiddleware


ALLOW_HEADERS = "Content-Type, X-API-Key"

# Methods advertised in preflight answers, by path prefix
ROUTE_GROUP_METHODS = (
    ("/status", "GET, OPTIONS"),
    ("/send", "POST, OPTIONS"),
    ("/webhook", "POST, OPTIONS"),
    ("/inbox", "GET, POST, DELETE, OPTIONS"),
    ("/metrics", "GET, OPTIONS"),
)
DEFAULT_METHODS = "GET, POST, DELETE, OPTIONS"


def allowed_methods(path: str) -> str:
    for prefix, methods in ROUTE_GROUP_METHODS:
        if path == prefix or path.startswith(prefix + "/"):
            return methods
    return DEFAULT_METHODS


class CorsMiddleware(BaseHTTPMiddleware):
    """
    Open cross-origin policy.

    Every OPTIONS request is answered here with 204, without routing or
    authentication. Every other response gets Access-Control-Allow-Origin: *.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.method == "OPTIONS":
            return Response(
                status_code=status.HTTP_204_NO_CONTENT,
                headers={
                    "Access-Control-Allow-Origin": "*",
                    "Access-Control-Allow-Methods": allowed_methods(request.url.path),
                    "Access-Control-Allow-Headers": ALLOW_HEADERS,
                },
            )

        response = await call_next(request)
        response.headers["Access-Control-Allow-Origin"] = "*"
        return response
