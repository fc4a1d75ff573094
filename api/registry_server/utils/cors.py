import logging
from typing import FrozenSet, Optional

from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger("agrinet.registry")

WRITE_METHODS = frozenset({"POST", "PUT", "DELETE"})
NODES_PATH = "/api/nodes"

READ_ALLOW_METHODS = "GET, OPTIONS"
WRITE_ALLOW_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
ALLOW_HEADERS = "authorization, content-type, x-api-key"
EXPOSE_HEADERS = "location, retry-after"
PREFLIGHT_MAX_AGE = "600"


class OriginPolicy:
    """An origin allow-list: wildcard, empty (no cross-origin access) or explicit."""

    def __init__(self, origins: FrozenSet[str] = frozenset(), wildcard: bool = False):
        self.origins = origins
        self.wildcard = wildcard

    @classmethod
    def parse(cls, value: Optional[str]) -> "OriginPolicy":
        entries = [entry.strip().rstrip("/") for entry in (value or "").split(",")]
        entries = [entry for entry in entries if entry]
        if "*" in entries:
            return cls(wildcard=True)
        return cls(origins=frozenset(entries))

    @property
    def is_empty(self) -> bool:
        return not self.wildcard and not self.origins

    def allows(self, origin: Optional[str]) -> bool:
        """Whether a request carrying `origin` may proceed. No Origin header is always allowed."""
        if not origin:
            return True
        if self.wildcard:
            return True
        return origin.rstrip("/") in self.origins

    def allow_origin_header(self, origin: Optional[str]) -> Optional[str]:
        if self.wildcard:
            return "*"
        if origin and origin.rstrip("/") in self.origins:
            return origin
        return None

    def __repr__(self) -> str:
        if self.wildcard:
            return "OriginPolicy(*)"
        return f"OriginPolicy({sorted(self.origins)!r})"


def is_nodes_path(path: str) -> bool:
    return path == NODES_PATH or path.startswith(NODES_PATH + "/")


class RegistryCORSMiddleware:
    """
    CORS handling with separate allow-lists for reads and writes.

    Preflight requests are answered here (204, no body). They are checked
    against the write list only when they ask for POST/PUT/DELETE on the node
    collection; everything else uses the read list. Explicit lists echo the
    caller's origin with `Vary: Origin`; a wildcard list answers `*`.
    """

    def __init__(self, app: ASGIApp, read_policy: OriginPolicy, write_policy: OriginPolicy):
        self.app = app
        self.read_policy = read_policy
        self.write_policy = write_policy

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        origin = headers.get("origin")
        method = scope["method"].upper()
        path = scope.get("path", "")

        if method == "OPTIONS":
            response = self.preflight_response(path, origin, headers)
            await response(scope, receive, send)
            return

        policy = self.write_policy if method in WRITE_METHODS else self.read_policy
        allow_origin = policy.allow_origin_header(origin)

        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_headers = MutableHeaders(scope=message)
                if allow_origin:
                    response_headers["Access-Control-Allow-Origin"] = allow_origin
                    response_headers["Access-Control-Expose-Headers"] = EXPOSE_HEADERS
                if not policy.wildcard:
                    response_headers.add_vary_header("Origin")
            await send(message)

        await self.app(scope, receive, send_with_cors)

    def preflight_response(self, path: str, origin: Optional[str], headers: Headers) -> Response:
        requested = (headers.get("access-control-request-method") or "").upper()
        is_write = requested in WRITE_METHODS and is_nodes_path(path)
        policy = self.write_policy if is_write else self.read_policy

        response = Response(status_code=204)
        if not policy.wildcard:
            response.headers["Vary"] = "Origin"

        allow_origin = policy.allow_origin_header(origin)
        if allow_origin is None:
            if origin:
                logger.warning("[cors] preflight from disallowed origin %s for %s %s", origin, requested or "?", path)
            return response

        response.headers["Access-Control-Allow-Origin"] = allow_origin
        response.headers["Access-Control-Allow-Methods"] = WRITE_ALLOW_METHODS if is_write else READ_ALLOW_METHODS
        response.headers["Access-Control-Allow-Headers"] = ALLOW_HEADERS
        response.headers["Access-Control-Max-Age"] = PREFLIGHT_MAX_AGE
        return response
