"""Route guard middleware.

Classifies every inbound path as public or protected:

  public    — guard.public_paths patterns (full-match regexes such as
              '/sign-in(.*)'), the proxy mount and everything under it,
              fixed routes marked ``public``, and static assets (anything
              under /_next/ or ending in a static file extension)
  protected — everything else

OPTIONS preflights are never gated: browsers send them without cookies, and
the routes answer them locally.

A protected request needs an active session, resolved through the identity
provider. Without one the guard answers::

    307 Location: <sign_in_url>?<return_param>=<original path + query>

and the request never reaches a handler. This is the only place session
validity is enforced; handlers behind the mount only attach tokens.
"""

from __future__ import annotations

import re
from typing import Iterable
from urllib.parse import urlencode

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from gateway.auth.tokens import resolve_session
from gateway.config import GuardConfig
from gateway.utils.logger import get_logger

logger = get_logger(__name__)

_STATIC_PREFIX = "/_next/"

_STATIC_ASSET_RE = re.compile(
    r".*\.(?:html?|css|js(?!on)|jpe?g|webp|png|gif|svg|ttf|woff2?|ico|csv|docx?|xlsx?|zip|webmanifest)$",
    re.IGNORECASE,
)


def compile_public_patterns(
    patterns: Iterable[str],
    mount_path: str,
    public_routes: Iterable[str] = (),
) -> list[re.Pattern[str]]:
    """Compile the public allow list: configured patterns, the mount, public routes."""
    compiled = [re.compile(pattern) for pattern in patterns]
    compiled.append(re.compile(re.escape(mount_path) + r"(/.*)?"))
    compiled.extend(re.compile(re.escape(path)) for path in public_routes)
    return compiled


def is_static_asset(path: str) -> bool:
    return path.startswith(_STATIC_PREFIX) or bool(_STATIC_ASSET_RE.match(path))


def is_public_path(path: str, patterns: Iterable[re.Pattern[str]]) -> bool:
    if is_static_asset(path):
        return True
    return any(pattern.fullmatch(path) for pattern in patterns)


def build_sign_in_redirect(request: Request, guard: GuardConfig) -> RedirectResponse:
    """307 to the sign-in page carrying the original path and query."""
    return_to = request.url.path
    if request.url.query:
        return_to = f"{return_to}?{request.url.query}"
    separator = "&" if "?" in guard.sign_in_url else "?"
    location = f"{guard.sign_in_url}{separator}{urlencode({guard.return_param: return_to})}"
    return RedirectResponse(url=location, status_code=307)


class RouteGuardMiddleware(BaseHTTPMiddleware):
    """Redirect unauthenticated requests for protected paths to sign-in.

    Registration (in create_app() in gateway/main.py)::

        application.add_middleware(
            RouteGuardMiddleware,
            guard=config.guard,
            mount_path=config.proxy.mount_path,
            public_routes=[r.path for r in config.routes if r.public],
        )
    """

    def __init__(
        self,
        app,
        guard: GuardConfig,
        mount_path: str,
        public_routes: Iterable[str] = (),
    ) -> None:
        super().__init__(app)
        self._guard = guard
        self._patterns = compile_public_patterns(
            guard.public_paths, mount_path, public_routes
        )

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        path = request.url.path
        # Browsers send preflights without cookies.
        if request.method == "OPTIONS" or is_public_path(path, self._patterns):
            return await call_next(request)

        session = await resolve_session(request)
        if session is None:
            logger.info(
                "route_guard_redirect",
                method=request.method,
                path=path,
                sign_in_url=self._guard.sign_in_url,
            )
            return build_sign_in_redirect(request, self._guard)

        return await call_next(request)
