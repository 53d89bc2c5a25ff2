"""Shared constants for the backend gateway.

Timeouts, pool sizes, default URLs and the CORS header values used across
modules are defined here. Import from here rather than repeating literals.
"""

# ─── Backend ──────────────────────────────────────────────────────────────────

# Local-development fallback when neither BACKEND_API_BASE nor the config file
# names a backend.
DEFAULT_BACKEND_API_BASE: str = "http://localhost:3001"

# Total upstream timeout (connect + write + read) in seconds.
DEFAULT_UPSTREAM_TIMEOUT_S: float = 30.0

# Shared httpx.AsyncClient pool sizing. Matches the uvicorn --limit-concurrency
# value in gateway/run.py so every concurrent request has a pooled slot.
POOL_MAX_CONNECTIONS: int = 100
POOL_MAX_KEEPALIVE: int = 100
POOL_KEEPALIVE_EXPIRY_S: float = 30.0

# Status logged when the client went away before the upstream answered.
# Never written to a live connection.
CLIENT_CLOSED_REQUEST: int = 499

# ─── Proxy surface ────────────────────────────────────────────────────────────

DEFAULT_MOUNT_PATH: str = "/api/backend"

# Methods accepted on the generic mount (OPTIONS is answered by the preflight
# handler and never forwarded).
FORWARDED_METHODS: tuple[str, ...] = ("GET", "POST", "PUT", "PATCH", "DELETE")

# Methods that never carry a request body upstream.
BODYLESS_METHODS: frozenset[str] = frozenset({"GET", "HEAD"})

# Content type applied to upstream responses that arrive without one.
DEFAULT_CONTENT_TYPE: str = "application/json; charset=utf-8"

# ─── CORS ─────────────────────────────────────────────────────────────────────

CORS_ALLOW_ORIGIN: str = "*"
CORS_ALLOW_METHODS: str = "GET,POST,PUT,PATCH,DELETE,OPTIONS"
CORS_ALLOW_HEADERS: str = "Authorization, Content-Type, Accept"

# ─── Identity ─────────────────────────────────────────────────────────────────

# Token template (audience) requested from the identity provider.
DEFAULT_TOKEN_TEMPLATE: str = "BACKEND"

# Browser cookie carrying the identity provider's session token.
DEFAULT_SESSION_COOKIE: str = "__session"

# Identity provider HTTP timeout in seconds. Kept short: token minting sits on
# the request path of every proxied call.
IDENTITY_TIMEOUT_S: float = 5.0

# ─── Route guard ──────────────────────────────────────────────────────────────

DEFAULT_SIGN_IN_URL: str = "/sign-in"
DEFAULT_RETURN_PARAM: str = "redirect_url"
