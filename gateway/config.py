"""Config loading for the backend gateway.

Reads `.gateway/config.yaml` (or `~/.gateway/config.yaml`).
Raises SystemExit on parse errors, a missing `version` field, or invalid values.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. GATEWAY_CONFIG environment variable (if set)
  3. `.gateway/config.yaml` (working directory — for development)
  4. `~/.gateway/config.yaml` (home directory — for production deployments)

Environment variable overrides (applied after the file, so they always win):
  BACKEND_API_BASE        — overrides backend.base_url (trailing slash stripped)
  GATEWAY_PORT            — overrides proxy.port
  GATEWAY_IDENTITY_SECRET — overrides auth.secret_key
  GATEWAY_CONFIG          — sets an explicit config file path to try first

The loaded Config is immutable by convention after startup: the lifespan stores
it on app.state and hands the pieces each component needs to its constructor.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlsplit

import yaml

from gateway.constants import (
    DEFAULT_BACKEND_API_BASE,
    DEFAULT_MOUNT_PATH,
    DEFAULT_RETURN_PARAM,
    DEFAULT_SESSION_COOKIE,
    DEFAULT_SIGN_IN_URL,
    DEFAULT_TOKEN_TEMPLATE,
    DEFAULT_UPSTREAM_TIMEOUT_S,
    FORWARDED_METHODS,
)
from gateway.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# ─── Validation sets ─────────────────────────────────────────────────────────

VALID_IDENTITY_PROVIDERS: frozenset[str] = frozenset({"none", "http"})

# fail-open: proceed unauthenticated when no credential could be minted.
# fail-closed: answer 401 without contacting the backend.
VALID_CREDENTIAL_POLICIES: frozenset[str] = frozenset({"fail-open", "fail-closed"})

VALID_REDIRECT_MODES: frozenset[str] = frozenset({"follow", "manual"})

DEFAULT_CONFIG_PATHS = [
    ".gateway/config.yaml",
    os.path.expanduser("~/.gateway/config.yaml"),
]

# Paths reachable without a session. Full-match regular expressions, in the
# style of the identity provider's route matcher ('/sign-in(.*)').
DEFAULT_PUBLIC_PATHS: list[str] = [
    "/",
    "/sign-in(.*)",
    "/sign-up(.*)",
    "/favicon(.*)",
    "/health",
]


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class BackendConfig:
    """The single upstream backend.

    base_url:  Absolute http(s) URL, trailing slash stripped.
    timeout_s: Total upstream timeout per request.
    """

    base_url: str = DEFAULT_BACKEND_API_BASE
    timeout_s: float = DEFAULT_UPSTREAM_TIMEOUT_S


@dataclass
class AuthConfig:
    """Identity provider and credential policy."""

    provider: str = "none"  # "none" | "http"
    identity_base_url: Optional[str] = None
    secret_key: Optional[str] = None
    token_template: str = DEFAULT_TOKEN_TEMPLATE
    credential_policy: str = "fail-open"  # "fail-open" | "fail-closed"
    session_cookie: str = DEFAULT_SESSION_COOKIE

    @property
    def fail_closed(self) -> bool:
        return self.credential_policy == "fail-closed"


@dataclass
class GuardConfig:
    """Route guard: which paths need a session, and where to send the browser."""

    sign_in_url: str = DEFAULT_SIGN_IN_URL
    return_param: str = DEFAULT_RETURN_PARAM
    public_paths: list[str] = field(default_factory=lambda: list(DEFAULT_PUBLIC_PATHS))


@dataclass
class ProxyConfig:
    """Listener binding and the generic mount point."""

    host: str = "127.0.0.1"
    port: int = 3000
    mount_path: str = DEFAULT_MOUNT_PATH


@dataclass
class FixedRoute:
    """A fixed-destination proxy: one local path forwarded to one backend path.

    path:           Local path the route is registered at.
    target:         Backend path appended to backend.base_url.
    methods:        Accepted HTTP methods.
    inject_auth:    Mint and attach a bearer credential.
    redirect:       "follow" resolves 3xx server-side; "manual" re-issues the
                    upstream Location to the browser.
    required_query: Query parameters that must be present (else HTTP 400).
    missing_query_error: Error text for that 400; a generic message naming the
                    parameter when unset.
    public:         Reachable without a session (added to the guard's allow list).
    """

    path: str
    target: str
    methods: list[str] = field(default_factory=lambda: ["GET"])
    inject_auth: bool = True
    redirect: str = "follow"
    required_query: list[str] = field(default_factory=list)
    missing_query_error: Optional[str] = None
    public: bool = False


def _default_routes() -> list[FixedRoute]:
    # The OAuth callback hop: the backend answers with a redirect to the
    # dashboard, which must reach the browser rather than be followed here.
    return [
        FixedRoute(
            path="/slack/oauth/callback",
            target="/slack/oauth/callback",
            methods=["GET"],
            inject_auth=False,
            redirect="manual",
            required_query=["code"],
            missing_query_error="Missing authorization code",
            public=True,
        ),
        FixedRoute(path="/jira/check-link", target="/jira/check-link", methods=["POST"]),
        FixedRoute(path="/jira/gen-code", target="/jira/gen-code", methods=["GET", "POST"]),
        FixedRoute(
            path="/jira/insert-code", target="/jira/insert-code", methods=["GET", "POST"]
        ),
    ]


@dataclass
class Config:
    """Root configuration object populated from .gateway/config.yaml.

    All fields have safe defaults — the gateway can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    backend: BackendConfig = field(default_factory=BackendConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    guard: GuardConfig = field(default_factory=GuardConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    routes: list[FixedRoute] = field(default_factory=_default_routes)
    path: Optional[str] = None  # Path to the loaded config file

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Args:
            raw:  Parsed YAML dict (must already be validated for version field).
            path: Path to the config file.

        Returns:
            Config with all fields populated from raw + defaults for missing fields.

        Raises:
            SystemExit(1): On an invalid enum value, a malformed base URL, or a
                           malformed ``routes`` entry.
        """
        # ── Backend ───────────────────────────────────────────────────────────
        backend_raw = raw.get("backend", {}) or {}
        base_url = normalize_base_url(
            backend_raw.get("base_url", DEFAULT_BACKEND_API_BASE)
        )
        _validate_base_url(base_url, "backend.base_url")
        backend = BackendConfig(
            base_url=base_url,
            timeout_s=float(backend_raw.get("timeout_s", DEFAULT_UPSTREAM_TIMEOUT_S)),
        )

        # ── Auth ──────────────────────────────────────────────────────────────
        auth_raw = raw.get("auth", {}) or {}
        provider = auth_raw.get("provider", "none")
        _validate_choice(provider, VALID_IDENTITY_PROVIDERS, "auth.provider")
        credential_policy = auth_raw.get("credential_policy", "fail-open")
        _validate_choice(
            credential_policy, VALID_CREDENTIAL_POLICIES, "auth.credential_policy"
        )
        identity_base_url = auth_raw.get("identity_base_url")
        if identity_base_url:
            identity_base_url = normalize_base_url(identity_base_url)
            _validate_base_url(identity_base_url, "auth.identity_base_url")
        elif provider == "http":
            _config_error(
                "auth.provider is 'http' but auth.identity_base_url is not set."
            )
        auth = AuthConfig(
            provider=provider,
            identity_base_url=identity_base_url,
            secret_key=auth_raw.get("secret_key"),
            token_template=auth_raw.get("token_template", DEFAULT_TOKEN_TEMPLATE),
            credential_policy=credential_policy,
            session_cookie=auth_raw.get("session_cookie", DEFAULT_SESSION_COOKIE),
        )

        # ── Guard ─────────────────────────────────────────────────────────────
        guard_raw = raw.get("guard", {}) or {}
        guard = GuardConfig(
            sign_in_url=guard_raw.get("sign_in_url", DEFAULT_SIGN_IN_URL),
            return_param=guard_raw.get("return_param", DEFAULT_RETURN_PARAM),
            public_paths=list(guard_raw.get("public_paths", DEFAULT_PUBLIC_PATHS)),
        )

        # ── Proxy ─────────────────────────────────────────────────────────────
        proxy_raw = raw.get("proxy", {}) or {}
        proxy = ProxyConfig(
            host=proxy_raw.get("host", "127.0.0.1"),
            port=proxy_raw.get("port", 3000),
            mount_path="/" + str(proxy_raw.get("mount_path", DEFAULT_MOUNT_PATH)).strip("/"),
        )

        # ── Fixed routes ──────────────────────────────────────────────────────
        if "routes" in raw:
            routes = [_route_from_dict(entry) for entry in (raw.get("routes") or [])]
        else:
            routes = _default_routes()

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            backend=backend,
            auth=auth,
            guard=guard,
            proxy=proxy,
            routes=routes,
            path=path,
        )


# ─── Helpers ──────────────────────────────────────────────────────────────────


def normalize_base_url(url: str) -> str:
    """Strip surrounding whitespace and any trailing slashes from a base URL."""
    return str(url).strip().rstrip("/")


def _config_error(message: str) -> None:
    print(f"CONFIG ERROR: {message}", file=sys.stderr)
    raise SystemExit(1)


def _validate_choice(value: str, allowed: frozenset[str], key: str) -> None:
    if value not in allowed:
        _config_error(
            f"Invalid {key}: '{value}'. Supported values: {sorted(allowed)}."
        )


def _validate_base_url(url: str, key: str) -> None:
    """Require an absolute http(s) URL with a host.

    Raises:
        SystemExit(1): If the URL is relative, has another scheme, or has no host.
    """
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        _config_error(
            f"Invalid {key}: '{url}'. Expected an absolute http:// or https:// URL."
        )
    if parts.query or parts.fragment:
        _config_error(f"Invalid {key}: '{url}'. Query strings and fragments are not allowed.")


def _route_from_dict(entry: dict) -> FixedRoute:
    """Build one FixedRoute from a ``routes:`` list entry."""
    if not isinstance(entry, dict) or "path" not in entry or "target" not in entry:
        _config_error(f"Each routes entry needs 'path' and 'target': {entry!r}")

    redirect = entry.get("redirect", "follow")
    _validate_choice(redirect, VALID_REDIRECT_MODES, f"routes[{entry['path']}].redirect")

    methods = [str(m).upper() for m in entry.get("methods", ["GET"])]
    unknown = sorted(set(methods) - set(FORWARDED_METHODS))
    if unknown:
        _config_error(
            f"Invalid routes[{entry['path']}].methods: {unknown}. "
            f"Supported values: {list(FORWARDED_METHODS)}."
        )

    return FixedRoute(
        path="/" + str(entry["path"]).strip("/"),
        target="/" + str(entry["target"]).lstrip("/"),
        methods=methods,
        inject_auth=bool(entry.get("inject_auth", True)),
        redirect=redirect,
        required_query=list(entry.get("required_query", [])),
        missing_query_error=entry.get("missing_query_error"),
        public=bool(entry.get("public", False)),
    )


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate gateway configuration.

    Search order:
      1. ``config_path`` argument (if provided)
      2. ``GATEWAY_CONFIG`` environment variable (if set)
      3. ``.gateway/config.yaml`` (current working directory)
      4. ``~/.gateway/config.yaml`` (home directory)

    If no file is found at any of these paths, returns default Config (not an error).
    If a file is found but invalid, writes error to stderr and raises SystemExit(1).

    Environment overrides are applied last, whether or not a file was found.

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field, unsupported
                       version, invalid values, or an invalid environment override.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("GATEWAY_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    # ── No config file found ─────────────────────────────────────────────────
    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    # ── Parse config file ─────────────────────────────────────────────────────
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        msg = (
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "The gateway refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)
    except OSError as exc:
        msg = f"CONFIG ERROR: Could not read {found_path}: {exc}"
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    if not isinstance(raw, dict):
        if raw is None:
            msg = (
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        else:
            msg = (
                f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
                "The config file must be a YAML dictionary at the top level."
            )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    # ── Version validation ────────────────────────────────────────────────────
    version = raw.get("version")
    if version is None:
        msg = (
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    if version not in SUPPORTED_VERSIONS:
        msg = (
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    config = Config.from_dict(raw, path=found_path)

    _apply_env_overrides(config)

    if config.proxy.host == "0.0.0.0":
        logger.warning(
            "Gateway is configured to bind on 0.0.0.0 (all interfaces). "
            "Put it behind the dashboard's TLS terminator."
        )

    if config.auth.provider == "none":
        logger.warning(
            "auth.provider is 'none' — no sessions will be recognised and "
            "requests are forwarded without credentials"
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        backend=config.backend.base_url,
        credential_policy=config.auth.credential_policy,
        fixed_routes=len(config.routes),
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Handles:
      BACKEND_API_BASE        → config.backend.base_url
      GATEWAY_PORT            → config.proxy.port
      GATEWAY_IDENTITY_SECRET → config.auth.secret_key

    Raises:
        SystemExit(1): If BACKEND_API_BASE is not an absolute http(s) URL or
                       GATEWAY_PORT is not an integer.
    """
    env_base = os.environ.get("BACKEND_API_BASE")
    if env_base:
        base_url = normalize_base_url(env_base)
        _validate_base_url(base_url, "BACKEND_API_BASE")
        config.backend.base_url = base_url

    env_port = os.environ.get("GATEWAY_PORT")
    if env_port is not None:
        try:
            config.proxy.port = int(env_port)
        except ValueError:
            msg = (
                f"CONFIG ERROR: GATEWAY_PORT environment variable is not a valid "
                f"integer: '{env_port}'"
            )
            print(msg, file=sys.stderr)
            raise SystemExit(1)

    env_secret = os.environ.get("GATEWAY_IDENTITY_SECRET")
    if env_secret:
        config.auth.secret_key = env_secret
