import json
import os
from decimal import Decimal, InvalidOperation

from pydantic import TypeAdapter, ValidationError

from origin_mask.errors import ConfigurationError
from origin_mask.models import ContentEditRule, UpstreamMapping

SERVICE_NAME = os.getenv("SERVICE_NAME", "origin-mask")
PORT = int(os.environ.get("PORT", "3000"))

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")


def _split_list(raw: str) -> list:
    return [item.strip() for item in (raw or "").split(",") if item.strip()]


def _parse_pairs(raw: str, name: str) -> list:
    """Parse ``key=value,key=value`` entries, splitting each on the first ``=``."""
    pairs = []
    for entry in _split_list(raw):
        if "=" not in entry:
            raise ConfigurationError(f"{name}: expected key=value, got '{entry}'")
        key, val = entry.split("=", 1)
        key = key.strip()
        val = val.strip()
        if not key or not val:
            raise ConfigurationError(f"{name}: empty key or value in '{entry}'")
        pairs.append((key, val))
    return pairs


def _normalize_prefix(prefix: str) -> str:
    if not prefix.startswith("/"):
        prefix = "/" + prefix
    if len(prefix) > 1:
        prefix = prefix.rstrip("/") or "/"
    return prefix


def parse_upstream_mappings(raw: str) -> list:
    mappings = []
    seen = set()
    for prefix, origin in _parse_pairs(raw, "UPSTREAM_MAPPINGS"):
        prefix = _normalize_prefix(prefix)
        if prefix in seen:
            raise ConfigurationError(f"UPSTREAM_MAPPINGS: duplicate prefix '{prefix}'")
        if not origin.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"UPSTREAM_MAPPINGS: origin for '{prefix}' must be an http(s) URL"
            )
        seen.add(prefix)
        mappings.append(UpstreamMapping(prefix=prefix, origin_base=origin.rstrip("/")))
    if "/" not in seen:
        raise ConfigurationError("UPSTREAM_MAPPINGS: a default '/' mapping is required")
    return mappings


def parse_redirect_overrides(raw: str) -> dict:
    overrides = {}
    for fragment, destination in _parse_pairs(raw, "REDIRECT_OVERRIDES"):
        if not destination.startswith("/"):
            destination = "/" + destination
        overrides[fragment] = destination
    return overrides


def parse_statuses(raw: str) -> frozenset:
    try:
        return frozenset(int(s) for s in _split_list(raw))
    except ValueError as e:
        raise ConfigurationError(f"Invalid status list '{raw}': {e}")


def parse_content_edit_rules(raw: str) -> list:
    if not raw or not raw.strip():
        return []
    try:
        return TypeAdapter(list[ContentEditRule]).validate_python(json.loads(raw))
    except (ValueError, ValidationError) as e:
        raise ConfigurationError(f"Invalid content edit rules: {e}")


def _load_content_edit_rules() -> list:
    path = os.getenv("CONTENT_EDIT_RULES_FILE", "")
    if path:
        with open(path, "r", encoding="utf-8") as f:
            return parse_content_edit_rules(f.read())
    return parse_content_edit_rules(os.getenv("CONTENT_EDIT_RULES", ""))


def parse_decimal(raw: str, name: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ConfigurationError(f"{name}: '{raw}' is not a number")


UPSTREAM_MAPPINGS = parse_upstream_mappings(
    os.getenv("UPSTREAM_MAPPINGS", "/=https://example.com")
)
UPSTREAM_TIMEOUT = float(os.getenv("UPSTREAM_TIMEOUT", "30"))
UPSTREAM_PASSTHROUGH_STATUSES = parse_statuses(
    os.getenv("UPSTREAM_PASSTHROUGH_STATUSES", "404")
)

REDIRECT_OVERRIDES = parse_redirect_overrides(os.getenv("REDIRECT_OVERRIDES", ""))

COOKIE_PATH_MODE = os.getenv("COOKIE_PATH_MODE", "root").lower()
COOKIE_STRIP_SECURE = os.getenv("COOKIE_STRIP_SECURE", "auto").lower()
if COOKIE_PATH_MODE not in ("root", "prefix"):
    raise ConfigurationError("COOKIE_PATH_MODE must be 'root' or 'prefix'")
if COOKIE_STRIP_SECURE not in ("auto", "true", "false"):
    raise ConfigurationError("COOKIE_STRIP_SECURE must be 'auto', 'true' or 'false'")

CONTENT_EDIT_RULES = _load_content_edit_rules()
EXCHANGE_RATE = parse_decimal(os.getenv("EXCHANGE_RATE", "5.00"), "EXCHANGE_RATE")
CURRENCY_SYMBOL = os.getenv("CURRENCY_SYMBOL", "R$")
WATCHDOG_PAGE_MATCHER = os.getenv("WATCHDOG_PAGE_MATCHER", "")
WATCHDOG_INTERVAL_MS = int(os.getenv("WATCHDOG_INTERVAL_MS", "500"))
REWRITE_CSS_JS = os.getenv("REWRITE_CSS_JS", "true").lower() == "true"

CACHE_STATIC_TTL = float(os.getenv("CACHE_STATIC_TTL", "3600"))
CACHE_DYNAMIC_TTL = float(os.getenv("CACHE_DYNAMIC_TTL", "30"))
CACHE_MAX_ENTRIES = int(os.getenv("CACHE_MAX_ENTRIES", "500"))
CACHE_SWEEP_INTERVAL = float(os.getenv("CACHE_SWEEP_INTERVAL", "60"))
CACHE_DENYLIST = _split_list(
    os.getenv(
        "CACHE_DENYLIST",
        "/api/captured-text,/api/set-selected-choice,/health,"
        "/checkout,/payment,/login,/logout,/auth,/session,/profile",
    )
)
CACHE_STATIC_EXTENSIONS = [
    ext if ext.startswith(".") else f".{ext}"
    for ext in _split_list(
        os.getenv(
            "CACHE_STATIC_EXTENSIONS",
            ".js,.css,.png,.jpg,.jpeg,.gif,.svg,.webp,.avif,.ico,"
            ".woff,.woff2,.ttf,.otf,.eot,.map,.mp4,.webm",
        )
    )
]

CAPTURE_SOURCE_PATH = os.getenv("CAPTURE_SOURCE_PATH", "")
CAPTURE_SELECTOR = os.getenv("CAPTURE_SELECTOR", "h1")
CAPTURE_TTL = float(os.getenv("CAPTURE_TTL", "60"))
CAPTURE_REFRESH_INTERVAL = float(os.getenv("CAPTURE_REFRESH_INTERVAL", "60"))

STATIC_DIR = os.getenv("STATIC_DIR", "")
STATIC_MOUNT_PATH = _normalize_prefix(os.getenv("STATIC_MOUNT_PATH", "/static-local"))
