import logging
from typing import Iterable, List, Optional
from urllib.parse import urlsplit

from origin_mask.errors import ConfigurationError, RouteNotMapped
from origin_mask.models import ResolvedRoute, UpstreamMapping

logger = logging.getLogger("uvicorn.error")

# Characters that may follow an origin base in an absolute URL without
# the origin being a partial match (https://a.co must not match https://a.com).
_ORIGIN_BOUNDARY = ("/", "?", "#")


def _split_query(path: str) -> tuple:
    if "?" in path:
        path, query = path.split("?", 1)
        return path, "?" + query
    return path, ""


def _normalize_origin(url: str) -> str:
    """Lower-case scheme and host so origins compare case-insensitively."""
    if url.startswith("//"):
        url = "https:" + url
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return url
    head = f"{parts.scheme.lower()}://{parts.netloc.lower()}"
    return head + url[len(parts.scheme) + 3 + len(parts.netloc):]


class RouteResolver:
    """
    Maps inbound proxy paths to upstream origins and absolute upstream URLs
    back to proxy paths. The table is immutable after construction.
    """

    def __init__(self, mappings: Iterable[UpstreamMapping]):
        mappings = list(mappings)
        prefixes = [m.prefix for m in mappings]
        if len(set(prefixes)) != len(prefixes):
            raise ConfigurationError(f"Duplicate mapping prefixes in {prefixes}")
        defaults = [m for m in mappings if m.is_default]
        if len(defaults) > 1:
            raise ConfigurationError("Only one default '/' mapping is allowed")

        self._mappings: List[UpstreamMapping] = mappings
        self._default: Optional[UpstreamMapping] = defaults[0] if defaults else None
        self._by_prefix = sorted(mappings, key=lambda m: len(m.prefix), reverse=True)
        # Longest origin first; for a shared origin prefer the longest proxy prefix
        # so that a more specific mapping wins over the catch-all.
        self._by_origin = sorted(
            mappings,
            key=lambda m: (len(m.origin_base), len(m.prefix)),
            reverse=True,
        )

    @property
    def mappings(self) -> List[UpstreamMapping]:
        return list(self._mappings)

    @property
    def default_mapping(self) -> Optional[UpstreamMapping]:
        return self._default

    @staticmethod
    def _prefix_matches(prefix: str, path: str) -> bool:
        if prefix == "/":
            return True
        if not path.startswith(prefix):
            return False
        rest = path[len(prefix):]
        return rest == "" or rest.startswith("/")

    def resolve(self, path: str) -> ResolvedRoute:
        """Resolve a proxy path (optionally carrying a query string) to its upstream."""
        path_only, query = _split_query(path or "/")
        if not path_only.startswith("/"):
            path_only = "/" + path_only

        for mapping in self._by_prefix:
            if mapping.is_default:
                continue
            if self._prefix_matches(mapping.prefix, path_only):
                upstream_path = path_only[len(mapping.prefix):] or "/"
                return ResolvedRoute(
                    origin_base=mapping.origin_base,
                    upstream_path=upstream_path + query,
                    matched_prefix=mapping.prefix,
                )

        if self._default is None:
            raise RouteNotMapped(path)
        return ResolvedRoute(
            origin_base=self._default.origin_base,
            upstream_path=path_only + query,
            matched_prefix="/",
        )

    @staticmethod
    def _strip_origin(origin_base: str, url: str) -> Optional[str]:
        if not url.startswith(origin_base):
            return None
        rest = url[len(origin_base):]
        if rest and not rest.startswith(_ORIGIN_BOUNDARY):
            return None
        return rest

    @staticmethod
    def _join_prefix(prefix: str, rest: str) -> str:
        if not rest:
            return prefix
        if rest.startswith("/"):
            return rest if prefix == "/" else prefix + rest
        # Origin followed directly by a query string or fragment.
        return ("/" if prefix == "/" else prefix) + rest

    def reverse_map(self, absolute_url: str) -> Optional[str]:
        """
        Translate an absolute upstream URL into a proxy-relative path.

        A candidate is accepted only when resolving it leads back to the same
        URL, so routing and rewriting stay exact inverses. Returns None when no
        mapping can represent the URL.
        """
        if not absolute_url:
            return None
        url = _normalize_origin(absolute_url.strip())
        for mapping in self._by_origin:
            origin = _normalize_origin(mapping.origin_base)
            rest = self._strip_origin(origin, url)
            if rest is None:
                continue
            candidate = self._join_prefix(mapping.prefix, rest)
            if self._round_trips(candidate, origin, rest):
                return candidate
            logger.debug(
                f"[Routing] Reverse candidate {candidate} for {absolute_url} "
                f"does not resolve back to {mapping.origin_base}, trying next mapping"
            )
        return None

    def _round_trips(self, candidate: str, origin: str, rest: str) -> bool:
        path_part = candidate.split("#", 1)[0]
        route = self.resolve(path_part)
        if _normalize_origin(route.origin_base) != origin:
            return False
        expected = rest.split("#", 1)[0] or "/"
        if expected.startswith("?"):
            expected = "/" + expected
        return route.upstream_path == expected
