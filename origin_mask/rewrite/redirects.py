import logging
from typing import Dict, Optional
from urllib.parse import urljoin, urlsplit

from origin_mask.models import RedirectDecision
from origin_mask.routing.resolver import RouteResolver

logger = logging.getLogger("uvicorn.error")


class RedirectRewriter:
    """
    Rewrites upstream ``Location`` values into proxy-relative form.

    Order of precedence: the static override table, then the reverse mapping,
    then pass-through of the absolute URL when no mapping can represent it.
    """

    def __init__(
        self, resolver: RouteResolver, overrides: Optional[Dict[str, str]] = None
    ):
        self.resolver = resolver
        # Longest fragment first so the most specific override wins
        self.overrides = sorted(
            (overrides or {}).items(), key=lambda item: len(item[0]), reverse=True
        )

    def match_override(self, absolute_url: str) -> Optional[str]:
        parts = urlsplit(absolute_url)
        target = parts.path + (f"?{parts.query}" if parts.query else "")
        for fragment, destination in self.overrides:
            if fragment in target:
                return destination
        return None

    def rewrite(self, location: str, dispatch_origin: str, status: int) -> RedirectDecision:
        """
        Args:
            location: The raw Location header received from the upstream.
            dispatch_origin: Absolute URL of the upstream request that produced the
                redirect; relative locations resolve against it.
            status: The upstream 3xx status, preserved in the decision.
        """
        resolved = urljoin(dispatch_origin, (location or "").strip())

        destination = self.match_override(resolved)
        if destination is not None:
            logger.info(f"[Redirect] Override {resolved} -> {destination}")
            return RedirectDecision(
                status=status, location=destination or "/", source="override"
            )

        mapped = self.resolver.reverse_map(resolved)
        if mapped is not None:
            logger.debug(f"[Redirect] {location} -> {mapped}")
            return RedirectDecision(status=status, location=mapped or "/", source="mapped")

        logger.warning(
            f"[Redirect] No mapping for {resolved}, passing the absolute URL through"
        )
        return RedirectDecision(status=status, location=resolved or "/", source="passthrough")
