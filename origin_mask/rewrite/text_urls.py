import re

from origin_mask.routing.resolver import RouteResolver


class TextUrlRewriter:
    """
    Substitutes absolute upstream URLs inside free text (CSS, JavaScript,
    inline scripts) with their proxy-relative form.

    Works on the mapping table directly: every ``origin_base`` occurrence that
    ends on a URL boundary is replaced by its proxy prefix. The path that
    follows is kept as is, so a URL is only substituted when the reverse
    mapping accepts it.
    """

    # Characters that terminate a URL inside quoted strings and CSS url(...)
    _URL_TAIL = r"""(?:\\/|[^\s"'`<>()\\])*"""

    def __init__(self, resolver: RouteResolver):
        self.resolver = resolver
        origins = sorted(
            {m.origin_base for m in resolver.mappings}, key=len, reverse=True
        )
        if origins:
            # Base paths may appear with JSON-escaped slashes too
            alternatives = "|".join(
                re.escape(o.split("://", 1)[1]).replace("/", r"(?:\\?/)")
                for o in origins
            )
            self._pattern = re.compile(
                rf"(?:https?:)?(?:\\?/){{2}}(?:{alternatives})(?![\w.-])"
                + self._URL_TAIL,
                re.IGNORECASE,
            )
        else:
            self._pattern = None

    def _replace(self, match: re.Match) -> str:
        url = match.group(0)
        # JSON-escaped slashes (https:\/\/host\/path) are normalized for the lookup
        escaped = "\\/" in url
        lookup = url.replace("\\/", "/")
        if lookup.startswith("//"):
            lookup = "https:" + lookup
        mapped = self.resolver.reverse_map(lookup)
        if mapped is None:
            return url
        return mapped.replace("/", "\\/") if escaped else mapped

    def rewrite(self, text: str) -> str:
        if not text or self._pattern is None:
            return text
        return self._pattern.sub(self._replace, text)

    def rewrite_bytes(self, body: bytes, charset: str = "utf-8") -> bytes:
        text = body.decode(charset)
        return self.rewrite(text).encode(charset)
