import logging
from typing import Dict, Optional, Tuple

from bs4 import BeautifulSoup

from origin_mask.errors import RewriteFailure
from origin_mask.rewrite.content_edits import ContentEditor
from origin_mask.rewrite.scripts import (
    SHIM_MARKER,
    WATCHDOG_MARKER,
    render_network_shim,
    render_watchdog,
)
from origin_mask.rewrite.text_urls import TextUrlRewriter
from origin_mask.routing.resolver import RouteResolver

logger = logging.getLogger("uvicorn.error")

# Element kind -> attributes carrying a navigable/source/action URL
URL_ATTRIBUTES: Dict[str, Tuple[str, ...]] = {
    "a": ("href",),
    "link": ("href",),
    "area": ("href",),
    "script": ("src",),
    "img": ("src", "srcset"),
    "source": ("src", "srcset"),
    "iframe": ("src",),
    "video": ("src", "poster"),
    "audio": ("src",),
    "embed": ("src",),
    "form": ("action",),
}

_INLINE_TEXT_ELEMENTS = ("script", "style")


def content_kind(content_type: str) -> Optional[str]:
    """Classify a Content-Type into 'html', 'css', 'js' or None (not rewritten)."""
    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    if media_type == "text/html":
        return "html"
    if media_type == "text/css":
        return "css"
    if media_type in (
        "application/javascript",
        "text/javascript",
        "application/x-javascript",
        "application/ecmascript",
        "text/ecmascript",
    ):
        return "js"
    return None


def charset_of(content_type: str, default: str = "utf-8") -> str:
    for param in (content_type or "").split(";")[1:]:
        key, _, value = param.strip().partition("=")
        if key.lower() == "charset" and value:
            return value.strip().strip('"').lower()
    return default


class BodyRewriter:
    """
    Rewrites proxied documents so every upstream URL points back at the proxy.

    HTML goes through the full pipeline (attributes, network shim, content
    edits, watchdog); CSS and JavaScript only get the URL substitution.
    """

    def __init__(
        self,
        resolver: RouteResolver,
        content_editor: Optional[ContentEditor] = None,
        redirect_overrides: Optional[Dict[str, str]] = None,
        watchdog_page_matcher: str = "",
        watchdog_interval_ms: int = 500,
        rewrite_css_js: bool = True,
    ):
        self.resolver = resolver
        self.text_urls = TextUrlRewriter(resolver)
        self.content_editor = content_editor or ContentEditor([])
        self.redirect_overrides = dict(redirect_overrides or {})
        self.watchdog_page_matcher = watchdog_page_matcher
        self.rewrite_css_js = rewrite_css_js
        self.shim_source = render_network_shim(resolver.mappings)
        self.watchdog_source = render_watchdog(
            self.redirect_overrides, watchdog_interval_ms
        )

    def map_url(self, value: str) -> Optional[str]:
        """Proxy form of an absolute URL, or None when it should stay as is."""
        value = (value or "").strip()
        if not value.lower().startswith(("http://", "https://", "//")):
            # Relative URLs already resolve against the proxy host
            return None
        return self.resolver.reverse_map(value)

    def _map_srcset(self, srcset: str) -> str:
        candidates = []
        for candidate in srcset.split(","):
            parts = candidate.strip().split()
            if not parts:
                continue
            mapped = self.map_url(parts[0])
            if mapped is not None:
                parts[0] = mapped
            candidates.append(" ".join(parts))
        return ", ".join(candidates)

    def rewrite_attributes(self, soup: BeautifulSoup) -> int:
        """Rewrite URL attributes in place. Returns the number of changed attributes."""
        changed = 0
        for element in soup.find_all(list(URL_ATTRIBUTES)):
            for attribute in URL_ATTRIBUTES[element.name]:
                value = element.get(attribute)
                if not value or not isinstance(value, str):
                    continue
                if attribute == "srcset":
                    new_value = self._map_srcset(value)
                else:
                    new_value = self.map_url(value)
                if new_value is not None and new_value != value:
                    element[attribute] = new_value
                    changed += 1

        for element in soup.find_all(_INLINE_TEXT_ELEMENTS):
            if element.name == "script" and element.get(SHIM_MARKER) is not None:
                continue
            if element.string:
                new_text = self.text_urls.rewrite(str(element.string))
                if new_text != element.string:
                    element.string = new_text
                    changed += 1
        return changed

    def _ensure_head(self, soup: BeautifulSoup):
        if soup.head is not None:
            return soup.head
        head = soup.new_tag("head")
        if soup.html is not None:
            soup.html.insert(0, head)
        else:
            soup.insert(0, head)
        return head

    def inject_shim(self, soup: BeautifulSoup) -> None:
        if soup.find("script", attrs={SHIM_MARKER: True}) is not None:
            return
        script = soup.new_tag("script")
        script[SHIM_MARKER] = ""
        script.string = self.shim_source
        self._ensure_head(soup).insert(0, script)

    def wants_watchdog(self, page_path: str) -> bool:
        return bool(
            self.watchdog_page_matcher
            and self.redirect_overrides
            and self.watchdog_page_matcher in page_path
        )

    def inject_watchdog(self, soup: BeautifulSoup) -> None:
        if soup.find("script", attrs={WATCHDOG_MARKER: True}) is not None:
            return
        script = soup.new_tag("script")
        script[WATCHDOG_MARKER] = ""
        script.string = self.watchdog_source
        head = self._ensure_head(soup)
        # Right after the shim so it runs before any page script
        shim = head.find("script", attrs={SHIM_MARKER: True}, recursive=False)
        if shim is not None:
            shim.insert_after(script)
        else:
            head.insert(0, script)

    def rewrite_html(self, body: bytes, page_path: str, charset: str = "utf-8") -> bytes:
        try:
            text = body.decode(charset)
            soup = BeautifulSoup(text, "html.parser")
            changed = self.rewrite_attributes(soup)
            self.inject_shim(soup)
            edits = self.content_editor.apply(soup, page_path)
            logger.debug(
                f"[Rewrite] {page_path}: {changed} URL(s) rewritten, {edits} edit rule(s) applied"
            )
            if self.wants_watchdog(page_path):
                self.inject_watchdog(soup)
            return str(soup).encode(charset, errors="xmlcharrefreplace")
        except Exception as e:
            raise RewriteFailure(f"HTML rewrite failed for {page_path}: {e}", e) from e

    def rewrite_text(self, body: bytes, charset: str = "utf-8") -> bytes:
        try:
            return self.text_urls.rewrite_bytes(body, charset)
        except Exception as e:
            raise RewriteFailure(f"Text rewrite failed: {e}", e) from e

    def rewrite(self, body: bytes, content_type: str, page_path: str) -> bytes:
        """Dispatch on content type. Bodies of other types are returned unchanged."""
        kind = content_kind(content_type)
        if kind is None or not body:
            return body
        charset = charset_of(content_type)
        if kind == "html":
            return self.rewrite_html(body, page_path, charset)
        if not self.rewrite_css_js:
            return body
        return self.rewrite_text(body, charset)
