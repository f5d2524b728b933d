import logging
from typing import Iterable, List

logger = logging.getLogger("uvicorn.error")

COOKIE_PATH_MODES = ("root", "prefix")
STRIP_SECURE_POLICIES = ("auto", "true", "false")


def _join_path(prefix: str, path: str) -> str:
    if prefix == "/":
        return path or "/"
    if not path or path == "/":
        return prefix
    return prefix + (path if path.startswith("/") else "/" + path)


class CookieRewriter:
    """
    Rewrites ``Set-Cookie`` values so the browser scopes them to the proxy host.

    The attribute list is edited textually instead of going through
    ``http.cookies.SimpleCookie``: the name=value pair and unknown attributes
    (``Partitioned``, ``Priority``...) keep their original spelling.

    Policies:
        path_mode: ``root`` sets ``Path=/``; ``prefix`` maps the upstream path
            under the proxy prefix the request was routed through.
        strip_secure: ``auto`` strips ``Secure`` only when the client reached the
            proxy over plain HTTP, ``true`` always, ``false`` never.
    """

    def __init__(self, path_mode: str = "root", strip_secure: str = "auto"):
        if path_mode not in COOKIE_PATH_MODES:
            raise ValueError(f"Unknown cookie path mode: {path_mode}")
        if strip_secure not in STRIP_SECURE_POLICIES:
            raise ValueError(f"Unknown strip-secure policy: {strip_secure}")
        self.path_mode = path_mode
        self.strip_secure = strip_secure

    def should_strip_secure(self, secure_transport: bool) -> bool:
        if self.strip_secure == "auto":
            return not secure_transport
        return self.strip_secure == "true"

    def rewrite(
        self,
        set_cookie_values: Iterable[str],
        matched_prefix: str = "/",
        secure_transport: bool = True,
    ) -> List[str]:
        strip_secure = self.should_strip_secure(secure_transport)
        return [
            self.rewrite_one(value, matched_prefix, strip_secure)
            for value in set_cookie_values
        ]

    def rewrite_one(self, set_cookie: str, matched_prefix: str, strip_secure: bool) -> str:
        parts = [p.strip() for p in set_cookie.split(";")]
        if not parts or "=" not in parts[0]:
            logger.warning(f"[Cookie] Unparseable Set-Cookie left untouched: {set_cookie}")
            return set_cookie

        name_value, attributes = parts[0], [p for p in parts[1:] if p]
        out = [name_value]
        path_seen = False

        for attribute in attributes:
            key, _, value = attribute.partition("=")
            key_lower = key.strip().lower()

            if key_lower == "domain":
                continue
            if key_lower == "path":
                path_seen = True
                out.append(f"Path={self._rewrite_path(value.strip(), matched_prefix)}")
                continue
            if key_lower == "secure" and strip_secure:
                continue
            if key_lower == "samesite" and strip_secure and value.strip().lower() == "none":
                # Browsers reject SameSite=None without Secure
                out.append("SameSite=Lax")
                continue
            out.append(attribute)

        if not path_seen:
            out.append(f"Path={self._rewrite_path('/', matched_prefix)}")
        return "; ".join(out)

    def _rewrite_path(self, path: str, matched_prefix: str) -> str:
        if self.path_mode == "root":
            return "/"
        return _join_path(matched_prefix or "/", path or "/")
