from dataclasses import dataclass, field
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

Headers = List[Tuple[str, str]]


@dataclass(frozen=True)
class UpstreamMapping:
    prefix: str
    origin_base: str

    @property
    def is_default(self) -> bool:
        return self.prefix == "/"


@dataclass(frozen=True)
class UploadRecord:
    """A decoded multipart part. Parts without a filename are plain form fields."""

    field_name: str
    data: bytes
    filename: Optional[str] = None
    content_type: Optional[str] = None


@dataclass(frozen=True)
class ProxyRequest:
    method: str
    path: str
    query: str = ""
    headers: Tuple[Tuple[str, str], ...] = ()
    body: bytes = b""
    client_host: str = "unknown"
    scheme: str = "http"
    uploads: Tuple[UploadRecord, ...] = ()

    @property
    def path_with_query(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return default

    @property
    def is_secure_transport(self) -> bool:
        """True when the client reached the proxy over TLS (directly or via a terminator)."""
        forwarded_proto = self.header("x-forwarded-proto")
        if forwarded_proto:
            return forwarded_proto.split(",")[0].strip().lower() == "https"
        return self.scheme == "https"


@dataclass(frozen=True)
class ResolvedRoute:
    origin_base: str
    upstream_path: str
    matched_prefix: str

    @property
    def url(self) -> str:
        return f"{self.origin_base}{self.upstream_path}"

    @property
    def is_default(self) -> bool:
        return self.matched_prefix == "/"


@dataclass
class UpstreamResponse:
    status: int
    headers: Headers
    body: bytes
    content_type: str = ""

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        values = self.header_values(name)
        return values[0] if values else default

    def header_values(self, name: str) -> List[str]:
        name = name.lower()
        return [value for key, value in self.headers if key.lower() == name]

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status < 400 and bool(self.header("location"))


@dataclass
class ProxyResponse:
    status: int
    headers: Headers = field(default_factory=list)
    body: bytes = b""

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return default


@dataclass
class CacheEntry:
    key: str
    status: int
    headers: Headers
    body: bytes
    created_at: float
    cache_class: str


@dataclass
class CapturedTextSnapshot:
    text: Optional[str]
    captured_at: Optional[float]
    refreshing: bool


@dataclass(frozen=True)
class RedirectDecision:
    status: int
    location: str
    # "override", "mapped" or "passthrough"
    source: str


class ElementSelector(BaseModel):
    """Identifies the elements a content edit applies to. Exactly one key is expected."""

    id: Optional[str] = None
    class_: Optional[str] = Field(default=None, alias="class")
    text: Optional[str] = None
    text_contains: Optional[str] = None
    css: Optional[str] = None

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def _single_key(self):
        keys = [
            k
            for k in ("id", "class_", "text", "text_contains", "css")
            if getattr(self, k) is not None
        ]
        if len(keys) > 1:
            raise ValueError(f"selector must use a single key, got {keys}")
        return self

    @property
    def is_empty(self) -> bool:
        return all(
            getattr(self, k) is None
            for k in ("id", "class_", "text", "text_contains", "css")
        )


class ContentEditRule(BaseModel):
    page: str = ""
    operation: Literal["convert_currency", "set_text", "set_attribute", "replace_text"]
    selector: ElementSelector = Field(default_factory=ElementSelector)
    value: Optional[str] = None
    attribute: Optional[str] = None
    # Only used by replace_text: the substring to replace with value.
    search: Optional[str] = None
    append_if_missing: bool = True
    fallback_parent: str = "body"
    fallback_tag: str = "div"

    @model_validator(mode="after")
    def _check_operation(self):
        if self.operation in ("set_text", "set_attribute", "replace_text"):
            if self.value is None:
                raise ValueError(f"{self.operation} requires a value")
            if self.selector.is_empty:
                raise ValueError(f"{self.operation} requires a selector")
        if self.operation == "set_attribute" and not self.attribute:
            raise ValueError("set_attribute requires an attribute name")
        if self.operation == "replace_text" and not self.search:
            raise ValueError("replace_text requires a search string")
        return self

    def applies_to(self, page_path: str) -> bool:
        return not self.page or self.page in page_path


class CapturedTextResponse(BaseModel):
    capturedText: Optional[str]
    lastCaptureTime: Optional[float]
    isCapturing: bool


class CacheStats(BaseModel):
    entries: int
    maxEntries: int


class HealthResponse(BaseModel):
    status: str
    uptimeSeconds: float
    requestCount: int
    errorCount: int
    cache: CacheStats
