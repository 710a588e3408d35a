import json
from dataclasses import dataclass, field
from typing import Optional

import httpx

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


def without_hop_by_hop(headers: httpx.Headers) -> httpx.Headers:
    """Drop the fixed hop-by-hop set plus any header listed in ``Connection``."""
    dropped = HOP_BY_HOP_HEADERS | {
        token.strip().lower()
        for token in headers.get_list("connection", split_commas=True)
        if token.strip()
    }
    return httpx.Headers(
        [
            (name, value)
            for name, value in headers.multi_items()
            if name.lower() not in dropped
        ]
    )


@dataclass(frozen=True)
class PrefixMapping:
    """Inbound URL prefix and the upstream base URL that replaces it."""

    prefix: str
    target: str


@dataclass
class InboundRequest:
    """Transport-neutral view of a request arriving at the proxy."""

    method: str
    path: Optional[str]
    query: str = ""
    protocol: Optional[str] = None
    host: Optional[str] = None
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    body: bytes = b""

    def __post_init__(self):
        if not isinstance(self.headers, httpx.Headers):
            self.headers = httpx.Headers(self.headers)


@dataclass
class ProxyResponse:
    """Status, headers and raw body, either relayed from upstream or synthesized."""

    status_code: int
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    body: bytes = b""

    def __post_init__(self):
        if not isinstance(self.headers, httpx.Headers):
            self.headers = httpx.Headers(self.headers)

    def json(self):
        return json.loads(self.body.decode("utf-8"))


def json_response(status_code: int, message: str, **extra) -> ProxyResponse:
    """Proxy-generated response with a JSON ``message`` body."""
    payload = {"message": message, **extra}
    return ProxyResponse(
        status_code=status_code,
        headers={"content-type": "application/json"},
        body=json.dumps(payload).encode("utf-8"),
    )
