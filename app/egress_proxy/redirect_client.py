"""
Upstream HTTP client that follows redirects itself.

httpx can follow redirects, but the proxy needs control over each hop:

- 301/302/303 switch to GET and drop the body plus its entity headers.
- 307/308 replay the same method and body.
- ``Host`` follows the new URL and ``Authorization`` is dropped when the
  redirect leaves the current origin.
- Exceeding the redirect limit ends in a synthetic 508 instead of an exception.
- A redirect whose Location cannot be parsed is returned unchanged.

Neither ``single_request`` nor ``proxy`` raises on transport problems: a
connection failure becomes a 502 and a timeout a 504, both with a JSON
``message`` body, so the caller handles every outcome as a response.
"""

import logging
from typing import Optional, Union

import httpx

from app.egress_proxy.models import ProxyResponse, json_response
from app.vars import PROXY_MAX_REDIRECTS, PROXY_TIMEOUT_MS

logger = logging.getLogger("uvicorn.error")

REDIRECT_STATUSES = {301, 302, 303, 307, 308}
METHOD_CHANGING_STATUSES = {301, 302, 303}
ENTITY_HEADERS = ("content-length", "content-type")
DEFAULT_PORTS = {"http": 80, "https": 443}


def _origin(url: httpx.URL) -> tuple:
    return (url.scheme, url.host, url.port or DEFAULT_PORTS.get(url.scheme))


UNPARSED_LOCATION = "egress_proxy.unparsed_location"


async def _set_aside_invalid_location(response: httpx.Response) -> None:
    """
    httpx refuses a redirect whose Location it cannot parse before handing the
    response back. Move such a header into the response extensions so the
    redirect reaches the caller unchanged.
    """
    location = response.headers.get("location")
    if location is None or response.status_code not in REDIRECT_STATUSES:
        return
    try:
        httpx.URL(location)
    except httpx.InvalidURL:
        response.extensions[UNPARSED_LOCATION] = location
        del response.headers["location"]


class RedirectFollowingClient:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        max_redirects: int = PROXY_MAX_REDIRECTS,
        timeout_ms: int = PROXY_TIMEOUT_MS,
    ):
        self.max_redirects = max_redirects
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_ms / 1000),
            follow_redirects=False,
        )
        hooks = self._client.event_hooks
        hooks["response"] = [*hooks["response"], _set_aside_invalid_location]
        self._client.event_hooks = hooks

    async def aclose(self) -> None:
        await self._client.aclose()

    async def single_request(
        self,
        url: Union[str, httpx.URL],
        method: str,
        headers: httpx.Headers,
        body: Optional[bytes] = None,
        correlation_id: Optional[str] = None,
    ) -> ProxyResponse:
        """One request/response pair, with the body fully read."""
        try:
            response = await self._client.request(
                method, url, headers=headers, content=body or None
            )
        except httpx.TimeoutException as e:
            logger.error(f"[Redirects] [{correlation_id}] Upstream timeout for {method} {url}: {e!r}")
            return json_response(504, "Gateway timeout", error=str(e) or type(e).__name__)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"[Redirects] [{correlation_id}] Upstream request error for {method} {url}: {e!r}")
            return json_response(502, "Bad gateway", error=str(e) or type(e).__name__)

        content = response.content
        response_headers = httpx.Headers(response.headers)
        unparsed_location = response.extensions.get(UNPARSED_LOCATION)
        if unparsed_location is not None:
            response_headers["location"] = unparsed_location
        # httpx has already decoded the body, so the encoding headers no longer apply
        if "content-encoding" in response_headers:
            del response_headers["content-encoding"]
            if "content-length" in response_headers:
                del response_headers["content-length"]

        logger.info(
            f"[Redirects] [{correlation_id}] {method} {url} -> {response.status_code} ({len(content)} bytes)"
        )
        return ProxyResponse(
            status_code=response.status_code,
            headers=response_headers,
            body=content,
        )

    async def proxy(
        self,
        url: Union[str, httpx.URL],
        method: str,
        headers: httpx.Headers,
        body: Optional[bytes] = None,
        correlation_id: Optional[str] = None,
    ) -> ProxyResponse:
        current_url = httpx.URL(str(url))
        method = (method or "GET").upper()
        headers = httpx.Headers(headers)

        for hop in range(self.max_redirects + 1):
            response = await self.single_request(
                current_url, method, headers, body, correlation_id
            )
            status = response.status_code
            location = response.headers.get("location")
            if status not in REDIRECT_STATUSES or not location:
                return response

            try:
                next_url = current_url.join(location)
            except httpx.InvalidURL:
                logger.warning(
                    f"[Redirects] [{correlation_id}] Invalid redirect location {location!r} "
                    f"on {status}, returning upstream response"
                )
                return response

            next_headers = httpx.Headers(headers)
            if status in METHOD_CHANGING_STATUSES:
                method = "GET"
                body = None
                for name in ENTITY_HEADERS:
                    if name in next_headers:
                        del next_headers[name]

            next_headers["host"] = next_url.netloc.decode("ascii")
            if _origin(next_url) != _origin(current_url) and "authorization" in next_headers:
                del next_headers["authorization"]

            logger.info(
                f"[Redirects] [{correlation_id}] Following {status} redirect hop {hop + 1}: "
                f"{current_url} -> {next_url} as {method}"
            )
            current_url = next_url
            headers = next_headers

        logger.error(
            f"[Redirects] [{correlation_id}] Exceeded maximum of {self.max_redirects} redirects"
        )
        return json_response(508, "Too many redirects")
