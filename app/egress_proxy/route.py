import asyncio
import logging
from contextlib import suppress

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from app.egress_proxy.models import InboundRequest, ProxyResponse
from app.egress_proxy.service import ProxyService
from app.vars import PROXY_BASE_PATH

router = APIRouter(prefix=PROXY_BASE_PATH)
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]
DISCONNECT_POLL_SECONDS = 0.25
# nginx convention for "client closed request"; the client never sees it
CLIENT_CLOSED_REQUEST = 499


def get_proxy_service(request: Request) -> ProxyService:
    return request.app.state.proxy_service


def raw_path(request: Request) -> str:
    """Request path exactly as sent, percent-escapes intact."""
    raw = request.scope.get("raw_path")
    if not raw:
        return request.url.path
    return raw.split(b"?", 1)[0].decode("latin-1")


async def to_inbound_request(request: Request) -> InboundRequest:
    headers = httpx.Headers(request.headers.raw)
    return InboundRequest(
        method=request.method,
        path=raw_path(request),
        query=request.url.query,
        protocol=headers.get("x-forwarded-proto") or request.url.scheme,
        host=headers.get("host"),
        headers=headers,
        body=await request.body(),
    )


def to_response(result: ProxyResponse, method: str = "GET") -> Response:
    response = Response(content=result.body, status_code=result.status_code)
    # HEAD has no body to measure, so the upstream length stands
    upstream_length = method.upper() == "HEAD" and "content-length" in result.headers
    relayed = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in result.headers.multi_items()
        if upstream_length or name.lower() != "content-length"
    ]
    computed = (
        []
        if upstream_length
        else [h for h in response.raw_headers if h[0] == b"content-length"]
    )
    response.raw_headers = relayed + computed
    return response


async def _until_disconnected(request: Request) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


@router.api_route("", methods=PROXY_METHODS)
@router.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy_all(request: Request, service: ProxyService = Depends(get_proxy_service)):
    """Catch-all route that relays requests through the egress proxy."""
    inbound = await to_inbound_request(request)
    proxy_task = asyncio.create_task(service.handle(inbound))
    watcher = asyncio.create_task(_until_disconnected(request))
    try:
        done, _ = await asyncio.wait(
            {proxy_task, watcher}, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        proxy_task.cancel()
        raise
    finally:
        watcher.cancel()

    if proxy_task not in done:
        logger.warning(
            f"[EgressProxy] Client disconnected, cancelling upstream call for {inbound.path}"
        )
        proxy_task.cancel()
        with suppress(asyncio.CancelledError):
            await proxy_task
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    return to_response(proxy_task.result(), request.method)
