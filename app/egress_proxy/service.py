import logging
import time
import uuid
from typing import Callable, Optional

import httpx
from opentelemetry import trace
from prometheus_client import Counter

from app.egress_proxy.circuit_breaker import BreakerSettings, CircuitBreaker
from app.egress_proxy.mappings import PrefixMappingTable, build_mapping_table
from app.egress_proxy.models import (
    InboundRequest,
    ProxyResponse,
    json_response,
    without_hop_by_hop,
)
from app.egress_proxy.rate_limiter import RateLimiter
from app.egress_proxy.redirect_client import RedirectFollowingClient
from app.egress_proxy.state_store import ProxyStateStoreBase, proxy_state_store
from app.utils import redact_headers
from app.utils.traced_requests import traced_request
from app.vars import (
    BREAKER_COOLDOWN_SECONDS,
    BREAKER_ERROR_THRESHOLD,
    BREAKER_LATENCY_MS,
    PROXY_MAX_REDIRECTS,
    PROXY_STATE_STORE,
    PROXY_TIMEOUT_MS,
    RATE_LIMIT_PER_SECOND,
    configured_mappings,
)

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

CORRELATION_HEADER = "x-correlationid"
REQUEST_ID_HEADER = "x-request-id"

PROXY_DECISIONS = Counter(
    "egress_proxy_decisions_total",
    "Proxy decisions by mapping prefix and outcome",
    ["prefix", "outcome"],
)


def correlation_id_for(headers: httpx.Headers) -> str:
    """Inbound correlation id (either header, any case) or a fresh one."""
    return (
        headers.get(CORRELATION_HEADER)
        or headers.get(REQUEST_ID_HEADER)
        or str(uuid.uuid4())
    )


def inbound_url(inbound: InboundRequest) -> Optional[str]:
    if not inbound.path:
        return None
    if inbound.protocol and inbound.host:
        return f"{inbound.protocol}://{inbound.host}{inbound.path}"
    if inbound.host:
        return f"{inbound.host}{inbound.path}"
    return inbound.path


class ProxyService:
    """
    One egress proxy: mapping table, rate limiter, circuit breaker and
    upstream client, built once at start-up and shared by all requests.
    """

    def __init__(
        self,
        mappings: PrefixMappingTable,
        rate_limiter: RateLimiter,
        breaker: CircuitBreaker,
        client: RedirectFollowingClient,
        rate_limit_per_second: int = RATE_LIMIT_PER_SECOND,
        store: Optional[ProxyStateStoreBase] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.mappings = mappings
        self.rate_limiter = rate_limiter
        self.breaker = breaker
        self.client = client
        self.rate_limit_per_second = rate_limit_per_second
        self._store = store
        self._monotonic = monotonic

    @classmethod
    def from_environment(cls) -> "ProxyService":
        store = proxy_state_store(PROXY_STATE_STORE)
        settings = BreakerSettings(
            error_threshold=BREAKER_ERROR_THRESHOLD,
            latency_threshold_ms=BREAKER_LATENCY_MS,
            cooldown_seconds=BREAKER_COOLDOWN_SECONDS,
        )
        logger.info(
            f"[EgressProxy] store={PROXY_STATE_STORE} rate={RATE_LIMIT_PER_SECOND}/s "
            f"breaker={settings} redirects={PROXY_MAX_REDIRECTS} timeout={PROXY_TIMEOUT_MS}ms"
        )
        return cls(
            mappings=build_mapping_table(configured_mappings()),
            rate_limiter=RateLimiter(store),
            breaker=CircuitBreaker(store, settings),
            client=RedirectFollowingClient(
                max_redirects=PROXY_MAX_REDIRECTS, timeout_ms=PROXY_TIMEOUT_MS
            ),
            rate_limit_per_second=RATE_LIMIT_PER_SECOND,
            store=store,
        )

    async def aclose(self) -> None:
        await self.client.aclose()
        if self._store is not None:
            await self._store.close()

    async def handle(self, inbound: InboundRequest) -> ProxyResponse:
        correlation_id = correlation_id_for(inbound.headers)
        request_id = inbound.headers.get(REQUEST_ID_HEADER) or correlation_id
        with traced_request(
            tracer,
            "egress_proxy.request",
            correlation_id,
            f"[EgressProxy] [{correlation_id}] Incoming proxy request "
            f"{inbound.method} {inbound.protocol}://{inbound.host}{inbound.path}",
            {"http.method": inbound.method or ""},
        ) as span:
            response, prefix, outcome = await self._dispatch(inbound, correlation_id, span)
            PROXY_DECISIONS.labels(prefix=prefix or "-", outcome=outcome).inc()
            span.set_attribute("proxy.outcome", outcome)
            span.set_attribute("http.status_code", response.status_code)

        headers = without_hop_by_hop(response.headers)
        if CORRELATION_HEADER not in headers:
            headers[CORRELATION_HEADER] = correlation_id
        if REQUEST_ID_HEADER not in headers:
            headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            f"[EgressProxy] [{correlation_id}] Returning {response.status_code} ({outcome})"
        )
        return ProxyResponse(
            status_code=response.status_code, headers=headers, body=response.body
        )

    async def _dispatch(
        self, inbound: InboundRequest, correlation_id: str, span
    ) -> tuple[ProxyResponse, Optional[str], str]:
        url = inbound_url(inbound)
        if url is None:
            message = "Invalid request, missing path"
            logger.error(f"[EgressProxy] [{correlation_id}] {message}")
            return json_response(400, message), None, "invalid_request"

        mapping = self.mappings.resolve(url)
        matched = url
        if mapping is None and url != inbound.path:
            mapping = self.mappings.resolve(inbound.path)
            matched = inbound.path
        available = ", ".join(self.mappings.prefixes)
        if mapping is None:
            message = f"No proxy mapping found for path: {url} (available: {available})"
            logger.error(f"[EgressProxy] [{correlation_id}] {message}")
            return json_response(400, message), None, "no_mapping"
        logger.info(
            f"[EgressProxy] [{correlation_id}] Matched proxy mapping {mapping.prefix} "
            f"-> {mapping.target} for {matched} (available: {available})"
        )
        span.set_attribute("proxy.prefix", mapping.prefix)

        target_base = mapping.target + matched[len(mapping.prefix):]
        try:
            upstream_url = httpx.URL(
                f"{target_base}?{inbound.query}" if inbound.query else target_base
            )
            if upstream_url.scheme not in ("http", "https") or not upstream_url.host:
                raise httpx.InvalidURL(f"not an absolute http(s) URL: {target_base}")
        except httpx.InvalidURL as e:
            message = (
                f"Invalid target URL in mapping for prefix {mapping.prefix}: "
                f"{mapping.target} (caused by {e})"
            )
            logger.error(f"[EgressProxy] [{correlation_id}] {message}")
            return json_response(400, message), mapping.prefix, "invalid_target"

        allowed = await self.rate_limiter.allow(
            mapping.prefix, self.rate_limit_per_second, correlation_id
        )
        if not allowed:
            logger.warning(
                f"[EgressProxy] [{correlation_id}] Rate limit {self.rate_limit_per_second}/s "
                f"exceeded for {mapping.prefix}, rejecting request"
            )
            return json_response(429, "Rate limit exceeded"), mapping.prefix, "rate_limited"

        decision = await self.breaker.check(mapping.prefix, correlation_id)
        if not decision.allowed:
            return (
                json_response(503, "Upstream unavailable (circuit open)"),
                mapping.prefix,
                "circuit_open",
            )

        headers = without_hop_by_hop(inbound.headers)
        headers["host"] = upstream_url.netloc.decode("ascii")
        if CORRELATION_HEADER not in headers:
            headers[CORRELATION_HEADER] = correlation_id
        span.set_attribute("proxy.upstream_url", str(upstream_url))
        logger.info(
            f"[EgressProxy] [{correlation_id}] Proxying {inbound.method} to {upstream_url}"
        )
        logger.debug(
            f"[EgressProxy] [{correlation_id}] Upstream headers {redact_headers(headers)}"
        )

        start = self._monotonic()
        response = await self.client.proxy(
            upstream_url, inbound.method, headers, inbound.body, correlation_id
        )
        latency_ms = (self._monotonic() - start) * 1000
        span.set_attribute("proxy.latency_ms", latency_ms)
        logger.info(
            f"[EgressProxy] [{correlation_id}] Upstream response {response.status_code} "
            f"from {mapping.prefix} in {latency_ms:.0f}ms"
        )

        await self.breaker.record(
            mapping.prefix,
            decision.baseline,
            response.status_code,
            latency_ms,
            correlation_id,
        )
        return response, mapping.prefix, "upstream"
