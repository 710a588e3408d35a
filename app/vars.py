import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "mtd-egress-proxy")
PROXY_BASE_PATH = os.environ.get("PROXY_BASE_PATH", "/proxy").rstrip("/")

HMRC_API_PROXY_MAPPED_URL = os.getenv("HMRC_API_PROXY_MAPPED_URL", "")
HMRC_API_PROXY_EGRESS_URL = os.getenv("HMRC_API_PROXY_EGRESS_URL", "")
HMRC_SANDBOX_API_PROXY_MAPPED_URL = os.getenv("HMRC_SANDBOX_API_PROXY_MAPPED_URL", "")
HMRC_SANDBOX_API_PROXY_EGRESS_URL = os.getenv("HMRC_SANDBOX_API_PROXY_EGRESS_URL", "")
PROXY_MAPPINGS = os.getenv("PROXY_MAPPINGS", "")

RATE_LIMIT_PER_SECOND = int(os.getenv("RATE_LIMIT_PER_SECOND", "10"))
BREAKER_ERROR_THRESHOLD = int(os.getenv("BREAKER_ERROR_THRESHOLD", "10"))
BREAKER_LATENCY_MS = int(os.getenv("BREAKER_LATENCY_MS", "5000"))
BREAKER_COOLDOWN_SECONDS = int(os.getenv("BREAKER_COOLDOWN_SECONDS", "60"))

PROXY_MAX_REDIRECTS = int(os.getenv("PROXY_MAX_REDIRECTS", "5"))
PROXY_TIMEOUT_MS = int(os.getenv("PROXY_TIMEOUT_MS", "30000"))

# "memory" keeps counters per process, "dynamodb" shares them across instances
PROXY_STATE_STORE = os.getenv("PROXY_STATE_STORE", "memory").lower()
STATE_TABLE_NAME = os.getenv(
    "STATE_TABLE_NAME",
    os.getenv("PROXY_STATE_DYNAMODB_TABLE_NAME", "ProxyStateTable"),
)
AWS_REGION = os.getenv("AWS_REGION", "eu-west-2")
AWS_ENDPOINT_URL_DYNAMODB = os.getenv(
    "AWS_ENDPOINT_URL_DYNAMODB", os.getenv("AWS_ENDPOINT_URL", "")
)

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")


def _parse_mappings(raw: str) -> list[tuple[str, str]]:
    mappings: list[tuple[str, str]] = []
    if not raw:
        return mappings
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if "=" in entry:
            prefix, target = entry.split("=", 1)
            prefix = prefix.strip()
            target = target.strip()
            if prefix and target:
                mappings.append((prefix, target))
    return mappings


def configured_mappings() -> list[tuple[str, str]]:
    """Ordered (prefix, target) pairs: live HMRC, sandbox HMRC, then PROXY_MAPPINGS."""
    mappings: list[tuple[str, str]] = []
    if HMRC_API_PROXY_MAPPED_URL and HMRC_API_PROXY_EGRESS_URL:
        mappings.append((HMRC_API_PROXY_MAPPED_URL, HMRC_API_PROXY_EGRESS_URL))
    if HMRC_SANDBOX_API_PROXY_MAPPED_URL and HMRC_SANDBOX_API_PROXY_EGRESS_URL:
        mappings.append(
            (HMRC_SANDBOX_API_PROXY_MAPPED_URL, HMRC_SANDBOX_API_PROXY_EGRESS_URL)
        )
    mappings.extend(_parse_mappings(PROXY_MAPPINGS))
    return mappings
