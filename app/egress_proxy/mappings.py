import logging
from typing import Iterable, Optional

from app.egress_proxy.models import PrefixMapping

logger = logging.getLogger("uvicorn.error")


class PrefixMappingTable:
    """
    Ordered, immutable list of prefix mappings.

    Resolution is first-match-wins in configuration order using a literal
    ``startswith`` test, so ``[("/a", t1), ("/ab", t2)]`` sends ``/ab/x`` to
    ``t1``. Order the configuration accordingly.
    """

    def __init__(self, mappings: Iterable[tuple[str, str]]):
        self._mappings: tuple[PrefixMapping, ...] = tuple(
            PrefixMapping(prefix=prefix, target=target) for prefix, target in mappings
        )

    def __len__(self) -> int:
        return len(self._mappings)

    def __iter__(self):
        return iter(self._mappings)

    @property
    def prefixes(self) -> list[str]:
        return [m.prefix for m in self._mappings]

    def resolve(self, path: str) -> Optional[PrefixMapping]:
        for mapping in self._mappings:
            if path.startswith(mapping.prefix):
                return mapping
        return None


def build_mapping_table(mappings: Iterable[tuple[str, str]]) -> PrefixMappingTable:
    table = PrefixMappingTable(mappings)
    if not len(table):
        logger.warning("[EgressProxy] No proxy mappings configured")
    for mapping in table:
        logger.info(
            f"[EgressProxy] Proxy mapping {mapping.prefix} -> {mapping.target}"
        )
    return table
