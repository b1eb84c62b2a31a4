"""RxNorm client for resolving drug names to RXCUI codes.

ARCHITECTURE:
    Drug name → RxNav approximateTerm → RXCUI + preferred name

Pair keys are built from RXCUIs when both drugs resolve, so "Adriamycin" and
"doxorubicin" land on the same record.

Key Design:
- Shared throttled/retrying transport (SourceHTTPClient)
- Local caching to avoid repeated API calls
- Any failure is treated as not-found; callers fall back to the folded name
"""

import logging
from typing import Any, Protocol

from pydantic import BaseModel

from ddiminer.api.http import SourceHTTPClient
from ddiminer.config import settings
from ddiminer.errors import SourceError

logger = logging.getLogger(__name__)


class ResolvedDrug(BaseModel):
    """A drug name resolved to a standard code."""

    code: str
    canonical_name: str


class DrugResolver(Protocol):
    """Anything that maps a drug name to a standard code."""

    async def resolve(self, name: str) -> ResolvedDrug | None: ...


class RxNormClient:
    """Client for the RxNav REST API.

    API Documentation: https://lhncbc.nlm.nih.gov/RxNav/APIs/RxNormAPIs.html
    """

    def __init__(self, base_url: str | None = None, http: SourceHTTPClient | None = None) -> None:
        """Initialize the RxNorm client.

        Args:
            base_url: RxNav REST base URL
            http: Transport to use (defaults to a new SourceHTTPClient)
        """
        self.base_url = (base_url or settings.rxnav_url).rstrip("/")
        self.http = http or SourceHTTPClient("rxnorm", min_interval=0.05)
        self._cache: dict[str, ResolvedDrug | None] = {}

    async def __aenter__(self) -> "RxNormClient":
        await self.http.__aenter__()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.http.__aexit__(exc_type, exc_val, exc_tb)

    async def resolve(self, name: str) -> ResolvedDrug | None:
        """Resolve a drug name to its RXCUI.

        Args:
            name: Drug name in any case

        Returns:
            ResolvedDrug, or None when the name is unknown or RxNav is unreachable
        """
        key = name.strip().lower()
        if not key:
            return None
        if key in self._cache:
            return self._cache[key]

        try:
            resolved = await self._lookup(key)
        except SourceError as e:
            # Not cached: a later call may succeed.
            logger.debug(f"RxNorm lookup failed for {name!r}: {e}")
            return None

        self._cache[key] = resolved
        return resolved

    async def _lookup(self, term: str) -> ResolvedDrug | None:
        data = await self.http.get_json(
            f"{self.base_url}/approximateTerm.json",
            params={"term": term, "maxEntries": 1},
        )
        candidates = ((data or {}).get("approximateGroup") or {}).get("candidate") or []
        if not candidates:
            return None

        best = candidates[0]
        rxcui = best.get("rxcui")
        if not rxcui:
            return None

        canonical_name = best.get("name")
        if not canonical_name:
            properties = await self.http.get_json(f"{self.base_url}/rxcui/{rxcui}/properties.json")
            canonical_name = ((properties or {}).get("properties") or {}).get("name") or term

        return ResolvedDrug(code=str(rxcui), canonical_name=canonical_name.lower())

    def clear_cache(self) -> None:
        self._cache.clear()
