"""Extractor protocol and helpers shared by the source extractors."""

import logging
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from ddiminer.api.rxnorm import DrugResolver
from ddiminer.errors import EvidenceValidationError
from ddiminer.models.evidence import DrugRef, Evidence, SourceType
from ddiminer.models.run import ExtractionOptions

logger = logging.getLogger(__name__)

_DATE_PATTERN = re.compile(r"^(\d{4})(?:-?(\d{2}))?(?:-?(\d{2}))?")


@runtime_checkable
class SourceExtractor(Protocol):
    """One external evidence source.

    Implementations raise SourceUnavailableError when the upstream stays
    unreachable after retries and RateLimitedError when throttled.
    """

    source_type: SourceType
    rejected_count: int

    async def extract(self, drug_name: str, options: ExtractionOptions) -> list[Evidence]: ...


def parse_partial_date(value: str | None) -> datetime | None:
    """Parse "2023-05-01", "2023-05", "2023" or "20230501" as a UTC datetime."""
    if not value:
        return None
    match = _DATE_PATTERN.match(value.strip())
    if not match:
        return None
    year, month, day = match.groups()
    try:
        return datetime(int(year), int(month or 1), int(day or 1), tzinfo=timezone.utc)
    except ValueError:
        return None


class EvidenceCollector:
    """Builds evidence for one extraction call.

    Resolves drug names (once per name), validates each draft through
    Evidence.parse and keeps one piece of evidence per (source id, partner),
    preferring the most severe.
    """

    def __init__(self, extractor: Any, drug_name: str, resolver: DrugResolver | None) -> None:
        self.extractor = extractor
        self.drug_name = drug_name.strip()
        self.resolver = resolver
        self._drugs: dict[str, DrugRef] = {}
        self._evidence: dict[tuple[str, str], Evidence] = {}

    async def drug(self, name: str) -> DrugRef:
        key = name.strip().lower()
        if key not in self._drugs:
            resolved = await self.resolver.resolve(name) if self.resolver else None
            if resolved:
                self._drugs[key] = DrugRef(
                    name=name.strip(), code=resolved.code, canonical_name=resolved.canonical_name
                )
            else:
                self._drugs[key] = DrugRef(name=name.strip())
        return self._drugs[key]

    async def add(self, partner: str, draft: Mapping[str, Any]) -> Evidence | None:
        """Validate a draft for (target drug, partner) and keep it if it is the most severe so far."""
        payload = dict(draft)
        payload["source_type"] = self.extractor.source_type
        payload["drug_a"] = await self.drug(self.drug_name)
        payload["drug_b"] = await self.drug(partner)

        try:
            evidence = Evidence.parse(payload)
        except EvidenceValidationError as e:
            self.extractor.rejected_count += 1
            logger.debug(f"Rejected {self.extractor.source_type.value} evidence: {e}")
            return None

        key = (evidence.source_id, evidence.drug_b.key)
        current = self._evidence.get(key)
        if current is None or evidence.severity.rank > current.severity.rank:
            self._evidence[key] = evidence
        return evidence

    def results(self) -> list[Evidence]:
        return list(self._evidence.values())
