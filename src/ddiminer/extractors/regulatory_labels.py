"""openFDA drug label extractor with a DailyMed SPL fallback.

ARCHITECTURE:
    Drug → openFDA /drug/label.json (skip/limit) → label sections → Evidence
         ↘ (no openFDA label) DailyMed spls.json → SPL XML sections ↗

Structured product labels carry the regulator's own interaction statements.
The section a statement appears in fixes its class and severity:

    boxed_warning, contraindications          → contraindicated → major
    warnings_and_cautions, warnings,
    drug_interactions                         → warning         → moderate
    precautions                               → precaution      → minor
    clinical_pharmacology                     → informational   → minor

Labels are high-level evidence, except informational sections (medium).
DailyMed SPL sections are mapped onto the same openFDA field names by LOINC
section code (or title), so both paths share one section parser.
"""

import logging
import re
import xml.etree.ElementTree as ET
from typing import Any

from ddiminer.api.http import SourceHTTPClient
from ddiminer.api.rxnorm import DrugResolver
from ddiminer.config import settings
from ddiminer.constants import (
    LABEL_CLASS_SEVERITY,
    LABEL_SECTION_CLASSES,
    SPL_SECTION_CODES,
    SPL_SECTION_TITLES,
)
from ddiminer.extractors.base import EvidenceCollector, parse_partial_date
from ddiminer.models.evidence import Evidence, EvidenceLevel, SourceType
from ddiminer.models.run import ExtractionOptions
from ddiminer.utils.text_mining import (
    contains_ddi_keyword,
    excerpt_around,
    extract_effect,
    extract_management,
    extract_mechanism,
    find_drug_mentions,
    split_sentences,
)
from ddiminer.utils.vocabulary import extract_pathways

logger = logging.getLogger(__name__)

# Sections whose every statement is interaction-relevant once a second drug is named.
KEYWORD_EXEMPT_SECTIONS = {"boxed_warning", "contraindications", "drug_interactions"}

SPL_NAMESPACE = "urn:hl7-org:v3"
NS = {"hl7": SPL_NAMESPACE}
_WHITESPACE = re.compile(r"\s+")


def map_spl_section(code: str | None, title: str | None) -> str | None:
    """Map an SPL section to an openFDA label field by LOINC code, then by title."""
    if code and code in SPL_SECTION_CODES:
        return SPL_SECTION_CODES[code]
    title = (title or "").lower()
    for keyword, field in SPL_SECTION_TITLES:
        if keyword in title:
            return field
    return None


def parse_spl(xml_text: str, set_id: str, drug_name: str) -> dict[str, Any]:
    """Convert DailyMed SPL XML into an openFDA-shaped label record.

    Text of nested subsections is folded into their top-level section.

    Raises:
        ET.ParseError: If the document is not well-formed XML
    """
    root = ET.fromstring(xml_text)
    effective = root.find("hl7:effectiveTime", NS)
    label: dict[str, Any] = {
        "set_id": set_id,
        "effective_time": effective.get("value") if effective is not None else None,
        "openfda": {"generic_name": [drug_name]},
    }

    for section in root.findall("hl7:component/hl7:structuredBody/hl7:component/hl7:section", NS):
        code = section.find("hl7:code", NS)
        title = section.find("hl7:title", NS)
        field = map_spl_section(
            code.get("code") if code is not None else None,
            "".join(title.itertext()) if title is not None else None,
        )
        if field is None:
            continue
        text = " ".join(" ".join(el.itertext()) for el in section.iter(f"{{{SPL_NAMESPACE}}}text"))
        text = _WHITESPACE.sub(" ", text).strip()
        if text:
            label.setdefault(field, []).append(text)

    return label


class RegulatoryLabelExtractor:
    """Extractor for openFDA structured product labels.

    API Documentation: https://open.fda.gov/apis/drug/label/
    Fallback: https://dailymed.nlm.nih.gov/dailymed/app-support-web-services.cfm
    """

    source_type = SourceType.REGULATORY_LABEL
    MAX_PAGE_SIZE = 100
    MAX_SPLS = 10

    def __init__(
        self,
        resolver: DrugResolver | None = None,
        base_url: str | None = None,
        http: SourceHTTPClient | None = None,
        dailymed_url: str | None = None,
        dailymed_fallback: bool | None = None,
    ) -> None:
        self.resolver = resolver
        self.base_url = base_url or settings.openfda_label_url
        self.dailymed_url = (dailymed_url or settings.dailymed_url).rstrip("/")
        self.dailymed_fallback = settings.dailymed_fallback if dailymed_fallback is None else dailymed_fallback
        self.http = http or SourceHTTPClient(self.source_type.value, min_interval=settings.openfda_interval)
        self.rejected_count = 0

    async def __aenter__(self) -> "RegulatoryLabelExtractor":
        await self.http.__aenter__()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.http.__aexit__(exc_type, exc_val, exc_tb)

    @staticmethod
    def build_query(drug_name: str) -> str:
        name = drug_name.strip().replace('"', "")
        return f'openfda.generic_name:"{name}" OR openfda.brand_name:"{name}"'

    async def search_labels(self, drug_name: str, options: ExtractionOptions) -> list[dict[str, Any]]:
        """Fetch up to options.max_results labels for the drug, paging with skip."""
        labels: list[dict[str, Any]] = []
        skip = 0

        while len(labels) < options.max_results:
            limit = min(options.max_results - len(labels), self.MAX_PAGE_SIZE)
            data = await self.http.get_json(
                self.base_url,
                params={"search": self.build_query(drug_name), "limit": limit, "skip": skip},
            )
            # openFDA answers 404 when nothing matches
            if not data:
                break

            page = data.get("results") or []
            labels.extend(page)
            skip += len(page)
            total = ((data.get("meta") or {}).get("results") or {}).get("total", 0)
            if not page or skip >= total:
                break

        return labels[: options.max_results]

    async def search_dailymed(self, drug_name: str, options: ExtractionOptions) -> list[dict[str, Any]]:
        """Fetch DailyMed SPLs for the drug as openFDA-shaped label records.

        An SPL that is missing or not well-formed is skipped.
        """
        limit = min(options.max_results, self.MAX_SPLS)
        data = await self.http.get_json(
            f"{self.dailymed_url}/spls.json",
            params={"drug_name": drug_name.strip(), "pagesize": limit},
        )
        if not data:
            return []

        labels: list[dict[str, Any]] = []
        for spl in (data.get("data") or [])[:limit]:
            set_id = spl.get("setid")
            if not set_id:
                continue
            xml_text = await self.http.get_text(f"{self.dailymed_url}/spls/{set_id}.xml")
            if not xml_text:
                continue
            try:
                labels.append(parse_spl(xml_text, set_id, drug_name.strip()))
            except ET.ParseError as e:
                logger.warning(f"DailyMed: skipping SPL {set_id}, invalid XML ({e})")

        logger.debug(f"DailyMed: {len(labels)} SPLs for {drug_name}")
        return labels

    async def extract(self, drug_name: str, options: ExtractionOptions) -> list[Evidence]:
        """Extract interaction evidence for a drug from its labels.

        Falls back to DailyMed SPLs when openFDA has no label for the drug.

        Raises:
            SourceUnavailableError: If openFDA (or DailyMed) stays unreachable
            RateLimitedError: If openFDA (or DailyMed) keeps throttling
        """
        labels = await self.search_labels(drug_name, options)
        if not labels and self.dailymed_fallback:
            labels = await self.search_dailymed(drug_name, options)
        collector = EvidenceCollector(self, drug_name, self.resolver)

        for label in labels:
            try:
                await self._extract_label(label, collector)
            except (KeyError, TypeError, AttributeError) as e:
                logger.debug(f"Skipping malformed label record: {e}")

        evidence = collector.results()
        logger.info(f"Labels: {len(evidence)} evidence from {len(labels)} labels for {drug_name}")
        return evidence

    async def _extract_label(self, label: dict[str, Any], collector: EvidenceCollector) -> None:
        set_id = label.get("set_id")
        if not set_id:
            return

        openfda = label.get("openfda") or {}
        names = openfda.get("brand_name") or openfda.get("generic_name") or []
        title = f"{names[0]} prescribing information" if names else None
        published = parse_partial_date(label.get("effective_time"))

        # Dict order runs from most to least severe section.
        for section, section_class in LABEL_SECTION_CLASSES.items():
            text = " ".join(label.get(section) or [])
            if not text:
                continue

            severity = LABEL_CLASS_SEVERITY[section_class]
            level = EvidenceLevel.MEDIUM if section_class == "informational" else EvidenceLevel.HIGH

            for sentence in split_sentences(text):
                if section not in KEYWORD_EXEMPT_SECTIONS and not contains_ddi_keyword(sentence):
                    continue
                for partner in find_drug_mentions(sentence, exclude=collector.drug_name):
                    await collector.add(partner, {
                        "source_id": set_id,
                        "mechanism": extract_mechanism(sentence),
                        "severity": severity,
                        "severity_term": section_class,
                        "effect_description": extract_effect(sentence),
                        "evidence_level": level,
                        "study_type": "label",
                        "published_at": published,
                        "enzyme_pathways": tuple(extract_pathways(sentence)),
                        "management": extract_management(sentence),
                        "evidence_context": section,
                        "source_title": title,
                        "source_url": f"https://dailymed.nlm.nih.gov/dailymed/lookup.cfm?setid={set_id}",
                        "raw_excerpt": excerpt_around(sentence, partner),
                    })
