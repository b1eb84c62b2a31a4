"""PubMed extractor for literature interaction evidence.

ARCHITECTURE:
    Drug → esearch.fcgi (JSON, PMIDs) → efetch.fcgi (XML abstracts) → Evidence

Key Design:
- Query requires the target drug, a DDI term and an interacting-drug vocabulary term
- Publication-year window from ExtractionOptions.publication_year_range
- Abstracts must co-mention the target drug and a vocabulary drug
- Study type from PublicationType metadata, then text; level from study type
- Optional NCBI API key and contact email (E-utilities etiquette)
"""

import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any

from ddiminer.api.http import SourceHTTPClient
from ddiminer.api.rxnorm import DrugResolver
from ddiminer.config import settings
from ddiminer.constants import (
    INTERACTING_DRUG_VOCABULARY,
    PUBLICATION_SEARCH_TERMS,
    PUBLICATION_STUDY_LEVELS,
)
from ddiminer.errors import SourceUnavailableError
from ddiminer.extractors.base import EvidenceCollector
from ddiminer.models.evidence import Evidence, SourceType
from ddiminer.models.run import ExtractionOptions
from ddiminer.utils.text_mining import (
    classify_study_type,
    excerpt_around,
    extract_effect,
    extract_management,
    extract_mechanism,
    find_drug_mentions,
    mentions_drug,
    severity_from_indicators,
    split_sentences,
)
from ddiminer.utils.vocabulary import extract_pathways

logger = logging.getLogger(__name__)

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
SEVERE_OUTCOME_CUES = ("fatal", "death", "life-threatening", "severe", "serious")


class PublicationExtractor:
    """Extractor for PubMed via NCBI E-utilities.

    API Documentation: https://www.ncbi.nlm.nih.gov/books/NBK25501/
    """

    source_type = SourceType.PUBLICATION
    FETCH_BATCH_SIZE = 100

    def __init__(
        self,
        resolver: DrugResolver | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        email: str | None = None,
        http: SourceHTTPClient | None = None,
    ) -> None:
        """Initialize the extractor.

        Args:
            resolver: Drug code resolver (names are used when None)
            base_url: E-utilities base URL
            api_key: NCBI API key (raises the allowed request rate)
            email: Contact email sent with each request
            http: Transport to use (defaults to a throttled SourceHTTPClient)
        """
        self.resolver = resolver
        self.base_url = (base_url or settings.eutils_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.ncbi_api_key
        self.email = email if email is not None else settings.ncbi_email
        interval = settings.ncbi_interval if not self.api_key else min(settings.ncbi_interval, 0.1)
        self.http = http or SourceHTTPClient(self.source_type.value, min_interval=interval)
        self.rejected_count = 0

    async def __aenter__(self) -> "PublicationExtractor":
        await self.http.__aenter__()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.http.__aexit__(exc_type, exc_val, exc_tb)

    def _base_params(self) -> dict[str, str]:
        params = {"tool": "ddiminer"}
        if self.email:
            params["email"] = self.email
        if self.api_key:
            params["api_key"] = self.api_key
        return params

    @staticmethod
    def build_query(drug_name: str) -> str:
        """Build the esearch term: drug AND (DDI terms) AND (interacting drugs)."""
        target = drug_name.strip().lower()
        ddi_terms = " OR ".join(f'"{term}"[Title/Abstract]' for term in PUBLICATION_SEARCH_TERMS)
        partners = " OR ".join(
            f'"{name}"[Title/Abstract]' for name in INTERACTING_DRUG_VOCABULARY if name != target
        )
        return f'"{target}"[Title/Abstract] AND ({ddi_terms}) AND ({partners})'

    async def search(self, drug_name: str, options: ExtractionOptions) -> list[str]:
        """Return PMIDs for the drug's interaction literature."""
        year = datetime.now(timezone.utc).year
        params = self._base_params()
        params.update({
            "db": "pubmed",
            "term": self.build_query(drug_name),
            "retmax": str(options.max_results),
            "retmode": "json",
            "sort": "relevance",
            "datetype": "pdat",
            "mindate": str(year - options.publication_year_range),
            "maxdate": str(year),
        })
        data = await self.http.get_json(f"{self.base_url}/esearch.fcgi", params=params)
        return list(((data or {}).get("esearchresult") or {}).get("idlist") or [])

    async def fetch_articles(self, pmids: list[str]) -> list[dict[str, Any]]:
        """Fetch and parse article records for PMIDs."""
        articles: list[dict[str, Any]] = []
        for start in range(0, len(pmids), self.FETCH_BATCH_SIZE):
            batch = pmids[start : start + self.FETCH_BATCH_SIZE]
            params = self._base_params()
            params.update({"db": "pubmed", "id": ",".join(batch), "retmode": "xml", "rettype": "abstract"})
            xml_text = await self.http.get_text(f"{self.base_url}/efetch.fcgi", params=params)
            if xml_text:
                articles.extend(self.parse_articles(xml_text))
        return articles

    def parse_articles(self, xml_text: str) -> list[dict[str, Any]]:
        """Parse an efetch XML document into article dicts."""
        try:
            root = ET.fromstring(xml_text)
        except ET.ParseError as e:
            raise SourceUnavailableError(self.source_type.value, f"Invalid efetch XML: {e}") from e

        articles = []
        for art in root.findall(".//PubmedArticle"):
            pmid = self._get_text(art, ".//MedlineCitation/PMID")
            if not pmid:
                continue
            articles.append({
                "pmid": pmid,
                "title": self._get_text(art, ".//Article/ArticleTitle"),
                "abstract": self._extract_abstract(art),
                "journal": self._get_text(art, ".//Journal/Title"),
                "publication_types": self._extract_pubtypes(art),
                "published_at": self._extract_date(art),
            })
        return articles

    def _get_text(self, node: ET.Element, path: str) -> str:
        el = node.find(path)
        return " ".join("".join(el.itertext()).split()) if el is not None else ""

    def _extract_abstract(self, art: ET.Element) -> str:
        texts = []
        for ab in art.findall(".//Article/Abstract/AbstractText"):
            label = ab.attrib.get("Label") or ""
            content = " ".join("".join(ab.itertext()).split())
            texts.append(f"{label}: {content}" if label else content)
        return " ".join(texts)

    def _extract_pubtypes(self, art: ET.Element) -> list[str]:
        types = []
        for pt in art.findall(".//PublicationTypeList/PublicationType"):
            txt = "".join(pt.itertext()).strip()
            if txt:
                types.append(txt)
        return types

    def _extract_date(self, art: ET.Element) -> datetime | None:
        for path in (".//ArticleDate", ".//JournalIssue/PubDate"):
            node = art.find(path)
            if node is None:
                continue
            year = self._get_text(node, "Year")
            if not year.isdigit():
                continue
            month_text = self._get_text(node, "Month")
            month = int(month_text) if month_text.isdigit() else MONTHS.get(month_text[:3].lower(), 1)
            day_text = self._get_text(node, "Day")
            day = int(day_text) if day_text.isdigit() else 1
            try:
                return datetime(int(year), month, day, tzinfo=timezone.utc)
            except ValueError:
                return datetime(int(year), 1, 1, tzinfo=timezone.utc)
        return None

    @staticmethod
    def severity_term(text: str) -> str:
        lower = text.lower()
        if any(cue in lower for cue in SEVERE_OUTCOME_CUES):
            return "severe"
        return severity_from_indicators(text)

    async def extract(self, drug_name: str, options: ExtractionOptions) -> list[Evidence]:
        """Extract interaction evidence for a drug from PubMed abstracts.

        Raises:
            SourceUnavailableError: If E-utilities stays unreachable
            RateLimitedError: If E-utilities keeps throttling
        """
        pmids = await self.search(drug_name, options)
        if not pmids:
            return []

        articles = await self.fetch_articles(pmids)
        collector = EvidenceCollector(self, drug_name, self.resolver)
        for article in articles:
            await self._extract_article(article, collector)

        evidence = collector.results()
        logger.info(f"PubMed: {len(evidence)} evidence from {len(articles)} abstracts for {drug_name}")
        return evidence

    async def _extract_article(self, article: dict[str, Any], collector: EvidenceCollector) -> None:
        text = f"{article['title']} {article['abstract']}".strip()
        if not mentions_drug(text, collector.drug_name):
            return

        partners = find_drug_mentions(text, exclude=collector.drug_name, use_heuristics=False)
        if not partners:
            return

        study_type = classify_study_type(text, article["publication_types"])
        level = PUBLICATION_STUDY_LEVELS[study_type]
        sentences = split_sentences(text)

        for partner in partners:
            relevant = [s for s in sentences if mentions_drug(s, partner)]
            passage = " ".join(relevant) or text
            await collector.add(partner, {
                "source_id": article["pmid"],
                "mechanism": extract_mechanism(passage),
                "severity": self.severity_term(passage),
                "effect_description": extract_effect(passage),
                "evidence_level": level,
                "study_type": study_type,
                "published_at": article["published_at"],
                "enzyme_pathways": tuple(extract_pathways(text)),
                "management": extract_management(passage),
                "evidence_context": "abstract",
                "source_title": article["title"] or None,
                "source_url": f"https://pubmed.ncbi.nlm.nih.gov/{article['pmid']}/",
                "raw_excerpt": excerpt_around(passage, partner),
            })
