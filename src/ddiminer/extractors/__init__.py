"""Source extractors: one per external evidence source."""

from ddiminer.extractors.base import EvidenceCollector, SourceExtractor
from ddiminer.extractors.clinical_trials import ClinicalTrialsExtractor
from ddiminer.extractors.publications import PublicationExtractor
from ddiminer.extractors.regulatory_labels import RegulatoryLabelExtractor

__all__ = [
    "EvidenceCollector",
    "SourceExtractor",
    "ClinicalTrialsExtractor",
    "PublicationExtractor",
    "RegulatoryLabelExtractor",
]
