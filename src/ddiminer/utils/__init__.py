"""Utility functions."""

from ddiminer.utils.vocabulary import (
    VocabularyNormalizer,
    canonical_severity,
    canonicalize_pathways,
    extract_pathways,
    split_mechanisms,
)

__all__ = [
    'VocabularyNormalizer',
    'canonical_severity',
    'canonicalize_pathways',
    'extract_pathways',
    'split_mechanisms',
]
