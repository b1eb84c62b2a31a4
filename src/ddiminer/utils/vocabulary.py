"""Vocabulary canonicalization for severity terms and metabolic pathways.

Sources describe the same interaction with different words:
- Severity: "contraindicated", "severe", "serious", "medium", "mild", ...
- Pathways: "CYP 3A4", "cytochrome P450 3A4", "cyp-3a4", "P-glycoprotein", "ABCB1", ...

Every function here is idempotent: canonicalizing an already canonical
value returns it unchanged.
"""

import re

from ddiminer.constants import PATHWAY_SYNONYMS, SEVERITY_SYNONYMS, UNSPECIFIED_MECHANISM


class VocabularyNormalizer:
    """Folds heterogeneous source vocabulary onto canonical tokens."""

    SEVERITY_SYNONYMS = SEVERITY_SYNONYMS
    PATHWAY_SYNONYMS = PATHWAY_SYNONYMS

    # Pathway mention patterns
    CYP_PATTERN = re.compile(
        r'\b(?:cyp|cytochrome[\s-]*p[\s-]?450)[\s-]*(\d{1,2})[\s-]*([a-z])(?:[\s-]*(\d{1,2}))?\b',
        re.IGNORECASE,
    )
    UGT_PATTERN = re.compile(r'\bugt[\s-]*(\d[a-z]?\d{0,2})\b', re.IGNORECASE)
    OATP_PATTERN = re.compile(r'\boatp[\s-]*(\d[a-z]\d{0,2})\b', re.IGNORECASE)
    SYNONYM_PATTERN = re.compile(
        r'\b(' + '|'.join(
            re.escape(term) for term in sorted(PATHWAY_SYNONYMS, key=len, reverse=True)
        ) + r')\b',
        re.IGNORECASE,
    )
    CANONICAL_PATHWAY_PATTERN = re.compile(
        r'\b(?:CYP\d{1,2}[A-Z]\d{0,2}|UGT\d[A-Z]?\d{0,2}|OATP\d[A-Z]\d{0,2}|P-gp|BCRP)\b'
    )
    WHITESPACE_PATTERN = re.compile(r'\s+')

    @staticmethod
    def canonical_severity(term: object) -> str | None:
        """Fold a source severity term onto minor/moderate/major.

        Args:
            term: Raw severity term (string or enum member)

        Returns:
            "minor", "moderate" or "major", or None when the term is unknown

        e.g.
        "Contraindicated" -> "major", "medium" -> "moderate", "boxed warning" -> "major"
        """
        value = getattr(term, "value", term)
        if not isinstance(value, str):
            return None

        key = VocabularyNormalizer.WHITESPACE_PATTERN.sub(" ", value.strip().lower())
        if key in VocabularyNormalizer.SEVERITY_SYNONYMS:
            return VocabularyNormalizer.SEVERITY_SYNONYMS[key]
        return VocabularyNormalizer.SEVERITY_SYNONYMS.get(key.replace(" ", "_"))

    @staticmethod
    def canonicalize_pathways(text: str) -> str:
        """Rewrite every pathway mention in text to its canonical token."""

        def _cyp(match: re.Match) -> str:
            family, subfamily, isoform = match.groups()
            return f"CYP{family}{subfamily.upper()}{isoform or ''}"

        text = VocabularyNormalizer.CYP_PATTERN.sub(_cyp, text)
        text = VocabularyNormalizer.UGT_PATTERN.sub(lambda m: f"UGT{m.group(1).upper()}", text)
        text = VocabularyNormalizer.OATP_PATTERN.sub(lambda m: f"OATP{m.group(1).upper()}", text)
        text = VocabularyNormalizer.SYNONYM_PATTERN.sub(
            lambda m: VocabularyNormalizer.PATHWAY_SYNONYMS[m.group(1).lower()], text
        )
        return text

    @staticmethod
    def extract_pathways(text: str | None) -> list[str]:
        """Return the distinct canonical pathway tokens mentioned in text, in order."""
        if not text:
            return []
        canonical = VocabularyNormalizer.canonicalize_pathways(text)
        found: list[str] = []
        for token in VocabularyNormalizer.CANONICAL_PATHWAY_PATTERN.findall(canonical):
            if token not in found:
                found.append(token)
        return found

    @classmethod
    def canonical_mechanism(cls, text: str) -> str:
        """Canonicalize a single mechanism phrase.

        Collapses whitespace, strips trailing punctuation and rewrites pathway
        mentions, e.g. "  cyp 3a4  inhibition." -> "CYP3A4 inhibition".
        """
        text = cls.WHITESPACE_PATTERN.sub(" ", text).strip().rstrip(".,;:").strip()
        return cls.canonicalize_pathways(text)

    @classmethod
    def split_mechanisms(cls, text: str | None) -> list[str]:
        """Split a free-text mechanism field into distinct canonical phrases.

        Phrases are separated by ';'. The unspecified placeholder is dropped.
        """
        if not text:
            return []

        phrases: list[str] = []
        seen: set[str] = set()
        for part in text.split(";"):
            phrase = cls.canonical_mechanism(part)
            key = phrase.lower()
            if not phrase or key == UNSPECIFIED_MECHANISM.lower() or key in seen:
                continue
            seen.add(key)
            phrases.append(phrase)
        return phrases


def canonical_severity(term: object) -> str | None:
    """Convenience function to fold a severity term."""
    return VocabularyNormalizer.canonical_severity(term)


def canonicalize_pathways(text: str) -> str:
    """Convenience function to canonicalize pathway mentions."""
    return VocabularyNormalizer.canonicalize_pathways(text)


def extract_pathways(text: str | None) -> list[str]:
    """Convenience function to list canonical pathway tokens."""
    return VocabularyNormalizer.extract_pathways(text)


def split_mechanisms(text: str | None) -> list[str]:
    """Convenience function to split and canonicalize mechanisms."""
    return VocabularyNormalizer.split_mechanisms(text)
