"""Fixed-pattern text mining shared by the extractors.

Finds drug mentions, DDI keywords, mechanisms, effects, management advice and
severity cues in free text. Matching is deliberately pattern-based: it never
tries to understand the text.
"""

import re

from ddiminer.constants import (
    COMMON_WORDS,
    DDI_KEYWORDS,
    DEFAULT_SEVERITY_TERM,
    DRUG_SUFFIXES,
    INTERACTING_DRUG_VOCABULARY,
    SEVERITY_INDICATORS,
    STUDY_TYPE_INDICATORS,
    UNSPECIFIED_MECHANISM,
)
from ddiminer.utils.vocabulary import canonicalize_pathways, extract_pathways

VOCABULARY_PATTERN = re.compile(
    r"(?<![\w-])("
    + "|".join(re.escape(d) for d in sorted(INTERACTING_DRUG_VOCABULARY, key=len, reverse=True))
    + r")(?![\w-])",
    re.IGNORECASE,
)
WORD_PATTERN = re.compile(r"\b[a-z][a-z-]{4,}\b", re.IGNORECASE)
SENTENCE_PATTERN = re.compile(r"(?<=[.!?])\s+(?=[A-Z(])")
CRITERIA_SPLIT_PATTERN = re.compile(r"exclusion\s+criteria\s*:?", re.IGNORECASE)
INCLUSION_HEADER_PATTERN = re.compile(r"^\s*inclusion\s+criteria\s*:?", re.IGNORECASE)
CRITERIA_ITEM_PATTERN = re.compile(r"(?:\r?\n)+\s*(?:[-*•]|\d+[.)])?\s*")

ENZYME_ACTION_PATTERN = re.compile(
    r"\b(strong|moderate|weak|potent)?\s*"
    r"(CYP\d{1,2}[A-Z]\d{0,2}|UGT\d[A-Z]?\d{0,2}|OATP\d[A-Z]\d{0,2}|P-gp|BCRP)"
    r"\s*(inhibitors?|inhibition|inducers?|induction|substrates?)",
)
QT_PATTERN = re.compile(r"\bQTc?\b.{0,30}\bprolong|\bprolong\w*\b.{0,30}\bQTc?\b|torsade", re.IGNORECASE)
BLEEDING_PATTERN = re.compile(r"\bbleed(?:ing)?\b|\bhemorrhag\w*|\banticoagula\w*", re.IGNORECASE)
MYELOSUPPRESSION_PATTERN = re.compile(r"myelosuppress\w*|neutropeni\w*|bone marrow suppress\w*", re.IGNORECASE)
ADDITIVE_PATTERN = re.compile(r"\badditive\b|\bsynergistic\s+toxicit\w*|\boverlapping\s+toxicit\w*", re.IGNORECASE)
EXPOSURE_PATTERN = re.compile(
    r"(increas|decreas|reduc|elevat)\w*\s+(?:the\s+)?(?:plasma\s+|systemic\s+|serum\s+)?"
    r"(exposure|concentrations?|levels?|AUC|Cmax|clearance)",
    re.IGNORECASE,
)
EFFECT_CUE_PATTERN = re.compile(
    r"\b(increas\w*|decreas\w*|risk of|toxicit\w*|exposure|concentration\w*|adverse)\b",
    re.IGNORECASE,
)


def split_sentences(text: str) -> list[str]:
    """Split text into sentences on terminal punctuation."""
    return [s.strip() for s in SENTENCE_PATTERN.split(text) if s.strip()]


def contains_ddi_keyword(text: str) -> bool:
    """Whether text contains any DDI keyword."""
    lower = text.lower()
    return any(keyword in lower for keyword in DDI_KEYWORDS)


def mentions_drug(text: str, drug_name: str) -> bool:
    """Whether text mentions the drug as a whole word."""
    pattern = r"(?<![\w-])" + re.escape(drug_name.strip()) + r"(?![\w-])"
    return re.search(pattern, text, re.IGNORECASE) is not None


def find_drug_mentions(text: str, exclude: str | None = None, use_heuristics: bool = True) -> list[str]:
    """Find interacting-drug mentions in text.

    Vocabulary drugs are matched first; words ending in a common drug suffix
    (-tinib, -azole, -mycin, ...) are added when use_heuristics is set.

    Args:
        text: Free text to scan
        exclude: Drug name to leave out (usually the target drug)
        use_heuristics: Whether to add suffix-based candidates

    Returns:
        Lower-cased drug names in order of first appearance
    """
    excluded = exclude.strip().lower() if exclude else None
    found: list[str] = []

    def _add(name: str) -> None:
        name = name.lower()
        if name != excluded and name not in found:
            found.append(name)

    for match in VOCABULARY_PATTERN.finditer(text):
        _add(match.group(1))

    if use_heuristics:
        for match in WORD_PATTERN.finditer(text):
            word = match.group(0).lower().strip("-")
            if word in COMMON_WORDS or len(word) < 6:
                continue
            if any(word.endswith(suffix) for suffix in DRUG_SUFFIXES):
                _add(word)

    return found


def severity_from_indicators(text: str) -> str:
    """Return the source severity term implied by text cues.

    Checks indicators from most to least severe, e.g. "prohibited" ->
    "contraindicated", "strong inhibitor" -> "major", "use with caution" ->
    "moderate". Falls back to "moderate".
    """
    lower = text.lower()
    for term, indicators in SEVERITY_INDICATORS:
        if any(indicator in lower for indicator in indicators):
            return term
    return DEFAULT_SEVERITY_TERM


def extract_mechanism(text: str) -> str:
    """Describe the interaction mechanism using fixed patterns.

    Returns:
        '; '-joined mechanism phrases, or the unspecified placeholder
    """
    phrases: list[str] = []

    def _add(phrase: str) -> None:
        if phrase.lower() not in (p.lower() for p in phrases):
            phrases.append(phrase)

    canonical_text = canonicalize_pathways(text)
    pathways = extract_pathways(text)

    for match in ENZYME_ACTION_PATTERN.finditer(canonical_text):
        enzyme, action = match.group(2), match.group(3).lower()
        if action.startswith("induc"):
            _add(f"{enzyme} induction")
        elif action.startswith("substrate"):
            _add(f"{enzyme} substrate competition")
        else:
            _add(f"{enzyme} inhibition")

    if not phrases:
        lower = canonical_text.lower()
        for enzyme in pathways:
            if "induc" in lower:
                _add(f"{enzyme} induction")
            elif "inhibit" in lower:
                _add(f"{enzyme} inhibition")
            else:
                _add(f"{enzyme}-mediated metabolism")

    if QT_PATTERN.search(text):
        _add("QT prolongation")
    if BLEEDING_PATTERN.search(text):
        _add("Increased bleeding risk")
    if MYELOSUPPRESSION_PATTERN.search(text):
        _add("Additive myelosuppression")
    if ADDITIVE_PATTERN.search(text):
        _add("Additive toxicity")

    if not phrases:
        match = EXPOSURE_PATTERN.search(text)
        if match:
            direction = "increased" if match.group(1).lower().startswith(("increas", "elevat")) else "decreased"
            _add(f"Pharmacokinetic interaction ({direction} {match.group(2).lower()})")

    return "; ".join(phrases) if phrases else UNSPECIFIED_MECHANISM


def extract_effect(text: str, max_length: int = 300) -> str | None:
    """Return the first sentence describing a clinical effect."""
    for sentence in split_sentences(text):
        if EFFECT_CUE_PATTERN.search(sentence):
            return sentence[:max_length]
    return None


def extract_management(text: str) -> str | None:
    """Map management cues to a short recommendation."""
    lower = text.lower()
    if "contraindicated" in lower or "do not coadminister" in lower or "prohibited" in lower:
        return "Contraindicated"
    if "avoid" in lower:
        return "Avoid combination"
    if re.search(r"dose (?:reduction|adjustment|modification)|reduce the dose|adjust(?:ing)? the dose", lower):
        return "Dose adjustment"
    if "monitor" in lower:
        return "Monitor closely"
    if "caution" in lower:
        return "Use with caution"
    return None


def classify_study_type(text: str, publication_types: list[str] | None = None) -> str:
    """Classify study design from publication-type metadata, then from text."""
    for candidates in (" ".join(publication_types or []), text):
        lower = candidates.lower()
        if not lower:
            continue
        for study_type, indicators in STUDY_TYPE_INDICATORS:
            if any(indicator in lower for indicator in indicators):
                return study_type
    return "unknown"


def split_eligibility(eligibility: str) -> tuple[str, str]:
    """Split trial eligibility text into (inclusion, exclusion) sections."""
    parts = CRITERIA_SPLIT_PATTERN.split(eligibility, maxsplit=1)
    inclusion = INCLUSION_HEADER_PATTERN.sub("", parts[0]).strip()
    exclusion = parts[1].strip() if len(parts) > 1 else ""
    return inclusion, exclusion


def split_criteria_items(section: str) -> list[str]:
    """Split a criteria section into individual bullet items."""
    return [item.strip() for item in CRITERIA_ITEM_PATTERN.split("\n" + section) if item and item.strip()]


def excerpt_around(text: str, term: str, width: int = 250) -> str:
    """Return up to width characters on either side of the first mention of term."""
    index = text.lower().find(term.lower())
    if index < 0:
        return text[: 2 * width]
    start = max(index - width, 0)
    return text[start : index + len(term) + width]
