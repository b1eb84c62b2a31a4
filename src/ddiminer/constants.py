"""Centralized constants and lookup tables for DDI Miner.

This module consolidates the fixed vocabularies used across the codebase:
- Severity synonyms (heterogeneous source terms to the minor/moderate/major scale)
- Enzyme and transporter synonyms (pathway canonicalization)
- Interacting-drug vocabulary and drug-name heuristics
- Source-specific section, study-design and keyword tables
- Evidence scoring weights

Centralizing these keeps the extractors and the normalizer consistent.
"""

# =============================================================================
# SEVERITY VOCABULARY
# =============================================================================
# Maps source-native severity terms onto the ordinal scale.
# Keys are lower-cased; canonical values map to themselves so folding is idempotent.

SEVERITY_SYNONYMS: dict[str, str] = {
    # major
    "major": "major",
    "contraindicated": "major",
    "contraindication": "major",
    "severe": "major",
    "serious": "major",
    "high": "major",
    "boxed_warning": "major",
    "life-threatening": "major",
    # moderate
    "moderate": "moderate",
    "medium": "moderate",
    "significant": "moderate",
    "warning": "moderate",
    # minor
    "minor": "minor",
    "mild": "minor",
    "low": "minor",
    "minimal": "minor",
    "precaution": "minor",
}

# Exclusion-rationale indicators used to grade trial evidence, checked in order.
SEVERITY_INDICATORS: list[tuple[str, list[str]]] = [
    ("contraindicated", ["contraindicated", "prohibited", "forbidden", "not permitted", "not allowed"]),
    ("major", ["strong inhibitor", "strong inducer", "potent inhibitor", "potent inducer", "avoid", "major"]),
    ("moderate", ["moderate inhibitor", "moderate inducer", "caution", "monitor", "consider"]),
    ("minor", ["weak inhibitor", "weak inducer", "minor", "minimal"]),
]

DEFAULT_SEVERITY_TERM = "moderate"


# =============================================================================
# ENZYME / TRANSPORTER VOCABULARY
# =============================================================================
# Synonyms that do not follow the CYP/UGT/OATP naming patterns.
# Canonical tokens map to themselves.

PATHWAY_SYNONYMS: dict[str, str] = {
    "p-glycoprotein": "P-gp",
    "p glycoprotein": "P-gp",
    "pglycoprotein": "P-gp",
    "p-gp": "P-gp",
    "pgp": "P-gp",
    "mdr1": "P-gp",
    "abcb1": "P-gp",
    "bcrp": "BCRP",
    "abcg2": "BCRP",
}


# =============================================================================
# DDI KEYWORDS
# =============================================================================
# Passages must contain at least one of these to be considered interaction-relevant.

DDI_KEYWORDS: list[str] = [
    "concomitant",
    "concurrent",
    "co-administration",
    "coadministration",
    "drug interaction",
    "drug-drug interaction",
    "prohibited medication",
    "excluded medication",
    "cyp inhibitor",
    "cyp inducer",
    "strong inhibitor",
    "moderate inhibitor",
    "enzyme inhibitor",
    "enzyme inducer",
    "contraindicated",
    "avoid combination",
    "use with caution",
    "p-glycoprotein",
    "p-gp",
    "transporter",
    "clearance",
    "cytochrome p450",
    "pharmacokinetic interaction",
]

# Literature search terms (quoted into the esearch query).
PUBLICATION_SEARCH_TERMS: list[str] = [
    "drug interaction",
    "drug-drug interaction",
    "cytochrome P450",
    "pharmacokinetic interaction",
    "co-administration",
    "enzyme inhibition",
    "enzyme induction",
]


# =============================================================================
# INTERACTING-DRUG VOCABULARY
# =============================================================================
# Perpetrator/victim drugs commonly named in oncology DDI literature and labels.

INTERACTING_DRUG_VOCABULARY: list[str] = [
    # strong/moderate CYP3A4 inhibitors
    "ketoconazole", "itraconazole", "voriconazole", "posaconazole", "fluconazole",
    "clarithromycin", "erythromycin", "ritonavir", "cobicistat", "grapefruit",
    "diltiazem", "verapamil",
    # CYP3A4 inducers
    "rifampin", "rifampicin", "carbamazepine", "phenytoin", "phenobarbital",
    "st. john's wort", "enzalutamide", "dexamethasone",
    # narrow therapeutic index
    "warfarin", "digoxin", "methotrexate", "cyclosporine", "tacrolimus",
    # QT / cardiotoxic combinations
    "amiodarone", "ondansetron", "haloperidol", "citalopram",
    # acid suppression
    "omeprazole", "esomeprazole", "pantoprazole", "famotidine",
    # common oncology partners
    "doxorubicin", "cisplatin", "carboplatin", "paclitaxel", "docetaxel",
    "cyclophosphamide", "fluorouracil", "capecitabine", "irinotecan",
    "imatinib", "erlotinib", "gefitinib", "lapatinib", "trastuzumab",
    "vincristine", "etoposide", "gemcitabine", "oxaliplatin", "tamoxifen",
]

DRUG_SUFFIXES: list[str] = [
    "mycin", "cillin", "navir", "tinib", "mab", "zole", "pril", "sartan",
    "statin", "afenib", "platin", "rubicin", "taxel", "azole", "olol",
]

COMMON_WORDS: set[str] = {
    "and", "or", "but", "the", "with", "for", "use", "treatment", "therapy",
    "drug", "drugs", "medication", "medications", "patient", "patients",
    "study", "trial", "group", "dose", "effect", "adverse", "clinical",
    "inhibitor", "inhibitors", "inducer", "inducers", "agent", "agents",
}


# =============================================================================
# REGULATORY LABEL SECTIONS
# =============================================================================
# openFDA label field → section class. Order matters: more severe sections first.

LABEL_SECTION_CLASSES: dict[str, str] = {
    "boxed_warning": "contraindicated",
    "contraindications": "contraindicated",
    "warnings_and_cautions": "warning",
    "warnings": "warning",
    "drug_interactions": "warning",
    "precautions": "precaution",
    "clinical_pharmacology": "informational",
}

# DailyMed SPL section LOINC codes → label field used by openFDA.
SPL_SECTION_CODES: dict[str, str] = {
    "34066-1": "boxed_warning",
    "34070-3": "contraindications",
    "43685-7": "warnings_and_cautions",
    "34071-1": "warnings",
    "34073-7": "drug_interactions",
    "42232-9": "precautions",
    "34090-1": "clinical_pharmacology",
}

# Fallback when an SPL section carries an unknown code: title keyword → label field.
SPL_SECTION_TITLES: list[tuple[str, str]] = [
    ("interaction", "drug_interactions"),
    ("contraindication", "contraindications"),
    ("boxed", "boxed_warning"),
    ("warning", "warnings_and_cautions"),
    ("precaution", "precautions"),
    ("pharmacology", "clinical_pharmacology"),
]

LABEL_CLASS_SEVERITY: dict[str, str] = {
    "contraindicated": "major",
    "warning": "moderate",
    "precaution": "minor",
    "informational": "minor",
}


# =============================================================================
# STUDY DESIGN
# =============================================================================

STUDY_TYPE_INDICATORS: list[tuple[str, list[str]]] = [
    ("meta_analysis", ["meta-analysis", "meta analysis", "systematic review", "pooled analysis"]),
    ("RCT", ["randomized", "randomised", "controlled trial"]),
    ("pharmacokinetic", ["pharmacokinetic study", "pk study", "bioequivalence", "crossover study"]),
    ("observational", ["observational", "cohort", "case-control", "retrospective"]),
    ("case_report", ["case report", "case series", "case study"]),
    ("in_vitro", ["in vitro", "cell culture", "microsome"]),
]

# Evidence level per study type for publications (meta-analyses > case reports).
PUBLICATION_STUDY_LEVELS: dict[str, str] = {
    "meta_analysis": "high",
    "RCT": "high",
    "pharmacokinetic": "high",
    "observational": "medium",
    "in_vitro": "low",
    "case_report": "low",
    "unknown": "medium",
}


# =============================================================================
# EVIDENCE SCORING
# =============================================================================

EVIDENCE_LEVEL_WEIGHTS: dict[str, float] = {
    "high": 50.0,
    "medium": 30.0,
    "low": 10.0,
}

# Reflects curation rigor: clinical_trial > regulatory_label > publication.
SOURCE_RELIABILITY_WEIGHTS: dict[str, float] = {
    "clinical_trial": 30.0,
    "regulatory_label": 25.0,
    "publication": 20.0,
}

RECENCY_MAX_POINTS = 20.0
RECENCY_HORIZON_DAYS = 3650

# Confidence formula parameters
CONFIDENCE_CONTRIBUTION_CAP = 0.6
CONFIDENCE_CORROBORATION_WEIGHT = 0.8
CONFIDENCE_DIVERSITY_WEIGHT = 0.2

UNSPECIFIED_MECHANISM = "Mechanism not specified"
