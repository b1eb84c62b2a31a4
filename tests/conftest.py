"""Pytest configuration and fixtures."""

from datetime import datetime, timezone

import pytest

from ddiminer.utils.logging_config import reset_logger

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def fresh_run_logger():
    """Give every test its own console-only run logger."""
    reset_logger()
    yield
    reset_logger()


@pytest.fixture
def now():
    """Fixed reference time for scoring."""
    return NOW


@pytest.fixture
def make_evidence():
    """Factory building valid evidence with overridable fields."""
    from ddiminer.models.evidence import Evidence

    def _make(**overrides):
        data = {
            "source_type": "clinical_trial",
            "source_id": "NCT00000001",
            "drug_a": {"name": "doxorubicin", "code": "3639"},
            "drug_b": {"name": "cisplatin", "code": "2555"},
            "mechanism": "Additive myelosuppression",
            "severity": "moderate",
            "evidence_level": "medium",
            "study_type": "interventional",
            "extracted_at": NOW,
            "published_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
        }
        data.update(overrides)
        return Evidence.parse(data)

    return _make


@pytest.fixture
def sample_trial_study():
    """ClinicalTrials.gov v2 study record excluding strong CYP3A4 inhibitors."""
    return {
        "protocolSection": {
            "identificationModule": {
                "nctId": "NCT01234567",
                "briefTitle": "Doxorubicin Plus Cisplatin in Advanced Sarcoma",
            },
            "statusModule": {"lastUpdatePostDateStruct": {"date": "2024-03-15"}},
            "designModule": {
                "studyType": "INTERVENTIONAL",
                "designInfo": {"allocation": "RANDOMIZED"},
            },
            "eligibilityModule": {
                "eligibilityCriteria": (
                    "Inclusion Criteria:\n\n* Histologically confirmed sarcoma\n* ECOG 0-1\n\n"
                    "Exclusion Criteria:\n\n"
                    "* Concomitant use of strong CYP3A4 inhibitors such as ketoconazole is prohibited\n"
                    "* Concurrent treatment with cisplatin outside the protocol; use with caution and monitor renal function\n"
                    "* Pregnancy"
                ),
            },
        },
    }


@pytest.fixture
def sample_label():
    """openFDA drug label record for doxorubicin."""
    return {
        "set_id": "a1b2c3d4-0000-1111-2222-333344445555",
        "effective_time": "20230115",
        "openfda": {"generic_name": ["DOXORUBICIN HYDROCHLORIDE"], "brand_name": ["Adriamycin"]},
        "boxed_warning": [
            "Cardiomyopathy: the risk increases with concomitant trastuzumab. Secondary malignancies can occur."
        ],
        "drug_interactions": [
            "Paclitaxel: administration of paclitaxel before doxorubicin increases doxorubicin plasma concentrations. "
            "Avoid concomitant use of doxorubicin with strong CYP3A4 inhibitors such as ketoconazole."
        ],
        "precautions": ["General: monitor blood counts."],
        "clinical_pharmacology": [
            "Doxorubicin is a substrate of CYP3A4 and P-glycoprotein. "
            "Coadministration with verapamil increased doxorubicin exposure."
        ],
    }


@pytest.fixture
def sample_efetch_xml():
    """efetch XML with one randomized pharmacokinetic abstract and one unrelated abstract."""
    return """<?xml version="1.0" ?>
<PubmedArticleSet>
  <PubmedArticle>
    <MedlineCitation>
      <PMID Version="1">31111111</PMID>
      <Article>
        <Journal>
          <Title>Journal of Clinical Oncology</Title>
          <JournalIssue><PubDate><Year>2022</Year><Month>Mar</Month></PubDate></JournalIssue>
        </Journal>
        <ArticleTitle>Drug interaction between doxorubicin and cisplatin: a randomized trial</ArticleTitle>
        <Abstract>
          <AbstractText Label="BACKGROUND">Co-administration of doxorubicin and cisplatin is common.</AbstractText>
          <AbstractText Label="RESULTS">Cisplatin increased doxorubicin plasma concentrations and caused severe neutropenia.</AbstractText>
        </Abstract>
        <PublicationTypeList>
          <PublicationType>Randomized Controlled Trial</PublicationType>
        </PublicationTypeList>
      </Article>
    </MedlineCitation>
  </PubmedArticle>
  <PubmedArticle>
    <MedlineCitation>
      <PMID Version="1">32222222</PMID>
      <Article>
        <Journal><Title>Some Journal</Title></Journal>
        <ArticleTitle>Warfarin dosing in the elderly</ArticleTitle>
        <Abstract><AbstractText>Warfarin requires careful monitoring.</AbstractText></Abstract>
      </Article>
    </MedlineCitation>
  </PubmedArticle>
</PubmedArticleSet>
"""


@pytest.fixture
def sample_spl_xml():
    """DailyMed SPL for doxorubicin with a boxed warning, nested interaction subsections and an unmapped section."""
    return """<?xml version="1.0" encoding="UTF-8"?>
<document xmlns="urn:hl7-org:v3">
  <effectiveTime value="20240105"/>
  <component>
    <structuredBody>
      <component>
        <section>
          <code code="34066-1" codeSystem="2.16.840.1.113883.6.1"/>
          <title>WARNING: CARDIOMYOPATHY</title>
          <text><paragraph>Cardiomyopathy: the risk increases with concomitant trastuzumab.</paragraph></text>
        </section>
      </component>
      <component>
        <section>
          <code code="34073-7" codeSystem="2.16.840.1.113883.6.1"/>
          <title>7 DRUG INTERACTIONS</title>
          <component>
            <section>
              <title>7.1 Paclitaxel</title>
              <text><paragraph>Administration of paclitaxel before doxorubicin increases doxorubicin plasma concentrations.</paragraph></text>
            </section>
          </component>
          <component>
            <section>
              <title>7.2 CYP3A4 Inhibitors</title>
              <text>
                <paragraph>Avoid concomitant use of doxorubicin with strong CYP3A4 inhibitors such as ketoconazole.</paragraph>
              </text>
            </section>
          </component>
        </section>
      </component>
      <component>
        <section>
          <code code="34088-5" codeSystem="2.16.840.1.113883.6.1"/>
          <title>10 OVERDOSAGE</title>
          <text><paragraph>Overdose during verapamil therapy was reported.</paragraph></text>
        </section>
      </component>
    </structuredBody>
  </component>
</document>
"""
