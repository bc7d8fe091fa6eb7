from conftest import FABRICATED_VERDICT, GOOD_VERDICT, ROE_VERDICT

from citation_checker.errors import AuthError, NetworkError, SafetyBlockError
from citation_checker.reconciliation import dedupe_evidence, names_match, reconcile
from citation_checker.records import (
    CitationSpan,
    EvidenceSource,
    LegalStanding,
    LifecycleStatus,
)
from citation_checker.verifiers import AuthorityVerdict, Err, Ok, ReasonerVerdict

SPAN = CitationSpan("cite-4-abc", "347 U.S. 483 (1954)", 4, 23)
ROE_SPAN = CitationSpan("cite-4-roe", "410 U.S. 113 (1973)", 4, 23)

FOUND = AuthorityVerdict(
    found=True,
    case_name="Brown v. Board of Education of Topeka",
    canonical_uri="https://www.courtlistener.com/opinion/105221/brown-v-board/",
    record_id="105221",
)


class TestReasonerFailure:
    def test_error_record_carries_kind_and_message(self):
        err = NetworkError("Request timed out", backend="Gemini")
        record = reconcile(SPAN, Err(err))
        assert record.lifecycle_status == LifecycleStatus.ERROR
        assert record.legal_standing == LegalStanding.UNKNOWN
        assert record.error_kind == "network"
        assert record.explanation.startswith("Gemini: Request timed out")
        assert record.case_name is None

    def test_safety_block_reason_is_shown_verbatim(self):
        record = reconcile(SPAN, Err(SafetyBlockError("Blocked: SAFETY", backend="Gemini")))
        assert record.error_kind == "safety_block"
        assert record.explanation == "Gemini: Blocked: SAFETY"

    def test_authority_result_is_ignored_after_reasoner_failure(self):
        record = reconcile(SPAN, Err(NetworkError("down")), Ok(FOUND))
        assert record.lifecycle_status == LifecycleStatus.ERROR
        assert record.authority_ref is None


class TestFabricated:
    def test_fabricated_citation_is_flagged(self):
        record = reconcile(SPAN, Ok(FABRICATED_VERDICT))
        assert record.lifecycle_status == LifecycleStatus.FLAGGED
        assert record.explanation == "no such reporter volume"
        assert record.confidence == 90

    def test_authority_cannot_rescue_a_fabricated_citation(self):
        record = reconcile(SPAN, Ok(FABRICATED_VERDICT), Ok(FOUND))
        assert record.lifecycle_status == LifecycleStatus.FLAGGED
        assert record.authority_ref is None


class TestGenuine:
    def test_good_law_without_authority_is_verified(self):
        record = reconcile(SPAN, Ok(GOOD_VERDICT))
        assert record.lifecycle_status == LifecycleStatus.VERIFIED
        assert record.legal_standing == LegalStanding.GOOD
        assert record.case_name == "Brown v. Board of Education"
        assert record.authority_ref is None
        assert record.evidence == []

    def test_overruled_citation_is_flagged_with_replacement(self):
        record = reconcile(ROE_SPAN, Ok(ROE_VERDICT))
        assert record.lifecycle_status == LifecycleStatus.FLAGGED
        assert record.legal_standing == LegalStanding.OVERRULED
        assert record.replacement.citation == "597 U.S. 215"

    def test_superseded_is_flagged_and_caution_is_verified(self):
        superseded = ReasonerVerdict(is_valid=True, legal_standing=LegalStanding.SUPERSEDED)
        caution = ReasonerVerdict(is_valid=True, legal_standing=LegalStanding.CAUTION)
        assert reconcile(SPAN, Ok(superseded)).lifecycle_status == LifecycleStatus.FLAGGED
        assert reconcile(SPAN, Ok(caution)).lifecycle_status == LifecycleStatus.VERIFIED

    def test_authority_found_adds_link_and_canonical_name(self):
        verdict = ReasonerVerdict(
            is_valid=True,
            case_name="Brown v. Board of Education",
            legal_standing=LegalStanding.GOOD,
            explanation="Still good law.",
            evidence=(EvidenceSource("https://example.com/brown", "Example"),),
        )
        record = reconcile(SPAN, Ok(verdict), Ok(FOUND))
        assert record.lifecycle_status == LifecycleStatus.VERIFIED
        assert record.case_name == "Brown v. Board of Education of Topeka"
        assert record.authority_ref == "105221"
        assert [e.uri for e in record.evidence] == [
            FOUND.canonical_uri,
            "https://example.com/brown",
        ]
        assert record.evidence[0].title == "CourtListener"
        # Names agree closely enough, so no mismatch note
        assert record.explanation == "Still good law."

    def test_authority_name_mismatch_is_noted(self):
        verdict = ReasonerVerdict(is_valid=True, case_name="Plessy v. Ferguson")
        record = reconcile(SPAN, Ok(verdict), Ok(FOUND))
        assert record.case_name == FOUND.case_name
        assert '"Plessy v. Ferguson"' in record.explanation

    def test_authority_cannot_clear_bad_law(self):
        record = reconcile(ROE_SPAN, Ok(ROE_VERDICT), Ok(FOUND))
        assert record.lifecycle_status == LifecycleStatus.FLAGGED
        assert record.authority_ref == "105221"

    def test_authority_not_found_keeps_reasoner_verdict(self):
        missing = AuthorityVerdict(found=False)
        record = reconcile(SPAN, Ok(GOOD_VERDICT), Ok(missing))
        assert record.lifecycle_status == LifecycleStatus.VERIFIED
        assert record.authority_ref is None
        assert "has no record of this citation" in record.explanation
        assert record.explanation.startswith(GOOD_VERDICT.explanation)

    def test_authority_failure_becomes_a_note(self):
        err = AuthError("Invalid API token", backend="CourtListener")
        record = reconcile(SPAN, Ok(GOOD_VERDICT), Err(err))
        assert record.lifecycle_status == LifecycleStatus.VERIFIED
        assert record.error_kind is None
        assert "Authority lookup failed: CourtListener: Invalid API token" in record.explanation

    def test_not_consulted_leaves_no_trace(self):
        record = reconcile(SPAN, Ok(GOOD_VERDICT), None)
        assert record.authority_ref is None
        assert record.explanation == GOOD_VERDICT.explanation

    def test_evidence_is_deduplicated(self):
        verdict = ReasonerVerdict(
            is_valid=True,
            evidence=(
                EvidenceSource(FOUND.canonical_uri, "search hit"),
                EvidenceSource("https://example.com/a"),
                EvidenceSource("https://example.com/a", "again"),
            ),
        )
        record = reconcile(SPAN, Ok(verdict), Ok(FOUND))
        assert [e.uri for e in record.evidence] == [FOUND.canonical_uri, "https://example.com/a"]
        assert record.evidence[0].title == "CourtListener"


def test_dedupe_keeps_first():
    sources = [EvidenceSource("a", "1"), EvidenceSource("b"), EvidenceSource("a", "2")]
    assert dedupe_evidence(sources) == [EvidenceSource("a", "1"), EvidenceSource("b")]


def test_names_match():
    assert names_match("Roe v. Wade", "Roe v. Wade, District Attorney of Dallas County")
    assert not names_match("Roe v. Wade", "Plessy v. Ferguson")
    assert names_match("In re", "Ex parte")
