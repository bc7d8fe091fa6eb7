"""
Merging the reasoner's verdict and the authority lookup into one record.

Rules, strongest first:

1. A failed reasoner call makes the record an Error; no standing is judged.
2. A citation the reasoner calls fabricated is Flagged, whatever the
   authority index says.
3. For a genuine citation the reasoner's standing stands. The authority
   index can only add to it: its case name wins, its link goes first in
   the evidence, and its failures or misses become notes in the explanation.
4. Overruled and superseded citations are Flagged even when genuine.
"""

import re

from .records import (
    CitationRecord,
    CitationSpan,
    EvidenceSource,
    LegalStanding,
    LifecycleStatus,
)
from .verifiers import AuthorityVerdict, BackendResult, Err, Ok, ReasonerVerdict

AUTHORITY_TITLE = "CourtListener"


def reconcile(
    span: CitationSpan,
    reasoner_result: BackendResult,
    authority_result: BackendResult | None = None,
) -> CitationRecord:
    """Produce the terminal record for a span from its backend results.

    authority_result is None when the authority index was not consulted
    (disabled, unconfigured, or skipped because the citation is fabricated).
    """
    record = CitationRecord.pending(span)

    if isinstance(reasoner_result, Err):
        error = reasoner_result.error
        record.lifecycle_status = LifecycleStatus.ERROR
        record.legal_standing = LegalStanding.UNKNOWN
        record.error_kind = error.kind
        record.explanation = error.user_message
        return record

    verdict: ReasonerVerdict = reasoner_result.value
    record.case_name = verdict.case_name
    record.legal_standing = verdict.legal_standing
    record.confidence = verdict.confidence
    record.area_of_law = verdict.area_of_law
    record.replacement = verdict.replacement
    evidence = list(verdict.evidence)
    notes = []

    if not verdict.is_valid:
        record.lifecycle_status = LifecycleStatus.FLAGGED
    else:
        if isinstance(authority_result, Err):
            notes.append(f"Authority lookup failed: {authority_result.error.user_message}")
        elif isinstance(authority_result, Ok):
            evidence = _merge_authority(record, authority_result.value, evidence, notes)

        if record.legal_standing.is_bad_law:
            record.lifecycle_status = LifecycleStatus.FLAGGED
        else:
            record.lifecycle_status = LifecycleStatus.VERIFIED

    record.evidence = dedupe_evidence(evidence)
    record.explanation = " ".join(part for part in [verdict.explanation.strip()] + notes if part)
    return record


def _merge_authority(
    record: CitationRecord,
    found: AuthorityVerdict,
    evidence: list[EvidenceSource],
    notes: list[str],
) -> list[EvidenceSource]:
    if not found.found:
        note = f"{AUTHORITY_TITLE} has no record of this citation; the model's assessment stands."
        if found.error:
            note += f" ({found.error})"
        notes.append(note)
        return evidence

    if found.case_name:
        if record.case_name and not names_match(record.case_name, found.case_name):
            notes.append(
                f"{AUTHORITY_TITLE} lists this citation as \"{found.case_name}\", "
                f"not \"{record.case_name}\"."
            )
        record.case_name = found.case_name
    record.authority_ref = found.record_id or found.canonical_uri or "found"
    if found.canonical_uri:
        evidence = [EvidenceSource(uri=found.canonical_uri, title=AUTHORITY_TITLE)] + evidence
    return evidence


def dedupe_evidence(evidence: list[EvidenceSource]) -> list[EvidenceSource]:
    """Drop repeated URIs, keeping the first occurrence of each."""
    seen = set()
    result = []
    for source in evidence:
        if source.uri in seen:
            continue
        seen.add(source.uri)
        result.append(source)
    return result


_NAME_STOPWORDS = {
    "v", "vs", "the", "of", "in", "re", "ex", "parte", "et", "al",
    "a", "an", "and", "for", "on", "by", "no", "inc", "corp",
    "co", "ltd", "llc", "city", "state", "united", "states",
    "county", "board", "dept", "department",
}


def names_match(name_a: str, name_b: str) -> bool:
    """
    Check whether two case names plausibly refer to the same case.
    Treats them as a match when at least 40% of either name's significant
    words appear in the other.
    """
    def normalize(name: str) -> set[str]:
        name = re.sub(r"[.,;:'\"’()\[\]]", " ", name.lower())
        words = set(name.split()) - _NAME_STOPWORDS
        return {w for w in words if len(w) > 1}

    words_a = normalize(name_a)
    words_b = normalize(name_b)
    if not words_a or not words_b:
        return True  # Can't compare, assume match

    overlap = words_a & words_b
    return len(overlap) / len(words_a) >= 0.4 or len(overlap) / len(words_b) >= 0.4
