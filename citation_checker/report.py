"""Summaries, filters and exports over verified citation records."""

import csv
import io
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Iterable

import requests

from .records import CitationRecord, LegalStanding, LifecycleStatus

FILTERS = ("all", "issues", "valid", "superseded")
SORT_OPTIONS = ("original", "name", "status", "confidence")

_STATUS_ORDER = {
    LifecycleStatus.ERROR: 0,
    LifecycleStatus.FLAGGED: 1,
    LifecycleStatus.CHECKING: 2,
    LifecycleStatus.PENDING: 3,
    LifecycleStatus.VERIFIED: 4,
}


@dataclass(frozen=True)
class AnalysisStats:
    total: int = 0
    valid: int = 0
    issues: int = 0
    pending: int = 0
    caution: int = 0


def is_issue(record: CitationRecord) -> bool:
    return record.lifecycle_status in (LifecycleStatus.FLAGGED, LifecycleStatus.ERROR)


def is_valid(record: CitationRecord) -> bool:
    return (
        record.lifecycle_status == LifecycleStatus.VERIFIED
        and record.legal_standing in (LegalStanding.GOOD, LegalStanding.UNKNOWN)
    )


def compute_stats(records: Iterable[CitationRecord]) -> AnalysisStats:
    records = list(records)
    return AnalysisStats(
        total=len(records),
        valid=sum(1 for r in records if is_valid(r)),
        issues=sum(1 for r in records if is_issue(r)),
        pending=sum(1 for r in records if not r.lifecycle_status.is_terminal),
        caution=sum(
            1 for r in records
            if r.lifecycle_status == LifecycleStatus.VERIFIED
            and r.legal_standing == LegalStanding.CAUTION
        ),
    )


def filter_records(records: Iterable[CitationRecord], which: str = "all") -> list[CitationRecord]:
    if which not in FILTERS:
        raise ValueError(f"Unknown filter {which!r}; expected one of {FILTERS}")
    records = list(records)
    if which == "issues":
        return [r for r in records if is_issue(r)]
    if which == "valid":
        return [r for r in records if is_valid(r)]
    if which == "superseded":
        return [r for r in records if r.legal_standing.is_bad_law or r.replacement is not None]
    return records


def sort_records(records: Iterable[CitationRecord], order: str = "original") -> list[CitationRecord]:
    if order not in SORT_OPTIONS:
        raise ValueError(f"Unknown sort order {order!r}; expected one of {SORT_OPTIONS}")
    records = list(records)
    if order == "name":
        return sorted(records, key=lambda r: ((r.case_name or r.text).lower(), r.start))
    if order == "status":
        return sorted(records, key=lambda r: (_STATUS_ORDER[r.lifecycle_status], r.start))
    if order == "confidence":
        # Highest first; records without a score go last
        return sorted(records, key=lambda r: (r.confidence is None, -(r.confidence or 0), r.start))
    return sorted(records, key=lambda r: r.start)


# ---------------------------------------------------------------------------
# Console output
# ---------------------------------------------------------------------------

# ANSI color codes
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
GRAY = "\033[90m"
BOLD = "\033[1m"
RESET = "\033[0m"


def status_label(record: CitationRecord) -> str:
    status = record.lifecycle_status
    if status == LifecycleStatus.VERIFIED:
        if record.legal_standing == LegalStanding.CAUTION:
            return f"{YELLOW}VERIFIED (CAUTION){RESET}"
        return f"{GREEN}VERIFIED{RESET}"
    if status == LifecycleStatus.FLAGGED:
        if record.legal_standing.is_bad_law:
            return f"{YELLOW}{record.legal_standing.value.upper()}{RESET}"
        return f"{RED}POSSIBLE FABRICATION{RESET}"
    if status == LifecycleStatus.ERROR:
        return f"{RED}ERROR{RESET}"
    return f"{GRAY}{status.value.upper()}{RESET}"


def print_report(records: list[CitationRecord]) -> None:
    """Print a detailed report to the console, problems first."""
    print(f"\n{'=' * 70}")
    print(f"{BOLD}  CITATION VERIFICATION REPORT{RESET}")
    print(f"{'=' * 70}\n")

    if not records:
        print("  No citations found in the document.\n")
        return

    for record in sort_records(records, "status"):
        print(f"  {status_label(record)}  {record.text}")
        if record.case_name:
            print(f"    {record.case_name}")
        if record.explanation:
            print(f"    -> {record.explanation}")
        if record.replacement:
            print(f"    Now controlling: {record.replacement.name}, {record.replacement.citation}")
        for source in record.evidence[:3]:
            print(f"    {GRAY}{source.title or 'Source'}: {source.uri}{RESET}")
        print()

    stats = compute_stats(records)
    print(f"{'=' * 70}")
    print(f"  SUMMARY: {stats.total} citations checked")
    print(f"    {GREEN}Valid:    {stats.valid}{RESET}")
    print(f"    {YELLOW}Caution:  {stats.caution}{RESET}")
    print(f"    {RED}Issues:   {stats.issues}{RESET}")
    if stats.pending:
        print(f"    {GRAY}Pending:  {stats.pending}{RESET}")
    print(f"{'=' * 70}\n")

    if stats.issues:
        print(f"  {RED}{BOLD}WARNING: {stats.issues} citation(s) need attention.{RESET}")
        print("  Fabricated or overruled authority should be corrected before filing.\n")


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------

CSV_HEADER = [
    "Citation", "Start", "End", "Status", "Legal Standing", "Case Name",
    "Confidence", "Explanation", "Replacement", "Authority Ref", "Sources",
]


def write_csv_rows(records: Iterable[CitationRecord], stream) -> None:
    writer = csv.writer(stream)
    writer.writerow(CSV_HEADER)
    for r in records:
        writer.writerow([
            r.text,
            r.start,
            r.end,
            r.lifecycle_status.value,
            r.legal_standing.value,
            r.case_name or "",
            "" if r.confidence is None else r.confidence,
            r.explanation,
            f"{r.replacement.name}, {r.replacement.citation}" if r.replacement else "",
            r.authority_ref or "",
            " ".join(e.uri for e in r.evidence),
        ])


def write_csv(records: Iterable[CitationRecord], filepath: str) -> None:
    """Write verification results to a CSV file."""
    with open(filepath, "w", newline="", encoding="utf-8") as f:
        write_csv_rows(records, f)


def csv_bytes(records: Iterable[CitationRecord]) -> bytes:
    output = io.StringIO()
    write_csv_rows(records, output)
    return output.getvalue().encode("utf-8")


def build_report_entry(title: str, records: list[CitationRecord]) -> dict:
    """A journal entry summarising one checked document."""
    stats = compute_stats(records)
    if stats.pending:
        status = "pending"
    elif stats.issues:
        status = "issues"
    else:
        status = "verified"
    return {
        "id": uuid.uuid4().hex[:12],
        "timestamp": int(time.time() * 1000),
        "documentTitle": title or "Untitled",
        "stats": asdict(stats),
        "status": status,
        "findings": [
            {
                "text": r.text,
                "status": r.lifecycle_status.value,
                "caseName": r.case_name,
                "legalStatus": r.legal_standing.value,
                "areaOfLaw": r.area_of_law,
            }
            for r in records
        ],
    }


def format_report_entry(entry: dict, timestamp: str) -> str:
    """Render a journal entry as the human-readable block appended to the report log."""
    lines = [
        "=" * 40,
        f"TIMESTAMP: {timestamp}",
        f"DOCUMENT: {entry.get('documentTitle') or 'Untitled'}",
        f"ID: {entry.get('id') or 'N/A'}",
        f"STATS: {entry.get('stats')}",
        "FINDINGS:",
    ]
    for finding in entry.get("findings") or []:
        area = finding.get("areaOfLaw") or "Unspecified"
        case_name = finding.get("caseName") or "Unknown Case"
        lines.append(
            f" - [{str(finding.get('status', '')).upper()}] {finding.get('text', '')}"
            f" ({case_name}) | AREA: {area}"
        )
    lines.append("=" * 40)
    return "\n".join(lines) + "\n\n"


def post_report(url: str, entry: dict, timeout: float = 15.0) -> None:
    """Send a journal entry to a report endpoint such as the web app's /report."""
    resp = requests.post(url, json=entry, timeout=timeout)
    resp.raise_for_status()
