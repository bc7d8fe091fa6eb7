"""
Legal Citation Checker

Finds case and statute citations in a document and checks each one with
Gemini (is it real, is it still good law?) and CourtListener (is it in the
case-law database?) to catch fabricated or overruled authority.

Usage:
    citation-checker brief.docx [--token YOUR_TOKEN] [--mode research] [--csv output.csv]

GEMINI_API_KEY must be set. The CourtListener token can also be set via the
COURTLISTENER_TOKEN environment variable.
Get a free token at: https://www.courtlistener.com/sign-in/
"""

import argparse
import logging
import os
import sys
import threading

import requests
from dotenv import load_dotenv

from .errors import InvalidPatternError
from .extraction import extract_citations, extract_text
from .orchestrator import Orchestrator
from .records import EVENT_TRANSITION, VerificationOptions
from .report import build_report_entry, post_report, print_report, status_label, write_csv
from .verifiers import CourtListenerIndex, GeminiReasoner


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="citation-checker",
        description="Check a legal document for fabricated or overruled citations.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  citation-checker brief.docx --token abc123\n"
            "  citation-checker brief.pdf --mode research --csv results.csv\n"
            "  cat notes.txt | citation-checker - --no-authority\n"
            "\n"
            "Get a free CourtListener API token at:\n"
            "  https://www.courtlistener.com/sign-in/"
        ),
    )
    parser.add_argument("document", help="Path to a .docx, .pdf or .txt file, or - for stdin")
    parser.add_argument(
        "--token",
        default=os.environ.get("COURTLISTENER_TOKEN", ""),
        help="CourtListener API token (or set COURTLISTENER_TOKEN env var)",
    )
    parser.add_argument(
        "--no-authority",
        action="store_true",
        help="Skip CourtListener lookups and rely on Gemini alone",
    )
    parser.add_argument(
        "--mode",
        choices=("standard", "research"),
        default=os.environ.get("CITATION_MODE", "standard"),
        help="research grounds Gemini with web search (slower, more sources)",
    )
    parser.add_argument(
        "--pattern",
        default=os.environ.get("CITATION_PATTERN") or None,
        help="Custom regular expression for finding citations",
    )
    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help="How many citations to verify at once (default: CITATION_MAX_CONCURRENCY or 4)",
    )
    parser.add_argument("--csv", dest="csv_file", default="", help="Optional path to export results as CSV")
    parser.add_argument(
        "--report-url",
        default="",
        help="Send a summary of the results to this report endpoint",
    )
    parser.add_argument(
        "--list-only",
        action="store_true",
        help="Only extract and list citations without verifying them",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log backend traffic")
    return parser


def read_document(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    return extract_text(path)


def main(argv=None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.document != "-" and not os.path.isfile(args.document):
        print(f"Error: File not found: {args.document}", file=sys.stderr)
        return 1

    overrides = {
        "pattern": args.pattern,
        "mode": args.mode,
        "authority_enabled": not args.no_authority,
        "authority_token": args.token,
    }
    if args.max_concurrency is not None:
        overrides["max_concurrency"] = args.max_concurrency
    try:
        options = VerificationOptions.from_env(**overrides)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    # Step 1: Extract text
    print(f"\n  Reading: {args.document}")
    try:
        text = read_document(args.document)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"  Extracted {len(text):,} characters of text.\n")

    # Step 2: Find citations
    try:
        spans = extract_citations(text, options.pattern, options.min_length)
    except InvalidPatternError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("  No citations were checked.\n", file=sys.stderr)
        return 2
    print(f"  Found {len(spans)} citation(s).\n")

    if not spans:
        print("  No citations found. Nothing to verify.\n")
        return 0

    print(f"  {'─' * 50}")
    for i, span in enumerate(spans, 1):
        print(f"  {i:3}. {span.text}")
    print(f"  {'─' * 50}\n")

    if args.list_only:
        print("  (--list-only mode: skipping verification)\n")
        return 0

    if not options.authority_configured and options.authority_enabled:
        print("  No CourtListener token; verifying with Gemini only.\n")

    # Step 3: Verify
    print("  Verifying citations...\n")
    orchestrator = Orchestrator(
        GeminiReasoner(),
        CourtListenerIndex() if options.authority_configured else None,
        options,
    )
    completed = []
    print_lock = threading.Lock()

    def on_event(event):
        if event.kind != EVENT_TRANSITION or not event.record.lifecycle_status.is_terminal:
            return
        with print_lock:
            completed.append(event.citation_id)
            print(f"  [{len(completed)}/{len(spans)}] {event.record.text} ... {status_label(event.record)}")

    orchestrator.subscribe(on_event)
    try:
        records = orchestrator.run_batch(text, options)
    except KeyboardInterrupt:
        orchestrator.close()
        print("\n  Interrupted.\n", file=sys.stderr)
        return 130

    # Step 4: Report
    print_report(records)

    if args.csv_file:
        write_csv(records, args.csv_file)
        print(f"  Results saved to: {args.csv_file}\n")

    if args.report_url:
        title = os.path.basename(args.document) if args.document != "-" else "stdin"
        try:
            post_report(args.report_url, build_report_entry(title, records))
            print(f"  Report sent to: {args.report_url}\n")
        except requests.RequestException as e:
            print(f"  Could not send report: {e}\n", file=sys.stderr)

    return 0


if __name__ == "__main__":
    sys.exit(main())
