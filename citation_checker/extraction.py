"""
Citation extraction and highlighting.

Scans free-form text for citation-shaped substrings (reporter citations such
as "410 U.S. 113" and statute notation such as "28 U.S.C. § 1331") and splits
text into plain and citation segments for display.
"""

import hashlib
import os
import re
from dataclasses import dataclass
from typing import Iterable, Iterator

import docx
import pymupdf
from lxml import etree

from .errors import InvalidPatternError, StaleCitationError
from .records import CitationRecord, CitationSpan

# ---------------------------------------------------------------------------
# Default citation pattern
# ---------------------------------------------------------------------------

# Reporter abbreviations grouped by type.
# Each entry is a regex fragment (periods escaped, optional spacing).

FEDERAL_SUPREME = [
    r"U\.\s?S\.",
    r"S\.\s?Ct\.",
    r"L\.\s?Ed\.(?:\s?2d)?",
]

FEDERAL_CIRCUIT_DISTRICT = [
    r"F\.\s?4th",
    r"F\.\s?3d",
    r"F\.\s?2d",
    r"F\.\s?Supp\.\s?3d",
    r"F\.\s?Supp\.\s?2d",
    r"F\.\s?Supp\.",
    r"F\.\s?App[’']x",
    r"F\.",
    r"B\.R\.",
    r"Fed\.\s?Cl\.",
    r"M\.J\.",
    r"Vet\.\s?App\.",
]

REGIONAL_REPORTERS = [
    r"N\.\s?E\.\s?3d", r"N\.\s?E\.\s?2d", r"N\.\s?E\.",
    r"N\.\s?W\.\s?2d", r"N\.\s?W\.",
    r"S\.\s?E\.\s?2d", r"S\.\s?E\.",
    r"S\.\s?W\.\s?3d", r"S\.\s?W\.\s?2d", r"S\.\s?W\.",
    r"So\.\s?3d", r"So\.\s?2d", r"So\.",
    r"P\.\s?3d", r"P\.\s?2d", r"P\.",
    r"A\.\s?3d", r"A\.\s?2d", r"A\.",
]

STATE_REPORTERS = [
    r"Cal\.\s?Rptr\.\s?3d", r"Cal\.\s?Rptr\.\s?2d", r"Cal\.\s?Rptr\.",
    r"N\.\s?Y\.\s?S\.\s?3d", r"N\.\s?Y\.\s?S\.\s?2d", r"N\.\s?Y\.\s?S\.",
    r"Ill\.\s?Dec\.",
    r"Ill\.\s?2d",
    r"Wis\.\s?2d",
    r"Mich\.\s?App\.",
    r"Ohio\s?St\.\s?3d", r"Ohio\s?St\.\s?2d",
    r"Pa\.\s?Super\.",
    r"Wash\.\s?2d", r"Wash\.\s?App\.",
    r"Mass\.\s?App\.\s?Ct\.",
]

ALL_REPORTERS = (
    FEDERAL_SUPREME
    + FEDERAL_CIRCUIT_DISTRICT
    + REGIONAL_REPORTERS
    + STATE_REPORTERS
)

REPORTER_PATTERN = "(?:" + "|".join(ALL_REPORTERS) + ")"

# Volume Reporter Page(, PinCite)( (Court Year))
CASE_CITE_PATTERN = (
    r"\b\d{1,4}\s+"
    + REPORTER_PATTERN
    + r"\s+\d{1,5}"
    r"(?:,\s*\d{1,5}(?:\s*[-–]\s*\d{1,5})?)?"
    r"(?:\s?\([A-Za-z0-9. ]*?\d{4}\))?"
)

# 28 U.S.C. § 1331, 42 U.S.C.A. §§ 1983, 29 C.F.R. § 1630.2, 120 Stat. 2083,
# and state code shapes such as 45 Pa. C.S. § 101.
STATUTE_CITE_PATTERN = (
    r"\b\d{1,4}\s+(?:"
    r"U\.\s?S\.\s?C\.(?:\s?A\.)?"
    r"|C\.\s?F\.\s?R\."
    r"|Stat\."
    r"|[A-Z][A-Za-z]{0,4}\.\s?(?:C\.\s?S\.|C\.|S\.)"
    r")"
    r"\s?(?:§§?\s?)?\d{1,6}(?:\.\d{1,6})?[a-z]?(?:\([a-z0-9]{1,4}\))*"
)

DEFAULT_CITATION_PATTERN = f"(?:{CASE_CITE_PATTERN})|(?:{STATUTE_CITE_PATTERN})"

# Matches shorter than this are almost always stray numbers, not citations.
DEFAULT_MIN_LENGTH = 4


def compile_pattern(pattern: str | None = None) -> re.Pattern:
    """Compile a citation pattern, falling back to the default when none is given.

    A pattern that does not compile raises InvalidPatternError; it is never
    silently swapped for the default.
    """
    if pattern is None or not pattern.strip():
        pattern = DEFAULT_CITATION_PATTERN
    try:
        return re.compile(pattern)
    except re.error as e:
        raise InvalidPatternError(pattern, str(e)) from e


def span_id(start: int, text: str) -> str:
    """Stable identity for a span: same offset and text give the same id."""
    digest = hashlib.sha1(text.encode("utf-8")).hexdigest()[:10]
    return f"cite-{start}-{digest}"


def extract_citations(
    text: str,
    pattern: str | None = None,
    min_length: int = DEFAULT_MIN_LENGTH,
) -> list[CitationSpan]:
    """Extract citation spans from text, sorted by offset and non-overlapping."""
    regex = compile_pattern(pattern)
    if not text or not text.strip():
        return []

    spans = []
    for m in regex.finditer(text):
        matched = m.group(0)
        if not matched or len(matched) < min_length:
            continue
        spans.append(CitationSpan(
            id=span_id(m.start(), matched),
            text=matched,
            start=m.start(),
            end=m.end(),
        ))

    spans.sort(key=lambda s: (s.start, -s.end))
    result = []
    last_end = -1
    for span in spans:
        # Same start collapses to the first (longest); later overlaps are dropped.
        if span.start < last_end or (result and result[-1].start == span.start):
            continue
        result.append(span)
        last_end = span.end
    return result


# ---------------------------------------------------------------------------
# Highlighting
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Segment:
    text: str
    is_citation: bool
    citation_id: str | None = None


class TextSegments:
    """Plain and citation segments of a text, computed lazily on each iteration.

    Records whose offsets fall outside the text or overlap an earlier citation
    are skipped, so segments always join back into the original text even
    when the text has been edited since extraction.
    """

    def __init__(self, text: str, records: Iterable[CitationRecord | CitationSpan]):
        self.text = text or ""
        self.records = tuple(records)

    def __iter__(self) -> Iterator[Segment]:
        text = self.text
        if not text:
            return
        last = 0
        for rec in sorted(self.records, key=lambda r: (r.start, r.end)):
            if rec.start < 0 or rec.end > len(text) or rec.start >= rec.end:
                continue
            if rec.start < last:
                continue
            if rec.start > last:
                yield Segment(text[last:rec.start], False)
            yield Segment(text[rec.start:rec.end], True, rec.id)
            last = rec.end
        if last < len(text):
            yield Segment(text[last:], False)

    def to_list(self) -> list[dict]:
        return [
            {"text": s.text, "is_citation": s.is_citation, "citation_id": s.citation_id}
            for s in self
        ]


def segment_text(text: str, records: Iterable[CitationRecord | CitationSpan]) -> TextSegments:
    return TextSegments(text, records)


def apply_replacement(text: str, record: CitationRecord) -> str:
    """Swap a record's citation for the citation of its controlling authority."""
    if record.replacement is None or not record.replacement.citation:
        raise ValueError(f"Citation {record.id} has no replacement to apply")
    if text[record.start:record.end] != record.text:
        raise StaleCitationError(
            f"Citation {record.text!r} is no longer at offset {record.start}; "
            "re-run the check before applying replacements"
        )
    return text[:record.start] + record.replacement.citation + text[record.end:]


# ---------------------------------------------------------------------------
# Document text extraction
# ---------------------------------------------------------------------------

_W_NS = {"w": "http://schemas.openxmlformats.org/wordprocessingml/2006/main"}
_FOOTNOTES_REL = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/footnotes"
_ENDNOTES_REL = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/endnotes"


def _note_texts(document, reltype: str, tag: str) -> list[str]:
    try:
        part = document.part.package.part_related_by(reltype)
    except KeyError:
        return []
    tree = etree.fromstring(part.blob)
    texts = []
    for note in tree.findall(f".//w:{tag}", _W_NS):
        if note.get(f"{{{_W_NS['w']}}}id") in ("-1", "0"):  # separator/continuation
            continue
        runs = note.findall(".//w:t", _W_NS)
        texts.append(" ".join(t.text for t in runs if t.text))
    return texts


def extract_text_from_docx(filepath: str) -> str:
    """Extract all text from a .docx file, including footnotes and endnotes."""
    document = docx.Document(filepath)
    parts = [para.text for para in document.paragraphs]
    parts += _note_texts(document, _FOOTNOTES_REL, "footnote")
    parts += _note_texts(document, _ENDNOTES_REL, "endnote")
    return "\n".join(parts)


def extract_text_from_pdf(filepath: str) -> str:
    with pymupdf.open(filepath) as doc:
        return "\n".join(page.get_text() for page in doc)


def extract_text(filepath: str) -> str:
    """Extract text from a .docx, .pdf or plain-text file based on extension."""
    ext = os.path.splitext(filepath)[1].lower()
    if ext == ".docx":
        return extract_text_from_docx(filepath)
    if ext == ".pdf":
        return extract_text_from_pdf(filepath)
    if ext in (".txt", ".md", ""):
        with open(filepath, encoding="utf-8") as f:
            return f.read()
    raise ValueError(f"Unsupported file type: {ext}. Use .docx, .pdf or .txt")
