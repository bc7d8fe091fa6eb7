"""Data structures shared by extraction, verification and reporting."""

import copy
import os
from dataclasses import dataclass, field, replace
from enum import Enum


# ---------------------------------------------------------------------------
# Status enums
# ---------------------------------------------------------------------------

class LifecycleStatus(str, Enum):
    PENDING = "pending"
    CHECKING = "checking"
    VERIFIED = "verified"
    FLAGGED = "flagged"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (LifecycleStatus.VERIFIED, LifecycleStatus.FLAGGED, LifecycleStatus.ERROR)


class LegalStanding(str, Enum):
    GOOD = "good"
    CAUTION = "caution"
    SUPERSEDED = "superseded"
    OVERRULED = "overruled"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value) -> "LegalStanding":
        """Map a backend's standing string onto the enum, case-insensitively."""
        if isinstance(value, LegalStanding):
            return value
        if not isinstance(value, str):
            return cls.UNKNOWN
        return _STANDING_ALIASES.get(value.strip().lower(), cls.UNKNOWN)

    @property
    def is_bad_law(self) -> bool:
        return self in (LegalStanding.OVERRULED, LegalStanding.SUPERSEDED)


_STANDING_ALIASES = {
    "good": LegalStanding.GOOD,
    "good law": LegalStanding.GOOD,
    "verified": LegalStanding.GOOD,
    "caution": LegalStanding.CAUTION,
    "superseded": LegalStanding.SUPERSEDED,
    "overruled": LegalStanding.OVERRULED,
    "retracted": LegalStanding.OVERRULED,
    "unknown": LegalStanding.UNKNOWN,
    "not_found": LegalStanding.UNKNOWN,
}

VERIFICATION_MODES = ("standard", "research")


# ---------------------------------------------------------------------------
# Citation records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CitationSpan:
    """A citation-shaped substring located in the source text."""
    id: str
    text: str
    start: int
    end: int  # exclusive


@dataclass(frozen=True)
class EvidenceSource:
    uri: str
    title: str = ""


@dataclass(frozen=True)
class Replacement:
    """The authority that now controls in place of an overruled citation."""
    name: str
    citation: str
    uri: str = ""


@dataclass
class CitationRecord:
    """A citation span plus everything learned about it during verification."""
    span: CitationSpan
    lifecycle_status: LifecycleStatus = LifecycleStatus.PENDING
    legal_standing: LegalStanding = LegalStanding.UNKNOWN
    case_name: str | None = None
    confidence: int | None = None
    explanation: str = ""
    evidence: list[EvidenceSource] = field(default_factory=list)
    replacement: Replacement | None = None
    authority_ref: str | None = None
    area_of_law: str | None = None
    error_kind: str | None = None   # set only on Error records

    @classmethod
    def pending(cls, span: CitationSpan) -> "CitationRecord":
        return cls(span=span)

    @property
    def id(self) -> str:
        return self.span.id

    @property
    def text(self) -> str:
        return self.span.text

    @property
    def start(self) -> int:
        return self.span.start

    @property
    def end(self) -> int:
        return self.span.end

    def snapshot(self) -> "CitationRecord":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "start": self.start,
            "end": self.end,
            "status": self.lifecycle_status.value,
            "legal_standing": self.legal_standing.value,
            "case_name": self.case_name,
            "confidence": self.confidence,
            "explanation": self.explanation,
            "evidence": [{"uri": e.uri, "title": e.title} for e in self.evidence],
            "replacement": (
                {
                    "name": self.replacement.name,
                    "citation": self.replacement.citation,
                    "uri": self.replacement.uri,
                }
                if self.replacement else None
            ),
            "authority_ref": self.authority_ref,
            "area_of_law": self.area_of_law,
            "error_kind": self.error_kind,
        }


# ---------------------------------------------------------------------------
# Batch options and events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VerificationOptions:
    """Everything a batch needs to know, fixed for the batch's lifetime."""
    pattern: str | None = None
    mode: str = "standard"
    authority_enabled: bool = True
    authority_token: str = ""
    max_concurrency: int = 4
    min_length: int = 4
    reasoner_timeout: float = 60.0
    research_timeout: float = 120.0
    authority_timeout: float = 30.0
    debounce_seconds: float = 1.5

    def __post_init__(self):
        if self.mode not in VERIFICATION_MODES:
            raise ValueError(f"mode must be one of {VERIFICATION_MODES}, got {self.mode!r}")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.min_length < 0:
            raise ValueError("min_length cannot be negative")
        if self.debounce_seconds < 0:
            raise ValueError("debounce_seconds cannot be negative")

    @property
    def authority_configured(self) -> bool:
        return self.authority_enabled and bool(self.authority_token)

    @property
    def reasoner_call_timeout(self) -> float:
        return self.research_timeout if self.mode == "research" else self.reasoner_timeout

    def with_changes(self, **changes) -> "VerificationOptions":
        return replace(self, **changes)

    @classmethod
    def from_env(cls, environ=None, **overrides) -> "VerificationOptions":
        env = os.environ if environ is None else environ
        values = {
            "pattern": env.get("CITATION_PATTERN") or None,
            "mode": env.get("CITATION_MODE", "standard"),
            "authority_token": env.get("COURTLISTENER_TOKEN", ""),
        }
        if "max_concurrency" not in overrides and env.get("CITATION_MAX_CONCURRENCY"):
            values["max_concurrency"] = _env_number(env, "CITATION_MAX_CONCURRENCY", int)
        if "debounce_seconds" not in overrides and env.get("CITATION_DEBOUNCE_SECONDS"):
            values["debounce_seconds"] = _env_number(env, "CITATION_DEBOUNCE_SECONDS", float)
        values.update(overrides)
        return cls(**values)


def _env_number(env, name: str, kind):
    try:
        return kind(env[name])
    except ValueError:
        raise ValueError(f"{name} must be a number, got {env[name]!r}") from None


EVENT_TRANSITION = "transition"
EVENT_NO_CITATIONS = "no_citations"
EVENT_DONE = "done"


@dataclass(frozen=True)
class BatchEvent:
    kind: str
    batch_id: int
    citation_id: str | None = None
    record: CitationRecord | None = None

    def to_dict(self) -> dict:
        data = {"type": self.kind, "batch_id": self.batch_id}
        if self.record is not None:
            data["citation_id"] = self.citation_id
            data["citation"] = self.record.to_dict()
        return data
