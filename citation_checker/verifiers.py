"""
Verification backends.

Two independent services are consulted for every citation:

* a Reasoner (Gemini) that judges whether the citation is genuine and whether
  it is still good law, optionally grounded with Google Search;
* an AuthorityIndex (CourtListener) that looks the citation up in a case-law
  database.

Both clients raise VerificationError subclasses on failure. The orchestrator
wraps each call's outcome in Ok or Err before reconciliation.
"""

import json
import logging
import os
import re
import threading
from dataclasses import dataclass, replace
from typing import Generic, Protocol, TypeVar, Union

import requests

from .errors import (
    AuthError,
    NetworkError,
    ParseError,
    RateLimitError,
    SafetyBlockError,
    VerificationError,
)
from .records import EvidenceSource, LegalStanding, Replacement

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Backend verdicts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReasonerVerdict:
    is_valid: bool
    case_name: str | None = None
    legal_standing: LegalStanding = LegalStanding.UNKNOWN
    explanation: str = ""
    confidence: int | None = None
    replacement: Replacement | None = None
    evidence: tuple[EvidenceSource, ...] = ()
    area_of_law: str | None = None

    @classmethod
    def from_payload(cls, data, raw: str = "", backend: str = "") -> "ReasonerVerdict":
        """Build a verdict from a decoded response, rejecting malformed shapes."""
        if not isinstance(data, dict):
            raise ParseError("Expected a JSON object", raw, backend=backend)
        is_valid = data.get("isValid")
        if not isinstance(is_valid, bool):
            raise ParseError("Response is missing a boolean 'isValid'", raw, backend=backend)

        confidence = data.get("confidence")
        if confidence is not None:
            if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
                raise ParseError("'confidence' must be a number", raw, backend=backend)
            confidence = max(0, min(100, int(round(confidence))))

        return cls(
            is_valid=is_valid,
            case_name=_optional_str(data.get("caseName")),
            legal_standing=LegalStanding.parse(data.get("legalStanding") or data.get("legalStatus")),
            explanation=str(data.get("explanation") or data.get("reason") or ""),
            confidence=confidence,
            replacement=_parse_replacement(data.get("replacement") or data.get("supersedingCase")),
            evidence=tuple(_parse_evidence(data.get("evidence") or data.get("sources"))),
            area_of_law=_optional_str(data.get("areaOfLaw")),
        )


@dataclass(frozen=True)
class AuthorityVerdict:
    found: bool
    case_name: str | None = None
    canonical_uri: str | None = None
    record_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: VerificationError


BackendResult = Union[Ok, Err]


def _optional_str(value) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _parse_replacement(data) -> Replacement | None:
    if not isinstance(data, dict):
        return None
    name = _optional_str(data.get("name"))
    citation = _optional_str(data.get("citation"))
    if not name or not citation:
        return None
    return Replacement(name=name, citation=citation, uri=_optional_str(data.get("uri")) or "")


def _parse_evidence(items) -> list[EvidenceSource]:
    sources = []
    for item in items or []:
        if isinstance(item, dict) and item.get("uri"):
            sources.append(EvidenceSource(uri=str(item["uri"]), title=str(item.get("title") or "")))
    return sources


# ---------------------------------------------------------------------------
# Backend contracts
# ---------------------------------------------------------------------------

class Reasoner(Protocol):
    name: str

    def verify(
        self, citation_text: str, mode: str = "standard", timeout: float | None = None
    ) -> ReasonerVerdict:
        ...


class AuthorityIndex(Protocol):
    name: str

    def lookup(
        self, citation_text: str, credential: str, timeout: float | None = None
    ) -> AuthorityVerdict:
        ...


def _check_status(resp: requests.Response, backend: str) -> None:
    """Raise the matching VerificationError for a non-success HTTP status."""
    status = resp.status_code
    if status in (401, 403):
        raise AuthError(f"Credential rejected (HTTP {status}).", backend=backend)
    if status == 429:
        raise RateLimitError("Too many requests; the service is throttling.", backend=backend)
    if status == 400 and "API_KEY_INVALID" in (resp.text or ""):
        raise AuthError("API key not valid.", backend=backend)
    if not 200 <= status < 300:
        raise NetworkError(f"Service returned HTTP {status}.", backend=backend)


def _post(session, url: str, backend: str, timeout: float, **kwargs) -> requests.Response:
    try:
        return session.post(url, timeout=timeout, **kwargs)
    except requests.Timeout as e:
        raise NetworkError(f"Request timed out after {timeout:g}s.", backend=backend) from e
    except requests.RequestException as e:
        raise NetworkError(f"Request failed: {e}.", backend=backend) from e


def _decode_json(resp: requests.Response, backend: str):
    try:
        return resp.json()
    except ValueError as e:
        raise ParseError(
            f"Invalid JSON response (HTTP {resp.status_code}).", resp.text, backend=backend
        ) from e


class _SessionMixin:
    """One requests.Session per worker thread unless a session is injected."""

    def __init__(self, session: requests.Session | None = None):
        self._shared_session = session
        self._local = threading.local()

    def _session(self) -> requests.Session:
        if self._shared_session is not None:
            return self._shared_session
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._local.session = requests.Session()
        return session


# ---------------------------------------------------------------------------
# Gemini reasoner
# ---------------------------------------------------------------------------

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"

_BLOCKED_FINISH_REASONS = {"SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII", "RECITATION"}

REASONER_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "isValid": {
            "type": "BOOLEAN",
            "description": "True if the citation refers to a real reporter volume and page or a real statute.",
        },
        "caseName": {"type": "STRING", "nullable": True, "description": "The case name, e.g. 'Roe v. Wade', or null."},
        "legalStanding": {
            "type": "STRING",
            "enum": ["good", "caution", "superseded", "overruled", "unknown"],
        },
        "explanation": {"type": "STRING", "description": "Short explanation of the assessment."},
        "confidence": {"type": "INTEGER", "description": "Confidence in the assessment, 0 to 100."},
        "areaOfLaw": {"type": "STRING", "nullable": True},
        "replacement": {
            "type": "OBJECT",
            "nullable": True,
            "properties": {
                "name": {"type": "STRING"},
                "citation": {"type": "STRING"},
                "uri": {"type": "STRING", "nullable": True},
            },
            "required": ["name", "citation"],
        },
    },
    "required": ["isValid", "caseName", "legalStanding", "explanation", "confidence"],
}

_PROMPT = """Verify this legal citation: "{citation}".
Determine whether it refers to a real reported decision or statute. If it looks
fabricated (for example the volume does not exist for that reporter, or the
page does not begin a decision), mark it invalid.
For a genuine citation, report its current legal standing: good, caution,
superseded, overruled or unknown. If it has been overruled or superseded,
name the controlling authority in "replacement" with its citation."""

_RESEARCH_SUFFIX = """
Search the web for the citation's subsequent history before answering.
Respond with only a JSON object with the keys isValid (boolean), caseName
(string or null), legalStanding, explanation, confidence (0-100), areaOfLaw,
and replacement ({name, citation, uri} or null)."""

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


class GeminiReasoner(_SessionMixin):
    """Asks Gemini whether a citation is genuine and still good law."""

    name = "Gemini"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        session: requests.Session | None = None,
    ):
        super().__init__(session)
        self.api_key = api_key if api_key is not None else os.environ.get("GEMINI_API_KEY", "")
        self.model = model or os.environ.get("GEMINI_MODEL", DEFAULT_GEMINI_MODEL)

    @property
    def url(self) -> str:
        return f"{GEMINI_API_BASE}/{self.model}:generateContent"

    def build_payload(self, citation_text: str, mode: str) -> dict:
        prompt = _PROMPT.format(citation=citation_text)
        if mode == "research":
            return {
                "contents": [{"parts": [{"text": prompt + _RESEARCH_SUFFIX}]}],
                "tools": [{"google_search": {}}],
                "generationConfig": {"temperature": 0.1},
            }
        return {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": 0.1,
                "responseMimeType": "application/json",
                "responseSchema": REASONER_SCHEMA,
            },
        }

    def verify(self, citation_text: str, mode: str = "standard", timeout: float | None = None) -> ReasonerVerdict:
        if not self.api_key:
            raise AuthError("GEMINI_API_KEY is not set; cannot verify.", backend=self.name)
        timeout = timeout or (120.0 if mode == "research" else 60.0)

        resp = _post(
            self._session(),
            self.url,
            self.name,
            timeout,
            json=self.build_payload(citation_text, mode),
            headers={"x-goog-api-key": self.api_key},
        )
        _check_status(resp, self.name)
        data = _decode_json(resp, self.name)
        return self.parse_response(data, mode)

    def parse_response(self, data, mode: str = "standard") -> ReasonerVerdict:
        if not isinstance(data, dict):
            raise ParseError("Expected a JSON object", json.dumps(data), backend=self.name)

        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise SafetyBlockError(f"Request blocked: {block_reason}", backend=self.name)

        candidates = data.get("candidates") or []
        if not candidates:
            raise ParseError("Response contained no candidates", json.dumps(data), backend=self.name)
        candidate = candidates[0]
        finish_reason = candidate.get("finishReason")
        if finish_reason in _BLOCKED_FINISH_REASONS:
            raise SafetyBlockError(f"Response blocked: {finish_reason}", backend=self.name)

        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(str(p.get("text") or "") for p in parts).strip()
        if not text:
            raise ParseError("Response contained no text", json.dumps(data), backend=self.name)

        verdict = ReasonerVerdict.from_payload(self._decode_answer(text), text, backend=self.name)

        grounding = _grounding_sources(candidate)
        if grounding:
            verdict = replace(verdict, evidence=verdict.evidence + tuple(grounding))
        return verdict

    def _decode_answer(self, text: str):
        fenced = _FENCE_RE.search(text)
        if fenced:
            text = fenced.group(1)
        else:
            start, end = text.find("{"), text.rfind("}")
            if start != -1 and end > start:
                text = text[start:end + 1]
        try:
            return json.loads(text)
        except ValueError as e:
            raise ParseError("Answer was not valid JSON", text, backend=self.name) from e


def _grounding_sources(candidate: dict) -> list[EvidenceSource]:
    metadata = candidate.get("groundingMetadata") or {}
    sources = []
    for chunk in metadata.get("groundingChunks") or []:
        web = chunk.get("web") or {}
        if web.get("uri"):
            sources.append(EvidenceSource(uri=web["uri"], title=web.get("title") or ""))
    return sources


# ---------------------------------------------------------------------------
# CourtListener authority index
# ---------------------------------------------------------------------------

COURTLISTENER_BASE = "https://www.courtlistener.com"
API_BASE = f"{COURTLISTENER_BASE}/api/rest/v4"
CITATION_LOOKUP_URL = f"{API_BASE}/citation-lookup/"


class CourtListenerIndex(_SessionMixin):
    """Looks citations up with CourtListener's citation-lookup endpoint."""

    name = "CourtListener"

    def lookup(self, citation_text: str, credential: str, timeout: float | None = None) -> AuthorityVerdict:
        timeout = timeout or 30.0
        resp = _post(
            self._session(),
            CITATION_LOOKUP_URL,
            self.name,
            timeout,
            data={"text": citation_text},
            headers={"Authorization": f"Token {credential}"},
        )
        _check_status(resp, self.name)
        return self.parse_response(_decode_json(resp, self.name), resp.text)

    def parse_response(self, data, raw: str = "") -> AuthorityVerdict:
        # The lookup endpoint returns one result object per citation found in the text
        if isinstance(data, dict):
            data = [data] if "clusters" in data or "status" in data else []
        if not isinstance(data, list):
            raise ParseError("Expected a list of lookup results", raw, backend=self.name)
        if not data:
            return AuthorityVerdict(found=False)

        not_found_error = None
        for result in data:
            if not isinstance(result, dict):
                continue
            status = result.get("status", 200)
            if status in (200, 300) and result.get("clusters"):
                return self._verdict_from_cluster(result["clusters"][0])
            if status == 400:
                not_found_error = result.get("error_message") or "Unrecognized reporter"
            elif status == 429:
                raise RateLimitError(
                    result.get("error_message") or "Citation lookup limit reached.",
                    backend=self.name,
                )
        return AuthorityVerdict(found=False, error=not_found_error)

    def _verdict_from_cluster(self, cluster: dict) -> AuthorityVerdict:
        url = cluster.get("absolute_url") or ""
        if url.startswith("/"):
            url = COURTLISTENER_BASE + url
        record_id = cluster.get("id")
        return AuthorityVerdict(
            found=True,
            case_name=_optional_str(cluster.get("caseName") or cluster.get("case_name")),
            canonical_uri=url or None,
            record_id=str(record_id) if record_id is not None else None,
        )
