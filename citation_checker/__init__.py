"""Find legal citations in text and check them for fabrication and bad law."""

from .errors import (
    AuthError,
    CitationCheckError,
    InvalidPatternError,
    NetworkError,
    ParseError,
    RateLimitError,
    SafetyBlockError,
    StaleCitationError,
    VerificationError,
)
from .extraction import (
    DEFAULT_CITATION_PATTERN,
    Segment,
    apply_replacement,
    compile_pattern,
    extract_citations,
    extract_text,
    segment_text,
)
from .orchestrator import BatchHandle, LiveAnalyzer, Orchestrator
from .reconciliation import reconcile
from .records import (
    BatchEvent,
    CitationRecord,
    CitationSpan,
    EvidenceSource,
    LegalStanding,
    LifecycleStatus,
    Replacement,
    VerificationOptions,
)
from .report import AnalysisStats, compute_stats, filter_records, sort_records
from .verifiers import (
    AuthorityVerdict,
    CourtListenerIndex,
    Err,
    GeminiReasoner,
    Ok,
    ReasonerVerdict,
)

__version__ = "0.2.0"
