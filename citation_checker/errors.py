"""
Error taxonomy for citation extraction and verification.

Only InvalidPatternError ever escapes a batch. Everything raised by a
backend call is a VerificationError subclass, which the orchestrator turns
into an Error record for that one citation.
"""

PAYLOAD_EXCERPT_LENGTH = 200


class CitationCheckError(Exception):
    """Base class for all citation checker errors."""


class InvalidPatternError(CitationCheckError):
    """The citation pattern failed to compile."""

    def __init__(self, pattern: str, reason: str):
        self.pattern = pattern
        self.reason = reason
        super().__init__(f"Invalid citation pattern {pattern!r}: {reason}")


class StaleCitationError(CitationCheckError):
    """A citation's offsets no longer match the text it was extracted from."""


class VerificationError(CitationCheckError):
    """A verification backend call failed."""

    kind = "unknown"

    def __init__(self, message: str, backend: str = ""):
        self.backend = backend
        super().__init__(message)

    @property
    def user_message(self) -> str:
        prefix = f"{self.backend}: " if self.backend else ""
        return prefix + str(self)


class NetworkError(VerificationError):
    kind = "network"

    @property
    def user_message(self) -> str:
        return (
            f"{super().user_message} "
            "Check your connection and run the check again."
        )


class AuthError(VerificationError):
    kind = "auth"

    @property
    def user_message(self) -> str:
        return f"{super().user_message} Check the API key or token in your settings."


class RateLimitError(VerificationError):
    kind = "rate_limit"

    @property
    def user_message(self) -> str:
        return f"{super().user_message} Wait a minute before checking again."


class SafetyBlockError(VerificationError):
    """The backend refused to answer; the message is its reason, verbatim."""

    kind = "safety_block"


class ParseError(VerificationError):
    kind = "parse"

    def __init__(self, message: str, payload: str = "", backend: str = ""):
        self.excerpt = truncate_payload(payload)
        super().__init__(message, backend=backend)

    @property
    def user_message(self) -> str:
        msg = super().user_message
        if self.excerpt:
            msg += f" Response began: {self.excerpt!r}"
        return msg


def truncate_payload(payload, limit: int = PAYLOAD_EXCERPT_LENGTH) -> str:
    if payload is None:
        return ""
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    payload = str(payload)
    if len(payload) <= limit:
        return payload
    return payload[:limit] + "..."
