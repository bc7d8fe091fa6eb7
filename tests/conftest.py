import threading
import time

import pytest

from citation_checker.records import LegalStanding, Replacement
from citation_checker.verifiers import AuthorityVerdict, ReasonerVerdict

ROE = "410 U.S. 113 (1973)"
BROWN = "347 U.S. 483 (1954)"
FAKE = "999 U.S. 999 (2024)"

GOOD_VERDICT = ReasonerVerdict(
    is_valid=True,
    case_name="Brown v. Board of Education",
    legal_standing=LegalStanding.GOOD,
    explanation="Landmark decision; still good law.",
    confidence=97,
)

ROE_VERDICT = ReasonerVerdict(
    is_valid=True,
    case_name="Roe v. Wade",
    legal_standing=LegalStanding.OVERRULED,
    explanation="Overruled in 2022.",
    confidence=95,
    replacement=Replacement(name="Dobbs v. Jackson", citation="597 U.S. 215"),
)

FABRICATED_VERDICT = ReasonerVerdict(
    is_valid=False,
    explanation="no such reporter volume",
    confidence=90,
)


class FakeReasoner:
    """In-process reasoner keyed by citation text; values may be exceptions."""

    name = "FakeReasoner"

    def __init__(self, verdicts=None, default=GOOD_VERDICT, delay=0.0):
        self.verdicts = dict(verdicts or {})
        self.default = default
        self.delay = delay
        self.calls = []
        self.gates: dict[str, threading.Event] = {}
        self.started = threading.Event()
        self.returned = threading.Event()
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def verify(self, citation_text, mode="standard", timeout=None):
        with self._lock:
            self.calls.append((citation_text, mode))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            gate = self.gates.get(citation_text)
            if gate is not None:
                gate.wait(5)
            if self.delay:
                time.sleep(self.delay)
            result = self.verdicts.get(citation_text, self.default)
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            with self._lock:
                self.active -= 1
            self.returned.set()


class FakeAuthority:
    name = "FakeAuthority"

    def __init__(self, result=None):
        self.result = result if result is not None else AuthorityVerdict(
            found=True,
            case_name="Brown v. Board of Education of Topeka",
            canonical_uri="https://www.courtlistener.com/opinion/105221/brown-v-board/",
            record_id="105221",
        )
        self.calls = []
        self._lock = threading.Lock()

    def lookup(self, citation_text, credential, timeout=None):
        with self._lock:
            self.calls.append((citation_text, credential))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.fixture
def reasoner():
    return FakeReasoner(verdicts={ROE: ROE_VERDICT, FAKE: FABRICATED_VERDICT})


@pytest.fixture
def authority():
    return FakeAuthority()
