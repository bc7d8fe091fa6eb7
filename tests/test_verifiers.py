import json
from unittest.mock import MagicMock

import pytest
import requests

from citation_checker.errors import (
    AuthError,
    NetworkError,
    ParseError,
    RateLimitError,
    SafetyBlockError,
)
from citation_checker.records import LegalStanding
from citation_checker.verifiers import (
    CITATION_LOOKUP_URL,
    CourtListenerIndex,
    GeminiReasoner,
    ReasonerVerdict,
)


def fake_response(status=200, payload=None, text=None):
    resp = MagicMock()
    resp.status_code = status
    if payload is None:
        resp.json.side_effect = ValueError("No JSON object could be decoded")
        resp.text = text or ""
    else:
        resp.json.return_value = payload
        resp.text = text if text is not None else json.dumps(payload)
    return resp


def gemini_body(answer, **candidate_extra):
    text = answer if isinstance(answer, str) else json.dumps(answer)
    candidate = {"content": {"parts": [{"text": text}]}, "finishReason": "STOP"}
    candidate.update(candidate_extra)
    return {"candidates": [candidate]}


ROE_ANSWER = {
    "isValid": True,
    "caseName": "Roe v. Wade",
    "legalStanding": "overruled",
    "explanation": "Overruled by Dobbs in 2022.",
    "confidence": 98,
    "areaOfLaw": "Constitutional Law",
    "replacement": {"name": "Dobbs v. Jackson Women's Health Organization", "citation": "597 U.S. 215"},
}


@pytest.fixture
def session():
    return MagicMock()


class TestGeminiReasoner:
    def test_standard_mode_requests_structured_json(self, session):
        session.post.return_value = fake_response(200, gemini_body(ROE_ANSWER))
        reasoner = GeminiReasoner(api_key="key", model="gemini-test", session=session)

        verdict = reasoner.verify("410 U.S. 113", timeout=5)

        args, kwargs = session.post.call_args
        assert args[0].endswith("/gemini-test:generateContent")
        assert kwargs["headers"] == {"x-goog-api-key": "key"}
        assert kwargs["timeout"] == 5
        config = kwargs["json"]["generationConfig"]
        assert config["responseMimeType"] == "application/json"
        assert "isValid" in config["responseSchema"]["properties"]
        assert "tools" not in kwargs["json"]
        assert "410 U.S. 113" in kwargs["json"]["contents"][0]["parts"][0]["text"]

        assert verdict.is_valid is True
        assert verdict.case_name == "Roe v. Wade"
        assert verdict.legal_standing == LegalStanding.OVERRULED
        assert verdict.confidence == 98
        assert verdict.area_of_law == "Constitutional Law"
        assert verdict.replacement.citation == "597 U.S. 215"

    def test_research_mode_uses_search_and_collects_sources(self, session):
        fenced = "Here is my answer:\n```json\n" + json.dumps({
            "isValid": True, "caseName": "Brown v. Board", "legalStanding": "good",
            "explanation": "Good law.", "confidence": 90,
        }) + "\n```"
        grounding = {"groundingChunks": [
            {"web": {"uri": "https://supreme.justia.com/cases/federal/us/347/483/", "title": "Justia"}},
            {"web": {}},
        ]}
        session.post.return_value = fake_response(200, gemini_body(fenced, groundingMetadata=grounding))
        reasoner = GeminiReasoner(api_key="key", session=session)

        verdict = reasoner.verify("347 U.S. 483", mode="research")

        payload = session.post.call_args.kwargs["json"]
        assert payload["tools"] == [{"google_search": {}}]
        assert "responseSchema" not in payload["generationConfig"]
        assert session.post.call_args.kwargs["timeout"] == 120.0
        assert verdict.legal_standing == LegalStanding.GOOD
        assert [e.uri for e in verdict.evidence] == ["https://supreme.justia.com/cases/federal/us/347/483/"]

    def test_fabricated_answer_with_reason_key(self, session):
        session.post.return_value = fake_response(
            200, gemini_body({"isValid": False, "reason": "no such reporter volume"})
        )
        verdict = GeminiReasoner(api_key="key", session=session).verify("999 U.S. 999")
        assert verdict.is_valid is False
        assert verdict.explanation == "no such reporter volume"
        assert verdict.legal_standing == LegalStanding.UNKNOWN

    def test_missing_key_fails_without_calling(self, session, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        with pytest.raises(AuthError):
            GeminiReasoner(session=session).verify("410 U.S. 113")
        session.post.assert_not_called()

    @pytest.mark.parametrize("status, text, error", [
        (401, "", AuthError),
        (403, "", AuthError),
        (400, '{"error": {"status": "INVALID_ARGUMENT", "details": "API_KEY_INVALID"}}', AuthError),
        (429, "", RateLimitError),
        (503, "", NetworkError),
    ])
    def test_http_errors(self, session, status, text, error):
        session.post.return_value = fake_response(status, text=text)
        with pytest.raises(error) as excinfo:
            GeminiReasoner(api_key="key", session=session).verify("410 U.S. 113")
        assert excinfo.value.backend == "Gemini"

    def test_timeout_is_a_network_error(self, session):
        session.post.side_effect = requests.Timeout("read timed out")
        with pytest.raises(NetworkError) as excinfo:
            GeminiReasoner(api_key="key", session=session).verify("410 U.S. 113", timeout=2)
        assert "timed out after 2s" in str(excinfo.value)

    def test_prompt_block_is_a_safety_block(self, session):
        session.post.return_value = fake_response(200, {"promptFeedback": {"blockReason": "SAFETY"}})
        with pytest.raises(SafetyBlockError, match="SAFETY"):
            GeminiReasoner(api_key="key", session=session).verify("410 U.S. 113")

    def test_blocked_finish_reason(self, session):
        body = gemini_body("")
        body["candidates"][0]["finishReason"] = "PROHIBITED_CONTENT"
        session.post.return_value = fake_response(200, body)
        with pytest.raises(SafetyBlockError, match="PROHIBITED_CONTENT"):
            GeminiReasoner(api_key="key", session=session).verify("410 U.S. 113")

    def test_non_json_answer_keeps_truncated_excerpt(self, session):
        answer = "I think this citation is probably real. " * 20
        session.post.return_value = fake_response(200, gemini_body(answer))
        with pytest.raises(ParseError) as excinfo:
            GeminiReasoner(api_key="key", session=session).verify("410 U.S. 113")
        assert excinfo.value.excerpt.endswith("...")
        assert len(excinfo.value.excerpt) == 203

    def test_non_json_body(self, session):
        session.post.return_value = fake_response(200, None, text="<html>oops</html>")
        with pytest.raises(ParseError) as excinfo:
            GeminiReasoner(api_key="key", session=session).verify("410 U.S. 113")
        assert excinfo.value.excerpt == "<html>oops</html>"

    def test_no_candidates(self, session):
        session.post.return_value = fake_response(200, {"candidates": []})
        with pytest.raises(ParseError):
            GeminiReasoner(api_key="key", session=session).verify("410 U.S. 113")


class TestReasonerVerdict:
    def test_requires_boolean_is_valid(self):
        with pytest.raises(ParseError):
            ReasonerVerdict.from_payload({"isValid": "yes"})

    def test_rejects_non_numeric_confidence(self):
        with pytest.raises(ParseError):
            ReasonerVerdict.from_payload({"isValid": True, "confidence": "high"})

    def test_clamps_confidence(self):
        assert ReasonerVerdict.from_payload({"isValid": True, "confidence": 140}).confidence == 100
        assert ReasonerVerdict.from_payload({"isValid": True, "confidence": -3}).confidence == 0

    def test_retracted_maps_to_overruled(self):
        verdict = ReasonerVerdict.from_payload({"isValid": True, "legalStatus": "Retracted"})
        assert verdict.legal_standing == LegalStanding.OVERRULED

    def test_incomplete_replacement_is_dropped(self):
        verdict = ReasonerVerdict.from_payload({"isValid": True, "replacement": {"name": "Dobbs"}})
        assert verdict.replacement is None


class TestCourtListenerIndex:
    def test_found(self, session):
        session.post.return_value = fake_response(200, [{
            "citation": "410 U.S. 113",
            "status": 200,
            "clusters": [{"id": 108713, "case_name": "Roe v. Wade",
                          "absolute_url": "/opinion/108713/roe-v-wade/"}],
        }])
        verdict = CourtListenerIndex(session=session).lookup("410 U.S. 113", "tok", timeout=3)

        args, kwargs = session.post.call_args
        assert args[0] == CITATION_LOOKUP_URL
        assert kwargs["data"] == {"text": "410 U.S. 113"}
        assert kwargs["headers"] == {"Authorization": "Token tok"}
        assert verdict.found is True
        assert verdict.case_name == "Roe v. Wade"
        assert verdict.canonical_uri == "https://www.courtlistener.com/opinion/108713/roe-v-wade/"
        assert verdict.record_id == "108713"

    def test_not_found(self, session):
        session.post.return_value = fake_response(200, [
            {"citation": "999 U.S. 999", "status": 404, "clusters": []},
        ])
        verdict = CourtListenerIndex(session=session).lookup("999 U.S. 999", "tok")
        assert verdict.found is False
        assert verdict.error is None

    def test_empty_result_is_not_found(self, session):
        session.post.return_value = fake_response(200, [])
        assert CourtListenerIndex(session=session).lookup("no cite", "tok").found is False

    def test_unrecognized_reporter(self, session):
        session.post.return_value = fake_response(200, [
            {"citation": "1 Foo. 2", "status": 400, "error_message": "Unknown reporter", "clusters": []},
        ])
        verdict = CourtListenerIndex(session=session).lookup("1 Foo. 2", "tok")
        assert verdict.found is False
        assert verdict.error == "Unknown reporter"

    def test_per_citation_throttle(self, session):
        session.post.return_value = fake_response(200, [
            {"citation": "410 U.S. 113", "status": 429, "error_message": "Too many citations"},
        ])
        with pytest.raises(RateLimitError):
            CourtListenerIndex(session=session).lookup("410 U.S. 113", "tok")

    @pytest.mark.parametrize("status, error", [(401, AuthError), (403, AuthError), (429, RateLimitError)])
    def test_http_errors(self, session, status, error):
        session.post.return_value = fake_response(status, {"detail": "nope"})
        with pytest.raises(error) as excinfo:
            CourtListenerIndex(session=session).lookup("410 U.S. 113", "bad")
        assert excinfo.value.backend == "CourtListener"

    def test_connection_error(self, session):
        session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(NetworkError):
            CourtListenerIndex(session=session).lookup("410 U.S. 113", "tok")

    def test_malformed_body(self, session):
        session.post.return_value = fake_response(200, "just a string")
        with pytest.raises(ParseError):
            CourtListenerIndex(session=session).lookup("410 U.S. 113", "tok")
