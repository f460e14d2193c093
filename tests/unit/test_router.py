"""
Unit tests -- query type router: keyword tier and LLM fallback.
"""
import json

import pytest

import src.skills.router as router
from src.skills.router import (
    QueryType,
    classify_by_keywords,
    classify_by_llm,
    classify_query_type,
)


# ── Keyword tier ─────────────────────────────────────────

@pytest.mark.parametrize("question, expected", [
    ("统计订单总数是多少", QueryType.KPI_SINGLE),
    ("显示订单按天趋势", QueryType.TREND_TIME),
    ("按地区统计订单数量", QueryType.KPI_GROUPED),
    ("Distribution by category", QueryType.DISTRIBUTION),
    ("平均订单金额是多少", QueryType.KPI_SINGLE),
    ("Show me the top 10 customers", QueryType.TOPN),
    ("对比北京和上海的销售额", QueryType.COMPARISON),
    ("monthly revenue trend", QueryType.TREND_TIME),
    ("hello world", QueryType.UNKNOWN),
])
def test_keyword_classification(question, expected):
    assert classify_by_keywords(question).query_type is expected


def test_strong_cue_with_domain_term_is_certain():
    result = classify_by_keywords("统计订单总数是多少")
    assert result.confidence == 1.0
    assert result.method == "keyword"
    assert "总数" in result.matched_keywords


def test_single_strong_cue_without_domain_term():
    result = classify_by_keywords("趋势")
    assert result.query_type is QueryType.TREND_TIME
    assert result.confidence == 0.75


def test_single_weak_cue():
    result = classify_by_keywords("平均订单金额是多少")
    assert result.confidence == 0.6


def test_no_match_has_zero_confidence():
    result = classify_by_keywords("hello world")
    assert result.confidence == 0.0
    assert result.matched_keywords == []


def test_ascii_keywords_need_word_boundaries():
    # "by" inside "standby" is not a grouping cue
    assert classify_by_keywords("standby mode").query_type is QueryType.UNKNOWN


def test_plural_keyword_matches():
    assert classify_by_keywords("Show order trends").query_type is QueryType.TREND_TIME


def test_time_series_cue_beats_bare_aggregate():
    result = classify_by_keywords("按月统计订单总数")
    assert result.query_type is QueryType.TREND_TIME


def test_grouping_cue_beats_bare_aggregate():
    result = classify_by_keywords("每个渠道的订单总数")
    assert result.query_type is QueryType.KPI_GROUPED


def test_classification_is_deterministic():
    first = classify_by_keywords("显示订单按天趋势")
    assert all(classify_by_keywords("显示订单按天趋势") == first for _ in range(5))


# ── LLM tier ─────────────────────────────────────────────

class _FakeLLM:
    def __init__(self, reply=None, exc=None):
        self.reply = reply
        self.exc = exc
        self.calls = []

    def __call__(self, prompt, provider=None, *, system="", timeout=None):
        self.calls.append({"prompt": prompt, "provider": provider, "timeout": timeout, "system": system})
        if self.exc is not None:
            raise self.exc
        return self.reply


def _reply(query_type, confidence=0.9, reasoning="looks like it"):
    return json.dumps({"queryType": query_type, "confidence": confidence, "reasoning": reasoning})


def test_llm_used_when_keywords_are_unsure(monkeypatch):
    fake = _FakeLLM(_reply("topn"))
    monkeypatch.setattr(router, "call_llm", fake)
    result = classify_query_type("hello world", "Table: t (a, b)", provider="openai")
    assert result.query_type is QueryType.TOPN
    assert result.method == "llm"
    assert result.confidence == 0.9
    assert len(fake.calls) == 1


def test_llm_skipped_when_keywords_are_confident(monkeypatch):
    fake = _FakeLLM(exc=AssertionError("must not be called"))
    monkeypatch.setattr(router, "call_llm", fake)
    result = classify_query_type("显示订单按天趋势", provider="openai")
    assert result.query_type is QueryType.TREND_TIME
    assert result.method == "keyword"
    assert fake.calls == []


def test_llm_skipped_in_mock_mode(monkeypatch):
    fake = _FakeLLM(exc=AssertionError("must not be called"))
    monkeypatch.setattr(router, "call_llm", fake)
    result = classify_query_type("hello world", provider="mock")
    assert result.query_type is QueryType.UNKNOWN
    assert fake.calls == []


def test_llm_timeout_keeps_keyword_guess(monkeypatch):
    monkeypatch.setattr(router, "call_llm", _FakeLLM(exc=TimeoutError("deadline exceeded")))
    result = classify_query_type("平均订单金额是多少", provider="openai")
    assert result.query_type is QueryType.KPI_SINGLE
    assert result.method == "keyword"


def test_less_confident_llm_answer_ignored(monkeypatch):
    monkeypatch.setattr(router, "call_llm", _FakeLLM(_reply("topn", confidence=0.5)))
    result = classify_query_type("平均订单金额是多少", provider="openai")
    assert result.query_type is QueryType.KPI_SINGLE


def test_llm_transport_error_never_raises(monkeypatch):
    monkeypatch.setattr(router, "call_llm", _FakeLLM(exc=ConnectionError("refused")))
    result = classify_by_llm("anything", provider="openai")
    assert result.query_type is QueryType.UNKNOWN
    assert result.confidence == 0.3


@pytest.mark.parametrize("reply", [
    "not json at all",
    "[1, 2, 3]",
    _reply("pivot_table"),
])
def test_malformed_llm_reply_counts_as_failure(monkeypatch, reply):
    monkeypatch.setattr(router, "call_llm", _FakeLLM(reply))
    result = classify_by_llm("anything", provider="openai")
    assert result.query_type is QueryType.UNKNOWN
    assert result.confidence == 0.3


def test_fenced_llm_reply_parsed(monkeypatch):
    monkeypatch.setattr(router, "call_llm", _FakeLLM("```json\n" + _reply("distribution", 0.8) + "\n```"))
    result = classify_by_llm("anything", provider="openai")
    assert result.query_type is QueryType.DISTRIBUTION
    assert result.confidence == 0.8


def test_llm_confidence_clamped(monkeypatch):
    monkeypatch.setattr(router, "call_llm", _FakeLLM(_reply("topn", confidence=7)))
    assert classify_by_llm("anything", provider="openai").confidence == 1.0


def test_llm_prompt_contents(monkeypatch):
    fake = _FakeLLM(_reply("kpi_single"))
    monkeypatch.setattr(router, "call_llm", fake)
    schema = "Table: orders (" + ", ".join(f"col{i}" for i in range(300)) + ")"
    classify_by_llm("how big?", schema, "Active table: orders", provider="openai", timeout=2.5)

    call = fake.calls[0]
    assert '"how big?"' in call["prompt"]
    assert "Active table: orders" in call["prompt"]
    assert schema[:500] in call["prompt"]
    assert schema[:501] not in call["prompt"]
    assert call["timeout"] == 2.5
    assert "kpi_single" in call["system"]


def test_llm_prompt_without_user_digest(monkeypatch):
    fake = _FakeLLM(_reply("kpi_single"))
    monkeypatch.setattr(router, "call_llm", fake)
    classify_by_llm("how big?", "Table: t (a)", provider="openai")
    assert "User domain configuration" not in fake.calls[0]["prompt"]
