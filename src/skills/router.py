"""
Query type router -- maps a free-text question to a query archetype.

Two tiers:
  keyword  deterministic bilingual cue matching, no network (covers most
           questions)
  llm      consulted only when keyword confidence is below
           ``classifier_confidence_threshold`` and a real provider is
           configured; bounded by the LLM client timeout

Keyword confidence levels:
  0.0   nothing matched
  0.6   a single weak cue
  0.75  one strong cue, or several weak ones
  0.9   several strong cues
  1.0   strong cue(s) plus a domain term ("订单", "revenue" …)

The LLM tier never raises: on timeout, transport error or an unparseable
reply the keyword guess is kept.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum

from src.skills.llm_client import call_llm, is_mock
from src.core.config import get_settings
from src.core.logging import get_logger, preview

logger = get_logger(__name__)


class QueryType(str, Enum):
    KPI_SINGLE = "kpi_single"        # single aggregate: total, count, average
    KPI_GROUPED = "kpi_grouped"      # aggregate per dimension value
    TREND_TIME = "trend_time"        # aggregate bucketed by day / week / month
    DISTRIBUTION = "distribution"    # spread of a numeric column
    TOPN = "topn"                    # ranking
    COMPARISON = "comparison"        # compare groups
    UNKNOWN = "unknown"              # generic fallback


@dataclass(frozen=True)
class QueryTypeClassification:
    query_type: QueryType
    confidence: float
    matched_keywords: list[str] = field(default_factory=list)
    method: str = "keyword"  # keyword | llm


# ── Keyword rules ────────────────────────────────────────

_KEYWORD_RULES: dict[QueryType, dict[str, list[str]]] = {
    QueryType.KPI_SINGLE: {
        "primary": ["总共", "总数", "总计", "一共", "多少个", "有几个", "数量", "count", "total", "统计"],
        "secondary": ["平均", "均值", "average", "avg", "mean"],
    },
    QueryType.KPI_GROUPED: {
        "primary": ["按照", "按", "分组", "每个", "各个", "group by", "by", "各", "per"],
        "secondary": ["统计", "计算", "汇总", "sum", "平均", "数量"],
    },
    QueryType.TREND_TIME: {
        "primary": ["趋势", "走势", "变化", "增长", "下降", "trend", "按天", "按周", "按月", "按年",
                    "daily", "weekly", "monthly"],
        "secondary": ["时间", "日期", "历史", "time", "date", "over time"],
    },
    QueryType.DISTRIBUTION: {
        "primary": ["分布", "占比", "比例", "百分比", "distribution", "percentage", "proportion", "构成"],
        "secondary": ["各", "每个", "不同"],
    },
    QueryType.TOPN: {
        "primary": ["排名", "排行", "前", "top", "最多", "最少", "最高", "最低", "highest", "lowest"],
        "secondary": ["前n", "前十", "前5", "top 10", "top 5"],
    },
    QueryType.COMPARISON: {
        "primary": ["对比", "比较", "差异", "compare", "vs", "versus", "相比", "比"],
        "secondary": ["和", "与", "and", "between"],
    },
}

# Ties go to the first type in this order.
_PRIORITY: list[QueryType] = [
    QueryType.TREND_TIME,
    QueryType.DISTRIBUTION,
    QueryType.TOPN,
    QueryType.COMPARISON,
    QueryType.KPI_GROUPED,
    QueryType.KPI_SINGLE,
]

_DOMAIN_TERMS: list[str] = [
    # e-commerce
    "订单", "用户", "商品", "销售额", "gmv", "客单价", "转化率", "复购",
    "order", "user", "product", "sales", "revenue", "conversion",
    # finance
    "交易", "金额", "收入", "支出", "余额", "利润", "transaction", "amount", "profit",
    # general
    "数据", "记录", "条数", "data", "record", "count",
]


def _matches(text: str, keyword: str) -> bool:
    """CJK cues match as substrings; ASCII cues match whole words (plural allowed)."""
    kw = keyword.lower()
    if not kw.isascii():
        return kw in text
    return re.search(rf"(?<![a-z0-9]){re.escape(kw)}(?:s|es)?(?![a-z0-9])", text) is not None


def classify_by_keywords(question: str) -> QueryTypeClassification:
    """Deterministic fast path."""
    text = question.lower()

    scores: dict[QueryType, float] = {}
    hits: dict[QueryType, list[str]] = {}
    primaries: dict[QueryType, int] = {}
    for qtype, rules in _KEYWORD_RULES.items():
        primary = [kw for kw in rules["primary"] if _matches(text, kw)]
        secondary = [kw for kw in rules["secondary"] if _matches(text, kw)]
        score = len(primary) * 2 + len(secondary)
        if qtype is QueryType.KPI_GROUPED:
            # aggregation words only mean "grouped" next to a grouping word
            score = score + 0.5 if primary and secondary else len(primary) * 2
        scores[qtype] = score
        hits[qtype] = primary + secondary
        primaries[qtype] = len(primary)

    best = QueryType.UNKNOWN
    best_score = 0.0
    for qtype in _PRIORITY:
        if scores[qtype] > best_score:
            best, best_score = qtype, scores[qtype]

    if best_score == 0:
        return QueryTypeClassification(QueryType.UNKNOWN, 0.0, [], "keyword")

    # A grouping or time-series cue beats a bare aggregate.
    if best is QueryType.KPI_SINGLE:
        for specific in (QueryType.TREND_TIME, QueryType.KPI_GROUPED):
            if primaries[specific]:
                best, best_score = specific, scores[specific]
                break

    has_domain_term = any(term in text for term in _DOMAIN_TERMS)
    if best_score >= 4 or (best_score >= 2 and has_domain_term):
        confidence = 1.0 if has_domain_term else 0.9
    elif best_score >= 2:
        confidence = 0.75
    else:
        confidence = 0.6

    return QueryTypeClassification(best, confidence, hits[best], "keyword")


# ── LLM fallback ─────────────────────────────────────────

_LLM_SYSTEM_PROMPT = """\
You are a query type classifier. Classify the user's query into ONE of these types:
- kpi_single: single value statistics (total, count, average)
- kpi_grouped: grouped aggregation (group by dimension)
- trend_time: time series trend (daily, monthly trends)
- distribution: distribution/percentage analysis
- topn: ranking/top N queries
- comparison: comparison between entities
- unknown: cannot classify

Return ONLY a JSON object with keys: queryType (string), confidence (0-1), reasoning (brief)."""

_SCHEMA_PREVIEW_CHARS = 500
_LLM_FAILED = QueryTypeClassification(QueryType.UNKNOWN, 0.3, ["LLM failed"], "llm")


def _build_llm_prompt(question: str, schema_digest: str, user_digest: str) -> str:
    parts = [
        f'Classify this query:\n"{question}"',
        f"Schema context (first {_SCHEMA_PREVIEW_CHARS} chars):\n{schema_digest[:_SCHEMA_PREVIEW_CHARS]}",
    ]
    if user_digest:
        parts.append(f"User domain configuration:\n{user_digest}")
    parts.append("Return JSON only.")
    return "\n\n".join(parts)


def _parse_llm_response(text: str) -> QueryTypeClassification:
    """Parse the model's JSON verdict; anything malformed counts as a failure."""
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("LLM returned invalid JSON, keeping keyword result: %s", exc)
        return _LLM_FAILED
    if not isinstance(data, dict):
        return _LLM_FAILED

    try:
        query_type = QueryType(data.get("queryType", "unknown"))
    except ValueError:
        logger.warning("LLM returned unknown query type %r", data.get("queryType"))
        return _LLM_FAILED

    confidence = data.get("confidence")
    if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
        confidence = 0.7
    confidence = max(0.0, min(1.0, float(confidence)))
    reasoning = data.get("reasoning") or "classified"
    return QueryTypeClassification(query_type, confidence, [f"LLM: {reasoning}"], "llm")


def classify_by_llm(
    question: str,
    schema_digest: str = "",
    user_digest: str = "",
    provider: str | None = None,
    timeout: float | None = None,
) -> QueryTypeClassification:
    """Ask the model collaborator.  Never raises."""
    prompt = _build_llm_prompt(question, schema_digest, user_digest)
    try:
        response = call_llm(prompt, provider, system=_LLM_SYSTEM_PROMPT, timeout=timeout)
    except Exception as exc:  # timeout, transport, auth, missing SDK
        logger.warning("LLM classification failed: %s", exc)
        return _LLM_FAILED
    return _parse_llm_response(response)


# ── Public API ───────────────────────────────────────────

def classify_query_type(
    question: str,
    schema_digest: str = "",
    user_digest: str = "",
    provider: str | None = None,
) -> QueryTypeClassification:
    """Keyword fast path, LLM fallback on low confidence."""
    keyword_result = classify_by_keywords(question)
    logger.info(
        "Router[keyword] %s -> %s (%.2f) %s",
        preview(question), keyword_result.query_type.value,
        keyword_result.confidence, keyword_result.matched_keywords,
    )

    threshold = get_settings().classifier_confidence_threshold
    if keyword_result.confidence >= threshold or is_mock(provider):
        return keyword_result

    logger.info("Low confidence, falling back to LLM classification")
    llm_result = classify_by_llm(question, schema_digest, user_digest, provider)
    logger.info("Router[llm] -> %s (%.2f)", llm_result.query_type.value, llm_result.confidence)

    if llm_result.confidence > keyword_result.confidence:
        return llm_result
    return keyword_result
