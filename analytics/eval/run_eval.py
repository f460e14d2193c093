"""
Evaluation harness -- runs eval_questions.jsonl through the analysis skill
(mock mode, no execution) and generates analytics/reports/eval_report.md.

Checks:
  - Query type correctness  (router verdict matches expected)
  - Stop reason             (SUCCESS / NEED_CLARIFICATION as expected)
  - SQL generation          (non-empty SQL for SUCCESS runs)
  - Latency                 (end-to-end ms)
"""
from __future__ import annotations

import datetime
import json
import sys
from pathlib import Path
from typing import Any

from src.core.utils import timer

EVAL_PATH = Path(__file__).resolve().parent / "eval_questions.jsonl"
REPORT_PATH = Path(__file__).resolve().parents[1] / "reports" / "eval_report.md"


def _load_questions() -> list[dict[str, Any]]:
    lines = EVAL_PATH.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines if line.strip()]


def _run_one(q: dict[str, Any]) -> dict[str, Any]:
    """Run a single question through the analysis skill."""
    from src.skills.analysis import SkillContext, run_analysis

    ctx = SkillContext(
        user_input=q["question"],
        schema_digest=q.get("schema_digest", ""),
        max_rows=q.get("max_rows", 100),
        active_table=q.get("active_table"),
        llm_provider="mock",
    )
    with timer() as t:
        result = run_analysis(ctx)

    type_ok = result.query_type == q.get("expected_query_type")
    stop_ok = result.stop_reason.value == q.get("expected_stop_reason", "SUCCESS")
    return {
        "question": q["question"],
        "query_type": result.query_type,
        "stop_reason": result.stop_reason.value,
        "type_ok": type_ok,
        "stop_ok": stop_ok,
        "sql": result.sql or "",
        "message": result.message,
        "latency_ms": t["elapsed_ms"],
        "success": type_ok and stop_ok,
    }


def _generate_report(results: list[dict[str, Any]]) -> str:
    """Generate the Markdown eval report."""
    total = len(results)
    now = datetime.datetime.now().strftime("%Y-%m-%d %H:%M")

    successes = sum(1 for r in results if r["success"])
    type_correct = sum(1 for r in results if r["type_ok"])
    stop_correct = sum(1 for r in results if r["stop_ok"])
    latencies = sorted(r["latency_ms"] for r in results)
    avg_lat = sum(latencies) / total if total else 0
    max_lat = latencies[-1] if latencies else 0

    def pct(n: int) -> str:
        return f"{(n / total * 100) if total else 0:.0f}%"

    lines: list[str] = [
        "# Router Evaluation Report",
        "",
        f"> Generated: {now}  |  Questions: **{total}**  |  Mode: `mock` (keyword router)",
        "",
        "## Summary",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Overall success rate | **{pct(successes)}** ({successes}/{total}) |",
        f"| Query type accuracy | **{pct(type_correct)}** ({type_correct}/{total}) |",
        f"| Stop reason accuracy | **{pct(stop_correct)}** ({stop_correct}/{total}) |",
        f"| Mean latency | {avg_lat:.2f} ms |",
        f"| Max latency | {max_lat:.2f} ms |",
        "",
        "## Per-Question Results",
        "",
        "| # | Question | Type | Stop | Pass |",
        "|---|----------|------|------|------|",
    ]
    for i, r in enumerate(results, 1):
        qtext = r["question"][:55] + ("..." if len(r["question"]) > 55 else "")
        p = "OK" if r["success"] else "ERROR"
        lines.append(f"| {i} | {qtext} | {r['query_type']} | {r['stop_reason']} | {p} |")
    lines.append("")

    failures = [r for r in results if not r["success"]]
    lines += ["## Failures", ""]
    if not failures:
        lines += ["None -- all questions handled correctly.", ""]
    for r in failures:
        lines += [f"### {r['question']}", "", f"**Got:** {r['query_type']} / {r['stop_reason']}", ""]
        if r["message"]:
            lines += [f"**Message:** {r['message']}", ""]
    return "\n".join(lines)


def run():
    if sys.platform == "win32":
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")  # type: ignore[attr-defined]

    questions = _load_questions()
    print(f"Loaded {len(questions)} eval questions.")

    results = []
    for i, q in enumerate(questions, 1):
        r = _run_one(q)
        status = "PASS" if r["success"] else "FAIL"
        print(f"  [{i:2d}/{len(questions)}] {status}  {r['question'][:50]:<50}  {r['query_type']:<13} {r['stop_reason']}")
        results.append(r)

    REPORT_PATH.parent.mkdir(parents=True, exist_ok=True)
    REPORT_PATH.write_text(_generate_report(results), encoding="utf-8")
    print(f"\nReport written to {REPORT_PATH}")

    successes = sum(1 for r in results if r["success"])
    print(f"  Success: {successes}/{len(results)}")


if __name__ == "__main__":
    run()
