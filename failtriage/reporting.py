# Report rendering for failure analysis
# Formats insights, history, store reports and run summaries as text, JSON and an HTML trend chart

import json
import logging
from collections import defaultdict
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List, Optional, Any

import plotly.graph_objects as go
from plotly.subplots import make_subplots

from .models import Category, FailureRecord, RunSummary, Insight, InsightPriority, HistoricalAnalysis

logger = logging.getLogger(__name__)

MAX_AFFECTED_TESTS = 5
MAX_STACK_LINES = 5
MAX_GROUP_EXAMPLES = 3

PRIORITY_MARKERS = {
    InsightPriority.HIGH: "🔥",
    InsightPriority.MEDIUM: "⚠️",
    InsightPriority.LOW: "ℹ️",
}

DEBUGGING_COMMANDS = """
🛠️  QUICK DEBUGGING COMMANDS:

# Re-run only the tests that failed last time
pytest --last-failed -x

# Run with a headed browser to see what's happening
pytest --headed --slowmo 500

# Step through a failing test with the Playwright Inspector
PWDEBUG=1 pytest -k <test-name>

# Record traces and open them in the trace viewer
pytest --tracing retain-on-failure
playwright show-trace test-results/<test>/trace.zip

# Run with maximum verbosity
pytest -vv --tb=long
"""


def _rule(char: str = "=", width: int = 50) -> str:
    return char * width


def _truncate_stack(stack: Optional[str], max_lines: int = MAX_STACK_LINES) -> List[str]:
    if not stack:
        return []
    lines = stack.strip().splitlines()
    if len(lines) <= max_lines:
        return lines
    return lines[:max_lines] + [f"... ({len(lines) - max_lines} more lines)"]


def _group(records: List[FailureRecord], key) -> List[tuple]:
    # Groups sorted by size, most common first; ties keep first-seen order
    groups: Dict[str, List[FailureRecord]] = defaultdict(list)
    for record in records:
        groups[key(record)].append(record)
    return sorted(groups.items(), key=lambda item: len(item[1]), reverse=True)


class ReportRenderer:
    # Pure formatting layer; every renderer tolerates empty input

    # ==== TEXT ====

    def render_insights(self, insights: Optional[List[Insight]]) -> str:
        if not insights:
            return "✅ No failure insights available. All tests may have passed!"

        lines = ["🔍 FAILURE ANALYSIS REPORT", _rule(), ""]
        for index, insight in enumerate(insights, 1):
            lines.append(f"{index}. {PRIORITY_MARKERS[insight.priority]} {insight.category} "
                         f"[{insight.priority.value}]")
            lines.append(f"   {insight.description}")
            lines.append("")

            if insight.affected_tests:
                lines.append(f"   Affected Tests ({len(insight.affected_tests)}):")
                for test in insight.affected_tests[:MAX_AFFECTED_TESTS]:
                    lines.append(f"   • {test}")
                if len(insight.affected_tests) > MAX_AFFECTED_TESTS:
                    lines.append(f"   • ... and {len(insight.affected_tests) - MAX_AFFECTED_TESTS} more")
                lines.append("")

            lines.append("   Recommendations:")
            lines.extend(f"   • {rec}" for rec in insight.recommendations)
            lines.append("")
            lines.append(_rule("-"))
            lines.append("")
        return "\n".join(lines)

    def render_history(self, analysis: Optional[HistoricalAnalysis]) -> str:
        if analysis is None or analysis.total_runs == 0:
            return "📂 No historical error data found."

        lines = [
            f"📈 Total test runs analyzed: {analysis.total_runs}",
            f"📊 Average failure rate: {analysis.average_failure_rate * 100:.1f}%",
            "",
        ]

        if analysis.trending_patterns:
            lines.extend(["🔥 TRENDING ERROR PATTERNS:", _rule("-", 30)])
            for index, pattern in enumerate(analysis.trending_patterns[:5], 1):
                lines.append(f"{index}. {pattern.label}: {pattern.count} occurrences ({pattern.percentage:.1f}%)")
                if pattern.examples:
                    lines.append(f"   Example: {pattern.examples[0].splitlines()[0] if pattern.examples[0] else ''}")
                for hint in pattern.debugging_hints:
                    lines.append(f"   Hint: {hint}")
            lines.append("")

        if analysis.flaky_tests:
            lines.extend(["🌪️  FLAKY TESTS (intermittent failures):", _rule("-", 30)])
            lines.extend(f"• {test}" for test in analysis.flaky_tests)
            lines.append("")

        if analysis.consistent_failures:
            lines.extend(["💥 CONSISTENT FAILURES:", _rule("-", 30)])
            lines.extend(f"• {test}" for test in analysis.consistent_failures)
            lines.append("")

        if not analysis.flaky_tests and not analysis.consistent_failures:
            lines.append("✅ No recurring failures across the analyzed runs.")
        return "\n".join(lines)

    def render_store_report(self, summary: Dict[str, Any]) -> str:
        total = summary.get("total", 0)
        if total == 0:
            return "✅ No errors recorded in this session!"

        lines = [f"Session {summary.get('session_id', 'unknown')}: {total} errors recorded", ""]
        lines.append("By category:")
        for category, count in sorted(summary.get("by_category", {}).items(), key=lambda i: i[1], reverse=True):
            lines.append(f"  {category}: {count}")

        recent = summary.get("recent", [])
        if recent:
            lines.extend(["", f"Most recent {len(recent)}:"])
            for record in recent:
                first_line = record.message.splitlines()[0] if record.message else ""
                lines.append(f"  [{record.category.value}] {record.test_name}: {first_line}")
        return "\n".join(lines)

    def render_detailed_report(self, session_id: str, records: List[FailureRecord], log_dir: str) -> str:
        if not records:
            return "✅ No errors recorded in this session!"

        by_category: Dict[str, int] = defaultdict(int)
        by_url: Dict[str, int] = defaultdict(int)
        for record in records:
            by_category[record.category.value] += 1
            by_url[record.context.url] += 1

        lines = [
            _rule("=", 80),
            "                    DETAILED ERROR HANDLER REPORT",
            _rule("=", 80),
            f"Session ID: {session_id}",
            f"Total Errors: {len(records)}",
            f"Time Period: {records[0].timestamp.isoformat()} to {records[-1].timestamp.isoformat()}",
            "",
            "📊 ERROR TYPES:",
            _rule("-", 40),
        ]
        for category, count in sorted(by_category.items(), key=lambda i: i[1], reverse=True):
            lines.append(f"{category}: {count} ({count / len(records) * 100:.1f}%)")

        lines.extend(["", "🌐 PAGES WITH ERRORS:", _rule("-", 40)])
        for url, count in sorted(by_url.items(), key=lambda i: i[1], reverse=True)[:10]:
            lines.append(f"{url}: {count} errors")

        lines.extend(["", "💥 RECENT ERRORS:", _rule("-", 40)])
        for index, record in enumerate(records[-10:], 1):
            lines.append("")
            lines.append(f"{index}. {record.test_name}")
            lines.append(f"   Type: {record.category.value}")
            lines.append(f"   Message: {record.message}")
            lines.append(f"   URL: {record.context.url}")
            lines.append(f"   Time: {record.timestamp.isoformat()}")
            page = record.context.page
            if page is not None and page.screenshot_path:
                lines.append(f"   Screenshot: {page.screenshot_path}")

        lines.extend(["", _rule("=", 80), f"Error logs directory: {log_dir}", _rule("=", 80)])
        return "\n".join(lines)

    def render_run_summary(self, summary: RunSummary) -> str:
        lines = [
            _rule("=", 80),
            "                         TEST RUN ERROR SUMMARY",
            _rule("=", 80),
            f"Session: {summary.session_id}",
            f"Total: {summary.total_tests}  Passed: {summary.passed}  Failed: {summary.failed}  "
            f"Skipped: {summary.skipped}",
            f"Failure rate: {summary.failure_rate * 100:.1f}%  Duration: {summary.duration_seconds:.1f}s  "
            f"Workers: {summary.workers}",
            "",
        ]

        if not summary.failures:
            lines.append("✅ All clear: no failures recorded in this run.")
            return "\n".join(lines)

        lines.extend(["ERROR PATTERNS:", _rule("-", 40)])
        for category, count in sorted(summary.error_patterns.items(), key=lambda i: i[1], reverse=True):
            lines.append(f"{category:<28}{count:>5}")

        lines.extend(["", "FAILURES:", _rule("-", 40)])
        for index, record in enumerate(summary.failures, 1):
            lines.append(f"{index}. {record.test_name} [{record.category.value}]")
            if record.context.test_file:
                lines.append(f"   File: {record.context.test_file}")
            if record.context.project:
                lines.append(f"   Project: {record.context.project}")
            if record.context.retry:
                lines.append(f"   Retry: {record.context.retry}")
            lines.append(f"   Message: {record.message}")
            stack = _truncate_stack(record.stack)
            if stack:
                lines.append("   Stack:")
                lines.extend(f"     {line}" for line in stack)
            for artifact in record.artifacts:
                lines.append(f"   Artifact: {artifact}")
            lines.append("")
        return "\n".join(lines)

    def render_strict_mode(self, records: List[FailureRecord]) -> str:
        violations = [r for r in records if r.category == Category.STRICT_MODE_VIOLATION]
        if not violations:
            return "✅ No strict mode violations found! All selectors are working correctly."

        lines = [f"❌ Found {len(violations)} strict mode violations:", ""]

        def selector_of(record: FailureRecord) -> str:
            details = record.context.details
            return details.selector if details is not None and details.kind == "strict_mode" else "unknown"

        for index, (selector, group) in enumerate(_group(violations, selector_of), 1):
            details = group[0].context.details
            lines.append(f"{index}. Selector: {selector}")
            lines.append(f"   Occurrences: {len(group)}")
            lines.append(f"   Elements found: {details.elements_found if details else 'unknown'}")
            lines.append(f"   Suggested fix: {details.suggested_fix if details else 'Use .first() method'}")
            if details is not None and details.found_elements:
                lines.append("   Found elements:")
                for i, element in enumerate(details.found_elements, 1):
                    lines.append(f"     {i}) {element}")
            lines.append("   Test contexts:")
            for record in group[:MAX_GROUP_EXAMPLES]:
                lines.append(f"     - {record.test_name} on {record.context.url}")
            if len(group) > MAX_GROUP_EXAMPLES:
                lines.append(f"     ... and {len(group) - MAX_GROUP_EXAMPLES} more")
            lines.append("")

        lines.extend([
            "🔧 RECOMMENDED ACTIONS:",
            _rule("-", 30),
            "1. Add .first() to selectors that match multiple elements",
            "2. Use more specific selectors (IDs, unique classes, attributes)",
            "3. Prioritize more specific selectors in .or_() chains",
            "4. Use get_by_role() with exact=True where appropriate",
        ])
        return "\n".join(lines)

    def render_assertions(self, records: List[FailureRecord]) -> str:
        failures = [r for r in records if r.category == Category.ASSERTION_FAILURE]
        if not failures:
            return "✅ No assertion failures found! All test expectations are passing."

        lines = [f"❌ Found {len(failures)} assertion failures:", ""]

        def operation_of(record: FailureRecord) -> str:
            details = record.context.details
            return details.operation if details is not None and details.kind == "assertion" else "unknown"

        for index, (operation, group) in enumerate(_group(failures, operation_of), 1):
            details = group[0].context.details
            fix = details.suggested_fix if details is not None else "Review expected vs actual values"
            lines.append(f"{index}. Operation: {operation}")
            lines.append(f"   Occurrences: {len(group)}")
            lines.append(f"   Suggested fix: {fix}")
            lines.append("   Common failures:")
            for record in group[:MAX_GROUP_EXAMPLES]:
                d = record.context.details
                expected = d.expected_value if d is not None and d.kind == "assertion" else None
                actual = d.actual_value if d is not None and d.kind == "assertion" else None
                lines.append(f"     - Expected: \"{'N/A' if expected is None else expected}\"")
                lines.append(f"       Actual: \"{'N/A' if actual is None else actual}\"")
                lines.append(f"       Test: {record.test_name}")
            if len(group) > MAX_GROUP_EXAMPLES:
                lines.append(f"     ... and {len(group) - MAX_GROUP_EXAMPLES} more")
            lines.append("")

        lines.extend([
            "🔧 RECOMMENDED ACTIONS:",
            _rule("-", 30),
            "1. Review expected vs actual values for patterns",
            "2. Add explicit waits before assertions (page.wait_for_load_state())",
            "3. Use partial text matches instead of exact matches where appropriate",
            "4. Normalize text (trim whitespace, convert case) before comparison",
            "5. Check for dynamic content that changes between test runs",
            "6. Use more flexible selectors or locator strategies",
        ])
        return "\n".join(lines)

    def debugging_commands(self) -> str:
        return DEBUGGING_COMMANDS

    # ==== JSON ====

    def insights_to_json(self, insights: Optional[List[Insight]]) -> str:
        data = []
        for insight in insights or []:
            entry = asdict(insight)
            entry["priority"] = insight.priority.value
            data.append(entry)
        return json.dumps({"insights": data, "count": len(data)}, indent=2)

    def history_to_json(self, analysis: Optional[HistoricalAnalysis]) -> str:
        if analysis is None:
            return json.dumps({"total_runs": 0, "message": "No historical error data found."}, indent=2)
        return json.dumps(asdict(analysis), indent=2, default=str)

    def run_summary_to_json(self, summary: RunSummary) -> str:
        return summary.model_dump_json(indent=2)

    # ==== HTML ====

    def render_history_html(self, analysis: Optional[HistoricalAnalysis], output_file: Path) -> Optional[Path]:
        """Failure rate per run plus trending pattern counts, written as a standalone HTML page"""
        if analysis is None or analysis.total_runs == 0:
            logger.warning("No historical data to chart")
            return None

        try:
            fig = make_subplots(
                rows=2, cols=1,
                subplot_titles=('Failure Rate per Run', 'Trending Error Patterns')
            )

            fig.add_trace(go.Scatter(
                x=analysis.run_labels or list(range(1, analysis.total_runs + 1)),
                y=[rate * 100 for rate in analysis.run_failure_rates],
                mode='lines+markers',
                name='Failure Rate (%)',
                line=dict(color='red')
            ), row=1, col=1)

            fig.add_trace(go.Bar(
                x=[p.label for p in analysis.trending_patterns],
                y=[p.count for p in analysis.trending_patterns],
                name='Occurrences',
                marker_color='orange'
            ), row=2, col=1)

            fig.update_layout(
                title=f'Failure History - {analysis.total_runs} runs, '
                      f'average failure rate {analysis.average_failure_rate * 100:.1f}%',
                height=800,
                showlegend=False
            )
            fig.update_yaxes(title_text="Failure Rate (%)", row=1, col=1)

            output_file = Path(output_file)
            output_file.parent.mkdir(parents=True, exist_ok=True)
            fig.write_html(output_file)
            logger.info(f"Failure history chart written to {output_file}")
            return output_file
        except Exception as e:
            logger.error(f"Failed to generate failure history chart: {e}")
            return None
