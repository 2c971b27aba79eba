# Failure pattern analysis
# Turns failure records into prioritized insights and run history into trend/flakiness analysis

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, List, Optional, Callable

from .config import AnalysisConfig, LATEST_RUN_JSON, RUN_DUMP_PREFIX, ANALYTICS_FILE
from .models import (
    Category, FailureRecord, RunSummary, Insight, InsightPriority,
    TrendingPattern, HistoricalAnalysis
)

logger = logging.getLogger(__name__)

MAX_TRENDING_PATTERNS = 10
MAX_PATTERN_EXAMPLES = 3
ENVIRONMENT_SKEW_SHARE = 0.8


# ==== STATIC TABLES ====

PATTERN_LABELS: Dict[Category, str] = {
    Category.STRICT_MODE_VIOLATION: "Strict Mode Violations",
    Category.SELECTOR_NOT_FOUND: "Element Not Found",
    Category.NETWORK_TIMEOUT: "Timeout Errors",
    Category.NAVIGATION_TIMEOUT: "Navigation Errors",
    Category.AUTHENTICATION_FAILURE: "Authentication Errors",
    Category.ELEMENT_NOT_INTERACTIVE: "Element Interaction Errors",
    Category.ASSERTION_FAILURE: "Assertion Failures",
    Category.UNKNOWN: "Other",
}

DEBUGGING_HINTS: Dict[Category, List[str]] = {
    Category.STRICT_MODE_VIOLATION: [
        "Add .first() to selectors that match multiple elements",
        "Use more specific selectors (IDs, unique classes, attributes)",
        "Prioritize more specific selectors in .or_() chains",
    ],
    Category.SELECTOR_NOT_FOUND: [
        "Use Playwright Inspector: PWDEBUG=1 pytest -k <test>",
        "Check if selectors are correct and elements exist",
        "Add explicit waits before element interactions",
    ],
    Category.NETWORK_TIMEOUT: [
        "Increase timeout values for the affected operations",
        "Use wait_for_load_state() before interactions",
        "Check network conditions and server response times",
    ],
    Category.NAVIGATION_TIMEOUT: [
        "Verify URLs are correct and accessible",
        "Check for redirects or authentication requirements",
        "Increase navigation timeout values",
    ],
    Category.AUTHENTICATION_FAILURE: [
        "Verify login credentials and authentication flow",
        "Check session management and cookie handling",
        "Ensure proper test isolation",
    ],
    Category.ELEMENT_NOT_INTERACTIVE: [
        "Wait for the element to be visible and enabled before interacting",
        "Check for overlays, animations or modals covering the element",
        "Re-query elements after DOM updates to avoid detached handles",
    ],
    Category.ASSERTION_FAILURE: [
        "Review expected vs actual values in error messages",
        "Check if application behavior has changed",
        "Verify test data and environment state",
    ],
}
GENERIC_HINTS = ["Review error details and stack trace for specific guidance"]


@dataclass
class InsightRule:
    # One partition of the single-run analysis
    name: str
    categories: Optional[List[Category]]
    description: str
    recommendations: List[str]
    priority: Callable[[int, int], InsightPriority]
    predicate: Optional[Callable[[FailureRecord], bool]] = None


def _share_priority(threshold: float) -> Callable[[int, int], InsightPriority]:
    def decide(matched: int, total: int) -> InsightPriority:
        return InsightPriority.HIGH if matched > total * threshold else InsightPriority.MEDIUM
    return decide


def _fixed(priority: InsightPriority) -> Callable[[int, int], InsightPriority]:
    return lambda matched, total: priority


# Processing order doubles as the tie-break order after the priority sort
INSIGHT_RULES: List[InsightRule] = [
    InsightRule(
        name="Authentication Issues",
        categories=[Category.AUTHENTICATION_FAILURE],
        description="{count} tests failed during authentication",
        recommendations=[
            "Verify login credentials are correct",
            "Check if authentication service is available",
            "Review session management and cookie handling",
            "Ensure proper test isolation between auth tests",
            "Consider using a stored authentication state in fixtures",
        ],
        priority=_fixed(InsightPriority.HIGH),
    ),
    InsightRule(
        name="Timeout Issues",
        categories=[Category.NETWORK_TIMEOUT, Category.NAVIGATION_TIMEOUT],
        description="{count} tests failed due to timeouts",
        recommendations=[
            "Increase timeout values for slow operations",
            "Check for slow network conditions or server response times",
            "Review if selectors are waiting for the correct elements",
            "Consider using wait_for_load_state() before interactions",
        ],
        priority=_share_priority(0.3),
    ),
    InsightRule(
        name="Element Location Issues",
        categories=[Category.SELECTOR_NOT_FOUND, Category.STRICT_MODE_VIOLATION],
        description="{count} tests failed to find a unique element",
        recommendations=[
            "Verify selectors are correct and elements exist on the page",
            "Use more stable selectors (data-testid, role-based selectors)",
            "Add .first() or narrow selectors that match multiple elements",
            "Check if elements are dynamically loaded or in a different viewport",
            "Use Playwright Inspector: PWDEBUG=1 pytest -k <test>",
        ],
        priority=_share_priority(0.4),
    ),
    InsightRule(
        name="Element Interaction Issues",
        categories=[Category.ELEMENT_NOT_INTERACTIVE],
        description="{count} tests could not interact with an element",
        recommendations=[
            "Wait for elements to be visible and enabled before interacting",
            "Check for overlays or animations covering the element",
            "Avoid holding element handles across page updates",
        ],
        priority=_fixed(InsightPriority.MEDIUM),
    ),
    InsightRule(
        name="Assertion Failures",
        categories=[Category.ASSERTION_FAILURE],
        description="{count} tests failed due to unexpected values",
        recommendations=[
            "Review expected vs actual values in test output",
            "Check if application behavior has changed",
            "Verify test data and environment state",
            "Consider adding more specific assertions",
            "Review screenshots to understand page state during failure",
        ],
        priority=_fixed(InsightPriority.MEDIUM),
    ),
    InsightRule(
        name="Flaky Tests",
        categories=None,
        description="{count} tests required retries (potential flakiness)",
        recommendations=[
            "Investigate why these tests are unstable",
            "Add better wait conditions and element visibility checks",
            "Review test data setup and cleanup",
            "Consider test isolation improvements",
            "Reduce dependencies on external services during tests",
        ],
        priority=_fixed(InsightPriority.MEDIUM),
        predicate=lambda record: record.context.retry > 0,
    ),
    InsightRule(
        name="Unclassified Failures",
        categories=[Category.UNKNOWN],
        description="{count} failures did not match any known pattern",
        recommendations=GENERIC_HINTS + [
            "Extend the classification rules if this failure recurs",
        ],
        priority=_fixed(InsightPriority.LOW),
    ),
]


class PatternAnalyzer:
    """
    Single-run insights and cross-run history analysis.
    Reads run dumps written by ErrorStore; never writes failure logs itself.
    """

    def __init__(self, config: Optional[AnalysisConfig] = None, rules: Optional[List[InsightRule]] = None):
        self.config = config or AnalysisConfig()
        self.rules = rules if rules is not None else INSIGHT_RULES
        self.log_dir = self.config.log_path

    # ==== SINGLE RUN ====

    def analyze(self, records: List[FailureRecord]) -> List[Insight]:
        """Build prioritized insights for one run's failures"""
        total = len(records)
        if total == 0:
            return []

        insights = []
        for rule in self.rules:
            if rule.predicate is not None:
                matched = [r for r in records if rule.predicate(r)]
            else:
                matched = [r for r in records if r.category in rule.categories]
            insight = self._build_insight(rule, matched, total)
            if insight:
                insights.append(insight)

            # Environment skew sits right after the flaky partition
            if rule.name == "Flaky Tests":
                insights.extend(self._environment_insights(records))

        # sorted() is stable so equal priorities keep processing order
        return sorted(insights, key=lambda i: i.priority.rank)

    def _build_insight(self, rule: InsightRule, matched: List[FailureRecord], total: int) -> Optional[Insight]:
        if not matched or len(matched) < self.config.min_failures_per_insight:
            return None
        return Insight(
            category=rule.name,
            description=rule.description.format(count=len(matched)),
            affected_tests=[r.test_name for r in matched],
            recommendations=list(rule.recommendations),
            priority=rule.priority(len(matched), total)
        )

    def _environment_insights(self, records: List[FailureRecord]) -> List[Insight]:
        """Flag a single project that holds most failures while others ran too"""
        by_project: Dict[str, List[FailureRecord]] = defaultdict(list)
        for record in records:
            by_project[record.context.project or "default"].append(record)

        if len(by_project) <= 1:
            return []

        insights = []
        for project, project_records in by_project.items():
            if len(project_records) > len(records) * ENVIRONMENT_SKEW_SHARE:
                insights.append(Insight(
                    category="Project-Specific Issues",
                    description=f"Most failures ({len(project_records)}) occurred in {project} project",
                    affected_tests=[r.test_name for r in project_records],
                    recommendations=[
                        f"Review {project} browser-specific configurations",
                        "Check for browser compatibility issues",
                        "Verify project-specific settings in the pytest configuration",
                        "Test locally with the same browser configuration",
                    ],
                    priority=InsightPriority.MEDIUM
                ))
        return insights

    def identify_patterns(self, records: List[FailureRecord]) -> Dict[Category, List[FailureRecord]]:
        """Group records by category, preserving input order"""
        patterns: Dict[Category, List[FailureRecord]] = defaultdict(list)
        for record in records:
            patterns[record.category].append(record)
        return dict(patterns)

    def debugging_hints(self, category: Category) -> List[str]:
        return list(DEBUGGING_HINTS.get(category, GENERIC_HINTS))

    # ==== HISTORY ====

    def analyze_history(self, runs: List[RunSummary]) -> HistoricalAnalysis:
        """Average failure rate, trending patterns and flaky/consistent split"""
        total_runs = len(runs)
        if total_runs == 0:
            return HistoricalAnalysis(total_runs=0, average_failure_rate=0.0)

        average_failure_rate = sum(run.failure_rate for run in runs) / total_runs

        all_records = [record for run in runs for record in run.failures]
        trending = []
        for category, group in self.identify_patterns(all_records).items():
            trending.append(TrendingPattern(
                category=category,
                label=PATTERN_LABELS.get(category, category.value),
                count=len(group),
                percentage=len(group) / len(all_records) * 100,
                examples=[r.message for r in group[:MAX_PATTERN_EXAMPLES]],
                debugging_hints=self.debugging_hints(category)
            ))
        trending.sort(key=lambda p: p.count, reverse=True)

        # Runs in which each test failed at least once
        occurrences: Dict[str, int] = defaultdict(int)
        for run in runs:
            for test_name in {record.test_name for record in run.failures}:
                occurrences[test_name] += 1

        threshold = self.config.consistent_failure_threshold * total_runs
        flaky = [name for name, count in occurrences.items() if 1 < count < threshold]
        consistent = [name for name, count in occurrences.items() if count >= threshold]

        return HistoricalAnalysis(
            total_runs=total_runs,
            average_failure_rate=average_failure_rate,
            trending_patterns=trending[:MAX_TRENDING_PATTERNS],
            flaky_tests=sorted(flaky),
            consistent_failures=sorted(consistent),
            run_labels=[run.end_time.strftime("%Y-%m-%d %H:%M:%S") for run in runs],
            run_failure_rates=[run.failure_rate for run in runs]
        )

    # ==== FILE BACKED ENTRY POINTS ====

    def latest_analysis(self) -> Optional[List[Insight]]:
        """Insights for the most recent run, or None when no run has been dumped"""
        latest_file = self.log_dir / LATEST_RUN_JSON
        if not latest_file.exists():
            logger.warning(f"No latest errors file found in {self.log_dir}. Run tests to generate error logs.")
            return None

        try:
            summary = RunSummary.model_validate_json(latest_file.read_text(encoding='utf-8'))
        except Exception as e:
            logger.error(f"Failed to parse error log {latest_file}: {e}")
            return None
        return self.analyze(summary.failures)

    def load_history(self) -> List[RunSummary]:
        """All run dumps in chronological order; unreadable files are skipped"""
        if not self.log_dir.exists():
            logger.warning(f"Error logs directory not found: {self.log_dir}")
            return []

        runs = []
        for dump_file in sorted(self.log_dir.glob(f"{RUN_DUMP_PREFIX}*.json")):
            try:
                runs.append(RunSummary.model_validate_json(dump_file.read_text(encoding='utf-8')))
            except Exception as e:
                logger.warning(f"Failed to parse {dump_file.name}: {e}")
        return runs

    def historical_analysis(self) -> Optional[HistoricalAnalysis]:
        runs = self.load_history()
        if not runs:
            logger.warning("No historical error logs found.")
            return None

        analysis = self.analyze_history(runs)
        self._save_analytics(analysis)
        return analysis

    def _save_analytics(self, analysis: HistoricalAnalysis) -> Optional[Path]:
        """Write the analysis for audit"""
        analytics_file = self.log_dir / ANALYTICS_FILE
        try:
            with open(analytics_file, 'w', encoding='utf-8') as f:
                json.dump(asdict(analysis), f, indent=2, default=str)
            logger.info(f"Saved failure analytics to {analytics_file}")
            return analytics_file
        except Exception as e:
            logger.error(f"Failed to save failure analytics: {e}")
            return None
