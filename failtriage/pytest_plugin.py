# Pytest integration for failure analysis
# Load with `-p failtriage.pytest_plugin` (or pytest_plugins in a root conftest) and run with --failure-analysis
# Under pytest-xdist the controller owns the run: workers only describe failures on their reports

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pytest

from .assertions import AssertionCapture
from .config import AnalysisConfig, load_config
from .error_store import ErrorStore, generate_session_id
from .isolation import TestIsolation
from .models import FailureRecord, RunSummary
from .pattern_analyzer import PatternAnalyzer
from .reporting import ReportRenderer

logger = logging.getLogger(__name__)

PLUGIN_NAME = "failure_analysis"
# Report attribute carried from the process that ran the test to the one that records it
REPORT_ATTRIBUTE = "failure_analysis"
SESSION_KEY = "failure_analysis_session_id"


class FailureAnalysisPlugin:
    # Counts outcomes, records one failure per failing test and analyzes the run at the end

    def __init__(self, config: AnalysisConfig, workers: int = 1, session_id: Optional[str] = None,
                 is_worker: bool = False):
        self.config = config
        self.workers = workers
        self.is_worker = is_worker
        self.store = ErrorStore(config, session_id=session_id)
        self.analyzer = PatternAnalyzer(config)
        self.renderer = ReportRenderer()
        self.session_start: Optional[datetime] = None
        self.passed = 0
        self.failed = 0
        self.skipped = 0
        self.summary: Optional[RunSummary] = None
        self._setup_counts: Dict[str, int] = {}
        self._nodes = set()

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.skipped

    def pytest_sessionstart(self, session):
        self.session_start = datetime.now(timezone.utc)
        if not self.is_worker:
            logger.info(f"Failure analysis enabled (session {self.store.session_id}, logs in {self.config.log_dir})")

    @pytest.hookimpl(optionalhook=True)
    def pytest_configure_node(self, node):
        # xdist controller: workers derive their session id from the run's
        node.workerinput[SESSION_KEY] = self.store.session_id
        self._nodes.add(node.gateway.id)
        self.workers = max(self.workers, len(self._nodes))

    # ==== PROCESS RUNNING THE TEST ====

    @pytest.hookimpl(tryfirst=True)
    def pytest_runtest_setup(self, item):
        # Baseline before fixtures run so failures the test records itself are not duplicated
        self._setup_counts[item.nodeid] = self.store.count()

    @pytest.hookimpl(hookwrapper=True)
    def pytest_runtest_makereport(self, item, call):
        outcome = yield
        rep = outcome.get_result()

        if rep.when not in ("setup", "call") or not rep.failed:
            return
        try:
            setattr(rep, REPORT_ATTRIBUTE, self._describe_failure(item, call))
        except Exception as e:
            logger.error(f"Failed to describe failure of {item.nodeid}: {e}")

    def _describe_failure(self, item, call) -> Dict[str, Any]:
        # Plain JSON values only: xdist serializes the report back to the controller
        baseline = self._setup_counts.get(item.nodeid, 0)
        recorded = self.store.query()[baseline:]
        description: Dict[str, Any] = {
            "retry": max(0, getattr(item, "execution_count", 1) - 1),
            "records": [record.model_dump(mode="json") for record in recorded],
        }
        if call.excinfo is not None:
            description["message"] = str(call.excinfo.value)
            description["error_type"] = call.excinfo.typename

        callspec = getattr(item, "callspec", None)
        if callspec is not None and "browser_name" in callspec.params:
            description["project"] = str(callspec.params["browser_name"])
        return description

    # ==== PROCESS OWNING THE RUN ====

    def pytest_runtest_logreport(self, report):
        if self.is_worker:
            return

        if report.when == "call":
            if report.passed:
                self.passed += 1
            elif report.failed:
                self.failed += 1
            elif report.skipped:
                self.skipped += 1
        elif report.when == "setup":
            if report.skipped:
                self.skipped += 1
            elif report.failed:
                self.failed += 1

        if report.when in ("setup", "call") and report.failed:
            try:
                self._record_failure(report)
            except Exception as e:
                logger.error(f"Failed to record failure for {report.nodeid}: {e}")

    def _record_failure(self, report):
        description = getattr(report, REPORT_ATTRIBUTE, None) or {}

        recorded = [FailureRecord.model_validate(entry) for entry in description.get("records", [])]
        if recorded:
            # Already persisted where the test ran; only the run dump still needs them
            self.store.include(recorded)
            logger.debug(f"{report.nodeid} already recorded its failure")
            return

        message = description.get("message")
        error_type = description.get("error_type")
        if message is None:
            crash = getattr(report.longrepr, "reprcrash", None)
            message = crash.message if crash is not None else str(report.longrepr)

        self.store.commit(
            message,
            report.nodeid,
            self._extra_info(report, description),
            stack=report.longreprtext or None,
            error_type=error_type
        )

    def _extra_info(self, report, description: Dict[str, Any]) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "test_file": report.location[0],
            "duration_ms": round(report.duration * 1000, 2),
            "retry": description.get("retry", 0),
            "phase": report.when,
        }
        if description.get("project"):
            info["project"] = description["project"]
        return info

    def pytest_sessionfinish(self, session, exitstatus):
        if self.is_worker:
            return
        self.summary = self.store.finalize_run(
            total=self.total,
            passed=self.passed,
            skipped=self.skipped,
            start_time=self.session_start,
            workers=self.workers
        )
        self.store.write_session_summary()

    def pytest_terminal_summary(self, terminalreporter, exitstatus, config):
        if self.is_worker:
            return
        terminalreporter.write_sep("=", "failure analysis")
        if self.summary is None or not self.summary.failures:
            terminalreporter.write_line("✅ All clear: no failures recorded in this run.")
            return

        insights = self.analyzer.analyze(self.summary.failures)
        terminalreporter.write_line(self.renderer.render_insights(insights))
        terminalreporter.write_line(f"Error logs: {self.config.log_dir}")


def pytest_addoption(parser):
    group = parser.getgroup("failure-analysis")
    group.addoption(
        "--failure-analysis", action="store_true", default=False,
        help="record, persist and analyze test failures"
    )
    group.addoption(
        "--failure-log-dir", action="store", default=None,
        help="directory for failure logs (default: test-results/error-logs)"
    )


def pytest_configure(config):
    if not config.getoption("failure_analysis", False):
        return
    if config.pluginmanager.has_plugin(PLUGIN_NAME):
        return

    analysis_config = load_config(log_dir=config.getoption("failure_log_dir", None))

    workerinput = getattr(config, "workerinput", None)
    if workerinput is not None:
        # Distinct per worker so record ids never collide in the controller's run
        run_session = workerinput.get(SESSION_KEY) or generate_session_id()
        session_id = f"{run_session}-{workerinput.get('workerid', 'worker')}"
        plugin = FailureAnalysisPlugin(analysis_config, session_id=session_id, is_worker=True)
    else:
        workers = getattr(config.option, "numprocesses", None)
        if not isinstance(workers, int) or workers < 1:
            workers = 1
        plugin = FailureAnalysisPlugin(analysis_config, workers=workers)
    config.pluginmanager.register(plugin, PLUGIN_NAME)


def pytest_unconfigure(config):
    plugin = config.pluginmanager.get_plugin(PLUGIN_NAME)
    if plugin is not None:
        config.pluginmanager.unregister(plugin)


# Fixtures for tests that drive a browser page themselves
@pytest.fixture
def error_store(request) -> ErrorStore:
    plugin = request.config.pluginmanager.get_plugin(PLUGIN_NAME)
    if plugin is None:
        pytest.skip("failure analysis is not enabled (run with --failure-analysis)")
    return plugin.store


@pytest.fixture
def test_isolation(error_store) -> TestIsolation:
    return TestIsolation(error_store)


@pytest.fixture
def assertion_capture(error_store) -> AssertionCapture:
    return AssertionCapture(error_store)
