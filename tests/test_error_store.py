# Error store test suite
# Exactly-once recording, bounded persistence, recovery updates and run dumps

import json
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from failtriage.config import AnalysisConfig, LATEST_HANDLER_FILE, LATEST_RUN_JSON, LATEST_RUN_TEXT
from failtriage.error_store import ErrorStore, load_latest_records, generate_session_id, GENERIC_SUGGESTIONS
from failtriage.models import Category, RecoveryOutcome, StrictModeDetails, AssertionDetails

from conftest import FakePage


def handler_log_lines(store: ErrorStore):
    lines = []
    for log_file in Path(store.log_dir).glob("error-handler-*.log"):
        lines.extend(line for line in log_file.read_text(encoding="utf-8").splitlines() if line.strip())
    return lines


def latest_window(store: ErrorStore):
    return json.loads((Path(store.log_dir) / LATEST_HANDLER_FILE).read_text(encoding="utf-8"))


class TestRecording:

    @pytest.mark.asyncio
    async def test_record_with_page(self, store, fake_page):
        record = await store.record(RuntimeError("Timeout 5000ms exceeded"), fake_page, "test_checkout",
                                    {"project": "chromium", "retry": 1, "test_file": "tests/test_cart.py"})

        assert record.id == f"{store.session_id}-000001"
        assert record.session_id == store.session_id
        assert record.category == Category.NETWORK_TIMEOUT
        assert record.timestamp.tzinfo is not None
        assert record.context.url == "https://shop.test/cart"
        assert record.context.project == "chromium"
        assert record.context.retry == 1
        assert record.context.test_file == "tests/test_cart.py"
        assert record.context.page.title == "Cart"
        assert record.artifacts == [record.context.page.screenshot_path]
        assert record.recovery == RecoveryOutcome()
        assert record.stack is None

    @pytest.mark.asyncio
    async def test_record_keeps_stack_of_raised_error(self, store):
        try:
            raise ValueError("login form rejected credentials")
        except ValueError as e:
            record = await store.record(e, test_name="test_login")

        assert record.category == Category.AUTHENTICATION_FAILURE
        assert "ValueError: login form rejected credentials" in record.stack

    @pytest.mark.asyncio
    async def test_partial_capture_is_noted(self, store):
        page = FakePage(fail_on={"screenshot"})
        record = await store.record(RuntimeError("boom"), page, "test_profile")

        assert record.artifacts == []
        assert record.context.additional_info["capture_omitted"] == ["screenshot"]

    def test_commit_persists_log_line_and_window(self, store):
        record = store.commit("locator('#buy') not found", "test_buy")

        lines = handler_log_lines(store)
        assert len(lines) == 1
        assert json.loads(lines[0])["id"] == record.id
        assert [entry["id"] for entry in latest_window(store)] == [record.id]

    def test_strict_mode_details_attached(self, store):
        record = store.commit('strict mode violation: locator("li.item") resolved to 2 elements:', "test_list")

        assert record.category == Category.STRICT_MODE_VIOLATION
        assert isinstance(record.context.details, StrictModeDetails)
        assert record.context.details.selector == "li.item"

    def test_assertion_details_only_for_wrapped_assertions(self, store):
        wrapped = store.commit("Expected 'a' to be 'b'", "test_a", {
            "assertion": True, "operation": "to_be", "expected_value": "b", "actual_value": "a"
        })
        plain = store.commit("Expected 'a' to be 'b'", "test_b")

        assert isinstance(wrapped.context.details, AssertionDetails)
        assert wrapped.context.details.operation == "to_be"
        assert wrapped.context.details.expected_value == "b"
        assert "operation" not in wrapped.context.additional_info
        assert plain.context.details is None

    def test_additional_info_is_json_safe(self, store):
        record = store.commit("boom", "test_x", {"widget": object(), "attempt": 2, "url": "https://shop.test/"})

        assert isinstance(record.context.additional_info["widget"], str)
        assert record.context.additional_info["attempt"] == 2
        assert record.context.url == "https://shop.test/"
        json.dumps(latest_window(store))

    def test_artifacts_accept_single_path_or_list(self, store, tmp_path):
        single = store.commit("boom", "test_x", {"artifacts": "shot.png"})
        as_path = store.commit("boom", "test_y", {"artifacts": tmp_path / "trace.zip"})
        several = store.commit("boom", "test_z", {"artifacts": ["a.png", "b.webm"]})

        assert single.artifacts == ["shot.png"]
        assert as_path.artifacts == [str(tmp_path / "trace.zip")]
        assert several.artifacts == ["a.png", "b.webm"]
        assert "artifacts" not in single.context.additional_info

    def test_invalid_context_value_is_kept_as_info(self, store):
        record = store.commit("boom", "test_x", {"retry": "not-a-number"})

        assert record.context.retry == 0
        assert record.context.additional_info["retry"] == "not-a-number"

    def test_records_are_frozen_and_query_copies(self, store):
        record = store.commit("boom", "test_x")

        with pytest.raises(ValidationError):
            record.message = "changed"

        snapshot = store.query()
        snapshot.clear()
        assert store.count() == 1

    def test_disk_error_is_logged_not_raised(self, store, caplog):
        with patch("failtriage.error_store._write_atomic", side_effect=OSError("disk full")):
            with caplog.at_level(logging.ERROR):
                record = store.commit("boom", "test_x")

        assert store.count() == 1
        assert store.query()[0].id == record.id
        assert "disk full" in caplog.text

    def test_session_ids_differ(self):
        assert generate_session_id() != generate_session_id()


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_records_are_each_persisted_once(self, store):
        await asyncio.gather(*[
            store.record(RuntimeError(f"network error {i}"), test_name=f"test_{i}")
            for i in range(50)
        ])

        records = store.query()
        assert len(records) == 50
        assert len({r.id for r in records}) == 50
        assert len(handler_log_lines(store)) == 50
        assert len(latest_window(store)) == 50

    def test_commits_from_threads(self, store):
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda i: store.commit(f"timeout {i}", f"test_{i}"), range(50)))

        ids = [r.id for r in store.query()]
        assert len(set(ids)) == 50
        assert ids == sorted(ids)
        assert len(handler_log_lines(store)) == 50


class TestLatestWindow:

    def test_window_keeps_newest_records(self, store):
        for i in range(105):
            store.commit(f"failure {i}", f"test_{i}")

        window = latest_window(store)
        assert len(window) == 100
        assert window[0]["id"] == f"{store.session_id}-000006"
        assert window[-1]["id"] == f"{store.session_id}-000105"
        assert len(handler_log_lines(store)) == 105

    def test_configured_limit(self, tmp_path):
        store = ErrorStore(AnalysisConfig(log_dir=str(tmp_path), latest_limit=3))
        for i in range(5):
            store.commit(f"failure {i}", "test_x")
        assert [r.message for r in load_latest_records(tmp_path)] == ["failure 2", "failure 3", "failure 4"]

    def test_load_latest_skips_malformed_entries(self, store):
        store.commit("boom", "test_x")
        window = latest_window(store)
        window.append({"not": "a record"})
        (Path(store.log_dir) / LATEST_HANDLER_FILE).write_text(json.dumps(window), encoding="utf-8")

        assert len(load_latest_records(store.log_dir)) == 1

    def test_load_latest_missing_directory(self, tmp_path):
        assert load_latest_records(tmp_path / "missing") == []


class TestRecovery:

    def test_recovery_round_trip(self, store):
        original = store.commit("Timeout 3000ms exceeded", "test_search")
        outcome = RecoveryOutcome(attempted=True, strategies=["reload", "retry_click"], successful=True, attempts=2)

        updated = store.update_recovery(original.id, outcome)

        assert updated.recovery == outcome
        assert updated.model_dump(exclude={"recovery"}) == original.model_dump(exclude={"recovery"})
        assert store.query()[0].recovery == outcome
        persisted = load_latest_records(store.log_dir)[0]
        assert persisted.recovery == outcome
        assert persisted.message == original.message

    def test_unknown_id(self, store, caplog):
        with caplog.at_level(logging.WARNING):
            assert store.update_recovery("nope-000001", RecoveryOutcome(attempted=True)) is None
        assert "nope-000001" in caplog.text


class TestReports:

    def test_empty_store_report(self, store):
        assert "No errors recorded" in store.report()
        assert "No errors recorded" in store.detailed_report()
        assert store.debugging_suggestions() == GENERIC_SUGGESTIONS
        assert store.write_session_summary() is None

    def test_report_counts_and_recent(self, store):
        for i in range(7):
            store.commit(f"Timeout {i}", f"test_{i}")
        store.commit("login failed", "test_login")

        report = store.report()
        assert "8 errors recorded" in report
        assert "NETWORK_TIMEOUT: 7" in report
        assert "AUTHENTICATION_FAILURE: 1" in report
        assert "Most recent 5" in report
        assert "test_login" in report
        assert "test_0" not in report

    def test_debugging_suggestions_fire_per_category(self, store):
        store.commit('strict mode violation: locator("a") resolved to 2 elements', "test_a")
        store.commit("waiting for navigation: Timeout 30000ms exceeded", "test_b")

        suggestions = store.debugging_suggestions()
        assert any(".first()" in s for s in suggestions)
        assert any("wait_for_load_state" in s for s in suggestions)
        assert len(suggestions) == len(set(suggestions))

    def test_include_adopts_foreign_records_once(self, store, analysis_config):
        worker = ErrorStore(analysis_config)
        foreign = worker.commit("login failed", "test_login")
        own = store.commit("Timeout 1000ms exceeded", "test_cart")
        lines_before = len(handler_log_lines(store))

        assert store.include([foreign, own]) == 1
        assert store.include([foreign]) == 0
        assert [r.id for r in store.query()] == [own.id, foreign.id]
        assert len(handler_log_lines(store)) == lines_before

    def test_clear_keeps_files(self, store):
        store.commit("boom", "test_x")
        store.clear()

        assert store.count() == 0
        assert len(handler_log_lines(store)) == 1
        assert len(load_latest_records(store.log_dir)) == 1

    def test_session_summary_file(self, store):
        store.commit("login failed", "test_login")
        summary_file = store.write_session_summary()

        assert summary_file.name == f"session-summary-{store.session_id}.txt"
        content = summary_file.read_text(encoding="utf-8")
        assert "DETAILED ERROR HANDLER REPORT" in content
        assert "DEBUGGING SUGGESTIONS" in content
        assert "Verify login credentials" in content


class TestFinalizeRun:

    def test_run_dump_files(self, store):
        store.commit("Timeout 3000ms exceeded", "test_a")
        store.commit("login failed", "test_b")

        summary = store.finalize_run(total=10, passed=8, skipped=0,
                                     start_time=datetime(2026, 1, 1, tzinfo=timezone.utc))

        assert summary.failed == 2
        assert summary.failure_rate == pytest.approx(0.2)
        assert summary.error_patterns == {"NETWORK_TIMEOUT": 1, "AUTHENTICATION_FAILURE": 1}

        log_dir = Path(store.log_dir)
        dumps = list(log_dir.glob("errors-*.json"))
        assert len(dumps) == 1
        assert dumps[0].with_suffix(".txt").exists()
        latest = json.loads((log_dir / LATEST_RUN_JSON).read_text(encoding="utf-8"))
        assert latest["total_tests"] == 10
        assert latest["failure_rate"] == pytest.approx(0.2)
        assert len(latest["failures"]) == 2
        assert "test_b" in (log_dir / LATEST_RUN_TEXT).read_text(encoding="utf-8")

    def test_clean_run_is_dumped(self, store):
        summary = store.finalize_run(total=5, passed=5, skipped=0)

        assert summary.failures == []
        assert summary.failure_rate == 0.0
        assert "All clear" in (Path(store.log_dir) / LATEST_RUN_TEXT).read_text(encoding="utf-8")
