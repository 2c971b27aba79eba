# Session-scoped failure store
# Classifies, captures and persists each failure exactly once, safely under concurrent workers

import os
import json
import time
import uuid
import asyncio
import logging
import threading
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Any

from pydantic import ValidationError

from .classifier import ErrorClassifier, extract_strict_mode_details, build_assertion_details
from .config import (
    AnalysisConfig, HANDLER_LOG_TEMPLATE, LATEST_HANDLER_FILE, RUN_DUMP_PREFIX,
    LATEST_RUN_JSON, LATEST_RUN_TEXT, SESSION_SUMMARY_TEMPLATE
)
from .context_capture import ContextCapture
from .models import Category, FailureContext, FailureRecord, PageSnapshot, RecoveryOutcome, RunSummary
from .reporting import ReportRenderer

logger = logging.getLogger(__name__)

# extra_info keys that map onto FailureContext fields or details
CONTEXT_KEYS = ("test_file", "project", "retry", "duration_ms")
DETAIL_KEYS = ("selector", "assertion", "operation", "expected_value", "actual_value", "description")

# Suggestions fired per category present in the session
DEBUGGING_RULES: Dict[Category, List[str]] = {
    Category.STRICT_MODE_VIOLATION: [
        "🎯 Fix strict mode violations by adding .first() to selectors that match multiple elements",
        "🔧 Make selectors more specific to target unique elements",
        "📖 Review error details for specific selector suggestions",
        "🛠️ Consider using unique IDs or more specific CSS selectors",
    ],
    Category.SELECTOR_NOT_FOUND: [
        "🔍 Use Playwright Inspector: PWDEBUG=1 pytest -k <test>",
        "📝 Check if selectors are correct and elements exist",
        "⏱️ Add explicit waits before element interactions",
    ],
    Category.NETWORK_TIMEOUT: [
        "⏰ Increase timeout values (page.set_default_timeout / --timeout)",
        "🌐 Check network conditions and server response times",
        "🔄 Use wait_for_load_state() before interactions",
    ],
    Category.AUTHENTICATION_FAILURE: [
        "🔐 Verify login credentials and authentication flow",
        "🍪 Check session management and cookie handling",
        "🧪 Ensure proper test isolation between auth tests",
    ],
    Category.ASSERTION_FAILURE: [
        "📸 Review screenshots to understand page state during failure",
        "🔍 Compare expected vs actual values in assertion details",
        "📊 Check for timing issues - add waits before assertions",
        "🔤 Verify text formatting, whitespace, and case sensitivity",
        "📱 Consider dynamic content that might change between test runs",
        "🎯 Use more specific selectors or partial text matches",
    ],
}
# Navigation timeouts share the network timeout advice
DEBUGGING_RULES[Category.NAVIGATION_TIMEOUT] = DEBUGGING_RULES[Category.NETWORK_TIMEOUT]

GENERIC_SUGGESTIONS = [
    "📋 Review error messages and stack traces for specific guidance",
    "🎥 Check video recordings if available",
    "🗂️ Review trace files for detailed execution flow",
]


def generate_session_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


def _write_atomic(path: Path, content: str):
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    with open(tmp_path, 'w', encoding='utf-8') as f:
        f.write(content)
    os.replace(tmp_path, path)


def _read_record_list(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return data if isinstance(data, list) else []
    except Exception as e:
        logger.warning(f"Failed to read {path}: {e}")
        return []


def load_latest_records(log_dir) -> List[FailureRecord]:
    # Rolling window written by ErrorStore.commit, oldest first
    records = []
    for entry in _read_record_list(Path(log_dir) / LATEST_HANDLER_FILE):
        try:
            records.append(FailureRecord.model_validate(entry))
        except Exception as e:
            logger.warning(f"Skipping malformed record in {LATEST_HANDLER_FILE}: {e}")
    return records


def suggestions_for(records: List[FailureRecord]) -> List[str]:
    # Every rule whose category is present fires; generic advice otherwise
    present = {record.category for record in records}
    suggestions: List[str] = []
    for category, rules in DEBUGGING_RULES.items():
        if category in present:
            for suggestion in rules:
                if suggestion not in suggestions:
                    suggestions.append(suggestion)
    return suggestions or list(GENERIC_SUGGESTIONS)


class ErrorStore:
    # Owns the live failure buffer and is the only writer of the error log directory

    def __init__(self, config: Optional[AnalysisConfig] = None, capture: Optional[ContextCapture] = None,
                 session_id: Optional[str] = None, classifier: Optional[ErrorClassifier] = None):
        self.config = config or AnalysisConfig()
        self.session_id = session_id or generate_session_id()
        self.capture = capture or ContextCapture(self.config, self.session_id)
        self.classifier = classifier or ErrorClassifier()
        self.renderer = ReportRenderer()
        self.log_dir = self.config.log_path
        self._records: List[FailureRecord] = []
        self._sequence = 0
        self._lock = threading.Lock()
        self.started_at = datetime.now(timezone.utc)

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            logger.error(f"Failed to create error log directory {self.log_dir}: {e}")

    async def record(self, error: Any, page=None, test_name: Optional[str] = None,
                     extra_info: Optional[Dict[str, Any]] = None) -> FailureRecord:
        # Capture page context then commit; the durable write finishes before returning
        if isinstance(error, BaseException):
            message = str(error)
            error_type = type(error).__name__
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__)) \
                if error.__traceback__ else None
        else:
            message = str(error)
            error_type = None
            stack = None

        snapshot = None
        info = dict(extra_info or {})
        if page is not None:
            result = await self.capture.capture(page, test_name or "unknown", info,
                                                step_name=info.get("step_name"))
            snapshot = result.snapshot
            if result.omitted_fields:
                info.setdefault("capture_omitted", result.omitted_fields)

        return await asyncio.to_thread(
            self.commit, message, test_name, info,
            stack=stack, error_type=error_type, snapshot=snapshot
        )

    def commit(self, message: str, test_name: Optional[str] = None,
               extra_info: Optional[Dict[str, Any]] = None, *, stack: Optional[str] = None,
               error_type: Optional[str] = None, snapshot: Optional[PageSnapshot] = None,
               timestamp: Optional[datetime] = None) -> FailureRecord:
        info = dict(extra_info or {})
        message = "" if message is None else str(message)
        text = f"{error_type}: {message}" if error_type else message
        category = self.classifier.classify(text)

        details = None
        if category == Category.STRICT_MODE_VIOLATION:
            details = extract_strict_mode_details(message, info.get("selector"))
        elif category == Category.ASSERTION_FAILURE and info.get("assertion"):
            details = build_assertion_details(
                info.get("operation"), info.get("expected_value"),
                info.get("actual_value"), info.get("description") or message
            )

        raw_artifacts = info.pop("artifacts", None) or []
        if isinstance(raw_artifacts, (str, Path)):
            raw_artifacts = [raw_artifacts]
        artifacts = [str(a) for a in raw_artifacts]
        if snapshot is not None and snapshot.screenshot_path:
            artifacts.append(snapshot.screenshot_path)

        context_fields = {key: info[key] for key in CONTEXT_KEYS if info.get(key) is not None}
        additional = {
            key: _json_safe(value) for key, value in info.items()
            if key not in CONTEXT_KEYS and key not in DETAIL_KEYS
        }
        url = (snapshot.url if snapshot is not None and snapshot.url else None) or info.get("url") or "unknown"
        additional.pop("url", None)

        try:
            context = FailureContext(
                url=url, test_name=test_name or "unknown", additional_info=additional,
                details=details, page=snapshot, **context_fields
            )
        except ValidationError as e:
            # Keep the record; demote unusable context values to additional_info
            logger.warning(f"Invalid failure context values {context_fields}: {e}")
            additional.update({key: _json_safe(value) for key, value in context_fields.items()})
            context = FailureContext(
                url=url, test_name=test_name or "unknown", additional_info=additional,
                details=details, page=snapshot
            )

        with self._lock:
            self._sequence += 1
            record = FailureRecord(
                id=f"{self.session_id}-{self._sequence:06d}",
                timestamp=timestamp or datetime.now(timezone.utc),
                session_id=self.session_id,
                category=category,
                message=message,
                stack=stack,
                context=context,
                artifacts=artifacts
            )
            self._records.append(record)
            self._persist(record)

        first_line = message.splitlines()[0] if message else ""
        logger.error(f"Test failure recorded [{record.category.value}] in {record.test_name}: {first_line}")
        return record

    def _persist(self, record: FailureRecord):
        # Called with the lock held
        try:
            line = record.model_dump_json()
            log_file = self.log_dir / HANDLER_LOG_TEMPLATE.format(date=record.timestamp.strftime("%Y-%m-%d"))
            with open(log_file, 'a', encoding='utf-8') as f:
                f.write(line + "\n")

            latest_file = self.log_dir / LATEST_HANDLER_FILE
            window = _read_record_list(latest_file)
            window.append(record.model_dump(mode="json"))
            window = window[-self.config.latest_limit:]
            _write_atomic(latest_file, json.dumps(window, indent=2))
        except Exception as e:
            logger.error(f"Failed to write error to log file: {e}")

    def include(self, records: List[FailureRecord]) -> int:
        # Adopt records already persisted by another process; ids seen before are skipped
        added = 0
        with self._lock:
            known = {record.id for record in self._records}
            for record in records:
                if record.id not in known:
                    self._records.append(record)
                    known.add(record.id)
                    added += 1
        return added

    def update_recovery(self, record_id: str, outcome: RecoveryOutcome) -> Optional[FailureRecord]:
        with self._lock:
            for index, record in enumerate(self._records):
                if record.id == record_id:
                    updated = record.with_recovery(outcome)
                    self._records[index] = updated
                    self._replace_in_latest(updated)
                    return updated
        logger.warning(f"Cannot update recovery: no record with id {record_id}")
        return None

    def _replace_in_latest(self, record: FailureRecord):
        latest_file = self.log_dir / LATEST_HANDLER_FILE
        try:
            window = _read_record_list(latest_file)
            for index, entry in enumerate(window):
                if isinstance(entry, dict) and entry.get("id") == record.id:
                    window[index] = record.model_dump(mode="json")
                    _write_atomic(latest_file, json.dumps(window, indent=2))
                    return
        except Exception as e:
            logger.error(f"Failed to update recovery in {latest_file}: {e}")

    def query(self) -> List[FailureRecord]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._records]

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def clear(self):
        # Empties the buffer only; persisted logs are kept
        with self._lock:
            self._records.clear()

    def summary(self, recent: int = 5) -> Dict[str, Any]:
        records = self.query()
        by_category: Dict[str, int] = {}
        for record in records:
            by_category[record.category.value] = by_category.get(record.category.value, 0) + 1
        return {
            "session_id": self.session_id,
            "total": len(records),
            "by_category": by_category,
            "recent": records[-recent:],
        }

    def report(self) -> str:
        return self.renderer.render_store_report(self.summary())

    def detailed_report(self) -> str:
        return self.renderer.render_detailed_report(self.session_id, self.query(), str(self.log_dir))

    def debugging_suggestions(self) -> List[str]:
        return suggestions_for(self.query())

    def finalize_run(self, total: int, passed: int, skipped: int, start_time: Optional[datetime] = None,
                     workers: int = 1) -> RunSummary:
        # Build the run summary and dump it next to the failure logs
        records = self.query()
        error_patterns: Dict[str, int] = {}
        for record in records:
            error_patterns[record.category.value] = error_patterns.get(record.category.value, 0) + 1

        end_time = datetime.now(timezone.utc)
        summary = RunSummary(
            session_id=self.session_id,
            total_tests=total,
            passed=passed,
            failed=max(0, total - passed - skipped),
            skipped=skipped,
            start_time=start_time or self.started_at,
            end_time=end_time,
            workers=max(1, workers),
            failures=records,
            error_patterns=error_patterns
        )

        stamp = end_time.strftime("%Y-%m-%dT%H-%M-%S-%f")
        json_text = summary.model_dump_json(indent=2)
        text_report = self.renderer.render_run_summary(summary)
        try:
            (self.log_dir / f"{RUN_DUMP_PREFIX}{stamp}.json").write_text(json_text, encoding='utf-8')
            (self.log_dir / f"{RUN_DUMP_PREFIX}{stamp}.txt").write_text(text_report, encoding='utf-8')
            _write_atomic(self.log_dir / LATEST_RUN_JSON, json_text)
            _write_atomic(self.log_dir / LATEST_RUN_TEXT, text_report)
            logger.info(f"Run summary written to {self.log_dir} ({summary.failed}/{summary.total_tests} failed)")
        except Exception as e:
            logger.error(f"Failed to write run summary: {e}")
        return summary

    def write_session_summary(self) -> Optional[Path]:
        if self.count() == 0:
            return None

        summary_file = self.log_dir / SESSION_SUMMARY_TEMPLATE.format(session_id=self.session_id)
        content = self.detailed_report() + "\n\n💡 DEBUGGING SUGGESTIONS:\n" + "-" * 40 + "\n"
        content += "\n".join(self.debugging_suggestions()) + "\n"
        try:
            summary_file.write_text(content, encoding='utf-8')
            return summary_file
        except Exception as e:
            logger.warning(f"Failed to write session summary: {e}")
            return None
