# Pytest configuration and fixtures for the failure analysis test suite
# Provides an in-memory stand-in for a Playwright page and isolated log directories

import asyncio
import logging
from datetime import datetime, timezone, timedelta
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from failtriage.config import AnalysisConfig
from failtriage.error_store import ErrorStore
from failtriage.models import Category, FailureContext, FailureRecord, RunSummary


# Configure logging for test fixtures
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class FakeBrowserContext:
    # Cookie jar of a fake browser context

    def __init__(self, page: "FakePage"):
        self.page = page
        self.cookie_jar: List[Dict[str, Any]] = [{"name": "session", "value": "abc123", "domain": "shop.test"}]
        self.clear_calls = 0

    async def cookies(self):
        await self.page._maybe_fail("cookies")
        return list(self.cookie_jar)

    async def clear_cookies(self):
        self.clear_calls += 1
        self.cookie_jar.clear()


class FakePage:
    # Implements the subset of playwright.async_api.Page used by failtriage
    # fail_on: operations that raise; hang_on: operations that never complete in time

    def __init__(self, url: str = "https://shop.test/cart", title: str = "Cart",
                 fail_on=(), hang_on=()):
        self.url = url
        self._title = title
        self.viewport_size = {"width": 1280, "height": 720}
        self.local_storage = {"cart": "3 items"}
        self.session_storage = {"step": "checkout"}
        self.html = "<html><body><button>Buy</button></body></html>"
        self.fail_on = set(fail_on)
        self.hang_on = set(hang_on)
        self.context = FakeBrowserContext(self)
        self.handlers: Dict[str, List[Any]] = {}
        self.evaluate_calls: List[Any] = []
        self.load_state_calls: List[str] = []

    async def _maybe_fail(self, operation: str):
        if operation in self.hang_on:
            await asyncio.sleep(10)
        if operation in self.fail_on:
            raise RuntimeError(f"{operation} unavailable")

    async def title(self):
        await self._maybe_fail("title")
        return self._title

    async def evaluate(self, script: str, arg: Optional[str] = None):
        self.evaluate_calls.append(arg)
        await self._maybe_fail("evaluate")
        if arg == "local":
            return dict(self.local_storage)
        if arg == "session":
            return dict(self.session_storage)
        self.local_storage.clear()
        self.session_storage.clear()
        return None

    async def screenshot(self, path: str, full_page: bool = False):
        await self._maybe_fail("screenshot")
        Path(path).write_bytes(b"\x89PNG fake")
        return b"\x89PNG fake"

    async def content(self):
        await self._maybe_fail("content")
        return self.html

    async def wait_for_load_state(self, state: str = "load", timeout: Optional[float] = None):
        self.load_state_calls.append(state)
        await self._maybe_fail("wait_for_load_state")

    def on(self, event: str, handler):
        self.handlers.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler):
        self.handlers.get(event, []).remove(handler)

    def emit(self, event: str, payload):
        for handler in list(self.handlers.get(event, [])):
            handler(payload)


def fake_request(url: str = "https://shop.test/api/cart", method: str = "GET",
                 resource_type: str = "fetch", failure: Optional[str] = None):
    return SimpleNamespace(url=url, method=method, resource_type=resource_type, failure=failure)


def fake_response(request, status: int = 200, status_text: str = "OK"):
    return SimpleNamespace(request=request, url=request.url, status=status, status_text=status_text)


def fake_console(text: str, type: str = "error"):
    return SimpleNamespace(type=type, text=text,
                           location={"url": "https://shop.test/app.js", "lineNumber": 10, "columnNumber": 4})


def make_record(category: Category, test_name: str, message: str = "failure", retry: int = 0,
                project: Optional[str] = None, session_id: str = "s1", seq: int = 1) -> FailureRecord:
    # Build a record directly, bypassing the store
    return FailureRecord(
        id=f"{session_id}-{seq:06d}",
        session_id=session_id,
        category=category,
        message=message,
        context=FailureContext(test_name=test_name, retry=retry, project=project)
    )


def make_run(failing_tests: List[str], total: int = 10, session_id: str = "run",
             category: Category = Category.ASSERTION_FAILURE, offset_minutes: int = 0) -> RunSummary:
    start = datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=offset_minutes)
    failures = [
        make_record(category, name, message=f"{name} failed", session_id=session_id, seq=i)
        for i, name in enumerate(failing_tests, 1)
    ]
    return RunSummary(
        session_id=session_id,
        total_tests=total,
        passed=total - len(failing_tests),
        failed=len(failing_tests),
        skipped=0,
        start_time=start,
        end_time=start + timedelta(seconds=30),
        failures=failures,
        error_patterns={category.value: len(failures)} if failures else {}
    )


@pytest.fixture
def analysis_config(tmp_path) -> AnalysisConfig:
    # Isolated directories, short capture timeout and no retry delay
    return AnalysisConfig(
        log_dir=str(tmp_path / "error-logs"),
        capture_dir=str(tmp_path / "error-screenshots"),
        capture_timeout_seconds=1.0,
        retry_delay_seconds=0.0
    )


@pytest.fixture
def store(analysis_config) -> ErrorStore:
    return ErrorStore(analysis_config)


@pytest.fixture
def fake_page() -> FakePage:
    return FakePage()
