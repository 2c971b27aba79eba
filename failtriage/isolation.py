# Per-test isolation for browser tests
# Resets browser state around each test and records failures through the injected store

import time
import asyncio
import logging
import itertools
from typing import Dict, List, Optional, Any, Callable, Awaitable

from playwright.async_api import Page

from .config import AnalysisConfig
from .context_capture import ContextCapture
from .error_store import ErrorStore
from .models import FailureRecord

logger = logging.getLogger(__name__)

_CLEAR_STORAGE_SCRIPT = """
() => {
    try {
        window.localStorage.clear();
        window.sessionStorage.clear();
    } catch (e) {}
    if ('caches' in window) {
        caches.keys().then(names => names.forEach(name => caches.delete(name)));
    }
}
"""

SETUP_LOAD_STATE_TIMEOUT_MS = 10000


class TestIsolation:
    # Lifecycle adapter: before/after each test plus failure and retry helpers
    __test__ = False

    def __init__(self, store: ErrorStore, capture: Optional[ContextCapture] = None,
                 config: Optional[AnalysisConfig] = None):
        self.store = store
        self.capture = capture or store.capture
        self.config = config or store.config
        self._counter = itertools.count(1)
        self._active: Dict[str, int] = {}

    def generate_test_id(self) -> str:
        return f"test_{int(time.time() * 1000)}_{next(self._counter)}"

    async def before(self, page: Page, test_name: str) -> str:
        # Start listeners and reset state; setup failures are recorded and re-raised
        token = self.generate_test_id()
        self._active[token] = self.store.count()
        logger.info(f"Starting test: {test_name} ({token})")

        self.capture.attach(page)
        try:
            await self.clear_browser_state(page)
            await page.wait_for_load_state("networkidle", timeout=SETUP_LOAD_STATE_TIMEOUT_MS)
        except Exception as e:
            logger.error(f"Test setup failed: {test_name}: {e}")
            await self.store.record(e, page, test_name, {"phase": "setup"})
            raise

        logger.debug(f"Test setup complete: {test_name}")
        return token

    async def after(self, page: Page, test_name: str, token: str):
        baseline = self._active.pop(token, None)
        try:
            await self.clear_browser_state(page)
            recorded = self._recorded_since(baseline, test_name) if baseline is not None else 0
            if recorded > 0:
                logger.info(f"Browser state reset after {test_name} ({recorded} failures recorded)\n"
                            f"{self.store.report()}")
        except Exception as e:
            logger.error(f"Test cleanup failed: {test_name}: {e}")
        finally:
            self.capture.detach(page)

    def _recorded_since(self, baseline: int, test_name: str) -> int:
        # The store is shared by concurrent tests; only count this test's records
        return sum(1 for record in self.store.query()[baseline:] if record.test_name == test_name)

    async def clear_browser_state(self, page: Page):
        try:
            await page.context.clear_cookies()
            await page.evaluate(_CLEAR_STORAGE_SCRIPT)
        except Exception as e:
            logger.warning(f"Failed to clear browser state: {e}")

    async def on_failure(self, page: Page, test_name: str, error: BaseException) -> Optional[FailureRecord]:
        logger.error(f"Test failure: {test_name}")
        try:
            return await self.store.record(error, page, test_name, {"active_tests": self.active_tests()})
        except Exception as e:
            logger.error(f"Failed to capture failure context: {e}")
            return None

    def active_tests(self) -> List[str]:
        return list(self._active)

    async def run_with_retries(self, operation: Callable[[], Awaitable[Any]], retries: Optional[int] = None) -> Any:
        # retries=0 means a single attempt; the delay grows linearly with the attempt number
        retries = self.config.operation_retries if retries is None else retries
        attempts = max(0, retries) + 1
        last_error = None

        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except Exception as e:
                last_error = e
                if attempt < attempts:
                    logger.warning(f"Retry attempt {attempt}/{attempts} failed: {e}")
                    await asyncio.sleep(self.config.retry_delay_seconds * attempt)

        raise last_error
