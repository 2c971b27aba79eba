# Assertion wrappers that record failures before letting them propagate

import inspect
import logging
from typing import Any, Callable, Optional, Pattern, Union

from playwright.async_api import Page, Locator, expect as playwright_expect

from .error_store import ErrorStore

logger = logging.getLogger(__name__)


class AssertionCapture:
    # Records ASSERTION_FAILURE details for wrapped expectations, then re-raises

    def __init__(self, store: ErrorStore):
        self.store = store

    async def expect(self, page: Page, test_name: str, assertion: Callable[[], Any], *,
                     operation: Optional[str] = None, expected_value: Any = None,
                     actual_value: Any = None, description: Optional[str] = None):
        try:
            result = assertion()
            if inspect.isawaitable(result):
                await result
        except Exception as error:
            logger.debug(f"Assertion {operation or 'expect'} failed in {test_name}")
            await self.store.record(error, page, test_name, {
                "assertion": True,
                "operation": operation,
                "expected_value": expected_value,
                "actual_value": actual_value,
                "description": description,
            })
            raise

    async def to_contain(self, page: Page, test_name: str, actual: str, expected_substring: str,
                         description: Optional[str] = None):
        description = description or f'Expected "{actual}" to contain "{expected_substring}"'

        def check():
            if expected_substring not in actual:
                raise AssertionError(description)

        await self.expect(page, test_name, check, operation="to_contain",
                          expected_value=expected_substring, actual_value=actual, description=description)

    async def to_be(self, page: Page, test_name: str, actual: Any, expected: Any,
                    description: Optional[str] = None):
        description = description or f'Expected "{actual}" to be "{expected}"'

        def check():
            if actual != expected:
                raise AssertionError(description)

        await self.expect(page, test_name, check, operation="to_be",
                          expected_value=expected, actual_value=actual, description=description)

    async def to_be_visible(self, page: Page, test_name: str, locator: Locator,
                            description: Optional[str] = None):
        await self.expect(page, test_name, lambda: playwright_expect(locator).to_be_visible(),
                          operation="to_be_visible",
                          description=description or "Expected element to be visible")

    async def to_have_text(self, page: Page, test_name: str, locator: Locator, expected_text: str,
                           description: Optional[str] = None):
        await self.expect(page, test_name, lambda: playwright_expect(locator).to_have_text(expected_text),
                          operation="to_have_text", expected_value=expected_text,
                          description=description or f'Expected element to have text "{expected_text}"')

    async def to_have_url(self, page: Page, test_name: str, expected_url: Union[str, Pattern[str]],
                          description: Optional[str] = None):
        expected = getattr(expected_url, "pattern", expected_url)
        await self.expect(page, test_name, lambda: playwright_expect(page).to_have_url(expected_url),
                          operation="to_have_url", expected_value=expected, actual_value=page.url,
                          description=description or f'Expected page URL to match "{expected}"')

    async def to_have_count(self, page: Page, test_name: str, locator: Locator, expected_count: int,
                            description: Optional[str] = None):
        await self.expect(page, test_name, lambda: playwright_expect(locator).to_have_count(expected_count),
                          operation="to_have_count", expected_value=expected_count,
                          description=description or f"Expected to find {expected_count} elements")
