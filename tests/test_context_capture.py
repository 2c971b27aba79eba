# Context capture test suite
# Partial captures must never raise and must report what was left out

import logging
import time
from pathlib import Path

import pytest

from failtriage.config import AnalysisConfig
from failtriage.context_capture import ContextCapture, collect_environment

from conftest import FakePage, fake_request, fake_response, fake_console


class TestCapture:

    @pytest.fixture
    def capture(self, analysis_config):
        return ContextCapture(analysis_config, session_id="sess-1")

    @pytest.mark.asyncio
    async def test_full_capture(self, capture, fake_page):
        result = await capture.capture(fake_page, "test_checkout")

        assert result.ok
        assert result.omitted_fields == []
        snapshot = result.snapshot
        assert snapshot.url == "https://shop.test/cart"
        assert snapshot.title == "Cart"
        assert snapshot.viewport == {"width": 1280, "height": 720}
        assert snapshot.local_storage == {"cart": "3 items"}
        assert snapshot.session_storage == {"step": "checkout"}
        assert snapshot.cookies[0]["name"] == "session"
        assert snapshot.environment.python_version
        assert snapshot.dom is None

        screenshot = Path(snapshot.screenshot_path)
        assert screenshot.exists()
        assert screenshot.name.startswith("sess-1-test_checkout-")
        assert screenshot.suffix == ".png"

    @pytest.mark.asyncio
    async def test_dom_and_step_name(self, capture, fake_page):
        result = await capture.capture(fake_page, "test_checkout", dom=True, step_name="pay step")

        assert "<button>Buy</button>" in result.snapshot.dom
        assert Path(result.snapshot.screenshot_path).name.startswith("sess-1-pay_step-")

    @pytest.mark.asyncio
    async def test_screenshot_can_be_skipped(self, capture, fake_page):
        result = await capture.capture(fake_page, "test_checkout", screenshot=False)
        assert result.ok
        assert result.snapshot.screenshot_path is None

    @pytest.mark.asyncio
    async def test_failed_substep_is_omitted(self, capture, caplog):
        page = FakePage(fail_on={"screenshot", "cookies"})

        with caplog.at_level(logging.WARNING):
            result = await capture.capture(page, "test_profile")

        assert not result.ok
        assert set(result.omitted_fields) == {"screenshot", "cookies"}
        assert result.snapshot.screenshot_path is None
        assert result.snapshot.cookies is None
        assert result.snapshot.title == "Cart"
        assert "Capture of screenshot failed" in caplog.text

    @pytest.mark.asyncio
    async def test_hanging_substep_times_out(self, tmp_path):
        config = AnalysisConfig(log_dir=str(tmp_path / "logs"), capture_dir=str(tmp_path / "shots"),
                                capture_timeout_seconds=0.3)
        capture = ContextCapture(config, session_id="sess-2")
        page = FakePage(hang_on={"title"})

        started = time.monotonic()
        result = await capture.capture(page, "test_slow", screenshot=False)

        assert time.monotonic() - started < 5
        assert "title" in result.omitted_fields
        assert "url" not in result.omitted_fields
        assert result.snapshot.title is None
        assert result.snapshot.url == page.url


class TestListeners:

    @pytest.mark.asyncio
    async def test_network_and_console_buffers(self, analysis_config, fake_page):
        capture = ContextCapture(analysis_config, session_id="sess-3")
        capture.attach(fake_page)

        ok_request = fake_request("https://shop.test/api/cart")
        fake_page.emit("request", ok_request)
        fake_page.emit("response", fake_response(ok_request, status=500, status_text="Server Error"))

        failed_request = fake_request("https://cdn.test/app.js", resource_type="script",
                                      failure="net::ERR_ABORTED")
        fake_page.emit("request", failed_request)
        fake_page.emit("requestfailed", failed_request)

        fake_page.emit("console", fake_console("Uncaught TypeError: x is undefined"))

        result = await capture.capture(fake_page, "test_cart", screenshot=False)
        network = result.snapshot.network
        assert [entry.url for entry in network] == ["https://shop.test/api/cart", "https://cdn.test/app.js"]
        assert network[0].status == 500
        assert network[0].duration_ms is not None
        assert network[1].failure == "net::ERR_ABORTED"
        assert result.snapshot.console[0].text == "Uncaught TypeError: x is undefined"
        assert result.snapshot.console[0].location["lineNumber"] == 10

    def test_buffers_are_bounded(self, tmp_path, fake_page):
        config = AnalysisConfig(log_dir=str(tmp_path), capture_dir=str(tmp_path), max_console_messages=3)
        capture = ContextCapture(config)
        capture.attach(fake_page)

        for i in range(5):
            fake_page.emit("console", fake_console(f"message {i}", type="log"))

        listeners = capture._listeners[fake_page]
        assert [entry.text for entry in listeners.console] == ["message 2", "message 3", "message 4"]

    def test_unsettled_requests_are_bounded(self, tmp_path, fake_page):
        config = AnalysisConfig(log_dir=str(tmp_path), capture_dir=str(tmp_path), max_network_entries=3)
        capture = ContextCapture(config)
        capture.attach(fake_page)

        # Long polling requests never get a response or failure event
        requests = [fake_request(f"https://shop.test/poll/{i}") for i in range(10)]
        for request in requests:
            fake_page.emit("request", request)

        listeners = capture._listeners[fake_page]
        assert len(listeners.pending) == 3
        assert [entry.url for entry in listeners.pending.values()] == [
            "https://shop.test/poll/7", "https://shop.test/poll/8", "https://shop.test/poll/9"
        ]

        fake_page.emit("requestfinished", requests[9])
        assert len(listeners.pending) == 2
        assert listeners.network[-1].duration_ms is not None

    def test_attach_is_idempotent_and_detach_removes_handlers(self, analysis_config, fake_page):
        capture = ContextCapture(analysis_config)
        capture.attach(fake_page)
        capture.attach(fake_page)

        assert len(fake_page.handlers["console"]) == 1
        assert capture.is_attached(fake_page)

        capture.detach(fake_page)
        assert not capture.is_attached(fake_page)
        assert all(not handlers for handlers in fake_page.handlers.values())


class TestEnvironment:

    def test_collect_environment(self):
        info = collect_environment()
        assert info.python_version
        assert info.hostname
        assert info.memory_percent is None or 0 <= info.memory_percent <= 100
