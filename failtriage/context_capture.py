# Page context capture for failure records
# Collects page state, recent network/console activity and host environment without ever raising

import re
import time
import socket
import asyncio
import logging
import platform
from collections import deque, OrderedDict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Any, Awaitable
from weakref import WeakKeyDictionary

import psutil
from playwright.async_api import Page, Request, Response, ConsoleMessage

from .config import AnalysisConfig
from .models import (
    CaptureResult, PageSnapshot, NetworkEntry, ConsoleEntry, EnvironmentInfo
)

logger = logging.getLogger(__name__)

_STORAGE_SCRIPT = """
(kind) => {
    const storage = kind === 'local' ? window.localStorage : window.sessionStorage;
    const out = {};
    for (let i = 0; i < storage.length; i++) {
        const key = storage.key(i);
        out[key] = storage.getItem(key);
    }
    return out;
}
"""


class _PageListeners:
    # Per-page event handlers and their bounded buffers

    def __init__(self, max_network: int, max_console: int):
        self.network: deque = deque(maxlen=max_network)
        self.console: deque = deque(maxlen=max_console)
        self.max_pending = max_network
        self.pending: "OrderedDict[int, NetworkEntry]" = OrderedDict()
        self.handlers: Dict[str, Any] = {
            "request": self.on_request,
            "response": self.on_response,
            "requestfailed": self.on_request_failed,
            "requestfinished": self.on_request_finished,
            "console": self.on_console,
        }

    def on_request(self, request: Request):
        entry = NetworkEntry(
            url=request.url,
            method=request.method,
            resource_type=request.resource_type,
            started_at=time.time()
        )
        self.pending[id(request)] = entry
        # Requests that never settle (long polling, streams) age out oldest first
        while len(self.pending) > self.max_pending:
            self.pending.popitem(last=False)
        self.network.append(entry)

    def _finish(self, request: Request, **updates) -> Optional[NetworkEntry]:
        entry = self.pending.pop(id(request), None)
        if entry is None:
            return None
        ended = time.time()
        entry.ended_at = ended
        entry.duration_ms = round((ended - entry.started_at) * 1000, 2)
        for key, value in updates.items():
            setattr(entry, key, value)
        return entry

    def on_response(self, response: Response):
        self._finish(response.request, status=response.status, status_text=response.status_text)

    def on_request_failed(self, request: Request):
        self._finish(request, failure=request.failure or "unknown failure")

    def on_request_finished(self, request: Request):
        self._finish(request)

    def on_console(self, message: ConsoleMessage):
        self.console.append(ConsoleEntry(
            type=message.type,
            text=message.text,
            location=dict(message.location or {}),
            timestamp=time.time()
        ))


class ContextCapture:
    # Captures the state of a page at the moment a failure is recorded

    def __init__(self, config: Optional[AnalysisConfig] = None, session_id: str = "session"):
        self.config = config or AnalysisConfig()
        self.session_id = session_id
        self._listeners: "WeakKeyDictionary[Page, _PageListeners]" = WeakKeyDictionary()

    def attach(self, page: Page):
        # Start passive network/console listeners on a page (idempotent)
        if page in self._listeners:
            return
        listeners = _PageListeners(self.config.max_network_entries, self.config.max_console_messages)
        for event, handler in listeners.handlers.items():
            page.on(event, handler)
        self._listeners[page] = listeners
        logger.debug(f"Attached context listeners to page {getattr(page, 'url', 'unknown')}")

    def detach(self, page: Page):
        listeners = self._listeners.pop(page, None)
        if listeners is None:
            return
        for event, handler in listeners.handlers.items():
            try:
                page.remove_listener(event, handler)
            except Exception as e:
                logger.debug(f"Failed to remove {event} listener: {e}")

    def is_attached(self, page: Page) -> bool:
        return page in self._listeners

    async def _step(self, name: str, awaitable: Awaitable, omitted: List[str]) -> Any:
        # Run one sub-capture under its own timeout; failures only mark the field omitted
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.capture_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Capture of {name} timed out after {self.config.capture_timeout_seconds}s")
        except Exception as e:
            logger.warning(f"Capture of {name} failed: {e}")
        omitted.append(name)
        return None

    def _sync_step(self, name: str, getter, omitted: List[str]) -> Any:
        try:
            return getter()
        except Exception as e:
            logger.warning(f"Capture of {name} failed: {e}")
            omitted.append(name)
            return None

    def screenshot_path(self, test_name: str, step_name: Optional[str] = None) -> Path:
        step = re.sub(r"[^A-Za-z0-9_.-]+", "_", step_name or test_name or "failure").strip("_")
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        return self.config.capture_path / f"{self.session_id}-{step}-{timestamp}.png"

    async def _take_screenshot(self, page: Page, path: Path) -> str:
        path.parent.mkdir(parents=True, exist_ok=True)
        await page.screenshot(path=str(path), full_page=True)
        return str(path)

    async def capture(self, page: Page, test_name: str, extra_info: Optional[Dict[str, Any]] = None, *,
                      screenshot: bool = True, dom: bool = False,
                      step_name: Optional[str] = None) -> CaptureResult:
        omitted: List[str] = []
        snapshot = PageSnapshot()

        snapshot.url = self._sync_step("url", lambda: page.url, omitted)
        snapshot.viewport = self._sync_step("viewport", lambda: page.viewport_size, omitted)
        snapshot.title = await self._step("title", page.title(), omitted)
        snapshot.local_storage = await self._step(
            "local_storage", page.evaluate(_STORAGE_SCRIPT, "local"), omitted)
        snapshot.session_storage = await self._step(
            "session_storage", page.evaluate(_STORAGE_SCRIPT, "session"), omitted)
        snapshot.cookies = await self._step("cookies", page.context.cookies(), omitted)

        listeners = self._listeners.get(page)
        if listeners is not None:
            snapshot.console = [entry.model_copy() for entry in listeners.console]
            snapshot.network = [entry.model_copy() for entry in listeners.network]

        snapshot.environment = await self._step(
            "environment", asyncio.to_thread(collect_environment), omitted)

        if screenshot:
            snapshot.screenshot_path = await self._step(
                "screenshot", self._take_screenshot(page, self.screenshot_path(test_name, step_name)), omitted)
        if dom:
            snapshot.dom = await self._step("dom", page.content(), omitted)

        if omitted:
            logger.warning(f"Partial context captured for {test_name}: omitted {', '.join(omitted)}")
        return CaptureResult(ok=not omitted, snapshot=snapshot, omitted_fields=omitted)


def collect_environment() -> EnvironmentInfo:
    # Host snapshot taken with psutil
    info = EnvironmentInfo(
        python_version=platform.python_version(),
        platform=platform.platform(),
        hostname=socket.gethostname()
    )
    try:
        info.cpu_percent = psutil.cpu_percent(interval=0.1)
        info.memory_percent = psutil.virtual_memory().percent
    except Exception as e:
        logger.debug(f"Failed to capture system metrics: {e}")
    return info
