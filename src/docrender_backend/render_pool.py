"""
Render resource pool around a single headless Chromium instance.

Launching a browser costs seconds, so the pool launches one lazily and hands
out isolated browser contexts per render. The cached engine is dropped when
it disconnects or reports itself dead, and the next acquirer relaunches it.
Concurrent acquirers during a launch all await the same in-flight launch.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, List, Optional, Protocol, Sequence

from omegaconf import DictConfig
from playwright.async_api import async_playwright

from .errors import EngineDisconnected, RenderTimeout
from .models import PageDimensions

logger = logging.getLogger(__name__)

DEFAULT_BROWSER_ARGS = ["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"]

_CLOSED_MARKERS = ("connection closed", "has been closed", "target closed", "browser closed")


class EngineLauncher(Protocol):
    async def launch(self) -> Any: ...

    async def shutdown(self) -> None: ...


class ChromiumLauncher:
    """Starts Playwright on first launch and keeps it for relaunches."""

    def __init__(self, args: Optional[Sequence[str]] = None) -> None:
        self.args: List[str] = list(args or DEFAULT_BROWSER_ARGS)
        self._playwright = None

    async def launch(self):
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(headless=True, args=self.args)

    async def shutdown(self) -> None:
        playwright, self._playwright = self._playwright, None
        if playwright is not None:
            await playwright.stop()


def is_connection_closed(exc: BaseException) -> bool:
    """True for errors meaning the engine connection went away."""
    if isinstance(exc, EngineDisconnected):
        return True
    if type(exc).__name__ in ("ConnectionClosedError", "TargetClosedError"):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _CLOSED_MARKERS)


async def _bounded(awaitable: Awaitable[Any], timeout: float, step: str) -> Any:
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise RenderTimeout(step, timeout) from exc


class RenderResourcePool:
    """
    Owner of the shared rendering engine.

    Attributes:
        dimensions: Page size and viewport used for every context
        launch_timeout: Seconds allowed for a browser launch
        context_timeout: Seconds allowed to open a context
        content_timeout: Seconds allowed to load markup
        export_timeout: Seconds allowed to export the PDF
    """

    def __init__(
        self,
        launcher: Optional[EngineLauncher] = None,
        dimensions: Optional[PageDimensions] = None,
        launch_timeout: float = 30,
        context_timeout: float = 15,
        content_timeout: float = 30,
        export_timeout: float = 30,
    ) -> None:
        self.launcher = launcher or ChromiumLauncher()
        self.dimensions = dimensions or PageDimensions()
        self.launch_timeout = launch_timeout
        self.context_timeout = context_timeout
        self.content_timeout = content_timeout
        self.export_timeout = export_timeout
        self._engine = None
        self._launching: Optional[asyncio.Future] = None
        self.launch_count = 0

    @classmethod
    def from_settings(cls, settings: DictConfig, dimensions: PageDimensions) -> "RenderResourcePool":
        render = settings.render
        return cls(
            launcher=ChromiumLauncher(list(render.browser_args)),
            dimensions=dimensions,
            launch_timeout=render.launch_timeout_seconds,
            context_timeout=render.context_timeout_seconds,
            content_timeout=render.content_timeout_seconds,
            export_timeout=render.export_timeout_seconds,
        )

    async def _get_engine(self):
        engine = self._engine
        if engine is not None:
            if engine.is_connected():
                return engine
            logger.warning("Render engine no longer connected; relaunching")
            await self.reset(engine)

        if self._launching is None:
            self._launching = asyncio.ensure_future(self._launch())
        # Shielded so one cancelled waiter does not abort the shared launch.
        return await asyncio.shield(self._launching)

    async def _launch(self):
        try:
            engine = await _bounded(self.launcher.launch(), self.launch_timeout, "browser launch")
        except BaseException:
            self._launching = None
            raise

        self.launch_count += 1
        self._engine = engine
        try:
            engine.on("disconnected", self._on_disconnected)
        except Exception:
            logger.debug("Render engine does not support disconnect events", exc_info=True)
        logger.info(f"Render engine launched (launch #{self.launch_count})")
        return engine

    def _on_disconnected(self, engine=None) -> None:
        if engine is None or engine is self._engine:
            logger.warning("Render engine disconnected")
            self._engine = None
            self._launching = None

    async def reset(self, engine=None) -> None:
        """
        Drop the cached engine, closing it if still reachable.

        Given a specific engine, only that engine is dropped; one that has
        already been replaced (or whose relaunch is in flight) is left alone.
        """
        if engine is None:
            engine = self._engine
        elif engine is not self._engine:
            return
        self._engine = None
        self._launching = None
        if engine is None:
            return
        try:
            await engine.close()
        except Exception as exc:
            logger.debug(f"Ignoring error while closing render engine: {exc}")

    async def _new_context(self, engine):
        dims = self.dimensions
        return await _bounded(
            engine.new_context(
                viewport={"width": dims.viewport_width, "height": dims.viewport_height},
                device_scale_factor=dims.device_scale_factor,
            ),
            self.context_timeout,
            "context creation",
        )

    async def acquire_context(self):
        """
        Open a fresh isolated context on the shared engine.

        A connection-closed failure resets the engine and is retried once.

        Raises:
            EngineDisconnected: If the retry also finds the connection closed
            RenderTimeout: If launching or opening the context times out
        """
        engine = await self._get_engine()
        try:
            return await self._new_context(engine)
        except Exception as exc:
            if not is_connection_closed(exc):
                raise
            logger.warning(f"Render engine connection closed ({exc}); relaunching once")

        await self.reset(engine)
        engine = await self._get_engine()
        try:
            return await self._new_context(engine)
        except Exception as exc:
            if is_connection_closed(exc):
                raise EngineDisconnected(str(exc)) from exc
            raise

    async def release_context(self, context) -> None:
        try:
            await context.close()
        except Exception as exc:
            logger.warning(f"Render context close error (ignored): {exc}")

    @asynccontextmanager
    async def context(self) -> AsyncIterator[Any]:
        ctx = await self.acquire_context()
        try:
            yield ctx
        finally:
            await self.release_context(ctx)

    async def render(self, context, html: str, dimensions: Optional[PageDimensions] = None) -> bytes:
        """
        Load markup into a new page of the context and export it as PDF.

        Args:
            context: A context from acquire_context
            html: Complete HTML document
            dimensions: Physical page size; defaults to the pool's

        Returns:
            PDF bytes as produced by the engine

        Raises:
            RenderTimeout: If loading or exporting exceeds its timeout
        """
        dims = dimensions or self.dimensions
        page = await _bounded(context.new_page(), self.context_timeout, "page creation")
        await _bounded(page.set_content(html, wait_until="load", timeout=0), self.content_timeout, "content load")
        logger.debug(f"Content set ({len(html)} chars of HTML)")
        pdf = await _bounded(
            page.pdf(
                width=f"{dims.width_mm:g}mm",
                height=f"{dims.height_mm:g}mm",
                margin={"top": "0mm", "right": "0mm", "bottom": "0mm", "left": "0mm"},
                print_background=True,
                prefer_css_page_size=True,
            ),
            self.export_timeout,
            "PDF export",
        )
        logger.debug(f"PDF exported ({len(pdf or b'')} bytes)")
        return pdf

    async def close(self) -> None:
        await self.reset()
        await self.launcher.shutdown()
