"""
Tests for the shared render engine pool.

Tests cover:
- Lazy single launch shared by concurrent acquirers
- Relaunch after disconnect and the single connection-closed retry
- Bounded content load and export
"""

import asyncio

import pytest

from docrender_backend.errors import EngineDisconnected, RenderTimeout
from docrender_backend.models import PageDimensions
from docrender_backend.render_pool import RenderResourcePool, is_connection_closed


def test_connection_closed_detection():
    assert is_connection_closed(RuntimeError("Browser has been closed"))
    assert is_connection_closed(EngineDisconnected("gone"))
    assert not is_connection_closed(ValueError("bad markup"))


@pytest.mark.anyio
class TestEngineLifecycle:
    """Tests for launching and relaunching the engine."""

    async def test_concurrent_acquirers_share_one_launch(self, pool, launcher):
        launcher.launch_delay = 0.05

        contexts = await asyncio.gather(*(pool.acquire_context() for _ in range(4)))

        assert len(contexts) == 4
        assert pool.launch_count == 1
        assert len(launcher.engines) == 1

    async def test_context_uses_viewport_and_scale(self, launcher):
        pool = RenderResourcePool(launcher=launcher, dimensions=PageDimensions(device_scale_factor=2))

        context = await pool.acquire_context()

        assert context.options == {
            "viewport": {"width": 794, "height": 1123},
            "device_scale_factor": 2,
        }

    async def test_disconnect_event_triggers_relaunch(self, pool, launcher):
        await pool.acquire_context()
        launcher.engines[0].disconnect()

        await pool.acquire_context()

        assert pool.launch_count == 2

    async def test_dead_engine_detected_without_event(self, pool, launcher):
        await pool.acquire_context()
        launcher.engines[0].connected = False

        await pool.acquire_context()

        assert pool.launch_count == 2

    async def test_failed_launch_is_retried_by_next_acquirer(self, pool, launcher):
        launcher.launch_error = RuntimeError("chromium missing")

        with pytest.raises(RuntimeError):
            await pool.acquire_context()
        await pool.acquire_context()

        assert pool.launch_count == 1

    async def test_launch_timeout(self, launcher):
        launcher.launch_delay = 1
        pool = RenderResourcePool(launcher=launcher, launch_timeout=0.01)

        with pytest.raises(RenderTimeout) as excinfo:
            await pool.acquire_context()
        assert excinfo.value.step == "browser launch"

    async def test_close_shuts_down_launcher(self, pool, launcher):
        await pool.acquire_context()

        await pool.close()

        assert launcher.shut_down is True
        assert launcher.engines[0].connected is False


@pytest.mark.anyio
class TestConnectionClosedRetry:
    """Tests for the single retry on a closed connection."""

    async def test_closed_connection_retried_once(self, pool, launcher):
        launcher.context_failures = 1

        context = await pool.acquire_context()

        assert context is not None
        assert pool.launch_count == 2

    async def test_second_closed_connection_surfaces(self, pool, launcher):
        launcher.context_failures = 2

        with pytest.raises(EngineDisconnected):
            await pool.acquire_context()

    async def test_staggered_failures_share_one_relaunch(self, pool, launcher):
        """A late failure on the old engine must not close its replacement."""
        await pool.acquire_context()
        delays = iter([0, 0.05])

        async def closed_context(**options):
            await asyncio.sleep(next(delays))
            raise RuntimeError("Target page, context or browser has been closed")

        launcher.engines[0].new_context = closed_context

        contexts = await asyncio.gather(pool.acquire_context(), pool.acquire_context())

        assert len(contexts) == 2
        assert pool.launch_count == 2
        assert len(launcher.engines) == 2
        assert launcher.engines[1].connected is True


@pytest.mark.anyio
class TestRender:
    """Tests for render and context release."""

    async def test_render_exports_fixed_page_size(self, pool, launcher):
        async with pool.context() as context:
            pdf = await pool.render(context, "<html><body>hi</body></html>")

        assert pdf == launcher.pdf_bytes
        page = launcher.pages[0]
        assert page.html == "<html><body>hi</body></html>"
        assert page.pdf_options["width"] == "210mm"
        assert page.pdf_options["height"] == "297mm"
        assert page.pdf_options["print_background"] is True
        assert page.pdf_options["margin"]["top"] == "0mm"
        assert context.closed is True

    async def test_export_timeout(self, launcher):
        launcher.export_delay = 1
        pool = RenderResourcePool(launcher=launcher, export_timeout=0.01)

        with pytest.raises(RenderTimeout) as excinfo:
            async with pool.context() as context:
                await pool.render(context, "<html></html>")
        assert excinfo.value.step == "PDF export"
        assert context.closed is True

    async def test_page_creation_timeout(self, launcher):
        pool = RenderResourcePool(launcher=launcher, context_timeout=0.01)
        context = await pool.acquire_context()

        async def stuck_page():
            await asyncio.sleep(1)

        context.new_page = stuck_page

        with pytest.raises(RenderTimeout) as excinfo:
            await pool.render(context, "<html></html>")
        assert excinfo.value.step == "page creation"

    async def test_release_swallows_close_errors(self, pool, launcher):
        launcher.close_error = True
        context = await pool.acquire_context()

        await pool.release_context(context)

        assert context.closed is True
