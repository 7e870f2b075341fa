import asyncio

import pytest

from attribution_relay.services.forwarder import BackgroundDispatcher, dispatch_install


class _Click:
    click_id = "clk_1"

    def __init__(self, has_pixel):
        self.has_pixel_credentials = has_pixel


class _Facebook:
    def __init__(self):
        self.sent = []

    async def send_app_install(self, click, ip, user_agent):
        self.sent.append((click.click_id, ip, user_agent))
        return True


async def test_failed_task_is_logged_and_swallowed():
    dispatcher = BackgroundDispatcher()

    async def boom():
        raise RuntimeError("upstream exploded")

    task = dispatcher.spawn(boom(), name="boom")
    assert await task is None

    await dispatcher.drain()
    assert len(dispatcher) == 0


async def test_drain_cancels_stragglers():
    dispatcher = BackgroundDispatcher()
    finished = dispatcher.spawn(asyncio.sleep(0, result="ok"))
    stuck = dispatcher.spawn(asyncio.sleep(30))

    await dispatcher.drain(timeout=0.05)

    assert await finished == "ok"
    with pytest.raises(asyncio.CancelledError):
        await stuck
    assert len(dispatcher) == 0


async def test_dispatch_install_only_with_pixel_credentials():
    dispatcher = BackgroundDispatcher()
    facebook = _Facebook()

    assert dispatch_install(dispatcher, facebook, None, "1.2.3.4", "ua") is None
    assert dispatch_install(dispatcher, facebook, _Click(False), "1.2.3.4", "ua") is None

    task = dispatch_install(dispatcher, facebook, _Click(True), "1.2.3.4", "ua")
    assert await task is True
    assert facebook.sent == [("clk_1", "1.2.3.4", "ua")]
