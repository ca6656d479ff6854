"""Tests for the SignalAggregator play latch and its listener lifecycle."""

import asyncio
from dataclasses import replace

import pytest
from practicelog.aggregator import SignalAggregator
from practicelog.config import SessionTiming
from practicelog.signal_bus import SignalType
from practicelog.surface import MediaElement, PlayerContainer, PlayerWidget

FAST = SessionTiming(
    dwell_seconds=0.05,
    settle_delay=0,
    attach_initial_delay=0,
    attach_interval=0.005,
    attach_max_attempts=5,
    probe_delay=0.005,
    element_tune_delay=0,
)


async def _wait_attached(aggregator, timeout=1.0):
    for _ in range(int(timeout / 0.005)):
        if aggregator.attached:
            return
        await asyncio.sleep(0.005)
    raise AssertionError("aggregator never attached")


@pytest.fixture
def container():
    return PlayerContainer()


@pytest.fixture
def widget():
    return PlayerWidget("/audio/p1.mp3", "Evening unwind")


@pytest.fixture
def calls():
    return []


@pytest.fixture
def aggregator(container, widget, calls):
    return SignalAggregator("p1", container, widget, lambda: calls.append("play"), timing=FAST)


class TestPlayLatch:
    @pytest.mark.asyncio
    async def test_many_signals_fire_once(self, aggregator, container, widget, calls):
        root = container.render()
        first = await root.add_element(MediaElement("a1"))
        second = await root.add_element(MediaElement("a2"))
        aggregator.mount()
        await _wait_attached(aggregator)

        await widget.emit("play")
        await widget.emit("playing")
        await first.set_paused(False)
        await second.set_paused(False)
        await container.click()
        await asyncio.sleep(0.02)

        assert calls == ["play"]
        assert aggregator.fire_count == 1
        assert aggregator.played.done()
        assert aggregator.played.result().signal_type == SignalType.PLAYER_API

    @pytest.mark.asyncio
    async def test_concurrent_signals_fire_once(self, aggregator, container, calls):
        root = container.render()
        elements = [await root.add_element(MediaElement(f"a{i}")) for i in range(5)]
        aggregator.mount()
        await _wait_attached(aggregator)

        await asyncio.gather(*(e.set_paused(False) for e in elements))
        assert calls == ["play"]

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self, container):
        seen = []

        async def on_play():
            await asyncio.sleep(0)
            seen.append("played")

        agg = SignalAggregator("p1", container, PlayerWidget("/a.mp3"), on_play, timing=FAST)
        root = container.render()
        element = await root.add_element(MediaElement("a1"))
        agg.mount()
        await _wait_attached(agg)
        await element.dispatch("playing")
        assert seen == ["played"]
        agg.unmount()


class TestSources:
    @pytest.mark.asyncio
    async def test_player_rendered_late(self, container, widget, calls):
        patient = replace(FAST, attach_max_attempts=200)
        aggregator = SignalAggregator("p1", container, widget, lambda: calls.append("play"), timing=patient)
        aggregator.mount()
        await asyncio.sleep(0.012)
        assert not aggregator.attached

        root = container.render()
        await _wait_attached(aggregator)
        element = await root.add_element(MediaElement("a1"))
        await element.set_paused(False)
        assert calls == ["play"]

    @pytest.mark.asyncio
    async def test_replaced_element_detected_by_observer(self, aggregator, container, calls):
        root = container.render()
        await root.add_element(MediaElement("old"))
        aggregator.mount()
        await _wait_attached(aggregator)

        root.remove_element("old")
        replacement = await root.add_element(MediaElement("new"))
        assert replacement.listener_count("play") == 1

        await replacement.dispatch("play")
        assert calls == ["play"]
        assert aggregator.played.result().signal_type == SignalType.MEDIA_ELEMENT

    @pytest.mark.asyncio
    async def test_click_probe_detects_unpaused_element(self, aggregator, container, calls):
        root = container.render()
        element = await root.add_element(MediaElement("a1"))
        aggregator.mount()
        await _wait_attached(aggregator)

        # Playback started without any event reaching us.
        element.paused = False
        await container.click()
        await asyncio.sleep(0.03)

        assert calls == ["play"]
        assert aggregator.played.result().signal_type == SignalType.INTERACTION_PROBE

    @pytest.mark.asyncio
    async def test_click_while_paused_does_nothing(self, aggregator, container, calls):
        root = container.render()
        await root.add_element(MediaElement("a1"))
        aggregator.mount()
        await _wait_attached(aggregator)

        await container.click()
        await asyncio.sleep(0.03)
        assert calls == []
        assert not aggregator.has_fired

    @pytest.mark.asyncio
    async def test_media_elements_tuned_for_background_playback(self, aggregator, container):
        root = container.render()
        element = await root.add_element(MediaElement("a1"))
        aggregator.mount()
        await _wait_attached(aggregator)
        await asyncio.sleep(0.01)

        assert element.attributes == {"playsinline": "true", "preload": "auto"}


class TestDegradedPlayer:
    @pytest.mark.asyncio
    async def test_gives_up_after_bounded_attempts(self, aggregator, container, calls):
        aggregator.mount()
        await asyncio.sleep(FAST.attach_interval * FAST.attach_max_attempts + 0.05)
        assert not aggregator.attached

        root = container.render()
        element = await root.add_element(MediaElement("a1"))
        await element.set_paused(False)
        assert calls == []

    @pytest.mark.asyncio
    async def test_failed_widget_is_silent(self, container, calls):
        agg = SignalAggregator("p1", container, None, lambda: calls.append("play"), timing=FAST)
        agg.mount()
        root = container.render()
        element = await root.add_element(MediaElement("a1"))
        await asyncio.sleep(0.02)
        await element.set_paused(False)

        assert calls == []
        assert not agg.played.done()
        agg.unmount()

    @pytest.mark.asyncio
    async def test_broken_widget_api_still_uses_media_elements(self, container, calls):
        widget = PlayerWidget("/a.mp3")
        widget.destroy()
        agg = SignalAggregator("p1", container, widget, lambda: calls.append("play"), timing=FAST)
        root = container.render()
        element = await root.add_element(MediaElement("a1"))
        agg.mount()
        await _wait_attached(agg)

        await element.set_paused(False)
        assert calls == ["play"]
        agg.unmount()  # destroy error on an already destroyed widget is ignored


class TestUnmount:
    @pytest.mark.asyncio
    async def test_unmount_releases_everything(self, aggregator, container, widget, calls):
        root = container.render()
        element = await root.add_element(MediaElement("a1"))
        aggregator.mount()
        await _wait_attached(aggregator)

        assert element.listener_count() == 3
        assert root.observer_count == 1
        assert container.click_listener_count == 1
        assert widget.handler_count("play") == 1

        aggregator.unmount()
        aggregator.unmount()

        assert element.listener_count() == 0
        assert root.observer_count == 0
        assert container.click_listener_count == 0
        assert widget.destroyed
        assert aggregator.played.cancelled()

        await element.set_paused(False)
        assert calls == []

    @pytest.mark.asyncio
    async def test_unmount_during_attach_cancels_retries(self, aggregator, container, calls):
        aggregator.mount()
        await asyncio.sleep(0.002)
        aggregator.unmount()

        root = container.render()
        await asyncio.sleep(0.03)
        assert not aggregator.attached
        assert root.observer_count == 0

    @pytest.mark.asyncio
    async def test_remount_gets_fresh_latch(self, container, calls):
        root = container.render()
        element = await root.add_element(MediaElement("a1"))

        first = SignalAggregator("p1", container, PlayerWidget("/a.mp3"), lambda: calls.append(1), timing=FAST)
        first.mount()
        await _wait_attached(first)
        await element.set_paused(False)
        first.unmount()

        await element.set_paused(True)
        second = SignalAggregator("p1", container, PlayerWidget("/a.mp3"), lambda: calls.append(2), timing=FAST)
        second.mount()
        await _wait_attached(second)
        await element.set_paused(False)
        second.unmount()

        assert calls == [1, 2]
        assert element.listener_count() == 0
