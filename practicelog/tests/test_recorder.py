"""Tests for the SessionRecorder state machine and write protocol."""

import asyncio
from dataclasses import replace

import pytest
from practicelog.config import SessionTiming
from practicelog.progress_client import ProgressClientError
from practicelog.recorder import RecorderState, Session, SessionRecorder
from practicelog.wake_lock import WakeLockCoordinator

FAST = SessionTiming(dwell_seconds=0.05, settle_delay=0.01)


class StubClient:
    """In-memory progress API; optionally fails writes or reads."""

    def __init__(self, counts=None, fail_writes=False, fail_reads=False):
        self.counts = dict(counts or {})
        self.fail_writes = fail_writes
        self.fail_reads = fail_reads
        self.writes = []

    async def add_progress(self, practice_id):
        self.writes.append(practice_id)
        if self.fail_writes:
            raise ProgressClientError("storage unavailable")
        self.counts[practice_id] = self.counts.get(practice_id, 0) + 1
        return {"success": True, "id": len(self.writes)}

    async def fetch_progress(self):
        if self.fail_reads:
            raise ProgressClientError("boom")
        return dict(self.counts)


class StubWakeLock:
    def __init__(self):
        self.events = []

    async def request(self, kind):
        self.events.append("acquire")
        return self

    async def release(self):
        self.events.append("release")


def _recorder(client, timing=FAST, wake=None):
    coordinator = WakeLockCoordinator(wake) if wake is not None else None
    return SessionRecorder(Session("p1"), client, coordinator, timing=timing)


class TestStateMachine:
    @pytest.mark.asyncio
    async def test_first_play_starts_counting(self):
        recorder = _recorder(StubClient())
        assert recorder.state is RecorderState.IDLE

        await recorder.on_first_play()
        assert recorder.state is RecorderState.COUNTING
        assert recorder.session.has_fired
        assert not recorder.session.is_recorded
        await recorder.teardown()

    @pytest.mark.asyncio
    async def test_repeated_play_is_ignored(self):
        client = StubClient()
        recorder = _recorder(client)

        await asyncio.gather(*(recorder.on_first_play() for _ in range(5)))
        await asyncio.sleep(0.1)
        await recorder.wait_for_write()

        assert recorder.state is RecorderState.RECORDED
        assert client.writes == ["p1"]

    @pytest.mark.asyncio
    async def test_timer_elapsed_outside_counting_is_ignored(self):
        client = StubClient()
        recorder = _recorder(client)

        await recorder.on_timer_elapsed()
        assert recorder.state is RecorderState.IDLE
        assert client.writes == []

    @pytest.mark.asyncio
    async def test_dwell_then_single_write(self):
        client = StubClient({"p1": 2})
        recorder = _recorder(client)
        assert await recorder.load_listen_count() == 2

        await recorder.on_first_play()
        await asyncio.sleep(0.1)
        await recorder.on_timer_elapsed()  # late duplicate
        await recorder.wait_for_write()

        assert recorder.state is RecorderState.RECORDED
        assert recorder.session.is_recorded
        assert client.writes == ["p1"]
        assert recorder.listen_count == 3
        assert recorder.write_attempts == 1


class TestTeardown:
    @pytest.mark.asyncio
    async def test_teardown_before_dwell_issues_no_write(self):
        client = StubClient({"p1": 2})
        recorder = _recorder(client, timing=replace(FAST, dwell_seconds=0.3))
        await recorder.load_listen_count()

        await recorder.on_first_play()
        await asyncio.sleep(0.05)
        await recorder.teardown()
        await asyncio.sleep(0.35)
        await recorder.on_timer_elapsed()

        assert client.writes == []
        assert client.counts == {"p1": 2}
        assert recorder.state is RecorderState.COUNTING
        assert recorder.listen_count == 2

    @pytest.mark.asyncio
    async def test_play_after_teardown_is_ignored(self):
        client = StubClient()
        recorder = _recorder(client)
        await recorder.teardown()
        await recorder.on_first_play()
        assert recorder.state is RecorderState.IDLE

    @pytest.mark.asyncio
    async def test_teardown_after_recording_lets_write_finish(self):
        client = StubClient()
        recorder = _recorder(client, timing=replace(FAST, settle_delay=0.05))
        await recorder.on_first_play()
        await asyncio.sleep(0.07)
        await recorder.teardown()
        await recorder.wait_for_write()

        assert client.writes == ["p1"]
        assert recorder.listen_count == 1


class TestWriteFailures:
    @pytest.mark.asyncio
    async def test_failed_write_increments_locally_without_retry(self):
        client = StubClient({"p1": 2}, fail_writes=True)
        recorder = _recorder(client)
        await recorder.load_listen_count()

        await recorder.on_first_play()
        await asyncio.sleep(0.1)
        await recorder.wait_for_write()
        await asyncio.sleep(0.1)

        assert client.writes == ["p1"]
        assert recorder.listen_count == 3
        assert recorder.state is RecorderState.RECORDED

    @pytest.mark.asyncio
    async def test_failed_reread_increments_locally(self):
        client = StubClient({"p1": 4})
        recorder = _recorder(client)
        await recorder.load_listen_count()
        client.fail_reads = True

        await recorder.on_first_play()
        await asyncio.sleep(0.1)
        await recorder.wait_for_write()

        assert recorder.listen_count == 5

    @pytest.mark.asyncio
    async def test_failed_initial_load_shows_zero(self):
        recorder = _recorder(StubClient({"p1": 7}, fail_reads=True))
        assert await recorder.load_listen_count() == 0


class TestWakeLockCoordination:
    @pytest.mark.asyncio
    async def test_armed_acquires_and_teardown_releases(self):
        wake = StubWakeLock()
        recorder = _recorder(StubClient(), wake=wake)

        await recorder.on_first_play()
        assert wake.events == ["acquire"]
        assert recorder.wake_lock.armed

        await recorder.teardown()
        assert wake.events == ["acquire", "release"]

    @pytest.mark.asyncio
    async def test_visibility_after_teardown_does_not_reacquire(self):
        wake = StubWakeLock()
        recorder = _recorder(StubClient(), wake=wake)

        await recorder.on_first_play()
        await recorder.teardown()
        await recorder.wake_lock.on_visibility_regained()

        assert wake.events == ["acquire", "release"]
        assert not recorder.wake_lock.held

    @pytest.mark.asyncio
    async def test_release_happens_even_when_nothing_recorded(self):
        wake = StubWakeLock()
        recorder = _recorder(StubClient(), wake=wake)
        await recorder.teardown()
        assert wake.events == []


class TestCountdown:
    @pytest.mark.asyncio
    async def test_countdown_ignored_before_first_play(self):
        recorder = _recorder(StubClient())
        recorder.update_playback(10, 600)
        assert recorder.session.remaining_seconds == 0

    @pytest.mark.asyncio
    async def test_countdown_is_non_increasing(self):
        recorder = _recorder(StubClient())
        await recorder.on_first_play()

        recorder.update_playback(10.4, 600.9)
        assert recorder.session.remaining_seconds == 590
        recorder.update_playback(20, 600)
        assert recorder.session.remaining_seconds == 580
        recorder.update_playback(5, 600)  # seek backwards
        assert recorder.session.remaining_seconds == 580
        recorder.update_playback(700, 600)
        assert recorder.session.remaining_seconds == 0
        await recorder.teardown()

    @pytest.mark.asyncio
    async def test_countdown_skips_paused_and_unknown_duration(self):
        recorder = _recorder(StubClient())
        await recorder.on_first_play()

        recorder.update_playback(10, float("nan"))
        recorder.update_playback(10, None)
        recorder.update_playback(10, 600, paused=True)
        assert recorder.session.remaining_seconds == 0
        await recorder.teardown()

    @pytest.mark.asyncio
    async def test_countdown_never_gates_recording(self):
        client = StubClient()
        recorder = _recorder(client)
        await recorder.on_first_play()
        recorder.update_playback(0, 3600)
        await asyncio.sleep(0.1)
        await recorder.wait_for_write()
        assert client.writes == ["p1"]


@pytest.mark.asyncio
async def test_snapshot_reports_ui_state():
    changes = []

    async def on_change(snapshot):
        changes.append(snapshot)

    recorder = SessionRecorder(Session("p1"), StubClient(), timing=FAST, on_change=on_change)
    await recorder.on_first_play()
    await asyncio.sleep(0.1)
    await recorder.wait_for_write()

    states = [c["state"] for c in changes]
    assert states[0] == "counting"
    assert states[-1] == "recorded"
    assert changes[-1]["listen_count"] == 1
    assert changes[-1]["is_recorded"] is True
