"""Tests for the single-flight capture loop and its session lifecycle."""

import asyncio
import time

import pytest

from gesture_scroll.capture import CaptureLoop, CaptureSession, CaptureState, SessionReadiness
from gesture_scroll.errors import DeviceAccessError
from gesture_scroll.metrics import MetricsCollector

from fakes import BlockingMetadataStream, FakeDevice, FakeEngine, FakeStream, make_frame, make_hand


class BrokenMetadataStream(FakeStream):
    async def wait_metadata(self):
        raise RuntimeError("stream ended before first frame")


class SlowCloseStream(FakeStream):
    """Stream whose close() blocks the calling thread, like joining a reader thread."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    def close(self):
        time.sleep(self.delay)
        super().close()


class TestCaptureSession:
    def test_forward_one_step_at_a_time(self):
        session = CaptureSession(FakeStream())
        with pytest.raises(RuntimeError):
            session.advance(SessionReadiness.ACTIVE)
        session.advance(SessionReadiness.READY)
        session.advance(SessionReadiness.ACTIVE)
        assert session.readiness == SessionReadiness.ACTIVE
        with pytest.raises(RuntimeError):
            session.advance(SessionReadiness.READY)

    def test_stop_from_any_state(self):
        for steps in ([], [SessionReadiness.READY], [SessionReadiness.READY, SessionReadiness.ACTIVE]):
            session = CaptureSession(FakeStream())
            for step in steps:
                session.advance(step)
            session.advance(SessionReadiness.STOPPED)
            assert session.readiness == SessionReadiness.STOPPED
            with pytest.raises(RuntimeError):
                session.advance(SessionReadiness.READY)

    def test_close_is_idempotent(self):
        stream = FakeStream()
        session = CaptureSession(stream)
        session.close()
        session.close()
        assert stream.closed
        assert session.readiness == SessionReadiness.STOPPED


class TestCaptureLoop:
    def test_start_streams_and_marks_ready(self):
        states = []

        async def scenario():
            stream = FakeStream()
            loop = CaptureLoop(FakeDevice(stream), FakeEngine(), frame_interval=10)
            loop.on_state_change(states.append)
            session = await loop.start()
            assert session.readiness == SessionReadiness.READY
            assert stream.metadata_waited
            await asyncio.sleep(0.01)
            assert session.readiness == SessionReadiness.ACTIVE
            await loop.stop()
            return loop, stream

        loop, stream = asyncio.run(scenario())
        assert states == [CaptureState.REQUESTING, CaptureState.STREAMING, CaptureState.STOPPED]
        assert loop.state == CaptureState.STOPPED
        assert stream.closed

    def test_passes_constraints_to_device(self):
        async def scenario():
            device = FakeDevice()
            loop = CaptureLoop(device, FakeEngine(), frame_interval=10)
            await loop.start()
            await loop.stop()
            return device

        device = asyncio.run(scenario())
        assert device.constraints.facing_mode == "user"

    def test_start_twice_raises(self):
        async def scenario():
            loop = CaptureLoop(FakeDevice(), FakeEngine(), frame_interval=10)
            await loop.start()
            try:
                with pytest.raises(RuntimeError):
                    await loop.start()
            finally:
                await loop.stop()

        asyncio.run(scenario())

    def test_at_most_one_frame_in_flight(self):
        async def scenario():
            gate = asyncio.Event()
            engine = FakeEngine(gate=gate)
            loop = CaptureLoop(FakeDevice(), engine, frame_interval=0)
            await loop.start()
            await asyncio.sleep(0.01)

            # The loop is parked on the first submission
            assert engine.calls == 1
            assert loop.in_flight
            assert await loop.tick() is False
            assert engine.calls == 1

            gate.set()
            await asyncio.sleep(0.02)
            await loop.stop()
            return engine, loop

        engine, loop = asyncio.run(scenario())
        assert engine.calls > 1
        assert engine.max_in_flight == 1
        assert loop.frames_submitted >= engine.calls - 1

    def test_undecodable_frames_are_skipped(self):
        async def scenario():
            metrics = MetricsCollector()
            engine = FakeEngine()
            stream = FakeStream(frames=[None, make_frame()])
            loop = CaptureLoop(FakeDevice(stream), engine, frame_interval=10, metrics=metrics)
            await loop.start()
            await asyncio.sleep(0.01)  # first automatic tick sees None
            assert engine.calls == 0
            assert loop.session.readiness == SessionReadiness.READY

            assert await loop.tick() is True
            await loop.stop()
            return engine, loop, metrics

        engine, loop, metrics = asyncio.run(scenario())
        assert engine.calls == 1
        assert loop.frames_skipped == 1
        assert metrics.frames_skipped == 1
        assert metrics.frames_submitted == 1

    def test_submission_failure_does_not_stop_loop(self):
        received = []

        async def scenario():
            metrics = MetricsCollector()
            engine = FakeEngine(hands=[make_hand(0.5)], fail_on=(1,))
            loop = CaptureLoop(FakeDevice(), engine, frame_interval=0, metrics=metrics)
            loop.on_results(received.append)
            await loop.start()
            await asyncio.sleep(0.02)
            assert loop.state == CaptureState.STREAMING
            await loop.stop()
            return engine, loop, metrics

        engine, loop, metrics = asyncio.run(scenario())
        assert loop.submission_failures == 1
        assert metrics.submission_failures == 1
        assert engine.calls > 1
        assert 0 < len(received) < engine.calls
        assert not loop.in_flight

    def test_results_after_stop_are_discarded(self):
        received = []

        async def scenario():
            engine = FakeEngine()
            loop = CaptureLoop(FakeDevice(), engine, frame_interval=10)
            loop.on_results(received.append)
            await loop.start()
            await loop.stop()
            engine.emit([make_hand(0.3)])
            return engine, loop

        engine, loop = asyncio.run(scenario())
        assert received == []
        assert loop.results_discarded == 1

    def test_stop_while_in_flight(self):
        async def scenario():
            gate = asyncio.Event()
            engine = FakeEngine(gate=gate)
            loop = CaptureLoop(FakeDevice(), engine, frame_interval=0)
            await loop.start()
            await asyncio.sleep(0.01)
            assert loop.in_flight
            await loop.stop()
            gate.set()
            assert await loop.tick() is False
            await asyncio.sleep(0.01)
            return engine, loop

        engine, loop = asyncio.run(scenario())
        assert engine.calls == 1
        assert not loop.in_flight
        assert loop.state == CaptureState.STOPPED
        assert loop.session.readiness == SessionReadiness.STOPPED

    def test_stop_twice_is_safe(self):
        async def scenario():
            loop = CaptureLoop(FakeDevice(), FakeEngine(), frame_interval=10)
            await loop.start()
            await loop.stop()
            await loop.stop()
            return loop

        assert asyncio.run(scenario()).state == CaptureState.STOPPED

    def test_stop_before_metadata_never_streams(self):
        async def scenario():
            stream = BlockingMetadataStream()
            engine = FakeEngine()
            loop = CaptureLoop(FakeDevice(stream), engine, frame_interval=0)
            starting = asyncio.create_task(loop.start())
            await asyncio.sleep(0.01)
            assert loop.state == CaptureState.REQUESTING

            await loop.stop()
            stream.release.set()
            await starting
            await asyncio.sleep(0.01)
            return stream, engine, loop

        stream, engine, loop = asyncio.run(scenario())
        assert loop.state == CaptureState.STOPPED
        assert engine.calls == 0
        assert stream.closed

    def test_device_denied(self):
        states = []

        async def scenario():
            error = DeviceAccessError(DeviceAccessError.PERMISSION_DENIED, "Permission denied")
            loop = CaptureLoop(FakeDevice(error=error), FakeEngine())
            loop.on_state_change(states.append)
            with pytest.raises(DeviceAccessError) as exc:
                await loop.start()
            return loop, exc.value

        loop, error = asyncio.run(scenario())
        assert error.reason == DeviceAccessError.PERMISSION_DENIED
        assert states == [CaptureState.REQUESTING, CaptureState.STOPPED]
        assert loop.session is None

    def test_device_lost_mid_stream(self):
        fatal = []

        async def scenario():
            stream = FakeStream(lose_after=3)
            engine = FakeEngine()
            loop = CaptureLoop(FakeDevice(stream), engine, frame_interval=0)
            loop.on_fatal(fatal.append)
            await loop.start()
            await asyncio.wait_for(loop.wait(), timeout=1.0)
            return stream, engine, loop

        stream, engine, loop = asyncio.run(scenario())
        assert len(fatal) == 1
        assert fatal[0].reason == DeviceAccessError.DEVICE_LOST
        assert engine.calls == 3
        assert loop.state == CaptureState.STOPPED
        assert stream.closed

    def test_unexpected_device_error_is_wrapped(self):
        states = []

        async def scenario():
            loop = CaptureLoop(FakeDevice(error=OSError("v4l2: device busy")), FakeEngine())
            loop.on_state_change(states.append)
            with pytest.raises(DeviceAccessError) as exc:
                await loop.start()
            return loop, exc.value

        loop, error = asyncio.run(scenario())
        assert error.reason == DeviceAccessError.UNAVAILABLE
        assert "v4l2: device busy" in str(error)
        assert isinstance(error.__cause__, OSError)
        assert states == [CaptureState.REQUESTING, CaptureState.STOPPED]
        assert loop.state == CaptureState.STOPPED

    def test_metadata_failure_closes_stream(self):
        stream = BrokenMetadataStream()

        async def scenario():
            loop = CaptureLoop(FakeDevice(stream), FakeEngine())
            with pytest.raises(DeviceAccessError) as exc:
                await loop.start()
            return loop, exc.value

        loop, error = asyncio.run(scenario())
        assert error.reason == DeviceAccessError.UNAVAILABLE
        assert isinstance(error.__cause__, RuntimeError)
        assert stream.closed
        assert loop.state == CaptureState.STOPPED

    def test_stream_granted_fires_before_metadata(self):
        granted = []

        async def scenario():
            stream = BlockingMetadataStream()
            loop = CaptureLoop(FakeDevice(stream), FakeEngine(), frame_interval=10)
            loop.on_stream_granted(lambda: granted.append(stream.metadata_waited))
            starting = asyncio.create_task(loop.start())
            await asyncio.sleep(0.01)
            assert granted == [False]
            stream.release.set()
            await starting
            await loop.stop()

        asyncio.run(scenario())
        assert granted == [False]

    def test_stream_granted_not_fired_on_denial(self):
        granted = []

        async def scenario():
            error = DeviceAccessError(DeviceAccessError.PERMISSION_DENIED, "Permission denied")
            loop = CaptureLoop(FakeDevice(error=error), FakeEngine())
            loop.on_stream_granted(lambda: granted.append(True))
            with pytest.raises(DeviceAccessError):
                await loop.start()

        asyncio.run(scenario())
        assert granted == []

    def test_slow_stream_close_keeps_event_loop_running(self):
        async def scenario():
            stream = SlowCloseStream(0.2)
            loop = CaptureLoop(FakeDevice(stream), FakeEngine(), frame_interval=10)
            await loop.start()

            ticks = 0
            stopping = asyncio.create_task(loop.stop())
            while not stopping.done():
                ticks += 1
                await asyncio.sleep(0.01)
            await stopping
            return stream, ticks

        stream, ticks = asyncio.run(scenario())
        assert stream.closed
        assert ticks >= 5

    def test_submitted_count_matches_metrics(self):
        async def scenario():
            metrics = MetricsCollector()
            engine = FakeEngine(fail_on=(1, 3))
            loop = CaptureLoop(FakeDevice(), engine, frame_interval=0, metrics=metrics)
            await loop.start()
            await asyncio.sleep(0.02)
            await loop.stop()
            return engine, loop, metrics

        engine, loop, metrics = asyncio.run(scenario())
        assert loop.submission_failures == 2
        assert loop.frames_submitted == metrics.frames_submitted
        assert loop.frames_submitted + loop.submission_failures <= engine.calls
