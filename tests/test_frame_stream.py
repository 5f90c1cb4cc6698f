"""Tests for frame downscaling, encoding and the streaming pipeline."""

import asyncio
import base64
import time

import cv2
import numpy as np
import pytest

from client_remote.frame_gate import FrameGate
from client_remote.frame_stream import FramePipeline, downscale, encode_frame
from client_remote.message import VIDEO_FRAME

from conftest import FakeSource, make_frame


def _decode(data_url):
    prefix = "data:image/jpeg;base64,"
    assert data_url.startswith(prefix)
    buf = np.frombuffer(base64.b64decode(data_url[len(prefix):]), dtype=np.uint8)
    return cv2.imdecode(buf, cv2.IMREAD_COLOR)


class TestDownscale:
    def test_landscape_fits_longest_edge(self):
        assert downscale(make_frame(480, 1280), 640).shape == (240, 640, 3)

    def test_portrait_fits_longest_edge(self):
        assert downscale(make_frame(1280, 720), 640).shape == (640, 360, 3)

    def test_never_upscales(self):
        frame = make_frame(120, 160)
        assert downscale(frame, 640) is frame

    def test_rejects_bad_limit(self):
        with pytest.raises(ValueError):
            downscale(make_frame(10, 10), 0)


class TestEncode:
    def test_data_url_is_decodable_jpeg(self):
        image = _decode(encode_frame(make_frame(720, 1280), max_edge=640, quality=60))
        assert max(image.shape[:2]) == 640

    def test_bgra_frames_are_accepted(self):
        image = _decode(encode_frame(make_frame(100, 200, channels=4)))
        assert image.shape == (100, 200, 3)

    def test_lower_quality_is_smaller(self):
        frame = make_frame(480, 640)
        assert len(encode_frame(frame, quality=20)) < len(encode_frame(frame, quality=95))

    def test_rejects_bad_quality(self):
        with pytest.raises(ValueError):
            encode_frame(make_frame(10, 10), quality=0)


class TestFrameGate:
    def test_failed_read_is_invalid(self):
        assert FrameGate().validate(False, None).reason == "read_failed"

    def test_black_frame_is_invalid(self):
        result = FrameGate().validate(True, np.zeros((480, 640, 3), dtype=np.uint8))
        assert result.reason == "likely_corrupted"

    def test_bad_channels_are_invalid(self):
        result = FrameGate().validate(True, make_frame(10, 10, channels=2))
        assert result.reason == "invalid_channels"

    def test_valid_frame(self):
        result = FrameGate().validate(True, make_frame())
        assert result.valid

    def test_stall_reported_once(self):
        gate = FrameGate(stall_timeout_ms=0)
        gate.validate(False, None)
        assert gate.should_report_stall() is True
        assert gate.should_report_stall() is False


class TestPipelineTick:
    @pytest.mark.asyncio
    async def test_sequence_starts_at_one_without_gaps(self):
        emitted = []
        source = FakeSource(reads=[(True, make_frame()), (False, None), (True, make_frame()), (True, None)])
        pipeline = FramePipeline(source, emitted.append, "cane-01")

        results = [await pipeline.tick() for _ in range(5)]

        assert [r is not None for r in results] == [True, False, True, False, True]
        assert [p.frame_number for p in emitted] == [1, 2, 3]
        assert pipeline.frames_skipped == 2

    @pytest.mark.asyncio
    async def test_packet_contents(self):
        emitted = []
        pipeline = FramePipeline(FakeSource(default=(True, make_frame(720, 1280))), emitted.append,
                                 "cane-01", max_edge=320, event=VIDEO_FRAME)
        packet = await pipeline.tick()

        assert packet.device_id == "cane-01"
        assert packet.event == VIDEO_FRAME
        assert max(_decode(packet.image).shape[:2]) == 320
        assert "frame" in packet.to_dict()

    @pytest.mark.asyncio
    async def test_async_emit(self):
        emitted = []

        async def emit(packet):
            emitted.append(packet)

        pipeline = FramePipeline(FakeSource(), emit, "cane-01")
        await pipeline.tick()
        assert len(emitted) == 1

    @pytest.mark.asyncio
    async def test_emit_errors_do_not_stop_the_sequence(self):
        def emit(packet):
            raise ConnectionError("gone")

        pipeline = FramePipeline(FakeSource(), emit, "cane-01")
        first = await pipeline.tick()
        second = await pipeline.tick()
        assert (first.frame_number, second.frame_number) == (1, 2)

    @pytest.mark.asyncio
    async def test_source_errors_skip_the_tick(self):
        class BrokenSource:
            def read(self):
                raise OSError("device unplugged")

        pipeline = FramePipeline(BrokenSource(), lambda p: None, "cane-01")
        assert await pipeline.tick() is None
        assert pipeline.sequence == 0

    def test_rejects_bad_parameters(self):
        with pytest.raises(ValueError):
            FramePipeline(FakeSource(), lambda p: None, "cane-01", interval=0)
        with pytest.raises(ValueError):
            FramePipeline(FakeSource(), lambda p: None, "cane-01", quality=101)


class TestPipelineLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self):
        pipeline = FramePipeline(FakeSource(), lambda p: None, "cane-01", interval=10.0)

        assert pipeline.stop() is False
        assert pipeline.start() is True
        assert pipeline.start() is False
        assert pipeline.running
        assert pipeline.stop() is True
        assert pipeline.stop() is False
        assert not pipeline.running

    @pytest.mark.asyncio
    async def test_restart_resets_sequence(self):
        emitted = []
        pipeline = FramePipeline(FakeSource(), emitted.append, "cane-01", interval=10.0)

        pipeline.start()
        await asyncio.sleep(0.2)
        pipeline.stop()
        assert pipeline.sequence == 0

        pipeline.start()
        await asyncio.sleep(0.2)
        pipeline.stop()

        assert [p.frame_number for p in emitted] == [1, 1]

    @pytest.mark.asyncio
    async def test_runs_at_fixed_interval(self):
        emitted = []
        pipeline = FramePipeline(FakeSource(), emitted.append, "cane-01", interval=0.02)

        pipeline.start()
        await asyncio.sleep(0.2)
        pipeline.stop()

        numbers = [p.frame_number for p in emitted]
        assert len(numbers) >= 3
        assert numbers == list(range(1, len(numbers) + 1))

    @pytest.mark.asyncio
    async def test_no_frames_after_stop(self):
        emitted = []
        pipeline = FramePipeline(FakeSource(), emitted.append, "cane-01", interval=0.01)

        pipeline.start()
        await asyncio.sleep(0.05)
        pipeline.stop()
        count = len(emitted)
        await asyncio.sleep(0.05)
        assert len(emitted) == count

    @pytest.mark.asyncio
    async def test_slow_source_does_not_block_the_loop(self):
        class SlowSource:
            def read(self):
                time.sleep(0.3)
                return True, make_frame()

        emitted = []
        pipeline = FramePipeline(SlowSource(), emitted.append, "cane-01", interval=0.02)
        loop = asyncio.get_running_loop()
        worst_lag = 0.0

        pipeline.start()
        deadline = loop.time() + 0.8
        while loop.time() < deadline:
            before = loop.time()
            await asyncio.sleep(0.01)
            worst_lag = max(worst_lag, loop.time() - before - 0.01)
        pipeline.stop()

        assert emitted
        assert worst_lag < 0.1
