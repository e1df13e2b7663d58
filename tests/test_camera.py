"""Tests for the OpenCV camera backend, with cv2 replaced by a fake."""

import asyncio
import time

import numpy as np
import pytest

from gesture_scroll import camera as camera_module
from gesture_scroll.camera import CameraConstraints, OpenCVCameraDevice, has_decodable_dimensions
from gesture_scroll.errors import DeviceAccessError

from fakes import FakeCv2Error, fake_cv2, make_frame


def open_stream(constraints=None):
    async def scenario():
        stream = await OpenCVCameraDevice().request_stream(constraints or CameraConstraints())
        await asyncio.wait_for(stream.wait_metadata(), timeout=2.0)
        return stream
    return asyncio.run(scenario())


class TestDecodableDimensions:
    @pytest.mark.parametrize("frame,expected", [
        (None, False),
        (np.zeros((0, 64, 3), dtype=np.uint8), False),
        (np.zeros((48, 0, 3), dtype=np.uint8), False),
        (np.zeros(64, dtype=np.uint8), False),
        ("not a frame", False),
        (make_frame(), True),
    ])
    def test_dimensions(self, frame, expected):
        assert has_decodable_dimensions(frame) is expected


class TestCameraConstraints:
    def test_defaults(self):
        c = CameraConstraints()
        assert c.facing_mode == "user"
        assert (c.width, c.height, c.fps) == (640, 480, 30)
        assert c.device_index == 0
        assert c.mirror is True


class TestOpenCVCameraDevice:
    def test_missing_opencv(self, monkeypatch):
        monkeypatch.setattr(camera_module, "cv2", None)
        with pytest.raises(DeviceAccessError) as exc:
            asyncio.run(OpenCVCameraDevice().request_stream(CameraConstraints()))
        assert exc.value.reason == DeviceAccessError.NOT_FOUND

    def test_opens_and_mirrors(self, monkeypatch):
        cv2 = fake_cv2()
        monkeypatch.setattr(camera_module, "cv2", cv2)

        stream = open_stream(CameraConstraints(width=320, height=240, device_index=2))
        try:
            cap = cv2.captures[0]
            assert cap.index == 2
            assert cap.props[cv2.CAP_PROP_FRAME_WIDTH] == 320
            assert cap.props[cv2.CAP_PROP_FRAME_HEIGHT] == 240
            frame = stream.current_frame()
            assert tuple(frame[0, -1]) == (255, 0, 0)
            assert tuple(frame[0, 0]) == (0, 0, 0)
            assert stream.frame_id > 0
        finally:
            stream.close()
        assert cap.released

    def test_unmirrored(self, monkeypatch):
        monkeypatch.setattr(camera_module, "cv2", fake_cv2())
        stream = open_stream(CameraConstraints(mirror=False))
        try:
            assert tuple(stream.current_frame()[0, 0]) == (255, 0, 0)
        finally:
            stream.close()

    def test_device_that_does_not_open(self, monkeypatch):
        cv2 = fake_cv2(opened=False)
        monkeypatch.setattr(camera_module, "cv2", cv2)
        with pytest.raises(DeviceAccessError) as exc:
            asyncio.run(OpenCVCameraDevice().request_stream(CameraConstraints()))
        assert exc.value.reason == DeviceAccessError.NOT_FOUND
        assert cv2.captures[0].released

    def test_backend_error_on_open(self, monkeypatch):
        monkeypatch.setattr(camera_module, "cv2", fake_cv2(open_error=FakeCv2Error("backend failure")))
        with pytest.raises(DeviceAccessError) as exc:
            asyncio.run(OpenCVCameraDevice().request_stream(CameraConstraints()))
        assert exc.value.reason == DeviceAccessError.UNAVAILABLE
        assert isinstance(exc.value.__cause__, FakeCv2Error)

    def test_device_lost_mid_stream(self, monkeypatch):
        monkeypatch.setattr(camera_module, "cv2", fake_cv2(frames=3))
        stream = open_stream()
        try:
            deadline = time.monotonic() + 2.0
            with pytest.raises(DeviceAccessError) as exc:
                while time.monotonic() < deadline:
                    stream.current_frame()
                    time.sleep(0.005)
            assert exc.value.reason == DeviceAccessError.DEVICE_LOST
        finally:
            stream.close()

    def test_lost_before_first_frame(self, monkeypatch):
        monkeypatch.setattr(camera_module, "cv2", fake_cv2(frames=0))

        async def scenario():
            stream = await OpenCVCameraDevice().request_stream(CameraConstraints())
            try:
                await asyncio.wait_for(stream.wait_metadata(), timeout=2.0)
            finally:
                stream.close()

        with pytest.raises(DeviceAccessError) as exc:
            asyncio.run(scenario())
        assert exc.value.reason == DeviceAccessError.DEVICE_LOST
