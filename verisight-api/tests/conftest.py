import json
from pathlib import Path
from types import SimpleNamespace

import cv2
import numpy as np
import pytest

from verisight.report_normalizer import normalize
from verisight.schemas import MediaFrame

VIDEO_FPS = 10
VIDEO_SIZE = (64, 48)  # width, height


def write_test_video(path: Path, seconds: float, fps: int = VIDEO_FPS, size=VIDEO_SIZE) -> Path:
    """Writes an MJPG .avi whose frames carry their own index as brightness."""
    writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*"MJPG"), fps, size)
    assert writer.isOpened(), "OpenCV can't write MJPG test videos"
    frame_count = max(int(round(seconds * fps)), 1)
    for index in range(frame_count):
        frame = np.full((size[1], size[0], 3), (index * 2) % 256, dtype=np.uint8)
        writer.write(frame)
    writer.release()
    return path


@pytest.fixture
def ten_second_video(tmp_path):
    return write_test_video(tmp_path / "clip.avi", seconds=10)


@pytest.fixture
def single_frame_video(tmp_path):
    return write_test_video(tmp_path / "still.avi", seconds=0.1)


@pytest.fixture
def sampled_frames():
    image = np.zeros((720, 1280, 3), dtype=np.uint8)
    _, buffer = cv2.imencode(".jpeg", image)
    return [MediaFrame(image_bytes=buffer.tobytes(), timestamp=t) for t in (0.0, 3.5, 7.0, 10.5)]


def finding(status: str, category: str = "Lip-Sync", confidence: float = 90, detail: str = "Observed."):
    return {"category": category, "confidence": confidence, "detail": detail, "status": status}


@pytest.fixture
def raw_response():
    return {
        "isAuthentic": True,
        "score": 92,
        "summary": "No manipulation indicators.",
        "confidenceLevel": "MEDIUM",
        "analysis": [
            finding("PASS", "Deepfake/Identity Swap"),
            finding("PASS", "AI Voice/TTS"),
        ],
    }


class FakeModels:
    """Stands in for `genai.Client().aio.models`."""

    def __init__(self, text=None, error=None):
        self.text = text
        self.error = error
        self.calls = []

    async def generate_content(self, model, contents, config):
        self.calls.append({"model": model, "contents": contents, "config": config})
        if self.error is not None:
            raise self.error
        return SimpleNamespace(text=self.text)


def fake_genai_client(payload=None, error=None, text=None):
    models = FakeModels(text=text if text is not None else json.dumps(payload), error=error)
    return SimpleNamespace(aio=SimpleNamespace(models=models))


class StubAnalysisClient:
    """Normalizes a canned raw response, optionally failing or waiting on `gate` first."""

    def __init__(self, raw=None, error=None, gate=None):
        self.raw = raw
        self.error = error
        self.gate = gate
        self.calls = []

    async def analyze(self, frames, audio, session=None):
        self.calls.append((frames, audio, session))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return normalize(self.raw, frames, audio_present=audio is not None)
