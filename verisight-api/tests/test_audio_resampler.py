import io
import shutil
import struct
import subprocess
import wave

import numpy as np
import pytest

from verisight import audio_resampler
from verisight.audio_resampler import decode_audio_track, encode_wav, extract_audio
from verisight.errors import AudioDecodeError

requires_ffmpeg = pytest.mark.skipif(shutil.which("ffmpeg") is None, reason="ffmpeg binary not available")


class FakePopen:
    """Replays canned ffmpeg output."""

    last_cmd = None

    def __init__(self, stdout=b"", stderr=b"", returncode=0):
        self._stdout = stdout
        self._stderr = stderr
        self.returncode = returncode

    def __call__(self, cmd, stdout=None, stderr=None):
        FakePopen.last_cmd = cmd
        return self

    def communicate(self):
        return self._stdout, self._stderr


def test_wav_header_is_bit_exact():
    samples = np.zeros(10, dtype=np.int16)
    wav = encode_wav(samples)

    assert len(wav) == 44 + 20
    assert wav[0:4] == b"RIFF"
    assert struct.unpack("<I", wav[4:8])[0] == 36 + 20
    assert wav[8:12] == b"WAVE"
    assert wav[12:16] == b"fmt "
    assert struct.unpack("<IHHIIHH", wav[16:36]) == (16, 1, 1, 16000, 32000, 2, 16)
    assert wav[36:40] == b"data"
    assert struct.unpack("<I", wav[40:44])[0] == 20


def test_pcm_round_trip_through_wave_reader():
    rng = np.random.default_rng(7)
    samples = rng.integers(-32768, 32767, size=1600, dtype=np.int16)

    with wave.open(io.BytesIO(encode_wav(samples)), "rb") as wav_file:
        assert wav_file.getframerate() == 16000
        assert wav_file.getnchannels() == 1
        assert wav_file.getsampwidth() == 2
        decoded = np.frombuffer(wav_file.readframes(wav_file.getnframes()), dtype="<i2")

    np.testing.assert_array_equal(decoded, samples)


def test_float_samples_are_clipped_and_scaled():
    wav = encode_wav(np.array([-2.0, -1.0, 0.0, 0.5, 1.0, 3.0], dtype=np.float32))
    pcm = np.frombuffer(wav[44:], dtype="<i2")

    assert pcm.tolist() == [-32768, -32768, 0, 16383, 32767, 32767]


def test_decode_requests_mono_16k_truncated(monkeypatch):
    samples = np.linspace(-0.5, 0.5, 16000, dtype="<f4")
    monkeypatch.setattr(subprocess, "Popen", FakePopen(stdout=samples.tobytes()))

    decoded = decode_audio_track("clip.mp4")

    cmd = FakePopen.last_cmd
    assert cmd[cmd.index("-ac") + 1] == "1"
    assert cmd[cmd.index("-ar") + 1] == "16000"
    assert float(cmd[cmd.index("-t") + 1]) == 30.0
    np.testing.assert_allclose(decoded, samples)


def test_decode_caps_sample_count(monkeypatch):
    too_long = np.zeros(16000 * 31, dtype="<f4")
    monkeypatch.setattr(subprocess, "Popen", FakePopen(stdout=too_long.tobytes()))

    assert len(decode_audio_track("clip.mp4")) == 16000 * 30


def test_decode_failure_raises(monkeypatch):
    monkeypatch.setattr(subprocess, "Popen", FakePopen(stderr=b"Stream map '0:a:0' matches no streams.", returncode=1))

    with pytest.raises(AudioDecodeError, match="matches no streams"):
        decode_audio_track("clip.mp4")


def test_extract_audio_absorbs_decode_failure(monkeypatch):
    monkeypatch.setattr(subprocess, "Popen", FakePopen(returncode=1))
    assert extract_audio("clip.mp4") is None


def test_extract_audio_absorbs_missing_ffmpeg(monkeypatch):
    monkeypatch.setattr(audio_resampler.settings, "FFMPEG_BINARY", "definitely-not-ffmpeg-binary")
    assert extract_audio("clip.mp4") is None


def test_extract_audio_returns_wav_payload(monkeypatch):
    samples = np.full(8000, 0.25, dtype="<f4")
    monkeypatch.setattr(subprocess, "Popen", FakePopen(stdout=samples.tobytes()))

    payload = extract_audio("clip.mp4")

    assert payload is not None
    assert payload.duration_seconds == pytest.approx(0.5)
    with wave.open(io.BytesIO(payload.wav_bytes), "rb") as wav_file:
        assert wav_file.getframerate() == 16000
        assert wav_file.getnchannels() == 1
        assert wav_file.getnframes() == 8000


@requires_ffmpeg
def test_video_without_audio_track_yields_none(ten_second_video):
    assert extract_audio(ten_second_video) is None


@requires_ffmpeg
def test_real_audio_track_is_resampled(tmp_path):
    clip = tmp_path / "tone.wav"
    subprocess.run(
        ["ffmpeg", "-v", "error", "-f", "lavfi", "-i", "sine=frequency=440:sample_rate=44100:duration=2", "-ac", "2", str(clip)],
        check=True,
    )

    payload = extract_audio(clip)

    assert payload is not None
    with wave.open(io.BytesIO(payload.wav_bytes), "rb") as wav_file:
        assert wav_file.getframerate() == 16000
        assert wav_file.getnchannels() == 1
        assert wav_file.getnframes() == pytest.approx(32000, abs=400)
