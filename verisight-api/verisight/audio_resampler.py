import logging
import struct
import subprocess
from pathlib import Path
from typing import Optional, Union

import numpy as np

from verisight.config import settings
from verisight.errors import AudioDecodeError
from verisight.schemas import AudioPayload

logger = logging.getLogger("VeriSightEngine")

BITS_PER_SAMPLE = 16
NUM_CHANNELS = 1


def decode_audio_track(
    video_path: Union[str, Path],
    sample_rate: Optional[int] = None,
    max_seconds: Optional[float] = None,
) -> np.ndarray:
    """
    Renders the first audio stream of `video_path` as mono float32 samples in [-1, 1].

    ffmpeg does the downmix, the resampling and the truncation in one offline pass,
    so at most `max_seconds` of audio is ever decoded into memory.

    Raises:
        AudioDecodeError: no audio stream, unsupported codec, corrupt data or no ffmpeg.
    """
    sample_rate = settings.AUDIO_SAMPLE_RATE if sample_rate is None else sample_rate
    max_seconds = settings.AUDIO_MAX_SECONDS if max_seconds is None else max_seconds

    cmd = [
        settings.FFMPEG_BINARY,
        "-v",
        "error",
        "-i",
        str(video_path),
        "-map",
        "0:a:0",  # first audio stream only
        "-vn",
        "-t",
        str(max_seconds),
        "-ac",
        str(NUM_CHANNELS),
        "-ar",
        str(sample_rate),
        "-f",
        "f32le",
        "-",  # Output to stdout
    ]

    try:
        process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        raw_data, stderr = process.communicate()
    except OSError as e:
        raise AudioDecodeError(f"Error running ffmpeg: {e}")

    if process.returncode != 0:
        raise AudioDecodeError(f"FFmpeg error: {stderr.decode(errors='replace').strip()}")
    if not raw_data:
        raise AudioDecodeError("Audio track decoded to zero samples")

    data = np.frombuffer(raw_data[: len(raw_data) - len(raw_data) % 4], dtype="<f4")
    max_samples = int(sample_rate * max_seconds)
    return np.clip(data[:max_samples], -1.0, 1.0)


def encode_wav(samples: np.ndarray, sample_rate: int = 16000) -> bytes:
    """
    Writes mono samples as a 16-bit PCM RIFF/WAVE file.
    Float samples are clipped to [-1, 1] and scaled; int16 samples are written as-is.
    """
    samples = np.asarray(samples)
    if samples.dtype == np.int16:
        pcm = samples.astype("<i2")
    else:
        samples = np.clip(samples.astype(np.float64), -1.0, 1.0)
        pcm = np.where(samples < 0, samples * 0x8000, samples * 0x7FFF).astype("<i2")
    data = pcm.tobytes()

    block_align = NUM_CHANNELS * BITS_PER_SAMPLE // 8
    header = b"".join(
        [
            b"RIFF",
            struct.pack("<I", 36 + len(data)),
            b"WAVE",
            b"fmt ",
            struct.pack("<I", 16),
            struct.pack("<H", 1),  # PCM
            struct.pack("<H", NUM_CHANNELS),
            struct.pack("<I", sample_rate),
            struct.pack("<I", sample_rate * block_align),
            struct.pack("<H", block_align),
            struct.pack("<H", BITS_PER_SAMPLE),
            b"data",
            struct.pack("<I", len(data)),
        ]
    )
    return header + data


def extract_audio(video_path: Union[str, Path]) -> Optional[AudioPayload]:
    """Returns the clip's audio as a WAV payload, or None when there is no usable audio track."""
    try:
        samples = decode_audio_track(video_path)
        payload = AudioPayload(wav_bytes=encode_wav(samples, settings.AUDIO_SAMPLE_RATE), sample_rate=settings.AUDIO_SAMPLE_RATE)
    except AudioDecodeError as e:
        logger.warning(f"Audio track missing or corrupt. Proceeding with visual-only analysis. ({e})")
        return None

    logger.info(f"Extracted {payload.duration_seconds:.2f}s of audio from {video_path}")
    return payload
