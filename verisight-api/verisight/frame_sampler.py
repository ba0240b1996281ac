import logging
from pathlib import Path
from typing import Iterator, List, Optional, Union

import cv2

from verisight.config import settings
from verisight.errors import MediaLoadError
from verisight.schemas import MediaFrame

logger = logging.getLogger("VeriSightEngine")


def compute_step(duration: float, sample_divisor: float, min_step: float) -> float:
    """Seconds between two sampled frames."""
    return max(min_step, duration / sample_divisor)


def _probe_duration(capture: cv2.VideoCapture) -> tuple[float, float, int]:
    fps = capture.get(cv2.CAP_PROP_FPS) or 0.0
    frame_count = int(capture.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
    if fps <= 0 or frame_count <= 0:
        return fps, 0.0, frame_count
    return fps, frame_count / fps, frame_count


def _seek(capture: cv2.VideoCapture, t: float, fps: float, frame_count: int) -> None:
    if fps > 0 and frame_count > 0:
        # Frame-index seeks are exact for intra-only and keyframe-indexed containers alike
        capture.set(cv2.CAP_PROP_POS_FRAMES, min(int(round(t * fps)), frame_count - 1))
    else:
        capture.set(cv2.CAP_PROP_POS_MSEC, t * 1000.0)


def iter_frames(
    video_path: Union[str, Path],
    max_frames: Optional[int] = None,
    sample_divisor: Optional[float] = None,
    min_step: Optional[float] = None,
    jpeg_quality: Optional[int] = None,
) -> Iterator[MediaFrame]:
    """
    Yields evenly spaced JPEG stills from `video_path`, one per seek.

    Frames are taken at t = 0, step, 2*step, ... until t reaches the clip duration
    or `max_frames` stills were produced. Each seek completes before its capture, and
    the next seek only starts once the consumer asks for the next frame.
    Media with no measurable duration still yields its first frame.

    Raises:
        MediaLoadError: the container can't be opened or its first frame can't be decoded.
    """
    max_frames = settings.FRAME_LIMIT if max_frames is None else max_frames
    sample_divisor = settings.FRAME_SAMPLE_DIVISOR if sample_divisor is None else sample_divisor
    min_step = settings.FRAME_MIN_STEP if min_step is None else min_step
    jpeg_quality = settings.JPEG_QUALITY if jpeg_quality is None else jpeg_quality

    if not Path(video_path).exists():
        raise MediaLoadError(f"Video file not found: {video_path}")

    capture = cv2.VideoCapture(str(video_path))
    try:
        if not capture.isOpened():
            raise MediaLoadError(f"Unable to open video container: {video_path}")

        fps, duration, frame_count = _probe_duration(capture)
        step = compute_step(duration, sample_divisor, min_step)
        logger.info(f"Sampling {video_path}: duration={duration:.2f}s fps={fps:.2f} step={step:.2f}s")

        produced = 0
        t = 0.0
        while produced < max_frames and (t < duration or produced == 0):
            _seek(capture, t, fps, frame_count)
            success, image = capture.read()
            if not success or image is None:
                if produced == 0:
                    raise MediaLoadError(f"Unable to decode a video frame from {video_path}")
                logger.warning(f"Decoder returned no frame at t={t:.2f}s. Stopping at {produced} frames.")
                return

            success, buffer = cv2.imencode('.jpeg', image, [cv2.IMWRITE_JPEG_QUALITY, jpeg_quality])
            if not success:
                raise MediaLoadError(f"Failed to encode frame at t={t:.2f}s as JPEG.")

            yield MediaFrame(image_bytes=buffer.tobytes(), timestamp=t)
            produced += 1
            t += step
    finally:
        capture.release()


def sample_frames(video_path: Union[str, Path], max_frames: Optional[int] = None) -> List[MediaFrame]:
    """Collects `iter_frames` into a list. The decode context is released before returning."""
    frames = list(iter_frames(video_path, max_frames=max_frames))
    logger.info(f"Extracted {len(frames)} frames from {video_path}")
    return frames
