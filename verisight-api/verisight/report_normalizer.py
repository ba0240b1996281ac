"""
Post-processing of the raw analysis verdict.

The remote model's aggregate score is advisory: whatever it says, a report with a
failed detection vector is never shown as authentic. The rules are clamps, so
running a normalized report through `normalize` again yields the same report.
"""
import io
import logging
from typing import Any, List, Mapping, Optional, Sequence

from PIL import Image
from pydantic import ValidationError

from verisight.detection_vectors import sort_findings
from verisight.errors import MalformedResponseError
from verisight.schemas import AnomalyFinding, ForensicReport, MediaFrame, ReportMetadata

logger = logging.getLogger("VeriSightEngine")

FAIL_SCORE_CAP = 40
WARN_SCORE_CAP = 60
WARN_THRESHOLD = 2
DEFAULT_CONFIDENCE_LEVEL = "HIGH"
ESTIMATED_RESOLUTION = "1080p (Est)"

EMPTY_REPORT_MESSAGE = "AI returned an empty report. Please retry."


def _clamp_percent(value: Any, field: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise MalformedResponseError(f"Field '{field}' is not numeric: {value!r}")
    if number != number:  # NaN
        raise MalformedResponseError(f"Field '{field}' is not numeric: {value!r}")
    return min(max(number, 0.0), 100.0)


def _parse_verdict(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise MalformedResponseError(f"Field 'isAuthentic' is not a boolean: {value!r}")


def _parse_findings(items: Any) -> List[AnomalyFinding]:
    if not isinstance(items, list):
        raise MalformedResponseError(EMPTY_REPORT_MESSAGE)

    findings = []
    for item in items:
        if not isinstance(item, Mapping):
            raise MalformedResponseError(f"Finding is not an object: {item!r}")
        try:
            findings.append(AnomalyFinding(
                category=str(item.get("category", "Unknown")),
                confidence=_clamp_percent(item.get("confidence", 0), "confidence"),
                detail=str(item.get("detail", "")),
                status=item.get("status"),
            ))
        except ValidationError as e:
            raise MalformedResponseError(f"Invalid finding {item!r}: {e.errors()[0]['msg']}")
    return findings


def estimate_resolution(frames: Sequence[MediaFrame]) -> str:
    """Height label of the first sampled frame, e.g. '720p'. Falls back to an estimate."""
    if not frames:
        return ESTIMATED_RESOLUTION
    try:
        with Image.open(io.BytesIO(frames[0].image_bytes)) as image:
            _, height = image.size
    except (OSError, ValueError) as e:
        logger.debug(f"Could not read frame dimensions: {e}")
        return ESTIMATED_RESOLUTION
    return f"{height}p"


def normalize(
    raw: Mapping[str, Any],
    frames: Sequence[MediaFrame],
    audio_present: bool,
    resolution: Optional[str] = None,
) -> ForensicReport:
    """
    Applies the verdict override rules to a raw analysis response.

    1. A response without an `analysis` array is rejected.
    2. Any FAIL finding caps the score at 40, forces a manipulated verdict and HIGH confidence.
    3. Otherwise two or more WARN findings cap the score at 60 and force a manipulated verdict.
    4. Otherwise the remote verdict passes through, with confidence defaulting to HIGH.

    Metadata always describes the sampled frames, not only the subset sent for analysis.

    Raises:
        MalformedResponseError: the response is missing required fields or has invalid values.
    """
    if not isinstance(raw, Mapping) or raw.get("analysis") is None:
        raise MalformedResponseError(EMPTY_REPORT_MESSAGE)

    findings = _parse_findings(raw["analysis"])
    fail_count = sum(1 for f in findings if f.status == "FAIL")
    warn_count = sum(1 for f in findings if f.status == "WARN")

    score = int(round(_clamp_percent(raw.get("score", 0), "score")))
    is_authentic = _parse_verdict(raw.get("isAuthentic", False))
    confidence_level = str(raw.get("confidenceLevel") or DEFAULT_CONFIDENCE_LEVEL).upper()

    if fail_count > 0:
        score = min(score, FAIL_SCORE_CAP)
        is_authentic = False
        confidence_level = "HIGH"
    elif warn_count >= WARN_THRESHOLD:
        score = min(score, WARN_SCORE_CAP)
        is_authentic = False

    if fail_count or warn_count >= WARN_THRESHOLD:
        logger.info(f"Verdict override applied: fail={fail_count} warn={warn_count} score={score}")

    try:
        return ForensicReport(
            is_authentic=is_authentic,
            score=score,
            summary=str(raw.get("summary", "")),
            confidence_level=confidence_level,
            analysis=sort_findings(findings),
            metadata=ReportMetadata(
                duration_seconds=frames[-1].timestamp if frames else 0.0,
                resolution=resolution or estimate_resolution(frames),
                frames_processed=len(frames),
                audio_processed=audio_present,
            ),
        )
    except ValidationError as e:
        raise MalformedResponseError(f"Invalid report: {e.errors()[0]['msg']}")
