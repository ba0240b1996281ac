import json
import asyncio
import logging
from typing import List, Optional, Any, Dict

import httpx
from google import genai
from google.genai import errors, types

from verisight.config import settings
from verisight.errors import AnalysisError, MalformedResponseError, RateLimitedError, TransportError
from verisight.report_normalizer import EMPTY_REPORT_MESSAGE, normalize
from verisight.schemas import AnalysisRequest, AudioPayload, ForensicReport, MediaFrame
from verisight.session import SessionContext

logger = logging.getLogger("VeriSightEngine")

RATE_LIMITED_MESSAGE = "Server Busy (Quota Exceeded). Please try again in a moment."

# STRICT JSON SCHEMA: forces the model to return the exact report structure
ANALYSIS_RESPONSE_SCHEMA: Dict[str, Any] = {
    "description": "Forensic Video Analysis Report",
    "type": "OBJECT",
    "properties": {
        "isAuthentic": {"type": "BOOLEAN"},
        "score": {"type": "INTEGER", "description": "0-100 Integrity Score"},
        "summary": {"type": "STRING", "description": "Executive forensic summary"},
        "confidenceLevel": {"type": "STRING", "enum": ["HIGH", "MEDIUM", "LOW"]},
        "analysis": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "category": {"type": "STRING"},
                    "confidence": {"type": "NUMBER"},
                    "detail": {"type": "STRING"},
                    "status": {"type": "STRING", "enum": ["PASS", "WARN", "FAIL"]},
                },
                "required": ["category", "confidence", "detail", "status"],
            },
        },
    },
    "required": ["isAuthentic", "score", "summary", "confidenceLevel", "analysis"],
}

_UNFILTERED_CATEGORIES = [
    types.HarmCategory.HARM_CATEGORY_HARASSMENT,
    types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
    types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
    types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
]


def _is_rate_limited(error: errors.APIError) -> bool:
    return error.code == 429 or error.status == "RESOURCE_EXHAUSTED" or "429" in str(error)


class AnalysisClient:
    """
    Sends sampled frames and audio to the Gemini analysis model and returns the normalized report.
    No retries: a failed call is retried by the operator starting the run again.
    """

    def __init__(self, genai_client: Optional[Any] = None, model: Optional[str] = None):
        self._genai_client = genai_client
        self.model = model or settings.ANALYSIS_MODEL
        self.generation_config = types.GenerateContentConfig(
            response_mime_type="application/json",
            response_schema=ANALYSIS_RESPONSE_SCHEMA,
            temperature=settings.ANALYSIS_TEMPERATURE,
            safety_settings=[
                types.SafetySetting(category=category, threshold=types.HarmBlockThreshold.BLOCK_NONE)
                for category in _UNFILTERED_CATEGORIES
            ],
        )

    @property
    def genai_client(self):
        if self._genai_client is None:
            if not settings.GOOGLE_API_KEY:
                raise AnalysisError("GOOGLE_API_KEY is not configured.")
            self._genai_client = genai.Client(api_key=settings.GOOGLE_API_KEY)
        return self._genai_client

    def build_contents(self, request: AnalysisRequest) -> List[types.Content]:
        parts = [types.Part(text=settings.ANALYSIS_PROMPT)]
        for frame in request.frames:
            parts.append(types.Part(inline_data=types.Blob(mime_type="image/jpeg", data=frame.image_bytes)))
        if request.audio is not None:
            parts.append(types.Part(inline_data=types.Blob(mime_type="audio/wav", data=request.audio.wav_bytes)))
        return [types.Content(role="user", parts=parts)]

    async def request_raw(self, request: AnalysisRequest) -> Dict[str, Any]:
        """Performs the remote call and returns the parsed JSON object."""
        try:
            response = await self.genai_client.aio.models.generate_content(
                model=self.model,
                contents=self.build_contents(request),
                config=self.generation_config,
            )
        except errors.APIError as e:
            if _is_rate_limited(e):
                logger.warning(f"Analysis service rate limited: {e}")
                raise RateLimitedError(RATE_LIMITED_MESSAGE) from e
            logger.error(f"Analysis service error: {e}")
            raise AnalysisError(e.message or str(e) or "Internal Forensic Error") from e
        except (httpx.HTTPError, asyncio.TimeoutError, OSError) as e:
            logger.error(f"Connection Error: {e}")
            raise TransportError(str(e) or "Could not connect to Forensic Backend.") from e

        text = getattr(response, "text", None)
        if not text:
            logger.error(f"Malformed Response: {response}")
            raise MalformedResponseError(EMPTY_REPORT_MESSAGE)
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            logger.error(f"Malformed Response: {text[:200]}")
            raise MalformedResponseError(EMPTY_REPORT_MESSAGE)
        if not isinstance(parsed, dict) or parsed.get("analysis") is None:
            logger.error(f"Malformed Response: {parsed}")
            raise MalformedResponseError(EMPTY_REPORT_MESSAGE)
        return parsed

    async def analyze(
        self,
        frames: List[MediaFrame],
        audio: Optional[AudioPayload],
        session: Optional[SessionContext] = None,
    ) -> ForensicReport:
        request = AnalysisRequest.from_sampled(frames, audio)
        operator = (session or SessionContext.anonymous()).operator_id
        logger.info(
            f"Submitting {len(request.frames)}/{len(frames)} frames "
            f"(audio={'yes' if audio else 'no'}) to {self.model} for agent {operator}"
        )
        raw = await self.request_raw(request)
        return normalize(raw, frames, audio_present=audio is not None)
