import base64
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Literal

FindingStatus = Literal["PASS", "WARN", "FAIL"]
ConfidenceLevel = Literal["HIGH", "MEDIUM", "LOW"]

WAV_HEADER_SIZE = 44


class MediaFrame(BaseModel):
    model_config = ConfigDict(frozen=True)

    image_bytes: bytes # JPEG
    timestamp: float # seconds from the start of the clip

    @property
    def base64(self) -> str:
        return base64.b64encode(self.image_bytes).decode("utf-8")

    def to_wire(self) -> dict:
        return {"base64": self.base64, "timestamp": self.timestamp}


class AudioPayload(BaseModel):
    """Mono 16-bit PCM RIFF/WAVE bytes, ready to ship as `audio/wav`."""
    model_config = ConfigDict(frozen=True)

    wav_bytes: bytes
    sample_rate: int = 16000

    @property
    def base64(self) -> str:
        return base64.b64encode(self.wav_bytes).decode("utf-8")

    @property
    def duration_seconds(self) -> float:
        return max(len(self.wav_bytes) - WAV_HEADER_SIZE, 0) / (self.sample_rate * 2)


class AnalysisRequest(BaseModel):
    frames: List[MediaFrame]
    audio: Optional[AudioPayload] = None

    @classmethod
    def from_sampled(cls, frames: List[MediaFrame], audio: Optional[AudioPayload]) -> "AnalysisRequest":
        # Only every 2nd frame goes out, to save bandwidth/quota
        return cls(frames=[f for index, f in enumerate(frames) if index % 2 == 0], audio=audio)

    def to_wire(self) -> dict:
        return {
            "frames": [f.to_wire() for f in self.frames],
            "audioBase64": self.audio.base64 if self.audio else None,
        }


class AnomalyFinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str
    confidence: float = Field(ge=0, le=100)
    detail: str
    status: FindingStatus


class ReportMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    duration_seconds: float = Field(alias="durationSeconds")
    resolution: str
    frames_processed: int = Field(alias="framesProcessed")
    audio_processed: bool = Field(alias="audioProcessed")


class ForensicReport(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    is_authentic: bool = Field(alias="isAuthentic")
    score: int = Field(ge=0, le=100)
    summary: str
    confidence_level: ConfidenceLevel = Field(alias="confidenceLevel")
    analysis: List[AnomalyFinding]
    metadata: ReportMetadata

    @property
    def verdict_label(self) -> str:
        return "AUTHENTIC" if self.is_authentic else "MANIPULATED"
