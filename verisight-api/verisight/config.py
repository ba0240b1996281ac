import os
import logging
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    GOOGLE_API_KEY: str = os.environ.get("GOOGLE_API_KEY", os.environ.get("GEMINI_API_KEY", ""))

    LOG_LEVEL: str = "INFO"

    # --- NEURAL ENGINE ---
    ANALYSIS_MODEL: str = "gemini-2.5-flash"
    ANALYSIS_TEMPERATURE: float = 0.2

    # --- FRAME SAMPLER ---
    FRAME_LIMIT: int = 8            # keeps the request inside token limits/latency
    FRAME_SAMPLE_DIVISOR: float = 3.0
    FRAME_MIN_STEP: float = 0.5     # seconds
    JPEG_QUALITY: int = 80

    # --- AUDIO RESAMPLER ---
    AUDIO_SAMPLE_RATE: int = 16000
    AUDIO_MAX_SECONDS: float = 30.0
    FFMPEG_BINARY: str = "ffmpeg"

    # --- STORAGE ---
    UPLOAD_DIR: str = "uploads"
    DOSSIER_DIR: str = "reports"

    ANALYSIS_PROMPT: str = """
    You are a Forensic Video Analyst.
    Analyze the provided video frames and audio for digital manipulation.

    RULES:
    1. **Visuals:** Look for face warping, inconsistent lighting, and bad lip-sync.
    2. **Audio:** Look for robotic artifacts or background noise mismatches.
    3. **Text:** If you see "Deepfake", "Face Swap", or "AI Generated" text, INSTANTLY set score to 0 and status FAIL.

    Report one finding for each of these detection vectors:
    Deepfake/Identity Swap, AI Voice/TTS, Lip-Sync, Generative AI, Puppetry,
    Morphing, Lighting/Shadows, Splicing, Speed Artifacts, Metadata/Text.

    Return a strict JSON report based on the provided schema.
    """

    model_config = {"env_file": ".env", "extra": "ignore"}

settings = Settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
