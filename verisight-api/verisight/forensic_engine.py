import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Dict, Optional, Any, Union

from verisight.analysis_client import AnalysisClient
from verisight.audio_resampler import extract_audio
from verisight.dossier_renderer import export_dossier
from verisight.errors import MediaLoadError, RenderExportError, WorkflowError
from verisight.frame_sampler import sample_frames
from verisight.schemas import AudioPayload, ForensicReport, MediaFrame
from verisight.session import SessionContext

logger = logging.getLogger("VeriSightEngine")


class AnalysisStatus(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"  # Extracting Frames + Audio
    ANALYZING = "analyzing"    # Waiting on the analysis model
    COMPLETED = "completed"
    ERROR = "error"


PROGRESS_MESSAGES = {
    AnalysisStatus.IDLE: "Awaiting video.",
    AnalysisStatus.EXTRACTING: "Extracting Bio-Signals...",
    AnalysisStatus.ANALYZING: "Running Neural Physics Engine...",
    AnalysisStatus.COMPLETED: "Analysis complete.",
    AnalysisStatus.ERROR: "Analysis Failed.",
}


@dataclass
class PipelineRun:
    """Artifacts of one attempt at analyzing the selected file."""

    token: int
    video_path: Path
    frames: List[MediaFrame] = field(default_factory=list)
    audio: Optional[AudioPayload] = None
    report: Optional[ForensicReport] = None
    error: Optional[str] = None


class ForensicEngine:
    """
    Drives one video at a time through IDLE -> EXTRACTING -> ANALYZING -> COMPLETED | ERROR.

    Every run gets a fresh token. Results that resolve after their run was superseded
    (new file, new run or reset) are dropped instead of being applied.
    """

    def __init__(
        self,
        analysis_client: Optional[AnalysisClient] = None,
        frame_sampler: Callable[[Path], List[MediaFrame]] = sample_frames,
        audio_extractor: Callable[[Path], Optional[AudioPayload]] = extract_audio,
    ):
        self.analysis_client = analysis_client or AnalysisClient()
        self.frame_sampler = frame_sampler
        self.audio_extractor = audio_extractor

        self.status = AnalysisStatus.IDLE
        self.selected_file: Optional[Path] = None
        self.current_run: Optional[PipelineRun] = None
        self.export_error: Optional[str] = None

        self._owns_selected_file = False
        self._generation = 0
        self._subscribers: List[asyncio.Queue] = []

    # --- STATE ---

    @property
    def report(self) -> Optional[ForensicReport]:
        return self.current_run.report if self.current_run else None

    @property
    def error(self) -> Optional[str]:
        return self.current_run.error if self.current_run else None

    @property
    def progress_message(self) -> str:
        if self.status == AnalysisStatus.ERROR and self.error:
            return self.error
        return PROGRESS_MESSAGES[self.status]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.progress_message,
            "error": self.error,
            "file": self.selected_file.name if self.selected_file else None,
        }

    def subscribe(self) -> asyncio.Queue:
        """Queue receiving a status snapshot on every transition."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _set_status(self, status: AnalysisStatus):
        self.status = status
        logger.info(f"[VeriSight] Status -> {status.value}")
        event = self.snapshot()
        for queue in self._subscribers:
            queue.put_nowait(event)

    def _is_current(self, run: PipelineRun) -> bool:
        return self.current_run is run and run.token == self._generation

    # --- TRANSITIONS ---

    def _discard(self):
        """Drops the current run's frames, audio and report, and invalidates in-flight work."""
        self._generation += 1
        self.current_run = None
        self.export_error = None

    def _release_selected_file(self):
        if self.selected_file and self._owns_selected_file:
            try:
                self.selected_file.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove upload {self.selected_file}: {e}")
        self.selected_file = None
        self._owns_selected_file = False

    def select_file(self, video_path: Union[str, Path], owns_file: bool = False):
        """
        Makes `video_path` the file for the next run and discards the previous run.
        With `owns_file`, the engine deletes the file once it's discarded.
        """
        self._discard()
        self._release_selected_file()
        self.selected_file = Path(video_path)
        self._owns_selected_file = owns_file
        self._set_status(AnalysisStatus.IDLE)

    def reset(self):
        """Discards the selected file and any run. Valid from every state."""
        self._discard()
        self._release_selected_file()
        self._set_status(AnalysisStatus.IDLE)

    def _extract_audio(self, video_path: Path) -> Optional[AudioPayload]:
        try:
            return self.audio_extractor(video_path)
        except Exception as e:
            logger.warning(f"Audio extraction system error: {e}. Proceeding with visual-only analysis.")
            return None

    async def start_analysis(self, session: Optional[SessionContext] = None) -> Optional[ForensicReport]:
        """
        Runs the pipeline on the selected file. Starting again after ERROR is the retry path.

        Returns the report, or None when the run was superseded before it finished.

        Raises:
            WorkflowError: no file is selected, or a run is already in flight.
            VeriSightError: the run failed; the engine is left in ERROR with the message.
        """
        if self.selected_file is None:
            raise WorkflowError("No video selected.")
        if self.status in (AnalysisStatus.EXTRACTING, AnalysisStatus.ANALYZING):
            raise WorkflowError("An analysis is already in progress.")

        session = session or SessionContext.anonymous()
        self._discard()
        run = PipelineRun(token=self._generation, video_path=self.selected_file)
        self.current_run = run
        self._set_status(AnalysisStatus.EXTRACTING)

        try:
            # Both threads finish before either failure is raised
            frames, audio = await asyncio.gather(
                asyncio.to_thread(self.frame_sampler, run.video_path),
                asyncio.to_thread(self._extract_audio, run.video_path),
                return_exceptions=True,
            )
            for outcome in (frames, audio):
                if isinstance(outcome, BaseException):
                    raise outcome
            if not self._is_current(run):
                logger.info(f"Run {run.token} superseded during extraction. Dropping its media.")
                return None
            if not frames:
                raise MediaLoadError("No frames could be extracted from the video.")
            run.frames, run.audio = frames, audio

            self._set_status(AnalysisStatus.ANALYZING)
            report = await self.analysis_client.analyze(frames, audio, session)
            if not self._is_current(run):
                logger.info(f"Run {run.token} superseded during analysis. Dropping late report.")
                return None

            run.report = report
            self._set_status(AnalysisStatus.COMPLETED)
            return report

        except Exception as e:
            if not self._is_current(run):
                logger.info(f"Run {run.token} superseded; ignoring its failure: {e}")
                return None
            logger.error(f"[VeriSight] Run {run.token} failed: {e}", exc_info=True)
            run.error = str(e) or "Analysis Failed."
            self._set_status(AnalysisStatus.ERROR)
            raise

    def export_dossier(self, session: SessionContext, output_dir: Union[str, Path, None] = None) -> Path:
        """
        Writes the dossier for the completed report. A failed export is recorded in
        `export_error` and re-raised; status and report are left as they were.
        """
        if self.status != AnalysisStatus.COMPLETED or self.report is None:
            raise WorkflowError("No completed report to export.")

        self.export_error = None
        try:
            return export_dossier(self.report, session, output_dir)
        except RenderExportError as e:
            self.export_error = str(e)
            raise
