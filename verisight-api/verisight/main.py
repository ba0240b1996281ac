import asyncio
import logging
import shutil
import uuid
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, UploadFile, File, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from verisight.config import settings
from verisight.detection_vectors import align_findings
from verisight.errors import (
    AnalysisError,
    MediaLoadError,
    RateLimitedError,
    RenderExportError,
    VeriSightError,
    WorkflowError,
)
from verisight.forensic_engine import ForensicEngine
from verisight.schemas import AnomalyFinding, ForensicReport
from verisight.session import SessionContext, UNKNOWN_OPERATOR

logger = logging.getLogger("VeriSightApp")

app = FastAPI(title="VeriSight Forensic Backend")

# A single global engine: one active run at a time
global_forensic_engine = ForensicEngine()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _session(agent_id: Optional[str]) -> SessionContext:
    return SessionContext(operator_id=agent_id or UNKNOWN_OPERATOR)


def _http_error(error: VeriSightError) -> HTTPException:
    if isinstance(error, WorkflowError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, MediaLoadError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(error, RateLimitedError):
        code = status.HTTP_429_TOO_MANY_REQUESTS
    elif isinstance(error, AnalysisError):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(error))


@app.post("/analyze", response_model=ForensicReport)
async def analyze(file: UploadFile = File(...), x_agent_id: Optional[str] = Header(default=None)):
    logger.info(f"Received video upload: {file.filename}, content type: {file.content_type}")

    if not (file.content_type or "").startswith("video/"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only video files are allowed."
        )

    upload_dir = Path(settings.UPLOAD_DIR)
    upload_dir.mkdir(parents=True, exist_ok=True)
    target = upload_dir / f"upload_{uuid.uuid4().hex}{Path(file.filename or '').suffix}"
    with target.open("wb") as out:
        shutil.copyfileobj(file.file, out)

    engine = global_forensic_engine
    engine.select_file(target, owns_file=True)
    try:
        report = await engine.start_analysis(_session(x_agent_id))
    except VeriSightError as e:
        raise _http_error(e)

    if report is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Run was superseded by a newer upload.")
    return report


@app.get("/status")
async def get_status():
    return global_forensic_engine.snapshot()


@app.get("/report", response_model=ForensicReport)
async def get_report():
    report = global_forensic_engine.report
    if report is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No completed report.")
    return report


@app.get("/report/findings", response_model=list[AnomalyFinding])
async def get_findings():
    report = global_forensic_engine.report
    if report is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No completed report.")
    return align_findings(report.analysis)


@app.get("/report/dossier")
async def get_dossier(x_agent_id: Optional[str] = Header(default=None)):
    try:
        path = await asyncio.to_thread(global_forensic_engine.export_dossier, _session(x_agent_id))
    except (WorkflowError, RenderExportError) as e:
        raise _http_error(e)
    return FileResponse(path, media_type="application/pdf", filename=path.name)


@app.post("/reset")
async def reset():
    global_forensic_engine.reset()
    return global_forensic_engine.snapshot()


@app.websocket("/ws/status")
async def status_stream(websocket: WebSocket):
    await websocket.accept()
    logger.info("[VeriSight] Status stream connected.")

    engine = global_forensic_engine
    queue = engine.subscribe()

    async def receive_from_client():
        # Clients only listen; reading surfaces the disconnect
        while True:
            await websocket.receive_text()

    async def send_to_client():
        await websocket.send_json(engine.snapshot())
        while True:
            event = await queue.get()
            await websocket.send_json(event)

    task_receive = asyncio.create_task(receive_from_client())
    task_send = asyncio.create_task(send_to_client())
    try:
        done, pending = await asyncio.wait(
            [task_receive, task_send],
            return_when=asyncio.FIRST_COMPLETED
        )

        for task in done:
            try:
                task.result()
            except WebSocketDisconnect:
                logger.info("[VeriSight] Status stream disconnected.")
            except Exception as e:
                logger.error(f"Status stream task failed: {e}", exc_info=True)

        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
    finally:
        engine.unsubscribe(queue)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
