import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import BackgroundTasks, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from fastapi.staticfiles import StaticFiles

from . import services
from .analysis_queue import AnalysisQueue
from .db import init_db
from .report_pdf import render_report_pdf, report_filename
from .schemas import (
    AnalyzedFile,
    ChatMessage,
    ChatMessageIn,
    ChatReply,
    CohesionSummary,
    IncomingFile,
    OutlierEntry,
    Project,
    ProjectCreate,
    ProjectSummary,
    QueueStatus,
    ReportStructure,
    ThematicStatus,
    ThemePreference,
)
from .store import SORT_OPTIONS, ProjectStore

ROOT = Path(__file__).resolve().parents[2]
FRONTEND_DIR = Path(os.getenv("READFORME_FRONTEND_DIR", ROOT / "frontend"))

CHAT_ERROR_REPLY = "I encountered an error accessing the knowledge base. Please try again."

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    store = ProjectStore()
    store.load()
    app.state.store = store
    app.state.queue = AnalysisQueue(store)
    yield
    app.state.queue.deactivate()


app = FastAPI(title="ReadForMe API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _store() -> ProjectStore:
    return app.state.store


def _queue() -> AnalysisQueue:
    return app.state.queue


def _get_project(project_id: str) -> Project:
    project = _store().get(project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


def _activate(project_id: str) -> Project:
    try:
        return _queue().activate(project_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Project not found") from None


def _summary(project: Project) -> ProjectSummary:
    return ProjectSummary(
        id=project.id,
        nickname=project.nickname,
        created_at=project.created_at,
        file_count=len(project.files),
        theme_description=project.theme_description,
    )


@app.get("/api/projects", response_model=list[ProjectSummary])
def list_projects(search: str | None = None, sort: str = Query("date_desc")) -> list[ProjectSummary]:
    if sort not in SORT_OPTIONS:
        raise HTTPException(status_code=400, detail=f"sort must be one of: {', '.join(SORT_OPTIONS)}")
    return [_summary(p) for p in _store().list_projects(search=search, sort=sort)]


@app.post("/api/projects", response_model=Project)
def create_project(req: ProjectCreate) -> Project:
    project = _store().create(req.nickname)
    return _activate(project.id)


@app.get("/api/projects/{project_id}", response_model=Project)
def get_project(project_id: str) -> Project:
    return _get_project(project_id)


@app.post("/api/projects/{project_id}/open", response_model=Project)
def open_project(project_id: str, background_tasks: BackgroundTasks) -> Project:
    project = _activate(project_id)
    background_tasks.add_task(_queue().process_queue)
    return project


@app.post("/api/projects/{project_id}/files", response_model=list[AnalyzedFile])
async def upload_files(
    project_id: str,
    background_tasks: BackgroundTasks,
    files: list[UploadFile] = File(...),
) -> list[AnalyzedFile]:
    _activate(project_id)
    uploads = [
        IncomingFile(filename=f.filename or "document.pdf", media_type=f.content_type or "", content=await f.read())
        for f in files
    ]
    added = _queue().add_files(uploads)
    background_tasks.add_task(_queue().process_queue)
    return added


@app.get("/api/projects/{project_id}/files", response_model=list[AnalyzedFile])
def list_files(project_id: str) -> list[AnalyzedFile]:
    return _get_project(project_id).files


@app.get("/api/projects/{project_id}/cohesion", response_model=CohesionSummary)
def get_cohesion(project_id: str) -> CohesionSummary:
    project = _get_project(project_id)
    return CohesionSummary(
        theme_description=project.theme_description,
        aligned=[f.filename for f in project.files if f.thematic_status == ThematicStatus.ALIGNED],
        outliers=[
            OutlierEntry(filename=f.filename, reason=f.outlier_reason or "")
            for f in project.files
            if f.thematic_status == ThematicStatus.OUTLIER
        ],
        unscreened=sum(1 for f in project.files if f.thematic_status == ThematicStatus.UNKNOWN),
    )


@app.post("/api/projects/{project_id}/cohesion/recheck", response_model=CohesionSummary)
async def recheck_cohesion(project_id: str) -> CohesionSummary:
    _activate(project_id)
    await _queue().recheck_cohesion()
    return get_cohesion(project_id)


@app.get("/api/queue", response_model=QueueStatus)
def queue_status() -> QueueStatus:
    queue = _queue()
    project = queue.project
    return QueueStatus(
        active_project_id=queue.active_project_id,
        processing=queue.is_processing,
        counts=project.count_by_status() if project else {},
    )


@app.get("/api/projects/{project_id}/chat", response_model=list[ChatMessage])
def get_chat_messages(project_id: str) -> list[ChatMessage]:
    return _get_project(project_id).chat_history


@app.post("/api/projects/{project_id}/chat", response_model=ChatReply)
async def chat_with_project(project_id: str, req: ChatMessageIn) -> ChatReply:
    project = _activate(project_id)
    prior = project.chat_history
    question = ChatMessage(role="user", content=req.message)
    project = _store().append_message(project_id, question)

    try:
        reply = await services.ask_assistant(question.content, project.files, prior)
        answer = ChatMessage(role="ai", content=reply.text, citations=reply.sources or None)
    except Exception:
        logger.exception("Chat failed for project %s", project_id)
        answer = ChatMessage(role="ai", content=CHAT_ERROR_REPLY)

    _store().append_message(project_id, answer)
    return ChatReply(question=question, answer=answer)


async def _build_report(project: Project) -> ReportStructure:
    try:
        return await services.generate_report_structure(project.chat_history)
    except services.InsufficientHistoryError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Report generation failed for project %s", project.id)
        raise HTTPException(status_code=502, detail="Failed to generate report.") from exc


@app.post("/api/projects/{project_id}/report", response_model=ReportStructure)
async def generate_report(project_id: str) -> ReportStructure:
    return await _build_report(_get_project(project_id))


@app.post("/api/projects/{project_id}/report/pdf")
async def download_report(project_id: str) -> Response:
    project = _get_project(project_id)
    report = await _build_report(project)
    content = render_report_pdf(report, project.nickname)
    safe_filename = report_filename(project.nickname).replace('"', "").encode("ascii", "ignore").decode("ascii")
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{safe_filename}"'},
    )


@app.get("/api/preferences/theme", response_model=ThemePreference)
def get_theme() -> ThemePreference:
    return ThemePreference(dark_mode=_store().dark_mode)


@app.put("/api/preferences/theme", response_model=ThemePreference)
def set_theme(req: ThemePreference) -> ThemePreference:
    _store().set_dark_mode(req.dark_mode)
    return ThemePreference(dark_mode=_store().dark_mode)


if FRONTEND_DIR.is_dir():
    app.mount("/", StaticFiles(directory=FRONTEND_DIR, html=True), name="frontend")
