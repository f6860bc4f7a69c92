import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from . import services
from .schemas import (
    PDF_MEDIA_TYPE,
    AnalysisStatus,
    AnalyzedFile,
    DocumentAnalysis,
    IncomingFile,
    OutlierReport,
    Project,
    ThematicStatus,
)
from .store import ProjectStore

logger = logging.getLogger(__name__)

Analyzer = Callable[[bytes, str], Awaitable[DocumentAnalysis]]
Detector = Callable[[list[AnalyzedFile]], Awaitable[OutlierReport]]

INTERRUPTED_ERROR = "Analysis was interrupted before it finished. Re-upload the file to analyze it again."
MISSING_CONTENT_ERROR = "File content is no longer available. Re-upload the file to analyze it."


class AnalysisQueue:
    """Sequential analysis queue bound to the active project.

    One document is analyzed at a time, in stored order. Once the queue is
    drained and enough documents are completed, a single cohesion check stamps
    every completed file as aligned or outlier and records the project theme.
    Adding files clears the theme so the check runs again after they settle.
    """

    def __init__(
        self,
        store: ProjectStore,
        analyzer: Analyzer | None = None,
        detector: Detector | None = None,
    ) -> None:
        self.store = store
        self.active_project_id: str | None = None
        self.is_processing = False
        self._analyzer = analyzer or services.analyze_document
        self._detector = detector or services.detect_outliers
        self._in_flight_file_id: str | None = None
        self._detecting: set[str] = set()
        self._generations: dict[str, int] = {}

    @property
    def project(self) -> Project | None:
        if self.active_project_id is None:
            return None
        return self.store.get(self.active_project_id)

    def activate(self, project_id: str) -> Project:
        project = self.store.get(project_id)
        if project is None:
            raise KeyError(project_id)
        self.active_project_id = project_id

        stale = [
            f.id
            for f in project.files
            if f.status == AnalysisStatus.PROCESSING and f.id != self._in_flight_file_id
        ]
        for file_id in stale:
            logger.warning("Marking interrupted file %s in project %s as failed", file_id, project_id)
            self._update_file(project_id, file_id, status=AnalysisStatus.ERROR, result=None, error=INTERRUPTED_ERROR)
        return self.store.get(project_id)

    def deactivate(self) -> None:
        self.active_project_id = None

    def add_files(self, uploads: Iterable[IncomingFile]) -> list[AnalyzedFile]:
        project = self.project
        if project is None:
            raise RuntimeError("No active project")

        added = [
            AnalyzedFile(
                filename=upload.filename,
                media_type=upload.media_type,
                size_bytes=len(upload.content),
                page_count=services.count_pdf_pages(upload.content),
                content=upload.content,
            )
            for upload in uploads
            if upload.media_type == PDF_MEDIA_TYPE
        ]
        if not added:
            return []

        self._generations[project.id] = self._generations.get(project.id, 0) + 1
        self.store.put(project.model_copy(update={"files": [*project.files, *added], "theme_description": None}))
        logger.info("Queued %d file(s) in project %s", len(added), project.id)
        return added

    async def process_queue(self) -> None:
        while True:
            project = self.project
            if project is None or self.is_processing:
                return

            pending = project.next_pending()
            if pending is not None:
                await self._process_file(project.id, pending)
                continue

            if not await self._check_cohesion(project):
                return

    async def recheck_cohesion(self) -> None:
        project = self.project
        if project is None:
            raise RuntimeError("No active project")
        if project.theme_description is not None:
            self.store.put(project.model_copy(update={"theme_description": None}))
        await self.process_queue()

    async def _process_file(self, project_id: str, pending: AnalyzedFile) -> None:
        self.is_processing = True
        self._in_flight_file_id = pending.id
        try:
            self._update_file(project_id, pending.id, status=AnalysisStatus.PROCESSING)
            logger.info("Analyzing %s (%s)", pending.filename, pending.id)
            try:
                if pending.content is None:
                    raise services.ServiceError(MISSING_CONTENT_ERROR)
                result = await self._analyzer(pending.content, pending.filename)
            except Exception as exc:
                logger.error("Analysis failed for %s: %s", pending.filename, exc)
                message = str(exc) or exc.__class__.__name__
                self._update_file(project_id, pending.id, status=AnalysisStatus.ERROR, result=None, error=message)
            else:
                self._update_file(project_id, pending.id, status=AnalysisStatus.COMPLETED, result=result, error=None)
        finally:
            self.is_processing = False
            self._in_flight_file_id = None

    async def _check_cohesion(self, project: Project) -> bool:
        """Run the cohesion check if it is due. Returns True when the active project must be re-evaluated."""
        completed = project.completed_files()
        if project.id in self._detecting or project.theme_description is not None:
            return False
        if len(completed) < services.OUTLIER_MIN_FILES:
            return False

        generation = self._generations.get(project.id, 0)
        self._detecting.add(project.id)
        try:
            report = await self._detector(completed)
        except Exception:
            logger.exception("Cohesion check failed for project %s", project.id)
            return False
        finally:
            self._detecting.discard(project.id)

        if self._generations.get(project.id, 0) != generation:
            logger.info("Files were added to project %s during the cohesion check; discarding result", project.id)
            return True

        self._apply_cohesion(project.id, report, {f.id for f in completed})
        return True

    def _apply_cohesion(self, project_id: str, report: OutlierReport, screened: set[str]) -> None:
        project = self.store.get(project_id)
        if project is None:
            return
        reasons = {o.filename: o.reason for o in report.outliers}
        files = []
        for f in project.files:
            if f.id not in screened:
                files.append(f)
            elif f.filename in reasons:
                files.append(f.model_copy(update={"thematic_status": ThematicStatus.OUTLIER, "outlier_reason": reasons[f.filename]}))
            else:
                files.append(f.model_copy(update={"thematic_status": ThematicStatus.ALIGNED, "outlier_reason": None}))
        self.store.put(project.model_copy(update={"files": files, "theme_description": report.main_theme}))
        logger.info(
            "Cohesion check for project %s: theme %r, %d outlier(s)",
            project_id,
            report.main_theme,
            len(reasons),
        )

    def _update_file(self, project_id: str, file_id: str, **changes: Any) -> None:
        project = self.store.get(project_id)
        if project is None:
            return
        files = [f.model_copy(update=changes) if f.id == file_id else f for f in project.files]
        self.store.put(project.model_copy(update={"files": files}))
