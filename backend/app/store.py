import logging

from pydantic import TypeAdapter, ValidationError

from . import db
from .schemas import ChatMessage, Project

logger = logging.getLogger(__name__)

PROJECTS_KEY = "readforme_projects_local_v1"
THEME_KEY = "readforme_theme"

SORT_OPTIONS = ("date_desc", "date_asc", "files_desc")

_projects_adapter = TypeAdapter(list[Project])


class ProjectStore:
    """In-memory project collection mirrored into the key-value table.

    Projects are treated as immutable snapshots: callers build a new ``Project``
    with ``model_copy`` and hand it to ``put``, which replaces the stored entry
    and persists the whole collection.
    """

    def __init__(self) -> None:
        self._projects: list[Project] = []
        self._dark_mode = True

    def load(self) -> None:
        try:
            raw = db.read_value(PROJECTS_KEY)
            self._projects = _projects_adapter.validate_json(raw) if raw else []
        except (ValidationError, ValueError):
            logger.exception("Failed to load projects; starting with an empty collection")
            self._projects = []

        try:
            saved = db.from_json(db.read_value(THEME_KEY))
        except ValueError:
            logger.exception("Failed to load theme preference")
            saved = None
        self._dark_mode = saved if isinstance(saved, bool) else True
        logger.info("Loaded %d project(s)", len(self._projects))

    def list_projects(self, search: str | None = None, sort: str = "date_desc") -> list[Project]:
        if sort not in SORT_OPTIONS:
            raise ValueError(f"Unknown sort option: {sort}")
        result = list(self._projects)
        if search:
            needle = search.lower()
            result = [p for p in result if needle in p.nickname.lower()]
        if sort == "date_desc":
            result.sort(key=lambda p: p.created_at, reverse=True)
        elif sort == "date_asc":
            result.sort(key=lambda p: p.created_at)
        else:
            result.sort(key=lambda p: len(p.files), reverse=True)
        return result

    def get(self, project_id: str) -> Project | None:
        return next((p for p in self._projects if p.id == project_id), None)

    def create(self, nickname: str) -> Project:
        return self.put(Project(nickname=nickname))

    def put(self, project: Project) -> Project:
        for idx, existing in enumerate(self._projects):
            if existing.id == project.id:
                self._projects[idx] = project
                break
        else:
            self._projects.append(project)
        self._persist()
        return project

    def append_message(self, project_id: str, message: ChatMessage) -> Project:
        project = self.get(project_id)
        if project is None:
            raise KeyError(project_id)
        return self.put(project.model_copy(update={"chat_history": [*project.chat_history, message]}))

    @property
    def dark_mode(self) -> bool:
        return self._dark_mode

    def set_dark_mode(self, value: bool) -> None:
        self._dark_mode = value
        db.write_value(THEME_KEY, db.to_json(value))

    def _persist(self) -> None:
        # Empty collections are never written.
        if not self._projects:
            return
        db.write_value(PROJECTS_KEY, _projects_adapter.dump_json(self._projects).decode("utf-8"))
