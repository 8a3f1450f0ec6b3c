"""
Task storage backend (SQLite).

Owns the canonical task collection of every project. A full-replace sync
runs in a single IMMEDIATE transaction, so readers (WAL mode) never
observe a half-replaced collection.
"""
import json
import logging
import sqlite3
import uuid
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

from .errors import NotFoundError, StorageError
from .schema import (
    Project,
    Task,
    TaskStatus,
    format_timestamp,
    make_slug,
    normalize_tags,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_DB = Path.home() / ".local" / "share" / "taskdash" / "taskdash.db"


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with FK enforcement and WAL mode."""
    conn = sqlite3.connect(db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


class TaskStore:
    """SQLite-backed store for projects and their tasks."""

    def __init__(self, db_path: Optional[str] = None):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(DEFAULT_DB)
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with self._transaction("init schema") as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    slug TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    description TEXT,
                    created_at TEXT NOT NULL,
                    last_sync_at TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    project_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    active_form TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    tags TEXT,  -- JSON list
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    position INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (project_id, id),
                    FOREIGN KEY (project_id) REFERENCES projects(id)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_tasks_position ON tasks(project_id, position)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_projects_sync ON projects(last_sync_at, created_at)"
            )

    @contextmanager
    def _transaction(self, what: str, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """
        Yield a connection inside a transaction; commit on success.

        Any sqlite3.Error rolls back and is re-raised as StorageError, so
        the previous committed state stays authoritative.
        """
        try:
            with closing(_connect(self.db_path)) as conn:
                with conn:
                    if immediate:
                        conn.execute("BEGIN IMMEDIATE")
                    yield conn
        except sqlite3.Error as e:
            logger.error(f"Storage error during {what}: {e}")
            raise StorageError(f"Storage failure during {what}") from e

    # ── Projects ─────────────────────────────────────────────────────────────

    def create_project(self, name: str, description: Optional[str] = None) -> Project:
        """Insert a project with a generated slug (name + random suffix)."""
        project = Project(
            id=str(uuid.uuid4()),
            slug=make_slug(name),
            name=name,
            description=description,
        )
        self._insert_project(project)
        logger.info(f"Created project {project.slug} ({project.id})")
        return project

    def ensure_project(self, slug: str, name: str) -> Project:
        """Return the project with this exact slug, creating it if missing."""
        existing = self.get_project_by_slug(slug)
        if existing:
            return existing
        project = Project(id=str(uuid.uuid4()), slug=slug, name=name)
        self._insert_project(project)
        logger.info(f"Created project {slug} for file-backed sync")
        return project

    def _insert_project(self, project: Project) -> None:
        with self._transaction(f"create project {project.slug}") as conn:
            conn.execute(
                """
                INSERT INTO projects (id, slug, name, description, created_at, last_sync_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    project.id,
                    project.slug,
                    project.name,
                    project.description,
                    format_timestamp(project.created_at),
                    format_timestamp(project.last_sync_at),
                ),
            )

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._transaction(f"get project {project_id}") as conn:
            row = conn.execute(
                "SELECT * FROM projects WHERE id = ?", (project_id,)
            ).fetchone()
        return self._row_to_project(row) if row else None

    def get_project_by_slug(self, slug: str) -> Optional[Project]:
        with self._transaction(f"get project {slug}") as conn:
            row = conn.execute(
                "SELECT * FROM projects WHERE slug = ?", (slug,)
            ).fetchone()
        return self._row_to_project(row) if row else None

    def require_project(self, project_id: str) -> Project:
        project = self.get_project(project_id)
        if project is None:
            raise NotFoundError("project", project_id)
        return project

    def list_projects(self, search: str = "", limit: int = 20) -> List[Project]:
        """Most recently synced first (never-synced last), then newest first."""
        query = "SELECT * FROM projects"
        params: list = []
        if search:
            escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            pattern = f"%{escaped}%"
            query += " WHERE name LIKE ? ESCAPE '\\' OR description LIKE ? ESCAPE '\\'"
            params.extend([pattern, pattern])
        query += """
            ORDER BY last_sync_at IS NULL, last_sync_at DESC, created_at DESC
            LIMIT ?
        """
        params.append(limit)
        with self._transaction("list projects") as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_project(r) for r in rows]

    # ── Tasks ────────────────────────────────────────────────────────────────

    def replace_all(self, project_id: str, tasks: Sequence[Task]) -> Tuple[int, int]:
        """
        Make the project's collection exactly `tasks`, in that order.

        Deletes every stored task whose id is absent, upserts the rest
        with position = index, and stamps the project's last_sync_at.

        Returns:
            (synced, deleted)
        """
        incoming = [t.id for t in tasks]
        now = format_timestamp(utc_now())

        with self._transaction(f"replace tasks of {project_id}", immediate=True) as conn:
            if not conn.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,)).fetchone():
                raise NotFoundError("project", project_id)

            existing = {
                r["id"] for r in conn.execute(
                    "SELECT id FROM tasks WHERE project_id = ?", (project_id,)
                )
            }
            to_delete = sorted(existing - set(incoming))
            conn.executemany(
                "DELETE FROM tasks WHERE project_id = ? AND id = ?",
                [(project_id, task_id) for task_id in to_delete],
            )

            conn.executemany(
                """
                INSERT INTO tasks
                (project_id, id, content, active_form, status, tags,
                 created_at, updated_at, position)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(project_id, id) DO UPDATE SET
                    content = excluded.content,
                    active_form = excluded.active_form,
                    status = excluded.status,
                    tags = excluded.tags,
                    created_at = excluded.created_at,
                    updated_at = excluded.updated_at,
                    position = excluded.position
                """,
                [
                    (
                        project_id,
                        t.id,
                        t.content,
                        t.active_form,
                        t.status.value,
                        json.dumps(normalize_tags(t.tags)),
                        format_timestamp(t.created_at),
                        format_timestamp(t.updated_at),
                        index,
                    )
                    for index, t in enumerate(tasks)
                ],
            )
            conn.execute(
                "UPDATE projects SET last_sync_at = ? WHERE id = ?", (now, project_id)
            )

        logger.info(
            f"Replaced tasks of {project_id}: synced={len(incoming)} deleted={len(to_delete)}"
        )
        return len(incoming), len(to_delete)

    def update_status(self, project_id: str, task_id: str, new_status: TaskStatus) -> Task:
        """Change only status and updated_at. Position and last_sync_at stay."""
        now = format_timestamp(utc_now())
        with self._transaction(f"move task {task_id}", immediate=True) as conn:
            cur = conn.execute(
                "UPDATE tasks SET status = ?, updated_at = ? WHERE project_id = ? AND id = ?",
                (new_status.value, now, project_id, task_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError("task", task_id)
            row = conn.execute(
                "SELECT * FROM tasks WHERE project_id = ? AND id = ?",
                (project_id, task_id),
            ).fetchone()
        return self._row_to_task(row)

    def list(self, project_id: str) -> List[Task]:
        """All tasks of a project by position ascending."""
        with self._transaction(f"list tasks of {project_id}") as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE project_id = ? ORDER BY position ASC, id ASC",
                (project_id,),
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def count_projects(self) -> int:
        with self._transaction("count projects") as conn:
            return conn.execute("SELECT COUNT(*) FROM projects").fetchone()[0]

    # ── Row mapping ──────────────────────────────────────────────────────────

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        """Convert a database row to a Task object."""
        tags = []
        if row["tags"]:
            try:
                tags = json.loads(row["tags"])
            except (json.JSONDecodeError, TypeError):
                tags = []
        return Task(
            id=row["id"],
            content=row["content"],
            active_form=row["active_form"],
            status=TaskStatus(row["status"]),
            tags=tags,
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            position=row["position"],
            project_id=row["project_id"],
        )

    def _row_to_project(self, row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"],
            slug=row["slug"],
            name=row["name"],
            description=row["description"],
            created_at=parse_timestamp(row["created_at"]),
            last_sync_at=parse_timestamp(row["last_sync_at"]) if row["last_sync_at"] else None,
        )
