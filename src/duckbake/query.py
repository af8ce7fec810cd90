"""Concrete implementations for the analytical query backend."""

import asyncio
import logging
import re
import sqlite3
import time
from abc import ABC, abstractmethod
from contextlib import closing
from pathlib import Path
from typing import List, Optional, Union

from .exceptions import ProjectNotFound, QueryError
from .models import ColumnInfo, ProjectContext, QueryResult, TableContext, TableInfo

logger = logging.getLogger(__name__)

INTERNAL_PREFIX = "_duckbake_"
_PROJECT_ID = re.compile(r"[\w][\w.-]*")


class Query(ABC):
    """Interface for running SQL against a project's data."""

    dialect: str = "SQL"

    @abstractmethod
    async def run_query(self, project_id: str, sql: str) -> QueryResult:
        """Executes ``sql`` and returns its rows. Raises ``QueryError``."""
        pass

    @abstractmethod
    async def get_project_context(self, project_id: str) -> ProjectContext:
        """Describes every user table: columns, row count and sample rows."""
        pass

    @abstractmethod
    async def list_tables(self, project_id: str) -> List[TableInfo]:
        """Lists user tables with their sizes."""
        pass


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


class SQLite(Query):
    """One SQLite database file per project.

    Parameters
    ----------
    data_dir : str or Path, optional
        Directory holding ``<project_id>.db`` files. Defaults to the
        ``data_dir`` setting.
    sample_rows : int, optional
        Rows per table included in the project context.
    """

    dialect = "SQLite"

    def __init__(
        self,
        data_dir: Optional[Union[str, Path]] = None,
        sample_rows: Optional[int] = None,
    ):
        from .config import get_settings

        settings = get_settings()
        self.data_dir = Path(data_dir) if data_dir else settings.data_dir
        self.sample_rows = settings.sample_rows if sample_rows is None else sample_rows
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def database_path(self, project_id: str) -> Path:
        if not _PROJECT_ID.fullmatch(project_id or ""):
            raise ProjectNotFound(project_id)
        return self.data_dir / f"{project_id}.db"

    def _connect(self, project_id: str, **kwargs) -> sqlite3.Connection:
        return sqlite3.connect(self.database_path(project_id), **kwargs)

    def _table_names(self, conn) -> List[str]:
        rows = conn.execute(
            """
            SELECT name FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite\\_%' ESCAPE '\\'
              AND name NOT LIKE ? ESCAPE '\\'
            ORDER BY name
            """,
            (INTERNAL_PREFIX.replace("_", "\\_") + "%",),
        ).fetchall()
        return [row[0] for row in rows]

    def _execute(self, conn: sqlite3.Connection, sql: str) -> QueryResult:
        start = time.perf_counter()
        try:
            with conn:
                cursor = conn.execute(sql)
                columns = [d[0] for d in cursor.description or []]
                rows = [dict(zip(columns, row)) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise QueryError(str(e)) from e
        return QueryResult(
            columns=columns,
            rows=rows,
            row_count=len(rows),
            execution_time_ms=int((time.perf_counter() - start) * 1000),
        )

    def _project_context(self, project_id: str) -> ProjectContext:
        tables = []
        with closing(self._connect(project_id)) as conn:
            for name in self._table_names(conn):
                quoted = _quote(name)
                columns = [
                    ColumnInfo(
                        name=col_name,
                        data_type=col_type or "ANY",
                        nullable=not notnull,
                        is_primary_key=bool(pk),
                    )
                    for _, col_name, col_type, notnull, _, pk in conn.execute(
                        f"PRAGMA table_info({quoted})"
                    )
                ]
                row_count = conn.execute(f"SELECT COUNT(*) FROM {quoted}").fetchone()[0]
                sample = None
                if self.sample_rows:
                    cursor = conn.execute(
                        f"SELECT * FROM {quoted} LIMIT ?", (self.sample_rows,)
                    )
                    names = [d[0] for d in cursor.description]
                    sample = [dict(zip(names, row)) for row in cursor.fetchall()]
                tables.append(
                    TableContext(
                        name=name, row_count=row_count, columns=columns, sample_rows=sample
                    )
                )
        return ProjectContext(tables=tables)

    def _list_tables(self, project_id: str) -> List[TableInfo]:
        with closing(self._connect(project_id)) as conn:
            result = []
            for name in self._table_names(conn):
                quoted = _quote(name)
                row_count = conn.execute(f"SELECT COUNT(*) FROM {quoted}").fetchone()[0]
                column_count = len(conn.execute(f"PRAGMA table_info({quoted})").fetchall())
                result.append(
                    TableInfo(name=name, row_count=row_count, column_count=column_count)
                )
        return result

    async def run_query(self, project_id, sql):
        logger.debug("Running query for %s: %s", project_id, sql)
        try:
            conn = self._connect(project_id, check_same_thread=False)
        except sqlite3.Error as e:
            raise QueryError(str(e)) from e
        work = asyncio.ensure_future(asyncio.to_thread(self._execute, conn, sql))
        try:
            return await asyncio.shield(work)
        except asyncio.CancelledError:
            # The statement must stop before the caller runs anything else.
            conn.interrupt()
            await asyncio.gather(work, return_exceptions=True)
            logger.info("Interrupted query for %s", project_id)
            raise
        finally:
            conn.close()

    async def get_project_context(self, project_id):
        return await asyncio.to_thread(self._project_context, project_id)

    async def list_tables(self, project_id):
        return await asyncio.to_thread(self._list_tables, project_id)
