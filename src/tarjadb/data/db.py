from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path

from tarjadb.core.errors import SchemaVersionError
from tarjadb.core.models import AuditEntry, MigrationOutcome
from tarjadb.data import schema

logger = logging.getLogger(__name__)


class Db:
    def __init__(self, path: Path, *, backup_dir: Path | None = None):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.backup_dir = Path(backup_dir) if backup_dir is not None else self.path.parent

    def _open(self, *, autocommit: bool = False) -> sqlite3.Connection:
        con = sqlite3.connect(self.path, timeout=20.0, isolation_level=None if autocommit else "")
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys=ON;")
        return con

    @contextmanager
    def connect(self, *, autocommit: bool = False):
        """Yield a connection with FK enforcement on.

        With ``autocommit=True`` the caller drives BEGIN/COMMIT itself; this is what the
        importer and the migrator use, because PRAGMA foreign_keys is a no-op inside an
        open transaction.
        """
        con = self._open(autocommit=autocommit)
        try:
            yield con
            if not autocommit:
                con.commit()
        except Exception:
            if con.in_transaction:
                con.rollback()
            raise
        finally:
            con.close()

    def ensure_schema(self) -> MigrationOutcome:
        """Create the schema on a new file, or bring an older one up to SCHEMA_VERSION."""
        from tarjadb.data.migrator import SchemaMigrator

        con = self._open(autocommit=True)
        try:
            con.execute("PRAGMA journal_mode=WAL;")
            stored = int(con.execute("PRAGMA user_version").fetchone()[0])
            existing = schema.user_tables(con)

            if not existing:
                schema.create_all_tables(con)
                con.execute(f"PRAGMA user_version = {schema.SCHEMA_VERSION}")
                logger.info("Esquema creado en %s (versión %s)", self.path, schema.SCHEMA_VERSION)
                return MigrationOutcome(0, schema.SCHEMA_VERSION, created=True)

            if stored == 0:
                # Files from the first app releases never set user_version.
                stored = 1
            if stored > schema.SCHEMA_VERSION:
                raise SchemaVersionError(stored, schema.SCHEMA_VERSION)
            if stored == schema.SCHEMA_VERSION:
                # Tables added without a version bump (e.g. AUDIT_LOG) are created in place.
                schema.create_all_tables(con, if_not_exists=True)
                return MigrationOutcome(stored, stored)
        finally:
            con.close()

        return SchemaMigrator(self).upgrade(stored, schema.SCHEMA_VERSION)

    def force_migrate_preserve_ids(self) -> MigrationOutcome:
        """Run the rename-swap migration on the current file regardless of its version."""
        from tarjadb.data.migrator import SchemaMigrator

        with self.connect() as con:
            version = int(con.execute("PRAGMA user_version").fetchone()[0])
        return SchemaMigrator(self).upgrade(version or 1, schema.SCHEMA_VERSION)

    def recreate_empty(self) -> None:
        """Delete the database file (and WAL/journal siblings) and create a fresh schema."""
        self.delete_files()
        con = self._open(autocommit=True)
        try:
            con.execute("PRAGMA journal_mode=WAL;")
            schema.create_all_tables(con)
            con.execute(f"PRAGMA user_version = {schema.SCHEMA_VERSION}")
        finally:
            con.close()

    def delete_files(self) -> None:
        for suffix in ("", "-wal", "-shm", "-journal"):
            Path(f"{self.path}{suffix}").unlink(missing_ok=True)

    # ---------- Metadata ----------

    @staticmethod
    def get_metadata(con: sqlite3.Connection, key: str) -> str | None:
        row = con.execute(
            f"SELECT meta_value FROM {schema.TABLE_METADATA} WHERE meta_key = ?", (key,)
        ).fetchone()
        return row[0] if row else None

    @staticmethod
    def set_metadata(con: sqlite3.Connection, key: str, value: str) -> None:
        con.execute(
            f"""
            INSERT INTO {schema.TABLE_METADATA} (meta_key, meta_value) VALUES (?, ?)
            ON CONFLICT(meta_key) DO UPDATE SET meta_value = excluded.meta_value
            """,
            (key, value),
        )

    def schema_version(self) -> int:
        with self.connect() as con:
            return int(con.execute("PRAGMA user_version").fetchone()[0])

    def count_rows(self, table: str) -> int:
        if table not in schema.TABLES_BY_NAME:
            raise ValueError("Tabla no permitida")
        with self.connect() as con:
            return int(con.execute(f'SELECT COUNT(*) FROM "{table}"').fetchone()[0])

    # ---------- Audit ----------

    def log_audit(self, category: str, message: str, details: str | None = None) -> None:
        """Record an import/migration event in the audit log."""
        try:
            with self.connect() as con:
                con.execute(
                    f"INSERT INTO {schema.TABLE_AUDIT_LOG} (category, message, details) VALUES (?, ?, ?)",
                    (category, message, details),
                )
        except sqlite3.Error:
            # Audit is secondary; the caller's result already carries the outcome.
            logger.exception("Failed to write audit log")

    def get_recent_audit_entries(self, limit: int = 100) -> list[AuditEntry]:
        with self.connect() as con:
            rows = con.execute(
                f"SELECT * FROM {schema.TABLE_AUDIT_LOG} ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
            return [
                AuditEntry(
                    id=row["id"],
                    timestamp=row["timestamp"],
                    category=row["category"],
                    message=row["message"],
                    details=row["details"],
                )
                for row in rows
            ]
