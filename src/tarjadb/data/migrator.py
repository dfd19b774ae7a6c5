"""Rename-swap schema migration.

Every table is rebuilt as ``<name>_new`` with the current DDL, filled from the old table,
and swapped in under the original name. Surrogate ids are copied as-is, so rows keep
their identity across versions. If anything fails the database file is discarded and
an empty schema is created; the pre-migration backup is the only copy of the old data.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from pathlib import Path
from typing import TYPE_CHECKING

from tarjadb.core.errors import MigrationError
from tarjadb.core.models import MigrationOutcome
from tarjadb.data import schema

if TYPE_CHECKING:
    from tarjadb.data.db import Db

logger = logging.getLogger(__name__)


class SchemaMigrator:
    def __init__(self, db: Db, tables: tuple[schema.Table, ...] = schema.TABLES) -> None:
        self.db = db
        self.tables = tables

    def upgrade(self, old_version: int, new_version: int) -> MigrationOutcome:
        logger.info("Migrando esquema %s -> %s (%s)", old_version, new_version, self.db.path)
        backup_path = self.backup_database()

        con = self.db._open(autocommit=True)
        try:
            self.migrate_preserve_ids(con)
            con.execute(f"PRAGMA user_version = {new_version}")
        except Exception as exc:
            logger.error(
                "Migración %s -> %s falló (%s). Se DESCARTAN los datos y se recrea el esquema vacío. "
                "Backup: %s",
                old_version,
                new_version,
                exc,
                backup_path or "no disponible",
                exc_info=True,
            )
            con.close()
            self.db.recreate_empty()
            self.db.log_audit(
                "migracion",
                f"Fallback destructivo en migración {old_version} -> {new_version}",
                f"error={exc}; backup={backup_path}",
            )
            return MigrationOutcome(
                old_version,
                new_version,
                fallback=True,
                backup_path=str(backup_path) if backup_path else None,
                error=str(exc),
            )
        finally:
            con.close()

        self.db.log_audit(
            "migracion",
            f"Esquema migrado {old_version} -> {new_version}",
            f"backup={backup_path}",
        )
        return MigrationOutcome(
            old_version,
            new_version,
            migrated=True,
            backup_path=str(backup_path) if backup_path else None,
        )

    def backup_database(self) -> Path | None:
        """Copy the live database next to the configured backup dir. Failure is only logged."""
        dest = self.db.backup_dir / f"{self.db.path.stem}_backup_{int(time.time() * 1000)}.db"
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            src = sqlite3.connect(self.db.path)
            try:
                dst = sqlite3.connect(dest)
                try:
                    src.backup(dst)
                finally:
                    dst.close()
            finally:
                src.close()
        except (sqlite3.Error, OSError) as exc:
            logger.warning("No se pudo crear backup de la BD antes de migrar: %s", exc)
            return None
        logger.info("Backup de la BD creado en: %s", dest)
        return dest

    def migrate_preserve_ids(self, con: sqlite3.Connection) -> None:
        # PRAGMA foreign_keys is ignored inside a transaction: toggle it outside BEGIN/COMMIT.
        con.execute("PRAGMA foreign_keys = OFF")
        logger.debug("Foreign key constraints DISABLED for migration")
        try:
            con.execute("BEGIN")
            for table in self.tables:
                self._swap_table(con, table)
            for table in self.tables:
                if table.autoincrement:
                    schema.raise_sequence(con, table.name, table.id_column)
            con.execute("COMMIT")
        finally:
            try:
                con.execute("PRAGMA foreign_keys = ON")
                logger.debug("Foreign key constraints ENABLED after migration")
            except sqlite3.Error as exc:
                logger.warning("No se pudo reactivar FK tras migrar: %s", exc)

    def _swap_table(self, con: sqlite3.Connection, table: schema.Table) -> None:
        logger.debug("Migrando tabla %s", table.name)
        shadow = f"{table.name}_new"
        self._run_sql(con, f'DROP TABLE IF EXISTS "{shadow}"', table)
        self._run_sql(con, table.create_sql(shadow), table)

        if schema.table_exists(con, table.name):
            self._copy_rows(con, table, shadow)
            self._run_sql(con, f'DROP TABLE "{table.name}"', table)

        self._run_sql(con, f'ALTER TABLE "{shadow}" RENAME TO "{table.name}"', table)

    def _copy_rows(self, con: sqlite3.Connection, table: schema.Table, shadow: str) -> None:
        """Copy every old row into ``shadow``, or raise MigrationError if any would be lost.

        NULLs in columns that are now NOT NULL take the column's fill value, and new NOT NULL
        columns missing from the old table are filled the same way.
        """
        old_cols = {c.lower() for c in schema.table_columns(con, table.name)}
        targets: list[str] = []
        exprs: list[str] = []
        for col in table.column_names:
            fill = table.fill_value(col) if table.not_null(col) else None
            if col.lower() in old_cols:
                targets.append(col)
                if fill is None:
                    exprs.append(f'"{col}"')
                    continue
                exprs.append(f'COALESCE("{col}", {fill})')
                nulls = con.execute(f'SELECT COUNT(*) FROM "{table.name}" WHERE "{col}" IS NULL').fetchone()[0]
                if nulls:
                    logger.warning("%s: %s fila(s) con %s NULL se migran con %s", table.name, nulls, col, fill)
            elif fill is not None:
                targets.append(col)
                exprs.append(fill)

        source_rows = con.execute(f'SELECT COUNT(*) FROM "{table.name}"').fetchone()[0]
        if targets:
            cols = ", ".join(f'"{c}"' for c in targets)
            self._run_sql(
                con,
                f'INSERT OR IGNORE INTO "{shadow}" ({cols}) '
                f'SELECT {", ".join(exprs)} FROM "{table.name}"',
                table,
            )
        copied = con.execute(f'SELECT COUNT(*) FROM "{shadow}"').fetchone()[0]
        if copied != source_rows:
            logger.error("%s: %s de %s filas no se pudieron migrar", table.name, source_rows - copied, source_rows)
            raise MigrationError(
                f"{table.name}: {source_rows - copied} de {source_rows} fila(s) no se pudieron migrar",
                table=table.name,
            )

    @staticmethod
    def _run_sql(con: sqlite3.Connection, sql: str, table: schema.Table) -> None:
        logger.debug("Ejecutando SQL de migración: %s", sql)
        try:
            con.execute(sql)
        except sqlite3.Error as exc:
            logger.error("Fallo al ejecutar SQL en migración: %s", sql)
            raise MigrationError(f"{table.name}: {exc}", table=table.name) from exc
