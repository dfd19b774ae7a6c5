from __future__ import annotations

import hashlib
import logging
import sqlite3
import threading
import weakref
from pathlib import Path

from tarjadb.core.errors import ImportFolderError
from tarjadb.core.models import FileResult, ImportSummary, IntegrityViolation
from tarjadb.data import schema
from tarjadb.data.db import Db
from tarjadb.importer.resolver import NaturalKeyResolver
from tarjadb.importer.session import ImportSession
from tarjadb.importer.tables import FAILED_PREFIX, importer_for

logger = logging.getLogger(__name__)

ORDER_FILE = "import_order.txt"

# Catalogs first, then the tables that reference them.
DEFAULT_ORDER: tuple[str, ...] = (
    "CODIGO_SAG.csv",
    "Cuartel.csv",
    "Embalaje.csv",
    "Etiqueta.csv",
    "Logo.csv",
    "PLU.csv",
    "PROCEDENCIA_PROD.csv",
    "PRODUCTOR.csv",
    "Variedad.csv",
    "VARIEDAD_PLU.csv",
    "CODIGOS_TRAZABILIDAD.csv",
)

# Entries go away once no run holds the lock.
_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
_locks_guard = threading.Lock()


def _lock_for(db: Db) -> threading.Lock:
    key = str(db.path.resolve())
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _locks[key] = lock
        return lock


def _is_hashed(path: Path) -> bool:
    return path.is_file() and not path.name.upper().startswith(FAILED_PREFIX.upper())


def compute_folder_hash(folder: Path) -> str:
    """SHA-256 over the sorted file names and their contents.

    Generated ``FAILED_*`` diagnostics are left out so writing them does not change the hash.
    """
    digest = hashlib.sha256()
    for path in sorted((p for p in Path(folder).iterdir() if _is_hashed(p)), key=lambda p: p.name):
        digest.update(path.name.encode("utf-8"))
        digest.update(b"\0")
        digest.update(path.read_bytes())
        digest.update(b"\0")
    return digest.hexdigest()


def read_import_order(folder: Path) -> list[str]:
    """File names from ``import_order.txt``, or the default dependency order."""
    order_file = Path(folder) / ORDER_FILE
    if not order_file.is_file():
        return list(DEFAULT_ORDER)
    try:
        lines = order_file.read_text(encoding="utf-8-sig").splitlines()
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("No se pudo leer %s (%s); se usa el orden por defecto", order_file, exc)
        return list(DEFAULT_ORDER)
    names = [ln.strip() for ln in lines]
    return [n for n in names if n and not n.startswith("#")]


def check_integrity(con: sqlite3.Connection) -> list[IntegrityViolation]:
    violations: list[IntegrityViolation] = []
    for check in schema.INTEGRITY_CHECKS:
        count = con.execute(
            f"""
            SELECT COUNT(*)
            FROM "{check.table}" c
            LEFT JOIN "{check.parent_table}" p ON c."{check.column}" = p."{check.parent_column}"
            WHERE p."{check.parent_column}" IS NULL
            """
        ).fetchone()[0]
        if count:
            violation = IntegrityViolation(check.table, check.column, check.parent_table, int(count))
            logger.error("Integridad: %s", violation)
            violations.append(violation)
    return violations


class ImportOrchestrator:
    """Run one import of a CSV folder into ``db``."""

    def __init__(self, db: Db, folder: Path, *, force: bool = False):
        self.db = db
        self.folder = Path(folder)
        self.force = force

    def run(self) -> ImportSummary:
        if not self.folder.is_dir():
            raise ImportFolderError(f"Carpeta no encontrada: {self.folder}")

        with _lock_for(self.db):
            return self._run_locked()

    def _run_locked(self) -> ImportSummary:
        summary = ImportSummary(folder=str(self.folder.resolve()))
        folder_hash = compute_folder_hash(self.folder)
        summary.folder_hash = folder_hash

        with self.db.connect(autocommit=True) as con:
            stored = Db.get_metadata(con, schema.META_KEY_IMPORT_HASH)
            traz_rows = con.execute(f"SELECT COUNT(*) FROM {schema.TABLE_TRAZABILIDAD}").fetchone()[0]
            if not self.force and stored == folder_hash:
                if traz_rows:
                    logger.info("Importación omitida: sin cambios en %s", self.folder)
                    summary.skipped_unchanged = True
                    return summary
                logger.warning("Hash sin cambios pero %s está vacía; se reimporta", schema.TABLE_TRAZABILIDAD)

            con.execute("PRAGMA foreign_keys = OFF")
            try:
                summary.files = self._import_files(con)
                for table in schema.CATALOG_TABLES + (schema.TABLE_TRAZABILIDAD,):
                    schema.raise_sequence(con, table, schema.COL_ID, create=False)
            finally:
                try:
                    con.execute("PRAGMA foreign_keys = ON")
                except sqlite3.Error as exc:
                    logger.warning("No se pudo reactivar FK después de importar: %s", exc)

            summary.violations = check_integrity(con)
            if not summary.violations and not summary.failed_files:
                Db.set_metadata(con, schema.META_KEY_IMPORT_HASH, folder_hash)
                summary.hash_committed = True
            else:
                logger.warning("No se actualiza el hash de importación (violaciones o archivos fallidos)")

        self.db.log_audit(
            "importacion",
            f"Importación desde {self.folder}",
            f"insertados={summary.total_inserted}; fallidos={len(summary.failed_files)}; "
            f"violaciones={len(summary.violations)}; hash_actualizado={summary.hash_committed}",
        )
        return summary

    def _import_files(self, con: sqlite3.Connection) -> list[FileResult]:
        resolver = NaturalKeyResolver(con, ImportSession())
        on_disk = {p.name.upper(): p for p in self.folder.iterdir() if p.is_file()}

        results: list[FileResult] = []
        for name in read_import_order(self.folder):
            path = on_disk.get(name.upper())
            if path is None:
                logger.info("Archivo no encontrado en carpeta: %s", name)
                results.append(FileResult.not_processed(name, f"Archivo no encontrado en carpeta: {name}"))
                continue
            importer_cls = importer_for(name)
            if importer_cls is None:
                logger.warning("Archivo no manejado: %s", name)
                results.append(FileResult.not_processed(path.name, "Archivo no manejado"))
                continue
            logger.info("Importando %s", path.name)
            results.append(importer_cls(resolver).import_file(con, path))
        logger.info("Ids CSV registrados en la sesión: %s", resolver.session.mapping_count())
        return results


def run_import(db: Db, folder: Path, *, force: bool = False) -> str:
    """Import the CSV folder into ``db`` and return the human-readable summary."""
    return ImportOrchestrator(db, folder, force=force).run().render()
