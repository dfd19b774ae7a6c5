from __future__ import annotations

import gc
import threading
from pathlib import Path

import pytest

from fixtures_csv import FULL_FOLDER, write_csv, write_folder
from tarjadb.core.errors import ImportFolderError
from tarjadb.data import schema
from tarjadb.data.db import Db
from tarjadb.importer import orchestrator
from tarjadb.importer.orchestrator import (
    DEFAULT_ORDER,
    ImportOrchestrator,
    compute_folder_hash,
    read_import_order,
    run_import,
)
from tarjadb.importer.tables import EmbalajeImporter, TableImporter


@pytest.fixture()
def db(tmp_path) -> Db:
    db = Db(Path(tmp_path) / "db" / "bd_tarja.db")
    db.ensure_schema()
    return db


@pytest.fixture()
def folder(tmp_path) -> Path:
    return write_folder(Path(tmp_path) / "import")


def stored_hash(db: Db) -> str | None:
    with db.connect() as con:
        return Db.get_metadata(con, schema.META_KEY_IMPORT_HASH)


def test_full_import_loads_every_table_and_commits_hash(db, folder):
    summary = ImportOrchestrator(db, folder).run()

    assert not summary.failed_files
    assert summary.violations == []
    assert summary.hash_committed
    assert stored_hash(db) == compute_folder_hash(folder)
    for table in schema.CATALOG_TABLES:
        assert db.count_rows(table) >= 1, table
    assert db.count_rows(schema.TABLE_VARIEDAD_PLU) == 2
    assert db.count_rows(schema.TABLE_TRAZABILIDAD) == 2

    text = summary.render()
    assert text.startswith("Resultado de importación desde:")
    assert "- Embalaje.csv: insertados=2, fusionados=0, omitidos=0" in text


def test_fuzzy_references_land_on_the_same_rows(db, folder):
    run_import(db, folder)

    with db.connect() as con:
        row = con.execute(
            """
            SELECT v.nom_variedad, c.nom_cuartel
            FROM CODIGOS_TRAZABILIDAD t
            JOIN Variedad v ON v.Id = t.variedad_id
            JOIN Cuartel c ON c.Id = t.cuartel_id
            WHERE t.Id = 2
            """
        ).fetchone()
    assert tuple(row) == ("Lapins", "Cuartel Sur")


def test_second_run_on_unchanged_folder_does_no_work(db, folder, monkeypatch):
    run_import(db, folder)

    def fail(*args, **kwargs):
        raise AssertionError("no debería importar")

    monkeypatch.setattr(TableImporter, "import_file", fail)
    audit_before = len(db.get_recent_audit_entries())

    summary = ImportOrchestrator(db, folder).run()

    assert summary.skipped_unchanged
    assert summary.render().startswith("Importación omitida: sin cambios detectados")
    assert len(db.get_recent_audit_entries()) == audit_before


def test_unchanged_folder_with_empty_trazabilidad_reimports(db, folder):
    run_import(db, folder)
    with db.connect() as con:
        con.execute("DELETE FROM CODIGOS_TRAZABILIDAD")

    summary = ImportOrchestrator(db, folder).run()

    assert not summary.skipped_unchanged
    assert db.count_rows(schema.TABLE_TRAZABILIDAD) == 2


def test_force_bypasses_the_fast_path(db, folder):
    run_import(db, folder)

    summary = ImportOrchestrator(db, folder, force=True).run()

    assert not summary.skipped_unchanged
    assert summary.result_for("Embalaje.csv").skipped == 2
    assert db.count_rows(schema.TABLE_EMBALAJE) == 2


def test_embalaje_example_insert_noop_then_merge_after_byte_change(db, folder):
    write_csv(folder, "Embalaje.csv", "Id,codigo\n1,CB4\n2,CB5\n")

    first = ImportOrchestrator(db, folder).run()
    emb = first.result_for("Embalaje.csv")
    assert (emb.inserted, emb.skipped) == (2, 0)

    second = ImportOrchestrator(db, folder).run()
    assert second.skipped_unchanged
    assert second.total_inserted == 0

    hash_before = compute_folder_hash(folder)
    write_csv(folder, "Embalaje.csv", "Id,codigo\r\n1,CB4\r\n2,CB5\r\n")
    assert compute_folder_hash(folder) != hash_before

    third = ImportOrchestrator(db, folder).run()
    emb = third.result_for("Embalaje.csv")
    assert not third.skipped_unchanged
    assert (emb.inserted, emb.skipped) == (0, 2)
    assert db.count_rows(schema.TABLE_EMBALAJE) == 2


def test_natural_key_merge_remaps_ids_for_later_files(db, folder):
    with db.connect() as con:
        con.execute("INSERT INTO Variedad (Id, nom_variedad) VALUES (7, 'Santina')")
    write_csv(
        folder,
        "CODIGOS_TRAZABILIDAD.csv",
        "Id,productor,codigo_sag,variedad,cuartel\n1,P001,SAG100,1,Cuartel Norte\n",
    )

    summary = ImportOrchestrator(db, folder).run()

    assert summary.result_for("Variedad.csv").merged == 1
    with db.connect() as con:
        santinas = con.execute("SELECT Id FROM Variedad WHERE nom_variedad = 'Santina'").fetchall()
        traz = con.execute("SELECT variedad_id FROM CODIGOS_TRAZABILIDAD").fetchall()
    assert [r[0] for r in santinas] == [7]
    assert [r[0] for r in traz] == [7]
    assert summary.violations == []


def test_orphan_trazabilidad_row_withholds_hash(db, folder):
    with db.connect(autocommit=True) as con:
        con.execute("PRAGMA foreign_keys = OFF")
        con.execute(
            "INSERT INTO CODIGOS_TRAZABILIDAD (Id, productor_id, codigo_sag_id, variedad_id, cuartel_id) "
            "VALUES (99, 999, 1, 1, 1)"
        )

    summary = ImportOrchestrator(db, folder).run()

    assert any(v.table == schema.TABLE_TRAZABILIDAD and v.column == "productor_id" for v in summary.violations)
    assert not summary.hash_committed
    assert stored_hash(db) is None
    assert "Integridad: se encontraron problemas (no se actualizará el hash):" in summary.render()


def test_failed_file_is_rolled_back_and_withholds_hash(db, folder, monkeypatch):
    def boom(self, con, mapping, line_no, fields):
        raise RuntimeError("error inesperado")

    monkeypatch.setattr(EmbalajeImporter, "import_row", boom)

    summary = ImportOrchestrator(db, folder).run()

    assert [f.file_name for f in summary.failed_files] == ["Embalaje.csv"]
    assert db.count_rows(schema.TABLE_EMBALAJE) == 0
    assert db.count_rows(schema.TABLE_TRAZABILIDAD) == 2
    assert stored_hash(db) is None
    assert "Embalaje.csv: FALLIDO" in summary.render()


def test_row_errors_do_not_block_the_hash(db, folder):
    write_csv(folder, "Embalaje.csv", "Id,codigo\n1,CB4\n2,\n")

    summary = ImportOrchestrator(db, folder).run()

    assert summary.hash_committed
    assert (folder / "FAILED_Embalaje.csv").exists()
    # the diagnostics file does not change the folder hash
    assert stored_hash(db) == compute_folder_hash(folder)
    assert "    * línea 3: codigo vacío" in summary.render()


def test_import_order_file_controls_order_and_reports_missing_and_unknown(db, folder):
    write_csv(folder, "import_order.txt", "# solo embalajes\nembalaje.csv\n\nNO_EXISTE.csv\nnotas.csv\n")
    write_csv(folder, "notas.csv", "x\n1\n")

    summary = ImportOrchestrator(db, folder).run()

    assert [f.file_name for f in summary.files] == ["Embalaje.csv", "NO_EXISTE.csv", "notas.csv"]
    text = summary.render()
    assert "- NO_EXISTE.csv: Archivo no encontrado en carpeta: NO_EXISTE.csv" in text
    assert "- notas.csv: Archivo no manejado" in text
    assert db.count_rows(schema.TABLE_PRODUCTOR) == 0


def test_read_import_order_defaults(tmp_path):
    assert read_import_order(tmp_path) == list(DEFAULT_ORDER)
    assert DEFAULT_ORDER[-2:] == ("VARIEDAD_PLU.csv", "CODIGOS_TRAZABILIDAD.csv")


def test_missing_folder_raises(db, tmp_path):
    with pytest.raises(ImportFolderError):
        run_import(db, tmp_path / "no_existe")


def test_audit_entry_is_written(db, folder):
    run_import(db, folder)

    entries = db.get_recent_audit_entries()
    assert entries[0].category == "importacion"
    assert "hash_actualizado=True" in entries[0].details


def test_concurrent_runs_are_serialized(db, folder):
    results: list[str] = []
    errors: list[BaseException] = []

    def worker():
        try:
            results.append(run_import(db, folder))
        except BaseException as exc:  # pragma: no cover - surfaced by the assert below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sum(r.startswith("Importación omitida") for r in results) == 1
    assert db.count_rows(schema.TABLE_TRAZABILIDAD) == 2
    assert db.count_rows(schema.TABLE_EMBALAJE) == len(FULL_FOLDER["Embalaje.csv"].splitlines()) - 1


def test_lock_is_shared_per_path_and_released_when_unused(db):
    key = str(db.path.resolve())
    lock = orchestrator._lock_for(db)

    assert orchestrator._lock_for(Db(db.path)) is lock
    assert key in orchestrator._locks

    del lock
    gc.collect()
    assert key not in orchestrator._locks
