"""Rename-swap migration: identity preservation and the destructive fallback."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from tarjadb.data import schema
from tarjadb.data.db import Db
from tarjadb.data.migrator import SchemaMigrator

LEGACY_DDL = (
    "CREATE TABLE Embalaje (Id INTEGER PRIMARY KEY AUTOINCREMENT, codigo TEXT NOT NULL)",
    "CREATE TABLE Etiqueta (Id INTEGER PRIMARY KEY AUTOINCREMENT, nombre TEXT NOT NULL)",
    "CREATE TABLE Cuartel (Id INTEGER PRIMARY KEY AUTOINCREMENT, num_cuartel TEXT, nom_cuartel TEXT)",
    """
    CREATE TABLE TARJA_ENCABEZADO (
        num_tarja INTEGER PRIMARY KEY,
        num_pallet INTEGER,
        fecha_embalaje TEXT NOT NULL,
        Embalaje_id INTEGER NOT NULL,
        Etiqueta_id INTEGER NOT NULL,
        variedad TEXT NOT NULL,
        Recibidor TEXT,
        Logo_nom_cod TEXT NOT NULL,
        ProcProd INTEGER,
        ProcCom INTEGER,
        PLU INTEGER
    )
    """,
    """
    CREATE TABLE TARJA_DETALLE (
        id_detalle INTEGER PRIMARY KEY AUTOINCREMENT,
        num_tarja INTEGER NOT NULL,
        folio INTEGER,
        cantidad_cajas INTEGER NOT NULL
    )
    """,
)


def build_legacy_db(path: Path, *, user_version: int = 11) -> None:
    con = sqlite3.connect(path)
    try:
        for ddl in LEGACY_DDL:
            con.execute(ddl)
        for i in (1, 5, 9):
            con.execute("INSERT INTO Embalaje (Id, codigo) VALUES (?, ?)", (i, f"CB{i}"))
        con.execute("INSERT INTO Etiqueta (Id, nombre) VALUES (3, 'Atacama')")
        con.execute("INSERT INTO Cuartel (Id, num_cuartel, nom_cuartel) VALUES (2, '10', 'Norte')")
        con.execute(
            "INSERT INTO TARJA_ENCABEZADO (num_tarja, fecha_embalaje, Embalaje_id, Etiqueta_id, variedad, Logo_nom_cod) "
            "VALUES (500, '2023-12-01', 5, 3, 'Santina', 'ATK')"
        )
        for i in (1, 5, 9):
            con.execute(
                "INSERT INTO TARJA_DETALLE (id_detalle, num_tarja, folio, cantidad_cajas) VALUES (?, 500, ?, 10)",
                (i, 1000 + i),
            )
        con.execute(f"PRAGMA user_version = {user_version}")
        con.commit()
    finally:
        con.close()


@pytest.fixture()
def legacy_db(tmp_path) -> Db:
    path = Path(tmp_path) / "bd_tarja.db"
    build_legacy_db(path)
    return Db(path, backup_dir=Path(tmp_path) / "backups")


def test_upgrade_preserves_ids_and_adds_new_columns(legacy_db):
    outcome = legacy_db.ensure_schema()

    assert outcome.migrated
    assert (outcome.old_version, outcome.new_version) == (11, schema.SCHEMA_VERSION)
    assert legacy_db.schema_version() == schema.SCHEMA_VERSION
    with legacy_db.connect() as con:
        assert [r[0] for r in con.execute("SELECT Id FROM Embalaje ORDER BY Id")] == [1, 5, 9]
        assert [r[0] for r in con.execute("SELECT id_detalle FROM TARJA_DETALLE ORDER BY id_detalle")] == [1, 5, 9]
        etiqueta = con.execute("SELECT nombre, nombre_imagen FROM Etiqueta WHERE Id = 3").fetchone()
        assert tuple(etiqueta) == ("Atacama", "")
        status = con.execute("SELECT status FROM TARJA_ENCABEZADO WHERE num_tarja = 500").fetchone()[0]
        assert status == schema.STATUS_PENDIENTE
        assert schema.table_exists(con, schema.TABLE_AUDIT_LOG)
        leftovers = con.execute("SELECT name FROM sqlite_master WHERE name LIKE '%\\_new' ESCAPE '\\'").fetchall()
        assert leftovers == []


def test_upgrade_keeps_autoincrement_counters_ahead_of_existing_ids(legacy_db):
    legacy_db.ensure_schema()

    with legacy_db.connect() as con:
        seq = con.execute("SELECT seq FROM sqlite_sequence WHERE name = 'TARJA_DETALLE'").fetchone()[0]
        cur = con.execute("INSERT INTO TARJA_DETALLE (num_tarja, cantidad_cajas) VALUES (500, 5)")
        new_id = cur.lastrowid

    assert seq >= 9
    assert new_id == 10


def test_upgrade_writes_backup_and_audit_entry(legacy_db):
    outcome = legacy_db.ensure_schema()

    assert outcome.backup_path is not None
    backup = Path(outcome.backup_path)
    assert backup.parent == legacy_db.backup_dir
    con = sqlite3.connect(backup)
    try:
        assert con.execute("SELECT COUNT(*) FROM Embalaje").fetchone()[0] == 3
        assert con.execute("PRAGMA user_version").fetchone()[0] == 11
    finally:
        con.close()

    entries = legacy_db.get_recent_audit_entries()
    assert entries[0].category == "migracion"
    assert "11 -> 13" in entries[0].message


def test_unversioned_file_with_tables_is_treated_as_version_one(tmp_path):
    path = Path(tmp_path) / "old.db"
    build_legacy_db(path, user_version=0)
    db = Db(path)

    outcome = db.ensure_schema()

    assert outcome.migrated
    assert outcome.old_version == 1
    assert db.count_rows(schema.TABLE_EMBALAJE) == 3


def test_failed_swap_recreates_an_empty_schema(legacy_db, monkeypatch):
    original = SchemaMigrator._swap_table

    def flaky(self, con, table):
        if table.name == schema.TABLE_CUARTEL:
            raise sqlite3.OperationalError("disco lleno")
        return original(self, con, table)

    monkeypatch.setattr(SchemaMigrator, "_swap_table", flaky)

    outcome = legacy_db.ensure_schema()

    assert outcome.fallback
    assert not outcome.migrated
    assert "disco lleno" in outcome.error
    assert legacy_db.schema_version() == schema.SCHEMA_VERSION
    for table in (schema.TABLE_EMBALAJE, schema.TABLE_DETALLE, schema.TABLE_ENCABEZADO):
        assert legacy_db.count_rows(table) == 0
    with legacy_db.connect() as con:
        assert not schema.table_exists(con, "Embalaje_new")
    entries = legacy_db.get_recent_audit_entries()
    assert [e.category for e in entries] == ["migracion"]
    assert "Fallback" in entries[0].message

    # The backup still has the old rows.
    con = sqlite3.connect(outcome.backup_path)
    try:
        assert con.execute("SELECT COUNT(*) FROM TARJA_DETALLE").fetchone()[0] == 3
    finally:
        con.close()


def test_force_migrate_on_current_schema_is_lossless(tmp_path):
    db = Db(Path(tmp_path) / "bd_tarja.db")
    db.ensure_schema()
    with db.connect() as con:
        con.execute("INSERT INTO Variedad (Id, nom_variedad) VALUES (42, 'Santina')")
        con.execute("INSERT INTO PLU (Id, plu_code) VALUES (7, 4045)")
        con.execute("INSERT INTO VARIEDAD_PLU (variedad_id, plu_id) VALUES (42, 7)")

    outcome = db.force_migrate_preserve_ids()

    assert outcome.migrated
    with db.connect() as con:
        assert tuple(con.execute("SELECT variedad_id, plu_id FROM VARIEDAD_PLU").fetchone()) == (42, 7)
        assert con.execute("PRAGMA foreign_key_check").fetchall() == []


def build_db(path: Path, statements: list[str], *, user_version: int = 11) -> Db:
    con = sqlite3.connect(path)
    try:
        for sql in statements:
            con.execute(sql)
        con.execute(f"PRAGMA user_version = {user_version}")
        con.commit()
    finally:
        con.close()
    return Db(path)


def test_nulls_in_now_required_columns_are_filled_not_dropped(tmp_path):
    db = build_db(
        Path(tmp_path) / "nulls.db",
        [
            "CREATE TABLE Cuartel (Id INTEGER PRIMARY KEY, num_cuartel TEXT, nom_cuartel TEXT)",
            "INSERT INTO Cuartel VALUES (1, '10', 'Norte'), (5, NULL, 'Sur'), (9, '30', NULL)",
            "CREATE TABLE PRODUCTOR (Id INTEGER PRIMARY KEY, cod_productor TEXT, nom_productor TEXT)",
            "INSERT INTO PRODUCTOR VALUES (2, 'P002', NULL)",
        ],
    )

    outcome = db.ensure_schema()

    assert outcome.migrated
    with db.connect() as con:
        cuarteles = [tuple(r) for r in con.execute("SELECT Id, num_cuartel, nom_cuartel FROM Cuartel ORDER BY Id")]
        productor = tuple(con.execute("SELECT Id, cod_productor, nom_productor FROM PRODUCTOR").fetchone())
    assert cuarteles == [(1, "10", "Norte"), (5, "", "Sur"), (9, "30", "")]
    assert productor == (2, "P002", "")


def test_rows_that_cannot_be_copied_trigger_the_fallback(tmp_path):
    db = build_db(
        Path(tmp_path) / "perdidas.db",
        [
            "CREATE TABLE PLU (Id INTEGER PRIMARY KEY, plu_code INTEGER, description TEXT)",
            "INSERT INTO PLU VALUES (1, 4045, 'Roja'), (2, NULL, 'Sin codigo')",
        ],
    )

    outcome = db.ensure_schema()

    assert outcome.fallback
    assert not outcome.migrated
    assert "PLU: 1 de 2 fila(s) no se pudieron migrar" in outcome.error
