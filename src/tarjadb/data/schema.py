"""Table definitions for the tarja database.

Physical names follow the ones used by the handheld app that first produced these
databases, so files copied off a device open without renames.
"""

from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass

SCHEMA_VERSION = 13

# --- Catalog tables ---
TABLE_PRODUCTOR = "PRODUCTOR"
TABLE_CODIGO_SAG = "CODIGO_SAG"
TABLE_VARIEDAD = "Variedad"
TABLE_CUARTEL = "Cuartel"
TABLE_EMBALAJE = "Embalaje"
TABLE_ETIQUETA = "Etiqueta"
TABLE_LOGO = "Logo"
TABLE_PLU = "PLU"
TABLE_PROCEDENCIA_PROD = "PROCEDENCIA_PROD"

# --- Relation / traceability ---
TABLE_VARIEDAD_PLU = "VARIEDAD_PLU"
TABLE_TRAZABILIDAD = "CODIGOS_TRAZABILIDAD"

# --- Transactional ---
TABLE_ENCABEZADO = "TARJA_ENCABEZADO"
TABLE_DETALLE = "TARJA_DETALLE"

# --- Bookkeeping ---
TABLE_METADATA = "APP_METADATA"
TABLE_AUDIT_LOG = "AUDIT_LOG"

COL_ID = "Id"
META_KEY_IMPORT_HASH = "csv_import_hash"

STATUS_PENDIENTE = "pendiente"
STATUS_ENVIADO = "enviado"
STATUSES = (STATUS_PENDIENTE, STATUS_ENVIADO)

_DEFAULT_RE = re.compile(r"DEFAULT\s+(\(.*\)|'(?:[^']|'')*'|[^\s,]+)", re.IGNORECASE)


@dataclass(frozen=True)
class Table:
    name: str
    columns: tuple[tuple[str, str], ...]
    constraints: tuple[str, ...] = ()
    id_column: str | None = COL_ID

    @property
    def column_names(self) -> list[str]:
        return [c for c, _ in self.columns]

    @property
    def autoincrement(self) -> bool:
        return any(c == self.id_column and "AUTOINCREMENT" in decl.upper() for c, decl in self.columns)

    def fill_value(self, column: str) -> str | None:
        """SQL expression that replaces NULL in ``column`` when copying rows in, or None.

        The declared DEFAULT when there is one; '' for a TEXT NOT NULL column without one.
        """
        decl = dict(self.columns)[column]
        match = _DEFAULT_RE.search(decl)
        if match:
            return match.group(1)
        upper = decl.upper()
        if "NOT NULL" in upper and upper.startswith("TEXT"):
            return "''"
        return None

    def not_null(self, column: str) -> bool:
        return "NOT NULL" in dict(self.columns)[column].upper()

    def create_sql(self, name: str | None = None, *, if_not_exists: bool = False) -> str:
        body = [f"{col} {decl}" for col, decl in self.columns]
        body.extend(self.constraints)
        guard = "IF NOT EXISTS " if if_not_exists else ""
        return f'CREATE TABLE {guard}"{name or self.name}" (\n    ' + ",\n    ".join(body) + "\n)"


@dataclass(frozen=True)
class ForeignKeyCheck:
    table: str
    column: str
    parent_table: str
    parent_column: str = COL_ID


# Dependency order: parents before children. Migration and creation both walk this list.
TABLES: tuple[Table, ...] = (
    Table(
        TABLE_PRODUCTOR,
        (
            (COL_ID, "INTEGER PRIMARY KEY"),
            ("cod_productor", "TEXT NOT NULL"),
            ("nom_productor", "TEXT NOT NULL DEFAULT ''"),
        ),
    ),
    Table(
        TABLE_CODIGO_SAG,
        (
            (COL_ID, "INTEGER PRIMARY KEY"),
            ("codigo_sag", "TEXT NOT NULL"),
            ("cod_sdp_sag", "TEXT NOT NULL DEFAULT ''"),
        ),
    ),
    Table(
        TABLE_VARIEDAD,
        (
            (COL_ID, "INTEGER PRIMARY KEY"),
            ("nom_variedad", "TEXT NOT NULL"),
        ),
    ),
    Table(
        TABLE_CUARTEL,
        (
            (COL_ID, "INTEGER PRIMARY KEY"),
            ("num_cuartel", "TEXT NOT NULL DEFAULT ''"),
            ("nom_cuartel", "TEXT NOT NULL DEFAULT ''"),
        ),
    ),
    Table(
        TABLE_EMBALAJE,
        (
            (COL_ID, "INTEGER PRIMARY KEY"),
            ("codigo", "TEXT NOT NULL"),
        ),
    ),
    Table(
        TABLE_ETIQUETA,
        (
            (COL_ID, "INTEGER PRIMARY KEY"),
            ("nombre", "TEXT NOT NULL"),
            ("nombre_imagen", "TEXT NOT NULL DEFAULT ''"),
        ),
    ),
    Table(
        TABLE_LOGO,
        (
            (COL_ID, "INTEGER PRIMARY KEY"),
            ("nom_cod", "TEXT NOT NULL DEFAULT ''"),
            ("nombre", "TEXT NOT NULL DEFAULT ''"),
        ),
    ),
    Table(
        TABLE_PLU,
        (
            (COL_ID, "INTEGER PRIMARY KEY"),
            ("plu_code", "INTEGER NOT NULL"),
            ("description", "TEXT"),
        ),
    ),
    Table(
        TABLE_PROCEDENCIA_PROD,
        (
            (COL_ID, "INTEGER PRIMARY KEY"),
            ("codigo_procedencia", "TEXT NOT NULL"),
            ("nombre", "TEXT NOT NULL DEFAULT ''"),
        ),
    ),
    Table(
        TABLE_VARIEDAD_PLU,
        (
            ("variedad_id", "INTEGER NOT NULL"),
            ("plu_id", "INTEGER NOT NULL"),
        ),
        (
            "PRIMARY KEY (variedad_id, plu_id)",
            f"FOREIGN KEY (variedad_id) REFERENCES {TABLE_VARIEDAD}({COL_ID})",
            f"FOREIGN KEY (plu_id) REFERENCES {TABLE_PLU}({COL_ID})",
        ),
        id_column=None,
    ),
    Table(
        TABLE_TRAZABILIDAD,
        (
            (COL_ID, "INTEGER PRIMARY KEY"),
            ("productor_id", "INTEGER NOT NULL"),
            ("codigo_sag_id", "INTEGER NOT NULL"),
            ("variedad_id", "INTEGER NOT NULL"),
            ("cuartel_id", "INTEGER NOT NULL"),
        ),
        (
            f"FOREIGN KEY (productor_id) REFERENCES {TABLE_PRODUCTOR}({COL_ID})",
            f"FOREIGN KEY (codigo_sag_id) REFERENCES {TABLE_CODIGO_SAG}({COL_ID})",
            f"FOREIGN KEY (variedad_id) REFERENCES {TABLE_VARIEDAD}({COL_ID})",
            f"FOREIGN KEY (cuartel_id) REFERENCES {TABLE_CUARTEL}({COL_ID})",
        ),
    ),
    Table(
        TABLE_ENCABEZADO,
        (
            ("num_tarja", "INTEGER PRIMARY KEY"),
            ("num_pallet", "INTEGER"),
            ("fecha_embalaje", "TEXT NOT NULL"),
            ("Embalaje_id", "INTEGER NOT NULL"),
            ("Etiqueta_id", "INTEGER NOT NULL"),
            ("variedad", "TEXT NOT NULL"),
            ("Recibidor", "TEXT"),
            ("Logo_nom_cod", "TEXT NOT NULL"),
            ("ProcProd", "INTEGER"),
            ("ProcCom", "INTEGER"),
            ("PLU", "INTEGER"),
            (
                "status",
                f"TEXT NOT NULL DEFAULT '{STATUS_PENDIENTE}' "
                f"CHECK (status IN ('{STATUS_PENDIENTE}', '{STATUS_ENVIADO}'))",
            ),
        ),
        (
            f"FOREIGN KEY (Embalaje_id) REFERENCES {TABLE_EMBALAJE}({COL_ID})",
            f"FOREIGN KEY (Etiqueta_id) REFERENCES {TABLE_ETIQUETA}({COL_ID})",
        ),
        id_column="num_tarja",
    ),
    Table(
        TABLE_DETALLE,
        (
            ("id_detalle", "INTEGER PRIMARY KEY AUTOINCREMENT"),
            ("num_tarja", "INTEGER NOT NULL"),
            ("folio", "INTEGER"),
            ("csg", "TEXT"),
            ("lote", "TEXT"),
            ("sdp", "TEXT"),
            ("linea", "TEXT"),
            ("categoria", "TEXT"),
            ("cantidad_cajas", "INTEGER NOT NULL"),
        ),
        (f"FOREIGN KEY (num_tarja) REFERENCES {TABLE_ENCABEZADO}(num_tarja) ON DELETE CASCADE",),
        id_column="id_detalle",
    ),
    Table(
        TABLE_METADATA,
        (
            ("meta_key", "TEXT PRIMARY KEY"),
            ("meta_value", "TEXT"),
        ),
        id_column=None,
    ),
    Table(
        TABLE_AUDIT_LOG,
        (
            ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
            ("timestamp", "TEXT NOT NULL DEFAULT (datetime('now', 'localtime'))"),
            ("category", "TEXT NOT NULL"),
            ("message", "TEXT NOT NULL"),
            ("details", "TEXT"),
        ),
        id_column="id",
    ),
)

TABLES_BY_NAME: dict[str, Table] = {t.name: t for t in TABLES}

CATALOG_TABLES = (
    TABLE_PRODUCTOR,
    TABLE_CODIGO_SAG,
    TABLE_VARIEDAD,
    TABLE_CUARTEL,
    TABLE_EMBALAJE,
    TABLE_ETIQUETA,
    TABLE_LOGO,
    TABLE_PLU,
    TABLE_PROCEDENCIA_PROD,
)

# Orphan checks run after every import. Only reference data is swept; tarjas are
# written by operators and validated at write time.
INTEGRITY_CHECKS: tuple[ForeignKeyCheck, ...] = (
    ForeignKeyCheck(TABLE_VARIEDAD_PLU, "variedad_id", TABLE_VARIEDAD),
    ForeignKeyCheck(TABLE_VARIEDAD_PLU, "plu_id", TABLE_PLU),
    ForeignKeyCheck(TABLE_TRAZABILIDAD, "productor_id", TABLE_PRODUCTOR),
    ForeignKeyCheck(TABLE_TRAZABILIDAD, "codigo_sag_id", TABLE_CODIGO_SAG),
    ForeignKeyCheck(TABLE_TRAZABILIDAD, "variedad_id", TABLE_VARIEDAD),
    ForeignKeyCheck(TABLE_TRAZABILIDAD, "cuartel_id", TABLE_CUARTEL),
)


def create_all_tables(con: sqlite3.Connection, *, if_not_exists: bool = False) -> None:
    for table in TABLES:
        con.execute(table.create_sql(if_not_exists=if_not_exists))


def table_exists(con: sqlite3.Connection, name: str) -> bool:
    row = con.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ? COLLATE NOCASE", (name,)
    ).fetchone()
    return row is not None


def table_columns(con: sqlite3.Connection, name: str) -> list[str]:
    return [r[1] for r in con.execute(f'PRAGMA table_info("{name}")').fetchall()]


def user_tables(con: sqlite3.Connection) -> list[str]:
    rows = con.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    ).fetchall()
    return [r[0] for r in rows]


def raise_sequence(con: sqlite3.Connection, table: str, id_column: str, *, create: bool = True) -> int | None:
    """Make sure sqlite_sequence for ``table`` is at least MAX(id_column).

    With ``create=False`` only an existing counter row is raised. Returns the resulting
    counter, or None when nothing was touched.
    """
    if not table_exists(con, "sqlite_sequence"):
        return None
    max_id = con.execute(f'SELECT MAX("{id_column}") FROM "{table}"').fetchone()[0]
    if max_id is None:
        return None
    row = con.execute("SELECT seq FROM sqlite_sequence WHERE name = ?", (table,)).fetchone()
    if row is None:
        if not create:
            return None
        con.execute("INSERT INTO sqlite_sequence(name, seq) VALUES (?, ?)", (table, int(max_id)))
        return int(max_id)
    if int(max_id) > int(row[0] or 0):
        con.execute("UPDATE sqlite_sequence SET seq = ? WHERE name = ?", (int(max_id), table))
        return int(max_id)
    return int(row[0])
