"""One importer per source CSV.

Catalog importers merge onto existing rows by natural key instead of trusting the ids in
the file; relation importers resolve their references through :class:`NaturalKeyResolver`
and skip rows that already exist.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Sequence
from pathlib import Path

from tarjadb.core.models import FileResult, ImportedRow, Resolution, RowAction
from tarjadb.data import schema
from tarjadb.data.csv_io import HeaderMapping, is_numeric, iter_csv_records, parse_long, synchronize_headers
from tarjadb.importer.resolver import NaturalKeyResolver
from tarjadb.importer.session import ImportSession

logger = logging.getLogger(__name__)

FAILED_PREFIX = "FAILED_"

# Columns tried, in order, when a CSV cell references a catalog row:
# (for numeric tokens, for everything else).
REFERENCE_LOOKUPS: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    schema.TABLE_PRODUCTOR: ((schema.COL_ID, "cod_productor"), ("cod_productor", "nom_productor")),
    schema.TABLE_CODIGO_SAG: ((schema.COL_ID, "codigo_sag"), ("codigo_sag",)),
    schema.TABLE_VARIEDAD: ((schema.COL_ID,), ("nom_variedad",)),
    schema.TABLE_CUARTEL: ((schema.COL_ID, "num_cuartel", "nom_cuartel"), ("nom_cuartel", "num_cuartel")),
    schema.TABLE_PLU: ((schema.COL_ID, "plu_code"), ("plu_code",)),
}


class RowRejected(ValueError):
    """The current CSV row cannot be imported; the file continues with the next one."""


def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class TableImporter:
    table: str = ""
    file_name: str = ""
    columns: tuple[str, ...] = ()
    required: tuple[str, ...] = ()
    aliases: dict[str, tuple[str, ...]] = {}

    def __init__(self, resolver: NaturalKeyResolver, *, write_failed_lines: bool = True):
        self.resolver = resolver
        self.write_failed_lines = write_failed_lines

    @property
    def session(self) -> ImportSession:
        return self.resolver.session

    def import_file(self, con: sqlite3.Connection, path: Path) -> FileResult:
        """Import one CSV inside its own savepoint.

        ``con`` must be in autocommit mode: the savepoint is the file's transaction and
        is released (committed) at the end, or rolled back if anything unexpected is raised.
        """
        path = Path(path)
        records = iter_csv_records(path)
        try:
            first = next(records, None)
        except OSError as exc:
            return FileResult.failed_file(path.name, f"No se pudo leer el archivo: {exc}")
        if first is None:
            return FileResult.failed_file(path.name, "Archivo vacío")

        _, header_raw, header = first
        mapping = synchronize_headers(header, self.columns, self.aliases)
        logger.debug("%s: encabezados sincronizados %s", path.name, mapping.header_to_column)
        missing = [c for c in self.required if not mapping.has(c)]
        if missing:
            logger.error("%s: encabezado sin columna requerida '%s' (%s)", path.name, missing[0], header_raw)
            return FileResult.failed_file(path.name, f"Encabezado '{missing[0]}' no encontrado en el archivo CSV")

        result = FileResult(path.name)
        savepoint = "import_" + re.sub(r"\W", "_", self.table).lower()
        snapshot = self.session.snapshot()
        con.execute(f"SAVEPOINT {savepoint}")
        try:
            for line_no, raw, fields in records:
                try:
                    row = self.import_row(con, mapping, line_no, fields)
                except RowRejected as exc:
                    logger.warning("%s línea %s: %s", path.name, line_no, exc)
                    result.reject(line_no, str(exc), raw)
                    continue
                except sqlite3.IntegrityError as exc:
                    logger.warning("%s línea %s: fallo insertar/actualizar: %s", path.name, line_no, exc)
                    result.reject(line_no, f"fallo insertar/actualizar: {exc}", raw)
                    continue
                result.record(row)
        except Exception as exc:
            con.execute(f"ROLLBACK TO {savepoint}")
            con.execute(f"RELEASE {savepoint}")
            self.session.restore(snapshot)
            logger.exception("Error al procesar %s; se revierte el archivo completo", path.name)
            return FileResult.failed_file(path.name, f"Error al procesar el archivo: {exc}")
        con.execute(f"RELEASE {savepoint}")

        logger.info(
            "%s: insertados=%s, fusionados=%s, omitidos=%s, errores=%s",
            path.name,
            result.inserted,
            result.merged,
            result.skipped,
            len(result.errors),
        )
        if self.write_failed_lines:
            self._write_failed_lines(path, header_raw, result.rejected_lines)
        return result

    def import_row(
        self, con: sqlite3.Connection, mapping: HeaderMapping, line_no: int, fields: Sequence[str]
    ) -> ImportedRow:
        raise NotImplementedError

    def resolve_reference(self, table: str, token: str) -> Resolution:
        numeric_cols, text_cols = REFERENCE_LOOKUPS[table]
        cols = numeric_cols if is_numeric(token) else text_cols
        return self.resolver.resolve_any(table, schema.COL_ID, cols, token)

    @staticmethod
    def _write_failed_lines(path: Path, header_raw: str, lines: list[str]) -> None:
        out = path.parent / f"{FAILED_PREFIX}{path.name}"
        try:
            if lines:
                out.write_text("\n".join([header_raw, *lines]) + "\n", encoding="utf-8")
                logger.info("Líneas rechazadas de %s escritas en %s", path.name, out)
            else:
                out.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("No se pudo escribir %s: %s", out, exc)


class CatalogImporter(TableImporter):
    """Reference table with a surrogate ``Id`` and one or more natural keys."""

    key_columns: tuple[str, ...] = ()
    update_columns: tuple[str, ...] = ()

    def values_from_row(self, mapping: HeaderMapping, fields: Sequence[str]) -> dict[str, object]:
        values: dict[str, object] = {
            c: mapping.value(fields, c) for c in self.columns if c != schema.COL_ID
        }
        key = self.key_columns[0]
        if _blank(values.get(key)):
            raise RowRejected(f"{key} vacío")
        return values

    def import_row(self, con, mapping, line_no, fields) -> ImportedRow:
        values = self.values_from_row(mapping, fields)
        csv_id = parse_long(mapping.value(fields, schema.COL_ID))

        existing = self.find_existing(con, values)
        if existing is not None:
            existing_id, key = existing
            self.refresh(con, existing_id, values)
            if csv_id is not None and csv_id != existing_id:
                self.session.register_mapping(self.table, csv_id, existing_id)
                logger.info("%s: %s ya existe con Id=%s; Id CSV %s se mapea a ese registro", self.table, key, existing_id, csv_id)
                return ImportedRow(self.table, line_no, existing_id, RowAction.MERGED, key, csv_id)
            return ImportedRow(self.table, line_no, existing_id, RowAction.SKIPPED, key, csv_id)

        db_id = self.insert(con, values, csv_id)
        if csv_id is not None:
            self.session.register_mapping(self.table, csv_id, db_id)
        return ImportedRow(self.table, line_no, db_id, RowAction.INSERTED, self._describe(values), csv_id)

    def find_existing(self, con: sqlite3.Connection, values: dict[str, object]) -> tuple[int, str] | None:
        for col in self.key_columns:
            value = values.get(col)
            if _blank(value):
                continue
            row = con.execute(
                f'SELECT "{schema.COL_ID}" FROM "{self.table}" WHERE "{col}" = ? ORDER BY "{schema.COL_ID}" LIMIT 1',
                (value,),
            ).fetchone()
            if row is not None:
                return int(row[0]), f"{col}={value}"
        return None

    def refresh(self, con: sqlite3.Connection, row_id: int, values: dict[str, object]) -> None:
        updates = {c: values[c] for c in self.update_columns if not _blank(values.get(c))}
        if not updates:
            return
        assignments = ", ".join(f'"{c}" = ?' for c in updates)
        con.execute(
            f'UPDATE "{self.table}" SET {assignments} WHERE "{schema.COL_ID}" = ?',
            (*updates.values(), row_id),
        )

    def insert(self, con: sqlite3.Connection, values: dict[str, object], csv_id: int | None) -> int:
        data = {c: v for c, v in values.items() if not _blank(v)}
        if csv_id is None:
            cols = ", ".join(f'"{c}"' for c in data)
            marks = ", ".join("?" for _ in data)
            cur = con.execute(f'INSERT INTO "{self.table}" ({cols}) VALUES ({marks})', tuple(data.values()))
            return int(cur.lastrowid)

        taken = con.execute(
            f'SELECT 1 FROM "{self.table}" WHERE "{schema.COL_ID}" = ?', (csv_id,)
        ).fetchone()
        if taken:
            logger.warning("%s: Id=%s ya usado por otro registro; se reemplaza con %s", self.table, csv_id, self._describe(values))
        data = {schema.COL_ID: csv_id, **data}
        cols = ", ".join(f'"{c}"' for c in data)
        marks = ", ".join("?" for _ in data)
        con.execute(f'INSERT OR REPLACE INTO "{self.table}" ({cols}) VALUES ({marks})', tuple(data.values()))
        return csv_id

    def _describe(self, values: dict[str, object]) -> str:
        for col in self.key_columns:
            if not _blank(values.get(col)):
                return f"{col}={values[col]}"
        return ""


class ProductorImporter(CatalogImporter):
    table = schema.TABLE_PRODUCTOR
    file_name = "PRODUCTOR.csv"
    columns = (schema.COL_ID, "cod_productor", "nom_productor")
    required = ("cod_productor",)
    aliases = {"cod_productor": ("codigo", "cod"), "nom_productor": ("nombre", "productor")}
    key_columns = ("cod_productor",)
    update_columns = ("nom_productor",)


class CodigoSagImporter(CatalogImporter):
    table = schema.TABLE_CODIGO_SAG
    file_name = "CODIGO_SAG.csv"
    columns = (schema.COL_ID, "codigo_sag", "cod_sdp_sag")
    required = ("codigo_sag",)
    aliases = {"codigo_sag": ("codigo",), "cod_sdp_sag": ("cod_sdp",)}
    key_columns = ("codigo_sag",)
    update_columns = ("cod_sdp_sag",)


class VariedadImporter(CatalogImporter):
    table = schema.TABLE_VARIEDAD
    file_name = "Variedad.csv"
    columns = (schema.COL_ID, "nom_variedad")
    required = ("nom_variedad",)
    aliases = {"nom_variedad": ("variedad", "nombre")}
    key_columns = ("nom_variedad",)


class CuartelImporter(CatalogImporter):
    table = schema.TABLE_CUARTEL
    file_name = "Cuartel.csv"
    columns = (schema.COL_ID, "num_cuartel", "nom_cuartel")
    required = ("nom_cuartel",)
    aliases = {"nom_cuartel": ("cuartel", "nombre"), "num_cuartel": ("num", "numero")}
    key_columns = ("nom_cuartel",)
    update_columns = ("num_cuartel",)

    def values_from_row(self, mapping, fields):
        values = {c: mapping.value(fields, c) for c in self.columns if c != schema.COL_ID}
        if _blank(values["nom_cuartel"]) and _blank(values["num_cuartel"]):
            raise RowRejected("falta nombre y número de cuartel")
        return values

    def find_existing(self, con, values):
        # Block numbers repeat across growers, so the number is a key only for unnamed rows.
        if not _blank(values.get("nom_cuartel")):
            return super().find_existing(con, values)
        num = values.get("num_cuartel")
        row = con.execute(
            f'SELECT "{schema.COL_ID}" FROM "{self.table}" WHERE num_cuartel = ? ORDER BY "{schema.COL_ID}" LIMIT 1',
            (num,),
        ).fetchone()
        return (int(row[0]), f"num_cuartel={num}") if row is not None else None

    def _describe(self, values):
        return super()._describe(values) or f"num_cuartel={values.get('num_cuartel')}"


class EmbalajeImporter(CatalogImporter):
    table = schema.TABLE_EMBALAJE
    file_name = "Embalaje.csv"
    columns = (schema.COL_ID, "codigo")
    required = ("codigo",)
    key_columns = ("codigo",)


class EtiquetaImporter(CatalogImporter):
    table = schema.TABLE_ETIQUETA
    file_name = "Etiqueta.csv"
    columns = (schema.COL_ID, "nombre", "nombre_imagen")
    required = ("nombre",)
    aliases = {"nombre": ("nom_etiqueta",), "nombre_imagen": ("imagen",)}
    key_columns = ("nombre",)
    update_columns = ("nombre_imagen",)


class LogoImporter(CatalogImporter):
    table = schema.TABLE_LOGO
    file_name = "Logo.csv"
    columns = (schema.COL_ID, "nom_cod", "nombre")
    required = ("nom_cod",)
    aliases = {"nom_cod": ("nom_cod_logo", "nomcod"), "nombre": ("imagen_uri", "imagen", "nombre_imagen")}
    key_columns = ("nom_cod",)
    update_columns = ("nombre",)


class PluImporter(CatalogImporter):
    table = schema.TABLE_PLU
    file_name = "PLU.csv"
    columns = (schema.COL_ID, "plu_code", "description")
    required = ("plu_code",)
    aliases = {"plu_code": ("plu",), "description": ("desc", "descripcion")}
    key_columns = ("plu_code",)
    update_columns = ("description",)

    def values_from_row(self, mapping, fields):
        raw = mapping.value(fields, "plu_code")
        code = parse_long(raw)
        if code is None:
            raise RowRejected(f"plu_code inválido: '{raw}'")
        return {"plu_code": code, "description": mapping.value(fields, "description")}


class ProcedenciaProdImporter(CatalogImporter):
    table = schema.TABLE_PROCEDENCIA_PROD
    file_name = "PROCEDENCIA_PROD.csv"
    columns = (schema.COL_ID, "codigo_procedencia", "nombre")
    required = ("codigo_procedencia",)
    aliases = {"codigo_procedencia": ("cod_procedencia", "procedencia", "codigo")}
    key_columns = ("codigo_procedencia",)
    update_columns = ("nombre",)


class VariedadPluImporter(TableImporter):
    table = schema.TABLE_VARIEDAD_PLU
    file_name = "VARIEDAD_PLU.csv"
    columns = ("variedad_id", "plu_id")
    required = ("variedad_id", "plu_id")
    aliases = {"variedad_id": ("variedad", "nom_variedad"), "plu_id": ("plu_code", "plu")}

    def import_row(self, con, mapping, line_no, fields) -> ImportedRow:
        variedad = mapping.value(fields, "variedad_id")
        plu = mapping.value(fields, "plu_id")
        if not variedad or not plu:
            raise RowRejected("datos inválidos (variedad y plu son obligatorios)")

        var_res = self.resolve_reference(schema.TABLE_VARIEDAD, variedad)
        plu_res = self.resolve_reference(schema.TABLE_PLU, plu)
        if not (var_res.found and plu_res.found):
            raise RowRejected(
                f"no se encontró variedad o PLU (variedad='{variedad}', plu='{plu}'); "
                f"detalles: {var_res.detail}, {plu_res.detail}"
            )

        key = f"variedad_id={var_res.id}, plu_id={plu_res.id}"
        row = con.execute(
            f"SELECT rowid FROM {self.table} WHERE variedad_id = ? AND plu_id = ?",
            (var_res.id, plu_res.id),
        ).fetchone()
        if row is not None:
            return ImportedRow(self.table, line_no, int(row[0]), RowAction.SKIPPED, key)

        cur = con.execute(
            f"INSERT INTO {self.table} (variedad_id, plu_id) VALUES (?, ?)", (var_res.id, plu_res.id)
        )
        return ImportedRow(self.table, line_no, int(cur.lastrowid), RowAction.INSERTED, key)


class TrazabilidadImporter(TableImporter):
    table = schema.TABLE_TRAZABILIDAD
    file_name = "CODIGOS_TRAZABILIDAD.csv"
    columns = (schema.COL_ID, "productor_id", "codigo_sag_id", "variedad_id", "cuartel_id")
    required = ("productor_id", "codigo_sag_id", "variedad_id", "cuartel_id")
    aliases = {
        "productor_id": ("productor", "cod_productor", "cod_productor_id"),
        "codigo_sag_id": ("codigo_sag", "cod_sag", "cod_sag_id", "codigo", "codigo_id"),
        "variedad_id": ("variedad", "nom_variedad", "id_variedad"),
        "cuartel_id": ("cuartel", "nom_cuartel", "num_cuartel"),
    }

    _targets = (
        ("productor_id", schema.TABLE_PRODUCTOR),
        ("codigo_sag_id", schema.TABLE_CODIGO_SAG),
        ("variedad_id", schema.TABLE_VARIEDAD),
        ("cuartel_id", schema.TABLE_CUARTEL),
    )

    def import_row(self, con, mapping, line_no, fields) -> ImportedRow:
        tokens = {col: mapping.value(fields, col) for col, _ in self._targets}
        if any(not t for t in tokens.values()):
            raise RowRejected(
                "datos incompletos ("
                + ", ".join(f"{col}='{tok}'" for col, tok in tokens.items())
                + ")"
            )

        resolved: dict[str, int] = {}
        problems: list[str] = []
        for col, table in self._targets:
            res = self.resolve_reference(table, tokens[col])
            if res.found:
                resolved[col] = res.id
            else:
                problems.append(res.detail)
        if problems:
            raise RowRejected(
                "referencia no encontrada (productor/sag/variedad/cuartel); detalles: " + "; ".join(problems)
            )

        key = ", ".join(f"{c}={v}" for c, v in resolved.items())
        where = " AND ".join(f"{c} = ?" for c in resolved)
        row = con.execute(
            f'SELECT "{schema.COL_ID}" FROM {self.table} WHERE {where} ORDER BY "{schema.COL_ID}" LIMIT 1',
            tuple(resolved.values()),
        ).fetchone()
        if row is not None:
            return ImportedRow(self.table, line_no, int(row[0]), RowAction.SKIPPED, key)

        csv_id = parse_long(mapping.value(fields, schema.COL_ID))
        data: dict[str, int] = dict(resolved)
        if csv_id is not None:
            data = {schema.COL_ID: csv_id, **data}
        cols = ", ".join(f'"{c}"' for c in data)
        marks = ", ".join("?" for _ in data)
        verb = "INSERT OR REPLACE" if csv_id is not None else "INSERT"
        cur = con.execute(f"{verb} INTO {self.table} ({cols}) VALUES ({marks})", tuple(data.values()))
        db_id = csv_id if csv_id is not None else int(cur.lastrowid)
        return ImportedRow(self.table, line_no, db_id, RowAction.INSERTED, key, csv_id)


IMPORTERS: tuple[type[TableImporter], ...] = (
    CodigoSagImporter,
    CuartelImporter,
    EmbalajeImporter,
    EtiquetaImporter,
    LogoImporter,
    PluImporter,
    ProcedenciaProdImporter,
    ProductorImporter,
    VariedadImporter,
    VariedadPluImporter,
    TrazabilidadImporter,
)

IMPORTERS_BY_FILE: dict[str, type[TableImporter]] = {cls.file_name.upper(): cls for cls in IMPORTERS}


def importer_for(file_name: str) -> type[TableImporter] | None:
    return IMPORTERS_BY_FILE.get(file_name.strip().upper())
