"""Tarja (pallet tag) headers and detail lines.

Operators write these rows by hand, so everything here validates up front and refers to
the catalogs through real foreign keys.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date, datetime
from pathlib import Path

import pandas as pd

from tarjadb.core.errors import TarjaValidationError
from tarjadb.core.models import Detalle, Encabezado
from tarjadb.data import schema
from tarjadb.data.db import Db

logger = logging.getLogger(__name__)

RESUMEN_TITLE = "Resumen Tarjas Packing"
RESUMEN_COLUMNS = ["Tarja", "Pallet", "Fecha", "Prod", "Com", "PLU", "Total Cajas", "Estado"]

_ENCABEZADO_SELECT = f"""
    SELECT e.*,
           COALESCE((SELECT SUM(d.cantidad_cajas) FROM {schema.TABLE_DETALLE} d
                     WHERE d.num_tarja = e.num_tarja), 0) AS total_cajas
    FROM {schema.TABLE_ENCABEZADO} e
"""


def coerce_date(value, *, field: str = "fecha_embalaje") -> str:
    """Coerce the date shapes operators type (or pandas hands back) to ISO YYYY-MM-DD."""
    if value is None or (isinstance(value, float) and pd.isna(value)):
        raise TarjaValidationError(f"{field} vacía")

    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    # pandas Timestamp
    if hasattr(value, "to_pydatetime"):
        return value.to_pydatetime().date().isoformat()

    s = str(value).strip()
    if not s:
        raise TarjaValidationError(f"{field} vacía")
    try:
        return datetime.fromisoformat(s).date().isoformat()
    except ValueError:
        pass

    # The handheld shows DD-MM-YYYY
    for fmt in ("%d-%m-%Y", "%d/%m/%Y", "%Y/%m/%d"):
        try:
            return datetime.strptime(s, fmt).date().isoformat()
        except ValueError:
            continue

    raise TarjaValidationError(f"{field} inválida: {value!r}")


def _display_date(iso: str | None) -> str:
    if not iso:
        return "-"
    return datetime.strptime(iso, "%Y-%m-%d").strftime("%d-%m-%Y")


class TarjaRepository:
    def __init__(self, db: Db) -> None:
        self.db = db

    # ---------- Encabezado ----------

    def add_encabezado(self, enc: Encabezado) -> None:
        values = self._encabezado_values(enc)
        with self.db.connect() as con:
            if con.execute(
                f"SELECT 1 FROM {schema.TABLE_ENCABEZADO} WHERE num_tarja = ?", (enc.num_tarja,)
            ).fetchone():
                raise TarjaValidationError(f"La tarja {enc.num_tarja} ya existe")
            cols = ", ".join(values)
            marks = ", ".join("?" for _ in values)
            try:
                con.execute(
                    f"INSERT INTO {schema.TABLE_ENCABEZADO} (num_tarja, {cols}) VALUES (?, {marks})",
                    (enc.num_tarja, *values.values()),
                )
            except sqlite3.IntegrityError as exc:
                raise TarjaValidationError(f"Embalaje o etiqueta inexistente: {exc}") from exc
        logger.info("Tarja %s creada", enc.num_tarja)

    def update_encabezado(self, enc: Encabezado) -> int:
        """Overwrite every header field except ``num_tarja`` and ``status``. Returns rows updated."""
        values = self._encabezado_values(enc)
        values.pop("status")
        assignments = ", ".join(f"{c} = ?" for c in values)
        with self.db.connect() as con:
            try:
                cur = con.execute(
                    f"UPDATE {schema.TABLE_ENCABEZADO} SET {assignments} WHERE num_tarja = ?",
                    (*values.values(), enc.num_tarja),
                )
            except sqlite3.IntegrityError as exc:
                raise TarjaValidationError(f"Embalaje o etiqueta inexistente: {exc}") from exc
            return cur.rowcount

    def set_status(self, num_tarja: int, status: str) -> int:
        status = (status or "").strip().lower()
        if status not in schema.STATUSES:
            raise TarjaValidationError(f"Estado inválido: {status!r} (use {', '.join(schema.STATUSES)})")
        with self.db.connect() as con:
            cur = con.execute(
                f"UPDATE {schema.TABLE_ENCABEZADO} SET status = ? WHERE num_tarja = ?", (status, num_tarja)
            )
            return cur.rowcount

    def delete_tarja(self, num_tarja: int) -> bool:
        """Delete the header; detail lines go with it through ON DELETE CASCADE."""
        with self.db.connect() as con:
            cur = con.execute(f"DELETE FROM {schema.TABLE_ENCABEZADO} WHERE num_tarja = ?", (num_tarja,))
            return cur.rowcount > 0

    def get_encabezado(self, num_tarja: int) -> Encabezado | None:
        with self.db.connect() as con:
            row = con.execute(f"{_ENCABEZADO_SELECT} WHERE e.num_tarja = ?", (num_tarja,)).fetchone()
        return self._row_to_encabezado(row) if row else None

    def list_encabezados(
        self,
        *,
        status: str | None = None,
        desde: str | date | None = None,
        hasta: str | date | None = None,
    ) -> list[Encabezado]:
        where: list[str] = []
        params: list[object] = []
        if status:
            if status not in schema.STATUSES:
                raise TarjaValidationError(f"Estado inválido: {status!r}")
            where.append("e.status = ?")
            params.append(status)
        if desde is not None:
            where.append("e.fecha_embalaje >= ?")
            params.append(coerce_date(desde, field="desde"))
        if hasta is not None:
            where.append("e.fecha_embalaje <= ?")
            params.append(coerce_date(hasta, field="hasta"))

        sql = _ENCABEZADO_SELECT
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY e.num_tarja DESC"
        with self.db.connect() as con:
            rows = con.execute(sql, params).fetchall()
        return [self._row_to_encabezado(r) for r in rows]

    # ---------- Detalle ----------

    def add_detalle(self, det: Detalle) -> int:
        values = self._detalle_values(det)
        cols = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        with self.db.connect() as con:
            try:
                cur = con.execute(
                    f"INSERT INTO {schema.TABLE_DETALLE} (num_tarja, {cols}) VALUES (?, {marks})",
                    (det.num_tarja, *values.values()),
                )
            except sqlite3.IntegrityError as exc:
                raise TarjaValidationError(f"La tarja {det.num_tarja} no existe") from exc
            return int(cur.lastrowid)

    def update_detalle(self, det: Detalle) -> int:
        if det.id_detalle is None:
            raise TarjaValidationError("id_detalle requerido para actualizar")
        values = self._detalle_values(det)
        assignments = ", ".join(f"{c} = ?" for c in values)
        with self.db.connect() as con:
            cur = con.execute(
                f"UPDATE {schema.TABLE_DETALLE} SET {assignments} WHERE id_detalle = ?",
                (*values.values(), det.id_detalle),
            )
            return cur.rowcount

    def delete_detalle(self, id_detalle: int) -> int:
        with self.db.connect() as con:
            cur = con.execute(f"DELETE FROM {schema.TABLE_DETALLE} WHERE id_detalle = ?", (id_detalle,))
            return cur.rowcount

    def list_detalles(self, num_tarja: int) -> list[Detalle]:
        with self.db.connect() as con:
            rows = con.execute(
                f"SELECT * FROM {schema.TABLE_DETALLE} WHERE num_tarja = ? ORDER BY id_detalle DESC",
                (num_tarja,),
            ).fetchall()
        return [
            Detalle(
                num_tarja=r["num_tarja"],
                cantidad_cajas=r["cantidad_cajas"],
                folio=r["folio"],
                csg=r["csg"],
                lote=r["lote"],
                sdp=r["sdp"],
                linea=r["linea"],
                categoria=r["categoria"],
                id_detalle=r["id_detalle"],
            )
            for r in rows
        ]

    # ---------- Lookups ----------

    def get_plu_for_variedad(self, nom_variedad: str) -> int | None:
        with self.db.connect() as con:
            row = con.execute(
                f"""
                SELECT p.plu_code
                FROM {schema.TABLE_VARIEDAD} v
                JOIN {schema.TABLE_VARIEDAD_PLU} vp ON v.Id = vp.variedad_id
                JOIN {schema.TABLE_PLU} p ON vp.plu_id = p.Id
                WHERE v.nom_variedad = ?
                ORDER BY p.Id
                LIMIT 1
                """,
                (nom_variedad,),
            ).fetchone()
        return int(row[0]) if row else None

    # ---------- Resumen export ----------

    def resumen_dataframe(
        self,
        *,
        status: str | None = None,
        desde: str | date | None = None,
        hasta: str | date | None = None,
    ) -> pd.DataFrame:
        rows = [
            {
                "Tarja": e.num_tarja,
                "Pallet": e.num_pallet,
                "Fecha": e.fecha_embalaje,
                "Prod": e.proc_prod,
                "Com": e.proc_com,
                "PLU": e.plu,
                "Total Cajas": e.total_cajas,
                "Estado": e.status,
            }
            for e in self.list_encabezados(status=status, desde=desde, hasta=hasta)
        ]
        return pd.DataFrame(rows, columns=RESUMEN_COLUMNS, dtype=object)

    def export_resumen_csv(
        self,
        path: Path,
        *,
        status: str | None = None,
        desde: str | date | None = None,
        hasta: str | date | None = None,
    ) -> Path:
        """Write the tarja summary CSV: a title, the date range, a blank line, then the table."""
        df = self.resumen_dataframe(status=status, desde=desde, hasta=hasta)
        desde_iso = coerce_date(desde, field="desde") if desde is not None else None
        hasta_iso = coerce_date(hasta, field="hasta") if hasta is not None else None
        date_range = f"{_display_date(desde_iso)} al {_display_date(hasta_iso)}"

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8", newline="") as fh:
            fh.write(f"{RESUMEN_TITLE}\n{date_range}\n\n")
            df.to_csv(fh, index=False, lineterminator="\n")
        logger.info("Resumen de %s tarjas exportado a %s", len(df), path)
        return path

    # ---------- Helpers ----------

    @staticmethod
    def _encabezado_values(enc: Encabezado) -> dict[str, object]:
        if enc.num_tarja is None or int(enc.num_tarja) <= 0:
            raise TarjaValidationError("num_tarja debe ser un entero positivo")
        if not (enc.variedad or "").strip():
            raise TarjaValidationError("variedad vacía")
        if not (enc.logo or "").strip():
            raise TarjaValidationError("logo vacío")
        if enc.status not in schema.STATUSES:
            raise TarjaValidationError(f"Estado inválido: {enc.status!r}")
        return {
            "num_pallet": enc.num_pallet,
            "fecha_embalaje": coerce_date(enc.fecha_embalaje),
            "Embalaje_id": enc.embalaje_id,
            "Etiqueta_id": enc.etiqueta_id,
            "variedad": enc.variedad.strip(),
            "Recibidor": enc.recibidor,
            "Logo_nom_cod": enc.logo.strip(),
            "ProcProd": enc.proc_prod,
            "ProcCom": enc.proc_com,
            "PLU": enc.plu,
            "status": enc.status,
        }

    @staticmethod
    def _detalle_values(det: Detalle) -> dict[str, object]:
        if det.cantidad_cajas is None or int(det.cantidad_cajas) < 0:
            raise TarjaValidationError("cantidad_cajas debe ser un entero no negativo")
        return {
            "folio": det.folio,
            "csg": det.csg,
            "lote": det.lote,
            "sdp": det.sdp,
            "linea": det.linea,
            "categoria": det.categoria,
            "cantidad_cajas": int(det.cantidad_cajas),
        }

    @staticmethod
    def _row_to_encabezado(row: sqlite3.Row) -> Encabezado:
        return Encabezado(
            num_tarja=row["num_tarja"],
            num_pallet=row["num_pallet"],
            fecha_embalaje=row["fecha_embalaje"],
            embalaje_id=row["Embalaje_id"],
            etiqueta_id=row["Etiqueta_id"],
            variedad=row["variedad"],
            recibidor=row["Recibidor"],
            logo=row["Logo_nom_cod"],
            proc_prod=row["ProcProd"],
            proc_com=row["ProcCom"],
            plu=row["PLU"],
            status=row["status"],
            total_cajas=int(row["total_cajas"] or 0),
        )
