from __future__ import annotations

import logging
import sqlite3
from collections.abc import Sequence

from tarjadb.core.models import NOT_FOUND, MatchKind, Resolution
from tarjadb.data import schema
from tarjadb.data.csv_io import is_numeric, normalize_for_compare
from tarjadb.importer.session import ImportSession

logger = logging.getLogger(__name__)


class NaturalKeyResolver:
    """Find the surrogate id a CSV token refers to.

    Tokens in the exports are a mix of ids, codes and hand-typed names. Each lookup walks
    the stages below and stops at the first hit:

    1. numeric token already remapped in this run's :class:`ImportSession`
    2. exact match on ``lookup_column``
    3. case-insensitive match (non-numeric tokens only)
    4. accent/whitespace-insensitive scan (non-numeric tokens only)

    Duplicated natural keys resolve to the lowest id.
    """

    def __init__(self, con: sqlite3.Connection, session: ImportSession):
        self.con = con
        self.session = session

    def resolve(self, table: str, id_column: str, lookup_column: str, token: str | None) -> Resolution:
        _check_identifiers(table, id_column, lookup_column)
        token = (token or "").strip()
        if not token:
            return NOT_FOUND

        numeric = is_numeric(token)
        if numeric:
            mapped = self.session.mapped_id(table, int(token))
            if mapped is not None:
                return Resolution(mapped, MatchKind.MAPPED, f"{table}: id CSV {token} -> {mapped}")

        row = self.con.execute(
            f'SELECT "{id_column}" FROM "{table}" WHERE "{lookup_column}" = ? ORDER BY "{id_column}" LIMIT 1',
            (token,),
        ).fetchone()
        if row is not None:
            return Resolution(int(row[0]), MatchKind.EXACT, f"{table}.{lookup_column} = '{token}'")

        if numeric:
            return self._not_found(table, lookup_column, token)

        row = self.con.execute(
            f'SELECT "{id_column}" FROM "{table}" WHERE LOWER("{lookup_column}") = LOWER(?) '
            f'ORDER BY "{id_column}" LIMIT 1',
            (token,),
        ).fetchone()
        if row is not None:
            return Resolution(
                int(row[0]), MatchKind.CASE_INSENSITIVE, f"{table}.{lookup_column} ~ '{token}' (sin mayúsculas)"
            )

        wanted = normalize_for_compare(token)
        for rid, value in self.con.execute(
            f'SELECT "{id_column}", "{lookup_column}" FROM "{table}" ORDER BY "{id_column}"'
        ):
            if value is not None and normalize_for_compare(str(value)) == wanted:
                return Resolution(
                    int(rid), MatchKind.NORMALIZED, f"{table}.{lookup_column} ~ '{value}' (normalizado)"
                )

        return self._not_found(table, lookup_column, token)

    def resolve_any(
        self, table: str, id_column: str, lookup_columns: Sequence[str], token: str | None
    ) -> Resolution:
        """Try ``lookup_columns`` in order; the first column that resolves wins."""
        tried: list[str] = []
        for column in lookup_columns:
            res = self.resolve(table, id_column, column, token)
            if res.found:
                return res
            tried.append(column)
        return Resolution(-1, MatchKind.NOT_FOUND, f"{table}: '{(token or '').strip()}' sin match en {', '.join(tried)}")

    @staticmethod
    def _not_found(table: str, column: str, token: str) -> Resolution:
        logger.debug("Sin match para '%s' en %s.%s", token, table, column)
        return Resolution(-1, MatchKind.NOT_FOUND, f"{table}.{column}: '{token}' no encontrado")


def _check_identifiers(table: str, *columns: str) -> None:
    table_def = schema.TABLES_BY_NAME.get(table)
    if table_def is None:
        raise ValueError("Tabla no permitida")
    for col in columns:
        if col not in table_def.column_names:
            raise ValueError(f"Columna no permitida: {table}.{col}")
