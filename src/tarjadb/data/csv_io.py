from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

BOM = "\ufeff"

_WS_RE = re.compile(r"\s+")
_SIGNED_DIGITS_RE = re.compile(r"^[+-]?\d+$")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def parse_csv_line(line: str) -> list[str]:
    """Split one CSV line on commas that are outside double quotes.

    ``""`` inside a quoted span is a literal quote. A leading BOM is dropped. Broken
    quoting never raises: an unterminated quote simply runs to the end of the line.
    """
    if line.startswith(BOM):
        line = line[1:]
    line = line.rstrip("\r\n")

    fields: list[str] = []
    cur: list[str] = []
    in_quotes = False
    i = 0
    n = len(line)
    while i < n:
        c = line[i]
        if c == '"':
            if in_quotes and i + 1 < n and line[i + 1] == '"':
                cur.append('"')
                i += 1
            else:
                in_quotes = not in_quotes
        elif c == "," and not in_quotes:
            fields.append("".join(cur))
            cur = []
        else:
            cur.append(c)
        i += 1
    fields.append("".join(cur))
    return fields


def normalize_for_compare(value: str | None) -> str:
    """Accent/case/whitespace-insensitive form used for fuzzy matching of names."""
    if value is None:
        return ""
    s = str(value)
    if s.startswith(BOM):
        s = s[1:]
    s = s.replace("\u00a0", " ").strip()
    s = _WS_RE.sub(" ", s)
    s = unicodedata.normalize("NFD", s)
    s = "".join(ch for ch in s if not unicodedata.combining(ch))
    return s.lower()


def normalize_col_name(name: str) -> str:
    """Header as a snake_case token: 'Código SAG' and 'codigo.sag' both give 'codigo_sag'."""
    return _NON_ALNUM_RE.sub("_", normalize_for_compare(name or "")).strip("_")


def is_numeric(token: str | None) -> bool:
    return bool(token) and bool(_SIGNED_DIGITS_RE.match(str(token).strip()))


def parse_long(token: str | None) -> int | None:
    """Integer value of ``token`` or None (spreadsheet '12.0' counts as 12)."""
    if token is None:
        return None
    s = str(token).strip()
    if not s:
        return None
    if _SIGNED_DIGITS_RE.match(s):
        return int(s)
    try:
        f = float(s)
    except ValueError:
        return None
    return int(f) if f.is_integer() else None


@dataclass
class HeaderMapping:
    """Where each canonical column lives in a file's header row."""

    index_by_column: dict[str, int] = field(default_factory=dict)
    unmapped: list[str] = field(default_factory=list)
    header: list[str] = field(default_factory=list)

    def has(self, column: str) -> bool:
        return column in self.index_by_column

    def value(self, fields: Sequence[str], column: str) -> str:
        """Trimmed value of ``column`` in ``fields``; '' when absent or unmapped."""
        idx = self.index_by_column.get(column)
        if idx is None or idx >= len(fields):
            return ""
        return fields[idx].strip()

    @property
    def header_to_column(self) -> dict[str, str]:
        return {self.header[idx]: col for col, idx in self.index_by_column.items()}


def synchronize_headers(
    header_tokens: Sequence[str],
    canonical_columns: Sequence[str],
    aliases: Mapping[str, Sequence[str]] | None = None,
) -> HeaderMapping:
    """Map a file's header row onto canonical column names.

    Each canonical column (then each of its aliases) is matched first case-insensitively,
    then after stripping accents and collapsing whitespace, and last as a snake_case token
    so "Código SAG" finds ``codigo_sag``. The first header position that matches wins,
    and a position is never claimed twice. Headers that match nothing are reported in
    ``unmapped``; extra columns are not an error.
    """
    header = [h.strip() for h in header_tokens]
    if header and header[0].startswith(BOM):
        header[0] = header[0][1:]
    lowered = [h.lower() for h in header]
    normalized = [normalize_for_compare(h) for h in header]
    tokens = [normalize_col_name(h) for h in header]
    aliases = aliases or {}

    mapping = HeaderMapping(header=list(header))
    taken: set[int] = set()

    def _find(candidate: str) -> int | None:
        c = candidate.lower()
        for i, h in enumerate(lowered):
            if i not in taken and h == c:
                return i
        nc = normalize_for_compare(candidate)
        for i, h in enumerate(normalized):
            if i not in taken and h == nc:
                return i
        tc = normalize_col_name(candidate)
        for i, h in enumerate(tokens):
            if i not in taken and tc and h == tc:
                return i
        return None

    for column in canonical_columns:
        for candidate in (column, *aliases.get(column, ())):
            idx = _find(candidate)
            if idx is not None:
                mapping.index_by_column[column] = idx
                taken.add(idx)
                break

    mapping.unmapped = [h for i, h in enumerate(header) if i not in taken and h]
    if mapping.unmapped:
        logger.warning("Encabezados no reconocidos (se ignoran): %s", ", ".join(mapping.unmapped))
    return mapping


def read_text(path: Path) -> str:
    """Decode a CSV export: UTF-8 (BOM tolerated), falling back to cp1252 for old Excel files."""
    raw = Path(path).read_bytes()
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.info("%s no es UTF-8; se lee como cp1252", Path(path).name)
        return raw.decode("cp1252", errors="replace")


def iter_csv_records(path: Path) -> Iterator[tuple[int, str, list[str]]]:
    """Yield ``(line_no, raw_line, fields)`` for every non-blank line; line 1 is the header."""
    for line_no, raw in enumerate(read_text(path).splitlines(), start=1):
        if not raw.strip():
            continue
        yield line_no, raw, parse_csv_line(raw)
