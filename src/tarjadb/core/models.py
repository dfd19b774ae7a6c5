from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class MatchKind(str, Enum):
    EXACT = "exacto"
    CASE_INSENSITIVE = "sin mayúsculas"
    NORMALIZED = "normalizado"
    MAPPED = "id mapeado"
    NOT_FOUND = "no encontrado"


@dataclass(frozen=True)
class Resolution:
    id: int
    kind: MatchKind
    detail: str = ""

    @property
    def found(self) -> bool:
        return self.kind is not MatchKind.NOT_FOUND


NOT_FOUND = Resolution(-1, MatchKind.NOT_FOUND, "no encontrado")


class RowAction(str, Enum):
    INSERTED = "inserted"
    MERGED = "merged"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RowError:
    line_no: int
    message: str

    def __str__(self) -> str:
        return f"línea {self.line_no}: {self.message}"


@dataclass(frozen=True)
class FileError:
    file_name: str
    message: str

    def __str__(self) -> str:
        return f"{self.file_name}: {self.message}"


@dataclass(frozen=True)
class ImportedRow:
    """One CSV row that reached the database, with the id it ended up under."""

    table: str
    line_no: int
    db_id: int
    action: RowAction
    key: str = ""
    csv_id: int | None = None


@dataclass
class FileResult:
    file_name: str
    inserted: int = 0
    merged: int = 0
    skipped: int = 0
    errors: list[RowError] = field(default_factory=list)
    rows: list[ImportedRow] = field(default_factory=list)
    failure: FileError | None = None
    rejected_lines: list[str] = field(default_factory=list)
    # Set for files that were listed but not processed (missing, unknown name).
    note: str | None = None

    @property
    def failed(self) -> bool:
        return self.failure is not None

    def record(self, row: ImportedRow) -> None:
        self.rows.append(row)
        if row.action is RowAction.INSERTED:
            self.inserted += 1
        elif row.action is RowAction.MERGED:
            self.merged += 1
        else:
            self.skipped += 1

    def reject(self, line_no: int, message: str, raw_line: str | None = None) -> None:
        self.errors.append(RowError(line_no, message))
        self.skipped += 1
        if raw_line is not None:
            self.rejected_lines.append(raw_line)

    @classmethod
    def failed_file(cls, file_name: str, message: str) -> FileResult:
        return cls(file_name=file_name, failure=FileError(file_name, message))

    @classmethod
    def not_processed(cls, file_name: str, note: str) -> FileResult:
        return cls(file_name=file_name, note=note)


@dataclass(frozen=True)
class IntegrityViolation:
    table: str
    column: str
    parent_table: str
    orphan_count: int

    def __str__(self) -> str:
        return f"{self.table}: {self.orphan_count} fila(s) con {self.column} huérfano (sin {self.parent_table})"


@dataclass
class ImportSummary:
    folder: str
    files: list[FileResult] = field(default_factory=list)
    violations: list[IntegrityViolation] = field(default_factory=list)
    skipped_unchanged: bool = False
    hash_committed: bool = False
    folder_hash: str | None = None

    @property
    def total_inserted(self) -> int:
        return sum(f.inserted for f in self.files)

    @property
    def failed_files(self) -> list[FileResult]:
        return [f for f in self.files if f.failed]

    def result_for(self, file_name: str) -> FileResult | None:
        key = file_name.upper()
        for f in self.files:
            if f.file_name.upper() == key:
                return f
        return None

    def render(self) -> str:
        if self.skipped_unchanged:
            return f"Importación omitida: sin cambios detectados en {self.folder}"

        lines = [f"Resultado de importación desde: {self.folder}"]
        for r in self.files:
            if r.failed:
                lines.append(f"- {r.file_name}: FALLIDO ({r.failure.message})")
                continue
            if r.note:
                lines.append(f"- {r.file_name}: {r.note}")
                continue
            line = f"- {r.file_name}: insertados={r.inserted}, fusionados={r.merged}, omitidos={r.skipped}"
            if r.errors:
                line += f", errores={len(r.errors)}"
            lines.append(line)
            for err in r.errors:
                lines.append(f"    * {err}")

        if self.violations:
            lines.append("Integridad: se encontraron problemas (no se actualizará el hash):")
            lines.extend(f" - {v}" for v in self.violations)
        elif not self.hash_committed:
            lines.append("Hash de importación no actualizado (hubo archivos fallidos).")
        return "\n".join(lines)


@dataclass(frozen=True)
class MigrationOutcome:
    old_version: int
    new_version: int
    created: bool = False
    migrated: bool = False
    fallback: bool = False
    backup_path: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class Encabezado:
    num_tarja: int
    num_pallet: int | None
    fecha_embalaje: str
    embalaje_id: int
    etiqueta_id: int
    variedad: str
    recibidor: str | None
    logo: str
    proc_prod: int | None
    proc_com: int | None
    plu: int | None
    status: str = "pendiente"
    total_cajas: int = 0


@dataclass(frozen=True)
class Detalle:
    num_tarja: int
    cantidad_cajas: int
    folio: int | None = None
    csg: str | None = None
    lote: str | None = None
    sdp: str | None = None
    linea: str | None = None
    categoria: str | None = None
    id_detalle: int | None = None


@dataclass
class AuditEntry:
    id: int
    timestamp: str
    category: str
    message: str
    details: str | None = None
