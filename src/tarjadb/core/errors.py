from __future__ import annotations


class TarjaDbError(Exception):
    """Base class for errors raised by tarjadb."""


class SchemaVersionError(TarjaDbError):
    """The database file was written by a newer schema than this code knows."""

    def __init__(self, stored: int, current: int) -> None:
        super().__init__(f"versión de esquema {stored} es más nueva que la soportada ({current})")
        self.stored = stored
        self.current = current


class MigrationError(TarjaDbError):
    """A rename-swap migration step failed; the caller falls back to an empty schema."""

    def __init__(self, message: str, *, table: str | None = None) -> None:
        super().__init__(message)
        self.table = table


class ImportFolderError(TarjaDbError):
    """The source folder for a CSV import does not exist or is not a directory."""


class TarjaValidationError(TarjaDbError, ValueError):
    """Invalid input for a transactional tarja write (encabezado/detalle)."""
