from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from tarjadb.core.errors import TarjaDbError
from tarjadb.data.db import Db
from tarjadb.data.tarja_repository import TarjaRepository
from tarjadb.importer.orchestrator import run_import
from tarjadb.logging_conf import configure_logging
from tarjadb.settings import Settings

logger = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tarjadb", description="Base de datos de tarjas de packing")
    parser.add_argument("--db", type=Path, default=None, help="Ruta del archivo SQLite")
    parser.add_argument("--backup-dir", type=Path, default=None, help="Carpeta para backups previos a migrar")
    parser.add_argument("--log-level", type=str, default=None)

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Crear o migrar el esquema y mostrar la versión")

    p_import = sub.add_parser("import", help="Importar los CSV de referencia de una carpeta")
    p_import.add_argument("--path", type=Path, default=None, help="Carpeta con los CSV")
    p_import.add_argument("--force", action="store_true", help="Importar aunque el hash no haya cambiado")

    sub.add_parser("migrate", help="Forzar la migración preservando ids")

    p_export = sub.add_parser("export-resumen", help="Exportar el resumen de tarjas a CSV")
    p_export.add_argument("--out", type=Path, required=True)
    p_export.add_argument("--status", choices=("pendiente", "enviado"), default=None)
    p_export.add_argument("--desde", type=str, default=None, help="Fecha inicial (YYYY-MM-DD o DD-MM-YYYY)")
    p_export.add_argument("--hasta", type=str, default=None, help="Fecha final (YYYY-MM-DD o DD-MM-YYYY)")
    return parser


def open_db(settings: Settings) -> Db:
    db = Db(settings.db_path, backup_dir=settings.backup_dir)
    outcome = db.ensure_schema()
    if outcome.fallback:
        # Data was discarded; the only copy left is the backup (if any).
        print(
            f"ATENCIÓN: la migración {outcome.old_version} -> {outcome.new_version} falló y la base "
            f"se recreó vacía. Backup: {outcome.backup_path or 'no disponible'}",
            file=sys.stderr,
        )
    return db


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    settings = Settings.from_env().with_overrides(
        db_path=args.db,
        backup_dir=args.backup_dir,
        log_level=args.log_level,
        import_dir=getattr(args, "path", None),
    )
    configure_logging(settings.log_level)

    try:
        db = open_db(settings)

        if args.command == "init":
            print(f"Esquema listo en {db.path} (versión {db.schema_version()})")
        elif args.command == "import":
            print(run_import(db, settings.import_dir, force=args.force))
        elif args.command == "migrate":
            outcome = db.force_migrate_preserve_ids()
            if outcome.fallback:
                print(f"Migración fallida, base recreada vacía: {outcome.error}", file=sys.stderr)
                return 1
            print(f"Migración completada (versión {outcome.new_version})")
        elif args.command == "export-resumen":
            out = TarjaRepository(db).export_resumen_csv(
                args.out, status=args.status, desde=args.desde, hasta=args.hasta
            )
            print(f"Resumen exportado a {out}")
    except TarjaDbError as exc:
        logger.error("%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
