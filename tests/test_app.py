from __future__ import annotations

import io
import logging
import re
from pathlib import Path

import pytest

from fixtures_csv import write_folder
from tarjadb.app import build_arg_parser, main
from tarjadb.data import schema
from tarjadb.data.db import Db
from tarjadb.logging_conf import configure_logging, resolve_level


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture()
def db_path(tmp_path) -> Path:
    return Path(tmp_path) / "db" / "bd_tarja.db"


def run(db_path: Path, *args: str) -> int:
    return main(["--db", str(db_path), "--log-level", "WARNING", *args])


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_arg_parser().parse_args([])


def test_init_creates_schema(db_path, capsys):
    assert run(db_path, "init") == 0

    out = capsys.readouterr().out
    assert f"(versión {schema.SCHEMA_VERSION})" in out
    assert db_path.exists()


def test_import_then_skip(db_path, tmp_path, capsys):
    folder = write_folder(Path(tmp_path) / "import")

    assert run(db_path, "import", "--path", str(folder)) == 0
    first = capsys.readouterr().out
    assert "Resultado de importación desde:" in first
    assert Db(db_path).count_rows(schema.TABLE_TRAZABILIDAD) == 2

    assert run(db_path, "import", "--path", str(folder)) == 0
    assert "Importación omitida" in capsys.readouterr().out

    assert run(db_path, "import", "--path", str(folder), "--force") == 0
    assert "Resultado de importación desde:" in capsys.readouterr().out


def test_import_missing_folder_returns_error(db_path, tmp_path, capsys):
    assert run(db_path, "import", "--path", str(Path(tmp_path) / "no_existe")) == 2
    assert "Carpeta no encontrada" in capsys.readouterr().err


def test_import_dir_from_environment(db_path, tmp_path, monkeypatch, capsys):
    folder = write_folder(Path(tmp_path) / "desde_env")
    monkeypatch.setenv("TARJADB_IMPORT_DIR", str(folder))

    assert run(db_path, "import") == 0
    assert str(folder.resolve()) in capsys.readouterr().out


def test_migrate_reports_version(db_path, capsys):
    run(db_path, "init")
    capsys.readouterr()

    assert run(db_path, "migrate") == 0
    assert f"Migración completada (versión {schema.SCHEMA_VERSION})" in capsys.readouterr().out


def test_export_resumen(db_path, tmp_path, capsys):
    out = Path(tmp_path) / "resumen.csv"

    assert run(db_path, "export-resumen", "--out", str(out), "--desde", "01-01-2024", "--hasta", "31-01-2024") == 0
    assert "Resumen exportado a" in capsys.readouterr().out
    assert out.read_text(encoding="utf-8").startswith("Resumen Tarjas Packing\n01-01-2024 al 31-01-2024\n\n")


def test_export_resumen_bad_date_returns_error(db_path, tmp_path, capsys):
    assert run(db_path, "export-resumen", "--out", str(Path(tmp_path) / "x.csv"), "--desde", "ayer") == 2
    assert "desde inválida" in capsys.readouterr().err


@pytest.mark.parametrize(
    ("level", "expected"),
    [("debug", logging.DEBUG), (" Warning ", logging.WARNING), (logging.ERROR, logging.ERROR), ("ruido", logging.INFO)],
)
def test_resolve_level(level, expected):
    assert resolve_level(level) == expected


def test_configure_logging_uses_single_handler_with_format():
    buf = io.StringIO()
    configure_logging("INFO", stream=buf)
    configure_logging("INFO", stream=buf)

    logging.getLogger("tarjadb.importer.orchestrator").info("Importando %s", "Embalaje.csv")

    assert len(logging.getLogger().handlers) == 1
    assert re.match(
        r"\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2} \[INFO\] tarjadb\.importer\.orchestrator: Importando Embalaje\.csv$",
        buf.getvalue().strip(),
    )
