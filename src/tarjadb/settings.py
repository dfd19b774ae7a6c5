from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    db_path: Path
    import_dir: Path
    backup_dir: Path | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        db_path = Path(os.environ.get("TARJADB_DB") or default_db_path())
        import_dir = Path(os.environ.get("TARJADB_IMPORT_DIR") or default_import_dir())
        log_level = os.environ.get("TARJADB_LOG_LEVEL") or "INFO"
        return cls(db_path=db_path, import_dir=import_dir, log_level=log_level)

    def with_overrides(self, **changes) -> Settings:
        """Return a copy with every non-None keyword applied (argparse leaves unset flags as None)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def default_db_path() -> Path:
    # Fixed, repo-local database location (keeps paths stable across machines).
    return Path("db") / "bd_tarja.db"


def default_import_dir() -> Path:
    return Path("import")
