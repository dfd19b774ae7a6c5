from __future__ import annotations

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class ImportSession:
    """State shared by the table importers of one import run.

    Holds the id remapping ``table -> csv id -> db id`` built while catalogs merge onto
    existing rows, so later files that reference the CSV id land on the surviving row.
    """

    id_map: dict[str, dict[int, int]] = field(default_factory=dict)

    def register_mapping(self, table: str, csv_id: int, db_id: int) -> None:
        key = table.upper()
        previous = self.id_map.setdefault(key, {}).get(int(csv_id))
        if previous is not None and previous != int(db_id):
            logger.warning("%s: id CSV %s ya mapeado a %s; se reemplaza por %s", table, csv_id, previous, db_id)
        self.id_map[key][int(csv_id)] = int(db_id)

    def mapped_id(self, table: str, csv_id: int) -> int | None:
        return self.id_map.get(table.upper(), {}).get(int(csv_id))

    def mapping_count(self) -> int:
        return sum(len(m) for m in self.id_map.values())

    def snapshot(self) -> dict[str, dict[int, int]]:
        return {table: dict(m) for table, m in self.id_map.items()}

    def restore(self, snapshot: dict[str, dict[int, int]]) -> None:
        """Drop mappings registered by a file whose transaction was rolled back."""
        self.id_map = {table: dict(m) for table, m in snapshot.items()}
