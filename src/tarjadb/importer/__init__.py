"""CSV import engine.

Reads the reference-data exports in a folder, reconciles them against what the database
already holds, and reports per-file results.
"""

from tarjadb.importer.orchestrator import ImportOrchestrator, compute_folder_hash, run_import
from tarjadb.importer.resolver import NaturalKeyResolver
from tarjadb.importer.session import ImportSession

__all__ = [
    "ImportOrchestrator",
    "ImportSession",
    "NaturalKeyResolver",
    "compute_folder_hash",
    "run_import",
]
