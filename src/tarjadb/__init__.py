"""tarjadb: CSV catalog import and schema migration for the tarja packing database."""

__version__ = "0.3.0"
