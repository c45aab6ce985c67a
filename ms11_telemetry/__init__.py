"""MS11 telemetry ingestion and query server."""

__version__ = "1.0.0"
