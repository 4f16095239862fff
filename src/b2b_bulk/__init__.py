"""B2B bulk-order fulfillment: secure ingestion, batch fulfillment, audit and rollback."""

__version__ = "0.1.0"
