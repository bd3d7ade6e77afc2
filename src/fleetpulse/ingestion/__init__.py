"""Ingestion layer.

This package contains adapters that turn bulk-read rows and live channel
notifications into normalized change events.
"""

__all__: list[str] = []
