"""
Larder - a local, versioned record store for an offline-first food diary.

Larder keeps named collections of JSON-like records in SQLite, migrates the
schema additively at open time, and can export/import the whole database as a
single JSON snapshot file.
"""

__version__ = "0.1.0"
__license__ = "GPL-3.0-or-later"

from larder.core.store import Database, open_database

__all__ = ["Database", "open_database", "__version__"]
