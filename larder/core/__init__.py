"""
Core domain package.

This package contains the data-access layer: schema and migrations, the
transaction coordinator, CRUD operations, and snapshot export/import. It is
independent of any UI layer (the CLI only consumes it).

We intentionally keep exports minimal; consumers should usually import from the
specific module they need (e.g. `larder.core.store`).
"""

from __future__ import annotations

__all__: list[str] = [
    "CoreError",
    "NotFoundError",
]


class CoreError(Exception):
    """Base class for core-layer exceptions."""


class NotFoundError(CoreError):
    """Raised when a collection or index cannot be found."""
