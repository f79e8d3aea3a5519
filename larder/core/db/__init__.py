"""
Internal DB subpackage for Larder.

This package splits the store into focused units (models, key/record codec,
schema/migrations, and the transaction coordinator) while keeping `Database`
in `larder.core.store` as the single public interface the rest of the codebase
imports.

Re-exports here are primarily for convenience inside the `core` package.
"""

from __future__ import annotations

# Models / DTOs
from .models import CollectionSchema, DatabaseSchema, IndexSchema, KeyPolicy, UpdateResult

# Schema / migrations
from .schema import DEFAULT_SCHEMA, SCHEMA_VERSION, ensure_schema, migrate

# Transactions
from .transaction import (
    BarrierOutcome,
    CollectionHandle,
    CompletionBarrier,
    IndexHandle,
    Transaction,
    TransactionCoordinator,
    TransactionMode,
)

__all__ = [
    # models
    "CollectionSchema",
    "DatabaseSchema",
    "IndexSchema",
    "KeyPolicy",
    "UpdateResult",
    # schema
    "DEFAULT_SCHEMA",
    "SCHEMA_VERSION",
    "ensure_schema",
    "migrate",
    # transactions
    "BarrierOutcome",
    "CollectionHandle",
    "CompletionBarrier",
    "IndexHandle",
    "Transaction",
    "TransactionCoordinator",
    "TransactionMode",
]
