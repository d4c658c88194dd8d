"""
Cards feature: persistence of the cards the pipeline enriches.

Public API:
    from features.cards import CardStore, InMemoryCardStore, PostgresCardStore
    from features.cards import db as card_db
"""

from features.cards.db import PostgresCardStore
from features.cards.store import (
    CardStore,
    InMemoryCardStore,
    cleanup_cutoff,
    is_cleanup_eligible,
    is_missing_ai,
)

__all__ = [
    "CardStore",
    "InMemoryCardStore",
    "PostgresCardStore",
    "cleanup_cutoff",
    "is_cleanup_eligible",
    "is_missing_ai",
]
