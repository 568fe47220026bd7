"""Candle storage, gap analysis, fetching and persistence."""

from backfill.data.database import CandleDatabase
from backfill.data.fetcher import RetryingFetcher
from backfill.data.gaps import GapAnalyzer
from backfill.data.persister import BatchPersister
from backfill.data.store import CandleStore

__all__ = [
    "BatchPersister",
    "CandleDatabase",
    "CandleStore",
    "GapAnalyzer",
    "RetryingFetcher",
]
