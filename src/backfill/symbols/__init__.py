"""Symbol registration and per-symbol data status."""

from backfill.symbols.registry import SymbolRegistry
from backfill.symbols.status import ActiveJobLookup, SymbolStatus, SymbolStatusService
from backfill.symbols.store import SymbolStore

__all__ = [
    "ActiveJobLookup",
    "SymbolRegistry",
    "SymbolStatus",
    "SymbolStatusService",
    "SymbolStore",
]
