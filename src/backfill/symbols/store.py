"""SQLite persistence for known symbols."""

from backfill.data.database import CandleDatabase
from backfill.models import SymbolRecord, now_ms


def _row_to_symbol(row: tuple) -> SymbolRecord:
    return SymbolRecord(
        symbol=row[0],
        base_asset=row[1],
        quote_asset=row[2],
        is_active=bool(row[3]),
        updated_at_ms=row[4],
    )


class SymbolStore:
    """Read/write access to the symbols table."""

    def __init__(self, database: CandleDatabase) -> None:
        self._database = database

    async def get(self, symbol: str) -> SymbolRecord | None:
        cursor = await self._database.db.execute(
            "SELECT symbol, base_asset, quote_asset, is_active, updated_at_ms "
            "FROM symbols WHERE symbol = ?",
            (symbol,),
        )
        row = await cursor.fetchone()
        return _row_to_symbol(row) if row else None

    async def upsert(self, record: SymbolRecord) -> None:
        """Insert or replace a symbol, stamping updated_at_ms."""
        record.updated_at_ms = now_ms()
        async with self._database.transaction() as db:
            await db.execute(
                "INSERT INTO symbols (symbol, base_asset, quote_asset, is_active, updated_at_ms) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(symbol) DO UPDATE SET "
                "base_asset = excluded.base_asset, "
                "quote_asset = excluded.quote_asset, "
                "is_active = excluded.is_active, "
                "updated_at_ms = excluded.updated_at_ms",
                (
                    record.symbol,
                    record.base_asset,
                    record.quote_asset,
                    int(record.is_active),
                    record.updated_at_ms,
                ),
            )

    async def list_symbols(self, active_only: bool = False) -> list[SymbolRecord]:
        query = "SELECT symbol, base_asset, quote_asset, is_active, updated_at_ms FROM symbols"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY symbol"
        cursor = await self._database.db.execute(query)
        return [_row_to_symbol(row) for row in await cursor.fetchall()]
