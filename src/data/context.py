"""
Builds evaluation contexts from live quotes and the last stored snapshot.
"""

from src.database.models import MarketSnapshot
from src.database.repository import NotFoundError, SnapshotRepository
from src.rules.types import EvaluationContext
from .fetcher import MarketDataFetcher


class ContextProvider:
    """
    Supplies current and previous market state for a symbol.

    Current values come from the fetcher. Previous values come from the
    snapshot saved after the last successful run; the first run for a symbol
    falls back to the quote's previous close for the price and has no
    previous rating or target price. P/E percentile is read from the
    valuation table maintained by the ingestion job.
    """

    def __init__(self, fetcher: MarketDataFetcher, snapshot_repo: SnapshotRepository):
        self.fetcher = fetcher
        self.snapshot_repo = snapshot_repo

    def build(self, symbol: str) -> tuple[EvaluationContext, MarketSnapshot]:
        """
        Returns:
            The context to evaluate and the snapshot to store once done

        Raises:
            NotFoundError: If no market data exists for the symbol
        """
        try:
            quote = self.fetcher.get_quote(symbol)
        except ValueError as e:
            raise NotFoundError(str(e)) from e

        previous = self.snapshot_repo.get(symbol)
        if previous is None:
            previous = MarketSnapshot(symbol=symbol)

        context = EvaluationContext(
            symbol=symbol,
            current_price=quote.current_price,
            previous_price=previous.price or quote.previous_close,
            current_rating=quote.rating,
            previous_rating=previous.rating,
            target_price=quote.target_price,
            previous_target_price=previous.target_price,
            pe_ratio=quote.pe_ratio,
            pe_percentile=self.snapshot_repo.get_pe_percentile(symbol),
            earnings_date=quote.earnings_date,
        )

        # Keep the last known analyst values when the feed omits them
        snapshot = MarketSnapshot(
            symbol=symbol,
            price=quote.current_price,
            rating=quote.rating or previous.rating,
            target_price=quote.target_price or previous.target_price,
            pe_ratio=quote.pe_ratio,
            earnings_date=quote.earnings_date,
        )
        return context, snapshot

    def commit(self, snapshot: MarketSnapshot) -> None:
        """Store the snapshot as the baseline for the next run."""
        self.snapshot_repo.upsert(snapshot)
