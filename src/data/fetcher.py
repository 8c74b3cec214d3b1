"""
Yahoo Finance data fetcher.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Optional

import yfinance as yf

logger = logging.getLogger(__name__)

# Yahoo recommendationKey -> dashboard rating
RATING_MAP = {
    "strong_buy": "buy",
    "buy": "buy",
    "hold": "hold",
    "underperform": "sell",
    "sell": "sell",
    "strong_sell": "sell",
}


@dataclass
class MarketQuote:
    """Current quote and analyst data for one symbol."""

    symbol: str
    current_price: float
    previous_close: Optional[float] = None
    rating: Optional[str] = None
    target_price: Optional[float] = None
    pe_ratio: Optional[float] = None
    earnings_date: Optional[str] = None  # YYYY-MM-DD
    timestamp: Optional[datetime] = None


def normalize_rating(recommendation_key: Optional[str]) -> Optional[str]:
    if not recommendation_key:
        return None
    return RATING_MAP.get(recommendation_key.lower())


def _next_earnings_date(calendar: Any, today: date) -> Optional[str]:
    """Pick the first upcoming earnings date from a yfinance calendar."""
    if not isinstance(calendar, dict):
        return None
    dates = calendar.get("Earnings Date") or []
    if not isinstance(dates, (list, tuple)):
        dates = [dates]

    upcoming = []
    for value in dates:
        if isinstance(value, datetime):
            value = value.date()
        if isinstance(value, date) and value >= today:
            upcoming.append(value)
    return min(upcoming).isoformat() if upcoming else None


class MarketDataFetcher:
    """Fetches quotes and analyst consensus from Yahoo Finance."""

    def get_quote(self, symbol: str) -> MarketQuote:
        """
        Fetch current quote data.

        Args:
            symbol: Stock symbol (e.g., "AAPL")

        Returns:
            MarketQuote with price, rating, target and earnings info

        Raises:
            ValueError: If symbol is invalid or data unavailable
        """
        ticker = yf.Ticker(symbol)
        info = ticker.info

        if not info or "regularMarketPrice" not in info and "previousClose" not in info:
            raise ValueError(f"Invalid symbol or no data available: {symbol}")

        # Use regularMarketPrice if available, otherwise fall back to previousClose
        current_price = info.get("regularMarketPrice")
        if current_price is None:
            current_price = info.get("previousClose")

        if current_price is None:
            raise ValueError(f"Invalid symbol or no data available: {symbol}")

        try:
            calendar = ticker.calendar
        except Exception as e:
            # Calendar is optional; many tickers have none
            logger.debug(f"No earnings calendar for {symbol}: {e}")
            calendar = None

        now = datetime.now()
        return MarketQuote(
            symbol=symbol,
            current_price=current_price,
            previous_close=info.get("previousClose"),
            rating=normalize_rating(info.get("recommendationKey")),
            target_price=info.get("targetMeanPrice"),
            pe_ratio=info.get("trailingPE"),
            earnings_date=_next_earnings_date(calendar, now.date()),
            timestamp=now,
        )
