"""Supported assets and the unit constants shared by the ledger."""

from decimal import Decimal
from typing import Dict, Optional

BTC = "BTC"

SATS_PER_BTC = 100_000_000
# Non-BTC holdings are stored with 8 decimal places: 1 share/ounce = 1e8 units.
UNITS_PER_ASSET = 100_000_000

STARTING_BALANCE_SATS = SATS_PER_BTC
LOCK_PERIOD_HOURS = 24

TROY_OUNCE_GRAMS = Decimal("31.1035")

# Last-resort quotes when neither a live source nor the snapshot cache answers
DEFAULT_PRICES_USD: Dict[str, Decimal] = {
    BTC: Decimal("115000"),
    "AAPL": Decimal("175.50"),
    "TSLA": Decimal("248.30"),
    "MSFT": Decimal("378.20"),
    "GOOGL": Decimal("138.45"),
    "AMZN": Decimal("145.80"),
    "NVDA": Decimal("485.60"),
    "SPY": Decimal("450.00"),
    "VNQ": Decimal("95.00"),
    "XAU": Decimal("2700"),
    "XAG": Decimal("32"),
    "WTI": Decimal("75"),
}

# symbol -> (name, category)
ASSET_CATALOGUE: Dict[str, tuple] = {
    "BTC": ("Bitcoin", "Cryptocurrency"),
    "XAU": ("Gold", "Precious Metals"),
    "XAG": ("Silver", "Precious Metals"),
    "SPY": ("SPDR S&P 500 ETF", "Stock Indices"),
    "QQQ": ("Invesco QQQ Trust", "Stock Indices"),
    "VTI": ("Vanguard Total Stock Market ETF", "Stock Indices"),
    "EFA": ("iShares MSCI EAFE ETF", "International"),
    "VXUS": ("Vanguard Total International Stock ETF", "International"),
    "EWU": ("iShares MSCI United Kingdom ETF", "International"),
    "AAPL": ("Apple Inc.", "Technology"),
    "MSFT": ("Microsoft Corporation", "Technology"),
    "GOOGL": ("Alphabet Inc.", "Technology"),
    "AMZN": ("Amazon.com, Inc.", "Technology"),
    "TSLA": ("Tesla, Inc.", "Technology"),
    "META": ("Meta Platforms, Inc.", "Technology"),
    "NVDA": ("NVIDIA Corporation", "Technology"),
    "JNJ": ("Johnson & Johnson", "Healthcare"),
    "V": ("Visa Inc.", "Finance"),
    "WMT": ("Walmart Inc.", "Consumer"),
    "BRK-B": ("Berkshire Hathaway Inc.", "Finance"),
    "VNQ": ("Vanguard Real Estate ETF", "Real Estate"),
    "VNO": ("Vornado Realty Trust", "Real Estate"),
    "PLD": ("Prologis, Inc.", "Real Estate"),
    "EQIX": ("Equinix, Inc.", "Real Estate"),
    "TLT": ("iShares 20+ Year Treasury Bond ETF", "Bonds"),
    "HYG": ("iShares iBoxx High Yield Corporate Bond ETF", "Bonds"),
    "WTI": ("Crude Oil (WTI)", "Commodities"),
    "WEAT": ("Teucrium Wheat Fund", "Commodities"),
    "CPER": ("United States Copper Index Fund", "Commodities"),
    "DBA": ("Invesco DB Agriculture Fund", "Commodities"),
    "UNG": ("United States Natural Gas Fund", "Commodities"),
    "URA": ("Global X Uranium ETF", "Commodities"),
}

# Yahoo Finance tickers for symbols that are not quoted under their own name.
YAHOO_SYMBOLS: Dict[str, str] = {
    "XAG": "SI=F",
    "WTI": "CL=F",
}


def normalize_symbol(symbol: Optional[str]) -> str:
    return (symbol or "").strip().upper()


def is_supported(symbol: str) -> bool:
    return normalize_symbol(symbol) in ASSET_CATALOGUE
