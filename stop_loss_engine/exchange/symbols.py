"""Symbol conversion between market-data (Binance) and exchange (CoinDCX) names."""


def to_exchange_pair(symbol: str, margin_currency: str = "USDT") -> str:
    """``BTCUSDT`` -> ``B-BTC_USDT``."""
    base = symbol.upper().split(margin_currency)[0]
    return f"B-{base}_{margin_currency}"


def from_exchange_pair(pair: str) -> str:
    """``B-BTC_USDT`` -> ``BTCUSDT``."""
    return pair.replace("B-", "", 1).replace("_", "")


def pair_matches(position_pair: str, symbol: str, margin_currency: str = "USDT") -> bool:
    """True if an exchange position pair refers to ``symbol``."""
    return position_pair in (to_exchange_pair(symbol, margin_currency), symbol.upper())
