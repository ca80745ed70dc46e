FIAT_CURRENCIES = frozenset({
    "USD", "EUR", "GBP", "CAD", "AUD", "JPY", "CHF", "CNY", "NZD", "SEK",
    "NOK", "DKK", "SGD", "HKD", "KRW", "INR", "BRL", "MXN", "ZAR", "TRY",
    "PLN", "CZK", "HUF", "ILS", "AED", "SAR", "THB", "PHP", "IDR", "MYR",
})

STABLECOINS = frozenset({
    "USDT", "USDC", "DAI", "BUSD", "TUSD", "USDP", "GUSD", "PYUSD", "FDUSD",
    "USDD", "FRAX", "LUSD", "EURC", "EURT",
})

USD = "USD"


def is_fiat(symbol: str) -> bool:
    return symbol.upper() in FIAT_CURRENCIES


def is_stablecoin(symbol: str) -> bool:
    return symbol.upper() in STABLECOINS


def is_fiat_or_stablecoin(symbol: str) -> bool:
    return is_fiat(symbol) or is_stablecoin(symbol)
