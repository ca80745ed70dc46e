from cost_basis_tracker.clients.price import PriceClient
from cost_basis_tracker.clients.storage import TransactionQueries, TransactionLinkQueries, LotQueries
from cost_basis_tracker.clients.coingecko import CoinGeckoPriceClient
from cost_basis_tracker.clients.json_store import JsonLedgerStore

__all__ = [
    'PriceClient',
    'TransactionQueries',
    'TransactionLinkQueries',
    'LotQueries',
    'CoinGeckoPriceClient',
    'JsonLedgerStore',
]
