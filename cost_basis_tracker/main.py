#!/usr/bin/env python3
"""
Crypto Cost Basis Tracker

Builds tax lots from normalized exchange and blockchain transactions:
- Links withdrawals to their deposits across platforms
- Infers missing prices from trades and transfer links
- Calculates lots, disposals and lot transfers (FIFO, LIFO, average cost)
"""

import argparse

from cost_basis_tracker.clients.coingecko import CoinGeckoPriceClient
from cost_basis_tracker.clients.json_store import JsonLedgerStore
from cost_basis_tracker.config import TrackerSettings
from cost_basis_tracker.models import CostBasisMethod
from cost_basis_tracker.trackers.linking_tracker import LinkingTracker
from cost_basis_tracker.trackers.lot_tracker import LotTracker
from cost_basis_tracker.trackers.price_tracker import PriceTracker


def run():
    parser = argparse.ArgumentParser(
        description='Crypto Cost Basis Tracker',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Link, price and calculate in one go
  python -m cost_basis_tracker.main --mode auto

  # Only find transfer links
  python -m cost_basis_tracker.main --mode link

  # Price movements, falling back to CoinGecko for what inference cannot price
  python -m cost_basis_tracker.main --mode prices --with-provider-prices

  # Calculate cost basis with LIFO against a specific ledger
  python -m cost_basis_tracker.main --mode cost-basis --method lifo --ledger ~/taxes/2025.json
        """
    )

    parser.add_argument(
        '--mode',
        choices=['auto', 'link', 'prices', 'cost-basis'],
        default='auto',
        help='''Mode of operation:
            auto - Link, price, then calculate cost basis (default)
            link - Find withdrawal/deposit links
            prices - Infer and fetch missing prices
            cost-basis - Calculate lots, disposals and transfers
        '''
    )

    parser.add_argument(
        '--method',
        choices=[m.value for m in CostBasisMethod if m != CostBasisMethod.SPECIFIC_ID],
        default=None,
        help='Cost basis method (default: COST_BASIS_METHOD, or fifo)'
    )

    parser.add_argument(
        '--ledger',
        type=str,
        default=None,
        help='Path to the JSON ledger (default: LEDGER_PATH, or ledger.json)'
    )

    parser.add_argument(
        '--with-provider-prices',
        action='store_true',
        help='Fetch prices from CoinGecko for movements inference cannot price'
    )

    args = parser.parse_args()

    ledger_path = args.ledger or TrackerSettings().ledger_path
    print(f"Opening ledger {ledger_path}...")
    store = JsonLedgerStore(ledger_path)

    if args.mode in ('auto', 'link'):
        LinkingTracker(store, store).run()

    if args.mode in ('auto', 'prices'):
        price_client = None
        if args.with_provider_prices:
            print("Initializing CoinGecko API client...")
            price_client = CoinGeckoPriceClient()
        PriceTracker(store, store, price_client=price_client).run()

    if args.mode in ('auto', 'cost-basis'):
        LotTracker(store, store, store).run(method=args.method)

    print("\n✓ Done!")


if __name__ == "__main__":
    run()
