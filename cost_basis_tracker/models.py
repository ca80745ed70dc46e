from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Dict, Any

from cost_basis_tracker.decimal_utils import decimal_to_str, parse_datetime, to_decimal


class SourceType(Enum):
    """Kind of platform a transaction was imported from."""
    EXCHANGE = "exchange"
    BLOCKCHAIN = "blockchain"


class Direction(Enum):
    IN = "in"
    OUT = "out"


class LinkType(Enum):
    EXCHANGE_TO_BLOCKCHAIN = "exchange_to_blockchain"
    BLOCKCHAIN_TO_BLOCKCHAIN = "blockchain_to_blockchain"
    EXCHANGE_TO_EXCHANGE = "exchange_to_exchange"


class LinkStatus(Enum):
    SUGGESTED = "suggested"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class LotStatus(Enum):
    """Status of a lot."""
    OPEN = "open"
    PARTIALLY_DISPOSED = "partially_disposed"
    FULLY_DISPOSED = "fully_disposed"


class GainType(Enum):
    """Capital gain type based on holding period."""
    SHORT_TERM = "Short-term"
    LONG_TERM = "Long-term"


class CostBasisMethod(Enum):
    """Lot selection method used when disposing."""
    FIFO = "fifo"
    LIFO = "lifo"
    AVERAGE_COST = "average-cost"
    SPECIFIC_ID = "specific-id"


class FeePolicy(Enum):
    """How fees paid in the transferred asset are treated."""
    DISPOSAL = "disposal"
    ADD_TO_BASIS = "add-to-basis"


class PriceSource(Enum):
    EXCHANGE_EXECUTION = "exchange-execution"
    FIAT_EXECUTION_TENTATIVE = "fiat-execution-tentative"
    DERIVED_RATIO = "derived-ratio"
    LINK_PROPAGATED = "link-propagated"
    DERIVED_HISTORY = "derived-history"
    PROVIDER = "provider"
    MANUAL = "manual"


class FeeScope(Enum):
    NETWORK = "network"
    PLATFORM = "platform"
    SPREAD = "spread"
    TAX = "tax"
    OTHER = "other"


class FeeSettlement(Enum):
    ON_CHAIN = "on-chain"
    BALANCE = "balance"
    EXTERNAL = "external"


class WarningType(Enum):
    VARIANCE = "variance"
    MISSING_PRICE = "missing-price"
    NO_TRANSFERS = "no-transfers"


LONG_TERM_HOLDING_DAYS = 365


# -----------------------------------------------------------------------------
# Prices and movements
# -----------------------------------------------------------------------------

@dataclass
class Price:
    amount: Decimal
    currency: str

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": decimal_to_str(self.amount), "currency": self.currency}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Price":
        return cls(amount=to_decimal(data["amount"]), currency=data["currency"])


@dataclass
class PriceAtTxTime:
    """A fiat price attached to a single movement or fee."""
    price: Price
    source: PriceSource
    fetched_at: datetime
    granularity: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": self.price.to_dict(),
            "source": self.source.value,
            "fetched_at": self.fetched_at.isoformat(),
            "granularity": self.granularity,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PriceAtTxTime":
        return cls(
            price=Price.from_dict(data["price"]),
            source=PriceSource(data["source"]),
            fetched_at=parse_datetime(data["fetched_at"]),
            granularity=data.get("granularity"),
        )


def _price_from_dict(data: Optional[Dict[str, Any]]) -> Optional[PriceAtTxTime]:
    return PriceAtTxTime.from_dict(data) if data else None


@dataclass
class AssetMovement:
    """One inflow or outflow of an asset within a transaction."""
    asset_id: str
    asset_symbol: str
    gross_amount: Decimal
    net_amount: Optional[Decimal] = None  # gross minus on-chain fees, when the importer knows it
    price_at_tx_time: Optional[PriceAtTxTime] = None

    @property
    def effective_amount(self) -> Decimal:
        return self.net_amount if self.net_amount is not None else self.gross_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "asset_symbol": self.asset_symbol,
            "gross_amount": decimal_to_str(self.gross_amount),
            "net_amount": decimal_to_str(self.net_amount),
            "price_at_tx_time": self.price_at_tx_time.to_dict() if self.price_at_tx_time else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssetMovement":
        net = data.get("net_amount")
        return cls(
            asset_id=data["asset_id"],
            asset_symbol=data["asset_symbol"],
            gross_amount=to_decimal(data["gross_amount"]),
            net_amount=to_decimal(net) if net is not None else None,
            price_at_tx_time=_price_from_dict(data.get("price_at_tx_time")),
        )


@dataclass
class FeeMovement:
    asset_id: str
    asset_symbol: str
    amount: Decimal
    scope: FeeScope = FeeScope.NETWORK
    settlement: FeeSettlement = FeeSettlement.ON_CHAIN
    price_at_tx_time: Optional[PriceAtTxTime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "asset_symbol": self.asset_symbol,
            "amount": decimal_to_str(self.amount),
            "scope": self.scope.value,
            "settlement": self.settlement.value,
            "price_at_tx_time": self.price_at_tx_time.to_dict() if self.price_at_tx_time else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeeMovement":
        return cls(
            asset_id=data["asset_id"],
            asset_symbol=data["asset_symbol"],
            amount=to_decimal(data["amount"]),
            scope=FeeScope(data.get("scope", FeeScope.NETWORK.value)),
            settlement=FeeSettlement(data.get("settlement", FeeSettlement.ON_CHAIN.value)),
            price_at_tx_time=_price_from_dict(data.get("price_at_tx_time")),
        )


@dataclass
class BlockchainInfo:
    name: str
    transaction_hash: str
    is_confirmed: bool = True


@dataclass
class Transaction:
    """A normalized transaction from an exchange or blockchain import."""
    id: int
    external_id: str
    source: str  # e.g. 'kraken', 'bitcoin'
    source_type: SourceType
    timestamp: datetime
    inflows: List[AssetMovement] = field(default_factory=list)
    outflows: List[AssetMovement] = field(default_factory=list)
    fees: List[FeeMovement] = field(default_factory=list)
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    blockchain: Optional[BlockchainInfo] = None

    @property
    def date(self) -> str:
        return self.timestamp.strftime('%Y-%m-%d %H:%M:%S')

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "source": self.source,
            "source_type": self.source_type.value,
            "timestamp": self.timestamp.isoformat(),
            "inflows": [m.to_dict() for m in self.inflows],
            "outflows": [m.to_dict() for m in self.outflows],
            "fees": [f.to_dict() for f in self.fees],
            "from_address": self.from_address,
            "to_address": self.to_address,
            "blockchain": {
                "name": self.blockchain.name,
                "transaction_hash": self.blockchain.transaction_hash,
                "is_confirmed": self.blockchain.is_confirmed,
            } if self.blockchain else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        chain = data.get("blockchain")
        return cls(
            id=int(data["id"]),
            external_id=data.get("external_id") or f"{data['source']}-{data['id']}",
            source=data["source"],
            source_type=SourceType(data["source_type"]),
            timestamp=parse_datetime(data["timestamp"]),
            inflows=[AssetMovement.from_dict(m) for m in data.get("inflows") or []],
            outflows=[AssetMovement.from_dict(m) for m in data.get("outflows") or []],
            fees=[FeeMovement.from_dict(f) for f in data.get("fees") or []],
            from_address=data.get("from_address"),
            to_address=data.get("to_address"),
            blockchain=BlockchainInfo(
                name=chain["name"],
                transaction_hash=chain["transaction_hash"],
                is_confirmed=chain.get("is_confirmed", True),
            ) if chain else None,
        )


# -----------------------------------------------------------------------------
# Matching
# -----------------------------------------------------------------------------

@dataclass
class TransactionCandidate:
    """One directional asset movement flattened out of a transaction for matching."""
    id: int  # transaction id
    external_id: str
    source_name: str
    source_type: SourceType
    timestamp: datetime
    asset_id: str
    asset_symbol: str
    amount: Decimal
    direction: Direction
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    blockchain_transaction_hash: Optional[str] = None


@dataclass
class MatchCriteria:
    asset_match: bool
    amount_similarity: Decimal
    timing_valid: bool
    timing_hours: float
    address_match: Optional[bool] = None
    hash_match: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_match": self.asset_match,
            "amount_similarity": decimal_to_str(self.amount_similarity),
            "timing_valid": self.timing_valid,
            # inf is not valid JSON
            "timing_hours": None if self.timing_hours == float("inf") else self.timing_hours,
            "address_match": self.address_match,
            "hash_match": self.hash_match,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MatchCriteria":
        hours = data.get("timing_hours")
        return cls(
            asset_match=data["asset_match"],
            amount_similarity=to_decimal(data["amount_similarity"]),
            timing_valid=data["timing_valid"],
            timing_hours=float("inf") if hours is None else float(hours),
            address_match=data.get("address_match"),
            hash_match=data.get("hash_match"),
        )


@dataclass
class PotentialMatch:
    source: TransactionCandidate
    target: TransactionCandidate
    confidence_score: Decimal
    match_criteria: MatchCriteria
    link_type: LinkType

    @property
    def is_hash_match(self) -> bool:
        return self.match_criteria.hash_match is True


@dataclass
class TransactionLink:
    """Durable record of a resolved source → target transfer match."""
    id: str
    source_transaction_id: int
    target_transaction_id: int
    asset_symbol: str
    source_asset_id: str
    target_asset_id: str
    source_amount: Decimal
    target_amount: Decimal
    link_type: LinkType
    confidence_score: Decimal
    match_criteria: MatchCriteria
    status: LinkStatus
    created_at: datetime
    updated_at: datetime
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_transaction_id": self.source_transaction_id,
            "target_transaction_id": self.target_transaction_id,
            "asset_symbol": self.asset_symbol,
            "source_asset_id": self.source_asset_id,
            "target_asset_id": self.target_asset_id,
            "source_amount": decimal_to_str(self.source_amount),
            "target_amount": decimal_to_str(self.target_amount),
            "link_type": self.link_type.value,
            "confidence_score": decimal_to_str(self.confidence_score),
            "match_criteria": self.match_criteria.to_dict(),
            "status": self.status.value,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionLink":
        reviewed_at = data.get("reviewed_at")
        return cls(
            id=data["id"],
            source_transaction_id=int(data["source_transaction_id"]),
            target_transaction_id=int(data["target_transaction_id"]),
            asset_symbol=data["asset_symbol"],
            source_asset_id=data["source_asset_id"],
            target_asset_id=data["target_asset_id"],
            source_amount=to_decimal(data["source_amount"]),
            target_amount=to_decimal(data["target_amount"]),
            link_type=LinkType(data["link_type"]),
            confidence_score=to_decimal(data["confidence_score"]),
            match_criteria=MatchCriteria.from_dict(data["match_criteria"]),
            status=LinkStatus(data["status"]),
            reviewed_by=data.get("reviewed_by"),
            reviewed_at=parse_datetime(reviewed_at) if reviewed_at else None,
            metadata=dict(data.get("metadata") or {}),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
        )


# -----------------------------------------------------------------------------
# Lots
# -----------------------------------------------------------------------------

@dataclass
class AcquisitionLot:
    """A quantity of an asset acquired at a known unit cost."""
    id: str
    calculation_id: str
    acquisition_transaction_id: int
    asset_id: str
    asset_symbol: str
    quantity: Decimal
    cost_basis_per_unit: Decimal
    total_cost_basis: Decimal
    acquisition_date: datetime
    method: CostBasisMethod
    remaining_quantity: Decimal
    status: LotStatus
    created_at: datetime
    updated_at: datetime

    @property
    def cost_basis_remaining(self) -> Decimal:
        """Cost basis attributable to the remaining quantity."""
        return self.remaining_quantity * self.cost_basis_per_unit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "calculation_id": self.calculation_id,
            "acquisition_transaction_id": self.acquisition_transaction_id,
            "asset_id": self.asset_id,
            "asset_symbol": self.asset_symbol,
            "quantity": decimal_to_str(self.quantity),
            "cost_basis_per_unit": decimal_to_str(self.cost_basis_per_unit),
            "total_cost_basis": decimal_to_str(self.total_cost_basis),
            "acquisition_date": self.acquisition_date.isoformat(),
            "method": self.method.value,
            "remaining_quantity": decimal_to_str(self.remaining_quantity),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class DisposalRequest:
    transaction_id: int
    asset_symbol: str
    quantity: Decimal
    date: datetime
    proceeds_per_unit: Decimal


@dataclass
class LotDisposal:
    """Records how much of a lot was consumed by a disposal."""
    id: str
    lot_id: str
    disposal_transaction_id: int
    quantity_disposed: Decimal
    proceeds_per_unit: Decimal
    total_proceeds: Decimal
    cost_basis_per_unit: Decimal
    total_cost_basis: Decimal
    gain_loss: Decimal
    disposal_date: datetime
    holding_period_days: int

    @property
    def gain_type(self) -> GainType:
        if self.holding_period_days > LONG_TERM_HOLDING_DAYS:
            return GainType.LONG_TERM
        return GainType.SHORT_TERM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "lot_id": self.lot_id,
            "disposal_transaction_id": self.disposal_transaction_id,
            "quantity_disposed": decimal_to_str(self.quantity_disposed),
            "proceeds_per_unit": decimal_to_str(self.proceeds_per_unit),
            "total_proceeds": decimal_to_str(self.total_proceeds),
            "cost_basis_per_unit": decimal_to_str(self.cost_basis_per_unit),
            "total_cost_basis": decimal_to_str(self.total_cost_basis),
            "gain_loss": decimal_to_str(self.gain_loss),
            "disposal_date": self.disposal_date.isoformat(),
            "holding_period_days": self.holding_period_days,
            "gain_type": self.gain_type.value,
        }


@dataclass
class LotTransfer:
    """Cost basis carried from a source lot across a transaction link."""
    id: str
    calculation_id: str
    source_lot_id: str
    link_id: str
    quantity_transferred: Decimal
    cost_basis_per_unit: Decimal
    source_transaction_id: int
    target_transaction_id: int
    transfer_date: datetime
    created_at: datetime
    metadata: Optional[Dict[str, Decimal]] = None  # {"crypto_fee_usd_value": ...}

    @property
    def crypto_fee_usd_value(self) -> Optional[Decimal]:
        if not self.metadata:
            return None
        return self.metadata.get("crypto_fee_usd_value")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "calculation_id": self.calculation_id,
            "source_lot_id": self.source_lot_id,
            "link_id": self.link_id,
            "quantity_transferred": decimal_to_str(self.quantity_transferred),
            "cost_basis_per_unit": decimal_to_str(self.cost_basis_per_unit),
            "source_transaction_id": self.source_transaction_id,
            "target_transaction_id": self.target_transaction_id,
            "transfer_date": self.transfer_date.isoformat(),
            "metadata": {k: decimal_to_str(v) for k, v in self.metadata.items()} if self.metadata else None,
            "created_at": self.created_at.isoformat(),
        }


# -----------------------------------------------------------------------------
# Processing support
# -----------------------------------------------------------------------------

@dataclass
class VarianceTolerance:
    """Warn/error thresholds, in percent, for transfer amount variance."""
    warn: Decimal
    error: Decimal


@dataclass
class ProcessingWarning:
    """A soft problem found during processing; the computation still proceeds."""
    type: WarningType
    data: Dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        details = ", ".join(f"{k}={v}" for k, v in self.data.items())
        return f"{self.type.value}: {details}"
