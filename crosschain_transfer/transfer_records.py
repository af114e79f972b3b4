"""
Transfer Records

Data model for the three tracked transaction kinds and the routes they follow.

Records carry an explicit ``kind`` discriminant ('icp', 'bridge', 'swap').
Payloads arriving without one (remote history, legacy stores) are
discriminated structurally: ``route`` present means swap, otherwise a
source tx hash means bridge, otherwise ICP transfer.

Timestamps are integer milliseconds since the epoch, amounts are Decimal.
"""

import time
from dataclasses import dataclass, field, asdict
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional, Union

from loguru import logger


class TransactionStatus(str, Enum):
    """Lifecycle status shared by every record kind"""
    PENDING = 'PENDING'
    PROCESSING = 'PROCESSING'
    CONFIRMED = 'CONFIRMED'
    FAILED = 'FAILED'
    REJECTED = 'REJECTED'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    TransactionStatus.CONFIRMED,
    TransactionStatus.FAILED,
    TransactionStatus.REJECTED,
})

# Legacy lowercase values and provider vocabularies
STATUS_ALIASES = {
    'pending': TransactionStatus.PENDING,
    'initiated': TransactionStatus.PENDING,
    'submitted': TransactionStatus.PENDING,
    'processing': TransactionStatus.PROCESSING,
    'in progress': TransactionStatus.PROCESSING,
    'in_progress': TransactionStatus.PROCESSING,
    'confirming': TransactionStatus.PROCESSING,
    'confirmed': TransactionStatus.CONFIRMED,
    'completed': TransactionStatus.CONFIRMED,
    'success': TransactionStatus.CONFIRMED,
    'failed': TransactionStatus.FAILED,
    'rejected': TransactionStatus.REJECTED,
    'cancelled': TransactionStatus.REJECTED,
    'canceled': TransactionStatus.REJECTED,
}


class TransferKind(str, Enum):
    ICP = 'icp'
    BRIDGE = 'bridge'
    SWAP = 'swap'


def parse_status(
    value: Union[str, TransactionStatus, None],
    default: Optional[TransactionStatus] = None
) -> TransactionStatus:
    """
    Map a status string (any case, any known alias) onto TransactionStatus

    Args:
        value: Raw status value
        default: Returned for unknown values; if None, unknown values raise

    Returns:
        TransactionStatus
    """
    if isinstance(value, TransactionStatus):
        return value

    if value is not None:
        text = str(value).strip().lower()
        if text in STATUS_ALIASES:
            return STATUS_ALIASES[text]

        # Provider strings like 'bridge_completed' or 'swap failed'
        for alias, status in STATUS_ALIASES.items():
            if alias in text:
                return status

    if default is None:
        raise ValueError(f"Unknown transaction status: {value!r}")

    logger.warning(f"Unknown transaction status {value!r}, using {default.value}")
    return default


def now_ms() -> int:
    """Current time in epoch milliseconds"""
    return int(time.time() * 1000)


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse an amount; None stays None"""
    if value is None or value == '':
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e


def same_asset(a: Optional[str], b: Optional[str]) -> bool:
    """Asset names compare case-insensitively (remote symbols vs catalog ids)"""
    return (a or '').upper() == (b or '').upper()


def _camel(name: str) -> str:
    head, *rest = name.split('_')
    return head + ''.join(part.capitalize() for part in rest)


def get_field(data: Mapping[str, Any], name: str, default: Any = None) -> Any:
    """Read a field by snake_case name, accepting the camelCase wire spelling"""
    if name in data:
        return data[name]
    camel = _camel(name)
    if camel in data:
        return data[camel]
    return default


def has_field(data: Mapping[str, Any], name: str) -> bool:
    return name in data or _camel(name) in data


def _optional_int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


def _serialize(data: Dict[str, Any]) -> Dict[str, Any]:
    result = {}
    for key, value in data.items():
        if isinstance(value, Decimal):
            result[key] = str(value)
        elif isinstance(value, Enum):
            result[key] = value.value
        elif isinstance(value, dict):
            result[key] = _serialize(value)
        elif isinstance(value, list):
            result[key] = [_serialize(v) if isinstance(v, dict) else v for v in value]
        else:
            result[key] = value
    return result


@dataclass
class RouteStep:
    """One hop of a route"""
    type: str  # 'transfer', 'bridge' or 'swap'
    from_chain: str
    to_chain: str
    from_asset: str
    to_asset: str
    from_amount: Decimal
    to_amount: Decimal
    provider: Optional[str] = None
    fee: Decimal = Decimal('0')
    fee_usd: Decimal = Decimal('0')
    estimated_time: int = 0  # minutes

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> 'RouteStep':
        return cls(
            type=str(get_field(data, 'type', 'bridge')),
            from_chain=str(get_field(data, 'from_chain')),
            to_chain=str(get_field(data, 'to_chain')),
            from_asset=str(get_field(data, 'from_asset')),
            to_asset=str(get_field(data, 'to_asset')),
            from_amount=to_decimal(get_field(data, 'from_amount', '0')),
            to_amount=to_decimal(get_field(data, 'to_amount', '0')),
            provider=get_field(data, 'provider'),
            fee=to_decimal(get_field(data, 'fee', '0')) or Decimal('0'),
            fee_usd=to_decimal(get_field(data, 'fee_usd', '0')) or Decimal('0'),
            estimated_time=int(get_field(data, 'estimated_time', 0) or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class Route:
    """
    Planned hop sequence between two endpoints

    Invariant: each hop starts where the previous one ended, on the same
    chain and with the asset the previous hop produced.
    """
    from_chain: str
    to_chain: str
    from_asset: str
    to_asset: str
    from_amount: Decimal
    to_amount: Decimal
    path: List[RouteStep]
    type: str = 'bridge'  # 'direct', 'bridge', 'swap' or 'complex'
    fee_usd: Decimal = Decimal('0')
    total_cost: Decimal = Decimal('0')
    estimated_time: int = 0

    def first_break(self) -> Optional[int]:
        """Index i of the first hop pair (i, i+1) that breaks continuity"""
        for i in range(len(self.path) - 1):
            current, following = self.path[i], self.path[i + 1]
            if current.to_chain != following.from_chain:
                return i
            if current.to_asset != following.from_asset:
                return i
        return None

    def is_continuous(self) -> bool:
        return bool(self.path) and self.first_break() is None

    @property
    def providers(self) -> List[str]:
        return [step.provider for step in self.path if step.provider]

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> 'Route':
        raw_steps = get_field(data, 'path')
        if raw_steps is None:
            raw_steps = get_field(data, 'steps', [])
        steps = [RouteStep.from_payload(step) for step in raw_steps]

        first = steps[0] if steps else None
        last = steps[-1] if steps else None

        total_cost = get_field(data, 'total_cost')
        fee_usd = get_field(data, 'fee_usd')
        if fee_usd is None:
            fee_usd = sum((step.fee_usd for step in steps), Decimal('0'))
        estimated_time = get_field(data, 'estimated_time')
        if estimated_time is None:
            estimated_time = sum(step.estimated_time for step in steps)

        return cls(
            from_chain=str(get_field(data, 'from_chain', first.from_chain if first else '')),
            to_chain=str(get_field(data, 'to_chain', last.to_chain if last else '')),
            from_asset=str(get_field(data, 'from_asset', first.from_asset if first else '')),
            to_asset=str(get_field(data, 'to_asset', last.to_asset if last else '')),
            from_amount=to_decimal(get_field(data, 'from_amount', first.from_amount if first else '0')),
            to_amount=to_decimal(get_field(data, 'to_amount', last.to_amount if last else '0')),
            path=steps,
            type=str(get_field(data, 'type', 'bridge' if len(steps) == 1 else 'complex')),
            fee_usd=to_decimal(fee_usd) or Decimal('0'),
            total_cost=to_decimal(total_cost if total_cost is not None else fee_usd) or Decimal('0'),
            estimated_time=int(estimated_time or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = _serialize(asdict(self))
        data['path'] = [step.to_dict() for step in self.path]
        return data


@dataclass
class HopTransaction:
    """On-chain transaction executed for one swap hop"""
    chain: str
    hash: str
    status: TransactionStatus = TransactionStatus.PENDING

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> 'HopTransaction':
        return cls(
            chain=str(get_field(data, 'chain')),
            hash=str(get_field(data, 'hash')),
            status=parse_status(get_field(data, 'status'), default=TransactionStatus.PENDING),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class ICPTransfer:
    """Direct inter-chain-protocol transfer"""
    kind: ClassVar[TransferKind] = TransferKind.ICP

    tx_hash: str
    source_chain: str
    target_chain: str
    status: TransactionStatus
    timestamp: int
    asset: Optional[str] = None
    amount: Optional[Decimal] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    target_tx_hash: Optional[str] = None
    completed_at: Optional[int] = None
    estimated_completion_time: Optional[int] = None
    updated_at: Optional[int] = None
    error: Optional[str] = None

    @property
    def record_id(self) -> str:
        return self.tx_hash

    @property
    def effective_timestamp(self) -> int:
        return self.timestamp

    @property
    def last_change(self) -> int:
        return self.completed_at or self.updated_at or self.timestamp

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> 'ICPTransfer':
        tx_hash = get_field(data, 'tx_hash') or get_field(data, 'source_tx_hash') or get_field(data, 'id')
        return cls(
            tx_hash=str(tx_hash),
            source_chain=str(get_field(data, 'source_chain') or get_field(data, 'from_chain')),
            target_chain=str(get_field(data, 'target_chain') or get_field(data, 'to_chain')),
            status=parse_status(get_field(data, 'status'), default=TransactionStatus.PENDING),
            timestamp=int(get_field(data, 'created_at') or get_field(data, 'timestamp') or now_ms()),
            asset=get_field(data, 'asset'),
            amount=to_decimal(get_field(data, 'amount')),
            from_address=get_field(data, 'from_address'),
            to_address=get_field(data, 'to_address'),
            target_tx_hash=get_field(data, 'target_tx_hash'),
            completed_at=_optional_int(get_field(data, 'completed_at')),
            estimated_completion_time=_optional_int(get_field(data, 'estimated_completion_time')),
            updated_at=_optional_int(get_field(data, 'updated_at')),
            error=get_field(data, 'error'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = _serialize(asdict(self))
        data['kind'] = self.kind.value
        return data


@dataclass
class BridgeTransaction:
    """Asset transfer mediated by a named bridge provider"""
    kind: ClassVar[TransferKind] = TransferKind.BRIDGE

    id: str
    provider: str
    from_chain: str
    to_chain: str
    from_asset: str
    to_asset: str
    from_amount: Decimal
    to_amount: Decimal
    source_tx_hash: str
    status: TransactionStatus
    created_at: int
    updated_at: int
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    target_tx_hash: Optional[str] = None
    completed_at: Optional[int] = None
    estimated_completion_time: Optional[int] = None
    error: Optional[str] = None

    @property
    def record_id(self) -> str:
        return self.id

    @property
    def effective_timestamp(self) -> int:
        return self.created_at

    @property
    def last_change(self) -> int:
        return self.completed_at or self.updated_at or self.created_at

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> 'BridgeTransaction':
        created_at = int(get_field(data, 'created_at') or get_field(data, 'timestamp') or now_ms())
        return cls(
            id=str(get_field(data, 'id')),
            provider=str(get_field(data, 'provider')),
            from_chain=str(get_field(data, 'from_chain')),
            to_chain=str(get_field(data, 'to_chain')),
            from_asset=str(get_field(data, 'from_asset')),
            to_asset=str(get_field(data, 'to_asset') or get_field(data, 'from_asset')),
            from_amount=to_decimal(get_field(data, 'from_amount', '0')),
            to_amount=to_decimal(get_field(data, 'to_amount', '0')),
            source_tx_hash=str(get_field(data, 'source_tx_hash')),
            status=parse_status(get_field(data, 'status'), default=TransactionStatus.PENDING),
            created_at=created_at,
            updated_at=int(get_field(data, 'updated_at') or created_at),
            from_address=get_field(data, 'from_address'),
            to_address=get_field(data, 'to_address'),
            target_tx_hash=get_field(data, 'target_tx_hash'),
            completed_at=_optional_int(get_field(data, 'completed_at')),
            estimated_completion_time=_optional_int(get_field(data, 'estimated_completion_time')),
            error=get_field(data, 'error'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = _serialize(asdict(self))
        data['kind'] = self.kind.value
        return data


@dataclass
class SwapTransaction:
    """Multi-hop cross-chain exchange executed along a route"""
    kind: ClassVar[TransferKind] = TransferKind.SWAP

    id: str
    from_chain: str
    to_chain: str
    from_asset: str
    to_asset: str
    from_amount: Decimal
    to_amount: Decimal
    route: Route
    status: TransactionStatus
    created_at: int
    updated_at: int
    transactions: List[HopTransaction] = field(default_factory=list)
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    completed_at: Optional[int] = None
    estimated_completion_time: Optional[int] = None
    error: Optional[str] = None

    @property
    def record_id(self) -> str:
        return self.id

    @property
    def effective_timestamp(self) -> int:
        return self.created_at

    @property
    def last_change(self) -> int:
        return self.completed_at or self.updated_at or self.created_at

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> 'SwapTransaction':
        created_at = int(get_field(data, 'created_at') or get_field(data, 'timestamp') or now_ms())
        transactions = [HopTransaction.from_payload(tx) for tx in get_field(data, 'transactions', []) or []]
        reported = parse_status(get_field(data, 'status'), default=TransactionStatus.PENDING)
        status = reconcile_swap_status(reported, transactions)
        return cls(
            id=str(get_field(data, 'id')),
            from_chain=str(get_field(data, 'from_chain')),
            to_chain=str(get_field(data, 'to_chain')),
            from_asset=str(get_field(data, 'from_asset')),
            to_asset=str(get_field(data, 'to_asset')),
            from_amount=to_decimal(get_field(data, 'from_amount', '0')),
            to_amount=to_decimal(get_field(data, 'to_amount', '0')),
            route=Route.from_payload(get_field(data, 'route')),
            status=status,
            created_at=created_at,
            updated_at=int(get_field(data, 'updated_at') or created_at),
            transactions=transactions,
            from_address=get_field(data, 'from_address'),
            to_address=get_field(data, 'to_address'),
            completed_at=_optional_int(get_field(data, 'completed_at')),
            estimated_completion_time=_optional_int(get_field(data, 'estimated_completion_time')),
            error=get_field(data, 'error'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = _serialize(asdict(self))
        data['route'] = self.route.to_dict()
        data['transactions'] = [tx.to_dict() for tx in self.transactions]
        data['kind'] = self.kind.value
        return data


TransferRecord = Union[ICPTransfer, BridgeTransaction, SwapTransaction]

RECORD_CLASSES = {
    TransferKind.ICP: ICPTransfer,
    TransferKind.BRIDGE: BridgeTransaction,
    TransferKind.SWAP: SwapTransaction,
}


def detect_kind(data: Mapping[str, Any]) -> TransferKind:
    """
    Discriminate a record payload

    An explicit 'kind' wins. Otherwise ``route`` decides swap first, then a
    source tx hash decides bridge, and anything else is an ICP transfer.
    """
    explicit = data.get('kind')
    if explicit:
        return TransferKind(str(explicit).lower())
    if has_field(data, 'route'):
        return TransferKind.SWAP
    if has_field(data, 'source_tx_hash'):
        return TransferKind.BRIDGE
    return TransferKind.ICP


def record_from_payload(data: Mapping[str, Any], kind: Optional[TransferKind] = None) -> TransferRecord:
    """Build the right record class for a payload"""
    kind = TransferKind(kind) if kind else detect_kind(data)
    return RECORD_CLASSES[kind].from_payload(data)


def derive_swap_status(transactions: Iterable[HopTransaction]) -> TransactionStatus:
    """
    Overall swap status from its hop transactions

    FAILED if any hop failed or was rejected, CONFIRMED iff every hop is
    confirmed, PROCESSING once any hop has progressed, otherwise PENDING.
    """
    statuses = [tx.status for tx in transactions]
    if not statuses:
        return TransactionStatus.PENDING
    if any(s in (TransactionStatus.FAILED, TransactionStatus.REJECTED) for s in statuses):
        return TransactionStatus.FAILED
    if all(s == TransactionStatus.CONFIRMED for s in statuses):
        return TransactionStatus.CONFIRMED
    if any(s in (TransactionStatus.CONFIRMED, TransactionStatus.PROCESSING) for s in statuses):
        return TransactionStatus.PROCESSING
    return TransactionStatus.PENDING


def reconcile_swap_status(
    reported: TransactionStatus,
    transactions: Iterable[HopTransaction]
) -> TransactionStatus:
    """
    Swap status from a reported status and the hop transactions

    Hops decide, except that a reported FAILED or REJECTED stands while hops
    are still in flight (the swap was aborted). A reported CONFIRMED never
    outranks unconfirmed hops. Without hop information the reported status
    is kept.
    """
    transactions = list(transactions)
    if not transactions:
        return reported

    derived = derive_swap_status(transactions)
    if derived.is_terminal:
        return derived
    if reported in (TransactionStatus.FAILED, TransactionStatus.REJECTED):
        return reported
    return derived
