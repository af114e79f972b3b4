"""
History Aggregator

One time-ordered view over ICP transfers, bridge transactions and swaps.

Process:
1. Fetch remote history (GET_CROSSCHAIN_HISTORY) for the address
2. Merge with the local store by record id (more recently updated copy wins)
3. Filter by kind, sort newest first (stable), then paginate

When the remote fetch fails the local store alone is used and the error is
kept in ``last_error``. Queries never write to the store.
"""

from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from loguru import logger

from .channel import MessageChannel, MessageType
from .config import CrosschainSettings
from .errors import RemoteError
from .transaction_history import TransactionHistoryDB
from .transfer_records import TransferKind, TransferRecord, record_from_payload


class HistoryKind(str, Enum):
    ICP = 'icp'
    BRIDGE = 'bridge'
    SWAP = 'swap'
    ALL = 'all'

    def includes(self, kind: TransferKind) -> bool:
        return self == HistoryKind.ALL or self.value == kind.value


# Response keys per kind
REMOTE_KEYS = {
    TransferKind.ICP: ('icpTransfers', 'icp_transfers'),
    TransferKind.BRIDGE: ('bridgeTransactions', 'bridge_transactions'),
    TransferKind.SWAP: ('swaps',),
}


def merge_history(
    records_by_kind: Mapping[TransferKind, Sequence[TransferRecord]],
    kind: Union[HistoryKind, str] = HistoryKind.ALL,
    limit: int = 10,
    offset: int = 0
) -> List[TransferRecord]:
    """
    Merge per-kind lists into one page

    Args:
        records_by_kind: Lists keyed by TransferKind
        kind: Kind filter, applied before sorting
        limit: Page size
        offset: Records to skip after sorting

    Returns:
        Records sorted by effective timestamp, newest first
    """
    kind = HistoryKind(kind)
    if limit < 0 or offset < 0:
        raise ValueError("limit and offset must be non-negative")

    combined: List[TransferRecord] = []
    for record_kind in TransferKind:
        if kind.includes(record_kind):
            combined.extend(records_by_kind.get(record_kind, ()))

    combined = sorted(combined, key=lambda r: r.effective_timestamp, reverse=True)
    return combined[offset:offset + limit]


def merge_by_id(local: Iterable[TransferRecord], remote: Iterable[TransferRecord]) -> List[TransferRecord]:
    """Union of two lists keyed by record id; the copy changed last wins (remote on ties)"""
    merged: Dict[str, TransferRecord] = {}
    for record in local:
        merged[record.record_id] = record
    for record in remote:
        current = merged.get(record.record_id)
        if current is None or record.last_change >= current.last_change:
            merged[record.record_id] = record
    return list(merged.values())


class HistoryAggregator:
    """
    Cross-kind transfer history

    Features:
    - Remote history merged with the local record store
    - Kind filtering, stable newest-first ordering, pagination
    - Local-only fallback when the remote is unavailable
    """

    DEFAULT_LIMIT = 10

    def __init__(
        self,
        channel: Optional[MessageChannel] = None,
        store: Optional[TransactionHistoryDB] = None,
        default_limit: int = DEFAULT_LIMIT
    ):
        self.channel = channel
        self.store = store
        self.default_limit = default_limit
        self.last_error: Optional[RemoteError] = None

    @classmethod
    def from_settings(
        cls,
        settings: CrosschainSettings,
        channel: Optional[MessageChannel] = None,
        store: Optional[TransactionHistoryDB] = None
    ) -> 'HistoryAggregator':
        """Aggregator paging by settings.history_limit"""
        return cls(channel, store, default_limit=settings.history_limit)

    async def fetch_remote(self, address: Optional[str]) -> Dict[TransferKind, List[TransferRecord]]:
        """
        Fetch remote history lists

        Raises:
            RemoteError: Remote fetch failed
        """
        response = await self.channel.send(MessageType.GET_CROSSCHAIN_HISTORY, {'address': address})
        return parse_history_response(response)

    def local_records(self, kind: TransferKind, address: Optional[str]) -> List[TransferRecord]:
        if self.store is None:
            return []
        return self.store.list_records(kind=kind, address=address)

    async def get_history(
        self,
        kind: Union[HistoryKind, str] = HistoryKind.ALL,
        address: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[TransferRecord]:
        """
        Get merged history

        Args:
            kind: 'icp', 'bridge', 'swap' or 'all'
            address: Account address
            limit: Page size (default 10)
            offset: Records to skip

        Returns:
            Records, newest first
        """
        kind = HistoryKind(kind)
        limit = self.default_limit if limit is None else limit

        remote: Dict[TransferKind, List[TransferRecord]] = {}
        if self.channel is not None:
            try:
                remote = await self.fetch_remote(address)
                self.last_error = None
            except RemoteError as e:
                self.last_error = e
                logger.warning(f"History fetch failed, using local records only: {e}")

        records_by_kind = {}
        for record_kind in TransferKind:
            if not kind.includes(record_kind):
                continue
            records_by_kind[record_kind] = merge_by_id(
                self.local_records(record_kind, address),
                remote.get(record_kind, []),
            )

        page = merge_history(records_by_kind, kind=kind, limit=limit, offset=offset)
        logger.debug(f"History {kind.value}: {len(page)} record(s) (offset {offset}, limit {limit})")
        return page


def parse_history_response(response: Any) -> Dict[TransferKind, List[TransferRecord]]:
    """
    Parse a GET_CROSSCHAIN_HISTORY response

    Per-kind lists are typed by their key. A flat 'records' list is
    discriminated record by record.
    """
    result: Dict[TransferKind, List[TransferRecord]] = {kind: [] for kind in TransferKind}
    if not isinstance(response, dict):
        return result

    for kind, keys in REMOTE_KEYS.items():
        for key in keys:
            for item in response.get(key) or []:
                _append_parsed(result, item, kind)

    for item in response.get('records') or []:
        _append_parsed(result, item, None)

    return result


def _append_parsed(result: Dict[TransferKind, List[TransferRecord]], item: Any, kind: Optional[TransferKind]):
    try:
        record = record_from_payload(item, kind)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        logger.warning(f"Skipping malformed history record: {e}")
        return
    result[record.kind].append(record)
