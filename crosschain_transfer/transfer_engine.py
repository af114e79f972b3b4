"""
Transfer Lifecycle Manager

Submits ICP transfers, bridge transactions and swaps, and tracks each record
to a terminal state:
1. Local validation (nothing is sent on failure)
2. Remote submission
3. Record created in PENDING and persisted
4. Status updates from refresh polls or confirmation tracking
5. Terminal state: CONFIRMED, FAILED or REJECTED (never left again)
"""

import asyncio
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

from loguru import logger

from .channel import MessageChannel, MessageType
from .config import CrosschainSettings
from .confirmation_tracker import (
    ChainObserver,
    ChannelChainObserver,
    ConfirmationEvent,
    ConfirmationState,
    ConfirmationTracker,
)
from .errors import (
    RemoteError,
    RouteCompositionError,
    StateInconsistencyError,
    ValidationError,
    ValidationErrors,
)
from .route_selector import PendingSelection, RouteSelector
from .transaction_history import TransactionHistoryDB
from .transfer_records import (
    BridgeTransaction,
    HopTransaction,
    ICPTransfer,
    Route,
    SwapTransaction,
    TransactionStatus,
    TransferKind,
    TransferRecord,
    get_field,
    has_field,
    now_ms,
    parse_status,
    reconcile_swap_status,
    same_asset,
    to_decimal,
)


STATUS_MESSAGES = {
    TransferKind.ICP: MessageType.GET_ICP_TRANSFER_STATUS,
    TransferKind.BRIDGE: MessageType.GET_BRIDGE_TRANSACTION_STATUS,
    TransferKind.SWAP: MessageType.GET_SWAP_STATUS,
}


async def graceful_shutdown(manager: 'TransferLifecycleManager', timeout: float = 15.0):
    """
    Stop monitors and trackers, then close the channel and store

    Args:
        manager: TransferLifecycleManager instance to shutdown
        timeout: Maximum time to wait for shutdown (seconds)

    Example:
        manager = TransferLifecycleManager(channel)
        try:
            # ... use manager ...
        finally:
            await graceful_shutdown(manager)
    """
    logger.info("Starting graceful shutdown...")
    try:
        await asyncio.wait_for(manager.close(), timeout=timeout)
        logger.info("✓ Graceful shutdown complete")
    except asyncio.TimeoutError:
        logger.warning(f"Shutdown timeout after {timeout}s, forcing cleanup")
        for task in manager.background_tasks():
            task.cancel()


def _require(errors: List[ValidationError], value: Any, field: str, message: str):
    if value is None or value == '':
        errors.append(ValidationError(field, message))


def _check_amount(errors: List[ValidationError], amount: Any, field: str = 'amount'):
    try:
        value = to_decimal(amount)
    except ValueError:
        errors.append(ValidationError(field, 'Invalid amount'))
        return
    if value is None:
        errors.append(ValidationError(field, 'Amount is required'))
    elif value <= 0:
        errors.append(ValidationError(field, 'Amount must be greater than 0'))


@dataclass
class ICPTransferRequest:
    """Direct inter-chain-protocol transfer request"""
    source_chain: str
    target_chain: str
    from_address: str
    to_address: str
    asset: str
    amount: Decimal

    def validate(self):
        errors: List[ValidationError] = []
        _require(errors, self.source_chain, 'source_chain', 'Source chain is required')
        _require(errors, self.target_chain, 'target_chain', 'Target chain is required')
        if self.source_chain and self.source_chain == self.target_chain:
            errors.append(ValidationError('target_chain', 'Source and target chains must be different'))
        _require(errors, self.from_address, 'from_address', 'Sender address is required')
        _require(errors, self.to_address, 'to_address', 'Recipient address is required')
        _require(errors, self.asset, 'asset', 'Asset is required')
        _check_amount(errors, self.amount)
        if errors:
            raise ValidationErrors(errors)

    def to_payload(self) -> Dict[str, Any]:
        return {
            'sourceChain': self.source_chain,
            'targetChain': self.target_chain,
            'fromAddress': self.from_address,
            'toAddress': self.to_address,
            'asset': self.asset,
            'amount': str(self.amount),
        }


@dataclass
class BridgeTransferRequest:
    """Provider-mediated bridge transfer request"""
    provider: str
    from_chain: str
    to_chain: str
    from_address: str
    to_address: str
    asset: str
    amount: Decimal

    @classmethod
    def from_selection(
        cls,
        selection: PendingSelection,
        from_address: str,
        to_address: str
    ) -> 'BridgeTransferRequest':
        return cls(
            provider=selection.provider,
            from_chain=selection.source_chain,
            to_chain=selection.destination_chain,
            from_address=from_address,
            to_address=to_address,
            asset=selection.token,
            amount=selection.amount_decimal if selection.amount_decimal is not None else selection.amount,
        )

    def to_selection(self) -> PendingSelection:
        return PendingSelection(
            source_chain=self.from_chain,
            destination_chain=self.to_chain,
            token=self.asset,
            provider=self.provider,
            amount='' if self.amount is None else str(self.amount),
        )

    def validate(self):
        errors: List[ValidationError] = []
        _require(errors, self.provider, 'provider', 'Bridge provider is required')
        _require(errors, self.from_chain, 'from_chain', 'Source chain is required')
        _require(errors, self.to_chain, 'to_chain', 'Destination chain is required')
        if self.from_chain and self.from_chain == self.to_chain:
            errors.append(ValidationError('to_chain', 'Source and destination chains must be different'))
        _require(errors, self.from_address, 'from_address', 'Sender address is required')
        _require(errors, self.to_address, 'to_address', 'Recipient address is required')
        _require(errors, self.asset, 'asset', 'Asset is required')
        _check_amount(errors, self.amount)
        if errors:
            raise ValidationErrors(errors)

    def to_payload(self) -> Dict[str, Any]:
        return {
            'provider': self.provider,
            'fromChain': self.from_chain,
            'toChain': self.to_chain,
            'fromAddress': self.from_address,
            'toAddress': self.to_address,
            'asset': self.asset,
            'amount': str(self.amount),
        }


@dataclass
class SwapRequest:
    """Multi-hop swap along a composed route"""
    from_chain: str
    to_chain: str
    from_asset: str
    to_asset: str
    amount: Decimal
    from_address: str
    to_address: str
    route: Route
    slippage: Decimal = Decimal('1')  # percent

    def validate(self):
        errors: List[ValidationError] = []
        _require(errors, self.from_chain, 'from_chain', 'Source chain is required')
        _require(errors, self.to_chain, 'to_chain', 'Destination chain is required')
        _require(errors, self.from_asset, 'from_asset', 'Source asset is required')
        _require(errors, self.to_asset, 'to_asset', 'Destination asset is required')
        _require(errors, self.from_address, 'from_address', 'Sender address is required')
        _require(errors, self.to_address, 'to_address', 'Recipient address is required')
        _check_amount(errors, self.amount)

        try:
            slippage = to_decimal(self.slippage)
        except ValueError:
            slippage = None
        if slippage is None or slippage < 0 or slippage > 100:
            errors.append(ValidationError('slippage', 'Slippage must be between 0 and 100'))

        if self.route is None:
            errors.append(ValidationError('route', 'Route is required'))

        if errors:
            raise ValidationErrors(errors)

        if not self.route.path:
            raise RouteCompositionError("Route has no steps")
        broken = self.route.first_break()
        if broken is not None:
            raise RouteCompositionError(
                f"Route breaks continuity between hop {broken} and {broken + 1}",
                route_index=broken,
            )

        first, last = self.route.path[0], self.route.path[-1]
        if first.from_chain != self.from_chain or not same_asset(first.from_asset, self.from_asset):
            raise RouteCompositionError(
                f"Route starts at {first.from_chain}/{first.from_asset}, "
                f"swap starts at {self.from_chain}/{self.from_asset}"
            )
        if last.to_chain != self.to_chain or not same_asset(last.to_asset, self.to_asset):
            raise RouteCompositionError(
                f"Route ends at {last.to_chain}/{last.to_asset}, "
                f"swap ends at {self.to_chain}/{self.to_asset}"
            )

    def to_payload(self) -> Dict[str, Any]:
        return {
            'fromChain': self.from_chain,
            'toChain': self.to_chain,
            'fromAsset': self.from_asset,
            'toAsset': self.to_asset,
            'amount': str(self.amount),
            'fromAddress': self.from_address,
            'toAddress': self.to_address,
            'slippage': str(self.slippage),
            'route': self.route.to_dict(),
        }


def apply_patch(record: TransferRecord, patch: Mapping[str, Any]) -> TransferRecord:
    """
    Merge a remote status patch into a record

    Returns the record unchanged (same object) when nothing changes, so
    applying a patch twice is the same as applying it once.

    Raises:
        StateInconsistencyError: The patch would move a terminal record
    """
    changes: Dict[str, Any] = {}

    if isinstance(record, SwapTransaction):
        # An empty or missing hop list carries no hop information
        hops = [HopTransaction.from_payload(tx) for tx in get_field(patch, 'transactions') or []]
        if hops and hops != record.transactions:
            changes['transactions'] = hops
        reported = record.status
        if has_field(patch, 'status'):
            reported = parse_status(get_field(patch, 'status'), default=record.status)
        status = reconcile_swap_status(reported, hops or record.transactions)
    elif has_field(patch, 'status'):
        status = parse_status(get_field(patch, 'status'), default=record.status)
    else:
        status = record.status

    if record.status.is_terminal and status != record.status:
        raise StateInconsistencyError(record.record_id, record.status.value, status.value)

    if status != record.status:
        changes['status'] = status

    for name in ('target_tx_hash', 'error', 'estimated_completion_time', 'completed_at'):
        if not hasattr(record, name) or not has_field(patch, name):
            continue
        value = get_field(patch, name)
        if name in ('estimated_completion_time', 'completed_at') and value is not None:
            value = int(value)
        if value != getattr(record, name):
            changes[name] = value

    if isinstance(record, (BridgeTransaction, SwapTransaction)) and has_field(patch, 'to_amount'):
        to_amount = to_decimal(get_field(patch, 'to_amount'))
        if to_amount is not None and to_amount != record.to_amount:
            changes['to_amount'] = to_amount

    if not changes:
        return record

    patch_updated = get_field(patch, 'updated_at')
    changes['updated_at'] = int(patch_updated) if patch_updated is not None else now_ms()

    final_status = changes.get('status', record.status)
    if final_status.is_terminal and 'completed_at' not in changes and record.completed_at is None:
        changes['completed_at'] = changes['updated_at']

    return replace(record, **changes)


class TransferLifecycleManager:
    """
    Lifecycle manager for ICP transfers, bridge transactions and swaps

    Features:
    - Local validation before anything is sent
    - Records persisted in TransactionHistoryDB
    - Idempotent, monotonic status merging
    - Status refresh and background monitoring
    - Confirmation tracking that finalizes records
    """

    # Status monitoring
    STATUS_INITIAL_DELAY_SECONDS = 5.0
    STATUS_POLL_INTERVAL_SECONDS = 15.0

    def __init__(
        self,
        channel: MessageChannel,
        store: Optional[TransactionHistoryDB] = None,
        selector: Optional[RouteSelector] = None,
        settings: Optional[CrosschainSettings] = None,
        observer: Optional[ChainObserver] = None
    ):
        """
        Initialize lifecycle manager

        Args:
            channel: Message channel to the remote environment
            store: Record store (defaults to settings.database_path)
            selector: Selector used to validate bridge selections against the catalog
            settings: Runtime settings
            observer: Chain observer for confirmation tracking (defaults to the channel)
        """
        self.channel = channel
        self.settings = settings or CrosschainSettings()
        self.store = store if store is not None else TransactionHistoryDB(self.settings.database_path)
        self.selector = selector
        self.observer = observer or ChannelChainObserver(channel)

        self.status_initial_delay = self.settings.status_initial_delay
        self.status_poll_interval = self.settings.status_poll_interval

        self.records: Dict[str, TransferRecord] = {}
        self.last_refresh_errors: Dict[str, RemoteError] = {}
        self._monitors: Dict[str, asyncio.Task] = {}
        self._trackers: Dict[str, ConfirmationTracker] = {}

        logger.info("Transfer lifecycle manager initialized")
        logger.info(f"  Status polling: first after {self.status_initial_delay}s, every {self.status_poll_interval}s")
        logger.info(f"  Confirmation threshold: {self.settings.confirmation_threshold}")

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get_record(self, record_id: str) -> Optional[TransferRecord]:
        record = self.records.get(record_id)
        if record is None:
            record = self.store.get_record(record_id)
            if record is not None:
                self.records[record_id] = record
        return record

    def _require_record(self, record_id: str) -> TransferRecord:
        record = self.get_record(record_id)
        if record is None:
            raise KeyError(f"Unknown transfer record: {record_id}")
        return record

    def _save(self, record: TransferRecord):
        self.records[record.record_id] = record
        self.store.save_record(record)

    def _estimated_completion(self, now: int, response: Any, minutes: Optional[int] = None) -> Optional[int]:
        if isinstance(response, dict):
            explicit = get_field(response, 'estimated_completion_time')
            if explicit is not None:
                return int(explicit)
            estimated = get_field(response, 'estimated_time')
            if estimated is not None:
                minutes = int(estimated)
        if minutes is None:
            return None
        return now + minutes * 60 * 1000

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_icp_transfer(self, request: ICPTransferRequest) -> ICPTransfer:
        """
        Submit a direct ICP transfer

        Args:
            request: Transfer request

        Returns:
            ICPTransfer in PENDING

        Raises:
            ValidationErrors: Request is invalid (nothing sent)
            RemoteError: Remote rejected the submission (no record created)
        """
        request.validate()

        logger.info(f"Submitting ICP transfer: {request.amount} {request.asset} "
                    f"{request.source_chain} → {request.target_chain}")
        try:
            response = await self.channel.send(MessageType.INITIATE_ICP_TRANSFER, request.to_payload())
        except RemoteError as e:
            logger.error(f"✗ ICP transfer submission failed: {e}")
            raise

        response = response if isinstance(response, dict) else {}
        tx_hash = get_field(response, 'tx_hash') or get_field(response, 'id')
        if not tx_hash:
            raise RemoteError("ICP transfer response has no transaction hash",
                              MessageType.INITIATE_ICP_TRANSFER.value)

        now = now_ms()
        record = ICPTransfer(
            tx_hash=str(tx_hash),
            source_chain=request.source_chain,
            target_chain=request.target_chain,
            status=TransactionStatus.PENDING,
            timestamp=now,
            asset=request.asset,
            amount=to_decimal(request.amount),
            from_address=request.from_address,
            to_address=request.to_address,
            estimated_completion_time=self._estimated_completion(now, response),
        )
        self._save(record)
        logger.info(f"✓ ICP transfer submitted: {record.tx_hash}")
        return record

    async def submit_bridge_transfer(self, request: BridgeTransferRequest) -> BridgeTransaction:
        """
        Submit a bridge transfer

        Args:
            request: Transfer request

        Returns:
            BridgeTransaction in PENDING

        Raises:
            ValidationErrors: Request or selection is invalid (nothing sent)
            RemoteError: Remote rejected the submission (no record created)
        """
        request.validate()
        if self.selector is not None:
            self.selector.validate(request.to_selection())

        logger.info(f"Submitting bridge transfer via {request.provider}: {request.amount} {request.asset} "
                    f"{request.from_chain} → {request.to_chain}")
        try:
            response = await self.channel.send(MessageType.INITIATE_BRIDGE_TRANSFER, request.to_payload())
        except RemoteError as e:
            logger.error(f"✗ Bridge transfer submission failed: {e}")
            raise

        response = response if isinstance(response, dict) else {}
        record_id = get_field(response, 'id')
        source_tx_hash = get_field(response, 'source_tx_hash') or get_field(response, 'tx_hash')
        if not record_id or not source_tx_hash:
            raise RemoteError("Bridge transfer response has no id or source transaction hash",
                              MessageType.INITIATE_BRIDGE_TRANSFER.value)

        minutes = None
        if self.selector is not None:
            minutes = self.selector.catalog.estimated_time(request.provider, request.from_chain, request.to_chain)

        now = now_ms()
        amount = to_decimal(request.amount)
        record = BridgeTransaction(
            id=str(record_id),
            provider=request.provider,
            from_chain=request.from_chain,
            to_chain=request.to_chain,
            from_asset=request.asset,
            to_asset=str(get_field(response, 'to_asset') or request.asset),
            from_amount=amount,
            to_amount=to_decimal(get_field(response, 'to_amount')) or amount,
            source_tx_hash=str(source_tx_hash),
            status=TransactionStatus.PENDING,
            created_at=now,
            updated_at=now,
            from_address=request.from_address,
            to_address=request.to_address,
            estimated_completion_time=self._estimated_completion(now, response, minutes),
        )
        self._save(record)
        logger.info(f"✓ Bridge transfer submitted: {record.id} (tx {record.source_tx_hash})")
        return record

    async def execute_swap(self, request: SwapRequest) -> SwapTransaction:
        """
        Execute a multi-hop swap

        Args:
            request: Swap request with a composed route

        Returns:
            SwapTransaction in PENDING

        Raises:
            ValidationErrors: Request is invalid (nothing sent)
            RouteCompositionError: Route breaks hop continuity (nothing sent)
            RemoteError: Remote rejected the swap (no record created)
        """
        request.validate()

        logger.info(f"Executing swap: {request.amount} {request.from_asset}@{request.from_chain} → "
                    f"{request.to_asset}@{request.to_chain} ({len(request.route.path)} hops)")
        try:
            response = await self.channel.send(MessageType.EXECUTE_SWAP, request.to_payload())
        except RemoteError as e:
            logger.error(f"✗ Swap execution failed: {e}")
            raise

        response = response if isinstance(response, dict) else {}
        record_id = get_field(response, 'id')
        if not record_id:
            raise RemoteError("Swap response has no id", MessageType.EXECUTE_SWAP.value)

        now = now_ms()
        record = SwapTransaction(
            id=str(record_id),
            from_chain=request.from_chain,
            to_chain=request.to_chain,
            from_asset=request.from_asset,
            to_asset=request.to_asset,
            from_amount=to_decimal(request.amount),
            to_amount=to_decimal(get_field(response, 'to_amount')) or request.route.to_amount,
            route=request.route,
            status=TransactionStatus.PENDING,
            created_at=now,
            updated_at=now,
            transactions=[HopTransaction.from_payload(tx) for tx in get_field(response, 'transactions') or []],
            from_address=request.from_address,
            to_address=request.to_address,
            estimated_completion_time=self._estimated_completion(now, response, request.route.estimated_time),
        )
        self._save(record)
        logger.info(f"✓ Swap submitted: {record.id}")
        return record

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def on_remote_update(self, record_id: str, patch: Mapping[str, Any]) -> TransferRecord:
        """
        Merge a status update into a record

        A patch that would move a terminal record is logged, recorded in the
        store's error table and not applied.

        Args:
            record_id: Record id (or ICP tx hash)
            patch: Status payload (snake_case or camelCase)

        Returns:
            The current record after the merge
        """
        record = self._require_record(record_id)

        try:
            updated = apply_patch(record, patch)
        except StateInconsistencyError as e:
            logger.error(f"✗ {e}")
            self.store.record_error(record_id, 'StateInconsistencyError', str(e))
            return record

        if updated is record:
            return record

        self._save(updated)
        if updated.status != record.status:
            if updated.status.is_terminal:
                logger.info(f"✓ {updated.kind.value} {record_id} reached {updated.status.value}")
            else:
                logger.info(f"{updated.kind.value} {record_id}: {record.status.value} → {updated.status.value}")
        return updated

    async def refresh_status(self, record_id: str) -> TransferRecord:
        """
        Fetch the remote status of a record and merge it

        Raises:
            RemoteError: Status fetch failed; the last-known record is kept
        """
        record = self._require_record(record_id)
        message_type = STATUS_MESSAGES[record.kind]
        payload = {'txHash': record_id} if record.kind == TransferKind.ICP else {'id': record_id}

        try:
            response = await self.channel.send(message_type, payload)
        except RemoteError as e:
            self.last_refresh_errors[record_id] = e
            self.store.record_error(record_id, type(e).__name__, e.message)
            logger.warning(f"Status refresh failed for {record_id}: {e}")
            raise

        self.last_refresh_errors.pop(record_id, None)
        return self.on_remote_update(record_id, response if isinstance(response, dict) else {})

    # ------------------------------------------------------------------
    # Background tracking
    # ------------------------------------------------------------------

    def monitor(
        self,
        record_id: str,
        on_terminal: Optional[Callable[[TransferRecord], Any]] = None
    ) -> asyncio.Task:
        """
        Poll a record's status in the background until it is terminal

        Returns:
            Monitoring task (cancel it, or call stop_monitor, to stop)
        """
        self._require_record(record_id)

        existing = self._monitors.get(record_id)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(self._monitor_loop(record_id, on_terminal))
        self._monitors[record_id] = task

        def forget(done: asyncio.Task):
            if self._monitors.get(record_id) is done:
                del self._monitors[record_id]

        task.add_done_callback(forget)
        return task

    async def _monitor_loop(self, record_id: str, on_terminal):
        logger.debug(f"Monitoring {record_id}")
        await asyncio.sleep(self.status_initial_delay)

        while True:
            record = self._require_record(record_id)
            if record.status.is_terminal:
                break

            try:
                record = await self.refresh_status(record_id)
            except asyncio.CancelledError:
                raise
            except RemoteError:
                pass  # kept in last_refresh_errors
            except Exception as e:
                logger.error(f"Error monitoring {record_id}: {e}")

            if record.status.is_terminal:
                break

            await asyncio.sleep(self.status_poll_interval)

        logger.debug(f"Stopped monitoring {record_id}: {record.status.value}")
        if on_terminal is not None:
            result = on_terminal(record)
            if asyncio.iscoroutine(result):
                await result
        return record

    def stop_monitor(self, record_id: str):
        task = self._monitors.pop(record_id, None)
        if task is not None and not task.done():
            task.cancel()

    def track_confirmations(
        self,
        record_id: str,
        observer: Optional[ChainObserver] = None,
        timeout: Optional[float] = None
    ) -> ConfirmationTracker:
        """
        Track on-chain confirmations of a record's source transaction

        FINAL marks the record CONFIRMED (for swaps, the tracked hop), FAILED
        marks it FAILED with the reported error.

        Returns:
            Started ConfirmationTracker
        """
        record = self._require_record(record_id)

        hop_index = None
        if isinstance(record, ICPTransfer):
            chain, tx_hash = record.source_chain, record.tx_hash
        elif isinstance(record, BridgeTransaction):
            chain, tx_hash = record.from_chain, record.source_tx_hash
        else:
            pending = [i for i, tx in enumerate(record.transactions) if not tx.status.is_terminal]
            if not pending:
                raise ValueError(f"Swap {record_id} has no hop transaction to track")
            hop_index = pending[0]
            chain, tx_hash = record.transactions[hop_index].chain, record.transactions[hop_index].hash

        async def finalize(event: ConfirmationEvent):
            self._trackers.pop(record_id, None)
            self._apply_confirmation(record_id, event, hop_index)

        tracker = ConfirmationTracker(
            observer or self.observer,
            chain,
            tx_hash,
            threshold=self.settings.confirmation_threshold,
            poll_interval=self.settings.confirmation_poll_interval,
            timeout=timeout,
            on_terminal=finalize,
        )
        previous = self._trackers.pop(record_id, None)
        if previous is not None:
            previous.cancel()
        self._trackers[record_id] = tracker
        tracker.start()
        return tracker

    def _apply_confirmation(self, record_id: str, event: ConfirmationEvent, hop_index: Optional[int]):
        status = TransactionStatus.CONFIRMED if event.state == ConfirmationState.FINAL else TransactionStatus.FAILED
        now = now_ms()

        if hop_index is None:
            patch = {'status': status.value, 'updated_at': now}
            if status == TransactionStatus.FAILED:
                patch['error'] = event.error
            self.on_remote_update(record_id, patch)
            return

        record = self._require_record(record_id)
        hops = [tx.to_dict() for tx in record.transactions]
        hops[hop_index]['status'] = status.value
        patch = {'transactions': hops, 'updated_at': now}
        if status == TransactionStatus.FAILED:
            patch['error'] = event.error
        self.on_remote_update(record_id, patch)

    def cancel_tracking(self, record_id: str):
        """Stop confirmation tracking without touching the record"""
        tracker = self._trackers.pop(record_id, None)
        if tracker is not None:
            tracker.cancel()

    def background_tasks(self) -> List[asyncio.Task]:
        tasks = [t for t in self._monitors.values() if not t.done()]
        tasks.extend(
            tracker._task for tracker in self._trackers.values()
            if tracker._task is not None and not tracker._task.done()
        )
        return tasks

    async def close(self):
        """Stop background work and close channel and store"""
        tasks = self.background_tasks()
        for tracker in list(self._trackers.values()):
            tracker.cancel()
        for task in list(self._monitors.values()):
            task.cancel()

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._monitors.clear()
        self._trackers.clear()

        try:
            await self.channel.close()
        except Exception as e:
            logger.debug(f"Error closing channel: {e}")

        self.store.close()
        logger.info("Transfer lifecycle manager closed")
