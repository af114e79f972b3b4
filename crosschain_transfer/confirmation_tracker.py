"""
Confirmation Tracker

Polls the inclusion depth of one on-chain transaction and declares it final
once the confirmation count reaches the threshold.

States:
- UNCONFIRMED: polling, count below threshold
- FINAL: count >= threshold (terminal)
- FAILED: observer reported an explicit failure (terminal)
- CANCELLED: stopped by cancel() or timeout, no terminal notification

Exactly one terminal notification is emitted per tracker.
"""

import asyncio
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Union

from loguru import logger

from .channel import MessageChannel, MessageType
from .transfer_records import TransactionStatus, get_field, parse_status


class ConfirmationState(str, Enum):
    UNCONFIRMED = 'UNCONFIRMED'
    FINAL = 'FINAL'
    FAILED = 'FAILED'
    CANCELLED = 'CANCELLED'


@dataclass
class ConfirmationReport:
    """One observation of a transaction"""
    confirmations: int
    failed: bool = False
    error: Optional[str] = None


@dataclass
class ConfirmationEvent:
    """Terminal notification"""
    chain: str
    tx_hash: str
    state: ConfirmationState
    confirmations: int
    error: Optional[str] = None


class ChainObserver:
    """Reports confirmation counts; subclasses talk to a real source"""

    async def get_confirmations(self, chain: str, tx_hash: str) -> Union[ConfirmationReport, int]:
        raise NotImplementedError


class ChannelChainObserver(ChainObserver):
    """Observer backed by GET_TRANSACTION_CONFIRMATIONS"""

    def __init__(self, channel: MessageChannel):
        self.channel = channel

    async def get_confirmations(self, chain: str, tx_hash: str) -> ConfirmationReport:
        response = await self.channel.send(
            MessageType.GET_TRANSACTION_CONFIRMATIONS,
            {'chain': chain, 'txHash': tx_hash}
        )
        if not isinstance(response, dict):
            return ConfirmationReport(confirmations=int(response or 0))

        status = get_field(response, 'status')
        failed = bool(get_field(response, 'failed', False))
        if status is not None and not failed:
            parsed = parse_status(status, default=TransactionStatus.PENDING)
            failed = parsed in (TransactionStatus.FAILED, TransactionStatus.REJECTED)

        return ConfirmationReport(
            confirmations=int(get_field(response, 'confirmations', 0) or 0),
            failed=failed,
            error=get_field(response, 'error_message') or get_field(response, 'reason'),
        )


TerminalCallback = Callable[[ConfirmationEvent], Any]


class ConfirmationTracker:
    """
    Confirmation poller for one transaction

    Features:
    - Configurable threshold (default 12) and interval (default 3s)
    - Observer errors are logged and the poll retried
    - Optional wall-clock timeout
    - Single terminal notification (FINAL or FAILED)
    """

    DEFAULT_THRESHOLD = 12
    DEFAULT_POLL_INTERVAL_SECONDS = 3.0

    def __init__(
        self,
        observer: ChainObserver,
        chain: str,
        tx_hash: str,
        threshold: int = DEFAULT_THRESHOLD,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        timeout: Optional[float] = None,
        on_terminal: Optional[TerminalCallback] = None,
        on_progress: Optional[Callable[[int], Any]] = None
    ):
        """
        Initialize tracker

        Args:
            observer: Source of confirmation counts
            chain: Chain the transaction lives on
            tx_hash: Transaction hash
            threshold: Confirmations required for finality
            poll_interval: Seconds between polls
            timeout: Give up after this many seconds (None = never)
            on_terminal: Called once with the terminal ConfirmationEvent
            on_progress: Called with the count after every successful poll
        """
        if threshold < 1:
            raise ValueError(f"threshold must be >= 1, got {threshold}")

        self.observer = observer
        self.chain = chain
        self.tx_hash = tx_hash
        self.threshold = threshold
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.on_terminal = on_terminal
        self.on_progress = on_progress

        self.state = ConfirmationState.UNCONFIRMED
        self.confirmations = 0
        self.polls = 0
        self.event: Optional[ConfirmationEvent] = None
        self.timed_out = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_done(self) -> bool:
        return self.state != ConfirmationState.UNCONFIRMED

    def start(self) -> asyncio.Task:
        """Start polling in the background"""
        if self._task is None:
            logger.info(f"Tracking confirmations for {self.tx_hash} on {self.chain} (threshold {self.threshold})")
            self._task = asyncio.create_task(self.run())
        return self._task

    async def wait(self) -> Optional[ConfirmationEvent]:
        """Wait for the tracker to stop; returns the terminal event if any"""
        task = self.start()
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        return self.event

    def cancel(self):
        """Stop polling without a terminal notification"""
        if self.is_done:
            return
        self.state = ConfirmationState.CANCELLED
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.info(f"Stopped tracking {self.tx_hash}")

    async def run(self):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout if self.timeout is not None else None

        while not self.is_done:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Confirmation check failed for {self.tx_hash}, retrying: {e}")

            if self.is_done:
                break

            if deadline is not None and loop.time() >= deadline:
                self.timed_out = True
                self.state = ConfirmationState.CANCELLED
                logger.warning(f"⚠ Confirmation tracking timed out for {self.tx_hash} after {self.timeout}s")
                break

            await asyncio.sleep(self.poll_interval)

    async def poll_once(self) -> ConfirmationState:
        """Ask the observer once and advance the state machine"""
        if self.is_done:
            return self.state

        report = await self.observer.get_confirmations(self.chain, self.tx_hash)
        if not isinstance(report, ConfirmationReport):
            report = ConfirmationReport(confirmations=int(report))

        # The tracker may have been cancelled while the observer was answering
        if self.is_done:
            return self.state

        self.polls += 1
        self.confirmations = report.confirmations
        logger.debug(f"{self.tx_hash}: {self.confirmations}/{self.threshold} confirmations")

        if self.on_progress is not None:
            await _maybe_await(self.on_progress(self.confirmations))

        if report.failed:
            await self._finish(ConfirmationState.FAILED, report.error or "Transaction failed")
        elif self.confirmations >= self.threshold:
            await self._finish(ConfirmationState.FINAL)

        return self.state

    async def _finish(self, state: ConfirmationState, error: Optional[str] = None):
        if self.is_done:
            return
        self.state = state
        self.event = ConfirmationEvent(
            chain=self.chain,
            tx_hash=self.tx_hash,
            state=state,
            confirmations=self.confirmations,
            error=error,
        )

        if state == ConfirmationState.FINAL:
            logger.info(f"✓ {self.tx_hash} final after {self.confirmations} confirmations")
        else:
            logger.error(f"✗ {self.tx_hash} failed: {error}")

        if self.on_terminal is not None:
            await _maybe_await(self.on_terminal(self.event))


async def _maybe_await(result: Any):
    if inspect.isawaitable(result):
        await result
