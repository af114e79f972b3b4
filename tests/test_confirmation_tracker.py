"""
Confirmation Tracker Tests
==========================
Finality threshold, failure reports, retries, cancellation and timeout.

Test Cases:
1. FINAL exactly when the count reaches the threshold
2. Exactly one terminal notification
3. Observer errors are retried
4. cancel() and timeout stop without notification
5. Channel-backed observer
"""

import asyncio

import pytest

from crosschain_transfer.channel import MessageType
from crosschain_transfer.confirmation_tracker import (
    ChannelChainObserver,
    ConfirmationReport,
    ConfirmationState,
    ConfirmationTracker,
)


def make_tracker(observer, events=None, **kwargs):
    kwargs.setdefault('poll_interval', 0.01)
    return ConfirmationTracker(
        observer,
        'chain-a',
        '0xabc',
        on_terminal=events.append if events is not None else None,
        **kwargs
    )


# ═══════════════════════════════════════════════════════════════════════════
# FINALITY
# ═══════════════════════════════════════════════════════════════════════════


class TestFinality:
    """Threshold and terminal notification."""

    @pytest.mark.asyncio
    async def test_final_exactly_at_threshold(self, scripted_observer):
        observer = scripted_observer(list(range(0, 15)))
        events = []
        tracker = make_tracker(observer, events, threshold=12)

        for expected in range(12):
            assert await tracker.poll_once() == ConfirmationState.UNCONFIRMED
            assert tracker.confirmations == expected

        assert await tracker.poll_once() == ConfirmationState.FINAL
        assert tracker.confirmations == 12
        assert len(events) == 1
        assert events[0].state == ConfirmationState.FINAL

    @pytest.mark.asyncio
    async def test_no_polls_after_terminal(self, scripted_observer):
        observer = scripted_observer([12, 13, 14])
        events = []
        tracker = make_tracker(observer, events, threshold=12)

        await tracker.poll_once()
        await tracker.poll_once()

        assert observer.calls == 1
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_run_until_final(self, scripted_observer):
        observer = scripted_observer([1, 5, 11, 12])
        progress = []
        tracker = make_tracker(observer, threshold=12, on_progress=progress.append)

        event = await asyncio.wait_for(tracker.wait(), timeout=2.0)

        assert event.state == ConfirmationState.FINAL
        assert event.confirmations == 12
        assert progress == [1, 5, 11, 12]
        assert tracker.polls == 4

    @pytest.mark.asyncio
    async def test_explicit_failure(self, scripted_observer):
        observer = scripted_observer([2, ConfirmationReport(3, failed=True, error='reverted')])
        events = []
        tracker = make_tracker(observer, events, threshold=12)

        event = await asyncio.wait_for(tracker.wait(), timeout=2.0)

        assert event.state == ConfirmationState.FAILED
        assert event.error == 'reverted'
        assert tracker.state == ConfirmationState.FAILED
        assert events == [event]

    @pytest.mark.asyncio
    async def test_async_terminal_callback(self, scripted_observer):
        seen = []

        async def on_terminal(event):
            seen.append(event.state)

        tracker = ConfirmationTracker(scripted_observer([3]), 'chain-a', '0xabc', threshold=3,
                                      poll_interval=0.01, on_terminal=on_terminal)
        await asyncio.wait_for(tracker.wait(), timeout=2.0)

        assert seen == [ConfirmationState.FINAL]

    def test_threshold_must_be_positive(self, scripted_observer):
        with pytest.raises(ValueError):
            ConfirmationTracker(scripted_observer([0]), 'chain-a', '0xabc', threshold=0)


# ═══════════════════════════════════════════════════════════════════════════
# RETRY, CANCEL, TIMEOUT
# ═══════════════════════════════════════════════════════════════════════════


class TestStopping:
    """Errors, cancellation and timeouts."""

    @pytest.mark.asyncio
    async def test_observer_errors_are_retried(self, scripted_observer):
        observer = scripted_observer([RuntimeError('rpc down'), RuntimeError('rpc down'), 12])
        tracker = make_tracker(observer, threshold=12)

        event = await asyncio.wait_for(tracker.wait(), timeout=2.0)

        assert event.state == ConfirmationState.FINAL
        assert observer.calls == 3
        assert tracker.polls == 1

    @pytest.mark.asyncio
    async def test_cancel_stops_without_notification(self, scripted_observer):
        events = []
        tracker = make_tracker(scripted_observer([1]), events, threshold=12)

        tracker.start()
        await asyncio.sleep(0.05)
        tracker.cancel()
        result = await tracker.wait()

        assert result is None
        assert tracker.state == ConfirmationState.CANCELLED
        assert events == []

    @pytest.mark.asyncio
    async def test_cancel_after_final_is_noop(self, scripted_observer):
        tracker = make_tracker(scripted_observer([12]), threshold=12)
        await tracker.wait()

        tracker.cancel()

        assert tracker.state == ConfirmationState.FINAL

    @pytest.mark.asyncio
    async def test_timeout(self, scripted_observer):
        events = []
        tracker = make_tracker(scripted_observer([1]), events, threshold=12, timeout=0.05)

        result = await asyncio.wait_for(tracker.wait(), timeout=2.0)

        assert result is None
        assert tracker.timed_out
        assert tracker.state == ConfirmationState.CANCELLED
        assert events == []


# ═══════════════════════════════════════════════════════════════════════════
# CHANNEL OBSERVER
# ═══════════════════════════════════════════════════════════════════════════


class TestChannelObserver:
    """GET_TRANSACTION_CONFIRMATIONS-backed observer."""

    @pytest.mark.asyncio
    async def test_counts_from_channel(self, channel, remote):
        remote.script(MessageType.GET_TRANSACTION_CONFIRMATIONS, {'confirmations': 4}, {'confirmations': 12})
        tracker = make_tracker(ChannelChainObserver(channel), threshold=12)

        event = await asyncio.wait_for(tracker.wait(), timeout=2.0)

        assert event.state == ConfirmationState.FINAL
        sent = remote.calls_of(MessageType.GET_TRANSACTION_CONFIRMATIONS)
        assert sent[0] == {'chain': 'chain-a', 'txHash': '0xabc'}
        assert len(sent) == 2

    @pytest.mark.asyncio
    async def test_failed_status_from_channel(self, channel):
        observer = ChannelChainObserver(channel)
        channel.transport.handler = _answer({'confirmations': 2, 'status': 'failed', 'reason': 'out of gas'})

        report = await observer.get_confirmations('chain-a', '0xabc')

        assert report == ConfirmationReport(confirmations=2, failed=True, error='out of gas')


def _answer(response):
    async def handler(message_type, data):
        return response
    return handler
