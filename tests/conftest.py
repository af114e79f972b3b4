"""
Test Configuration
==================
Shared fixtures for the crosschain transfer core.

Everything runs in-process:
- ScriptedRemote answers channel messages from per-type scripts
- ScriptedObserver answers confirmation counts from a list
- TransactionHistoryDB runs on ':memory:'
"""

import copy
from decimal import Decimal
from typing import Any, Dict, List

import pytest

from crosschain_transfer.channel import CallbackTransport, MessageChannel, MessageType
from crosschain_transfer.config import CrosschainSettings
from crosschain_transfer.confirmation_tracker import ChainObserver
from crosschain_transfer.route_catalog import RouteCatalog
from crosschain_transfer.route_selector import RouteSelector
from crosschain_transfer.transaction_history import TransactionHistoryDB
from crosschain_transfer.transfer_engine import TransferLifecycleManager
from crosschain_transfer.transfer_records import (
    BridgeTransaction,
    ICPTransfer,
    Route,
    RouteStep,
    SwapTransaction,
    TransactionStatus,
)


# ============================================================================
# TEST DOUBLES
# ============================================================================


class ScriptedRemote:
    """
    Remote execution environment double

    Responses are queued per message type. The last queued response keeps
    answering once the queue is down to one entry. Exceptions in the script
    are raised, which the transport answers as {error}.
    """

    def __init__(self):
        self.scripts: Dict[str, List[Any]] = {}
        self.calls: List[tuple] = []

    def script(self, message_type, *responses):
        key = message_type.value if isinstance(message_type, MessageType) else message_type
        self.scripts.setdefault(key, []).extend(responses)

    def calls_of(self, message_type) -> List[dict]:
        key = message_type.value if isinstance(message_type, MessageType) else message_type
        return [data for kind, data in self.calls if kind == key]

    async def handle(self, message_type: str, data: dict):
        self.calls.append((message_type, data))
        queue = self.scripts.get(message_type)
        if not queue:
            raise RuntimeError(f"No scripted response for {message_type}")

        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(data)
        return response


class ScriptedObserver(ChainObserver):
    """Chain observer answering from a list of counts, reports or exceptions"""

    def __init__(self, values):
        self.values = list(values)
        self.calls = 0

    async def get_confirmations(self, chain, tx_hash):
        self.calls += 1
        value = self.values.pop(0) if len(self.values) > 1 else self.values[0]
        if isinstance(value, Exception):
            raise value
        return value


class RecordFactory:
    """Builders for records used across tests"""

    @staticmethod
    def icp(tx_hash='0xicp', timestamp=100, status=TransactionStatus.PENDING, **kwargs):
        return ICPTransfer(
            tx_hash=tx_hash,
            source_chain=kwargs.pop('source_chain', 'chain-a'),
            target_chain=kwargs.pop('target_chain', 'chain-b'),
            status=status,
            timestamp=timestamp,
            **kwargs
        )

    @staticmethod
    def bridge(record_id='br-1', created_at=300, status=TransactionStatus.PENDING, **kwargs):
        return BridgeTransaction(
            id=record_id,
            provider=kwargs.pop('provider', 'p1'),
            from_chain=kwargs.pop('from_chain', 'chain-a'),
            to_chain=kwargs.pop('to_chain', 'chain-b'),
            from_asset='usdx',
            to_asset='usdx',
            from_amount=Decimal('10'),
            to_amount=Decimal('9.5'),
            source_tx_hash=kwargs.pop('source_tx_hash', f'0x{record_id}'),
            status=status,
            created_at=created_at,
            updated_at=kwargs.pop('updated_at', created_at),
            **kwargs
        )

    @staticmethod
    def swap(record_id='sw-1', created_at=200, status=TransactionStatus.PENDING, transactions=None, **kwargs):
        return SwapTransaction(
            id=record_id,
            from_chain='chain-a',
            to_chain='chain-b',
            from_asset='usdx',
            to_asset='weth',
            from_amount=Decimal('10'),
            to_amount=Decimal('0.004'),
            route=two_hop_route(),
            status=status,
            created_at=created_at,
            updated_at=kwargs.pop('updated_at', created_at),
            transactions=transactions or [],
            **kwargs
        )


def two_hop_route() -> Route:
    """chain-a/usdx → bridge → chain-b/usdx → swap → chain-b/weth"""
    steps = [
        RouteStep(
            type='bridge', provider='p1',
            from_chain='chain-a', to_chain='chain-b',
            from_asset='usdx', to_asset='usdx',
            from_amount=Decimal('10'), to_amount=Decimal('9.5'),
            fee=Decimal('0.5'), fee_usd=Decimal('0.5'), estimated_time=15,
        ),
        RouteStep(
            type='swap', provider='dex',
            from_chain='chain-b', to_chain='chain-b',
            from_asset='usdx', to_asset='weth',
            from_amount=Decimal('9.5'), to_amount=Decimal('0.004'),
            fee=Decimal('0.03'), fee_usd=Decimal('0.03'), estimated_time=1,
        ),
    ]
    return Route(
        type='complex',
        from_chain='chain-a', to_chain='chain-b',
        from_asset='usdx', to_asset='weth',
        from_amount=Decimal('10'), to_amount=Decimal('0.004'),
        path=steps,
        fee_usd=Decimal('0.53'), total_cost=Decimal('0.53'), estimated_time=16,
    )


CATALOG_DATA = {
    'chains': [
        {'id': 'chain-a', 'name': 'Chain A', 'native_symbol': 'AAA'},
        {'id': 'chain-b', 'name': 'Chain B', 'native_symbol': 'BBB'},
        {'id': 'chain-c', 'name': 'Chain C', 'native_symbol': 'CCC', 'is_testnet': True},
    ],
    'tokens': [
        {
            'id': 'usdx', 'symbol': 'USDX', 'decimals': 6,
            'networks': ['chain-a', 'chain-b'],
            'balance_by_chain': {'chain-a': '100'},
        },
        {
            'id': 'weth', 'symbol': 'WETH', 'decimals': 18,
            'networks': ['chain-a', 'chain-b', 'chain-c'],
            'balance_by_chain': {'chain-a': '5', 'chain-c': '2'},
        },
    ],
    'providers': [
        {
            'id': 'p1', 'name': 'Provider One',
            'supported_routes': [
                {'source_chain': 'chain-a', 'destination_chain': 'chain-b', 'tokens': ['usdx', 'weth']},
            ],
            'fee_by_token': {'usdx': '0.5', 'weth': '0.001'},
            'estimated_time': [
                {'source_chain': 'chain-a', 'destination_chain': 'chain-b', 'minutes': 15},
            ],
        },
        {
            'id': 'p2', 'name': 'Provider Two',
            'supported_routes': [
                {'source_chain': 'chain-a', 'destination_chain': 'chain-c', 'tokens': ['weth']},
            ],
            'fee_by_token': {'weth': '0.002'},
            'estimated_time': [
                {'source_chain': 'chain-a', 'destination_chain': 'chain-c', 'minutes': 30},
            ],
        },
        {
            'id': 'p3', 'name': 'Provider Three',
            'supported_routes': [
                {'source_chain': 'chain-b', 'destination_chain': 'chain-a', 'tokens': ['usdx']},
                {'source_chain': 'chain-c', 'destination_chain': 'chain-a', 'tokens': ['weth']},
            ],
            'fee_by_token': {'usdx': '1'},
            'estimated_time': [
                {'source_chain': 'chain-b', 'destination_chain': 'chain-a', 'minutes': 20},
                {'source_chain': 'chain-c', 'destination_chain': 'chain-a', 'minutes': 25},
            ],
        },
    ],
}


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def catalog_data():
    return copy.deepcopy(CATALOG_DATA)


@pytest.fixture
def catalog(catalog_data):
    return RouteCatalog.from_dict(catalog_data)


@pytest.fixture
def selector(catalog):
    return RouteSelector(catalog)


@pytest.fixture
def remote():
    return ScriptedRemote()


@pytest.fixture
def channel(remote):
    return MessageChannel(CallbackTransport(remote.handle), timeout=1.0)


@pytest.fixture
def store():
    db = TransactionHistoryDB(':memory:')
    yield db
    db.close()


@pytest.fixture
def fast_settings():
    return CrosschainSettings(
        status_initial_delay=0.0,
        status_poll_interval=0.01,
        confirmation_poll_interval=0.01,
        request_timeout=1.0,
        database_path=':memory:',
    )


@pytest.fixture
def manager(channel, store, selector, fast_settings):
    return TransferLifecycleManager(channel, store=store, selector=selector, settings=fast_settings)


@pytest.fixture
def factory():
    return RecordFactory


@pytest.fixture
def route():
    return two_hop_route()


@pytest.fixture
def scripted_observer():
    return ScriptedObserver
