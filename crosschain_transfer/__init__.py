"""
Crosschain Transfer Core

Orchestrates cross-chain transfers between blockchains.

Components:
- route_catalog: Chains, tokens, bridge providers and route legality
- route_selector: Cascading source/destination/token/provider selection
- route_composer: Multi-hop route discovery and ranking
- transfer_engine: ICP transfer, bridge and swap lifecycle management
- confirmation_tracker: Confirmation polling and finality
- history_aggregator: Merged, time-ordered transfer history
- transaction_history: SQLite-based record store
- catalog_config_parser: Excel to catalog YAML parser

Lifecycle:
1. Validation - Nothing is sent for an invalid request
2. Submission - Remote accepts the transfer
3. Pending - Record created and persisted
4. Tracking - Status refresh and confirmation polling
5. Terminal - CONFIRMED, FAILED or REJECTED, never left again
"""

from .errors import (
    ChannelTimeoutError,
    ConfigError,
    CrosschainError,
    RemoteError,
    RouteCompositionError,
    StateInconsistencyError,
    ValidationError,
    ValidationErrors,
)
from .config import (
    CrosschainSettings,
    load_settings,
)
from .channel import (
    CallbackTransport,
    MessageChannel,
    MessageType,
    QueueTransport,
)
from .transfer_records import (
    BridgeTransaction,
    HopTransaction,
    ICPTransfer,
    Route,
    RouteStep,
    SwapTransaction,
    TransactionStatus,
    TransferKind,
    record_from_payload,
)
from .route_catalog import (
    Chain,
    Provider,
    RouteCatalog,
    Token,
)
from .route_selector import (
    PendingSelection,
    RouteSelector,
)
from .route_composer import (
    BridgeQuote,
    RouteComposer,
    RouteOptions,
    RouteRequest,
)
from .transfer_engine import (
    BridgeTransferRequest,
    ICPTransferRequest,
    SwapRequest,
    TransferLifecycleManager,
    graceful_shutdown,
)
from .confirmation_tracker import (
    ChainObserver,
    ChannelChainObserver,
    ConfirmationState,
    ConfirmationTracker,
)
from .history_aggregator import (
    HistoryAggregator,
    HistoryKind,
)
from .transaction_history import (
    TransactionHistoryDB,
)
from .catalog_config_parser import (
    CatalogConfigParser,
)

__all__ = [
    # Errors
    'ChannelTimeoutError',
    'ConfigError',
    'CrosschainError',
    'RemoteError',
    'RouteCompositionError',
    'StateInconsistencyError',
    'ValidationError',
    'ValidationErrors',

    # Configuration
    'CrosschainSettings',
    'load_settings',
    'CatalogConfigParser',

    # Channel
    'CallbackTransport',
    'MessageChannel',
    'MessageType',
    'QueueTransport',

    # Records
    'BridgeTransaction',
    'HopTransaction',
    'ICPTransfer',
    'Route',
    'RouteStep',
    'SwapTransaction',
    'TransactionStatus',
    'TransferKind',
    'record_from_payload',

    # Route selection
    'Chain',
    'Provider',
    'RouteCatalog',
    'Token',
    'PendingSelection',
    'RouteSelector',
    'BridgeQuote',
    'RouteComposer',
    'RouteOptions',
    'RouteRequest',

    # Lifecycle
    'BridgeTransferRequest',
    'ICPTransferRequest',
    'SwapRequest',
    'TransferLifecycleManager',
    'graceful_shutdown',

    # Confirmation tracking
    'ChainObserver',
    'ChannelChainObserver',
    'ConfirmationState',
    'ConfirmationTracker',

    # History
    'HistoryAggregator',
    'HistoryKind',
    'TransactionHistoryDB',
]

__version__ = '1.0.0'
__author__ = 'Crosschain Transfer Core'
__description__ = 'Cross-chain transfer orchestration with confirmation tracking'
