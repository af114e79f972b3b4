"""
Message Channel

Asynchronous request/response channel to the remote execution environment.

- Request envelope: {id, type, data}
- Response envelope: {id, data}, where data is a payload or {error}
- Responses are matched to requests by correlation id, never by arrival order
- No implicit retry; a missing response raises ChannelTimeoutError
"""

import asyncio
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from loguru import logger

from .config import CrosschainSettings
from .errors import ChannelTimeoutError, RemoteError


class MessageType(str, Enum):
    GET_BRIDGE_PROVIDERS = 'GET_BRIDGE_PROVIDERS'
    GET_BRIDGE_QUOTE = 'GET_BRIDGE_QUOTE'
    INITIATE_BRIDGE_TRANSFER = 'INITIATE_BRIDGE_TRANSFER'
    GET_BRIDGE_TRANSACTION_STATUS = 'GET_BRIDGE_TRANSACTION_STATUS'
    INITIATE_ICP_TRANSFER = 'INITIATE_ICP_TRANSFER'
    GET_ICP_TRANSFER_STATUS = 'GET_ICP_TRANSFER_STATUS'
    EXECUTE_SWAP = 'EXECUTE_SWAP'
    GET_SWAP_STATUS = 'GET_SWAP_STATUS'
    GET_SWAP_QUOTE = 'GET_SWAP_QUOTE'
    FIND_ROUTES = 'FIND_ROUTES'
    GET_CROSSCHAIN_HISTORY = 'GET_CROSSCHAIN_HISTORY'
    GET_TRANSACTION_CONFIRMATIONS = 'GET_TRANSACTION_CONFIRMATIONS'


Receiver = Callable[[Dict[str, Any]], None]
Handler = Callable[[str, Dict[str, Any]], Awaitable[Any]]


def is_error_response(data: Any) -> bool:
    """
    True for an {error} response

    Status payloads may carry an 'error' field next to their status; only a
    mapping whose sole key is 'error' is an error response, whatever its value.
    """
    return isinstance(data, dict) and 'error' in data and len(data) == 1


class Transport:
    """
    Base transport

    Subclasses deliver request envelopes and hand response envelopes to the
    bound receiver.
    """

    def __init__(self):
        self._receiver: Optional[Receiver] = None

    def bind(self, receiver: Receiver):
        self._receiver = receiver

    def _dispatch(self, envelope: Dict[str, Any]):
        if self._receiver is None:
            logger.warning(f"Transport has no receiver, dropping response {envelope.get('id')}")
            return
        self._receiver(envelope)

    async def deliver(self, envelope: Dict[str, Any]):
        raise NotImplementedError

    async def close(self):
        pass


class CallbackTransport(Transport):
    """
    In-process transport backed by an async handler

    The handler receives (message_type, data) and returns the response
    payload. An exception raised by the handler is answered as {error}.
    """

    def __init__(self, handler: Handler):
        super().__init__()
        self.handler = handler

    async def deliver(self, envelope: Dict[str, Any]):
        try:
            data = await self.handler(envelope['type'], envelope.get('data') or {})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            data = {'error': str(e)}
        self._dispatch({'id': envelope['id'], 'data': data})


class QueueTransport(Transport):
    """
    Queue-backed transport

    Requests are placed on ``outbox``; the remote side answers any of them,
    in any order, with respond() or respond_error().
    """

    def __init__(self):
        super().__init__()
        self.outbox: asyncio.Queue = asyncio.Queue()

    async def deliver(self, envelope: Dict[str, Any]):
        await self.outbox.put(envelope)

    def respond(self, request_id: str, data: Any):
        self._dispatch({'id': request_id, 'data': data})

    def respond_error(self, request_id: str, message: str):
        self._dispatch({'id': request_id, 'data': {'error': message}})


class MessageChannel:
    """
    Correlating request/response channel

    Features:
    - One future per in-flight request, keyed by correlation id
    - Per-request timeout (default from settings)
    - {error} responses raised as RemoteError with the original message
    """

    def __init__(self, transport: Transport, timeout: float = 30.0):
        """
        Initialize channel

        Args:
            transport: Transport used to reach the remote environment
            timeout: Default seconds to wait for a response
        """
        self.transport = transport
        self.timeout = timeout
        self._pending: Dict[str, asyncio.Future] = {}
        self._closed = False
        transport.bind(self.receive)

    @classmethod
    def from_settings(cls, transport: Transport, settings: CrosschainSettings) -> 'MessageChannel':
        """Channel using settings.request_timeout"""
        return cls(transport, timeout=settings.request_timeout)

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    async def send(
        self,
        message_type: Union[MessageType, str],
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Any:
        """
        Send a request and wait for its correlated response

        Args:
            message_type: Message type
            payload: Request data
            timeout: Seconds to wait (defaults to channel timeout)

        Returns:
            Response payload

        Raises:
            RemoteError: Remote answered with {error}
            ChannelTimeoutError: No response in time
        """
        if self._closed:
            raise RemoteError("Channel is closed", str(message_type))

        type_name = message_type.value if isinstance(message_type, MessageType) else str(message_type)
        timeout = self.timeout if timeout is None else timeout

        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        envelope = {'id': request_id, 'type': type_name, 'data': payload or {}}
        logger.debug(f"→ {type_name} [{request_id[:8]}]")

        try:
            data = await asyncio.wait_for(self._exchange(envelope, future), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⚠ No response for {type_name} within {timeout}s")
            raise ChannelTimeoutError(f"No response for {type_name} within {timeout}s", type_name)
        finally:
            self._pending.pop(request_id, None)

        if is_error_response(data):
            logger.debug(f"← {type_name} [{request_id[:8]}] error: {data['error']}")
            raise RemoteError(str(data['error']), type_name)

        logger.debug(f"← {type_name} [{request_id[:8]}]")
        return data

    async def _exchange(self, envelope: Dict[str, Any], future: asyncio.Future) -> Any:
        # Delivery and the response share one deadline; in-process handlers answer inline
        await self.transport.deliver(envelope)
        return await future

    def receive(self, envelope: Dict[str, Any]):
        """Resolve the request a response envelope belongs to"""
        request_id = envelope.get('id')
        future = self._pending.get(request_id)

        if future is None:
            logger.warning(f"Dropping response for unknown request: {request_id}")
            return
        if not future.done():
            future.set_result(envelope.get('data'))

    async def close(self):
        """Fail every in-flight request and close the transport"""
        self._closed = True
        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(RemoteError("Channel closed"))
        self._pending.clear()
        await self.transport.close()
        logger.debug("✓ Message channel closed")
