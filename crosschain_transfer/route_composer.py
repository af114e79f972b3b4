"""
Route Composer

Finds and ranks multi-hop routes between two (chain, asset) endpoints.

Process:
1. Ask the remote router (FIND_ROUTES)
2. Normalize each route and reject any whose hops do not chain or whose
   endpoints differ from the request
3. Fall back to locally composed routes when the remote has nothing usable:
   - direct transfer on one chain
   - catalog bridge routes for the same asset
   - swap quotes (GET_SWAP_QUOTE)
   - swap → bridge → swap through a bridgeable intermediate token
4. Rank by cost, speed, or a weighted score
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence

from loguru import logger

from .channel import MessageChannel, MessageType
from .config import CrosschainSettings
from .errors import (
    ChannelTimeoutError,
    RemoteError,
    RouteCompositionError,
    ValidationError,
    ValidationErrors,
)
from .route_catalog import Provider, RouteCatalog, Token
from .transfer_records import Route, RouteStep, same_asset, to_decimal


@dataclass
class RouteOptions:
    include_bridges: bool = True
    include_swaps: bool = True
    prefer_low_fees: bool = False
    prefer_speed: bool = False

    def to_payload(self) -> Dict[str, bool]:
        return {
            'includeBridges': self.include_bridges,
            'includeSwaps': self.include_swaps,
            'preferLowFees': self.prefer_low_fees,
            'preferSpeed': self.prefer_speed,
        }


@dataclass
class RouteRequest:
    """Route search parameters"""
    from_chain: str
    to_chain: str
    from_token: str
    to_token: str
    amount: Decimal
    from_address: Optional[str] = None
    options: RouteOptions = field(default_factory=RouteOptions)

    def validate(self):
        errors = []
        if not self.from_chain:
            errors.append(ValidationError('from_chain', 'Source chain is required'))
        if not self.to_chain:
            errors.append(ValidationError('to_chain', 'Destination chain is required'))
        if not self.from_token:
            errors.append(ValidationError('from_token', 'Source token is required'))
        if not self.to_token:
            errors.append(ValidationError('to_token', 'Destination token is required'))
        try:
            amount = to_decimal(self.amount)
        except ValueError:
            errors.append(ValidationError('amount', 'Invalid amount'))
        else:
            if amount is None or amount <= 0:
                errors.append(ValidationError('amount', 'Amount must be greater than 0'))
        if errors:
            raise ValidationErrors(errors)

    def to_payload(self) -> Dict[str, Any]:
        return {
            'fromChain': self.from_chain,
            'toChain': self.to_chain,
            'fromAsset': self.from_token,
            'toAsset': self.to_token,
            'amount': str(self.amount),
            'fromAddress': self.from_address,
            'options': self.options.to_payload(),
        }


@dataclass
class BridgeQuote:
    """Provider quote for a single bridge hop"""
    provider: str
    from_chain: str
    to_chain: str
    from_asset: str
    to_asset: str
    from_amount: Decimal
    to_amount: Decimal
    fee: Decimal
    fee_usd: Decimal
    estimated_time: int
    fee_asset: Optional[str] = None
    exchange_rate: Optional[Decimal] = None

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> 'BridgeQuote':
        def get(name, camel, default=None):
            return data.get(name, data.get(camel, default))

        return cls(
            provider=str(get('provider', 'provider')),
            from_chain=str(get('from_chain', 'fromChain')),
            to_chain=str(get('to_chain', 'toChain')),
            from_asset=str(get('from_asset', 'fromAsset')),
            to_asset=str(get('to_asset', 'toAsset', get('from_asset', 'fromAsset'))),
            from_amount=to_decimal(get('from_amount', 'fromAmount', '0')),
            to_amount=to_decimal(get('to_amount', 'toAmount', '0')),
            fee=to_decimal(get('fee', 'fee', '0')),
            fee_usd=to_decimal(get('fee_usd', 'feeUsd', '0')),
            estimated_time=int(get('estimated_time', 'estimatedTime', 0) or 0),
            fee_asset=get('fee_asset', 'feeAsset'),
            exchange_rate=to_decimal(get('exchange_rate', 'exchangeRate')),
        )


class RouteComposer:
    """
    Multi-hop route finder

    Features:
    - Remote route discovery with local fallback composition
    - Hop continuity and endpoint validation
    - Configurable cost/time ranking
    - Bridge and swap quotes
    """

    DEFAULT_WEIGHTS = {'cost': 0.7, 'time': 0.3}

    # Same-chain transfers have no provider estimate
    DIRECT_TRANSFER_MINUTES = 1

    def __init__(
        self,
        channel: MessageChannel,
        catalog: Optional[RouteCatalog] = None,
        weights: Optional[Dict[str, float]] = None
    ):
        """
        Initialize composer

        Args:
            channel: Message channel to the remote router
            catalog: Catalog used for local fallback routes
            weights: Ranking weights {'cost': ..., 'time': ...}
        """
        self.channel = channel
        self.catalog = catalog
        self.weights = dict(self.DEFAULT_WEIGHTS)
        if weights:
            self.weights.update(weights)

    @classmethod
    def from_settings(
        cls,
        channel: MessageChannel,
        settings: CrosschainSettings,
        catalog: Optional[RouteCatalog] = None
    ) -> 'RouteComposer':
        """Composer ranking with settings.route_weights"""
        return cls(channel, catalog, weights=settings.route_weights)

    async def compose_routes(self, request: RouteRequest) -> List[Route]:
        """
        Find ranked routes for a request

        Args:
            request: Route search parameters

        Returns:
            Routes, best first

        Raises:
            ValidationErrors: Request is incomplete
            RouteCompositionError: No usable route
        """
        request.validate()

        remote_error: Optional[Exception] = None
        try:
            response = await self.channel.send(MessageType.FIND_ROUTES, request.to_payload())
            raw_routes = _routes_from_response(response)
            if raw_routes:
                return self.rank(self.normalize(raw_routes, request), request.options)
        except RemoteError as e:
            remote_error = e
            logger.warning(f"Routing request failed, falling back to local routes: {e}")
        except RouteCompositionError as e:
            remote_error = e
            logger.warning(f"No usable remote route, falling back to local routes: {e}")

        # A router that timed out will not answer quote requests either
        use_remote = not isinstance(remote_error, ChannelTimeoutError)
        routes = await self.fallback_routes(request, use_remote=use_remote)
        if not routes:
            message = "No route available"
            if remote_error is not None:
                message = f"No route available (remote error: {remote_error})"
            raise RouteCompositionError(message)

        logger.info(f"Using {len(routes)} local route(s) for {request.from_chain} → {request.to_chain}")
        return self.rank(routes, request.options)

    async def get_swap_quote(self, request: RouteRequest) -> List[Route]:
        """Ranked swap routes from GET_SWAP_QUOTE"""
        request.validate()
        response = await self.channel.send(MessageType.GET_SWAP_QUOTE, request.to_payload())
        raw_routes = _routes_from_response(response)
        if not raw_routes:
            raise RouteCompositionError("No swap route available")
        return self.rank(self.normalize(raw_routes, request), request.options)

    async def get_bridge_quotes(
        self,
        from_chain: str,
        to_chain: str,
        asset: str,
        amount: Decimal,
        from_address: Optional[str] = None,
        provider: Optional[str] = None
    ) -> List[BridgeQuote]:
        """
        Bridge quotes for one hop, cheapest first

        Returns:
            Quotes sorted by USD fee
        """
        payload = {
            'provider': provider or '',
            'fromChain': from_chain,
            'toChain': to_chain,
            'fromAddress': from_address,
            'asset': asset,
            'amount': str(amount),
        }
        response = await self.channel.send(MessageType.GET_BRIDGE_QUOTE, payload)
        if isinstance(response, dict):
            response = response.get('quotes', [])

        quotes = [BridgeQuote.from_payload(item) for item in response or []]
        quotes.sort(key=lambda q: (q.fee_usd, q.fee))
        return quotes

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def validate_route(
        self,
        route: Route,
        index: Optional[int] = None,
        request: Optional[RouteRequest] = None
    ) -> Route:
        """
        Check a route before it is offered

        - at least one hop
        - every hop starts where the previous ended
        - first and last hop match the route's own endpoints
        - and the request's endpoints, when a request is given

        Raises:
            RouteCompositionError: Any check fails
        """
        if not route.path:
            raise RouteCompositionError("Route has no steps", route_index=index)

        broken = route.first_break()
        if broken is not None:
            current, following = route.path[broken], route.path[broken + 1]
            raise RouteCompositionError(
                f"Route breaks continuity between hop {broken} and {broken + 1}: "
                f"{current.to_chain}/{current.to_asset} → {following.from_chain}/{following.from_asset}",
                route_index=index,
            )

        first, last = route.path[0], route.path[-1]
        expected = [(route.from_chain, route.from_asset, route.to_chain, route.to_asset, 'route')]
        if request is not None:
            expected.append((request.from_chain, request.from_token, request.to_chain, request.to_token, 'request'))

        for from_chain, from_asset, to_chain, to_asset, label in expected:
            if first.from_chain != from_chain or not same_asset(first.from_asset, from_asset):
                raise RouteCompositionError(
                    f"Route starts at {first.from_chain}/{first.from_asset}, "
                    f"{label} starts at {from_chain}/{from_asset}",
                    route_index=index,
                )
            if last.to_chain != to_chain or not same_asset(last.to_asset, to_asset):
                raise RouteCompositionError(
                    f"Route ends at {last.to_chain}/{last.to_asset}, "
                    f"{label} ends at {to_chain}/{to_asset}",
                    route_index=index,
                )
        return route

    def normalize(self, raw_routes: Sequence[Any], request: Optional[RouteRequest] = None) -> List[Route]:
        """
        Parse remote routes, dropping malformed ones

        Raises:
            RouteCompositionError: Every route was malformed
        """
        routes: List[Route] = []
        first_error: Optional[RouteCompositionError] = None

        for index, raw in enumerate(raw_routes):
            try:
                route = raw if isinstance(raw, Route) else Route.from_payload(raw)
                routes.append(self.validate_route(route, index, request))
            except RouteCompositionError as e:
                logger.warning(f"Rejected route {index}: {e}")
                first_error = first_error or e
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning(f"Rejected malformed route {index}: {e}")
                first_error = first_error or RouteCompositionError(f"Malformed route: {e}", route_index=index)

        if not routes:
            raise RouteCompositionError(
                f"No route available: {first_error}" if first_error else "No route available",
                route_index=first_error.route_index if first_error else None,
            )
        return routes

    # ------------------------------------------------------------------
    # Local composition
    # ------------------------------------------------------------------

    async def fallback_routes(self, request: RouteRequest, use_remote: bool = True) -> List[Route]:
        """
        Routes composed without the remote router

        Args:
            request: Route search parameters
            use_remote: Ask for swap quotes (False keeps to the catalog)

        Returns:
            Valid routes, unranked
        """
        options = request.options
        routes = self.local_routes(request)

        if use_remote and options.include_swaps:
            if request.from_chain != request.to_chain or not same_asset(request.from_token, request.to_token):
                routes.extend(await self._swap_routes(request))
            if options.include_bridges and request.from_chain != request.to_chain:
                routes.extend(await self.complex_routes(request))

        valid = []
        for route in routes:
            try:
                valid.append(self.validate_route(route, request=request))
            except RouteCompositionError as e:
                logger.warning(f"Dropping local route: {e}")
        return valid

    def local_routes(self, request: RouteRequest) -> List[Route]:
        """
        Routes from the catalog alone

        - one direct transfer when both ends are the same chain and asset
        - one single-hop bridge route per provider for the same asset
        """
        amount = to_decimal(request.amount)

        if request.from_chain == request.to_chain:
            if not same_asset(request.from_token, request.to_token):
                return []
            step = RouteStep(
                type='transfer',
                from_chain=request.from_chain,
                to_chain=request.to_chain,
                from_asset=request.from_token,
                to_asset=request.to_token,
                from_amount=amount,
                to_amount=amount,
                estimated_time=self.DIRECT_TRANSFER_MINUTES,
            )
            return [_single_hop(step, 'direct')]

        if self.catalog is None or not request.options.include_bridges:
            return []
        if not same_asset(request.from_token, request.to_token):
            return []

        token = self._resolve_token(request.from_token)
        if token is None:
            return []

        return [
            _single_hop(self._bridge_step(
                provider, token, request.from_chain, request.to_chain,
                request.from_token, request.to_token, amount,
            ), 'bridge')
            for provider in self.catalog.valid_providers(request.from_chain, request.to_chain, token)
        ]

    async def complex_routes(self, request: RouteRequest) -> List[Route]:
        """
        swap → bridge → swap routes through each bridgeable token

        The bridge hop uses the cheapest catalog provider for the
        intermediate token. Swap legs come from GET_SWAP_QUOTE; a leg is
        skipped when the intermediate already is the source or target asset.
        """
        if self.catalog is None or request.from_chain == request.to_chain:
            return []

        amount = to_decimal(request.amount)
        routes = []

        for token in self.catalog.valid_tokens(request.from_chain, request.to_chain):
            needs_first_swap = not self._is_token(request.from_token, token)
            needs_final_swap = not self._is_token(request.to_token, token)
            if not (needs_first_swap or needs_final_swap):
                continue

            legs: List[Route] = []
            leg_amount = amount

            if needs_first_swap:
                first = await self._best_swap(request.from_chain, request.from_token, token.id, leg_amount, request)
                if first is None:
                    continue
                legs.append(first)
                leg_amount = first.to_amount

            provider = self._cheapest_provider(request.from_chain, request.to_chain, token)
            bridge = _single_hop(self._bridge_step(
                provider, token, request.from_chain, request.to_chain,
                token.id if needs_first_swap else request.from_token,
                token.id if needs_final_swap else request.to_token,
                leg_amount,
            ), 'bridge')
            legs.append(bridge)
            leg_amount = bridge.to_amount

            if needs_final_swap:
                final = await self._best_swap(request.to_chain, token.id, request.to_token, leg_amount, request)
                if final is None:
                    continue
                legs.append(final)

            routes.append(_join_legs(request, amount, legs))

        return routes

    async def _swap_routes(self, request: RouteRequest) -> List[Route]:
        try:
            return await self.get_swap_quote(request)
        except (RemoteError, RouteCompositionError) as e:
            logger.debug(
                f"No swap quote {request.from_chain}/{request.from_token} → "
                f"{request.to_chain}/{request.to_token}: {e}"
            )
            return []

    async def _best_swap(
        self,
        chain: str,
        from_asset: str,
        to_asset: str,
        amount: Decimal,
        request: RouteRequest
    ) -> Optional[Route]:
        quote_request = RouteRequest(
            chain, chain, from_asset, to_asset, amount,
            from_address=request.from_address, options=request.options,
        )
        routes = await self._swap_routes(quote_request)
        return routes[0] if routes else None

    def _resolve_token(self, ref: str) -> Optional[Token]:
        return self.catalog.get_token(ref) or self.catalog.find_token_by_symbol(ref)

    def _is_token(self, ref: str, token: Token) -> bool:
        resolved = self._resolve_token(ref)
        return resolved is not None and resolved.id == token.id

    def _cheapest_provider(self, from_chain: str, to_chain: str, token: Token) -> Provider:
        providers = self.catalog.valid_providers(from_chain, to_chain, token)
        return min(providers, key=lambda p: self.catalog.fee_for(p, token) or Decimal('0'))

    def _bridge_step(
        self,
        provider: Provider,
        token: Token,
        from_chain: str,
        to_chain: str,
        from_asset: str,
        to_asset: str,
        amount: Decimal
    ) -> RouteStep:
        fee = self.catalog.fee_for(provider, token) or Decimal('0')
        return RouteStep(
            type='bridge',
            provider=provider.id,
            from_chain=from_chain,
            to_chain=to_chain,
            from_asset=from_asset,
            to_asset=to_asset,
            from_amount=amount,
            to_amount=max(amount - fee, Decimal('0')),
            fee=fee,
            fee_usd=fee,
            estimated_time=self.catalog.estimated_time(provider, from_chain, to_chain) or 0,
        )

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def score(self, route: Route) -> Decimal:
        cost_weight = Decimal(str(self.weights.get('cost', 0)))
        time_weight = Decimal(str(self.weights.get('time', 0)))
        return route.total_cost * cost_weight + Decimal(route.estimated_time) * time_weight

    def rank(self, routes: List[Route], options: Optional[RouteOptions] = None) -> List[Route]:
        """Stable sort: cheapest, fastest, or weighted score first"""
        options = options or RouteOptions()
        if options.prefer_low_fees:
            return sorted(routes, key=lambda r: r.total_cost)
        if options.prefer_speed:
            return sorted(routes, key=lambda r: r.estimated_time)
        return sorted(routes, key=self.score)


def _single_hop(step: RouteStep, route_type: str) -> Route:
    return Route(
        type=route_type,
        from_chain=step.from_chain,
        to_chain=step.to_chain,
        from_asset=step.from_asset,
        to_asset=step.to_asset,
        from_amount=step.from_amount,
        to_amount=step.to_amount,
        path=[step],
        fee_usd=step.fee_usd,
        total_cost=step.fee_usd,
        estimated_time=step.estimated_time,
    )


def _join_legs(request: RouteRequest, amount: Decimal, legs: List[Route]) -> Route:
    return Route(
        type='complex',
        from_chain=request.from_chain,
        to_chain=request.to_chain,
        from_asset=request.from_token,
        to_asset=request.to_token,
        from_amount=amount,
        to_amount=legs[-1].to_amount,
        path=[step for leg in legs for step in leg.path],
        fee_usd=sum((leg.fee_usd for leg in legs), Decimal('0')),
        total_cost=sum((leg.total_cost for leg in legs), Decimal('0')),
        estimated_time=sum(leg.estimated_time for leg in legs),
    )


def _routes_from_response(response: Any) -> List[Any]:
    if isinstance(response, dict):
        return list(response.get('routes') or [])
    return list(response or [])
