"""
Route Composer Tests
====================
Remote route discovery, continuity validation, local fallback and ranking.

Test Cases:
1. Remote routes are normalized and every returned route is continuous
2. Broken routes and routes to other endpoints are dropped
3. Local direct, bridge, swap and swap-bridge-swap routes when the router
   fails or has nothing
4. Ranking by cost, speed and weighted score
"""

from decimal import Decimal

import pytest

from crosschain_transfer.channel import MessageType
from crosschain_transfer.config import CrosschainSettings
from crosschain_transfer.errors import RouteCompositionError, ValidationErrors
from crosschain_transfer.route_composer import RouteComposer, RouteOptions, RouteRequest
from crosschain_transfer.transfer_records import Route, RouteStep


def step(from_chain, to_chain, from_asset, to_asset, provider='p1', fee='0.5', minutes=10):
    return {
        'type': 'bridge' if from_chain != to_chain else 'swap',
        'fromChain': from_chain,
        'toChain': to_chain,
        'fromAsset': from_asset,
        'toAsset': to_asset,
        'fromAmount': '10',
        'toAmount': '9.5',
        'provider': provider,
        'fee': fee,
        'feeUsd': fee,
        'estimatedTime': minutes,
    }


def swap_quote(data):
    # Same-chain quotes only; the router has no cross-chain swap
    if data['fromChain'] != data['toChain']:
        return {'routes': []}
    return {'routes': [{'steps': [
        step(data['fromChain'], data['toChain'], data['fromAsset'], data['toAsset'], provider='dex', fee='0.1', minutes=1),
    ]}]}


def single_hop(total_cost, minutes):
    hop = RouteStep(
        type='bridge', provider='p1',
        from_chain='chain-a', to_chain='chain-b', from_asset='usdx', to_asset='usdx',
        from_amount=Decimal('10'), to_amount=Decimal('9'),
    )
    return Route(
        from_chain='chain-a', to_chain='chain-b', from_asset='usdx', to_asset='usdx',
        from_amount=Decimal('10'), to_amount=Decimal('9'), path=[hop],
        total_cost=Decimal(total_cost), estimated_time=minutes,
    )


@pytest.fixture
def composer(channel, catalog):
    return RouteComposer(channel, catalog)


@pytest.fixture
def request_usdx():
    return RouteRequest('chain-a', 'chain-b', 'usdx', 'usdx', Decimal('10'), from_address='0xsender')


# ═══════════════════════════════════════════════════════════════════════════
# REMOTE ROUTES
# ═══════════════════════════════════════════════════════════════════════════


class TestRemoteRoutes:
    """FIND_ROUTES results."""

    @pytest.mark.asyncio
    async def test_remote_routes_are_normalized(self, composer, remote):
        remote.script(MessageType.FIND_ROUTES, {'routes': [
            {'steps': [
                step('chain-a', 'chain-b', 'usdx', 'usdx'),
                step('chain-b', 'chain-b', 'usdx', 'weth', provider='dex', fee='0.1', minutes=1),
            ]},
        ]})
        request = RouteRequest('chain-a', 'chain-b', 'usdx', 'weth', Decimal('10'))

        routes = await composer.compose_routes(request)

        assert len(routes) == 1
        assert routes[0].is_continuous()
        assert routes[0].total_cost == Decimal('0.6')
        assert routes[0].estimated_time == 11
        assert routes[0].type == 'complex'

        sent = remote.calls_of(MessageType.FIND_ROUTES)[0]
        assert sent['fromChain'] == 'chain-a'
        assert sent['toAsset'] == 'weth'
        assert sent['amount'] == '10'

    @pytest.mark.asyncio
    async def test_broken_route_is_dropped(self, composer, remote, request_usdx):
        remote.script(MessageType.FIND_ROUTES, {'routes': [
            {'steps': [
                step('chain-a', 'chain-b', 'usdx', 'usdx'),
                step('chain-c', 'chain-a', 'usdx', 'usdx'),
            ]},
            {'steps': [step('chain-a', 'chain-b', 'usdx', 'usdx', fee='0.7')]},
        ]})

        routes = await composer.compose_routes(request_usdx)

        assert len(routes) == 1
        assert all(r.is_continuous() for r in routes)
        assert routes[0].total_cost == Decimal('0.7')

    def test_all_routes_broken(self, composer):
        raw = [{'steps': [
            step('chain-a', 'chain-b', 'usdx', 'usdx'),
            step('chain-b', 'chain-a', 'weth', 'weth'),
        ]}]

        with pytest.raises(RouteCompositionError) as exc_info:
            composer.normalize(raw)

        assert exc_info.value.route_index == 0

    def test_route_without_steps_is_rejected(self, composer):
        with pytest.raises(RouteCompositionError):
            composer.normalize([{'steps': []}])

    def test_route_to_other_endpoints_is_rejected(self, composer, request_usdx):
        raw = [{'steps': [step('chain-a', 'chain-c', 'weth', 'weth', provider='p2')]}]

        assert composer.normalize(raw)[0].to_chain == 'chain-c'
        with pytest.raises(RouteCompositionError, match='request starts at chain-a/usdx'):
            composer.normalize(raw, request_usdx)

    def test_summary_endpoints_must_match_path(self, composer):
        raw = [{'fromChain': 'chain-c', 'steps': [step('chain-a', 'chain-b', 'usdx', 'usdx')]}]

        with pytest.raises(RouteCompositionError, match='route starts at chain-c'):
            composer.normalize(raw)

    def test_asset_case_is_ignored(self, composer, request_usdx):
        raw = [{'steps': [step('chain-a', 'chain-b', 'USDX', 'USDX')]}]

        assert len(composer.normalize(raw, request_usdx)) == 1

    @pytest.mark.asyncio
    async def test_remote_route_to_other_endpoints_falls_back(self, composer, remote, request_usdx):
        remote.script(MessageType.FIND_ROUTES, {'routes': [
            {'steps': [step('chain-a', 'chain-c', 'weth', 'weth', provider='p2')]},
        ]})

        routes = await composer.compose_routes(request_usdx)

        assert [r.providers for r in routes] == [['p1']]
        assert routes[0].path[-1].to_chain == 'chain-b'

    @pytest.mark.asyncio
    async def test_swap_quote(self, composer, remote):
        remote.script(MessageType.GET_SWAP_QUOTE, [
            {'steps': [step('chain-b', 'chain-b', 'usdx', 'weth', provider='dex', fee='0.1', minutes=1)]},
        ])
        request = RouteRequest('chain-b', 'chain-b', 'usdx', 'weth', Decimal('5'))

        routes = await composer.get_swap_quote(request)

        assert routes[0].providers == ['dex']

    @pytest.mark.asyncio
    async def test_bridge_quotes_cheapest_first(self, composer, remote):
        remote.script(MessageType.GET_BRIDGE_QUOTE, {'quotes': [
            {'provider': 'p1', 'fromChain': 'chain-a', 'toChain': 'chain-b', 'fromAsset': 'usdx',
             'fromAmount': '10', 'toAmount': '9', 'fee': '1', 'feeUsd': '1', 'estimatedTime': 15},
            {'provider': 'p9', 'fromChain': 'chain-a', 'toChain': 'chain-b', 'fromAsset': 'usdx',
             'fromAmount': '10', 'toAmount': '9.8', 'fee': '0.2', 'feeUsd': '0.2', 'estimatedTime': 40},
        ]})

        quotes = await composer.get_bridge_quotes('chain-a', 'chain-b', 'usdx', Decimal('10'))

        assert [q.provider for q in quotes] == ['p9', 'p1']
        assert quotes[0].to_asset == 'usdx'


# ═══════════════════════════════════════════════════════════════════════════
# LOCAL FALLBACK
# ═══════════════════════════════════════════════════════════════════════════


class TestLocalFallback:
    """Catalog routes when the router is unavailable."""

    @pytest.mark.asyncio
    async def test_router_error_falls_back_to_catalog(self, composer, remote, request_usdx):
        remote.script(MessageType.FIND_ROUTES, RuntimeError('router offline'))

        routes = await composer.compose_routes(request_usdx)

        assert len(routes) == 1
        hop = routes[0].path[0]
        assert hop.provider == 'p1'
        assert hop.fee == Decimal('0.5')
        assert routes[0].to_amount == Decimal('9.5')
        assert routes[0].estimated_time == 15

    @pytest.mark.asyncio
    async def test_empty_remote_result_falls_back(self, composer, remote, request_usdx):
        remote.script(MessageType.FIND_ROUTES, {'routes': []})

        routes = await composer.compose_routes(request_usdx)

        assert [r.providers for r in routes] == [['p1']]

    @pytest.mark.asyncio
    async def test_no_route_anywhere(self, composer, remote):
        remote.script(MessageType.FIND_ROUTES, RuntimeError('router offline'))
        request = RouteRequest('chain-a', 'chain-b', 'usdx', 'weth', Decimal('10'))

        with pytest.raises(RouteCompositionError, match='router offline'):
            await composer.compose_routes(request)

    @pytest.mark.asyncio
    async def test_invalid_request_sends_nothing(self, composer, remote):
        request = RouteRequest('chain-a', 'chain-b', 'usdx', 'usdx', Decimal('0'))

        with pytest.raises(ValidationErrors) as exc_info:
            await composer.compose_routes(request)

        assert exc_info.value.field == 'amount'
        assert remote.calls == []

    def test_unparseable_amount_is_a_field_error(self):
        request = RouteRequest('chain-a', 'chain-b', 'usdx', 'usdx', 'lots')

        with pytest.raises(ValidationErrors) as exc_info:
            request.validate()

        assert exc_info.value.field == 'amount'

    @pytest.mark.asyncio
    async def test_same_chain_same_asset_is_a_direct_transfer(self, composer, remote):
        remote.script(MessageType.FIND_ROUTES, RuntimeError('router offline'))
        request = RouteRequest('chain-a', 'chain-a', 'usdx', 'usdx', Decimal('10'))

        routes = await composer.compose_routes(request)

        assert len(routes) == 1
        direct = routes[0]
        assert direct.type == 'direct'
        assert [hop.type for hop in direct.path] == ['transfer']
        assert direct.total_cost == Decimal('0')
        assert direct.to_amount == Decimal('10')
        assert direct.estimated_time == RouteComposer.DIRECT_TRANSFER_MINUTES
        assert remote.calls_of(MessageType.GET_SWAP_QUOTE) == []

    @pytest.mark.asyncio
    async def test_same_chain_swap_from_quote(self, composer, remote):
        remote.script(MessageType.FIND_ROUTES, {'routes': []})
        remote.script(MessageType.GET_SWAP_QUOTE, swap_quote)
        request = RouteRequest('chain-b', 'chain-b', 'usdx', 'weth', Decimal('5'))

        routes = await composer.compose_routes(request)

        assert [r.providers for r in routes] == [['dex']]
        assert routes[0].path[0].type == 'swap'

    @pytest.mark.asyncio
    async def test_swap_bridge_swap_through_intermediate_tokens(self, composer, remote):
        remote.script(MessageType.FIND_ROUTES, RuntimeError('router offline'))
        remote.script(MessageType.GET_SWAP_QUOTE, swap_quote)
        request = RouteRequest('chain-a', 'chain-b', 'usdx', 'weth', Decimal('10'))

        routes = await composer.compose_routes(request)

        shapes = sorted(tuple(hop.type for hop in r.path) for r in routes)
        assert shapes == [('bridge', 'swap'), ('swap', 'bridge')]
        for route in routes:
            assert route.type == 'complex'
            assert route.is_continuous()
            assert (route.path[0].from_chain, route.path[0].from_asset) == ('chain-a', 'usdx')
            assert (route.path[-1].to_chain, route.path[-1].to_asset) == ('chain-b', 'weth')

        bridge_first = next(r for r in routes if r.path[0].type == 'bridge')
        assert bridge_first.path[0].provider == 'p1'
        assert bridge_first.path[0].to_amount == Decimal('9.5')
        assert bridge_first.estimated_time == 15 + 1

    @pytest.mark.asyncio
    async def test_swaps_excluded_sends_no_quote(self, composer, remote):
        remote.script(MessageType.FIND_ROUTES, RuntimeError('router offline'))
        remote.script(MessageType.GET_SWAP_QUOTE, swap_quote)
        request = RouteRequest(
            'chain-a', 'chain-b', 'usdx', 'usdx', Decimal('10'),
            options=RouteOptions(include_swaps=False),
        )

        routes = await composer.compose_routes(request)

        assert [r.providers for r in routes] == [['p1']]
        assert remote.calls_of(MessageType.GET_SWAP_QUOTE) == []

    @pytest.mark.asyncio
    async def test_catalog_only_fallback_sends_no_quote(self, composer, remote):
        remote.script(MessageType.GET_SWAP_QUOTE, swap_quote)
        request = RouteRequest('chain-a', 'chain-b', 'usdx', 'weth', Decimal('10'))

        assert await composer.fallback_routes(request, use_remote=False) == []
        assert remote.calls == []


# ═══════════════════════════════════════════════════════════════════════════
# RANKING
# ═══════════════════════════════════════════════════════════════════════════


class TestRanking:
    """Route ordering."""

    def test_weighted_score_by_default(self, composer):
        cheap_slow = single_hop('2', 30)
        pricey_fast = single_hop('10', 5)

        ranked = composer.rank([cheap_slow, pricey_fast])

        assert ranked == [pricey_fast, cheap_slow]

    def test_prefer_low_fees(self, composer):
        cheap_slow = single_hop('2', 30)
        pricey_fast = single_hop('10', 5)

        ranked = composer.rank([pricey_fast, cheap_slow], RouteOptions(prefer_low_fees=True))

        assert ranked == [cheap_slow, pricey_fast]

    def test_prefer_speed(self, composer):
        cheap_slow = single_hop('2', 30)
        pricey_fast = single_hop('10', 5)

        ranked = composer.rank([cheap_slow, pricey_fast], RouteOptions(prefer_speed=True))

        assert ranked == [pricey_fast, cheap_slow]

    def test_ties_keep_input_order(self, composer):
        first = single_hop('3', 10)
        second = single_hop('3', 10)
        second.to_amount = Decimal('8')

        assert composer.rank([first, second]) == [first, second]
        assert composer.rank([second, first]) == [second, first]

    def test_custom_weights(self, channel):
        composer = RouteComposer(channel, weights={'cost': 0.0, 'time': 1.0})
        assert composer.score(single_hop('100', 4)) == Decimal('4')

    def test_weights_from_settings(self, channel, catalog):
        settings = CrosschainSettings(route_weights={'cost': 0.0, 'time': 1.0})
        composer = RouteComposer.from_settings(channel, settings, catalog)

        assert composer.catalog is catalog
        assert composer.score(single_hop('100', 4)) == Decimal('4')
