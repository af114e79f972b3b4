"""
Route Catalog

Chains, tokens and bridge providers, and the legality predicate for a
(source, destination, token, provider) tuple.

A route is legal when:
- source and destination differ
- the token is tradable on both chains
- the provider lists the (source, destination) pair with that token

Iteration order is always load order, so "first valid" choices made on top
of the catalog are deterministic.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from itertools import permutations
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from loguru import logger

from .channel import MessageChannel, MessageType
from .config import read_yaml
from .errors import ConfigError
from .transfer_records import to_decimal


@dataclass(frozen=True)
class Chain:
    """Blockchain network"""
    id: str
    name: str
    native_symbol: str
    is_testnet: bool = False


@dataclass
class Token:
    """Asset tradable on a set of networks"""
    id: str
    symbol: str
    decimals: int
    networks: FrozenSet[str]
    balance_by_chain: Dict[str, Decimal] = field(default_factory=dict)

    def is_available_on(self, *chain_ids: str) -> bool:
        return all(chain_id in self.networks for chain_id in chain_ids)

    def balance_on(self, chain_id: str) -> Decimal:
        return self.balance_by_chain.get(chain_id, Decimal('0'))


@dataclass(frozen=True)
class SupportedRoute:
    """One (source, destination) pair a provider serves, with its tokens"""
    source_chain: str
    destination_chain: str
    tokens: FrozenSet[str]


@dataclass
class Provider:
    """Bridge provider"""
    id: str
    name: str
    supported_routes: List[SupportedRoute] = field(default_factory=list)
    fee_by_token: Dict[str, Decimal] = field(default_factory=dict)
    estimated_time_by_route_pair: Dict[Tuple[str, str], int] = field(default_factory=dict)

    def supports_pair(self, source_chain: str, destination_chain: str) -> bool:
        return any(
            r.source_chain == source_chain and r.destination_chain == destination_chain
            for r in self.supported_routes
        )

    def supports(self, source_chain: str, destination_chain: str, token_id: str) -> bool:
        return any(
            r.source_chain == source_chain
            and r.destination_chain == destination_chain
            and token_id in r.tokens
            for r in self.supported_routes
        )

    def __repr__(self):
        return f"Provider({self.id}: {len(self.supported_routes)} routes)"


TokenRef = Union[Token, str]
ProviderRef = Union[Provider, str]


class RouteCatalog:
    """
    Catalog of chains, tokens and providers

    Features:
    - Legality predicate for route tuples
    - Candidate sets in catalog order (destinations, tokens, providers)
    - Fee and time lookups per provider
    - Loads from YAML, a mapping, or the remote provider list
    """

    def __init__(
        self,
        chains: Iterable[Chain] = (),
        tokens: Iterable[Token] = (),
        providers: Iterable[Provider] = ()
    ):
        self._chains: Dict[str, Chain] = {}
        self._tokens: Dict[str, Token] = {}
        self._providers: Dict[str, Provider] = {}

        for chain in chains:
            self._add(self._chains, chain, 'chain')
        for token in tokens:
            self._add(self._tokens, token, 'token')
        for provider in providers:
            self._add(self._providers, provider, 'provider')

        self._check_references()

    @staticmethod
    def _add(index: Dict[str, Any], item: Any, label: str):
        if item.id in index:
            raise ConfigError(f"Duplicate {label} id: {item.id}")
        index[item.id] = item

    def _check_references(self):
        for token in self._tokens.values():
            unknown = token.networks - set(self._chains)
            if unknown:
                logger.warning(f"Token {token.id} lists unknown networks: {sorted(unknown)}")

        for provider in self._providers.values():
            for route in provider.supported_routes:
                for chain_id in (route.source_chain, route.destination_chain):
                    if chain_id not in self._chains:
                        logger.warning(f"Provider {provider.id} references unknown chain: {chain_id}")
                unknown = route.tokens - set(self._tokens)
                if unknown:
                    logger.warning(f"Provider {provider.id} references unknown tokens: {sorted(unknown)}")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def chains(self) -> List[Chain]:
        return list(self._chains.values())

    @property
    def tokens(self) -> List[Token]:
        return list(self._tokens.values())

    @property
    def providers(self) -> List[Provider]:
        return list(self._providers.values())

    def get_chain(self, chain_id: str) -> Optional[Chain]:
        return self._chains.get(chain_id)

    def get_token(self, token: TokenRef) -> Optional[Token]:
        if isinstance(token, Token):
            return token
        return self._tokens.get(token)

    def get_provider(self, provider: ProviderRef) -> Optional[Provider]:
        if isinstance(provider, Provider):
            return provider
        return self._providers.get(provider)

    def find_token_by_symbol(self, symbol: str) -> Optional[Token]:
        for token in self._tokens.values():
            if token.symbol.upper() == symbol.upper():
                return token
        return None

    # ------------------------------------------------------------------
    # Legality
    # ------------------------------------------------------------------

    def is_legal_route(
        self,
        source_chain: str,
        destination_chain: str,
        token: TokenRef,
        provider: ProviderRef
    ) -> bool:
        """
        Check a (source, destination, token, provider) tuple

        Args:
            source_chain: Source chain id
            destination_chain: Destination chain id
            token: Token or token id
            provider: Provider or provider id

        Returns:
            True if the provider can move the token between the two chains
        """
        if not source_chain or not destination_chain or source_chain == destination_chain:
            return False

        token_obj = self.get_token(token)
        provider_obj = self.get_provider(provider)
        if token_obj is None or provider_obj is None:
            return False

        if not token_obj.is_available_on(source_chain, destination_chain):
            return False

        return provider_obj.supports(source_chain, destination_chain, token_obj.id)

    def valid_destinations(self, source_chain: str) -> List[Chain]:
        """Chains reachable from source through at least one provider"""
        return [
            chain for chain in self._chains.values()
            if chain.id != source_chain
            and any(p.supports_pair(source_chain, chain.id) for p in self._providers.values())
        ]

    def valid_tokens(self, source_chain: str, destination_chain: str) -> List[Token]:
        """Tokens on both chains that some provider can move between them"""
        return [
            token for token in self._tokens.values()
            if token.is_available_on(source_chain, destination_chain)
            and any(
                self.is_legal_route(source_chain, destination_chain, token, p)
                for p in self._providers.values()
            )
        ]

    def valid_providers(self, source_chain: str, destination_chain: str, token: TokenRef) -> List[Provider]:
        """Providers for which the full tuple is legal"""
        return [
            p for p in self._providers.values()
            if self.is_legal_route(source_chain, destination_chain, token, p)
        ]

    # ------------------------------------------------------------------
    # Provider lookups
    # ------------------------------------------------------------------

    def fee_for(self, provider: ProviderRef, token: TokenRef) -> Optional[Decimal]:
        provider_obj = self.get_provider(provider)
        token_obj = self.get_token(token)
        if provider_obj is None or token_obj is None:
            return None
        return provider_obj.fee_by_token.get(token_obj.id)

    def estimated_time(self, provider: ProviderRef, source_chain: str, destination_chain: str) -> Optional[int]:
        """Estimated minutes for a provider to complete the pair"""
        provider_obj = self.get_provider(provider)
        if provider_obj is None:
            return None
        return provider_obj.estimated_time_by_route_pair.get((source_chain, destination_chain))

    def set_balance(self, token_id: str, chain_id: str, amount: Decimal):
        """Update a token balance on one chain"""
        token = self._tokens.get(token_id)
        if token is None:
            raise KeyError(f"Unknown token: {token_id}")
        token.balance_by_chain[chain_id] = to_decimal(amount)

    def with_providers(self, providers: Iterable[Provider]) -> 'RouteCatalog':
        """New catalog with the same chains and tokens and a replaced provider list"""
        return RouteCatalog(self.chains, self.tokens, providers)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'RouteCatalog':
        """
        Build a catalog from a mapping with 'chains', 'tokens' and 'providers'

        A top-level 'catalog' key is unwrapped, so a full settings file works.
        """
        if 'catalog' in data:
            data = data['catalog'] or {}

        try:
            chains = [
                Chain(
                    id=str(c['id']),
                    name=str(c.get('name', c['id'])),
                    native_symbol=str(c.get('native_symbol', '')),
                    is_testnet=bool(c.get('is_testnet', False)),
                )
                for c in data.get('chains') or []
            ]
            tokens = [
                Token(
                    id=str(t['id']),
                    symbol=str(t.get('symbol', t['id'])),
                    decimals=int(t.get('decimals', 18)),
                    networks=frozenset(str(n) for n in t.get('networks') or []),
                    balance_by_chain={
                        str(k): to_decimal(v) for k, v in (t.get('balance_by_chain') or {}).items()
                    },
                )
                for t in data.get('tokens') or []
            ]
            providers = [_provider_from_config(p) for p in data.get('providers') or []]
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid catalog data: {e}") from e

        logger.info(
            f"Route catalog loaded: {len(chains)} chains, {len(tokens)} tokens, "
            f"{len(providers)} providers"
        )
        return cls(chains, tokens, providers)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'RouteCatalog':
        data = read_yaml(path)
        if data is None:
            raise ConfigError(f"Catalog file not found: {path}")
        return cls.from_dict(data)

    async def refresh_providers(self, channel: MessageChannel) -> 'RouteCatalog':
        """
        Fetch the provider list from the remote environment

        Returns:
            New catalog with the remote providers
        """
        response = await channel.send(MessageType.GET_BRIDGE_PROVIDERS, {})
        if isinstance(response, dict):
            response = response.get('providers', [])

        providers = []
        for item in response or []:
            try:
                providers.append(provider_from_payload(item, self.tokens))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed provider {item!r}: {e}")

        logger.info(f"✓ Loaded {len(providers)} providers from remote")
        return self.with_providers(providers)


def _provider_from_config(p: Mapping[str, Any]) -> Provider:
    routes = [
        SupportedRoute(
            source_chain=str(r['source_chain']),
            destination_chain=str(r['destination_chain']),
            tokens=frozenset(str(t) for t in r.get('tokens') or []),
        )
        for r in p.get('supported_routes') or []
    ]

    times = {}
    for entry in p.get('estimated_time') or []:
        times[(str(entry['source_chain']), str(entry['destination_chain']))] = int(entry['minutes'])

    return Provider(
        id=str(p['id']),
        name=str(p.get('name', p['id'])),
        supported_routes=routes,
        fee_by_token={str(k): to_decimal(v) for k, v in (p.get('fee_by_token') or {}).items()},
        estimated_time_by_route_pair=times,
    )


def provider_from_payload(data: Mapping[str, Any], tokens: Iterable[Token] = ()) -> Provider:
    """
    Build a Provider from a remote GET_BRIDGE_PROVIDERS entry

    Remote entries list ``supportedChains`` and ``supportedAssets`` per chain
    plus one ``estimatedTime``. Every ordered pair of supported chains becomes
    a route carrying the assets listed on both sides. Asset symbols are
    mapped to catalog token ids where possible.
    """
    if 'supported_routes' in data:
        return _provider_from_config(data)

    symbol_to_id = {t.symbol.upper(): t.id for t in tokens}

    def token_ids(chain_id: str) -> FrozenSet[str]:
        assets = (data.get('supportedAssets') or data.get('supported_assets') or {}).get(chain_id, [])
        return frozenset(symbol_to_id.get(str(a).upper(), str(a)) for a in assets)

    chains = [str(c) for c in data.get('supportedChains') or data.get('supported_chains') or []]
    minutes = int(data.get('estimatedTime') or data.get('estimated_time') or 0)

    routes = []
    times = {}
    for source, destination in permutations(chains, 2):
        common = token_ids(source) & token_ids(destination)
        if common:
            routes.append(SupportedRoute(source, destination, common))
            times[(source, destination)] = minutes

    fees = data.get('feeByToken') or data.get('fee_by_token') or {}

    return Provider(
        id=str(data['id']),
        name=str(data.get('name', data['id'])),
        supported_routes=routes,
        fee_by_token={str(k): to_decimal(v) for k, v in fees.items()},
        estimated_time_by_route_pair=times,
    )
