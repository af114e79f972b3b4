"""
Route Selector

Cascading-constraint resolver for a bridge selection.

Every transition returns a new PendingSelection and then reconciles the
downstream fields in order:
1. destination: reset to the first valid one if the current one is invalid
2. token: reset to the first valid one if the current one is invalid
3. provider: auto-select the first valid one if unset or invalid

"First" always means catalog order.
"""

import re
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Union

from loguru import logger

from .errors import ValidationError, ValidationErrors
from .route_catalog import Chain, Provider, RouteCatalog, Token


AMOUNT_PATTERN = re.compile(r'^(\d+)?(\.\d*)?$')


@dataclass(frozen=True)
class PendingSelection:
    """In-progress (source, destination, token, provider, amount) choice"""
    source_chain: Optional[str] = None
    destination_chain: Optional[str] = None
    token: Optional[str] = None
    provider: Optional[str] = None
    amount: str = ''

    @property
    def amount_decimal(self) -> Optional[Decimal]:
        if not self.amount or self.amount == '.':
            return None
        try:
            return Decimal(self.amount)
        except InvalidOperation:
            return None


@dataclass(frozen=True)
class SelectionOptions:
    """Candidate lists for the current selection"""
    destinations: List[Chain]
    tokens: List[Token]
    providers: List[Provider]


class RouteSelector:
    """
    Pure transitions over PendingSelection

    Features:
    - Destination/token/provider narrowing from the catalog
    - Auto-repair of selections invalidated upstream
    - Max-amount fill from the token balance
    - Field-tagged validation before submission
    """

    def __init__(self, catalog: RouteCatalog):
        self.catalog = catalog

    def initial(self) -> PendingSelection:
        """Selection starting on the first catalog chain"""
        chains = self.catalog.chains
        return PendingSelection(source_chain=chains[0].id if chains else None)

    def options(self, selection: PendingSelection) -> SelectionOptions:
        source, destination = selection.source_chain, selection.destination_chain

        destinations = self.catalog.valid_destinations(source) if source else []
        tokens = self.catalog.valid_tokens(source, destination) if source and destination else []
        providers = (
            self.catalog.valid_providers(source, destination, selection.token)
            if source and destination and selection.token else []
        )
        return SelectionOptions(destinations, tokens, providers)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def set_source(self, selection: PendingSelection, chain_id: Optional[str]) -> PendingSelection:
        return self._reconcile(replace(selection, source_chain=chain_id or None))

    def set_destination(self, selection: PendingSelection, chain_id: Optional[str]) -> PendingSelection:
        return self._reconcile(replace(selection, destination_chain=chain_id or None))

    def set_token(self, selection: PendingSelection, token_id: Optional[str]) -> PendingSelection:
        return self._reconcile(replace(selection, token=token_id or None))

    def set_provider(self, selection: PendingSelection, provider_id: Optional[str]) -> PendingSelection:
        return self._reconcile(replace(selection, provider=provider_id or None))

    def set_amount(self, selection: PendingSelection, amount: Union[str, Decimal]) -> PendingSelection:
        """Accept only non-negative decimal text; anything else leaves the selection unchanged"""
        text = str(amount).strip()
        if text and not AMOUNT_PATTERN.match(text):
            logger.debug(f"Ignoring invalid amount input: {text!r}")
            return selection
        return replace(selection, amount=text)

    def set_max_amount(self, selection: PendingSelection) -> PendingSelection:
        """Fill the amount with the token balance on the source chain"""
        if not selection.source_chain or not selection.token:
            return selection
        token = self.catalog.get_token(selection.token)
        if token is None or selection.source_chain not in token.balance_by_chain:
            return selection
        return replace(selection, amount=str(token.balance_on(selection.source_chain)))

    def swap_chains(self, selection: PendingSelection) -> PendingSelection:
        """Exchange source and destination when both are set; clears token and provider"""
        if not selection.source_chain or not selection.destination_chain:
            return selection
        swapped = replace(
            selection,
            source_chain=selection.destination_chain,
            destination_chain=selection.source_chain,
            token=None,
            provider=None,
        )
        return self._reconcile(swapped)

    def _reconcile(self, selection: PendingSelection) -> PendingSelection:
        source = selection.source_chain
        if not source:
            return selection

        destinations = self.catalog.valid_destinations(source)
        if selection.destination_chain and not any(c.id == selection.destination_chain for c in destinations):
            selection = replace(
                selection,
                destination_chain=destinations[0].id if destinations else None,
                token=None,
                provider=None,
            )

        destination = selection.destination_chain
        if not destination:
            return selection

        tokens = self.catalog.valid_tokens(source, destination)
        if selection.token and not any(t.id == selection.token for t in tokens):
            selection = replace(
                selection,
                token=tokens[0].id if tokens else None,
                provider=None,
            )

        if not selection.token:
            return selection

        providers = self.catalog.valid_providers(source, destination, selection.token)
        if not selection.provider or not any(p.id == selection.provider for p in providers):
            selection = replace(selection, provider=providers[0].id if providers else None)

        return selection

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, selection: PendingSelection) -> Decimal:
        """
        Validate a selection before submission

        Args:
            selection: Selection to submit

        Returns:
            Parsed amount

        Raises:
            ValidationErrors: One entry per offending field
        """
        errors: List[ValidationError] = []

        if not selection.source_chain:
            errors.append(ValidationError('source_chain', 'Select a source chain'))
        if not selection.destination_chain:
            errors.append(ValidationError('destination_chain', 'Select a destination chain'))
        elif selection.destination_chain == selection.source_chain:
            errors.append(ValidationError('destination_chain', 'Source and destination chains must differ'))
        if not selection.token:
            errors.append(ValidationError('token', 'Select a token'))

        amount = selection.amount_decimal
        if not selection.amount:
            errors.append(ValidationError('amount', 'Enter an amount'))
        elif amount is None or amount <= 0:
            errors.append(ValidationError('amount', 'Amount must be greater than 0'))
        elif selection.source_chain and selection.token:
            token = self.catalog.get_token(selection.token)
            balance = token.balance_on(selection.source_chain) if token else Decimal('0')
            if amount > balance:
                errors.append(ValidationError('amount', 'Insufficient balance'))

        if not selection.provider:
            errors.append(ValidationError('provider', 'Select a bridge provider'))
        elif not errors and not self.catalog.is_legal_route(
            selection.source_chain,
            selection.destination_chain,
            selection.token,
            selection.provider,
        ):
            errors.append(ValidationError('provider', 'Provider does not support this route'))

        if errors:
            logger.debug(f"Selection rejected: {[e.field for e in errors]}")
            raise ValidationErrors(errors)

        return amount
