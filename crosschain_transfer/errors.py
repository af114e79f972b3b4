"""
Crosschain Errors

Error taxonomy shared by every component:
- ValidationError: local, pre-submission problems (never reach the channel)
- RouteCompositionError: a route breaks hop continuity or no route exists
- RemoteError: the message channel answered with {error}
- ChannelTimeoutError: no correlated response arrived in time
- StateInconsistencyError: a patch would regress a terminal record
"""

from typing import Dict, List, Optional


class CrosschainError(Exception):
    """Base class for all crosschain core errors"""


class ConfigError(CrosschainError, ValueError):
    """Raised when settings or catalog data are invalid"""


class ValidationError(CrosschainError):
    """
    Field-tagged validation failure

    Args:
        field: Name of the offending field (e.g. 'amount')
        message: Human readable message
    """

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class ValidationErrors(ValidationError):
    """All field errors of one submission attempt"""

    def __init__(self, errors: List[ValidationError]):
        if not errors:
            raise ValueError("ValidationErrors requires at least one error")
        first = errors[0]
        super().__init__(first.field, first.message)
        self.errors = list(errors)

    @property
    def by_field(self) -> Dict[str, str]:
        return {error.field: error.message for error in self.errors}

    def __str__(self):
        return "; ".join(f"{e.field}: {e.message}" for e in self.errors)


class RouteCompositionError(CrosschainError):
    """No usable route: malformed hop chain or empty result"""

    def __init__(self, message: str = "No route available", route_index: Optional[int] = None):
        super().__init__(message)
        self.route_index = route_index


class RemoteError(CrosschainError):
    """
    Error answered by the remote execution environment

    The original message is kept verbatim for display.
    """

    def __init__(self, message: str, message_type: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.message_type = message_type


class ChannelTimeoutError(RemoteError):
    """No response for a request before its deadline"""


class StateInconsistencyError(CrosschainError):
    """A status patch would move a terminal record backwards"""

    def __init__(self, record_id: str, current_status: str, patch_status: str):
        super().__init__(
            f"Rejected patch for {record_id}: {current_status} -> {patch_status}"
        )
        self.record_id = record_id
        self.current_status = current_status
        self.patch_status = patch_status


__all__ = [
    'ChannelTimeoutError',
    'ConfigError',
    'CrosschainError',
    'RemoteError',
    'RouteCompositionError',
    'StateInconsistencyError',
    'ValidationError',
    'ValidationErrors',
]
