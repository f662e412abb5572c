"""Domain operations: the backend calls governed actions resolve to."""

from govcore.domain.client import BackendDomainOperations, domain_client
from govcore.domain.operations import DomainOperations, execute_action, validate_action

__all__ = [
    "BackendDomainOperations",
    "DomainOperations",
    "domain_client",
    "execute_action",
    "validate_action",
]
