"""Sales agent profiles consulted by transfers, reconciliation and delivery."""

from . import schemas
from .repository import (
    InMemorySalesAgentRepository,
    SalesAgentRepository,
    SqlSalesAgentRepository,
)

__all__ = [
    "InMemorySalesAgentRepository",
    "SalesAgentRepository",
    "SqlSalesAgentRepository",
    "schemas",
]
