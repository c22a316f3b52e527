"""Contifico Ledger Package.

Implements the LedgerConnector interface for the Contifico ERP API.
"""

from connectors.contifico.contifico_ledger import ContificoLedger
from connectors.contifico.contifico_models import ContificoProduct, ContificoWarehouse, ContificoMovement

__all__ = [
    "ContificoLedger",
    "ContificoProduct",
    "ContificoWarehouse",
    "ContificoMovement",
]
