"""
Ledgers and persisted state
"""

from .access import AccessControl
from .collateral import CollateralAdapter, CollateralToken
from .shares import ShareToken
from .snapshot import STATE_VERSION, pool_from_dict, pool_to_dict

__all__ = [
    "AccessControl",
    "CollateralAdapter",
    "CollateralToken",
    "ShareToken",
    "STATE_VERSION",
    "pool_from_dict",
    "pool_to_dict",
]
