"""
Delegated privileges: which grantee may act on a trader's account.

A trader always acts for themselves; everyone else needs the matching
`Privilege` bit granted by that trader.
"""

from __future__ import annotations

from typing import Dict, Tuple

from ..core.types import Privilege

Address = str


class AccessControl:
    def __init__(self) -> None:
        self._grants: Dict[Tuple[Address, Address], Privilege] = {}

    def grant_privilege(self, trader: Address, grantee: Address, privilege: Privilege) -> None:
        if trader == grantee:
            raise ValueError("cannot grant privilege to self")
        if privilege == Privilege.NONE:
            raise ValueError("privilege must be non-empty")
        current = self._grants.get((trader, grantee), Privilege.NONE)
        self._grants[(trader, grantee)] = current | privilege

    def revoke_privilege(self, trader: Address, grantee: Address, privilege: Privilege) -> None:
        current = self._grants.get((trader, grantee), Privilege.NONE)
        remaining = current & ~privilege
        if remaining == Privilege.NONE:
            self._grants.pop((trader, grantee), None)
        else:
            self._grants[(trader, grantee)] = remaining

    def is_granted(self, trader: Address, grantee: Address, privilege: Privilege) -> bool:
        current = self._grants.get((trader, grantee), Privilege.NONE)
        return (current & privilege) == privilege

    def is_authorized(self, trader: Address, caller: Address, privilege: Privilege) -> bool:
        return trader == caller or self.is_granted(trader, caller, privilege)
