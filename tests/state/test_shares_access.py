from __future__ import annotations

import pytest

from perpamm.core.errors import ValidationError
from perpamm.core.types import Privilege
from perpamm.state.access import AccessControl
from perpamm.state.shares import ShareToken


def test_share_mint_burn_transfer_keep_supply() -> None:
    shares = ShareToken("LP")
    shares.mint("a", 100)
    shares.mint("b", 50)
    shares.transfer("a", "b", 30)
    shares.burn("b", 80)
    assert shares.get_all_balances() == {"a": 70}
    assert shares.total_supply() == 70
    assert shares.verify_supply()


def test_share_rejects_bad_amounts() -> None:
    shares = ShareToken("LP")
    with pytest.raises(ValidationError):
        shares.mint("a", 0)
    shares.mint("a", 10)
    with pytest.raises(ValidationError, match="insufficient"):
        shares.burn("a", 11)
    with pytest.raises(ValidationError, match="insufficient"):
        shares.transfer("a", "b", 11)
    assert shares.balance_of("a") == 10


def test_share_rollback_restores_supply() -> None:
    shares = ShareToken("LP")
    shares.mint("a", 10)
    checkpoint = shares.checkpoint()
    shares.mint("b", 5)
    shares.rollback(checkpoint)
    assert shares.total_supply() == 10
    assert shares.balance_of("b") == 0


def test_trader_always_acts_for_self() -> None:
    acl = AccessControl()
    assert acl.is_authorized("alice", "alice", Privilege.WITHDRAW)
    assert not acl.is_authorized("alice", "bob", Privilege.WITHDRAW)


def test_grant_and_revoke_are_per_bit() -> None:
    acl = AccessControl()
    acl.grant_privilege("alice", "bob", Privilege.DEPOSIT | Privilege.TRADE)
    assert acl.is_authorized("alice", "bob", Privilege.TRADE)
    assert not acl.is_authorized("alice", "bob", Privilege.WITHDRAW)
    assert not acl.is_granted("bob", "alice", Privilege.TRADE)

    acl.revoke_privilege("alice", "bob", Privilege.TRADE)
    assert acl.is_granted("alice", "bob", Privilege.DEPOSIT)
    assert not acl.is_granted("alice", "bob", Privilege.TRADE)
    acl.revoke_privilege("alice", "bob", Privilege.DEPOSIT)
    assert not acl.is_granted("alice", "bob", Privilege.DEPOSIT)


def test_grant_rejects_self_and_empty() -> None:
    acl = AccessControl()
    with pytest.raises(ValueError):
        acl.grant_privilege("alice", "alice", Privilege.TRADE)
    with pytest.raises(ValueError):
        acl.grant_privilege("alice", "bob", Privilege.NONE)
