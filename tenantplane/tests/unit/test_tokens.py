from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from tenantplane.core.errors import InvalidCredentialError
from tenantplane.services.auth.tokens import ACCESS, REFRESH, TokenMinter, TokenSubject
from tenantplane.tests.utils.identity import DOWNSTREAM_SECRET


def _subject() -> TokenSubject:
    return TokenSubject(user_id="u1", tenant_id="t1", workspace_id="t1", user_workspace_id="uw1")


def test_access_token_carries_downstream_claims(minter: TokenMinter) -> None:
    pair = minter.mint_pair(_subject())
    claims = jwt.decode(pair.access.token, DOWNSTREAM_SECRET, algorithms=["HS256"])
    assert claims["type"] == ACCESS
    assert claims["sub"] == "u1"
    assert claims["workspaceId"] == "t1"
    assert claims["userWorkspaceId"] == "uw1"
    assert claims["authProvider"] == "clerk"


def test_token_lifetimes(minter: TokenMinter) -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    pair = minter.mint_pair(_subject(), now=now)
    assert pair.access.expires_at - now == timedelta(hours=24)
    assert pair.refresh.expires_at - now == timedelta(days=30)
    payload = pair.as_dict()
    assert set(payload) == {"access_token", "refresh_token"}


def test_refresh_token_carries_only_user_identity(minter: TokenMinter) -> None:
    pair = minter.mint_pair(_subject())
    claims = jwt.decode(pair.refresh.token, DOWNSTREAM_SECRET, algorithms=["HS256"])
    assert set(claims) == {"sub", "userId", "authProvider", "targetedTokenType", "type", "iat", "exp"}
    assert claims["type"] == REFRESH
    assert claims["targetedTokenType"] == ACCESS
    assert minter.decode_refresh(pair.refresh.token) == "u1"


def test_access_token_is_not_a_refresh_credential(minter: TokenMinter) -> None:
    pair = minter.mint_pair(_subject())
    with pytest.raises(InvalidCredentialError):
        minter.decode_refresh(pair.access.token)


def test_refresh_token_is_not_an_access_credential(minter: TokenMinter) -> None:
    pair = minter.mint_pair(_subject())
    with pytest.raises(InvalidCredentialError):
        minter.decode_access(pair.refresh.token)
    assert minter.decode_access(pair.access.token)["userId"] == "u1"


def test_expired_and_foreign_tokens_are_rejected(minter: TokenMinter) -> None:
    long_ago = datetime.now(timezone.utc) - timedelta(days=60)
    expired = minter.mint_pair(_subject(), now=long_ago)
    with pytest.raises(InvalidCredentialError):
        minter.decode_refresh(expired.refresh.token)

    forged = jwt.encode({"type": REFRESH, "targetedTokenType": ACCESS}, "other-secret", algorithm="HS256")
    with pytest.raises(InvalidCredentialError):
        minter.decode_refresh(forged)


def test_admin_token_is_typed(minter: TokenMinter) -> None:
    token = minter.mint_admin_token(user_id="u1", tenant_id="t1")
    claims = minter.decode(token.token)
    assert claims["type"] == "ADMIN"
    assert claims["role"] == "admin"
    with pytest.raises(InvalidCredentialError):
        minter.decode_access(token.token)
