# tests/test_git_auth.py — SSH keys, personal access tokens and OAuth applications
import base64
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select

import errors
from credential_vault import CredentialVault, PAT_PREFIX, parse_public_key, ssh_fingerprint
from models import AuditLog, SSHKeyType, utcnow
from tests.conftest import get_auth_headers


def _public_key(seed: bytes, key_type: str = "ssh-ed25519") -> str:
    return f"{key_type} {base64.b64encode(seed).decode()} dev@laptop"


class TestKeyParsing:
    def test_fingerprint_is_unpadded_sha256(self):
        fp = ssh_fingerprint(b"material")
        assert fp.startswith("SHA256:")
        assert not fp.endswith("=")

    def test_key_types(self):
        assert parse_public_key(_public_key(b"a"))[0] == SSHKeyType.ED25519
        assert parse_public_key(_public_key(b"a", "ssh-rsa"))[0] == SSHKeyType.RSA
        assert parse_public_key(_public_key(b"a", "ecdsa-sha2-nistp256"))[0] == SSHKeyType.ECDSA

    @pytest.mark.parametrize("bad", ["", "ssh-dss AAAA", "ssh-ed25519", "ssh-rsa !!!notbase64"])
    def test_invalid_keys(self, bad):
        with pytest.raises(errors.ValidationError):
            parse_public_key(bad)


class TestSSHKeys:
    @pytest.mark.asyncio
    async def test_duplicate_fingerprint_conflicts(self, db_session, test_user, other_user):
        vault = CredentialVault(db_session)
        key = await vault.add_ssh_key(test_user.id, "laptop", _public_key(b"key-one"))
        assert key.key_type == SSHKeyType.ED25519

        # Same key material under another user and comment is still a duplicate
        with pytest.raises(errors.ConflictError):
            await vault.add_ssh_key(other_user.id, "desktop", _public_key(b"key-one").replace("dev@laptop", "x"))

    @pytest.mark.asyncio
    async def test_verify_and_expiry(self, db_session, test_user):
        vault = CredentialVault(db_session)
        await vault.add_ssh_key(test_user.id, "laptop", _public_key(b"live"))
        await vault.add_ssh_key(test_user.id, "old", _public_key(b"stale"), expires_at=utcnow() - timedelta(days=1))

        key = await vault.verify_ssh_key(_public_key(b"live"))
        assert key is not None
        assert key.last_used_at is not None
        assert await vault.verify_ssh_key(_public_key(b"stale")) is None
        assert await vault.verify_ssh_key(_public_key(b"unknown")) is None
        assert await vault.verify_ssh_key("garbage") is None

    @pytest.mark.asyncio
    async def test_delete_only_own_key(self, db_session, test_user, other_user):
        vault = CredentialVault(db_session)
        key = await vault.add_ssh_key(test_user.id, "laptop", _public_key(b"mine"))
        with pytest.raises(errors.NotFoundError):
            await vault.delete_ssh_key(other_user.id, key.id)
        await vault.delete_ssh_key(test_user.id, key.id)
        assert await vault.list_ssh_keys(test_user.id) == []

        actions = (await db_session.execute(
            select(AuditLog.action).where(AuditLog.user_id == test_user.id)
        )).scalars().all()
        assert set(actions) == {"ssh_key_added", "ssh_key_deleted"}


class TestPersonalAccessTokens:
    @pytest.mark.asyncio
    async def test_plaintext_is_returned_once(self, db_session, test_user):
        vault = CredentialVault(db_session)
        pat, token = await vault.generate_pat(test_user.id, "ci", ["repo:read"], expires_in_days=30)
        assert token.startswith(PAT_PREFIX)
        assert token not in pat.token_hash
        assert pat.token_prefix == token[:len(pat.token_prefix)]
        assert pat.expires_at is not None

        verified = await vault.verify_pat(token)
        assert verified.id == pat.id
        assert verified.last_used_at is not None

    @pytest.mark.asyncio
    async def test_wrong_or_revoked_token(self, db_session, test_user):
        vault = CredentialVault(db_session)
        pat, token = await vault.generate_pat(test_user.id, "ci")
        assert await vault.verify_pat(token[:-1] + ("0" if token[-1] != "0" else "1")) is None
        assert await vault.verify_pat("ghp_notours") is None

        await vault.revoke_pat(test_user.id, pat.id)
        assert pat.revoked is True
        assert await vault.verify_pat(token) is None

    @pytest.mark.asyncio
    async def test_expired_token(self, db_session, test_user):
        vault = CredentialVault(db_session)
        pat, token = await vault.generate_pat(test_user.id, "ci", expires_in_days=1)
        pat.expires_at = utcnow() - timedelta(minutes=1)
        await db_session.commit()
        assert await vault.verify_pat(token) is None

    @pytest.mark.asyncio
    async def test_validation(self, db_session, test_user):
        vault = CredentialVault(db_session)
        with pytest.raises(errors.ValidationError):
            await vault.generate_pat(test_user.id, "  ")
        with pytest.raises(errors.ValidationError):
            await vault.generate_pat(test_user.id, "ci", expires_in_days=0)

    @pytest.mark.asyncio
    async def test_stats(self, db_session, test_user):
        vault = CredentialVault(db_session)
        first, _ = await vault.generate_pat(test_user.id, "a")
        await vault.generate_pat(test_user.id, "b")
        await vault.revoke_pat(test_user.id, first.id)
        stats = await vault.get_user_auth_stats(test_user.id)
        assert stats["personalAccessTokens"] == {"total": 2, "active": 1, "revoked": 1, "expired": 0}


class TestOAuthApplications:
    @pytest.mark.asyncio
    async def test_verify_and_regenerate(self, db_session, test_user):
        vault = CredentialVault(db_session)
        app, secret = await vault.create_oauth_app(test_user.id, "Dashboard", callback_url="https://x.dev/cb")
        assert (await vault.verify_oauth_client(app.client_id, secret)).id == app.id
        assert await vault.verify_oauth_client(app.client_id, "wrong") is None

        _, new_secret = await vault.regenerate_oauth_secret(test_user.id, app.id)
        assert new_secret != secret
        assert await vault.verify_oauth_client(app.client_id, secret) is None
        assert await vault.verify_oauth_client(app.client_id, new_secret) is not None

    @pytest.mark.asyncio
    async def test_inactive_app_cannot_authenticate(self, db_session, test_user):
        vault = CredentialVault(db_session)
        app, secret = await vault.create_oauth_app(test_user.id, "Dashboard")
        await vault.update_oauth_app(test_user.id, app.id, {"active": False})
        assert await vault.verify_oauth_client(app.client_id, secret) is None

    @pytest.mark.asyncio
    async def test_client_id_is_immutable(self, db_session, test_user):
        vault = CredentialVault(db_session)
        app, _ = await vault.create_oauth_app(test_user.id, "Dashboard")
        with pytest.raises(errors.ValidationError):
            await vault.update_oauth_app(test_user.id, app.id, {"client_id": "mine"})

    @pytest.mark.asyncio
    async def test_owner_only(self, db_session, test_user, other_user):
        vault = CredentialVault(db_session)
        app, _ = await vault.create_oauth_app(test_user.id, "Dashboard")
        with pytest.raises(errors.NotFoundError):
            await vault.delete_oauth_app(other_user.id, app.id)


class TestGitAuthRoutes:
    @pytest.mark.asyncio
    async def test_ssh_key_routes(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        res = await client.post("/lowcode/api/git/auth/ssh-keys", json={
            "title": "laptop", "public_key": _public_key(b"route-key"),
        }, headers=headers)
        assert res.status_code == 201
        assert res.json()["data"]["fingerprint"].startswith("SHA256:")

        res = await client.post("/lowcode/api/git/auth/ssh-keys", json={
            "title": "again", "public_key": _public_key(b"route-key"),
        }, headers=headers)
        assert res.status_code == 409

        res = await client.post("/lowcode/api/git/auth/ssh-keys", json={
            "title": "bad", "public_key": "not a key",
        }, headers=headers)
        assert res.status_code == 400

    @pytest.mark.asyncio
    async def test_token_routes(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        res = await client.post("/lowcode/api/git/auth/tokens", json={"name": "ci", "scopes": ["repo"]},
                                headers=headers)
        assert res.status_code == 201
        created = res.json()["data"]
        token = created["token"]

        res = await client.get("/lowcode/api/git/auth/tokens", headers=headers)
        listed = res.json()["data"]
        assert len(listed) == 1
        assert "token" not in listed[0]

        res = await client.post("/lowcode/api/git/auth/tokens/verify", json={"token": token})
        assert res.status_code == 200
        assert res.json()["data"]["userId"] == test_user.id

        await client.post(f"/lowcode/api/git/auth/tokens/{created['id']}/revoke", headers=headers)
        res = await client.post("/lowcode/api/git/auth/tokens/verify", json={"token": token})
        assert res.status_code == 401

    @pytest.mark.asyncio
    async def test_oauth_routes(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        res = await client.post("/lowcode/api/git/auth/oauth-apps", json={"name": "Dash"}, headers=headers)
        assert res.status_code == 201
        data = res.json()["data"]

        res = await client.post("/lowcode/api/git/auth/oauth-apps/verify", json={
            "client_id": data["clientId"], "client_secret": data["clientSecret"],
        })
        assert res.status_code == 200

        res = await client.get("/lowcode/api/git/auth/stats", headers=headers)
        assert res.json()["data"]["oauthApplications"]["total"] == 1

    @pytest.mark.asyncio
    async def test_auditor_cannot_create_tokens(self, client: AsyncClient, auditor_user):
        res = await client.post("/lowcode/api/git/auth/tokens", json={"name": "ci"},
                                headers=get_auth_headers(auditor_user))
        assert res.status_code == 403
