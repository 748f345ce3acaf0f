# credential_vault.py — SSH keys, personal access tokens and OAuth applications
# - Plaintext tokens and client secrets are returned once, at creation
# - Stored hashes are bcrypt over the SHA-256 hex digest of the secret
# - Every mutation writes an AuditLog entry

import base64
import binascii
import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import errors
from auth import AuthService
from models import (
    AuditLog, OAuthApplication, PersonalAccessToken, SSHKey, SSHKeyType, as_utc, utcnow,
)

logger = logging.getLogger("exprsn.credentials")

PAT_PREFIX = "exprsn_pat_"
OAUTH_CLIENT_PREFIX = "exprsn_oauth_"
# Stored alongside the hash so verification only bcrypt-checks a handful of rows
LOOKUP_PREFIX_LENGTH = len(PAT_PREFIX) + 8

SSH_KEY_PREFIXES = (
    ("ssh-rsa ", SSHKeyType.RSA),
    ("ssh-ed25519 ", SSHKeyType.ED25519),
    ("ecdsa-sha2-", SSHKeyType.ECDSA),
)

OAUTH_UPDATABLE_FIELDS = {"name", "description", "homepage_url", "callback_url", "scopes", "active"}


def _digest(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def parse_public_key(public_key: str) -> Tuple[SSHKeyType, bytes]:
    """Validate an OpenSSH public key line; returns (key type, decoded key material)"""
    key = (public_key or "").strip()
    for prefix, key_type in SSH_KEY_PREFIXES:
        if key.startswith(prefix):
            break
    else:
        raise errors.ValidationError("Invalid SSH key format: expected ssh-rsa, ssh-ed25519 or ecdsa-sha2-*")

    parts = key.split()
    if len(parts) < 2:
        raise errors.ValidationError("Invalid SSH key format: missing key material")
    try:
        material = base64.b64decode(parts[1], validate=True)
    except (binascii.Error, ValueError):
        raise errors.ValidationError("Invalid SSH key format: key material is not base64")
    if not material:
        raise errors.ValidationError("Invalid SSH key format: empty key material")
    return key_type, material


def ssh_fingerprint(material: bytes) -> str:
    """OpenSSH-style SHA256 fingerprint, base64 without padding"""
    digest = hashlib.sha256(material).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def _is_expired(expires_at: Optional[datetime]) -> bool:
    return expires_at is not None and as_utc(expires_at) < utcnow()


class CredentialVault:
    def __init__(self, db: AsyncSession):
        self.db = db

    def _audit(self, user_id: Optional[str], action: str, entity_type: str, entity_id: Optional[str],
               metadata: Optional[Dict[str, Any]] = None) -> None:
        self.db.add(AuditLog(
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            audit_metadata=metadata or {},
        ))

    # --------------------------------------------------------
    # SSH keys
    # --------------------------------------------------------

    async def add_ssh_key(self, user_id: str, title: str, public_key: str,
                          expires_at: Optional[datetime] = None) -> SSHKey:
        key_type, material = parse_public_key(public_key)
        fingerprint = ssh_fingerprint(material)

        existing = await self.db.execute(select(SSHKey.id).where(SSHKey.fingerprint == fingerprint))
        if existing.first():
            raise errors.ConflictError("SSH key already registered", {"fingerprint": fingerprint})

        key = SSHKey(
            user_id=user_id,
            title=title,
            public_key=public_key.strip(),
            fingerprint=fingerprint,
            key_type=key_type,
            expires_at=expires_at,
        )
        self.db.add(key)
        await self.db.flush()
        self._audit(user_id, "ssh_key_added", "ssh_key", key.id, {"fingerprint": fingerprint, "title": title})
        await self.db.commit()
        logger.info(f"SSH key {fingerprint} added for user {user_id}")
        return key

    async def list_ssh_keys(self, user_id: str) -> List[SSHKey]:
        result = await self.db.execute(
            select(SSHKey).where(SSHKey.user_id == user_id).order_by(SSHKey.created_at.desc())
        )
        return list(result.scalars().all())

    async def delete_ssh_key(self, user_id: str, key_id: str) -> None:
        key = await self.db.get(SSHKey, key_id)
        if key is None or key.user_id != user_id:
            raise errors.NotFoundError(f"SSH key not found: {key_id}")
        fingerprint = key.fingerprint
        await self.db.delete(key)
        self._audit(user_id, "ssh_key_deleted", "ssh_key", key_id, {"fingerprint": fingerprint})
        await self.db.commit()

    async def verify_ssh_key(self, public_key: str) -> Optional[SSHKey]:
        """Matching, unexpired key or None; records lastUsedAt on success"""
        try:
            _, material = parse_public_key(public_key)
        except errors.ValidationError:
            return None
        result = await self.db.execute(select(SSHKey).where(SSHKey.fingerprint == ssh_fingerprint(material)))
        key = result.scalar_one_or_none()
        if key is None or _is_expired(key.expires_at):
            return None
        key.last_used_at = utcnow()
        await self.db.commit()
        return key

    # --------------------------------------------------------
    # Personal access tokens
    # --------------------------------------------------------

    async def generate_pat(self, user_id: str, name: str, scopes: Optional[List[str]] = None,
                           expires_in_days: Optional[int] = None) -> Tuple[PersonalAccessToken, str]:
        """Returns (row, plaintext token). The plaintext is never retrievable again."""
        if not name or not name.strip():
            raise errors.ValidationError("Token name is required")
        if expires_in_days is not None and expires_in_days <= 0:
            raise errors.ValidationError("expiresInDays must be positive")

        token = PAT_PREFIX + secrets.token_hex(32)
        pat = PersonalAccessToken(
            user_id=user_id,
            name=name.strip(),
            token_hash=AuthService.hash_secret(_digest(token)),
            token_prefix=token[:LOOKUP_PREFIX_LENGTH],
            scopes=scopes or [],
            expires_at=utcnow() + timedelta(days=expires_in_days) if expires_in_days else None,
        )
        self.db.add(pat)
        await self.db.flush()
        self._audit(user_id, "pat_created", "personal_access_token", pat.id, {"name": pat.name, "scopes": pat.scopes})
        await self.db.commit()
        logger.info(f"Personal access token {pat.id} created for user {user_id}")
        return pat, token

    async def list_pats(self, user_id: str) -> List[PersonalAccessToken]:
        result = await self.db.execute(
            select(PersonalAccessToken)
            .where(PersonalAccessToken.user_id == user_id)
            .order_by(PersonalAccessToken.created_at.desc())
        )
        return list(result.scalars().all())

    async def _owned_pat(self, user_id: str, token_id: str) -> PersonalAccessToken:
        pat = await self.db.get(PersonalAccessToken, token_id)
        if pat is None or pat.user_id != user_id:
            raise errors.NotFoundError(f"Token not found: {token_id}")
        return pat

    async def revoke_pat(self, user_id: str, token_id: str) -> PersonalAccessToken:
        pat = await self._owned_pat(user_id, token_id)
        if not pat.revoked:
            pat.revoked = True
            pat.revoked_at = utcnow()
            self._audit(user_id, "pat_revoked", "personal_access_token", token_id, {"name": pat.name})
            await self.db.commit()
        return pat

    async def delete_pat(self, user_id: str, token_id: str) -> None:
        pat = await self._owned_pat(user_id, token_id)
        await self.db.delete(pat)
        self._audit(user_id, "pat_deleted", "personal_access_token", token_id, {})
        await self.db.commit()

    async def verify_pat(self, token: str) -> Optional[PersonalAccessToken]:
        if not token or not token.startswith(PAT_PREFIX):
            return None
        result = await self.db.execute(
            select(PersonalAccessToken).where(
                PersonalAccessToken.token_prefix == token[:LOOKUP_PREFIX_LENGTH],
                PersonalAccessToken.revoked.is_(False),
            )
        )
        digest = _digest(token)
        for pat in result.scalars().all():
            if not AuthService.verify_secret(digest, pat.token_hash):
                continue
            if _is_expired(pat.expires_at):
                return None
            pat.last_used_at = utcnow()
            await self.db.commit()
            return pat
        return None

    # --------------------------------------------------------
    # OAuth applications
    # --------------------------------------------------------

    async def create_oauth_app(self, owner_id: str, name: str, callback_url: Optional[str] = None,
                               description: Optional[str] = None, homepage_url: Optional[str] = None,
                               scopes: Optional[List[str]] = None) -> Tuple[OAuthApplication, str]:
        """Returns (row, plaintext client secret)"""
        if not name or not name.strip():
            raise errors.ValidationError("Application name is required")

        client_secret = secrets.token_hex(32)
        app = OAuthApplication(
            owner_id=owner_id,
            name=name.strip(),
            description=description,
            homepage_url=homepage_url,
            callback_url=callback_url,
            client_id=OAUTH_CLIENT_PREFIX + secrets.token_hex(16),
            client_secret_hash=AuthService.hash_secret(_digest(client_secret)),
            scopes=scopes or [],
        )
        self.db.add(app)
        await self.db.flush()
        self._audit(owner_id, "oauth_app_created", "oauth_application", app.id, {"clientId": app.client_id})
        await self.db.commit()
        return app, client_secret

    async def list_oauth_apps(self, owner_id: str) -> List[OAuthApplication]:
        result = await self.db.execute(
            select(OAuthApplication)
            .where(OAuthApplication.owner_id == owner_id)
            .order_by(OAuthApplication.created_at.desc())
        )
        return list(result.scalars().all())

    async def _owned_app(self, owner_id: str, app_id: str) -> OAuthApplication:
        app = await self.db.get(OAuthApplication, app_id)
        if app is None or app.owner_id != owner_id:
            raise errors.NotFoundError(f"OAuth application not found: {app_id}")
        return app

    async def update_oauth_app(self, owner_id: str, app_id: str, updates: Dict[str, Any]) -> OAuthApplication:
        forbidden = set(updates) - OAUTH_UPDATABLE_FIELDS
        if forbidden:
            raise errors.ValidationError(f"Fields cannot be updated: {sorted(forbidden)}")

        app = await self._owned_app(owner_id, app_id)
        for field, value in updates.items():
            setattr(app, field, value)
        self._audit(owner_id, "oauth_app_updated", "oauth_application", app_id, {"fields": sorted(updates)})
        await self.db.commit()
        return app

    async def delete_oauth_app(self, owner_id: str, app_id: str) -> None:
        app = await self._owned_app(owner_id, app_id)
        client_id = app.client_id
        await self.db.delete(app)
        self._audit(owner_id, "oauth_app_deleted", "oauth_application", app_id, {"clientId": client_id})
        await self.db.commit()

    async def regenerate_oauth_secret(self, owner_id: str, app_id: str) -> Tuple[OAuthApplication, str]:
        app = await self._owned_app(owner_id, app_id)
        client_secret = secrets.token_hex(32)
        app.client_secret_hash = AuthService.hash_secret(_digest(client_secret))
        self._audit(owner_id, "oauth_secret_regenerated", "oauth_application", app_id, {"clientId": app.client_id})
        await self.db.commit()
        logger.info(f"Client secret regenerated for OAuth application {app_id}")
        return app, client_secret

    async def verify_oauth_client(self, client_id: str, client_secret: str) -> Optional[OAuthApplication]:
        result = await self.db.execute(select(OAuthApplication).where(OAuthApplication.client_id == client_id))
        app = result.scalar_one_or_none()
        if app is None or not app.active:
            return None
        if not AuthService.verify_secret(_digest(client_secret or ""), app.client_secret_hash):
            return None
        app.last_used_at = utcnow()
        await self.db.commit()
        return app

    # --------------------------------------------------------
    # Statistics
    # --------------------------------------------------------

    async def get_user_auth_stats(self, user_id: str) -> Dict[str, Any]:
        keys = await self.list_ssh_keys(user_id)
        tokens = await self.list_pats(user_id)
        apps = await self.list_oauth_apps(user_id)
        return {
            "sshKeys": {
                "total": len(keys),
                "expired": sum(1 for k in keys if _is_expired(k.expires_at)),
            },
            "personalAccessTokens": {
                "total": len(tokens),
                "active": sum(1 for t in tokens if not t.revoked and not _is_expired(t.expires_at)),
                "revoked": sum(1 for t in tokens if t.revoked),
                "expired": sum(1 for t in tokens if not t.revoked and _is_expired(t.expires_at)),
            },
            "oauthApplications": {
                "total": len(apps),
                "active": sum(1 for a in apps if a.active),
            },
        }
