# routers/git_auth.py — SSH keys, personal access tokens and OAuth applications
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

import errors
from auth import get_current_user, require_permission, CurrentUser
from credential_vault import CredentialVault
from database import get_db_session
from models import OAuthApplication, PersonalAccessToken, SSHKey, iso

router = APIRouter(prefix="/lowcode/api/git/auth", tags=["Git Credentials"])


# ============================================================
# SCHEMAS
# ============================================================

class SSHKeyCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    public_key: str = Field(..., min_length=1)
    expires_at: Optional[datetime] = None


class SSHKeyVerify(BaseModel):
    public_key: str


class TokenCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    scopes: List[str] = []
    expires_in_days: Optional[int] = Field(None, gt=0, le=3650)


class TokenVerify(BaseModel):
    token: str


class OAuthAppCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    homepage_url: Optional[str] = None
    callback_url: Optional[str] = None
    scopes: List[str] = []


class OAuthAppUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    homepage_url: Optional[str] = None
    callback_url: Optional[str] = None
    scopes: Optional[List[str]] = None
    active: Optional[bool] = None


class OAuthClientVerify(BaseModel):
    client_id: str
    client_secret: str


def _key_to_out(k: SSHKey) -> dict:
    return {
        "id": k.id,
        "title": k.title,
        "fingerprint": k.fingerprint,
        "keyType": k.key_type.value,
        "expiresAt": iso(k.expires_at),
        "lastUsedAt": iso(k.last_used_at),
        "createdAt": iso(k.created_at),
    }


def _token_to_out(t: PersonalAccessToken) -> dict:
    return {
        "id": t.id,
        "name": t.name,
        "tokenPrefix": t.token_prefix,
        "scopes": t.scopes or [],
        "expiresAt": iso(t.expires_at),
        "lastUsedAt": iso(t.last_used_at),
        "revoked": bool(t.revoked),
        "revokedAt": iso(t.revoked_at),
        "createdAt": iso(t.created_at),
    }


def _app_to_out(a: OAuthApplication) -> dict:
    return {
        "id": a.id,
        "name": a.name,
        "description": a.description,
        "homepageUrl": a.homepage_url,
        "callbackUrl": a.callback_url,
        "clientId": a.client_id,
        "scopes": a.scopes or [],
        "active": bool(a.active),
        "lastUsedAt": iso(a.last_used_at),
        "createdAt": iso(a.created_at),
    }


# ============================================================
# SSH KEYS
# ============================================================

@router.post("/ssh-keys", status_code=201)
async def add_ssh_key(
    req: SSHKeyCreate,
    user: CurrentUser = Depends(require_permission("credentials:write")),
    db: AsyncSession = Depends(get_db_session),
):
    key = await CredentialVault(db).add_ssh_key(user.id, req.title, req.public_key, req.expires_at)
    return {"success": True, "data": _key_to_out(key)}


@router.get("/ssh-keys")
async def list_ssh_keys(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    keys = await CredentialVault(db).list_ssh_keys(user.id)
    return {"success": True, "data": [_key_to_out(k) for k in keys]}


@router.delete("/ssh-keys/{key_id}")
async def delete_ssh_key(
    key_id: str,
    user: CurrentUser = Depends(require_permission("credentials:write")),
    db: AsyncSession = Depends(get_db_session),
):
    await CredentialVault(db).delete_ssh_key(user.id, key_id)
    return {"success": True, "message": "SSH key deleted"}


@router.post("/ssh-keys/verify")
async def verify_ssh_key(
    req: SSHKeyVerify,
    user: CurrentUser = Depends(require_permission("repos:read")),
    db: AsyncSession = Depends(get_db_session),
):
    key = await CredentialVault(db).verify_ssh_key(req.public_key)
    if key is None:
        raise errors.AuthError("SSH key not recognised or expired")
    return {"success": True, "data": {"userId": key.user_id, "keyId": key.id, "fingerprint": key.fingerprint}}


# ============================================================
# PERSONAL ACCESS TOKENS
# ============================================================

@router.post("/tokens", status_code=201)
async def generate_token(
    req: TokenCreate,
    user: CurrentUser = Depends(require_permission("credentials:write")),
    db: AsyncSession = Depends(get_db_session),
):
    pat, token = await CredentialVault(db).generate_pat(user.id, req.name, req.scopes, req.expires_in_days)
    # Plaintext is returned exactly once
    return {"success": True, "data": {**_token_to_out(pat), "token": token}}


@router.get("/tokens")
async def list_tokens(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    tokens = await CredentialVault(db).list_pats(user.id)
    return {"success": True, "data": [_token_to_out(t) for t in tokens]}


@router.post("/tokens/{token_id}/revoke")
async def revoke_token(
    token_id: str,
    user: CurrentUser = Depends(require_permission("credentials:write")),
    db: AsyncSession = Depends(get_db_session),
):
    pat = await CredentialVault(db).revoke_pat(user.id, token_id)
    return {"success": True, "data": _token_to_out(pat)}


@router.delete("/tokens/{token_id}")
async def delete_token(
    token_id: str,
    user: CurrentUser = Depends(require_permission("credentials:write")),
    db: AsyncSession = Depends(get_db_session),
):
    await CredentialVault(db).delete_pat(user.id, token_id)
    return {"success": True, "message": "Token deleted"}


@router.post("/tokens/verify")
async def verify_token(
    req: TokenVerify,
    db: AsyncSession = Depends(get_db_session),
):
    pat = await CredentialVault(db).verify_pat(req.token)
    if pat is None:
        raise errors.AuthError("Invalid, revoked or expired token")
    return {"success": True, "data": {"userId": pat.user_id, "tokenId": pat.id, "scopes": pat.scopes or []}}


# ============================================================
# OAUTH APPLICATIONS
# ============================================================

@router.post("/oauth-apps", status_code=201)
async def create_oauth_app(
    req: OAuthAppCreate,
    user: CurrentUser = Depends(require_permission("credentials:write")),
    db: AsyncSession = Depends(get_db_session),
):
    app, secret = await CredentialVault(db).create_oauth_app(
        user.id, req.name, callback_url=req.callback_url, description=req.description,
        homepage_url=req.homepage_url, scopes=req.scopes,
    )
    return {"success": True, "data": {**_app_to_out(app), "clientSecret": secret}}


@router.get("/oauth-apps")
async def list_oauth_apps(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    apps = await CredentialVault(db).list_oauth_apps(user.id)
    return {"success": True, "data": [_app_to_out(a) for a in apps]}


@router.patch("/oauth-apps/{app_id}")
async def update_oauth_app(
    app_id: str,
    req: OAuthAppUpdate,
    user: CurrentUser = Depends(require_permission("credentials:write")),
    db: AsyncSession = Depends(get_db_session),
):
    app = await CredentialVault(db).update_oauth_app(user.id, app_id, req.model_dump(exclude_unset=True))
    return {"success": True, "data": _app_to_out(app)}


@router.delete("/oauth-apps/{app_id}")
async def delete_oauth_app(
    app_id: str,
    user: CurrentUser = Depends(require_permission("credentials:write")),
    db: AsyncSession = Depends(get_db_session),
):
    await CredentialVault(db).delete_oauth_app(user.id, app_id)
    return {"success": True, "message": "OAuth application deleted"}


@router.post("/oauth-apps/{app_id}/regenerate-secret")
async def regenerate_oauth_secret(
    app_id: str,
    user: CurrentUser = Depends(require_permission("credentials:write")),
    db: AsyncSession = Depends(get_db_session),
):
    app, secret = await CredentialVault(db).regenerate_oauth_secret(user.id, app_id)
    return {"success": True, "data": {**_app_to_out(app), "clientSecret": secret}}


@router.post("/oauth-apps/verify")
async def verify_oauth_client(
    req: OAuthClientVerify,
    db: AsyncSession = Depends(get_db_session),
):
    app = await CredentialVault(db).verify_oauth_client(req.client_id, req.client_secret)
    if app is None:
        raise errors.AuthError("Invalid client credentials")
    return {"success": True, "data": {"applicationId": app.id, "ownerId": app.owner_id, "scopes": app.scopes or []}}


# ============================================================
# STATS
# ============================================================

@router.get("/stats")
async def auth_stats(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return {"success": True, "data": await CredentialVault(db).get_user_auth_stats(user.id)}
