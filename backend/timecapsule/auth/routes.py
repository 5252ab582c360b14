"""Auth routes: GitHub and Gmail OAuth, session lookup."""

import logging
import time
from typing import Annotated, Dict, Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from timecapsule.auth.models import AuthorizeResponse, UserSession
from timecapsule.auth.sessions import get_user_session, save_user_session
from timecapsule.capsules.manifest import split_full_name
from timecapsule.config import get_settings
from timecapsule.db.session import get_db
from timecapsule.github.client import (
    GITHUB_AUTHORIZE_URL,
    GitHubClient,
    GitHubError,
    exchange_code_for_token,
)
from timecapsule.github.repo_init import initialize_repository
from timecapsule.gmail.client import (
    GMAIL_SEND_SCOPE,
    GOOGLE_AUTHORIZE_URL,
    GmailError,
    exchange_code_for_gmail_tokens,
)
from timecapsule.gmail.tokens import GmailTokenStore
from timecapsule.http import get_transport
from timecapsule.kv import store as kv
from timecapsule.kv.store import KVKeys
from timecapsule.limiter import limiter
from timecapsule.security.crypto import generate_secure_token

router = APIRouter(prefix="/api/auth", tags=["auth"])
log = logging.getLogger(__name__)

OAUTH_STATE_TTL_SECONDS = 600
GITHUB_SCOPES = "repo workflow"

Transport = Annotated[Optional[httpx.AsyncBaseTransport], Depends(get_transport)]
DB = Annotated[AsyncSession, Depends(get_db)]


def _frontend_callback(params: Dict[str, str]) -> RedirectResponse:
    """Redirect to the frontend's /auth/callback page with query params."""
    url = f"{get_settings().frontend_url.rstrip('/')}/auth/callback?{urlencode(params)}"
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get("/github/authorize", response_model=AuthorizeResponse, response_model_by_alias=True)
@limiter.limit("20/minute")
async def github_authorize(request: Request, session: DB) -> AuthorizeResponse:
    """Build the GitHub authorization URL and remember its CSRF state for ten minutes."""
    settings = get_settings()
    state = generate_secure_token(16)
    await kv.store_json(
        session, KVKeys.oauth_state(state), {"createdAt": int(time.time())}, OAUTH_STATE_TTL_SECONDS
    )
    query = urlencode(
        {
            "client_id": settings.github_client_id,
            "redirect_uri": f"{settings.worker_url.rstrip('/')}/api/auth/github/callback",
            "scope": GITHUB_SCOPES,
            "state": state,
        }
    )
    return AuthorizeResponse(auth_url=f"{GITHUB_AUTHORIZE_URL}?{query}", state=state)


@router.get("/github/callback")
@limiter.limit("20/minute")
async def github_callback(
    request: Request,
    session: DB,
    transport: Transport,
    code: Optional[str] = None,
    state: Optional[str] = None,
) -> RedirectResponse:
    """
    Finish GitHub OAuth: exchange the code, create and seed the storage repository,
    store the encrypted token and the session, then redirect to the frontend.
    """
    if not code:
        return _frontend_callback({"error": "missing_code"})
    if not state:
        log.warning("GitHub callback without OAuth state")
        return _frontend_callback({"error": "missing_state"})
    state_key = KVKeys.oauth_state(state)
    if not await kv.exists(session, state_key):
        log.warning("GitHub callback with unknown OAuth state")
        return _frontend_callback({"error": "invalid_state"})
    await kv.delete(session, state_key)

    settings = get_settings()
    try:
        access_token = await exchange_code_for_token(
            code, settings.github_client_id, settings.github_client_secret, transport
        )
        github = GitHubClient(access_token, transport=transport)
        github_user = await github.get_authenticated_user()
        repo = await initialize_repository(
            github,
            github_user,
            settings.unlock_package,
            ready_delay_seconds=settings.repo_ready_delay_seconds,
        )
    except (GitHubError, httpx.HTTPError) as e:
        log.error("GitHub OAuth callback failed: %s", e)
        return _frontend_callback({"error": "oauth_failed", "message": str(e)})

    user_id = str(github_user.id)
    await kv.store_encrypted_token(
        session, KVKeys.github_token(user_id), access_token, settings.encryption_key
    )
    await save_user_session(
        session,
        UserSession(
            user_id=user_id,
            github_user=github_user,
            repository=repo,
            github_connected=True,
            gmail_connected=False,
        ),
    )
    log.info("GitHub connected for user_id=%s repo=%s", user_id, repo.full_name)
    return _frontend_callback({"userId": user_id, "success": "true"})


@router.get("/session/{user_id}")
async def get_session_record(user_id: str, session: DB) -> dict:
    """Full session record for user_id."""
    user_session = await get_user_session(session, user_id)
    if user_session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Session not found", "message": "Sign in with GitHub again"},
        )
    return user_session.model_dump(mode="json", by_alias=True, exclude_none=True)


@router.get("/gmail/authorize", response_model=AuthorizeResponse, response_model_by_alias=True,
            response_model_exclude_none=True)
@limiter.limit("20/minute")
async def gmail_authorize(
    request: Request,
    user_id: Annotated[Optional[str], Query(alias="userId")] = None,
) -> AuthorizeResponse:
    """Google consent URL for the gmail.send scope; the user id travels as state."""
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "userId parameter required",
                "message": "Connect GitHub first; Gmail is linked to that account",
            },
        )
    settings = get_settings()
    query = urlencode(
        {
            "client_id": settings.gmail_client_id,
            "redirect_uri": f"{settings.worker_url.rstrip('/')}/api/auth/gmail/callback",
            "response_type": "code",
            "scope": GMAIL_SEND_SCOPE,
            "access_type": "offline",
            "prompt": "consent",
            "state": user_id,
        }
    )
    return AuthorizeResponse(auth_url=f"{GOOGLE_AUTHORIZE_URL}?{query}")


async def _push_workflow_secrets(
    github: GitHubClient, full_name: str, secrets: Dict[str, str]
) -> None:
    """Store the unlock workflow's secrets in the repository, one at a time. Failures are logged."""
    owner, repo = split_full_name(full_name)
    for name, value in secrets.items():
        try:
            await github.create_repository_secret(owner, repo, name, value)
        except (GitHubError, httpx.HTTPError, ValueError) as e:
            log.warning("Failed to store repository secret %s (non-critical): %s", name, e)


@router.get("/gmail/callback")
@limiter.limit("20/minute")
async def gmail_callback(
    request: Request,
    session: DB,
    transport: Transport,
    code: Optional[str] = None,
    state: Optional[str] = None,
):
    """
    Finish Gmail OAuth: store the encrypted tokens, push them to the repository as
    Actions secrets (best effort), mark the session connected and redirect.
    """
    if not code:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "Missing authorization code",
                "message": "Google did not return an authorization code; start the Gmail connection again",
            },
        )
    if not state:
        return _frontend_callback(
            {"error": "Missing userId in OAuth callback. Please try connecting GitHub first."}
        )
    user_id = state
    settings = get_settings()
    try:
        tokens = await exchange_code_for_gmail_tokens(
            code,
            settings.gmail_client_id,
            settings.gmail_client_secret,
            f"{settings.worker_url.rstrip('/')}/api/auth/gmail/callback",
            transport,
        )
    except (GmailError, httpx.HTTPError) as e:
        log.error("Gmail OAuth failed for user_id=%s: %s", user_id, e)
        return _frontend_callback({"error": str(e) or "Gmail OAuth failed"})

    user_session = await get_user_session(session, user_id)
    if user_session is None:
        return _frontend_callback(
            {"error": "User session not found. Please connect GitHub first."}
        )

    token_store = GmailTokenStore(
        session,
        user_id,
        settings.encryption_key,
        settings.gmail_client_id,
        settings.gmail_client_secret,
        transport,
    )
    await token_store.save(tokens)

    github_token = await kv.get_encrypted_token(
        session, KVKeys.github_token(user_id), settings.encryption_key
    )
    if github_token and user_session.repository:
        await _push_workflow_secrets(
            GitHubClient(github_token, transport=transport),
            user_session.repository.full_name,
            {
                "GMAIL_REFRESH_TOKEN": tokens.refresh_token,
                "GMAIL_CLIENT_ID": settings.gmail_client_id,
                "GMAIL_CLIENT_SECRET": settings.gmail_client_secret,
                "FRONTEND_URL": settings.frontend_url,
            },
        )

    user_session.gmail_connected = True
    user_session.gmail_email = user_session.github_user.email
    await save_user_session(session, user_session)
    log.info("Gmail connected for user_id=%s", user_id)
    return _frontend_callback({"userId": user_id, "gmailSuccess": "true"})
