"""Gmail API: OAuth code exchange, token refresh, raw MIME send."""

import base64
import logging
import time
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import httpx
from pydantic import BaseModel

from timecapsule.http import async_client

log = logging.getLogger(__name__)

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
GMAIL_SEND_SCOPE = "https://www.googleapis.com/auth/gmail.send"

# Refresh when the access token expires within this window
REFRESH_MARGIN_MS = 5 * 60 * 1000


class GmailError(Exception):
    """Non-2xx response or OAuth error payload from Google."""


class GmailTokens(BaseModel):
    """Stored OAuth tokens; expiry_date is epoch milliseconds."""

    access_token: str
    refresh_token: str
    expiry_date: int


class RefreshedToken(BaseModel):
    """Result of a refresh: new access token and its expiry (epoch ms)."""

    access_token: str
    expiry_date: int


def _now_ms() -> int:
    return int(time.time() * 1000)


async def _post_token_endpoint(
    form: dict,
    what: str,
    transport: Optional[httpx.AsyncBaseTransport],
) -> dict:
    async with async_client(transport) as client:
        r = await client.post(GOOGLE_TOKEN_URL, data=form)
    if not r.is_success:
        log.warning("Gmail %s failed: %d %s", what, r.status_code, r.reason_phrase)
        raise GmailError(f"Gmail {what} failed: {r.reason_phrase}")
    data = r.json()
    if data.get("error"):
        raise GmailError(f"Gmail OAuth error: {data.get('error_description') or data['error']}")
    return data


async def exchange_code_for_gmail_tokens(
    code: str,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> GmailTokens:
    """Exchange an authorization code for access and refresh tokens."""
    data = await _post_token_endpoint(
        {
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        },
        "OAuth",
        transport,
    )
    return GmailTokens(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token", ""),
        expiry_date=_now_ms() + int(data.get("expires_in", 3600)) * 1000,
    )


async def refresh_access_token(
    refresh_token: str,
    client_id: str,
    client_secret: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RefreshedToken:
    """Obtain a new access token from a refresh token."""
    data = await _post_token_endpoint(
        {
            "refresh_token": refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "refresh_token",
        },
        "token refresh",
        transport,
    )
    return RefreshedToken(
        access_token=data["access_token"],
        expiry_date=_now_ms() + int(data.get("expires_in", 3600)) * 1000,
    )


def needs_refresh(tokens: GmailTokens, now_ms: Optional[int] = None) -> bool:
    """True if the access token is expired or expires within five minutes."""
    now_ms = _now_ms() if now_ms is None else now_ms
    return tokens.expiry_date < now_ms + REFRESH_MARGIN_MS


async def get_valid_access_token(
    tokens: GmailTokens,
    client_id: str,
    client_secret: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """Return a usable access token, refreshing if needed. The refreshed token is not persisted."""
    if needs_refresh(tokens):
        refreshed = await refresh_access_token(
            tokens.refresh_token, client_id, client_secret, transport
        )
        return refreshed.access_token
    return tokens.access_token


def encode_subject(subject: str) -> str:
    """RFC 2047 base64 encoded-word for non-ASCII subjects; ASCII passes unchanged."""
    if subject.isascii():
        return subject
    encoded = base64.b64encode(subject.encode("utf-8")).decode("ascii")
    return f"=?UTF-8?B?{encoded}?="


def build_raw_message(to: str, subject: str, html_body: str, text_body: str) -> str:
    """multipart/alternative message (text then HTML), base64url encoded for the send API."""
    msg = MIMEMultipart("alternative")
    msg["To"] = to
    msg["Subject"] = encode_subject(subject)
    msg.attach(MIMEText(text_body, "plain", "utf-8"))
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    # No header folding: a folded encoded-word subject decodes with a leading space
    raw = msg.as_bytes(policy=msg.policy.clone(max_line_length=0))
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


async def send_email(
    to: str,
    subject: str,
    html_body: str,
    text_body: str,
    access_token: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """Send one message through users.messages.send. Raises GmailError on failure."""
    raw = build_raw_message(to, subject, html_body, text_body)
    async with async_client(transport) as client:
        r = await client.post(
            GMAIL_SEND_URL,
            json={"raw": raw},
            headers={"Authorization": f"Bearer {access_token}"},
        )
    if not r.is_success:
        log.warning("Gmail send to %s failed: %d", to, r.status_code)
        raise GmailError(f"Gmail send failed: {r.text}")
    log.info("Sent email to %s", to)
