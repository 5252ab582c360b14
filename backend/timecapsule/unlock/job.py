"""
Scheduled unlock job, run hourly by the workflow in each storage repository.

For every capsule whose unlock time has passed and whose unlock email has not gone out,
issue a 4-digit PIN, email it to the recipient, and notify the sender. The manifest file
is rewritten only if at least one capsule was unlocked.

unlockEmailSent is the only guard against sending twice; two overlapping runs on the same
manifest can both unlock the same capsule.
"""

import asyncio
import logging
import os
import secrets
import sys
import time
from pathlib import Path
from typing import List, Optional, Tuple

import httpx

from timecapsule.capsules.manifest import ManifestCorrupt, parse_manifest, serialize_manifest
from timecapsule.capsules.models import Capsule
from timecapsule.gmail.client import GmailError, refresh_access_token, send_email
from timecapsule.gmail.templates import (
    CapsuleEmailData,
    format_unlock_date,
    sender_notification_email,
    unlock_email,
    whatsapp_share_link,
)
from timecapsule.security.crypto import sha256_hash

log = logging.getLogger(__name__)


def generate_pin() -> str:
    """Uniform 4-digit PIN, zero padded."""
    return f"{secrets.randbelow(10000):04d}"


class GmailNotifier:
    """Sends unlock mail with the repository owner's Gmail refresh token."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        frontend_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._frontend_url = frontend_url.rstrip("/")
        self._transport = transport
        self._access_token: Optional[str] = None

    async def _token(self) -> str:
        # One refresh per run; the job finishes well within the token lifetime
        if self._access_token is None:
            refreshed = await refresh_access_token(
                self._refresh_token, self._client_id, self._client_secret, self._transport
            )
            self._access_token = refreshed.access_token
        return self._access_token

    def magic_link(self, capsule: Capsule) -> str:
        return f"{self._frontend_url}/open?t={capsule.magic_token}"

    async def send_unlock(self, capsule: Capsule, pin: str) -> None:
        html, text = unlock_email(
            CapsuleEmailData(
                recipient_email=capsule.recipient_email,
                recipient_name=capsule.recipient_name,
                sender_name=capsule.sender_name,
                sender_email=capsule.sender_email,
                capsule_title=capsule.title,
                unlock_date=format_unlock_date(capsule.unlock_at),
                magic_link=self.magic_link(capsule),
                pin=pin,
            )
        )
        await send_email(
            capsule.recipient_email,
            f"\U0001F389 Your time capsule from {capsule.sender_name} is unlocked!",
            html,
            text,
            await self._token(),
            self._transport,
        )

    async def send_sender_notification(self, capsule: Capsule) -> None:
        link = self.magic_link(capsule)
        html, text = sender_notification_email(
            CapsuleEmailData(
                recipient_email=capsule.recipient_email,
                recipient_name=capsule.recipient_name,
                sender_name=capsule.sender_name,
                sender_email=capsule.sender_email,
                capsule_title=capsule.title,
                unlock_date=format_unlock_date(capsule.unlock_at),
                magic_link=link,
                whatsapp_link=whatsapp_share_link(
                    f'Hi! Your time capsule "{capsule.title}" is now unlocked! View it here: {link}'
                ),
            )
        )
        await send_email(
            capsule.sender_email,
            f"✅ Your capsule to {capsule.recipient_email} unlocked",
            html,
            text,
            await self._token(),
            self._transport,
        )


def is_due(capsule: Capsule, now: int) -> bool:
    return not capsule.unlock_email_sent and capsule.unlock_at <= now


async def unlock_capsule(capsule: Capsule, now: int, notifier) -> Capsule:
    """
    Return the unlocked copy of capsule after the recipient email went out.
    Raises if the recipient email fails; the sender notification is best effort.
    """
    pin = generate_pin()
    unlocked = capsule.model_copy(
        update={
            "pin": pin,
            "pin_hash": sha256_hash(pin),
            "unlock_email_sent": True,
            "unlocked_at": now,
        }
    )
    await notifier.send_unlock(unlocked, pin)
    try:
        await notifier.send_sender_notification(unlocked)
    except (GmailError, httpx.HTTPError) as e:
        log.warning("Sender notification for capsule %s failed: %s", capsule.id, e)
    return unlocked


async def unlock_due_capsules(
    capsules: List[Capsule], now: int, notifier
) -> Tuple[List[Capsule], int]:
    """
    Unlock every due capsule. Returns (capsules, number unlocked). A capsule whose
    recipient email fails is left as it was and retried on the next run.
    """
    result: List[Capsule] = []
    unlocked = 0
    for capsule in capsules:
        if not is_due(capsule, now):
            result.append(capsule)
            continue
        log.info("Unlocking capsule %s", capsule.id)
        try:
            result.append(await unlock_capsule(capsule, now, notifier))
            unlocked += 1
        except (GmailError, httpx.HTTPError) as e:
            log.error("Failed to unlock capsule %s: %s", capsule.id, e)
            result.append(capsule)
    return result, unlocked


async def run_manifest_file(path: Path, notifier, now: Optional[int] = None) -> int:
    """Process a local capsules.json; rewrite it only if something was unlocked."""
    now = int(time.time()) if now is None else now
    capsules = parse_manifest(path.read_text(encoding="utf-8"))
    log.info("Checking %d capsule(s)", len(capsules))
    updated, unlocked = await unlock_due_capsules(capsules, now, notifier)
    if unlocked:
        path.write_text(serialize_manifest(updated), encoding="utf-8")
        log.info("Unlocked %d capsule(s); updated %s", unlocked, path)
    else:
        log.info("No capsules to unlock")
    return unlocked


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the workflow: unlock_script.py [capsules.json]."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = sys.argv[1:] if argv is None else argv
    path = Path(args[0] if args else "capsules.json")
    env = {
        name: os.environ.get(name, "").strip()
        for name in ("GMAIL_CLIENT_ID", "GMAIL_CLIENT_SECRET", "GMAIL_REFRESH_TOKEN", "FRONTEND_URL")
    }
    missing = [name for name, value in env.items() if not value]
    if missing:
        log.error("Missing environment: %s", ", ".join(missing))
        return 1
    if not path.is_file():
        log.error("Manifest not found: %s", path)
        return 1
    notifier = GmailNotifier(
        env["GMAIL_CLIENT_ID"],
        env["GMAIL_CLIENT_SECRET"],
        env["GMAIL_REFRESH_TOKEN"],
        env["FRONTEND_URL"],
    )
    try:
        asyncio.run(run_manifest_file(path, notifier))
    except ManifestCorrupt as e:
        log.error("Could not process %s: %s", path, e)
        return 1
    return 0
