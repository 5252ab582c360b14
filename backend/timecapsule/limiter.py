"""Per-client-IP rate limiter for OAuth, capsule creation and PIN endpoints."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from timecapsule.config import get_settings

limiter = Limiter(key_func=get_remote_address, enabled=get_settings().rate_limit_enabled)
