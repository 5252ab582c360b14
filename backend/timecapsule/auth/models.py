"""Session record kept per connected user, and the OAuth responses built from it."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from timecapsule.github.models import GitHubRepo, GitHubUser


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class UserSession(BaseModel):
    """Stored at user_session:<userId>. Keys are camelCase except the GitHub snapshots."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    github_user: GitHubUser = Field(alias="githubUser")
    repository: Optional[GitHubRepo] = None
    github_connected: bool = Field(default=True, alias="githubConnected")
    gmail_connected: bool = Field(default=False, alias="gmailConnected")
    gmail_email: Optional[str] = Field(default=None, alias="gmailEmail")
    created_at: str = Field(default_factory=_utc_now_iso, alias="createdAt")

    @property
    def sender_name(self) -> str:
        return self.github_user.name or self.github_user.login

    @property
    def sender_email(self) -> str:
        return self.github_user.email or "noreply@timecapsule.app"


class AuthorizeResponse(BaseModel):
    """Provider URL the frontend redirects to."""

    model_config = ConfigDict(populate_by_name=True)

    auth_url: str = Field(alias="authUrl")
    state: Optional[str] = None
