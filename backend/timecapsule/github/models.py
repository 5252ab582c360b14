"""GitHub user and repository snapshots kept in sessions."""

from typing import Optional

from pydantic import BaseModel


class GitHubUser(BaseModel):
    """Authenticated user profile."""

    id: int
    login: str
    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: str = ""


class GitHubRepo(BaseModel):
    """Repository descriptor."""

    name: str
    full_name: str
    private: bool = True
    html_url: str = ""
    clone_url: str = ""

    @property
    def owner(self) -> str:
        return self.full_name.split("/", 1)[0]
