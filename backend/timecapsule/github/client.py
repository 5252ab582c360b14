"""GitHub REST client: OAuth exchange, repository files, git data API, Actions secrets."""

import base64
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx
from nacl import encoding, public

from timecapsule.github.models import GitHubRepo, GitHubUser
from timecapsule.http import async_client

log = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
GITHUB_OAUTH_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
REPO_NAME_PREFIX = "timecapsule-storage-"


class GitHubError(Exception):
    """Non-2xx response (or OAuth error payload) from GitHub."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class FileContent:
    """Decoded text file and the blob sha needed to update it."""

    content: str
    sha: str


def _raise_for_status(r: httpx.Response, what: str) -> None:
    if r.is_success:
        return
    log.warning("GitHub %s failed: %d %s", what, r.status_code, r.reason_phrase)
    raise GitHubError(f"GitHub {what} failed: {r.reason_phrase}", status_code=r.status_code)


async def exchange_code_for_token(
    code: str,
    client_id: str,
    client_secret: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """Exchange an OAuth authorization code for a user access token."""
    async with async_client(transport) as client:
        r = await client.post(
            GITHUB_OAUTH_TOKEN_URL,
            json={"client_id": client_id, "client_secret": client_secret, "code": code},
            headers={"Accept": "application/json"},
        )
    _raise_for_status(r, "OAuth")
    data = r.json()
    if data.get("error"):
        raise GitHubError(f"GitHub OAuth error: {data.get('error_description') or data['error']}")
    return data["access_token"]


def generate_repo_name() -> str:
    """Unique storage repository name, e.g. timecapsule-storage-a1b2c3d4."""
    return f"{REPO_NAME_PREFIX}{secrets.token_hex(4)}"


def encrypt_secret_for_github(secret_value: str, public_key_b64: str) -> str:
    """Seal a secret with the repository's Actions public key (libsodium sealed box), base64."""
    key = public.PublicKey(public_key_b64.encode("utf-8"), encoding.Base64Encoder())
    sealed = public.SealedBox(key).encrypt(secret_value.encode("utf-8"))
    return base64.b64encode(sealed).decode("ascii")


class GitHubClient:
    """
    Client for one user's GitHub access token.
    Each call opens its own AsyncClient; nothing is cached between calls.
    """

    def __init__(
        self,
        access_token: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        base_url: str = GITHUB_API_URL,
    ) -> None:
        self._access_token = access_token
        self._transport = transport
        self._base_url = base_url.rstrip("/")

    def _headers(self, accept: str = "application/vnd.github+json") -> Dict[str, str]:
        return {
            "Accept": accept,
            "Authorization": f"Bearer {self._access_token}",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def _request(
        self,
        method: str,
        path: str,
        what: str,
        json: Optional[Dict[str, Any]] = None,
        accept: str = "application/vnd.github+json",
        allow_404: bool = False,
    ) -> Optional[httpx.Response]:
        async with async_client(self._transport) as client:
            r = await client.request(
                method,
                f"{self._base_url}{path}",
                json=json,
                headers=self._headers(accept),
            )
        if allow_404 and r.status_code == 404:
            return None
        _raise_for_status(r, what)
        return r

    @staticmethod
    def _contents_path(owner: str, repo: str, path: str) -> str:
        return f"/repos/{owner}/{repo}/contents/{quote(path)}"

    async def get_authenticated_user(self) -> GitHubUser:
        """GET /user."""
        r = await self._request("GET", "/user", "get user")
        return GitHubUser.model_validate(r.json())

    async def create_repository(self, name: str) -> GitHubRepo:
        """Create a private, empty repository for the authenticated user."""
        r = await self._request(
            "POST",
            "/user/repos",
            "create repository",
            json={
                "name": name,
                "private": True,
                "description": "Memory Time Capsule storage repository",
                "auto_init": False,
            },
        )
        repo = GitHubRepo.model_validate(r.json())
        log.info("Created repository %s", repo.full_name)
        return repo

    async def create_or_update_file(
        self,
        owner: str,
        repo: str,
        path: str,
        content: str,
        message: str,
        sha: Optional[str] = None,
    ) -> str:
        """
        Write a UTF-8 text file through the contents API and return the new blob sha.
        Pass the current sha to update an existing file; GitHub rejects a stale sha with 409.
        """
        body: Dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
        }
        if sha:
            body["sha"] = sha
        r = await self._request(
            "PUT", self._contents_path(owner, repo, path), f"write {path}", json=body
        )
        return r.json()["content"]["sha"]

    async def get_file_content(self, owner: str, repo: str, path: str) -> Optional[FileContent]:
        """Return a text file and its sha, or None if it does not exist."""
        r = await self._request(
            "GET", self._contents_path(owner, repo, path), f"read {path}", allow_404=True
        )
        if r is None:
            return None
        data = r.json()
        if not isinstance(data, dict) or not isinstance(data.get("content"), str):
            return None
        raw = base64.b64decode(data["content"].replace("\n", ""))
        return FileContent(content=raw.decode("utf-8"), sha=data["sha"])

    async def get_raw_file(self, owner: str, repo: str, path: str) -> Optional[bytes]:
        """Return a file's raw bytes (works past the 1 MB JSON limit), or None if missing."""
        r = await self._request(
            "GET",
            self._contents_path(owner, repo, path),
            f"download {path}",
            accept="application/vnd.github.raw+json",
            allow_404=True,
        )
        return r.content if r is not None else None

    async def upload_files(
        self,
        owner: str,
        repo: str,
        files: Sequence[Tuple[str, bytes]],
        message: str,
        branch: str = "main",
    ) -> List[str]:
        """
        Commit binary files in one commit via blob -> tree -> commit -> ref.
        Returns the blob shas in the order of files.
        """
        prefix = f"/repos/{owner}/{repo}/git"
        blob_shas: List[str] = []
        for path, body in files:
            r = await self._request(
                "POST",
                f"{prefix}/blobs",
                f"create blob for {path}",
                json={"content": base64.b64encode(body).decode("ascii"), "encoding": "base64"},
            )
            blob_shas.append(r.json()["sha"])
        ref = await self._request("GET", f"{prefix}/ref/heads/{branch}", "get ref")
        head_sha = ref.json()["object"]["sha"]
        commit = await self._request("GET", f"{prefix}/commits/{head_sha}", "get commit")
        base_tree = commit.json()["tree"]["sha"]
        tree = await self._request(
            "POST",
            f"{prefix}/trees",
            "create tree",
            json={
                "base_tree": base_tree,
                "tree": [
                    {"path": path, "mode": "100644", "type": "blob", "sha": sha}
                    for (path, _), sha in zip(files, blob_shas)
                ],
            },
        )
        new_commit = await self._request(
            "POST",
            f"{prefix}/commits",
            "create commit",
            json={"message": message, "tree": tree.json()["sha"], "parents": [head_sha]},
        )
        await self._request(
            "PATCH",
            f"{prefix}/refs/heads/{branch}",
            "update ref",
            json={"sha": new_commit.json()["sha"]},
        )
        log.info("Committed %d file(s) to %s/%s", len(files), owner, repo)
        return blob_shas

    async def get_repository_size(self, owner: str, repo: str) -> int:
        """Repository size in bytes (GitHub reports KB)."""
        r = await self._request("GET", f"/repos/{owner}/{repo}", "get repository")
        return int(r.json().get("size", 0)) * 1024

    async def create_repository_secret(
        self, owner: str, repo: str, secret_name: str, secret_value: str
    ) -> None:
        """Create or update an Actions secret, sealed with the repository public key."""
        r = await self._request(
            "GET", f"/repos/{owner}/{repo}/actions/secrets/public-key", "get public key"
        )
        key = r.json()
        await self._request(
            "PUT",
            f"/repos/{owner}/{repo}/actions/secrets/{secret_name}",
            f"set secret {secret_name}",
            json={
                "encrypted_value": encrypt_secret_for_github(secret_value, key["key"]),
                "key_id": key["key_id"],
            },
        )
