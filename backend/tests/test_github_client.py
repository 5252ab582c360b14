"""Tests for the GitHub client against the in-memory API."""

import base64
import json

import httpx
import pytest
from nacl import public

from fakes import GITHUB_ACCESS_TOKEN
from timecapsule.github.client import (
    REPO_NAME_PREFIX,
    GitHubClient,
    GitHubError,
    encrypt_secret_for_github,
    exchange_code_for_token,
    generate_repo_name,
)


@pytest.fixture
def github(fake_apis) -> GitHubClient:
    return GitHubClient(GITHUB_ACCESS_TOKEN, transport=fake_apis.transport)


def test_generate_repo_name() -> None:
    name = generate_repo_name()
    assert name.startswith(REPO_NAME_PREFIX)
    suffix = name[len(REPO_NAME_PREFIX):]
    assert len(suffix) == 8
    int(suffix, 16)
    assert generate_repo_name() != name


def test_encrypt_secret_opens_with_private_key() -> None:
    key = public.PrivateKey.generate()
    pub = base64.b64encode(bytes(key.public_key)).decode()
    sealed = encrypt_secret_for_github("s3cret", pub)
    assert public.SealedBox(key).decrypt(base64.b64decode(sealed)) == b"s3cret"


@pytest.mark.asyncio
async def test_exchange_code(fake_apis) -> None:
    token = await exchange_code_for_token("good", "id", "secret", fake_apis.transport)
    assert token == GITHUB_ACCESS_TOKEN


@pytest.mark.asyncio
async def test_exchange_code_error_payload(fake_apis) -> None:
    """GitHub answers 200 with an error body for a bad code."""
    with pytest.raises(GitHubError, match="incorrect or expired"):
        await exchange_code_for_token("bad-code", "id", "secret", fake_apis.transport)


@pytest.mark.asyncio
async def test_get_authenticated_user(github) -> None:
    user = await github.get_authenticated_user()
    assert user.id == 4242
    assert user.login == "octo"


@pytest.mark.asyncio
async def test_non_2xx_raises_with_status(fake_apis) -> None:
    client = GitHubClient("wrong-token", transport=fake_apis.transport)
    with pytest.raises(GitHubError) as exc:
        await client.get_authenticated_user()
    assert exc.value.status_code == 401
    assert "Unauthorized" in str(exc.value)


@pytest.mark.asyncio
async def test_create_repository(github, fake_apis) -> None:
    repo = await github.create_repository("timecapsule-storage-0001")
    assert repo.full_name == "octo/timecapsule-storage-0001"
    assert repo.owner == "octo"
    body = json.loads(fake_apis.requests_to("POST", "/user/repos")[0].content)
    assert body["private"] is True


@pytest.mark.asyncio
async def test_file_create_read_update(github, fake_apis) -> None:
    """Create without sha, read content and sha, update with the sha."""
    fake_apis.add_repo("octo", "r")
    assert await github.get_file_content("octo", "r", "notes/a.txt") is None
    sha1 = await github.create_or_update_file("octo", "r", "notes/a.txt", "héllo", "add")
    file = await github.get_file_content("octo", "r", "notes/a.txt")
    assert file.content == "héllo"
    assert file.sha == sha1
    put = json.loads(fake_apis.requests_to("PUT", "/contents/")[0].content)
    assert "sha" not in put

    sha2 = await github.create_or_update_file("octo", "r", "notes/a.txt", "bye", "edit", sha=sha1)
    assert sha2 != sha1
    assert (await github.get_file_content("octo", "r", "notes/a.txt")).content == "bye"


@pytest.mark.asyncio
async def test_stale_sha_conflicts(github, fake_apis) -> None:
    fake_apis.add_repo("octo", "r")
    sha1 = await github.create_or_update_file("octo", "r", "a.txt", "one", "add")
    await github.create_or_update_file("octo", "r", "a.txt", "two", "edit", sha=sha1)
    with pytest.raises(GitHubError) as exc:
        await github.create_or_update_file("octo", "r", "a.txt", "three", "edit", sha=sha1)
    assert exc.value.status_code == 409


@pytest.mark.asyncio
async def test_get_file_other_errors_propagate(fake_apis) -> None:
    """Only 404 maps to None; other failures still raise."""
    client = GitHubClient("nope", transport=fake_apis.transport)
    with pytest.raises(GitHubError):
        await client.get_file_content("octo", "r", "a.txt")


@pytest.mark.asyncio
async def test_upload_files_single_commit(github, fake_apis) -> None:
    """Binary files land on the branch through blob, tree, commit and ref update."""
    repo = fake_apis.add_repo("octo", "r")
    payload = bytes(range(256)) * 4
    shas = await github.upload_files(
        "octo", "r", [("capsules/x.mp4", payload), ("capsules/x/photo-0.png", b"\x89PNG")], "add"
    )
    assert len(shas) == 2
    assert repo.files["capsules/x.mp4"] == payload
    assert repo.files["capsules/x/photo-0.png"] == b"\x89PNG"
    assert len(fake_apis.requests_to("POST", "/git/commits")) == 1
    assert len(fake_apis.requests_to("PATCH", "/git/refs/heads/main")) == 1
    assert await github.get_raw_file("octo", "r", "capsules/x.mp4") == payload
    assert await github.get_raw_file("octo", "r", "capsules/missing.mp4") is None


@pytest.mark.asyncio
async def test_repository_size_in_bytes(github, fake_apis) -> None:
    repo = fake_apis.add_repo("octo", "r")
    repo.size_kb = 3
    assert await github.get_repository_size("octo", "r") == 3072


@pytest.mark.asyncio
async def test_create_repository_secret(github, fake_apis) -> None:
    fake_apis.add_repo("octo", "r")
    await github.create_repository_secret("octo", "r", "GMAIL_CLIENT_ID", "abc")
    assert fake_apis.decrypt_secret("octo/r", "GMAIL_CLIENT_ID") == "abc"


@pytest.mark.asyncio
async def test_transport_errors_are_httpx_errors() -> None:
    def boom(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    client = GitHubClient("t", transport=httpx.MockTransport(boom))
    with pytest.raises(httpx.HTTPError):
        await client.get_authenticated_user()
