"""In-memory GitHub and Google APIs for tests, served through httpx.MockTransport."""

import base64
import email
import hashlib
import json
from email import policy
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, unquote

import httpx
from nacl import encoding, public

GITHUB_ACCESS_TOKEN = "gho_test_token"
GMAIL_ACCESS_TOKEN = "ya29.initial"
GMAIL_REFRESHED_TOKEN = "ya29.refreshed"
GMAIL_REFRESH_TOKEN = "1//refresh-token"


def _blob_sha(data: bytes) -> str:
    return hashlib.sha1(b"blob %d\0" % len(data) + data).hexdigest()


class FakeRepo:
    """Files on the default branch plus the git objects written through the data API."""

    def __init__(self, owner: str, name: str) -> None:
        self.owner = owner
        self.name = name
        self.files: Dict[str, bytes] = {}
        self.blobs: Dict[str, bytes] = {}
        self.trees: Dict[str, List[Dict[str, Any]]] = {}
        self.commits: Dict[str, str] = {"commit-0": "tree-0"}
        self.head = "commit-0"
        self.size_kb = 0
        self.secrets: Dict[str, str] = {}

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def descriptor(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "full_name": self.full_name,
            "private": True,
            "html_url": f"https://github.com/{self.full_name}",
            "clone_url": f"https://github.com/{self.full_name}.git",
            "size": self.size_kb,
        }

    def sha(self, path: str) -> Optional[str]:
        data = self.files.get(path)
        return _blob_sha(data) if data is not None else None


class FakeApis:
    """
    Just enough of api.github.com, github.com OAuth, oauth2.googleapis.com and the Gmail
    send endpoint to run the service end to end.
    """

    def __init__(self) -> None:
        self.transport = httpx.MockTransport(self.handle)
        self.user: Dict[str, Any] = {
            "id": 4242,
            "login": "octo",
            "name": "Octo Cat",
            "email": "octo@example.com",
            "avatar_url": "https://avatars.test/octo",
        }
        self.repos: Dict[str, FakeRepo] = {}
        self.secret_key = public.PrivateKey.generate()
        self.sent: List[Dict[str, str]] = []
        self.requests: List[httpx.Request] = []
        self.fail_send = False
        self.fail_create_repo = False
        self.token_refreshes = 0

    # helpers for tests

    def add_repo(self, owner: str, name: str) -> FakeRepo:
        repo = FakeRepo(owner, name)
        self.repos[repo.full_name] = repo
        return repo

    def only_repo(self) -> FakeRepo:
        assert len(self.repos) == 1
        return next(iter(self.repos.values()))

    def manifest(self, full_name: str) -> List[Dict[str, Any]]:
        return json.loads(self.repos[full_name].files["capsules.json"].decode("utf-8"))

    def set_manifest(self, full_name: str, capsules: List[Dict[str, Any]]) -> None:
        self.repos[full_name].files["capsules.json"] = json.dumps(capsules, indent=2).encode()

    def decrypt_secret(self, full_name: str, name: str) -> str:
        sealed = base64.b64decode(self.repos[full_name].secrets[name])
        return public.SealedBox(self.secret_key).decrypt(sealed).decode("utf-8")

    def requests_to(self, method: str, path_fragment: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and path_fragment in r.url.path]

    # dispatch

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host == "github.com":
            return self._github_oauth(request)
        if host == "api.github.com":
            return self._github_api(request)
        if host == "oauth2.googleapis.com":
            return self._google_token(request)
        if host == "gmail.googleapis.com":
            return self._gmail_send(request)
        return httpx.Response(404, json={"message": "Unknown host"})

    def _github_oauth(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if body.get("code") == "bad-code":
            return httpx.Response(
                200,
                json={
                    "error": "bad_verification_code",
                    "error_description": "The code passed is incorrect or expired.",
                },
            )
        return httpx.Response(200, json={"access_token": GITHUB_ACCESS_TOKEN, "token_type": "bearer"})

    def _google_token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode("utf-8")).items()}
        if form.get("code") == "bad-code":
            return httpx.Response(400, json={"error": "invalid_grant"})
        if form.get("grant_type") == "refresh_token":
            self.token_refreshes += 1
            return httpx.Response(200, json={"access_token": GMAIL_REFRESHED_TOKEN, "expires_in": 3599})
        return httpx.Response(
            200,
            json={
                "access_token": GMAIL_ACCESS_TOKEN,
                "refresh_token": GMAIL_REFRESH_TOKEN,
                "expires_in": 3599,
            },
        )

    def _gmail_send(self, request: httpx.Request) -> httpx.Response:
        if self.fail_send:
            return httpx.Response(500, json={"error": {"message": "Backend Error"}})
        raw = json.loads(request.content)["raw"]
        msg = email.message_from_bytes(
            base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4)), policy=policy.default
        )
        self.sent.append(
            {
                "to": str(msg["To"]),
                "subject": str(msg["Subject"]),
                "text": msg.get_body(preferencelist=("plain",)).get_content(),
                "html": msg.get_body(preferencelist=("html",)).get_content(),
                "authorization": request.headers.get("Authorization", ""),
            }
        )
        return httpx.Response(200, json={"id": f"msg-{len(self.sent)}"})

    def _github_api(self, request: httpx.Request) -> httpx.Response:
        if request.headers.get("Authorization") != f"Bearer {GITHUB_ACCESS_TOKEN}":
            return httpx.Response(401, json={"message": "Bad credentials"})
        parts = [unquote(p) for p in request.url.path.strip("/").split("/")]
        method = request.method
        if parts == ["user"] and method == "GET":
            return httpx.Response(200, json=self.user)
        if parts == ["user", "repos"] and method == "POST":
            if self.fail_create_repo:
                return httpx.Response(422, json={"message": "Repository creation failed."})
            body = json.loads(request.content)
            repo = self.add_repo(self.user["login"], body["name"])
            return httpx.Response(201, json=repo.descriptor())
        if len(parts) < 3 or parts[0] != "repos":
            return httpx.Response(404, json={"message": "Not Found"})
        repo = self.repos.get(f"{parts[1]}/{parts[2]}")
        if repo is None:
            return httpx.Response(404, json={"message": "Not Found"})
        rest = parts[3:]
        if not rest and method == "GET":
            return httpx.Response(200, json=repo.descriptor())
        if rest and rest[0] == "contents":
            return self._contents(request, repo, "/".join(rest[1:]))
        if rest and rest[0] == "git":
            return self._git(request, repo, rest[1:])
        if rest[:2] == ["actions", "secrets"]:
            return self._secrets(request, repo, rest[2:])
        return httpx.Response(404, json={"message": "Not Found"})

    def _contents(self, request: httpx.Request, repo: FakeRepo, path: str) -> httpx.Response:
        current = repo.sha(path)
        if request.method == "GET":
            if current is None:
                return httpx.Response(404, json={"message": "Not Found"})
            data = repo.files[path]
            if request.headers.get("Accept") == "application/vnd.github.raw+json":
                return httpx.Response(200, content=data)
            encoded = base64.encodebytes(data).decode("ascii")
            return httpx.Response(
                200, json={"path": path, "sha": current, "encoding": "base64", "content": encoded}
            )
        if request.method == "PUT":
            body = json.loads(request.content)
            if current is not None and body.get("sha") is None:
                return httpx.Response(422, json={"message": '"sha" wasn\'t supplied.'})
            if body.get("sha") is not None and body["sha"] != current:
                return httpx.Response(409, json={"message": f"{path} does not match {body['sha']}"})
            data = base64.b64decode(body["content"])
            repo.files[path] = data
            return httpx.Response(
                201 if current is None else 200,
                json={"content": {"path": path, "sha": _blob_sha(data)}},
            )
        return httpx.Response(405)

    def _git(self, request: httpx.Request, repo: FakeRepo, rest: List[str]) -> httpx.Response:
        method = request.method
        if rest == ["blobs"] and method == "POST":
            data = base64.b64decode(json.loads(request.content)["content"])
            sha = _blob_sha(data)
            repo.blobs[sha] = data
            return httpx.Response(201, json={"sha": sha})
        if rest == ["ref", "heads", "main"] and method == "GET":
            return httpx.Response(200, json={"object": {"sha": repo.head, "type": "commit"}})
        if len(rest) == 2 and rest[0] == "commits" and method == "GET":
            return httpx.Response(200, json={"sha": rest[1], "tree": {"sha": repo.commits[rest[1]]}})
        if rest == ["trees"] and method == "POST":
            tree_sha = f"tree-{len(repo.trees) + 1}"
            repo.trees[tree_sha] = json.loads(request.content)["tree"]
            return httpx.Response(201, json={"sha": tree_sha})
        if rest == ["commits"] and method == "POST":
            body = json.loads(request.content)
            commit_sha = f"commit-{len(repo.commits)}"
            repo.commits[commit_sha] = body["tree"]
            return httpx.Response(201, json={"sha": commit_sha})
        if rest == ["refs", "heads", "main"] and method == "PATCH":
            commit_sha = json.loads(request.content)["sha"]
            for entry in repo.trees[repo.commits[commit_sha]]:
                repo.files[entry["path"]] = repo.blobs[entry["sha"]]
            repo.head = commit_sha
            return httpx.Response(200, json={"object": {"sha": commit_sha}})
        return httpx.Response(404, json={"message": "Not Found"})

    def _secrets(self, request: httpx.Request, repo: FakeRepo, rest: List[str]) -> httpx.Response:
        if rest == ["public-key"] and request.method == "GET":
            key = self.secret_key.public_key.encode(encoding.Base64Encoder()).decode("ascii")
            return httpx.Response(200, json={"key_id": "key-1", "key": key})
        if len(rest) == 1 and request.method == "PUT":
            body = json.loads(request.content)
            assert body["key_id"] == "key-1"
            repo.secrets[rest[0]] = body["encrypted_value"]
            return httpx.Response(201)
        return httpx.Response(404, json={"message": "Not Found"})


def github_login(client, code: str = "gh-code") -> httpx.Response:
    """Run the GitHub OAuth round trip the way the browser does: authorize, then callback with its state."""
    state = client.get("/api/auth/github/authorize").json()["state"]
    return client.get(
        "/api/auth/github/callback",
        params={"code": code, "state": state},
        follow_redirects=False,
    )
