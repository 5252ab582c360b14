"""
capsules.json in the user's repository: the table of all capsules.

The file's blob sha is the revision. Writes pass the sha read earlier; if someone else
wrote in between, GitHub refuses the write and ManifestConflict is raised. Conflicts are
reported to the caller, never retried.
"""

import json
import logging
from typing import List, Optional, Tuple

from pydantic import ValidationError

from timecapsule.capsules.models import Capsule
from timecapsule.github.client import GitHubClient, GitHubError

log = logging.getLogger(__name__)

MANIFEST_PATH = "capsules.json"


class ManifestError(Exception):
    """Base for manifest failures."""


class ManifestConflict(ManifestError):
    """The manifest changed since it was read."""


class ManifestCorrupt(ManifestError):
    """capsules.json exists but is not a JSON array of capsules."""


def split_full_name(full_name: str) -> Tuple[str, str]:
    """'owner/repo' -> ('owner', 'repo')."""
    owner, _, repo = full_name.partition("/")
    if not owner or not repo:
        raise ValueError(f"Invalid repository name: {full_name!r}")
    return owner, repo


def parse_manifest(content: str) -> List[Capsule]:
    """Parse manifest text. Raises ManifestCorrupt."""
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ManifestCorrupt(f"{MANIFEST_PATH} is not valid JSON: {e}") from e
    if not isinstance(data, list):
        raise ManifestCorrupt(f"{MANIFEST_PATH} is not a JSON array")
    try:
        return [Capsule.model_validate(item) for item in data]
    except ValidationError as e:
        raise ManifestCorrupt(f"{MANIFEST_PATH} has an invalid entry: {e.error_count()} error(s)") from e


def serialize_manifest(capsules: List[Capsule]) -> str:
    """JSON array, 2-space indent."""
    return json.dumps([c.to_json_dict() for c in capsules], indent=2, ensure_ascii=False)


class CapsuleManifest:
    """Read and conditionally rewrite capsules.json in one repository."""

    def __init__(self, github: GitHubClient, owner: str, repo: str) -> None:
        self._github = github
        self._owner = owner
        self._repo = repo

    @classmethod
    def for_repo(cls, github: GitHubClient, full_name: str) -> "CapsuleManifest":
        owner, repo = split_full_name(full_name)
        return cls(github, owner, repo)

    async def read_all(self) -> Tuple[List[Capsule], Optional[str]]:
        """Return (capsules, revision). A missing file is ([], None)."""
        file = await self._github.get_file_content(self._owner, self._repo, MANIFEST_PATH)
        if file is None:
            return [], None
        try:
            return parse_manifest(file.content), file.sha
        except ManifestCorrupt:
            log.error("Corrupt manifest in %s/%s", self._owner, self._repo)
            raise

    async def find(self, token_hash: str) -> Tuple[Optional[Capsule], Optional[str]]:
        """(capsule whose magicTokenHash matches or None, current revision)."""
        capsules, revision = await self.read_all()
        for capsule in capsules:
            if capsule.magic_token_hash == token_hash:
                return capsule, revision
        return None, revision

    async def _write(
        self, capsules: List[Capsule], expected_revision: Optional[str], message: str
    ) -> str:
        try:
            return await self._github.create_or_update_file(
                self._owner,
                self._repo,
                MANIFEST_PATH,
                serialize_manifest(capsules),
                message,
                sha=expected_revision,
            )
        except GitHubError as e:
            if e.status_code == 409:
                log.warning("Manifest write conflict in %s/%s", self._owner, self._repo)
                raise ManifestConflict("capsules.json was modified concurrently") from e
            raise

    async def _current(self, expected_revision: Optional[str]) -> List[Capsule]:
        capsules, revision = await self.read_all()
        if revision != expected_revision:
            raise ManifestConflict("capsules.json was modified concurrently")
        return capsules

    async def append(self, capsule: Capsule, expected_revision: Optional[str]) -> str:
        """Add one capsule if the manifest is still at expected_revision; returns the new revision."""
        capsules = await self._current(expected_revision)
        if any(c.magic_token_hash == capsule.magic_token_hash for c in capsules):
            raise ManifestError("Duplicate magic token hash")
        capsules.append(capsule)
        return await self._write(capsules, expected_revision, f"Add capsule: {capsule.title}")

    async def replace(self, capsule: Capsule, expected_revision: Optional[str]) -> str:
        """Rewrite the record with capsule.id; returns the new revision."""
        capsules = await self._current(expected_revision)
        for i, existing in enumerate(capsules):
            if existing.id == capsule.id:
                capsules[i] = capsule
                break
        else:
            raise ManifestError(f"Capsule {capsule.id} not in manifest")
        return await self._write(capsules, expected_revision, f"Update capsule: {capsule.title}")


async def get_all_capsules(github: GitHubClient, owner: str, repo: str) -> List[Capsule]:
    """All capsules in the repository ([] if the manifest does not exist)."""
    capsules, _ = await CapsuleManifest(github, owner, repo).read_all()
    return capsules


async def find_capsule_by_token_hash(
    github: GitHubClient, owner: str, repo: str, token_hash: str
) -> Optional[Capsule]:
    """Linear scan for the capsule whose magicTokenHash matches."""
    capsule, _ = await CapsuleManifest(github, owner, repo).find(token_hash)
    return capsule


async def update_capsules_json(
    github: GitHubClient, owner: str, repo: str, capsule: Capsule
) -> str:
    """Read the manifest and append capsule at the revision just read."""
    manifest = CapsuleManifest(github, owner, repo)
    _, revision = await manifest.read_all()
    return await manifest.append(capsule, revision)
