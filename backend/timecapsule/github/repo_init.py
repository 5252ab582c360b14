"""Create and seed a user's private storage repository."""

import asyncio
import logging
from typing import List, Tuple

from timecapsule.capsules.manifest import MANIFEST_PATH
from timecapsule.github.client import GitHubClient, generate_repo_name
from timecapsule.github.models import GitHubRepo, GitHubUser

log = logging.getLogger(__name__)

WORKFLOW_PATH = ".github/workflows/unlock-cron.yml"
UNLOCK_SCRIPT_PATH = "unlock_script.py"

GITATTRIBUTES = """# Git LFS configuration for time capsule files
*.mp4 filter=lfs diff=lfs merge=lfs -text
*.webm filter=lfs diff=lfs merge=lfs -text
*.mp3 filter=lfs diff=lfs merge=lfs -text
*.m4a filter=lfs diff=lfs merge=lfs -text
*.jpg filter=lfs diff=lfs merge=lfs -text
*.jpeg filter=lfs diff=lfs merge=lfs -text
*.png filter=lfs diff=lfs merge=lfs -text
*.gif filter=lfs diff=lfs merge=lfs -text
"""

README = """# Time Capsule Storage Repository

This is an automatically generated private repository for storing time capsule content.

**Do not delete or modify files manually.** They are managed by the Memory Time Capsule application.

## Structure

- `capsules.json`: metadata for all time capsules
- `capsules/`: capsule content files (tracked by Git LFS)
- `.github/workflows/unlock-cron.yml`: hourly unlock workflow
- `unlock_script.py`: entry point the workflow runs

## Storage

Media files are stored with Git LFS. The free tier provides 1GB of storage.
"""

INITIAL_MANIFEST = "[]"

UNLOCK_SCRIPT = '''"""Unlock due capsules in capsules.json and email their recipients."""

from timecapsule.unlock.job import main

if __name__ == "__main__":
    raise SystemExit(main())
'''

_WORKFLOW_TEMPLATE = """name: Unlock Time Capsules

on:
  schedule:
    # Every hour at minute 0
    - cron: '0 * * * *'
  workflow_dispatch:

permissions:
  contents: write

jobs:
  unlock:
    runs-on: ubuntu-latest
    steps:
      - name: Checkout repository
        uses: actions/checkout@v4
        with:
          token: ${{{{ secrets.GITHUB_TOKEN }}}}
          lfs: false

      - name: Setup Python
        uses: actions/setup-python@v5
        with:
          python-version: '3.12'

      - name: Install unlock job
        run: pip install {package}

      - name: Run unlock script
        env:
          GMAIL_REFRESH_TOKEN: ${{{{ secrets.GMAIL_REFRESH_TOKEN }}}}
          GMAIL_CLIENT_ID: ${{{{ secrets.GMAIL_CLIENT_ID }}}}
          GMAIL_CLIENT_SECRET: ${{{{ secrets.GMAIL_CLIENT_SECRET }}}}
          FRONTEND_URL: ${{{{ secrets.FRONTEND_URL }}}}
        run: python {script} capsules.json

      - name: Commit updated capsules.json
        run: |
          git config user.name "Time Capsule Bot"
          git config user.email "bot@timecapsule.app"
          git add capsules.json
          git diff --quiet && git diff --staged --quiet || git commit -m "Update capsule unlock status [automated]"
          git push
"""


def unlock_workflow(package: str) -> str:
    """Scheduled workflow that installs package and runs the unlock script hourly."""
    return _WORKFLOW_TEMPLATE.format(package=package, script=UNLOCK_SCRIPT_PATH)


def bootstrap_files(package: str) -> List[Tuple[str, str, str]]:
    """(path, content, commit message) for every file a new repository starts with, in write order."""
    return [
        (".gitattributes", GITATTRIBUTES, "Initialize Git LFS configuration"),
        ("README.md", README, "Add repository README"),
        (MANIFEST_PATH, INITIAL_MANIFEST, "Initialize capsules metadata"),
        (WORKFLOW_PATH, unlock_workflow(package), "Add unlock cron workflow"),
        (UNLOCK_SCRIPT_PATH, UNLOCK_SCRIPT, "Add unlock script"),
    ]


async def initialize_repository(
    github: GitHubClient,
    user: GitHubUser,
    package: str,
    ready_delay_seconds: float = 1.0,
) -> GitHubRepo:
    """
    Create a private storage repository for user and write the bootstrap files.

    Files are written one at a time; each write is its own commit on the default branch.
    """
    repo = await github.create_repository(generate_repo_name())
    if ready_delay_seconds > 0:
        await asyncio.sleep(ready_delay_seconds)
    owner = repo.owner or user.login
    for path, content, message in bootstrap_files(package):
        await github.create_or_update_file(owner, repo.name, path, content, message)
    log.info("Initialized repository %s for %s", repo.full_name, user.login)
    return repo
