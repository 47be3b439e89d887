"""
Version management for marketsync.
"""

import os
import subprocess
from typing import Optional

# Base version - update this for releases
BASE_VERSION = "0.1.0"

_REPO_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(__file__)))


def _git(*args: str) -> Optional[str]:
    try:
        result = subprocess.run(["git", *args], capture_output=True, text=True, cwd=_REPO_ROOT)
    except OSError:
        return None
    if result.returncode == 0:
        return result.stdout.strip()
    return None


def get_version() -> str:
    """
    Get the current version.

    - If there's a git tag, use that
    - Otherwise use base version + git commit SHA
    - Fallback to base version
    """
    git_tag = _git("describe", "--tags", "--exact-match")
    if git_tag:
        return git_tag[1:] if git_tag.startswith("v") else git_tag

    commit_sha = _git("rev-parse", "--short", "HEAD")
    if commit_sha:
        return f"{BASE_VERSION}-{commit_sha}"

    return BASE_VERSION


__version__ = get_version()
