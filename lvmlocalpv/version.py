"""Version information of the driver."""

from __future__ import annotations

import logging
import os
import subprocess

logger = logging.getLogger(__name__)

# Filled in at build time; empty means "look it up".
GIT_COMMIT = ""
VERSION = ""
VERSION_META = ""

_VERSION_FILE = "/src/lvm-localpv/VERSION"
_BUILD_META_FILE = "/src/lvm-localpv/BUILDMETA"


def _read_repo_file(relative: str, what: str) -> str | None:
    path = os.path.normpath(os.environ.get("GOPATH", "") + relative)
    try:
        with open(path, encoding="utf-8") as handle:
            return handle.read().strip()
    except OSError as exc:
        logger.error("failed to get %s: %s", what, exc)
        return None


def current() -> str:
    """Return the current version of the driver."""
    return get()


def get() -> str:
    """Return VERSION, or the VERSION file's content when it is unset."""
    if VERSION:
        return VERSION
    content = _read_repo_file(_VERSION_FILE, "version")
    return "" if content is None else content


def get_build_meta() -> str:
    """Return the pre-release marker prefixed with a dash, or an empty string."""
    if VERSION_META:
        return "-" + VERSION_META
    content = _read_repo_file(_BUILD_META_FILE, "build version")
    return "" if content is None else "-" + content


def get_git_commit() -> str:
    """Return GIT_COMMIT, or ask git for the HEAD commit when it is unset."""
    if GIT_COMMIT:
        return GIT_COMMIT
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--verify", "HEAD"],
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        logger.error("failed to get git commit: %s", exc)
        return ""
    return result.stdout.strip()


def _short_commit() -> str:
    commit = get_git_commit()
    if len(commit) < 7:
        raise ValueError(f"git commit {commit!r} is shorter than 7 characters")
    return commit[:7]


def get_version_details() -> str:
    """Return the version and short commit prefixed with 'lvm-'."""
    return "lvm-" + "-".join([get(), _short_commit()])


def verbose() -> str:
    """Return the version joined with the short commit."""
    return "-".join([get(), _short_commit()])