"""
Mirror clone snapshots packed as tar.gz archives

Copyright 2025 HyperSec

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

import logging
import os
import shutil
import subprocess
import tarfile
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .base import RepositoryRef
from .errors import PerRepositoryFailure

TIMESTAMP_FORMAT = "%Y-%m-%dT%H%M%S"
ARCHIVE_SUFFIX = ".git.tar.gz"


def format_timestamp(moment: datetime) -> str:
    """UTC, second precision, no characters that upset filesystems or S3 keys"""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)


def archive_name(repo_name: str, timestamp: str) -> str:
    return f"{repo_name}-{timestamp}{ARCHIVE_SUFFIX}"


def robust_rmtree(path: Path, logger: logging.Logger, max_retries: int = 3) -> bool:
    """
    Robustly remove a directory tree (or a single file) with retries.
    Handles race conditions where files may still be written during removal.

    Args:
        path: Path to remove
        logger: Logger for messages
        max_retries: Maximum number of retry attempts

    Returns:
        True if successfully removed, False otherwise
    """
    if not path.exists():
        return True

    for attempt in range(max_retries):
        try:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()
            return True
        except OSError as e:
            if attempt < max_retries - 1:
                # Wait briefly before retry to allow any processes to complete
                time.sleep(0.5 * (attempt + 1))
                logger.debug(
                    f"[CLEANUP] Retry {attempt + 1}/{max_retries} removing {path}: {e}"
                )
            else:
                logger.warning(
                    f"[CLEANUP] Failed to remove {path} after {max_retries} attempts: {e}"
                )
                return False
    return False


class SnapshotProducer:
    def __init__(
        self,
        organization: str,
        token: str,
        work_dir: Optional[str] = None,
        git_host: str = "github.com",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        """
        Initialize snapshot producer
        Args:
            organization: GitHub organization owning the repositories
            token: Short-lived token embedded in the clone URL
            work_dir: Parent directory for temporary files (default: system temp)
            git_host: Host serving the git remotes
            runner: Callable with the subprocess.run signature used to invoke git
        """
        self.organization = organization
        self.token = token
        self.git_host = git_host
        self.runner = runner
        self.logger = logging.getLogger(self.__class__.__name__)

        base_dir = Path(work_dir) if work_dir else Path(tempfile.gettempdir())
        try:
            base_dir.mkdir(parents=True, exist_ok=True)
            # One directory per run so concurrent runs never share workspaces
            self.temp_dir = Path(tempfile.mkdtemp(prefix="org-backup-", dir=base_dir))
            self.logger.info(f"[CONFIG] Working directory: {self.temp_dir}")
        except OSError as e:
            self.logger.error(
                f"[ERROR] Failed to create working directory under {base_dir}: {e}"
            )
            raise

    def clone_url(self, repo: RepositoryRef) -> str:
        return (
            f"https://x-access-token:{self.token}@{self.git_host}/"
            f"{self.organization}/{repo.name}.git"
        )

    def redact(self, text: str) -> str:
        if self.token and text:
            return text.replace(self.token, "***")
        return text

    def prepare(self):
        """Recreate the run directory when a previous run on this producer removed it"""
        self.temp_dir.mkdir(parents=True, exist_ok=True)

    def produce(self, repo: RepositoryRef, timestamp: str) -> Path:
        """
        Mirror-clone a repository and pack it into a tar.gz archive.

        The clone is always removed before returning. On failure the whole
        workspace is removed too and PerRepositoryFailure is raised.

        Returns:
            Path of the archive, inside its own workspace directory
        """
        try:
            workspace = Path(tempfile.mkdtemp(prefix=f"{repo.name}-", dir=self.temp_dir))
        except OSError as e:
            raise PerRepositoryFailure(repo.name, f"workspace unavailable: {e}") from e
        mirror_path = workspace / f"{repo.name}.git"
        archive_path = workspace / archive_name(repo.name, timestamp)

        try:
            self._clone(repo, mirror_path)
            self._archive(repo, mirror_path, archive_path)
        except BaseException:
            robust_rmtree(workspace, self.logger)
            raise
        finally:
            robust_rmtree(mirror_path, self.logger)

        size = archive_path.stat().st_size
        self.logger.info(
            f"[BACKUP] Packed {repo.name} into {archive_path.name} ({size / 1024 / 1024:.2f} MB)"
        )
        return archive_path

    def _clone(self, repo: RepositoryRef, mirror_path: Path):
        self.logger.info(f"[BACKUP] Cloning {repo.full_name}...")
        clone_cmd = ["git", "clone", "--mirror", self.clone_url(repo), str(mirror_path)]
        self.logger.debug(
            f"Clone command: git clone --mirror [REDACTED_URL] {mirror_path}"
        )

        try:
            # Use DEVNULL for stdout to avoid memory buffering of git progress output
            result = self.runner(
                clone_cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            )
        except OSError as e:
            raise PerRepositoryFailure(repo.name, f"cannot run git: {e}") from e

        if result.returncode != 0:
            stderr_truncated = self.redact(result.stderr or "")[:500].strip()
            raise PerRepositoryFailure(
                repo.name,
                f"clone failed (exit {result.returncode}): {stderr_truncated}",
            )

        if not mirror_path.is_dir():
            raise PerRepositoryFailure(
                repo.name, "clone reported success but produced no mirror"
            )

    def _archive(self, repo: RepositoryRef, mirror_path: Path, archive_path: Path):
        self.logger.debug(f"[BACKUP] Archiving {mirror_path.name} to {archive_path}")
        try:
            with tarfile.open(archive_path, "w:gz") as tar:
                tar.add(mirror_path, arcname=mirror_path.name)
        except (tarfile.TarError, OSError) as e:
            raise PerRepositoryFailure(repo.name, f"archive failed: {e}") from e

    def discard(self, archive_path: Path):
        """Remove an archive together with its workspace"""
        workspace = archive_path.parent
        if workspace.parent == self.temp_dir:
            robust_rmtree(workspace, self.logger)
        else:
            robust_rmtree(archive_path, self.logger)

    def cleanup_temp(self):
        """Clean up temporary directory completely"""
        if self.temp_dir.exists():
            robust_rmtree(self.temp_dir, self.logger)
            self.logger.info(f"[CLEANUP] Removed working directory: {self.temp_dir}")
