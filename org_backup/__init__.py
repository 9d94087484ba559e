"""
org-backup - GitHub organization backup tool

Mirrors every non-fork repository of a GitHub organization into AWS S3
under daily, weekly or monthly retention prefixes, using short-lived
credentials from an OIDC role exchange.

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

__version__ = "1.0.0"
__license__ = "Apache-2.0"
__description__ = "Mirror a GitHub organization's repositories to AWS S3 with retention tiers"

from .base import RepositoryManager, RepositoryRef, RepositoryResult, RunSummary
from .credentials import CredentialBroker
from .github_manager import GitHubManager
from .main import OrgBackupOrchestrator, main
from .retention import RetentionTier, select_tier
from .s3_uploader import S3Uploader
from .snapshot import SnapshotProducer

__all__ = [
    "RepositoryRef",
    "RepositoryResult",
    "RepositoryManager",
    "RunSummary",
    "GitHubManager",
    "CredentialBroker",
    "SnapshotProducer",
    "S3Uploader",
    "RetentionTier",
    "select_tier",
    "OrgBackupOrchestrator",
    "main",
]
