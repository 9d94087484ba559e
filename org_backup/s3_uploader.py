"""
AWS S3 uploader for repository snapshots

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
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError
from tqdm import tqdm

from .errors import CredentialFailure, UploadFailure
from .retention import RetentionTier
from .snapshot import ARCHIVE_SUFFIX

CREDENTIAL_ERROR_CODES = {
    "ExpiredToken",
    "ExpiredTokenException",
    "InvalidAccessKeyId",
    "InvalidClientTokenId",
    "InvalidToken",
}


def is_credential_error(error: Exception) -> bool:
    """True when an S3 error means the session credentials are unusable"""
    if isinstance(error, NoCredentialsError):
        return True
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code") in CREDENTIAL_ERROR_CODES
    if isinstance(error, S3UploadFailedError):
        # upload_file wraps the ClientError into a message string
        return any(code in str(error) for code in CREDENTIAL_ERROR_CODES)
    return False


class S3Uploader:
    def __init__(
        self,
        bucket_name: str,
        session: Optional[boto3.Session] = None,
        region: str = "eu-west-1",
        key_prefix: str = "",
        organization: Optional[str] = None,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        server_side_encryption: Optional[str] = None,
        show_progress: bool = False,
        s3_client=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.bucket_name = bucket_name
        self.key_prefix = key_prefix.strip("/")
        self.organization = organization
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.server_side_encryption = server_side_encryption
        self.show_progress = show_progress
        self.sleep = sleep
        self.logger = logging.getLogger(self.__class__.__name__)

        if s3_client is None:
            session = session or boto3.Session(region_name=region)
            s3_client = session.client("s3")
        self.s3_client = s3_client

    def build_key(self, tier: RetentionTier, filename: str) -> str:
        parts = [self.key_prefix, str(tier), filename]
        return "/".join(p for p in parts if p)

    def key_exists(self, key: str) -> bool:
        # Listing rather than HEAD: HEAD errors have no body to carry ExpiredToken
        response = self.s3_client.list_objects_v2(
            Bucket=self.bucket_name, Prefix=key, MaxKeys=1
        )
        return any(obj["Key"] == key for obj in response.get("Contents", []))

    def unique_key(self, tier: RetentionTier, filename: str) -> str:
        """
        First free key for a snapshot. Existing objects are never replaced:
        a second run in the same second gets name-<ts>-1.git.tar.gz and so on.
        """
        key = self.build_key(tier, filename)
        if filename.endswith(ARCHIVE_SUFFIX):
            stem, suffix = filename[: -len(ARCHIVE_SUFFIX)], ARCHIVE_SUFFIX
        else:
            stem, suffix = filename, ""

        counter = 0
        while self.key_exists(key):
            counter += 1
            self.logger.debug(f"[UPLOAD] Key {key} already exists, trying suffix -{counter}")
            key = self.build_key(tier, f"{stem}-{counter}{suffix}")
        return key

    def upload_snapshot(
        self, archive_path: Path, tier: RetentionTier, repository: Optional[str] = None
    ) -> str:
        """
        Upload an archive under its retention tier and delete the local file
        Args:
            archive_path: Archive produced by SnapshotProducer
            tier: Retention tier selecting the bucket prefix
            repository: Repository name for metadata and error reporting
        Returns:
            The object key written
        """
        archive_path = Path(archive_path)
        repository = repository or archive_path.name
        key = self.build_key(tier, archive_path.name)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                key = self.unique_key(tier, archive_path.name)
                self._put(archive_path, key, tier, repository)
                last_error = None
                break
            except (ClientError, BotoCoreError, S3UploadFailedError, OSError) as e:
                if is_credential_error(e):
                    raise CredentialFailure(
                        f"AWS credentials rejected while uploading {key}: {e}"
                    ) from e
                last_error = e

            if attempt < self.max_attempts:
                delay = self.backoff_base * (2 ** (attempt - 1))
                self.logger.warning(
                    f"[RETRY] Upload of {repository} failed ({last_error}), "
                    f"retrying in {delay:.1f}s (attempt {attempt}/{self.max_attempts})"
                )
                self.sleep(delay)

        if last_error is not None:
            raise UploadFailure(repository, key, self.max_attempts, last_error)

        self.logger.info(
            f"[UPLOAD] Successfully uploaded {repository} to s3://{self.bucket_name}/{key}"
        )
        archive_path.unlink(missing_ok=True)
        return key

    def _put(self, archive_path: Path, key: str, tier: RetentionTier, repository: str):
        file_size = archive_path.stat().st_size
        self.logger.info(
            f"[UPLOAD] Uploading {repository} to S3 ({file_size / 1024 / 1024:.2f} MB)..."
        )

        extra_args: Dict[str, Any] = {
            "Metadata": {
                "organization": self.organization or "unknown",
                "repository": repository,
                "tier": str(tier),
            },
        }
        if self.server_side_encryption:
            extra_args["ServerSideEncryption"] = self.server_side_encryption

        with tqdm(
            total=file_size,
            unit="B",
            unit_scale=True,
            desc=repository,
            disable=not self.show_progress,
        ) as pbar:

            def upload_callback(bytes_transferred):
                pbar.update(bytes_transferred)

            self.s3_client.upload_file(
                str(archive_path),
                self.bucket_name,
                key,
                Callback=upload_callback,
                ExtraArgs=extra_args,
            )

    def list_backups(self, tier: Optional[RetentionTier] = None) -> List[Dict[str, Any]]:
        """List all snapshots in S3, optionally limited to one tier"""
        if tier is not None:
            prefix = self.build_key(tier, "")
            prefix = f"{prefix}/" if prefix else ""
        else:
            prefix = f"{self.key_prefix}/" if self.key_prefix else ""

        backups = []
        paginator = self.s3_client.get_paginator("list_objects_v2")

        try:
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get("Contents", []):
                    if not obj["Key"].endswith(ARCHIVE_SUFFIX):
                        continue
                    backups.append(
                        {
                            "key": obj["Key"],
                            "size_mb": obj["Size"] / 1024 / 1024,
                            "last_modified": obj["LastModified"].isoformat(),
                        }
                    )
        except ClientError as e:
            if is_credential_error(e):
                raise CredentialFailure(f"AWS credentials rejected: {e}") from e
            raise

        return backups
