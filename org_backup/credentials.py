"""
Credential discovery and short-lived AWS session exchange

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
import subprocess
from pathlib import Path
from typing import Callable, Optional

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from .errors import CredentialFailure

logger = logging.getLogger(__name__)

STS_AUDIENCE = "sts.amazonaws.com"


def get_github_token() -> Optional[str]:
    """
    Discover GitHub token from standard locations.

    Priority:
    1. GITHUB_TOKEN environment variable
    2. GH_TOKEN environment variable
    3. gh CLI auth token (via `gh auth token` command)

    Returns:
        GitHub token or None if not found
    """
    token = os.getenv("GITHUB_TOKEN")
    if token:
        logger.debug("[TOKEN] GitHub token found in GITHUB_TOKEN env var")
        return token

    token = os.getenv("GH_TOKEN")
    if token:
        logger.debug("[TOKEN] GitHub token found in GH_TOKEN env var")
        return token

    try:
        result = subprocess.run(
            ["gh", "auth", "token"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0 and result.stdout.strip():
            logger.info("[TOKEN] GitHub token discovered from gh CLI")
            return result.stdout.strip()
    except (subprocess.TimeoutExpired, FileNotFoundError):
        pass

    return None


def get_web_identity_token(audience: str = STS_AUDIENCE) -> Optional[str]:
    """
    Discover an OIDC web identity token for the AWS role exchange.

    Priority:
    1. File named by AWS_WEB_IDENTITY_TOKEN_FILE
    2. GitHub Actions OIDC endpoint (ACTIONS_ID_TOKEN_REQUEST_URL and
       ACTIONS_ID_TOKEN_REQUEST_TOKEN, needs `id-token: write`)

    Returns:
        The raw JWT or None if no source is available
    """
    token_file = os.getenv("AWS_WEB_IDENTITY_TOKEN_FILE")
    if token_file:
        path = Path(token_file)
        try:
            token = path.read_text().strip()
        except OSError as e:
            raise CredentialFailure(
                f"Cannot read web identity token file {path}: {e}"
            ) from e
        if token:
            logger.debug("[TOKEN] Web identity token read from AWS_WEB_IDENTITY_TOKEN_FILE")
            return token

    request_url = os.getenv("ACTIONS_ID_TOKEN_REQUEST_URL")
    request_token = os.getenv("ACTIONS_ID_TOKEN_REQUEST_TOKEN")
    if request_url and request_token:
        try:
            response = requests.get(
                request_url,
                params={"audience": audience},
                headers={"Authorization": f"bearer {request_token}"},
                timeout=(5, 30),
            )
            response.raise_for_status()
            token = response.json().get("value")
        except (requests.RequestException, ValueError) as e:
            raise CredentialFailure(
                f"GitHub Actions OIDC token request failed: {e}"
            ) from e
        if token:
            logger.debug("[TOKEN] Web identity token issued by GitHub Actions OIDC")
            return token

    return None


class CredentialBroker:
    """
    Hands out a boto3 session able to write to the backup bucket.

    With a role ARN the session holds temporary credentials from
    AssumeRoleWithWebIdentity; without one it is the ambient session
    (profile or environment credentials). Credentials are never logged,
    stored or refreshed.
    """

    def __init__(
        self,
        region: str,
        role_arn: Optional[str] = None,
        session_name: str = "org-backup",
        duration_seconds: int = 3600,
        profile: Optional[str] = None,
        token_provider: Callable[[], Optional[str]] = get_web_identity_token,
        sts_client=None,
    ):
        self.region = region
        self.role_arn = role_arn
        self.session_name = session_name
        self.duration_seconds = duration_seconds
        self.profile = profile
        self.token_provider = token_provider
        self.sts_client = sts_client
        self.logger = logging.getLogger(self.__class__.__name__)

    def session(self) -> boto3.Session:
        if not self.role_arn:
            self.logger.info("[CONFIG] No role ARN configured, using ambient AWS credentials")
            try:
                return boto3.Session(profile_name=self.profile, region_name=self.region)
            except BotoCoreError as e:
                raise CredentialFailure(f"Cannot create AWS session: {e}") from e

        token = self.token_provider()
        if not token:
            raise CredentialFailure(
                "No web identity token available for role exchange "
                "(set AWS_WEB_IDENTITY_TOKEN_FILE or run with id-token permission)"
            )

        self.logger.info(f"[CONFIG] Assuming role {self.role_arn} via web identity")
        try:
            sts = self.sts_client or boto3.client("sts", region_name=self.region)
            response = sts.assume_role_with_web_identity(
                RoleArn=self.role_arn,
                RoleSessionName=self.session_name,
                WebIdentityToken=token,
                DurationSeconds=self.duration_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise CredentialFailure(f"Role exchange for {self.role_arn} failed: {e}") from e

        credentials = response["Credentials"]
        self.logger.info(
            f"[CONFIG] Temporary credentials valid until {credentials.get('Expiration')}"
        )
        return boto3.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=self.region,
        )
