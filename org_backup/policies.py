"""
AWS policy documents for the backup bucket and role

These are applied once by an operator (console, CLI or IaC). The tool
only renders them; expiry of daily/weekly/monthly snapshots is enforced
by the bucket lifecycle rules, never by this code.

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

from typing import Any, Dict, Optional

from .retention import RetentionTier

OIDC_HOST = "token.actions.githubusercontent.com"
STS_AUDIENCE = "sts.amazonaws.com"

RETENTION_DAYS = {
    RetentionTier.DAILY: 7,
    RetentionTier.WEEKLY: 28,
    RetentionTier.MONTHLY: 365,
}


def _tier_prefix(tier: RetentionTier, key_prefix: str = "") -> str:
    key_prefix = key_prefix.strip("/")
    return f"{key_prefix}/{tier}/" if key_prefix else f"{tier}/"


def lifecycle_configuration(key_prefix: str = "") -> Dict[str, Any]:
    return {
        "Rules": [
            {
                "ID": f"{tier}-expire-{days}d",
                "Filter": {"Prefix": _tier_prefix(tier, key_prefix)},
                "Status": "Enabled",
                "Expiration": {"Days": days},
                "AbortIncompleteMultipartUpload": {"DaysAfterInitiation": 7},
            }
            for tier, days in RETENTION_DAYS.items()
        ]
    }


def encryption_configuration() -> Dict[str, Any]:
    return {
        "Rules": [
            {
                "ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "aws:kms"},
                "BucketKeyEnabled": True,
            }
        ]
    }


def access_policy(bucket_name: str) -> Dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Sid": "GitBackupAccess",
                "Effect": "Allow",
                "Action": ["s3:PutObject", "s3:GetObject", "s3:ListBucket"],
                "Resource": [
                    f"arn:aws:s3:::{bucket_name}",
                    f"arn:aws:s3:::{bucket_name}/*",
                ],
            }
        ],
    }


def trust_policy(account_id: str, organization: str, backup_repo: str) -> Dict[str, Any]:
    """Trust GitHub Actions OIDC tokens issued to one repository of the organization"""
    provider_arn = f"arn:aws:iam::{account_id}:oidc-provider/{OIDC_HOST}"
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Federated": provider_arn},
                "Action": "sts:AssumeRoleWithWebIdentity",
                "Condition": {
                    "StringEquals": {f"{OIDC_HOST}:aud": STS_AUDIENCE},
                    "StringLike": {
                        f"{OIDC_HOST}:sub": f"repo:{organization}/{backup_repo}:*"
                    },
                },
            }
        ],
    }


def render_all(
    bucket_name: str,
    organization: str,
    account_id: Optional[str] = None,
    backup_repo: str = "git-backup",
    key_prefix: str = "",
) -> Dict[str, Any]:
    documents = {
        "lifecycle": lifecycle_configuration(key_prefix),
        "encryption": encryption_configuration(),
        "access_policy": access_policy(bucket_name),
    }
    if account_id:
        documents["trust_policy"] = trust_policy(account_id, organization, backup_repo)
    return documents
