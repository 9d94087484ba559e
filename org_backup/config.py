"""
Run configuration assembled from defaults, a YAML file, the environment
and command line flags (later sources win)

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

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import ConfigurationError
from .github_manager import DEFAULT_PAGE_SIZE, GRAPHQL_URL
from .retention import TIER_CHOICES

ENV_VARS = {
    "organization": "GITHUB_ORG",
    "bucket": "AWS_S3_BUCKET",
    "tier": "BACKUP_TIER",
    "region": "AWS_REGION",
    "role_arn": "AWS_ROLE_ARN",
    "profile": "AWS_PROFILE",
    "github_token": "GITHUB_TOKEN",
    "api": "GITHUB_API",
    "graphql_url": "GITHUB_GRAPHQL_URL",
    "git_host": "GITHUB_HOST",
    "page_size": "GITHUB_PAGE_SIZE",
    "key_prefix": "S3_PREFIX",
    "server_side_encryption": "S3_SSE",
    "workers": "PARALLEL_WORKERS",
    "work_dir": "WORK_DIR",
    "upload_attempts": "UPLOAD_ATTEMPTS",
    "upload_backoff": "UPLOAD_BACKOFF",
    "session_name": "AWS_ROLE_SESSION_NAME",
}

API_CHOICES = ("graphql", "rest")


@dataclass
class BackupConfig:
    organization: Optional[str] = None
    bucket: Optional[str] = None
    tier: str = "auto"
    region: str = "eu-west-1"
    role_arn: Optional[str] = None
    profile: Optional[str] = None
    github_token: Optional[str] = field(default=None, repr=False)
    api: str = "graphql"
    graphql_url: str = GRAPHQL_URL
    git_host: str = "github.com"
    page_size: int = DEFAULT_PAGE_SIZE
    key_prefix: str = ""
    server_side_encryption: Optional[str] = None
    workers: int = 4
    work_dir: Optional[str] = None
    upload_attempts: int = 3
    upload_backoff: float = 2.0
    session_name: str = "org-backup"

    def validate(
        self,
        require_organization: bool = True,
        require_bucket: bool = True,
        require_token: bool = True,
    ):
        issues = []
        if require_organization and not self.organization:
            issues.append("organization is required (--org or GITHUB_ORG)")
        if require_bucket and not self.bucket:
            issues.append("bucket is required (--bucket or AWS_S3_BUCKET)")
        if require_token and not self.github_token:
            issues.append("GitHub token not found (GITHUB_TOKEN, GH_TOKEN or gh auth login)")
        if self.tier not in TIER_CHOICES:
            issues.append(f"tier must be one of {', '.join(TIER_CHOICES)}, got '{self.tier}'")
        if self.api not in API_CHOICES:
            issues.append(f"api must be one of {', '.join(API_CHOICES)}, got '{self.api}'")
        if self.workers < 1:
            issues.append("workers must be at least 1")
        if self.upload_attempts < 1:
            issues.append("upload attempts must be at least 1")
        if self.page_size < 1:
            issues.append("page size must be at least 1")
        if self.upload_backoff < 0:
            issues.append("upload backoff must not be negative")

        if issues:
            raise ConfigurationError("; ".join(issues))


FIELD_TYPES = {f.name: f.type for f in fields(BackupConfig)}


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    kind = FIELD_TYPES[name]
    try:
        if kind is int:
            return int(value)
        if kind is float:
            return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid value for {name}: {value!r}") from None
    value = str(value).strip()
    if name in ("tier", "api"):
        value = value.lower()
    return value


def load_config_file(path: str) -> Dict[str, Any]:
    """Load a YAML mapping of BackupConfig field names"""
    config_path = Path(path)
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}") from None
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read configuration file {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")

    unknown = sorted(set(data) - set(FIELD_TYPES))
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in {config_path}: {', '.join(unknown)}"
        )
    return data


def build_config(
    overrides: Optional[Mapping[str, Any]] = None,
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BackupConfig:
    """
    Merge configuration sources.

    Precedence: overrides (CLI) > environment > YAML file > defaults.
    Empty strings and None never override a value.
    """
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {}

    if config_path:
        values.update(load_config_file(config_path))

    for name, env_var in ENV_VARS.items():
        env_value = environ.get(env_var)
        if env_value:
            values[name] = env_value

    for name, value in (overrides or {}).items():
        if name not in FIELD_TYPES:
            raise ConfigurationError(f"Unknown configuration option: {name}")
        if value is not None and value != "":
            values[name] = value

    coerced = {
        name: _coerce(name, value)
        for name, value in values.items()
        if value is not None and value != ""
    }
    return replace(BackupConfig(), **coerced)
