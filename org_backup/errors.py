"""
Exceptions raised by the backup pipeline

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


class BackupError(Exception):
    """Base exception for all backup errors."""


class ConfigurationError(BackupError):
    """Raised when the run configuration is missing or invalid."""


class EnumerationFailure(BackupError):
    """Raised when the organization's repositories cannot be listed."""


class CredentialFailure(BackupError):
    """Raised when storage credentials cannot be obtained or have expired."""


class PerRepositoryFailure(BackupError):
    """Raised when a single repository cannot be snapshotted or stored."""

    def __init__(self, repository: str, message: str):
        self.repository = repository
        super().__init__(f"{repository}: {message}")


class UploadFailure(PerRepositoryFailure):
    """Raised when an archive could not be uploaded after all retries."""

    def __init__(self, repository: str, key: str, attempts: int, cause: Exception):
        self.key = key
        self.attempts = attempts
        super().__init__(
            repository, f"upload of {key} failed after {attempts} attempts: {cause}"
        )
