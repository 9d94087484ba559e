"""
Base classes for repository enumeration

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
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, List, Optional


@dataclass(frozen=True)
class RepositoryRef:
    name: str
    owner: str
    is_fork: bool = False
    is_private: Optional[bool] = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass
class RepositoryResult:
    name: str
    succeeded: bool
    key: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RunSummary:
    """Outcome of one run; safe to update from worker threads"""

    tier: str
    timestamp: str
    results: List[RepositoryResult] = field(default_factory=list)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def record(self, result: RepositoryResult):
        with self._lock:
            self.results.append(result)

    @property
    def succeeded(self) -> List[str]:
        with self._lock:
            return sorted(r.name for r in self.results if r.succeeded)

    @property
    def failed(self) -> List[str]:
        with self._lock:
            return sorted(r.name for r in self.results if not r.succeeded)

    @property
    def keys(self) -> List[str]:
        with self._lock:
            return sorted(r.key for r in self.results if r.succeeded and r.key)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0


class RepositoryManager(ABC):
    def __init__(self, token: str, organization: str):
        self.token = token
        self.organization = organization
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def get_repositories(self) -> List[RepositoryRef]:
        pass

    def filter_forks(self, repos: Iterable[RepositoryRef]) -> List[RepositoryRef]:
        return [r for r in repos if not r.is_fork]
