"""
GitHub organization repository enumeration

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

import time
from typing import Any, Dict, List, Optional, Tuple

import requests
from github import Auth, Github, GithubException

from .base import RepositoryManager, RepositoryRef
from .errors import EnumerationFailure

GRAPHQL_URL = "https://api.github.com/graphql"

GRAPHQL_QUERY = """
query ($org: String!, $cursor: String, $pageSize: Int!) {
  organization(login: $org) {
    repositories(first: $pageSize, after: $cursor, isFork: false,
                 orderBy: {field: NAME, direction: ASC}) {
      pageInfo {
        endCursor
        hasNextPage
      }
      nodes {
        name
        isFork
        isPrivate
      }
    }
  }
}
"""

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 100
REQUEST_TIMEOUT = (10, 60)
RETRYABLE_STATUS = {500, 502, 503, 504}
# Upper bound on a single rate limit wait, in seconds
MAX_RATE_LIMIT_WAIT = 60.0


class GitHubManager(RepositoryManager):
    """
    Lists the non-fork repositories of one GitHub organization.

    Two backends are available: 'graphql' pages through the GraphQL API
    by cursor, 'rest' walks PyGithub's paginated organization listing.
    Both follow pagination to the end; any error aborts enumeration.
    """

    def __init__(
        self,
        token: str,
        organization: str,
        api: str = "graphql",
        graphql_url: str = GRAPHQL_URL,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_retries: int = 3,
        backoff: float = 1.0,
        session: Optional[requests.Session] = None,
        client: Optional[Github] = None,
    ):
        super().__init__(token, organization)
        if api not in ("graphql", "rest"):
            raise ValueError(f"Unsupported GitHub API backend: {api}")

        self.api = api
        self.graphql_url = graphql_url
        self.page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        self.max_retries = max(1, max_retries)
        self.backoff = backoff
        self.session = session
        self.client = client

        if self.api == "graphql" and self.session is None:
            self.session = requests.Session()
            self.session.headers.update(
                {
                    "Authorization": f"Bearer {token}",
                    "Accept": "application/vnd.github+json",
                    "User-Agent": "org-backup",
                }
            )
        if self.api == "rest" and self.client is None:
            self.client = Github(auth=Auth.Token(token))

    def get_repositories(self) -> List[RepositoryRef]:
        self.logger.info(
            f"[DISCOVER] Listing repositories of GitHub organization {self.organization} via {self.api}"
        )
        if self.api == "rest":
            repos = self._get_repositories_rest()
        else:
            repos = self._get_repositories_graphql()

        # Remove duplicates based on name
        seen = set()
        unique_repos = []
        for repo in repos:
            if repo.name not in seen:
                seen.add(repo.name)
                unique_repos.append(repo)

        result = self.filter_forks(unique_repos)
        self.logger.info(
            f"[DISCOVER] Found {len(result)} non-fork repositories in {self.organization}"
        )
        return result

    def _get_repositories_graphql(self) -> List[RepositoryRef]:
        repos = []
        cursor = None
        page = 0

        while True:
            page += 1
            nodes, end_cursor, has_next = self.fetch_page(cursor)
            self.logger.debug(
                f"[DISCOVER] Page {page}: {len(nodes)} repositories (has_next={has_next})"
            )
            for node in nodes:
                if not node or not node.get("name"):
                    continue
                repos.append(
                    RepositoryRef(
                        name=node["name"],
                        owner=self.organization,
                        is_fork=bool(node.get("isFork", False)),
                        is_private=node.get("isPrivate"),
                    )
                )

            if not has_next:
                return repos

            # A next page without a new cursor would loop forever
            if not end_cursor or end_cursor == cursor:
                raise EnumerationFailure(
                    f"GitHub reported more repositories for {self.organization} "
                    f"after page {page} but returned no new cursor"
                )
            cursor = end_cursor

    def fetch_page(
        self, cursor: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], Optional[str], bool]:
        """
        Fetch one page of organization repositories.

        Returns:
            Tuple of (nodes, end_cursor, has_next_page)
        """
        payload = self._post(
            {
                "query": GRAPHQL_QUERY,
                "variables": {
                    "org": self.organization,
                    "cursor": cursor,
                    "pageSize": self.page_size,
                },
            }
        )

        data = payload.get("data") or {}
        errors = payload.get("errors") or []
        organization = data.get("organization")

        if organization is None:
            if errors:
                message = "; ".join(e.get("message", "unknown error") for e in errors)
            else:
                message = "organization not found"
            raise EnumerationFailure(
                f"GitHub GraphQL query for {self.organization} failed: {message}"
            )

        if errors:
            # Partial data is still a truncated listing
            message = "; ".join(e.get("message", "unknown error") for e in errors)
            raise EnumerationFailure(
                f"GitHub GraphQL query for {self.organization} returned errors: {message}"
            )

        repositories = organization.get("repositories") or {}
        page_info = repositories.get("pageInfo") or {}
        return (
            repositories.get("nodes") or [],
            page_info.get("endCursor"),
            bool(page_info.get("hasNextPage", False)),
        )

    def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        last_error = None

        for attempt in range(self.max_retries):
            try:
                response = self.session.post(
                    self.graphql_url, json=body, timeout=REQUEST_TIMEOUT
                )
            except requests.RequestException as e:
                last_error = e
                self._wait(attempt, f"request failed: {e}")
                continue

            if response.status_code in RETRYABLE_STATUS:
                last_error = EnumerationFailure(
                    f"GitHub GraphQL returned HTTP {response.status_code}"
                )
                self._wait(attempt, f"server error {response.status_code}")
                continue

            delay = self._rate_limit_delay(response)
            if delay is not None:
                last_error = EnumerationFailure(
                    f"GitHub rate limit (HTTP {response.status_code})"
                )
                self._wait(attempt, f"rate limit (HTTP {response.status_code})", delay)
                continue

            if response.status_code == 401:
                raise EnumerationFailure(
                    "GitHub authentication failed: invalid or expired token"
                )

            try:
                response.raise_for_status()
                return response.json()
            except requests.HTTPError as e:
                raise EnumerationFailure(
                    f"GitHub GraphQL returned HTTP {response.status_code}"
                ) from e
            except ValueError as e:
                raise EnumerationFailure(
                    f"GitHub GraphQL returned an invalid response: {e}"
                ) from e

        raise EnumerationFailure(
            f"GitHub GraphQL request failed after {self.max_retries} attempts: {last_error}"
        )

    def _rate_limit_delay(self, response) -> Optional[float]:
        """Seconds to wait when GitHub rate-limited the request, else None"""
        headers = response.headers or {}
        if response.status_code == 403:
            # A 403 without rate limit headers is a permission error
            if "Retry-After" not in headers and headers.get("X-RateLimit-Remaining") != "0":
                return None
        elif response.status_code != 429:
            return None

        try:
            if "Retry-After" in headers:
                delay = float(headers["Retry-After"])
            elif "X-RateLimit-Reset" in headers:
                delay = float(headers["X-RateLimit-Reset"]) - time.time()
            else:
                delay = MAX_RATE_LIMIT_WAIT
        except ValueError:
            # Retry-After may also be an HTTP date
            delay = MAX_RATE_LIMIT_WAIT
        return min(max(1.0, delay), MAX_RATE_LIMIT_WAIT)

    def _wait(self, attempt: int, reason: str, delay: Optional[float] = None):
        if attempt + 1 >= self.max_retries:
            return
        if delay is None:
            delay = self.backoff * (2**attempt)
        self.logger.warning(
            f"[RETRY] GitHub {reason}, retrying in {delay:.1f}s "
            f"(attempt {attempt + 1}/{self.max_retries})"
        )
        time.sleep(delay)

    def _get_repositories_rest(self) -> List[RepositoryRef]:
        repos = []
        try:
            org = self.client.get_organization(self.organization)
            for repo in org.get_repos(type="all"):
                repos.append(
                    RepositoryRef(
                        name=repo.name,
                        owner=self.organization,
                        is_fork=repo.fork,
                        is_private=repo.private,
                    )
                )
        except GithubException as e:
            if e.status == 401:
                raise EnumerationFailure(
                    "GitHub authentication failed: invalid or expired token"
                ) from e
            raise EnumerationFailure(
                f"Could not list repositories of {self.organization}: {e}"
            ) from e
        except requests.RequestException as e:
            raise EnumerationFailure(
                f"Could not list repositories of {self.organization}: {e}"
            ) from e
        return repos
