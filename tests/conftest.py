"""
Shared fakes for the backup tests

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

import subprocess
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest
import requests
from botocore.exceptions import ClientError

# Wednesday the 15th
WEDNESDAY_15TH = datetime(2026, 7, 15, 12, 30, 45, tzinfo=timezone.utc)
WEDNESDAY_TS = "2026-07-15T123045"


def client_error(code: str, operation: str = "PutObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3Client:
    """
    In-memory stand-in for the boto3 S3 client.
    `check_error` makes the existence lookup fail with that error code,
    `error_code` is what the first `fail_uploads` puts fail with.
    """

    def __init__(self, existing=(), fail_uploads=0, error_code="SlowDown", check_error=None):
        self.objects = {key: b"" for key in existing}
        self.extra_args = {}
        self.upload_calls = 0
        self.fail_uploads = fail_uploads
        self.error_code = error_code
        self.check_error = check_error
        self._lock = threading.Lock()

    def list_objects_v2(self, Bucket, Prefix="", MaxKeys=1000):
        if self.check_error:
            raise client_error(self.check_error, "ListObjectsV2")
        with self._lock:
            keys = sorted(key for key in self.objects if key.startswith(Prefix))[:MaxKeys]
            contents = [{"Key": key, "Size": len(self.objects[key])} for key in keys]
        return {"KeyCount": len(contents), "Contents": contents} if contents else {"KeyCount": 0}

    def upload_file(self, Filename, Bucket, Key, Callback=None, ExtraArgs=None):
        with self._lock:
            self.upload_calls += 1
            if self.fail_uploads:
                self.fail_uploads -= 1
                raise client_error(self.error_code)
        data = Path(Filename).read_bytes()
        with self._lock:
            self.objects[Key] = data
            self.extra_args[Key] = ExtraArgs
        if Callback:
            Callback(len(data))

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return FakePaginator(self)


class FakePaginator:
    def __init__(self, client):
        self.client = client

    def paginate(self, Bucket, Prefix=""):
        contents = [
            {
                "Key": key,
                "Size": len(data),
                "LastModified": WEDNESDAY_15TH,
            }
            for key, data in sorted(self.client.objects.items())
            if key.startswith(Prefix)
        ]
        # Two pages to exercise the loop
        middle = len(contents) // 2
        yield {"Contents": contents[:middle]}
        yield {"Contents": contents[middle:]}


class FakeGit:
    """
    Replacement for subprocess.run that fakes `git clone --mirror`.
    Repositories named in `failing` exit 128 like an unreachable remote.
    """

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.cloned = []
        self._lock = threading.Lock()

    def __call__(self, cmd, **kwargs):
        url, destination = cmd[-2], Path(cmd[-1])
        name = url.rsplit("/", 1)[-1][: -len(".git")]
        with self._lock:
            self.cloned.append(name)

        if name in self.failing:
            return subprocess.CompletedProcess(
                cmd, 128, stdout=None, stderr=f"fatal: unable to access '{url}': 403\n"
            )

        (destination / "refs" / "heads").mkdir(parents=True)
        (destination / "HEAD").write_text("ref: refs/heads/main\n")
        (destination / "config").write_text("[core]\n\tbare = true\n")
        (destination / "refs" / "heads" / "main").write_text(f"{name:0<40}"[:40] + "\n")
        return subprocess.CompletedProcess(cmd, 0, stdout=None, stderr="")


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None):
        self.status_code = status_code
        self.headers = headers or {}
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}", response=self)


def graphql_payload(nodes, end_cursor=None, has_next=False):
    return {
        "data": {
            "organization": {
                "repositories": {
                    "pageInfo": {"endCursor": end_cursor, "hasNextPage": has_next},
                    "nodes": nodes,
                }
            }
        }
    }


def repo_node(name, fork=False, private=True):
    return {"name": name, "isFork": fork, "isPrivate": private}


class FakeGraphQLOrg:
    """
    Serves an organization's repositories over a fake GraphQL session,
    honouring the cursor and pageSize variables like the real API.
    """

    def __init__(self, nodes):
        self.nodes = list(nodes)
        self.requests = []

    def post(self, url, json=None, timeout=None):
        self.requests.append(json)
        variables = json["variables"]
        start = int(variables["cursor"]) if variables["cursor"] else 0
        end = start + variables["pageSize"]
        page = self.nodes[start:end]
        has_next = end < len(self.nodes)
        return FakeResponse(
            200, graphql_payload(page, end_cursor=str(end) if page else None, has_next=has_next)
        )


class ScriptedSession:
    """Returns the given responses (or raises the given exceptions) in order"""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def post(self, url, json=None, timeout=None):
        self.requests.append(json)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def fake_git():
    return FakeGit()


@pytest.fixture
def no_sleep(monkeypatch):
    """Record backoff delays instead of sleeping"""
    delays = []
    monkeypatch.setattr("time.sleep", lambda seconds: delays.append(seconds))
    return delays
