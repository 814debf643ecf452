"""
Blob store abstraction for backup snapshots.

JSONBin (HTTP) is the default remote; any S3-compatible bucket works as an
alternative, and an in-memory store is used for tests and local runs.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from parcelvault.errors import ExternalServiceError, InvalidApiKeyError
from parcelvault.records import new_id

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30  # seconds
RETRYABLE_EXCEPTIONS = (requests.Timeout, requests.ConnectionError)
S3_AUTH_ERROR_CODES = {
    "AccessDenied",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "403",
    "401",
}


class BlobStore(Protocol):
    """Operations the backup manager needs from the snapshot store."""

    configured: bool

    def create(self, name: str, payload: dict) -> str:
        ...

    def delete(self, remote_id: str) -> bool:
        ...

    def validate_key(self) -> bool:
        ...


@dataclass
class InMemoryBlobStore:
    """Test double for snapshot storage. Failures can be switched on per call type."""

    configured: bool = True
    stored: dict = field(default_factory=dict)
    deleted: list[str] = field(default_factory=list)
    fail_create: Optional[Exception] = None
    fail_delete: Optional[Exception] = None
    fail_validate: Optional[Exception] = None
    _counter: int = 0

    def create(self, name: str, payload: dict) -> str:
        if self.fail_create is not None:
            raise self.fail_create
        self._counter += 1
        remote_id = f"bin-{self._counter}"
        # Round-trip through JSON to mimic the real upload.
        self.stored[remote_id] = {
            "name": name,
            "payload": json.loads(json.dumps(payload, default=str)),
        }
        return remote_id

    def delete(self, remote_id: str) -> bool:
        if self.fail_delete is not None:
            raise self.fail_delete
        self.deleted.append(remote_id)
        return self.stored.pop(remote_id, None) is not None

    def validate_key(self) -> bool:
        if self.fail_validate is not None:
            raise self.fail_validate
        return True


@dataclass
class JsonBinBlobStore:
    """
    JSONBin v3 client.

    Timeouts, connection errors and 5xx responses are retried with
    exponential backoff; a 401 raises InvalidApiKeyError and any other 4xx
    raises ExternalServiceError without retrying.
    """

    api_key: Optional[str]
    base_url: str = "https://api.jsonbin.io/v3"
    timeout: float = REQUEST_TIMEOUT
    max_retries: int = 3
    backoff_seconds: float = 1.0
    session: Optional[requests.Session] = None
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")
        if self.session is None:
            self.session = requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        headers = {"X-Master-Key": self.api_key or ""}
        headers.update(kwargs.pop("headers", {}))
        attempt = 0
        while True:
            try:
                response = self.session.request(
                    method, url, headers=headers, timeout=self.timeout, **kwargs
                )
            except RETRYABLE_EXCEPTIONS as exc:
                attempt += 1
                if attempt > self.max_retries:
                    raise ExternalServiceError(
                        f"{method} {path} failed after {self.max_retries} retries: {exc}"
                    ) from exc
                wait_time = self.backoff_seconds * (2 ** (attempt - 1))
                logger.debug(
                    "JSONBin %s %s failed (%s), retrying in %.1fs (attempt %d/%d)",
                    method, path, exc, wait_time, attempt, self.max_retries,
                )
                self.sleep(wait_time)
                continue

            if response.status_code == 401:
                raise InvalidApiKeyError()
            if response.status_code >= 500:
                attempt += 1
                if attempt > self.max_retries:
                    raise ExternalServiceError(
                        f"{method} {path} returned {response.status_code}: {response.text[:200]}"
                    )
                wait_time = self.backoff_seconds * (2 ** (attempt - 1))
                logger.debug(
                    "JSONBin %s %s returned %d, retrying in %.1fs",
                    method, path, response.status_code, wait_time,
                )
                self.sleep(wait_time)
                continue
            return response

    def create(self, name: str, payload: dict) -> str:
        response = self._request(
            "POST",
            "/b",
            headers={"X-Bin-Name": name, "Content-Type": "application/json"},
            data=json.dumps(payload, default=str),
        )
        if not response.ok:
            raise ExternalServiceError(
                f"Create bin {name} returned {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json()["metadata"]["id"]
        except (ValueError, KeyError, TypeError):
            raise ExternalServiceError(f"Create bin {name} returned no id") from None

    def delete(self, remote_id: str) -> bool:
        response = self._request("DELETE", f"/b/{remote_id}")
        if response.status_code == 404:
            return False
        if not response.ok:
            raise ExternalServiceError(
                f"Delete bin {remote_id} returned {response.status_code}: {response.text[:200]}"
            )
        return True

    def validate_key(self) -> bool:
        response = self._request("GET", "/b")
        if not response.ok:
            raise ExternalServiceError(
                f"Key check returned {response.status_code}: {response.text[:200]}"
            )
        return True


@dataclass
class S3BlobStore:
    """
    Snapshot store on an S3-compatible bucket. Each snapshot is one JSON
    object; its key is the remote id.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    prefix: str = "backups/"

    def __post_init__(self):
        config = Config(signature_version="s3v4", retries={"max_attempts": 3})
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    @property
    def configured(self) -> bool:
        return bool(self.bucket)

    @staticmethod
    def _translate(exc: Exception, action: str) -> ExternalServiceError:
        if isinstance(exc, ClientError):
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in S3_AUTH_ERROR_CODES:
                return InvalidApiKeyError()
        return ExternalServiceError(f"{action} failed: {exc}")

    def create(self, name: str, payload: dict) -> str:
        key = f"{self.prefix}{name}-{new_id()}.json"
        body = json.dumps(payload, default=str).encode("utf-8")
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType="application/json",
            )
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, f"Upload {key}") from exc
        return key

    def delete(self, remote_id: str) -> bool:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=remote_id)
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, f"Delete {remote_id}") from exc
        return True

    def validate_key(self) -> bool:
        try:
            self._client.head_bucket(Bucket=self.bucket)
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, f"Access check on {self.bucket}") from exc
        return True
