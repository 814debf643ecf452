import json
import unittest
from unittest.mock import MagicMock, patch

import requests
from botocore.exceptions import ClientError

from parcelvault.blobstore import InMemoryBlobStore, JsonBinBlobStore, S3BlobStore
from parcelvault.errors import ExternalServiceError, InvalidApiKeyError


def _response(status_code, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.text = text
    response.json.return_value = payload
    return response


class JsonBinBlobStoreTests(unittest.TestCase):
    def setUp(self):
        self.session = MagicMock()
        self.sleep = MagicMock()
        self.store = JsonBinBlobStore(
            api_key="secret",
            timeout=5,
            max_retries=2,
            backoff_seconds=1.0,
            session=self.session,
            sleep=self.sleep,
        )

    def test_create_wire_format(self):
        self.session.request.return_value = _response(200, {"metadata": {"id": "abc123"}})

        remote_id = self.store.create("Main St_2024-05-01", {"location": {"name": "Main St"}})

        self.assertEqual(remote_id, "abc123")
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("POST", "https://api.jsonbin.io/v3/b"))
        self.assertEqual(kwargs["headers"]["X-Master-Key"], "secret")
        self.assertEqual(kwargs["headers"]["X-Bin-Name"], "Main St_2024-05-01")
        self.assertEqual(kwargs["headers"]["Content-Type"], "application/json")
        self.assertEqual(kwargs["timeout"], 5)
        self.assertEqual(json.loads(kwargs["data"]), {"location": {"name": "Main St"}})

    def test_create_without_id_fails(self):
        self.session.request.return_value = _response(200, {"metadata": {}})
        with self.assertRaises(ExternalServiceError):
            self.store.create("x", {})

    def test_unauthorized_is_not_retried(self):
        self.session.request.return_value = _response(401, {"message": "bad key"})
        with self.assertRaises(InvalidApiKeyError) as ctx:
            self.store.create("x", {})
        self.assertEqual(ctx.exception.message, "invalid key")
        self.assertEqual(self.session.request.call_count, 1)
        self.sleep.assert_not_called()

    def test_client_error_is_not_retried(self):
        self.session.request.return_value = _response(400, text="bad bin name")
        with self.assertRaises(ExternalServiceError):
            self.store.create("x", {})
        self.assertEqual(self.session.request.call_count, 1)

    def test_server_errors_are_retried_with_backoff(self):
        self.session.request.side_effect = [
            _response(503),
            _response(502),
            _response(200, {"metadata": {"id": "ok"}}),
        ]
        self.assertEqual(self.store.create("x", {}), "ok")
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [1.0, 2.0])

    def test_timeouts_exhaust_retries(self):
        self.session.request.side_effect = requests.Timeout("read timed out")
        with self.assertRaises(ExternalServiceError):
            self.store.create("x", {})
        self.assertEqual(self.session.request.call_count, 3)

    def test_delete(self):
        self.session.request.return_value = _response(200, {"message": "deleted"})
        self.assertTrue(self.store.delete("abc123"))
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("DELETE", "https://api.jsonbin.io/v3/b/abc123"))

    def test_delete_missing_bin(self):
        self.session.request.return_value = _response(404)
        self.assertFalse(self.store.delete("gone"))

    def test_validate_key(self):
        self.session.request.return_value = _response(200, [])
        self.assertTrue(self.store.validate_key())
        args, _ = self.session.request.call_args
        self.assertEqual(args, ("GET", "https://api.jsonbin.io/v3/b"))

    def test_configured_follows_key(self):
        self.assertTrue(self.store.configured)
        self.assertFalse(JsonBinBlobStore(api_key=None, session=self.session).configured)


class S3BlobStoreTests(unittest.TestCase):
    def _store(self, client):
        with patch("parcelvault.blobstore.boto3.client", return_value=client):
            return S3BlobStore(
                bucket="backups",
                region="us-east-1",
                endpoint="",
                access_key_id="key",
                secret_access_key="secret",
            )

    def test_create_puts_json_object(self):
        client = MagicMock()
        store = self._store(client)

        key = store.create("Main St_2024-05-01", {"a": 1})

        self.assertTrue(key.startswith("backups/Main St_2024-05-01-"))
        kwargs = client.put_object.call_args.kwargs
        self.assertEqual(kwargs["Bucket"], "backups")
        self.assertEqual(kwargs["Key"], key)
        self.assertEqual(json.loads(kwargs["Body"]), {"a": 1})

    def test_auth_failure_maps_to_invalid_key(self):
        client = MagicMock()
        client.head_bucket.side_effect = ClientError(
            {"Error": {"Code": "InvalidAccessKeyId", "Message": "nope"}}, "HeadBucket"
        )
        store = self._store(client)
        with self.assertRaises(InvalidApiKeyError):
            store.validate_key()

    def test_other_failures_map_to_external_error(self):
        client = MagicMock()
        client.delete_object.side_effect = ClientError(
            {"Error": {"Code": "InternalError", "Message": "oops"}}, "DeleteObject"
        )
        store = self._store(client)
        with self.assertRaises(ExternalServiceError) as ctx:
            store.delete("backups/x.json")
        self.assertNotIsInstance(ctx.exception, InvalidApiKeyError)


class InMemoryBlobStoreTests(unittest.TestCase):
    def test_create_and_delete(self):
        store = InMemoryBlobStore()
        first = store.create("a", {"when": "now"})
        second = store.create("b", {})
        self.assertNotEqual(first, second)
        self.assertTrue(store.delete(first))
        self.assertFalse(store.delete(first))
        self.assertEqual(store.deleted, [first, first])


if __name__ == "__main__":
    unittest.main()
