"""Pytest configuration and in-memory Redis / S3 doubles."""

import fnmatch
import io
from datetime import datetime, timezone
from uuid import uuid4

import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient
from redis.exceptions import LockNotOwnedError

from chunkvault import main
from chunkvault.client.api import UploadApiClient
from chunkvault.config import Settings
from chunkvault.services.upload_service import UploadService


def _to_bytes(value) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode()


class _FakeLock:
    """Token-owned lock with the acquire/release surface of redis.lock.Lock."""

    def __init__(self, redis, name, timeout):
        self.redis = redis
        self.name = name
        self.timeout = timeout
        self.token = None

    def acquire(self):
        token = uuid4().hex.encode()
        if self.redis.set(self.name, token, nx=True, ex=self.timeout):
            self.token = token
            return True
        return False

    def release(self):
        if self.token is None or self.redis.get(self.name) != self.token:
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        self.redis.delete(self.name)
        self.token = None


class FakeRedis:
    """The subset of redis.Redis the services use, with bytes values."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def ping(self):
        return True

    def get(self, name):
        value = self.data.get(name)
        return value if isinstance(value, bytes) else None

    def set(self, name, value, nx=False, ex=None):
        if nx and name in self.data:
            return None
        self.data[name] = _to_bytes(value)
        if ex:
            self.ttls[name] = ex
        return True

    def setex(self, name, time, value):
        self.data[name] = _to_bytes(value)
        self.ttls[name] = time
        return True

    def delete(self, *names):
        removed = 0
        for name in names:
            if isinstance(name, bytes):
                name = name.decode()
            if self.data.pop(name, None) is not None:
                removed += 1
            self.ttls.pop(name, None)
        return removed

    def exists(self, *names):
        return sum(1 for name in names if name in self.data)

    def expire(self, name, time):
        if name in self.data:
            self.ttls[name] = time
            return True
        return False

    def sadd(self, name, *values):
        members = self.data.setdefault(name, set())
        before = len(members)
        members.update(_to_bytes(v) for v in values)
        return len(members) - before

    def smembers(self, name):
        return set(self.data.get(name, set()))

    def keys(self, pattern="*"):
        return [k.encode() for k in self.data if fnmatch.fnmatchcase(k, pattern)]

    def lock(self, name, timeout=None, blocking=True):
        return _FakeLock(self, name, timeout)

    def expire_now(self, pattern):
        """Drop every key matching ``pattern`` as if its TTL ran out."""
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, pattern):
                self.delete(key)


class _Paginator:
    def __init__(self, s3):
        self.s3 = s3

    def paginate(self, Bucket, Prefix=""):
        contents = [
            {"Key": key, "LastModified": modified, "Size": len(data)}
            for (bucket, key), (data, modified) in sorted(self.s3.objects.items())
            if bucket == Bucket and key.startswith(Prefix)
        ]
        yield {"Contents": contents} if contents else {}


class FakeS3:
    """The subset of the boto3 S3 client the services use."""

    def __init__(self):
        self.objects = {}
        self.put_calls = []
        self.fail_puts = False
        self.fail_uploads = False

    def put_object(self, Bucket, Key, Body, Metadata=None):
        if self.fail_puts:
            raise ClientError({"Error": {"Code": "SlowDown", "Message": "injected"}}, "PutObject")
        self.put_calls.append(Key)
        self.objects[(Bucket, Key)] = (bytes(Body), datetime.now(timezone.utc))
        return {"ETag": '"fake"'}

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": Key}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)][0])}

    def upload_fileobj(self, Fileobj, Bucket, Key, ExtraArgs=None):
        if self.fail_uploads:
            raise ClientError({"Error": {"Code": "InternalError", "Message": "injected"}}, "PutObject")
        self.objects[(Bucket, Key)] = (Fileobj.read(), datetime.now(timezone.utc))

    def delete_object(self, Bucket, Key):
        self.objects.pop((Bucket, Key), None)
        return {}

    def get_paginator(self, operation_name):
        assert operation_name == "list_objects_v2"
        return _Paginator(self)

    def keys(self, prefix=""):
        return sorted(key for (_, key) in self.objects if key.startswith(prefix))

    def read(self, key):
        for (_, stored_key), (data, _) in self.objects.items():
            if stored_key == key:
                return data
        raise KeyError(key)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest.fixture
def test_settings():
    config = Settings()
    config.BUCKET_NAME = "test-bucket"
    config.MAX_FILE_SIZE = 64 * 1024 * 1024
    return config


@pytest.fixture
def upload_service(fake_s3, fake_redis, test_settings):
    return UploadService(s3_client=fake_s3, redis_client=fake_redis, config=test_settings)


@pytest.fixture
def client(upload_service, monkeypatch):
    monkeypatch.setattr(main, "upload_service", upload_service)
    return TestClient(main.app)


@pytest.fixture
def api(client):
    return UploadApiClient(base_url="http://testserver", timeout=5, http=client)


@pytest.fixture
def make_file(tmp_path):
    def _make(data: bytes, name: str = "payload.bin"):
        path = tmp_path / name
        path.write_bytes(data)
        return path
    return _make
