import io
import sys
import types

from drive_service.blobstore import S3BlobStore


class _NotFound(Exception):
    def __init__(self) -> None:
        super().__init__("not found")
        self.response = {"Error": {"Code": "404"}}


class _FakeBody:
    def __init__(self, payload: bytes) -> None:
        self.payload = payload

    def iter_chunks(self, chunk_size: int):
        for start in range(0, len(self.payload), chunk_size):
            yield self.payload[start : start + chunk_size]


class _FakeS3Client:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.objects: dict[str, bytes] = {}

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        self.calls.append(("upload_fileobj", {"Bucket": bucket, "Key": key, "ExtraArgs": ExtraArgs}))
        self.objects[key] = fileobj.read()

    def get_object(self, **kwargs):
        self.calls.append(("get_object", kwargs))
        return {"Body": _FakeBody(self.objects[kwargs["Key"]])}

    def head_object(self, **kwargs):
        if kwargs["Key"] not in self.objects:
            raise _NotFound()
        return {}

    def copy_object(self, **kwargs):
        self.calls.append(("copy_object", kwargs))
        self.objects[kwargs["Key"]] = self.objects[kwargs["CopySource"]["Key"]]

    def delete_object(self, **kwargs):
        self.calls.append(("delete_object", kwargs))
        self.objects.pop(kwargs["Key"], None)

    def list_objects_v2(self, **kwargs):
        self.calls.append(("list_objects_v2", kwargs))
        keys = sorted(k for k in self.objects if k.startswith(kwargs["Prefix"]))
        if "ContinuationToken" not in kwargs:
            return {"Contents": [{"Key": k} for k in keys[:1]], "IsTruncated": len(keys) > 1, "NextContinuationToken": "t1"}
        return {"Contents": [{"Key": k} for k in keys], "IsTruncated": False}

    def delete_objects(self, **kwargs):
        self.calls.append(("delete_objects", kwargs))
        for item in kwargs["Delete"]["Objects"]:
            self.objects.pop(item["Key"], None)

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        self.calls.append(("generate_presigned_url", {"operation": operation, **Params, "ExpiresIn": ExpiresIn}))
        return f"https://signed.example/{Params['Key']}?ttl={ExpiresIn}"


def _store(monkeypatch) -> tuple[S3BlobStore, _FakeS3Client]:
    fake_client = _FakeS3Client()
    fake_boto3 = types.SimpleNamespace(client=lambda service_name, region_name=None: fake_client)
    monkeypatch.setitem(sys.modules, "boto3", fake_boto3)
    return S3BlobStore(bucket="bucket-1", region="us-east-1"), fake_client


def test_s3_blob_store_put_and_stream(monkeypatch) -> None:
    store, fake_client = _store(monkeypatch)

    result = store.put("users/p1/file.mp4", io.BytesIO(b"abc"), "video/mp4")
    payload = b"".join(store.open_stream(result.key))

    assert result.key == "users/p1/file.mp4"
    assert payload == b"abc"
    assert fake_client.calls[0][1]["ExtraArgs"] == {"ContentType": "video/mp4"}
    assert fake_client.calls[0][1]["Bucket"] == "bucket-1"
    assert store.exists("users/p1/file.mp4")
    assert not store.exists("users/p1/other.mp4")


def test_s3_blob_store_signed_url_copy_and_prefix_delete(monkeypatch) -> None:
    store, fake_client = _store(monkeypatch)
    fake_client.objects.update({"users/p1/a": b"1", "users/p1/b": b"2", "users/p10/c": b"3"})

    assert store.signed_url("users/p1/a", 60) == "https://signed.example/users/p1/a?ttl=60"
    store.copy("users/p1/a", "users/p1/d")
    assert fake_client.objects["users/p1/d"] == b"1"

    assert store.delete_prefix("users/p1") == 3
    assert sorted(fake_client.objects) == ["users/p10/c"]
    list_calls = [kwargs for name, kwargs in fake_client.calls if name == "list_objects_v2"]
    assert [c["Prefix"] for c in list_calls] == ["users/p1/", "users/p1/"]
    assert list_calls[1]["ContinuationToken"] == "t1"
