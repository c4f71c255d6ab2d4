import asyncio
import json
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

from app.platform.adapters.storage_s3 import S3Storage
from app.platform.adapters.bus_redis import RedisEventBus
from app.platform.adapters.bus_noop import NoopEventBus


class FakeS3:
    def __init__(self, fail_part=None):
        self.objects = {}
        self.fail_part = fail_part
        self.multipart = {}
        self.aborted = []

    def generate_presigned_url(self, op, Params, ExpiresIn):
        return f"https://s3.test/{Params['Bucket']}/{Params['Key']}?op={op}&exp={ExpiresIn}"

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "404"}}, "HeadObject")
        return {}

    def put_object(self, Bucket, Key, Body, ContentType):
        self.objects[Key] = Body

    def copy_object(self, Bucket, Key, CopySource, **kwargs):
        self.objects[Key] = self.objects[CopySource["Key"]]

    def create_multipart_upload(self, Bucket, Key, ContentType):
        self.multipart["u1"] = {}
        return {"UploadId": "u1"}

    def upload_part_copy(self, Bucket, Key, UploadId, PartNumber, CopySource):
        if PartNumber == self.fail_part:
            raise ClientError({"Error": {"Code": "InternalError"}}, "UploadPartCopy")
        self.multipart[UploadId][PartNumber] = self.objects[CopySource["Key"]]
        return {"CopyPartResult": {"ETag": f"etag-{PartNumber}"}}

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        parts = self.multipart.pop(UploadId)
        self.objects[Key] = b"".join(parts[p["PartNumber"]] for p in MultipartUpload["Parts"])

    def abort_multipart_upload(self, Bucket, Key, UploadId):
        self.aborted.append(UploadId)

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)


def test_s3_presigned_destination_announces_storage_id():
    storage = S3Storage(client=FakeS3(), bucket="media")
    dest = storage.generate_upload_url("audio/wav")
    assert dest["strategy"] == "s3-presigned-put"
    assert dest["storage_id"] in dest["url"]
    assert storage.get_url(dest["storage_id"]) is None


def test_s3_compose_concatenates_in_order():
    s3 = FakeS3()
    storage = S3Storage(client=s3, bucket="media")
    ids = [storage.put_bytes(part, "application/octet-stream") for part in (b"one-", b"two-", b"three")]
    final_id = storage.compose(ids, "audio/mpeg")
    assert s3.objects[f"objects/{final_id}"] == b"one-two-three"
    assert storage.exists(final_id)
    assert "op=get_object" in storage.get_url(final_id)
    storage.delete(final_id)
    assert not storage.exists(final_id)


def test_s3_compose_aborts_on_part_failure():
    s3 = FakeS3(fail_part=2)
    storage = S3Storage(client=s3, bucket="media")
    ids = [storage.put_bytes(part, "application/octet-stream") for part in (b"a", b"b")]
    with pytest.raises(ClientError):
        storage.compose(ids, "audio/mpeg")
    assert s3.aborted == ["u1"]


class FakeRedis:
    def __init__(self):
        self.entries = []
        self.closed = False

    async def xadd(self, stream, fields, maxlen=None, approximate=True):
        self.entries.append((stream, fields, maxlen))

    async def aclose(self):
        self.closed = True


def test_redis_bus_appends_to_stream():
    redis = FakeRedis()
    bus = RedisEventBus(redis=redis)

    async def scenario():
        await bus.publish("media/transcription.completed", key="m1", value={"status": "completed"})
        await bus.close()

    asyncio.run(scenario())
    stream, fields, maxlen = redis.entries[0]
    assert stream == "transcribe.events"
    assert fields["topic"] == "media/transcription.completed"
    assert json.loads(fields["value"]) == {"status": "completed"}
    assert maxlen == 10000
    assert redis.closed


def test_noop_bus_logs(caplog):
    caplog.set_level("INFO", logger="bus.noop")
    asyncio.run(NoopEventBus().publish("media/file.uploaded", key="m1", value={"a": 1}))
    assert "media/file.uploaded" in caplog.text


def test_local_storage_only_serves_object_ids(storage):
    storage_id = storage.put_bytes(b"AUDIO", "audio/mpeg")
    assert storage.exists(storage_id)
    for name in (storage_id + ".json", storage_id + ".part", "../" + storage_id, ""):
        assert not storage.exists(name)
        assert storage.get_url(name) is None
        assert storage.path_of(name) is None
    assert storage.accept_upload("not-a-token", b"x") is None


def test_local_compose_failure_leaves_no_partial_object(storage):
    present = storage.put_bytes(b"one", "application/octet-stream")
    missing = "0" * 32
    with pytest.raises(FileNotFoundError):
        storage.compose([present, missing], "audio/mpeg")
    objects = sorted(p.name for p in (Path(storage.root) / "objects").iterdir())
    assert objects == sorted([present, present + ".json"])
