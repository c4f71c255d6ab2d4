import logging
import uuid
import boto3
from botocore.client import Config
from botocore.exceptions import ClientError
from app.platform.ports.object_storage import ObjectStoragePort
from app.core.config import settings

log = logging.getLogger("storage.s3")

class S3Storage(ObjectStoragePort):
    def __init__(self, client=None, bucket: str | None = None, prefix: str = "objects/"):
        if client is None:
            session = boto3.session.Session(
                aws_access_key_id=settings.S3_ACCESS_KEY,
                aws_secret_access_key=settings.S3_SECRET_KEY,
                region_name=settings.S3_REGION,
            )
            client = session.client(
                "s3",
                endpoint_url=settings.S3_ENDPOINT_URL,
                config=Config(signature_version="s3v4"),
            )
        self.s3 = client
        self.bucket = bucket or settings.S3_BUCKET
        self.prefix = prefix
        self.expires_seconds = settings.S3_PRESIGN_EXPIRES_SECONDS

    def _key(self, storage_id: str) -> str:
        return f"{self.prefix}{storage_id}"

    def generate_upload_url(self, content_type: str | None = None) -> dict:
        # the storage id is fixed up front; the client PUTs the bytes straight to S3
        storage_id = uuid.uuid4().hex
        params = {"Bucket": self.bucket, "Key": self._key(storage_id)}
        if content_type:
            params["ContentType"] = content_type
        url = self.s3.generate_presigned_url("put_object", Params=params, ExpiresIn=self.expires_seconds)
        return {"strategy": "s3-presigned-put", "method": "PUT", "url": url, "storage_id": storage_id}

    def get_url(self, storage_id: str) -> str | None:
        if not self.exists(storage_id):
            return None
        return self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": self._key(storage_id)},
            ExpiresIn=self.expires_seconds,
        )

    def exists(self, storage_id: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket, Key=self._key(storage_id))
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise

    def put_bytes(self, data: bytes, content_type: str) -> str:
        storage_id = uuid.uuid4().hex
        self.s3.put_object(Bucket=self.bucket, Key=self._key(storage_id), Body=data, ContentType=content_type)
        return storage_id

    def compose(self, storage_ids: list[str], content_type: str) -> str:
        """Server-side concatenation in the given order (parts must be >= 5 MiB except the last)."""
        if not storage_ids:
            raise ValueError("nothing to compose")
        storage_id = uuid.uuid4().hex
        key = self._key(storage_id)
        if len(storage_ids) == 1:
            self.s3.copy_object(
                Bucket=self.bucket, Key=key, ContentType=content_type, MetadataDirective="REPLACE",
                CopySource={"Bucket": self.bucket, "Key": self._key(storage_ids[0])},
            )
            return storage_id

        mpu = self.s3.create_multipart_upload(Bucket=self.bucket, Key=key, ContentType=content_type)
        upload_id = mpu["UploadId"]
        try:
            parts = []
            for number, sid in enumerate(storage_ids, start=1):
                res = self.s3.upload_part_copy(
                    Bucket=self.bucket, Key=key, UploadId=upload_id, PartNumber=number,
                    CopySource={"Bucket": self.bucket, "Key": self._key(sid)},
                )
                parts.append({"PartNumber": number, "ETag": res["CopyPartResult"]["ETag"]})
            self.s3.complete_multipart_upload(
                Bucket=self.bucket, Key=key, UploadId=upload_id, MultipartUpload={"Parts": parts},
            )
        except Exception:
            log.exception("Compose of %d parts into %s failed; aborting", len(storage_ids), key)
            self.s3.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
            raise
        return storage_id

    def delete(self, storage_id: str) -> None:
        self.s3.delete_object(Bucket=self.bucket, Key=self._key(storage_id))
