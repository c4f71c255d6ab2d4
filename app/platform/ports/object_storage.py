from typing import Protocol, runtime_checkable

@runtime_checkable
class ObjectStoragePort(Protocol):
    """
    Append-only object storage addressed by opaque storage ids.

    A destination returned by ``generate_upload_url`` is single-use; the bytes
    written there become a new object whose storage id is either returned by
    the destination itself (``direct-api``) or announced up front in the
    destination (``storage_id`` key, presigned strategies).
    """
    def generate_upload_url(self, content_type: str | None = None) -> dict: ...

    def get_url(self, storage_id: str) -> str | None: ...

    def exists(self, storage_id: str) -> bool: ...

    def put_bytes(self, data: bytes, content_type: str) -> str: ...

    def compose(self, storage_ids: list[str], content_type: str) -> str: ...

    def delete(self, storage_id: str) -> None: ...
