import json
import os
import re
import shutil
import uuid
from app.platform.ports.object_storage import ObjectStoragePort
from app.core.config import settings

_ID_RE = re.compile(r"[0-9a-f]{32}")

class LocalFilesystemStorage(ObjectStoragePort):
    """
    Object store on the local disk, for dev and tests.

    Objects live under ``<root>/objects/<storage_id>`` with a JSON sidecar for
    the content type. Upload destinations are single-use tokens under
    ``<root>/pending/``; the bytes are PUT to the API (``direct-api`` strategy)
    which calls ``accept_upload``. URLs point at the API's object route, so in
    real setups serve them via nginx or the API proxy.
    """
    def __init__(self, root: str | None = None, public_url: str | None = None):
        self.root = os.path.abspath(root or settings.LOCAL_STORAGE_ROOT)
        self.public_url = (public_url or f"{settings.PUBLIC_BASE_URL}{settings.API_PREFIX}/storage").rstrip("/")
        os.makedirs(os.path.join(self.root, "objects"), exist_ok=True)
        os.makedirs(os.path.join(self.root, "pending"), exist_ok=True)

    def _safe(self, name: str) -> str:
        # ids and tokens are uuid4 hex; anything else (sidecars, .part files) is not an object
        if not _ID_RE.fullmatch(name or ""):
            raise ValueError(f"invalid storage id {name!r}")
        return name

    def _path(self, storage_id: str) -> str:
        return os.path.join(self.root, "objects", self._safe(storage_id))

    def _meta_path(self, storage_id: str) -> str:
        return self._path(storage_id) + ".json"

    def _token_path(self, token: str) -> str:
        return os.path.join(self.root, "pending", self._safe(token))

    def _write_meta(self, storage_id: str, content_type: str) -> None:
        with open(self._meta_path(storage_id), "w", encoding="utf-8") as f:
            json.dump({"content_type": content_type, "size": os.path.getsize(self._path(storage_id))}, f)

    def generate_upload_url(self, content_type: str | None = None) -> dict:
        token = uuid.uuid4().hex
        with open(self._token_path(token), "w", encoding="utf-8") as f:
            f.write(content_type or "")
        return {
            "strategy": "direct-api",
            "method": "PUT",
            "url": f"{self.public_url}/upload/{token}",
            "token": token,
        }

    def accept_upload(self, token: str, data: bytes, content_type: str | None = None) -> str | None:
        # the token file is consumed first so a destination cannot be written twice
        marker = self._token_path(token)
        try:
            with open(marker, "r", encoding="utf-8") as f:
                announced = f.read()
            os.remove(marker)
        except (FileNotFoundError, ValueError):
            return None
        return self.put_bytes(data, content_type or announced or "application/octet-stream")

    def get_url(self, storage_id: str) -> str | None:
        if not self.exists(storage_id):
            return None
        return f"{self.public_url}/objects/{self._safe(storage_id)}"

    def exists(self, storage_id: str) -> bool:
        try:
            return os.path.isfile(self._path(storage_id))
        except ValueError:
            return False

    def path_of(self, storage_id: str) -> str | None:
        return self._path(storage_id) if self.exists(storage_id) else None

    def content_type(self, storage_id: str) -> str:
        try:
            with open(self._meta_path(storage_id), "r", encoding="utf-8") as f:
                return json.load(f).get("content_type") or "application/octet-stream"
        except (FileNotFoundError, ValueError):
            return "application/octet-stream"

    def put_bytes(self, data: bytes, content_type: str) -> str:
        storage_id = uuid.uuid4().hex
        path = self._path(storage_id)
        tmp = path + ".part"
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
        self._write_meta(storage_id, content_type)
        return storage_id

    def compose(self, storage_ids: list[str], content_type: str) -> str:
        if not storage_ids:
            raise ValueError("nothing to compose")
        storage_id = uuid.uuid4().hex
        path = self._path(storage_id)
        tmp = path + ".part"
        try:
            with open(tmp, "wb") as out:
                for sid in storage_ids:
                    with open(self._path(sid), "rb") as src:
                        shutil.copyfileobj(src, out, length=1024 * 1024)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise
        self._write_meta(storage_id, content_type)
        return storage_id

    def delete(self, storage_id: str) -> None:
        for path in (self._path(storage_id), self._meta_path(storage_id)):
            if os.path.exists(path):
                os.remove(path)
