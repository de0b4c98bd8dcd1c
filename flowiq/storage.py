"""Local bucket store for uploaded files.

Objects live at ``<storage_dir>/<bucket>/<key>``.  Keys may contain ``/`` to
form prefixes but must resolve inside their bucket directory.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Dict, Optional

from flowiq.config import get_settings
from flowiq.encryption import decrypt_bytes, encrypt_bytes
from flowiq.errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

_BUCKET_RE = re.compile(r"^[a-z0-9][a-z0-9-]{1,62}$")
_SAFE_SEGMENT_RE = re.compile(r"[^A-Za-z0-9._-]")
_META_SUFFIX = ".meta.json"


def _path_within(base: Path, candidate: Path) -> bool:
    try:
        candidate.relative_to(base)
    except ValueError:
        return False
    return True


def sanitize_filename(original_name: Optional[str], fallback: str = "upload") -> str:
    """Reduce *original_name* to a safe final path component."""

    raw = Path(original_name or "").name.strip()
    cleaned = _SAFE_SEGMENT_RE.sub("_", raw).strip("._")
    return cleaned[:128] or fallback


class LocalStorage:
    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root or get_settings().storage_dir)

    def _bucket_dir(self, bucket: str) -> Path:
        if not _BUCKET_RE.match(bucket or ""):
            raise StorageError(f"Invalid bucket name: {bucket!r}")
        return (self.root / bucket).resolve()

    def _resolve(self, bucket: str, key: str) -> Path:
        base = self._bucket_dir(bucket)
        if not key or key.startswith("/") or "\\" in key:
            raise StorageError(f"Invalid object key: {key!r}")
        destination = (base / key).resolve()
        if destination == base or not _path_within(base, destination):
            raise StorageError("Object key escapes bucket directory")
        if destination.name.endswith(_META_SUFFIX):
            raise StorageError("Object key uses a reserved suffix")
        return destination

    def put(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        *,
        encrypt: bool = False,
    ) -> str:
        destination = self._resolve(bucket, key)
        destination.parent.mkdir(parents=True, exist_ok=True)
        payload = encrypt_bytes(data) if encrypt else bytes(data)
        try:
            destination.write_bytes(payload)
            destination.with_name(destination.name + _META_SUFFIX).write_text(
                json.dumps({"contentType": content_type, "encrypted": encrypt, "size": len(data)}),
                encoding="utf-8",
            )
        except OSError as exc:
            logger.error("storage_write_failed", extra={"bucket": bucket, "error": str(exc)})
            raise StorageError("Failed to store object") from exc
        logger.info("storage_object_saved", extra={"bucket": bucket, "size": len(data)})
        return f"{bucket}/{key}"

    def _meta(self, path: Path) -> Dict[str, object]:
        meta_path = path.with_name(path.name + _META_SUFFIX)
        if not meta_path.exists():
            return {"contentType": "application/octet-stream", "encrypted": False}
        return json.loads(meta_path.read_text(encoding="utf-8"))

    def get(self, bucket: str, key: str) -> bytes:
        path = self._resolve(bucket, key)
        if not path.is_file():
            raise NotFoundError(f"Object {bucket}/{key} not found")
        data = path.read_bytes()
        if self._meta(path).get("encrypted"):
            try:
                return decrypt_bytes(data)
            except ValueError as exc:
                raise StorageError("Stored object could not be decrypted") from exc
        return data

    def content_type(self, bucket: str, key: str) -> str:
        path = self._resolve(bucket, key)
        return str(self._meta(path).get("contentType") or "application/octet-stream")

    def exists(self, bucket: str, key: str) -> bool:
        return self._resolve(bucket, key).is_file()

    def delete(self, bucket: str, key: str) -> bool:
        path = self._resolve(bucket, key)
        if not path.is_file():
            return False
        path.unlink()
        meta_path = path.with_name(path.name + _META_SUFFIX)
        if meta_path.exists():
            meta_path.unlink()
        return True

    def url(self, bucket: str, key: str) -> str:
        self._resolve(bucket, key)
        return f"/api/storage/{bucket}/{key}"


def get_storage() -> LocalStorage:
    return LocalStorage()


__all__ = ["LocalStorage", "get_storage", "sanitize_filename"]
