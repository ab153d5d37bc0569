"""
Content-addressed object store with optional SSE-C encryption

Structure Map for reference:
==============================
 - <storage_root>/
      - {bucket}/
          - metadata.json
          - blobs/
              - {sha256 of stored bytes}
==============================
For reference:
> Objects are addressed by bucket + key; the bytes are stored once per content hash
> Encrypted objects are stored as the frame stream; the hash covers the ciphertext
> The sealed object key, IV and algorithm live in the object's metadata, never the key itself
> The object key (path) is bound into the sealed key, so a sealed key only opens its own object

Ranged reads fetch only the frames covering the requested plaintext bytes.
"""

import logging
import shutil
import tempfile
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Dict, Optional, Union

from .exceptions import ObjectNotFoundError, StorageError
from .hashing import calculate_sha256
from .range import ByteRange
from ..security.frame import PACKAGE_SIZE
from ..security.sse import decrypt_writer, decrypted_size, encrypt_reader, is_encrypted

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _copy_range(source: BinaryIO, sink: BinaryIO, length: int) -> None:
    remaining = length
    while remaining > 0:
        data = source.read(min(PACKAGE_SIZE, remaining))
        if not data:
            raise StorageError(f"Stored blob is truncated ({remaining} bytes missing)")
        sink.write(data)
        remaining -= len(data)


class Storage:
    """Local object store; encryption is enabled per object by passing a KEK"""

    def __init__(self, root_path: Optional[str] = None):
        self.root = (
            Path(root_path).expanduser() if root_path else Path.home() / ".sealbox"
        )
        self.root.mkdir(parents=True, exist_ok=True)

    def bucket_root(self, bucket: str) -> Path:
        return self.root / bucket

    def blob_root(self, bucket: str) -> Path:
        return self.bucket_root(bucket) / "blobs"

    def blob_path(self, bucket: str, hash_hex: str) -> Path:
        return self.blob_root(bucket) / hash_hex

    def metadata_path(self, bucket: str) -> Path:
        return self.bucket_root(bucket) / "metadata.json"

    def ensure_bucket(self, bucket: str) -> Path:
        self.blob_root(bucket).mkdir(parents=True, exist_ok=True)
        return self.bucket_root(bucket)

    def load_metadata(self, bucket: str) -> Dict[str, Any]:
        p = self.metadata_path(bucket)
        if not p.exists():
            return {"bucket": bucket, "created_at": _now(), "objects": {}}
        try:
            with open(p, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Unreadable metadata for bucket {bucket}: {e}") from e

    def save_metadata(self, bucket: str, metadata: Dict[str, Any]) -> None:
        p = self.metadata_path(bucket)
        tmp = p.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(metadata, f, ensure_ascii=False)
        tmp.replace(p)

    def _release_blob(self, bucket: str, metadata: Dict[str, Any], hash_hex: str) -> None:
        # drop the blob once no object references it any more
        if any(o.get("hash") == hash_hex for o in metadata.get("objects", {}).values()):
            return
        path = self.blob_path(bucket, hash_hex)
        if path.exists():
            path.unlink()

    def put(
        self,
        bucket: str,
        key: str,
        source_path: str,
        kek: Optional[bytes] = None,
    ) -> Dict[str, Any]:
        """
        Store the file at ``source_path`` as ``bucket/key``.

        With a ``kek`` the content is encrypted through the frame stream and
        the sealed object key is recorded in the object's metadata.
        """
        self.ensure_bucket(bucket)
        src = Path(source_path).expanduser()

        with tempfile.NamedTemporaryFile(dir=self.blob_root(bucket), delete=False) as tmpf:
            tmp_path = Path(tmpf.name)

        try:
            sse_metadata: Dict[str, str] = {}
            with open(src, "rb") as inf, open(tmp_path, "wb") as outf:
                reader = inf
                if kek is not None:
                    reader, sse_metadata = encrypt_reader(inf, kek, key)
                shutil.copyfileobj(reader, outf, PACKAGE_SIZE)

            hash_hex = calculate_sha256(tmp_path)
            size = tmp_path.stat().st_size
            destination = self.blob_path(bucket, hash_hex)
            if not destination.exists():
                tmp_path.replace(destination)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        metadata = self.load_metadata(bucket)
        objects = metadata.setdefault("objects", {})
        previous = objects.get(key)
        objects[key] = {
            "hash": hash_hex,
            "size": size,
            "encrypted": kek is not None,
            "metadata": sse_metadata,
            "added_at": _now(),
        }
        metadata["updated_at"] = _now()
        if previous and previous.get("hash") != hash_hex:
            self._release_blob(bucket, metadata, previous["hash"])
        self.save_metadata(bucket, metadata)

        logger.info(
            "Stored %s/%s as %s (%d bytes, encrypted=%s)",
            bucket, key, hash_hex, size, kek is not None,
        )
        return {"hash": hash_hex, "size": size, "encrypted": kek is not None}

    def stat(self, bucket: str, key: str) -> Dict[str, Any]:
        if not self.metadata_path(bucket).exists():
            raise ObjectNotFoundError(f"Bucket {bucket} not found")
        info = self.load_metadata(bucket).get("objects", {}).get(key)
        if info is None:
            raise ObjectNotFoundError(f"Object {key} not found in bucket {bucket}")
        info = dict(info)
        info["plaintext_size"] = decrypted_size(info["size"], info.get("metadata", {}))
        return info

    def get(
        self,
        bucket: str,
        key: str,
        destination_path: str,
        kek: Optional[bytes] = None,
        range_spec: Union[str, ByteRange, None] = None,
    ) -> str:
        """
        Write the plaintext of ``bucket/key`` (or the requested byte range of it)
        to ``destination_path``.

        Only the stored bytes covering the range are read. On any failure the
        destination file is removed; the stored object is never modified.
        """
        info = self.stat(bucket, key)
        metadata = info.get("metadata", {})
        encrypted = is_encrypted(metadata)
        if encrypted and kek is None:
            raise StorageError(f"Object {bucket}/{key} is encrypted; a key is required")

        blob = self.blob_path(bucket, info["hash"])
        if not blob.exists():
            raise ObjectNotFoundError(f"Blob {info['hash']} for {bucket}/{key} is missing")

        start, length, first_frame, range_filter = 0, info["size"], 0, None
        if range_spec is not None:
            byte_range = (
                range_spec if isinstance(range_spec, ByteRange) else ByteRange.parse(range_spec)
            )
            crange = byte_range.ciphertext_range(info["plaintext_size"], encrypted)
            start, length, first_frame = crange.start, crange.length, crange.first_frame
            if encrypted:
                range_filter = byte_range.range_filter(info["plaintext_size"])

        destination = Path(destination_path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(blob, "rb") as inf, open(destination, "wb") as outf:
                inf.seek(start)
                if encrypted:
                    with decrypt_writer(
                        outf, metadata, kek, key, range_filter, sequence_number=first_frame
                    ) as writer:
                        _copy_range(inf, writer, length)
                else:
                    _copy_range(inf, outf, length)
        except BaseException:
            destination.unlink(missing_ok=True)
            raise

        logger.info("Read %s/%s bytes %d-%d", bucket, key, start, start + length - 1)
        return str(destination)

    def has(self, bucket: str, key: str) -> bool:
        try:
            info = self.stat(bucket, key)
        except ObjectNotFoundError:
            return False
        return self.blob_path(bucket, info["hash"]).exists()

    def verify(self, bucket: str, key: str) -> bool:
        try:
            info = self.stat(bucket, key)
        except ObjectNotFoundError:
            return False
        path = self.blob_path(bucket, info["hash"])
        if not path.exists():
            return False
        return calculate_sha256(path) == info["hash"]

    def list_objects(self, bucket: str) -> Dict[str, Dict[str, Any]]:
        if not self.metadata_path(bucket).exists():
            return {}
        return dict(self.load_metadata(bucket).get("objects", {}))

    def delete(self, bucket: str, key: str) -> bool:
        if not self.metadata_path(bucket).exists():
            return False
        metadata = self.load_metadata(bucket)
        info = metadata.get("objects", {}).pop(key, None)
        if info is None:
            return False
        metadata["updated_at"] = _now()
        self._release_blob(bucket, metadata, info["hash"])
        self.save_metadata(bucket, metadata)
        logger.info("Deleted %s/%s", bucket, key)
        return True
