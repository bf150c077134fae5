from __future__ import annotations

import itertools
import json
import logging
import os
import re
import threading
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from reportstore.errors import TransientStoreError

logger = logging.getLogger(__name__)

_VERSION_SEP = "~"
_META_SUFFIX = ".meta.json"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "object"


@dataclass(frozen=True)
class StoredObject:
    """One physical object as reported by a listing."""

    key: str
    uploaded_at: datetime
    size: int
    url: str
    # set by backends that know which version is current (versioned S3)
    is_latest: bool = False


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool
    versioned: bool


class ObjectStorageBackend:
    """Append-only blob store seen through four calls.

    Every ``put_object`` creates a new physical object, so one key may have
    several versions outstanding. Listings carry no read-after-write
    guarantee and may be stale or contain duplicates.
    """

    backend_name = "base"

    def put_object(self, *, key: str, content_bytes: bytes, content_type: str | None = None) -> StoredObject:
        raise NotImplementedError

    def list_objects(self, *, prefix: str) -> Iterator[StoredObject]:
        raise NotImplementedError

    def get_object(self, *, url: str) -> bytes:
        raise NotImplementedError

    def delete_object(self, *, url: str) -> bool:
        raise NotImplementedError

    def _url_for(self, *, bucket: str, key: str, version: str) -> str:
        return f"object://{self.backend_name}/{bucket}/{key}#{version}"


@dataclass
class _MemoryBlob:
    meta: StoredObject
    content: bytes


class InMemoryObjectStorage(ObjectStorageBackend):
    """Process-local backend for tests and single-process development.

    With ``stale_listing`` enabled, deleted objects keep showing up in
    listings while their bodies are gone, the way an eventually consistent
    listing behaves right after a delete.
    """

    backend_name = "memory"

    def __init__(
        self,
        *,
        bucket: str = "reportstore",
        clock: Callable[[], datetime] | None = None,
        stale_listing: bool = False,
    ) -> None:
        self._bucket = bucket
        self._clock = clock or _utcnow
        self._stale_listing = stale_listing
        self._blobs: dict[str, _MemoryBlob] = {}
        self._tombstones: dict[str, StoredObject] = {}
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def put_object(self, *, key: str, content_bytes: bytes, content_type: str | None = None) -> StoredObject:
        with self._lock:
            version = f"{next(self._seq):012d}"
            meta = StoredObject(
                key=key,
                uploaded_at=self._clock(),
                size=len(content_bytes),
                url=self._url_for(bucket=self._bucket, key=key, version=version),
            )
            self._blobs[meta.url] = _MemoryBlob(meta=meta, content=bytes(content_bytes))
        return meta

    def list_objects(self, *, prefix: str) -> Iterator[StoredObject]:
        with self._lock:
            snapshot = [blob.meta for blob in self._blobs.values() if blob.meta.key.startswith(prefix)]
            if self._stale_listing:
                snapshot.extend(meta for meta in self._tombstones.values() if meta.key.startswith(prefix))
        snapshot.sort(key=lambda meta: (meta.key, meta.url))
        yield from snapshot

    def get_object(self, *, url: str) -> bytes:
        with self._lock:
            blob = self._blobs.get(url)
        if blob is None:
            raise FileNotFoundError(url)
        return blob.content

    def delete_object(self, *, url: str) -> bool:
        with self._lock:
            blob = self._blobs.pop(url, None)
            if blob is None:
                return False
            if self._stale_listing:
                self._tombstones[url] = blob.meta
        return True

    def settle(self) -> None:
        """Let the listing catch up with deletes."""
        with self._lock:
            self._tombstones.clear()

    def reset(self) -> None:
        with self._lock:
            self._blobs.clear()
            self._tombstones.clear()


class LocalObjectStorage(ObjectStorageBackend):
    """Filesystem backend; each version is ``<key>~<version>`` plus a meta sidecar."""

    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._bucket = _clean_segment(config.bucket)
        self._base = Path(config.root) / self._bucket
        self._base.mkdir(parents=True, exist_ok=True)
        self._seq = itertools.count(1)

    def put_object(self, *, key: str, content_bytes: bytes, content_type: str | None = None) -> StoredObject:
        uploaded_at = _utcnow()
        # same clock read as uploaded_at; the counter orders puts within one microsecond
        version = f"{uploaded_at.strftime('%Y%m%d%H%M%S%f')}{next(self._seq):08d}{uuid.uuid4().hex[:6]}"
        path = self._base / f"{key}{_VERSION_SEP}{version}"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content_bytes)
            self._write_meta(
                path,
                {
                    "key": key,
                    "uploaded_at": uploaded_at.isoformat(),
                    "content_type": content_type or "application/octet-stream",
                },
            )
        except OSError as exc:
            raise TransientStoreError(f"local put failed: {exc}") from exc
        return StoredObject(
            key=key,
            uploaded_at=uploaded_at,
            size=len(content_bytes),
            url=self._url_for(bucket=self._bucket, key=key, version=version),
        )

    def list_objects(self, *, prefix: str) -> Iterator[StoredObject]:
        start = self._base / prefix.rsplit("/", 1)[0] if "/" in prefix else self._base
        if not start.exists():
            return
        for path in sorted(start.rglob(f"*{_VERSION_SEP}*")):
            if not path.is_file() or path.name.endswith(_META_SUFFIX):
                continue
            relative = path.relative_to(self._base).as_posix()
            key, _, version = relative.rpartition(_VERSION_SEP)
            if not key.startswith(prefix):
                continue
            try:
                meta = self._read_meta(path)
                stat = path.stat()
            except FileNotFoundError:
                # deleted between the directory walk and the stat
                continue
            uploaded_raw = meta.get("uploaded_at")
            if uploaded_raw:
                uploaded_at = datetime.fromisoformat(str(uploaded_raw))
            else:
                uploaded_at = datetime.fromtimestamp(stat.st_mtime, tz=UTC)
            yield StoredObject(
                key=key,
                uploaded_at=uploaded_at,
                size=stat.st_size,
                url=self._url_for(bucket=self._bucket, key=key, version=version),
            )

    def get_object(self, *, url: str) -> bytes:
        path = self._path_for_url(url)
        if not path.exists():
            raise FileNotFoundError(url)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise TransientStoreError(f"local read failed: {exc}") from exc

    def delete_object(self, *, url: str) -> bool:
        path = self._path_for_url(url)
        if not path.exists():
            return False
        try:
            path.unlink()
            meta = self._meta_path(path)
            if meta.exists():
                meta.unlink()
        except OSError as exc:
            raise TransientStoreError(f"local delete failed: {exc}") from exc
        return True

    def reset(self) -> None:
        if not self._base.exists():
            return
        for path in sorted(self._base.rglob("*"), reverse=True):
            if path.is_file():
                path.unlink()
            elif path.is_dir():
                path.rmdir()

    def _path_for_url(self, url: str) -> Path:
        parsed = parse_object_url(url)
        if parsed["backend"] != self.backend_name:
            raise ValueError("storage backend mismatch")
        return self._base / f"{parsed['key']}{_VERSION_SEP}{parsed['version']}"

    def _meta_path(self, path: Path) -> Path:
        return Path(f"{path}{_META_SUFFIX}")

    def _read_meta(self, path: Path) -> dict[str, Any]:
        meta_path = self._meta_path(path)
        if not meta_path.exists():
            return {}
        try:
            return json.loads(meta_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return {}

    def _write_meta(self, path: Path, meta: dict[str, Any]) -> None:
        meta_path = self._meta_path(path)
        meta_path.write_text(json.dumps(meta, ensure_ascii=True, sort_keys=True), encoding="utf-8")


def _s3_error_code(exc: Exception) -> str:
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        return str(response.get("Error", {}).get("Code", ""))
    return ""


class S3ObjectStorage(ObjectStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        try:
            import boto3  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for s3 object storage backend") from exc
        self._bucket = config.bucket
        self._versioned = bool(config.versioned)
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=boto3.session.Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )

    def put_object(self, *, key: str, content_bytes: bytes, content_type: str | None = None) -> StoredObject:
        try:
            response = self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=content_bytes,
                ContentType=content_type or "application/octet-stream",
            )
        except Exception as exc:
            raise TransientStoreError(f"s3 put failed: {exc}") from exc
        version = ""
        if isinstance(response, dict):
            version = str(response.get("VersionId") or "")
        return StoredObject(
            key=key,
            uploaded_at=_utcnow(),
            size=len(content_bytes),
            url=self._url_for(bucket=self._bucket, key=key, version=version),
        )

    def list_objects(self, *, prefix: str) -> Iterator[StoredObject]:
        if self._versioned:
            paginator = self._client.get_paginator("list_object_versions")
            entries_field = "Versions"
        else:
            paginator = self._client.get_paginator("list_objects_v2")
            entries_field = "Contents"
        try:
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                for entry in page.get(entries_field, []) or []:
                    version = str(entry.get("VersionId") or "") if self._versioned else ""
                    yield StoredObject(
                        key=entry["Key"],
                        uploaded_at=entry["LastModified"],
                        size=int(entry.get("Size", 0)),
                        url=self._url_for(bucket=self._bucket, key=entry["Key"], version=version),
                        is_latest=bool(entry.get("IsLatest", False)),
                    )
        except Exception as exc:
            raise TransientStoreError(f"s3 list failed: {exc}") from exc

    def get_object(self, *, url: str) -> bytes:
        parsed = parse_object_url(url)
        params: dict[str, Any] = {"Bucket": parsed["bucket"], "Key": parsed["key"]}
        if parsed["version"]:
            params["VersionId"] = parsed["version"]
        try:
            response = self._client.get_object(**params)
            return response["Body"].read()
        except Exception as exc:
            if _s3_error_code(exc) in {"NoSuchKey", "NoSuchVersion", "404"}:
                raise FileNotFoundError(url) from exc
            raise TransientStoreError(f"s3 get failed: {exc}") from exc

    def delete_object(self, *, url: str) -> bool:
        parsed = parse_object_url(url)
        params: dict[str, Any] = {"Bucket": parsed["bucket"], "Key": parsed["key"]}
        if parsed["version"]:
            params["VersionId"] = parsed["version"]
        try:
            self._client.delete_object(**params)
        except Exception as exc:
            raise TransientStoreError(f"s3 delete failed: {exc}") from exc
        return True


def parse_object_url(url: str) -> dict[str, str]:
    if not url.startswith("object://"):
        raise ValueError("invalid object url")
    raw, _, version = url[len("object://") :].partition("#")
    parts = raw.split("/", 2)
    if len(parts) != 3:
        raise ValueError("invalid object url")
    return {"backend": parts[0], "bucket": parts[1], "key": parts[2], "version": version}


def _env_flag(env: Any, name: str, default: str) -> bool:
    return env.get(name, default).strip().lower() not in {"0", "false", "no", "off"}


def create_object_storage_from_env(environ: dict[str, str] | None = None) -> ObjectStorageBackend:
    env = os.environ if environ is None else environ
    backend = env.get("REPORTSTORE_OBJECT_STORAGE_BACKEND", "local").strip().lower() or "local"
    config = ObjectStorageConfig(
        backend=backend,
        bucket=env.get("OBJECT_STORAGE_BUCKET", "reportstore").strip() or "reportstore",
        root=env.get("OBJECT_STORAGE_ROOT", "/tmp/reportstore-objects").strip() or "/tmp/reportstore-objects",
        endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
        region=env.get("OBJECT_STORAGE_REGION", "").strip(),
        access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip(),
        secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip(),
        force_path_style=_env_flag(env, "OBJECT_STORAGE_FORCE_PATH_STYLE", "true"),
        versioned=_env_flag(env, "OBJECT_STORAGE_VERSIONED", "false"),
    )
    logger.info("object_storage_selected backend=%s bucket=%s", config.backend, config.bucket)
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    if config.backend == "memory":
        return InMemoryObjectStorage(bucket=config.bucket)
    return LocalObjectStorage(config=config)
