from __future__ import annotations

import json
import os
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import cached_property
from pathlib import Path
from typing import BinaryIO
from urllib.parse import quote, unquote

from itsdangerous import BadSignature, URLSafeTimedSerializer


class StorageError(RuntimeError):
    pass


class ObjectNotFound(StorageError):
    pass


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int
    content_type: str
    metadata: dict[str, str] = field(default_factory=dict)
    last_modified: datetime | None = None


def content_disposition(filename: str) -> str:
    ascii_name = filename.encode("ascii", "ignore").decode("ascii").replace('"', "") or "download"
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"


def encode_metadata(metadata: dict[str, str] | None) -> dict[str, str]:
    # S3 user metadata must be ASCII.
    return {k: quote(str(v), safe="") for k, v in (metadata or {}).items() if v is not None}


def decode_metadata(metadata: dict[str, str] | None) -> dict[str, str]:
    return {k.lower(): unquote(v) for k, v in (metadata or {}).items()}


class Storage:
    bucket: str

    def ensure_bucket(self) -> None:
        raise NotImplementedError

    def put_file(
        self,
        key: str,
        path: Path,
        *,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def head(self, key: str) -> ObjectInfo:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        try:
            self.head(key)
            return True
        except ObjectNotFound:
            return False

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def presign_get(self, key: str, *, expires_in: int, download_name: str | None = None) -> str:
        raise NotImplementedError

    def iter_objects(self, prefix: str = "") -> Iterator[ObjectInfo]:
        raise NotImplementedError


@dataclass(frozen=True)
class LocalStorage(Storage):
    """
    Filesystem-backed store for development and tests.
    Presigned URLs point at the app's /files/<token> route and are signed with SECRET_KEY.
    """

    root: Path
    secret_key: str
    public_base_url: str = ""
    bucket: str = "local"

    _SALT = "portal-local-download"

    def _path(self, key: str) -> Path:
        safe_key = key.lstrip("/").replace("\\", "/")
        if ".." in safe_key.split("/"):
            raise StorageError(f"Invalid object key: {key!r}")
        return self.root / self.bucket / safe_key

    def _meta_path(self, key: str) -> Path:
        p = self._path(key)
        return p.with_name(p.name + ".meta.json")

    def _serializer(self) -> URLSafeTimedSerializer:
        return URLSafeTimedSerializer(self.secret_key, salt=self._SALT)

    def ensure_bucket(self) -> None:
        (self.root / self.bucket).mkdir(parents=True, exist_ok=True)

    def put_file(self, key, path, *, content_type=None, metadata=None) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(Path(path).read_bytes())
        self._meta_path(key).write_text(
            json.dumps({"content_type": content_type or "application/octet-stream", "metadata": metadata or {}}),
            encoding="utf-8",
        )

    def open(self, key: str) -> BinaryIO:
        p = self._path(key)
        if not p.exists():
            raise ObjectNotFound(key)
        return p.open("rb")

    def head(self, key: str) -> ObjectInfo:
        p = self._path(key)
        if not p.exists():
            raise ObjectNotFound(key)
        meta: dict = {}
        mp = self._meta_path(key)
        if mp.exists():
            meta = json.loads(mp.read_text(encoding="utf-8"))
        st = p.stat()
        return ObjectInfo(
            key=key,
            size=st.st_size,
            content_type=meta.get("content_type") or "application/octet-stream",
            metadata=dict(meta.get("metadata") or {}),
            last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )

    def delete(self, key: str) -> None:
        for p in (self._path(key), self._meta_path(key)):
            try:
                p.unlink()
            except FileNotFoundError:
                pass

    def presign_get(self, key: str, *, expires_in: int, download_name: str | None = None) -> str:
        token = self._serializer().dumps({"k": key, "e": int(expires_in), "n": download_name, "t": time.time_ns()})
        return f"{self.public_base_url.rstrip('/')}/files/{token}"

    def resolve_token(self, token: str) -> tuple[str, str | None]:
        """Return (key, download_name) for a token this store issued; raises StorageError if invalid/expired."""
        s = self._serializer()
        try:
            payload, issued_at = s.loads(token, return_timestamp=True)
        except BadSignature as e:
            raise StorageError("Invalid link.") from e
        age = (datetime.now(timezone.utc) - issued_at).total_seconds()
        if age > int(payload.get("e") or 0):
            raise StorageError("Link expired.")
        return payload["k"], payload.get("n")

    def iter_objects(self, prefix: str = "") -> Iterator[ObjectInfo]:
        base = self.root / self.bucket
        if not base.exists():
            return
        for p in sorted(base.rglob("*")):
            if not p.is_file() or p.name.endswith(".meta.json"):
                continue
            key = p.relative_to(base).as_posix()
            if key.startswith(prefix):
                yield self.head(key)


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    port: int | None = None
    use_ssl: bool = True
    connect_timeout: float = 5.0
    read_timeout: float = 30.0

    @property
    def endpoint_url(self) -> str | None:
        if not self.endpoint:
            return None
        scheme = "https" if self.use_ssl else "http"
        host = self.endpoint.split("://", 1)[-1]
        return f"{scheme}://{host}:{self.port}" if self.port else f"{scheme}://{host}"

    @cached_property
    def client(self):
        import boto3
        from botocore.config import Config

        return boto3.client(
            "s3",
            endpoint_url=self.endpoint_url,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
                connect_timeout=self.connect_timeout,
                read_timeout=self.read_timeout,
                retries={"max_attempts": 2, "mode": "standard"},
            ),
        )

    def ensure_bucket(self) -> None:
        from botocore.exceptions import ClientError

        try:
            self.client.head_bucket(Bucket=self.bucket)
            return
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code not in ("404", "NoSuchBucket", "NotFound"):
                raise
        if self.region and self.region != "us-east-1":
            self.client.create_bucket(
                Bucket=self.bucket,
                CreateBucketConfiguration={"LocationConstraint": self.region},
            )
        else:
            self.client.create_bucket(Bucket=self.bucket)

    def put_file(self, key, path, *, content_type=None, metadata=None) -> None:
        extra: dict[str, object] = {"Metadata": encode_metadata(metadata)}
        if content_type:
            extra["ContentType"] = content_type
        with open(path, "rb") as fh:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=fh, **extra)

    def open(self, key: str) -> BinaryIO:
        from botocore.exceptions import ClientError

        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise ObjectNotFound(key) from e
            raise
        return obj["Body"]  # type: ignore[return-value]

    def head(self, key: str) -> ObjectInfo:
        from botocore.exceptions import ClientError

        try:
            obj = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if str(e.response.get("Error", {}).get("Code")) in ("NoSuchKey", "404", "NotFound"):
                raise ObjectNotFound(key) from e
            raise
        return ObjectInfo(
            key=key,
            size=int(obj.get("ContentLength") or 0),
            content_type=obj.get("ContentType") or "application/octet-stream",
            metadata=decode_metadata(obj.get("Metadata")),
            last_modified=obj.get("LastModified"),
        )

    def delete(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)

    def presign_get(self, key: str, *, expires_in: int, download_name: str | None = None) -> str:
        params: dict[str, str] = {"Bucket": self.bucket, "Key": key}
        if download_name:
            params["ResponseContentDisposition"] = content_disposition(download_name)
        return self.client.generate_presigned_url("get_object", Params=params, ExpiresIn=int(expires_in))

    def iter_objects(self, prefix: str = "") -> Iterator[ObjectInfo]:
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for item in page.get("Contents") or []:
                yield ObjectInfo(
                    key=item["Key"],
                    size=int(item.get("Size") or 0),
                    content_type="",
                    last_modified=item.get("LastModified"),
                )


def storage_from_config(config: dict) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "us-east-1").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
            port=config.get("S3_PORT"),
            use_ssl=bool(config.get("S3_USE_SSL", True)),
            connect_timeout=float(config.get("S3_CONNECT_TIMEOUT") or 5.0),
            read_timeout=float(config.get("S3_READ_TIMEOUT") or 30.0),
        )
    # default local
    root = Path(config.get("LOCAL_STORAGE_DIR") or Path(os.getcwd()) / "storage")
    return LocalStorage(
        root=root,
        secret_key=str(config.get("SECRET_KEY") or ""),
        public_base_url=(config.get("PUBLIC_BASE_URL") or "").strip(),
    )
