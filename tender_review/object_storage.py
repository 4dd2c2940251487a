from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from tender_review.errors import PipelineStepError

CONTENT_TYPES = {
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


def content_type_for_source(source_type: str) -> str:
    return CONTENT_TYPES.get(str(source_type or "").strip().lower(), "application/octet-stream")


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "object"


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    prefix: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool


class ObjectStorageBackend:
    backend_name = "base"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._bucket = config.bucket
        self._prefix = config.prefix.strip("/")

    def put_object(
        self,
        *,
        user_id: str,
        job_id: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        raise NotImplementedError

    def get_object(self, *, storage_uri: str) -> bytes:
        raise NotImplementedError

    def download(self, *, storage_uri: str) -> bytes:
        """Fetch uploaded bytes, mapping any backend failure to STORAGE_DOWNLOAD_FAILED."""
        try:
            return self.get_object(storage_uri=storage_uri)
        except Exception as exc:
            raise PipelineStepError(
                code="STORAGE_DOWNLOAD_FAILED",
                message=f"storage download failed for {storage_uri}: {exc}",
            ) from exc

    def _build_key(self, *, user_id: str, job_id: str, filename: str) -> str:
        base = f"uploads/{_clean_segment(user_id)}/{_clean_segment(job_id)}/{_clean_segment(filename)}"
        if self._prefix:
            return f"{self._prefix}/{base}"
        return base

    def _uri_for_key(self, key: str) -> str:
        return f"object://{self.backend_name}/{self._bucket}/{key}"

    def _locate(self, storage_uri: str) -> dict[str, str]:
        # Bare keys (as written by the upload collaborator) live in the default bucket.
        if not storage_uri.startswith("object://"):
            return {"backend": self.backend_name, "bucket": self._bucket, "key": storage_uri.lstrip("/")}
        parsed = _parse_storage_uri(storage_uri)
        if parsed["backend"] != self.backend_name:
            raise ValueError("storage backend mismatch")
        return parsed


class LocalObjectStorage(ObjectStorageBackend):
    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        super().__init__(config=config)
        self._root = Path(config.root)
        self._root.mkdir(parents=True, exist_ok=True)

    def put_object(
        self,
        *,
        user_id: str,
        job_id: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        key = self._build_key(user_id=user_id, job_id=job_id, filename=filename)
        path = self._root / self._bucket / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content_bytes)
        meta = {"content_type": content_type or "application/octet-stream", "created_at": _now_iso()}
        Path(f"{path}.meta.json").write_text(json.dumps(meta, ensure_ascii=True, sort_keys=True), encoding="utf-8")
        return self._uri_for_key(key)

    def get_object(self, *, storage_uri: str) -> bytes:
        parsed = self._locate(storage_uri)
        path = self._root / parsed["bucket"] / parsed["key"]
        if not path.exists():
            raise FileNotFoundError(storage_uri)
        return path.read_bytes()

    def reset(self) -> None:
        if not self._root.exists():
            return
        for path in sorted(self._root.rglob("*"), reverse=True):
            if path.is_file():
                path.unlink()
            elif path.is_dir():
                path.rmdir()


class S3ObjectStorage(ObjectStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        try:
            import boto3  # type: ignore
            from botocore.config import Config  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for s3 object storage backend") from exc
        super().__init__(config=config)
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )

    def put_object(
        self,
        *,
        user_id: str,
        job_id: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        key = self._build_key(user_id=user_id, job_id=job_id, filename=filename)
        self._client.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=content_bytes,
            ContentType=content_type or "application/octet-stream",
        )
        return self._uri_for_key(key)

    def get_object(self, *, storage_uri: str) -> bytes:
        parsed = self._locate(storage_uri)
        response = self._client.get_object(Bucket=parsed["bucket"], Key=parsed["key"])
        return response["Body"].read()


def _parse_storage_uri(uri: str) -> dict[str, str]:
    if not uri.startswith("object://"):
        raise ValueError("invalid storage uri")
    raw = uri[len("object://") :]
    parts = raw.split("/", 2)
    if len(parts) != 3:
        raise ValueError("invalid storage uri")
    return {"backend": parts[0], "bucket": parts[1], "key": parts[2]}


def create_object_storage_from_env(environ: Mapping[str, str] | None = None) -> ObjectStorageBackend:
    env = os.environ if environ is None else environ
    backend = env.get("TP_OBJECT_STORAGE_BACKEND", "local").strip().lower() or "local"
    config = ObjectStorageConfig(
        backend=backend,
        bucket=env.get("OBJECT_STORAGE_BUCKET", "uploads").strip() or "uploads",
        root=env.get("OBJECT_STORAGE_ROOT", "/tmp/tender-review-objects").strip() or "/tmp/tender-review-objects",
        prefix=env.get("OBJECT_STORAGE_PREFIX", "").strip(),
        endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
        region=env.get("OBJECT_STORAGE_REGION", "").strip(),
        access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip(),
        secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip(),
        force_path_style=env.get("OBJECT_STORAGE_FORCE_PATH_STYLE", "true").strip().lower()
        not in {"0", "false", "no", "off"},
    )
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    return LocalObjectStorage(config=config)
