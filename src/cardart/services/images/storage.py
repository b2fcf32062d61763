"""Object storage for transformed image variants.

Each unique work unit is written once; every slot of the unit receives the
same public URLs. Keys depend only on (print, canonical URL, variant), so
reprocessing overwrites the same objects instead of creating new ones.
"""

import asyncio
import hashlib
import json
from pathlib import Path
from typing import Optional, Protocol

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from cardart.services.exceptions import StorageError
from cardart.services.images.dedup import WorkUnit
from cardart.services.images.transform import (
    DEFAULT_VARIANTS,
    OUTPUT_CONTENT_TYPE,
    OUTPUT_EXTENSION,
    TransformResult,
    VariantSpec,
)

logger = structlog.get_logger(__name__)

CACHE_CONTROL = "public, max-age=31536000, immutable"
CONTENT_KEY_LENGTH = 16


class ObjectStorage(Protocol):
    """Minimal object store used by the consolidator."""

    async def put_object(
        self, key: str, data: bytes, content_type: str, metadata: dict[str, str]
    ) -> None: ...

    async def delete_object(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def ensure_bucket(self) -> None: ...

    def public_url(self, key: str) -> str: ...


class S3ObjectStorage:
    """S3-compatible storage (AWS S3, MinIO) via boto3.

    boto3 is synchronous; every call runs in a worker thread.
    """

    def __init__(
        self,
        endpoint_url: str,
        access_key: str,
        secret_key: str,
        bucket: str,
        public_base_url: str,
        region: str = "us-east-1",
        public_prefix: Optional[str] = None,
    ):
        """Initialize S3 storage.

        Args:
            endpoint_url: S3 API endpoint (e.g. http://localhost:9000 for MinIO)
            access_key: Access key ID
            secret_key: Secret access key
            bucket: Bucket holding the variants
            public_base_url: Base URL under which objects are publicly readable
            region: Region name passed to the client
            public_prefix: Key prefix made publicly readable by ensure_bucket (None = whole bucket)
        """
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        self.public_prefix = public_prefix
        self.s3_client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    async def put_object(
        self, key: str, data: bytes, content_type: str, metadata: dict[str, str]
    ) -> None:
        """Upload one object.

        Raises:
            StorageError: If the backend rejects or fails the write
        """
        try:
            await asyncio.to_thread(
                self.s3_client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl=CACHE_CONTROL,
                Metadata=metadata,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to upload s3://{self.bucket}/{key}: {e}") from e

    async def delete_object(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.s3_client.delete_object, Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to delete s3://{self.bucket}/{key}: {e}") from e

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self.s3_client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"Failed to stat s3://{self.bucket}/{key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to stat s3://{self.bucket}/{key}: {e}") from e
        return True

    async def ensure_bucket(self) -> None:
        """Create the bucket if missing and grant anonymous read on the public prefix.

        Raises:
            StorageError: If the bucket cannot be created or configured
        """
        try:
            await asyncio.to_thread(self.s3_client.head_bucket, Bucket=self.bucket)
        except ClientError:
            try:
                await asyncio.to_thread(self.s3_client.create_bucket, Bucket=self.bucket)
            except (ClientError, BotoCoreError) as e:
                raise StorageError(f"Failed to create bucket {self.bucket}: {e}") from e
            logger.info("storage.bucket_created", bucket=self.bucket)
        except BotoCoreError as e:
            raise StorageError(f"Failed to reach bucket {self.bucket}: {e}") from e

        resource = f"arn:aws:s3:::{self.bucket}/"
        resource += f"{self.public_prefix}/*" if self.public_prefix else "*"
        policy = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"AWS": ["*"]},
                    "Action": ["s3:GetObject"],
                    "Resource": [resource],
                }
            ],
        }
        try:
            await asyncio.to_thread(
                self.s3_client.put_bucket_policy, Bucket=self.bucket, Policy=json.dumps(policy)
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to set policy on bucket {self.bucket}: {e}") from e


class LocalObjectStorage:
    """Filesystem storage for development and tests.

    Objects are files under base_path; metadata is kept in a sidecar JSON file.
    """

    def __init__(self, base_path: str | Path, base_url: str):
        self.base_path = Path(base_path)
        self.base_url = base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if not path.is_relative_to(self.base_path.resolve()):
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    async def put_object(
        self, key: str, data: bytes, content_type: str, metadata: dict[str, str]
    ) -> None:
        path = self._path(key)
        sidecar = {"content_type": content_type, "cache_control": CACHE_CONTROL, **metadata}

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            path.with_name(path.name + ".meta.json").write_text(json.dumps(sidecar))

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

    async def delete_object(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
            path.with_name(path.name + ".meta.json").unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}") from e

    async def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    async def ensure_bucket(self) -> None:
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create storage root {self.base_path}: {e}") from e


def content_key(canonical_url: str) -> str:
    """Stable short digest of a canonical URL."""
    return hashlib.sha256(canonical_url.encode("utf-8")).hexdigest()[:CONTENT_KEY_LENGTH]


class StorageConsolidator:
    """Writes each work unit's variants once and hands out shared URLs."""

    def __init__(
        self,
        storage: ObjectStorage,
        namespace: str = "cards",
        variants: tuple[VariantSpec, ...] = DEFAULT_VARIANTS,
    ):
        """Initialize consolidator.

        Args:
            storage: Backend receiving the objects
            namespace: Top-level key prefix
            variants: Variant set expected in every transform result
        """
        self.storage = storage
        self.namespace = namespace.strip("/")
        self.variants = variants

    def object_key(self, print_id: str, unit: WorkUnit, variant: str) -> str:
        """Key of one variant: {namespace}/{print_id}/{content_key}/{variant}.webp."""
        return (
            f"{self.namespace}/{print_id}/{content_key(unit.canonical_url)}/"
            f"{variant}.{OUTPUT_EXTENSION}"
        )

    async def store(
        self, print_id: str, unit: WorkUnit, result: TransformResult
    ) -> dict[str, str]:
        """Upload every variant of a unit.

        Returns:
            Variant name to public URL, identical for every slot of the unit

        Raises:
            StorageError: If any upload fails (URLs are only returned for a complete set)
        """
        urls: dict[str, str] = {}
        for spec in self.variants:
            data = result.variants.get(spec.name)
            if data is None:
                raise StorageError(f"Transform result has no {spec.name!r} variant")
            key = self.object_key(print_id, unit, spec.name)
            await self.storage.put_object(
                key,
                data,
                OUTPUT_CONTENT_TYPE,
                {
                    "print-id": print_id,
                    "slot-types": ",".join(slot.value for slot in unit.slot_types),
                    "variant": spec.name,
                },
            )
            urls[spec.name] = self.storage.public_url(key)

        logger.debug(
            "image_unit.stored",
            print_id=print_id,
            canonical_url=unit.canonical_url,
            slot_types=[slot.value for slot in unit.slot_types],
            variant_count=len(urls),
        )
        return urls

    async def delete_variants(self, print_id: str, unit: WorkUnit) -> None:
        """Remove every variant object of a unit (missing objects are ignored)."""
        for spec in self.variants:
            await self.storage.delete_object(self.object_key(print_id, unit, spec.name))
