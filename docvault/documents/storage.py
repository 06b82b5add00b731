"""
DocVault Object Storage — S3-compatible presigned URLs and deletion (boto3).

Clients upload and download bytes directly against presigned URLs; the
service only signs URLs and deletes objects. Any botocore failure surfaces
as StorageUnavailableError.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from docvault.engine.errors import StorageUnavailableError

logger = logging.getLogger("docvault.documents.storage")


class S3ObjectStorage:
    """
    Presigned-URL capability over one bucket.

    ``local=True`` targets a MinIO-style endpoint: path-style addressing and
    ``ensure_bucket()`` creates the bucket on first use.
    """

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        endpoint: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        local: bool = False,
        client: Any = None,
    ):
        self._bucket = bucket
        self._region = region
        self._local = local
        if client is None:
            cfg = Config(
                signature_version="s3v4",
                s3={"addressing_style": "path" if local else "auto"},
            )
            client = boto3.client(
                "s3",
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                endpoint_url=endpoint,
                region_name=region,
                config=cfg,
            )
        self._client = client

    @classmethod
    def from_config(cls, config) -> "S3ObjectStorage":
        s = config.storage
        return cls(
            bucket=s.bucket,
            region=s.region,
            endpoint=s.endpoint,
            access_key_id=s.access_key_id,
            secret_access_key=s.secret_access_key,
            local=s.local,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    def presigned_put_url(self, key: str, ttl: int, content_type: Optional[str] = None) -> str:
        params = {"Bucket": self._bucket, "Key": key}
        if content_type:
            params["ContentType"] = content_type
        return self._presign("put_object", params, ttl)

    def presigned_get_url(self, key: str, ttl: int, filename: Optional[str] = None) -> str:
        params = {"Bucket": self._bucket, "Key": key}
        if filename:
            params["ResponseContentDisposition"] = f'attachment; filename="{filename}"'
        return self._presign("get_object", params, ttl)

    def delete_object(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self._bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageUnavailableError(
                f"Could not delete object: {e}",
                storage_key=key,
                operation="delete_object",
            ) from e
        logger.info(f"Deleted object {key} from {self._bucket}")

    def ensure_bucket(self) -> bool:
        """Create the bucket in local mode if missing. Returns True if created."""
        if not self._local:
            return False
        try:
            self._client.head_bucket(Bucket=self._bucket)
            return False
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code not in ("404", "NoSuchBucket", "NotFound"):
                raise StorageUnavailableError(
                    f"Cannot inspect bucket: {e}", operation="head_bucket"
                ) from e
        except BotoCoreError as e:
            raise StorageUnavailableError(
                f"Cannot inspect bucket: {e}", operation="head_bucket"
            ) from e

        try:
            self._client.create_bucket(Bucket=self._bucket)
        except (BotoCoreError, ClientError) as e:
            raise StorageUnavailableError(
                f"Cannot create bucket: {e}", operation="create_bucket"
            ) from e
        logger.info(f"Created bucket {self._bucket}")
        return True

    def _presign(self, client_method: str, params: dict, ttl: int) -> str:
        try:
            return self._client.generate_presigned_url(
                ClientMethod=client_method,
                Params=params,
                ExpiresIn=int(ttl),
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageUnavailableError(
                f"Could not presign {client_method}: {e}",
                storage_key=params.get("Key"),
                operation=client_method,
            ) from e
