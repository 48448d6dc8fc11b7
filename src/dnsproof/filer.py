"""Blob storage backends used by the store."""

from abc import ABC, abstractmethod
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from dnsproof._logging import get_logger
from dnsproof.exceptions import NotFoundError, StoreError

logger = get_logger(__name__)

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


class Filer(ABC):
    """Get and put byte blobs by key.

    Implementations must make a single ``put`` atomic: a reader sees
    either the previous blob or the new one, never a partial write.
    """

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Read the blob stored at ``key``.

        Raises:
            NotFoundError: If nothing is stored at ``key``.
            StoreError: For any other backend failure.
        """
        ...

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        """Store ``data`` at ``key``, replacing any previous blob.

        Raises:
            StoreError: If the backend write fails.
        """
        ...


class S3Filer(Filer):
    """Filer backed by an S3 bucket.

    Args:
        bucket: Bucket name.
        kms_key_id: KMS key id or ARN. When set, objects are written with
            SSE-KMS server-side encryption under this key.
        client: boto3 S3 client (created from the default session if omitted).
    """

    def __init__(self, bucket: str, kms_key_id: str | None = None, client: Any = None):
        self.bucket = bucket
        self.kms_key_id = kms_key_id
        self.s3 = client if client is not None else boto3.client("s3")

    def get(self, key: str) -> bytes:
        try:
            response = self.s3.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in _NOT_FOUND_CODES:
                raise NotFoundError(key) from e
            logger.debug("S3 get failed", extra={"bucket": self.bucket, "key": key, "code": code})
            raise StoreError(f"failed to read s3://{self.bucket}/{key}: {e}") from e
        except BotoCoreError as e:
            raise StoreError(f"failed to read s3://{self.bucket}/{key}: {e}") from e

    def put(self, key: str, data: bytes) -> None:
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": key, "Body": data}
        if self.kms_key_id:
            params["ServerSideEncryption"] = "aws:kms"
            params["SSEKMSKeyId"] = self.kms_key_id
        try:
            self.s3.put_object(**params)
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"failed to write s3://{self.bucket}/{key}: {e}") from e
        logger.debug(
            "S3 object written",
            extra={"bucket": self.bucket, "key": key, "encrypted": bool(self.kms_key_id)},
        )
