# File: content_pipeline/infrastructure/storage/s3_blob_store.py
import boto3
from botocore.exceptions import BotoCoreError, ClientError
import structlog
from typing import Optional

from content_pipeline.application.ports.blob_store_port import BlobStorePort
from content_pipeline.core.config import settings
from content_pipeline.core.exceptions import BlobStoreError, SourceMissingError
from content_pipeline.core.metrics import BLOB_DOWNLOAD_DURATION_SECONDS

log = structlog.get_logger(__name__)


class S3BlobStore(BlobStorePort):
    """Synchronous client to interact with Amazon S3 (or any S3-compatible store)."""

    def __init__(self, bucket_name: Optional[str] = None, s3_client=None):
        self.bucket_name = bucket_name or settings.AWS_S3_BUCKET_NAME
        # Credentials come from the environment (IAM role, profile or env vars)
        self.s3_client = s3_client or boto3.client(
            "s3",
            region_name=settings.AWS_REGION,
            endpoint_url=settings.AWS_S3_ENDPOINT_URL,
        )
        self.log = log.bind(s3_bucket=self.bucket_name, aws_region=settings.AWS_REGION)

    def get(self, storage_key: str) -> bytes:
        self.log.info("Downloading object from S3...", object_name=storage_key)
        try:
            with BLOB_DOWNLOAD_DURATION_SECONDS.time():
                response = self.s3_client.get_object(Bucket=self.bucket_name, Key=storage_key)
                data = response["Body"].read()
            self.log.info("Object downloaded successfully from S3.", object_name=storage_key, size=len(data))
            return data
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey"):
                # A missing blob will not appear on retry
                self.log.error("Object not found in S3", object_name=storage_key)
                raise SourceMissingError(f"Object not found in S3: {storage_key}") from e
            self.log.error("S3 download failed", error_code=code, error=str(e))
            raise BlobStoreError(f"S3 error downloading {storage_key}") from e
        except BotoCoreError as e:
            self.log.error("S3 download failed", error=str(e))
            raise BlobStoreError(f"S3 error downloading {storage_key}: {e}") from e

    def put(self, storage_key: str, data: bytes, content_type: str) -> str:
        self.log.info("Uploading object to S3...", object_name=storage_key, content_type=content_type)
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=storage_key,
                Body=data,
                ContentType=content_type,
            )
            self.log.info("Object uploaded successfully to S3", object_name=storage_key)
            return storage_key
        except (ClientError, BotoCoreError) as e:
            self.log.error("S3 upload failed", error=str(e))
            raise BlobStoreError(f"S3 error uploading {storage_key}") from e

    def delete(self, storage_key: str) -> None:
        self.log.info("Deleting object from S3...", object_name=storage_key)
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=storage_key)
            self.log.info("Object deleted successfully from S3", object_name=storage_key)
        except (ClientError, BotoCoreError) as e:
            self.log.error("S3 delete failed", error=str(e))
            raise BlobStoreError(f"S3 error deleting {storage_key}") from e
