"""S3/R2 storage for inbox attachments using boto3."""

import logging
from pathlib import Path

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from ..timeouts import TIMEOUTS

logger = logging.getLogger(__name__)


def inbox_key(team_id: str, filename: str) -> list[str]:
    """Path segments under which an inbox attachment is stored.

    Format: {team_id}/inbox/{filename}
    """
    # Sanitize filename (remove path separators)
    return [team_id, "inbox", Path(filename).name]


class S3Client:
    """S3-compatible storage client (supports Cloudflare R2)."""

    def __init__(
        self,
        endpoint_url: str,
        bucket_name: str,
        access_key_id: str,
        secret_access_key: str,
    ):
        """Initialize S3 client.

        Args:
            endpoint_url: S3 endpoint URL (for R2: https://<account>.r2.cloudflarestorage.com)
            bucket_name: S3 bucket name
            access_key_id: AWS access key ID
            secret_access_key: AWS secret access key
        """
        self.bucket_name = bucket_name
        self.s3_client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=BotoConfig(
                connect_timeout=TIMEOUTS.file_transfer,
                read_timeout=TIMEOUTS.file_transfer,
                retries={"max_attempts": 2},
            ),
        )
        logger.info(f"S3 client initialized for bucket: {bucket_name}")

    def object_exists(self, key: str) -> bool:
        """Check if object exists in S3."""
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "404":
                return False
            else:
                logger.error(f"Error checking object existence: {e}")
                raise

    def upload_attachment(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ):
        """Upload attachment to S3.

        Args:
            key: S3 object key
            data: File data as bytes
            content_type: MIME type of the file
        """
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
            logger.debug(f"Uploaded attachment: {key} ({len(data)} bytes)")
        except ClientError as e:
            logger.error(f"Error uploading attachment {key}: {e}")
            raise

    def delete_attachment(self, key: str):
        """Delete an attachment; deleting a missing key is not an error."""
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
            logger.debug(f"Deleted attachment: {key}")
        except ClientError as e:
            logger.error(f"Error deleting attachment {key}: {e}")
            raise

    def download_attachment(self, key: str) -> bytes:
        """Download attachment from S3.

        Args:
            key: S3 object key

        Returns:
            File data as bytes
        """
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            data = response["Body"].read()
            logger.debug(f"Downloaded attachment: {key} ({len(data)} bytes)")
            return data
        except ClientError as e:
            logger.error(f"Error downloading attachment {key}: {e}")
            raise

    def generate_presigned_url(self, key: str, expires_in: int = 3600) -> str:
        """Time-bounded GET URL for an object.

        Args:
            key: S3 object key
            expires_in: Validity in seconds

        Returns:
            str: Presigned URL
        """
        try:
            return self.s3_client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": key},
                ExpiresIn=expires_in,
            )
        except ClientError as e:
            logger.error(f"Error generating presigned URL for {key}: {e}")
            raise
