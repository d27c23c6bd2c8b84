"""
Storage handlers for backup artifacts.

Supports:
- LocalStorage: The backup directory on local disk
- S3Storage: Upload to AWS S3
- RemoteUploader: Best-effort off-site push built on S3Storage
"""

import os
import logging
from pathlib import Path
from datetime import datetime, timezone
from fnmatch import fnmatch
from typing import Optional, List, Dict, Any

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from .history import RemoteUploadResult
from .settings import RemoteUploadConfig


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


class StorageError(Exception):
    """Raised when a local storage operation fails."""
    pass


class RemoteUploadError(Exception):
    """Raised when pushing an artifact off-site fails."""
    pass


class LocalStorage:
    """
    Handler for the local backup directory.

    Artifacts live directly in base_path (no nesting).
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Backup directory
        """
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def list_files(self, pattern: str = '*') -> List[Dict[str, Any]]:
        """
        List files in the backup directory matching a glob pattern.

        Args:
            pattern: fnmatch pattern applied to the filename

        Returns:
            List of dicts with 'name', 'path', 'modified' (aware UTC) and 'size' keys

        Raises:
            StorageError: If listing fails
        """
        try:
            files = []

            for file_path in self.base_path.iterdir():
                if not file_path.is_file() or not fnmatch(file_path.name, pattern):
                    continue

                stat = file_path.stat()
                files.append({
                    'name': file_path.name,
                    'path': str(file_path),
                    'modified': datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    'size': stat.st_size
                })

            return files

        except Exception as e:
            raise StorageError(f"Failed to list local files: {e}")

    def delete(self, name: str):
        """
        Delete a file from the backup directory.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self.base_path / name

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except Exception as e:
            raise StorageError(f"Failed to delete local file: {e}")


class S3Storage:
    """
    Handler for uploading backups to AWS S3.

    Uploads artifacts with a structured key format:
    {prefix}/{YYYY}/{MM}/{filename}
    """

    def __init__(self, bucket_name: str, region: str = 'us-east-1',
                 access_key: Optional[str] = None, secret_key: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (default: boto3 credential chain)
            secret_key: AWS secret access key
        """
        self.bucket_name = bucket_name
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except Exception as e:
            raise RemoteUploadError(f"Failed to initialize S3 client: {e}")

    def upload(self, local_path: str, prefix: str) -> str:
        """
        Upload an artifact to S3.

        Args:
            local_path: Path to local artifact
            prefix: Key prefix

        Returns:
            S3 key of uploaded file

        Raises:
            RemoteUploadError: If upload fails
        """
        if not os.path.exists(local_path):
            raise RemoteUploadError(f"Local file not found: {local_path}")

        filename = os.path.basename(local_path)
        now = datetime.now(timezone.utc)
        s3_key = f"{prefix.strip('/')}/{now.year}/{now.month:02d}/{filename}"

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)

            return s3_key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise RemoteUploadError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise RemoteUploadError(f"S3 upload failed: {e}")
        except Exception as e:
            raise RemoteUploadError(f"Failed to upload to S3: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        """
        Upload a large file in chunks; the upload is aborted on any error.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except Exception as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise


class RemoteUploader:
    """
    Best-effort off-site push of finished artifacts.

    upload() never raises: failures are reported in the returned result.
    """

    def __init__(self, config: RemoteUploadConfig):
        self.config = config

    def _create_storage(self) -> S3Storage:
        return S3Storage(
            bucket_name=self.config.bucket,
            region=self.config.region,
            access_key=self.config.access_key_id,
            secret_key=self.config.secret_access_key
        )

    def upload(self, artifact_path: str) -> RemoteUploadResult:
        """
        Push an artifact to S3.

        Args:
            artifact_path: Path to the final artifact

        Returns:
            RemoteUploadResult describing the outcome
        """
        try:
            storage = self._create_storage()
            key = storage.upload(artifact_path, self.config.prefix)
        except RemoteUploadError as e:
            logger.warning(f"Remote upload failed for {artifact_path}: {e}")
            return RemoteUploadResult(uploaded=False, error=str(e))

        logger.info(f"Uploaded {os.path.basename(artifact_path)} to s3://{self.config.bucket}/{key}")
        return RemoteUploadResult(uploaded=True, key=key)
