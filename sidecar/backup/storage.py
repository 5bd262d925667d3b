"""
Storage handlers for backup artifacts.

Supports:
- LocalStorage: Store in a local directory
- S3Storage: Store in an S3-compatible bucket
- Destinations: Whichever of the two are configured, with the
  partial-failure rules of a dual-destination setup

Both backends use the same key layout:
    {backup_name}/{artifact filename}
"""

import logging
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from sidecar.config import Config, ConfigurationError
from sidecar.models import Artifact


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class BackupNotFoundError(StorageError):
    """Raised when a backup key exists in no configured destination."""
    pass


class S3Storage:
    """
    Handler for storing backups in an S3-compatible bucket.
    """

    label = 's3'

    def __init__(self, bucket_name: str, access_key: Optional[str] = None,
                 secret_key: Optional[str] = None, region: str = 'us-east-1',
                 endpoint_url: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            access_key: Access key ID (default credential chain if None)
            secret_key: Secret access key
            region: Region (default: us-east-1)
            endpoint_url: Custom endpoint for non-AWS providers (MinIO, B2, ...)
        """
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def __repr__(self):
        return f's3://{self.bucket_name}'

    def save(self, local_path: str, key: str):
        """
        Upload a file to S3 under key.

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, key)
            else:
                self._simple_upload(local_path, key)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to upload to S3: {e}")

    def _simple_upload(self, local_path: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, key: str):
        """
        Upload a large file in 10MB parts, aborting the upload on any error.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key
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
                        Key=key,
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
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload for {key}: {abort_error}")
            raise

    def load(self, key: str, local_path: str):
        """
        Download key from S3 to local_path.

        Raises:
            BackupNotFoundError: If the key does not exist
            StorageError: If download fails
        """
        if not self.exists(key):
            raise BackupNotFoundError(f"Backup not found: s3://{self.bucket_name}/{key}")

        try:
            self.s3_client.download_file(self.bucket_name, key, local_path)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 download failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 download failed: {e}")

    def exists(self, key: str) -> bool:
        """
        Check whether key exists in the bucket.

        Raises:
            StorageError: If the check itself fails
        """
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                return False
            # Without s3:ListBucket a missing key answers 403 instead of 404
            if error_code in ('403', 'AccessDenied', 'Forbidden'):
                logger.debug(f"S3 head denied for {key}, treating as missing")
                return False
            raise StorageError(f"S3 head failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 head failed: {e}")

    def delete(self, key: str):
        """
        Delete an object from S3.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=key
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def list_objects(self, prefix: str) -> List[Artifact]:
        """
        List objects in S3 with given prefix.

        Raises:
            StorageError: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append(Artifact(
                        key=obj['Key'],
                        size=obj['Size'],
                        modified=obj['LastModified']
                    ))

            return objects

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

class LocalStorage:
    """
    Handler for storing backups in local filesystem.

    Stores artifacts as {base_path}/{key}.
    """

    label = 'local'

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)

    def __repr__(self):
        return str(self.base_path)

    def _path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise StorageError(f"Key escapes local storage directory: {key}")
        return path

    def save(self, source_path: str, key: str):
        """
        Copy a file into local storage under key.

        Raises:
            StorageError: If storage fails
        """
        if not os.path.exists(source_path):
            raise StorageError(f"Source file not found: {source_path}")

        dest_path = self._path(key)

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source_path, dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")

    def load(self, key: str, local_path: str):
        """
        Copy key out of local storage to local_path.

        Raises:
            BackupNotFoundError: If the key does not exist
            StorageError: If the copy fails
        """
        source_path = self._path(key)

        if not source_path.is_file():
            raise BackupNotFoundError(f"Backup not found: {source_path}")

        try:
            shutil.copy2(source_path, local_path)
        except OSError as e:
            raise StorageError(f"Local load failed: {e}")

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str):
        """
        Delete a file from local storage.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self._path(key)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def list_objects(self, prefix: str) -> List[Artifact]:
        """
        List stored files whose key starts with prefix.

        Raises:
            StorageError: If listing fails
        """
        directory, _, name_prefix = prefix.rpartition('/')
        search_path = self.base_path / directory

        if not search_path.is_dir():
            return []

        try:
            files = []

            for file_path in search_path.rglob('*'):
                if not file_path.is_file():
                    continue

                key = file_path.relative_to(self.base_path).as_posix()
                if not key.startswith(prefix):
                    continue

                stat = file_path.stat()
                files.append(Artifact(
                    key=key,
                    size=stat.st_size,
                    modified=datetime.fromtimestamp(stat.st_mtime)
                ))

            return files

        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")


class Destinations:
    """
    The configured storage destinations of a run.

    With a single destination every operation maps 1:1 onto it. With both:
    - save writes locally first (fatal on failure) and then to S3, where a
      failure only produces a warning
    - load and delete prefer the local copy when the key exists there
    """

    def __init__(self, local: Optional[LocalStorage] = None, s3: Optional[S3Storage] = None):
        if local is None and s3 is None:
            raise ConfigurationError(
                "No backup destination configured. Set BACKUP_LOCAL_PATH or BACKUP_S3_BUCKET"
            )
        self.local = local
        self.s3 = s3

    @classmethod
    def from_config(cls, config: Config) -> 'Destinations':
        local = LocalStorage(config.local_path) if config.local_path else None

        s3 = None
        if config.s3 is not None:
            if not config.s3.access_key or not config.s3.secret_key:
                logger.warning("S3 credentials not set, falling back to the default credential chain")
            s3 = S3Storage(
                bucket_name=config.s3.bucket,
                access_key=config.s3.access_key,
                secret_key=config.s3.secret_key,
                region=config.s3.region,
                endpoint_url=config.s3.endpoint
            )

        return cls(local=local, s3=s3)

    @property
    def backends(self) -> list:
        return [backend for backend in (self.local, self.s3) if backend is not None]

    @property
    def is_dual(self) -> bool:
        return self.local is not None and self.s3 is not None

    def is_required(self, backend) -> bool:
        """Whether a failure on backend must fail the calling operation."""
        return not (self.is_dual and backend is self.s3)

    def save(self, path: str, key: str):
        """
        Store a file under key on every configured destination.

        Raises:
            StorageError: If the only (or the local) destination fails
        """
        if self.local is not None:
            logger.info(f"Saving to local: {self.local.base_path / key}")
            self.local.save(path, key)
            logger.info("Local save completed successfully")

        if self.s3 is not None:
            logger.info(f"Uploading to S3: s3://{self.s3.bucket_name}/{key}")
            try:
                self.s3.save(path, key)
            except StorageError as e:
                if not self.is_dual:
                    raise
                logger.warning(f"S3 upload failed, but local backup succeeded: {e}")
            else:
                logger.info("S3 upload completed successfully")

    def _backend_for(self, key: str):
        if self.is_dual:
            if self.local.exists(key):
                return self.local
            logger.info("Backup not found locally, trying S3...")
            return self.s3
        return self.backends[0]

    def load(self, key: str, local_path: str):
        """
        Fetch key into local_path.

        Raises:
            BackupNotFoundError: If no destination has the key
            StorageError: If the transfer fails
        """
        backend = self._backend_for(key)
        logger.info(f"Loading {key} from {backend.label}")
        backend.load(key, local_path)

    def exists(self, key: str) -> bool:
        return any(backend.exists(key) for backend in self.backends)

    def delete(self, key: str):
        self._backend_for(key).delete(key)

    def list(self, prefix: str) -> List[str]:
        """Sorted union of the keys under prefix across destinations."""
        keys = set()
        for backend in self.backends:
            keys.update(obj.key for obj in backend.list_objects(prefix))
        return sorted(keys)

    def listing(self, prefix: str) -> Dict[str, List[Artifact]]:
        """Per-destination listing, keyed by destination label."""
        return {backend.label: backend.list_objects(prefix) for backend in self.backends}
