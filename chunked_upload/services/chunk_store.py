"""
Durable byte storage for individual chunks

Two backends share one contract:
- LocalChunkStore: filesystem directory (default, single host or shared volume)
- MinioChunkStore: MinIO / S3-compatible object storage

Objects are keyed by content, so re-sending a chunk is idempotent.
"""
import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from io import BytesIO
from pathlib import Path

from minio import Minio
from minio.error import S3Error

from ..core.config import settings
from ..core.exceptions import StorageError

logger = logging.getLogger(__name__)


class ChunkPaths:
    """
    Storage key layout (relative to the store root / bucket):
    
        {upload_id}/
            chunks/
                chunk_0000_<sha256 prefix>, chunk_0001_<sha256 prefix>, ...
    
    Keys include the content hash: replacement bytes for an index land in a
    new object and never overwrite bytes another request already recorded.
    """
    
    @staticmethod
    def upload_prefix(upload_id: str) -> str:
        return f"{upload_id}/"
    
    @staticmethod
    def chunk(upload_id: str, chunk_index: int, content_hash: str) -> str:
        return f"{upload_id}/chunks/chunk_{chunk_index:04d}_{content_hash[:16]}"


class ChunkStore(ABC):
    """Keyed by (upload_id, chunk_index)"""
    
    def ensure_ready(self) -> None:
        """Prepare the backing store (create directory / bucket)"""
    
    @abstractmethod
    def put(self, upload_id: str, chunk_index: int, data: bytes, content_hash: str) -> str:
        """Store chunk bytes (idempotent for the same content). Returns the storage key."""
    
    @abstractmethod
    def exists(self, storage_key: str) -> bool:
        ...
    
    @abstractmethod
    def delete_upload(self, upload_id: str) -> int:
        """Remove every chunk of an upload. Returns number of objects removed."""


class LocalChunkStore(ChunkStore):
    """Chunk files under a root directory"""
    
    def __init__(self, root_dir: str = settings.CHUNK_STORE_DIR):
        self.root = Path(root_dir)
    
    def ensure_ready(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info(f"Local chunk store ready at {self.root}")
    
    def _path(self, storage_key: str) -> Path:
        return self.root / storage_key
    
    def put(self, upload_id: str, chunk_index: int, data: bytes, content_hash: str) -> str:
        storage_key = ChunkPaths.chunk(upload_id, chunk_index, content_hash)
        path = self._path(storage_key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write to a temp file in the same directory, then rename over the
            # target: readers never observe a half-written chunk
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp_")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.error(f"Failed to write chunk {chunk_index} of upload {upload_id}: {e}")
            raise StorageError(str(e), chunk_index=chunk_index) from e
        
        logger.debug(f"Stored {len(data)} bytes at {storage_key}")
        return storage_key
    
    def exists(self, storage_key: str) -> bool:
        return self._path(storage_key).is_file()
    
    def delete_upload(self, upload_id: str) -> int:
        upload_dir = self.root / upload_id
        if not upload_dir.exists():
            return 0
        removed = sum(1 for p in upload_dir.rglob("*") if p.is_file())
        shutil.rmtree(upload_dir, ignore_errors=True)
        logger.info(f"Deleted {removed} chunk files for upload {upload_id}")
        return removed


class MinioChunkStore(ChunkStore):
    """Chunk objects in a MinIO bucket"""
    
    def __init__(
        self,
        endpoint: str = settings.MINIO_ENDPOINT,
        access_key: str = settings.MINIO_ACCESS_KEY,
        secret_key: str = settings.MINIO_SECRET_KEY,
        bucket: str = settings.MINIO_BUCKET,
        secure: bool = settings.MINIO_SECURE,
        client: Minio = None,
    ):
        self.client = client or Minio(
            endpoint,
            access_key=access_key,
            secret_key=secret_key,
            secure=secure
        )
        self.bucket = bucket
        logger.info(f"MinIO chunk store initialized: {endpoint}/{self.bucket}")
    
    def ensure_ready(self) -> None:
        """Create bucket if it doesn't exist"""
        try:
            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket)
                logger.info(f"Created MinIO bucket: {self.bucket}")
            else:
                logger.info(f"MinIO bucket exists: {self.bucket}")
        except S3Error as e:
            logger.error(f"Failed to create bucket: {e}")
            raise StorageError(f"bucket {self.bucket} unavailable: {e}") from e
    
    def put(self, upload_id: str, chunk_index: int, data: bytes, content_hash: str) -> str:
        storage_key = ChunkPaths.chunk(upload_id, chunk_index, content_hash)
        try:
            self.client.put_object(
                self.bucket,
                storage_key,
                BytesIO(data),
                length=len(data)
            )
        except S3Error as e:
            logger.error(f"Failed to upload chunk {chunk_index} of upload {upload_id}: {e}")
            raise StorageError(str(e), chunk_index=chunk_index) from e
        
        logger.debug(f"Uploaded {len(data)} bytes to {storage_key}")
        return storage_key
    
    def exists(self, storage_key: str) -> bool:
        try:
            self.client.stat_object(self.bucket, storage_key)
            return True
        except S3Error:
            return False
    
    def delete_upload(self, upload_id: str) -> int:
        removed = 0
        try:
            objects = self.client.list_objects(
                self.bucket,
                prefix=ChunkPaths.upload_prefix(upload_id),
                recursive=True
            )
            for obj in objects:
                self.client.remove_object(self.bucket, obj.object_name)
                removed += 1
        except S3Error as e:
            logger.error(f"Failed to delete chunks of upload {upload_id}: {e}")
            raise StorageError(f"cannot purge upload {upload_id}: {e}") from e
        
        logger.info(f"Deleted {removed} chunk objects for upload {upload_id}")
        return removed


def create_chunk_store(backend: str = settings.CHUNK_STORE_BACKEND) -> ChunkStore:
    if backend == "local":
        return LocalChunkStore()
    if backend == "minio":
        return MinioChunkStore()
    raise ValueError(f"Unknown chunk store backend: {backend}")
