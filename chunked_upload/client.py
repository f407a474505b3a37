"""Chunked upload client with parallel workers and per-chunk retries."""
import logging
import math
import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Optional

import requests

from .services.receiver import derive_session_id

logger = logging.getLogger(__name__)

API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")
CHUNK_SIZE = 5 * 1024 * 1024  # 5MB
MAX_WORKERS = 4  # Parallel upload threads
MAX_RETRIES = 3

# Analyzer failures/timeouts (502) and server faults are worth retrying;
# 4xx means the request itself is wrong
RETRYABLE_STATUS = {500, 502, 503, 504}


class UploadFailed(Exception):
    pass


class ChunkedUploader:
    """Client for uploading a large file as independently analyzed chunks."""
    
    def __init__(
        self,
        api_url: str = API_BASE_URL,
        chunk_size: int = CHUNK_SIZE,
        max_workers: int = MAX_WORKERS,
        max_retries: int = MAX_RETRIES,
        backoff_seconds: float = 0.5,
        http=None,
    ):
        self.api_url = api_url.rstrip("/")
        self.chunk_size = chunk_size
        self.max_workers = max_workers
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.http = http or requests.Session()
    
    def get_status(self, session_id: str) -> Optional[dict]:
        """Upload status, or None when the server has no such session."""
        response = self.http.get(f"{self.api_url}/uploads/{session_id}/status")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()
    
    def get_result(self, session_id: str) -> dict:
        response = self.http.get(f"{self.api_url}/uploads/{session_id}/result")
        response.raise_for_status()
        return response.json()
    
    def upload_chunk(
        self,
        session_id: str,
        filename: str,
        file_size: int,
        total_chunks: int,
        chunk_index: int,
        chunk_data: bytes
    ) -> dict:
        """Upload a single chunk, retrying transient failures with backoff."""
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = self.http.post(
                    f"{self.api_url}/uploads/chunk",
                    data={
                        "sessionId": session_id,
                        "chunkIndex": str(chunk_index),
                        "totalChunks": str(total_chunks),
                        "filename": filename,
                        "fileSize": str(file_size),
                    },
                    files={"chunk": (f"chunk_{chunk_index:04d}", chunk_data, "application/octet-stream")},
                )
            except requests.exceptions.RequestException as e:
                last_error = str(e)
            else:
                if response.status_code == 200:
                    return response.json()
                if response.status_code not in RETRYABLE_STATUS:
                    raise UploadFailed(f"Chunk {chunk_index} rejected ({response.status_code}): {response.text}")
                last_error = f"{response.status_code}: {response.text}"
            
            logger.warning(f"Chunk {chunk_index} attempt {attempt}/{self.max_retries} failed: {last_error}")
            if attempt < self.max_retries:
                time.sleep(self.backoff_seconds * (2 ** (attempt - 1)))
        
        raise UploadFailed(f"Chunk {chunk_index} failed after {self.max_retries} attempts: {last_error}")
    
    def upload_file(self, file_path: str, resume: bool = True) -> dict:
        """
        Upload a file and return the aggregate analysis report.
        
        The session id is derived from name/size/chunk count, so re-running
        after a failure resumes the same session and only sends missing chunks.
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")
        
        file_size = file_path.stat().st_size
        filename = file_path.name
        total_chunks = max(1, math.ceil(file_size / self.chunk_size))
        session_id = derive_session_id(filename, file_size, total_chunks)
        
        received = set()
        if resume:
            status = self.get_status(session_id)
            if status is not None:
                if status["completed"]:
                    logger.info(f"Session {session_id} already complete")
                    return self.get_result(session_id)
                received = set(status["receivedChunks"])
                logger.info(f"Resuming session {session_id}: {len(received)}/{total_chunks} chunks on server")
        
        logger.info(
            f"Uploading {filename} ({file_size / (1024 * 1024):.2f} MB) as {total_chunks} chunks "
            f"using {self.max_workers} parallel workers"
        )
        start_time = time.time()
        
        with open(file_path, "rb") as f:
            chunks_to_upload = []
            for chunk_index in range(total_chunks):
                if chunk_index in received:
                    continue
                f.seek(chunk_index * self.chunk_size)
                chunks_to_upload.append((chunk_index, f.read(self.chunk_size)))
        
        final_result = None
        failed = []
        
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(
                    self.upload_chunk,
                    session_id, filename, file_size, total_chunks, chunk_index, chunk_data
                ): chunk_index
                for chunk_index, chunk_data in chunks_to_upload
            }
            
            for future in as_completed(futures):
                chunk_index = futures[future]
                try:
                    body = future.result()
                except UploadFailed as e:
                    logger.error(str(e))
                    failed.append(chunk_index)
                    continue
                
                if body.get("completed"):
                    final_result = body["result"]
                else:
                    logger.info(f"Chunk {chunk_index} uploaded ({body['receivedChunks']}/{total_chunks})")
        
        if failed:
            raise UploadFailed(
                f"Upload incomplete, chunks {sorted(failed)} failed; re-run to resume session {session_id}"
            )
        
        if final_result is None:
            final_result = self.get_result(session_id)
        
        logger.info(f"Upload of {filename} analyzed in {time.time() - start_time:.2f}s")
        return final_result


def main():
    """CLI for the chunked uploader."""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    
    if len(sys.argv) < 2:
        print("Usage: python -m chunked_upload.client <file_path>")
        sys.exit(1)
    
    uploader = ChunkedUploader()
    try:
        result = uploader.upload_file(sys.argv[1])
    except (UploadFailed, requests.exceptions.RequestException) as e:
        print(f"\n✗ Upload failed: {e}")
        sys.exit(1)
    
    print(f"\n✓ Verdict: {result['prediction']} (confidence {result['confidence']})")
    print(f"  Chunks: {result['totalChunks']}, consensus {result['consensus']['consistencyScore']:.2f}")
    print(f"  Models: {', '.join(result['modelsUsed'])}")


if __name__ == "__main__":
    main()
