"""
Upload lifecycle: APK validation, storage under a generated name, the
post-acceptance existence check and exactly-once deletion of the artifact.
"""

import asyncio
import os
import time
import uuid
from typing import Optional

from fastapi import UploadFile

from apkshield.errors import PayloadTooLargeError, UploadValidationError
from apkshield.models.scan import ScanRequest
from apkshield.utils.logging_config import StructuredLogger, metrics, scan_id_var

logger = StructuredLogger(__name__)

APK_MEDIA_TYPE = "application/vnd.android.package-archive"
APK_SUFFIX = ".apk"


def is_apk_upload(filename: Optional[str], content_type: Optional[str]) -> bool:
    """Plausibility check only: declared media type or file suffix."""
    if content_type and content_type.split(";")[0].strip().lower() == APK_MEDIA_TYPE:
        return True
    return bool(filename) and filename.lower().endswith(APK_SUFFIX)


def validate_apk_upload(upload: UploadFile):
    if not is_apk_upload(upload.filename, upload.content_type):
        raise UploadValidationError("Invalid file type", "Only APK files are allowed")


def generate_storage_name() -> str:
    """Collision-resistant name that never contains client input."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex}{APK_SUFFIX}"


async def store_upload(
    upload: UploadFile,
    upload_dir: str,
    max_bytes: int,
    chunk_size: int = 1024 * 1024,
) -> ScanRequest:
    """
    Stream an accepted upload to disk and hand back the scan request for it.

    Raises PayloadTooLargeError (and removes the partial file) once more than
    `max_bytes` have been received.
    """
    os.makedirs(upload_dir, exist_ok=True)
    path = os.path.join(upload_dir, generate_storage_name())
    written = 0

    try:
        with open(path, "wb") as out:
            while True:
                chunk = await upload.read(chunk_size)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise PayloadTooLargeError(max_bytes // (1024 * 1024))
                out.write(chunk)
    except BaseException:
        _remove_quietly(path)
        raise
    finally:
        await upload.close()

    request = ScanRequest(path=path, filename=upload.filename or os.path.basename(path))
    logger.info(
        "Upload accepted",
        scan_id=request.scan_id,
        filename=request.filename,
        path=path,
        size=written,
    )
    return request


async def ensure_materialized(request: ScanRequest):
    """Fail with a validation error if the accepted upload is not on disk."""
    exists = await asyncio.to_thread(os.path.isfile, request.path)
    if not exists:
        logger.error("File not accessible", path=request.path)
        raise UploadValidationError(
            "File upload failed",
            "Uploaded file is not accessible",
            scan_id=request.scan_id,
        )


def _remove_quietly(path: str):
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


class UploadJanitor:
    """
    Deletes uploaded artifacts exactly once per request.

    A missing file counts as already cleaned up. Any other deletion failure
    is logged as a leaked artifact and is not retried.
    """

    def __init__(self):
        self._tasks = set()

    async def discard(self, request: ScanRequest) -> bool:
        """Delete the artifact. Returns False if the request was already released."""
        if request.released:
            return False
        # Flag before the first suspension point so a second caller backs off
        request.released = True
        token = scan_id_var.set(request.scan_id)
        try:
            await asyncio.to_thread(os.unlink, request.path)
        except FileNotFoundError:
            logger.debug("File cleanup not needed", path=request.path)
            metrics.increment("cleanup.missing")
        except OSError as e:
            logger.error("Failed to cleanup file, artifact leaked", path=request.path, error=str(e))
            metrics.increment("cleanup.failed")
        else:
            logger.info("Cleanup completed")
            metrics.increment("cleanup.completed")
        finally:
            scan_id_var.reset(token)
        return True

    def spawn(self, request: ScanRequest) -> asyncio.Task:
        """Schedule discard() as a background task with its own failure logging."""
        task = asyncio.create_task(self.discard(request))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            logger.error("Cleanup task cancelled, artifact may be leaked")
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Cleanup task crashed, artifact may be leaked", error=str(exc))

    async def wait_pending(self):
        """Wait for scheduled cleanups, e.g. on shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)
