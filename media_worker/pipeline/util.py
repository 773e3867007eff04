import os
import re
import uuid
import shutil
import logging
from typing import BinaryIO, Optional
from urllib.parse import urlparse

logger = logging.getLogger("media_worker")

# Environment variable constants
DEFAULT_DATA_DIR = "/app/data"


class UploadTooLargeError(ValueError):
    """Upload exceeded the configured size limit"""


def get_data_dir() -> str:
    """Get data directory from environment"""
    return os.getenv("DATA_DIR", DEFAULT_DATA_DIR)


def resolve_input_path(input_ref: str, data_dir: str = None) -> str:
    """Resolve an input reference (path or file:// URI) to an absolute path under DATA_DIR"""
    parsed = urlparse(input_ref)
    if parsed.scheme == "file":
        return parsed.path
    if parsed.scheme and len(parsed.scheme) > 1:
        raise ValueError(f"Unsupported input reference scheme: {parsed.scheme}")

    # If input_ref is already absolute, use it
    if os.path.isabs(input_ref):
        return input_ref

    # Otherwise, resolve relative to data directory
    return os.path.join(data_dir or get_data_dir(), input_ref.lstrip("/"))


def get_job_workspace(work_dir: str, job_id: str) -> str:
    """Deterministic scratch directory for a job's artifacts"""
    return os.path.join(work_dir, clean_filename(str(job_id)))


def ensure_dir(path: str):
    """Ensure directory exists"""
    os.makedirs(path, exist_ok=True)


def remove_file(path: str) -> None:
    """Remove a file if present"""
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def remove_workspace(path: str) -> bool:
    """Delete a job workspace; returns True if something was removed"""
    if not os.path.isdir(path):
        return False
    try:
        shutil.rmtree(path)
        return True
    except OSError as e:
        logger.warning(f"Error removing workspace {path}: {e}")
        return False


def format_timecode(seconds: float, decimal_sep: str = ".") -> str:
    """Format seconds as HH:MM:SS.mmm"""
    millis = int(round(seconds * 1000))
    hours, millis = divmod(millis, 3600 * 1000)
    minutes, millis = divmod(millis, 60 * 1000)
    secs, millis = divmod(millis, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}{decimal_sep}{millis:03d}"


def clean_filename(filename: str) -> str:
    """Clean filename for safe filesystem usage"""
    # Remove or replace unsafe characters
    filename = re.sub(r'[<>:"/\\|?*]', '_', filename)
    # Remove multiple underscores
    filename = re.sub(r'_+', '_', filename)
    # Remove leading/trailing underscores and dots
    filename = filename.strip('_.')
    return filename or 'unnamed'


def save_upload(stream: BinaryIO, filename: str, uploads_dir: str, max_bytes: Optional[int] = None,
                chunk_size: int = 1024 * 1024) -> str:
    """
    Copy an uploaded file into ``uploads_dir`` under a unique name.

    Raises:
        ValueError: missing or path-like filename, empty upload, or upload larger than ``max_bytes``

    Returns:
        Path of the stored file
    """
    if not filename or ".." in filename:
        raise ValueError(f"Invalid upload filename: {filename!r}")

    ensure_dir(uploads_dir)
    target = os.path.join(uploads_dir, f"{uuid.uuid4()}_{clean_filename(os.path.basename(filename))}")
    written = 0
    try:
        with open(target, "wb") as out:
            while True:
                chunk = stream.read(chunk_size)
                if not chunk:
                    break
                written += len(chunk)
                if max_bytes is not None and written > max_bytes:
                    raise UploadTooLargeError(f"Upload exceeds {max_bytes} bytes")
                out.write(chunk)
        if written == 0:
            raise ValueError(f"Upload {filename!r} is empty")
    except BaseException:
        remove_file(target)
        raise

    logger.info(f"Stored upload {filename} ({written} bytes) at {target}")
    return target
