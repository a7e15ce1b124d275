import re
import secrets
import time
from datetime import datetime, timezone

CHUNK_SUFFIX = ".chunk"
_CHUNK_NAME = re.compile(r"^(\d+)\.chunk$")
_UNSAFE_FILE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_\-.]")


def new_upload_id() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}"


def staging_prefix(upload_id: str) -> str:
    return f"{upload_id}/"


def chunk_key(upload_id: str, chunk_index: int) -> str:
    return f"{upload_id}/{chunk_index:05d}{CHUNK_SUFFIX}"


def parse_chunk_index(name: str) -> int | None:
    """Numeric index of a staged chunk object name, or None for anything else."""
    match = _CHUNK_NAME.match(name.rsplit("/", 1)[-1])
    if not match:
        return None
    return int(match.group(1))


def sanitize_file_name(file_name: str) -> str:
    safe = _UNSAFE_FILE_NAME_CHARS.sub("_", file_name.strip())
    # A name made only of dots would resolve to a directory.
    if not safe.strip("."):
        safe = "upload.bin"
    return safe


def final_object_key(file_name: str, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    epoch_millis = int(now.timestamp() * 1000)
    return f"{now:%Y}/{now:%m}/{now:%d}/{epoch_millis}-{secrets.token_hex(8)}-{sanitize_file_name(file_name)}"
