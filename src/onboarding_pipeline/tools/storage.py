import base64
import os
import re
import tempfile
import uuid
from pathlib import Path
from typing import Optional

MAX_FILE_SIZE_MB = 10


def _safe_name(filename: Optional[str]) -> str:
    safe = re.sub(r"[^A-Za-z0-9._-]+", "_", (filename or "").strip()).strip("._")
    return safe or "upload.bin"


def _scope(user_id: str) -> str:
    # distinct ids never share a prefix
    return base64.urlsafe_b64encode(user_id.encode("utf-8")).decode("ascii").rstrip("=") or "_"


def _atomic_write_bytes(dest: Path, data: bytes) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("wb", dir=str(dest.parent), delete=False) as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_path = Path(tmp.name)
    tmp_path.replace(dest)


class LocalObjectStorage:
    """
    User-scoped file store on local disk. Callers only ever keep the returned
    reference ("<encoded user id>/<uuid>-<name>"), never the bytes.
    """

    def __init__(self, base_dir: Optional[os.PathLike] = None):
        self.base_dir = Path(base_dir or os.getenv("VERIFICATION_STORAGE_DIR", "data/uploads"))

    def put(self, user_id: str, filename: Optional[str], data: bytes) -> str:
        if len(data) > MAX_FILE_SIZE_MB * 1024 * 1024:
            raise ValueError(f"File too large. Limit is {MAX_FILE_SIZE_MB} MB.")
        ref = f"{_scope(user_id)}/{uuid.uuid4().hex}-{_safe_name(filename)}"
        _atomic_write_bytes(self.resolve(ref), data)
        return ref

    def resolve(self, ref: str) -> Path:
        base = self.base_dir.resolve()
        path = (base / ref).resolve()
        if base not in path.parents:
            raise ValueError(f"Reference escapes storage root: {ref}")
        return path

    def exists(self, ref: str) -> bool:
        try:
            return self.resolve(ref).is_file()
        except ValueError:
            return False

    def belongs_to(self, ref: str, user_id: str) -> bool:
        return (ref or "").split("/", 1)[0] == _scope(user_id)
