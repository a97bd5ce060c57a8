"""Local file storage for participant uploads, recordings and exports."""

from __future__ import annotations

import io
from pathlib import Path
from uuid import uuid4

from PIL import Image

from ..config import settings


def storage_root() -> Path:
    """Return the base directory all stored files live under."""
    root = Path(settings.STORAGE_DIR)
    root.mkdir(parents=True, exist_ok=True)
    return root


def validate_filename(filename: str | None) -> str:
    if not filename or len(filename) > 200:
        raise ValueError("invalid filename")
    if "/" in filename or "\\" in filename or filename.startswith("."):
        raise ValueError("invalid filename path")
    return filename


def file_extension(filename: str) -> str:
    return Path(filename).suffix.lower().lstrip(".")


def is_valid_image(payload: bytes) -> bool:
    try:
        Image.open(io.BytesIO(payload)).verify()
        return True
    except Exception:
        return False


def save_bytes(subdir: str, filename: str, payload: bytes) -> Path:
    """Write `payload` under `<root>/<subdir>` with a collision-free name."""
    target_dir = storage_root() / subdir
    target_dir.mkdir(parents=True, exist_ok=True)
    suffix = Path(filename).suffix.lower() or ".bin"
    path = target_dir / f"{uuid4().hex}{suffix}"
    path.write_bytes(payload)
    return path


def relative_key(path: Path) -> str:
    """Storage-root relative form of `path`, safe to keep in the database."""
    return Path(path).resolve().relative_to(storage_root().resolve()).as_posix()


def resolve(stored_path: str) -> Path:
    """Resolve a stored path and refuse anything outside the storage root."""
    root = storage_root().resolve()
    path = Path(stored_path)
    if not path.is_absolute():
        path = root / path
    path = path.resolve()
    if root != path and root not in path.parents:
        raise ValueError("path outside storage root")
    return path


def delete_file(stored_path: str) -> bool:
    try:
        path = resolve(stored_path)
    except ValueError:
        return False
    if path.is_file():
        path.unlink()
        return True
    return False
