# app/utils/file_storage.py
import os
import uuid
from pathlib import Path

from app.core.config import get_settings


def get_storage_root() -> Path:
    """
    Returns the absolute path to the file storage root directory.

    By default, this is "<cwd>/uploads", but it can be overridden
    via FILE_STORAGE_ROOT.
    """
    root = Path(get_settings().file_storage_root)
    if not root.is_absolute():
        root = Path.cwd() / root
    root.mkdir(parents=True, exist_ok=True)
    return root


def save_bytes_to_storage(
    data: bytes,
    original_filename: str,
    subdir: str,
) -> str:
    """
    Save a blob of bytes to storage under a subdirectory.

    Returns a **relative storage path** (e.g. "<user_id>/<uuid>.pdf")
    which can be stored in the database.
    """
    storage_root = get_storage_root()
    safe_subdir = subdir.strip().strip("/").replace("\\", "/")

    dir_path = storage_root / safe_subdir
    dir_path.mkdir(parents=True, exist_ok=True)

    ext = Path(original_filename).suffix
    filename = f"{uuid.uuid4().hex}{ext}"
    full_path = dir_path / filename

    with open(full_path, "wb") as f:
        f.write(data)

    return os.path.join(safe_subdir, filename).replace("\\", "/")


def resolve_storage_path(storage_path: str) -> Path:
    """
    Convert a relative storage path (stored in DB) into an absolute filesystem path.
    """
    return get_storage_root() / storage_path


def delete_from_storage(storage_path: str) -> None:
    """Remove a stored file; missing files are ignored."""
    path = resolve_storage_path(storage_path)
    try:
        path.unlink()
    except FileNotFoundError:
        pass
