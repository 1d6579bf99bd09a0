"""Unpacking of archived exports into a temporary directory."""

from __future__ import annotations

import dataclasses
import logging
import os
import shutil
import tarfile
import tempfile
import zipfile

from .chunks import READ_ERRORS, compression_for_path, open_binary
from .detect import SQLITE_MAGIC, read_head
from .errors import ConversionError

logger = logging.getLogger(__name__)

_TEMP_PREFIX = "decentdb-import-"
_COPY_BLOCK = 1 << 20


@dataclasses.dataclass(frozen=True)
class Extracted:
    path: str
    temp_dir: str | None
    original_path: str

    def cleanup(self) -> None:
        remove_temp_dir(self.temp_dir)


def is_archive(path: str) -> bool:
    lower = path.lower()
    return lower.endswith((".zip", ".tar", ".tar.gz", ".tgz"))


def needs_extraction(path: str) -> bool:
    """Archives always do. A compressed single file only does when it holds a
    SQLite database, which must be a real file to be opened."""
    if not os.path.isfile(path):
        return False
    if is_archive(path):
        return True
    if compression_for_path(path) != "none":
        return read_head(path, len(SQLITE_MAGIC)) == SQLITE_MAGIC
    return False


def _single_entry(temp_dir: str) -> str:
    entries = os.listdir(temp_dir)
    if len(entries) == 1:
        return os.path.join(temp_dir, entries[0])
    return temp_dir


def _safe_tar_members(tf: tarfile.TarFile, dest: str):
    root = os.path.realpath(dest)
    for member in tf.getmembers():
        target = os.path.realpath(os.path.join(dest, member.name))
        if not (target == root or target.startswith(root + os.sep)):
            raise ConversionError(f"Archive member escapes extraction directory: {member.name}")
        if member.issym() or member.islnk():
            logger.debug("Skipping link in archive: %s", member.name)
            continue
        yield member


def extract(path: str, *, temp_base: str | None = None) -> Extracted:
    """Unpack ``path`` when it is an archive; otherwise return it unchanged."""
    if not needs_extraction(path):
        return Extracted(path=path, temp_dir=None, original_path=path)

    temp_dir = tempfile.mkdtemp(prefix=_TEMP_PREFIX, dir=temp_base)
    lower = path.lower()
    try:
        if lower.endswith(".zip"):
            logger.info("Extracting ZIP %s -> %s", path, temp_dir)
            with zipfile.ZipFile(path) as zf:
                zf.extractall(temp_dir)
        elif lower.endswith((".tar", ".tar.gz", ".tgz")):
            logger.info("Extracting TAR %s -> %s", path, temp_dir)
            with tarfile.open(path, "r:*") as tf:
                tf.extractall(temp_dir, members=list(_safe_tar_members(tf, temp_dir)))
        else:
            inner = os.path.basename(path).rsplit(".", 1)[0] or "source.db"
            out_path = os.path.join(temp_dir, inner)
            logger.info("Decompressing %s -> %s", path, out_path)
            with open_binary(path, compression_for_path(path)) as src, open(out_path, "wb") as dst:
                shutil.copyfileobj(src, dst, _COPY_BLOCK)
    except READ_ERRORS + (zipfile.BadZipFile, tarfile.TarError) as exc:
        remove_temp_dir(temp_dir)
        raise ConversionError(f"Cannot extract {path}: {exc}") from exc
    except BaseException:
        remove_temp_dir(temp_dir)
        raise

    return Extracted(path=_single_entry(temp_dir), temp_dir=temp_dir, original_path=path)


def remove_temp_dir(temp_dir: str | None) -> None:
    if not temp_dir:
        return
    try:
        shutil.rmtree(temp_dir)
        logger.debug("Cleaned up temp directory: %s", temp_dir)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to clean up temp directory %s: %s", temp_dir, exc)
