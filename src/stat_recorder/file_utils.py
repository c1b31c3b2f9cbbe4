"""
File utilities shared by the buffer, the archive pipeline and the facade

- append_text: append-only UTF-8 writes for per-key CSV files
- zip_folder: recursive zip of a day directory, hidden entries excluded
- safe_join / list_entries: read-only browsing confined to the data root
"""

import logging
import os
import stat
import zipfile
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, Iterator, List, Tuple, Union

from .errors import ValidationError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class DirectoryEntry:
    """One row of a directory listing"""
    name: str
    is_directory: bool

    def to_dict(self) -> Dict:
        return asdict(self)


def append_text(path: PathLike, text: str) -> None:
    """
    Append text to a file, creating parent directories as needed.

    Text is written as raw UTF-8 so the caller's CRLF terminators stay
    byte-exact. A write that fails partway is cut back to the previous end
    of file before the error propagates, so a retry never duplicates bytes.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = memoryview(text.encode('utf-8'))
    with open(path, 'ab', buffering=0) as f:
        start = f.tell()
        try:
            while data:
                data = data[f.write(data):]
        except BaseException:
            f.truncate(start)
            raise


def is_hidden(path: PathLike) -> bool:
    """Dot-files everywhere, plus the hidden attribute on Windows."""
    path = Path(path)
    if path.name.startswith('.'):
        return True
    try:
        attrs = getattr(os.stat(path, follow_symlinks=False), 'st_file_attributes', 0)
    except OSError:
        return False
    return bool(attrs & getattr(stat, 'FILE_ATTRIBUTE_HIDDEN', 0))


def has_visible_entries(directory: PathLike) -> bool:
    with os.scandir(directory) as it:
        return any(not is_hidden(entry.path) for entry in it)


def _walk_visible(path: Path, arcname: str) -> Iterator[Tuple[Path, str]]:
    if is_hidden(path):
        return
    # Linked directories are not followed; a link cycle would never end
    if path.is_symlink() and path.is_dir():
        logger.debug(f"Skipping linked directory {path}")
        return
    yield path, arcname
    if path.is_dir():
        for child in sorted(path.iterdir()):
            yield from _walk_visible(child, f"{arcname}/{child.name}")


def zip_folder(source_dir: PathLike, zip_path: PathLike) -> int:
    """
    Zip source_dir into zip_path, rooted at source_dir's name.

    Every directory gets an explicit entry so empty sub-directories survive.
    The archive is built in a sibling .part file and moved into place, so an
    existing zip is overwritten atomically and a failed run leaves nothing.

    Returns:
        Number of entries written
    """
    source_dir = Path(source_dir)
    zip_path = Path(zip_path)
    tmp_path = zip_path.with_name(zip_path.name + '.part')

    count = 0
    try:
        with zipfile.ZipFile(tmp_path, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
            for path, arcname in _walk_visible(source_dir, source_dir.name):
                zf.write(path, arcname)
                count += 1
        os.replace(tmp_path, zip_path)
    except BaseException:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise

    logger.debug(f"Zipped {count} entries from {source_dir} into {zip_path}")
    return count


def safe_join(root: PathLike, *parts: str) -> Path:
    """Join parts under root, refusing anything that resolves outside it."""
    root = Path(root).resolve()
    candidate = root.joinpath(*[p for p in parts if p]).resolve()
    if candidate != root and root not in candidate.parents:
        raise ValidationError(f"path escapes data root: {'/'.join(parts)}")
    return candidate


def list_entries(directory: PathLike, suffix: str = '.csv') -> List[DirectoryEntry]:
    """
    Directories and files ending in suffix, hidden entries skipped, by name.

    A missing directory lists as empty.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []

    entries = []
    for child in sorted(directory.iterdir()):
        if is_hidden(child):
            continue
        if child.is_dir():
            entries.append(DirectoryEntry(child.name, True))
        elif child.name.endswith(suffix):
            entries.append(DirectoryEntry(child.name, False))
    return entries
