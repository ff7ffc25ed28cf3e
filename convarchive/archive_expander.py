"""
Reads text-bearing entries out of ZIP bundles (e.g. a ChatGPT or Claude data export).

Entries are decoded one at a time so a single corrupt or oversized entry only
costs that entry.
"""

import io
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Iterator

from convarchive.logger import get_logger
from convarchive.models import ArchiveError
logger = get_logger(__name__)

TEXT_EXTENSIONS = (".json", ".md", ".markdown", ".txt")

DEFAULT_MAX_ENTRY_BYTES = 256 * 1024 * 1024

@dataclass(frozen=True)
class ArchiveEntry:
    """A decoded entry, or the reason it could not be decoded (text is None then)."""
    name: str
    text: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

def has_text_extension(name: str, extensions: tuple[str, ...] = TEXT_EXTENSIONS) -> bool:
    return name.lower().endswith(extensions)

def decode_text(data: bytes) -> str:
    """UTF-8 with an optional byte-order mark."""
    return data.decode("utf-8-sig")

class ArchiveExpander:
    """Yields the recognized text entries of a ZIP archive."""

    def __init__(self, extensions: tuple[str, ...] = TEXT_EXTENSIONS, max_entry_bytes: int = DEFAULT_MAX_ENTRY_BYTES):
        self.extensions = tuple(ext.lower() for ext in extensions)
        self.max_entry_bytes = max_entry_bytes

    def _is_candidate(self, info: zipfile.ZipInfo) -> bool:
        if info.is_dir():
            return False
        parts = PurePosixPath(info.filename).parts
        # macOS Finder adds resource-fork shadows of every file
        if "__MACOSX" in parts or PurePosixPath(info.filename).name.startswith("._"):
            return False
        return has_text_extension(info.filename, self.extensions)

    def _read_entry(self, archive: zipfile.ZipFile, info: zipfile.ZipInfo) -> ArchiveEntry:
        if info.file_size > self.max_entry_bytes:
            return ArchiveEntry(
                name=info.filename,
                error=f"Entry is {info.file_size} bytes, over the {self.max_entry_bytes} byte limit",
            )
        try:
            data = archive.read(info)
        except (zipfile.BadZipFile, zlib.error, NotImplementedError, RuntimeError, EOFError, OSError) as e:
            # RuntimeError covers encrypted entries, NotImplementedError unsupported compression
            return ArchiveEntry(name=info.filename, error=f"Unreadable archive entry: {e}")

        try:
            return ArchiveEntry(name=info.filename, text=decode_text(data))
        except UnicodeDecodeError as e:
            return ArchiveEntry(name=info.filename, error=f"Entry is not UTF-8 text: {e}")

    def expand(self, source: str | Path | bytes | BinaryIO) -> Iterator[ArchiveEntry]:
        """
        Iterate the archive's text entries.

        Raises ArchiveError when the container itself is not a ZIP file. OS errors
        opening the container propagate to the caller.
        """
        if isinstance(source, (bytes, bytearray)):
            source = io.BytesIO(source)

        try:
            archive = zipfile.ZipFile(source)
        except zipfile.BadZipFile as e:
            raise ArchiveError(f"Not a readable ZIP archive: {e}") from e

        with archive:
            infos = [info for info in archive.infolist() if self._is_candidate(info)]
            logger.debug(f"Archive has {len(infos)} text entries out of {len(archive.infolist())}")
            for info in infos:
                entry = self._read_entry(archive, info)
                if not entry.ok:
                    logger.warning(f"Skipping archive entry {entry.name}: {entry.error}")
                yield entry
