"""
Archive Extractor - validates and unpacks uploaded report archives.

Supports ZIP and TAR (plain, gzip or bzip2 compressed). The extractor
enforces the archive size ceiling, the entry count and total extracted size
limits, rejects nested archives, encrypted members and unsafe member paths,
and classifies every spreadsheet it unpacks.

Any failure removes the partially extracted directory: extraction either
produces a complete, classified file set or nothing.
"""

import logging
import os
import shutil
import tarfile
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from backend.models.enums import IMPORT_TIERS, MANDATORY_TABLE_TYPES, TableType
from services.errors import (
    ArchiveCorruptedError, ArchiveExtractError, ArchivePasswordProtectedError,
    ArchiveTooLargeError, EmptyArchiveError, MissingMandatoryFileError,
    NestedArchiveError, UnsupportedArchiveFormatError
)
from services.file_type_classifier import FileTypeClassifier

logger = logging.getLogger(__name__)

# Default configuration (can be overridden)
DEFAULT_MAX_ARCHIVE_SIZE_MB = 100
DEFAULT_MAX_EXTRACTED_SIZE_MB = 500
DEFAULT_MAX_ENTRIES = 100

ZIP_EXTENSIONS = ('.zip',)
TAR_EXTENSIONS = ('.tar', '.tar.gz', '.tgz', '.tar.bz2', '.tbz2')
NESTED_ARCHIVE_EXTENSIONS = ('.zip', '.rar', '.7z', '.tar', '.gz', '.tgz', '.bz2', '.tbz2', '.xz')

# Metadata written by archivers, never user data
_IGNORED_PREFIXES = ('__MACOSX/', '._')
_IGNORED_NAMES = ('.DS_Store', 'Thumbs.db', 'desktop.ini')

_COPY_CHUNK = 1024 * 1024

_TIER_ORDER = {table_type: index for index, table_type in
               enumerate(t for tier in IMPORT_TIERS for t in tier)}


@dataclass
class ExtractedFile:
    """A recognised spreadsheet unpacked from the archive."""
    table_type: TableType
    file_name: str
    file_path: str
    size: int

    def open(self):
        return open(self.file_path, 'rb')

    def to_dict(self) -> dict:
        return {
            'table_type': int(self.table_type),
            'file_type': self.table_type.name,
            'file_name': self.file_name,
            'size': self.size,
        }


@dataclass
class UnmatchedFile:
    file_name: str
    reason: str

    def to_dict(self) -> dict:
        return {'file_name': self.file_name, 'reason': self.reason}


@dataclass
class ExtractionResult:
    extract_dir: str
    files: List[ExtractedFile] = field(default_factory=list)
    unmatched: List[UnmatchedFile] = field(default_factory=list)
    missing_types: List[TableType] = field(default_factory=list)

    @property
    def table_types(self) -> List[TableType]:
        return [f.table_type for f in self.files]

    def to_dict(self) -> dict:
        return {
            'files': [f.to_dict() for f in self.files],
            'unmatched': [u.to_dict() for u in self.unmatched],
            'missing': [t.name for t in self.missing_types],
        }


def archive_format(file_name: str) -> Optional[str]:
    """Return 'zip' or 'tar' from the declared name, None if not an archive we accept."""
    lower = file_name.lower()
    if lower.endswith(ZIP_EXTENSIONS):
        return 'zip'
    if lower.endswith(TAR_EXTENSIONS):
        return 'tar'
    return None


def _is_ignored(member_name: str) -> bool:
    base = member_name.rsplit('/', 1)[-1]
    return (member_name.startswith(_IGNORED_PREFIXES) or '/__MACOSX/' in member_name
            or base.startswith('._') or base in _IGNORED_NAMES)


def _zip_member_name(info: zipfile.ZipInfo) -> str:
    # Archives built on Chinese Windows store GBK names without the UTF-8 flag
    if info.flag_bits & 0x800:
        return info.filename
    try:
        return info.filename.encode('cp437').decode('gbk')
    except (UnicodeEncodeError, UnicodeDecodeError):
        return info.filename


class ArchiveExtractor:
    """
    Framework-agnostic archive extractor.

    Usage:
        extractor = ArchiveExtractor()
        result = extractor.extract('/uploads/report.zip', '/work/task-1')
        for f in result.files:
            print(f.table_type, f.file_path)
    """

    def __init__(self, classifier: Optional[FileTypeClassifier] = None,
                 max_archive_size_mb: int = DEFAULT_MAX_ARCHIVE_SIZE_MB,
                 max_extracted_size_mb: int = DEFAULT_MAX_EXTRACTED_SIZE_MB,
                 max_entries: int = DEFAULT_MAX_ENTRIES,
                 mandatory_types=MANDATORY_TABLE_TYPES):
        self.classifier = classifier or FileTypeClassifier()
        self.max_archive_size_mb = max_archive_size_mb
        self.max_archive_bytes = max_archive_size_mb * 1024 * 1024
        self.max_extracted_size_mb = max_extracted_size_mb
        self.max_extracted_bytes = max_extracted_size_mb * 1024 * 1024
        self.max_entries = max_entries
        self.mandatory_types = frozenset(mandatory_types)

    def validate_format(self, archive_path: str, file_name: Optional[str] = None) -> str:
        """
        Check the declared extension and the file signature.

        Raises:
            UnsupportedArchiveFormatError: Extension is not zip/tar
            ArchiveCorruptedError: Extension is fine but content is not an archive
        """
        name = file_name or Path(archive_path).name
        fmt = archive_format(name)
        if fmt is None:
            raise UnsupportedArchiveFormatError(
                f"Archive format not supported: {name}", file_name=name)
        valid = zipfile.is_zipfile(archive_path) if fmt == 'zip' else tarfile.is_tarfile(archive_path)
        if not valid:
            raise ArchiveCorruptedError(f"{name} is not a valid {fmt} archive", file_name=name)
        return fmt

    def extract(self, archive_path: str, dest_dir: str, file_name: Optional[str] = None,
                require_mandatory: bool = True) -> ExtractionResult:
        """
        Validate, unpack and classify an archive.

        Args:
            archive_path: Path to the uploaded archive
            dest_dir: Directory to unpack into (created, removed on failure)
            file_name: Declared upload name (defaults to the path's name)
            require_mandatory: Fail when a mandatory table file is absent

        Returns:
            ExtractionResult with recognised files ordered by import tier

        Raises:
            ArchiveError subclass describing the first problem found
        """
        name = file_name or Path(archive_path).name
        size = os.path.getsize(archive_path)
        if size > self.max_archive_bytes:
            raise ArchiveTooLargeError(
                f"Archive is {size / 1024 / 1024:.1f}MB, limit is {self.max_archive_size_mb}MB",
                file_name=name, size=size)

        fmt = self.validate_format(archive_path, name)
        logger.info(f"Extracting {fmt} archive {name} ({size} bytes) to {dest_dir}")

        dest = Path(dest_dir)
        created = not dest.exists()
        dest.mkdir(parents=True, exist_ok=True)
        try:
            if fmt == 'zip':
                unpacked = self._extract_zip(archive_path, dest)
            else:
                unpacked = self._extract_tar(archive_path, dest)
            result = self._classify(unpacked, dest, require_mandatory)
        except BaseException:
            if created:
                shutil.rmtree(dest, ignore_errors=True)
            raise

        logger.info(f"Extracted {len(result.files)} recognised files from {name}, "
                    f"{len(result.unmatched)} unmatched")
        return result

    # ------------------------------------------------------------------ checks

    def _check_entries(self, entries: List[Tuple[str, int]]):
        if not entries:
            raise EmptyArchiveError()
        if len(entries) > self.max_entries:
            raise ArchiveTooLargeError(
                f"Archive has {len(entries)} files, limit is {self.max_entries}",
                entries=len(entries))
        total = sum(size for _, size in entries)
        if total > self.max_extracted_bytes:
            raise ArchiveTooLargeError(
                f"Archive expands to {total / 1024 / 1024:.1f}MB, "
                f"limit is {self.max_extracted_size_mb}MB", extracted_size=total)
        nested = [member for member, _ in entries if member.lower().endswith(NESTED_ARCHIVE_EXTENSIONS)]
        if nested:
            raise NestedArchiveError(f"Nested archives are not supported: {', '.join(nested)}",
                                     files=nested)

    def _safe_target(self, dest: Path, member_name: str) -> Path:
        root = dest.resolve()
        target = (root / member_name).resolve()
        if target != root and root not in target.parents:
            raise ArchiveExtractError(f"Unsafe path in archive: {member_name}", member=member_name)
        return target

    def _copy_limited(self, source, target: Path, written: int) -> int:
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, 'wb') as out:
            while True:
                chunk = source.read(_COPY_CHUNK)
                if not chunk:
                    break
                written += len(chunk)
                # Header sizes can lie; enforce the limit on actual bytes
                if written > self.max_extracted_bytes:
                    raise ArchiveTooLargeError(
                        f"Archive expands beyond {self.max_extracted_size_mb}MB")
                out.write(chunk)
        return written

    # ------------------------------------------------------------- extraction

    def _extract_zip(self, archive_path: str, dest: Path) -> List[Tuple[str, Path]]:
        unpacked = []
        try:
            with zipfile.ZipFile(archive_path) as zf:
                members = [(info, _zip_member_name(info)) for info in zf.infolist()
                           if not info.is_dir()]
                members = [(info, member) for info, member in members if not _is_ignored(member)]
                self._check_entries([(member, info.file_size) for info, member in members])

                encrypted = [member for info, member in members if info.flag_bits & 0x1]
                if encrypted:
                    raise ArchivePasswordProtectedError(files=encrypted)

                written = 0
                for info, member in members:
                    target = self._safe_target(dest, member)
                    with zf.open(info) as source:
                        written = self._copy_limited(source, target, written)
                    unpacked.append((member, target))
        except (zipfile.BadZipFile, zlib.error, EOFError) as e:
            raise ArchiveCorruptedError(f"Archive is corrupted: {e}") from e
        except RuntimeError as e:
            # zipfile reports encrypted members this way
            if 'encrypted' in str(e) or 'password' in str(e):
                raise ArchivePasswordProtectedError() from e
            raise ArchiveExtractError(f"Archive extraction failed: {e}") from e
        return unpacked

    def _extract_tar(self, archive_path: str, dest: Path) -> List[Tuple[str, Path]]:
        unpacked = []
        try:
            with tarfile.open(archive_path, 'r:*') as tf:
                members = [m for m in tf.getmembers() if not m.isdir() and not _is_ignored(m.name)]
                links = [m.name for m in members if not m.isfile()]
                if links:
                    raise ArchiveExtractError(
                        f"Archive contains links or special files: {', '.join(links)}", members=links)
                self._check_entries([(m.name, m.size) for m in members])

                written = 0
                for member in members:
                    target = self._safe_target(dest, member.name)
                    source = tf.extractfile(member)
                    if source is None:
                        continue
                    with source:
                        written = self._copy_limited(source, target, written)
                    unpacked.append((member.name, target))
        except (tarfile.TarError, zlib.error, EOFError) as e:
            raise ArchiveCorruptedError(f"Archive is corrupted: {e}") from e
        return unpacked

    # --------------------------------------------------------- classification

    def _classify(self, unpacked: List[Tuple[str, Path]], dest: Path,
                  require_mandatory: bool) -> ExtractionResult:
        result = ExtractionResult(extract_dir=str(dest))
        by_type: Dict[TableType, ExtractedFile] = {}

        for member, path in unpacked:
            base = member.rsplit('/', 1)[-1]
            if not self.classifier.is_supported(base):
                result.unmatched.append(UnmatchedFile(base, 'unsupported file type'))
                continue
            table_type = self.classifier.classify(base, str(path))
            if table_type is None:
                result.unmatched.append(UnmatchedFile(base, 'file name not recognised'))
                continue
            if table_type in by_type:
                result.unmatched.append(UnmatchedFile(
                    base, f'duplicate {table_type.name} file, {by_type[table_type].file_name} is used'))
                continue
            by_type[table_type] = ExtractedFile(table_type, base, str(path), path.stat().st_size)

        result.files = sorted(by_type.values(), key=lambda f: _TIER_ORDER[f.table_type])
        result.missing_types = [t for t in _TIER_ORDER if t not in by_type]

        if not result.files and not result.unmatched:
            raise EmptyArchiveError()

        missing_mandatory = [t for t in result.missing_types if t in self.mandatory_types]
        if require_mandatory and missing_mandatory:
            labels = ', '.join(f"{t.label} ({t.name})" for t in missing_mandatory)
            raise MissingMandatoryFileError(
                f"Archive is missing mandatory files: {labels}",
                missing=[t.name for t in missing_mandatory],
                unmatched=[u.to_dict() for u in result.unmatched])

        for unmatched in result.unmatched:
            logger.warning(f"Unmatched archive member {unmatched.file_name}: {unmatched.reason}")
        return result
