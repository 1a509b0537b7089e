# clinicflow/services/storage_service.py
"""Artifact storage for prescription scans, rendered PDFs and whiteboard drawings.

On-disk layout (kept stable so already-issued URLs stay servable)::

    {root}/{artifact_class}/{yyyy}/{mm}/{dd}/{prescription_id}/{artifact_class}_{epoch_millis}{ext}

The date components are the artifact's creation date, so finding the files
of one prescription means walking each class's year/month/day tree.
"""
import asyncio
import enum
import logging
import mimetypes
import re
from datetime import datetime, timezone
from pathlib import Path, PurePath
from typing import Callable, Iterable, Iterator, Optional, Tuple

import aiofiles
import aiofiles.os

from ..exceptions import NotFoundError, StorageIOError, ValidationError
from ..schemas import ArtifactDeleteResult, ArtifactListResult, ArtifactRecord, ArtifactSaveResult

logger = logging.getLogger(__name__)


class ArtifactClass(str, enum.Enum):
    images = "images"
    pdfs = "pdfs"
    whiteboards = "whiteboards"


DEFAULT_EXTENSIONS = {
    ArtifactClass.images: ".png",
    ArtifactClass.pdfs: ".pdf",
    ArtifactClass.whiteboards: ".png",
}

_EXTENSION_RE = re.compile(r"^\.[a-z0-9]{1,10}$")
_FILENAME_RE = re.compile(r"^(?P<artifact_class>[a-z]+)_(?P<millis>\d+)(?P<ext>\.[A-Za-z0-9]+)?$")
_YEAR_RE = re.compile(r"^\d{4}$")
_MONTH_DAY_RE = re.compile(r"^\d{2}$")

# Collisions inside one millisecond bump the stamp; give up after this many
_MAX_NAME_ATTEMPTS = 1000
# Re-creating a folder removed by a concurrent prune
_MAX_FOLDER_ATTEMPTS = 5


def _local_now() -> datetime:
    return datetime.now().astimezone()


def _subdirs(path: Path, pattern: re.Pattern) -> Iterator[Path]:
    try:
        entries = sorted(path.iterdir())
    except FileNotFoundError:
        # Pruned by a concurrent delete
        return
    for entry in entries:
        if pattern.match(entry.name) and entry.is_dir():
            yield entry


class ArtifactStorageManager:
    def __init__(
        self,
        root,
        url_prefix: str = "/uploads/prescriptions",
        max_bytes: Optional[int] = None,
        allowed_mime_types: Optional[Iterable[str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")
        self.max_bytes = max_bytes
        self.allowed_mime_types = {m.lower() for m in allowed_mime_types} if allowed_mime_types else None
        self._clock = clock or _local_now
        try:
            for artifact_class in ArtifactClass:
                (self.root / artifact_class.value).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Cannot prepare artifact root {self.root}: {e}") from e

    @classmethod
    def from_settings(cls, settings) -> "ArtifactStorageManager":
        return cls(
            root=settings.artifact_root,
            url_prefix=settings.artifact_url_prefix,
            max_bytes=settings.max_artifact_bytes,
            allowed_mime_types=settings.allowed_artifact_mime_types,
        )

    # ------------------------------------------------------------------
    # Input validation (raised, never converted into results)
    # ------------------------------------------------------------------
    @staticmethod
    def coerce_class(artifact_class) -> ArtifactClass:
        try:
            return ArtifactClass(artifact_class)
        except ValueError:
            allowed = ", ".join(c.value for c in ArtifactClass)
            raise ValidationError(f"Unknown artifact class '{artifact_class}' (expected one of: {allowed})")

    @staticmethod
    def check_prescription_id(prescription_id) -> str:
        if not isinstance(prescription_id, str) or not prescription_id.strip():
            raise ValidationError("prescription_id is required")
        if prescription_id in (".", "..") or PurePath(prescription_id).name != prescription_id \
                or "/" in prescription_id or "\\" in prescription_id:
            raise ValidationError(f"prescription_id '{prescription_id}' cannot be used as a directory name")
        return prescription_id

    def _check_payload(self, data) -> bytes:
        if isinstance(data, (bytearray, memoryview)):
            data = bytes(data)
        if not isinstance(data, bytes):
            raise ValidationError("artifact content must be bytes")
        if not data:
            raise ValidationError("artifact content is empty")
        if self.max_bytes is not None and len(data) > self.max_bytes:
            raise ValidationError(f"artifact is {len(data)} bytes; the limit is {self.max_bytes}")
        return data

    @staticmethod
    def _extension_for(artifact_class: ArtifactClass, original_name: Optional[str], mime_type: Optional[str]) -> str:
        if original_name:
            suffix = PurePath(original_name).suffix.lower()
            if _EXTENSION_RE.match(suffix):
                return suffix
        if mime_type:
            guessed = mimetypes.guess_extension(mime_type)
            if guessed:
                return guessed
        return DEFAULT_EXTENSIONS[artifact_class]

    def _check_mime(self, mime_type: Optional[str], extension: str) -> str:
        resolved = (mime_type or mimetypes.guess_type(f"file{extension}")[0] or "application/octet-stream").lower()
        if self.allowed_mime_types is not None and resolved not in self.allowed_mime_types:
            raise ValidationError(f"File type '{resolved}' is not allowed")
        return resolved

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------
    def organized_dir(self, prescription_id: str, artifact_class, created: datetime) -> Path:
        artifact_class = self.coerce_class(artifact_class)
        return (self.root / artifact_class.value / f"{created.year:04d}" / f"{created.month:02d}"
                / f"{created.day:02d}" / prescription_id)

    @staticmethod
    def build_filename(artifact_class, epoch_millis: int, extension: str) -> str:
        return f"{ArtifactClass(artifact_class).value}_{epoch_millis}{extension}"

    def organized_path(self, prescription_id: str, artifact_class, created: datetime, extension: str) -> Path:
        millis = int(created.timestamp() * 1000)
        return self.organized_dir(prescription_id, artifact_class, created) / self.build_filename(
            artifact_class, millis, extension)

    def url_for(self, path: Path) -> str:
        return f"{self.url_prefix}/{path.relative_to(self.root).as_posix()}"

    def _record(self, path: Path, artifact_class: ArtifactClass, prescription_id: str, size: int,
                uploaded_at: datetime, mime_type: Optional[str] = None,
                original_name: Optional[str] = None) -> ArtifactRecord:
        return ArtifactRecord(
            filename=path.name,
            absolute_path=str(path.resolve()),
            relative_path=path.relative_to(self.root).as_posix(),
            url=self.url_for(path),
            size=size,
            mime_type=mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream",
            prescription_id=prescription_id,
            artifact_class=artifact_class.value,
            uploaded_at=uploaded_at,
            original_name=original_name,
        )

    def _prepare(self, data, prescription_id, artifact_class, original_name, mime_type):
        artifact_class = self.coerce_class(artifact_class)
        prescription_id = self.check_prescription_id(prescription_id)
        data = self._check_payload(data)
        extension = self._extension_for(artifact_class, original_name, mime_type)
        mime_type = self._check_mime(mime_type, extension)
        created = self._clock()
        folder = self.organized_dir(prescription_id, artifact_class, created)
        return artifact_class, prescription_id, data, extension, mime_type, created, folder

    def _candidate_names(self, folder: Path, artifact_class: ArtifactClass, extension: str,
                         created: datetime) -> Iterator[Path]:
        millis = int(created.timestamp() * 1000)
        for offset in range(_MAX_NAME_ATTEMPTS):
            yield folder / self.build_filename(artifact_class, millis + offset, extension)
        raise FileExistsError(f"No free artifact filename in {folder} after {_MAX_NAME_ATTEMPTS} attempts")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def save(self, data: bytes, prescription_id: str, artifact_class, original_name: Optional[str] = None,
             mime_type: Optional[str] = None) -> ArtifactSaveResult:
        """Write one artifact under its dated folder and describe where it landed.

        Disk problems come back as ``success=False``; bad arguments raise
        ``ValidationError``.
        """
        artifact_class, prescription_id, data, extension, mime_type, created, folder = self._prepare(
            data, prescription_id, artifact_class, original_name, mime_type)
        try:
            folder.mkdir(parents=True, exist_ok=True)
            path = self._write_exclusive(folder, artifact_class, extension, created, data)
        except OSError as e:
            logger.error(f"Could not save {artifact_class.value} artifact for {prescription_id}: {str(e)}")
            return ArtifactSaveResult(success=False, error=str(e))

        record = self._record(path, artifact_class, prescription_id, len(data), created, mime_type, original_name)
        logger.info(f"Saved {record.relative_path} ({record.size} bytes)")
        return ArtifactSaveResult(success=True, artifact=record)

    def _open_exclusive(self, folder: Path, path: Path):
        """Create `path` for writing; None when the name is already taken."""
        for attempt in range(_MAX_FOLDER_ATTEMPTS):
            try:
                return open(path, "xb")
            except FileExistsError:
                return None
            except FileNotFoundError:
                if attempt + 1 == _MAX_FOLDER_ATTEMPTS:
                    raise
                # Folder pruned by a concurrent delete between mkdir and open
                folder.mkdir(parents=True, exist_ok=True)

    def _write_exclusive(self, folder: Path, artifact_class: ArtifactClass, extension: str,
                         created: datetime, data: bytes) -> Path:
        for path in self._candidate_names(folder, artifact_class, extension, created):
            handle = self._open_exclusive(folder, path)
            if handle is None:
                continue
            try:
                with handle:
                    handle.write(data)
            except OSError:
                path.unlink(missing_ok=True)
                raise
            return path

    async def _open_exclusive_async(self, folder: Path, path: Path):
        for attempt in range(_MAX_FOLDER_ATTEMPTS):
            try:
                return await aiofiles.open(path, "xb")
            except FileExistsError:
                return None
            except FileNotFoundError:
                if attempt + 1 == _MAX_FOLDER_ATTEMPTS:
                    raise
                await aiofiles.os.makedirs(folder, exist_ok=True)

    async def save_async(self, data: bytes, prescription_id: str, artifact_class,
                         original_name: Optional[str] = None, mime_type: Optional[str] = None) -> ArtifactSaveResult:
        artifact_class, prescription_id, data, extension, mime_type, created, folder = self._prepare(
            data, prescription_id, artifact_class, original_name, mime_type)
        path = None
        try:
            await aiofiles.os.makedirs(folder, exist_ok=True)
            for candidate in self._candidate_names(folder, artifact_class, extension, created):
                handle = await self._open_exclusive_async(folder, candidate)
                if handle is None:
                    continue
                path = candidate
                try:
                    await handle.write(data)
                finally:
                    await handle.close()
                break
        except OSError as e:
            if path is not None:
                await asyncio.to_thread(path.unlink, missing_ok=True)
            logger.error(f"Could not save {artifact_class.value} artifact for {prescription_id}: {str(e)}")
            return ArtifactSaveResult(success=False, error=str(e))

        record = self._record(path, artifact_class, prescription_id, len(data), created, mime_type, original_name)
        logger.info(f"Saved {record.relative_path} ({record.size} bytes)")
        return ArtifactSaveResult(success=True, artifact=record)

    def _prescription_dirs(self, prescription_id: str) -> Iterator[Tuple[ArtifactClass, Path]]:
        for artifact_class in ArtifactClass:
            class_dir = self.root / artifact_class.value
            if not class_dir.is_dir():
                continue
            for year_dir in _subdirs(class_dir, _YEAR_RE):
                for month_dir in _subdirs(year_dir, _MONTH_DAY_RE):
                    for day_dir in _subdirs(month_dir, _MONTH_DAY_RE):
                        candidate = day_dir / prescription_id
                        if candidate.is_dir():
                            yield artifact_class, candidate

    def _record_from_disk(self, path: Path, artifact_class: ArtifactClass, prescription_id: str,
                          size: int, mtime: float) -> ArtifactRecord:
        match = _FILENAME_RE.match(path.name)
        if match:
            uploaded_at = datetime.fromtimestamp(int(match.group("millis")) / 1000, tz=timezone.utc)
        else:
            uploaded_at = datetime.fromtimestamp(mtime, tz=timezone.utc)
        return self._record(path, artifact_class, prescription_id, size, uploaded_at)

    def list(self, prescription_id: str) -> ArtifactListResult:
        """Every artifact stored for a prescription, across all classes and dates."""
        prescription_id = self.check_prescription_id(prescription_id)
        files = []
        try:
            for artifact_class, folder in self._prescription_dirs(prescription_id):
                for entry in sorted(folder.iterdir()):
                    try:
                        stats = entry.stat()
                    except FileNotFoundError:
                        continue
                    if entry.is_file():
                        files.append(self._record_from_disk(entry, artifact_class, prescription_id,
                                                            stats.st_size, stats.st_mtime))
        except OSError as e:
            logger.error(f"Could not list artifacts for {prescription_id}: {str(e)}")
            return ArtifactListResult(success=False, error=str(e))
        return ArtifactListResult(success=True, files=files, count=len(files))

    def delete(self, prescription_id: str) -> ArtifactDeleteResult:
        """Remove all artifacts of a prescription, then prune folders left empty.

        Individual unlink failures are logged and counted; the rest of the
        batch still runs.
        """
        listing = self.list(prescription_id)
        if not listing.success:
            return ArtifactDeleteResult(success=False, error=listing.error)

        deleted_count = 0
        failed_count = 0
        for record in listing.files:
            try:
                Path(record.absolute_path).unlink()
                deleted_count += 1
            except OSError as e:
                failed_count += 1
                logger.warning(f"Could not delete {record.relative_path}: {str(e)}")

        for artifact_class in ArtifactClass:
            class_dir = self.root / artifact_class.value
            if class_dir.is_dir():
                self.prune_empty_dirs(class_dir)

        logger.info(f"Deleted {deleted_count} artifacts for {prescription_id} ({failed_count} failed)")
        return ArtifactDeleteResult(
            success=True,
            deleted_count=deleted_count,
            failed_count=failed_count,
            message=f"Deleted {deleted_count} files for prescription {prescription_id}",
        )

    def prune_empty_dirs(self, directory: Path) -> int:
        """Remove empty sub-directories of `directory`, children before parents. `directory` itself stays."""
        removed = 0
        try:
            children = [p for p in sorted(directory.iterdir()) if p.is_dir() and not p.is_symlink()]
        except OSError as e:
            logger.warning(f"Could not scan {directory} for empty folders: {str(e)}")
            return removed
        for child in children:
            removed += self.prune_empty_dirs(child)
            try:
                if any(child.iterdir()):
                    continue
                child.rmdir()
                removed += 1
            except OSError as e:
                # A concurrent save may have just written into it
                logger.debug(f"Skipped pruning {child}: {str(e)}")
        return removed

    async def list_async(self, prescription_id: str) -> ArtifactListResult:
        return await asyncio.to_thread(self.list, prescription_id)

    async def delete_async(self, prescription_id: str) -> ArtifactDeleteResult:
        return await asyncio.to_thread(self.delete, prescription_id)

    def resolve(self, relative_path: str) -> Path:
        """Map a relative path or served URL back to a file under the root."""
        if relative_path.startswith(self.url_prefix + "/"):
            relative_path = relative_path[len(self.url_prefix) + 1:]
        root = self.root.resolve()
        candidate = (root / relative_path).resolve()
        if root not in candidate.parents:
            raise ValidationError(f"'{relative_path}' is outside the artifact store")
        return candidate

    def read(self, relative_path: str) -> bytes:
        path = self.resolve(relative_path)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise NotFoundError("Artifact", relative_path)
        except OSError as e:
            logger.error(f"Could not read artifact {path}: {str(e)}")
            raise StorageIOError(f"Could not read artifact {relative_path}: {e}") from e
