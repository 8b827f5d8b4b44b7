from __future__ import annotations

import logging
import mimetypes
import os
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from werkzeug.exceptions import ClientDisconnected
from werkzeug.utils import secure_filename

from app.portal.constants import ALLOWED_MIME_TYPES, MAX_UPLOAD_BYTES
from app.portal.modules.documents.errors import DISALLOWED_TYPE, NO_FILE, TOO_LARGE, StagingError, ValidationError

logger = logging.getLogger(__name__)

GENERIC_MIME_TYPE = "application/octet-stream"

for _ext, _mime in (
    (".docx", "application/vnd.openxmlformats-officedocument.wordprocessingml.document"),
    (".xlsx", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"),
    (".pptx", "application/vnd.openxmlformats-officedocument.presentationml.presentation"),
):
    mimetypes.add_type(_mime, _ext)


@dataclass(frozen=True)
class StagingHandle:
    """Bytes sitting on local disk, waiting to be committed. Never persisted."""

    id: str
    temp_path: Path
    original_name: str
    mime_type: str
    size: int
    timestamp: float


def display_filename(filename: str | None) -> str:
    # Browsers on Windows may send a full client-side path.
    name = (filename or "").replace("\\", "/").rsplit("/", 1)[-1].strip()
    return name[:255]


def file_extension(filename: str) -> str:
    safe = secure_filename(filename or "")
    _, ext = os.path.splitext(safe)
    return ext.lower()


def resolve_mime_type(filename: str, declared: str | None = None) -> str:
    declared = (declared or "").split(";", 1)[0].strip().lower()
    if declared and declared != GENERIC_MIME_TYPE:
        return declared
    guessed, _ = mimetypes.guess_type(filename or "")
    return guessed or GENERIC_MIME_TYPE


class UploadStager:
    def __init__(
        self,
        staging_dir: str | Path,
        *,
        max_bytes: int = MAX_UPLOAD_BYTES,
        allowed_types: frozenset[str] | None = ALLOWED_MIME_TYPES,
        chunk_size: int = 64 * 1024,
    ) -> None:
        self.staging_dir = Path(staging_dir)
        self.max_bytes = max_bytes
        self.allowed_types = allowed_types
        self.chunk_size = chunk_size

    @staticmethod
    def measure(stream: BinaryIO) -> int | None:
        """Bytes left in a seekable stream, or None when it cannot seek."""
        try:
            pos = stream.tell()
            stream.seek(0, os.SEEK_END)
            end = stream.tell()
            stream.seek(pos)
        except (AttributeError, OSError, ValueError):
            return None
        return max(0, end - pos)

    def validate(self, *, original_name: str, mime_type: str, declared_size: int | None) -> None:
        if not original_name:
            raise ValidationError(NO_FILE, "No file provided")
        if declared_size == 0:
            raise ValidationError(NO_FILE, "Uploaded file is empty")
        if declared_size is not None and declared_size > self.max_bytes:
            raise ValidationError(TOO_LARGE, self.too_large_message())
        if self.allowed_types is not None and mime_type not in self.allowed_types:
            raise ValidationError(
                DISALLOWED_TYPE,
                "File type not supported. Please upload a PDF, Word, Excel, PowerPoint, or image file.",
            )

    def stage(
        self,
        stream: BinaryIO | None,
        *,
        original_name: str | None,
        mime_type: str | None = None,
        declared_size: int | None = None,
    ) -> StagingHandle:
        """
        Validate and copy an upload into the staging directory.

        Size and type checks run before touching disk. The size of a seekable
        stream is measured directly; the running byte count is only a backstop
        for streams that cannot seek. A partial file is removed on any failure.
        """
        name = display_filename(original_name)
        if stream is None:
            raise ValidationError(NO_FILE, "No file provided")
        mime = resolve_mime_type(name, mime_type)
        measured = self.measure(stream)
        self.validate(
            original_name=name,
            mime_type=mime,
            declared_size=measured if measured is not None else declared_size,
        )

        try:
            self.staging_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StagingError(f"Cannot create staging directory: {e}") from e

        staging_id = uuid.uuid4().hex
        ts = time.time()
        temp_path = self.staging_dir / f"{staging_id}-{int(ts * 1000)}{file_extension(name)}"

        size = 0
        try:
            with temp_path.open("xb") as out:
                while True:
                    chunk = stream.read(self.chunk_size)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > self.max_bytes:
                        raise ValidationError(TOO_LARGE, self.too_large_message())
                    out.write(chunk)
        except ValidationError:
            self._remove_partial(temp_path)
            raise
        except ClientDisconnected as e:
            self._remove_partial(temp_path)
            raise StagingError("Upload aborted by client.") from e
        except OSError as e:
            self._remove_partial(temp_path)
            raise StagingError(f"Failed to write staging file: {e}") from e
        except BaseException:
            self._remove_partial(temp_path)
            raise

        if size == 0:
            self._remove_partial(temp_path)
            raise ValidationError(NO_FILE, "Uploaded file is empty")

        logger.debug("Staged upload %s (%s bytes) at %s", name, size, temp_path)
        return StagingHandle(
            id=staging_id,
            temp_path=temp_path,
            original_name=name,
            mime_type=mime,
            size=size,
            timestamp=ts,
        )

    def discard(self, handle: StagingHandle) -> bool:
        """Best-effort removal of a staging file. Returns True if nothing is left on disk."""
        return self._remove_partial(handle.temp_path)

    def _remove_partial(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.warning("Failed to delete staging file %s: %s", path, e)
            return False
        return True

    def too_large_message(self) -> str:
        return f"File size must be less than {self.max_bytes // (1024 * 1024) or 1}MB"
