"""
File-backed record store.

One property list per record, named after the record, directly under the
store root. Writes go to a temporary file in the same directory and reach
the final name only through an atomic rename (update) or hard link (create),
so readers never see a partially written manifest.
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

from util.logging import StructuredLogger, logger as default_logger

from . import codec
from .errors import ConflictError, NotFoundError, ServerError
from .paths import is_valid_record_name, resolve_record_path
from .schema import ManifestRecord

TEMP_MARKER = ".tmp."


class RecordStore:
    """Reads and atomically writes manifest records."""

    def __init__(self, root: Path, logger: Optional[StructuredLogger] = None,
                 file_mode: int = 0o644, owner: Optional[str] = None, group: Optional[str] = None):
        self.root = Path(root)
        self.logger = logger or default_logger
        self.file_mode = file_mode
        self.owner = owner
        self.group = group

    def path_for(self, record_id: str) -> Path:
        """Resolve the safe path of a record."""
        return resolve_record_path(self.root, record_id)

    def exists(self, record_id: str) -> bool:
        return self.path_for(record_id).is_file()

    def raw(self, record_id: str) -> bytes:
        """Return the stored document bytes."""
        path = self.path_for(record_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise NotFoundError(
                f"Computer manifest {record_id} does not exist.",
                log_result="FAILURE - MANIFEST NOT FOUND",
            )
        except OSError as e:
            self.logger.log_store_operation("read", record_id, "failed", {"error": str(e)})
            raise ServerError("Error reading manifest", log_result="FAILURE - EXCEPTION", detail=str(e)) from e

    def load(self, record_id: str) -> ManifestRecord:
        """
        Load a record.

        Raises:
            NotFoundError: no manifest with this name.
            ServerError: the file cannot be read or is not a valid manifest.
        """
        payload = self.raw(record_id)
        try:
            record = codec.decode(record_id, payload)
        except codec.CodecError as e:
            self.logger.log_store_operation("decode", record_id, "failed", {"error": str(e)})
            raise ServerError("Error reading manifest", log_result="FAILURE - EXCEPTION", detail=str(e)) from e

        self.logger.log_store_operation("load", record_id)
        return record

    def save(self, record_id: str, record: ManifestRecord) -> None:
        """Replace a record atomically."""
        path = self.path_for(record_id)
        temp_path = self._write_temp(path, record)
        try:
            os.replace(temp_path, path)
        except OSError as e:
            self._discard(temp_path)
            self.logger.log_store_operation("save", record_id, "failed", {"error": str(e)})
            raise ServerError("Error saving manifest", log_result="FAILURE - EXCEPTION", detail=str(e)) from e

        self._apply_permissions(path)
        self.logger.log_store_operation("save", record_id)

    def create(self, record_id: str, record: ManifestRecord) -> None:
        """
        Create a record only if none exists.

        The complete document is written to a temporary file first and then
        hard-linked to the final name. Linking fails if the name is taken, so
        exactly one of several concurrent creators succeeds.

        Raises:
            ConflictError: a manifest with this name already exists.
            ServerError: the write failed.
        """
        path = self.path_for(record_id)
        temp_path = self._write_temp(path, record)
        try:
            os.link(temp_path, path)
        except FileExistsError:
            self.logger.log_store_operation("create", record_id, "conflict")
            raise ConflictError(
                f"Computer manifest {record_id} already exists.",
                log_result="FAILURE - EXISTING MANIFEST",
            )
        except OSError as e:
            self.logger.log_store_operation("create", record_id, "failed", {"error": str(e)})
            raise ServerError("Error creating manifest", log_result="FAILURE - EXCEPTION", detail=str(e)) from e
        finally:
            self._discard(temp_path)

        self._apply_permissions(path)
        self.logger.log_store_operation("create", record_id)

    def list_ids(self) -> List[str]:
        """List stored record names."""
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name for entry in self.root.iterdir()
            if entry.is_file() and TEMP_MARKER not in entry.name and is_valid_record_name(entry.name)
        )

    def is_writable(self) -> bool:
        return self.root.is_dir() and os.access(self.root, os.W_OK)

    def _write_temp(self, path: Path, record: ManifestRecord) -> str:
        try:
            payload = codec.encode(record)
        except (TypeError, ValueError, OverflowError) as e:
            raise ServerError("Error saving manifest", log_result="FAILURE - EXCEPTION", detail=str(e)) from e

        try:
            fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}{TEMP_MARKER}")
        except OSError as e:
            self.logger.log_store_operation("write", path.name, "failed", {"error": str(e)})
            raise ServerError("Error saving manifest", log_result="FAILURE - EXCEPTION", detail=str(e)) from e

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            self._discard(temp_path)
            self.logger.log_store_operation("write", path.name, "failed", {"error": str(e)})
            raise ServerError("Failed to write manifest file", log_result="FAILURE - EXCEPTION", detail=str(e)) from e

        return temp_path

    def _discard(self, temp_path: str) -> None:
        try:
            os.unlink(temp_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Could not remove temporary file {temp_path}: {e}")

    def _apply_permissions(self, path: Path) -> None:
        try:
            os.chmod(path, self.file_mode)
            if self.owner or self.group:
                shutil.chown(path, user=self.owner, group=self.group)
        except (OSError, LookupError) as e:
            self.logger.warning(f"Could not set permissions on {path.name}: {e}")
