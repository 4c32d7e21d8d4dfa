"""Single-file persistence: what happens to a file once it is whole.

The orchestrator only depends on the :class:`FilePersister` protocol;
:class:`LocalFilePersister` is the default used by the HTTP app.
"""

import json
import logging
import re
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable, Optional, Protocol, Union

from .errors import StorageError, UploadValidationError
from .schemas import FileAttributes

logger = logging.getLogger(__name__)

_SAFE_EXTENSION = re.compile(r"^\.[A-Za-z0-9]{1,16}$")


@dataclass
class IncomingFile:
    """A complete upload, either finalized on disk (``path``) or still the request part (``stream``)."""

    name: str
    size: int
    content_type: Optional[str] = None
    path: Optional[Path] = None
    stream: Optional[BinaryIO] = None

    def discard(self) -> None:
        if self.path is not None:
            self.path.unlink(missing_ok=True)


class FilePersister(Protocol):
    def validate(self, file: IncomingFile) -> None: ...

    def persist(self, file: IncomingFile) -> FileAttributes: ...

    def exists(self, filename: str) -> bool: ...


def display_name(filename: str) -> str:
    """Last path component of a client-supplied name, for either separator."""
    return filename.replace("\\", "/").rsplit("/", 1)[-1].strip()


class LocalFilePersister:
    meta_suffix = ".meta.json"

    def __init__(
        self,
        storage_dir: Union[str, Path],
        url_prefix: str = "/assets",
        allowed_extensions: Iterable[str] = (),
        max_file_size: Optional[int] = None,
    ):
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.url_prefix = url_prefix.rstrip("/")
        self.allowed_extensions = {ext.lower().lstrip(".") for ext in allowed_extensions}
        self.max_file_size = max_file_size

    def validate(self, file: IncomingFile) -> None:
        try:
            name = display_name(file.name)
            if not name:
                raise UploadValidationError("File name is empty")
            extension = Path(name).suffix.lower().lstrip(".")
            if self.allowed_extensions and extension not in self.allowed_extensions:
                raise UploadValidationError(f"Extension '{extension}' is not allowed")
            if self.max_file_size is not None and file.size > self.max_file_size:
                raise UploadValidationError(
                    f"File is too large ({file.size} bytes, maximum {self.max_file_size})"
                )
        except UploadValidationError:
            file.discard()
            raise

    def persist(self, file: IncomingFile) -> FileAttributes:
        name = display_name(file.name)
        suffix = Path(name).suffix
        file_id = uuid.uuid4().hex
        stored_name = file_id + (suffix.lower() if _SAFE_EXTENSION.match(suffix) else "")
        dest = self.storage_dir / stored_name

        meta_path = self.storage_dir / f"{file_id}{self.meta_suffix}"
        try:
            if file.path is not None:
                shutil.move(str(file.path), str(dest))
            elif file.stream is not None:
                file.stream.seek(0)
                with open(dest, "wb") as out_fp:
                    shutil.copyfileobj(file.stream, out_fp)
            else:
                raise StorageError("Nothing to store")

            attributes = FileAttributes(
                id=file_id,
                name=name,
                filename=stored_name,
                size=dest.stat().st_size,
                type=file.content_type,
                url=f"{self.url_prefix}/{stored_name}",
            )
            meta_path.write_text(attributes.model_dump_json(), encoding="utf-8")
        except OSError as exc:
            logger.exception("Storing %s failed", stored_name)
            dest.unlink(missing_ok=True)
            file.discard()
            raise StorageError("Could not store the file") from exc

        logger.info("Stored %s as %s (%d bytes)", name, stored_name, attributes.size)
        return attributes

    def exists(self, filename: str) -> bool:
        name = display_name(filename)
        for meta_path in self.storage_dir.glob(f"*{self.meta_suffix}"):
            try:
                if json.loads(meta_path.read_text(encoding="utf-8")).get("name") == name:
                    return True
            except (OSError, ValueError):
                logger.warning("Skipping unreadable metadata %s", meta_path.name)
        return False
