import logging
import os
from pathlib import Path
from typing import BinaryIO, Optional, Union

from .errors import ChunkIOError, OffsetMismatchError

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 64 * 1024

ChunkSource = Union[str, Path, BinaryIO]


def _copy(source: BinaryIO, dest: BinaryIO, buffer_size: int) -> int:
    written = 0
    while True:
        buff = source.read(buffer_size)
        if not buff:
            break
        dest.write(buff)
        written += len(buff)
    return written


def _rollback(temp_path: Path, created: bool, size_before: int) -> None:
    try:
        if created:
            temp_path.unlink(missing_ok=True)
        else:
            os.truncate(temp_path, size_before)
    except OSError:
        logger.exception("Could not roll back partial chunk on %s", temp_path.name)


def append_chunk(
    temp_path: Union[str, Path],
    source: ChunkSource,
    expected_offset: Optional[int] = None,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> int:
    """
    Append one chunk onto the temp artifact, creating it on the first chunk.

    ``source`` is the uploaded chunk, either a path or a readable binary file.
    When ``expected_offset`` is given it must equal the artifact's current size,
    otherwise nothing is written. A failed append leaves the artifact exactly
    as it was before the call.

    Returns the number of bytes appended.
    """
    temp_path = Path(temp_path)
    created = not temp_path.exists()
    size_before = 0 if created else temp_path.stat().st_size

    if expected_offset is not None and expected_offset != size_before:
        raise OffsetMismatchError(size_before, expected_offset)

    try:
        with open(temp_path, "wb" if created else "ab") as out_fp:
            if isinstance(source, (str, Path)):
                with open(source, "rb") as in_fp:
                    written = _copy(in_fp, out_fp, buffer_size)
            else:
                written = _copy(source, out_fp, buffer_size)
            out_fp.flush()
            os.fsync(out_fp.fileno())
    except OSError as exc:
        logger.exception("Appending chunk to %s failed", temp_path.name)
        _rollback(temp_path, created, size_before)
        raise ChunkIOError("Could not store the uploaded chunk") from exc

    logger.debug("Appended %d bytes to %s (now %d)", written, temp_path.name, size_before + written)
    return written
