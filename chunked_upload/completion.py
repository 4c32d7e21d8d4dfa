from pathlib import Path
from typing import Union

from .errors import ChunkOverflowError


def bytes_written(temp_path: Union[str, Path]) -> int:
    try:
        return Path(temp_path).stat().st_size
    except FileNotFoundError:
        return 0


def is_complete(temp_path: Union[str, Path], declared_total_size: int) -> bool:
    """
    True once the artifact on disk is exactly the declared size.

    The size is always read from the filesystem. Growing past the declared
    size is reported as an error rather than as completion.
    """
    size = bytes_written(temp_path)
    if size > declared_total_size:
        raise ChunkOverflowError(
            f"Received {size} bytes, more than the declared {declared_total_size}"
        )
    return size == declared_total_size
