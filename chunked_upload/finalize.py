import errno
import logging
import os
from pathlib import Path
from typing import Union

from .errors import FinalizationError

logger = logging.getLogger(__name__)


def finalize_artifact(temp_path: Union[str, Path], target_path: Union[str, Path]) -> Path:
    """
    Atomically rename a completed temp artifact to ``target_path``.

    Both paths must live on the same filesystem. There is no copy+delete
    fallback; on failure the temp artifact stays where it was.
    """
    temp_path = Path(temp_path)
    target_path = Path(target_path)
    try:
        os.replace(temp_path, target_path)
    except OSError as exc:
        if exc.errno == errno.EXDEV:
            logger.error("Cannot finalize %s: target is on another device", temp_path.name)
        else:
            logger.exception("Cannot finalize %s", temp_path.name)
        raise FinalizationError("Could not finalize the upload") from exc
    logger.info("Finalized %s -> %s", temp_path.name, target_path.name)
    return target_path
