import hashlib
import re
from pathlib import Path
from typing import Optional, Union

NO_TOKEN = "none"

_SESSION_KEY = re.compile(r"[0-9a-f]{64}")


def derive_session_key(security_token: Optional[str], original_filename: str) -> str:
    """
    Opaque identifier for an in-progress chunked upload.

    The security token differs between form loads, so two uploads of the same
    file name from different forms never share a temp artifact. The digest is
    only ever used as a file name; it is never reversed.
    """
    token = security_token or NO_TOKEN
    data = f"{token}{original_filename}".encode("utf-8", "surrogateescape")
    return hashlib.sha256(data).hexdigest()


def is_session_key(value: str) -> bool:
    return bool(_SESSION_KEY.fullmatch(value))


def temp_artifact_path(temp_dir: Union[str, Path], session_key: str) -> Path:
    if not is_session_key(session_key):
        raise ValueError("Session key must be a sha256 hex digest")
    return Path(temp_dir) / session_key
