import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Set, Union

from pydantic import BaseModel, ValidationError

from .completion import bytes_written
from .errors import ChunkIOError, SessionBusyError
from .identity import is_session_key, temp_artifact_path

logger = logging.getLogger(__name__)


class UploadSession(BaseModel):
    session_key: str
    original_filename: str
    declared_total_size: int
    content_type: Optional[str] = None
    username: Optional[str] = None
    temp_file: str
    created_at: datetime
    last_updated: datetime

    @property
    def bytes_written(self) -> int:
        # the artifact on disk is the source of truth, never a counter
        return bytes_written(self.temp_file)


class SessionStore:
    """Session records kept as ``<session_key>.json`` beside the temp artifacts."""

    suffix = ".json"

    def __init__(self, temp_dir: Union[str, Path]):
        self.temp_dir = Path(temp_dir)
        self.temp_dir.mkdir(parents=True, exist_ok=True)

    def _record_path(self, session_key: str) -> Path:
        return temp_artifact_path(self.temp_dir, session_key).with_suffix(self.suffix)

    def artifact_path(self, session_key: str) -> Path:
        return temp_artifact_path(self.temp_dir, session_key)

    def get(self, session_key: str) -> Optional[UploadSession]:
        path = self._record_path(session_key)
        try:
            return UploadSession.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except ValidationError:
            logger.warning("Ignoring unreadable session record %s", path.name)
            return None

    def save(self, session: UploadSession) -> None:
        path = self._record_path(session.session_key)
        tmp = path.with_suffix(".json.tmp")
        try:
            tmp.write_text(session.model_dump_json(), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.exception("Could not write session record %s", path.name)
            raise ChunkIOError("Could not record the upload session") from exc

    def delete(self, session_key: str) -> None:
        self._record_path(session_key).unlink(missing_ok=True)

    def all(self) -> List[UploadSession]:
        sessions = []
        for path in sorted(self.temp_dir.glob(f"*{self.suffix}")):
            if not is_session_key(path.stem):
                continue
            session = self.get(path.stem)
            if session is not None:
                sessions.append(session)
        return sessions

    def create(
        self,
        session_key: str,
        original_filename: str,
        declared_total_size: int,
        content_type: Optional[str] = None,
        username: Optional[str] = None,
    ) -> UploadSession:
        now = datetime.now()
        session = UploadSession(
            session_key=session_key,
            original_filename=original_filename,
            declared_total_size=declared_total_size,
            content_type=content_type,
            username=username,
            temp_file=str(self.artifact_path(session_key)),
            created_at=now,
            last_updated=now,
        )
        self.save(session)
        return session


class SessionLocks:
    """Per session-key mutex. A second holder is refused, never queued."""

    def __init__(self):
        self._guard = threading.Lock()
        self._held: Set[str] = set()

    def is_held(self, session_key: str) -> bool:
        with self._guard:
            return session_key in self._held

    @contextmanager
    def hold(self, session_key: str) -> Iterator[None]:
        with self._guard:
            if session_key in self._held:
                raise SessionBusyError()
            self._held.add(session_key)
        try:
            yield
        finally:
            with self._guard:
                self._held.discard(session_key)
