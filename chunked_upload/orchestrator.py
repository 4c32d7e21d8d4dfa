"""Request-level state machine for chunked and whole-file uploads.

Each request is one of:

* a chunk (``ChunkHeaders`` present): appended to the temp artifact derived
  from the security token and the original file name, then checked against
  the declared total size. Incomplete uploads answer with progress; a
  complete one is renamed to a finalized path and handed on.
* a whole file (no chunk headers): handed on directly.

"Handed on" means the injected :class:`~.persistence.FilePersister` validates
and stores the file, producing the file attributes returned to the client.
"""

import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, BinaryIO, Dict, List, Mapping, Optional
from urllib.parse import unquote

from pydantic import ValidationError

from .appender import append_chunk
from .auth import UploadGuard
from .completion import bytes_written, is_complete
from .config import UploadConfig
from .errors import (
    BadRequestError,
    ChunkIOError,
    ChunkOverflowError,
    SizeMismatchError,
    UploadError,
)
from .finalize import finalize_artifact
from .identity import derive_session_key
from .models import SessionLocks, SessionStore, UploadSession
from .persistence import FilePersister, IncomingFile
from .schemas import ChunkHeaders, User

logger = logging.getLogger(__name__)

FINALIZED_SUFFIX = ".complete"


class UploadState(str, enum.Enum):
    REJECTED = "rejected"
    AWAITING_MORE_CHUNKS = "awaiting_more_chunks"
    READY_TO_PERSIST = "ready_to_persist"
    PERSISTED = "persisted"
    FAILED = "failed"


@dataclass
class UploadPart:
    filename: Optional[str]
    content_type: Optional[str]
    file: BinaryIO


@dataclass
class UploadRequest:
    user: Optional[User]
    security_token: Optional[str]
    parts: List[UploadPart]
    chunk: Optional[ChunkHeaders] = None
    filename: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass
class UploadOutcome:
    state: UploadState
    payload: Dict[str, Any]
    status_code: int = 200
    incoming: Optional[IncomingFile] = field(default=None, repr=False)


def _stream_size(stream: BinaryIO) -> int:
    stream.seek(0, 2)
    size = stream.tell()
    stream.seek(0)
    return size


def parse_chunk_headers(headers: Mapping[str, str]) -> Optional[ChunkHeaders]:
    """Chunk description from the X-File-* headers; None for a whole-file upload."""
    file_name = headers.get("x-file-name")
    if not file_name:
        return None
    try:
        return ChunkHeaders(
            file_name=unquote(file_name),
            file_size=headers.get("x-file-size"),
            file_type=headers.get("x-file-type"),
            offset=headers.get("x-file-offset"),
        )
    except ValidationError:
        raise BadRequestError("Invalid chunk headers")


class UploadOrchestrator:
    def __init__(
        self,
        config: UploadConfig,
        guard: UploadGuard,
        persister: FilePersister,
        store: Optional[SessionStore] = None,
        locks: Optional[SessionLocks] = None,
    ):
        self.config = config
        self.guard = guard
        self.persister = persister
        self.store = store or SessionStore(config.temp_dir)
        self.locks = locks or SessionLocks()

    def handle(self, request: UploadRequest) -> UploadOutcome:
        try:
            self.guard.check(request.user, request.security_token)
        except UploadError as exc:
            logger.warning("Upload rejected: %s", exc.message)
            return UploadOutcome(UploadState.REJECTED, exc.to_payload(), exc.status_code)

        try:
            outcome = self.receive(request)
        except UploadError as exc:
            return UploadOutcome(UploadState.FAILED, exc.to_payload(), exc.status_code)

        if outcome.state is UploadState.READY_TO_PERSIST:
            return self.persist(outcome.incoming)
        return outcome

    def receive(self, request: UploadRequest) -> UploadOutcome:
        """Take in one request's part, up to READY_TO_PERSIST or AWAITING_MORE_CHUNKS."""
        if len(request.parts) != 1:
            raise BadRequestError("Expected exactly one uploaded file")
        part = request.parts[0]

        if request.chunk is None:
            request.chunk = parse_chunk_headers(request.headers)
        if request.chunk is not None:
            return self.receive_chunk(request, part)

        name = request.filename or part.filename or ""
        incoming = IncomingFile(
            name=name,
            size=_stream_size(part.file),
            content_type=part.content_type,
            stream=part.file,
        )
        return UploadOutcome(UploadState.READY_TO_PERSIST, {}, incoming=incoming)

    def receive_chunk(self, request: UploadRequest, part: UploadPart) -> UploadOutcome:
        chunk = request.chunk
        session_key = derive_session_key(request.security_token, chunk.file_name)
        username = request.user.username if request.user else None

        with self.locks.hold(session_key):
            session = self._open_session(session_key, chunk, username)
            temp_path = self.store.artifact_path(session_key)

            try:
                append_chunk(
                    temp_path,
                    part.file,
                    expected_offset=chunk.offset,
                    buffer_size=self.config.copy_buffer_size,
                )
            except UploadError:
                if not temp_path.exists():
                    self.store.delete(session_key)
                raise

            try:
                complete = is_complete(temp_path, session.declared_total_size)
            except ChunkOverflowError:
                logger.warning(
                    "Discarding upload %s: %d bytes exceed declared %d",
                    session_key[:12], bytes_written(temp_path), session.declared_total_size,
                )
                self.discard(session_key)
                raise

            if not complete:
                session.last_updated = datetime.now()
                self.store.save(session)
                return UploadOutcome(UploadState.AWAITING_MORE_CHUNKS, self._progress(session))

            # unique per completion; persisted after the lock is released
            target = temp_path.with_name(f"{session_key}.{uuid.uuid4().hex}{FINALIZED_SUFFIX}")
            finalize_artifact(temp_path, target)
            self.store.delete(session_key)

        logger.info(
            "Chunked upload of %r complete (%d bytes)",
            session.original_filename, session.declared_total_size,
        )
        incoming = IncomingFile(
            name=session.original_filename,
            size=session.declared_total_size,
            content_type=chunk.file_type or session.content_type,
            path=target,
        )
        return UploadOutcome(UploadState.READY_TO_PERSIST, {}, incoming=incoming)

    def persist(self, incoming: IncomingFile) -> UploadOutcome:
        try:
            self.persister.validate(incoming)
            attributes = self.persister.persist(incoming)
        except UploadError as exc:
            logger.warning("Could not persist %r: %s", incoming.name, exc.message)
            return UploadOutcome(UploadState.FAILED, exc.to_payload(), exc.status_code)
        return UploadOutcome(UploadState.PERSISTED, attributes.model_dump())

    def progress(
        self, security_token: Optional[str], filename: str, username: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        session = self.store.get(derive_session_key(security_token, filename))
        if session is None or (username is not None and session.username != username):
            return None
        payload = self._progress(session)
        payload["createdAt"] = session.created_at.isoformat()
        payload["lastUpdated"] = session.last_updated.isoformat()
        return payload

    def discard(self, session_key: str) -> None:
        self.store.artifact_path(session_key).unlink(missing_ok=True)
        self.store.delete(session_key)

    def _open_session(
        self, session_key: str, chunk: ChunkHeaders, username: Optional[str]
    ) -> UploadSession:
        session = self.store.get(session_key)
        artifact_exists = self.store.artifact_path(session_key).exists()

        if session is not None and artifact_exists:
            if session.declared_total_size != chunk.file_size:
                raise SizeMismatchError(
                    f"Declared size {chunk.file_size} does not match "
                    f"{session.declared_total_size} from the first chunk"
                )
            return session

        if artifact_exists:
            # artifact without a record: left behind by an interrupted request
            logger.warning("Restarting upload %s with a stale artifact", session_key[:12])
            try:
                self.store.artifact_path(session_key).unlink()
            except OSError as exc:
                raise ChunkIOError("Could not restart the upload") from exc

        logger.info(
            "Starting chunked upload of %r (%d bytes) for %s",
            chunk.file_name, chunk.file_size, username,
        )
        return self.store.create(
            session_key,
            original_filename=chunk.file_name,
            declared_total_size=chunk.file_size,
            content_type=chunk.file_type,
            username=username,
        )

    @staticmethod
    def _progress(session: UploadSession) -> Dict[str, Any]:
        written = session.bytes_written
        return {
            "ok": f"{written}/{session.declared_total_size}",
            "bytesWritten": written,
            "totalSize": session.declared_total_size,
        }
