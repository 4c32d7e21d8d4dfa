"""Shared fixtures: every test gets its own temp and storage directories."""

import io
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from chunked_upload.auth import AuthHandler, UploadGuard
from chunked_upload.config import Settings, UploadConfig
from chunked_upload.main import create_app
from chunked_upload.orchestrator import UploadOrchestrator, UploadPart, UploadRequest
from chunked_upload.persistence import LocalFilePersister
from chunked_upload.schemas import ChunkHeaders, User


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        SECRET_KEY="test-secret",
        TEMP_UPLOAD_DIR=str(tmp_path / "temp"),
        PERM_UPLOAD_DIR=str(tmp_path / "perm"),
        SERVER_UPLOAD_LIMIT="1K",
        SERVER_POST_SIZE_LIMIT="2K",
        COPY_BUFFER_SIZE=16,
    )


@pytest.fixture
def temp_dir(settings):
    return UploadConfig.from_settings(settings).temp_dir


@pytest.fixture
def perm_dir(tmp_path):
    return tmp_path / "perm"


@pytest.fixture
def auth(settings):
    return AuthHandler(settings)


@pytest.fixture
def user():
    return User(username="alice", scopes=["upload"])


@pytest.fixture
def security_id(auth, user):
    return auth.issue_security_token(user.username, "Uploads")


@pytest.fixture
def persister(perm_dir):
    return LocalFilePersister(perm_dir, url_prefix="/assets")


@pytest.fixture
def orchestrator(settings, auth, persister):
    config = UploadConfig.from_settings(settings)
    guard = UploadGuard(auth, config.field_name)
    return UploadOrchestrator(config, guard, persister)


@pytest.fixture
def make_request(user, security_id):
    def _make(
        data: bytes,
        file_name: Optional[str] = "report.pdf",
        file_size: Optional[int] = None,
        offset: Optional[int] = None,
        token: Optional[str] = "default",
        request_user: Optional[User] = "default",
        stream=None,
        filename: Optional[str] = None,
    ) -> UploadRequest:
        chunk = None
        if file_name is not None and file_size is not None:
            chunk = ChunkHeaders(file_name=file_name, file_size=file_size, offset=offset)
        part = UploadPart(
            filename="blob" if chunk else file_name,
            content_type="application/octet-stream",
            file=stream if stream is not None else io.BytesIO(data),
        )
        return UploadRequest(
            user=user if request_user == "default" else request_user,
            security_token=security_id if token == "default" else token,
            parts=[part],
            chunk=chunk,
            filename=filename,
        )

    return _make


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def app_auth(app):
    return app.state.auth


@pytest.fixture
def bearer(app_auth):
    token = app_auth.create_access_token("alice", scopes=["upload"])
    return {"Authorization": f"Bearer {token}"}
