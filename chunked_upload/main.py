import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from .auth import AuthHandler, UploadGuard, get_current_user
from .cleanup import cleanup_task
from .config import Settings, UploadConfig, settings as default_settings
from .logging import setup_logging
from .models import SessionLocks, SessionStore
from .orchestrator import UploadOrchestrator, UploadPart, UploadRequest
from .persistence import LocalFilePersister
from .schemas import UploadConfigResponse, User

logger = logging.getLogger(__name__)

SECURITY_FIELD = "SecurityID"


def upload_response(payload: Dict[str, Any], status_code: int = 200) -> Response:
    # the uploader expects a JSON array served as text/plain
    return Response(
        content=json.dumps([payload]),
        status_code=status_code,
        media_type="text/plain",
    )


def _form_text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings
    setup_logging(level=settings.LOG_LEVEL, log_dir=settings.LOG_DIR)

    config = UploadConfig.from_settings(settings)
    auth = AuthHandler(settings)
    store = SessionStore(config.temp_dir)
    locks = SessionLocks()
    persister = LocalFilePersister(
        settings.PERM_UPLOAD_DIR,
        url_prefix=settings.PUBLIC_URL_PREFIX,
        allowed_extensions=settings.ALLOWED_EXTENSIONS,
        max_file_size=settings.MAX_FILE_SIZE,
    )
    guard = UploadGuard(
        auth,
        config.field_name,
        disabled=config.disabled,
        readonly=config.readonly,
        csrf_enabled=settings.CSRF_ENABLED,
    )
    orchestrator = UploadOrchestrator(config, guard, persister, store=store, locks=locks)
    logger.info(
        "Accepting uploads on field %r, max chunk size %d bytes",
        config.field_name, config.max_chunk_size,
    )

    app = FastAPI()
    app.state.settings = settings
    app.state.auth = auth
    app.state.orchestrator = orchestrator

    @app.post("/upload")
    async def upload_file(request: Request, user: User = Depends(get_current_user)):
        form = await request.form()
        try:
            field = config.field_name
            values = form.getlist(field) + form.getlist(f"{field}[]")
            parts = [
                UploadPart(filename=value.filename, content_type=value.content_type, file=value.file)
                for value in values
                if isinstance(value, UploadFile)
            ]
            upload_request = UploadRequest(
                user=user,
                security_token=_form_text(form.get(SECURITY_FIELD)),
                parts=parts,
                filename=_form_text(form.get("filename")),
                headers=request.headers,
            )
            outcome = await run_in_threadpool(orchestrator.handle, upload_request)
        finally:
            await form.close()
        return upload_response(outcome.payload, outcome.status_code)

    @app.get("/upload/config", response_model=UploadConfigResponse)
    async def upload_config(user: User = Depends(get_current_user)):
        return UploadConfigResponse(
            maxChunkSize=config.max_chunk_size,
            fieldName=config.field_name,
            SecurityID=auth.issue_security_token(user.username, config.field_name),
        )

    @app.get("/upload/status")
    async def get_status(
        filename: str,
        SecurityID: Optional[str] = None,
        user: User = Depends(get_current_user),
    ):
        progress = orchestrator.progress(SecurityID, filename, username=user.username)
        if progress is None:
            return {"status": "not found"}
        return {"status": "pending", **progress}

    @app.get("/upload/fileexists")
    async def file_exists(filename: str, user: User = Depends(get_current_user)):
        return {"exists": persister.exists(filename)}

    @app.on_event("startup")
    async def startup():
        app.state.cleanup = asyncio.create_task(
            cleanup_task(store, locks, settings.CLEANUP_INTERVAL, settings.STALE_THRESHOLD)
        )

    @app.on_event("shutdown")
    async def shutdown():
        task = getattr(app.state, "cleanup", None)
        if task is not None:
            task.cancel()

    return app
