import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import AppSettings, load_settings
from .db import Database
from .engine import ConversationEngine, Upload
from .errors import FatalError, HarveyError, ValidationError
from .file_store import FileStore
from .llm import ModelClient
from .pricing_api import AnalysisClient, TransformationClient
from .reaper import SessionReaper
from .schemas import SetPricingContextRequest
from .session_store import SessionStore
from .tools import ToolDispatcher


logger = logging.getLogger("uvicorn.error")


def envelope(data: Any = None) -> Dict[str, Any]:
    return {"success": True, "data": data}


def error_envelope(message: str, status_code: int, detail: Optional[dict] = None) -> JSONResponse:
    content: Dict[str, Any] = {"success": False, "error": message}
    if detail:
        content["detail"] = detail
    return JSONResponse(status_code=status_code, content=content)


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_store(request: Request) -> SessionStore:
    return request.app.state.store


def get_engine(request: Request) -> ConversationEngine:
    return request.app.state.engine


def get_max_upload_bytes(request: Request) -> int:
    return request.app.state.max_upload_bytes


def validate_upload(file: UploadFile, settings: AppSettings) -> str:
    if not file.filename:
        raise ValidationError("Filename required.", field="file")
    raw_name = file.filename
    safe_name = Path(raw_name).name
    if safe_name != raw_name or safe_name in (".", ".."):
        raise ValidationError("Invalid filename.", field="file")
    if Path(safe_name).suffix.lower() not in settings.allowed_extensions:
        raise ValidationError("Only YAML files (.yaml, .yml) are allowed.", field="file")
    return safe_name


async def read_upload(file: UploadFile, settings: AppSettings, max_upload_bytes: int) -> Upload:
    name = validate_upload(file, settings)
    data = await file.read()
    if len(data) > max_upload_bytes:
        raise ValidationError(f"File too large (>{settings.upload_max_mb} MB).", field="file")
    if not data:
        raise ValidationError("File is empty.", field="file")
    return Upload(name=name, data=data)


router = APIRouter()


@router.post("/api/chat/session", status_code=201)
async def create_session(store: SessionStore = Depends(get_store)):
    session = await store.create()
    return envelope({"sessionId": session.id, "createdAt": session.created_at.isoformat()})


@router.get("/api/chat/session/{session_id}")
async def get_session(session_id: str, store: SessionStore = Depends(get_store)):
    return envelope(await store.session_info(session_id))


@router.delete("/api/chat/session/{session_id}")
async def delete_session(session_id: str, store: SessionStore = Depends(get_store)):
    await store.delete(session_id)
    return envelope({"sessionId": session_id, "deleted": True})


@router.post("/api/chat/session/{session_id}/message")
async def send_message(
    session_id: str,
    message: str = Form(...),
    files: Optional[List[UploadFile]] = File(None),
    settings: AppSettings = Depends(get_settings),
    engine: ConversationEngine = Depends(get_engine),
    max_upload_bytes: int = Depends(get_max_upload_bytes),
):
    if not message.strip():
        raise ValidationError("Message is required.", field="message")
    files = files or []
    if len(files) > settings.upload_max_files:
        raise ValidationError(f"At most {settings.upload_max_files} files per message.", field="files")
    uploads = [await read_upload(file, settings, max_upload_bytes) for file in files]
    result = await engine.run_turn(session_id, message, uploads)
    data = result.model_dump(mode="json")
    data["content"] = result.reply
    return envelope(data)


@router.get("/api/chat/session/{session_id}/messages")
async def list_messages(session_id: str, store: SessionStore = Depends(get_store)):
    messages = await store.list_messages(session_id)
    return envelope({"messages": [m.model_dump(mode="json") for m in messages], "count": len(messages)})


@router.post("/api/chat/session/{session_id}/upload")
async def upload_file(
    session_id: str,
    file: UploadFile = File(...),
    settings: AppSettings = Depends(get_settings),
    store: SessionStore = Depends(get_store),
    max_upload_bytes: int = Depends(get_max_upload_bytes),
):
    upload = await read_upload(file, settings, max_upload_bytes)
    ref = await store.attach_file(session_id, upload.data, upload.name)
    context = await store.get_pricing_context_info(session_id)
    return envelope({"file": ref.public_dict(), "pricingContext": context})


@router.get("/api/chat/session/{session_id}/files")
async def list_files(session_id: str, store: SessionStore = Depends(get_store)):
    files = await store.list_files(session_id)
    return envelope({"files": [ref.public_dict() for ref in files], "count": len(files)})


@router.delete("/api/chat/session/{session_id}/files/{file_id}")
async def delete_file(session_id: str, file_id: str, store: SessionStore = Depends(get_store)):
    await store.remove_file(session_id, file_id)
    return envelope({"fileId": file_id, "deleted": True})


@router.put("/api/chat/session/{session_id}/pricing-context")
async def set_pricing_context(
    session_id: str,
    payload: SetPricingContextRequest,
    store: SessionStore = Depends(get_store),
):
    await store.set_pricing_context(session_id, payload.fileId)
    return envelope(await store.get_pricing_context_info(session_id))


@router.delete("/api/chat/session/{session_id}/pricing-context")
async def clear_pricing_context(session_id: str, store: SessionStore = Depends(get_store)):
    await store.clear_pricing_context(session_id)
    return envelope(await store.get_pricing_context_info(session_id))


@router.get("/api/chat/session/{session_id}/pricing-context")
async def get_pricing_context(session_id: str, store: SessionStore = Depends(get_store)):
    return envelope(await store.get_pricing_context_info(session_id))


@router.get("/api/health")
async def health(request: Request, store: SessionStore = Depends(get_store)):
    transformation = request.app.state.transformation_client
    return envelope(
        {
            "status": "ok",
            "sessions": len(store),
            "services": {
                "analysis": await request.app.state.analysis_client.health_check(),
                "transformation": await transformation.health_check() if transformation else None,
            },
        }
    )


async def handle_harvey_error(request: Request, exc: HarveyError) -> JSONResponse:
    if isinstance(exc, FatalError):
        logger.error("Fatal error on %s %s: %s", request.method, request.url.path, exc.message, exc_info=exc)
        raise exc
    return error_envelope(exc.message, exc.status_code, exc.detail)


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "request"
        message = f"{field}: {first.get('msg', 'invalid value')}"
    else:
        message = "Invalid request"
    return error_envelope(message, 400)


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    model_client: Optional[ModelClient] = None,
    analysis_client: Optional[AnalysisClient] = None,
    transformation_client: Optional[TransformationClient] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        app.state.upload_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Harvey settings: %s", app.state.settings.to_safe_dict())
        if app.state.settings.reaper_enabled:
            app.state.reaper.start()
        try:
            yield
        finally:
            await app.state.reaper.stop()
            await app.state.model_client.close()
            await app.state.analysis_client.close()
            if app.state.transformation_client is not None:
                await app.state.transformation_client.close()

    app = FastAPI(title="H.A.R.V.E.Y. Pricing Assistant", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.upload_dir = Path(settings.upload_dir).resolve()
    app.state.max_upload_bytes = settings.upload_max_mb * 1024 * 1024
    app.state.model_client = model_client or ModelClient(
        settings.model_base_url,
        settings.model_id,
        settings.model_api_key,
        temperature=settings.model_temperature,
        max_tokens=settings.model_max_tokens,
        timeout_s=settings.model_timeout_s,
    )
    app.state.analysis_client = analysis_client or AnalysisClient(
        settings.pricing_analysis_api_base_url, settings.analysis_timeout_s
    )
    if transformation_client is None and settings.transformation_api_base_url:
        transformation_client = TransformationClient(
            settings.transformation_api_base_url, settings.transformation_timeout_s
        )
    app.state.transformation_client = transformation_client

    app.state.file_store = FileStore(app.state.db, app.state.upload_dir)
    app.state.store = SessionStore(
        app.state.file_store, auto_detect_pricing_uploads=settings.auto_detect_pricing_uploads
    )
    app.state.dispatcher = ToolDispatcher(
        app.state.store,
        app.state.file_store,
        app.state.analysis_client,
        app.state.transformation_client,
        auto_adopt_transformation_context=settings.auto_adopt_transformation_context,
    )
    app.state.engine = ConversationEngine(app.state.store, app.state.dispatcher, app.state.model_client)
    app.state.reaper = SessionReaper(
        app.state.store,
        app.state.file_store,
        interval_s=settings.reaper_interval_s,
        inactivity_hours=settings.session_inactivity_hours,
    )

    app.add_exception_handler(HarveyError, handle_harvey_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("HARVEY_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run("harvey.main:app", host=settings.host, port=settings.port, reload=reload_enabled)
    except KeyboardInterrupt:
        pass
