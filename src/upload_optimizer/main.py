from __future__ import annotations

import fnmatch
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterator, List, Optional, Sequence, Tuple

import anyio
import anyio.to_thread
import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import RedirectResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.types import Receive, Scope, Send

from .configuration import DEFAULT_HEALTH_PATH, Settings
from .errors import InvalidUploadError, JobNotFoundError, JobRetiredError, PipelineError, UpstreamError
from .gate import ConcurrencyGate
from .job_manager import JobManager, JobRecord, RedirectPolicy
from .models import HealthStatus, TaskDefinition
from .tasks import TaskProcessor, UploadDescriptor
from .uploader import AssetUploader
from .upstream import UpstreamClient, UpstreamForm, filter_response_headers
from .utils import PrefixedLogger
from .watcher import FileWatcher

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

router = APIRouter()


def get_job_manager(request: Request) -> JobManager:
    return request.app.state.job_manager


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_wait_limiter(request: Request) -> anyio.CapacityLimiter:
    return request.app.state.wait_limiter


@router.get(DEFAULT_HEALTH_PATH, response_model=HealthStatus)
def healthcheck(request: Request, manager: JobManager = Depends(get_job_manager)) -> HealthStatus:
    return HealthStatus(status="ok", jobs=len(manager.registry), active_tasks=manager.processor.gate.active)


class RelayResponse(StreamingResponse):
    """
    Streams a finished job's upstream response to the waiting client.

    The upstream response is closed and the job acknowledged when the ASGI call
    ends, whether the body was sent in full or the client went away before or
    during streaming.
    """

    def __init__(self, record: JobRecord, response: httpx.Response) -> None:
        super().__init__(
            self._chunks(record, response),
            status_code=response.status_code,
            media_type=response.headers.get("content-type"),
        )
        self.record = record
        self.upstream_response = response

    @staticmethod
    def _chunks(record: JobRecord, response: httpx.Response) -> Iterator[bytes]:
        try:
            yield from response.iter_bytes()
        except httpx.HTTPError as exc:
            record.log.error(f"unable to forward response back to client: {exc}")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.upstream_response.close()
            self.record.acknowledge()


async def wait_for_job(
    request: Request,
    job: str = "",
    manager: JobManager = Depends(get_job_manager),
    limiter: anyio.CapacityLimiter = Depends(get_wait_limiter),
) -> Response:
    # Registered for every method: clients following the 307 repeat the upload
    # request as is, and its body is ignored here.
    try:
        record, response = await anyio.to_thread.run_sync(manager.wait, job, limiter=limiter)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=400, detail="job not found") from exc
    except JobRetiredError as exc:
        logger.error(str(exc))
        raise HTTPException(status_code=500, detail="job ended without a response, view logs for more info") from exc

    if response is None:
        again = f"{request.url.path}?{request.url.query}"
        record.log.info(f"still running, sending redirect to avoid client timeout: {again}")
        return RedirectResponse(again, status_code=307)

    return RelayResponse(record, response)


def _is_intercepted(request: Request, settings: Settings) -> bool:
    content_type = request.headers.get("content-type", "")
    return fnmatch.fnmatchcase(request.url.path, settings.filter_path) and content_type.startswith("multipart/form-data")


async def _read_upload(request: Request, settings: Settings) -> Tuple[UploadDescriptor, UpstreamForm]:
    form = await request.form()
    try:
        upload = form.get(settings.filter_form_key)
        if not isinstance(upload, UploadFile):
            raise HTTPException(
                status_code=400,
                detail=f"unable to read file in key {settings.filter_form_key} from uploaded form data",
            )

        fields: List[Tuple[str, str]] = [(key, value) for key, value in form.multi_items() if isinstance(value, str)]
        upstream_form = UpstreamForm(
            path=request.url.path,
            query=request.url.query,
            field_name=settings.filter_form_key,
            fields=fields,
            headers=[(name.decode("latin-1"), value.decode("latin-1")) for name, value in request.headers.raw],
        )
        descriptor = await run_in_threadpool(UploadDescriptor.from_stream, upload.filename or "upload", upload.file, settings.temp_dir)
    finally:
        await form.close()
    return descriptor, upstream_form


async def intercept_upload(request: Request, manager: JobManager, settings: Settings) -> Response:
    follows_redirects = manager.follows_redirects(request.headers.get("user-agent"))
    log = PrefixedLogger(logger)
    if not follows_redirects:
        log = log.child("client with broken redirects: ")

    try:
        upload, form = await _read_upload(request, settings)
    except InvalidUploadError as exc:
        log.error(f"rejecting upload: {exc}")
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if follows_redirects:
        record = manager.start_job(upload, form, log)
        return RedirectResponse(f"{settings.wait_path}?job={record.id}", status_code=307)

    log.info(f"intercepting upload of {upload.filename}")
    try:
        response = await run_in_threadpool(manager.run_direct, upload, form, log)
    except PipelineError as exc:
        log.error(f"failed to process file: {exc}")
        raise HTTPException(status_code=500, detail="failed to process file, view logs for more info") from exc
    except UpstreamError as exc:
        log.error(str(exc))
        raise HTTPException(status_code=502, detail="unable to reach upstream, view logs for more info") from exc

    log.info("response sent back to client directly")
    return Response(
        content=response.content,
        status_code=response.status_code,
        media_type=response.headers.get("content-type"),
    )


async def proxy_request(request: Request, manager: JobManager) -> Response:
    logger.debug(f"proxy request: {request.method} {request.url.path}")
    has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
    try:
        upstream_response = await manager.upstream.proxy(
            request.method,
            request.url.path,
            request.url.query,
            [(name.decode("latin-1"), value.decode("latin-1")) for name, value in request.headers.raw],
            request.stream() if has_body else None,
        )
    except UpstreamError as exc:
        logger.error(str(exc))
        raise HTTPException(status_code=502, detail="unable to reach upstream") from exc

    return StreamingResponse(
        upstream_response.aiter_raw(),
        status_code=upstream_response.status_code,
        headers=filter_response_headers(upstream_response.headers.multi_items()),
        background=BackgroundTask(upstream_response.aclose),
    )


async def dispatch(
    request: Request,
    path: str,
    manager: JobManager = Depends(get_job_manager),
    settings: Settings = Depends(get_settings),
) -> Response:
    if _is_intercepted(request, settings):
        return await intercept_upload(request, manager, settings)
    return await proxy_request(request, manager)


def create_app(
    settings: Settings,
    tasks: Sequence[TaskDefinition],
    *,
    upstream: Optional[UpstreamClient] = None,
    uploader: Optional[AssetUploader] = None,
    gate: Optional[ConcurrencyGate] = None,
    watcher: Optional[FileWatcher] = None,
) -> FastAPI:
    """
    Build the proxy application.

    Args:
        settings: Validated settings
        tasks: Ordered task definitions
        upstream: Client for the upstream server (built from settings if omitted)
        uploader: Asset upload client for watch mode (built from settings if omitted)
        gate: Concurrency gate shared by both ingestion paths
        watcher: Prebuilt directory watcher (built when settings.watch_dir is set)
    """
    gate = gate or ConcurrencyGate(settings.max_concurrent_tasks)
    upstream = upstream or UpstreamClient(settings.upstream, timeout=settings.upstream_timeout)
    processor = TaskProcessor(tasks, gate, working_dir=settings.config_dir, temp_dir=settings.temp_dir)
    manager = JobManager(
        processor,
        upstream,
        max_workers=settings.job_workers,
        delivery_timeout=settings.delivery_timeout,
        ack_timeout=settings.ack_timeout,
        wait_timeout=settings.wait_timeout,
        follows_redirects=RedirectPolicy(settings.no_redirect_user_agents),
    )

    if watcher is None and settings.watch_dir is not None and settings.undone_dir is not None:
        uploader = uploader or AssetUploader(settings.upstream, settings.api_key or "", device_id=settings.device_id)
        watcher = FileWatcher(settings.watch_dir, settings.undone_dir, processor, uploader)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Blocked waits get their own thread pool so they never starve uploads
        # or passthrough requests of threads.
        app.state.wait_limiter = anyio.CapacityLimiter(settings.wait_threads)
        if watcher is not None:
            await run_in_threadpool(watcher.start)
        logger.info(f"proxying to {settings.upstream}, intercepting uploads on {settings.filter_path} ({len(tasks)} tasks)")
        try:
            yield
        finally:
            if watcher is not None:
                await run_in_threadpool(watcher.stop)
                watcher.uploader.close()
            manager.shutdown()
            upstream.close()
            await upstream.aclose()

    app = FastAPI(title="Upload Optimizer", version="0.1.0", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.settings = settings
    app.state.job_manager = manager
    app.state.watcher = watcher

    app.include_router(router)
    app.add_api_route(settings.wait_path, wait_for_job, methods=PROXY_METHODS)
    app.add_api_route("/{path:path}", dispatch, methods=PROXY_METHODS)
    return app
