"""HTTP surface for the capture pipeline.

Endpoints:
  POST /api/capture              body {url, ...CloneOptions}; ?wait=true blocks until terminal status
  POST /api/detect-wordpress     body {url}; CMS / page-builder subset of the technology profile
  POST /api/get-style            body {url, selector}; computed style map of one element
  POST /api/is-visible           body {url, selector}; visibility + bounding box
  GET  /health                   liveness probe

  GET    /api/projects                       list (excludes deleted)
  GET    /api/projects/{id}                  poll status / progress / results
  GET    /api/projects/{id}/history          audit read (includes deleted)
  POST   /api/projects/{id}/cancel
  POST   /api/projects/{id}/archive | unarchive
  DELETE /api/projects/{id}
  GET    /api/projects/{id}/export/{format}

Errors are always {error, message}: ValidationError 400, NotFound 404,
ProjectBusy 409, fatal pipeline failures 500.

Usage:
  python cw2pb.py serve            (or: python cw2pb_server.py)
  CW2PB_PORT / CW2PB_HOST / CW2PB_MAX_BROWSER_SESSIONS / CW2PB_CONFIG configure it.
"""
from __future__ import annotations

import logging, os, time
from contextlib import asynccontextmanager
from typing import Dict, Any, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from cw2pb_core import (
    __version__, CloneOptions, PipelineError, ProjectNotFoundError, ProjectStore, Settings,
    ValidationError, _utcnow, configure_logging, load_settings, validate_source_url,
)
from cw2pb_capture import probe_page, probe_style, probe_visibility
from cw2pb_detect import detect_wordpress
from cw2pb_fetch import AssetFetcher
from cw2pb_pipeline import JobQueue

logger = logging.getLogger("cw2pb.server")

_STATUS_FOR = {'ValidationError': 400, 'NotFound': 404, 'ProjectBusy': 409}


class CaptureRequest(BaseModel):
    model_config = ConfigDict(extra='allow')
    url: str
    projectId: Optional[str] = None


class UrlRequest(BaseModel):
    url: str
    useBrowserAutomation: bool = False


class SelectorRequest(BaseModel):
    url: str
    selector: str


class Prober:
    """Single-purpose page probes used outside the full pipeline."""
    def __init__(self, browser_factory=None, timeout_ms: int = 30000):
        self.browser_factory = browser_factory
        self.timeout_ms = timeout_ms

    async def style(self, url: str, selector: str) -> Optional[Dict[str, str]]:
        return await probe_style(url, selector, self.browser_factory, self.timeout_ms)

    async def visibility(self, url: str, selector: str) -> Dict[str, Any]:
        return await probe_visibility(url, selector, self.browser_factory, self.timeout_ms)

    async def page(self, url: str, use_browser: bool = False) -> Dict[str, Any]:
        if use_browser:
            return await probe_page(url, self.browser_factory, self.timeout_ms)
        async with AssetFetcher(retries=1) as fetcher:
            res = await fetcher.fetch_document(url, timeout=self.timeout_ms / 1000.0)
        return {'html': res.text, 'headers': res.headers, 'runtime': {}, 'finalUrl': res.final_url}


def _error(status: int, kind: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={'error': kind, 'message': message})


def create_app(settings: Optional[Settings] = None, store: Optional[ProjectStore] = None,
               queue: Optional[JobQueue] = None, prober: Optional[Prober] = None) -> FastAPI:
    settings = settings or load_settings()
    if store is None:
        persist = os.path.join(settings.output_dir, "_projects") if settings.persist_projects else None
        store = ProjectStore(persist)
    queue = queue or JobQueue(store, settings)
    prober = prober or Prober()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await queue.start()
        try:
            yield
        finally:
            await queue.stop()

    app = FastAPI(title="cw2pb capture service", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.queue = queue
    app.state.prober = prober
    app.state.started = time.monotonic()

    @app.exception_handler(PipelineError)
    async def pipeline_error(request: Request, exc: PipelineError):
        status = _STATUS_FOR.get(exc.kind, 500)
        if status == 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return _error(status, exc.kind, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_error(request: Request, exc: RequestValidationError):
        parts = ['.'.join(str(p) for p in e.get('loc', ()) if p != 'body') + f": {e.get('msg')}" for e in exc.errors()]
        return _error(400, 'ValidationError', '; '.join(parts) or 'invalid request body')

    def get_store() -> ProjectStore:
        return app.state.store

    def get_queue() -> JobQueue:
        return app.state.queue

    def get_prober() -> Prober:
        return app.state.prober

    @app.get("/health")
    async def health():
        return {'status': 'ok', 'message': f'cw2pb {__version__}', 'timestamp': _utcnow(),
                'uptime': round(time.monotonic() - app.state.started, 3)}

    @app.post("/api/capture")
    async def capture(body: CaptureRequest, wait: bool = False, store: ProjectStore = Depends(get_store),
                      queue: JobQueue = Depends(get_queue)):
        data = body.model_dump()
        if body.projectId:
            project = store.get(body.projectId)
            given = {k: v for k, v in data.items() if k not in ('url', 'projectId')}
            if given:
                # options in a re-run body override the stored ones key by key
                options = CloneOptions.from_mapping({**project.options.to_dict(), **given})
                project = store.set_options(project.id, options)
        else:
            options = CloneOptions.from_mapping({**settings.default_options, **data})
            project = store.create(data['url'], options)
        job = queue.submit(project.id)
        if not wait:
            return {**project.to_dict(include_html=False), 'jobId': job.id}
        project = await queue.wait(job)
        if project.status == 'failed':
            kind = next((i.kind for i in reversed(project.issues) if i.severity == 'critical'), 'PipelineError')
            return _error(500, kind, project.failure_reason or 'capture failed')
        return {**project.to_dict(), 'jobId': job.id}

    @app.post("/api/detect-wordpress")
    async def wordpress(body: UrlRequest, prober: Prober = Depends(get_prober)):
        url = validate_source_url(body.url)
        page = await prober.page(url, body.useBrowserAutomation)
        result = detect_wordpress(page.get('html') or '', page.get('headers') or {}, page.get('runtime') or {},
                                  base_url=page.get('finalUrl') or url)
        return {'url': url, **result}

    @app.post("/api/get-style")
    async def get_style(body: SelectorRequest, prober: Prober = Depends(get_prober)):
        url = validate_source_url(body.url)
        if not body.selector.strip():
            raise ValidationError('selector required')
        styles = await prober.style(url, body.selector)
        return {'url': url, 'selector': body.selector, 'found': styles is not None, 'styles': styles}

    @app.post("/api/is-visible")
    async def is_visible(body: SelectorRequest, prober: Prober = Depends(get_prober)):
        url = validate_source_url(body.url)
        if not body.selector.strip():
            raise ValidationError('selector required')
        res = await prober.visibility(url, body.selector) or {}
        return {'url': url, 'selector': body.selector, 'found': bool(res.get('found')),
                'visible': bool(res.get('visible')), 'boundingBox': res.get('boundingBox')}

    @app.get("/api/projects")
    async def list_projects(includeArchived: bool = True, store: ProjectStore = Depends(get_store)):
        return {'projects': [p.to_dict(include_html=False) for p in store.list(include_archived=includeArchived)]}

    @app.get("/api/projects/{project_id}")
    async def get_project(project_id: str, includeHtml: bool = False, store: ProjectStore = Depends(get_store)):
        return store.get(project_id).to_dict(include_html=includeHtml)

    @app.get("/api/projects/{project_id}/history")
    async def project_history(project_id: str, store: ProjectStore = Depends(get_store)):
        return store.audit(project_id).to_dict(include_html=False)

    @app.post("/api/projects/{project_id}/cancel")
    async def cancel_project(project_id: str, store: ProjectStore = Depends(get_store),
                             queue: JobQueue = Depends(get_queue)):
        project = store.get(project_id)
        return {'id': project.id, 'signalled': queue.cancel(project_id), 'status': project.status}

    @app.post("/api/projects/{project_id}/archive")
    async def archive_project(project_id: str, store: ProjectStore = Depends(get_store)):
        return store.archive(project_id).to_dict(include_html=False)

    @app.post("/api/projects/{project_id}/unarchive")
    async def unarchive_project(project_id: str, store: ProjectStore = Depends(get_store)):
        return store.unarchive(project_id).to_dict(include_html=False)

    @app.delete("/api/projects/{project_id}")
    async def delete_project(project_id: str, store: ProjectStore = Depends(get_store)):
        p = store.delete(project_id)
        return {'id': p.id, 'deletedAt': p.deleted_at}

    @app.get("/api/projects/{project_id}/export/{fmt}")
    async def export(project_id: str, fmt: str, store: ProjectStore = Depends(get_store)):
        project = store.get(project_id)
        fmt = fmt.lower()
        if fmt in project.exports:
            return project.exports[fmt].to_dict()
        if fmt in project.conversion_errors:
            raise ProjectNotFoundError(f"{fmt} export failed: {project.conversion_errors[fmt]}")
        raise ProjectNotFoundError(f"project {project_id} has no {fmt} export")

    return app


def serve(settings: Optional[Settings] = None):  # pragma: no cover - process entry
    import uvicorn
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":  # pragma: no cover
    serve()
