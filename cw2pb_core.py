"""Core model + shared infrastructure for cw2pb (clone website to page builder).

Everything the pipeline stages share lives here so stage modules never import
each other at module load time:

  * error taxonomy (PipelineError and friends)
  * CloneOptions (immutable per-job configuration) and Settings (service level)
  * the CloneProject aggregate plus its child records
  * PipelineCallbacks, the explicit event-sink interface handed to every stage
  * ProgressChannel / ProjectStore, the single point of truth for project state

Orchestration (CapturePipeline, JobQueue) and the headless CLI live in
cw2pb_pipeline.py; the HTTP surface lives in cw2pb_server.py.
"""
from __future__ import annotations
import os, json, re, uuid, asyncio, logging
from datetime import datetime, timezone
from dataclasses import dataclass, field, fields
from typing import Optional, List, Dict, Any, Iterable, Tuple

__version__ = "0.1.0"

# ---------------- Exit Codes & Schema ----------------
SCHEMA_VERSION = 1
EXIT_SUCCESS = 0
EXIT_GENERIC_FAILURE = 1
EXIT_NETWORK = 12
EXIT_TIMEOUT = 13
EXIT_VERIFY_FAILED = 14
EXIT_CANCELED = 15
EXIT_CONFIG_ERROR = 16

__all__ = [
    "__version__",
    "CloneOptions",
    "CloneProject",
    "ProjectStore",
    "PipelineCallbacks",
    "ProgressChannel",
    "ProgressEvent",
    "Settings",
    "load_settings",
    "validate_source_url",
]

logger = logging.getLogger("cw2pb.core")

STATUSES = ('queued', 'capturing', 'extracting', 'analyzing', 'converting', 'completed', 'failed')
TERMINAL_STATUSES = frozenset({'completed', 'failed'})
_STATUS_ORDER = {s: i for i, s in enumerate(STATUSES)}

SEVERITIES = ('critical', 'high', 'medium', 'low')

# ---- shared default constants ----
DEFAULT_NAVIGATION_TIMEOUT_MS = 60000
DEFAULT_PHASE_TIMEOUT_MS = 15000
DEFAULT_MAX_SESSIONS = 2
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5005
MARKER_ATTR = "data-cw2pb-id"


# ---------------- Error taxonomy ----------------
class PipelineError(Exception):
    """Base class for every error the pipeline records or raises."""
    kind = 'PipelineError'
    fatal = True

    def __init__(self, message: str, stage: Optional[str] = None, url: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.url = url

    def to_dict(self) -> dict:
        return {'error': self.kind, 'message': self.message}


class NetworkError(PipelineError):
    kind = 'NetworkError'


class PhaseTimeoutError(PipelineError):
    """A phase exceeded its budget. Fatal only for the initial page load."""
    kind = 'TimeoutError'

    def __init__(self, message: str, stage: Optional[str] = None, url: Optional[str] = None):
        if 'timeout' not in message.lower():
            message = f"timeout: {message}"
        super().__init__(message, stage, url)


class AssetFetchError(PipelineError):
    kind = 'AssetFetchError'
    fatal = False

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None, attempts: int = 0):
        super().__init__(message, 'extracting', url)
        self.status_code = status_code
        self.attempts = attempts


class SystemicFetchError(AssetFetchError):
    """Too many assets failed; treated as source unreachable / CDN blocking."""
    fatal = True


class AnalysisError(PipelineError):
    kind = 'AnalysisError'
    fatal = False


class ConversionError(PipelineError):
    kind = 'ConversionError'
    fatal = False


class ValidationError(PipelineError):
    kind = 'ValidationError'


class JobCancelled(PipelineError):
    kind = 'Cancelled'

    def __init__(self, stage: Optional[str] = None):
        super().__init__('cancelled', stage)


class ProjectNotFoundError(PipelineError):
    kind = 'NotFound'


class ProjectBusyError(PipelineError):
    kind = 'ProjectBusy'


# ---------------- Records ----------------
def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


_CAMEL_RE = re.compile(r'_([a-z0-9])')
_SNAKE_RE = re.compile(r'(?<!^)(?=[A-Z])')


def camel(name: str) -> str:
    return _CAMEL_RE.sub(lambda m: m.group(1).upper(), name)


def snake(name: str) -> str:
    return _SNAKE_RE.sub('_', name).lower()


_RGB_RE = re.compile(r'rgba?\(\s*(\d+)[,\s]+(\d+)[,\s]+(\d+)(?:[,\s/]+([\d.]+))?\s*\)')


def rgb_to_hex(value: str) -> Optional[str]:
    if not value:
        return None
    v = value.strip()
    if v.startswith('#'):
        return v.upper() if len(v) in (4, 7) else v
    m = _RGB_RE.match(v)
    if not m:
        return None
    if m.group(4) is not None and float(m.group(4)) == 0:
        return None
    r, g, b = (min(255, int(x)) for x in m.groups()[:3])
    return f"#{r:02X}{g:02X}{b:02X}"


@dataclass
class Issue:
    kind: str
    severity: str
    title: str
    description: str = ''
    stage: Optional[str] = None
    category: Optional[str] = None   # performance | seo | security | accessibility | compatibility
    impact: int = 0
    fix: Optional[str] = None

    @classmethod
    def from_error(cls, err: PipelineError, severity: str = 'medium', category: Optional[str] = None) -> 'Issue':
        desc = err.message if not err.url else f"{err.message} ({err.url})"
        return cls(kind=err.kind, severity=severity, title=err.kind, description=desc,
                   stage=err.stage, category=category)

    def to_dict(self) -> dict:
        return {camel(f.name): getattr(self, f.name) for f in fields(self)}


@dataclass
class AssetRecord:
    local_path: str
    original_url: str
    byte_size: int
    mime_type: str
    type: str = 'other'      # image | css | js | font | html | other
    sha256: Optional[str] = None

    def to_dict(self) -> dict:
        return {camel(f.name): getattr(self, f.name) for f in fields(self)}


@dataclass
class TechnologyEntry:
    name: str
    category: str
    confidence: int
    version: Optional[str] = None
    evidence: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.confidence = max(0, min(100, int(round(self.confidence))))

    def to_dict(self) -> dict:
        d = {'name': self.name, 'category': self.category, 'confidence': self.confidence}
        if self.version:
            d['version'] = self.version
        if self.evidence:
            d['evidence'] = list(self.evidence)
        return d


@dataclass
class PerformanceMetrics:
    core_web_vitals: Dict[str, Dict[str, Any]]
    additional_metrics: Dict[str, Dict[str, Any]]
    resource_metrics: Dict[str, Any]
    issues: List[Issue] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    score: Optional[int] = None
    category_scores: Dict[str, Optional[int]] = field(default_factory=dict)
    lighthouse: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        return {
            'score': self.score,
            'coreWebVitals': self.core_web_vitals,
            'additionalMetrics': self.additional_metrics,
            'resourceMetrics': self.resource_metrics,
            'issues': [i.to_dict() for i in self.issues],
            'recommendations': list(self.recommendations),
            'categoryScores': dict(self.category_scores),
            'lighthouse': self.lighthouse,
        }


# ---------------- Options ----------------
@dataclass(frozen=True)
class Breakpoint:
    name: str
    width: int
    height: int


DEFAULT_BREAKPOINTS: Tuple[Breakpoint, ...] = (
    Breakpoint('mobile', 375, 812),
    Breakpoint('mobile-lg', 414, 896),
    Breakpoint('tablet', 768, 1024),
    Breakpoint('tablet-lg', 834, 1194),
    Breakpoint('laptop', 1366, 768),
    Breakpoint('desktop', 1920, 1080),
    Breakpoint('desktop-4k', 2560, 1440),
)

DEFAULT_SCORE_WEIGHTS: Tuple[Tuple[str, float], ...] = (
    ('performance', 0.35),
    ('seo', 0.25),
    ('security', 0.25),
    ('accessibility', 0.15),
)


@dataclass(frozen=True)
class CloneOptions:
    """Immutable configuration snapshot captured at job start."""
    include_assets: bool = True
    use_browser_automation: bool = True
    capture_responsive: bool = False
    capture_interactive: bool = False
    capture_animations: bool = False
    capture_style_analysis: bool = False
    capture_navigation: bool = False
    # analysis toggles
    performance_analysis: bool = True
    seo_analysis: bool = True
    security_scan: bool = True
    technology_detection: bool = True
    # conversion
    target_formats: Tuple[str, ...] = ()
    reserved_ids: Tuple[str, ...] = ()    # identifiers already used in the target account
    # optimization
    optimize: bool = True
    critical_css: bool = True
    defer_resources: bool = True
    minify: bool = True
    optimize_images: bool = True
    generate_srcset: bool = True
    lazy_load: bool = True
    subset_fonts: bool = True
    # budgets
    navigation_timeout_ms: int = DEFAULT_NAVIGATION_TIMEOUT_MS
    phase_timeout_ms: int = DEFAULT_PHASE_TIMEOUT_MS
    scroll_max_iterations: int = 30
    dom_quiet_ms: int = 500
    # fetching
    fetch_retries: int = 3
    fetch_timeout_s: float = 15.0
    fetch_concurrency: int = 8
    asset_failure_threshold: float = 0.3
    asset_failure_min_sample: int = 4
    max_assets: int = 400
    breakpoints: Tuple[Breakpoint, ...] = DEFAULT_BREAKPOINTS
    score_weights: Tuple[Tuple[str, float], ...] = DEFAULT_SCORE_WEIGHTS

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> 'CloneOptions':
        """Build options from camelCase (HTTP) or snake_case (CLI/config) keys.

        Unknown keys are ignored so a full request body (including `url`) can be
        passed straight through. Malformed values raise ValidationError.
        """
        known = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for raw_key, value in (data or {}).items():
            key = snake(raw_key) if raw_key not in known else raw_key
            if key not in known or value is None:
                continue
            kwargs[key] = _coerce_option(key, value, known[key].default)
        opts = cls(**kwargs)
        opts.validate()
        return opts

    def validate(self):
        if not 0.0 < self.asset_failure_threshold <= 1.0:
            raise ValidationError('asset_failure_threshold must be within (0, 1]')
        for name in ('navigation_timeout_ms', 'phase_timeout_ms', 'scroll_max_iterations',
                     'fetch_concurrency', 'max_assets', 'asset_failure_min_sample'):
            if getattr(self, name) <= 0:
                raise ValidationError(f'{name} must be positive')
        if self.fetch_retries < 0:
            raise ValidationError('fetch_retries must be >= 0')
        if self.fetch_timeout_s <= 0:
            raise ValidationError('fetch_timeout_s must be positive')
        total = sum(w for _, w in self.score_weights)
        if abs(total - 1.0) > 1e-6:
            raise ValidationError(f'score weights must sum to 1.0 (got {total:.4f})')
        if not self.breakpoints:
            raise ValidationError('at least one breakpoint is required')

    def to_dict(self) -> dict:
        out = {}
        for f in fields(self):
            v = getattr(self, f.name)
            if f.name == 'breakpoints':
                v = [{'name': b.name, 'width': b.width, 'height': b.height} for b in v]
            elif f.name == 'score_weights':
                v = dict(v)
            elif isinstance(v, tuple):
                v = list(v)
            out[camel(f.name)] = v
        return out


def _coerce_option(key: str, value: Any, default: Any) -> Any:
    if key == 'breakpoints':
        try:
            bps = tuple(Breakpoint(str(b['name']), int(b['width']), int(b['height'])) for b in value)
        except (TypeError, KeyError, ValueError):
            raise ValidationError('breakpoints must be a list of {name, width, height}')
        if any(b.width <= 0 or b.height <= 0 for b in bps):
            raise ValidationError('breakpoint dimensions must be positive')
        return bps
    if key == 'score_weights':
        if not isinstance(value, dict):
            raise ValidationError('score_weights must be a mapping of category -> weight')
        try:
            return tuple((str(k), float(v)) for k, v in value.items())
        except (TypeError, ValueError):
            raise ValidationError('score_weights values must be numbers')
    if key in ('target_formats', 'reserved_ids'):
        if isinstance(value, str):
            value = [p for p in value.split(',')]
        if not isinstance(value, (list, tuple)):
            raise ValidationError(f'{key} must be a list')
        return tuple(str(p).strip().lower() if key == 'target_formats' else str(p).strip()
                     for p in value if str(p).strip())
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ('true', 'false', '1', '0', 'yes', 'no'):
            return value.lower() in ('true', '1', 'yes')
        raise ValidationError(f'{key} must be a boolean')
    if isinstance(default, int):
        if isinstance(value, bool):
            raise ValidationError(f'{key} must be an integer')
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError(f'{key} must be an integer')
    if isinstance(default, float):
        if isinstance(value, bool):
            raise ValidationError(f'{key} must be a number')
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValidationError(f'{key} must be a number')
    return value


_URL_RE = re.compile(r'^[a-z][a-z0-9+.-]*://', re.IGNORECASE)


def validate_source_url(url: Any) -> str:
    """Normalize + validate a user supplied URL (scheme defaults to https)."""
    from urllib.parse import urlparse
    if not isinstance(url, str) or not url.strip():
        raise ValidationError('Website URL required')
    u = url.strip()
    if any(ch.isspace() for ch in u):
        raise ValidationError(f'Invalid URL (contains whitespace): {u!r}')
    if not _URL_RE.match(u):
        u = 'https://' + u
    parts = urlparse(u)
    if parts.scheme.lower() not in ('http', 'https'):
        raise ValidationError(f'Unsupported URL scheme: {parts.scheme}')
    if not parts.netloc or parts.netloc.startswith(('.', ':')):
        raise ValidationError(f'Invalid URL (missing host): {u}')
    return u


# ---------------- Project aggregate ----------------
@dataclass
class CloneProject:
    id: str
    source: str
    options: CloneOptions
    status: str = 'queued'
    progress: int = 0
    stage: Optional[str] = None
    original_html: Optional[str] = None
    optimized_html: Optional[str] = None
    assets: List[AssetRecord] = field(default_factory=list)
    optimized_assets: List[AssetRecord] = field(default_factory=list)
    metrics: Optional[PerformanceMetrics] = None
    security_findings: List[Dict[str, Any]] = field(default_factory=list)
    technology_profile: List[TechnologyEntry] = field(default_factory=list)
    exports: Dict[str, Any] = field(default_factory=dict)
    conversion_errors: Dict[str, str] = field(default_factory=dict)
    optimization_report: Optional[Dict[str, Any]] = None
    capture_summary: Optional[Dict[str, Any]] = None
    issues: List[Issue] = field(default_factory=list)
    failure_reason: Optional[str] = None
    archived: bool = False
    deleted_at: Optional[str] = None
    created_at: str = field(default_factory=_utcnow)
    updated_at: str = field(default_factory=_utcnow)
    completed_at: Optional[str] = None
    run: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, include_html: bool = True) -> dict:
        d = {
            'id': self.id,
            'source': self.source,
            'status': self.status,
            'progress': self.progress,
            'stage': self.stage,
            'options': self.options.to_dict(),
            'assets': [a.to_dict() for a in self.assets],
            'optimizedAssets': [a.to_dict() for a in self.optimized_assets],
            'metrics': self.metrics.to_dict() if self.metrics else None,
            'securityFindings': list(self.security_findings),
            'technologyProfile': [t.to_dict() for t in self.technology_profile],
            'exports': {k: (v.to_dict() if hasattr(v, 'to_dict') else v) for k, v in self.exports.items()},
            'conversionErrors': dict(self.conversion_errors),
            'optimizationReport': self.optimization_report,
            'captureSummary': self.capture_summary,
            'issues': [i.to_dict() for i in self.issues],
            'failureReason': self.failure_reason,
            'archived': self.archived,
            'deletedAt': self.deleted_at,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
            'completedAt': self.completed_at,
            'run': self.run,
        }
        if include_html:
            d['originalHtml'] = self.original_html
            d['optimizedHtml'] = self.optimized_html
        return d


# ---------------- Event sink interface ----------------
class PipelineCallbacks:
    """Explicit event sink passed to each stage at construction (all optional)."""
    def log(self, message: str): ...  # pragma: no cover - interface stub
    def warning(self, message: str): ...
    def phase(self, phase: str, pct: int): ...
    def event(self, name: str, **data): ...
    def is_canceled(self) -> bool: return False  # cooperative cancel poll


class LoggingCallbacks(PipelineCallbacks):
    """Default sink: forwards to a standard library logger."""
    def __init__(self, log: Optional[logging.Logger] = None):
        self._logger = log or logging.getLogger("cw2pb.pipeline")
    def log(self, message: str): self._logger.info(message)
    def warning(self, message: str): self._logger.warning(message)
    def phase(self, phase: str, pct: int): self._logger.debug("[%s] %s%%", phase, pct)
    def event(self, name: str, **data): self._logger.debug("event %s %s", name, data)


class CLICallbacks(PipelineCallbacks):  # pragma: no cover - simple console binding
    def log(self, message: str): print(message)
    def warning(self, message: str): print(f"[warn] {message}")
    def phase(self, phase: str, pct: int): print(f"[{phase}] {pct}%")


# ---------------- Optional Rich Progress Callback -----------------
class RichCallbacks(PipelineCallbacks):  # pragma: no cover - UI layer exercised indirectly
    def __init__(self):
        self._rich_available = False
        self._progress = None
        self._tasks: Dict[str, Any] = {}
        try:
            from rich.progress import Progress, BarColumn, TextColumn, TimeElapsedColumn
            self._Progress = Progress
            self._columns = [
                TextColumn("[bold cyan]{task.fields[phase]:>10}[/]"),
                BarColumn(),
                TextColumn("{task.percentage:>5.1f}%"),
                TimeElapsedColumn(),
            ]
            self._rich_available = True
        except ImportError:
            pass
    def start(self):
        if self._rich_available:
            self._progress = self._Progress(*self._columns, transient=False)
            self._progress.start()
    def stop(self):
        if self._progress:
            self._progress.stop()
    def log(self, message: str):
        if self._progress:
            self._progress.console.print(message)
        else:
            print(message)
    def warning(self, message: str):
        self.log(f"[yellow]warning[/] {message}" if self._progress else f"[warn] {message}")
    def phase(self, phase: str, pct: int):
        if not self._progress: return
        if phase not in self._tasks:
            self._tasks[phase] = self._progress.add_task(description="", total=100, phase=phase)
        self._progress.update(self._tasks[phase], completed=max(0, min(100, pct)))


def _invoke(cb, name: str, *a, **kw):
    if cb is None: return None
    fn = getattr(cb, name, None)
    if callable(fn):
        try: return fn(*a, **kw)
        except Exception:
            logger.debug("callback %s failed", name, exc_info=True)
    return None


class EventRecorder:
    """Structured JSON events with a stable envelope (event, ts, seq, run_id ...)."""
    def __init__(self, run_id: Optional[str] = None, json_logs: bool = False,
                 events_file: Optional[str] = None, callbacks: Optional[PipelineCallbacks] = None):
        self.run_id = run_id or uuid.uuid4().hex
        self.json_logs = json_logs
        self.events_file = events_file
        self.callbacks = callbacks
        self._seq = 0

    @property
    def enabled(self) -> bool:
        return bool(self.json_logs or self.events_file)

    def __call__(self, event: str, **data):
        if not self.enabled:
            return None
        self._seq += 1
        payload = {
            'event': event,
            'ts': _utcnow(),
            'seq': self._seq,
            'run_id': self.run_id,
            'schema_version': SCHEMA_VERSION,
            'tool_version': __version__,
            **data,
        }
        line = json.dumps(payload, default=str)
        if self.json_logs:
            _invoke(self.callbacks, 'log', line)
        if self.events_file:
            try:
                with open(self.events_file, 'a', encoding='utf-8') as ef:
                    ef.write(line + '\n')
            except OSError as e:
                logger.warning("events file write failed: %s", e)
        return payload


# ---------------- Progress channel ----------------
@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    project_id: str
    stage: str
    percent: int
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {'jobId': self.job_id, 'projectId': self.project_id, 'stage': self.stage,
                'percent': self.percent, 'message': self.message}


class ProgressChannel:
    """Queue of ProgressEvent published by the pipeline and consumed by the store."""
    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._listeners: List[Any] = []
        self.consumer_attached = False

    def publish(self, event: ProgressEvent):
        self._queue.put_nowait(event)

    def subscribe(self, listener):
        """Listener is called with every event after the store applied it."""
        self._listeners.append(listener)

    async def get(self) -> ProgressEvent:
        return await self._queue.get()

    def task_done(self):
        self._queue.task_done()

    async def join(self):
        await self._queue.join()

    def notify(self, event: ProgressEvent):
        for fn in list(self._listeners):
            try: fn(event)
            except Exception:
                logger.debug("progress listener failed", exc_info=True)


# ---------------- Project store ----------------
class ProjectStore:
    """In-memory CloneProject store with optional JSON persistence.

    Single writer per field: each pipeline stage writes only through the
    method that owns its fields (append_asset during extracting, write_metrics
    once per run, ...). Status changes arrive exclusively as ProgressEvents.
    """
    def __init__(self, persist_dir: Optional[str] = None):
        self._projects: Dict[str, CloneProject] = {}
        self._jobs: Dict[str, set] = {}        # project id -> pending/running job ids
        self._running: Dict[str, str] = {}     # project id -> job id holding the project
        self._persist_dir = persist_dir
        if persist_dir:
            os.makedirs(persist_dir, exist_ok=True)

    # ---- CRUD ----
    def create(self, source: str, options: Optional[CloneOptions] = None, project_id: Optional[str] = None) -> CloneProject:
        url = validate_source_url(source)
        pid = project_id or uuid.uuid4().hex[:12]
        if pid in self._projects:
            raise ValidationError(f'project {pid} already exists')
        project = CloneProject(id=pid, source=url, options=options or CloneOptions())
        self._projects[pid] = project
        self.save(pid)
        return project

    def get(self, project_id: str) -> CloneProject:
        p = self._projects.get(project_id)
        if p is None or p.deleted_at:
            raise ProjectNotFoundError(f'project {project_id} not found')
        return p

    def audit(self, project_id: str) -> CloneProject:
        """Read including deleted projects (history/audit queries only)."""
        p = self._projects.get(project_id)
        if p is None:
            raise ProjectNotFoundError(f'project {project_id} not found')
        return p

    def list(self, include_archived: bool = True) -> List[CloneProject]:
        out = [p for p in self._projects.values() if not p.deleted_at]
        if not include_archived:
            out = [p for p in out if not p.archived]
        return sorted(out, key=lambda p: p.created_at)

    def archive(self, project_id: str) -> CloneProject:
        p = self.get(project_id)
        if self.has_active_job(project_id):
            raise ProjectBusyError(f'project {project_id} has an active job')
        p.archived = True
        self._touch(p)
        return p

    def unarchive(self, project_id: str) -> CloneProject:
        p = self.get(project_id)
        p.archived = False
        self._touch(p)
        return p

    def set_options(self, project_id: str, options: CloneOptions) -> CloneProject:
        """Replace the options the next run will use; refused while a job is pending or running."""
        p = self.get(project_id)
        if self.has_active_job(project_id):
            raise ProjectBusyError(f'project {project_id} has an active job')
        p.options = options
        self._touch(p)
        return p

    def delete(self, project_id: str) -> CloneProject:
        p = self.get(project_id)
        if self.has_active_job(project_id):
            raise ProjectBusyError(f'project {project_id} has an active job')
        p.deleted_at = _utcnow()
        self._touch(p)
        return p

    # ---- job bookkeeping ----
    def register_job(self, project_id: str, job_id: str):
        self.get(project_id)
        self._jobs.setdefault(project_id, set()).add(job_id)

    def release_job(self, project_id: str, job_id: str):
        self._jobs.get(project_id, set()).discard(job_id)
        if self._running.get(project_id) == job_id:
            del self._running[project_id]

    def has_active_job(self, project_id: str) -> bool:
        return bool(self._jobs.get(project_id)) or project_id in self._running

    def begin_job(self, project_id: str, job_id: str) -> CloneProject:
        """Claim the project for one job; starts a fresh run if the last one ended."""
        p = self.get(project_id)
        holder = self._running.get(project_id)
        if holder and holder != job_id:
            raise ProjectBusyError(f'project {project_id} is already being processed by job {holder}')
        self._running[project_id] = job_id
        self._jobs.setdefault(project_id, set()).add(job_id)
        if p.is_terminal:
            self.start_run(project_id)
        return p

    def start_run(self, project_id: str) -> CloneProject:
        p = self.get(project_id)
        if not p.is_terminal:
            return p
        p.run += 1
        p.status = 'queued'
        p.progress = 0
        p.stage = None
        p.original_html = p.optimized_html = None
        p.assets = []
        p.optimized_assets = []
        p.metrics = None
        p.security_findings = []
        p.technology_profile = []
        p.exports = {}
        p.conversion_errors = {}
        p.optimization_report = None
        p.capture_summary = None
        p.issues = []
        p.failure_reason = None
        p.completed_at = None
        self._touch(p)
        return p

    # ---- progress ----
    def apply_progress(self, event: ProgressEvent) -> bool:
        """Apply one ProgressEvent. Returns False when the event was rejected."""
        p = self._projects.get(event.project_id)
        if p is None:
            return False
        if event.stage not in _STATUS_ORDER:
            p.progress = max(p.progress, min(100, event.percent))
            p.stage = event.stage
            self._touch(p)
            return True
        if p.is_terminal:
            logger.debug("ignoring %s for terminal project %s", event.stage, p.id)
            return False
        cur = _STATUS_ORDER[p.status]
        new = _STATUS_ORDER[event.stage]
        if event.stage == 'failed':
            p.status = 'failed'
            p.failure_reason = event.message or p.failure_reason or 'failed'
            p.completed_at = _utcnow()
        elif new < cur:
            logger.warning("rejecting backward transition %s -> %s for %s", p.status, event.stage, p.id)
            return False
        else:
            p.status = event.stage
            p.progress = max(p.progress, min(100, event.percent)) if new == cur else min(100, event.percent)
            if event.stage == 'completed':
                p.progress = 100
                p.completed_at = _utcnow()
        p.stage = event.stage
        self._touch(p)
        if p.is_terminal:
            self.save(p.id)
        return True

    async def consume(self, channel: ProgressChannel):
        channel.consumer_attached = True
        try:
            while True:
                event = await channel.get()
                try:
                    self.apply_progress(event)
                    channel.notify(event)
                finally:
                    channel.task_done()
        finally:
            channel.consumer_attached = False

    # ---- stage-owned writers ----
    def append_asset(self, project_id: str, record: AssetRecord):
        p = self.get(project_id)
        if p.status != 'extracting':
            raise PipelineError(f'assets are frozen outside extracting (status={p.status})', 'extracting')
        p.assets.append(record)

    def set_original_html(self, project_id: str, html: str):
        self.get(project_id).original_html = html

    def set_optimized(self, project_id: str, html: Optional[str], assets: Iterable[AssetRecord], report: Optional[dict]):
        p = self.get(project_id)
        p.optimized_html = html
        p.optimized_assets = list(assets)
        p.optimization_report = report

    def set_technology_profile(self, project_id: str, entries: Iterable[TechnologyEntry]):
        self.get(project_id).technology_profile = list(entries)

    def set_capture_summary(self, project_id: str, summary: Dict[str, Any]):
        self.get(project_id).capture_summary = summary

    def write_metrics(self, project_id: str, metrics: PerformanceMetrics, findings: Optional[List[dict]] = None):
        p = self.get(project_id)
        if p.metrics is not None:
            raise PipelineError(f'metrics already written for project {project_id}', 'analyzing')
        # single assignment: metrics + findings become visible together
        p.metrics, p.security_findings = metrics, list(findings or [])

    def add_export(self, project_id: str, fmt: str, export: Any):
        self.get(project_id).exports[fmt] = export

    def set_conversion_error(self, project_id: str, fmt: str, message: str):
        self.get(project_id).conversion_errors[fmt] = message

    def add_issue(self, project_id: str, issue: Issue):
        self.get(project_id).issues.append(issue)

    def add_issues(self, project_id: str, issues: Iterable[Issue]):
        self.get(project_id).issues.extend(issues)

    # ---- persistence ----
    def _touch(self, p: CloneProject):
        p.updated_at = _utcnow()

    def save(self, project_id: str):
        if not self._persist_dir:
            return
        p = self._projects.get(project_id)
        if p is None:
            return
        path = os.path.join(self._persist_dir, f'{project_id}.json')
        try:
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(p.to_dict(include_html=False), f, indent=2, default=str)
        except OSError as e:
            logger.warning("persist %s failed: %s", project_id, e)


# ---------------- Settings / config ----------------
def _load_config_file(path: str) -> dict:
    if not path or not os.path.exists(path): return {}
    with open(path, 'r', encoding='utf-8') as f:
        if path.lower().endswith(('.yml', '.yaml')):
            import yaml
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"invalid YAML: {e}")
        else:
            data = json.load(f)
    return data if isinstance(data, dict) else {}


@dataclass
class Settings:
    output_dir: str = './cw2pb-output'
    max_browser_sessions: int = DEFAULT_MAX_SESSIONS
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    events_file: Optional[str] = None
    json_logs: bool = False
    log_level: str = 'INFO'
    persist_projects: bool = True
    plugins_dir: Optional[str] = None
    default_options: Dict[str, Any] = field(default_factory=dict)


_ENV_PREFIX = 'CW2PB_'


def load_settings(config_path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> Settings:
    """Settings = defaults <- config file (JSON/YAML) <- CW2PB_* environment."""
    env = dict(os.environ if env is None else env)
    config_path = config_path or env.get(_ENV_PREFIX + 'CONFIG')
    data = _load_config_file(config_path) if config_path else {}
    s = Settings()
    known = {f.name: f for f in fields(Settings)}
    for k, v in data.items():
        k = snake(k)
        if k in known:
            setattr(s, k, v)
    for f in fields(Settings):
        raw = env.get(_ENV_PREFIX + f.name.upper())
        if raw is None or f.name == 'default_options':
            continue
        cur = getattr(s, f.name)
        if isinstance(cur, bool):
            setattr(s, f.name, raw.lower() in ('1', 'true', 'yes', 'on'))
        elif isinstance(cur, int):
            try: setattr(s, f.name, int(raw))
            except ValueError:
                raise ValidationError(f'{_ENV_PREFIX}{f.name.upper()} must be an integer')
        else:
            setattr(s, f.name, raw)
    if s.max_browser_sessions < 1:
        raise ValidationError('max_browser_sessions must be >= 1')
    return s


def configure_logging(level: str = 'INFO'):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

