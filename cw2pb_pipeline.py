"""Pipeline orchestration, job queue, plugins and the headless CLI.

CapturePipeline runs one job for one project:

    capturing -> extracting (+ technology detection in parallel)
              -> analyzing (analysis + optimization fan-out, conversions start here)
              -> converting (only when target formats were requested)
              -> completed | failed

Status changes are published as ProgressEvents on a ProgressChannel; the
ProjectStore consumes the channel and is the only thing that mutates status.
Stage results are written through the store's single-writer methods.

JobQueue bounds concurrency by the number of browser sessions and serializes
jobs for the same project with a per-project lock.
"""
from __future__ import annotations

import asyncio, importlib.util, json, logging, os, subprocess, sys, uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Callable

from cw2pb_core import (
    __version__, AnalysisError, CloneOptions, CloneProject, ConversionError, EventRecorder, Issue, JobCancelled,
    LoggingCallbacks, CLICallbacks, RichCallbacks, NetworkError, PhaseTimeoutError, PipelineCallbacks, PipelineError,
    ProgressChannel, ProgressEvent, ProjectStore, Settings, ValidationError, _invoke, _load_config_file,
    configure_logging, EXIT_SUCCESS, EXIT_GENERIC_FAILURE, EXIT_NETWORK, EXIT_TIMEOUT, EXIT_VERIFY_FAILED,
    EXIT_CANCELED, EXIT_CONFIG_ERROR,
)
from cw2pb_fetch import AssetFetcher
from cw2pb_capture import CaptureOrchestrator
from cw2pb_detect import TechnologyDetector, find_conflicts
from cw2pb_assets import AssetExtractor, FileBlobStore, strip_markers
from cw2pb_analysis import AnalysisInput, AnalysisPipeline
from cw2pb_convert import ConverterRegistry, build_tree, default_registry
from cw2pb_optimize import OptimizationEngine

logger = logging.getLogger("cw2pb.pipeline")

MANIFEST_NAME = 'project.json'
STAGE_PERCENT = {'capturing': 5, 'extracting': 30, 'analyzing': 50, 'converting': 80, 'completed': 100}


# ---------------- plugins ----------------
@dataclass
class PluginSet:
    modules: List[Any] = field(default_factory=list)

    def hooks(self, name: str) -> List[Callable]:
        return [getattr(m, name) for m in self.modules if callable(getattr(m, name, None))]

    def register_converters(self, registry: ConverterRegistry, callbacks: Optional[PipelineCallbacks] = None):
        for hook in self.hooks('register_converters'):
            try:
                hook(registry)
            except Exception as e:
                _invoke(callbacks, 'warning', f"[plugin] register_converters failed: {e}")

    def finalize(self, manifest: Dict[str, Any], context: Dict[str, Any], callbacks=None, events=None):
        for mod in self.modules:
            hook = getattr(mod, 'finalize', None)
            if not callable(hook):
                continue
            name = getattr(mod, '__file__', getattr(mod, '__name__', 'unknown'))
            try:
                if events: events('plugin_finalize_start', name=name)
                hook(manifest, context)
                if events: events('plugin_finalize_end', name=name)
            except Exception as e:
                _invoke(callbacks, 'warning', f"[plugin] finalize failed in {name}: {e}")
                if events: events('plugin_finalize_error', name=name, error=str(e))


def load_plugins(plugins_dir: Optional[str], callbacks: Optional[PipelineCallbacks] = None,
                 events: Optional[EventRecorder] = None) -> PluginSet:
    plugins = PluginSet()
    if not plugins_dir or not os.path.isdir(plugins_dir):
        return plugins
    try:
        names = sorted(os.listdir(plugins_dir))
    except OSError as e:
        _invoke(callbacks, 'warning', f"[plugin] directory error: {e}")
        return plugins
    for fn in names:
        if not fn.endswith('.py') or fn.startswith('_'):
            continue
        path = os.path.join(plugins_dir, fn); mod_name = f'_cw2pb_plugin_{fn[:-3]}'
        try:
            spec = importlib.util.spec_from_file_location(mod_name, path)
            if spec and spec.loader:
                mod = importlib.util.module_from_spec(spec); spec.loader.exec_module(mod)  # type: ignore
                plugins.modules.append(mod)
                _invoke(callbacks, 'log', f"[plugin] loaded {fn}")
                if events: events('plugin_loaded', name=fn)
        except Exception as e:
            _invoke(callbacks, 'warning', f"[plugin] load failed {fn}: {e}")
            if events: events('plugin_load_failed', name=fn, error=str(e))
    return plugins


class EventingCallbacks(PipelineCallbacks):
    """Forwards to an inner sink and mirrors warnings/events into the JSON event stream."""
    def __init__(self, inner: Optional[PipelineCallbacks], events: Optional[EventRecorder]):
        self.inner = inner
        self.events = events
        self.progress: Optional[Callable[[str, int], None]] = None   # set while a stage reports sub-progress
    def log(self, message: str): _invoke(self.inner, 'log', message)
    def phase(self, phase: str, pct: int):
        _invoke(self.inner, 'phase', phase, pct)
        if self.progress is not None:
            self.progress(phase, pct)
    def warning(self, message: str):
        _invoke(self.inner, 'warning', message)
        if self.events: self.events('warning', message=message)
    def event(self, name: str, **data):
        _invoke(self.inner, 'event', name, **data)
    def is_canceled(self) -> bool:
        return bool(_invoke(self.inner, 'is_canceled'))


# ---------------- pipeline ----------------
def _default_fetcher(options: CloneOptions, callbacks: Optional[PipelineCallbacks]) -> AssetFetcher:
    return AssetFetcher(retries=options.fetch_retries, timeout=options.fetch_timeout_s, callbacks=callbacks)


class CapturePipeline:
    def __init__(self, store: ProjectStore, channel: Optional[ProgressChannel] = None,
                 callbacks: Optional[PipelineCallbacks] = None, events: Optional[EventRecorder] = None,
                 registry: Optional[ConverterRegistry] = None, plugins: Optional[PluginSet] = None,
                 fetcher_factory: Optional[Callable] = None, capture: Optional[CaptureOrchestrator] = None,
                 detector: Optional[TechnologyDetector] = None, analysis_factory: Optional[Callable] = None):
        self.store = store
        self.channel = channel
        self.events = events
        self.callbacks = EventingCallbacks(callbacks or LoggingCallbacks(), events)
        self.plugins = plugins or PluginSet()
        self.registry = registry or default_registry()
        self.plugins.register_converters(self.registry, self.callbacks)
        self.fetcher_factory = fetcher_factory or _default_fetcher
        self.capture = capture or CaptureOrchestrator(self.callbacks)
        self.detector = detector or TechnologyDetector(callbacks=self.callbacks)
        self.analysis_factory = analysis_factory or (
            lambda options, fetcher: AnalysisPipeline(options, self.callbacks, fetcher))
        self.fatal_error: Optional[PipelineError] = None

    def _event(self, name: str, **data):
        if self.events:
            self.events(name, **data)

    async def _advance(self, project_id: str, job_id: str, stage: str, message: Optional[str] = None,
                       percent: Optional[int] = None):
        pct = STAGE_PERCENT.get(stage, 0) if percent is None else percent
        self.channel.publish(ProgressEvent(job_id, project_id, stage, pct, message))
        await self.channel.join()
        _invoke(self.callbacks, 'phase', stage, pct)

    async def run(self, project_id: str, job_id: Optional[str] = None, blob_root: Optional[str] = None,
                  cancel_event: Optional[asyncio.Event] = None) -> CloneProject:
        job_id = job_id or uuid.uuid4().hex[:12]
        cancel_event = cancel_event or asyncio.Event()
        own_consumer = None
        if self.channel is None:
            self.channel = ProgressChannel()
        if not self.channel.consumer_attached:
            self.channel.consumer_attached = True
            own_consumer = asyncio.ensure_future(self.store.consume(self.channel))
        try:
            self.store.begin_job(project_id, job_id)
        except PipelineError:
            if own_consumer is not None:
                own_consumer.cancel()
            raise
        project = self.store.get(project_id)
        blob = FileBlobStore(blob_root or os.path.join('.', 'cw2pb-output', project_id))
        pending: List[asyncio.Future] = []

        def check(stage: str):
            if cancel_event.is_set() or self.callbacks.is_canceled():
                raise JobCancelled(stage)

        self._event('start', project_id=project_id, job_id=job_id, url=project.source, run=project.run)
        try:
            await self._stages(project, job_id, blob, check, pending)
        except JobCancelled as e:
            await self._fail(project, job_id, 'cancelled', e)
            self._event('canceled', project_id=project_id, stage=e.stage)
        except asyncio.CancelledError:
            if not cancel_event.is_set():
                raise
            await self._fail(project, job_id, 'cancelled', JobCancelled(project.status))
            self._event('canceled', project_id=project_id, stage=project.status)
        except PipelineError as e:
            await self._fail(project, job_id, e.message, e)
        except Exception as e:
            logger.exception("job %s crashed", job_id)
            await self._fail(project, job_id, f"internal error: {e}", PipelineError(str(e), project.status))
        finally:
            for task in pending:
                if not task.done():
                    task.cancel()
            self.store.release_job(project_id, job_id)
            try:
                self.write_manifest(project, blob)
            except OSError as e:
                _invoke(self.callbacks, 'warning', f"manifest write failed: {e}")
            if own_consumer is not None:
                await self.channel.join()
                own_consumer.cancel()
        self._event('summary', project_id=project_id, status=project.status, failure_reason=project.failure_reason,
                    assets=len(project.assets), score=project.metrics.score if project.metrics else None)
        return project

    async def _fail(self, project: CloneProject, job_id: str, reason: str, err: PipelineError):
        self.fatal_error = err
        self.store.add_issue(project.id, Issue.from_error(err, severity='critical'))
        self._event('phase_error', project_id=project.id, stage=project.status, error=err.kind, message=reason)
        _invoke(self.callbacks, 'warning', f"[{project.status}] job failed: {reason}")
        await self._advance(project.id, job_id, 'failed', reason, project.progress)

    async def _stages(self, project: CloneProject, job_id: str, blob: FileBlobStore, check, pending):
        pid, options, store = project.id, project.options, self.store
        async with self.fetcher_factory(options, self.callbacks) as fetcher:
            # 1. capture
            check('queued')
            await self._advance(pid, job_id, 'capturing')
            self._event('phase_start', phase='capturing')
            self.callbacks.progress = lambda stage, pct: self.channel.publish(
                ProgressEvent(job_id, pid, stage, pct))
            try:
                snapshot = await self.capture.capture(project.source, options, fetcher, cancel_check=check)
            finally:
                self.callbacks.progress = None
            store.set_capture_summary(pid, snapshot.summary())
            store.add_issues(pid, [Issue(kind='TimeoutError' if 'timeout' in w.lower() else 'CaptureWarning',
                                         severity='low', title='Capture enrichment degraded', description=w,
                                         stage='capturing') for w in snapshot.warnings])
            self._event('phase_end', phase='capturing', phase_ms=snapshot.phase_ms)
            check('capturing')

            # 2. extract (+ detection in parallel)
            await self._advance(pid, job_id, 'extracting')
            self._event('phase_start', phase='extracting')
            detect_task = None
            if options.technology_detection:
                detect_task = asyncio.ensure_future(asyncio.to_thread(
                    self.detector.detect, snapshot.headers, snapshot.html, snapshot.runtime))
                pending.append(detect_task)
            extractor = AssetExtractor(fetcher, blob, options, self.callbacks, post_asset=self.plugins.hooks('post_asset'),
                                       context={'project_id': pid, 'source': project.source, 'root': blob.root})
            extraction = await extractor.extract(snapshot.html, snapshot.final_url)
            for record in extraction.assets:
                store.append_asset(pid, record)
            store.add_issues(pid, extraction.issues)
            store.set_original_html(pid, strip_markers(extraction.html))
            technology = []
            if detect_task is not None:
                try:
                    technology = await detect_task
                except Exception as e:
                    err = AnalysisError(f"technology detection failed: {e}", 'extracting')
                    store.add_issue(pid, Issue.from_error(err, category='compatibility'))
            store.set_technology_profile(pid, technology)
            self._event('phase_end', phase='extracting', assets=len(extraction.assets), failed=extraction.failed)
            check('extracting')

            # 3. fan-out: analysis + optimization, conversions start alongside
            await self._advance(pid, job_id, 'analyzing')
            self._event('phase_start', phase='analyzing')
            conversions = None
            if options.target_formats:
                conversions = asyncio.ensure_future(self._convert_all(extraction.html, snapshot.styles, options))
                pending.append(conversions)
            analysis = self.analysis_factory(options, fetcher)
            inp = AnalysisInput(url=snapshot.final_url, html=extraction.html, source_html=snapshot.html,
                                headers=snapshot.headers, snapshot=snapshot, assets=extraction.assets,
                                technology=technology, conflicts=find_conflicts(technology), read_asset=blob.get)
            engine = OptimizationEngine(options, blob, self.callbacks,
                                        fold_height=(snapshot.viewport or {}).get('height', 1080))
            optimize = (asyncio.to_thread(engine.run, extraction.html, extraction.assets, snapshot)
                        if options.optimize else _none())
            analysis_res, opt_res = await asyncio.gather(analysis.run(inp), optimize, return_exceptions=True)
            if isinstance(analysis_res, BaseException):
                if isinstance(analysis_res, asyncio.CancelledError):
                    raise analysis_res
                err = AnalysisError(f"analysis failed: {analysis_res}", 'analyzing')
                store.add_issue(pid, Issue.from_error(err))
            else:
                store.write_metrics(pid, analysis_res.metrics, analysis_res.security_findings)
                store.add_issues(pid, analysis_res.errors)
            if isinstance(opt_res, BaseException):
                if isinstance(opt_res, asyncio.CancelledError):
                    raise opt_res
                store.add_issue(pid, Issue(kind='OptimizationWarning', severity='low', title='Optimization skipped',
                                           description=str(opt_res), stage='analyzing'))
            elif opt_res is not None:
                store.set_optimized(pid, opt_res.html, opt_res.assets, opt_res.report)
                store.add_issues(pid, [Issue(kind='OptimizationWarning', severity='low', title='Optimization item skipped',
                                             description=w, stage='analyzing') for w in opt_res.warnings])
            self._event('phase_end', phase='analyzing', score=project.metrics.score if project.metrics else None)
            check('analyzing')

            # 4. convert
            if conversions is not None:
                await self._advance(pid, job_id, 'converting')
                self._event('phase_start', phase='converting')
                for fmt, outcome in (await conversions).items():
                    if isinstance(outcome, ConversionError):
                        store.set_conversion_error(pid, fmt, outcome.message)
                        store.add_issue(pid, Issue.from_error(outcome, severity='medium'))
                        continue
                    blob.put(f"exports/{fmt}.{outcome.extension}", outcome.content.encode('utf-8'))
                    store.add_export(pid, fmt, outcome)
                self._event('phase_end', phase='converting', exports=sorted(project.exports))
                check('converting')

        await self._advance(pid, job_id, 'completed')

    async def _convert_all(self, html: str, styles, options: CloneOptions) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        try:
            tree = await asyncio.to_thread(build_tree, html, styles)
        except Exception as e:
            logger.debug("structural tree failed", exc_info=True)
            return {fmt: ConversionError(f"{fmt}: page structure could not be parsed: {e}", 'converting')
                    for fmt in options.target_formats}
        for fmt in options.target_formats:
            try:
                out[fmt] = await asyncio.to_thread(self.registry.convert, tree, fmt, options.reserved_ids, self.callbacks)
            except ConversionError as e:
                out[fmt] = e
            except Exception as e:
                logger.debug("converter %s crashed", fmt, exc_info=True)
                out[fmt] = ConversionError(f"{fmt}: {e}", 'converting')
        return out

    def write_manifest(self, project: CloneProject, blob: FileBlobStore) -> str:
        manifest = project.to_dict(include_html=False)
        for export in manifest.get('exports', {}).values():
            export.pop('content', None)
        manifest['toolVersion'] = __version__
        manifest['writtenAt'] = datetime.now(timezone.utc).isoformat()
        self.plugins.finalize(manifest, {'root': blob.root, 'project_id': project.id}, self.callbacks, self.events)
        return blob.put(MANIFEST_NAME, json.dumps(manifest, indent=2, default=str).encode('utf-8'))


async def _none():
    return None


# ---------------- job queue ----------------
@dataclass
class Job:
    id: str
    project_id: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    done: Optional[asyncio.Future] = None
    task: Optional[asyncio.Future] = None


class JobQueue:
    """Worker pool bounded by browser sessions; per-project lock serializes same-project jobs."""
    def __init__(self, store: ProjectStore, settings: Optional[Settings] = None,
                 pipeline_factory: Optional[Callable[..., CapturePipeline]] = None,
                 callbacks: Optional[PipelineCallbacks] = None, plugins: Optional[PluginSet] = None):
        self.store = store
        self.settings = settings or Settings()
        self.callbacks = callbacks
        self.plugins = plugins or load_plugins(self.settings.plugins_dir, callbacks)
        self.events = EventRecorder(json_logs=self.settings.json_logs, events_file=self.settings.events_file,
                                    callbacks=callbacks)
        self.channel = ProgressChannel()
        self._pipeline_factory = pipeline_factory or (lambda channel: CapturePipeline(
            self.store, channel, self.callbacks, self.events, plugins=self.plugins))
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._consumer: Optional[asyncio.Task] = None
        self._locks: Dict[str, asyncio.Lock] = {}
        self._jobs: Dict[str, Job] = {}

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self):
        if self._workers:
            return
        self._queue = asyncio.Queue()
        self._consumer = asyncio.ensure_future(self.store.consume(self.channel))
        self.channel.consumer_attached = True
        self._workers = [asyncio.ensure_future(self._worker(i)) for i in range(self.settings.max_browser_sessions)]
        logger.info("job queue started with %d workers", len(self._workers))

    async def stop(self):
        for job in self._jobs.values():
            job.cancel_event.set()
            if job.task is not None and not job.task.done():
                job.task.cancel()
        for w in self._workers:
            w.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None

    def submit(self, project_id: str) -> Job:
        if self._queue is None:
            raise PipelineError('job queue is not running')
        job = Job(id=uuid.uuid4().hex[:12], project_id=project_id)
        job.done = asyncio.get_running_loop().create_future()
        self.store.register_job(project_id, job.id)
        self._jobs[job.id] = job
        self._queue.put_nowait(job)
        logger.info("queued job %s for project %s", job.id, project_id)
        return job

    async def wait(self, job: Job) -> CloneProject:
        return await asyncio.shield(job.done)

    def cancel(self, project_id: str) -> int:
        """Signal every pending/running job of the project; returns how many were signalled."""
        n = 0
        for job in self._jobs.values():
            if job.project_id == project_id and not job.done.done():
                job.cancel_event.set()
                if job.task is not None and not job.task.done():
                    job.task.cancel()
                n += 1
        return n

    def blob_root(self, project_id: str) -> str:
        return os.path.join(self.settings.output_dir, project_id)

    async def _worker(self, index: int):
        while True:
            job = await self._queue.get()
            try:
                await self._run(job)
            except Exception as e:
                logger.exception("worker %d: job %s failed unexpectedly", index, job.id)
                if not job.done.done():
                    job.done.set_exception(e)
            finally:
                self._jobs.pop(job.id, None)
                self._queue.task_done()

    async def _run(self, job: Job):
        lock = self._locks.setdefault(job.project_id, asyncio.Lock())
        async with lock:
            if job.cancel_event.is_set():
                self.store.release_job(job.project_id, job.id)
                project = self.store.audit(job.project_id)
                if not project.is_terminal:
                    self.channel.publish(ProgressEvent(job.id, job.project_id, 'failed', project.progress, 'cancelled'))
                    await self.channel.join()
                job.done.set_result(project)
                return
            pipeline = self._pipeline_factory(self.channel)
            job.task = asyncio.ensure_future(pipeline.run(job.project_id, job.id, self.blob_root(job.project_id),
                                                          job.cancel_event))
            try:
                project = await job.task
            except asyncio.CancelledError:
                if not job.cancel_event.is_set():
                    raise
                project = self.store.audit(job.project_id)
        if not job.done.done():
            job.done.set_result(project)


# ---------------- verification ----------------
def parse_verification_summary(text: str) -> Dict[str, Optional[int]]:
    import re
    for line in (text or '').splitlines():
        m = re.search(r"OK=(\d+) Missing=(\d+) Mismatched=(\d+) Total=(\d+)", line)
        if m:
            ok, missing, mismatched, total = map(int, m.groups())
            return {'ok': ok, 'missing': missing, 'mismatched': mismatched, 'total': total}
    return {'ok': None, 'missing': None, 'mismatched': None, 'total': None}


def run_verification(manifest_path: str, output_cb=None):
    """Run verify_assets.py against a written manifest; records the result in the manifest."""
    empty = {'ok': None, 'missing': None, 'mismatched': None, 'total': None}
    if not manifest_path or not os.path.exists(manifest_path):
        return False, empty
    script = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'verify_assets.py')
    try:
        res = subprocess.run([sys.executable, script, '--manifest', manifest_path], capture_output=True, text=True)
    except OSError as e:
        if output_cb: output_cb(f"[verify] error launching verifier: {e}")
        return False, empty
    for line in (res.stdout or '').splitlines():
        if output_cb: output_cb(line)
    stats = parse_verification_summary(res.stdout)
    passed = res.returncode == 0
    try:
        with open(manifest_path, 'r', encoding='utf-8') as mf: data = json.load(mf)
        data['verification'] = {'status': 'passed' if passed else 'failed', **stats}
        with open(manifest_path, 'w', encoding='utf-8') as mf: json.dump(data, mf, indent=2)
    except (OSError, ValueError) as e:
        if output_cb: output_cb(f"[verify] could not update manifest: {e}")
    return passed, stats


# ---------------- headless CLI ----------------
_OPTION_FLAGS = (
    # (dest, CloneOptions field, inverted)
    ('no_browser', 'use_browser_automation', True),
    ('no_assets', 'include_assets', True),
    ('responsive', 'capture_responsive', False),
    ('interactive', 'capture_interactive', False),
    ('animations', 'capture_animations', False),
    ('style_analysis', 'capture_style_analysis', False),
    ('navigation', 'capture_navigation', False),
    ('no_performance', 'performance_analysis', True),
    ('no_seo', 'seo_analysis', True),
    ('no_security', 'security_scan', True),
    ('no_detect', 'technology_detection', True),
    ('no_optimize', 'optimize', True),
    ('no_critical_css', 'critical_css', True),
    ('no_defer', 'defer_resources', True),
    ('no_minify', 'minify', True),
    ('no_images', 'optimize_images', True),
    ('no_srcset', 'generate_srcset', True),
    ('no_lazy_load', 'lazy_load', True),
    ('no_fonts', 'subset_fonts', True),
)
_OPTION_VALUES = ('navigation_timeout_ms', 'phase_timeout_ms', 'fetch_retries', 'fetch_concurrency', 'max_assets',
                  'asset_failure_threshold')
_NOT_REPRO = {'help', 'print_repro', 'dry_run', 'config', 'json_logs', 'events_file', 'progress', 'report'}


def build_parser():
    import argparse
    parser = argparse.ArgumentParser(prog='cw2pb', description="Clone a web page, analyze it and convert it to page-builder formats (headless mode)")
    parser.add_argument('--print-repro', action='store_true', help='Print reproduction command for given flags and exit')
    parser.add_argument('--dry-run', action='store_true', help='Validate environment & config; show planned actions without capturing')
    parser.add_argument('--url', required=True, help='Page URL to capture')
    parser.add_argument('--dest', required=True, help='Destination folder for the clone')
    parser.add_argument('--format', dest='formats', action='append', default=None,
                        help='Target page-builder format (gutenberg, divi, elementor, ghl); repeat or comma-separate')
    parser.add_argument('--reserved-ids', default=None, help='Comma-separated identifiers already used in the target account')
    parser.add_argument('--no-browser', action='store_true', help='Static capture through HTTP only (no headless browser)')
    parser.add_argument('--no-assets', action='store_true', help='Do not download assets; absolutize references instead')
    parser.add_argument('--responsive', action='store_true', help='Capture styles at every breakpoint')
    parser.add_argument('--interactive', action='store_true', help='Capture hover/focus/active style deltas')
    parser.add_argument('--animations', action='store_true', help='Sample transitions and keyframe animations')
    parser.add_argument('--style-analysis', action='store_true', help='Collect palette, typography and font faces')
    parser.add_argument('--navigation', action='store_true', help='Detect navigation menus')
    parser.add_argument('--no-performance', action='store_true')
    parser.add_argument('--no-seo', action='store_true')
    parser.add_argument('--no-security', action='store_true')
    parser.add_argument('--no-detect', action='store_true', help='Skip technology detection')
    parser.add_argument('--no-optimize', action='store_true', help='Skip the optimized artifact')
    parser.add_argument('--no-critical-css', action='store_true')
    parser.add_argument('--no-defer', action='store_true')
    parser.add_argument('--no-minify', action='store_true')
    parser.add_argument('--no-images', action='store_true')
    parser.add_argument('--no-srcset', action='store_true')
    parser.add_argument('--no-lazy-load', action='store_true')
    parser.add_argument('--no-fonts', action='store_true')
    parser.add_argument('--navigation-timeout-ms', type=int, default=None)
    parser.add_argument('--phase-timeout-ms', type=int, default=None)
    parser.add_argument('--fetch-retries', type=int, default=None)
    parser.add_argument('--fetch-concurrency', type=int, default=None)
    parser.add_argument('--max-assets', type=int, default=None)
    parser.add_argument('--asset-failure-threshold', type=float, default=None)
    parser.add_argument('--verify-after', action='store_true', help='Verify the written manifest after the run')
    parser.add_argument('--config', default=None, help='Optional config file (JSON/YAML)')
    parser.add_argument('--json-logs', action='store_true', help='Emit machine-readable JSON log lines')
    parser.add_argument('--events-file', default=None, help='Write JSON events additionally to this NDJSON file')
    parser.add_argument('--plugins-dir', default=None, help='Directory containing plugin .py files (register_converters/post_asset/finalize)')
    parser.add_argument('--report', choices=['json', 'md'], default=None, help='Generate a capture_report.json or capture_report.md summary file')
    parser.add_argument('--progress', choices=['plain', 'rich'], default='plain', help='Progress rendering mode')
    parser.add_argument('--log-level', default='WARNING')
    return parser


def options_from_args(args, extra: Optional[Dict[str, Any]] = None) -> CloneOptions:
    data: Dict[str, Any] = dict(extra or {})
    for dest, name, inverted in _OPTION_FLAGS:
        if getattr(args, dest, False):
            data[name] = not inverted
    for name in _OPTION_VALUES:
        v = getattr(args, name, None)
        if v is not None:
            data[name] = v
    if args.formats:
        data['target_formats'] = [p for f in args.formats for p in f.split(',')]
    if args.reserved_ids:
        data['reserved_ids'] = args.reserved_ids
    return CloneOptions.from_mapping(data)


def build_repro_command(parser, args) -> List[str]:
    cmd = ['cw2pb', f"--url={args.url}", f"--dest={args.dest}"]
    for action in parser._actions:
        dest = action.dest
        if dest in _NOT_REPRO or dest in ('url', 'dest') or not action.option_strings:
            continue
        value = getattr(args, dest, None)
        if value == action.default or value is None:
            continue
        flag = action.option_strings[-1]
        if value is True:
            cmd.append(flag)
        elif isinstance(value, list):
            cmd.extend(f"{flag}={v}" for v in value)
        else:
            cmd.append(f"{flag}={value}")
    return cmd


def _exit_code_for(project: CloneProject, err: Optional[PipelineError]) -> int:
    if project.status == 'completed':
        return EXIT_SUCCESS
    if project.failure_reason == 'cancelled':
        return EXIT_CANCELED
    if isinstance(err, PhaseTimeoutError):
        return EXIT_TIMEOUT
    if isinstance(err, NetworkError):
        return EXIT_NETWORK
    return EXIT_GENERIC_FAILURE


def build_report(project: CloneProject, exit_code: int, repro: List[str]) -> Dict[str, Any]:
    severities: Dict[str, int] = {}
    for issue in project.issues + (project.metrics.issues if project.metrics else []):
        severities[issue.severity] = severities.get(issue.severity, 0) + 1
    opt = project.optimization_report or {}
    return {
        'url': project.source,
        'project_id': project.id,
        'status': project.status,
        'failure_reason': project.failure_reason,
        'exit_code': exit_code,
        'score': project.metrics.score if project.metrics else None,
        'category_scores': project.metrics.category_scores if project.metrics else None,
        'assets': len(project.assets),
        'technologies': [t.to_dict() for t in project.technology_profile],
        'exports': sorted(project.exports),
        'conversion_errors': dict(project.conversion_errors),
        'optimization': {k: opt.get(k) for k in ('originalBytes', 'optimizedBytes', 'savedBytes')} if opt else None,
        'issues_by_severity': severities,
        'security_findings': len(project.security_findings),
        'warnings': (project.capture_summary or {}).get('warnings', []),
        'phase_ms': (project.capture_summary or {}).get('phaseMs', {}),
        'reproduce_command': repro,
    }


def write_report(path: str, summary: Dict[str, Any], fmt: str):
    if fmt == 'json':
        with open(path, 'w', encoding='utf-8') as rf:
            json.dump(summary, rf, indent=2, default=str)
        return
    def _section(title: str):
        return f"\n## {title}\n"
    lines = ["# Capture Report\n", "\nGenerated: " + datetime.now(timezone.utc).isoformat() + "\n"]
    lines.append(_section('Overview'))
    lines.append(f"URL: {summary['url']}\nStatus: {summary['status']}\nExit Code: {summary['exit_code']}\n"
                 f"Score: {summary['score']}\nAssets: {summary['assets']}\n")
    if summary.get('failure_reason'):
        lines.append(f"Failure: {summary['failure_reason']}\n")
    if summary.get('category_scores'):
        lines.append(_section('Scores'))
        for k, v in summary['category_scores'].items():
            lines.append(f"- {k}: {v}\n")
    if summary.get('technologies'):
        lines.append(_section('Technologies'))
        for t in summary['technologies']:
            ver = f" {t['version']}" if t.get('version') else ''
            lines.append(f"- {t['name']}{ver} ({t['category']}, {t['confidence']}%)\n")
    if summary.get('exports') or summary.get('conversion_errors'):
        lines.append(_section('Exports'))
        for fmt_name in summary.get('exports') or []:
            lines.append(f"- {fmt_name}: ok\n")
        for fmt_name, msg in (summary.get('conversion_errors') or {}).items():
            lines.append(f"- {fmt_name}: failed ({msg})\n")
    if summary.get('optimization'):
        o = summary['optimization']
        lines.append(_section('Optimization'))
        lines.append(f"{o.get('originalBytes')} -> {o.get('optimizedBytes')} bytes (saved {o.get('savedBytes')})\n")
    if summary.get('warnings'):
        lines.append(_section('Warnings'))
        for w in summary['warnings']:
            lines.append(f"- {w}\n")
    lines.append(_section('Reproduce'))
    lines.append(f"````bash\n{' '.join(summary['reproduce_command'])}\n````\n")
    with open(path, 'w', encoding='utf-8') as rf:
        rf.write(''.join(lines))


def headless_main(argv: List[str]) -> int:
    """Run one capture job in-process and write the clone into --dest."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    extra: Dict[str, Any] = {}
    if args.config:
        try:
            cfg_file = _load_config_file(args.config)
        except (OSError, ValueError) as e:
            print(f"[config] cannot read {args.config}: {e}")
            return EXIT_CONFIG_ERROR
        defaults = {a.dest: a.default for a in parser._actions if hasattr(a, 'dest')}
        for k, v in cfg_file.items():
            key = k.replace('-', '_')
            if hasattr(args, key):
                if getattr(args, key) == defaults.get(key) or getattr(args, key) in (None, ''):
                    setattr(args, key, v)
            else:
                extra[key] = v
    try:
        options = options_from_args(args, extra)
    except ValidationError as e:
        print(f"[config] {e.message}")
        return EXIT_CONFIG_ERROR

    repro = build_repro_command(parser, args)
    if args.print_repro:
        print(' '.join(repro))
        return EXIT_SUCCESS
    if args.dry_run:
        issues = []
        if options.use_browser_automation and importlib.util.find_spec('playwright') is None:
            issues.append('playwright missing (use --no-browser or install playwright)')
        unknown = [f for f in options.target_formats if f not in default_registry().formats()]
        if unknown and not args.plugins_dir:
            issues.append(f"unknown formats: {', '.join(unknown)}")
        plugin_count = 0
        if args.plugins_dir and os.path.isdir(args.plugins_dir):
            plugin_count = len([f for f in os.listdir(args.plugins_dir) if f.endswith('.py')])
        plan = {
            'url': args.url,
            'dest': args.dest,
            'capture': 'browser' if options.use_browser_automation else 'static',
            'include_assets': options.include_assets,
            'enrichments': [n for n in ('capture_responsive', 'capture_interactive', 'capture_animations',
                                        'capture_style_analysis', 'capture_navigation') if getattr(options, n)],
            'will_optimize': options.optimize,
            'formats': list(options.target_formats),
            'will_verify': args.verify_after,
            'plugins_dir': args.plugins_dir,
            'plugin_count': plugin_count,
            'issues': issues or None,
        }
        if args.json_logs:
            print(json.dumps({'dry_run_plan': plan}, indent=2))
        else:
            print('[dry-run] Plan summary:')
            for k, v in plan.items(): print(f"  - {k}: {v}")
        return EXIT_CONFIG_ERROR if issues else EXIT_SUCCESS

    callbacks: PipelineCallbacks
    rich_context = None
    if args.progress == 'rich':
        rc = RichCallbacks()
        if getattr(rc, '_rich_available', False):
            rc.start()
            callbacks = rich_context = rc
        else:
            print('[progress] rich mode requested but Rich is not installed; falling back to plain output')
            callbacks = CLICallbacks()
    else:
        callbacks = CLICallbacks()
    events = EventRecorder(json_logs=args.json_logs, events_file=args.events_file, callbacks=callbacks)
    store = ProjectStore()
    try:
        project = store.create(args.url, options)
    except ValidationError as e:
        print(f"[config] {e.message}")
        return EXIT_CONFIG_ERROR
    os.makedirs(args.dest, exist_ok=True)
    plugins = load_plugins(args.plugins_dir, callbacks, events)
    pipeline = CapturePipeline(store, callbacks=callbacks, events=events, plugins=plugins)
    try:
        project = asyncio.run(pipeline.run(project.id, blob_root=args.dest))
    except KeyboardInterrupt:
        print('[cancel] interrupted')
        return EXIT_CANCELED
    finally:
        if rich_context is not None:
            rich_context.stop()

    exit_code = _exit_code_for(project, pipeline.fatal_error)
    manifest_path = os.path.join(args.dest, MANIFEST_NAME)
    if args.verify_after and project.status == 'completed':
        passed, stats = run_verification(manifest_path, output_cb=print)
        events('verification', passed=passed, **stats)
        if not passed:
            exit_code = EXIT_VERIFY_FAILED
    if args.report:
        report_path = os.path.join(args.dest, f"capture_report.{args.report}")
        try:
            write_report(report_path, build_report(project, exit_code, repro), args.report)
            print(f"[report] generated {report_path}")
        except OSError as e:
            print(f"[report] failed: {e}")
    if project.status == 'completed':
        score = project.metrics.score if project.metrics else None
        print(f"[done] {project.source} -> {args.dest} (assets={len(project.assets)}, score={score}, "
              f"exports={','.join(sorted(project.exports)) or '-'})")
    else:
        print(f"[failed] {project.failure_reason}")
    events('summary_final', exit_code=exit_code, status=project.status)
    return exit_code


__all__ = [
    'CapturePipeline', 'JobQueue', 'Job', 'PluginSet', 'load_plugins', 'headless_main', 'build_parser',
    'options_from_args', 'build_repro_command', 'run_verification', 'parse_verification_summary',
]
