import os, sys, json, asyncio, tempfile, shutil

BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

import pytest

from cw2pb_core import (  # type: ignore
    AssetRecord, CloneOptions, PerformanceMetrics, PipelineError, ProgressChannel, ProgressEvent,
    ProjectBusyError, ProjectNotFoundError, ProjectStore, ValidationError,
)


def _advance(store, pid, *stages, job='job1'):
    for stage in stages:
        store.apply_progress(ProgressEvent(job, pid, stage, 10))


def test_create_get_list():
    store = ProjectStore()
    p = store.create('example.com')
    assert p.source == 'https://example.com'
    assert p.status == 'queued' and p.progress == 0
    assert store.get(p.id) is p
    assert [x.id for x in store.list()] == [p.id]
    with pytest.raises(ValidationError):
        store.create('ftp://example.com')
    with pytest.raises(ValidationError):
        store.create('https://example.com', project_id=p.id)


def test_delete_hides_project_but_audit_keeps_it():
    store = ProjectStore()
    p = store.create('https://example.com')
    store.delete(p.id)
    with pytest.raises(ProjectNotFoundError):
        store.get(p.id)
    assert store.audit(p.id).deleted_at is not None
    assert store.list() == []
    with pytest.raises(ProjectNotFoundError):
        store.audit('missing')


def test_archive_and_delete_refused_while_job_active():
    store = ProjectStore()
    p = store.create('https://example.com')
    store.register_job(p.id, 'j1')
    with pytest.raises(ProjectBusyError):
        store.archive(p.id)
    with pytest.raises(ProjectBusyError):
        store.delete(p.id)
    store.release_job(p.id, 'j1')
    assert store.archive(p.id).archived
    assert store.list(include_archived=False) == []
    assert not store.unarchive(p.id).archived


def test_begin_job_claims_project():
    store = ProjectStore()
    p = store.create('https://example.com')
    store.begin_job(p.id, 'j1')
    with pytest.raises(ProjectBusyError):
        store.begin_job(p.id, 'j2')
    store.release_job(p.id, 'j1')
    store.begin_job(p.id, 'j2')
    assert store.has_active_job(p.id)


def test_progress_is_monotonic():
    store = ProjectStore()
    p = store.create('https://example.com')
    assert store.apply_progress(ProgressEvent('j', p.id, 'capturing', 5))
    assert store.apply_progress(ProgressEvent('j', p.id, 'analyzing', 50))
    assert not store.apply_progress(ProgressEvent('j', p.id, 'extracting', 30))
    assert p.status == 'analyzing' and p.progress == 50
    assert store.apply_progress(ProgressEvent('j', p.id, 'completed', 90))
    assert p.progress == 100 and p.completed_at
    # terminal: later events are ignored
    assert not store.apply_progress(ProgressEvent('j', p.id, 'failed', 100, 'late'))
    assert p.status == 'completed' and p.failure_reason is None


def test_failed_event_records_reason():
    store = ProjectStore()
    p = store.create('https://example.com')
    _advance(store, p.id, 'capturing')
    store.apply_progress(ProgressEvent('j', p.id, 'failed', 5, 'origin unreachable'))
    assert p.status == 'failed'
    assert p.failure_reason == 'origin unreachable'


def test_assets_frozen_outside_extracting():
    store = ProjectStore()
    p = store.create('https://example.com')
    rec = AssetRecord('assets/css/a.css', 'https://example.com/a.css', 10, 'text/css', 'css', '0' * 64)
    with pytest.raises(PipelineError):
        store.append_asset(p.id, rec)
    _advance(store, p.id, 'capturing', 'extracting')
    store.append_asset(p.id, rec)
    _advance(store, p.id, 'analyzing')
    with pytest.raises(PipelineError):
        store.append_asset(p.id, rec)
    assert len(p.assets) == 1


def test_metrics_written_once():
    store = ProjectStore()
    p = store.create('https://example.com')
    store.write_metrics(p.id, PerformanceMetrics({}, {}, {}), [{'type': 'header', 'severity': 'low'}])
    assert len(p.security_findings) == 1
    with pytest.raises(PipelineError):
        store.write_metrics(p.id, PerformanceMetrics({}, {}, {}))


def test_start_run_resets_terminal_project():
    store = ProjectStore()
    p = store.create('https://example.com')
    _advance(store, p.id, 'capturing')
    store.apply_progress(ProgressEvent('j', p.id, 'failed', 5, 'boom'))
    store.begin_job(p.id, 'again')
    assert p.run == 2
    assert p.status == 'queued' and p.failure_reason is None and p.issues == []


def test_persistence_writes_json():
    tmp = tempfile.mkdtemp(prefix='cw2pb_store_')
    try:
        store = ProjectStore(os.path.join(tmp, 'projects'))
        p = store.create('https://example.com', CloneOptions(target_formats=('divi',)))
        path = os.path.join(tmp, 'projects', f'{p.id}.json')
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        assert data['source'] == 'https://example.com'
        assert data['options']['targetFormats'] == ['divi']
        assert 'originalHtml' not in data
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_consume_applies_and_notifies():
    store = ProjectStore()
    p = store.create('https://example.com')
    seen = []

    async def scenario():
        channel = ProgressChannel()
        channel.subscribe(lambda ev: seen.append(ev.stage))
        consumer = asyncio.ensure_future(store.consume(channel))
        await asyncio.sleep(0)
        assert channel.consumer_attached
        for stage in ('capturing', 'extracting', 'analyzing'):
            channel.publish(ProgressEvent('j', p.id, stage, 10))
        await channel.join()
        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)
        return channel

    channel = asyncio.run(scenario())
    assert seen == ['capturing', 'extracting', 'analyzing']
    assert p.status == 'analyzing'
    assert not channel.consumer_attached
