import os, sys, json, tempfile, shutil

BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from cw2pb_core import EventRecorder, PipelineCallbacks, SCHEMA_VERSION, __version__  # type: ignore
from cw2pb_pipeline import EventingCallbacks  # type: ignore


class _Cb(PipelineCallbacks):
    def __init__(self):
        self.lines = []
        self.warnings = []
    def log(self, message: str):
        self.lines.append(message)
    def warning(self, message: str):
        self.warnings.append(message)


def test_event_envelope_structure():
    cb = _Cb()
    events = EventRecorder(run_id='run-1', json_logs=True, callbacks=cb)
    first = events('start', url='https://e.test/')
    second = events('summary_final', exit_code=0)
    for key in ('event', 'ts', 'seq', 'run_id', 'schema_version', 'tool_version'):
        assert key in first
    assert first['url'] == 'https://e.test/'
    assert first['schema_version'] == SCHEMA_VERSION
    assert first['tool_version'] == __version__
    assert [first['seq'], second['seq']] == [1, 2]
    logged = [json.loads(line) for line in cb.lines]
    assert [o['event'] for o in logged] == ['start', 'summary_final']
    assert {o['run_id'] for o in logged} == {'run-1'}


def test_events_file_is_ndjson():
    tmp = tempfile.mkdtemp(prefix='cw2pb_evt_')
    try:
        path = os.path.join(tmp, 'events.ndjson')
        cb = _Cb()
        events = EventRecorder(events_file=path, callbacks=cb)
        events('plugin_loaded', name='a.py')
        events('warning', message='slow')
        with open(path, 'r', encoding='utf-8') as f:
            lines = [json.loads(l) for l in f.read().strip().splitlines()]
        assert [l['event'] for l in lines] == ['plugin_loaded', 'warning']
        assert lines[1]['message'] == 'slow'
        # without json_logs nothing goes to the log sink
        assert cb.lines == []
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_disabled_recorder_returns_none():
    events = EventRecorder()
    assert not events.enabled
    assert events('start') is None


def test_eventing_callbacks_mirror_warnings():
    inner = _Cb()
    events = EventRecorder(json_logs=True, callbacks=inner)
    cb = EventingCallbacks(inner, events)
    cb.warning('asset failed: /x.png')
    cb.log('plain line')
    assert inner.warnings == ['asset failed: /x.png']
    mirrored = json.loads(inner.lines[0])
    assert mirrored['event'] == 'warning'
    assert mirrored['message'] == 'asset failed: /x.png'
    assert inner.lines[-1] == 'plain line'
    assert cb.is_canceled() is False
