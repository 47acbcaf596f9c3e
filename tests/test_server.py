import os, sys, time, tempfile, shutil, unittest

BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

import httpx
from fastapi.testclient import TestClient

from cw2pb_core import ProjectStore, Settings  # type: ignore
from cw2pb_fetch import AssetFetcher  # type: ignore
from cw2pb_pipeline import CapturePipeline, JobQueue, PluginSet  # type: ignore
from cw2pb_server import create_app  # type: ignore

PAGE = """<!doctype html><html><head><title>Server test page</title></head><body>
<header><h1>Hello</h1><p>From the server test.</p></header>
<section><h2>More</h2><p>Details here.</p></section>
</body></html>"""

WP_PAGE = """<html><head><meta name="generator" content="WordPress 6.5">
<link rel="https://api.w.org/" href="https://wp.test/wp-json/"></head>
<body class="et_pb_pagebuilder_layout"><div class="et_pb_section">x</div></body></html>"""


def origin(request):
    if request.url.host == 'down.test':
        return httpx.Response(500)
    if request.url.path == '/':
        return httpx.Response(200, text=PAGE, headers={'Content-Type': 'text/html'})
    return httpx.Response(404)


class FakeProber:
    def __init__(self):
        self.calls = []

    async def style(self, url, selector):
        self.calls.append(('style', url, selector))
        return {'color': 'rgb(0, 0, 0)'} if selector == 'h1' else None

    async def visibility(self, url, selector):
        return {'found': True, 'visible': False, 'boundingBox': {'x': 0, 'y': 0, 'width': 0, 'height': 0}}

    async def page(self, url, use_browser=False):
        self.calls.append(('page', url, use_browser))
        return {'html': WP_PAGE, 'headers': {'server': 'nginx'}, 'runtime': {}}


class TestServer(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.mkdtemp(prefix='cw2pb_server_')
        self.settings = Settings(output_dir=self.tempdir, persist_projects=False, max_browser_sessions=2,
                                 default_options={'useBrowserAutomation': False})
        self.store = ProjectStore()

        def fetcher_factory(options, callbacks):
            return AssetFetcher(retries=0, transport=httpx.MockTransport(origin), callbacks=callbacks)

        self.queue = JobQueue(self.store, self.settings, plugins=PluginSet(),
                              pipeline_factory=lambda ch: CapturePipeline(self.store, ch,
                                                                          fetcher_factory=fetcher_factory))
        self.prober = FakeProber()
        self.app = create_app(self.settings, self.store, self.queue, self.prober)

    def tearDown(self):
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def test_health(self):
        with TestClient(self.app) as client:
            r = client.get('/health')
            self.assertEqual(r.status_code, 200)
            self.assertEqual(r.json()['status'], 'ok')

    def test_capture_wait_and_export(self):
        with TestClient(self.app) as client:
            r = client.post('/api/capture?wait=true', json={'url': 'https://site.test/', 'targetFormats': ['ghl']})
            self.assertEqual(r.status_code, 200, r.text)
            body = r.json()
            self.assertEqual(body['status'], 'completed')
            self.assertEqual(body['progress'], 100)
            self.assertIn('jobId', body)
            self.assertEqual(body['options']['targetFormats'], ['ghl'])
            pid = body['id']

            r = client.get(f'/api/projects/{pid}/export/ghl')
            self.assertEqual(r.status_code, 200)
            self.assertEqual(r.json()['format'], 'ghl')
            self.assertIn('ghl-section', r.json()['content'])

            r = client.get(f'/api/projects/{pid}/export/divi')
            self.assertEqual(r.status_code, 404)
            self.assertEqual(r.json()['error'], 'NotFound')

            r = client.get(f'/api/projects/{pid}')
            self.assertNotIn('originalHtml', r.json())
            r = client.get(f'/api/projects/{pid}?includeHtml=true')
            self.assertIn('Hello', r.json()['originalHtml'])

    def test_rerun_applies_options_from_body(self):
        with TestClient(self.app) as client:
            r = client.post('/api/capture?wait=true', json={'url': 'https://site.test/', 'targetFormats': ['ghl'],
                                                            'fetchRetries': 1})
            pid = r.json()['id']
            self.assertEqual(sorted(r.json()['exports']), ['ghl'])

            r = client.post('/api/capture?wait=true', json={'url': 'https://site.test/', 'projectId': pid,
                                                            'targetFormats': ['gutenberg', 'ghl']})
            self.assertEqual(r.status_code, 200, r.text)
            body = r.json()
            self.assertEqual(body['run'], 2)
            self.assertEqual(body['options']['targetFormats'], ['gutenberg', 'ghl'])
            self.assertEqual(body['options']['fetchRetries'], 1)
            self.assertEqual(sorted(body['exports']), ['ghl', 'gutenberg'])

            # a bare re-run keeps what the project already has
            r = client.post('/api/capture?wait=true', json={'url': 'https://site.test/', 'projectId': pid})
            self.assertEqual(r.json()['options']['targetFormats'], ['gutenberg', 'ghl'])

            r = client.post('/api/capture', json={'url': 'https://site.test/', 'projectId': pid,
                                                  'fetchRetries': 'many'})
            self.assertEqual(r.status_code, 400)
            self.assertEqual(r.json()['error'], 'ValidationError')

    def test_capture_without_wait_can_be_polled(self):
        with TestClient(self.app) as client:
            r = client.post('/api/capture', json={'url': 'https://site.test/'})
            self.assertEqual(r.status_code, 200)
            pid = r.json()['id']
            status = r.json()['status']
            for _ in range(200):
                status = client.get(f'/api/projects/{pid}').json()['status']
                if status in ('completed', 'failed'):
                    break
                time.sleep(0.02)
            self.assertEqual(status, 'completed')

    def test_failed_capture_returns_500(self):
        with TestClient(self.app) as client:
            r = client.post('/api/capture?wait=true', json={'url': 'https://down.test/'})
            self.assertEqual(r.status_code, 500)
            self.assertEqual(r.json(), {'error': 'NetworkError', 'message': 'origin returned HTTP 500'})

    def test_validation_errors_are_400(self):
        with TestClient(self.app) as client:
            for body in ({}, {'url': 'ftp://site.test/'}, {'url': 'https://site.test/', 'fetchRetries': 'many'}):
                r = client.post('/api/capture', json=body)
                self.assertEqual(r.status_code, 400, body)
                self.assertEqual(r.json()['error'], 'ValidationError')
            r = client.post('/api/capture', json={'url': 'https://site.test/', 'projectId': 'missing'})
            self.assertEqual(r.status_code, 404)

    def test_delete_then_history(self):
        p = self.store.create('https://site.test/')
        with TestClient(self.app) as client:
            r = client.delete(f'/api/projects/{p.id}')
            self.assertEqual(r.status_code, 200)
            self.assertIsNotNone(r.json()['deletedAt'])
            self.assertEqual(client.get(f'/api/projects/{p.id}').status_code, 404)
            history = client.get(f'/api/projects/{p.id}/history')
            self.assertEqual(history.status_code, 200)
            self.assertIsNotNone(history.json()['deletedAt'])
            self.assertEqual(client.get('/api/projects').json()['projects'], [])

    def test_archive_listing_and_busy(self):
        p = self.store.create('https://site.test/')
        with TestClient(self.app) as client:
            self.assertTrue(client.post(f'/api/projects/{p.id}/archive').json()['archived'])
            listed = client.get('/api/projects?includeArchived=false').json()['projects']
            self.assertEqual(listed, [])
            self.assertEqual(len(client.get('/api/projects').json()['projects']), 1)
            self.assertFalse(client.post(f'/api/projects/{p.id}/unarchive').json()['archived'])

            self.store.register_job(p.id, 'held')
            r = client.post(f'/api/projects/{p.id}/archive')
            self.assertEqual(r.status_code, 409)
            self.assertEqual(r.json()['error'], 'ProjectBusy')
            self.assertEqual(client.delete(f'/api/projects/{p.id}').status_code, 409)

    def test_cancel_idle_project(self):
        p = self.store.create('https://site.test/')
        with TestClient(self.app) as client:
            r = client.post(f'/api/projects/{p.id}/cancel')
            self.assertEqual(r.json(), {'id': p.id, 'signalled': 0, 'status': 'queued'})

    def test_probe_endpoints(self):
        with TestClient(self.app) as client:
            r = client.post('/api/detect-wordpress', json={'url': 'wp.test'})
            body = r.json()
            self.assertEqual(r.status_code, 200)
            self.assertEqual(body['url'], 'https://wp.test')
            self.assertTrue(body['isWordPress'])
            self.assertEqual(body['pageBuilder'], 'Divi')
            self.assertEqual(self.prober.calls[-1], ('page', 'https://wp.test', False))

            r = client.post('/api/get-style', json={'url': 'https://wp.test/', 'selector': 'h1'})
            self.assertEqual(r.json()['styles'], {'color': 'rgb(0, 0, 0)'})
            self.assertTrue(r.json()['found'])
            r = client.post('/api/get-style', json={'url': 'https://wp.test/', 'selector': '.nope'})
            self.assertFalse(r.json()['found'])
            r = client.post('/api/get-style', json={'url': 'https://wp.test/', 'selector': '  '})
            self.assertEqual(r.status_code, 400)

            r = client.post('/api/is-visible', json={'url': 'https://wp.test/', 'selector': '.hidden'})
            self.assertEqual(r.json()['found'], True)
            self.assertEqual(r.json()['visible'], False)
            self.assertEqual(r.json()['boundingBox']['width'], 0)


if __name__ == '__main__':
    unittest.main()
