import os, sys, asyncio, unittest
from contextlib import asynccontextmanager

BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

import httpx
import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from cw2pb_core import CloneOptions, JobCancelled, NetworkError, PhaseTimeoutError  # type: ignore
from cw2pb_fetch import AssetFetcher  # type: ignore
import cw2pb_capture as cap  # type: ignore

HTML = """<html><head><title>Fake</title></head><body>
<header><nav><a href="/">Home</a><a href="/about">About</a></nav></header>
<main><h1 data-cw2pb-id="1">Hello</h1><button data-cw2pb-id="5">Buy</button></main>
<footer><ul class="footer-menu"><li><a href="/a">A</a></li><li><a href="/b">B</a></li><li><a href="/c">C</a></li></ul></footer>
</body></html>"""


class FakeResponse:
    def __init__(self, status=200, headers=None):
        self.status = status
        self.headers = headers or {'Server': 'nginx', 'Content-Type': 'text/html'}


class FakePage:
    def __init__(self, status=200, goto_exc=None, slow=()):
        self.status = status
        self.goto_exc = goto_exc
        self.slow = set(slow)
        self.url = 'about:blank'
        self.evaluated = []
        self.viewports = []
        self.hovered = False

    async def add_init_script(self, script):
        self.init_script = script

    async def goto(self, url, wait_until=None, timeout=None):
        if self.goto_exc is not None:
            raise self.goto_exc
        self.url = url + '#final'
        return FakeResponse(self.status)

    async def wait_for_timeout(self, ms):
        await asyncio.sleep(0)

    async def set_viewport_size(self, size):
        self.viewports.append(dict(size))

    async def hover(self, selector, timeout=None):
        self.hovered = True

    async def focus(self, selector, timeout=None):
        self.hovered = False

    async def content(self):
        return HTML

    async def evaluate(self, script, arg=None):
        self.evaluated.append(script)
        if script in self.slow:
            await asyncio.sleep(1)
        if script == cap.SCROLL_STEP_JS:
            return {'atBottom': True}
        if script == cap.LAST_MUTATION_JS:
            return 1000
        if script == cap.MARK_ELEMENTS_JS:
            return {'styles': {'1': {'color': 'rgb(0, 0, 0)', 'fontSize': '32px'}},
                    'boxes': {'1': {'x': 0, 'y': 40, 'width': 600, 'height': 40}}}
        if script == cap.RUNTIME_GLOBALS_JS:
            return {'jQuery': '3.6.0'}
        if script == cap.TIMINGS_JS:
            return {'ttfb': 120, 'fcp': 800, 'lcp': 1500, 'shifts': [{'value': 0.02}], 'longTasks': [],
                    'resources': [{'name': 'https://example.test/app.js'}]}
        if script == cap.MEDIA_QUERIES_JS:
            return ['(max-width: 768px)']
        if script == cap.COLLECT_STYLES_JS:
            return {'styles': {'1': {'color': 'rgb(255, 0, 0)', 'fontSize': '32px'}}, 'hidden': []}
        if script == cap.INTERACTIVE_MARK_JS:
            return [{'id': '5', 'tag': 'button', 'text': 'Buy'}]
        if script == cap.READ_STYLE_JS:
            return {'color': 'red' if self.hovered else 'black'}
        return None


def _factory(page):
    @asynccontextmanager
    async def factory():
        yield page
    return factory


def _capture(page, options, **kw):
    orch = cap.CaptureOrchestrator(browser_factory=_factory(page))
    return asyncio.run(orch.capture('https://example.test/', options, **kw))


class TestBrowserCapture(unittest.TestCase):
    def test_phases_populate_snapshot(self):
        page = FakePage()
        snap = _capture(page, CloneOptions(capture_responsive=True, capture_interactive=True,
                                           capture_navigation=True))
        self.assertEqual(snap.captured_with, 'browser')
        self.assertEqual(snap.final_url, 'https://example.test/#final')
        self.assertEqual(snap.headers['server'], 'nginx')
        self.assertEqual(snap.html, HTML)
        self.assertEqual(snap.styles['1']['fontSize'], '32px')
        self.assertEqual(snap.boxes['1']['y'], 40)
        self.assertEqual(snap.runtime, {'jQuery': '3.6.0'})
        self.assertEqual(snap.timings, {'ttfb': 120, 'fcp': 800, 'lcp': 1500})
        self.assertEqual(len(snap.layout_shifts), 1)
        self.assertEqual(len(snap.resources), 1)
        self.assertEqual(snap.scroll, {'iterations': 1, 'quiet': True})
        self.assertEqual(snap.warnings, [])
        self.assertEqual(page.init_script, cap.TIMING_OBSERVER_JS)
        # scroll happens before styles are collected
        self.assertLess(page.evaluated.index(cap.SCROLL_STEP_JS), page.evaluated.index(cap.MARK_ELEMENTS_JS))

    def test_phases_report_rising_progress(self):
        class Phases(cap.PipelineCallbacks):
            def __init__(self):
                self.seen = []

            def phase(self, phase, pct):
                self.seen.append((phase, pct))

        cb = Phases()
        orch = cap.CaptureOrchestrator(cb, browser_factory=_factory(FakePage()))
        asyncio.run(orch.capture('https://example.test/', CloneOptions(capture_responsive=True,
                                                                       capture_interactive=True)))
        self.assertEqual({name for name, _ in cb.seen}, {'capturing'})
        percents = [pct for _, pct in cb.seen]
        self.assertGreaterEqual(len(percents), 6)
        self.assertEqual(percents, sorted(set(percents)))
        self.assertGreater(percents[0], 5)
        self.assertEqual(percents[-1], 29)

    def test_responsive_restores_viewport_and_derives_rules(self):
        page = FakePage()
        snap = _capture(page, CloneOptions(capture_responsive=True))
        self.assertEqual(page.viewports[-1], cap.BASE_VIEWPORT)
        self.assertEqual(snap.responsive['mediaQueries'], ['(max-width: 768px)'])
        self.assertIn(375, snap.variant_widths())
        rules = snap.responsive['derivedRules']
        self.assertTrue(rules)
        self.assertNotIn(1920, [r['maxWidth'] for r in rules])
        self.assertEqual(rules[0]['declarations'], {'color': 'rgb(255, 0, 0)'})

    def test_interactive_states_via_pointer_events(self):
        snap = _capture(FakePage(), CloneOptions(capture_interactive=True))
        self.assertEqual(len(snap.interactive), 1)
        self.assertEqual(snap.interactive[0]['states'], {'hover': {'color': {'from': 'black', 'to': 'red'}}})

    def test_navigation_detected(self):
        snap = _capture(FakePage(), CloneOptions(capture_navigation=True))
        levels = [n['level'] for n in snap.navigation]
        self.assertEqual(levels[0], 'semantic')
        self.assertIn('class', levels)

    def test_slow_enrichment_phase_is_skipped(self):
        snap = _capture(FakePage(slow=[cap.RUNTIME_GLOBALS_JS]), CloneOptions(phase_timeout_ms=50))
        self.assertEqual(snap.runtime, {})
        self.assertIn('runtime phase exceeded 50ms timeout; enrichment skipped', snap.warnings)
        self.assertIn('runtime', snap.phase_ms)
        self.assertEqual(snap.html, HTML)

    def test_load_timeout_is_fatal(self):
        page = FakePage(goto_exc=PlaywrightTimeoutError('Timeout 30000ms exceeded'))
        with self.assertRaises(PhaseTimeoutError) as ctx:
            _capture(page, CloneOptions(navigation_timeout_ms=30000))
        self.assertIn('initial load timeout after 30000ms', ctx.exception.message)
        self.assertEqual(ctx.exception.stage, 'capturing')

    def test_error_status_is_fatal(self):
        with self.assertRaises(NetworkError) as ctx:
            _capture(FakePage(status=500), CloneOptions())
        self.assertIn('HTTP 500', ctx.exception.message)

    def test_cancel_check_propagates(self):
        def cancel(stage):
            raise JobCancelled(stage)

        with self.assertRaises(JobCancelled):
            _capture(FakePage(), CloneOptions(), cancel_check=cancel)


class TestStaticCapture(unittest.TestCase):
    def _run(self, options, handler=None):
        def default(request):
            return httpx.Response(200, text=HTML, headers={'Content-Type': 'text/html', 'Server': 'Apache'})

        async def go():
            async with AssetFetcher(retries=0, transport=httpx.MockTransport(handler or default)) as fetcher:
                return await cap.CaptureOrchestrator().capture('https://example.test/', options, fetcher=fetcher)
        return asyncio.run(go())

    def test_static_capture(self):
        snap = self._run(CloneOptions(use_browser_automation=False, capture_navigation=True))
        self.assertEqual(snap.captured_with, 'static')
        self.assertEqual(snap.headers['server'], 'Apache')
        self.assertTrue(snap.timings['estimated'])
        self.assertEqual(snap.styles, {})
        self.assertTrue(snap.navigation)
        self.assertEqual(snap.warnings, [])

    def test_browser_only_enrichment_warns(self):
        snap = self._run(CloneOptions(use_browser_automation=False, capture_responsive=True,
                                      capture_animations=True))
        self.assertEqual(snap.warnings, ['responsive, animations capture requires browser automation; skipped'])
        self.assertIsNone(snap.responsive)

    def test_static_without_fetcher(self):
        orch = cap.CaptureOrchestrator()
        with pytest.raises(NetworkError):
            asyncio.run(orch.capture('https://example.test/', CloneOptions(use_browser_automation=False)))


def test_detect_navigation_tiers():
    navs = cap.detect_navigation(HTML)
    assert navs[0]['level'] == 'semantic' and navs[0]['confidence'] == 95
    assert navs[0]['location'] == 'header'
    assert [l['href'] for l in navs[0]['links']] == ['/', '/about']
    footer = [n for n in navs if n['location'] == 'footer']
    assert len(footer) == 1 and footer[0]['level'] == 'class'
    assert cap.detect_navigation('<p>no links</p>') == []


def test_analyze_styles():
    styles = {'1': {'color': 'rgb(0, 0, 0)', 'fontFamily': '"Inter", sans-serif', 'fontSize': '32px', 'zIndex': '10'},
              '2': {'color': 'rgb(0, 0, 0)', 'fontSize': '16px', 'zIndex': 'auto'}}
    out = cap.analyze_styles(styles, [{'family': 'Inter', 'src': 'url(a.woff2)'}, {'family': ''}])
    assert out['colors'] == ['#000000']
    assert out['fontFamilies'] == ['Inter']
    assert out['typographyScale'] == ['32px', '16px']
    assert out['maxZIndex'] == 10
    assert len(out['fontFaces']) == 1


def test_probe_page_uses_factory():
    page = FakePage()
    res = asyncio.run(cap.probe_page('https://example.test/', browser_factory=_factory(page)))
    assert res['html'] == HTML
    assert res['headers']['server'] == 'nginx'
    assert res['runtime'] == {'jQuery': '3.6.0'}
