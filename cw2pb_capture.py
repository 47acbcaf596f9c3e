"""Capture Orchestrator: drive a headless browser through the capture phases.

Phase order for a browser capture:
  load -> scroll (lazy content) -> mark/style -> responsive -> interactive
  -> animations -> style analysis -> navigation

Only the initial load may fail the capture (PhaseTimeoutError / NetworkError).
Every enrichment phase is time boxed by CloneOptions.phase_timeout_ms and,
when it overruns or errors, is skipped with a warning recorded on the snapshot.

The browser is reached through `browser_factory`, an async context manager
yielding a Playwright-style page. Tests pass a fake page; production uses
`playwright_page` (playwright.async_api).
"""
from __future__ import annotations

import asyncio, logging, re, time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable

from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from cw2pb_core import (
    CloneOptions, JobCancelled, NetworkError, PhaseTimeoutError, PipelineCallbacks, MARKER_ATTR, _invoke, rgb_to_hex,
)

logger = logging.getLogger("cw2pb.capture")

LAUNCH_ARGS = ['--disable-dev-shm-usage', '--disable-setuid-sandbox', '--no-sandbox']
BASE_VIEWPORT = {'width': 1920, 'height': 1080}
MAX_STYLED_ELEMENTS = 1500
MAX_INTERACTIVE_ELEMENTS = 30
INTERACTIVE_SELECTORS = 'button, a, input, textarea, select, [role="button"], [onclick], .btn, .button'
ANIMATION_SAMPLE_OFFSETS_MS = (0, 200, 400, 800)
CAPTURE_PERCENT_RANGE = (5, 29)        # browser sub-phases report inside the capturing band
STYLE_PROPS = [
    'display', 'position', 'backgroundColor', 'backgroundImage', 'color', 'fontSize', 'fontWeight',
    'fontFamily', 'lineHeight', 'textAlign', 'padding', 'margin', 'border', 'borderRadius',
    'boxShadow', 'width', 'height', 'zIndex', 'opacity', 'filter', 'visibility',
]
ANIMATED_PROPS = ['opacity', 'transform', 'color', 'backgroundColor', 'width', 'height', 'left', 'top']

# ---------------- page scripts ----------------
TIMING_OBSERVER_JS = """
(() => {
  if (window.__cw2pb_perf) return;
  const perf = window.__cw2pb_perf = {lcp: null, cls: 0, shifts: [], longTasks: [], inp: null};
  const obs = (type, cb) => {
    try { new PerformanceObserver(l => l.getEntries().forEach(cb)).observe({type, buffered: true}); } catch (e) {}
  };
  obs('largest-contentful-paint', e => { perf.lcp = e.renderTime || e.loadTime || e.startTime; });
  obs('layout-shift', e => { if (!e.hadRecentInput) { perf.cls += e.value; perf.shifts.push({value: e.value, time: e.startTime}); } });
  obs('longtask', e => perf.longTasks.push({start: e.startTime, duration: e.duration}));
  obs('event', e => { if (e.interactionId) perf.inp = Math.max(perf.inp || 0, e.duration); });
})();
"""

TIMINGS_JS = """
() => {
  const perf = window.__cw2pb_perf || {};
  const nav = performance.getEntriesByType('navigation')[0];
  const paint = {};
  performance.getEntriesByType('paint').forEach(p => { paint[p.name] = p.startTime; });
  const resources = performance.getEntriesByType('resource').slice(0, 500).map(r => ({
    name: r.name, initiatorType: r.initiatorType, transferSize: r.transferSize || 0,
    encodedBodySize: r.encodedBodySize || 0, duration: Math.round(r.duration),
    renderBlocking: r.renderBlockingStatus || null,
  }));
  return {
    ttfb: nav ? nav.responseStart : null,
    domInteractive: nav ? nav.domInteractive : null,
    domContentLoaded: nav ? nav.domContentLoadedEventEnd : null,
    load: nav ? nav.loadEventEnd : null,
    fcp: paint['first-contentful-paint'] || null,
    lcp: perf.lcp, cls: perf.cls || 0, shifts: perf.shifts || [],
    longTasks: perf.longTasks || [], inp: perf.inp, resources,
  };
}
"""

IMAGES_LOADED_JS = """
(cap) => Promise.race([
  Promise.all(Array.from(document.images).filter(i => !i.complete)
    .map(i => new Promise(r => { i.addEventListener('load', r); i.addEventListener('error', r); }))),
  new Promise(r => setTimeout(r, cap)),
])
"""

MUTATION_OBSERVER_JS = """
() => { try { window.__cw2pb_last_mut = Date.now(); if (!window.__cw2pb_observer) {
  const obs = new MutationObserver(() => { window.__cw2pb_last_mut = Date.now(); });
  obs.observe(document.documentElement, {subtree: true, childList: true, attributes: true, characterData: true});
  window.__cw2pb_observer = obs; } } catch (e) {} }
"""

LAST_MUTATION_JS = "() => Date.now() - (window.__cw2pb_last_mut || Date.now())"

SCROLL_STEP_JS = """
() => {
  window.scrollBy(0, Math.max(100, window.innerHeight));
  const h = document.body ? document.body.scrollHeight : 0;
  return {y: window.scrollY, height: h, atBottom: window.innerHeight + window.scrollY >= h - 2};
}
"""

SCROLL_TOP_JS = "() => window.scrollTo(0, 0)"

MARK_ELEMENTS_JS = """
({limit, props, attr}) => {
  const styles = {}, boxes = {};
  const els = document.body ? document.body.querySelectorAll('*') : [];
  let n = 0;
  for (const el of els) {
    if (n >= limit) break;
    const tag = el.tagName.toLowerCase();
    if (['script', 'style', 'noscript', 'template'].includes(tag)) continue;
    const id = String(n++);
    el.setAttribute(attr, id);
    const cs = getComputedStyle(el);
    const s = {};
    for (const p of props) s[p] = cs[p];
    styles[id] = s;
    const r = el.getBoundingClientRect();
    boxes[id] = {x: Math.round(r.left + scrollX), y: Math.round(r.top + scrollY),
                 width: Math.round(r.width), height: Math.round(r.height)};
  }
  return {count: n, styles, boxes};
}
"""

COLLECT_STYLES_JS = """
({props, attr}) => {
  const styles = {}, hidden = [];
  document.querySelectorAll('[' + attr + ']').forEach(el => {
    const id = el.getAttribute(attr);
    const cs = getComputedStyle(el);
    const s = {};
    for (const p of props) s[p] = cs[p];
    styles[id] = s;
    const r = el.getBoundingClientRect();
    if (cs.display === 'none' || cs.visibility === 'hidden' || (r.width === 0 && r.height === 0)) hidden.push(id);
  });
  return {styles, hidden};
}
"""

MEDIA_QUERIES_JS = """
() => {
  const out = new Set();
  for (const sheet of Array.from(document.styleSheets)) {
    let rules;
    try { rules = sheet.cssRules; } catch (e) { continue; }
    for (const rule of Array.from(rules || [])) {
      if (rule.media && rule.conditionText !== undefined) out.add(rule.conditionText || rule.media.mediaText);
    }
  }
  return Array.from(out);
}
"""

INTERACTIVE_MARK_JS = """
({selectors, limit, attr}) => {
  const out = [];
  let extra = 0;
  for (const el of Array.from(document.querySelectorAll(selectors)).slice(0, limit)) {
    if (!el.hasAttribute(attr)) el.setAttribute(attr, 'i' + (extra++));
    out.push({id: el.getAttribute(attr), tag: el.tagName.toLowerCase(),
              text: (el.innerText || el.value || '').trim().slice(0, 80)});
  }
  return out;
}
"""

READ_STYLE_JS = """
({id, props, attr}) => {
  const el = document.querySelector('[' + attr + '="' + id + '"]');
  if (!el) return null;
  const cs = getComputedStyle(el);
  const s = {};
  for (const p of props) s[p] = cs[p];
  return s;
}
"""

ANIMATION_JS = """
({attr}) => {
  const keyframes = [];
  for (const sheet of Array.from(document.styleSheets)) {
    let rules;
    try { rules = sheet.cssRules; } catch (e) { continue; }
    for (const rule of Array.from(rules || [])) {
      if (rule.type === 7) keyframes.push({name: rule.name, cssText: rule.cssText.slice(0, 2000)});
    }
  }
  const animated = [];
  document.querySelectorAll('[' + attr + ']').forEach(el => {
    const cs = getComputedStyle(el);
    const anim = cs.animationName && cs.animationName !== 'none';
    const trans = cs.transitionDuration && cs.transitionDuration.split(',').some(d => parseFloat(d) > 0);
    if (anim || trans || (cs.transform && cs.transform !== 'none')) {
      animated.push({id: el.getAttribute(attr), animationName: cs.animationName,
                     animationDuration: cs.animationDuration, transitionProperty: cs.transitionProperty,
                     transitionDuration: cs.transitionDuration, transform: cs.transform});
    }
  });
  return {keyframes, animated: animated.slice(0, 200)};
}
"""

SAMPLE_STYLES_JS = """
({ids, props, attr}) => {
  const out = {};
  for (const id of ids) {
    const el = document.querySelector('[' + attr + '="' + id + '"]');
    if (!el) continue;
    const cs = getComputedStyle(el);
    const s = {};
    for (const p of props) s[p] = cs[p];
    out[id] = s;
  }
  return out;
}
"""

FONT_FACES_JS = """
() => {
  const out = [];
  for (const sheet of Array.from(document.styleSheets)) {
    let rules;
    try { rules = sheet.cssRules; } catch (e) { continue; }
    for (const rule of Array.from(rules || [])) {
      if (rule.type === 5) out.push({family: rule.style.getPropertyValue('font-family'),
        src: rule.style.getPropertyValue('src'), weight: rule.style.getPropertyValue('font-weight'),
        style: rule.style.getPropertyValue('font-style')});
    }
  }
  return out;
}
"""

RUNTIME_GLOBALS_JS = """
() => {
  const out = {}, w = window;
  const v = (fn) => { try { return fn(); } catch (e) { return undefined; } };
  const set = (name, value) => { if (value !== undefined && value !== null && value !== false) out[name] = value === true ? true : String(value); };
  set('React', v(() => w.React && (w.React.version || true)) || v(() => document.querySelector('[data-reactroot]') ? true : undefined));
  set('Vue.js', v(() => w.Vue && (w.Vue.version || true)) || v(() => document.querySelector('[data-v-app]') ? true : undefined));
  set('Angular', v(() => { const el = document.querySelector('[ng-version]'); return el ? el.getAttribute('ng-version') : undefined; }));
  set('AngularJS', v(() => w.angular && w.angular.version && w.angular.version.full));
  set('Next.js', v(() => w.__NEXT_DATA__ ? ((w.next && w.next.version) || true) : undefined));
  set('Nuxt.js', v(() => (w.__NUXT__ || w.$nuxt) ? true : undefined));
  set('Gatsby', v(() => w.___gatsby ? true : undefined));
  set('Ember.js', v(() => w.Ember && (w.Ember.VERSION || true)));
  set('jQuery', v(() => w.jQuery && w.jQuery.fn && w.jQuery.fn.jquery));
  set('Lodash', v(() => w._ && w._.VERSION));
  set('Moment.js', v(() => w.moment && w.moment.version));
  set('Three.js', v(() => w.THREE && (w.THREE.REVISION || true)));
  set('Chart.js', v(() => w.Chart && (w.Chart.version || true)));
  set('D3.js', v(() => w.d3 && (w.d3.version || true)));
  set('WordPress', v(() => w.wp ? true : undefined));
  set('Shopify', v(() => w.Shopify ? true : undefined));
  set('Google Analytics', v(() => (w.ga || w.gtag) ? true : undefined));
  set('Google Tag Manager', v(() => w.google_tag_manager ? true : undefined));
  set('Facebook Pixel', v(() => w.fbq ? true : undefined));
  set('Hotjar', v(() => w.hj ? true : undefined));
  set('Mixpanel', v(() => w.mixpanel ? true : undefined));
  set('Elementor', v(() => w.elementorFrontend ? ((w.elementorFrontendConfig && w.elementorFrontendConfig.version) || true) : undefined));
  return out;
}
"""

PROBE_STYLE_JS = """
({selector, props}) => {
  const el = document.querySelector(selector);
  if (!el) return null;
  const cs = getComputedStyle(el);
  const s = {};
  for (const p of props) s[p] = cs[p];
  return s;
}
"""

PROBE_VISIBLE_JS = """
(selector) => {
  const el = document.querySelector(selector);
  if (!el) return {found: false, visible: false, boundingBox: null};
  const cs = getComputedStyle(el);
  const r = el.getBoundingClientRect();
  const visible = cs.display !== 'none' && cs.visibility !== 'hidden' && parseFloat(cs.opacity || '1') > 0
                  && r.width > 0 && r.height > 0;
  return {found: true, visible, boundingBox: {x: r.x, y: r.y, width: r.width, height: r.height}};
}
"""


# ---------------- snapshot ----------------
@dataclass
class PageSnapshot:
    url: str
    final_url: str
    html: str
    headers: Dict[str, str] = field(default_factory=dict)
    status_code: int = 200
    captured_with: str = 'browser'
    timings: Dict[str, Any] = field(default_factory=dict)
    layout_shifts: List[Dict[str, Any]] = field(default_factory=list)
    long_tasks: List[Dict[str, Any]] = field(default_factory=list)
    resources: List[Dict[str, Any]] = field(default_factory=list)
    styles: Dict[str, Dict[str, str]] = field(default_factory=dict)
    boxes: Dict[str, Dict[str, int]] = field(default_factory=dict)
    runtime: Dict[str, Any] = field(default_factory=dict)
    responsive: Optional[Dict[str, Any]] = None
    interactive: Optional[List[Dict[str, Any]]] = None
    animations: Optional[Dict[str, Any]] = None
    style_analysis: Optional[Dict[str, Any]] = None
    navigation: Optional[List[Dict[str, Any]]] = None
    scroll: Optional[Dict[str, Any]] = None
    viewport: Dict[str, int] = field(default_factory=lambda: dict(BASE_VIEWPORT))
    document_bytes: int = 0
    phase_ms: Dict[str, int] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def variant_widths(self) -> List[int]:
        if not self.responsive:
            return []
        return sorted({b['width'] for b in self.responsive.get('breakpoints', [])})

    def summary(self) -> Dict[str, Any]:
        return {
            'capturedWith': self.captured_with,
            'finalUrl': self.final_url,
            'statusCode': self.status_code,
            'styledElements': len(self.styles),
            'responsiveWidths': self.variant_widths(),
            'interactiveElements': len(self.interactive or []),
            'animatedElements': len((self.animations or {}).get('animated', [])),
            'navigationMenus': len(self.navigation or []),
            'scroll': self.scroll,
            'phaseMs': dict(self.phase_ms),
            'warnings': list(self.warnings),
        }


# ---------------- browser factory ----------------
@asynccontextmanager
async def playwright_page(viewport: Optional[Dict[str, int]] = None, headless: bool = True):
    from playwright.async_api import async_playwright
    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=headless, args=LAUNCH_ARGS)
        try:
            context = await browser.new_context(viewport=viewport or dict(BASE_VIEWPORT))
            page = await context.new_page()
            yield page
        finally:
            await browser.close()


def _short_error(e: BaseException) -> str:
    msg = getattr(e, 'message', None) or str(e) or e.__class__.__name__
    return msg.strip().splitlines()[0][:300]


# ---------------- orchestrator ----------------
class CaptureOrchestrator:
    settle_ms = 2000
    image_wait_cap_ms = 5000
    breakpoint_settle_ms = 1000
    scroll_step_ms = 100

    def __init__(self, callbacks: Optional[PipelineCallbacks] = None, browser_factory: Optional[Callable] = None):
        self.callbacks = callbacks
        self.browser_factory = browser_factory or playwright_page

    def _warn(self, snapshot: PageSnapshot, message: str):
        snapshot.warnings.append(message)
        _invoke(self.callbacks, 'warning', message)

    async def capture(self, url: str, options: CloneOptions, fetcher=None,
                      cancel_check: Optional[Callable[[str], None]] = None) -> PageSnapshot:
        """Produce a PageSnapshot or raise NetworkError / PhaseTimeoutError."""
        if options.use_browser_automation:
            return await self._capture_browser(url, options, cancel_check)
        if fetcher is None:
            raise NetworkError('static capture requires an asset fetcher', 'capturing', url)
        return await self._capture_static(url, options, fetcher)

    # ---- static (no browser) ----
    async def _capture_static(self, url: str, options: CloneOptions, fetcher) -> PageSnapshot:
        res = await fetcher.fetch_document(url, timeout=options.navigation_timeout_ms / 1000.0)
        snapshot = PageSnapshot(url=url, final_url=res.final_url, html=res.text, headers=res.headers,
                                status_code=res.status_code, captured_with='static',
                                document_bytes=len(res.content))
        snapshot.timings = {'ttfb': res.elapsed_ms, 'estimated': True}
        skipped = [name for name, flag in (
            ('responsive', options.capture_responsive), ('interactive', options.capture_interactive),
            ('animations', options.capture_animations), ('style analysis', options.capture_style_analysis),
        ) if flag]
        if skipped:
            self._warn(snapshot, f"{', '.join(skipped)} capture requires browser automation; skipped")
        if options.capture_navigation:
            snapshot.navigation = detect_navigation(snapshot.html)
        _invoke(self.callbacks, 'log', f"[capture] static fetch {url} ({len(res.content)} bytes)")
        return snapshot

    # ---- browser ----
    async def _run_phase(self, snapshot: PageSnapshot, name: str, budget_ms: int, fn):
        start = time.perf_counter()
        try:
            return await asyncio.wait_for(fn(), timeout=budget_ms / 1000.0)
        except (asyncio.TimeoutError, PlaywrightTimeoutError):
            self._warn(snapshot, f"{name} phase exceeded {budget_ms}ms timeout; enrichment skipped")
        except JobCancelled:
            raise
        except Exception as e:
            self._warn(snapshot, f"{name} phase failed: {_short_error(e)}; enrichment skipped")
        finally:
            snapshot.phase_ms[name] = int((time.perf_counter() - start) * 1000)
        return None

    async def _load(self, page, url: str, options: CloneOptions):
        nav_ms = options.navigation_timeout_ms
        try:
            await page.add_init_script(TIMING_OBSERVER_JS)
            response = await asyncio.wait_for(
                page.goto(url, wait_until='networkidle', timeout=nav_ms), timeout=nav_ms / 1000.0 + 5)
        except (asyncio.TimeoutError, PlaywrightTimeoutError):
            raise PhaseTimeoutError(f"initial load timeout after {nav_ms}ms", 'capturing', url)
        except PlaywrightError as e:
            raise NetworkError(f"origin unreachable: {_short_error(e)}", 'capturing', url)
        if response is not None and response.status >= 400:
            raise NetworkError(f"origin returned HTTP {response.status}", 'capturing', url)
        return response

    async def _capture_browser(self, url: str, options: CloneOptions, cancel_check=None) -> PageSnapshot:
        def _check(stage: str):
            if cancel_check:
                cancel_check(stage)
        budget = options.phase_timeout_ms
        async with self.browser_factory() as page:
            t0 = time.perf_counter()
            response = await self._load(page, url, options)
            headers = {k.lower(): v for k, v in ((response.headers if response is not None else {}) or {}).items()}
            snapshot = PageSnapshot(url=url, final_url=getattr(page, 'url', url) or url, html='',
                                    headers=headers, status_code=response.status if response is not None else 200)
            snapshot.phase_ms['load'] = int((time.perf_counter() - t0) * 1000)
            _invoke(self.callbacks, 'log', f"[capture] loaded {url}")

            planned = 5 + sum(1 for flag in (options.capture_responsive, options.capture_interactive,
                                             options.capture_animations, options.capture_style_analysis) if flag)
            done = [0]
            low, high = CAPTURE_PERCENT_RANGE

            async def phase(name, fn):
                result = await self._run_phase(snapshot, name, budget, fn)
                done[0] += 1
                _invoke(self.callbacks, 'phase', 'capturing', low + (high - low) * done[0] // planned)
                return result

            await phase('settle', lambda: self._settle(page))
            _check('capturing')
            snapshot.scroll = await phase('scroll', lambda: self._scroll(page, options))
            _check('capturing')
            marked = await phase('styles', lambda: page.evaluate(
                MARK_ELEMENTS_JS, {'limit': MAX_STYLED_ELEMENTS, 'props': STYLE_PROPS, 'attr': MARKER_ATTR}))
            if marked:
                snapshot.styles = marked.get('styles') or {}
                snapshot.boxes = marked.get('boxes') or {}
            if options.capture_responsive:
                _check('capturing')
                snapshot.responsive = await phase('responsive',
                                                  lambda: self._responsive(page, options, snapshot.styles))
            if options.capture_interactive:
                _check('capturing')
                snapshot.interactive = await phase('interactive', lambda: self._interactive(page))
            if options.capture_animations:
                _check('capturing')
                snapshot.animations = await phase('animations', lambda: self._animations(page))
            if options.capture_style_analysis:
                font_faces = await phase('font-faces', lambda: page.evaluate(FONT_FACES_JS))
                snapshot.style_analysis = analyze_styles(snapshot.styles, font_faces or [])
            runtime = await phase('runtime', lambda: page.evaluate(RUNTIME_GLOBALS_JS))
            snapshot.runtime = runtime or {}
            timings = await phase('timings', lambda: page.evaluate(TIMINGS_JS))
            if timings:
                snapshot.layout_shifts = timings.pop('shifts', None) or []
                snapshot.long_tasks = timings.pop('longTasks', None) or []
                snapshot.resources = timings.pop('resources', None) or []
                snapshot.timings = timings
            snapshot.html = await page.content()
            snapshot.document_bytes = len(snapshot.html.encode('utf-8'))
            if options.capture_navigation:
                snapshot.navigation = detect_navigation(snapshot.html)
            snapshot.final_url = getattr(page, 'url', None) or snapshot.final_url
        return snapshot

    async def _settle(self, page):
        await page.wait_for_timeout(self.settle_ms)
        await page.evaluate(IMAGES_LOADED_JS, self.image_wait_cap_ms)

    async def _scroll(self, page, options: CloneOptions) -> Dict[str, Any]:
        """Scroll until the bottom is reached and the DOM has been quiet for dom_quiet_ms."""
        await page.evaluate(MUTATION_OBSERVER_JS)
        iterations = 0
        quiet = False
        for iterations in range(1, options.scroll_max_iterations + 1):
            state = await page.evaluate(SCROLL_STEP_JS) or {}
            await page.wait_for_timeout(self.scroll_step_ms)
            if state.get('atBottom'):
                delta = await page.evaluate(LAST_MUTATION_JS)
                if isinstance(delta, (int, float)) and delta >= options.dom_quiet_ms:
                    quiet = True
                    break
                await page.wait_for_timeout(min(200, max(50, options.dom_quiet_ms // 3)))
        await page.evaluate(SCROLL_TOP_JS)
        return {'iterations': iterations, 'quiet': quiet}

    async def _responsive(self, page, options: CloneOptions, baseline: Dict[str, Dict[str, str]]) -> Dict[str, Any]:
        media = await page.evaluate(MEDIA_QUERIES_JS) or []
        variants = []
        try:
            for bp in options.breakpoints:
                await page.set_viewport_size({'width': bp.width, 'height': bp.height})
                await page.wait_for_timeout(self.breakpoint_settle_ms)
                data = await page.evaluate(COLLECT_STYLES_JS, {'props': STYLE_PROPS, 'attr': MARKER_ATTR}) or {}
                styles = data.get('styles') or {}
                variants.append({'name': bp.name, 'width': bp.width, 'height': bp.height,
                                 'styles': styles, 'hidden': data.get('hidden') or []})
        finally:
            await page.set_viewport_size(dict(BASE_VIEWPORT))
        return {'breakpoints': variants, 'mediaQueries': media,
                'derivedRules': derive_breakpoint_rules(baseline, variants)}

    async def _force_state_session(self, page):
        ctx = getattr(page, 'context', None)
        if ctx is None or not hasattr(ctx, 'new_cdp_session'):
            return None
        try:
            cdp = await ctx.new_cdp_session(page)
            await cdp.send('DOM.enable')
            await cdp.send('CSS.enable')
            return cdp
        except PlaywrightError:
            return None

    async def _interactive(self, page) -> List[Dict[str, Any]]:
        items = await page.evaluate(INTERACTIVE_MARK_JS, {'selectors': INTERACTIVE_SELECTORS,
                                                          'limit': MAX_INTERACTIVE_ELEMENTS,
                                                          'attr': MARKER_ATTR}) or []
        cdp = await self._force_state_session(page)
        root_id = None
        if cdp is not None:
            doc = await cdp.send('DOM.getDocument', {'depth': 0})
            root_id = doc['root']['nodeId']
        out = []
        for item in items:
            eid = item['id']
            selector = f'[{MARKER_ATTR}="{eid}"]'
            arg = {'id': eid, 'props': STYLE_PROPS, 'attr': MARKER_ATTR}
            base = await page.evaluate(READ_STYLE_JS, arg) or {}
            states: Dict[str, Dict[str, Dict[str, str]]] = {}
            if cdp is not None:
                node = await cdp.send('DOM.querySelector', {'nodeId': root_id, 'selector': selector})
                node_id = node.get('nodeId')
                for state in ('hover', 'focus', 'active'):
                    if not node_id:
                        break
                    await cdp.send('CSS.forcePseudoState', {'nodeId': node_id, 'forcedPseudoClasses': [state]})
                    after = await page.evaluate(READ_STYLE_JS, arg) or {}
                    await cdp.send('CSS.forcePseudoState', {'nodeId': node_id, 'forcedPseudoClasses': []})
                    delta = style_delta(base, after)
                    if delta:
                        states[state] = delta
            else:
                # no devtools protocol: real pointer/focus events, :active is not reachable this way
                for state, action in (('hover', page.hover), ('focus', page.focus)):
                    try:
                        await action(selector, timeout=1000)
                    except PlaywrightError:
                        continue
                    after = await page.evaluate(READ_STYLE_JS, arg) or {}
                    delta = style_delta(base, after)
                    if delta:
                        states[state] = delta
            out.append({**item, 'states': states})
        return out

    async def _animations(self, page) -> Dict[str, Any]:
        found = await page.evaluate(ANIMATION_JS, {'attr': MARKER_ATTR}) or {}
        animated = found.get('animated') or []
        ids = [a['id'] for a in animated]
        samples: List[Dict[str, Dict[str, str]]] = []
        elapsed = 0
        for offset in ANIMATION_SAMPLE_OFFSETS_MS:
            if offset > elapsed:
                await page.wait_for_timeout(offset - elapsed)
                elapsed = offset
            if ids:
                samples.append(await page.evaluate(SAMPLE_STYLES_JS, {'ids': ids, 'props': ANIMATED_PROPS,
                                                                       'attr': MARKER_ATTR}) or {})
        changing: Dict[str, List[str]] = {}
        for eid in ids:
            props = set()
            for a, b in zip(samples, samples[1:]):
                props.update(style_delta(a.get(eid) or {}, b.get(eid) or {}).keys())
            if props:
                changing[eid] = sorted(props)
        return {'keyframes': found.get('keyframes') or [], 'animated': animated,
                'changing': changing, 'sampleOffsetsMs': list(ANIMATION_SAMPLE_OFFSETS_MS)}


# ---------------- pure helpers ----------------
def style_delta(before: Dict[str, str], after: Dict[str, str]) -> Dict[str, Dict[str, str]]:
    return {k: {'from': before.get(k), 'to': v} for k, v in after.items() if before.get(k) != v}


def derive_breakpoint_rules(baseline: Dict[str, Dict[str, str]], variants: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Media-query equivalent rules: per breakpoint, declarations that differ from the base viewport."""
    rules = []
    for v in sorted(variants, key=lambda b: -b['width']):
        if v['width'] == BASE_VIEWPORT['width']:
            continue
        for eid, style in v['styles'].items():
            base = baseline.get(eid)
            if not base:
                continue
            decl = {k: val for k, val in style.items() if base.get(k) != val and k not in ('width', 'height')}
            if decl:
                rules.append({'maxWidth': v['width'], 'elementId': eid, 'declarations': decl})
    return rules


def analyze_styles(styles: Dict[str, Dict[str, str]], font_faces: List[Dict[str, str]]) -> Dict[str, Any]:
    colors: Dict[str, int] = {}
    backgrounds: Dict[str, int] = {}
    families: Dict[str, int] = {}
    sizes: Dict[str, int] = {}
    shadows: Dict[str, int] = {}
    filters: Dict[str, int] = {}
    max_z = 0
    for s in styles.values():
        c = rgb_to_hex(s.get('color', ''))
        if c: colors[c] = colors.get(c, 0) + 1
        bg = rgb_to_hex(s.get('backgroundColor', ''))
        if bg: backgrounds[bg] = backgrounds.get(bg, 0) + 1
        fam = (s.get('fontFamily') or '').split(',')[0].strip().strip('"\'')
        if fam: families[fam] = families.get(fam, 0) + 1
        size = s.get('fontSize')
        if size: sizes[size] = sizes.get(size, 0) + 1
        sh = s.get('boxShadow')
        if sh and sh != 'none': shadows[sh] = shadows.get(sh, 0) + 1
        fl = s.get('filter')
        if fl and fl != 'none': filters[fl] = filters.get(fl, 0) + 1
        try:
            max_z = max(max_z, int(s.get('zIndex') or 0))
        except ValueError:
            pass

    def top(d, n=12):
        return [k for k, _ in sorted(d.items(), key=lambda kv: (-kv[1], kv[0]))[:n]]

    def px(v):
        try: return float(v.replace('px', ''))
        except ValueError: return 0.0

    return {
        'colors': top(colors),
        'backgroundColors': top(backgrounds),
        'fontFamilies': top(families, 6),
        'typographyScale': sorted(sizes, key=px, reverse=True)[:10],
        'shadows': top(shadows, 8),
        'filters': top(filters, 8),
        'maxZIndex': max_z,
        'fontFaces': [f for f in font_faces if f.get('family')],
    }


def detect_navigation(html: str) -> List[Dict[str, Any]]:
    """Navigation menus with confidence tiers (semantic > aria > class > structural > contextual)."""
    soup = BeautifulSoup(html or '', 'html.parser')
    seen = set()
    out = []

    def add(el, level: str, confidence: int):
        if id(el) in seen:
            return
        links = [a for a in el.find_all('a', href=True)]
        if not links:
            return
        for inner in el.find_all(True):
            seen.add(id(inner))
        seen.add(id(el))
        location = 'body'
        for parent in el.parents:
            if parent.name in ('header', 'footer'):
                location = parent.name
                break
        out.append({
            'level': level,
            'confidence': confidence,
            'tag': el.name,
            'id': el.get('id'),
            'location': location,
            'links': [{'text': a.get_text(' ', strip=True)[:80], 'href': a['href']} for a in links[:50]],
        })

    for el in soup.find_all('nav'):
        add(el, 'semantic', 95)
    for el in soup.find_all(attrs={'role': 'navigation'}):
        add(el, 'aria', 90)
    for el in soup.find_all(['ul', 'div', 'ol']):
        ident = ' '.join(el.get('class') or []) + ' ' + (el.get('id') or '')
        if re.search(r'nav|menu', ident, re.I) and len(el.find_all('a', href=True)) >= 2:
            add(el, 'class', 85)
    for container in soup.find_all(['header', 'footer']):
        for ul in container.find_all('ul'):
            if len(ul.find_all('a', href=True)) >= 3:
                add(ul, 'structural', 70)
    for ul in soup.find_all('ul'):
        items = ul.find_all('li', recursive=False)
        if len(items) >= 3 and all(li.find('a', href=True) for li in items):
            add(ul, 'contextual', 60)
    return out


# ---------------- single purpose probes ----------------
async def probe_style(url: str, selector: str, browser_factory=None, timeout_ms: int = 30000) -> Optional[Dict[str, str]]:
    factory = browser_factory or playwright_page
    async with factory() as page:
        await _probe_goto(page, url, timeout_ms)
        return await page.evaluate(PROBE_STYLE_JS, {'selector': selector, 'props': STYLE_PROPS})


async def probe_visibility(url: str, selector: str, browser_factory=None, timeout_ms: int = 30000) -> Dict[str, Any]:
    factory = browser_factory or playwright_page
    async with factory() as page:
        await _probe_goto(page, url, timeout_ms)
        return await page.evaluate(PROBE_VISIBLE_JS, selector)


async def probe_page(url: str, browser_factory=None, timeout_ms: int = 30000) -> Dict[str, Any]:
    """HTML + headers + runtime globals for standalone CMS detection."""
    factory = browser_factory or playwright_page
    async with factory() as page:
        response = await _probe_goto(page, url, timeout_ms)
        headers = {k.lower(): v for k, v in ((response.headers if response is not None else {}) or {}).items()}
        runtime = await page.evaluate(RUNTIME_GLOBALS_JS) or {}
        return {'html': await page.content(), 'headers': headers, 'runtime': runtime}


async def _probe_goto(page, url: str, timeout_ms: int):
    try:
        return await page.goto(url, wait_until='domcontentloaded', timeout=timeout_ms)
    except PlaywrightTimeoutError:
        raise PhaseTimeoutError(f"page load timeout after {timeout_ms}ms", 'probe', url)
    except PlaywrightError as e:
        raise NetworkError(f"origin unreachable: {_short_error(e)}", 'probe', url)
