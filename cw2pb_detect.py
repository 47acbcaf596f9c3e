"""Technology Detector.

Three independent passes over one page:

  headers  - response header values (Server, X-Powered-By, vendor headers)
  static   - raw HTML: meta generator, class/attribute patterns, script/link URLs
  runtime  - global bindings observed in the live page (see capture RUNTIME_GLOBALS_JS)

Each pass yields at most one confidence per technology; passes are combined
with a noisy-or (1 - prod(1 - c/100)) so agreeing evidence raises confidence
towards, never past, 100. No match means an empty list, never an error.
"""
from __future__ import annotations

import logging, re
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Tuple, Iterable
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from cw2pb_core import TechnologyEntry, PipelineCallbacks, _invoke

logger = logging.getLogger("cw2pb.detect")

HEADER_CONFIDENCE = 85
META_CONFIDENCE = 90
SCRIPT_CONFIDENCE = 75
HTML_CONFIDENCE = 60
HTML_EXTRA_STEP = 10
HTML_CAP = 80
RUNTIME_CONFIDENCE = 85

# categories where two different winners cannot both be true
EXCLUSIVE_CATEGORIES = ('cms', 'page-builder')
# core WordPress block editor coexists with any other builder
CONFLICT_EXEMPT = frozenset({'Gutenberg'})


@dataclass(frozen=True)
class Signature:
    name: str
    category: str
    html: Tuple[str, ...] = ()
    scripts: Tuple[str, ...] = ()
    headers: Tuple[Tuple[str, str], ...] = ()
    meta: Optional[str] = None
    runtime: bool = False
    version: Tuple[str, ...] = ()


def _sig(name, category, html=(), scripts=(), headers=(), meta=None, runtime=False, version=()):
    return Signature(name, category, tuple(html), tuple(scripts), tuple(headers), meta, runtime, tuple(version))


SIGNATURES: Tuple[Signature, ...] = (
    # frameworks
    _sig('React', 'framework', html=[r'data-reactroot', r'data-reactid'],
         scripts=[r'react(?:-dom)?(?:\.production)?(?:\.min)?\.js', r'/react@'], runtime=True,
         version=[r'react(?:-dom)?@([\d.]+)']),
    _sig('Vue.js', 'framework', html=[r'\sdata-v-[0-9a-f]{8}', r'data-v-app'],
         scripts=[r'vue(?:\.runtime)?(?:\.global)?(?:\.prod)?(?:\.min)?\.js', r'/vue@'], runtime=True,
         version=[r'vue@([\d.]+)']),
    _sig('Angular', 'framework', html=[r'ng-version="[\d.]+"', r'_nghost-', r'_ngcontent-'], runtime=True,
         version=[r'ng-version="([\d.]+)"']),
    _sig('AngularJS', 'framework', html=[r'\sng-app\b', r'\sng-controller\b'],
         scripts=[r'angular(?:\.min)?\.js'], runtime=True,
         version=[r'angular(?:js)?[@/]([\d.]+)', r'angular\.js/([\d.]+)']),
    _sig('Next.js', 'framework', html=[r'__NEXT_DATA__', r'/_next/static/'],
         headers=[('x-powered-by', r'Next\.js')], runtime=True),
    _sig('Nuxt.js', 'framework', html=[r'__NUXT__', r'/_nuxt/'], runtime=True),
    _sig('Svelte', 'framework', html=[r'class="[^"]*\bsvelte-[a-z0-9]{5,}']),
    _sig('Gatsby', 'framework', html=[r'id="___gatsby"'], meta=r'Gatsby\s*([\d.]+)?', runtime=True),
    _sig('Ember.js', 'framework', html=[r'\bember-view\b', r'\bember-application\b'], runtime=True),
    # libraries
    _sig('jQuery', 'library', scripts=[r'jquery'], runtime=True,
         version=[r'jquery[.-](\d+\.\d+(?:\.\d+)?)(?:\.slim)?(?:\.min)?\.js', r'jquery@([\d.]+)',
                  r'jquery/([\d.]+)/', r'jquery(?:\.min)?\.js\?ver=([\d.]+)']),
    _sig('Lodash', 'library', scripts=[r'lodash'], runtime=True, version=[r'lodash(?:\.js)?[@/]([\d.]+)']),
    _sig('Axios', 'library', scripts=[r'axios'], version=[r'axios@([\d.]+)', r'axios/([\d.]+)/']),
    _sig('Moment.js', 'library', scripts=[r'moment(?:\.min)?\.js', r'/moment@'], runtime=True,
         version=[r'moment(?:\.js)?[@/]([\d.]+)']),
    _sig('Three.js', 'library', scripts=[r'three(?:\.module)?(?:\.min)?\.js'], runtime=True),
    _sig('Chart.js', 'library', scripts=[r'chart(?:\.umd)?(?:\.min)?\.js', r'chart\.js@'], runtime=True),
    _sig('D3.js', 'library', scripts=[r'/d3(?:\.v\d)?(?:\.min)?\.js', r'/d3@'], runtime=True),
    # cms
    _sig('WordPress', 'cms', html=[r'/wp-content/', r'/wp-includes/'], meta=r'WordPress\s*([\d.]+)?',
         headers=[('link', r'api\.w\.org'), ('x-pingback', r'xmlrpc\.php')], runtime=True),
    _sig('Drupal', 'cms', html=[r'Drupal\.settings', r'/sites/default/files/', r'data-drupal-'],
         meta=r'Drupal\s*(\d+)?', headers=[('x-generator', r'Drupal'), ('x-drupal-cache', r'.')]),
    _sig('Joomla', 'cms', html=[r'/media/jui/', r'/components/com_'], meta=r'Joomla!?\s*([\d.]+)?'),
    _sig('Shopify', 'cms', html=[r'cdn\.shopify\.com', r'Shopify\.theme'],
         headers=[('x-shopid', r'.'), ('x-shopify-stage', r'.')], runtime=True),
    _sig('Wix', 'cms', html=[r'static\.wixstatic\.com', r'wix-warmup-data'], meta=r'Wix\.com',
         headers=[('x-wix-request-id', r'.')]),
    _sig('Squarespace', 'cms', html=[r'static1\.squarespace\.com', r'squarespace-cdn'],
         headers=[('server', r'Squarespace')]),
    _sig('Webflow', 'cms', html=[r'data-wf-page', r'data-wf-site', r'assets\.website-files\.com'],
         meta=r'Webflow'),
    # page builders
    _sig('Elementor', 'page-builder',
         html=[r'elementor-section', r'elementor-widget', r'elementor-element', r'/plugins/elementor/'],
         meta=r'Elementor\s*([\d.]+)?', runtime=True,
         version=[r'elementor/assets/[^"\']*\?ver=([\d.]+)']),
    _sig('Divi', 'page-builder', html=[r'et_pb_section', r'et_pb_module', r'/themes/Divi/', r'\bet-db\b'],
         meta=r'Divi'),
    _sig('Beaver Builder', 'page-builder', html=[r'fl-builder-content', r'\bfl-row\b', r'/plugins/bb-plugin/']),
    _sig('Bricks', 'page-builder', html=[r'\bbrxe-', r'/themes/bricks/']),
    _sig('Oxygen', 'page-builder', html=[r'\bct-section\b', r'/plugins/oxygen/']),
    _sig('WPBakery', 'page-builder', html=[r'\bvc_row\b', r'\bwpb_wrapper\b', r'js_composer'],
         meta=r'WPBakery'),
    _sig('Gutenberg', 'page-builder', html=[r'\bwp-block-', r'wp-block-library']),
    # analytics
    _sig('Google Analytics', 'analytics', html=[r'gtag\(', r"ga\('create'"],
         scripts=[r'google-analytics\.com/(?:analytics|ga)\.js', r'googletagmanager\.com/gtag/js'], runtime=True),
    _sig('Google Tag Manager', 'analytics', html=[r'GTM-[A-Z0-9]{4,}'],
         scripts=[r'googletagmanager\.com/gtm\.js'], runtime=True),
    _sig('Facebook Pixel', 'analytics', html=[r'fbq\('], scripts=[r'connect\.facebook\.net/[^"\']*/fbevents\.js'],
         runtime=True),
    _sig('Hotjar', 'analytics', html=[r'\bhjid\b'], scripts=[r'static\.hotjar\.com'], runtime=True),
    _sig('Mixpanel', 'analytics', scripts=[r'mixpanel'], runtime=True),
    # hosting
    _sig('Vercel', 'hosting', headers=[('server', r'Vercel'), ('x-vercel-id', r'.'), ('x-vercel-cache', r'.')]),
    _sig('Netlify', 'hosting', headers=[('server', r'Netlify'), ('x-nf-request-id', r'.')]),
    _sig('GitHub Pages', 'hosting', headers=[('server', r'GitHub\.com'), ('x-github-request-id', r'.')]),
    _sig('AWS', 'hosting', headers=[('server', r'AmazonS3'), ('x-amz-request-id', r'.'), ('x-amz-cf-id', r'.')]),
    # cdn
    _sig('Cloudflare', 'cdn', html=[r'cdnjs\.cloudflare\.com'],
         headers=[('cf-ray', r'.'), ('server', r'cloudflare'), ('cf-cache-status', r'.')]),
    _sig('jsDelivr', 'cdn', scripts=[r'cdn\.jsdelivr\.net']),
    _sig('unpkg', 'cdn', scripts=[r'unpkg\.com']),
    _sig('Google Fonts CDN', 'cdn', html=[r'fonts\.gstatic\.com']),
    # build tools
    _sig('Webpack', 'build-tool', html=[r'webpackJsonp', r'__webpack_require__', r'webpackChunk']),
    _sig('Vite', 'build-tool', html=[r'/@vite/client'], scripts=[r'/assets/index-[\w-]{8}\.js']),
    _sig('Parcel', 'build-tool', html=[r'parcelRequire']),
    # css frameworks
    _sig('Bootstrap', 'css-framework', html=[r'\bcol-(?:sm|md|lg|xl)-\d+', r'\bnavbar-expand'],
         scripts=[r'bootstrap(?:\.bundle)?(?:\.min)?\.(?:css|js)'],
         version=[r'bootstrap[@/]([\d.]+)', r'bootstrap(?:\.bundle)?(?:\.min)?\.(?:css|js)\?ver=([\d.]+)']),
    _sig('Tailwind CSS', 'css-framework', html=[r'tailwindcss', r'class="[^"]*\b(?:flex|grid)\b[^"]*\b(?:px|py|mt|mb)-\d'],
         scripts=[r'cdn\.tailwindcss\.com']),
    _sig('Material UI', 'css-framework', html=[r'\bMui[A-Z]\w+-root\b']),
    _sig('Foundation', 'css-framework', scripts=[r'foundation(?:\.min)?\.(?:css|js)']),
    _sig('Bulma', 'css-framework', scripts=[r'bulma(?:\.min)?\.css']),
    # fonts
    _sig('Google Fonts', 'font', html=[r'fonts\.googleapis\.com']),
    _sig('Adobe Fonts', 'font', html=[r'use\.typekit\.net', r'p\.typekit\.net']),
    _sig('Font Awesome', 'font', html=[r'font-?awesome', r'class="[^"]*\bfa[srb]? fa-']),
)

_SERVER_NAMES = {
    'nginx': 'Nginx', 'apache': 'Apache', 'microsoft-iis': 'IIS', 'litespeed': 'LiteSpeed',
    'openresty': 'OpenResty', 'caddy': 'Caddy', 'gws': 'Google Web Server', 'envoy': 'Envoy',
}
_TOKEN_RE = re.compile(r'([A-Za-z][\w.\-]*)(?:/([\w.\-]+))?')


def combine_confidence(scores: Iterable[float]) -> int:
    """Noisy-or combination of independent evidence, bounded to 0..100."""
    remaining = 1.0
    for s in scores:
        remaining *= 1.0 - max(0.0, min(100.0, float(s))) / 100.0
    return max(0, min(100, int(round(100 * (1.0 - remaining)))))


def _product(value: str) -> Tuple[Optional[str], Optional[str]]:
    m = _TOKEN_RE.match((value or '').strip())
    if not m:
        return None, None
    return m.group(1), m.group(2)


class _Hits:
    """Per-pass accumulator: technology -> (confidence, evidence, version)."""
    def __init__(self):
        self.items: Dict[str, Dict[str, Any]] = {}

    def add(self, sig_name: str, category: str, confidence: int, evidence: str, version: Optional[str] = None):
        cur = self.items.setdefault(sig_name, {'category': category, 'confidence': 0, 'evidence': [], 'version': None})
        cur['confidence'] = max(cur['confidence'], confidence)
        cur['evidence'].append(evidence)
        if version and not cur['version']:
            cur['version'] = version


class TechnologyDetector:
    def __init__(self, signatures: Tuple[Signature, ...] = SIGNATURES, callbacks: Optional[PipelineCallbacks] = None):
        self.signatures = signatures
        self.callbacks = callbacks
        self._compiled = {
            s.name: {
                'html': [re.compile(p, re.I) for p in s.html],
                'scripts': [re.compile(p, re.I) for p in s.scripts],
                'headers': [(h, re.compile(p, re.I)) for h, p in s.headers],
                'meta': re.compile(s.meta, re.I) if s.meta else None,
                'version': [re.compile(p, re.I) for p in s.version],
            } for s in signatures
        }

    # ---- passes ----
    def header_pass(self, headers: Dict[str, str]) -> _Hits:
        hits = _Hits()
        h = {k.lower(): str(v) for k, v in (headers or {}).items()}
        for sig in self.signatures:
            for name, rx in self._compiled[sig.name]['headers']:
                if name in h and rx.search(h[name]):
                    hits.add(sig.name, sig.category, HEADER_CONFIDENCE, f"header {name}: {h[name][:60]}")
        server = h.get('server')
        if server:
            product, version = _product(server)
            if product:
                pretty = _SERVER_NAMES.get(product.lower(), product)
                hits.add(pretty, 'server', 100, f"header server: {server[:60]}", version)
        powered = h.get('x-powered-by')
        if powered:
            for part in powered.split(','):
                product, version = _product(part)
                if product and product.lower() not in ('next.js',):
                    hits.add(product, 'runtime', 95, f"header x-powered-by: {part.strip()[:60]}", version)
        return hits

    def static_pass(self, html: str) -> _Hits:
        hits = _Hits()
        if not html:
            return hits
        soup = BeautifulSoup(html, 'html.parser')
        generators = [m.get('content', '') for m in soup.find_all('meta', attrs={'name': re.compile('^generator$', re.I)})]
        urls = [t.get('src') for t in soup.find_all('script', src=True)]
        urls += [t.get('href') for t in soup.find_all('link', href=True)]
        for sig in self.signatures:
            c = self._compiled[sig.name]
            version = self._version(c['version'], urls, html)
            if c['meta'] is not None:
                for gen in generators:
                    m = c['meta'].search(gen)
                    if m:
                        ver = m.group(1) if m.groups() else None
                        hits.add(sig.name, sig.category, META_CONFIDENCE, f"meta generator: {gen[:60]}", ver or version)
                        break
            for rx in c['scripts']:
                url = next((u for u in urls if rx.search(u)), None)
                if url:
                    hits.add(sig.name, sig.category, SCRIPT_CONFIDENCE, f"resource url: {url[:80]}", version)
                    break
            matched = [rx.pattern for rx in c['html'] if rx.search(html)]
            if matched:
                conf = min(HTML_CAP, HTML_CONFIDENCE + HTML_EXTRA_STEP * (len(matched) - 1))
                hits.add(sig.name, sig.category, conf, f"html pattern: {matched[0]}", version)
        return hits

    def runtime_pass(self, runtime: Optional[Dict[str, Any]]) -> _Hits:
        hits = _Hits()
        by_name = {s.name: s for s in self.signatures if s.runtime}
        for name, value in (runtime or {}).items():
            sig = by_name.get(name)
            if sig is None or value in (None, False):
                continue
            version = value if isinstance(value, str) and re.match(r'^\d', value) else None
            hits.add(sig.name, sig.category, RUNTIME_CONFIDENCE, f"runtime global: {name}", version)
        return hits

    @staticmethod
    def _version(patterns, urls: List[str], html: str) -> Optional[str]:
        for rx in patterns:
            for u in urls:
                m = rx.search(u)
                if m:
                    return m.group(1).rstrip('.')
            m = rx.search(html)
            if m:
                return m.group(1).rstrip('.')
        return None

    # ---- combine ----
    def detect(self, headers: Optional[Dict[str, str]], html: Optional[str],
               runtime: Optional[Dict[str, Any]] = None) -> List[TechnologyEntry]:
        passes = [self.header_pass(headers or {}), self.static_pass(html or ''), self.runtime_pass(runtime)]
        names: Dict[str, Dict[str, Any]] = {}
        for p in passes:
            for name, hit in p.items.items():
                agg = names.setdefault(name, {'category': hit['category'], 'scores': [], 'evidence': [], 'version': None})
                agg['scores'].append(hit['confidence'])
                agg['evidence'].extend(hit['evidence'])
                agg['version'] = agg['version'] or hit['version']
        entries = [
            TechnologyEntry(name=name, category=a['category'], confidence=combine_confidence(a['scores']),
                            version=a['version'], evidence=a['evidence'][:5])
            for name, a in names.items()
        ]
        entries.sort(key=lambda e: (-e.confidence, e.name))
        _invoke(self.callbacks, 'log', f"[detect] {len(entries)} technologies")
        return entries


def find_conflicts(entries: Iterable[TechnologyEntry]) -> List[Dict[str, Any]]:
    """Mutually exclusive detections that fired together; scores are kept as-is."""
    out = []
    entries = list(entries)
    for category in EXCLUSIVE_CATEGORIES:
        group = [e for e in entries if e.category == category and e.name not in CONFLICT_EXEMPT]
        if len(group) > 1:
            out.append({'category': category,
                        'technologies': [{'name': e.name, 'confidence': e.confidence} for e in group]})
    return out


_BUILDER_PRIORITY = ('Elementor', 'Divi', 'Beaver Builder', 'Bricks', 'Oxygen', 'WPBakery', 'Gutenberg')


def detect_wordpress(html: str, headers: Optional[Dict[str, str]] = None, runtime: Optional[Dict[str, Any]] = None,
                     base_url: Optional[str] = None, detector: Optional[TechnologyDetector] = None) -> Dict[str, Any]:
    """CMS-focused subset of the technology profile for standalone WordPress detection."""
    detector = detector or TechnologyDetector()
    entries = detector.detect(headers, html, runtime)
    by_name = {e.name: e for e in entries}
    wp = by_name.get('WordPress')
    api_url = None
    if html:
        soup = BeautifulSoup(html, 'html.parser')
        for link in soup.find_all('link', href=True):
            rel = link.get('rel') or []
            if 'https://api.w.org/' in (rel if isinstance(rel, list) else [rel]):
                api_url = link['href']
                break
    if api_url is None:
        link_header = {k.lower(): v for k, v in (headers or {}).items()}.get('link', '')
        m = re.search(r'<([^>]+)>;\s*rel="https://api\.w\.org/"', link_header)
        if m:
            api_url = m.group(1)
    if api_url is None and wp is not None and base_url:
        api_url = urljoin(base_url, '/wp-json/')
    builders = [e for e in entries if e.category == 'page-builder']
    page_builder = None
    for name in _BUILDER_PRIORITY:
        if name in by_name:
            page_builder = name
            break
    relevant = [e for e in entries if e.category in ('cms', 'page-builder')]
    return {
        'isWordPress': wp is not None,
        'version': wp.version if wp else None,
        'apiUrl': api_url,
        'pageBuilder': page_builder,
        'pageBuilders': [e.to_dict() for e in builders],
        'technologies': [e.to_dict() for e in relevant],
    }
