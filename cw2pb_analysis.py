"""Analysis Pipeline: vitals, performance audit, SEO, accessibility, security, scoring.

Every sub-analysis is gated by its CloneOptions toggle and guarded: an
exception inside one records an AnalysisError issue and leaves that category
score as None; the others still run. Scores are 100 minus severity deductions,
combined into an overall weighted mean over the categories that produced a
score (weights renormalized).

Vitals come from the capture-time timing observer when a browser was used.
Without one (static capture) they are estimated from TTFB, document size and
the render-blocking resources, and flagged `estimated: true`.
"""
from __future__ import annotations

import asyncio, json, logging, math, re
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable, Tuple, Iterable
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from cw2pb_core import (
    AnalysisError, AssetRecord, CloneOptions, Issue, PerformanceMetrics, PipelineCallbacks, TechnologyEntry,
    _invoke,
)

logger = logging.getLogger("cw2pb.analysis")

# metric -> (good upper bound, needs-improvement upper bound)
THRESHOLDS: Dict[str, Tuple[float, float]] = {
    'lcp': (2500, 4000),
    'inp': (200, 500),
    'cls': (0.1, 0.25),
    'fcp': (1800, 3000),
    'ttfb': (800, 1800),
    'tbt': (200, 600),
    'speedIndex': (3400, 5800),
    'tti': (3800, 7300),
}
RATINGS = ('good', 'needs-improvement', 'poor')
SEVERITY_DEDUCTIONS = {'critical': 25, 'high': 15, 'medium': 8, 'low': 3}
CATEGORIES = ('performance', 'seo', 'security', 'accessibility')

# static-capture estimation model
EST_RTT_MS = 150
EST_BYTES_PER_MS = 200        # ~1.6 Mbit/s
EST_CLS_PER_UNSIZED_IMAGE = 0.03


def rate(metric: str, value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    good, poor = THRESHOLDS[metric]
    if value <= good:
        return 'good'
    if value <= poor:
        return 'needs-improvement'
    return 'poor'


def _metric(name: str, value: Optional[float], estimated: bool = False) -> Dict[str, Any]:
    if value is not None:
        value = round(float(value), 3) if name == 'cls' else int(round(value))
    out = {'value': value, 'rating': rate(name, value)}
    if estimated:
        out['estimated'] = True
    return out


def category_score(issues: Iterable[Issue]) -> int:
    return max(0, 100 - sum(SEVERITY_DEDUCTIONS.get(i.severity, 0) for i in issues))


def overall_score(scores: Dict[str, Optional[int]], weights: Iterable[Tuple[str, float]]) -> Optional[int]:
    """Weighted mean over non-null categories, weights renormalized over those present."""
    pairs = [(scores.get(cat), w) for cat, w in weights if scores.get(cat) is not None]
    total = sum(w for _, w in pairs)
    if not pairs or total <= 0:
        return None
    return int(round(sum(s * w for s, w in pairs) / total))


def parse_version(v: Optional[str]) -> Tuple[int, ...]:
    parts = []
    for p in re.split(r'[.\-]', v or ''):
        m = re.match(r'\d+', p)
        if not m:
            break
        parts.append(int(m.group(0)))
    return tuple(parts)


def shannon_entropy(s: str) -> float:
    if not s:
        return 0.0
    counts = Counter(s)
    n = len(s)
    return -sum((c / n) * math.log2(c / n) for c in counts.values())


# ---------------- pluggable collaborators ----------------
class VulnerabilitySource:
    """Async lookup of known vulnerabilities for a detected library version."""
    async def lookup(self, name: str, version: Optional[str]) -> List[Dict[str, Any]]:  # pragma: no cover - interface
        return []


@dataclass(frozen=True)
class VulnerableRange:
    library: str
    below: Tuple[int, ...]
    at_least: Tuple[int, ...] = ()
    severity: str = 'medium'
    advisory: str = ''
    fix: str = ''


STATIC_VULNERABILITIES: Tuple[VulnerableRange, ...] = (
    VulnerableRange('jQuery', (3, 5, 0), severity='high',
                    advisory='CVE-2020-11022 / CVE-2020-11023: XSS via htmlPrefilter',
                    fix='Upgrade jQuery to 3.5.0 or later'),
    VulnerableRange('Bootstrap', (3, 4, 1), severity='medium',
                    advisory='CVE-2018-14041 / CVE-2019-8331: XSS in data attributes and tooltip',
                    fix='Upgrade Bootstrap to 3.4.1 or 4.3.1+'),
    VulnerableRange('Bootstrap', (4, 3, 1), at_least=(4, 0, 0), severity='medium',
                    advisory='CVE-2019-8331: XSS in tooltip/popover data-template',
                    fix='Upgrade Bootstrap to 4.3.1 or later'),
    VulnerableRange('AngularJS', (2,), at_least=(1,), severity='high',
                    advisory='AngularJS 1.x is end-of-life with unpatched sandbox escape / XSS issues',
                    fix='Migrate away from AngularJS 1.x'),
    VulnerableRange('Lodash', (4, 17, 21), severity='high',
                    advisory='CVE-2021-23337: command injection via template',
                    fix='Upgrade Lodash to 4.17.21 or later'),
    VulnerableRange('Moment.js', (2, 29, 4), severity='medium',
                    advisory='CVE-2022-31129: ReDoS in RFC 2822 parsing',
                    fix='Upgrade Moment.js to 2.29.4 or later'),
)


class StaticVulnerabilitySource(VulnerabilitySource):
    def __init__(self, table: Tuple[VulnerableRange, ...] = STATIC_VULNERABILITIES):
        self.table = table

    async def lookup(self, name: str, version: Optional[str]) -> List[Dict[str, Any]]:
        v = parse_version(version)
        if not v:
            return []
        out = []
        for r in self.table:
            if r.library.lower() != name.lower():
                continue
            if v < r.below and (not r.at_least or v >= r.at_least):
                out.append({'library': r.library, 'version': version, 'severity': r.severity,
                            'advisory': r.advisory, 'fix': r.fix})
        return out


class LighthouseScorer:
    """External audit collaborator: four 0-100 category scores for a snapshot."""
    async def score(self, snapshot) -> Dict[str, int]:  # pragma: no cover - interface
        raise NotImplementedError


# ---------------- inputs / outputs ----------------
@dataclass
class AnalysisInput:
    url: str
    html: str                                  # rewritten document
    source_html: str = ''                      # as captured, before rewriting
    headers: Dict[str, str] = field(default_factory=dict)
    snapshot: Any = None                       # cw2pb_capture.PageSnapshot
    assets: List[AssetRecord] = field(default_factory=list)
    technology: List[TechnologyEntry] = field(default_factory=list)
    conflicts: List[Dict[str, Any]] = field(default_factory=list)
    read_asset: Optional[Callable[[str], bytes]] = None


@dataclass
class AnalysisResult:
    metrics: PerformanceMetrics
    security_findings: List[Dict[str, Any]]
    errors: List[Issue]


def _issue(category: str, severity: str, title: str, description: str = '', fix: Optional[str] = None) -> Issue:
    return Issue(kind=category, severity=severity, title=title, description=description, stage='analyzing',
                 category=category, impact=SEVERITY_DEDUCTIONS.get(severity, 0), fix=fix)


# ---------------- performance ----------------
def render_blocking(soup) -> List[str]:
    head = soup.head
    if head is None:
        return []
    out = []
    for link in head.find_all('link', href=True):
        rels = {r.lower() for r in (link.get('rel') or [])}
        if 'stylesheet' in rels and (link.get('media') or 'all').lower() not in ('print',) and not link.get('disabled'):
            out.append(link['href'])
    for s in head.find_all('script', src=True):
        if not (s.has_attr('async') or s.has_attr('defer') or (s.get('type') or '').lower() == 'module'):
            out.append(s['src'])
    return out


def _resource_metrics(inp: AnalysisInput, snapshot) -> Dict[str, Any]:
    by_type: Dict[str, Dict[str, int]] = {}
    for a in inp.assets:
        t = by_type.setdefault(a.type, {'count': 0, 'bytes': 0})
        t['count'] += 1
        t['bytes'] += a.byte_size
    if snapshot is not None and getattr(snapshot, 'resources', None):
        requests = [{'url': r.get('name'), 'type': r.get('initiatorType'), 'bytes': r.get('transferSize', 0),
                     'durationMs': r.get('duration'), 'renderBlocking': r.get('renderBlocking')}
                    for r in snapshot.resources]
    else:
        requests = [{'url': a.original_url, 'type': a.type, 'bytes': a.byte_size} for a in inp.assets]
    return {
        'totalPageSize': sum(a.byte_size for a in inp.assets),
        'resources': [{'type': k, **v} for k, v in sorted(by_type.items())],
        'networkRequests': requests,
        'longTasks': list(getattr(snapshot, 'long_tasks', None) or []),
    }


def measured_vitals(snapshot) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    t = snapshot.timings or {}
    fcp = t.get('fcp')
    lcp = t.get('lcp')
    long_tasks = snapshot.long_tasks or []
    tbt = sum(max(0.0, lt.get('duration', 0) - 50) for lt in long_tasks
              if fcp is None or lt.get('start', 0) >= fcp)
    last_task_end = max((lt.get('start', 0) + lt.get('duration', 0) for lt in long_tasks), default=0)
    tti = max(t.get('domInteractive') or 0, last_task_end, fcp or 0) or None
    inp_val = t.get('inp')
    inp_est = inp_val is None
    if inp_est:
        inp_val = 50 + max((lt.get('duration', 0) for lt in long_tasks), default=0)
    lcp_est = lcp is None and fcp is not None
    if lcp_est:
        lcp = fcp
    si = (fcp + lcp) / 2 if fcp is not None and lcp is not None else None
    core = {
        'lcp': _metric('lcp', lcp, lcp_est),
        'inp': _metric('inp', inp_val, inp_est),
        'cls': _metric('cls', t.get('cls') or 0.0),
        'fcp': _metric('fcp', fcp),
        'ttfb': _metric('ttfb', t.get('ttfb')),
    }
    additional = {
        'tbt': _metric('tbt', tbt),
        'tti': _metric('tti', tti, True),
        'speedIndex': _metric('speedIndex', si, True),
    }
    return core, additional


def estimated_vitals(inp: AnalysisInput, soup, snapshot) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Vitals without a browser: a simple network model over the stored assets."""
    ttfb = float((getattr(snapshot, 'timings', None) or {}).get('ttfb') or EST_RTT_MS)
    doc_bytes = getattr(snapshot, 'document_bytes', 0) or len((inp.source_html or inp.html).encode('utf-8'))
    blocking = set(render_blocking(soup))
    by_path = {a.local_path: a for a in inp.assets}
    blocking_bytes = sum(by_path[b].byte_size for b in blocking if b in by_path)
    fcp = ttfb + doc_bytes / EST_BYTES_PER_MS + ((EST_RTT_MS + blocking_bytes / EST_BYTES_PER_MS) if blocking else 0)
    images = [a for a in inp.assets if a.type == 'image']
    largest = max((a.byte_size for a in images), default=0)
    lcp = fcp + ((EST_RTT_MS + largest / EST_BYTES_PER_MS) if largest else 0)
    unsized = sum(1 for img in soup.find_all('img') if not (img.get('width') and img.get('height')))
    cls = min(0.5, unsized * EST_CLS_PER_UNSIZED_IMAGE)
    js_kb = sum(a.byte_size for a in inp.assets if a.type == 'js') / 1024.0
    tbt = max(0.0, js_kb * 0.5 - 50)
    core = {
        'lcp': _metric('lcp', lcp, True),
        'inp': _metric('inp', 50 + tbt / 10, True),
        'cls': _metric('cls', cls, True),
        'fcp': _metric('fcp', fcp, True),
        'ttfb': _metric('ttfb', ttfb),
    }
    additional = {
        'tbt': _metric('tbt', tbt, True),
        'tti': _metric('tti', lcp + tbt, True),
        'speedIndex': _metric('speedIndex', (fcp + lcp) / 2, True),
    }
    return core, additional


def performance_issues(soup, core: Dict[str, Any], resources: Dict[str, Any], assets: List[AssetRecord]) -> List[Issue]:
    issues = []
    size = resources['totalPageSize']
    if size > 5 * 1024 * 1024:
        issues.append(_issue('performance', 'critical', 'Very large page weight',
                             f"Total page size is {size / 1048576:.1f} MB",
                             'Compress images and remove unused JavaScript/CSS'))
    elif size > 2 * 1024 * 1024:
        issues.append(_issue('performance', 'high', 'Large page weight',
                             f"Total page size is {size / 1048576:.1f} MB", 'Reduce total transfer size below 2 MB'))
    blocking = render_blocking(soup)
    if len(blocking) > 6:
        issues.append(_issue('performance', 'critical', 'Many render-blocking resources',
                             f"{len(blocking)} render-blocking resources in <head>",
                             'Inline critical CSS and defer non-critical CSS/JS'))
    elif len(blocking) > 3:
        issues.append(_issue('performance', 'high', 'Render-blocking resources',
                             f"{len(blocking)} render-blocking resources in <head>",
                             'Defer or async non-critical scripts and styles'))
    if soup.find('meta', attrs={'name': re.compile('^viewport$', re.I)}) is None:
        issues.append(_issue('performance', 'critical', 'Missing viewport meta tag',
                             'The page does not declare a viewport', 'Add <meta name="viewport" content="width=device-width, initial-scale=1">'))
    eager = [img for img in soup.find_all('img') if (img.get('loading') or '').lower() != 'lazy']
    if len(eager) > 10:
        issues.append(_issue('performance', 'medium', 'Images without lazy loading',
                             f"{len(eager)} images load eagerly", 'Add loading="lazy" to below-the-fold images'))
    css_bytes = sum(a.byte_size for a in assets if a.type == 'css')
    if css_bytes > 500 * 1024:
        issues.append(_issue('performance', 'medium', 'Large CSS payload',
                             f"{css_bytes // 1024} KB of CSS", 'Remove unused CSS and minify stylesheets'))
    for name, m in core.items():
        if m.get('rating') == 'poor':
            issues.append(_issue('performance', 'high', f"Poor {name.upper()}",
                                 f"{name.upper()} is {m['value']} (poor)", f"Improve {name.upper()}"))
        elif m.get('rating') == 'needs-improvement':
            issues.append(_issue('performance', 'medium', f"{name.upper()} needs improvement",
                                 f"{name.upper()} is {m['value']}", f"Improve {name.upper()}"))
    return issues


# ---------------- SEO ----------------
def seo_checks(soup) -> List[Issue]:
    issues = []
    title = soup.title.get_text(strip=True) if soup.title else ''
    if not title:
        issues.append(_issue('seo', 'critical', 'Missing title', 'The page has no <title>', 'Add a descriptive 30-60 character title'))
    elif not 30 <= len(title) <= 60:
        issues.append(_issue('seo', 'medium', 'Title length out of range', f"Title is {len(title)} characters",
                             'Keep the title between 30 and 60 characters'))
    desc_tag = soup.find('meta', attrs={'name': re.compile('^description$', re.I)})
    desc = (desc_tag.get('content') or '').strip() if desc_tag else ''
    if not desc:
        issues.append(_issue('seo', 'high', 'Missing meta description', 'No meta description found',
                             'Add a 120-160 character meta description'))
    elif not 120 <= len(desc) <= 160:
        issues.append(_issue('seo', 'low', 'Meta description length out of range',
                             f"Description is {len(desc)} characters", 'Keep the description between 120 and 160 characters'))
    h1s = soup.find_all('h1')
    if not h1s:
        issues.append(_issue('seo', 'high', 'Missing H1', 'No H1 heading found', 'Add exactly one H1 heading'))
    elif len(h1s) > 1:
        issues.append(_issue('seo', 'medium', 'Multiple H1 headings', f"{len(h1s)} H1 headings found",
                             'Use a single H1 per page'))
    levels = [int(h.name[1]) for h in soup.find_all(re.compile('^h[1-6]$'))]
    skipped = [(a, b) for a, b in zip(levels, levels[1:]) if b > a + 1]
    if skipped:
        a, b = skipped[0]
        issues.append(_issue('seo', 'low', 'Skipped heading level', f"Heading jumps from H{a} to H{b}",
                             'Keep heading levels sequential'))
    imgs = soup.find_all('img')
    missing_alt = [i for i in imgs if not (i.get('alt') or '').strip()]
    if missing_alt:
        sev = 'medium' if len(missing_alt) / len(imgs) > 0.2 else 'low'
        issues.append(_issue('seo', sev, 'Images missing alt text', f"{len(missing_alt)} of {len(imgs)} images lack alt text",
                             'Describe every content image with alt text'))
    og = {m.get('property', '').lower() for m in soup.find_all('meta', attrs={'property': True})}
    missing_og = [p for p in ('og:title', 'og:description', 'og:image', 'og:url') if p not in og]
    if missing_og:
        issues.append(_issue('seo', 'low', 'Incomplete Open Graph tags', f"Missing {', '.join(missing_og)}",
                             'Add Open Graph title, description, image and url'))
    if soup.find('meta', attrs={'name': re.compile('^twitter:card$', re.I)}) is None:
        issues.append(_issue('seo', 'low', 'Missing Twitter card', 'No twitter:card meta tag',
                             'Add <meta name="twitter:card" content="summary_large_image">'))
    ld = soup.find_all('script', attrs={'type': 'application/ld+json'})
    if not ld:
        issues.append(_issue('seo', 'low', 'No structured data', 'No JSON-LD schema markup found',
                             'Add schema.org JSON-LD describing the page'))
    else:
        for block in ld:
            try:
                data = json.loads(block.string or '')
            except ValueError:
                issues.append(_issue('seo', 'medium', 'Invalid schema markup', 'A JSON-LD block does not parse',
                                     'Fix the JSON syntax of the structured data'))
                break
            items = data if isinstance(data, list) else [data]
            if not all(isinstance(x, dict) and ('@type' in x or '@graph' in x) for x in items):
                issues.append(_issue('seo', 'medium', 'Invalid schema markup', 'JSON-LD block lacks @type',
                                     'Declare an @type for each structured data item'))
                break
    robots = soup.find('meta', attrs={'name': re.compile('^robots$', re.I)})
    if robots and 'noindex' in (robots.get('content') or '').lower():
        issues.append(_issue('seo', 'high', 'Page is noindex', 'meta robots contains noindex',
                             'Remove noindex if the page should be searchable'))
    canonical = [l for l in soup.find_all('link', href=True) if 'canonical' in [r.lower() for r in (l.get('rel') or [])]]
    if not canonical:
        issues.append(_issue('seo', 'low', 'Missing canonical link', 'No <link rel="canonical">',
                             'Declare the canonical URL'))
    return issues


def robots_blocks_all(text: str) -> bool:
    agents: List[str] = []
    in_rules = False
    for raw in (text or '').splitlines():
        line = raw.split('#', 1)[0].strip()
        if ':' not in line:
            continue
        key, value = (p.strip() for p in line.split(':', 1))
        key = key.lower()
        if key == 'user-agent':
            if in_rules:
                agents, in_rules = [], False
            agents.append(value)
        elif key in ('disallow', 'allow'):
            in_rules = True
            if key == 'disallow' and value == '/' and '*' in agents:
                return True
    return False


async def crawl_hints(fetcher, url: str) -> List[Issue]:
    """robots.txt / sitemap.xml probes (single attempt each)."""
    issues = []
    root = urljoin(url, '/')
    robots = await fetcher.fetch_optional(urljoin(root, 'robots.txt'))
    if robots is not None and robots_blocks_all(robots.text):
        issues.append(_issue('seo', 'high', 'robots.txt blocks all crawlers', 'Disallow: / for User-agent: *',
                             'Allow crawling of public pages'))
    sitemap = await fetcher.fetch_optional(urljoin(root, 'sitemap.xml'))
    if sitemap is None:
        issues.append(_issue('seo', 'low', 'No sitemap.xml', 'sitemap.xml was not found at the site root',
                             'Publish a sitemap.xml'))
    return issues


# ---------------- accessibility ----------------
def accessibility_checks(soup) -> List[Issue]:
    issues = []
    html = soup.find('html')
    if html is None or not (html.get('lang') or '').strip():
        issues.append(_issue('accessibility', 'medium', 'Missing document language', '<html> has no lang attribute',
                             'Add lang="..." to the html element'))
    imgs = soup.find_all('img')
    no_alt = [i for i in imgs if i.get('alt') is None]
    if no_alt:
        issues.append(_issue('accessibility', 'high', 'Images without alt attribute',
                             f"{len(no_alt)} images have no alt attribute", 'Add alt text (empty for decorative images)'))
    labelled = {l.get('for') for l in soup.find_all('label') if l.get('for')}
    controls = [c for c in soup.find_all(['input', 'select', 'textarea'])
                if (c.get('type') or '').lower() not in ('hidden', 'submit', 'button', 'image', 'reset')]
    unlabelled = [c for c in controls if not (c.get('id') in labelled or c.get('aria-label') or c.get('aria-labelledby')
                                               or c.find_parent('label') is not None or c.get('title'))]
    if unlabelled:
        issues.append(_issue('accessibility', 'medium', 'Form controls without labels',
                             f"{len(unlabelled)} form controls have no label", 'Associate each control with a <label>'))
    nameless = [el for el in soup.find_all(['a', 'button'])
                if not (el.get_text(strip=True) or el.get('aria-label') or el.get('title')
                        or (el.find('img') is not None and (el.find('img').get('alt') or '').strip()))]
    if nameless:
        issues.append(_issue('accessibility', 'medium', 'Links or buttons without accessible names',
                             f"{len(nameless)} links/buttons have no accessible name",
                             'Give every link and button visible text or aria-label'))
    mains = soup.find_all('main') + soup.find_all(attrs={'role': 'main'})
    if len(mains) != 1:
        issues.append(_issue('accessibility', 'low', 'Main landmark', f"{len(mains)} main landmarks found",
                             'Use exactly one <main> landmark'))
    return issues


# ---------------- security ----------------
SECURITY_HEADERS = (
    ('strict-transport-security', 'medium', 'Missing HSTS header', 'Add Strict-Transport-Security'),
    ('content-security-policy', 'medium', 'Missing Content-Security-Policy', 'Define a Content-Security-Policy'),
    ('x-frame-options', 'medium', 'Missing X-Frame-Options', 'Add X-Frame-Options or CSP frame-ancestors'),
    ('x-content-type-options', 'low', 'Missing X-Content-Type-Options', 'Add X-Content-Type-Options: nosniff'),
    ('referrer-policy', 'low', 'Missing Referrer-Policy', 'Add a Referrer-Policy header'),
    ('permissions-policy', 'low', 'Missing Permissions-Policy', 'Add a Permissions-Policy header'),
)
OBFUSCATION_MARKERS = (
    (re.compile(r'eval\(function\(p,a,c,k,e,[rd]\)'), 'packer-style eval'),
    (re.compile(r'(?:\\x[0-9a-fA-F]{2}){20,}'), 'long hex escape sequence'),
    (re.compile(r'(?:String\.fromCharCode\([^)]{0,200}\)[^;]{0,20}){5,}'), 'repeated String.fromCharCode'),
    (re.compile(r'eval\(\s*atob\('), 'eval of base64 payload'),
)
_OBF_IDENT = re.compile(r'\b_0x[0-9a-f]{4,}\b')
CREDENTIAL_PATTERNS = (
    (re.compile(r'AKIA[0-9A-Z]{16}'), 'AWS access key id'),
    (re.compile(r'AIza[0-9A-Za-z\-_]{35}'), 'Google API key'),
    (re.compile(r'sk_live_[0-9a-zA-Z]{24,}'), 'Stripe secret key'),
    (re.compile(r'ghp_[A-Za-z0-9]{36}'), 'GitHub token'),
    (re.compile(r'xox[baprs]-[0-9A-Za-z-]{10,}'), 'Slack token'),
)
_SECRET_ASSIGN = re.compile(
    r'(api[_-]?key|secret|token|password|passwd|auth)["\']?\s*[:=]\s*["\']([A-Za-z0-9+/=_\-]{20,})["\']', re.I)
ENTROPY_THRESHOLD = 4.0


def _redact(s: str) -> str:
    return s[:4] + '...' if len(s) > 4 else '****'


def _finding(ftype: str, severity: str, title: str, description: str, fix: Optional[str] = None,
             evidence: Optional[str] = None) -> Dict[str, Any]:
    d = {'type': ftype, 'severity': severity, 'title': title, 'description': description}
    if fix:
        d['fix'] = fix
    if evidence:
        d['evidence'] = evidence
    return d


def scan_script(source: str, label: str) -> List[Dict[str, Any]]:
    out = []
    for rx, name in OBFUSCATION_MARKERS:
        if rx.search(source):
            out.append(_finding('obfuscation', 'medium', 'Obfuscated JavaScript', f"{name} in {label}",
                                'Review third-party scripts for malicious payloads'))
            break
    else:
        if len(_OBF_IDENT.findall(source)) >= 10:
            out.append(_finding('obfuscation', 'medium', 'Obfuscated JavaScript', f"_0x identifiers in {label}",
                                'Review third-party scripts for malicious payloads'))
    for rx, name in CREDENTIAL_PATTERNS:
        m = rx.search(source)
        if m:
            out.append(_finding('credential', 'high', f"Exposed {name}", f"{name} in {label}",
                                'Revoke the credential and move it server-side', _redact(m.group(0))))
    for m in _SECRET_ASSIGN.finditer(source):
        value = m.group(2)
        if shannon_entropy(value) >= ENTROPY_THRESHOLD:
            out.append(_finding('credential', 'high', 'High-entropy secret in client code',
                                f"{m.group(1)} assignment in {label}", 'Move secrets out of client-side code',
                                _redact(value)))
            break
    return out


def security_static(url: str, headers: Dict[str, str], source_soup, scripts: List[Tuple[str, str]]) -> List[Dict[str, Any]]:
    findings = []
    h = {k.lower(): v for k, v in (headers or {}).items()}
    https = urlparse(url).scheme == 'https'
    if not https:
        findings.append(_finding('transport', 'critical', 'Site not served over HTTPS', f"{url} uses plain HTTP",
                                 'Serve the site over HTTPS'))
    else:
        mixed = []
        for tag in source_soup.find_all(['img', 'script', 'link', 'iframe', 'source', 'video', 'audio']):
            ref = tag.get('src') or (tag.get('href') if tag.name == 'link' else None)
            if ref and ref.strip().lower().startswith('http://'):
                mixed.append(ref)
        if mixed:
            findings.append(_finding('mixed-content', 'high', 'Mixed content',
                                     f"{len(mixed)} resources loaded over HTTP on an HTTPS page",
                                     'Load every resource over HTTPS', mixed[0][:120]))
    csp = h.get('content-security-policy', '')
    for name, sev, title, fix in SECURITY_HEADERS:
        if name == 'strict-transport-security' and not https:
            continue
        if name == 'x-frame-options' and 'frame-ancestors' in csp:
            continue
        if name not in h:
            findings.append(_finding('header', sev, title, f"Response lacks {name}", fix))
    for form in source_soup.find_all('form'):
        action = (form.get('action') or '').strip().lower()
        if action.startswith('http://'):
            findings.append(_finding('form', 'high', 'Insecure form submission', 'A form posts over plain HTTP',
                                     'Submit forms over HTTPS'))
            break
        if not https and form.find('input', attrs={'type': 'password'}) is not None:
            findings.append(_finding('form', 'critical', 'Password form on HTTP page',
                                     'Credentials would be sent in clear text', 'Serve login forms over HTTPS'))
            break
    privacy = any(re.search(r'privacy', (a.get('href') or '') + ' ' + a.get_text(' ', strip=True), re.I)
                  for a in source_soup.find_all('a'))
    if not privacy:
        findings.append(_finding('privacy', 'low', 'No privacy policy link', 'No link to a privacy policy found',
                                 'Link a privacy policy from every page'))
    for label, source in scripts:
        findings.extend(scan_script(source, label))
    return findings


# ---------------- pipeline ----------------
class AnalysisPipeline:
    def __init__(self, options: CloneOptions, callbacks: Optional[PipelineCallbacks] = None, fetcher=None,
                 vulnerability_source: Optional[VulnerabilitySource] = None,
                 lighthouse: Optional[LighthouseScorer] = None):
        self.options = options
        self.callbacks = callbacks
        self.fetcher = fetcher
        self.vulnerability_source = vulnerability_source or StaticVulnerabilitySource()
        self.lighthouse = lighthouse
        self.errors: List[Issue] = []

    async def _guard(self, category: str, fn):
        try:
            return await fn()
        except Exception as e:
            logger.debug("%s analysis failed", category, exc_info=True)
            err = AnalysisError(f"{category} analysis failed: {e}", 'analyzing')
            issue = Issue.from_error(err, severity='medium', category=category)
            self.errors.append(issue)
            _invoke(self.callbacks, 'warning', err.message)
            return None

    def _scripts(self, inp: AnalysisInput, soup) -> List[Tuple[str, str]]:
        out = []
        for i, s in enumerate(soup.find_all('script')):
            if not s.get('src') and s.string:
                out.append((f"inline script #{i + 1}", str(s.string)))
        if inp.read_asset is not None:
            for a in inp.assets:
                if a.type != 'js':
                    continue
                try:
                    out.append((a.original_url, inp.read_asset(a.local_path).decode('utf-8', errors='replace')))
                except OSError as e:
                    _invoke(self.callbacks, 'warning', f"cannot read {a.local_path}: {e}")
        return out

    async def run(self, inp: AnalysisInput) -> AnalysisResult:
        o = self.options
        soup = BeautifulSoup(inp.html or '', 'html.parser')
        source_soup = BeautifulSoup(inp.source_html, 'html.parser') if inp.source_html else soup
        snapshot = inp.snapshot
        all_issues: List[Issue] = []
        recommendations: List[str] = []
        scores: Dict[str, Optional[int]] = {c: None for c in CATEGORIES}
        core: Dict[str, Any] = {}
        additional: Dict[str, Any] = {}
        resources = _resource_metrics(inp, snapshot)

        async def perf():
            nonlocal core, additional
            if snapshot is not None and getattr(snapshot, 'captured_with', 'static') == 'browser' and snapshot.timings:
                core, additional = measured_vitals(snapshot)
            else:
                core, additional = estimated_vitals(inp, soup, snapshot)
            return performance_issues(soup, core, resources, inp.assets)

        async def seo():
            issues = seo_checks(soup)
            if self.fetcher is not None:
                issues += await crawl_hints(self.fetcher, inp.url)
            return issues

        async def a11y():
            return accessibility_checks(soup)

        async def security():
            findings = security_static(inp.url, inp.headers, source_soup, self._scripts(inp, soup))
            libs = [t for t in inp.technology if t.version]
            hits = await asyncio.gather(*(self.vulnerability_source.lookup(t.name, t.version) for t in libs))
            for found in hits:
                for v in found:
                    findings.append(_finding('vulnerable-library', v['severity'],
                                             f"Vulnerable {v['library']} {v['version']}", v['advisory'], v.get('fix')))
            return findings

        jobs = {}
        if o.performance_analysis:
            jobs['performance'] = self._guard('performance', perf)
        if o.seo_analysis:
            jobs['seo'] = self._guard('seo', seo)
        jobs['accessibility'] = self._guard('accessibility', a11y)
        if o.security_scan:
            jobs['security'] = self._guard('security', security)
        results = dict(zip(jobs, await asyncio.gather(*jobs.values())))

        findings: List[Dict[str, Any]] = []
        for cat, res in results.items():
            if res is None:
                continue
            if cat == 'security':
                findings = res
                scores['security'] = max(0, 100 - sum(SEVERITY_DEDUCTIONS.get(f['severity'], 0) for f in res))
                recommendations.extend(f['fix'] for f in res if f.get('fix'))
                continue
            all_issues.extend(res)
            scores[cat] = category_score(res)
            recommendations.extend(i.fix for i in res if i.fix)

        for c in inp.conflicts:
            names = ', '.join(t['name'] for t in c['technologies'])
            all_issues.append(_issue('compatibility', 'medium', f"Conflicting {c['category']} detections",
                                     f"Both detected: {names}", 'Verify which platform actually renders the page'))

        lighthouse = None
        if self.lighthouse is not None:
            lighthouse = await self._guard('lighthouse', lambda: self._lighthouse(snapshot))

        metrics = PerformanceMetrics(
            core_web_vitals=core, additional_metrics=additional, resource_metrics=resources,
            issues=all_issues, recommendations=list(dict.fromkeys(r for r in recommendations if r)),
            category_scores=scores, lighthouse=lighthouse,
        )
        metrics.score = overall_score(scores, o.score_weights)
        _invoke(self.callbacks, 'log', f"[analysis] overall score {metrics.score} {scores}")
        return AnalysisResult(metrics=metrics, security_findings=findings, errors=list(self.errors))

    async def _lighthouse(self, snapshot) -> Dict[str, int]:
        raw = await self.lighthouse.score(snapshot)
        out = {}
        for key in ('performance', 'accessibility', 'bestPractices', 'seo'):
            v = raw.get(key)
            if not isinstance(v, (int, float)) or not 0 <= v <= 100:
                raise AnalysisError(f"lighthouse {key} score out of range: {v!r}", 'analyzing')
            out[key] = int(round(v))
        return out
