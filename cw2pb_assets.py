"""Asset Extraction & Rewriter plus the file blob store.

Walks a captured document, resolves every resource reference against the
document base, fetches each distinct URL once (bounded by a semaphore),
stores the bytes under a content-addressed local path and rewrites the
reference. Stylesheets are rewritten recursively (url() and @import) relative
to their own stored location.

Per-asset failures leave the reference untouched and are recorded as issues;
only a failure rate above `asset_failure_threshold` (with at least
`asset_failure_min_sample` attempts) aborts the job with SystemicFetchError.
"""
from __future__ import annotations

import asyncio, hashlib, itertools, logging, os, posixpath, re
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable, Tuple
from urllib.parse import urljoin, urldefrag, urlparse

from bs4 import BeautifulSoup

from cw2pb_core import (
    AssetFetchError, AssetRecord, CloneOptions, Issue, PipelineCallbacks, SystemicFetchError, MARKER_ATTR, _invoke,
)
from cw2pb_fetch import ContentCache, extension_for

logger = logging.getLogger("cw2pb.assets")

MAX_CSS_DEPTH = 3
_SKIP_PREFIXES = ('data:', 'javascript:', 'mailto:', 'tel:', 'blob:', 'about:', '#')
_CSS_URL_RE = re.compile(r'url\(\s*([\'"]?)(.*?)\1\s*\)', re.I | re.S)
_CSS_IMPORT_RE = re.compile(r'@import\s+([\'"])(.*?)\1', re.I)
_MARKER_RE = re.compile(r'\s+' + re.escape(MARKER_ATTR) + r'="[^"]*"')
_NAME_RE = re.compile(r'[^A-Za-z0-9_-]+')

RESOURCE_ATTRS = {
    'img': ('src', 'data-src'),
    'source': ('src',),
    'script': ('src',),
    'video': ('src', 'poster'),
    'audio': ('src',),
    'track': ('src',),
    'embed': ('src',),
    'object': ('data',),
    'input': ('src',),
}
SRCSET_ATTRS = {'img': ('srcset', 'data-srcset'), 'source': ('srcset',)}
LINK_RELS = {'stylesheet', 'icon', 'shortcut', 'apple-touch-icon', 'apple-touch-icon-precomposed',
             'preload', 'modulepreload', 'mask-icon', 'prefetch'}


def strip_markers(html: str) -> str:
    return _MARKER_RE.sub('', html or '')


def origin_of(url: str) -> str:
    p = urlparse(url)
    return f"{p.scheme}://{p.netloc}"


def parse_srcset(value: str) -> List[Tuple[str, str]]:
    out = []
    for part in (value or '').split(','):
        bits = part.strip().split()
        if bits:
            out.append((bits[0], ' '.join(bits[1:])))
    return out


def _local_name(url: str) -> str:
    tail = urlparse(url).path.rstrip('/').rsplit('/', 1)[-1]
    stem = tail.rsplit('.', 1)[0] if '.' in tail else tail
    return (_NAME_RE.sub('-', stem).strip('-') or 'asset')[:40]


class FileBlobStore:
    """Byte content addressed by project-relative local path."""
    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)

    def path(self, local_path: str) -> str:
        norm = posixpath.normpath(local_path.replace('\\', '/'))
        if norm.startswith(('..', '/')):
            raise ValueError(f'local path escapes blob root: {local_path}')
        return os.path.join(self.root, *norm.split('/'))

    def put(self, local_path: str, data: bytes) -> str:
        full = self.path(local_path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, 'wb') as f:
            f.write(data)
        return full

    def get(self, local_path: str) -> bytes:
        with open(self.path(local_path), 'rb') as f:
            return f.read()

    def exists(self, local_path: str) -> bool:
        try:
            return os.path.isfile(self.path(local_path))
        except ValueError:
            return False


@dataclass
class ExtractionResult:
    html: str                                  # rewritten document, markers retained
    assets: List[AssetRecord]
    issues: List[Issue] = field(default_factory=list)
    attempted: int = 0
    failed: int = 0
    skipped: int = 0
    url_map: Dict[str, str] = field(default_factory=dict)

    @property
    def failure_rate(self) -> float:
        return self.failed / self.attempted if self.attempted else 0.0


class AssetExtractor:
    def __init__(self, fetcher, blob_store: FileBlobStore, options: CloneOptions,
                 callbacks: Optional[PipelineCallbacks] = None,
                 post_asset: Optional[List[Callable]] = None, context: Optional[Dict[str, Any]] = None):
        self.fetcher = fetcher
        self.blob_store = blob_store
        self.options = options
        self.callbacks = callbacks
        self.post_asset = post_asset or []
        self.context = context or {}
        self.cache = ContentCache()
        self._sem = asyncio.Semaphore(max(1, options.fetch_concurrency))
        self._tasks: Dict[str, asyncio.Future] = {}
        self._order: Dict[str, int] = {}
        self._counter = itertools.count()
        self._records: List[Tuple[int, AssetRecord]] = []
        self._issues: List[Issue] = []
        self.attempted = 0
        self.failed = 0
        self.skipped = 0

    # ---- url helpers ----
    @staticmethod
    def absolute(ref: Optional[str], base: str) -> Optional[str]:
        if not ref:
            return None
        ref = ref.strip()
        if not ref or ref.lower().startswith(_SKIP_PREFIXES):
            return None
        try:
            url = urldefrag(urljoin(base, ref))[0]
            if urlparse(url).scheme not in ('http', 'https'):
                return None
        except ValueError:
            # malformed reference (e.g. unbalanced IPv6 bracket); left as written
            return None
        return url

    def _reserve(self, url: Optional[str]):
        if url and url not in self._order:
            self._order[url] = next(self._counter)

    # ---- fetch + store ----
    async def _asset(self, url: str, depth: int = 0) -> Optional[str]:
        task = self._tasks.get(url)
        if task is None:
            if len(self._tasks) >= self.options.max_assets:
                self.skipped += 1
                return None
            self._reserve(url)
            task = asyncio.ensure_future(self._fetch_store(url, depth))
            self._tasks[url] = task
        return await task

    async def _fetch_store(self, url: str, depth: int) -> Optional[str]:
        self.attempted += 1
        try:
            async with self._sem:
                res = await self.fetcher.fetch(url)
        except AssetFetchError as e:
            self.failed += 1
            self._issues.append(Issue.from_error(e, severity='low'))
            _invoke(self.callbacks, 'warning', f"asset failed {url}: {e.message}")
            return None
        atype = res.asset_type
        data = res.content
        if atype == 'css' and depth < MAX_CSS_DEPTH:
            css = await self.rewrite_css(res.text, res.final_url, 'assets/css', depth + 1)
            data = css.encode('utf-8')
        digest = hashlib.sha256(data).hexdigest()
        existing = self.cache.path_for_digest(digest)
        if existing:
            self.cache.remember(url, existing)
            return existing
        local_path = f"assets/{atype}/{digest[:12]}-{_local_name(res.final_url)}{extension_for(res.mime_type, res.final_url)}"
        data = self._run_post_asset(local_path, data)
        self.blob_store.put(local_path, data)
        self.cache.remember(url, local_path, digest, local_path)
        record = AssetRecord(local_path=local_path, original_url=url, byte_size=len(data),
                             mime_type=res.mime_type, type=atype, sha256=hashlib.sha256(data).hexdigest())
        self._records.append((self._order.get(url, 0), record))
        _invoke(self.callbacks, 'event', 'asset_stored', url=url, local_path=local_path, bytes=len(data))
        return local_path

    def _run_post_asset(self, local_path: str, data: bytes) -> bytes:
        for hook in self.post_asset:
            try:
                out = hook(local_path, data, self.context)
            except Exception as e:
                _invoke(self.callbacks, 'warning', f"post_asset plugin failed for {local_path}: {e}")
                continue
            if isinstance(out, (bytes, bytearray)):
                data = bytes(out)
        return data

    # ---- css ----
    def _css_refs(self, css: str) -> List[str]:
        refs = [m.group(2).strip() for m in _CSS_URL_RE.finditer(css)]
        refs += [m.group(2).strip() for m in _CSS_IMPORT_RE.finditer(css)]
        return refs

    async def rewrite_css(self, css: str, base_url: str, from_dir: str = '', depth: int = 0) -> str:
        targets: Dict[str, None] = {}
        for ref in self._css_refs(css):
            u = self.absolute(ref, base_url)
            if u:
                targets.setdefault(u)
        results = await asyncio.gather(*(self._asset(u, depth) for u in targets))
        mapping = {u: p for u, p in zip(targets, results) if p}

        def local(ref: str) -> Optional[str]:
            p = mapping.get(self.absolute(ref, base_url) or '')
            if p is None:
                return None
            return posixpath.relpath(p, from_dir) if from_dir else p

        css = _CSS_URL_RE.sub(lambda m: f"url({m.group(1)}{local(m.group(2).strip()) or m.group(2)}{m.group(1)})", css)
        return _CSS_IMPORT_RE.sub(
            lambda m: f"@import {m.group(1)}{local(m.group(2).strip()) or m.group(2)}{m.group(1)}", css)

    # ---- document ----
    def _collect(self, soup, base: str):
        attrs: List[Tuple[Any, str]] = []
        srcsets: List[Tuple[Any, str]] = []
        styles: List[Any] = []
        inline: List[Any] = []
        for tag in soup.find_all(True):
            name = tag.name
            for attr in RESOURCE_ATTRS.get(name, ()):
                if tag.get(attr):
                    attrs.append((tag, attr))
                    self._reserve(self.absolute(tag[attr], base))
            if name == 'link' and tag.get('href'):
                rels = {r.lower() for r in (tag.get('rel') or [])}
                if rels & LINK_RELS:
                    attrs.append((tag, 'href'))
                    self._reserve(self.absolute(tag['href'], base))
            for attr in SRCSET_ATTRS.get(name, ()):
                if tag.get(attr):
                    srcsets.append((tag, attr))
                    for u, _ in parse_srcset(tag[attr]):
                        self._reserve(self.absolute(u, base))
            if name == 'style' and tag.string:
                styles.append(tag)
                for ref in self._css_refs(tag.string):
                    self._reserve(self.absolute(ref, base))
            if tag.get('style') and 'url(' in tag['style']:
                inline.append(tag)
                for ref in self._css_refs(tag['style']):
                    self._reserve(self.absolute(ref, base))
        return attrs, srcsets, styles, inline

    async def extract(self, html: str, page_url: str) -> ExtractionResult:
        soup = BeautifulSoup(html or '', 'html.parser')
        base = page_url
        base_tag = soup.find('base', href=True)
        if base_tag is not None:
            base = self.absolute(base_tag['href'], page_url) or page_url
        attrs, srcsets, styles, inline = self._collect(soup, base)

        if not self.options.include_assets:
            self._absolutize(attrs, srcsets, base)
        else:
            unique: Dict[str, None] = {}
            for tag, attr in attrs:
                u = self.absolute(tag[attr], base)
                if u:
                    unique.setdefault(u)
            for tag, attr in srcsets:
                for ref, _ in parse_srcset(tag[attr]):
                    u = self.absolute(ref, base)
                    if u:
                        unique.setdefault(u)
            style_texts = [str(t.string) for t in styles]
            inline_texts = [t['style'] for t in inline]
            fetched, css_out, inline_out = await asyncio.gather(
                asyncio.gather(*(self._asset(u) for u in unique)),
                asyncio.gather(*(self.rewrite_css(s, base) for s in style_texts)),
                asyncio.gather(*(self.rewrite_css(s, base) for s in inline_texts)),
            )
            mapping = {u: p for u, p in zip(unique, fetched) if p}
            for tag, attr in attrs:
                p = mapping.get(self.absolute(tag[attr], base) or '')
                if p:
                    tag[attr] = p
            for tag, attr in srcsets:
                parts = []
                for ref, desc in parse_srcset(tag[attr]):
                    p = mapping.get(self.absolute(ref, base) or '') or ref
                    parts.append(f"{p} {desc}".strip())
                tag[attr] = ', '.join(parts)
            for tag, css in zip(styles, css_out):
                tag.string = css
            for tag, css in zip(inline, inline_out):
                tag['style'] = css
            if base_tag is not None:
                base_tag.decompose()
        self._localize_links(soup, page_url)

        self._check_systemic(page_url)
        if self.skipped:
            self._issues.append(Issue(kind='AssetFetchError', severity='low', title='Asset limit reached',
                                      description=f"{self.skipped} references beyond max_assets left unrewritten",
                                      stage='extracting'))
        out_html = str(soup)
        index = strip_markers(out_html).encode('utf-8')
        self.blob_store.put('index.html', index)
        records = [r for _, r in sorted(self._records, key=lambda x: x[0])]
        records.append(AssetRecord(local_path='index.html', original_url=page_url, byte_size=len(index),
                                   mime_type='text/html', type='html', sha256=hashlib.sha256(index).hexdigest()))
        _invoke(self.callbacks, 'log',
                f"[extract] {len(records) - 1} assets stored, {self.failed}/{self.attempted} failed")
        return ExtractionResult(html=out_html, assets=records, issues=list(self._issues), attempted=self.attempted,
                                failed=self.failed, skipped=self.skipped,
                                url_map={u: p for u, p in self.cache.by_url.items() if isinstance(p, str)})

    def _check_systemic(self, page_url: str):
        if (self.attempted >= self.options.asset_failure_min_sample
                and self.failed / self.attempted > self.options.asset_failure_threshold):
            raise SystemicFetchError(
                f"{self.failed}/{self.attempted} assets failed; source unreachable or CDN blocking",
                url=page_url, attempts=self.attempted)

    def _absolutize(self, attrs, srcsets, base: str):
        for tag, attr in attrs:
            u = self.absolute(tag[attr], base)
            if u:
                tag[attr] = u
        for tag, attr in srcsets:
            tag[attr] = ', '.join(f"{self.absolute(r, base) or r} {d}".strip() for r, d in parse_srcset(tag[attr]))

    @staticmethod
    def _localize_links(soup, page_url: str):
        """Same-origin navigation links become root-relative so the clone does not point back at the origin."""
        host = urlparse(page_url).netloc.lower()
        for tag, attr in [(a, 'href') for a in soup.find_all('a', href=True)] + \
                         [(f, 'action') for f in soup.find_all('form', action=True)]:
            try:
                p = urlparse(urljoin(page_url, tag[attr]))
            except ValueError:
                continue
            if p.scheme in ('http', 'https') and p.netloc.lower() == host and tag[attr].lower().startswith(('http:', 'https:', '//')):
                tag[attr] = (p.path or '/') + (f"?{p.query}" if p.query else '') + (f"#{p.fragment}" if p.fragment else '')
