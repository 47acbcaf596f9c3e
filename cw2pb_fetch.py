"""Asset Fetcher: HTTP retrieval with retry/backoff, sniffing and per-project dedup.

fetch(url) either returns a FetchedResource or raises AssetFetchError once the
retry budget is spent. fetch_document(url) is the variant used for the initial
page load of a static capture, where failures are fatal (NetworkError /
PhaseTimeoutError) instead of per-asset.
"""
from __future__ import annotations

import asyncio, hashlib, logging, mimetypes, re
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Callable, Awaitable
from urllib.parse import urlparse

import httpx
import filetype

from cw2pb_core import (
    AssetFetchError, NetworkError, PhaseTimeoutError, PipelineCallbacks, _invoke, __version__,
)

logger = logging.getLogger("cw2pb.fetch")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    f"Chrome/124.0 Safari/537.36 cw2pb/{__version__}"
)
MAX_ASSET_BYTES = 25 * 1024 * 1024
RETRY_STATUS = {408, 425, 429, 500, 502, 503, 504}

ASSET_TYPES = ('image', 'css', 'js', 'font', 'html', 'other')

_FONT_MIMES = {'font/woff', 'font/woff2', 'font/ttf', 'font/otf', 'application/font-woff',
               'application/x-font-ttf', 'application/x-font-opentype', 'application/vnd.ms-fontobject'}
_EXT_MIMES = {
    '.css': 'text/css', '.js': 'application/javascript', '.mjs': 'application/javascript',
    '.svg': 'image/svg+xml', '.woff': 'font/woff', '.woff2': 'font/woff2', '.ttf': 'font/ttf',
    '.otf': 'font/otf', '.eot': 'application/vnd.ms-fontobject', '.webp': 'image/webp',
    '.avif': 'image/avif', '.ico': 'image/x-icon', '.json': 'application/json',
    '.html': 'text/html', '.htm': 'text/html',
}


@dataclass
class FetchedResource:
    url: str
    final_url: str
    status_code: int
    headers: Dict[str, str]
    content: bytes
    mime_type: str
    elapsed_ms: int = 0
    encoding: Optional[str] = None
    attempts: int = 1
    _digest: Optional[str] = field(default=None, repr=False)

    @property
    def sha256(self) -> str:
        if self._digest is None:
            self._digest = hashlib.sha256(self.content).hexdigest()
        return self._digest

    @property
    def text(self) -> str:
        return decode_text(self.content, self.encoding)

    @property
    def asset_type(self) -> str:
        return classify_asset(self.mime_type, self.final_url)


def decode_text(data: bytes, encoding: Optional[str] = None) -> str:
    if data.startswith(b'\xef\xbb\xbf'):
        return data[3:].decode('utf-8', errors='replace')
    for enc in (encoding, 'utf-8'):
        if not enc:
            continue
        try:
            return data.decode(enc)
        except (LookupError, UnicodeDecodeError):
            continue
    return data.decode('latin-1', errors='replace')


_CSS_HINT = re.compile(rb'^\s*(@charset|@import|@font-face|@media|:root|[.#]?[a-zA-Z][\w\-\s,.#>:]*\{)', re.S)
_HTML_HINT = re.compile(rb'^\s*(<!doctype html|<html|<head|<body)', re.I)
_SVG_HINT = re.compile(rb'^\s*(<\?xml[^>]*>\s*)?(<!--.*?-->\s*)*<svg', re.I | re.S)


def sniff_mime(data: bytes, declared: Optional[str] = None, url: Optional[str] = None) -> str:
    """Content type from the bytes first, then the declared header, then the URL.

    Binary formats are recognised by signature (filetype); text formats
    (HTML, SVG, CSS, JS) by a cheap prefix heuristic.
    """
    kind = filetype.guess(data) if data else None
    if kind is not None:
        return kind.mime
    head = data[:512]
    if _HTML_HINT.match(head):
        return 'text/html'
    if _SVG_HINT.match(head):
        return 'image/svg+xml'
    declared_clean = (declared or '').split(';')[0].strip().lower()
    if declared_clean and declared_clean not in ('application/octet-stream', 'binary/octet-stream', 'text/plain'):
        return declared_clean
    ext = ''
    if url:
        path = urlparse(url).path.lower()
        dot = path.rfind('.')
        if dot != -1:
            ext = path[dot:]
    if ext in _EXT_MIMES:
        return _EXT_MIMES[ext]
    guessed, _ = mimetypes.guess_type(url or '')
    if guessed:
        return guessed
    if _CSS_HINT.match(head):
        return 'text/css'
    return declared_clean or 'application/octet-stream'


def classify_asset(mime: str, url: str = '') -> str:
    m = (mime or '').lower()
    if m.startswith('image/'):
        return 'image'
    if m == 'text/css':
        return 'css'
    if m in ('application/javascript', 'text/javascript', 'application/x-javascript', 'application/ecmascript'):
        return 'js'
    if m.startswith('font/') or m in _FONT_MIMES:
        return 'font'
    if m in ('text/html', 'application/xhtml+xml'):
        return 'html'
    path = urlparse(url).path.lower() if url else ''
    if path.endswith('.css'):
        return 'css'
    if path.endswith(('.js', '.mjs')):
        return 'js'
    if path.endswith(('.woff', '.woff2', '.ttf', '.otf', '.eot')):
        return 'font'
    return 'other'


def extension_for(mime: str, url: str = '') -> str:
    path = urlparse(url).path if url else ''
    tail = path.rsplit('/', 1)[-1]
    if '.' in tail:
        ext = '.' + tail.rsplit('.', 1)[-1].lower()
        if 1 < len(ext) <= 6 and ext[1:].isalnum():
            return ext
    for ext, m in _EXT_MIMES.items():
        if m == mime:
            return ext
    return mimetypes.guess_extension(mime or '') or '.bin'


class ContentCache:
    """Per-project dedup: by resolved URL and by content digest."""
    def __init__(self):
        self.by_url: Dict[str, Any] = {}
        self.by_digest: Dict[str, str] = {}

    def url_hit(self, url: str):
        return self.by_url.get(url)

    def remember(self, url: str, value: Any, digest: Optional[str] = None, local_path: Optional[str] = None):
        self.by_url[url] = value
        if digest and local_path and digest not in self.by_digest:
            self.by_digest[digest] = local_path

    def path_for_digest(self, digest: str) -> Optional[str]:
        return self.by_digest.get(digest)


class AssetFetcher:
    """Async HTTP fetcher (httpx) with exponential backoff over a fixed retry count."""

    def __init__(self, retries: int = 3, timeout: float = 15.0, backoff_base: float = 0.5,
                 backoff_max: float = 8.0, user_agent: str = DEFAULT_USER_AGENT,
                 max_bytes: int = MAX_ASSET_BYTES, client: Optional[httpx.AsyncClient] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 callbacks: Optional[PipelineCallbacks] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.retries = max(0, retries)
        self.timeout = timeout
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.max_bytes = max_bytes
        self.callbacks = callbacks
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout, follow_redirects=True, transport=transport,
            headers={'User-Agent': user_agent, 'Accept': '*/*'},
        )
        self.stats = {'requests': 0, 'retries': 0, 'failures': 0, 'bytes': 0}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    def _delay(self, attempt: int) -> float:
        return min(self.backoff_max, self.backoff_base * (2 ** attempt))

    async def _get(self, url: str, timeout: Optional[float] = None) -> httpx.Response:
        self.stats['requests'] += 1
        return await self._client.get(url, timeout=timeout or self.timeout)

    async def fetch(self, url: str) -> FetchedResource:
        last_error = None
        status = None
        attempt = 0
        for attempt in range(self.retries + 1):
            if attempt:
                self.stats['retries'] += 1
                await self._sleep(self._delay(attempt - 1))
            try:
                started = asyncio.get_running_loop().time()
                resp = await self._get(url)
            except httpx.TimeoutException as e:
                last_error = f"timeout after {self.timeout}s"
                logger.debug("fetch %s attempt %d timeout: %s", url, attempt + 1, e)
                continue
            except httpx.TransportError as e:
                last_error = f"transport error: {e}"
                logger.debug("fetch %s attempt %d failed: %s", url, attempt + 1, e)
                continue
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                # redirect loops, undecodable bodies, malformed URLs: not retried
                self.stats['failures'] += 1
                raise AssetFetchError(f"request failed: {e}", url=url, attempts=attempt + 1)
            status = resp.status_code
            if status in RETRY_STATUS:
                last_error = f"HTTP {status}"
                continue
            if status >= 400:
                self.stats['failures'] += 1
                raise AssetFetchError(f"HTTP {status}", url=url, status_code=status, attempts=attempt + 1)
            content = resp.content
            if len(content) > self.max_bytes:
                self.stats['failures'] += 1
                raise AssetFetchError(f"asset exceeds {self.max_bytes} bytes", url=url, status_code=status,
                                      attempts=attempt + 1)
            self.stats['bytes'] += len(content)
            return self._resource(url, resp, content, started, attempt + 1)
        self.stats['failures'] += 1
        raise AssetFetchError(f"giving up after {attempt + 1} attempts: {last_error}", url=url,
                              status_code=status, attempts=attempt + 1)

    async def fetch_document(self, url: str, timeout: Optional[float] = None) -> FetchedResource:
        """Initial page load without a browser. Failures here are fatal."""
        timeout = timeout or self.timeout
        try:
            started = asyncio.get_running_loop().time()
            resp = await self._get(url, timeout=timeout)
        except httpx.TimeoutException as e:
            raise PhaseTimeoutError(f"initial load timeout after {timeout}s: {e}", 'capturing', url)
        except httpx.TransportError as e:
            raise NetworkError(f"origin unreachable: {e}", 'capturing', url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(f"origin request failed: {e}", 'capturing', url)
        if resp.status_code >= 400:
            raise NetworkError(f"origin returned HTTP {resp.status_code}", 'capturing', url)
        return self._resource(url, resp, resp.content, started, 1)

    async def fetch_optional(self, url: str) -> Optional[FetchedResource]:
        """Single attempt probe (robots.txt, sitemap); None on any failure."""
        try:
            resp = await self._get(url)
        except (httpx.HTTPError, httpx.InvalidURL):
            return None
        if resp.status_code >= 400:
            return None
        return self._resource(url, resp, resp.content, asyncio.get_running_loop().time(), 1)

    def _resource(self, url: str, resp: httpx.Response, content: bytes, started: float, attempts: int) -> FetchedResource:
        headers = {k.lower(): v for k, v in resp.headers.items()}
        final_url = str(resp.url) if resp.url else url
        mime = sniff_mime(content, headers.get('content-type'), final_url)
        elapsed = int((asyncio.get_running_loop().time() - started) * 1000)
        _invoke(self.callbacks, 'event', 'asset_fetched', url=url, status=resp.status_code, bytes=len(content))
        return FetchedResource(url=url, final_url=final_url, status_code=resp.status_code, headers=headers,
                               content=content, mime_type=mime, elapsed_ms=elapsed,
                               encoding=resp.charset_encoding, attempts=attempts)
