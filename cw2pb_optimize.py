"""Optimization Engine.

Produces optimized/index.html plus a mirrored optimized/assets/ tree from the
rewritten snapshot. Transforms run in a fixed order:

    critical_css -> defer -> minify -> images -> srcset -> lazy_load -> fonts

Every transform can be toggled off through CloneOptions and fails soft per
item: the untransformed original is kept, a warning is emitted and the
item is counted as failed in the report. The engine itself never raises.
"""
from __future__ import annotations

import hashlib, io, logging, posixpath, re
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple, Set

from bs4 import BeautifulSoup, Comment, NavigableString

from cw2pb_core import AssetRecord, CloneOptions, MARKER_ATTR, PipelineCallbacks, _invoke
from cw2pb_assets import FileBlobStore, strip_markers

logger = logging.getLogger("cw2pb.optimize")

TRANSFORMS = ('critical_css', 'defer', 'minify', 'images', 'srcset', 'lazy_load', 'fonts')
_TOGGLES = {
    'critical_css': 'critical_css', 'defer': 'defer_resources', 'minify': 'minify',
    'images': 'optimize_images', 'srcset': 'generate_srcset', 'lazy_load': 'lazy_load', 'fonts': 'subset_fonts',
}
OUTPUT_PREFIX = 'optimized'
SRCSET_WIDTHS = (320, 640, 768, 1024, 1280, 1920)
JPEG_QUALITY = 85
WEBP_QUALITY = 80
FOLD_FALLBACK_IMAGES = 2           # eager images when no layout boxes exist (static capture)
FONT_EXTS = ('.woff2', '.woff', '.ttf', '.otf')
_PRESERVE_WS = {'pre', 'textarea', 'script', 'style', 'code'}
_CSS_COMMENT_RE = re.compile(r'/\*.*?\*/', re.S)
_CSS_TOKEN_RE = re.compile(r'("(?:\\.|[^"\\])*"|\'(?:\\.|[^\'\\])*\')|(\s+)|([{};,>])', re.S)
_SIMPLE_TOKEN_RE = re.compile(r'([.#]?)(-?[A-Za-z_][\w-]*)')
_PSEUDO_RE = re.compile(r'::?[\w-]+(\([^)]*\))?')
_ATTR_SEL_RE = re.compile(r'\[[^\]]*\]')
_CSS_CONTENT_RE = re.compile(r'(?<![\w-])content\s*:\s*((?:"(?:\\.|[^"\\])*"|\'(?:\\.|[^\'\\])*\'|[^;}"\'])+)', re.I)
_CSS_STRING_RE = re.compile(r'"((?:\\.|[^"\\])*)"|\'((?:\\.|[^\'\\])*)\'', re.S)
_CSS_ESCAPE_RE = re.compile(r'\\([0-9a-fA-F]{1,6})\s?|\\(.)', re.S)
ICON_FONT_PUA_SHARE = 0.5         # fonts whose cmap is mostly Private Use Area glyphs


@dataclass
class TransformStats:
    enabled: bool = True
    applied: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {'enabled': self.enabled, 'applied': self.applied, 'skipped': self.skipped, 'failed': self.failed}


@dataclass
class OptimizationResult:
    html: Optional[str]
    assets: List[AssetRecord]
    report: Dict[str, Any]
    warnings: List[str] = field(default_factory=list)


# ---------------- css helpers ----------------
def minify_css(css: str) -> str:
    css = _CSS_COMMENT_RE.sub('', css)
    out: List[str] = []
    pos = 0
    for m in _CSS_TOKEN_RE.finditer(css):
        chunk = css[pos:m.start()]
        if chunk:
            out.append(chunk)
        pos = m.end()
        string, ws, punct = m.groups()
        if string:
            out.append(string)
        elif punct:
            while out and out[-1] == ' ':
                out.pop()
            out.append(punct)
        elif ws:
            if not out or out[-1][-1] in "{};,>":
                continue
            out.append(' ')
    out.append(css[pos:])
    return ''.join(out).replace(';}', '}').strip()


def minify_js(js: str) -> str:
    """Conservative: drops indentation and blank lines, never joins statements.

    Sources containing template literals are returned untouched, since their
    line breaks and indentation are part of runtime strings.
    """
    if '`' in js:
        return js
    lines = (line.strip() for line in js.splitlines())
    return '\n'.join(line for line in lines if line)


def _unescape_css(s: str) -> str:
    def sub(m):
        if m.group(1):
            cp = int(m.group(1), 16)
            return chr(cp) if 0 < cp <= 0x10FFFF and not 0xD800 <= cp <= 0xDFFF else '\ufffd'
        return '' if m.group(2) == '\n' else m.group(2)
    return _CSS_ESCAPE_RE.sub(sub, s)


def css_content_codepoints(css: str) -> Set[int]:
    """Codepoints drawn by `content:` declarations, where icon fonts put their glyphs."""
    out: Set[int] = set()
    for decl in _CSS_CONTENT_RE.finditer(css or ''):
        for m in _CSS_STRING_RE.finditer(decl.group(1)):
            raw = m.group(1) if m.group(1) is not None else m.group(2)
            out.update(ord(c) for c in _unescape_css(raw) if not c.isspace())
    return out


def _is_private_use(cp: int) -> bool:
    return 0xE000 <= cp <= 0xF8FF or cp >= 0xF0000


def split_rules(css: str) -> List[Tuple[str, str]]:
    """Top-level (prelude, block) pairs; nested at-rule blocks come back whole."""
    css = _CSS_COMMENT_RE.sub('', css)
    rules: List[Tuple[str, str]] = []
    depth = 0
    start = 0
    prelude = ''
    quote = None
    i = 0
    while i < len(css):
        ch = css[i]
        if quote:
            if ch == '\\':
                i += 1
            elif ch == quote:
                quote = None
        elif ch in ('"', "'"):
            quote = ch
        elif ch == '{':
            if depth == 0:
                prelude = css[start:i].strip()
                start = i + 1
            depth += 1
        elif ch == '}':
            depth -= 1
            if depth == 0:
                rules.append((prelude, css[start:i]))
                start = i + 1
            elif depth < 0:
                depth = 0
                start = i + 1
        elif ch == ';' and depth == 0:
            stmt = css[start:i].strip()
            if stmt:
                rules.append((stmt, None))
            start = i + 1
        i += 1
    return rules


def selector_matches(selector: str, tokens: Set[str]) -> bool:
    """True when every simple token of the compound selector appears in the fold token set."""
    sel = _ATTR_SEL_RE.sub('', _PSEUDO_RE.sub('', selector)).strip()
    if not sel or sel in ('*', ':root'):
        return True
    found = _SIMPLE_TOKEN_RE.findall(sel)
    if not found:
        return True
    return all((prefix + name).lower() in tokens for prefix, name in found)


def critical_rules(css: str, tokens: Set[str]) -> str:
    out: List[str] = []
    for prelude, block in split_rules(css):
        if block is None:
            if prelude.lower().startswith(('@import', '@charset')):
                continue
            out.append(prelude + ';')
        elif prelude.lower().startswith(('@font-face', '@keyframes', '@-webkit-keyframes', '@property')):
            out.append(f"{prelude}{{{block}}}")
        elif prelude.lower().startswith(('@media', '@supports', '@layer', '@container')):
            inner = critical_rules(block, tokens)
            if inner:
                out.append(f"{prelude}{{{inner}}}")
        elif prelude.startswith('@'):
            continue
        elif any(selector_matches(s, tokens) for s in prelude.split(',')):
            out.append(f"{prelude}{{{block}}}")
    return ''.join(out)


def _is_local(ref: Optional[str]) -> bool:
    return bool(ref) and ref.startswith('assets/')


def _variant_path(local_path: str, suffix: str, ext: Optional[str] = None) -> str:
    stem, dot, old_ext = local_path.rpartition('.')
    if not dot:
        stem, old_ext = local_path, ''
    return f"{stem}{suffix}.{ext or old_ext}"


# ---------------- engine ----------------
class OptimizationEngine:
    def __init__(self, options: CloneOptions, blob_store: FileBlobStore,
                 callbacks: Optional[PipelineCallbacks] = None, fold_height: int = 1080):
        self.options = options
        self.blob_store = blob_store
        self.callbacks = callbacks
        self.fold_height = fold_height
        self.files: Dict[str, bytes] = {}
        self.records: Dict[str, AssetRecord] = {}
        self.stats: Dict[str, TransformStats] = {
            name: TransformStats(enabled=bool(getattr(options, _TOGGLES[name]))) for name in TRANSFORMS}
        self.warnings: List[str] = []

    def _warn(self, transform: str, item: str, err: BaseException):
        self.stats[transform].failed += 1
        msg = f"optimize/{transform} skipped {item}: {err}"
        self.warnings.append(msg)
        logger.debug(msg, exc_info=True)
        _invoke(self.callbacks, 'warning', msg)

    # ---- entry point ----
    def run(self, html: str, assets: List[AssetRecord], snapshot=None) -> OptimizationResult:
        try:
            return self._run(html, assets, snapshot)
        except Exception as e:
            logger.warning("optimization aborted: %s", e, exc_info=True)
            _invoke(self.callbacks, 'warning', f"optimization aborted: {e}")
            return OptimizationResult(html=None, assets=[], report={'error': str(e)}, warnings=self.warnings + [str(e)])

    def _run(self, html: str, assets: List[AssetRecord], snapshot) -> OptimizationResult:
        for rec in assets:
            if rec.local_path == 'index.html' or not self.blob_store.exists(rec.local_path):
                continue
            self.files[rec.local_path] = self.blob_store.get(rec.local_path)
            self.records[rec.local_path] = rec
        original_bytes = sum(len(b) for b in self.files.values()) + len(strip_markers(html).encode('utf-8'))
        soup = BeautifulSoup(html or '', 'html.parser')
        boxes = (snapshot.boxes if snapshot is not None else None) or {}
        if snapshot is not None and snapshot.viewport:
            self.fold_height = snapshot.viewport.get('height', self.fold_height)

        steps = {
            'critical_css': lambda: self.critical_css(soup, boxes),
            'defer': lambda: self.defer(soup),
            'minify': lambda: self.minify(soup),
            'images': lambda: self.images(soup),
            'srcset': lambda: self.srcset(soup, boxes),
            'lazy_load': lambda: self.lazy_load(soup, boxes),
            'fonts': lambda: self.fonts(soup),
        }
        for name in TRANSFORMS:
            if not self.stats[name].enabled:
                continue
            _invoke(self.callbacks, 'event', 'optimize_transform', transform=name)
            try:
                steps[name]()
            except Exception as e:
                self._warn(name, 'document', e)

        out_html = strip_markers(str(soup))
        out_records = self._write(out_html)
        optimized_bytes = sum(r.byte_size for r in out_records)
        report = {
            'transforms': {k: v.to_dict() for k, v in self.stats.items()},
            'originalBytes': original_bytes,
            'optimizedBytes': optimized_bytes,
            'savedBytes': original_bytes - optimized_bytes,
            'warnings': list(self.warnings),
        }
        _invoke(self.callbacks, 'log', f"[optimize] {original_bytes} -> {optimized_bytes} bytes")
        return OptimizationResult(html=out_html, assets=out_records, report=report, warnings=list(self.warnings))

    def _write(self, html: str) -> List[AssetRecord]:
        out = []
        for path in sorted(self.files):
            data = self.files[path]
            dest = f"{OUTPUT_PREFIX}/{path}"
            self.blob_store.put(dest, data)
            src = self.records.get(path)
            mime = src.mime_type if src else _mime_for(path)
            atype = src.type if src else 'image'
            out.append(AssetRecord(local_path=dest, original_url=src.original_url if src else '', byte_size=len(data),
                                   mime_type=mime, type=atype, sha256=hashlib.sha256(data).hexdigest()))
        index = html.encode('utf-8')
        self.blob_store.put(f"{OUTPUT_PREFIX}/index.html", index)
        out.append(AssetRecord(local_path=f"{OUTPUT_PREFIX}/index.html", original_url='', byte_size=len(index),
                               mime_type='text/html', type='html', sha256=hashlib.sha256(index).hexdigest()))
        return out

    # ---- 1. critical css ----
    def fold_tokens(self, soup, boxes: Dict[str, Dict[str, int]]) -> Set[str]:
        tokens: Set[str] = {'html', 'body'}
        for el in soup.find_all(True):
            box = boxes.get(el.get(MARKER_ATTR, ''))
            if boxes and el.get(MARKER_ATTR) is not None and (box is None or box.get('y', 0) >= self.fold_height):
                continue
            tokens.add(el.name.lower())
            for c in el.get('class') or []:
                tokens.add('.' + c.lower())
            if el.get('id'):
                tokens.add('#' + el['id'].lower())
        return tokens

    def critical_css(self, soup, boxes):
        stat = self.stats['critical_css']
        tokens = self.fold_tokens(soup, boxes)
        head = soup.head
        if head is None:
            stat.skipped += 1
            return
        chunks = []
        for link in soup.find_all('link', href=True):
            rels = {r.lower() for r in link.get('rel') or []}
            if 'stylesheet' not in rels:
                continue
            if not _is_local(link['href']) or link['href'] not in self.files or link.get('media') not in (None, 'all', 'screen'):
                stat.skipped += 1
                continue
            try:
                css = self.files[link['href']].decode('utf-8', errors='replace')
                crit = critical_rules(css, tokens)
                # url() refs are relative to the stylesheet; rebase them onto the document
                base_dir = posixpath.dirname(link['href'])
                crit = re.sub(r'url\(\s*([\'"]?)(?!data:|https?:|/|#)([^\'")]+)\1\s*\)',
                              lambda m: f"url({m.group(1)}{posixpath.normpath(posixpath.join(base_dir, m.group(2)))}{m.group(1)})",
                              crit)
            except Exception as e:
                self._warn('critical_css', link['href'], e)
                continue
            if crit:
                chunks.append(crit)
                link['data-critical'] = 'inlined'
                stat.applied += 1
            else:
                stat.skipped += 1
        if chunks:
            style = soup.new_tag('style')
            style['data-critical'] = ''
            style.string = '\n'.join(chunks)
            first = head.find('link', attrs={'data-critical': 'inlined'})
            (first.insert_before if first is not None else head.append)(style)

    # ---- 2. defer non-critical css/js ----
    def defer(self, soup):
        stat = self.stats['defer']
        for link in soup.find_all('link', attrs={'data-critical': 'inlined'}):
            try:
                noscript = soup.new_tag('noscript')
                plain = soup.new_tag('link', rel='stylesheet', href=link['href'])
                noscript.append(plain)
                link['rel'] = 'preload'
                link['as'] = 'style'
                link['onload'] = "this.onload=null;this.rel='stylesheet'"
                del link['data-critical']
                link.insert_after(noscript)
                stat.applied += 1
            except Exception as e:
                self._warn('defer', link.get('href', '?'), e)
        scripts = soup.find_all('script')
        for i, script in enumerate(scripts):
            if not script.get('src'):
                continue
            if script.has_attr('async') or script.has_attr('defer') or (script.get('type') or '').lower() == 'module':
                stat.skipped += 1
                continue
            # a later classic inline script may depend on this one having run
            later_inline = any(not s.get('src') and (s.get('type') or 'text/javascript').lower() in
                               ('text/javascript', 'application/javascript', '') for s in scripts[i + 1:])
            if later_inline:
                stat.skipped += 1
                continue
            script['defer'] = ''
            stat.applied += 1

    # ---- 3. minify ----
    def minify(self, soup):
        stat = self.stats['minify']
        for c in soup.find_all(string=lambda s: isinstance(s, Comment)):
            if not c.strip().startswith('[if'):
                c.extract()
        for s in soup.find_all(string=True):
            if type(s) is not NavigableString or s.parent is None or s.parent.name in _PRESERVE_WS:
                continue
            if s.find_parent(list(_PRESERVE_WS)) is not None:
                continue
            collapsed = re.sub(r'\s+', ' ', str(s))
            if collapsed != str(s):
                s.replace_with(NavigableString(collapsed))
        for tag in soup.find_all('style'):
            if tag.string:
                try:
                    tag.string = minify_css(str(tag.string))
                except Exception as e:
                    self._warn('minify', 'inline style', e)
        for path in list(self.files):
            kind = 'css' if path.endswith('.css') else 'js' if path.endswith(('.js', '.mjs')) else None
            if kind is None:
                continue
            try:
                text = self.files[path].decode('utf-8')
                out = (minify_css(text) if kind == 'css' else minify_js(text)).encode('utf-8')
            except Exception as e:
                self._warn('minify', path, e)
                continue
            if len(out) < len(self.files[path]):
                self.files[path] = out
                stat.applied += 1
            else:
                stat.skipped += 1

    # ---- 4. images ----
    def images(self, soup):
        from PIL import Image
        stat = self.stats['images']
        webp_for: Dict[str, str] = {}
        for path in list(self.files):
            fmt = path.rsplit('.', 1)[-1].lower()
            if fmt not in ('jpg', 'jpeg', 'png'):
                if self.records.get(path) is not None and self.records[path].type == 'image':
                    stat.skipped += 1
                continue
            data = self.files[path]
            try:
                with Image.open(io.BytesIO(data)) as img:
                    img.load()
                    if getattr(img, 'is_animated', False):
                        stat.skipped += 1
                        continue
                    reencoded = self._encode(img, 'JPEG' if fmt in ('jpg', 'jpeg') else 'PNG')
                    webp = self._encode(img, 'WEBP')
            except Exception as e:
                self._warn('images', path, e)
                continue
            changed = False
            if len(reencoded) < len(data):
                self.files[path] = data = reencoded
                changed = True
            if len(webp) < len(data):
                webp_path = _variant_path(path, '', 'webp')
                self.files[webp_path] = webp
                webp_for[path] = webp_path
                changed = True
            if changed:
                stat.applied += 1
            else:
                stat.skipped += 1
        for img in soup.find_all('img', src=True):
            webp_path = webp_for.get(img['src'])
            if not webp_path or img.find_parent('picture') is not None or img.get('srcset'):
                continue
            picture = soup.new_tag('picture')
            source = soup.new_tag('source', srcset=webp_path, type='image/webp')
            img.wrap(picture)
            img.insert_before(source)

    @staticmethod
    def _encode(img, fmt: str, width: Optional[int] = None) -> bytes:
        im = img
        if width is not None and width < img.width:
            im = img.resize((width, max(1, round(img.height * width / img.width))))
        buf = io.BytesIO()
        if fmt == 'JPEG':
            if im.mode not in ('RGB', 'L'):
                im = im.convert('RGB')
            im.save(buf, 'JPEG', quality=JPEG_QUALITY, optimize=True, progressive=True)
        elif fmt == 'PNG':
            im.save(buf, 'PNG', optimize=True)
        else:
            im.save(buf, 'WEBP', quality=WEBP_QUALITY)
        return buf.getvalue()

    # ---- 5. responsive srcset ----
    def srcset(self, soup, boxes):
        from PIL import Image
        stat = self.stats['srcset']
        for img in soup.find_all('img', src=True):
            path = img['src']
            if img.get('srcset') or not _is_local(path) or path not in self.files \
                    or not path.lower().endswith(('.jpg', '.jpeg', '.png', '.webp')):
                stat.skipped += 1
                continue
            box = boxes.get(img.get(MARKER_ATTR, '')) or {}
            rendered = box.get('width') or _int(img.get('width'))
            if not rendered:
                # without a known rendered width the w-descriptors would change intrinsic size
                stat.skipped += 1
                continue
            try:
                with Image.open(io.BytesIO(self.files[path])) as im:
                    im.load()
                    fmt = {'jpg': 'JPEG', 'jpeg': 'JPEG', 'png': 'PNG', 'webp': 'WEBP'}[path.rsplit('.', 1)[-1].lower()]
                    widths = [w for w in SRCSET_WIDTHS if w < im.width]
                    if not widths:
                        stat.skipped += 1
                        continue
                    entries = []
                    for w in widths:
                        variant = _variant_path(path, f"-{w}w")
                        self.files[variant] = self._encode(im, fmt, w)
                        entries.append(f"{variant} {w}w")
                    entries.append(f"{path} {im.width}w")
            except Exception as e:
                self._warn('srcset', path, e)
                continue
            img['srcset'] = ', '.join(entries)
            img['sizes'] = f"{int(rendered)}px"
            stat.applied += 1

    # ---- 6. lazy loading ----
    def lazy_load(self, soup, boxes):
        stat = self.stats['lazy_load']
        eager_left = FOLD_FALLBACK_IMAGES
        for el in soup.find_all(['img', 'iframe']):
            if el.get('loading'):
                stat.skipped += 1
                continue
            box = boxes.get(el.get(MARKER_ATTR, '')) if boxes else None
            if boxes:
                below = box is not None and box.get('y', 0) >= self.fold_height
            else:
                below = eager_left <= 0
                eager_left -= 1
            if below:
                el['loading'] = 'lazy'
                stat.applied += 1
            else:
                stat.skipped += 1

    # ---- 7. font subsetting ----
    def fonts(self, soup):
        from fontTools.ttLib import TTFont
        from fontTools.subset import Options, Subsetter
        stat = self.stats['fonts']
        body = soup.body or soup
        text = body.get_text(' ')
        for s in soup.find_all(['input', 'textarea', 'img']):
            text += ' ' + ' '.join(str(s.get(a) or '') for a in ('value', 'placeholder', 'alt'))
        unicodes = {ord(c) for c in text if not c.isspace()} | set(range(0x20, 0x7F)) | {0xA0}
        css_texts = [tag.string for tag in soup.find_all('style') if tag.string]
        css_texts += [tag['style'] for tag in soup.find_all(style=True)]
        css_texts += [self.files[p].decode('utf-8', 'replace') for p in self.files if p.lower().endswith('.css')]
        for css in css_texts:
            unicodes |= css_content_codepoints(str(css))
        for path in list(self.files):
            if not path.lower().endswith(FONT_EXTS):
                continue
            data = self.files[path]
            try:
                font = TTFont(io.BytesIO(data))
                cmap = font.getBestCmap() or {}
                icons = {cp for cp in cmap if _is_private_use(cp)}
                if cmap and len(icons) / len(cmap) >= ICON_FONT_PUA_SHARE and not icons & unicodes:
                    # icon font with no glyph reachable from the captured CSS; left whole
                    stat.skipped += 1
                    continue
                opts = Options()
                opts.flavor = font.flavor
                opts.layout_features = ['*']
                opts.name_IDs = ['*']
                opts.notdef_outline = True
                subsetter = Subsetter(options=opts)
                subsetter.populate(unicodes=unicodes)
                subsetter.subset(font)
                buf = io.BytesIO()
                font.flavor = opts.flavor
                font.save(buf)
                out = buf.getvalue()
            except Exception as e:
                self._warn('fonts', path, e)
                continue
            if len(out) < len(data):
                self.files[path] = out
                stat.applied += 1
            else:
                stat.skipped += 1


def _int(v: Any) -> Optional[int]:
    try:
        return int(str(v).strip().rstrip('px'))
    except (TypeError, ValueError):
        return None


def _mime_for(path: str) -> str:
    ext = path.rsplit('.', 1)[-1].lower()
    return {'webp': 'image/webp', 'jpg': 'image/jpeg', 'jpeg': 'image/jpeg', 'png': 'image/png',
            'css': 'text/css', 'js': 'application/javascript'}.get(ext, 'application/octet-stream')
