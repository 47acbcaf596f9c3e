"""Structural tree + Builder Converter Registry.

build_tree() turns a captured document (with data-cw2pb-id markers and the
computed styles keyed by them) into an arena-indexed, immutable tree:

    root -> section -> row -> column -> leaf

Nodes reference each other by index only. Every converter walks the same
tree, so concurrent conversions never share mutable state.

A converter is a ConverterSpec: a tagged bundle of plain functions
(leaf mappers, container mapper, inline_styles, serialize, validate, raw).
The registry dispatches on the target-format key; adding a format is one
register() call. Failures are contained per leaf and per section: the failed
subtree is embedded as raw HTML and counted in the conversion report.
"""
from __future__ import annotations

import hashlib, html as htmlmod, json, logging, re, time
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple, Callable, Iterable

from bs4 import BeautifulSoup, NavigableString, Tag

from cw2pb_core import ConversionError, MARKER_ATTR, PipelineCallbacks, _invoke, rgb_to_hex

logger = logging.getLogger("cw2pb.convert")

LEAF_ROLES = ('heading', 'text', 'image', 'button', 'list', 'quote', 'video', 'embed', 'divider', 'form',
              'calendar', 'html')
SKIP_TAGS = {'script', 'style', 'noscript', 'template', 'link', 'meta', 'head', 'title', 'base'}
INLINE_TAGS = {'a', 'span', 'strong', 'em', 'b', 'i', 'u', 's', 'small', 'br', 'label', 'code', 'abbr', 'sup',
               'sub', 'mark', 'time', 'cite', 'q', 'kbd', 'var', 'wbr', 'font', 'del', 'ins'}
WRAPPER_TAGS = {'div', 'span'}
SECTION_TAGS = {'section', 'header', 'footer', 'nav', 'article', 'aside'}
_MARKER_RE = re.compile(r'\s+' + re.escape(MARKER_ATTR) + r'="[^"]*"')
_VIDEO_HOSTS = (('youtube', re.compile(r'(?:youtube(?:-nocookie)?\.com|youtu\.be)', re.I)),
                ('vimeo', re.compile(r'vimeo\.com', re.I)))
_CALENDAR_RE = re.compile(r'calendly|/widget/booking|calendar|acuityscheduling|cal\.com', re.I)
_BUTTON_CLASS_RE = re.compile(r'\b(?:btn|button|cta)\b', re.I)

# computed style name -> css property
STYLE_PROPS = {
    'color': 'color', 'backgroundColor': 'background-color', 'backgroundImage': 'background-image',
    'fontSize': 'font-size', 'fontWeight': 'font-weight', 'fontFamily': 'font-family',
    'lineHeight': 'line-height', 'textAlign': 'text-align', 'padding': 'padding', 'margin': 'margin',
    'border': 'border', 'borderRadius': 'border-radius', 'boxShadow': 'box-shadow',
}
INHERITED = {'color', 'font-size', 'font-weight', 'font-family', 'line-height', 'text-align'}
_DEFAULTS = {
    'background-color': {'rgba(0, 0, 0, 0)', 'transparent'},
    'background-image': {'none'},
    'padding': {'0px', '0'},
    'margin': {'0px', '0'},
    'border-radius': {'0px', '0'},
    'box-shadow': {'none'},
    'line-height': {'normal'},
    'text-align': {'start', 'left'},
    'font-weight': {'400', 'normal'},
}


# ---------------- structural tree ----------------
@dataclass(frozen=True)
class Node:
    index: int
    kind: str                               # root | section | row | column | leaf
    parent: Optional[int]
    children: Tuple[int, ...] = ()
    role: Optional[str] = None              # leaf role
    tag: str = ''
    text: str = ''
    inner: str = ''
    html: str = ''
    attrs: Tuple[Tuple[str, str], ...] = ()
    style: Tuple[Tuple[str, str], ...] = ()
    items: Tuple[Tuple[str, ...], ...] = ()

    def attr(self, name: str, default: Optional[str] = None) -> Optional[str]:
        for k, v in self.attrs:
            if k == name:
                return v
        return default

    @property
    def style_map(self) -> Dict[str, str]:
        return dict(self.style)


@dataclass(frozen=True)
class StructuralTree:
    nodes: Tuple[Node, ...]
    title: str = ''

    @property
    def root(self) -> Node:
        return self.nodes[0]

    def node(self, index: int) -> Node:
        return self.nodes[index]

    def children(self, index: int) -> List[Node]:
        return [self.nodes[i] for i in self.nodes[index].children]

    def leaves(self, index: int = 0) -> List[Node]:
        n = self.nodes[index]
        if n.kind == 'leaf':
            return [n]
        out = []
        for c in n.children:
            out.extend(self.leaves(c))
        return out

    def count(self, kind: str) -> int:
        return sum(1 for n in self.nodes if n.kind == kind)


def parse_style_attr(value: Optional[str]) -> Dict[str, str]:
    out = {}
    for decl in (value or '').split(';'):
        if ':' in decl:
            k, v = decl.split(':', 1)
            k, v = k.strip().lower(), v.strip()
            if k and v:
                out[k] = v
    return out


def style_string(style: Iterable[Tuple[str, str]]) -> str:
    return ';'.join(f"{k}:{v}" for k, v in style)


def _clean(markup: str) -> str:
    return _MARKER_RE.sub('', markup)


class _TreeBuilder:
    def __init__(self, styles: Optional[Dict[str, Dict[str, str]]] = None):
        self.styles = styles or {}
        self.nodes: List[Dict[str, Any]] = []

    def add(self, kind: str, parent: Optional[int], **data) -> int:
        idx = len(self.nodes)
        self.nodes.append({'index': idx, 'kind': kind, 'parent': parent, 'children': [], **data})
        if parent is not None:
            self.nodes[parent]['children'].append(idx)
        return idx

    def freeze(self, title: str) -> StructuralTree:
        out = []
        for d in self.nodes:
            d = dict(d)
            d['children'] = tuple(d['children'])
            out.append(Node(**d))
        return StructuralTree(nodes=tuple(out), title=title)

    # ---- element helpers ----
    def resolve_style(self, el: Tag, parent_style: Dict[str, str]) -> Dict[str, str]:
        computed = self.styles.get(el.get(MARKER_ATTR, ''), {}) if isinstance(el, Tag) else {}
        out: Dict[str, str] = {}
        for key, css in STYLE_PROPS.items():
            v = computed.get(key)
            if not v or v in _DEFAULTS.get(css, ()):
                continue
            if css == 'border' and v.startswith(('0px none', 'none')):
                continue
            if css in ('color', 'background-color'):
                v = rgb_to_hex(v) or v
            if css in INHERITED and parent_style.get(css) == v:
                continue
            out[css] = v
        out.update(parse_style_attr(el.get('style')))
        return out

    @staticmethod
    def is_block(el) -> bool:
        if not isinstance(el, Tag) or el.name in SKIP_TAGS:
            return False
        if el.name in INLINE_TAGS:
            return el.name == 'a' and _is_buttonish(el)
        return True

    def block_children(self, el: Tag) -> List[Tag]:
        return [c for c in el.children if self.is_block(c)]

    @staticmethod
    def own_text(el: Tag) -> bool:
        return any(isinstance(c, NavigableString) and c.strip() for c in el.children)

    def unwrap(self, el: Tag, style: Dict[str, str]) -> Tuple[Tag, Dict[str, str]]:
        """Descend through presentation-only single-child wrappers, merging their styles."""
        merged = dict(style)
        while el.name in WRAPPER_TAGS and not el.get('id') and not self.own_text(el):
            kids = self.block_children(el)
            inline = [c for c in el.children if isinstance(c, Tag) and c.name in INLINE_TAGS]
            if len(kids) != 1 or inline or role_of(el, self) is not None:
                break
            el = kids[0]
            merged.update(self.resolve_style(el, merged))
        return el, merged

    # ---- build ----
    def build(self, soup) -> StructuralTree:
        title = soup.title.get_text(strip=True) if soup.title else ''
        body = soup.body or soup
        root = self.add('root', None, tag='body', style=())
        base_style = self.resolve_style(body, {}) if isinstance(body, Tag) and body.name else {}
        for el, style in self.section_candidates(body, base_style, 0):
            self.section(root, el, style)
        return self.freeze(title)

    def section_candidates(self, container: Tag, style: Dict[str, str], depth: int):
        for child in self.block_children(container):
            el, st = self.unwrap(child, self.resolve_style(child, style))
            kids = self.block_children(el)
            if depth < 3 and el.name in ('div', 'main', 'article') and role_of(el, self) is None \
                    and any(k.name in SECTION_TAGS or k.name == 'main' for k in kids):
                yield from self.section_candidates(el, st, depth + 1)
            else:
                yield el, st

    def section(self, root: int, el: Tag, style: Dict[str, str]):
        sidx = self.add('section', root, tag=el.name, style=tuple(style.items()))
        role = role_of(el, self)
        if role is not None:
            col = self.add('column', self.add('row', sidx), tag='')
            self.leaf(col, el, role, style)
            return
        pending: List[Tuple[Tag, Dict[str, str]]] = []

        def flush():
            if pending:
                col = self.add('column', self.add('row', sidx), tag='')
                for p_el, p_st in pending:
                    self.collect_leaves(col, p_el, p_st)
                pending.clear()

        for child in self.block_children(el):
            c, cst = self.unwrap(child, self.resolve_style(child, style))
            cols = self.block_children(c) if role_of(c, self) is None else []
            if len(cols) >= 2:
                flush()
                ridx = self.add('row', sidx, tag=c.name, style=tuple(cst.items()))
                for col_el in cols:
                    ce, cs = self.unwrap(col_el, self.resolve_style(col_el, cst))
                    cidx = self.add('column', ridx, tag=ce.name, style=tuple(cs.items()))
                    self.collect_leaves(cidx, ce, cs)
            else:
                pending.append((c, cst))
        flush()

    def collect_leaves(self, col: int, el: Tag, style: Dict[str, str]):
        role = role_of(el, self)
        if role is not None:
            self.leaf(col, el, role, style)
            return
        for child in self.block_children(el):
            c, cst = self.unwrap(child, self.resolve_style(child, style))
            self.collect_leaves(col, c, cst)

    def leaf(self, parent: int, el: Tag, role: str, style: Dict[str, str]):
        attrs: List[Tuple[str, str]] = []
        items: List[Tuple[str, ...]] = []
        if role == 'heading':
            attrs.append(('level', el.name[1] if re.match(r'^h[1-6]$', el.name) else '2'))
        elif role == 'image':
            img = el if el.name == 'img' else el.find('img')
            if img is not None:
                for k in ('src', 'alt', 'width', 'height', 'srcset'):
                    v = img.get(k) or (img.get('data-src') if k == 'src' else None)
                    if v:
                        attrs.append((k, v))
        elif role == 'button':
            link = el if el.name == 'a' else el.find('a')
            if link is not None and link.get('href'):
                attrs.append(('href', link['href']))
        elif role in ('video', 'embed', 'calendar'):
            src_el = el if el.get('src') else (el.find(['iframe', 'video', 'source']) or el)
            src = src_el.get('src') or el.get('data-url') or ''
            if src:
                attrs.append(('src', src))
            for name, rx in _VIDEO_HOSTS:
                if src and rx.search(src):
                    attrs.append(('provider', name))
                    break
        elif role == 'list':
            attrs.append(('ordered', '1' if el.name == 'ol' else ''))
            items = [(li.get_text(' ', strip=True),) for li in el.find_all('li', recursive=False)]
        elif role == 'form':
            labels = {l.get('for'): l.get_text(' ', strip=True) for l in el.find_all('label') if l.get('for')}
            for f in el.find_all(['input', 'select', 'textarea']):
                ftype = (f.get('type') or f.name).lower()
                if ftype in ('hidden', 'submit', 'button', 'reset', 'image'):
                    continue
                fid = f.get('id') or ''
                items.append((ftype, f.get('name') or '', fid, labels.get(fid, '') or f.get('placeholder') or '',
                              f.get('placeholder') or ''))
            if el.get('action'):
                attrs.append(('action', el['action']))
        self.add('leaf', parent, role=role, tag=el.name, text=el.get_text(' ', strip=True)[:5000],
                 inner=_clean(el.decode_contents()), html=_clean(str(el)), attrs=tuple(attrs),
                 style=tuple(style.items()), items=tuple(items))


def _is_buttonish(el: Tag) -> bool:
    if el.name == 'button' or (el.get('role') or '').lower() == 'button':
        return True
    if el.name == 'input' and (el.get('type') or '').lower() in ('submit', 'button'):
        return True
    return el.name == 'a' and bool(_BUTTON_CLASS_RE.search(' '.join(el.get('class') or [])))


def role_of(el: Tag, builder: _TreeBuilder) -> Optional[str]:
    t = el.name
    if '-' in t:
        return 'html'   # custom element: no native mapping anywhere
    if re.match(r'^h[1-6]$', t):
        return 'heading'
    if t == 'hr':
        return 'divider'
    if t in ('ul', 'ol'):
        return 'list' if el.find('li') is not None else None
    if t == 'blockquote':
        return 'quote'
    if t == 'form':
        return 'form'
    if t in ('img', 'picture') or (t == 'figure' and el.find('img') is not None and el.find('video') is None):
        return 'image'
    if t == 'video':
        return 'video'
    if t == 'iframe':
        src = el.get('src') or ''
        if any(rx.search(src) for _, rx in _VIDEO_HOSTS):
            return 'video'
        if _CALENDAR_RE.search(src):
            return 'calendar'
        return 'embed'
    if _is_buttonish(el):
        return 'button'
    if t == 'p':
        return 'text'
    ident = ' '.join(el.get('class') or []) + ' ' + (el.get('id') or '') + ' ' + (el.get('data-url') or '')
    if t == 'div' and _CALENDAR_RE.search(ident):
        return 'calendar'
    if t in ('table', 'canvas', 'svg', 'select', 'textarea', 'input', 'object', 'embed', 'dl', 'pre', 'audio'):
        return 'html'
    if t in INLINE_TAGS:
        return 'text' if el.get_text(strip=True) else None
    kids = builder.block_children(el)
    if not kids:
        if el.get_text(strip=True):
            return 'text'
        return 'html' if el.find(True) is not None else None
    return None


def build_tree(html: str, styles: Optional[Dict[str, Dict[str, str]]] = None) -> StructuralTree:
    soup = BeautifulSoup(html or '', 'html.parser')
    return _TreeBuilder(styles).build(soup)


# ---------------- conversion plumbing ----------------
class IdAllocator:
    """Deterministic identifiers that never collide with reserved (target-account) ids."""
    def __init__(self, seed: str, reserved: Iterable[str] = (), length: int = 8, prefix: str = ''):
        self.seed = seed
        self.reserved = set(reserved)
        self.length = length
        self.prefix = prefix
        self.used: set = set()
        self._n = 0

    def next(self, hint: str = '') -> str:
        while True:
            self._n += 1
            digest = hashlib.sha1(f"{self.seed}:{hint}:{self._n}".encode('utf-8')).hexdigest()
            candidate = self.prefix + digest[:self.length]
            if candidate not in self.reserved and candidate not in self.used:
                self.used.add(candidate)
                return candidate


@dataclass
class ConversionReport:
    elements_converted: int = 0
    fallbacks_used: int = 0
    styles_inlined: int = 0
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {'elementsConverted': self.elements_converted, 'fallbacksUsed': self.fallbacks_used,
                'stylesInlined': self.styles_inlined, 'warnings': list(self.warnings)}


@dataclass
class ConversionContext:
    tree: StructuralTree
    spec: 'ConverterSpec'
    ids: IdAllocator
    report: ConversionReport = field(default_factory=ConversionReport)
    widgets: int = 0

    def styles(self, node: Node) -> Any:
        if node.style:
            self.report.styles_inlined += 1
        return self.spec.inline_styles(node.style_map)

    def raw(self, node: Node, reason: str) -> Any:
        self.report.fallbacks_used += 1
        self.report.warnings.append(f"{node.role or node.kind} <{node.tag}> embedded as raw HTML: {reason}")
        self.widgets += 1
        return self.spec.raw(regenerate_ids(node.html, self.ids), self)

    def leaf(self, node: Node) -> Any:
        fn = self.spec.leaves.get(node.role or '')
        if fn is None:
            return self.raw(node, 'no native mapping')
        try:
            out = fn(node, self)
        except Exception as e:
            logger.debug("leaf mapping failed", exc_info=True)
            return self.raw(node, f"mapping failed ({e})")
        self.report.elements_converted += 1
        self.widgets += 1
        return out


@dataclass(frozen=True)
class ConverterSpec:
    key: str
    content_format: str                         # html | shortcode | json
    extension: str
    leaves: Dict[str, Callable[[Node, ConversionContext], Any]]
    container: Callable[[str, Node, List[Any], ConversionContext], Any]
    inline_styles: Callable[[Dict[str, str]], Any]
    serialize: Callable[[List[Any], ConversionContext], str]
    validate: Callable[[str], None]
    raw: Callable[[str, ConversionContext], Any]
    id_length: int = 8
    id_prefix: str = ''


@dataclass
class SerializedExport:
    format: str
    content_format: str
    extension: str
    content: str
    report: ConversionReport
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self, include_content: bool = True) -> dict:
        d = {'format': self.format, 'contentFormat': self.content_format, 'extension': self.extension,
             'conversionReport': self.report.to_dict(), 'metadata': dict(self.metadata)}
        if include_content:
            d['content'] = self.content
        return d


def regenerate_ids(markup: str, ids: IdAllocator) -> str:
    """Replace every id (and references to it) inside raw embedded markup."""
    if 'id=' not in markup:
        return markup
    soup = BeautifulSoup(markup, 'html.parser')
    mapping = {}
    for el in soup.find_all(id=True):
        new = ids.next(el['id'])
        mapping[el['id']] = new
        el['id'] = new
    for el in soup.find_all(True):
        if el.get('for') in mapping:
            el['for'] = mapping[el['for']]
        for attr in ('aria-labelledby', 'aria-describedby'):
            if el.get(attr):
                el[attr] = ' '.join(mapping.get(p, p) for p in el[attr].split())
    return str(soup)


class ConverterRegistry:
    def __init__(self):
        self._specs: Dict[str, ConverterSpec] = {}

    def register(self, spec: ConverterSpec):
        self._specs[spec.key] = spec

    def formats(self) -> List[str]:
        return sorted(self._specs)

    def get(self, key: str) -> ConverterSpec:
        spec = self._specs.get((key or '').lower())
        if spec is None:
            raise ConversionError(f"unsupported target format: {key}", 'converting')
        return spec

    def convert(self, tree: StructuralTree, key: str, reserved_ids: Iterable[str] = (),
                callbacks: Optional[PipelineCallbacks] = None) -> SerializedExport:
        spec = self.get(key)
        t0 = time.perf_counter()
        ctx = ConversionContext(tree=tree, spec=spec,
                                ids=IdAllocator(spec.key, reserved_ids, spec.id_length, spec.id_prefix))
        sections = tree.children(0)
        if not sections:
            raise ConversionError('nothing to convert: the page has no content sections', 'converting')
        parts = []
        for section in sections:
            try:
                parts.append(self._section(section, ctx))
            except Exception as e:
                logger.debug("section mapping failed", exc_info=True)
                try:
                    parts.append(ctx.raw(section_as_leaf(tree, section), f"section mapping failed ({e})"))
                except Exception as inner:
                    ctx.report.warnings.append(f"section {section.index} dropped: {inner}")
        if not parts:
            raise ConversionError(f"{key}: no section could be converted", 'converting')
        try:
            content = spec.serialize(parts, ctx)
            spec.validate(content)
        except ConversionError:
            raise
        except Exception as e:
            raise ConversionError(f"{key}: serialization failed: {e}", 'converting')
        metadata = {
            'widgetCount': ctx.widgets,
            'sectionCount': len(sections),
            'conversionMethod': f"structural-tree/{spec.key}",
            'buildTime': int((time.perf_counter() - t0) * 1000),
        }
        total = ctx.report.elements_converted + ctx.report.fallbacks_used
        if spec.key == 'ghl':
            metadata['conversionScore'] = int(round(100 * ctx.report.elements_converted / total)) if total else 0
        _invoke(callbacks, 'log', f"[convert] {key}: {ctx.report.elements_converted} converted, "
                                  f"{ctx.report.fallbacks_used} fallbacks")
        return SerializedExport(format=spec.key, content_format=spec.content_format, extension=spec.extension,
                                content=content, report=ctx.report, metadata=metadata)

    def _section(self, section: Node, ctx: ConversionContext):
        tree = ctx.tree
        rows = []
        for row in tree.children(section.index):
            cols = []
            for col in tree.children(row.index):
                cols.append(ctx.spec.container('column', col, [ctx.leaf(l) for l in tree.children(col.index)], ctx))
            rows.append(ctx.spec.container('row', row, cols, ctx))
        return ctx.spec.container('section', section, rows, ctx)


def section_as_leaf(tree: StructuralTree, section: Node) -> Node:
    markup = ''.join(l.html for l in tree.leaves(section.index))
    return Node(index=section.index, kind='leaf', parent=0, role='html', tag=section.tag or 'section',
                html=f"<section>{markup}</section>")


# ---------------- shared mapping helpers ----------------
def _esc(s: Optional[str]) -> str:
    return htmlmod.escape(s or '', quote=True)


def _px(value: Optional[str]) -> Optional[float]:
    m = re.match(r'^\s*(-?[\d.]+)px', value or '')
    return float(m.group(1)) if m else None


def _box(value: Optional[str]) -> Optional[List[str]]:
    parts = (value or '').split()
    if not parts:
        return None
    if len(parts) == 1:
        parts = parts * 4
    elif len(parts) == 2:
        parts = [parts[0], parts[1], parts[0], parts[1]]
    elif len(parts) == 3:
        parts = [parts[0], parts[1], parts[2], parts[1]]
    return parts[:4]


def _video_embed_url(src: str, provider: Optional[str]) -> str:
    if provider == 'youtube':
        m = re.search(r'(?:embed/|v=|youtu\.be/)([\w-]{6,})', src)
        if m:
            return f"https://www.youtube.com/watch?v={m.group(1)}"
    if provider == 'vimeo':
        m = re.search(r'vimeo\.com/(?:video/)?(\d+)', src)
        if m:
            return f"https://vimeo.com/{m.group(1)}"
    return src


# ---------------- gutenberg ----------------
def _gb_block(name: str, inner: str, attrs: Optional[dict] = None) -> str:
    a = f" {json.dumps(attrs, separators=(',', ':'))}" if attrs else ''
    return f"<!-- wp:{name}{a} -->\n{inner}\n<!-- /wp:{name} -->"


def _gb_style(style: Dict[str, str]) -> str:
    s = style_string((k, v) for k, v in style.items() if k != 'font-family')
    return f' style="{_esc(s)}"' if s else ''


def _gb_heading(n: Node, ctx):
    level = int(n.attr('level', '2'))
    return _gb_block('heading', f'<h{level} class="wp-block-heading"{ctx.styles(n)}>{n.inner}</h{level}>',
                     {'level': level})


def _gb_text(n: Node, ctx):
    inner = n.inner if n.tag == 'p' else _esc(n.text)
    return _gb_block('paragraph', f'<p{ctx.styles(n)}>{inner}</p>')


def _gb_image(n: Node, ctx):
    if not n.attr('src'):
        raise ValueError('image without src')
    return _gb_block('image', f'<figure class="wp-block-image"><img src="{_esc(n.attr("src"))}" '
                              f'alt="{_esc(n.attr("alt"))}"/></figure>')


def _gb_button(n: Node, ctx):
    href = f' href="{_esc(n.attr("href"))}"' if n.attr('href') else ''
    button = _gb_block('button', f'<div class="wp-block-button"><a class="wp-block-button__link wp-element-button"'
                                 f'{href}{ctx.styles(n)}>{_esc(n.text)}</a></div>')
    return _gb_block('buttons', f'<div class="wp-block-buttons">{button}</div>')


def _gb_list(n: Node, ctx):
    tag = 'ol' if n.attr('ordered') else 'ul'
    items = '\n'.join(_gb_block('list-item', f'<li>{_esc(i[0])}</li>') for i in n.items)
    return _gb_block('list', f'<{tag}>{items}</{tag}>', {'ordered': True} if tag == 'ol' else None)


def _gb_quote(n: Node, ctx):
    return _gb_block('quote', f'<blockquote class="wp-block-quote"><p>{_esc(n.text)}</p></blockquote>')


def _gb_video(n: Node, ctx):
    src = n.attr('src') or ''
    provider = n.attr('provider')
    if provider:
        url = _video_embed_url(src, provider)
        return _gb_block('embed', f'<figure class="wp-block-embed is-type-video is-provider-{provider} '
                                  f'wp-block-embed-{provider}"><div class="wp-block-embed__wrapper">\n{url}\n'
                                  f'</div></figure>',
                         {'url': url, 'type': 'video', 'providerNameSlug': provider})
    if not src:
        raise ValueError('video without src')
    return _gb_block('video', f'<figure class="wp-block-video"><video controls src="{_esc(src)}"></video></figure>')


def _gb_divider(n: Node, ctx):
    return _gb_block('separator', '<hr class="wp-block-separator has-alpha-channel-opacity"/>')


def _gb_container(kind: str, n: Node, parts: List[str], ctx) -> str:
    body = '\n'.join(parts)
    if kind == 'column':
        return _gb_block('column', f'<div class="wp-block-column">{body}</div>')
    if kind == 'row':
        if len(parts) == 1:
            return re.sub(r'^<!-- wp:column -->\n<div class="wp-block-column">|</div>\n<!-- /wp:column -->$', '', parts[0])
        return _gb_block('columns', f'<div class="wp-block-columns">{body}</div>')
    return _gb_block('group', f'<div class="wp-block-group"{ctx.styles(n)}>{body}</div>', {'layout': {'type': 'constrained'}})


_GB_OPEN = re.compile(r'<!-- (/?)wp:([a-z][a-z0-9/-]*)(?: (\{.*?\}))? (/?)-->')


def _gb_validate(content: str):
    stack = []
    for m in _GB_OPEN.finditer(content):
        closing, name, attrs, selfclose = m.groups()
        if attrs:
            try:
                json.loads(attrs)
            except ValueError:
                raise ConversionError(f"gutenberg: invalid attributes on {name}", 'converting')
        if selfclose:
            continue
        if closing:
            if not stack or stack.pop() != name:
                raise ConversionError(f"gutenberg: unbalanced block comment {name}", 'converting')
        else:
            stack.append(name)
    if stack:
        raise ConversionError(f"gutenberg: unclosed blocks {stack}", 'converting')


GUTENBERG = ConverterSpec(
    key='gutenberg', content_format='html', extension='html',
    leaves={'heading': _gb_heading, 'text': _gb_text, 'image': _gb_image, 'button': _gb_button,
            'list': _gb_list, 'quote': _gb_quote, 'video': _gb_video, 'divider': _gb_divider},
    container=_gb_container, inline_styles=_gb_style,
    serialize=lambda parts, ctx: '\n\n'.join(parts), validate=_gb_validate,
    raw=lambda markup, ctx: _gb_block('html', markup),
)


# ---------------- divi ----------------
DIVI_VERSION = '4.0.0'
_DIVI_COLUMN_TYPES = {1: '4_4', 2: '1_2', 3: '1_3', 4: '1_4', 5: '1_5', 6: '1_6'}


def _sc_attr(v: str) -> str:
    return _esc(v).replace('[', '&#91;').replace(']', '&#93;')


def _sc(name: str, attrs: Dict[str, str], content: str = '') -> str:
    a = ''.join(f' {k}="{_sc_attr(v)}"' for k, v in attrs.items() if v not in (None, ''))
    return f'[{name}{a}]{content}[/{name}]'


def _divi_style(style: Dict[str, str]) -> Dict[str, str]:
    out = {}
    if style.get('background-color'):
        out['background_color'] = style['background-color']
    if style.get('color'):
        out['text_text_color'] = style['color']
    if style.get('font-size'):
        out['text_font_size'] = style['font-size']
    if style.get('text-align'):
        out['text_orientation'] = style['text-align']
    for css, key in (('padding', 'custom_padding'), ('margin', 'custom_margin')):
        box = _box(style.get(css))
        if box:
            out[key] = '|'.join(box) + '|false|false'
    if style.get('border-radius'):
        out['border_radii'] = 'on|' + '|'.join(_box(style['border-radius']) or [])
    return out


def _divi_module(name: str, n: Node, ctx, attrs: Optional[Dict[str, str]] = None, content: str = '') -> str:
    return _sc(name, {'_builder_version': DIVI_VERSION, **(attrs or {}), **ctx.styles(n)}, content)


def _divi_text(n: Node, ctx):
    return _divi_module('et_pb_text', n, ctx, content=n.html)


def _divi_image(n: Node, ctx):
    if not n.attr('src'):
        raise ValueError('image without src')
    return _divi_module('et_pb_image', n, ctx, {'src': n.attr('src'), 'alt': n.attr('alt')})


def _divi_button(n: Node, ctx):
    return _divi_module('et_pb_button', n, ctx, {'button_text': n.text, 'button_url': n.attr('href')})


def _divi_video(n: Node, ctx):
    src = _video_embed_url(n.attr('src') or '', n.attr('provider'))
    if not src:
        raise ValueError('video without src')
    return _divi_module('et_pb_video', n, ctx, {'src': src})


def _divi_divider(n: Node, ctx):
    return _divi_module('et_pb_divider', n, ctx, {'show_divider': 'on'})


def _divi_form(n: Node, ctx):
    fields = []
    for ftype, name, _fid, label, placeholder in n.items:
        field_type = {'email': 'email', 'textarea': 'text', 'select': 'select', 'checkbox': 'checkbox',
                      'radio': 'radio'}.get(ftype, 'input')
        fields.append(_sc('et_pb_contact_field', {
            'field_id': ctx.ids.next(name or label), 'field_title': label or placeholder or name or ftype,
            'field_type': field_type, '_builder_version': DIVI_VERSION}))
    if not fields:
        raise ValueError('form without fields')
    return _divi_module('et_pb_contact_form', n, ctx, {'email': ''}, ''.join(fields))


def _divi_container(kind: str, n: Node, parts: List[str], ctx) -> str:
    if kind == 'column':
        return ''.join(parts)
    if kind == 'row':
        count = len(parts)
        col_type = _DIVI_COLUMN_TYPES.get(count)
        if col_type is None:
            raise ValueError(f'{count} columns exceed divi row capacity')
        cols = ''.join(_sc('et_pb_column', {'type': col_type, '_builder_version': DIVI_VERSION}, p) for p in parts)
        return _sc('et_pb_row', {'_builder_version': DIVI_VERSION, **ctx.styles(n)}, cols)
    return _sc('et_pb_section', {'fb_built': '1', '_builder_version': DIVI_VERSION, **ctx.styles(n)}, ''.join(parts))


_SC_TAG = re.compile(r'\[(/?)(et_pb_[a-z_]+)[^\]]*\]')


def _divi_validate(content: str):
    stack = []
    for m in _SC_TAG.finditer(content):
        closing, name = m.groups()
        if closing:
            if not stack or stack.pop() != name:
                raise ConversionError(f"divi: unbalanced shortcode {name}", 'converting')
        else:
            stack.append(name)
    if stack:
        raise ConversionError(f"divi: unclosed shortcodes {stack}", 'converting')


def _divi_raw(markup: str, ctx) -> str:
    return _sc('et_pb_code', {'_builder_version': DIVI_VERSION}, markup.replace('[', '&#91;').replace(']', '&#93;'))


DIVI = ConverterSpec(
    key='divi', content_format='shortcode', extension='txt',
    leaves={'heading': _divi_text, 'text': _divi_text, 'list': _divi_text, 'quote': _divi_text,
            'image': _divi_image, 'button': _divi_button, 'video': _divi_video, 'divider': _divi_divider,
            'form': _divi_form},
    container=_divi_container, inline_styles=_divi_style,
    serialize=lambda parts, ctx: '\n'.join(parts), validate=_divi_validate, raw=_divi_raw,
)


# ---------------- elementor ----------------
def _el_dimensions(value: Optional[str]) -> Optional[Dict[str, Any]]:
    box = _box(value)
    if not box:
        return None
    nums = [_px(b) for b in box]
    if any(v is None for v in nums):
        return None
    top, right, bottom, left = (str(int(v)) for v in nums)
    return {'unit': 'px', 'top': top, 'right': right, 'bottom': bottom, 'left': left, 'isLinked': False}


def _el_style(style: Dict[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if style.get('background-color'):
        out['background_background'] = 'classic'
        out['background_color'] = style['background-color']
    if style.get('color'):
        out['text_color'] = style['color']
    size = _px(style.get('font-size'))
    if size is not None or style.get('font-weight') or style.get('font-family'):
        out['typography_typography'] = 'custom'
        if size is not None:
            out['typography_font_size'] = {'unit': 'px', 'size': size}
        if style.get('font-weight'):
            out['typography_font_weight'] = style['font-weight']
        if style.get('font-family'):
            out['typography_font_family'] = style['font-family'].split(',')[0].strip().strip('"\'')
    if style.get('text-align'):
        out['align'] = style['text-align']
    for css, key in (('padding', '_padding'), ('margin', '_margin')):
        dims = _el_dimensions(style.get(css))
        if dims:
            out[key] = dims
    return out


def _el_widget(widget_type: str, settings: Dict[str, Any], n: Node, ctx) -> Dict[str, Any]:
    return {'id': ctx.ids.next(widget_type), 'elType': 'widget', 'widgetType': widget_type,
            'settings': {**settings, **ctx.styles(n)}, 'elements': []}


def _el_heading(n: Node, ctx):
    return _el_widget('heading', {'title': n.text, 'header_size': f"h{n.attr('level', '2')}"}, n, ctx)


def _el_text(n: Node, ctx):
    return _el_widget('text-editor', {'editor': n.html}, n, ctx)


def _el_image(n: Node, ctx):
    if not n.attr('src'):
        raise ValueError('image without src')
    return _el_widget('image', {'image': {'url': n.attr('src'), 'id': '', 'alt': n.attr('alt') or ''}}, n, ctx)


def _el_button(n: Node, ctx):
    return _el_widget('button', {'text': n.text, 'link': {'url': n.attr('href') or '', 'is_external': ''}}, n, ctx)


def _el_video(n: Node, ctx):
    src = n.attr('src') or ''
    provider = n.attr('provider')
    if provider:
        return _el_widget('video', {'video_type': provider, f'{provider}_url': _video_embed_url(src, provider)}, n, ctx)
    if not src:
        raise ValueError('video without src')
    return _el_widget('video', {'video_type': 'hosted', 'hosted_url': {'url': src, 'id': ''}}, n, ctx)


def _el_divider(n: Node, ctx):
    return _el_widget('divider', {}, n, ctx)


def _el_list(n: Node, ctx):
    return _el_widget('icon-list', {'icon_list': [{'_id': ctx.ids.next('item'), 'text': i[0]} for i in n.items]}, n, ctx)


def _el_form(n: Node, ctx):
    fields = [{'_id': ctx.ids.next(name or label), 'custom_id': ctx.ids.next(name or label),
               'field_type': ftype if ftype in ('text', 'email', 'textarea', 'tel', 'select', 'number', 'url')
               else 'text', 'field_label': label, 'placeholder': placeholder}
              for ftype, name, _fid, label, placeholder in n.items]
    if not fields:
        raise ValueError('form without fields')
    return _el_widget('form', {'form_name': 'Form', 'form_fields': fields}, n, ctx)


def _el_container(kind: str, n: Node, parts: List[Any], ctx) -> Any:
    if kind == 'column':
        return {'id': ctx.ids.next('column'), 'elType': 'column', 'settings': {'_column_size': 100, **ctx.styles(n)},
                'elements': parts}
    if kind == 'row':
        size = int(round(100 / max(1, len(parts))))
        for col in parts:
            col['settings']['_column_size'] = size
        return {'id': ctx.ids.next('section'), 'elType': 'section', 'settings': dict(ctx.styles(n)),
                'elements': parts}
    # elementor sections hold columns directly: each structural row becomes one section
    settings = ctx.styles(n)
    for row in parts:
        row['settings'] = {**settings, **row['settings']}
    return parts


def _el_raw(markup: str, ctx) -> Dict[str, Any]:
    return {'id': ctx.ids.next('html'), 'elType': 'widget', 'widgetType': 'html', 'settings': {'html': markup},
            'elements': []}


def _el_serialize(parts: List[Any], ctx) -> str:
    content = []
    for p in parts:
        if isinstance(p, list):
            content.extend(p)
        elif p.get('elType') == 'widget':
            col = {'id': ctx.ids.next('column'), 'elType': 'column', 'settings': {'_column_size': 100},
                   'elements': [p]}
            content.append({'id': ctx.ids.next('section'), 'elType': 'section', 'settings': {}, 'elements': [col]})
        else:
            content.append(p)
    return json.dumps({'version': '0.4', 'title': ctx.tree.title or 'Imported page', 'type': 'page',
                       'content': content}, indent=2)


def _el_validate(content: str):
    try:
        doc = json.loads(content)
    except ValueError as e:
        raise ConversionError(f"elementor: invalid json: {e}", 'converting')
    seen = set()

    def walk(el, depth):
        if not isinstance(el, dict) or 'id' not in el or 'elType' not in el:
            raise ConversionError('elementor: element without id/elType', 'converting')
        if el['id'] in seen:
            raise ConversionError(f"elementor: duplicate id {el['id']}", 'converting')
        seen.add(el['id'])
        expected = ('section', 'column', 'widget')[min(depth, 2)]
        if el['elType'] != expected:
            raise ConversionError(f"elementor: {el['elType']} where {expected} expected", 'converting')
        for child in el.get('elements', []):
            walk(child, depth + 1)

    for section in doc.get('content', []):
        walk(section, 0)


ELEMENTOR = ConverterSpec(
    key='elementor', content_format='json', extension='json',
    leaves={'heading': _el_heading, 'text': _el_text, 'quote': _el_text, 'image': _el_image, 'button': _el_button,
            'video': _el_video, 'divider': _el_divider, 'list': _el_list, 'form': _el_form},
    container=_el_container, inline_styles=_el_style, serialize=_el_serialize, validate=_el_validate,
    raw=_el_raw, id_length=7,
)


# ---------------- ghl (crm funnel page) ----------------
def _ghl_style(style: Dict[str, str]) -> str:
    s = style_string(style.items())
    return f' style="{_esc(s)}"' if s else ''


def _ghl_widget(widget: str, inner: str, n: Node, ctx) -> str:
    return (f'<div class="ghl-widget ghl-{widget}" data-ghl-type="widget" data-ghl-widget="{widget}" '
            f'id="{ctx.ids.next(widget)}"{ctx.styles(n)}>{inner}</div>')


def _ghl_heading(n: Node, ctx):
    level = n.attr('level', '2')
    return _ghl_widget('headline', f'<h{level}>{n.inner}</h{level}>', n, ctx)


def _ghl_text(n: Node, ctx):
    return _ghl_widget('paragraph', n.html if n.tag != 'div' else f'<p>{n.inner}</p>', n, ctx)


def _ghl_image(n: Node, ctx):
    if not n.attr('src'):
        raise ValueError('image without src')
    return _ghl_widget('image', f'<img src="{_esc(n.attr("src"))}" alt="{_esc(n.attr("alt"))}" '
                                f'style="max-width:100%;height:auto">', n, ctx)


def _ghl_button(n: Node, ctx):
    return _ghl_widget('button', f'<a href="{_esc(n.attr("href") or "#")}" class="ghl-btn">{_esc(n.text)}</a>', n, ctx)


def _ghl_video(n: Node, ctx):
    src = n.attr('src') or ''
    if not src:
        raise ValueError('video without src')
    return _ghl_widget('video', f'<div data-video-url="{_esc(_video_embed_url(src, n.attr("provider")))}"></div>', n, ctx)


def _ghl_list(n: Node, ctx):
    tag = 'ol' if n.attr('ordered') else 'ul'
    return _ghl_widget('bullet-list', f'<{tag}>' + ''.join(f'<li>{_esc(i[0])}</li>' for i in n.items) + f'</{tag}>', n, ctx)


def _ghl_divider(n: Node, ctx):
    return _ghl_widget('divider', '<hr>', n, ctx)


def _ghl_form(n: Node, ctx):
    rows = []
    for ftype, name, _fid, label, placeholder in n.items:
        fid = ctx.ids.next(name or label)
        control = (f'<textarea id="{fid}" name="{_esc(name)}"></textarea>' if ftype == 'textarea'
                   else f'<input id="{fid}" type="{_esc(ftype)}" name="{_esc(name)}" placeholder="{_esc(placeholder)}">')
        rows.append(f'<label for="{fid}">{_esc(label or name)}</label>{control}')
    if not rows:
        raise ValueError('form without fields')
    return _ghl_widget('form', '<form>' + ''.join(rows) + '<button type="submit">Submit</button></form>', n, ctx)


def _ghl_calendar(n: Node, ctx):
    src = n.attr('src') or ''
    if not src:
        raise ValueError('calendar without booking url')
    return _ghl_widget('calendar', f'<div data-calendar-src="{_esc(src)}"></div>', n, ctx)


def _ghl_container(kind: str, n: Node, parts: List[str], ctx) -> str:
    body = ''.join(parts)
    if kind == 'column':
        return f'<div class="ghl-column" data-ghl-type="column" style="flex:1 1 0;min-width:0">{body}</div>'
    if kind == 'row':
        return f'<div class="ghl-row" data-ghl-type="row" style="display:flex;flex-wrap:wrap;gap:16px">{body}</div>'
    return f'<section class="ghl-section" data-ghl-type="section"{ctx.styles(n)}>{body}</section>'


def _ghl_validate(content: str):
    soup = BeautifulSoup(content, 'html.parser')
    if not soup.select('section.ghl-section'):
        raise ConversionError('ghl: output has no sections', 'converting')
    ids = [el['id'] for el in soup.find_all(id=True)]
    if len(ids) != len(set(ids)):
        raise ConversionError('ghl: duplicate element ids', 'converting')


GHL = ConverterSpec(
    key='ghl', content_format='html', extension='html',
    leaves={'heading': _ghl_heading, 'text': _ghl_text, 'quote': _ghl_text, 'image': _ghl_image,
            'button': _ghl_button, 'video': _ghl_video, 'list': _ghl_list, 'divider': _ghl_divider,
            'form': _ghl_form, 'calendar': _ghl_calendar},
    container=_ghl_container, inline_styles=_ghl_style,
    serialize=lambda parts, ctx: '<div class="ghl-page" data-converter="cw2pb">' + ''.join(parts) + '</div>',
    validate=_ghl_validate,
    raw=lambda markup, ctx: f'<div class="ghl-widget ghl-custom-html" data-ghl-type="widget" '
                            f'data-ghl-widget="custom-html">{markup}</div>',
    id_prefix='ghl-',
)

BUILTIN_CONVERTERS = (GUTENBERG, DIVI, ELEMENTOR, GHL)


def default_registry() -> ConverterRegistry:
    reg = ConverterRegistry()
    for spec in BUILTIN_CONVERTERS:
        reg.register(spec)
    return reg
