import os, sys, io, tempfile, shutil, unittest

BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from bs4 import BeautifulSoup
from PIL import Image

from cw2pb_core import AssetRecord, CloneOptions, PipelineCallbacks  # type: ignore
from cw2pb_assets import FileBlobStore  # type: ignore
from cw2pb_optimize import (  # type: ignore
    OptimizationEngine, critical_rules, css_content_codepoints, minify_css, minify_js, selector_matches,
)

CSS = """body {
  margin: 0;
}
.hero { color: red; }
.below { color: blue; }
"""
JS = "  console.log(1);\n\n  console.log(2);\n"

PAGE = """<html><head>
<link rel="stylesheet" href="assets/css/site.css">
<script src="assets/js/app.js"></script>
</head><body>
<div class="hero"><h1>Hi</h1></div>
<img src="assets/image/a.png" width="400" alt="a">
<img src="assets/image/b.png" alt="b">
<img src="assets/image/c.png" alt="c">
<p class="below">text</p>
</body></html>"""


def _png(size=(800, 200), color=(200, 30, 30)):
    buf = io.BytesIO()
    Image.new('RGB', size, color).save(buf, 'PNG')
    return buf.getvalue()


ICONS = range(0xF000, 0xF040)


def _icon_font():
    """TTF with 'A' plus 64 Private Use Area glyphs, laid out like an icon font."""
    from fontTools.fontBuilder import FontBuilder
    from fontTools.pens.ttGlyphPen import TTGlyphPen

    def square():
        pen = TTGlyphPen(None)
        pen.moveTo((0, 0))
        pen.lineTo((0, 500))
        pen.lineTo((500, 500))
        pen.lineTo((500, 0))
        pen.closePath()
        return pen.glyph()

    cmap = {0x41: 'A'}
    cmap.update({cp: 'uni%04X' % cp for cp in ICONS})
    names = ['.notdef'] + list(cmap.values())
    fb = FontBuilder(1000, isTTF=True)
    fb.setupGlyphOrder(names)
    fb.setupCharacterMap(cmap)
    fb.setupGlyf({n: square() for n in names})
    fb.setupHorizontalMetrics({n: (500, 0) for n in names})
    fb.setupHorizontalHeader(ascent=800, descent=-200)
    fb.setupNameTable({'familyName': 'Icons', 'styleName': 'Regular'})
    fb.setupOS2()
    fb.setupPost()
    buf = io.BytesIO()
    fb.save(buf)
    return buf.getvalue()


def _cmap(data):
    from fontTools.ttLib import TTFont
    return TTFont(io.BytesIO(data)).getBestCmap()


class _Warnings(PipelineCallbacks):
    def __init__(self):
        self.seen = []

    def warning(self, message):
        self.seen.append(message)


def test_minify_css():
    assert minify_css("a {\n  color: red;\n}\n/* c */\nb { x: y }") == "a{color: red}b{x: y}"
    assert minify_css('a::after { content: "  two  spaces " }') == 'a::after{content: "  two  spaces "}'


def test_minify_js_keeps_statements_on_their_own_lines():
    assert minify_js(JS) == 'console.log(1);\nconsole.log(2);'


def test_minify_js_leaves_template_literals_alone():
    js = "const card = `\n  <div>\n    <b>hi</b>\n  </div>`;\n\n  render(card);\n"
    assert minify_js(js) == js


def test_css_content_codepoints():
    css = ('.fa-user:before{content:"\\f007"}.q::after { content: \'\\201C x\'; }'
           '.n{content:none}.t{content:"a;b"}')
    assert css_content_codepoints(css) == {0xF007, 0x201C, ord('x'), ord('a'), ord(';'), ord('b')}
    assert css_content_codepoints('.x{background-content:"z"}') == set()


def test_critical_rules_filters_by_fold_tokens():
    css = ('body{margin:0}.hero{color:red}.footer{color:blue}@font-face{font-family:X}'
           '@media (max-width:600px){.hero{x:1}.other{y:2}}@import url(a.css);')
    out = critical_rules(css, {'html', 'body', '.hero'})
    assert out == 'body{margin:0}.hero{color:red}@font-face{font-family:X}@media (max-width:600px){.hero{x:1}}'


def test_selector_matches():
    tokens = {'html', 'body', 'div', '.hero', 'a'}
    assert selector_matches('div.hero', tokens)
    assert selector_matches('.hero a:hover', tokens)
    assert selector_matches('*', tokens)
    assert not selector_matches('.hero .cta', tokens)


class TestOptimizationEngine(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.mkdtemp(prefix='cw2pb_opt_')
        self.blob = FileBlobStore(self.tempdir)
        self.assets = []
        for path, data, mime, kind in (
                ('assets/css/site.css', CSS.encode(), 'text/css', 'css'),
                ('assets/js/app.js', JS.encode(), 'application/javascript', 'js'),
                ('assets/image/a.png', _png(), 'image/png', 'image'),
                ('assets/image/b.png', _png(color=(10, 200, 10)), 'image/png', 'image'),
                ('assets/image/c.png', _png(color=(10, 10, 200)), 'image/png', 'image')):
            self.blob.put(path, data)
            self.assets.append(AssetRecord(path, 'https://example.test/' + path.rsplit('/', 1)[-1], len(data),
                                           mime, kind))

    def tearDown(self):
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def test_full_run(self):
        res = OptimizationEngine(CloneOptions(), self.blob).run(PAGE, self.assets)
        self.assertEqual(res.assets[-1].local_path, 'optimized/index.html')
        self.assertTrue(self.blob.exists('optimized/index.html'))
        soup = BeautifulSoup(res.html, 'html.parser')

        critical = soup.find('style', attrs={'data-critical': True})
        self.assertIsNotNone(critical)
        self.assertIn('.hero', critical.string)
        link = soup.find('link', href='assets/css/site.css')
        self.assertEqual(link['rel'], ['preload'])
        self.assertEqual(link['as'], 'style')
        self.assertIsNotNone(soup.find('noscript').find('link', href='assets/css/site.css'))

        self.assertTrue(soup.find('script', src='assets/js/app.js').has_attr('defer'))

        imgs = {img['src']: img for img in soup.find_all('img')}
        self.assertIsNone(imgs['assets/image/a.png'].get('loading'))
        self.assertIsNone(imgs['assets/image/b.png'].get('loading'))
        self.assertEqual(imgs['assets/image/c.png']['loading'], 'lazy')

        a = imgs['assets/image/a.png']
        self.assertIn('assets/image/a-320w.png 320w', a['srcset'])
        self.assertIn('assets/image/a.png 800w', a['srcset'])
        self.assertEqual(a['sizes'], '400px')
        self.assertTrue(self.blob.exists('optimized/assets/image/a-320w.png'))
        self.assertNotIn('srcset', imgs['assets/image/b.png'].attrs)

        transforms = res.report['transforms']
        self.assertEqual(transforms['critical_css']['applied'], 1)
        self.assertEqual(transforms['lazy_load']['applied'], 1)
        self.assertEqual(transforms['srcset']['applied'], 1)
        self.assertEqual(res.report['savedBytes'], res.report['originalBytes'] - res.report['optimizedBytes'])
        self.assertEqual(res.warnings, [])

        # minified copies are written under optimized/, originals untouched
        self.assertEqual(self.blob.get('assets/js/app.js'), JS.encode())
        self.assertEqual(self.blob.get('optimized/assets/js/app.js'), b'console.log(1);\nconsole.log(2);')

    def test_toggles_disable_transforms(self):
        opts = CloneOptions(lazy_load=False, generate_srcset=False, defer_resources=False)
        res = OptimizationEngine(opts, self.blob).run(PAGE, self.assets)
        transforms = res.report['transforms']
        self.assertFalse(transforms['lazy_load']['enabled'])
        self.assertEqual(transforms['lazy_load']['applied'], 0)
        soup = BeautifulSoup(res.html, 'html.parser')
        self.assertFalse(any(img.get('loading') for img in soup.find_all('img')))
        self.assertFalse(soup.find('script', src='assets/js/app.js').has_attr('defer'))
        self.assertFalse(self.blob.exists('optimized/assets/image/a-320w.png'))

    def test_inline_script_blocks_defer(self):
        html = PAGE.replace('</body>', '<script>window.app.start()</script></body>')
        res = OptimizationEngine(CloneOptions(), self.blob).run(html, self.assets)
        soup = BeautifulSoup(res.html, 'html.parser')
        self.assertFalse(soup.find('script', src='assets/js/app.js').has_attr('defer'))
        self.assertGreaterEqual(res.report['transforms']['defer']['skipped'], 1)

    def test_corrupt_image_fails_soft(self):
        self.blob.put('assets/image/bad.png', b'\x89PNG\r\n\x1a\nthis is not a png')
        assets = [AssetRecord('assets/image/bad.png', 'https://example.test/bad.png', 25, 'image/png', 'image')]
        cb = _Warnings()
        res = OptimizationEngine(CloneOptions(), self.blob, cb).run(
            '<html><head></head><body><img src="assets/image/bad.png"></body></html>', assets)
        self.assertIsNotNone(res.html)
        self.assertEqual(res.report['transforms']['images']['failed'], 1)
        self.assertTrue(any('assets/image/bad.png' in w for w in res.warnings))
        self.assertEqual(cb.seen, res.warnings)
        self.assertEqual(self.blob.get('optimized/assets/image/bad.png'), b'\x89PNG\r\n\x1a\nthis is not a png')

    def _icon_run(self, html):
        data = _icon_font()
        self.blob.put('assets/font/icons.ttf', data)
        assets = [AssetRecord('assets/font/icons.ttf', 'https://example.test/icons.ttf', len(data), 'font/ttf', 'font')]
        res = OptimizationEngine(CloneOptions(), self.blob).run(html, assets)
        return data, res, self.blob.get('optimized/assets/font/icons.ttf')

    def test_icon_font_keeps_glyphs_drawn_by_css_content(self):
        html = ('<html><head><style>.fa-user:before{content:"\\f007"}</style></head>'
                '<body><i class="fa-user"></i> Hi</body></html>')
        data, res, out = self._icon_run(html)
        self.assertEqual(res.report['transforms']['fonts']['applied'], 1)
        self.assertLess(len(out), len(data))
        cmap = _cmap(out)
        self.assertIn(0xF007, cmap)
        self.assertIn(0x41, cmap)
        self.assertNotIn(0xF001, cmap)

    def test_icon_font_without_content_reference_is_left_whole(self):
        data, res, out = self._icon_run('<html><head></head><body><i class="fa-user"></i> Hi</body></html>')
        self.assertEqual(res.report['transforms']['fonts']['skipped'], 1)
        self.assertEqual(res.report['transforms']['fonts']['applied'], 0)
        self.assertEqual(out, data)
        self.assertEqual(set(_cmap(out)), {0x41} | set(ICONS))


if __name__ == '__main__':
    unittest.main()
