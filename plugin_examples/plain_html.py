"""Example plugin: register an extra export format

Demonstrates the `register_converters` hook by adding a "plain" converter that
renders the structural tree as unstyled semantic HTML. Add "plain" to
targetFormats (or pass --format plain) to produce it.
"""
import html

from cw2pb_convert import ConverterSpec


def _text(tag):
    return lambda n, ctx: f"<{tag}>{n.inner}</{tag}>"


def _heading(n, ctx):
    level = n.attr('level', '2')
    return f"<h{level}>{n.inner}</h{level}>"


def _image(n, ctx):
    if not n.attr('src'):
        raise ValueError('image without src')
    return f'<img src="{html.escape(n.attr("src"))}" alt="{html.escape(n.attr("alt") or "")}">'


def _container(kind, n, parts, ctx):
    tag = 'section' if kind == 'section' else 'div'
    return f'<{tag} class="{kind}">' + ''.join(parts) + f'</{tag}>'


def _validate(content):
    if '<section' not in content:
        raise ValueError('plain: output has no sections')


PLAIN = ConverterSpec(
    key='plain', content_format='html', extension='html',
    leaves={'heading': _heading, 'text': _text('p'), 'quote': _text('blockquote'), 'image': _image},
    container=_container,
    inline_styles=lambda style: '',
    serialize=lambda parts, ctx: '<main>' + ''.join(parts) + '</main>',
    validate=_validate,
    raw=lambda markup, ctx: f'<div class="raw">{markup}</div>',
)


def register_converters(registry):
    registry.register(PLAIN)
