import os, sys, base64
BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from urllib.parse import unquote
from crashnet_core import TransformContext  # type: ignore
from dom_tree import parse_html  # type: ignore
from page_host import ComputedStyle  # type: ignore
from media_substitute import substitute_media, serialize_svg  # type: ignore

PROXY = 'http://proxy.local'
CTX = TransformContext('http://example.com/media/', 'http://example.com', PROXY)


def _run(markup, styles=None):
    doc = parse_html(markup)
    substitute_media(doc, CTX, styles or {})
    return doc


def test_video_becomes_placeholder_table():
    doc = _run('<video src="m.mp4" width="1280" height="720" controls></video>')
    assert doc.find_all('video') == []
    table = doc.find_first('table')
    assert doc.get_attr(table, 'width') == '640'
    assert doc.get_attr(table, 'height') == '360'
    assert doc.get_attr(table, 'bgcolor') == 'black'
    font = doc.find_first('font', table)
    assert doc.get_attr(font, 'color') == 'white'
    assert doc.text_content(font) == 'Video is not supported'


def test_video_default_size():
    doc = _run('<video></video>')
    table = doc.find_first('table')
    assert (doc.get_attr(table, 'width'), doc.get_attr(table, 'height')) == ('320', '240')


def test_audio_becomes_download_link():
    doc = _run('<audio controls><source src="song.mp3" type="audio/mpeg"></audio>')
    a = doc.find_first('a')
    assert doc.get_attr(a, 'href') == 'http://example.com/media/song.mp3'
    assert doc.text_content(a) == 'Download Audio'
    assert doc.find_all('audio') == []


def test_audio_without_source_is_removed():
    doc = _run('<p>before<audio></audio></p>')
    assert doc.find_all('audio') == []
    assert doc.find_all('a') == []
    assert doc.text_content(doc.body) == 'before'


def test_audio_with_unusable_source_becomes_text():
    doc = _run('<audio src="ftp://files.example/a.mp3"></audio>')
    assert doc.text_content(doc.body) == 'Audio not available'


def test_svg_becomes_proxied_image():
    doc = _run('<p><svg viewBox="0 0 10 10" width="20" height="10"><lineargradient id="g"></lineargradient>'
               '<rect width="10" height="10"></rect></svg></p>')
    img = doc.find_first('img')
    assert doc.get_attr(img, 'alt') == 'SVG Image'
    assert (doc.get_attr(img, 'width'), doc.get_attr(img, 'height')) == ('20', '10')
    src = doc.get_attr(img, 'src')
    assert src.startswith(PROXY + '/image_proxy?url=')
    data_uri = unquote(src.split('url=', 1)[1])
    assert data_uri.startswith('data:image/svg+xml;base64,')
    markup = base64.b64decode(data_uri.split(',', 1)[1]).decode('utf-8')
    assert 'xmlns="http://www.w3.org/2000/svg"' in markup
    assert 'viewBox="0 0 10 10"' in markup
    assert '<linearGradient' in markup


def test_svg_size_prefers_computed_style():
    doc = parse_html('<svg width="20" height="20"></svg>')
    svg = doc.find_first('svg')
    substitute_media(doc, CTX, {svg: ComputedStyle(width='1000px', height='500px')})
    img = doc.find_first('img')
    assert (doc.get_attr(img, 'width'), doc.get_attr(img, 'height')) == ('640', '320')


def test_serialize_svg_restores_tree():
    doc = parse_html('<svg viewBox="0 0 1 1"><clippath></clippath></svg>')
    svg = doc.find_first('svg')
    serialize_svg(doc, svg)
    assert doc.attrs(svg) == {'viewbox': '0 0 1 1'}
    assert doc.tag(doc.element_children(svg)[0]) == 'clippath'
