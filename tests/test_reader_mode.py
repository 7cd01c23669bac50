import os, sys
BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from reader_mode import TrafilaturaReader  # type: ignore

PARAGRAPH = ('The Macintosh SE shipped with a built-in floppy drive and room for an internal hard disk, '
             'which made it a favourite among schools and small offices well into the nineties. ')

ARTICLE = f"""<html><head><title>Vintage Macs Revisited</title></head><body>
<nav><a href="/">Home</a> <a href="/about">About</a></nav>
<article>
<h1>Vintage Macs Revisited</h1>
<p>{PARAGRAPH * 3}</p>
<p>{PARAGRAPH * 2} Collectors still restore them today.</p>
<p>{PARAGRAPH * 3}</p>
</article>
<footer>Copyright footer text</footer>
</body></html>"""


def test_extracts_article_and_title():
    lines = []
    result = TrafilaturaReader(log=lines.append).extract(ARTICLE, 'http://example.com/macs')
    assert result is not None
    title, content = result
    assert title == 'Vintage Macs Revisited'
    assert 'Collectors still restore them today.' in content
    assert lines == []


def test_empty_page_has_no_article():
    lines = []
    assert TrafilaturaReader(log=lines.append).extract('<html><body></body></html>', 'http://example.com/') is None
    assert lines and lines[0].startswith('[reader]')
