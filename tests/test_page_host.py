import os, sys, asyncio
BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from page_host import InlineStylePageHost, compute_inline_style, parse_inline_style  # type: ignore

TRANSPARENT = 'rgba(0, 0, 0, 0)'


def test_parse_inline_style_drops_important_and_keeps_last():
    decls = parse_inline_style('COLOR: blue !important; color: red; /* note */ font-size: 12px;;')
    assert decls == {'color': 'red', 'font-size': '12px'}


def test_semicolons_inside_data_uri_do_not_split_declarations():
    decls = parse_inline_style('background-image: url(data:image/png;base64,AAAA); color: red')
    assert decls['background-image'] == 'url(data:image/png;base64,AAAA)'
    assert decls['color'] == 'red'
    quoted = parse_inline_style('background: url("a;b.png") #fff; border: 1px solid')
    assert set(quoted) == {'background', 'border'}


def test_background_image_shorthand_stays_transparent():
    s = compute_inline_style('div', {'style': 'background: url(bg.png) no-repeat'}, None)
    assert s['background_color'] == TRANSPARENT
    s = compute_inline_style('div', {'style': 'background: url("data:image/gif;base64,R0l=") repeat-x top'}, None)
    assert s['background_color'] == TRANSPARENT


def test_background_shorthand_color_is_found():
    assert compute_inline_style('div', {'style': 'background: url(x.png) #fc0'}, None)['background_color'] == '#fc0'
    assert compute_inline_style('div', {'style': 'background: navy'}, None)['background_color'] == 'navy'


def test_border_shorthand():
    s = compute_inline_style('table', {'style': 'border: 2px solid rgb(1, 2, 3)'}, None)
    assert s['border_color'] == 'rgb(1, 2, 3)'
    assert {s[f'border_{side}_width'] for side in ('top', 'right', 'bottom', 'left')} == {'2px'}
    s = compute_inline_style('div', {'style': 'border: thin dashed; border-left: none'}, None)
    assert s['border_top_width'] == '1px'
    assert s['border_left_width'] == '0px'


def test_padding_and_spacing():
    s = compute_inline_style('table', {'style': 'padding: 0; border-spacing: 3.5px 1px'}, None)
    assert s['padding'] == '0px'
    assert s['border_spacing'] == '3.5px'


def test_inherited_values_and_tag_defaults():
    parent = compute_inline_style('div', {'style': 'color: green; font-size: 20px'}, None)
    child = compute_inline_style('h2', {}, parent)
    assert child['color'] == 'green'
    assert child['font_size'] == '24px'
    assert child['font_weight'] == '700'
    em = compute_inline_style('span', {'style': 'font-size: 1.5em'}, parent)
    assert em['font_size'] == '30px'


def test_snapshot_stamps_every_element():
    snap = asyncio.run(InlineStylePageHost().snapshot('<div><p style="color: red">x</p></div>', 'http://e/'))
    assert 'data-crashnet-id="1"' in snap.html and 'data-crashnet-id="2"' in snap.html
    assert snap.styles['2'].color == 'red'
    assert snap.styles['1'].display == 'block'
