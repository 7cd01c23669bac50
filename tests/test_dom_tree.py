import os, sys, unittest
BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE_DIR not in sys.path:
	sys.path.insert(0, BASE_DIR)

from dom_tree import Document, DocumentError, parse_html, DOCTYPE, STAMP_ATTR  # type: ignore


class TestDocument(unittest.TestCase):
	def test_skeleton_is_created(self):
		doc = parse_html('<p>loose</p>')
		self.assertIsNotNone(doc.html)
		self.assertIsNotNone(doc.head)
		self.assertEqual(doc.parent(doc.find_first('p')), doc.body)

	def test_append_moves_instead_of_duplicating(self):
		doc = parse_html('<div id="a"><span>s</span></div><div id="b"></div>')
		a, b = doc.find_all('div')
		span = doc.find_first('span')
		doc.append_child(b, span)
		self.assertEqual(doc.children(a), [])
		self.assertEqual(doc.children(b), [span])
		self.assertEqual(len(doc.find_all('span')), 1)

	def test_unknown_node_id_is_rejected(self):
		doc = parse_html('<p>x</p>')
		with self.assertRaises(DocumentError):
			doc.append_child(doc.body, len(doc) + 100)
		with self.assertRaises(DocumentError):
			doc.node(-1)

	def test_text_nodes_cannot_have_children(self):
		doc = Document()
		t = doc.create_text('x')
		with self.assertRaises(DocumentError):
			doc.append_child(t, doc.create_element('b'))

	def test_cycle_is_rejected(self):
		doc = parse_html('<div><p>x</p></div>')
		div, p = doc.find_first('div'), doc.find_first('p')
		with self.assertRaises(DocumentError):
			doc.append_child(p, div)

	def test_remove_drops_subtree_detach_keeps_it(self):
		doc = parse_html('<div><p><b>x</b></p></div>')
		p, b = doc.find_first('p'), doc.find_first('b')
		doc.detach(p)
		self.assertIn(b, doc)
		self.assertFalse(doc.is_attached(b))
		doc.remove(p)
		self.assertNotIn(b, doc)

	def test_unwrap_and_wrap(self):
		doc = parse_html('<div><span>a</span>b</div>')
		div = doc.find_first('div')
		doc.unwrap(doc.find_first('span'))
		self.assertEqual(doc.to_html(div), '<div>ab</div>')
		doc.wrap_children(div, 'b')
		self.assertEqual(doc.to_html(div), '<div><b>ab</b></div>')

	def test_serialization(self):
		doc = parse_html('<!-- note --><p class="x" hidden>a &amp; b&nbsp;c</p><br><script>if (a < b) {}</script>')
		out = doc.to_html()
		self.assertTrue(out.startswith(DOCTYPE))
		self.assertIn('<p class="x" hidden>a &amp; b&nbsp;c</p>', out)
		self.assertIn('<br>', out)
		self.assertNotIn('</br>', out)
		self.assertIn('if (a < b) {}', out)
		self.assertNotIn('note', out)

	def test_stamps_are_indexed_and_dropped(self):
		doc = parse_html(f'<p {STAMP_ATTR}="7">x</p>')
		p = doc.find_first('p')
		self.assertEqual(doc.stamps, {'7': p})
		self.assertFalse(doc.has_attr(p, STAMP_ATTR))

	def test_parse_fragment_returns_detached_nodes(self):
		doc = parse_html('<p>x</p>')
		nodes = doc.parse_fragment('<hr><b>y</b>')
		self.assertEqual([doc.tag(n) for n in nodes], ['hr', 'b'])
		self.assertTrue(all(doc.parent(n) is None for n in nodes))

	def test_title(self):
		doc = parse_html('<title> Hello </title><p>x</p>')
		self.assertEqual(doc.title, 'Hello')
		doc.set_title('Other')
		self.assertEqual(doc.title, 'Other')


if __name__ == '__main__':
	unittest.main()
