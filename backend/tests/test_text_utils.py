from ielts_app.text_utils import clean_markdown_formatting


class TestCleanMarkdownFormatting:
	def test_strips_bold(self):
		assert clean_markdown_formatting("**Band 7** score") == "Band 7 score"

	def test_strips_italic_code_and_headers(self):
		text = "## Topic\n*Describe* a `place` you __visited__"
		assert clean_markdown_formatting(text) == "Topic\nDescribe a place you visited"

	def test_trims_and_handles_empty(self):
		assert clean_markdown_formatting("  plain  ") == "plain"
		assert clean_markdown_formatting("") == ""
