"""Tests for HTML-to-text conversion and content-quality assessment."""

import json

from fakes import FILLER, js_shell_page, product_page
from propex.fetch.content import (
    ContentVerdict,
    assess_content,
    harvest_embedded_state,
    html_to_text,
    page_title,
)


class TestAssessContent:
    def test_long_text_is_ok(self):
        html = product_page("Aduro 9")
        result = assess_content(html, html_to_text(html), min_chars=500)
        assert result.verdict == ContentVerdict.OK
        assert result.sufficient

    def test_js_shell_is_js_required(self):
        html = js_shell_page()
        result = assess_content(html, html_to_text(html), min_chars=500)
        assert result.verdict == ContentVerdict.JS_REQUIRED
        assert not result.sufficient
        assert result.markers

    def test_short_plain_page_is_too_short(self):
        html = "<html><body><p>Hallo</p></body></html>"
        result = assess_content(html, html_to_text(html), min_chars=500)
        assert result.verdict == ContentVerdict.TOO_SHORT

    def test_framework_marker_ignored_when_text_is_long(self):
        html = product_page("Aduro 9").replace("</body>", '<div id="app"></div></body>')
        result = assess_content(html, html_to_text(html), min_chars=500)
        assert result.verdict == ContentVerdict.OK

    def test_captcha_wall_is_blocked(self):
        html = '<html><body><div class="g-recaptcha"></div><p>Are you a robot?</p></body></html>'
        result = assess_content(html, html_to_text(html), min_chars=500)
        assert result.verdict == ContentVerdict.BLOCKED


class TestHtmlToText:
    def test_strips_scripts_and_navigation(self):
        html = (
            "<html><head><title>Aduro 9</title></head><body>"
            "<nav>Startseite Kontakt</nav><script>var tracking = 1;</script>"
            "<main><p>Nennwärmeleistung 6 kW</p></main><footer>Impressum</footer>"
            "</body></html>"
        )
        text = html_to_text(html)
        assert "Nennwärmeleistung 6 kW" in text
        assert "Title: Aduro 9" in text
        assert "tracking" not in text
        assert "Impressum" not in text
        assert "Startseite" not in text

    def test_json_ld_comes_first(self):
        ld = {"@type": "Product", "name": "Aduro 9", "weight": "100 kg"}
        html = (
            "<html><head><script type=\"application/ld+json\">"
            f"{json.dumps(ld)}</script></head><body><p>Body text</p></body></html>"
        )
        text = html_to_text(html)
        assert text.startswith("[STRUCTURED DATA]")
        assert '"weight": "100 kg"' in text

    def test_meta_description_included(self):
        html = (
            '<html><head><meta name="description" content="Kaminofen aus Stahl">'
            "</head><body></body></html>"
        )
        assert "Description: Kaminofen aus Stahl" in html_to_text(html)


class TestEmbeddedState:
    def test_next_data_flattened(self):
        state = {"props": {"pageProps": {"product": {"weight": "100 kg", "power": 6}}}}
        html = (
            '<html><body><script id="__NEXT_DATA__" type="application/json">'
            f"{json.dumps(state)}</script></body></html>"
        )
        lines = harvest_embedded_state(html).splitlines()
        assert "props.pageProps.product.weight: 100 kg" in lines
        assert "props.pageProps.product.power: 6" in lines

    def test_invalid_json_ignored(self):
        html = '<html><body><script type="application/json">{not json</script></body></html>'
        assert harvest_embedded_state(html) == ""

    def test_urls_skipped(self):
        state = {"image": "https://cdn.example/a.jpg", "name": FILLER.strip()}
        html = f'<script type="application/json">{json.dumps(state)}</script>'
        result = harvest_embedded_state(html)
        assert "cdn.example" not in result
        assert result.startswith("name: ")


class TestPageTitle:
    def test_title_tag(self):
        assert page_title("<html><head><title> Aduro 9 </title></head></html>") == "Aduro 9"

    def test_falls_back_to_h1(self):
        assert page_title("<html><body><h1>Aduro 9</h1></body></html>") == "Aduro 9"

    def test_empty_when_missing(self):
        assert page_title("<html><body><p>x</p></body></html>") == ""
