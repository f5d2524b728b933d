import pytest
from bs4 import BeautifulSoup
from decimal import Decimal

from origin_mask.errors import RewriteFailure
from origin_mask.models import ContentEditRule, UpstreamMapping
from origin_mask.rewrite.body import BodyRewriter, charset_of, content_kind
from origin_mask.rewrite.content_edits import ContentEditor
from origin_mask.rewrite.scripts import SHIM_MARKER, WATCHDOG_MARKER
from origin_mask.routing.resolver import RouteResolver

WWW = "https://www.origin.example"
API = "https://api.origin.example"

PAGE = f"""<!DOCTYPE html>
<html>
<head>
<title>Quiz</title>
<link rel="stylesheet" href="{WWW}/_next/static/css/app.css">
<script src="{API}/sdk.js"></script>
<script>window.API_BASE = "{API}/v2";</script>
</head>
<body>
<a href="{WWW}/pricing">Pricing</a>
<a href="/relative/link">Relative</a>
<a href="https://partner.example/offer">Partner</a>
<a href="#top">Top</a>
<img src="//api.origin.example/img/a.png" srcset="{API}/img/a.png 1x, {API}/img/a@2x.png 2x">
<form action="{API}/submit" method="post"></form>
<iframe src="{WWW}/embed"></iframe>
<p class="price">Only $13.67 today</p>
</body>
</html>
"""


@pytest.fixture
def resolver():
    return RouteResolver(
        [
            UpstreamMapping(prefix="/", origin_base=WWW),
            UpstreamMapping(prefix="/api", origin_base=API),
        ]
    )


@pytest.fixture
def rewriter(resolver):
    editor = ContentEditor(
        [
            ContentEditRule(page="/quiz", operation="convert_currency"),
            ContentEditRule(
                page="/quiz",
                operation="set_text",
                selector={"id": "headline"},
                value="Descubra seu perfil",
            ),
        ],
        exchange_rate=Decimal("5.00"),
        currency_symbol="R$",
    )
    return BodyRewriter(
        resolver,
        content_editor=editor,
        redirect_overrides={"/trialChoice": "/quiz/trialPayment"},
        watchdog_page_matcher="/quiz",
        watchdog_interval_ms=250,
    )


def _soup(body: bytes) -> BeautifulSoup:
    return BeautifulSoup(body.decode("utf-8"), "html.parser")


class TestContentKind:
    @pytest.mark.parametrize(
        "content_type,expected",
        [
            ("text/html; charset=utf-8", "html"),
            ("TEXT/HTML", "html"),
            ("text/css", "css"),
            ("application/javascript", "js"),
            ("text/javascript; charset=utf-8", "js"),
            ("application/json", None),
            ("image/png", None),
            ("", None),
        ],
    )
    def test_content_kind(self, content_type, expected):
        assert content_kind(content_type) == expected

    def test_charset(self):
        assert charset_of('text/html; charset="ISO-8859-1"') == "iso-8859-1"
        assert charset_of("text/html") == "utf-8"


class TestAttributeRewrite:
    def test_absolute_urls_are_mapped(self, rewriter):
        result = rewriter.rewrite_html(PAGE.encode(), "/quiz").decode()

        assert 'href="/_next/static/css/app.css"' in result
        assert 'src="/api/sdk.js"' in result
        assert 'href="/pricing"' in result
        assert 'action="/api/submit"' in result
        assert 'src="/embed"' in result
        assert 'src="/api/img/a.png"' in result
        assert 'srcset="/api/img/a.png 1x, /api/img/a@2x.png 2x"' in result

    def test_relative_and_unmapped_untouched(self, rewriter):
        result = rewriter.rewrite_html(PAGE.encode(), "/quiz").decode()

        assert 'href="/relative/link"' in result
        assert 'href="https://partner.example/offer"' in result
        assert 'href="#top"' in result

    def test_inline_script_urls(self, rewriter):
        result = rewriter.rewrite_html(PAGE.encode(), "/quiz").decode()

        assert 'window.API_BASE = "/api/v2";' in result

    def test_no_origin_left_outside_shim(self, rewriter):
        soup = _soup(rewriter.rewrite_html(PAGE.encode(), "/quiz"))
        soup.find("script", attrs={SHIM_MARKER: True}).decompose()

        assert WWW not in str(soup)
        assert API not in str(soup)

    def test_attribute_step_is_idempotent(self, rewriter):
        soup = BeautifulSoup(PAGE, "html.parser")
        first = rewriter.rewrite_attributes(soup)
        after_first = str(soup)

        second = rewriter.rewrite_attributes(soup)

        assert first > 0
        assert second == 0
        assert str(soup) == after_first

    def test_full_pipeline_twice_injects_once(self, rewriter):
        once = rewriter.rewrite_html(PAGE.encode(), "/quiz")
        twice = rewriter.rewrite_html(once, "/quiz")

        soup = _soup(twice)
        assert len(soup.find_all("script", attrs={SHIM_MARKER: True})) == 1
        assert len(soup.find_all("script", attrs={WATCHDOG_MARKER: True})) == 1


class TestInjection:
    def test_shim_is_first_in_head(self, rewriter):
        soup = _soup(rewriter.rewrite_html(PAGE.encode(), "/other"))

        first = soup.head.find(True, recursive=False)
        assert first.name == "script"
        assert first.has_attr(SHIM_MARKER)
        assert '"prefix":"/api"' in first.string
        assert f'"origin":"{API}"' in first.string

    def test_head_created_when_missing(self, rewriter):
        result = rewriter.rewrite_html(b"<p>bare fragment</p>", "/other")

        soup = _soup(result)
        assert soup.head is not None
        assert soup.head.find("script", attrs={SHIM_MARKER: True}) is not None

    def test_watchdog_only_on_matching_page(self, rewriter):
        on_page = _soup(rewriter.rewrite_html(PAGE.encode(), "/quiz/step-3"))
        off_page = _soup(rewriter.rewrite_html(PAGE.encode(), "/pricing"))

        watchdog = on_page.find("script", attrs={WATCHDOG_MARKER: True})
        assert watchdog is not None
        assert '"from":"/trialChoice"' in watchdog.string
        assert '"to":"/quiz/trialPayment"' in watchdog.string
        assert "250" in watchdog.string
        assert off_page.find("script", attrs={WATCHDOG_MARKER: True}) is None

    def test_watchdog_follows_shim(self, rewriter):
        soup = _soup(rewriter.rewrite_html(PAGE.encode(), "/quiz"))

        scripts = soup.head.find_all("script", recursive=False)
        assert scripts[0].has_attr(SHIM_MARKER)
        assert scripts[1].has_attr(WATCHDOG_MARKER)

    def test_no_watchdog_without_overrides(self, resolver):
        rewriter = BodyRewriter(resolver, watchdog_page_matcher="/quiz")

        soup = _soup(rewriter.rewrite_html(PAGE.encode(), "/quiz"))

        assert soup.find("script", attrs={WATCHDOG_MARKER: True}) is None


class TestContentEdits:
    def test_edits_on_matching_page(self, rewriter):
        result = rewriter.rewrite_html(PAGE.encode(), "/quiz").decode()

        assert "Only R$68,35 today" in result
        assert '<div id="headline">Descubra seu perfil</div>' in result

    def test_edits_skipped_on_other_pages(self, rewriter):
        result = rewriter.rewrite_html(PAGE.encode(), "/pricing").decode()

        assert "Only $13.67 today" in result
        assert "headline" not in result


class TestDispatch:
    def test_css_rewritten(self, rewriter):
        css = f'body {{ background: url("{API}/bg.png"); }} @import "{WWW}/base.css";'

        result = rewriter.rewrite(css.encode(), "text/css", "/quiz").decode()

        assert 'url("/api/bg.png")' in result
        assert '@import "/base.css"' in result

    def test_js_rewritten(self, rewriter):
        js = f'fetch("{API}/v1/answers").then(r => r.json());'

        result = rewriter.rewrite(js.encode(), "application/javascript", "/").decode()

        assert 'fetch("/api/v1/answers")' in result

    def test_css_js_rewrite_can_be_disabled(self, resolver):
        rewriter = BodyRewriter(resolver, rewrite_css_js=False)
        css = f'a {{ background: url("{API}/bg.png"); }}'.encode()

        assert rewriter.rewrite(css, "text/css", "/") == css

    def test_other_types_untouched(self, rewriter):
        payload = f'{{"url": "{API}/x"}}'.encode()

        assert rewriter.rewrite(payload, "application/json", "/") == payload

    def test_empty_body(self, rewriter):
        assert rewriter.rewrite(b"", "text/html", "/") == b""

    def test_failure_raises_rewrite_failure(self, rewriter):
        with pytest.raises(RewriteFailure):
            rewriter.rewrite(b"<html></html>", "text/html; charset=no-such-codec", "/")

    def test_undecodable_body_raises_rewrite_failure(self, rewriter):
        with pytest.raises(RewriteFailure):
            rewriter.rewrite(b"\xff\xfe\xfa", "text/html; charset=utf-8", "/")
