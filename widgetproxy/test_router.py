# widgetproxy/test_router.py
from config import ProviderConfig, WidgetType
from router import feed_url, is_licensing_path, provider_url, widget_url


def _provider(base_url="https://x.test", widget_id="W"):
    return ProviderConfig(
        name="Acme",
        base_url=base_url,
        widget_id=widget_id,
        widget_types={
            "match.lmtPlus": WidgetType(),
            "match.custom": WidgetType(path="/custom/{widgetId}/loader.js"),
        },
        feed_hosts={"lt-fn": "https://lt.x.test", "ws-fn": "https://ws.x.test/"},
    )


# ---------------------------------------------------------------------------
# widget_url
# ---------------------------------------------------------------------------

class TestWidgetUrl:
    def test_default_path_template(self):
        assert widget_url(_provider(), "match.lmtPlus") == "https://x.test/W/widgetloader"

    def test_custom_path_template(self):
        assert widget_url(_provider(), "match.custom") == "https://x.test/custom/W/loader.js"

    def test_query_forwarded_verbatim(self):
        url = widget_url(_provider(), "match.lmtPlus", "matchId=123&lang=en")
        assert url == "https://x.test/W/widgetloader?matchId=123&lang=en"

    def test_trailing_slash_on_base_url_stripped(self):
        assert widget_url(_provider("https://x.test/"), "match.lmtPlus") == "https://x.test/W/widgetloader"


# ---------------------------------------------------------------------------
# provider_url
# ---------------------------------------------------------------------------

class TestProviderUrl:
    def test_same_path(self):
        assert provider_url(_provider(), "/translations/en.json") == "https://x.test/translations/en.json"

    def test_relative_path_gets_slash(self):
        assert provider_url(_provider(), "js/a.js") == "https://x.test/js/a.js"

    def test_query(self):
        assert provider_url(_provider(), "/css/a.css", "v=1") == "https://x.test/css/a.css?v=1"


# ---------------------------------------------------------------------------
# feed_url
# ---------------------------------------------------------------------------

class TestFeedUrl:
    def test_prefix_stripped(self):
        assert feed_url(_provider(), "lt-fn", "common/en/match/1") == "https://lt.x.test/common/en/match/1"

    def test_host_trailing_slash(self):
        assert feed_url(_provider(), "ws-fn", "/a", "t=1") == "https://ws.x.test/a?t=1"

    def test_unknown_feed(self):
        assert feed_url(_provider(), "zz-fn", "a") is None


# ---------------------------------------------------------------------------
# Path predicates
# ---------------------------------------------------------------------------

class TestPredicates:
    def test_licensing(self):
        assert is_licensing_path(_provider(), "/W/licensing")
        assert not is_licensing_path(_provider(), "/X/licensing")

    def test_licensing_without_widget_id(self):
        assert not is_licensing_path(_provider(widget_id=""), "//licensing")
