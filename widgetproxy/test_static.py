# widgetproxy/test_static.py
import pytest

from errors import StaticAssetMissing
from static import StaticLoader, pick_match_id, render_preview

PREVIEW = """<script>
load("https://widgets.example.test/abc123/widgetloader", "SIR");
SIR("addWidget", "#w", "match.lmtPlus", {matchId: 61939220});
</script>"""


class TestStaticLoader:
    def test_reads_file(self, tmp_path):
        (tmp_path / "widget").mkdir()
        (tmp_path / "widget" / "theme.css").write_bytes(b"body{}")
        assert StaticLoader(tmp_path).read("widget/theme.css") == b"body{}"

    def test_missing_file(self, tmp_path):
        with pytest.raises(StaticAssetMissing):
            StaticLoader(tmp_path).read("demo.html")

    def test_path_outside_root_rejected(self, tmp_path):
        root = tmp_path / "static"
        root.mkdir()
        (tmp_path / "secret.txt").write_text("x")
        with pytest.raises(StaticAssetMissing):
            StaticLoader(root).read("../secret.txt")


class TestPreview:
    def test_loader_url_replaced(self):
        html = render_preview(PREVIEW, "http://proxy.test/proxy/acme/match.lmtPlus?matchId=5", "5")
        assert "widgets.example.test" not in html
        assert 'load("http://proxy.test/proxy/acme/match.lmtPlus?matchId=5", "SIR")' in html

    def test_match_id_replaced(self):
        html = render_preview(PREVIEW, "http://proxy.test/w", "777")
        assert "{matchId:777}" in html
        assert "61939220" not in html

    def test_numeric_match_id_accepted(self):
        assert pick_match_id("123", "1") == "123"

    @pytest.mark.parametrize("raw", [None, "", "12a", "1;alert(1)"])
    def test_non_numeric_match_id_falls_back(self, raw):
        assert pick_match_id(raw, "61939220") == "61939220"
