# widgetproxy/static.py
import logging
import re
from pathlib import Path

from errors import StaticAssetMissing

logger = logging.getLogger(__name__)

_WIDGETLOADER_URL = re.compile(r"https?://[^\s\"'<>]+/widgetloader(?:\?[^\s\"'<>]*)?")
_MATCH_ID = re.compile(r"matchId\s*:\s*\d+")


class StaticLoader:
    """Reads demo/preview files from a directory on disk."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def read(self, relative: str) -> bytes:
        path = (self.root / relative).resolve()
        if self.root.resolve() not in path.parents:
            raise StaticAssetMissing(relative)
        try:
            return path.read_bytes()
        except OSError as exc:
            logger.error("Static file %s not readable: %s", path, exc)
            raise StaticAssetMissing(relative) from exc


def pick_match_id(raw: str | None, default: str) -> str:
    return raw if raw and raw.isdigit() else default


def render_preview(html: str, widget_url: str, match_id: str) -> str:
    """Point the preview's loader script at this proxy and pin its matchId."""
    html = _WIDGETLOADER_URL.sub(lambda _m: widget_url, html)
    return _MATCH_ID.sub(f"matchId:{match_id}", html)
