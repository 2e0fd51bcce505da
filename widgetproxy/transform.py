# widgetproxy/transform.py
import gzip
import logging
import re
import zlib
from dataclasses import dataclass
from typing import Iterable, Sequence

import brotli

from errors import DecompressionFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RewriteRule:
    pattern: re.Pattern
    replacement: str

    @classmethod
    def literal(cls, text: str, replacement: str) -> "RewriteRule":
        return cls(re.compile(re.escape(text)), replacement)

    @classmethod
    def regex(cls, pattern: str, replacement: str) -> "RewriteRule":
        return cls(re.compile(pattern), replacement)

    def apply(self, text: str) -> str:
        return self.pattern.sub(lambda m: m.expand(self.replacement), text)


def compile_rules(configs: Iterable) -> list[RewriteRule]:
    """Compile ``RewriteRuleConfig``-like objects, preserving their order."""
    rules = []
    for cfg in configs:
        if cfg.regex:
            rules.append(RewriteRule.regex(cfg.pattern, cfg.replacement))
        else:
            # Literal replacements must not be read as group references.
            rules.append(RewriteRule.literal(cfg.pattern, cfg.replacement.replace("\\", "\\\\")))
    return rules


def decompress(body: bytes, content_encoding: str | None) -> bytes:
    """Decode ``body`` according to a Content-Encoding value.

    Raises DecompressionFailure when the body does not match its label.
    Unknown or identity encodings return the body unchanged.
    """
    if not body or not content_encoding:
        return body

    encoding = content_encoding.lower().strip()
    try:
        if encoding in ("gzip", "x-gzip"):
            return gzip.decompress(body)
        if encoding == "br":
            return brotli.decompress(body)
        if encoding == "deflate":
            # Servers send both zlib-wrapped and raw deflate under this name.
            try:
                return zlib.decompress(body)
            except zlib.error:
                return zlib.decompress(body, -zlib.MAX_WBITS)
    except (OSError, EOFError, zlib.error, brotli.error) as exc:
        raise DecompressionFailure(f"{encoding}: {exc}") from exc

    if encoding != "identity":
        logger.warning("Unknown Content-Encoding %r, leaving body as-is", content_encoding)
    return body


def rewrite(text: str, rules: Sequence[RewriteRule]) -> str:
    for rule in rules:
        text = rule.apply(text)
    return text


class ContentTransformer:
    """Decompress, rewrite and re-serialize a fully buffered text body.

    The output is always plain UTF-8; callers must drop content-encoding.
    A body that fails to decompress is rewritten as-is (it usually passes
    through unreadable); each such fallback is logged and counted in
    ``decompression_failures``.
    """

    def __init__(self) -> None:
        self.decompression_failures = 0

    def decompress(self, body: bytes, content_encoding: str | None) -> bytes:
        try:
            return decompress(body, content_encoding)
        except DecompressionFailure as exc:
            self.decompression_failures += 1
            logger.warning(
                "Decompression failed (%s); serving raw bytes (%d failures so far)",
                exc, self.decompression_failures,
            )
            return body

    def transform(
        self,
        body: bytes,
        content_encoding: str | None,
        rules: Sequence[RewriteRule],
    ) -> bytes:
        raw = self.decompress(body, content_encoding)
        if not rules:
            return raw
        # surrogateescape keeps undecodable bytes intact through the round trip.
        text = raw.decode("utf-8", errors="surrogateescape")
        return rewrite(text, rules).encode("utf-8", errors="surrogateescape")
