"""Plain-text helpers shared by the parser and the data model."""

import re

_TAG_RE = re.compile(r"<[^>]*>")


def strip_html(html: str) -> str:
    """Remove every ``<...>`` span left to right and trim the result.

    Entities such as ``&amp;`` are left as they are. An unterminated ``<``
    stays in the output.
    """
    if not html:
        return ""
    return _TAG_RE.sub("", html).strip()


__all__ = ["strip_html"]
