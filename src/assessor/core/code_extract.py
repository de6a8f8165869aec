from __future__ import annotations

import re


_CODE_BLOCK_RE = re.compile(r"```([A-Za-z0-9_+-]*)[ \t]*\n?(.*?)```", re.DOTALL)


def extract_first_code_block(text: str, language: str | None = None) -> str | None:
    """Return the body of the first fenced block, optionally only for one language tag.

    Untagged blocks match any requested language.
    """
    for m in _CODE_BLOCK_RE.finditer(text or ""):
        tag = m.group(1).lower()
        if language is None or not tag or tag == language.lower():
            return m.group(2).strip()
    return None
