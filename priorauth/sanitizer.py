import html
from typing import Optional

import bleach


def sanitize_text(value: Optional[str]) -> str:
    """Return ``value`` with HTML stripped.

    Generated templates are rendered as plain text, so any markup the remote
    service emits is removed before placeholders are filled. Entities escaped
    by :func:`bleach.clean` are decoded again so "&" and "<" read normally.
    """
    if not value:
        return ""
    cleaned = bleach.clean(value, tags=[], attributes={}, strip=True)
    return html.unescape(cleaned)
