import bleach

ALLOWED_TAGS = [
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "p",
    "br",
    "strong",
    "em",
    "u",
    "ol",
    "ul",
    "li",
    "blockquote",
    "a",
]
ALLOWED_ATTRIBUTES = {"a": ["href", "target", "rel"]}
ALLOWED_PROTOCOLS = ["http", "https", "mailto"]


def _secure_link(attrs, new=False):
    # Only existing anchors are rewritten; bare URLs in text stay text.
    if new:
        return None
    if (None, "href") in attrs:
        attrs[(None, "rel")] = "noopener noreferrer"
    return attrs


def sanitize_text(value: str) -> str:
    """Return a sanitized version of *value* with HTML stripped.

    This removes any HTML tags to mitigate XSS attacks.
    """
    return bleach.clean(value, tags=[], attributes={}, strip=True)


def sanitize_html(html: str) -> str:
    """Return rich-text *html* restricted to the session note allowlist.

    Unknown tags are stripped, unknown protocols are dropped from links and
    every remaining link is marked ``rel="noopener noreferrer"``.
    """
    if not html:
        return ""
    cleaned = bleach.clean(
        html,
        tags=ALLOWED_TAGS,
        attributes=ALLOWED_ATTRIBUTES,
        protocols=ALLOWED_PROTOCOLS,
        strip=True,
    )
    return bleach.linkify(cleaned, callbacks=[_secure_link], skip_tags=["pre"], parse_email=False)
