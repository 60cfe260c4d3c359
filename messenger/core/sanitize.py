from selectolax.lexbor import LexborHTMLParser

# Tags whose text content is dropped along with the markup
_NON_TEXT_TAGS = ["script", "style", "textarea", "option", "noscript"]


def sanitize_text(text: str | None) -> str:
    """Strips all markup from user supplied text and trims surrounding whitespace."""
    if not text or not text.strip():
        return ""

    if "<" not in text and "&" not in text:
        return text.strip()

    tree = LexborHTMLParser(text)
    tree.strip_tags(_NON_TEXT_TAGS)
    if tree.body is None:
        return ""
    return tree.body.text(separator="").strip()
