"""Markup cleanup applied to document text before chunking.

Removes HTML tags, markdown images and links, heading markers and excess
blank lines so embeddings see prose instead of formatting noise.
"""
import re

HTML_TAG_PATTERN = re.compile(r"<[^>]*>")
MD_IMAGE_PATTERN = re.compile(r"!\[[^\]\n]*\]\([^)\n]*\)")
MD_LINK_PATTERN = re.compile(r"\[[^\]\n]*\]\([^)\n]*\)")
HEADING_PATTERN = re.compile(r"^[ \t]*#{1,6}[ \t]*", re.MULTILINE)
BLANK_RUN_PATTERN = re.compile(r"\n{3,}")


def normalize_text(text: str) -> str:
    """Strip markup noise from raw document text.

    Link text is discarded together with the link target.

    Args:
        text: Raw text, possibly containing HTML or markdown

    Returns:
        Plain text, trimmed, with at most one blank line between paragraphs
    """
    if not text:
        return ""

    text = text.replace("\r\n", "\n")
    text = HTML_TAG_PATTERN.sub("", text)
    # Images first, otherwise the link pattern leaves a stray "!"
    text = MD_IMAGE_PATTERN.sub("", text)
    text = MD_LINK_PATTERN.sub("", text)
    text = HEADING_PATTERN.sub("", text)
    text = BLANK_RUN_PATTERN.sub("\n\n", text)
    return text.strip()
