"""Text helpers for inbound message content.

Bodies are cleaned and truncated before being sent to the classifier, and
sender strings are parsed when the dashboard whitelists a sender.
"""

import html
import re
from email.utils import parseaddr

# Reply headers that mark the start of quoted history
QUOTED_HEADER_PATTERNS = [
    r"^On .+wrote:\s*$",
    r"^-+\s*Original Message\s*-+\s*$",
    r"^_{10,}\s*$",
]

FOOTER_PATTERNS = [
    r"^Sent from my (iPhone|iPad|Android|Galaxy|Samsung)\s*$",
    r"^(Get|Sent from) Outlook for (iOS|Android)\s*$",
    r"^Sent from (Mail for Windows|Yahoo Mail|AOL Mobile Mail)\s*$",
]


def html_to_text(html_content: str) -> str:
    """Convert an HTML body to plain text.

    Drops script/style blocks and comments, turns block-level closing tags
    into newlines, strips the remaining tags and decodes entities.
    """
    text = re.sub(r"<(script|style)[^>]*>[\s\S]*?</\1>", "", html_content, flags=re.IGNORECASE)
    text = re.sub(r"<!--[\s\S]*?-->", "", text)
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</(p|div|tr|li|h[1-6])>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</td>", " | ", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)

    lines = [line for line in collapse_whitespace(text).splitlines() if not re.match(r"^[\s|_\-=]*$", line)]
    return "\n".join(lines)


def collapse_whitespace(text: str) -> str:
    """Collapse runs of spaces and keep at most one blank line between paragraphs."""
    text = re.sub(r"[ \t]+", " ", text)
    text = "\n".join(line.strip() for line in text.splitlines())
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def strip_footers(text: str) -> str:
    """Remove mobile client signatures ("Sent from my iPhone" and friends)."""
    return "\n".join(
        line
        for line in text.splitlines()
        if not any(re.match(p, line.strip(), re.IGNORECASE) for p in FOOTER_PATTERNS)
    )


def strip_quoted_replies(text: str) -> str:
    """Drop quoted history: '>' lines and everything after a reply header."""
    result = []
    for line in text.splitlines():
        stripped = line.strip()
        if any(re.match(p, stripped, re.IGNORECASE) for p in QUOTED_HEADER_PATTERNS):
            break
        if stripped.startswith(">"):
            continue
        result.append(line)
    return "\n".join(result)


def smart_truncate(text: str, max_chars: int) -> str:
    """Truncate at a sentence or word boundary when one is reasonably close.

    Returns the text unchanged if it already fits. Otherwise cuts at the last
    sentence end in the first ``max_chars`` characters (if at least half the
    budget survives), else at the last space, else hard; "..." is appended
    unless the cut falls on a sentence end.
    """
    if len(text) <= max_chars:
        return text

    head = text[:max_chars]
    sentence_ends = [m.end() for m in re.finditer(r"[.!?](?:\s|$)", head)]
    if sentence_ends and sentence_ends[-1] >= max_chars // 2:
        return text[: sentence_ends[-1]].rstrip()

    last_space = head[: max_chars - 3].rfind(" ")
    if last_space > max_chars // 2:
        return text[:last_space].rstrip() + "..."

    return text[: max_chars - 3].rstrip() + "..."


def prepare_body(body: str, max_chars: int = 1500) -> str:
    """Prepare a message body for classification.

    HTML bodies are converted to text first. Footers and quoted replies are
    removed since they say nothing about what the message is.
    """
    if re.search(r"<[a-zA-Z][^>]*>", body):
        body = html_to_text(body)
    body = strip_footers(body)
    body = strip_quoted_replies(body)
    body = collapse_whitespace(body)
    return smart_truncate(body, max_chars)


def sender_address(sender: str) -> str:
    """Bare address from a sender string: "Bob <bob@x.com>" -> "bob@x.com"."""
    _, addr = parseaddr(sender or "")
    return (addr or sender or "").strip()


def sender_domain(sender: str) -> str | None:
    """Domain part of the sender's address, lower-cased, or None."""
    addr = sender_address(sender)
    if "@" not in addr:
        return None
    domain = addr.rsplit("@", 1)[1].strip().rstrip(">").lower()
    return domain or None
