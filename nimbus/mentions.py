"""Expansion of ``@path`` references into inline file context."""

import re
from pathlib import Path

from nimbus.logging import get_logger
from nimbus.models import ContentPart, ImageAttachment, MessageContent

log = get_logger(__name__)

MENTION_RE = re.compile(r"@([\w./-]+\.\w+)")
DEFAULT_MAX_CHARS = 10000


def find_mentions(content: str) -> list[str]:
    return MENTION_RE.findall(content)


def expand_mentions(content: str, project_dir: Path | str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """Prepend the content of every referenced file to ``content``.

    Relative references resolve against ``project_dir``. Missing or
    unreadable files are left out.
    """
    mentions = find_mentions(content)
    if not mentions:
        return content

    context = ""
    for mention in mentions:
        path = Path(mention)
        if not path.is_absolute():
            path = Path(project_dir) / mention
        try:
            if not path.is_file():
                continue
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            log.debug("Skipping unreadable mention", mention=mention, error=str(exc))
            continue
        if len(text) > max_chars:
            text = text[:max_chars] + "\n... (truncated)"
        context += f'<file path="{mention}">\n{text}\n</file>\n\n'

    return context + content if context else content


def build_message_content(
    text: str,
    attachments: list[ImageAttachment] | None = None,
) -> MessageContent:
    """Plain text, or a text part followed by one image part per attachment."""
    if not attachments:
        return text
    parts = [ContentPart(type="text", text=text)]
    parts.extend(
        ContentPart(type="image", image_url=f"data:{a.mime};base64,{a.data}")
        for a in attachments
    )
    return parts
