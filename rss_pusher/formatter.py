"""
Notification formatting for Telegram.

Reduces feed HTML to the subset Telegram accepts, picks an illustrative
image and composes the notification texts.
"""

import html
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from rss_pusher.filters import Message
from rss_pusher.storage import Subscription

# Timestamps are shown in UTC+8
DISPLAY_TIMEZONE = timezone(timedelta(hours=8), "CST")
DISPLAY_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

IMG_SRC_PATTERN = re.compile(r"""<img[^>]+src=["']([^"']+)["']""", re.IGNORECASE)
IMAGE_URL_PATTERN = re.compile(
    r"""https?://[^\s"']+\.(?:jpg|jpeg|png|gif|webp)""", re.IGNORECASE
)
CDN_URL_PATTERN = re.compile(r"""https?://cdn[0-9]*\.cdn-telegram\.org/[^\s"']+""")

SCRIPT_BLOCK_PATTERN = re.compile(
    r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL
)
IMG_TAG_PATTERN = re.compile(r"<img[^>]*>", re.IGNORECASE)
BR_TAG_PATTERN = re.compile(r"<br\s*/?>", re.IGNORECASE)
ANCHOR_TAG_PATTERN = re.compile(r"<(/?)a\b([^>]*)>", re.IGNORECASE)
HREF_PATTERN = re.compile(r"""\bhref\s*=\s*["']([^"']+)["']""", re.IGNORECASE)
ALLOWED_TAG_PATTERN = re.compile(
    r"<(/?)(b|i|u|s|code|pre)(?:\s[^>]*)?>", re.IGNORECASE
)
ANY_TAG_PATTERN = re.compile(r"<[^>]*>")
EXCESS_NEWLINES_PATTERN = re.compile(r"\n{3,}")

# Tags Telegram's HTML mode understands, apart from <a>
ALLOWED_TAGS = ("b", "i", "u", "s", "code", "pre")

PLACEHOLDER = "§§§"
ANCHOR_PLACEHOLDER_PATTERN = re.compile(
    f"{PLACEHOLDER}A{PLACEHOLDER}(.*?){PLACEHOLDER}"
)


@dataclass
class Notification:
    """
    A formatted push for one user.

    Attributes
    ----------
    text : str
        HTML text, or the photo caption when ``photo_url`` is set.
    photo_url : str
        Image to send with the text as caption. Empty for a text message.
    mirror_text : str
        Plain summary without the keyword list, for admin mirroring.
    """

    text: str
    photo_url: str = ""
    mirror_text: str = ""


def extract_image_url(content: str) -> str:
    """
    Find an illustrative image in HTML content.

    Tries the first ``<img src>``, then the first bare image URL, then the
    first Telegram CDN URL.

    Parameters
    ----------
    content : str
        Raw HTML description.

    Returns
    -------
    str
        The image URL, or an empty string.
    """
    match = IMG_SRC_PATTERN.search(content)
    if match:
        return match.group(1)

    match = IMAGE_URL_PATTERN.search(content)
    if match:
        return match.group(0)

    match = CDN_URL_PATTERN.search(content)
    if match:
        return match.group(0)

    return ""


def _mark_links(content: str) -> str:
    """
    Swap balanced ``<a href>`` pairs for placeholders and drop other anchors.

    An opening tag without an href, or one nested inside a kept link, is
    removed together with its closing tag. Closers with no opener are
    removed, and kept links left open are closed at the end.
    """
    kept_stack: list[bool] = []

    def replace(match: re.Match) -> str:
        if match.group(1):
            if kept_stack and kept_stack.pop():
                return f"{PLACEHOLDER}/A{PLACEHOLDER}"
            return ""
        href = HREF_PATTERN.search(match.group(2))
        if href is None or any(kept_stack):
            kept_stack.append(False)
            return ""
        kept_stack.append(True)
        return f"{PLACEHOLDER}A{PLACEHOLDER}{href.group(1)}{PLACEHOLDER}"

    content = ANCHOR_TAG_PATTERN.sub(replace, content)
    return content + f"{PLACEHOLDER}/A{PLACEHOLDER}" * sum(kept_stack)


def clean_html_content(content: str) -> str:
    """
    Reduce HTML to the tags Telegram supports.

    Script and style blocks are dropped with their content and line breaks
    become newlines. Every tag outside ``b, i, u, s, code, pre, a`` is
    stripped. Links keep only their href, and anchor tags that cannot be
    paired are removed so the result always balances.

    Parameters
    ----------
    content : str
        Raw HTML description.

    Returns
    -------
    str
        Sanitized HTML.
    """
    content = SCRIPT_BLOCK_PATTERN.sub("", content)
    content = IMG_TAG_PATTERN.sub("", content)
    content = BR_TAG_PATTERN.sub("\n", content)

    content = ALLOWED_TAG_PATTERN.sub(
        lambda m: f"{PLACEHOLDER}{m.group(1)}{m.group(2).upper()}{PLACEHOLDER}", content
    )

    content = _mark_links(content)

    content = ANY_TAG_PATTERN.sub("", content)

    for tag in ALLOWED_TAGS:
        name = tag.upper()
        content = content.replace(f"{PLACEHOLDER}{name}{PLACEHOLDER}", f"<{tag}>")
        content = content.replace(f"{PLACEHOLDER}/{name}{PLACEHOLDER}", f"</{tag}>")

    content = ANCHOR_PLACEHOLDER_PATTERN.sub(
        lambda m: f'<a href="{m.group(1)}">', content
    )
    content = content.replace(f"{PLACEHOLDER}/A{PLACEHOLDER}", "</a>")

    return EXCESS_NEWLINES_PATTERN.sub("\n\n", content)


def format_keywords(keywords: list[str]) -> str:
    """Render matched rules as space-separated inline code spans."""
    return " ".join(f"<code>{html.escape(k)}</code>" for k in keywords)


def format_timestamp(value: datetime | None) -> str:
    """Render a time in the fixed UTC+8 presentation."""
    if value is None:
        value = datetime.now(timezone.utc)
    elif value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(DISPLAY_TIMEZONE).strftime(DISPLAY_TIME_FORMAT)


def build_notification(
    subscription: Subscription, message: Message, keywords: list[str]
) -> Notification:
    """
    Compose the push for one matched message.

    Channel subscriptions produce an announcement with the sanitized
    description and, when one is found, an image. Other subscriptions
    produce a title and link.

    Parameters
    ----------
    subscription : Subscription
        The subscription the message came from.
    message : Message
        The matched message.
    keywords : list[str]
        Rules that matched.

    Returns
    -------
    Notification
        Text, optional photo URL and mirror summary.
    """
    timestamp = format_timestamp(message.published)
    formatted_keywords = format_keywords(keywords)

    if subscription.channel:
        name = html.escape(subscription.name)
        body = clean_html_content(message.description)
        return Notification(
            text=f"👋 {name}: {formatted_keywords}\n🕒 {timestamp}\n{body}\n",
            photo_url=extract_image_url(message.description),
            mirror_text=f"👋 {subscription.name}\n🕒 {timestamp}\n{body}",
        )

    title = html.escape(message.title)
    return Notification(
        text=(
            f"📌 {title}\n"
            f"🔖 Keywords: {formatted_keywords}\n"
            f"🕒 {timestamp}\n"
            f"🔗 {message.link}"
        ),
        mirror_text=f"📌 {message.title}\n🕒 {timestamp}\n🔗 {message.link}",
    )


def photo_fallback_text(photo_url: str, caption: str) -> str:
    """Text sent instead of a photo that could not be delivered."""
    return f"Image: {photo_url}\n\n{caption}"
