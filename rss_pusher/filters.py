"""
Keyword rules for RSS messages.

Parses stored keyword sets and matches them against new feed messages.
A rule is a plain substring, a wildcard pattern containing ``*``, or a
block rule prefixed with ``-`` that vetoes every other match.
"""

import json
import logging
import re
import signal
import threading
from calendar import timegm
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

# Maximum length for wildcard patterns to prevent DoS
MAX_REGEX_PATTERN_LENGTH = 1000

# Timeout for regex operations in seconds (ReDoS protection)
REGEX_TIMEOUT_SECONDS = 2

BLOCK_PREFIX = "-"
WILDCARD = "*"


class RegexTimeoutError(Exception):
    """Raised when a regex operation times out."""

    pass


@contextmanager
def regex_timeout(seconds: int):
    """
    Context manager to limit regex execution time (ReDoS protection).

    Note: This uses SIGALRM which only works on Unix-like systems and
    in the main thread. Elsewhere this is a no-op.

    Parameters
    ----------
    seconds : int
        Maximum time in seconds before timeout.

    Raises
    ------
    RegexTimeoutError
        If the operation exceeds the timeout.
    """

    def timeout_handler(signum, frame):
        raise RegexTimeoutError(f"Regex operation timed out after {seconds} seconds")

    if hasattr(signal, "SIGALRM") and threading.current_thread() is threading.main_thread():
        old_handler = signal.signal(signal.SIGALRM, timeout_handler)
        signal.alarm(seconds)
        try:
            yield
        finally:
            signal.alarm(0)
            signal.signal(signal.SIGALRM, old_handler)
    else:
        yield


def _struct_to_datetime(value: Any) -> datetime | None:
    """Convert a feedparser UTC ``time.struct_time`` to an aware datetime."""
    if not value:
        return None
    try:
        return datetime.fromtimestamp(timegm(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


@dataclass
class Message:
    """
    A feed item as seen by the matching engine.

    Attributes
    ----------
    title : str
        Item title.
    description : str
        Raw item description, possibly HTML.
    link : str
        Item URL.
    published : datetime | None
        Published time, else updated time, in UTC. None if the item is undated.
    """

    title: str = ""
    description: str = ""
    link: str = ""
    published: datetime | None = None

    @classmethod
    def from_feedparser(cls, entry: Any) -> "Message":
        """
        Create a Message from a feedparser entry.

        Parameters
        ----------
        entry : Any
            A feedparser entry object.

        Returns
        -------
        Message
            Normalized message instance.
        """
        description = entry.get("summary") or entry.get("description") or ""
        if not description and entry.get("content"):
            description = entry["content"][0].get("value", "")

        published = _struct_to_datetime(entry.get("published_parsed"))
        if published is None:
            published = _struct_to_datetime(entry.get("updated_parsed"))

        return cls(
            title=entry.get("title", "") or "",
            description=description,
            link=entry.get("link", "") or "",
            published=published,
        )


def parse_keywords(raw: str | None) -> list[str]:
    """
    Decode a stored keyword set.

    Accepts a JSON array, or a legacy comma-separated string.

    Parameters
    ----------
    raw : str | None
        The stored value.

    Returns
    -------
    list[str]
        Keyword rules in stored order.
    """
    raw = (raw or "").strip()
    if not raw:
        return []

    if raw.startswith("[") and raw.endswith("]"):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, list):
            return [str(k) for k in decoded]

    return [part.strip() for part in raw.split(",") if part.strip()]


def split_keyword_input(values: list[str]) -> list[str]:
    """
    Split user input into individual rules.

    Full-width commas are treated like ASCII commas, parts are trimmed
    and empty parts dropped.

    Parameters
    ----------
    values : list[str]
        Raw input strings.

    Returns
    -------
    list[str]
        Individual rules in input order.
    """
    rules = []
    for value in values:
        for part in value.replace("，", ",").split(","):
            part = part.strip()
            if part:
                rules.append(part)
    return rules


def _compile_wildcard(rule: str) -> re.Pattern | None:
    """Translate a lowercased wildcard rule to a compiled regex."""
    if len(rule) > MAX_REGEX_PATTERN_LENGTH:
        logger.error(
            "Wildcard rule exceeds max length (%d > %d chars)",
            len(rule),
            MAX_REGEX_PATTERN_LENGTH,
        )
        return None

    try:
        return re.compile(rule.replace(WILDCARD, ".*"), re.DOTALL)
    except re.error as e:
        logger.debug("Wildcard rule '%s' is not a valid pattern: %s", rule, e)
        return None


def _rule_hits(rule: str, corpus: str) -> bool:
    """
    Test one lowercased rule against the corpus.

    Wildcard rules are tried as a pattern first; if the pattern does not
    compile or does not match, plain containment decides.
    """
    if WILDCARD in rule:
        pattern = _compile_wildcard(rule)
        if pattern is not None:
            try:
                with regex_timeout(REGEX_TIMEOUT_SECONDS):
                    if pattern.search(corpus) is not None:
                        return True
            except RegexTimeoutError:
                logger.warning("Wildcard match timed out for rule '%s'", rule[:100])
                return False

    return rule in corpus


def match_keywords(message: Message, keywords: list[str]) -> list[str]:
    """
    Match a message against a user's keyword rules.

    Parameters
    ----------
    message : Message
        The message to check.
    keywords : list[str]
        The user's rules in stored order.

    Returns
    -------
    list[str]
        Matched non-block rules in rule order, or an empty list if nothing
        matched or any block rule matched.
    """
    if not keywords:
        return []

    corpus = f"{message.title} {message.description}".lower()
    matched: list[str] = []
    blocked: list[str] = []

    for keyword in keywords:
        keyword = keyword.strip()
        if not keyword:
            continue

        is_block = keyword.startswith(BLOCK_PREFIX)
        if is_block:
            keyword = keyword[len(BLOCK_PREFIX):]
            if not keyword:
                continue

        if _rule_hits(keyword.lower(), corpus):
            if is_block:
                blocked.append(keyword)
            else:
                matched.append(keyword)

    if blocked:
        logger.debug(
            "Message blocked by [%s]: %s",
            ", ".join(blocked),
            message.title[:50],
        )
        return []

    return matched
