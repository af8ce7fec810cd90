"""Conversation titles derived from the first user message."""

import re

DEFAULT_TITLE = "New Chat"
MAX_TITLE_LENGTH = 40
MAX_TITLE_WORDS = 8

_QUESTION_STARTERS = re.compile(
    r"^(can you |could you |please |help me |i want to |i need to |i'd like to "
    r"|show me |tell me |explain |what is |what are |what's |how do i |how can i "
    r"|how to |why is |why are |where is |where are |when is |when are |who is "
    r"|who are )",
    re.IGNORECASE,
)
_TRAILING_PUNCTUATION = re.compile(r"[?!.,;:]+$")


def generate_title(message: str) -> str:
    """Build a short title from a user message.

    Leading question words are dropped, the first letter is capitalized and
    the result is cut to at most eight words and 40 characters, preferring a
    word boundary. Falls back to ``"New Chat"`` when nothing is left.

    >>> generate_title("can you show me total revenue by month?")
    'Show me total revenue by month'
    """
    title = _QUESTION_STARTERS.sub("", message.strip(), count=1)
    title = title[:1].upper() + title[1:]
    title = _TRAILING_PUNCTUATION.sub("", title)

    words = title.split()
    if len(words) > MAX_TITLE_WORDS:
        title = " ".join(words[:MAX_TITLE_WORDS])

    if len(title) > MAX_TITLE_LENGTH:
        title = title[:MAX_TITLE_LENGTH].strip()
        last_space = title.rfind(" ")
        if last_space > 20:
            title = title[:last_space]

    return title or DEFAULT_TITLE
