"""
Extraction of ``duckbake`` command blocks from model output.

A command block is a fenced region tagged ``duckbake`` whose body is a JSON
object::

    ```duckbake
    {"sql": "SELECT region, SUM(amount) AS total FROM orders GROUP BY region",
     "viz": "bar", "xKey": "region", "yKey": "total"}
    ```

Parsing is lenient. A block whose body is not JSON, or has no ``sql``, is
dropped without raising. Every fenced region is removed from the display text
whether it parsed or not, including an unterminated block at the end of a
partial stream.
"""

import json
import logging
import re
from typing import Optional

from .models import VIZ_TYPES, CommandBlock, Extraction

logger = logging.getLogger(__name__)

LANGUAGE_TAG = "duckbake"

_BLOCK_PATTERN = re.compile(
    r"```" + LANGUAGE_TAG + r"(?![\w-])[^\S\n]*\n?(?P<body>.*?)(?P<close>```|\Z)",
    re.IGNORECASE | re.DOTALL,
)
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


def _parse_block(body: str) -> Optional[CommandBlock]:
    try:
        payload = json.loads(body.strip())
    except ValueError:
        logger.debug("Dropping command block with invalid JSON: %r", body[:80])
        return None

    if not isinstance(payload, dict):
        logger.debug("Dropping command block that is not a JSON object")
        return None

    sql = payload.get("sql")
    if not sql or not isinstance(sql, str):
        logger.debug("Dropping command block without sql")
        return None

    viz = payload.get("viz")
    viz = viz.lower() if isinstance(viz, str) else None
    x_key = payload.get("xKey")
    y_key = payload.get("yKey")

    return CommandBlock(
        sql=sql,
        viz=viz if viz in VIZ_TYPES else "table",
        x_key=x_key if isinstance(x_key, str) else None,
        y_key=y_key if isinstance(y_key, str) else None,
    )


def extract(text: str) -> Extraction:
    """Split ``text`` into its command blocks and the text left for display.

    Blocks are returned in left-to-right order of appearance. Only terminated
    blocks are parsed; an unterminated trailing block is hidden but never
    executed.

    Parameters
    ----------
    text : str
        Raw model output, possibly still streaming.

    Returns
    -------
    Extraction
        ``blocks`` and ``clean_text`` with whitespace runs collapsed.
    """
    blocks = []
    for match in _BLOCK_PATTERN.finditer(text):
        if not match.group("close"):
            continue
        block = _parse_block(match.group("body"))
        if block is not None:
            blocks.append(block)

    # Removing a region can join its neighbours into a new fence; repeat
    # until none is left so the clean text never yields a block itself.
    clean = text
    while True:
        stripped = _BLOCK_PATTERN.sub("", clean)
        if stripped == clean:
            break
        clean = stripped

    clean = _EXCESS_NEWLINES.sub("\n\n", clean).strip()
    return Extraction(blocks=blocks, clean_text=clean)


def display_text(text: str) -> str:
    """Text as shown to the user, with every command block removed."""
    return extract(text).clean_text
