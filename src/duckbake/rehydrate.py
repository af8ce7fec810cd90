"""
Command execution shared by live turns and conversation reloads.

Visualization results are never persisted. Reopening a conversation rebuilds
them by running the stored assistant text back through the same parser and
the same executor a live turn uses, without calling the model.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Sequence

from .blocks import extract
from .models import (
    ASSISTANT_ROLE,
    ChatMessage,
    CommandBlock,
    VisualizationConfig,
    VisualizationResult,
)
from .query import Query

logger = logging.getLogger(__name__)


async def execute_block(
    query: Query, project_id: str, block: CommandBlock, timeout: Optional[float] = None
) -> VisualizationResult:
    """Run one block. Failures become an ``error`` on the result, never raise."""
    config = VisualizationConfig(type=block.viz, x_key=block.x_key, y_key=block.y_key)
    try:
        result = await asyncio.wait_for(query.run_query(project_id, block.sql), timeout)
    except asyncio.TimeoutError:
        logger.warning("Query timed out after %ss: %s", timeout, block.sql)
        return VisualizationResult(
            config=config, sql=block.sql, error=f"Query timed out after {timeout} seconds"
        )
    except Exception as e:
        logger.info("Query failed: %s", e)
        return VisualizationResult(config=config, sql=block.sql, error=str(e))
    return VisualizationResult(config=config, sql=block.sql, result=result)


async def execute_blocks(
    query: Query,
    project_id: str,
    blocks: Sequence[CommandBlock],
    timeout: Optional[float] = None,
    cancelled: Optional[Callable[[], bool]] = None,
) -> List[VisualizationResult]:
    """Run ``blocks`` one after another, in the order they appear.

    ``cancelled`` is checked before each block; once it returns True the
    remaining blocks are skipped.
    """
    results = []
    for block in blocks:
        if cancelled is not None and cancelled():
            logger.info("Command execution abandoned after %d block(s)", len(results))
            break
        results.append(await execute_block(query, project_id, block, timeout))
    return results


async def rehydrate(
    messages: Sequence[ChatMessage],
    query: Query,
    project_id: str,
    timeout: Optional[float] = None,
    cancelled: Optional[Callable[[], bool]] = None,
) -> Dict[str, List[VisualizationResult]]:
    """Rebuild visualization results for persisted assistant messages.

    Returns
    -------
    Dict[str, List[VisualizationResult]]
        Results keyed by message id. Messages without command blocks are
        left out.
    """
    rebuilt: Dict[str, List[VisualizationResult]] = {}
    for message in messages:
        if message.role != ASSISTANT_ROLE:
            continue
        blocks = extract(message.content).blocks
        if not blocks:
            continue
        results = await execute_blocks(query, project_id, blocks, timeout, cancelled)
        if cancelled is not None and cancelled():
            break
        rebuilt[message.id] = results

    logger.info(
        "Rehydrated %d message(s) with %d result(s)",
        len(rebuilt),
        sum(len(r) for r in rebuilt.values()),
    )
    return rebuilt
