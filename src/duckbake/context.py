"""
Builds the context handed to the model before each turn.

The context describes the project's schema, the rows and document excerpts
that semantic search found relevant, and is wrapped into the system prompt
that teaches the model the ``duckbake`` command-block format. Output depends
only on the inputs: no clock, no I/O.
"""

import json
from typing import Dict, List, Mapping, Optional, Sequence

from .models import (
    SYSTEM_ROLE,
    ChatMessage,
    DocumentSearchResult,
    ProjectContext,
    SemanticSearchResult,
    TableContext,
)

NO_CONTEXT = "No tables in this project yet."

SYSTEM_PROMPT = """You are a helpful data analyst assistant working with a {dialect} database.

RESPONSE FORMAT:
When answering data questions, provide a brief explanation followed by a query block. Do NOT show raw SQL to the user - use this special format instead:

```duckbake
{{"sql": "YOUR SQL QUERY HERE", "viz": "TYPE", "xKey": "column", "yKey": "column"}}
```

Where:
- sql: The {dialect} SQL query to execute
- viz: Visualization type - one of: "table", "bar", "line", "pie"
- xKey: Column for x-axis/labels (optional, auto-detected if omitted)
- yKey: Column for y-axis/values (optional, auto-detected if omitted)

VISUALIZATION GUIDELINES:
- Use "table" for detailed row-level data, text results, or many columns
- Use "bar" for comparing categories (e.g., sales by region, counts by type)
- Use "line" for trends over time (e.g., monthly sales, daily users)
- Use "pie" for showing proportions of a whole (e.g., market share, percentages) - limit to 5-7 slices

EXAMPLE:
User: "Show me sales by region"
Response: Here's the breakdown of sales by region:

```duckbake
{{"sql": "SELECT region, SUM(amount) as total_sales FROM orders GROUP BY region ORDER BY total_sales DESC", "viz": "bar", "xKey": "region", "yKey": "total_sales"}}
```

IMPORTANT:
- Always use valid {dialect} SQL syntax
- Keep queries efficient with appropriate LIMIT clauses for large results
- Choose the most appropriate visualization for the data
- Provide brief context before the query block
- You can include multiple query blocks for complex analyses
- When document excerpts are provided, answer from them and name the document"""


def _format_column(column) -> str:
    line = f"  - {column.name}: {column.data_type}"
    if not column.nullable:
        line += " NOT NULL"
    if column.is_primary_key:
        line += " PRIMARY KEY"
    return line


def _format_hits(hits: Sequence[SemanticSearchResult]) -> List[str]:
    lines = ["Relevant data (semantic search):"]
    for hit in hits:
        lines.append(f"  - {hit.content} (similarity: {hit.similarity:.3f})")
    return lines


def _format_table(
    table: TableContext, hits: Optional[Sequence[SemanticSearchResult]]
) -> List[str]:
    lines = [f"TABLE: {table.name} ({table.row_count:,} rows)", "Columns:"]
    lines.extend(_format_column(column) for column in table.columns)

    # Hits replace the sample rows.
    if hits:
        lines.extend(_format_hits(hits))
    elif table.sample_rows:
        lines.append("Sample data:")
        lines.append("```json")
        lines.append(json.dumps(table.sample_rows, indent=2, default=str))
        lines.append("```")
    lines.append("")
    return lines


def _format_documents(doc_hits: Sequence[DocumentSearchResult]) -> List[str]:
    grouped: Dict[str, List[DocumentSearchResult]] = {}
    for hit in doc_hits:
        grouped.setdefault(hit.document_name, []).append(hit)

    lines = ["DOCUMENT EXCERPTS:", ""]
    for name, hits in grouped.items():
        lines.append(f"DOCUMENT: {name}")
        for i, hit in enumerate(hits, 1):
            lines.append(f"[Excerpt {i}] (relevance: {hit.similarity * 100:.0f}%)")
            lines.append(hit.content.strip())
            lines.append("")
    return lines


def build_context(
    schema: Optional[ProjectContext],
    data_hits: Optional[Mapping[str, Sequence[SemanticSearchResult]]] = None,
    doc_hits: Optional[Sequence[DocumentSearchResult]] = None,
) -> str:
    """Render schema and search hits into a single context string.

    Parameters
    ----------
    schema : ProjectContext, optional
        Tables with row counts, columns and sample rows.
    data_hits : Mapping[str, Sequence[SemanticSearchResult]], optional
        Semantic row hits keyed by table name. A table with hits is shown
        with them instead of its sample rows.
    doc_hits : Sequence[DocumentSearchResult], optional
        Document chunk hits, grouped by document name in the output.

    Returns
    -------
    str
        The context, or ``NO_CONTEXT`` when there is nothing to describe.
    """
    tables = schema.tables if schema else []
    data_hits = {name: hits for name, hits in (data_hits or {}).items() if hits}

    if not tables and not data_hits and not doc_hits:
        return NO_CONTEXT

    lines: List[str] = []
    if tables:
        lines.extend(["DATABASE SCHEMA:", ""])
        for table in tables:
            lines.extend(_format_table(table, data_hits.get(table.name)))

    known = {table.name for table in tables}
    orphaned = [name for name in data_hits if name not in known]
    if orphaned:
        lines.extend(["RELEVANT DATA:", ""])
        for name in orphaned:
            lines.append(f"TABLE: {name}")
            lines.extend(_format_hits(data_hits[name]))
            lines.append("")

    if doc_hits:
        lines.extend(_format_documents(doc_hits))

    return "\n".join(lines).rstrip() + "\n"


def build_system_prompt(context: Optional[str], dialect: str = "SQLite") -> str:
    prompt = SYSTEM_PROMPT.format(dialect=dialect)
    if context:
        return f"{prompt}\n\nDATABASE CONTEXT:\n{context}"
    return f"{prompt}\n\nNo tables in the database yet."


def build_messages(
    system_prompt: str,
    history: Sequence[ChatMessage],
    history_limit: Optional[int] = None,
) -> List[Dict[str, str]]:
    """Role/content pairs sent to the model, system prompt first.

    ``history`` must end with the current user message; ``history_limit``
    caps how many messages before it are included.
    """
    if history_limit is not None and len(history) > history_limit + 1:
        history = history[-(history_limit + 1):]
    messages = [{"role": SYSTEM_ROLE, "content": system_prompt}]
    messages.extend({"role": m.role, "content": m.content} for m in history)
    return messages
