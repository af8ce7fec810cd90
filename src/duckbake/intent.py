"""
Heuristic intent classification for user questions.

Decides whether a question is about tabular data, documents, or both, so the
orchestrator knows which semantic searches to run before calling the model.
Pure pattern matching: no latency, no model call. The confidence is a
saturating match count meant for display, not a probability.
"""

import re

from .models import IntentResult

DOCUMENT_PATTERNS = [
    re.compile(p)
    for p in (
        r"\b(document|report|file|pdf|policy|manual|guide|handbook|memo)\b",
        r"\b(says?|mentions?|states?|written|describes?|explains?)\b",
        r"\b(summarize|summary|extract|quote)\b.*\b(doc|document|report|file)\b",
        r"what does.*(say|mention|state)",
        r"according to",
        r"in the (document|report|file|pdf)",
        r"\b(read|contents? of|text in)\b",
    )
]

SQL_PATTERNS = [
    re.compile(p)
    for p in (
        r"\b(how many|count|total|sum|average|avg|max|min)\b",
        r"\b(sales|revenue|orders|customers|users|transactions|products|items)\b",
        r"\b(by|per|group|breakdown|grouped)\b",
        r"\b(trend|over time|monthly|daily|weekly|yearly|quarterly)\b",
        r"\b(top|bottom|highest|lowest|most|least)\b\s*\d*",
        r"compare.*\b(to|with|against)\b",
        r"\b(table|column|row|query|sql|database|data)\b",
        r"\b(filter|where|sort|order by)\b",
        r"\b(percentage|percent|ratio|rate)\b",
    )
]


def _score(patterns, text: str) -> int:
    return sum(1 for pattern in patterns if pattern.search(text))


def classify(query: str) -> IntentResult:
    """Classify ``query`` as ``sql``, ``document`` or ``both``.

    Ambiguous questions, with matches on both sides or on neither, resolve to
    ``both`` so no context source is left out.
    """
    text = query.lower()
    doc_score = _score(DOCUMENT_PATTERNS, text)
    sql_score = _score(SQL_PATTERNS, text)

    if doc_score and not sql_score:
        return IntentResult(intent="document", confidence=min(doc_score / 3, 1.0))
    if sql_score and not doc_score:
        return IntentResult(intent="sql", confidence=min(sql_score / 3, 1.0))
    if doc_score and sql_score:
        return IntentResult(intent="both", confidence=0.7)
    return IntentResult(intent="both", confidence=0.5)


def wants_data(result: IntentResult) -> bool:
    return result.intent in ("sql", "both")


def wants_documents(result: IntentResult) -> bool:
    return result.intent in ("document", "both")
