"""
Full-text ranking over memories and entities.

Postgres uses ``to_tsvector``/``ts_rank`` over the GIN-indexed expressions.
Other backends fall back to a token-overlap rank computed in Python; both are
opaque rank signals where larger means more relevant.
"""

from __future__ import annotations

import re
from typing import Optional, Sequence

from sqlalchemy import func, or_

_TOKEN_RE = re.compile(r"[a-z0-9]+")

STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "do", "for", "from",
        "has", "have", "he", "her", "his", "i", "in", "is", "it", "its", "me",
        "my", "of", "on", "or", "she", "that", "the", "their", "they", "this",
        "to", "was", "we", "were", "what", "when", "where", "who", "will",
        "with", "you", "your",
    }
)


def tokenize(text: Optional[str]) -> list[str]:
    """Lowercased alphanumeric tokens, stopwords removed, first occurrence order."""
    seen: set[str] = set()
    tokens: list[str] = []
    for token in _TOKEN_RE.findall((text or "").lower()):
        if len(token) < 2 or token in STOPWORDS or token in seen:
            continue
        seen.add(token)
        tokens.append(token)
    return tokens


def overlap_rank(query_tokens: Sequence[str], document: str) -> float:
    if not query_tokens:
        return 0.0
    words = _TOKEN_RE.findall((document or "").lower())
    if not words:
        return 0.0
    counts: dict[str, int] = {}
    for word in words:
        counts[word] = counts.get(word, 0) + 1
    matched = [token for token in query_tokens if token in counts]
    if not matched:
        return 0.0
    coverage = len(matched) / len(query_tokens)
    density = sum(counts[token] for token in matched) / len(words)
    return coverage + density


def is_postgres(db) -> bool:
    bind = db.get_bind()
    return bind is not None and bind.dialect.name == "postgresql"


def document_expression(columns):
    expr = func.coalesce(columns[0], "")
    for column in columns[1:]:
        expr = expr + " " + func.coalesce(column, "")
    return expr


def rank_by_text(
    db,
    id_column,
    text_columns: Sequence,
    filters: Sequence,
    query_text: str,
    limit: Optional[int] = None,
) -> list[tuple[int, float]]:
    """Return ``(id, rank)`` pairs matching any query token, best first."""
    tokens = tokenize(query_text)
    if not tokens:
        return []

    if is_postgres(db):
        vector = func.to_tsvector("english", document_expression(list(text_columns)))
        ts_query = func.to_tsquery("english", " | ".join(tokens))
        rank = func.ts_rank(vector, ts_query)
        query = (
            db.query(id_column, rank.label("rank"))
            .filter(*filters)
            .filter(vector.op("@@")(ts_query))
            .order_by(rank.desc(), id_column.asc())
        )
        if limit:
            query = query.limit(limit)
        return [(row[0], float(row[1])) for row in query]

    clauses = [
        func.lower(column).contains(token, autoescape=True)
        for column in text_columns
        for token in tokens
    ]
    rows = db.query(id_column, *text_columns).filter(*filters).filter(or_(*clauses))
    ranked = []
    for row in rows:
        document = " ".join(value or "" for value in row[1:])
        score = overlap_rank(tokens, document)
        if score > 0:
            ranked.append((row[0], score))
    ranked.sort(key=lambda item: (-item[1], item[0]))
    return ranked[:limit] if limit else ranked
