#!/usr/bin/env python3
"""
Replacement map and batched content replacement
================================================

Renamed files are referenced from free text all over a WordPress site:
post bodies and Elementor page data. Rewriting those with one full-table
UPDATE per image means tens of thousands of table scans, so the pairs are
collected during the run and applied at the end, ``batch_size`` pairs per
statement, as a chain of nested REPLACE() calls.

A chain of unconditional substitutions only gives the same result as
applying the pairs one at a time when no key can match inside another
key's text. ReplacementMap enforces that on insertion.
"""

import logging
from collections import OrderedDict, defaultdict
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from wp_config_parser import validate_table_prefix

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
ELEMENTOR_DATA_KEY = '_elementor_data'
LIKE_ESCAPE = '!'

# Shortest possible key is 'a.png'; keys sharing a suffix share this tail
_TAIL = 5

Pair = Tuple[str, str]


class ReplacementCollision(Exception):
    """Raised when a replacement pair would make batch results order-dependent."""


class ReplacementMap:
    """Ordered old -> new relative path mapping with disjoint keys.

    Adding a key that is already present with the same value is a no-op.
    Two different keys may not share a value: two files renamed to the
    same path would leave one of them unreachable.
    Adding a key that is a suffix of an existing key (or the other way
    round) is accepted only when both pairs rewrite the shared text the
    same way; otherwise ReplacementCollision is raised.
    """

    def __init__(self):
        self._pairs = OrderedDict()
        self._targets = {}
        self._by_tail = defaultdict(list)

    def __len__(self):
        return len(self._pairs)

    def __contains__(self, old_path):
        return old_path in self._pairs

    def __iter__(self):
        return iter(self._pairs.items())

    def get(self, old_path: str) -> Optional[str]:
        return self._pairs.get(old_path)

    def items(self) -> List[Pair]:
        return list(self._pairs.items())

    def _conflict(self, old_path: str, new_path: str, pending: Sequence[Pair] = ()) -> Optional[str]:
        existing = self._pairs.get(old_path)
        if existing is None:
            for pending_old, pending_new in pending:
                if pending_old == old_path:
                    existing = pending_new
                    break
        if existing is not None:
            if existing != new_path:
                return f"{old_path} already maps to {existing}, not {new_path}"
            return None

        owner = self._targets.get(new_path)
        if owner is None:
            owner = next((o for o, n in pending if n == new_path and o != old_path), None)
        if owner is not None and owner != old_path:
            return f"{new_path} is already the target of {owner}"

        candidates = list(self._by_tail.get(old_path[-_TAIL:], ()))
        candidates.extend((o, n) for o, n in pending if o[-_TAIL:] == old_path[-_TAIL:])
        if len(old_path) < _TAIL:
            candidates = list(self._pairs.items()) + list(pending)

        for other_old, other_new in candidates:
            if other_old == old_path:
                continue
            if other_old.endswith(old_path):
                longer, shorter = (other_old, other_new), (old_path, new_path)
            elif old_path.endswith(other_old):
                longer, shorter = (old_path, new_path), (other_old, other_new)
            else:
                continue
            lead = longer[0][:-len(shorter[0])]
            if longer[1] != lead + shorter[1]:
                return f"{old_path} overlaps {other_old} with a different rewrite"
            logger.debug(f"Overlapping keys rewrite consistently: {old_path} / {other_old}")
        return None

    def check(self, pairs: Iterable[Pair]):
        """Raise ReplacementCollision if any pair cannot be added"""
        pending = []
        for old_path, new_path in pairs:
            problem = self._conflict(old_path, new_path, pending)
            if problem:
                raise ReplacementCollision(problem)
            pending.append((old_path, new_path))

    def add(self, old_path: str, new_path: str):
        problem = self._conflict(old_path, new_path)
        if problem:
            raise ReplacementCollision(problem)
        if old_path in self._pairs or old_path == new_path:
            return
        self._pairs[old_path] = new_path
        self._targets[new_path] = old_path
        self._by_tail[old_path[-_TAIL:]].append((old_path, new_path))

    def extend(self, pairs: Iterable[Pair]):
        """Add all pairs, or none of them if any collides"""
        pairs = list(pairs)
        self.check(pairs)
        for old_path, new_path in pairs:
            self.add(old_path, new_path)

    def clear(self):
        self._pairs.clear()
        self._targets.clear()
        self._by_tail.clear()


def escape_slashes(path: str) -> str:
    """JSON-style slash escaping as found in Elementor data (2024\\/03\\/a.jpg)"""
    return path.replace('/', '\\/')


def like_contains(text: str) -> str:
    """LIKE pattern matching ``text`` anywhere, escaped with LIKE_ESCAPE"""
    escaped = (text.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
                   .replace('%', LIKE_ESCAPE + '%')
                   .replace('_', LIKE_ESCAPE + '_'))
    return f"%{escaped}%"


def iter_batches(pairs: Sequence[Pair], batch_size: int) -> Iterator[List[Pair]]:
    if batch_size < 1:
        raise ValueError(f"batch size must be positive, got {batch_size}")
    for start in range(0, len(pairs), batch_size):
        yield list(pairs[start:start + batch_size])


def _replace_chain(column: str, pairs: Sequence[Pair]) -> Tuple[str, list]:
    expression = column
    params = []
    for old_text, new_text in pairs:
        expression = f"REPLACE({expression}, %s, %s)"
        params.extend((old_text, new_text))
    return expression, params


def _like_any(column: str, needles: Sequence[str]) -> Tuple[str, list]:
    clauses = [f"{column} LIKE %s ESCAPE '{LIKE_ESCAPE}'" for _ in needles]
    return ' OR '.join(clauses), [like_contains(needle) for needle in needles]


def build_content_statement(table_prefix: str, pairs: Sequence[Pair]) -> Tuple[str, list]:
    """One UPDATE rewriting post_content for a batch of pairs"""
    prefix = validate_table_prefix(table_prefix)
    expression, params = _replace_chain('post_content', pairs)
    where, where_params = _like_any('post_content', [old for old, _ in pairs])
    sql = f"UPDATE {prefix}posts SET post_content = {expression} WHERE {where}"
    return sql, params + where_params


def expand_escaped(pairs: Sequence[Pair]) -> List[Pair]:
    """Each pair followed by its slash-escaped form when that differs"""
    expanded = []
    for old_path, new_path in pairs:
        expanded.append((old_path, new_path))
        old_escaped, new_escaped = escape_slashes(old_path), escape_slashes(new_path)
        if old_escaped != old_path:
            expanded.append((old_escaped, new_escaped))
    return expanded


def build_document_statement(table_prefix: str, pairs: Sequence[Pair]) -> Tuple[str, list]:
    """One UPDATE rewriting Elementor page data for a batch of pairs"""
    prefix = validate_table_prefix(table_prefix)
    expanded = expand_escaped(pairs)
    expression, params = _replace_chain('meta_value', expanded)
    where, where_params = _like_any('meta_value', [old for old, _ in expanded])
    sql = (f"UPDATE {prefix}postmeta SET meta_value = {expression} "
           f"WHERE meta_key = %s AND ({where})")
    return sql, params + [ELEMENTOR_DATA_KEY] + where_params


def flush_replacements(connection, table_prefix: str, replacements: ReplacementMap,
                       batch_size: int = DEFAULT_BATCH_SIZE) -> Tuple[int, int]:
    """Apply every accumulated pair to post content and Elementor data.

    Each statement is committed on its own so a failure part way through
    leaves earlier batches applied; the caller sees the database error.
    Returns (content_rows, document_rows).
    """
    pairs = replacements.items()
    if not pairs:
        return 0, 0

    content_rows = 0
    document_rows = 0
    batches = list(iter_batches(pairs, batch_size))
    logger.info(f"Replacing {len(pairs)} paths in {len(batches)} batches of up to {batch_size}")

    cursor = connection.cursor()
    try:
        for number, batch in enumerate(batches, 1):
            sql, params = build_content_statement(table_prefix, batch)
            cursor.execute(sql, params)
            content_rows += max(0, cursor.rowcount)

            sql, params = build_document_statement(table_prefix, batch)
            cursor.execute(sql, params)
            document_rows += max(0, cursor.rowcount)

            connection.commit()
            logger.debug(f"Batch {number}/{len(batches)}: {len(batch)} pairs")
    except Exception:
        connection.rollback()
        raise
    finally:
        cursor.close()

    logger.info(f"Content rows updated: {content_rows}, Elementor rows updated: {document_rows}")
    return content_rows, document_rows
