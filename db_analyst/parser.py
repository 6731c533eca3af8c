"""Parsing of raw assistant replies into runnable SQL blocks.

The assistant answers in loosely formatted markdown.  SQL can appear in
fenced code blocks, optionally preceded by an ``[AUTO_EXECUTE]`` tag, or (while
a reply is still streaming, or when the model forgets the fence) as bare lines
following the tag.  ``parse_assistant_content`` turns such text into either a
de-duplicated list of ``ParsedSqlBlock`` objects or, when no SQL is present, a
cleaned plain-text rendering.

Parsing is pure and never raises: truncated or malformed input simply yields
fewer blocks.
"""

import hashlib
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from .constants import (
    AUTO_EXECUTE_TAG,
    RESULT_PLACEHOLDER,
    RUNNABLE_LEADING_KEYWORDS,
    SQL_FENCE_LANGUAGES,
    SQL_LINE_KEYWORDS,
)

logger = logging.getLogger(__name__)


# longest tag first so "postgresql" is not read as "postgres" + "ql"
_FENCE_TAGS = "|".join(sorted(SQL_FENCE_LANGUAGES, key=len, reverse=True))
_FENCE = r"```(?:" + _FENCE_TAGS + r")?\s*([\s\S]*?)```"
_RUNNABLE = "|".join(RUNNABLE_LEADING_KEYWORDS)

SQL_FENCE_REGEX = re.compile(_FENCE, re.IGNORECASE)
LEADING_SQL_FENCE_REGEX = re.compile(r"^\s*" + _FENCE, re.IGNORECASE)
AUTO_EXECUTE_REGEX = re.compile(re.escape(AUTO_EXECUTE_TAG), re.IGNORECASE)
RESULT_PLACEHOLDER_REGEX = re.compile(re.escape(RESULT_PLACEHOLDER), re.IGNORECASE)

RUNNABLE_START_REGEX = re.compile(r"^(?:" + _RUNNABLE + r")\b", re.IGNORECASE)
RUNNABLE_SEARCH_REGEX = re.compile(r"\b(?:" + _RUNNABLE + r")\b", re.IGNORECASE)
# "WITH name AS (" or "WITH RECURSIVE name(cols) AS (", as opposed to prose "with ..."
CTE_HEAD_REGEX = re.compile(
    r'^WITH\s+(?:RECURSIVE\s+)?"?\w+"?\s*(?:\([^)]*\)\s*)?AS\b', re.IGNORECASE
)

SQL_LINE_KEYWORD_REGEX = re.compile(
    r"^(?:" + "|".join(SQL_LINE_KEYWORDS) + r")\b", re.IGNORECASE
)
SQL_SHAPED_LINE_REGEX = re.compile(r'^[a-zA-Z0-9_".\s,=*<>!+\-/%]+$')
SENTENCE_END_REGEX = re.compile(r"[.!?]$")
TRAILING_TERMINATORS_REGEX = re.compile(r"[;\s]+$")
WHITESPACE_REGEX = re.compile(r"\s+")
LINE_SPLIT_REGEX = re.compile(r"\r?\n")


@dataclass
class ParsedSqlBlock:
    """A runnable SQL statement found in an assistant reply.

    Attributes:
        id: Positional identifier (``sql-0``, ``sql-1``...) in first-seen order.
        query: Sanitized SQL text.
        auto_execute: True if any occurrence was tagged for automatic execution.
        key: Fingerprint of the normalized query, stable across re-parses.
    """

    id: str
    query: str
    auto_execute: bool = False
    key: str = ""

    def __post_init__(self):
        if not self.key:
            self.key = query_fingerprint(self.query)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class ParsedAssistantContent:
    """Result of parsing one assistant message.

    Exactly one of ``plain_text`` / ``sql_blocks`` carries content: as soon as a
    SQL block is found, the plain-text rendering is suppressed.
    """

    plain_text: str = ""
    sql_blocks: List[ParsedSqlBlock] = field(default_factory=list)

    @property
    def has_sql(self) -> bool:
        return bool(self.sql_blocks)

    def get_block(self, block_id: str) -> Optional[ParsedSqlBlock]:
        for block in self.sql_blocks:
            if block.id == block_id or block.key == block_id:
                return block
        return None

    def to_dict(self) -> Dict[str, object]:
        return {
            "plain_text": self.plain_text,
            "sql_blocks": [block.to_dict() for block in self.sql_blocks],
        }


def sanitize_sql(query: str) -> str:
    """Trim whitespace and strip trailing semicolons from a SQL string."""
    return TRAILING_TERMINATORS_REGEX.sub("", (query or "").strip())


def normalize_query(query: str) -> str:
    """Return the duplicate-detection key for *query*.

    Sanitized, whitespace collapsed to single spaces, and lower-cased.
    """
    return WHITESPACE_REGEX.sub(" ", sanitize_sql(query)).lower()


def query_fingerprint(query: str) -> str:
    """Short content hash of the normalized query."""
    return hashlib.sha1(normalize_query(query).encode("utf-8")).hexdigest()[:12]


def is_runnable_sql(query: str) -> bool:
    """True if *query* starts with SELECT or WITH (after trimming)."""
    return bool(RUNNABLE_START_REGEX.match((query or "").strip()))


def strip_markdown_to_plain_text(text: str) -> str:
    """Render an assistant reply without SQL fences, markers or inline markdown."""
    output = text or ""

    output = SQL_FENCE_REGEX.sub("", output)
    output = AUTO_EXECUTE_REGEX.sub("", output)
    output = RESULT_PLACEHOLDER_REGEX.sub("", output)
    output = re.sub(r"`([^`]+)`", r"\1", output)
    output = re.sub(r"\*\*([^*]+)\*\*", r"\1", output)
    output = re.sub(r"\*([^*]+)\*", r"\1", output)
    output = re.sub(r"^#{1,6}\s*", "", output, flags=re.MULTILINE)
    output = re.sub(r"^\s*[-*+]\s+", "- ", output, flags=re.MULTILINE)
    output = re.sub(r"\n{3,}", "\n\n", output)

    return output.strip()


def is_likely_sql_line(line: str) -> bool:
    """Heuristic check that a line belongs to a SQL statement."""
    trimmed = (line or "").strip()
    if not trimmed:
        return False

    if SQL_LINE_KEYWORD_REGEX.match(trimmed):
        return True

    if trimmed[0] in ",()":
        return True

    return bool(SQL_SHAPED_LINE_REGEX.match(trimmed)) and not SENTENCE_END_REGEX.search(
        trimmed
    )


def _update_balance(line: str, depth: int, in_quote: bool, in_comment: bool):
    """Track parenthesis depth, open string literals and block comments across lines.

    Text after ``--`` and inside ``/* */`` is ignored, so an apostrophe in a
    comment never opens a literal.
    """
    index = 0
    while index < len(line):
        char = line[index]
        pair = line[index : index + 2]
        if in_comment:
            if pair == "*/":
                in_comment = False
                index += 1
        elif in_quote:
            if char == "'":
                in_quote = False
        elif pair == "--":
            break
        elif pair == "/*":
            in_comment = True
            index += 1
        elif char == "'":
            in_quote = True
        elif char == "(":
            depth += 1
        elif char == ")":
            depth = max(depth - 1, 0)
        index += 1
    return depth, in_quote, in_comment


def _continues_statement(line: str, depth: int, is_open: bool) -> bool:
    if is_open:
        return True
    if depth > 0 and line.strip() and not SENTENCE_END_REGEX.search(line.strip()):
        return True
    return is_likely_sql_line(line)


def _find_statement_start(text: str) -> int:
    """Index of the first SELECT, or of the first WITH that opens a CTE."""
    for match in RUNNABLE_SEARCH_REGEX.finditer(text):
        if match.group(0).upper() == "SELECT":
            return match.start()
        if CTE_HEAD_REGEX.match(text[match.start() :]):
            return match.start()
    return -1


def extract_fallback_sql_after_tag(source_after_tag: str) -> Optional[str]:
    """Recover unfenced SQL that follows an auto-execute tag.

    Starting at the first SELECT/WITH, consume lines while they look like SQL.
    A blank line is kept only if the next non-blank line still looks like SQL.
    Lines inside an open parenthesis, string literal or block comment are kept,
    but never across a blank line followed by a sentence.
    """
    trimmed = (source_after_tag or "").lstrip()
    sql_start = _find_statement_start(trimmed)
    if sql_start < 0:
        return None

    lines = LINE_SPLIT_REGEX.split(trimmed[sql_start:])
    selected = [lines[0]]
    depth, in_quote, in_comment = _update_balance(lines[0], 0, False, False)

    for index in range(1, len(lines)):
        line = lines[index]
        is_open = in_quote or in_comment

        if not line.strip():
            next_non_empty = next(
                (candidate for candidate in lines[index + 1 :] if candidate.strip()),
                None,
            )
            if next_non_empty is None or SENTENCE_END_REGEX.search(next_non_empty.strip()):
                break
            if not _continues_statement(next_non_empty, depth, is_open):
                break
            selected.append(line)
            continue

        if not _continues_statement(line, depth, is_open):
            break

        selected.append(line)
        depth, in_quote, in_comment = _update_balance(line, depth, in_quote, in_comment)

    sql = sanitize_sql("\n".join(selected))
    return sql or None


class _BlockCollector:
    """Accumulates blocks, merging duplicates by normalized query."""

    def __init__(self):
        self.blocks: List[ParsedSqlBlock] = []
        self._index_by_normalized: Dict[str, int] = {}

    def add(self, query: str, auto_execute: bool) -> None:
        sanitized = sanitize_sql(query)
        if not sanitized:
            return

        normalized = normalize_query(sanitized)
        existing_index = self._index_by_normalized.get(normalized)
        if existing_index is not None:
            if auto_execute:
                self.blocks[existing_index].auto_execute = True
            return

        block = ParsedSqlBlock(
            id=f"sql-{len(self.blocks)}", query=sanitized, auto_execute=auto_execute
        )
        self.blocks.append(block)
        self._index_by_normalized[normalized] = len(self.blocks) - 1


def _extract_fenced_sql(text: str, collector: _BlockCollector) -> None:
    for match in SQL_FENCE_REGEX.finditer(text):
        sql = sanitize_sql(match.group(1) or "")
        if sql and is_runnable_sql(sql):
            collector.add(sql, auto_execute=False)


def _extract_auto_execute_sql(text: str, collector: _BlockCollector) -> None:
    for match in AUTO_EXECUTE_REGEX.finditer(text):
        after = text[match.end() :]

        fenced = LEADING_SQL_FENCE_REGEX.match(after)
        if fenced:
            sql = sanitize_sql(fenced.group(1) or "")
            if is_runnable_sql(sql):
                collector.add(sql, auto_execute=True)
            continue

        fallback_sql = extract_fallback_sql_after_tag(after)
        if fallback_sql and is_runnable_sql(fallback_sql):
            collector.add(fallback_sql, auto_execute=True)


def parse_assistant_content(content: Optional[str]) -> ParsedAssistantContent:
    """Parse an assistant message into SQL blocks or plain text.

    Args:
        content: The raw (possibly partial, still streaming) message text.

    Returns:
        ParsedAssistantContent: SQL blocks with an empty ``plain_text`` when any
        runnable SQL was found, otherwise the cleaned plain text and no blocks.
    """
    if content is not None and not isinstance(content, str):
        content = str(content)
    raw = RESULT_PLACEHOLDER_REGEX.sub("", content or "")

    collector = _BlockCollector()
    _extract_fenced_sql(raw, collector)
    _extract_auto_execute_sql(raw, collector)

    if collector.blocks:
        logger.debug(f"Parsed {len(collector.blocks)} SQL block(s) from assistant reply")
        return ParsedAssistantContent(plain_text="", sql_blocks=collector.blocks)

    return ParsedAssistantContent(
        plain_text=strip_markdown_to_plain_text(raw), sql_blocks=[]
    )


parse = parse_assistant_content
