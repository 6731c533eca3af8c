"""Text-level safety checks applied before any SQL reaches the database.

The validator is defense in depth: the executing connection also runs every
statement inside a read-only transaction.  Keyword matching alone can never be
a complete guard against crafted SQL.
"""

import logging
import re
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional, Set

import sqlparse
from sqlparse.sql import Identifier, IdentifierList
from sqlparse.tokens import Keyword

from .conf import AnalystSettings
from .constants import (
    DEFAULT_SCHEMA,
    PERMISSIVE_FORBIDDEN_KEYWORDS,
    PERMISSIVE_LEADING_KEYWORDS,
    STRICT_FORBIDDEN_KEYWORDS,
    STRICT_LEADING_KEYWORDS,
    ValidationModes,
)

logger = logging.getLogger(__name__)


SCHEMA_REFERENCE_REGEX = re.compile(
    r'\b(?:from|join)\s+(?:only\s+)?"?([a-zA-Z_][a-zA-Z0-9_$]*)"?\s*\.',
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one statement."""

    valid: bool
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def fail(cls, reason: str) -> "ValidationResult":
        return cls(valid=False, error=reason)

    def __bool__(self) -> bool:
        return self.valid


@dataclass(frozen=True)
class ValidationPolicy:
    """Which statements the validator lets through.

    Attributes:
        allowed_leading_keywords: Statement must start with one of these
            (multi-word entries such as ``CREATE OR REPLACE VIEW`` are allowed).
        forbidden_keywords: Rejected when present anywhere as a whole word.
        allowed_schemas: Only these schemas may qualify a FROM/JOIN relation.
        forbid_semicolon: Reject any semicolon (statement chaining).
    """

    allowed_leading_keywords: FrozenSet[str]
    forbidden_keywords: FrozenSet[str]
    allowed_schemas: FrozenSet[str]
    forbid_semicolon: bool = True

    @classmethod
    def build(
        cls,
        allowed_leading_keywords: Iterable[str],
        forbidden_keywords: Iterable[str],
        allowed_schemas: Iterable[str] = (DEFAULT_SCHEMA,),
        forbid_semicolon: bool = True,
    ) -> "ValidationPolicy":
        return cls(
            allowed_leading_keywords=frozenset(
                " ".join(k.upper().split()) for k in allowed_leading_keywords
            ),
            forbidden_keywords=frozenset(k.upper() for k in forbidden_keywords),
            allowed_schemas=frozenset(s.lower() for s in allowed_schemas),
            forbid_semicolon=forbid_semicolon,
        )

    @classmethod
    def from_settings(cls, config: AnalystSettings) -> "ValidationPolicy":
        """Select the base policy by mode, then apply explicit overrides."""
        if config.validation_mode == ValidationModes.PERMISSIVE:
            leading, forbidden = PERMISSIVE_LEADING_KEYWORDS, PERMISSIVE_FORBIDDEN_KEYWORDS
        else:
            leading, forbidden = STRICT_LEADING_KEYWORDS, STRICT_FORBIDDEN_KEYWORDS

        return cls.build(
            allowed_leading_keywords=config.allowed_leading_keywords or leading,
            forbidden_keywords=config.forbidden_keywords or forbidden,
            allowed_schemas=config.allowed_schemas,
            forbid_semicolon=config.forbid_semicolon,
        )


STRICT_POLICY = ValidationPolicy.build(STRICT_LEADING_KEYWORDS, STRICT_FORBIDDEN_KEYWORDS)
PERMISSIVE_POLICY = ValidationPolicy.build(
    PERMISSIVE_LEADING_KEYWORDS, PERMISSIVE_FORBIDDEN_KEYWORDS
)


def _leading_keyword_regex(keyword: str):
    return re.compile(r"^" + r"\s+".join(map(re.escape, keyword.split())) + r"\b")


def _schema_of(identifier) -> Optional[str]:
    if not isinstance(identifier, Identifier):
        return None
    parent = identifier.get_parent_name()
    return parent.strip('"').lower() if parent else None


def extract_schema_references(sql: str) -> Set[str]:
    """Return the (lower-cased) schemas qualifying FROM/JOIN relations in *sql*."""
    schemas = {m.group(1).lower() for m in SCHEMA_REFERENCE_REGEX.finditer(sql)}
    for statement in sqlparse.parse(sql):
        schemas |= _schemas_from_token(statement)
    return schemas


def _schemas_from_token(token) -> Set[str]:
    """Recursively collect schemas of relations listed after FROM/JOIN."""
    schemas: Set[str] = set()
    if not getattr(token, "is_group", False):
        return schemas

    from_seen = False
    for subtoken in token.tokens:
        if from_seen:
            if isinstance(subtoken, IdentifierList):
                for identifier in subtoken.get_identifiers():
                    schema = _schema_of(identifier)
                    if schema:
                        schemas.add(schema)
            elif isinstance(subtoken, Identifier):
                schema = _schema_of(subtoken)
                if schema:
                    schemas.add(schema)
            elif subtoken.ttype is Keyword and subtoken.normalized != "ONLY":
                from_seen = False

        if subtoken.ttype is Keyword and (
            subtoken.normalized == "FROM" or "JOIN" in subtoken.normalized
        ):
            from_seen = True

        if subtoken.is_group:
            schemas |= _schemas_from_token(subtoken)

    return schemas


class QueryValidator:
    """Applies a ``ValidationPolicy`` to individual SQL statements."""

    def __init__(self, policy: Optional[ValidationPolicy] = None):
        self.policy = policy or STRICT_POLICY
        self._leading_patterns = [
            _leading_keyword_regex(k) for k in sorted(self.policy.allowed_leading_keywords)
        ]
        self._forbidden_patterns = [
            (k, re.compile(rf"\b{re.escape(k)}\b", re.IGNORECASE))
            for k in sorted(self.policy.forbidden_keywords)
        ]

    def validate(self, query: str) -> ValidationResult:
        """Check *query* against the policy; the first failing rule wins."""
        trimmed = (query or "").strip()
        upper_query = trimmed.upper()

        if not any(p.match(upper_query) for p in self._leading_patterns):
            allowed = " or ".join(sorted(self.policy.allowed_leading_keywords))
            return self._reject(trimmed, f"The query must start with {allowed}.")

        if self.policy.forbid_semicolon and ";" in trimmed:
            return self._reject(
                trimmed,
                "Semicolons are not allowed; submit a single statement without ';'.",
            )

        for keyword, pattern in self._forbidden_patterns:
            if pattern.search(upper_query):
                return self._reject(
                    trimmed, f'Operation "{keyword}" is not allowed in read-only queries.'
                )

        for schema in sorted(extract_schema_references(trimmed)):
            if schema not in self.policy.allowed_schemas:
                allowed = ", ".join(sorted(self.policy.allowed_schemas))
                return self._reject(
                    trimmed,
                    f'Schema "{schema}" is not allowed. Use only: {allowed}.',
                )

        return ValidationResult.ok()

    def _reject(self, query: str, reason: str) -> ValidationResult:
        logger.warning(f"SQL rejected by validator ({reason}): {query[:200]}")
        return ValidationResult.fail(reason)


def validate(query: str, policy: Optional[ValidationPolicy] = None) -> ValidationResult:
    """Validate *query* with *policy* (the strict policy by default)."""
    return QueryValidator(policy).validate(query)
