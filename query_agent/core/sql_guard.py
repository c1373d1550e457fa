"""
SQL guard for model-generated queries.

Validates a candidate statement before it reaches any store:

1. Exactly one statement (a trailing `;` is tolerated, any other is not).
2. No write, DDL, privilege or system-catalog access, no `1=1`, no UNION.
3. SELECT / WITH only, except a few table-free informational queries.
4. Only allow-listed tables, including every entry of a comma-separated FROM list.
5. Every table reference filtered in its own WHERE clause by a literal
   tenant equality matching the caller's tenant.
6. A LIMIT no larger than `max_rows`.

Pure: no I/O and no logging. Violations raise `GuardViolation`.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from query_agent.core.security_rules import DANGEROUS_SQL_PATTERNS, SYSTEM_QUERY_PATTERN
from query_agent.services.schema import TENANT_COLUMN, is_allowed_table

DEFAULT_MAX_ROWS = 100

# Error codes
INVALID_SQL_INPUT = "INVALID_SQL_INPUT"
MULTI_STATEMENT = "MULTI_STATEMENT"
DANGEROUS_OPERATION = "DANGEROUS_OPERATION"
INVALID_OPERATION = "INVALID_OPERATION"
DISALLOWED_TABLE = "DISALLOWED_TABLE"
MISSING_TENANT_FILTER = "MISSING_TENANT_FILTER"
INVALID_TENANT_ID = "INVALID_TENANT_ID"


class GuardViolation(Exception):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def __repr__(self):
        return f"GuardViolation({self.code!r}, {self.message!r})"


@dataclass(frozen=True)
class GuardMetadata:
    tables_used: Tuple[str, ...] = ()
    limit_applied: Optional[int] = None


@dataclass(frozen=True)
class GuardedSQL:
    sql: str
    metadata: GuardMetadata = field(default_factory=GuardMetadata)


@dataclass(frozen=True)
class TableRef:
    """One FROM/JOIN item. `name` is None for a derived table."""

    name: Optional[str]
    alias: Optional[str]
    position: int

    @property
    def identifier(self) -> str:
        return self.alias or self.name or ""


@dataclass(frozen=True)
class TenantPredicate:
    qualifier: Optional[str]
    value: str
    start: int
    end: int


# Quoted strings, quoted identifiers and all three comment styles, in one pass
_TOKEN_RE = re.compile(
    r"'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\"|`(?:[^`]|``)*`|--[^\n]*|#[^\n]*|/\*.*?\*/",
    re.DOTALL,
)
# Quoted tokens that can only be a plain name stay readable in the masked text
_PLAIN_QUOTED_RE = re.compile(r"^([\"`])[\w-]*\1$")
_TRAILING_SEMICOLONS_RE = re.compile(r"[;\s]+$")
_DANGEROUS_RES = [(re.compile(p, re.IGNORECASE), label) for p, label in DANGEROUS_SQL_PATTERNS]
_SYSTEM_QUERY_RE = re.compile(SYSTEM_QUERY_PATTERN, re.IGNORECASE)
_LEADING_KEYWORD_RE = re.compile(r"^\s*\(*\s*(SELECT|WITH)\b", re.IGNORECASE)
_SUBQUERY_START_RE = re.compile(r"\s*(SELECT|WITH)\b", re.IGNORECASE)
_CTE_NAME_RE = re.compile(
    r"(?:\bWITH\s+(?:RECURSIVE\s+)?|,\s*)([a-z_]\w*)\s+AS\s*\(", re.IGNORECASE
)

# FROM clause items
_QUOTE = r"[`\"]?"
_ALIAS_STOP_WORDS = (
    "where|on|using|join|straight_join|inner|left|right|full|cross|outer|natural|"
    "group|order|limit|having|window|union|use|force|ignore|partition|lateral|for"
)
_ALIAS = rf"(?:\s+(?:AS\s+)?(?!(?:{_ALIAS_STOP_WORDS})\b){_QUOTE}([a-z_]\w*){_QUOTE})?"
_TABLE_ITEM_RE = re.compile(
    rf"\s*{_QUOTE}([a-z_][\w$]*(?:\.[a-z_][\w$]*)?){_QUOTE}{_ALIAS}", re.IGNORECASE
)
_DERIVED_ALIAS_RE = re.compile(_ALIAS, re.IGNORECASE)
_OPEN_PAREN_RE = re.compile(r"\s*\(")
_FROM_RE = re.compile(r"\bFROM\b", re.IGNORECASE)
_FROM_END_RE = re.compile(r"\b(?:WHERE|GROUP|HAVING|ORDER|LIMIT|WINDOW|UNION)\b", re.IGNORECASE)
_ITEM_START_RE = re.compile(r",|\b(?:STRAIGHT_)?JOIN\b", re.IGNORECASE)

# Tenant predicates, matched on the masked text
_TENANT_COLUMN_REF = rf"(?:{_QUOTE}([a-z_]\w*){_QUOTE}\s*\.\s*)?{_QUOTE}{TENANT_COLUMN}{_QUOTE}"
_TENANT_VALUE = r"('[^']*'|\"[\w-]*\"|(?<![\w.])\d+(?![\w.]))"
_TENANT_LHS_RE = re.compile(
    rf"(?<![\w.`\"]){_TENANT_COLUMN_REF}\s*=\s*{_TENANT_VALUE}", re.IGNORECASE
)
_TENANT_RHS_RE = re.compile(
    rf"{_TENANT_VALUE}\s*=\s*{_TENANT_COLUMN_REF}(?![\w`\"])", re.IGNORECASE
)
_CLAUSE_RE = re.compile(r"\b(SELECT|FROM|WHERE|GROUP|HAVING|ORDER|LIMIT|WINDOW)\b", re.IGNORECASE)
_JOINED_BEFORE_RE = re.compile(r"(?:\bWHERE|\bAND|&&)$", re.IGNORECASE)
_JOINED_AFTER_RE = re.compile(r"^(?:$|&&|(?:AND|GROUP|ORDER|LIMIT|HAVING|WINDOW)\b)", re.IGNORECASE)
_OPEN_BETWEEN_RE = re.compile(r"\bBETWEEN\b(?:(?!\b(?:AND|WHERE)\b|&&).)*$", re.IGNORECASE | re.DOTALL)
_DISJUNCTION_RE = re.compile(r"\b(?:OR|XOR)\b|\|\|", re.IGNORECASE)

_TRAILING_LIMIT_RE = re.compile(
    r"\bLIMIT\s+(?:(\d+)\s*,\s*)?(\d+)(\s+OFFSET\s+\d+)?\s*$", re.IGNORECASE
)
_SHOW_RE = re.compile(r"^\s*SHOW\b", re.IGNORECASE)


def _blank(token: str) -> str:
    return token[0] + " " * (len(token) - 2) + token[-1]


def _split_comments_and_literals(sql: str) -> Tuple[str, str]:
    """
    Returns (cleaned, masked): both without comments and of equal length, so a
    span found in `masked` reads the same text in `cleaned`. `masked` also has
    the contents of every string literal blanked so nothing inside a value is
    matched as SQL.
    """
    cleaned_parts: List[str] = []
    masked_parts: List[str] = []
    pos = 0
    for m in _TOKEN_RE.finditer(sql):
        cleaned_parts.append(sql[pos:m.start()])
        masked_parts.append(sql[pos:m.start()])
        token = m.group(0)
        if token.startswith(("--", "#", "/*")):
            cleaned_parts.append(" ")
            masked_parts.append(" ")
        elif token.startswith("'") or not _PLAIN_QUOTED_RE.match(token):
            cleaned_parts.append(token)
            masked_parts.append(_blank(token))
        else:
            cleaned_parts.append(token)
            masked_parts.append(token)
        pos = m.end()
    cleaned_parts.append(sql[pos:])
    masked_parts.append(sql[pos:])
    return "".join(cleaned_parts).strip(), "".join(masked_parts).strip()


# Parenthesis structure

def _paren_parents(masked: str) -> List[int]:
    """For each index, the position of the innermost enclosing `(`, or -1."""
    parents: List[int] = []
    stack: List[int] = []
    for i, ch in enumerate(masked):
        if ch == ")" and stack:
            stack.pop()
        parents.append(stack[-1] if stack else -1)
        if ch == "(":
            stack.append(i)
    return parents


def _closing_paren(masked: str, start: int) -> int:
    depth = 0
    for i in range(start, len(masked)):
        if masked[i] == "(":
            depth += 1
        elif masked[i] == ")":
            depth -= 1
            if depth == 0:
                return i
    return len(masked) - 1


def _is_subquery(masked: str, group: int) -> bool:
    return group == -1 or bool(_SUBQUERY_START_RE.match(masked, group + 1))


def _scope_of(masked: str, parents: List[int], index: int) -> int:
    """The `(` opening the SELECT that owns `index`, or -1 for the outer statement."""
    group = parents[index]
    while not _is_subquery(masked, group):
        group = parents[group]
    return group


def _level_text(masked: str, parents: List[int], group: int) -> str:
    """`masked` with everything not directly inside `group` blanked."""
    return "".join(ch if parents[i] == group else " " for i, ch in enumerate(masked))


# Tables

def _table_ref_at(masked: str, pos: int) -> Optional[TableRef]:
    paren = _OPEN_PAREN_RE.match(masked, pos)
    if paren:
        start = paren.end() - 1
        if not _SUBQUERY_START_RE.match(masked, start + 1):
            raise GuardViolation(INVALID_OPERATION, "Parenthesized table references are not supported.")
        alias = _DERIVED_ALIAS_RE.match(masked, _closing_paren(masked, start) + 1)
        return TableRef(None, alias.group(1).lower() if alias.group(1) else None, start)
    item = _TABLE_ITEM_RE.match(masked, pos)
    if item is None:
        return None
    alias = item.group(2)
    return TableRef(item.group(1).lower(), alias.lower() if alias else None, item.start(1))


def _table_refs(masked: str, parents: List[int]) -> List[TableRef]:
    """Every FROM/JOIN item in statement order, comma-separated lists included."""
    refs: List[TableRef] = []
    for m in _FROM_RE.finditer(masked):
        group = parents[m.start()]
        if not _is_subquery(masked, group):
            # EXTRACT(YEAR FROM col) and friends
            continue
        level = _level_text(masked, parents, group)
        clause_end = _FROM_END_RE.search(level, m.end())
        end = clause_end.start() if clause_end else len(level)
        starts = [m.end()] + [s.end() for s in _ITEM_START_RE.finditer(level, m.end(), end)]
        for start in starts:
            ref = _table_ref_at(masked, start)
            if ref is not None:
                refs.append(ref)
    return refs


def _cte_names(masked: str) -> Set[str]:
    return {m.group(1).lower() for m in _CTE_NAME_RE.finditer(masked)}


def extract_tables(masked: str) -> Tuple[str, ...]:
    """Ordered, de-duplicated table names referenced by the statement, CTEs excluded."""
    cte_names = _cte_names(masked)
    tables: List[str] = []
    for ref in _table_refs(masked, _paren_parents(masked)):
        if ref.name is None or ref.name in cte_names or ref.name in tables:
            continue
        tables.append(ref.name)
    return tuple(tables)


# Tenant filters

def _tenant_predicates(cleaned: str, masked: str) -> List[TenantPredicate]:
    predicates = []
    for regex, qualifier_group, value_group in ((_TENANT_LHS_RE, 1, 2), (_TENANT_RHS_RE, 2, 1)):
        for m in regex.finditer(masked):
            span = m.group(value_group)
            if span.startswith("'") and span[1:-1].strip():
                # Quotes from two different literals, not one value
                continue
            raw = cleaned[m.start(value_group):m.end(value_group)]
            if raw.startswith("'"):
                value = raw[1:-1].replace("''", "'")
            elif raw.startswith('"'):
                value = raw[1:-1]
            else:
                value = raw
            qualifier = m.group(qualifier_group)
            predicates.append(
                TenantPredicate(qualifier.lower() if qualifier else None, value, m.start(), m.end())
            )
    return predicates


def _joined_before(before: str) -> bool:
    if not _JOINED_BEFORE_RE.search(before):
        return False
    # `x BETWEEN a AND tenant_id = ...` belongs to the BETWEEN
    return not (before.upper().endswith("AND") and _OPEN_BETWEEN_RE.search(before[:-3]))


def _is_where_conjunct(masked: str, parents: List[int], scope: int, start: int, end: int) -> bool:
    """
    True when masked[start:end] is an AND-ed term of its scope's WHERE clause,
    reached through plain parentheses only, so it restricts every row.
    """
    group = parents[start]
    while True:
        level = _level_text(masked, parents, group)
        before = level[:start].rstrip()
        after = level[end:].lstrip()
        if before and not _joined_before(before):
            return False
        if not _JOINED_AFTER_RE.match(after):
            return False
        if group == scope:
            clauses = list(_CLAUSE_RE.finditer(level, 0, start))
            clause = clauses[-1] if clauses else None
            if clause is None or clause.group(1).upper() != "WHERE":
                return False
            following = _CLAUSE_RE.search(level, end)
            segment = level[clause.end():following.start() if following else len(level)]
            return not _DISJUNCTION_RE.search(segment)
        if _DISJUNCTION_RE.search(level):
            return False
        start, end = group, _closing_paren(masked, group) + 1
        group = parents[group]


def _check_tenant_filters(cleaned: str, masked: str, expected_tenant_id: str):
    predicates = _tenant_predicates(cleaned, masked)
    if any(p.value != expected_tenant_id for p in predicates):
        raise GuardViolation(INVALID_TENANT_ID, "Query references a tenant other than your own.")

    parents = _paren_parents(masked)
    filters = set()
    for p in predicates:
        scope = _scope_of(masked, parents, p.start)
        if _is_where_conjunct(masked, parents, scope, p.start, p.end):
            filters.add((scope, p.qualifier))

    by_scope: Dict[int, List[TableRef]] = {}
    for ref in _table_refs(masked, parents):
        by_scope.setdefault(_scope_of(masked, parents, ref.position), []).append(ref)

    cte_names = _cte_names(masked)
    for scope, refs in by_scope.items():
        for ref in refs:
            if ref.name is None or ref.name in cte_names:
                continue
            if (scope, ref.identifier) in filters:
                continue
            # An unqualified filter is only unambiguous next to a single table
            if len(refs) == 1 and (scope, None) in filters:
                continue
            raise GuardViolation(
                MISSING_TENANT_FILTER,
                f"Query must filter '{ref.identifier}' with "
                f"{ref.identifier}.{TENANT_COLUMN} = '{expected_tenant_id}' in its WHERE clause.",
            )


def _apply_limit(cleaned: str, masked: str, max_rows: int) -> Tuple[str, int]:
    m = _TRAILING_LIMIT_RE.search(masked)
    if m:
        limit = min(int(m.group(2)), max_rows)
        offset = f"{m.group(1)}, " if m.group(1) else ""
        return f"{cleaned[:m.start()]}LIMIT {offset}{limit}{m.group(3) or ''}", limit
    return f"{cleaned} LIMIT {max_rows}", max_rows


def guard_sql(
    sql: str,
    max_rows: int = DEFAULT_MAX_ROWS,
    expected_tenant_id: Optional[str] = None,
) -> GuardedSQL:
    if sql is None or not sql.strip():
        raise GuardViolation(INVALID_SQL_INPUT, "SQL query is empty.")

    # Dialects disagree on backslash escapes inside literals
    if "\\" in sql:
        raise GuardViolation(DANGEROUS_OPERATION, "Backslash escapes are not permitted.")

    cleaned, masked = _split_comments_and_literals(sql)
    cleaned = _TRAILING_SEMICOLONS_RE.sub("", cleaned)
    masked = _TRAILING_SEMICOLONS_RE.sub("", masked)
    if not masked:
        raise GuardViolation(INVALID_SQL_INPUT, "SQL query is empty.")

    if ";" in masked:
        raise GuardViolation(MULTI_STATEMENT, "Multiple SQL statements are not permitted.")

    for regex, label in _DANGEROUS_RES:
        if regex.search(masked):
            raise GuardViolation(DANGEROUS_OPERATION, f"Dangerous SQL operation detected: {label}.")

    tables = extract_tables(masked)

    if not tables and _SYSTEM_QUERY_RE.match(masked):
        if _SHOW_RE.match(masked):
            return GuardedSQL(sql=cleaned, metadata=GuardMetadata())
        limited, limit = _apply_limit(cleaned, masked, max_rows)
        return GuardedSQL(sql=limited, metadata=GuardMetadata(limit_applied=limit))

    if not _LEADING_KEYWORD_RE.match(masked):
        raise GuardViolation(INVALID_OPERATION, "Only SELECT queries are allowed.")

    for name in _cte_names(masked):
        if is_allowed_table(name):
            raise GuardViolation(INVALID_OPERATION, f"CTE name '{name}' shadows a table.")

    for table in tables:
        if not is_allowed_table(table):
            raise GuardViolation(DISALLOWED_TABLE, f"Table '{table}' is not available.")

    if expected_tenant_id and tables:
        _check_tenant_filters(cleaned, masked, expected_tenant_id)

    limited, limit = _apply_limit(cleaned, masked, max_rows)
    return GuardedSQL(sql=limited, metadata=GuardMetadata(tables_used=tables, limit_applied=limit))
