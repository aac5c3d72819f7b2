"""SQL tokenization and statement shape extraction.

Statements are lexed with sqlparse and walked by a small clause grammar:

* parenthesised ``SELECT``/``WITH`` blocks open a nested scope;
* within a scope the top-level tokens are split into clause segments
  (``FROM``, ``JOIN``, ``ON``, ``WHERE``, ``ORDER BY`` ...);
* ``FROM``/``JOIN`` segments yield table references and the alias map used
  to resolve qualified columns;
* ``WHERE``/``HAVING`` segments yield ``column <op> ...`` predicates,
  ``ON``/``USING`` segments yield join equalities, ``ORDER BY``/``GROUP BY``
  segments yield plain column lists.

The resulting ``StatementShape`` feeds the pattern tracker, the rewrite
layer and the complexity score. The rewrite helpers at the bottom of the
module edit the lexer's token list, never the raw string.

Example:
    >>> shape = analyze_statement(
    ...     "SELECT o.id FROM orders o JOIN customers c ON o.customer_id = c.id "
    ...     "WHERE o.status = %s ORDER BY o.created_at"
    ... )
    >>> shape.predicates
    (Predicate(table='orders', column='status', operator='='),)
    >>> shape.joins[0].right_table
    'customers'
"""

import functools
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import sqlparse
from sqlparse import tokens as T

# Keywords that carry statement structure. Any other word sqlparse reports as
# a keyword (STATUS, TYPE, COUNT without parentheses ...) is treated as a name.
RESERVED_KEYWORDS = frozenset({
    "ALL", "AND", "ANY", "AS", "ASC", "BETWEEN", "BY", "CASE", "DELETE", "DESC",
    "DISTINCT", "DIV", "ELSE", "END", "ESCAPE", "EXCEPT", "EXISTS", "FALSE",
    "FETCH", "FOR", "FORCE", "FROM", "HAVING", "IGNORE", "IN", "INDEX",
    "INSERT", "INTERSECT", "INTERVAL", "INTO", "IS", "JOIN", "KEY", "LIKE",
    "LIMIT", "LOCK", "MOD", "NOT", "NULL", "OFFSET", "ON", "OR", "REGEXP", "REPLACE",
    "RETURNING", "SELECT", "SET", "SOME", "THEN", "TRUE", "UNION", "UPDATE",
    "USE", "USING", "VALUE", "VALUES", "WHEN", "WHERE", "WINDOW", "WITH", "XOR",
})

CLAUSE_KEYWORDS = frozenset({
    "SELECT", "FROM", "WHERE", "GROUP BY", "ORDER BY", "HAVING", "LIMIT",
    "OFFSET", "ON", "USING", "SET", "VALUES", "VALUE", "INTO", "UPDATE",
    "DELETE", "INSERT", "REPLACE", "RETURNING", "FETCH", "UNION", "UNION ALL",
    "INTERSECT", "EXCEPT", "WINDOW", "FOR", "LOCK",
})

INDEX_HINT_WORDS = frozenset({"USE", "FORCE", "IGNORE"})

STATEMENT_KEYWORDS = ("SELECT", "INSERT", "UPDATE", "DELETE", "REPLACE")

_ORDER_SUFFIX_WORDS = frozenset({"ASC", "DESC", "WITH", "ROLLUP"})


class TokenKind(str, Enum):
    """Coarse token classes used by the clause grammar."""

    KEYWORD = "keyword"
    IDENTIFIER = "identifier"
    PLACEHOLDER = "placeholder"
    COMPARISON = "comparison"
    OPERATOR = "operator"
    WILDCARD = "wildcard"
    PUNCTUATION = "punctuation"
    LITERAL = "literal"
    SUBQUERY = "subquery"


@dataclass(frozen=True)
class SqlToken:
    """One significant token.

    Attributes:
        kind: Token class
        value: Normalized text; keywords are upper case and single spaced,
            identifiers are unquoted
        position: Index of the token in ``TokenizedStatement.raw``
    """

    kind: TokenKind
    value: str
    position: int

    def is_keyword(self, *names: str) -> bool:
        return self.kind is TokenKind.KEYWORD and (not names or self.value in names)

    def is_punctuation(self, char: str) -> bool:
        return self.kind is TokenKind.PUNCTUATION and self.value == char

    @property
    def is_word(self) -> bool:
        return self.kind in (TokenKind.IDENTIFIER, TokenKind.KEYWORD)


@dataclass(frozen=True)
class TokenizedStatement:
    """Lexer output for a SQL string.

    ``raw`` holds every lexer token of the input (whitespace and comments
    included) so that ``render()`` reproduces the text exactly. ``tokens``
    holds the significant tokens of the first statement.
    """

    sql: str
    raw: Tuple[str, ...]
    tokens: Tuple[SqlToken, ...]
    statement_count: int

    def render(self) -> str:
        return "".join(self.raw)


@dataclass(frozen=True)
class ColumnRef:
    table: str
    column: str


@dataclass(frozen=True)
class Predicate:
    table: str
    column: str
    operator: str


@dataclass(frozen=True)
class JoinCondition:
    left_table: str
    left_column: str
    right_table: str
    right_column: str
    join_type: str = "INNER"


@dataclass(frozen=True)
class TableRef:
    """A table reference in the outermost ``FROM``/``JOIN`` list."""

    table: str
    alias: Optional[str]
    end_position: int
    has_hint: bool = False


@dataclass(frozen=True)
class StatementShape:
    """Indexable shape of one SQL statement.

    Attributes:
        sql: Original statement text
        statement_type: Leading statement keyword (SELECT, UPDATE ...)
        tables: Base tables referenced, outermost scope first
        predicates: ``column <op> ...`` conditions from WHERE/HAVING
        joins: Column equalities between two tables
        order_by: Plain ORDER BY columns
        group_by: Plain GROUP BY columns
        wrapped_columns: Columns wrapped in a function that is compared in WHERE
        table_refs: Outermost FROM/JOIN references with token positions
        select_star: Unqualified ``*`` in the outermost select list
        has_limit: Outermost scope has LIMIT or FETCH
        locking_clause: Ends in FOR UPDATE, FOR SHARE or LOCK IN SHARE MODE
        limit_after_locking: A LIMIT follows the locking clause, which MySQL rejects
        function_in_where: A function call result is compared in WHERE
    """

    sql: str
    statement_type: str = "UNKNOWN"
    tables: Tuple[str, ...] = ()
    predicates: Tuple[Predicate, ...] = ()
    joins: Tuple[JoinCondition, ...] = ()
    order_by: Tuple[ColumnRef, ...] = ()
    group_by: Tuple[ColumnRef, ...] = ()
    wrapped_columns: Tuple[ColumnRef, ...] = ()
    table_refs: Tuple[TableRef, ...] = ()
    select_star: bool = False
    has_limit: bool = False
    locking_clause: bool = False
    limit_after_locking: bool = False
    has_from: bool = False
    has_where: bool = False
    function_in_where: bool = False
    join_count: int = 0
    or_count: int = 0
    function_count: int = 0
    subquery_count: int = 0
    parenthesis_count: int = 0
    placeholder_count: int = 0
    select_count: int = 0
    from_count: int = 0
    statement_count: int = 0

    @property
    def main_table(self) -> Optional[str]:
        return self.tables[0] if self.tables else None

    @property
    def is_select(self) -> bool:
        return self.statement_type == "SELECT"


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "`\"":
        return value[1:-1].replace(value[0] * 2, value[0])
    if len(value) >= 2 and value[0] == "[" and value[-1] == "]":
        return value[1:-1]
    return value


def _classify(tok: "sqlparse.sql.Token", position: int) -> SqlToken:
    ttype = tok.ttype
    value = tok.value

    if ttype in T.Name.Placeholder:
        return SqlToken(TokenKind.PLACEHOLDER, value, position)

    if ttype in T.Keyword:
        word = " ".join(value.upper().split())
        structural = (
            word in RESERVED_KEYWORDS
            or " " in word
            or word.endswith("JOIN")
            or ttype in T.Keyword.DML
            or ttype in T.Keyword.DDL
            or ttype in T.Keyword.CTE
            or ttype in T.Keyword.Order
        )
        if structural:
            return SqlToken(TokenKind.KEYWORD, word, position)
        return SqlToken(TokenKind.IDENTIFIER, value, position)

    if ttype in T.Name:
        return SqlToken(TokenKind.IDENTIFIER, _unquote(value), position)
    if ttype in T.Operator.Comparison:
        return SqlToken(TokenKind.COMPARISON, " ".join(value.upper().split()), position)
    if ttype in T.Operator or ttype in T.Assignment:
        return SqlToken(TokenKind.OPERATOR, value, position)
    if ttype in T.Wildcard:
        return SqlToken(TokenKind.WILDCARD, value, position)
    if ttype in T.Punctuation:
        return SqlToken(TokenKind.PUNCTUATION, value, position)

    # MySQL reads double-quoted text as a string literal
    return SqlToken(TokenKind.LITERAL, value, position)


@functools.lru_cache(maxsize=512)
def tokenize(sql: str) -> TokenizedStatement:
    """Lex a SQL string.

    Args:
        sql: One or more SQL statements

    Returns:
        TokenizedStatement whose significant tokens are those of the first
        non-empty statement
    """
    raw: List[str] = []
    significant: List[SqlToken] = []
    statement_count = 0

    for statement in sqlparse.parse(sql or ""):
        statement_tokens: List[SqlToken] = []
        for tok in statement.flatten():
            position = len(raw)
            raw.append(tok.value)
            if tok.is_whitespace or tok.ttype in T.Comment:
                continue
            statement_tokens.append(_classify(tok, position))

        if any(not t.is_punctuation(";") for t in statement_tokens):
            statement_count += 1
            if not significant:
                significant = statement_tokens

    return TokenizedStatement(
        sql=sql,
        raw=tuple(raw),
        tokens=tuple(significant),
        statement_count=statement_count,
    )


def _matching_paren(tokens: Sequence[SqlToken], start: int) -> int:
    """Index of the ``)`` closing the ``(`` at ``start``, or ``len(tokens)``."""
    depth = 0
    for i in range(start, len(tokens)):
        if tokens[i].is_punctuation("("):
            depth += 1
        elif tokens[i].is_punctuation(")"):
            depth -= 1
            if depth == 0:
                return i
    return len(tokens)


def _split_commas(tokens: Sequence[SqlToken]) -> List[List[SqlToken]]:
    items: List[List[SqlToken]] = [[]]
    depth = 0
    for tok in tokens:
        if tok.is_punctuation("("):
            depth += 1
        elif tok.is_punctuation(")"):
            depth = max(0, depth - 1)
        elif depth == 0 and tok.is_punctuation(","):
            items.append([])
            continue
        items[-1].append(tok)
    return [item for item in items if item]


def _is_clause_keyword(word: str) -> bool:
    return word in CLAUSE_KEYWORDS or word.endswith("JOIN")


def _join_type(keyword: str) -> str:
    first = keyword.split()[0]
    if first in ("LEFT", "RIGHT", "FULL", "CROSS", "NATURAL"):
        return first
    return "INNER"


@dataclass
class _Scope:
    tokens: List[SqlToken] = field(default_factory=list)
    parent: Optional["_Scope"] = None
    children: List["_Scope"] = field(default_factory=list)
    aliases: Dict[str, Optional[str]] = field(default_factory=dict)
    tables: List[str] = field(default_factory=list)
    derived_names: List[str] = field(default_factory=list)

    def segments(self) -> List[Tuple[Optional[str], List[SqlToken]]]:
        """Split top-level tokens at clause keywords."""
        segments: List[Tuple[Optional[str], List[SqlToken]]] = []
        keyword: Optional[str] = None
        current: List[SqlToken] = []
        depth = 0
        for tok in self.tokens:
            if tok.is_punctuation("("):
                depth += 1
            elif tok.is_punctuation(")"):
                depth = max(0, depth - 1)
            elif depth == 0 and tok.kind is TokenKind.KEYWORD and _is_clause_keyword(tok.value):
                segments.append((keyword, current))
                keyword, current = tok.value, []
                continue
            current.append(tok)
        segments.append((keyword, current))
        return segments

    def is_derived(self, name: str) -> bool:
        scope: Optional[_Scope] = self
        while scope is not None:
            if name.lower() in scope.derived_names:
                return True
            scope = scope.parent
        return False

    def resolve(self, qualifier: Optional[str], column: str) -> Optional[str]:
        """Resolve a column reference to its base table."""
        if qualifier is None:
            return self.tables[0] if self.tables else None

        scope: Optional[_Scope] = self
        key = qualifier.lower()
        while scope is not None:
            if key in scope.aliases:
                return scope.aliases[key]
            scope = scope.parent
        return None


def _build_scope(tokens: Sequence[SqlToken], parent: Optional[_Scope] = None) -> _Scope:
    scope = _Scope(parent=parent)
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if (
            tok.is_punctuation("(")
            and i + 1 < len(tokens)
            and tokens[i + 1].is_keyword("SELECT", "WITH")
        ):
            end = _matching_paren(tokens, i)
            scope.children.append(_build_scope(tokens[i + 1:end], scope))
            scope.tokens.append(SqlToken(TokenKind.SUBQUERY, "(subquery)", tok.position))
            i = end + 1
            continue
        scope.tokens.append(tok)
        i += 1
    return scope


def _column_ref_at(tokens: Sequence[SqlToken], i: int) -> Optional[Tuple[Optional[str], str, int]]:
    """Parse ``[schema.][table.]column`` at ``i``.

    Returns:
        ``(qualifier, column, next_index)`` or None when ``i`` does not start
        a plain column reference
    """
    if i >= len(tokens) or tokens[i].kind is not TokenKind.IDENTIFIER:
        return None
    if i > 0 and tokens[i - 1].is_punctuation("."):
        return None
    if i + 1 < len(tokens) and tokens[i + 1].is_punctuation("("):
        return None

    if i + 1 < len(tokens) and tokens[i + 1].is_punctuation("."):
        if i + 2 >= len(tokens) or not tokens[i + 2].is_word:
            return None
        if i + 4 < len(tokens) and tokens[i + 3].is_punctuation(".") and tokens[i + 4].is_word:
            return tokens[i + 2].value, tokens[i + 4].value, i + 5
        return tokens[i].value, tokens[i + 2].value, i + 3

    return None, tokens[i].value, i + 1


def _operator_at(tokens: Sequence[SqlToken], k: int) -> Tuple[Optional[str], int]:
    if k >= len(tokens):
        return None, k
    tok = tokens[k]
    if tok.kind is TokenKind.COMPARISON:
        return tok.value, k + 1
    if tok.is_keyword("IN", "BETWEEN", "IS", "LIKE", "REGEXP"):
        return tok.value, k + 1
    if tok.is_keyword("NOT") and k + 1 < len(tokens) and tokens[k + 1].is_keyword("IN", "BETWEEN", "LIKE", "REGEXP"):
        return f"NOT {tokens[k + 1].value}", k + 2
    return None, k


@dataclass
class _ShapeBuilder:
    tables: List[str] = field(default_factory=list)
    predicates: List[Predicate] = field(default_factory=list)
    joins: List[JoinCondition] = field(default_factory=list)
    order_by: List[ColumnRef] = field(default_factory=list)
    group_by: List[ColumnRef] = field(default_factory=list)
    wrapped_columns: List[ColumnRef] = field(default_factory=list)
    table_refs: List[TableRef] = field(default_factory=list)
    select_star: bool = False
    has_limit: bool = False
    has_from: bool = False
    has_where: bool = False
    function_in_where: bool = False
    or_count: int = 0

    def add_table(self, table: str) -> None:
        if table not in self.tables:
            self.tables.append(table)


def _parse_table_item(scope: _Scope, item: Sequence[SqlToken]) -> Optional[TableRef]:
    """Parse ``[schema.]table [AS] alias [index hint]`` and register it."""
    if not item:
        return None

    first = item[0]
    if first.kind is TokenKind.SUBQUERY:
        i = 1
        if i < len(item) and item[i].is_keyword("AS"):
            i += 1
        if i < len(item) and item[i].kind is TokenKind.IDENTIFIER:
            scope.aliases[item[i].value.lower()] = None
        return None

    if first.kind is not TokenKind.IDENTIFIER:
        return None

    name_tok = first
    i = 1
    if i + 1 < len(item) and item[i].is_punctuation(".") and item[i + 1].is_word:
        name_tok = item[i + 1]
        i += 2

    alias_tok: Optional[SqlToken] = None
    if i < len(item) and item[i].is_keyword("AS"):
        i += 1
    if (
        i < len(item)
        and item[i].kind is TokenKind.IDENTIFIER
        and item[i].value.upper() not in INDEX_HINT_WORDS
    ):
        alias_tok = item[i]
        i += 1

    has_hint = i < len(item) and item[i].is_word and item[i].value.upper() in INDEX_HINT_WORDS
    table = name_tok.value
    alias = alias_tok.value if alias_tok else None

    if scope.is_derived(table):
        scope.aliases[(alias or table).lower()] = None
        return None

    scope.aliases[table.lower()] = table
    if alias:
        scope.aliases[alias.lower()] = table
    if table not in scope.tables:
        scope.tables.append(table)

    return TableRef(
        table=table,
        alias=alias,
        end_position=(alias_tok or name_tok).position,
        has_hint=has_hint,
    )


def _register_ctes(scope: _Scope) -> None:
    """Record ``WITH name [(cols)] AS (subquery)`` names as derived tables."""
    tokens = scope.tokens
    if not tokens or not tokens[0].is_keyword("WITH"):
        return

    i = 1
    if i < len(tokens) and tokens[i].value.upper() == "RECURSIVE":
        i += 1
    while i < len(tokens) and tokens[i].kind is TokenKind.IDENTIFIER:
        scope.derived_names.append(tokens[i].value.lower())
        i += 1
        if i < len(tokens) and tokens[i].is_punctuation("("):
            i = _matching_paren(tokens, i) + 1
        if i < len(tokens) and tokens[i].is_keyword("AS"):
            i += 1
        if i < len(tokens) and tokens[i].kind is TokenKind.SUBQUERY:
            i += 1
        if i < len(tokens) and tokens[i].is_punctuation(","):
            i += 1
            continue
        break


def _scan_conditions(
    scope: _Scope,
    tokens: Sequence[SqlToken],
    builder: _ShapeBuilder,
    *,
    join_type: Optional[str] = None,
) -> None:
    """Collect predicates (WHERE/HAVING) or join equalities (ON)."""
    in_where = join_type is None
    i = 0
    while i < len(tokens):
        tok = tokens[i]

        if tok.kind is TokenKind.IDENTIFIER and i + 1 < len(tokens) and tokens[i + 1].is_punctuation("("):
            end = _matching_paren(tokens, i + 1)
            operator, _ = _operator_at(tokens, end + 1)
            if in_where and operator is not None:
                builder.function_in_where = True
                inner = tokens[i + 2:end]
                j = 0
                while j < len(inner):
                    ref = _column_ref_at(inner, j)
                    if ref is None:
                        j += 1
                        continue
                    table = scope.resolve(ref[0], ref[1])
                    if table:
                        builder.wrapped_columns.append(ColumnRef(table, ref[1]))
                    j = ref[2]
            i = end + 1
            continue

        ref = _column_ref_at(tokens, i)
        if ref is None:
            i += 1
            continue

        qualifier, column, k = ref
        operator, after = _operator_at(tokens, k)
        if operator is None:
            i = k
            continue

        table = scope.resolve(qualifier, column)
        if operator in ("=", "<=>"):
            right = _column_ref_at(tokens, after)
            if right is not None and right[0] is not None and right[0] != qualifier:
                right_table = scope.resolve(right[0], right[1])
                if table and right_table:
                    builder.joins.append(
                        JoinCondition(table, column, right_table, right[1], join_type or "INNER")
                    )
                    i = right[2]
                    continue

        if in_where and table:
            builder.predicates.append(Predicate(table, column, operator))
        i = after


def _collect_column_list(scope: _Scope, tokens: Sequence[SqlToken], out: List[ColumnRef]) -> None:
    """Collect plain column references from an ORDER BY / GROUP BY list."""
    for item in _split_commas(tokens):
        ref = _column_ref_at(item, 0)
        if ref is None:
            continue
        rest = item[ref[2]:]
        if any(not t.is_word or t.value.split()[0].upper() not in _ORDER_SUFFIX_WORDS for t in rest):
            continue
        table = scope.resolve(ref[0], ref[1])
        if table:
            out.append(ColumnRef(table, ref[1]))


def _has_bare_wildcard(tokens: Sequence[SqlToken]) -> bool:
    depth = 0
    previous: Optional[SqlToken] = None
    for tok in tokens:
        if tok.is_punctuation("("):
            depth += 1
        elif tok.is_punctuation(")"):
            depth = max(0, depth - 1)
        elif depth == 0 and tok.kind is TokenKind.WILDCARD:
            if previous is None or previous.is_punctuation(",") or previous.is_keyword("DISTINCT", "ALL"):
                return True
        previous = tok
    return False


def _analyze_scope(scope: _Scope, builder: _ShapeBuilder, *, outermost: bool) -> None:
    _register_ctes(scope)
    segments = scope.segments()

    # Table references first so that every condition can be resolved
    first_keyword = next((kw for kw, _ in segments if kw is not None), None)
    for keyword, tokens in segments:
        if keyword == "FROM":
            builder.has_from = builder.has_from or outermost
            for item in _split_commas(tokens):
                ref = _parse_table_item(scope, item)
                if ref and outermost:
                    builder.table_refs.append(ref)
        elif keyword is not None and keyword.endswith("JOIN"):
            ref = _parse_table_item(scope, tokens)
            if ref and outermost:
                builder.table_refs.append(ref)
        elif keyword == "INTO" or (keyword == "UPDATE" and keyword == first_keyword):
            for item in _split_commas(tokens) if keyword == "UPDATE" else [tokens]:
                _parse_table_item(scope, item[:3] if keyword == "INTO" else item)

    for table in scope.tables:
        builder.add_table(table)

    previous_table: Optional[str] = scope.tables[0] if scope.tables else None
    current_table: Optional[str] = previous_table
    join_type = "INNER"

    for keyword, tokens in segments:
        if keyword is None:
            continue
        if keyword.endswith("JOIN"):
            join_type = _join_type(keyword)
            previous_table = current_table
            if tokens and tokens[0].kind is TokenKind.IDENTIFIER:
                current_table = _joined_table(scope, tokens)
            else:
                current_table = None
        elif keyword == "ON":
            _scan_conditions(scope, tokens, builder, join_type=join_type)
        elif keyword == "USING":
            for item in _split_commas(tokens[1:-1] if tokens and tokens[0].is_punctuation("(") else tokens):
                if len(item) == 1 and item[0].kind is TokenKind.IDENTIFIER and previous_table and current_table:
                    builder.joins.append(
                        JoinCondition(previous_table, item[0].value, current_table, item[0].value, join_type)
                    )
        elif keyword in ("WHERE", "HAVING"):
            if keyword == "WHERE" and outermost:
                builder.has_where = True
                builder.or_count += sum(1 for t in tokens if t.is_keyword("OR"))
            _scan_conditions(scope, tokens, builder)
        elif keyword == "ORDER BY":
            _collect_column_list(scope, tokens, builder.order_by)
        elif keyword == "GROUP BY":
            _collect_column_list(scope, tokens, builder.group_by)
        elif keyword == "SELECT" and outermost:
            builder.select_star = builder.select_star or _has_bare_wildcard(tokens)
        elif keyword in ("LIMIT", "FETCH") and outermost:
            builder.has_limit = True

    for child in scope.children:
        _analyze_scope(child, builder, outermost=False)


def _joined_table(scope: _Scope, tokens: Sequence[SqlToken]) -> Optional[str]:
    """Base table introduced by a JOIN segment."""
    first = tokens[0]
    if len(tokens) > 2 and tokens[1].is_punctuation(".") and tokens[2].is_word:
        return scope.resolve(tokens[2].value, "")
    return scope.resolve(first.value, "")


def _locking_clause_index(tokens: Sequence[SqlToken]) -> Optional[int]:
    """Index of a top-level ``FOR UPDATE|SHARE`` or ``LOCK IN SHARE MODE``."""
    depth = 0
    for i, tok in enumerate(tokens[:-1]):
        if tok.is_punctuation("("):
            depth += 1
        elif tok.is_punctuation(")"):
            depth = max(0, depth - 1)
        elif depth == 0:
            following = tokens[i + 1].value.upper()
            if tok.is_keyword("FOR") and following in ("UPDATE", "SHARE"):
                return i
            if tok.is_keyword("LOCK") and following == "IN":
                return i
    return None


def _statement_type(scope: _Scope) -> str:
    if not scope.tokens:
        return "UNKNOWN"
    first = scope.tokens[0]
    if first.kind is TokenKind.SUBQUERY:
        return "SELECT"
    if first.is_keyword("WITH"):
        depth = 0
        for tok in scope.tokens:
            if tok.is_punctuation("("):
                depth += 1
            elif tok.is_punctuation(")"):
                depth = max(0, depth - 1)
            elif depth == 0 and tok.is_keyword(*STATEMENT_KEYWORDS):
                return tok.value
        return "SELECT"
    return first.value.upper() if first.is_word else "UNKNOWN"


@functools.lru_cache(maxsize=512)
def analyze_statement(sql: str) -> StatementShape:
    """Extract the indexable shape of a SQL statement.

    Args:
        sql: SQL text; only the first statement is analysed

    Returns:
        Immutable StatementShape
    """
    tokenized = tokenize(sql)
    tokens = tokenized.tokens
    root = _build_scope(tokens)
    builder = _ShapeBuilder()
    _analyze_scope(root, builder, outermost=True)

    function_count = 0
    for i, tok in enumerate(tokens[:-1]):
        if (
            tok.kind is TokenKind.IDENTIFIER
            and tokens[i + 1].is_punctuation("(")
            and not (i > 0 and tokens[i - 1].is_keyword("INTO", "TABLE", "UPDATE"))
        ):
            function_count += 1

    lock_at = _locking_clause_index(tokens)

    subquery_count = sum(
        1 for i, tok in enumerate(tokens[:-1])
        if tok.is_punctuation("(") and tokens[i + 1].is_keyword("SELECT", "WITH")
    )

    return StatementShape(
        sql=sql,
        statement_type=_statement_type(root),
        tables=tuple(builder.tables),
        predicates=tuple(builder.predicates),
        joins=tuple(builder.joins),
        order_by=tuple(builder.order_by),
        group_by=tuple(builder.group_by),
        wrapped_columns=tuple(builder.wrapped_columns),
        table_refs=tuple(builder.table_refs),
        select_star=builder.select_star,
        has_limit=builder.has_limit,
        locking_clause=lock_at is not None,
        limit_after_locking=lock_at is not None and any(t.is_keyword("LIMIT") for t in tokens[lock_at:]),
        has_from=builder.has_from,
        has_where=builder.has_where,
        function_in_where=builder.function_in_where,
        join_count=sum(1 for t in tokens if t.kind is TokenKind.KEYWORD and t.value.endswith("JOIN")),
        or_count=builder.or_count,
        function_count=function_count,
        subquery_count=subquery_count,
        parenthesis_count=sum(1 for t in tokens if t.is_punctuation("(")),
        placeholder_count=sum(1 for t in tokens if t.kind is TokenKind.PLACEHOLDER),
        select_count=sum(1 for t in tokens if t.is_keyword("SELECT")),
        from_count=sum(1 for t in tokens if t.is_keyword("FROM")),
        statement_count=tokenized.statement_count,
    )


def replace_count_star(sql: str) -> Tuple[str, int]:
    """Rewrite every ``COUNT(*)`` to ``COUNT(1)``.

    Returns:
        ``(rewritten_sql, replacements)``
    """
    tokenized = tokenize(sql)
    raw = list(tokenized.raw)
    tokens = tokenized.tokens
    replaced = 0
    for i in range(len(tokens) - 3):
        if (
            tokens[i].is_word
            and tokens[i].value.upper() == "COUNT"
            and tokens[i + 1].is_punctuation("(")
            and tokens[i + 2].kind is TokenKind.WILDCARD
            and tokens[i + 3].is_punctuation(")")
        ):
            raw[tokens[i + 2].position] = "1"
            replaced += 1
    return "".join(raw), replaced


def append_limit(sql: str, limit: int) -> str:
    """Append ``LIMIT <limit>`` after the last significant token.

    A trailing ``;`` and any trailing whitespace or comments stay in place.
    A trailing locking clause (``FOR UPDATE``, ``LOCK IN SHARE MODE``) must
    follow LIMIT, so the clause is inserted in front of it instead.
    """
    tokenized = tokenize(sql)
    tokens = tokenized.tokens
    if not tokens:
        return sql

    raw = tokenized.raw
    lock_at = _locking_clause_index(tokens)
    if lock_at is not None:
        insert_at = tokens[lock_at].position
        return "".join(raw[:insert_at]) + f"LIMIT {int(limit)} " + "".join(raw[insert_at:])

    last = tokens[-1]
    if last.is_punctuation(";") and len(tokens) > 1:
        last = tokens[-2]

    insert_at = last.position + 1
    return "".join(raw[:insert_at]) + f" LIMIT {int(limit)}" + "".join(raw[insert_at:])


def insert_index_hint(sql: str, table: str, index_names: Sequence[str]) -> Optional[str]:
    """Place ``USE INDEX (...)`` after the first reference to ``table``.

    The hint goes after the table name and its alias. References that already
    carry an index hint are left alone.

    Returns:
        Rewritten SQL, or None when the table has no eligible reference
    """
    if not index_names:
        return None

    shape = analyze_statement(sql)
    ref = next((r for r in shape.table_refs if r.table == table and not r.has_hint), None)
    if ref is None:
        return None

    raw = tokenize(sql).raw
    insert_at = ref.end_position + 1
    hint = f" USE INDEX ({', '.join(index_names)})"
    return "".join(raw[:insert_at]) + hint + "".join(raw[insert_at:])
