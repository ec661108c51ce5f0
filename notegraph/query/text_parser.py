"""
Parser for the textual unified query form.

    find task where Status = Done and (Priority = High or created > 7d)
        select name, fields.Status order by -created limit 20 offset 40

Clauses after ``find`` may appear in any order, each at most once.
Condition grammar (shared with the graph DSL):

    expr      := and_expr ('or' and_expr)*
    and_expr  := unary ('and' unary)*
    unary     := 'not' unary | '(' expr ')' | condition
    condition := path op value
               | path ['not'] 'exists'
               | path ['not'] 'in' '[' value (',' value)* ']'
    op        := = | != | > | < | >= | <= | ~

Unquoted values may span several words (``Owner = Ada Lovelace``); values
containing a keyword must be quoted (``Status = "In Progress"``).
"""
from typing import Any, Iterable, List, Optional, Type

from .ast import (
    QueryAST, WhereClause, WhereGroup, WhereNode, Operator, OrderBy,
    RelativeDate, WILDCARD,
)
from .dates import is_relative_date
from .errors import QueryParseError, _PositionedError
from .tokenizer import Token, TokenType, tokenize

CONDITION_KEYWORDS = {"and", "or", "not", "exists", "in"}
QUERY_KEYWORDS = CONDITION_KEYWORDS | {
    "find", "where", "select", "order", "by", "limit", "offset", "asc", "desc",
}


class ExpressionParser:
    """
    Token-stream parser with the shared condition grammar.

    Subclasses add the statement-level grammar.
    """

    error_class: Type[_PositionedError] = QueryParseError
    keywords: Iterable[str] = CONDITION_KEYWORDS

    def __init__(self, text: str):
        self.text = text
        self.tokens: List[Token] = tokenize(text, self.keywords, self.error_class)
        self.index = 0

    # ------------------------------------------------------------------
    # Token stream helpers
    # ------------------------------------------------------------------

    def current(self) -> Token:
        return self.tokens[self.index]

    def peek(self, offset: int = 1) -> Token:
        i = min(self.index + offset, len(self.tokens) - 1)
        return self.tokens[i]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        if token.type != TokenType.EOF:
            self.index += 1
        return token

    def at_keyword(self, *words: str) -> bool:
        token = self.current()
        return token.type == TokenType.KEYWORD and token.value in words

    def accept_keyword(self, *words: str) -> Optional[Token]:
        if self.at_keyword(*words):
            return self.advance()
        return None

    def accept(self, token_type: TokenType) -> Optional[Token]:
        if self.current().type == token_type:
            return self.advance()
        return None

    def error(self, message: str, token: Optional[Token] = None,
              expected: Optional[str] = None) -> _PositionedError:
        token = token or self.current()
        return self.error_class(
            f"{message}, got {token.describe()}",
            position=token.position,
            expected=expected,
            got=token.describe(),
        )

    def expect_keyword(self, word: str) -> Token:
        if not self.at_keyword(word):
            raise self.error(f"Expected {word.upper()}", expected=word.upper())
        return self.advance()

    def expect(self, token_type: TokenType, what: str) -> Token:
        if self.current().type != token_type:
            raise self.error(f"Expected {what}", expected=what)
        return self.advance()

    def expect_name(self, what: str) -> str:
        """An identifier or quoted string."""
        token = self.current()
        if token.type in (TokenType.IDENTIFIER, TokenType.STRING):
            self.advance()
            return str(token.value)
        raise self.error(f"Expected {what}", expected=what)

    def expect_int(self, what: str) -> int:
        token = self.current()
        if token.type != TokenType.NUMBER or not isinstance(token.value, int) or token.value < 0:
            raise self.error(f"Expected {what} (non-negative integer)", expected=what)
        self.advance()
        return token.value

    def expect_end(self) -> None:
        if self.current().type != TokenType.EOF:
            raise self.error("Unexpected token", expected="end of input")

    # ------------------------------------------------------------------
    # Paths and conditions
    # ------------------------------------------------------------------

    def parse_path(self, what: str = "field name") -> str:
        parts = [self.expect_name(what)]
        while self.current().type == TokenType.DOT:
            self.advance()
            parts.append(self.expect_name(what))
        return ".".join(parts)

    def parse_where(self) -> List[WhereNode]:
        """Parse a condition expression into an implicitly ANDed list."""
        node = self.parse_or()
        if isinstance(node, WhereGroup) and node.op == "and" and not node.negated:
            return list(node.items)
        return [node]

    def parse_or(self) -> WhereNode:
        items = [self.parse_and()]
        while self.accept_keyword("or"):
            items.append(self.parse_and())
        return items[0] if len(items) == 1 else WhereGroup("or", items)

    def parse_and(self) -> WhereNode:
        items = [self.parse_unary()]
        while self.accept_keyword("and"):
            items.append(self.parse_unary())
        return items[0] if len(items) == 1 else WhereGroup("and", items)

    def parse_unary(self) -> WhereNode:
        if self.accept_keyword("not"):
            node = self.parse_unary()
            node.negated = not node.negated
            return node
        if self.accept(TokenType.LPAREN):
            node = self.parse_or()
            self.expect(TokenType.RPAREN, "')'")
            return node
        return self.parse_condition()

    def parse_condition(self) -> WhereClause:
        field = self.parse_path()

        negated = bool(self.accept_keyword("not"))
        if self.accept_keyword("exists"):
            return WhereClause(field, Operator.EXISTS, not negated)
        if self.accept_keyword("in"):
            return WhereClause(field, Operator.IN, self.parse_list(), negated=negated)
        if negated:
            raise self.error("Expected EXISTS or IN after NOT", expected="EXISTS or IN")

        token = self.current()
        if token.type != TokenType.OPERATOR:
            raise self.error(f"Expected operator after '{field}'",
                             expected="= != > < >= <= ~")
        self.advance()
        op = Operator.from_string(str(token.value))
        value = self.parse_value()
        if op.is_range and isinstance(value, str) and is_relative_date(value):
            value = RelativeDate(value.lower())
        return WhereClause(field, op, value)

    def parse_list(self) -> List[Any]:
        self.expect(TokenType.LBRACKET, "'['")
        values = []
        if self.current().type != TokenType.RBRACKET:
            values.append(self.parse_value())
            while self.accept(TokenType.COMMA):
                values.append(self.parse_value())
        self.expect(TokenType.RBRACKET, "']'")
        return values

    def parse_value(self) -> Any:
        token = self.current()
        if token.type == TokenType.STRING:
            self.advance()
            return token.value
        if token.type == TokenType.NUMBER:
            if self.peek().type != TokenType.IDENTIFIER:
                self.advance()
                return token.value
        if token.type in (TokenType.IDENTIFIER, TokenType.NUMBER):
            words = []
            while self.current().type in (TokenType.IDENTIFIER, TokenType.NUMBER):
                words.append(self.advance().text)
            return " ".join(words)
        raise self.error("Expected value", expected="value")


class QueryTextParser(ExpressionParser):
    """Parser for ``find ... where ... select ... order by ... limit ... offset ...``."""

    keywords = QUERY_KEYWORDS

    def parse(self) -> QueryAST:
        self.expect_keyword("find")
        ast = QueryAST(find=self._parse_target())

        seen = set()
        while self.current().type != TokenType.EOF:
            token = self.current()
            if token.type != TokenType.KEYWORD or token.value not in (
                    "where", "select", "order", "limit", "offset"):
                raise self.error("Unexpected token",
                                 expected="WHERE, SELECT, ORDER BY, LIMIT or OFFSET")
            if token.value in seen:
                raise self.error(f"Duplicate {str(token.value).upper()} clause")
            seen.add(token.value)
            self.advance()

            if token.value == "where":
                ast.where = self.parse_where()
            elif token.value == "select":
                ast.select = self._parse_select()
            elif token.value == "order":
                self.expect_keyword("by")
                ast.order_by = self._parse_order()
            elif token.value == "limit":
                ast.limit = self.expect_int("limit")
            elif token.value == "offset":
                ast.offset = self.expect_int("offset")

        return ast

    def _parse_target(self) -> str:
        if self.accept(TokenType.STAR):
            return WILDCARD
        return self.expect_name("tag name or *")

    def _parse_select(self) -> List[str]:
        if self.accept(TokenType.STAR):
            return ["*"]
        paths = [self.parse_path()]
        while self.accept(TokenType.COMMA):
            paths.append(self.parse_path())
        return paths

    def _parse_order(self) -> OrderBy:
        desc = bool(self.accept(TokenType.MINUS))
        field = self.parse_path()
        if self.accept_keyword("desc"):
            desc = True
        elif self.accept_keyword("asc"):
            desc = False
        return OrderBy(field=field, desc=desc)


def parse_query_string(text: str) -> QueryAST:
    """
    Parse a textual unified query.

    Raises:
        QueryParseError: on malformed input
    """
    return QueryTextParser(text).parse()
