"""
Parser for the graph query DSL.

Grammar (keywords are case-insensitive):

    query  := FIND target [WHERE expr] [DEPTH n] step* [RETURN items] [LIMIT n]
    target := '*' | name
    step   := CONNECTED TO target [VIA edge] [DEPTH n] [WHERE expr]
            | ('->' | '<-') edge [TO target] [DEPTH n] [WHERE expr]
    items  := '*' | item (',' item)*
    item   := (COUNT | SUM | AVG) '(' ('*' | path) ')' [AS name]
            | path [AS name]

CONNECTED TO steps follow their edge in both directions, so the VIA field
may belong to either tag. A DEPTH right after the FIND clause is the
default for every step that doesn't carry its own. The first syntax
error aborts the parse.
"""
from typing import List

from .errors import GraphParseError
from .graph_ast import (
    GraphAST, NodePredicate, TraversalStep, ReturnItem,
    BOTH, RETURN_FUNCTIONS,
)
from .ast import WILDCARD
from .text_parser import ExpressionParser, CONDITION_KEYWORDS
from .tokenizer import TokenType

GRAPH_KEYWORDS = CONDITION_KEYWORDS | {
    "find", "where", "connected", "to", "via", "depth", "return", "limit", "as",
    "count", "sum", "avg",
}


class GraphQueryParser(ExpressionParser):
    """Recursive-descent parser producing a GraphAST."""

    error_class = GraphParseError
    keywords = GRAPH_KEYWORDS

    def parse(self) -> GraphAST:
        self.expect_keyword("find")
        ast = GraphAST(start=self._parse_target())

        if self.accept_keyword("where"):
            ast.start_where = self.parse_where()
        if self.accept_keyword("depth"):
            ast.depth = self._parse_depth()

        while self.at_keyword("connected") or self.current().type == TokenType.ARROW:
            ast.steps.append(self._parse_step())

        if self.accept_keyword("return"):
            ast.return_items = self._parse_return()
        if self.accept_keyword("limit"):
            ast.limit = self.expect_int("LIMIT value")

        if self.current().type != TokenType.EOF:
            raise self.error("Unexpected token",
                             expected="CONNECTED TO, ->, <-, RETURN, LIMIT or end of input")
        return ast

    def _parse_target(self) -> NodePredicate:
        if self.accept(TokenType.STAR):
            return NodePredicate(WILDCARD)
        return NodePredicate(self.expect_name("tag name or *"))

    def _parse_depth(self) -> int:
        token = self.current()
        depth = self.expect_int("DEPTH value")
        if depth < 1:
            raise self.error("DEPTH must be at least 1", token=token)
        return depth

    def _parse_step(self) -> TraversalStep:
        step = TraversalStep()

        if self.accept_keyword("connected"):
            self.expect_keyword("to")
            step.direction = BOTH
            step.target = self._parse_target()
            if self.accept_keyword("via"):
                step.edge = self.expect_name("field name after VIA")
        else:
            arrow = self.advance()
            step.direction = str(arrow.value)
            step.edge = self.expect_name("edge name after arrow")
            if self.accept_keyword("to"):
                step.target = self._parse_target()

        if self.accept_keyword("depth"):
            step.depth = self._parse_depth()
        if self.accept_keyword("where"):
            step.where = self.parse_where()
        if step.depth is None and self.accept_keyword("depth"):
            step.depth = self._parse_depth()

        return step

    def _parse_return(self) -> List[ReturnItem]:
        if self.accept(TokenType.STAR):
            return [ReturnItem("*")]

        items = [self._parse_return_item()]
        while self.accept(TokenType.COMMA):
            items.append(self._parse_return_item())
        return items

    def _parse_return_item(self) -> ReturnItem:
        if self.at_keyword(*RETURN_FUNCTIONS):
            function = str(self.advance().value)
            self.expect(TokenType.LPAREN, "'('")
            if self.accept(TokenType.STAR):
                path = "*"
            else:
                path = self.parse_path("field or tag name")
            self.expect(TokenType.RPAREN, "')'")
            item = ReturnItem(path=path, function=function)
        elif self.accept(TokenType.STAR):
            item = ReturnItem("*")
        else:
            parts = self.parse_path("field name").split(".")
            if len(parts) == 2:
                item = ReturnItem(path=parts[1], alias_of=parts[0])
            else:
                item = ReturnItem(path=".".join(parts))

        if self.accept_keyword("as"):
            item.alias = self.expect_name("alias after AS")
        return item


def parse_graph_query(text: str) -> GraphAST:
    """
    Parse graph DSL text.

    Raises:
        GraphParseError: on the first syntax error
    """
    if not text or not text.strip():
        raise GraphParseError("Empty query", position=0, expected="FIND")
    return GraphQueryParser(text).parse()
