"""
Tokenizer shared by the graph DSL and the textual unified query.

Splits input into typed tokens, each remembering its character offset so
parse errors can point at the exact spot. Keywords are matched
case-insensitively from the set the caller supplies; everything else that
looks like a word is an identifier.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Type

from .errors import GraphParseError, _PositionedError


class TokenType(Enum):
    KEYWORD = "keyword"
    IDENTIFIER = "identifier"
    STRING = "string"
    NUMBER = "number"
    OPERATOR = "operator"
    ARROW = "arrow"
    MINUS = "minus"
    STAR = "star"
    LPAREN = "("
    RPAREN = ")"
    LBRACKET = "["
    RBRACKET = "]"
    COMMA = ","
    DOT = "."
    EOF = "end of input"


@dataclass(frozen=True)
class Token:
    type: TokenType
    value: object
    position: int
    text: str = ""

    def describe(self) -> str:
        """How the token reads in an error message."""
        if self.type == TokenType.EOF:
            return "end of input"
        if self.type == TokenType.STRING:
            return f'"{self.value}"'
        return f"'{self.text or self.value}'"


_ESCAPES = {"n": "\n", "t": "\t", "r": "\r"}

_ISO_DATE_RE = re.compile(r'\d{4}-\d{2}-\d{2}(?:T\d{2}:\d{2}(?::\d{2})?)?')
_NUMBER_RE = re.compile(r'-?\d+(?:\.\d+)?(?![A-Za-z0-9_.])')
_WORD_RE = re.compile(r'[A-Za-z0-9_#À-￿](?:[A-Za-z0-9_#À-￿]|-(?!>))*')

_TWO_CHAR_OPERATORS = ("!=", ">=", "<=")
_ONE_CHAR_OPERATORS = ("=", ">", "<", "~")

_PUNCTUATION = {
    "(": TokenType.LPAREN,
    ")": TokenType.RPAREN,
    "[": TokenType.LBRACKET,
    "]": TokenType.RBRACKET,
    ",": TokenType.COMMA,
    ".": TokenType.DOT,
    "*": TokenType.STAR,
}


class Tokenizer:
    """
    Tokenizer over a single input string.

    Example:
        Tokenizer('FIND task WHERE Status = "Done"', keywords={"find", "where"}).tokenize()
    """

    def __init__(self, text: str, keywords: Iterable[str] = (),
                 error_class: Type[_PositionedError] = GraphParseError):
        self.text = text
        self.keywords = {k.lower() for k in keywords}
        self.error_class = error_class
        self.pos = 0

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        while True:
            token = self._next_token()
            tokens.append(token)
            if token.type == TokenType.EOF:
                return tokens

    def _error(self, message: str, position: int, expected: Optional[str] = None,
               got: Optional[str] = None):
        return self.error_class(message, position=position, expected=expected, got=got)

    def _next_token(self) -> Token:
        text = self.text
        while self.pos < len(text) and text[self.pos].isspace():
            self.pos += 1

        start = self.pos
        if start >= len(text):
            return Token(TokenType.EOF, None, start)

        ch = text[start]

        if ch in ('"', "'"):
            return self._read_string(ch)

        two = text[start:start + 2]
        if two == "->":
            self.pos += 2
            return Token(TokenType.ARROW, "outgoing", start, two)
        if two == "<-":
            self.pos += 2
            return Token(TokenType.ARROW, "incoming", start, two)
        if two in _TWO_CHAR_OPERATORS:
            self.pos += 2
            return Token(TokenType.OPERATOR, two, start, two)
        if ch in _ONE_CHAR_OPERATORS:
            self.pos += 1
            return Token(TokenType.OPERATOR, ch, start, ch)

        match = _ISO_DATE_RE.match(text, start)
        if match:
            self.pos = match.end()
            return Token(TokenType.IDENTIFIER, match.group(), start, match.group())

        match = _NUMBER_RE.match(text, start)
        if match:
            self.pos = match.end()
            raw = match.group()
            value = float(raw) if "." in raw else int(raw)
            return Token(TokenType.NUMBER, value, start, raw)

        if ch == "-":
            self.pos += 1
            return Token(TokenType.MINUS, "-", start, "-")

        if ch in _PUNCTUATION:
            self.pos += 1
            return Token(_PUNCTUATION[ch], ch, start, ch)

        match = _WORD_RE.match(text, start)
        if match:
            word = match.group()
            self.pos = match.end()
            if word.lower() in self.keywords:
                return Token(TokenType.KEYWORD, word.lower(), start, word)
            return Token(TokenType.IDENTIFIER, word, start, word)

        raise self._error(f"Unexpected character '{ch}'", start, got=ch)

    def _read_string(self, quote: str) -> Token:
        start = self.pos
        self.pos += 1
        chars = []
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if ch == "\\":
                if self.pos + 1 >= len(self.text):
                    break
                nxt = self.text[self.pos + 1]
                chars.append(_ESCAPES.get(nxt, nxt))
                self.pos += 2
                continue
            if ch == quote:
                self.pos += 1
                return Token(TokenType.STRING, "".join(chars), start,
                             self.text[start:self.pos])
            chars.append(ch)
            self.pos += 1
        raise self._error("Unterminated string literal", start,
                          expected=f"closing {quote}", got="end of input")


def tokenize(text: str, keywords: Iterable[str] = (),
             error_class: Type[_PositionedError] = GraphParseError) -> List[Token]:
    """Tokenize ``text``; raises ``error_class`` on bad input."""
    return Tokenizer(text, keywords, error_class).tokenize()
