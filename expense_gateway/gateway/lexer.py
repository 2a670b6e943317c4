"""
SQL Lexer

Splits one candidate statement into tokens. String literals are a single
token, so later stages can tell keywords apart from text that merely
contains them ('Update notes', '#ff0000').
"""

import re
from enum import Enum
from typing import NamedTuple


class TokenType(str, Enum):
    WORD = "word"
    QUOTED_IDENT = "quoted_ident"
    STRING = "string"
    NUMBER = "number"
    OPERATOR = "operator"
    PUNCT = "punct"
    COMMENT = "comment"
    OTHER = "other"


class Token(NamedTuple):
    type: TokenType
    text: str
    value: str
    position: int

    @property
    def upper(self) -> str:
        return self.text.upper()

    def is_word(self, *words: str) -> bool:
        return self.type == TokenType.WORD and self.text.upper() in words

    def is_punct(self, *chars: str) -> bool:
        return self.type == TokenType.PUNCT and self.text in chars


class LexerError(ValueError):
    """Raised when the text cannot be tokenized (unterminated string)."""

    def __init__(self, message: str, position: int):
        super().__init__(message)
        self.position = position


_TOKEN_RE = re.compile(
    r"""
      (?P<ws>\s+)
    | (?P<comment>--|/\*|\*/|\#)
    | (?P<string>'(?:[^'\\]|\\.|'')*'|"(?:[^"\\]|\\.|"")*")
    | (?P<unterminated>['"])
    | (?P<ident>`[^`]*`)
    | (?P<number>\d+(?:\.\d+)?|\.\d+)
    | (?P<word>[A-Za-z_][A-Za-z0-9_]*)
    | (?P<op><=|>=|<>|!=|=|<|>)
    | (?P<punct>[(),.;*+\-/%])
    | (?P<other>.)
    """,
    re.VERBOSE | re.DOTALL,
)

_GROUP_TYPES = {
    "comment": TokenType.COMMENT,
    "string": TokenType.STRING,
    "ident": TokenType.QUOTED_IDENT,
    "number": TokenType.NUMBER,
    "word": TokenType.WORD,
    "op": TokenType.OPERATOR,
    "punct": TokenType.PUNCT,
    "other": TokenType.OTHER,
}


def _unquote(text: str) -> str:
    quote = text[0]
    body = text[1:-1]
    body = body.replace(quote * 2, quote)
    return re.sub(r"\\(.)", r"\1", body)


def tokenize(text: str) -> list[Token]:
    """
    Tokenize a statement, dropping whitespace.

    Raises:
        LexerError: on an unterminated string literal
    """
    tokens: list[Token] = []
    for match in _TOKEN_RE.finditer(text):
        kind = match.lastgroup
        raw = match.group()
        if kind == "ws":
            continue
        if kind == "unterminated":
            raise LexerError("Unterminated string literal", match.start())

        token_type = _GROUP_TYPES[kind]
        if token_type == TokenType.STRING:
            value = _unquote(raw)
        elif token_type == TokenType.QUOTED_IDENT:
            value = raw[1:-1]
        else:
            value = raw
        tokens.append(Token(token_type, raw, value, match.start()))
    return tokens


def leading_word(tokens: list[Token]) -> str:
    """The first keyword of a statement, upper-cased, or '' if there is none."""
    if tokens and tokens[0].type == TokenType.WORD:
        return tokens[0].upper
    return ""
