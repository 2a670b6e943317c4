"""
Statement Classifier

Classifies a statement by its leading verb only. The screener has already
guaranteed there is exactly one statement.

Text the lexer cannot tokenize (an unterminated string) is still
classified: only the leading word is needed.
"""

import re

from expense_gateway.gateway.lexer import LexerError, leading_word, tokenize
from expense_gateway.models.statements import StatementKind


_VERBS = {
    "INSERT": StatementKind.INSERT,
    "UPDATE": StatementKind.UPDATE,
    "SELECT": StatementKind.SELECT,
}

_LEADING_WORD = re.compile(r"\s*([A-Za-z_]\w*)")


def classify(text: str) -> StatementKind:
    """INSERT / UPDATE / SELECT, or UNSUPPORTED for anything else. Never raises."""
    try:
        return classify_tokens(tokenize(text))
    except LexerError:
        match = _LEADING_WORD.match(text or "")
        if match is None:
            return StatementKind.UNSUPPORTED
        return _VERBS.get(match.group(1).upper(), StatementKind.UNSUPPORTED)


def classify_tokens(tokens) -> StatementKind:
    return _VERBS.get(leading_word(tokens), StatementKind.UNSUPPORTED)
