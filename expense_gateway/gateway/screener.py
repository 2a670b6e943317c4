"""
Security Screener

Purely lexical checks that run before any semantic understanding.

CRITICAL: A statement that fails here is never parsed, never executed,
and is logged as a security event. There is no repair at this stage.
"""

from expense_gateway.gateway.classifier import classify_tokens
from expense_gateway.gateway.errors import SecurityViolation
from expense_gateway.gateway.lexer import LexerError, Token, TokenType, tokenize
from expense_gateway.models.statements import StatementKind


DENYLIST = frozenset({
    "DROP", "DELETE", "ALTER", "CREATE", "TRUNCATE", "EXEC", "EXECUTE",
    "GRANT", "REVOKE", "RENAME", "REPLACE", "MERGE", "CALL", "UNION",
    "LOAD_FILE", "SLEEP", "BENCHMARK", "PRAGMA", "ATTACH", "DETACH",
    "OUTFILE", "DUMPFILE",
})

# Verbs a statement of each class may not contain
INCONSISTENT_VERBS = {
    StatementKind.SELECT: frozenset({"INSERT", "UPDATE"}),
    StatementKind.INSERT: frozenset({"UPDATE", "SELECT"}),
    StatementKind.UPDATE: frozenset({"INSERT", "SELECT"}),
}

_COMMENT_MARKERS = ("--", "/*", "*/")


def _check_comments(tokens: list[Token]) -> None:
    for token in tokens:
        if token.type == TokenType.COMMENT:
            raise SecurityViolation(f"Comment delimiter '{token.text}' is not allowed")
        if token.type == TokenType.STRING and any(m in token.value for m in _COMMENT_MARKERS):
            raise SecurityViolation("Comment delimiter inside a string literal is not allowed")


def _check_single_statement(tokens: list[Token]) -> None:
    for i, token in enumerate(tokens):
        if token.is_punct(";") and i < len(tokens) - 1:
            raise SecurityViolation("Multiple statements are not allowed")


def _check_keywords(tokens: list[Token], kind: StatementKind) -> None:
    forbidden = INCONSISTENT_VERBS.get(kind, frozenset())
    for token in tokens:
        if token.type != TokenType.WORD:
            continue
        word = token.upper
        if word in DENYLIST:
            raise SecurityViolation(f"Keyword '{word}' is not allowed")
        if word in forbidden:
            raise SecurityViolation(
                f"Keyword '{word}' is not allowed in a {kind.value.upper()} statement"
            )


def _check_update_filter(tokens: list[Token]) -> None:
    where_count = 0
    for token in tokens:
        if token.is_word("WHERE"):
            where_count += 1
            if where_count > 1:
                raise SecurityViolation("UPDATE may contain only one WHERE clause")
        elif token.is_word("AND", "OR") and where_count == 0:
            raise SecurityViolation(
                f"'{token.upper}' appears before WHERE in an UPDATE statement"
            )


def screen_statement(text: str) -> StatementKind:
    """
    Reject a candidate statement that is unsafe to parse.

    Returns the statement kind the checks were run for.

    Raises:
        SecurityViolation: on a denylisted keyword, an inconsistent verb,
            a comment delimiter, multiple statements, an unterminated
            string, or a malformed UPDATE filter
    """
    try:
        tokens = tokenize(text)
    except LexerError as e:
        raise SecurityViolation(str(e)) from e

    if not tokens:
        raise SecurityViolation("Empty statement")

    kind = classify_tokens(tokens)

    _check_comments(tokens)
    _check_single_statement(tokens)
    _check_keywords(tokens, kind)

    if kind == StatementKind.UPDATE:
        _check_update_filter(tokens)

    return kind
