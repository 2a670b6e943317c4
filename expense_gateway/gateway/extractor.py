"""
Statement Extractor

Pulls candidate SQL statements out of the model's reply. Only text inside
a fenced code region is ever considered executable; everything outside
the fences is prose and is handed to the formatter for scrubbing.
"""

import re

import sqlparse


_SQL_FENCE = re.compile(r"```[ \t]*(?:sql|mysql)[ \t]*\n?(.*?)```", re.IGNORECASE | re.DOTALL)
_BARE_FENCE = re.compile(r"```[ \t]*\n(.*?)```", re.DOTALL)
_ANY_FENCE = re.compile(r"```.*?(?:```|$)", re.DOTALL)
_SQL_VERB = re.compile(r"^\s*(insert|update|select)\b", re.IGNORECASE)


def _code_blocks(reply: str) -> list[str]:
    blocks = [m.group(1) for m in _SQL_FENCE.finditer(reply)]
    if blocks:
        return blocks
    # Untagged fence only when its body is plainly SQL
    return [m.group(1) for m in _BARE_FENCE.finditer(reply) if _SQL_VERB.match(m.group(1))]


def extract_statements(reply: str) -> list[str]:
    """
    Return the ordered candidate statements found in a model reply.

    Each fenced block is split on terminators; fragments are trimmed,
    the trailing ';' removed, and empty fragments dropped.
    """
    statements: list[str] = []
    for block in _code_blocks(reply or ""):
        for fragment in sqlparse.split(block):
            text = fragment.strip().rstrip(";").strip()
            if text:
                statements.append(text)
    return statements


def strip_code_blocks(reply: str) -> str:
    """The prose of a reply with every fenced region removed."""
    prose = _ANY_FENCE.sub("", reply or "")
    return re.sub(r"\n{3,}", "\n\n", prose).strip()
