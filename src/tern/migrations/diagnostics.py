"""
Source position helpers for rendering SQL error diagnostics.

PostgreSQL reports the location of a syntax or semantic error as a
1-based character offset into the statement text. These helpers turn
that offset into a line/column pair and the text of the offending line
so a caller can print a psql-style caret pointer.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class ErrorLineExtract:
    """The line of a SQL source that an error position points into."""

    line_num: int
    column_num: int
    text: str


def extract_error_line(source: str, position: int) -> ErrorLineExtract:
    """Locate a 1-based character position within a multi-line source.

    Args:
        source: The SQL text the position refers to
        position: 1-based character offset as reported by the server

    Returns:
        ErrorLineExtract with 1-based line and column numbers

    Raises:
        ValueError: If the position lies outside the source
    """
    if position < 1 or position > len(source):
        raise ValueError(f"position ({position}) is outside of source length ({len(source)})")

    line_num = 1
    text = ""
    for text in source.split("\n"):
        # +1 for the newline consumed by split
        if position <= len(text) + 1:
            break
        line_num += 1
        position -= len(text) + 1

    return ErrorLineExtract(line_num=line_num, column_num=position, text=text.rstrip("\r"))


def format_error_line(extract: ErrorLineExtract) -> str:
    """Render a `LINE n: text` line followed by a caret under the column."""
    prefix = f"LINE {extract.line_num}: "
    padding = " " * (len(prefix) + extract.column_num - 1)
    return f"{prefix}{extract.text}\n{padding}^"
