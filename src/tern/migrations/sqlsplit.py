"""
Split a blob of SQL into individually executable statements.

This is not a SQL parser. It is a small character scanner that only knows
enough PostgreSQL lexical structure to tell a statement-ending semicolon
from one that sits inside a string literal, a quoted identifier, a
dollar-quoted body or a comment.
"""

from typing import Callable, Optional

_State = Optional[Callable[[], "_State"]]


def split(sql: str) -> list[str]:
    """Split sql into a list of strings each containing one SQL statement.

    Statements keep their trailing semicolon and are stripped of surrounding
    whitespace. Whitespace-only statements are dropped. When no statement
    could be closed, the whole input is returned as the only element.

    Example:
        >>> split("select 1; select 2;")
        ['select 1;', 'select 2;']
    """
    lexer = _SQLLexer(sql)
    lexer.run()
    if not lexer.statements:
        return [sql]
    return lexer.statements


def read_dollar_tag(src: str, pos: int) -> str | None:
    """Read a dollar quote tag starting just after an opening `$`.

    Returns the tag (possibly empty) when `src[pos:]` starts with `tag$`, or
    None when the `$` does not open a dollar quote, e.g. a `$1` parameter.
    """
    if pos >= len(src):
        return None
    if src[pos] == "$":
        return ""

    first = src[pos]
    if not (first.isalpha() or first == "_"):
        return None

    end = pos + 1
    while end < len(src):
        ch = src[end]
        if ch == "$":
            return src[pos:end]
        if not (ch.isalpha() or ch.isdigit() or ch == "_"):
            return None
        end += 1
    return None


class _SQLLexer:
    def __init__(self, src: str):
        self.src = src
        self.start = 0
        self.pos = 0
        self.nested = 0  # block comment nesting depth
        self.statements: list[str] = []

    def run(self) -> None:
        state: _State = self.raw_state
        while state is not None:
            state = state()

    def add_statement(self, text: str) -> None:
        text = text.strip()
        if text:
            self.statements.append(text)

    def _next(self) -> str:
        """Consume and return one character, or "" at end of input."""
        if self.pos >= len(self.src):
            return ""
        ch = self.src[self.pos]
        self.pos += 1
        return ch

    def _peek(self) -> str:
        if self.pos >= len(self.src):
            return ""
        return self.src[self.pos]

    def _finish(self) -> _State:
        if self.pos - self.start > 0:
            self.add_statement(self.src[self.start : self.pos])
            self.start = self.pos
        return None

    def raw_state(self) -> _State:
        while True:
            ch = self._next()
            if ch == "":
                return self._finish()
            if ch in ("e", "E"):
                if self._peek() == "'":
                    self.pos += 1
                    return self.escape_string_state
            elif ch == "'":
                return self.single_quote_state
            elif ch == '"':
                return self.double_quote_state
            elif ch == "$":
                tag = read_dollar_tag(self.src, self.pos)
                if tag is not None:
                    self.pos += len(tag) + 1
                    return self._dollar_quote_state(tag)
            elif ch == ";":
                self.add_statement(self.src[self.start : self.pos])
                self.start = self.pos
            elif ch == "-":
                if self._peek() == "-":
                    self.pos += 1
                    return self.one_line_comment_state
            elif ch == "/":
                if self._peek() == "*":
                    self.pos += 1
                    return self.block_comment_state

    def single_quote_state(self) -> _State:
        return self._quoted_state("'", backslash_escapes=False)

    def escape_string_state(self) -> _State:
        return self._quoted_state("'", backslash_escapes=True)

    def double_quote_state(self) -> _State:
        return self._quoted_state('"', backslash_escapes=False)

    def _quoted_state(self, quote: str, backslash_escapes: bool) -> _State:
        while True:
            ch = self._next()
            if ch == "":
                return self._finish()
            if ch == "\\" and backslash_escapes:
                self._next()
            elif ch == quote:
                # a doubled quote is an escaped quote
                if self._peek() != quote:
                    return self.raw_state
                self.pos += 1

    def _dollar_quote_state(self, opening_tag: str) -> Callable[[], _State]:
        def state() -> _State:
            while True:
                ch = self._next()
                if ch == "":
                    return self._finish()
                if ch == "$":
                    tag = read_dollar_tag(self.src, self.pos)
                    if tag is not None and tag == opening_tag:
                        self.pos += len(tag) + 1
                        return self.raw_state

        return state

    def one_line_comment_state(self) -> _State:
        while True:
            ch = self._next()
            if ch == "":
                return self._finish()
            if ch in ("\n", "\r"):
                return self.raw_state

    def block_comment_state(self) -> _State:
        while True:
            ch = self._next()
            if ch == "":
                return self._finish()
            if ch == "/" and self._peek() == "*":
                self.pos += 1
                self.nested += 1
            elif ch == "*" and self._peek() == "/":
                self.pos += 1
                if self.nested == 0:
                    return self.raw_state
                self.nested -= 1
