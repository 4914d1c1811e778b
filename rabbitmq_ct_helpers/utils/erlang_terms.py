"""Conversion between Python values and Erlang terms in their textual form.

Broker configuration files and the arguments of remote calls are Erlang terms, and results of
remote calls are printed Erlang terms. The mapping is:

* `Atom` <-> atom, `True`/`False` <-> `true`/`false`, `None` -> `undefined`
* `int`/`float` <-> integer/float
* `str` <-> string (list of characters), `bytes` <-> binary
* `tuple` <-> tuple, `list` <-> list, `dict` -> proplist (keys become atoms), map -> `dict`
* `Pid` <-> pid; when formatted, a pid is rendered as a `list_to_pid/1` call, which is valid
  only inside an expression evaluated on the node that printed it. Pids parsed from the output
  of `rabbitmqctl eval` are printed by the CLI node and carry its numbering of the broker node;
  to get a pid that can be sent back to the broker, print it there with `pid_to_list/1`
* references, ports and funs are parsed into `Opaque`
"""

import re
import typing as tp


class ErlangTermError(Exception):
    pass


class Atom(str):
    """Erlang atom."""

    __slots__ = ()

    def __repr__(self) -> str:
        return f"Atom({str.__repr__(self)})"


class Pid(str):
    """Erlang process identifier in its printed form, e.g. `<0.123.0>`."""

    __slots__ = ()

    def __repr__(self) -> str:
        return f"Pid({str.__repr__(self)})"


class Opaque(str):
    """Printed form of a term that has no Python counterpart (reference, port, fun)."""

    __slots__ = ()


PID_RE = re.compile(r"<\d+\.\d+\.\d+>")
_BARE_ATOM_RE = re.compile(r"^[a-z][a-zA-Z0-9_@]*$")
_RESERVED_WORDS = frozenset(
    (
        "after and andalso band begin bnot bor bsl bsr bxor case catch cond div end fun if let "
        "maybe not of or orelse receive rem try when xor"
    ).split()
)
_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\t": "\\t", "\r": "\\r"}
SQUOTE = "'"
DQUOTE = '"'


def _escape(value: str, quote: str) -> str:
    return "".join(_ESCAPES.get(c, f"\\{c}" if c == quote else c) for c in value)


def format_atom(name: str) -> str:
    if _BARE_ATOM_RE.match(name) and name not in _RESERVED_WORDS:
        return name
    return f"'{_escape(name, quote=SQUOTE)}'"


def format_term(value: tp.Any) -> str:  # noqa: PLR0911
    """Render a Python value as an Erlang term."""
    if isinstance(value, Atom):
        return format_atom(value)
    if isinstance(value, Pid):
        return f'list_to_pid("{value}")'
    if isinstance(value, Opaque):
        msg = f"Cannot format opaque term '{value}'."
        raise ErlangTermError(msg)
    if value is None:
        return "undefined"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return repr(value)
    if isinstance(value, str):
        return f'"{_escape(value, quote=DQUOTE)}"'
    if isinstance(value, bytes | bytearray):
        try:
            text = bytes(value).decode("utf-8")
        except UnicodeDecodeError:
            return f"<<{','.join(str(b) for b in value)}>>"
        suffix = "" if text.isascii() else "/utf8"
        return f'<<"{_escape(text, quote=DQUOTE)}"{suffix}>>'
    if isinstance(value, tuple):
        return f"{{{','.join(format_term(v) for v in value)}}}"
    if isinstance(value, list):
        return f"[{','.join(format_term(v) for v in value)}]"
    if isinstance(value, dict):
        return format_term([(Atom(k) if isinstance(k, str) else k, v) for k, v in value.items()])

    msg = f"Don't know how to format value of type '{type(value).__name__}' as Erlang term."
    raise ErlangTermError(msg)


def format_call(module: str, function: str, args: tp.Iterable[tp.Any]) -> str:
    """Render `Module:Function(Args...)` as an expression."""
    args_str = ", ".join(format_term(a) for a in args)
    return f"{format_atom(module)}:{format_atom(function)}({args_str})"


class _Parser:
    _WS_RE = re.compile(r"\s*")
    _NUM_RE = re.compile(r"-?\d+(\.\d+([eE][-+]?\d+)?)?")
    _BARE_RE = re.compile(r"[a-z][a-zA-Z0-9_@]*")
    _OPAQUE_RE = re.compile(r"#(Ref|Port|Fun)<[^>]*>")

    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def error(self, what: str) -> ErlangTermError:
        snippet = self.text[self.pos : self.pos + 20]
        return ErlangTermError(f"{what} at position {self.pos}: '{snippet}'")

    def skip_ws(self) -> None:
        match = self._WS_RE.match(self.text, self.pos)
        if match:
            self.pos = match.end()

    def peek(self, token: str) -> bool:
        self.skip_ws()
        return self.text.startswith(token, self.pos)

    def expect(self, token: str) -> None:
        if not self.peek(token):
            raise self.error(f"Expected '{token}'")
        self.pos += len(token)

    def parse_quoted(self, quote: str) -> str:
        self.expect(quote)
        chars: list[str] = []
        unescape = {"n": "\n", "t": "\t", "r": "\r", "s": " ", "e": "\x1b"}
        while self.pos < len(self.text):
            c = self.text[self.pos]
            if c == quote:
                self.pos += 1
                return "".join(chars)
            if c == "\\":
                self.pos += 1
                nxt = self.text[self.pos]
                chars.append(unescape.get(nxt, nxt))
            else:
                chars.append(c)
            self.pos += 1
        raise self.error("Unterminated quoted text")

    def parse_seq(self, closing: str) -> list[tp.Any]:
        items: list[tp.Any] = []
        if self.peek(closing):
            self.pos += len(closing)
            return items
        while True:
            items.append(self.parse_value())
            if self.peek(","):
                self.pos += 1
                continue
            self.expect(closing)
            return items

    def parse_binary(self) -> bytes:
        self.expect("<<")
        if self.peek(">>"):
            self.pos += 2
            return b""
        if self.peek('"'):
            text = self.parse_quoted('"')
            if self.peek("/utf8"):
                self.pos += len("/utf8")
            self.expect(">>")
            return text.encode("utf-8")
        octets = self.parse_seq(">>")
        return bytes(octets)

    def parse_map(self) -> dict:
        self.expect("#{")
        result: dict = {}
        if self.peek("}"):
            self.pos += 1
            return result
        while True:
            key = self.parse_value()
            self.expect("=>")
            result[key] = self.parse_value()
            if self.peek(","):
                self.pos += 1
                continue
            self.expect("}")
            return result

    def parse_value(self) -> tp.Any:  # noqa: C901, PLR0911
        self.skip_ws()
        if self.pos >= len(self.text):
            raise self.error("Unexpected end of term")

        if self.peek("<<"):
            return self.parse_binary()
        if self.peek("#{"):
            return self.parse_map()

        opaque = self._OPAQUE_RE.match(self.text, self.pos)
        if opaque:
            self.pos = opaque.end()
            return Opaque(opaque.group(0))
        pid = PID_RE.match(self.text, self.pos)
        if pid:
            self.pos = pid.end()
            return Pid(pid.group(0))

        c = self.text[self.pos]
        if c == "{":
            self.pos += 1
            return tuple(self.parse_seq("}"))
        if c == "[":
            self.pos += 1
            return self.parse_seq("]")
        if c == DQUOTE:
            return self.parse_quoted(DQUOTE)
        if c == SQUOTE:
            return Atom(self.parse_quoted(SQUOTE))

        num = self._NUM_RE.match(self.text, self.pos)
        if num:
            self.pos = num.end()
            return float(num.group(0)) if num.group(1) else int(num.group(0))

        bare = self._BARE_RE.match(self.text, self.pos)
        if bare:
            self.pos = bare.end()
            name = bare.group(0)
            if name == "true":
                return True
            if name == "false":
                return False
            return Atom(name)

        raise self.error("Unexpected character")


def parse_term(text: str) -> tp.Any:
    """Parse a printed Erlang term into Python value.

    A trailing `.` is accepted, so the content of a config file can be parsed as well.
    """
    body = "\n".join(
        line for line in text.splitlines() if not line.lstrip().startswith("%")
    ).strip()
    body = body.removesuffix(".")
    parser = _Parser(body)
    value = parser.parse_value()
    parser.skip_ws()
    if parser.pos != len(body):
        raise parser.error("Trailing data after term")
    return value


def proplist_to_dict(value: tp.Any) -> tp.Any:
    """Convert (nested) proplists of `{atom, Value}` pairs into dictionaries."""
    if (
        isinstance(value, list)
        and value
        and all(isinstance(i, tuple) and len(i) == 2 and isinstance(i[0], Atom) for i in value)
    ):
        return {str(k): proplist_to_dict(v) for k, v in value}
    return value
