"""Rendering of value templates.

A value template turns the raw string value of a package value into the JSON
value that is patched into a target. Templates are written with Go template
actions, which are translated into jinja2 before rendering:

| Go action                       | jinja2                                  |
|---------------------------------|-----------------------------------------|
| `{{.}}`                         | `{{ value }}`                           |
| `{{if eq . "x"}}`               | `{% if eq(value, 'x') %}`               |
| `{{else if not .}}`             | `{% elif (not value) %}`                |
| `{{else}}` / `{{end}}`          | `{% else %}` / `{% endif %}`            |
| `{{base64 . \\| printf "%q"}}`   | `{{ printf('%q', base64(value)) }}`     |
| `{{or (eq . "a") (eq . "b")}}`  | `{{ (eq(value, 'a') or eq(value, 'b')) }}` |

The Go builtins (`and`, `or`, `not`, `len`, `index`, `slice`, `eq`, `ne`,
`lt`, `le`, `gt`, `ge`, `print`, `printf`, `println`, `html`, `js`,
`urlquery`) and `base64` are available. Actions that are not valid Go template
syntax are left as they are, so native jinja2 expressions using `value` work
as well.
"""

import ast
import base64
import html
import json
import re
from typing import Any
from urllib.parse import quote_plus

import jinja2

from kpkg.exceptions import InvalidTemplateError

__all__ = [
    "render_value",
]


class _TranslationError(Exception):
    """An action is not a supported Go template action."""


def _go_str(value: Any) -> str:
    """Format a value the way Go prints it with %v."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<nil>"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_go_str(item) for item in value) + "]"
    if isinstance(value, dict):
        items = " ".join(f"{_go_str(k)}:{_go_str(v)}" for k, v in sorted(value.items()))
        return f"map[{items}]"
    return str(value)


def _finalize(value: Any) -> Any:
    if value is None:
        return "<no value>"
    if isinstance(value, bool):
        return _go_str(value)
    return value


_VERB = re.compile(r"%([-+# 0]*)(\d+)?(?:\.(\d+))?([a-zA-Z%])")
_MISSING = object()


def _format_verb(flags: str, width: str, precision: str | None, verb: str, arg: Any) -> str:
    spec = f"%{flags}{width}" + (f".{precision}" if precision is not None else "")
    if verb in "vs":
        return (spec + "s") % _go_str(arg)
    if verb == "q":
        return (spec + "s") % json.dumps(_go_str(arg), ensure_ascii=False)
    if verb == "t" and isinstance(arg, bool):
        return (spec + "s") % _go_str(arg)
    if verb in "dxXob" and isinstance(arg, int) and not isinstance(arg, bool):
        if verb == "b":
            return (f"%{flags}{width}s") % format(arg, "b")
        return (spec + verb) % arg
    if verb in "fFeEgG" and isinstance(arg, (int, float)) and not isinstance(arg, bool):
        return (spec + verb) % arg
    return f"%!{verb}({type(arg).__name__}={_go_str(arg)})"


def _printf(fmt: str, *args: Any) -> str:
    remaining = iter(args)

    def replace(match: re.Match[str]) -> str:
        flags, width, precision, verb = match.groups()
        if verb == "%":
            return "%"
        if (arg := next(remaining, _MISSING)) is _MISSING:
            return f"%!{verb}(MISSING)"
        return _format_verb(flags, width or "", precision, verb, arg)

    output = _VERB.sub(replace, fmt)
    if extra := list(remaining):
        output += "%!(EXTRA " + ", ".join(
            f"{type(arg).__name__}={_go_str(arg)}" for arg in extra
        ) + ")"
    return output


def _print(*args: Any) -> str:
    output = ""
    for i, arg in enumerate(args):
        # Operands are separated by a space when neither is a string
        if i and not isinstance(arg, str) and not isinstance(args[i - 1], str):
            output += " "
        output += _go_str(arg)
    return output


def _println(*args: Any) -> str:
    return " ".join(_go_str(arg) for arg in args) + "\n"


def _len(value: Any) -> int:
    if isinstance(value, str):
        return len(value.encode())
    return len(value)


def _index(value: Any, *keys: Any) -> Any:
    for key in keys:
        value = value[key]
    return value


def _slice(value: Any, *indexes: int) -> Any:
    if len(indexes) > 2:
        raise ValueError("slice supports at most two indexes")
    if isinstance(value, str):
        encoded = value.encode()
        return encoded[slice(*indexes) if indexes else slice(None)].decode()
    return value[slice(*indexes) if indexes else slice(None)]


def _eq(arg: Any, *others: Any) -> bool:
    return any(arg == other for other in others)


def _js(value: Any) -> str:
    text = _go_str(value)
    for char, escaped in (
        ("\\", "\\\\"),
        ("'", "\\'"),
        ('"', "\\\""),
        ("<", "\\u003C"),
        (">", "\\u003E"),
        ("&", "\\u0026"),
        ("=", "\\u003D"),
    ):
        text = text.replace(char, escaped)
    return text


def _base64(value: Any) -> str:
    return base64.b64encode(str(value).encode()).decode()


_FUNCTIONS = {
    "len": _len,
    "index": _index,
    "slice": _slice,
    "eq": _eq,
    "ne": lambda a, b: a != b,
    "lt": lambda a, b: a < b,
    "le": lambda a, b: a <= b,
    "gt": lambda a, b: a > b,
    "ge": lambda a, b: a >= b,
    "print": _print,
    "printf": _printf,
    "println": _println,
    "html": lambda *args: html.escape(_print(*args)),
    "js": lambda *args: _js(_print(*args)),
    "urlquery": lambda *args: quote_plus(_print(*args)),
    "base64": _base64,
}
_OPERATORS = {"and", "or", "not"}

_ENV = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    autoescape=False,
    keep_trailing_newline=True,
    finalize=_finalize,
)
_ENV.globals.update(_FUNCTIONS)
_ENV.filters["base64"] = _base64

_ACTION = re.compile(r"\{\{(-\s+)?(.*?)(\s+-)?\}\}", re.DOTALL)
_KEYWORD = re.compile(r"^(if|else|end|range|with|define|template|block|break|continue)\b\s*(.*)$", re.DOTALL)
_TOKEN = re.compile(
    r"""
    (?P<space>\s+)
    | (?P<string>"(?:[^"\\\n]|\\.)*")
    | (?P<raw>`[^`]*`)
    | (?P<char>'(?:[^'\\\n]|\\.)+')
    | (?P<number>[+-]?(?:0[xX][0-9a-fA-F_]+|0[bB][01_]+|0[oO][0-7_]+
        |\d[\d_]*(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?))
    | (?P<field>\.[A-Za-z_]\w*)
    | (?P<dot>\.)
    | (?P<variable>\$\w*)
    | (?P<ident>[A-Za-z_]\w*)
    | (?P<punct>[()|])
    """,
    re.VERBOSE,
)


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens = []
    pos = 0
    while pos < len(text):
        if (match := _TOKEN.match(text, pos)) is None:
            raise _TranslationError(f"unexpected {text[pos:]!r}")
        if match.lastgroup != "space":
            tokens.append((match.lastgroup or "", match.group()))
        pos = match.end()
    return tokens


class _Pipeline:
    """Translates a Go template pipeline into a jinja2 expression."""

    def __init__(self, text: str) -> None:
        self._tokens = _tokenize(text)
        self._pos = 0

    def translate(self) -> str:
        if not self._tokens:
            raise _TranslationError("missing value for command")
        expr = self._pipeline()
        if self._pos != len(self._tokens):
            raise _TranslationError(f"unexpected {self._tokens[self._pos][1]!r}")
        return expr

    def _peek(self) -> tuple[str, str] | None:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _at_punct(self, *chars: str) -> bool:
        token = self._peek()
        return token is not None and token[0] == "punct" and token[1] in chars

    def _pipeline(self) -> str:
        expr = self._command(None)
        while self._at_punct("|"):
            self._pos += 1
            expr = self._command(expr)
        return expr

    def _command(self, piped: str | None) -> str:
        token = self._peek()
        if token is not None and token[0] == "ident" and token[1] not in ("true", "false", "nil"):
            name = token[1]
            if name not in _FUNCTIONS and name not in _OPERATORS:
                raise _TranslationError(f"function {name!r} not defined")
            self._pos += 1
            args = self._operands()
            if piped is not None:
                args.append(piped)
            return _call(name, args)
        args = self._operands()
        if len(args) != 1 or piped is not None:
            raise _TranslationError("can't give argument to non-function")
        return args[0]

    def _operands(self) -> list[str]:
        args = []
        while self._peek() is not None and not self._at_punct("|", ")"):
            args.append(self._operand())
        return args

    def _operand(self) -> str:
        kind, text = self._tokens[self._pos]
        self._pos += 1
        if kind == "dot" or (kind == "variable" and text == "$"):
            return "value"
        if kind == "string":
            return repr(ast.literal_eval(text))
        if kind == "raw":
            return repr(text[1:-1])
        if kind == "char":
            return repr(ord(ast.literal_eval(text)))
        if kind == "number":
            number = text.replace("_", "")
            try:
                return repr(int(number, 0))
            except ValueError:
                return repr(float(number))
        if kind == "ident" and text in ("true", "false", "nil"):
            return {"true": "true", "false": "false", "nil": "none"}[text]
        if kind == "punct" and text == "(":
            expr = self._pipeline()
            if not self._at_punct(")"):
                raise _TranslationError("unclosed left paren")
            self._pos += 1
            return f"({expr})"
        raise _TranslationError(f"unexpected {text!r} in operand")


def _call(name: str, args: list[str]) -> str:
    if name == "not":
        if len(args) != 1:
            raise _TranslationError("not takes exactly one argument")
        return f"(not {args[0]})"
    if name in _OPERATORS:
        if not args:
            raise _TranslationError(f"{name} needs at least one argument")
        return "(" + f" {name} ".join(args) + ")"
    return f"{name}({', '.join(args)})"


def _translate_action(match: re.Match[str]) -> str:
    left = "-" if match.group(1) else ""
    right = "-" if match.group(3) else ""
    content = match.group(2).strip()
    if content.startswith("/*") and content.endswith("*/"):
        return f"{{#{left} {right}#}}"
    try:
        if (keyword := _KEYWORD.match(content)) is None:
            return f"{{{{{left} {_Pipeline(content).translate()} {right}}}}}"
        name, rest = keyword.groups()
        if name == "if":
            return f"{{%{left} if {_Pipeline(rest).translate()} {right}%}}"
        if name == "else" and rest.startswith("if "):
            return f"{{%{left} elif {_Pipeline(rest[3:]).translate()} {right}%}}"
        if name == "else" and not rest:
            return f"{{%{left} else {right}%}}"
        if name == "end" and not rest:
            return f"{{%{left} endif {right}%}}"
        raise _TranslationError(f"unsupported action {name!r}")
    except _TranslationError:
        # Not a Go action, rendered as jinja2
        return match.group()


def translate(template: str) -> str:
    """Translate Go template actions into jinja2 syntax."""
    return _ACTION.sub(_translate_action, template)


def render_value(template: str, value: str) -> Any:
    """Render a value template and parse the output as JSON."""
    try:
        output = _ENV.from_string(translate(template)).render(value=value)
    except (jinja2.TemplateError, TypeError, ValueError, LookupError) as err:
        raise InvalidTemplateError(f"invalid value template {template!r}: {err}") from err
    try:
        return json.loads(output)
    except json.JSONDecodeError as err:
        raise InvalidTemplateError(
            f"value template {template!r} did not render valid JSON ({output!r}): {err}"
        ) from err
