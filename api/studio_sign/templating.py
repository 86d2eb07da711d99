"""Placeholder rendering for contract templates.

Bodies use ``{{name}}`` tokens (dotted paths such as ``{{client.name}}`` are
allowed) and conditional blocks ``{{#if x}}...{{/if}}`` /
``{{#unless x}}...{{/unless}}`` which may nest. Rendering runs in two passes:
blocks are resolved first, then the remaining tokens are substituted with
HTML-escaped values. Unknown tokens render as an empty string.
"""
import re
from html import escape
from .errors import ValidationError

BLOCK_RE = re.compile(r"\{\{\s*(#if|#unless|/if|/unless)\s*([A-Za-z0-9_.]*)\s*\}\}")
TOKEN_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")

_MISSING = object()


def lookup(variables: dict, path: str):
    """Resolve a dotted path. A flat key containing dots wins over nested lookup."""
    if not variables:
        return None
    if path in variables:
        return variables[path]
    current = variables
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return None
    return current


def is_truthy(value) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    return bool(value)


def format_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (list, tuple)):
        return ", ".join(format_value(v) for v in value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def resolve_blocks(body: str, variables: dict) -> str:
    out = []
    # each frame: (kind, name, emitting)
    stack = []
    emitting = True
    pos = 0
    for m in BLOCK_RE.finditer(body):
        if emitting:
            out.append(body[pos:m.start()])
        pos = m.end()
        marker, name = m.group(1), m.group(2)
        if marker.startswith("#"):
            kind = marker[1:]
            if not name:
                raise ValidationError(f"{{{{{marker}}}}} block is missing a variable name")
            truthy = is_truthy(lookup(variables, name))
            cond = truthy if kind == "if" else not truthy
            stack.append((kind, name, emitting))
            emitting = emitting and cond
        else:
            kind = marker[1:]
            if not stack:
                raise ValidationError(f"unexpected {{{{/{kind}}}}} without an opening block")
            open_kind, open_name, parent_emitting = stack.pop()
            if open_kind != kind:
                raise ValidationError(f"{{{{#{open_kind} {open_name}}}}} closed by {{{{/{kind}}}}}")
            emitting = parent_emitting
    if stack:
        kind, name, _ = stack[-1]
        raise ValidationError(f"unclosed {{{{#{kind} {name}}}}} block")
    out.append(body[pos:])
    return "".join(out)


def substitute(body: str, variables: dict) -> str:
    return TOKEN_RE.sub(lambda m: escape(format_value(lookup(variables, m.group(1)))), body)


def render(body: str, variables: dict | None) -> str:
    variables = variables or {}
    return substitute(resolve_blocks(body or "", variables), variables)


def extract_variables(body: str) -> list[str]:
    """Names referenced by tokens and block markers, in first-seen order."""
    seen = []
    for m in re.finditer(r"\{\{\s*(?:#if|#unless)?\s*([A-Za-z0-9_.]+)\s*\}\}", body or ""):
        name = m.group(1)
        if name not in seen:
            seen.append(name)
    return seen
