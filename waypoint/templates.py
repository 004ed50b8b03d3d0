"""Template mini-language used for prompts, messages and tool parameters.

Supported forms::

    {{name}}  {{user.address.city}}  {{items[0]}}
    {{#if score > 10}} ... {{else}} ... {{/if}}
    {{#unless done}} ... {{/unless}}
    {{#each items}} {{@index}}: {{this.title}} {{else}} nothing {{/each}}

Conditions in ``#if``/``#unless`` go through the sandboxed expression
evaluator. Anything else inside ``{{ }}`` (calls, operators in a plain
reference, unknown block helpers) is rejected with ``TemplateError``.
"""

from __future__ import annotations

import json
import re
from collections import ChainMap
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, List, Mapping, Optional, Union

from .errors import ExpressionError, TemplateError
from .expressions import compile_expression, evaluate, lookup_path, resolve_reference, split_path, truthy

_TAG = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_REFERENCE = re.compile(r"^(?:@index|@key|@first|@last|this|[A-Za-z_][\w-]*)(?:\.[\w-]+|\[\d+\])*$")
_SINGLE_TAG = re.compile(r"^\s*\{\{\s*([^{}#/]+?)\s*\}\}\s*$")


@dataclass
class _Text:
    text: str


@dataclass
class _Var:
    path: str


@dataclass
class _Block:
    kind: str
    argument: str
    body: List[Any] = field(default_factory=list)
    otherwise: List[Any] = field(default_factory=list)
    in_else: bool = False

    def append(self, node: Any) -> None:
        (self.otherwise if self.in_else else self.body).append(node)


_Node = Union[_Text, _Var, _Block]


@lru_cache(maxsize=256)
def parse_template(text: str) -> tuple:
    """Parse ``text`` into a node tree; raises TemplateError on bad syntax."""
    root: List[_Node] = []
    stack: List[_Block] = []

    def emit(node: _Node) -> None:
        if stack:
            stack[-1].append(node)
        else:
            root.append(node)

    position = 0
    for match in _TAG.finditer(text):
        if match.start() > position:
            emit(_Text(text[position:match.start()]))
        position = match.end()
        tag = match.group(1).strip()

        if tag.startswith("#"):
            kind, _, argument = tag[1:].partition(" ")
            argument = argument.strip()
            if kind not in ("if", "unless", "each"):
                raise TemplateError(f"Unknown block helper '#{kind}'")
            if not argument:
                raise TemplateError(f"Block '#{kind}' needs an argument")
            if kind == "each":
                if not _REFERENCE.match(argument):
                    raise TemplateError(f"Invalid '#each' reference: {argument}")
            else:
                try:
                    compile_expression(argument)
                except ExpressionError as exc:
                    raise TemplateError(f"Invalid '#{kind}' condition: {exc.message}") from exc
            block = _Block(kind=kind, argument=argument)
            emit(block)
            stack.append(block)
        elif tag.startswith("/"):
            kind = tag[1:].strip()
            if not stack or stack[-1].kind != kind:
                raise TemplateError(f"Unexpected closing tag '{{{{/{kind}}}}}'")
            stack.pop()
        elif tag == "else":
            if not stack or stack[-1].in_else:
                raise TemplateError("'{{else}}' outside of a block")
            stack[-1].in_else = True
        elif _REFERENCE.match(tag):
            emit(_Var(tag))
        else:
            raise TemplateError(f"Invalid template reference '{{{{{tag}}}}}'")

    if stack:
        raise TemplateError(f"Unclosed block '#{stack[-1].kind}'")
    if position < len(text):
        emit(_Text(text[position:]))
    return tuple(root)


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def _lookup(scope: Mapping[str, Any], path: str) -> Any:
    parts = split_path(path)
    if not parts:
        return None
    head = parts[0]
    if head not in scope:
        return None
    value = scope[head]
    if len(parts) == 1:
        return value
    rest = path[len(str(head)):].lstrip(".")
    return lookup_path(value, rest)


def _iterate(value: Any) -> List[tuple]:
    if isinstance(value, Mapping):
        return [(key, item) for key, item in value.items()]
    if isinstance(value, (list, tuple)):
        return list(enumerate(value))
    return []


def _render(nodes: Any, scope: Mapping[str, Any], out: List[str]) -> None:
    for node in nodes:
        if isinstance(node, _Text):
            out.append(node.text)
        elif isinstance(node, _Var):
            out.append(stringify(_lookup(scope, node.path)))
        elif node.kind == "each":
            items = _iterate(_lookup(scope, node.argument))
            if not items:
                _render(node.otherwise, scope, out)
                continue
            for position, (key, item) in enumerate(items):
                frame = {
                    "this": item,
                    "@index": position,
                    "@key": key,
                    "@first": position == 0,
                    "@last": position == len(items) - 1,
                }
                layers = [frame]
                if isinstance(item, Mapping):
                    layers.append(item)
                _render(node.body, ChainMap(*layers, scope), out)
        else:
            try:
                result = truthy(evaluate(node.argument, scope))
            except ExpressionError as exc:
                raise TemplateError(f"Condition '{node.argument}' failed: {exc.message}") from exc
            if node.kind == "unless":
                result = not result
            _render(node.body if result else node.otherwise, scope, out)


def render_template(text: str, scope: Mapping[str, Any]) -> str:
    """Render ``text`` against ``scope``. Missing references render empty."""
    if not text or "{{" not in text:
        return text or ""
    out: List[str] = []
    _render(parse_template(text), scope, out)
    return "".join(out)


def validate_template(text: Optional[str]) -> None:
    if text and "{{" in text:
        parse_template(text)


def resolve_value(value: Any, scope: Mapping[str, Any]) -> Any:
    """Resolve templates inside an arbitrary JSON-like value.

    A string that is exactly one ``{{reference}}`` (or a bare ``$.path``)
    resolves to the referenced value with its type intact; other strings are
    rendered as text.
    """
    if isinstance(value, str):
        single = _SINGLE_TAG.match(value)
        if single and _REFERENCE.match(single.group(1)):
            return _lookup(scope, single.group(1))
        if value.startswith("$."):
            return resolve_reference(value, scope)
        return render_template(value, scope)
    if isinstance(value, dict):
        return {key: resolve_value(item, scope) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, scope) for item in value]
    return value


def validate_value(value: Any) -> None:
    if isinstance(value, str):
        validate_template(value)
    elif isinstance(value, dict):
        for item in value.values():
            validate_value(item)
    elif isinstance(value, list):
        for item in value:
            validate_value(item)


__all__ = [
    "parse_template",
    "render_template",
    "resolve_value",
    "stringify",
    "validate_template",
    "validate_value",
]
