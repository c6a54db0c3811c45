"""Filter and sort expressions for database queries.

Filters::

    Published = true and (Tags contains "blog" or Priority >= 2)
    "Due date" <= 2024-06-30
    Summary is_not_empty

Sorts::

    -Date, Name        (descending Date, then ascending Name)
    @edited            (last edited time, ascending)

Expressions are parsed with parsy combinators and compiled against the
database's property schema into Notion filter / sort objects.
"""

import re
from dataclasses import dataclass
from typing import Any, Optional, Union

import parsy as P

from .errors import FilterParseError


@dataclass
class FilterAtom:
    """A single ``property op value`` condition."""
    prop: str
    op: str
    value: Any = None


@dataclass
class FilterCompound:
    """``and`` / ``or`` over two or more sub-filters."""
    kind: str
    children: list


FilterNode = Union[FilterAtom, FilterCompound]


# =============================================================================
# Parser
# =============================================================================

_ws = P.regex(r"\s*")


def _lexeme(parser):
    return parser << _ws


def _keyword(word: str):
    return _lexeme(P.regex(rf"{word}\b", re.IGNORECASE)).result(word)


_quoted = _lexeme(
    P.regex(r'"((?:[^"\\]|\\.)*)"', group=1).map(lambda s: re.sub(r'\\(.)', r'\1', s))
)
_bare_name = _lexeme(P.regex(r"[A-Za-z_][\w\-]*"))
_name = (_quoted | _bare_name).desc("property name")

_number = _lexeme(P.regex(r"-?\d+(?:\.\d+)?(?![\w\-])")).map(
    lambda s: float(s) if "." in s else int(s)
)
_boolean = _lexeme(P.regex(r"(true|false)\b", re.IGNORECASE)).map(lambda s: s.lower() == "true")
_date = _lexeme(P.regex(r"\d{4}-\d{2}-\d{2}(?:T[\d:.]+(?:Z|[+-]\d{2}:\d{2})?)?"))
_bare_value = _lexeme(P.regex(r"[^\s()\"]+"))
_value = (_quoted | _date | _number | _boolean | _bare_value).desc("value")

_binary_op = _lexeme(
    P.string(">=") | P.string("<=") | P.string("!=") | P.string("=")
    | P.string(">") | P.string("<")
    | P.regex(r"!contains\b") | P.regex(r"not_contains\b").result("!contains")
    | P.regex(r"contains\b") | P.regex(r"starts_with\b") | P.regex(r"ends_with\b")
).desc("operator")
_unary_op = _keyword("is_not_empty") | _keyword("is_empty")

_lparen = _lexeme(P.string("("))
_rparen = _lexeme(P.string(")"))


@P.generate("condition")
def _condition():
    prop = yield _name
    unary = yield _unary_op.optional()
    if unary:
        return FilterAtom(prop, unary)
    op = yield _binary_op
    value = yield _value
    return FilterAtom(prop, op, value)


def _compound(kind: str, parts: list) -> FilterNode:
    return parts[0] if len(parts) == 1 else FilterCompound(kind, parts)


_expr = P.forward_declaration()
_atom = (_lparen >> _expr << _rparen) | _condition
_and_expr = _atom.sep_by(_keyword("and"), min=1).map(lambda parts: _compound("and", parts))
_or_expr = _and_expr.sep_by(_keyword("or"), min=1).map(lambda parts: _compound("or", parts))
_expr.become(_or_expr)

_filter_parser = _ws >> _expr


def parse_filter_dsl(text: str) -> FilterNode:
    """Parse a filter expression into FilterAtom / FilterCompound nodes.

    Raises:
        FilterParseError: On any syntax error.
    """
    if not text or not text.strip():
        raise FilterParseError("Empty filter expression")
    try:
        return _filter_parser.parse(text)
    except P.ParseError as e:
        raise FilterParseError(f"Invalid filter at position {e.index}: expected {e.expected}",
                               position=e.index) from e


_direction = P.regex(r"[+-]").optional().map(lambda s: "descending" if s == "-" else "ascending")
_timestamp = P.regex(r"@(created|edited)\b", group=1).map(
    lambda s: {"timestamp": "created_time" if s == "created" else "last_edited_time"}
)


@P.generate("sort key")
def _sort_key():
    direction = yield _ws >> _direction
    target = yield _lexeme(_timestamp) | _name.map(lambda n: {"property": n})
    return {**target, "direction": direction}


_sort_parser = _sort_key.sep_by(_lexeme(P.string(",")), min=1)


# =============================================================================
# Compiler
# =============================================================================

TEXT_TYPES = {"title", "rich_text", "url", "email", "phone_number"}
DATE_TYPES = {"date", "created_time", "last_edited_time"}

OPERATORS_BY_TYPE: dict[str, dict[str, str]] = {
    "checkbox": {"=": "equals", "!=": "does_not_equal"},
    "number": {
        "=": "equals", "!=": "does_not_equal",
        ">": "greater_than", "<": "less_than",
        ">=": "greater_than_or_equal_to", "<=": "less_than_or_equal_to",
    },
    "select": {"=": "equals", "!=": "does_not_equal"},
    "status": {"=": "equals", "!=": "does_not_equal"},
    "multi_select": {"=": "contains", "contains": "contains", "!contains": "does_not_contain"},
    "text": {
        "=": "equals", "!=": "does_not_equal",
        "contains": "contains", "!contains": "does_not_contain",
        "starts_with": "starts_with", "ends_with": "ends_with",
    },
    "date": {
        "=": "equals", "<": "before", ">": "after",
        "<=": "on_or_before", ">=": "on_or_after",
    },
}


def _find_property(name: str, schema: dict) -> tuple[str, dict]:
    """Look up a property by exact, then case-insensitive, name."""
    if name in schema:
        return name, schema[name]
    lowered = name.lower()
    for key, prop in schema.items():
        if key.lower() == lowered:
            return key, prop
    available = ", ".join(sorted(schema)) or "none"
    raise FilterParseError(f"Unknown property '{name}' (available: {available})")


def _coerce_value(value: Any, prop_type: str, prop_name: str) -> Any:
    if prop_type == "checkbox":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        raise FilterParseError(f"'{prop_name}' is a checkbox; expected true or false, got {value!r}")
    if prop_type == "number":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        raise FilterParseError(f"'{prop_name}' is a number; got {value!r}")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _compile_atom(atom: FilterAtom, schema: dict) -> dict:
    name, prop = _find_property(atom.prop, schema)
    prop_type = prop.get("type", "")

    if atom.op in ("is_empty", "is_not_empty"):
        return {"property": name, prop_type: {atom.op: True}}

    family = "text" if prop_type in TEXT_TYPES else "date" if prop_type in DATE_TYPES else prop_type
    operators = OPERATORS_BY_TYPE.get(family)
    if operators is None:
        raise FilterParseError(f"Filtering on '{name}' ({prop_type}) is not supported")
    condition = operators.get(atom.op)
    if condition is None:
        allowed = ", ".join(operators)
        raise FilterParseError(f"Operator '{atom.op}' not valid for {prop_type} '{name}' (use {allowed})")

    return {"property": name, prop_type: {condition: _coerce_value(atom.value, prop_type, name)}}


def compile_filter(node: FilterNode, schema: dict) -> dict:
    """Compile a parsed filter into a Notion filter object.

    Args:
        node: Output of ``parse_filter_dsl``.
        schema: The database's ``properties`` mapping (name → {type, ...}).
    """
    if isinstance(node, FilterAtom):
        return _compile_atom(node, schema)
    return {node.kind: [compile_filter(child, schema) for child in node.children]}


def parse_sort_dsl(text: str, schema: Optional[dict] = None) -> list[dict]:
    """Parse a sort expression into Notion sort objects.

    Property names are resolved against ``schema`` when given.

    Raises:
        FilterParseError: On syntax errors or unknown properties.
    """
    try:
        sorts = _sort_parser.parse(text.strip())
    except P.ParseError as e:
        raise FilterParseError(f"Invalid sort at position {e.index}: expected {e.expected}",
                               position=e.index) from e
    if schema is not None:
        for sort in sorts:
            if "property" in sort:
                sort["property"], _ = _find_property(sort["property"], schema)
    return sorts


def build_query(schema: dict, filter_expr: Union[str, dict, None] = None,
                sort_expr: Union[str, list, None] = None) -> tuple[Optional[dict], Optional[list]]:
    """Resolve filter / sort settings into Notion query objects.

    Dicts and lists are taken to be Notion objects already and pass through.
    """
    filter_obj = filter_expr
    if isinstance(filter_expr, str):
        filter_obj = compile_filter(parse_filter_dsl(filter_expr), schema) if filter_expr.strip() else None
    sorts = sort_expr
    if isinstance(sort_expr, str):
        sorts = parse_sort_dsl(sort_expr, schema) if sort_expr.strip() else None
    return filter_obj, sorts
