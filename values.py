from __future__ import annotations
import re
import numpy as np
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from lexer import EVLError, Position


TYPE_U8 = "u8"
TYPE_U16 = "u16"
TYPE_U32 = "u32"
TYPE_U64 = "u64"
TYPE_I8 = "i8"
TYPE_I16 = "i16"
TYPE_I32 = "i32"
TYPE_I64 = "i64"
TYPE_I128 = "i128"
TYPE_CHAR = "char"
TYPE_STRING = "string"
TYPE_BOOL = "bool"
TYPE_FLOAT = "float"
TYPE_DOUBLE = "double"
TYPE_EVENT = "event"

INTEGER_DTYPES: Dict[str, Any] = {
    TYPE_U8: np.uint8,
    TYPE_U16: np.uint16,
    TYPE_U32: np.uint32,
    TYPE_U64: np.uint64,
    TYPE_I8: np.int8,
    TYPE_I16: np.int16,
    TYPE_I32: np.int32,
    TYPE_I64: np.int64,
}

FLOAT_DTYPES: Dict[str, Any] = {
    TYPE_FLOAT: np.float32,
    TYPE_DOUBLE: np.float64,
}

# numpy has no 128-bit integer; the accumulator is a Python int kept in range.
I128_MIN = -(1 << 127)
I128_MAX = (1 << 127) - 1

INTEGER_TYPES = frozenset(INTEGER_DTYPES) | {TYPE_I128}

DECLARABLE_TYPES = frozenset(INTEGER_DTYPES) | frozenset(FLOAT_DTYPES) | {
    TYPE_CHAR,
    TYPE_STRING,
    TYPE_BOOL,
    TYPE_EVENT,
}

_INT_RE = re.compile(r"[+-]?[0-9]+")
_FLOAT_RE = re.compile(r"[+-]?(?:inf|infinity|nan|(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?)", re.IGNORECASE)
_DECIMAL_RE = re.compile(r"[+-]?(?:[0-9]+\.[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")


class EVLRuntimeError(EVLError):
    """Raised for faults during execution."""

    def __init__(self, message: str, *, kind: str, position: Optional[Position] = None) -> None:
        super().__init__(message, kind=kind, position=position)
        self.step_index: Optional[int] = None


class LiteralError(ValueError):
    """A literal does not match the grammar of its target type."""


@dataclass
class Value:
    type: str
    value: Any

    @property
    def is_null(self) -> bool:
        return self.value is None


@dataclass
class Variable:
    name: str
    value: Value
    nullable: bool = False

    @property
    def type(self) -> str:
        return self.value.type


@dataclass
class Scope:
    variables: List[Variable] = field(default_factory=list)

    def index_of(self, name: str) -> Optional[int]:
        for index, var in enumerate(self.variables):
            if var.name == name:
                return index
        return None

    def snapshot(self) -> Dict[str, str]:
        def _render(var: Variable) -> str:
            rendered = render(var.value)
            text = "null" if rendered is None else rendered
            if len(text) > 80:
                text = text[:77] + "..."
            return f"{var.type}:{text}"

        return {var.name: _render(var) for var in self.variables}


# ---- Literal grammar ----


def parse_literal(type_name: str, text: str) -> Any:
    """Parse ``text`` under the literal grammar of ``type_name``."""
    dtype = INTEGER_DTYPES.get(type_name)
    if dtype is not None:
        if not _INT_RE.fullmatch(text) or (text.startswith("-") and type_name.startswith("u")):
            raise LiteralError(f"{text} is not of type {type_name}")
        number = int(text)
        info = np.iinfo(dtype)
        if number < info.min or number > info.max:
            raise LiteralError(f"{text} is not of type {type_name}")
        return dtype(number)
    dtype = FLOAT_DTYPES.get(type_name)
    if dtype is not None:
        if not _FLOAT_RE.fullmatch(text):
            raise LiteralError(f"{text} is not of type {type_name}")
        with np.errstate(over="ignore"):
            return dtype(float(text))
    if type_name == TYPE_CHAR:
        if len(text) != 1:
            raise LiteralError(f"{text} is not of type char")
        return text
    if type_name == TYPE_STRING:
        if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
            return text[1:-1]
        raise LiteralError(f"{text} is not of type string")
    if type_name == TYPE_BOOL:
        if text == "true":
            return True
        if text == "false":
            return False
        raise LiteralError(f"{text} is not of type bool")
    raise LiteralError(f"Can't directly initialize {type_name} type")


def parse_dynamic_literal(text: str) -> Optional[Value]:
    """Bare literals accepted as dynamic sources: integers, decimals, booleans."""
    if _INT_RE.fullmatch(text):
        try:
            return Value(TYPE_I64, parse_literal(TYPE_I64, text))
        except LiteralError:
            return None
    if _DECIMAL_RE.fullmatch(text):
        return Value(TYPE_DOUBLE, parse_literal(TYPE_DOUBLE, text))
    if text in ("true", "false"):
        return Value(TYPE_BOOL, text == "true")
    return None


def render(value: Value) -> Optional[str]:
    """Text form of a value; ``None`` for null."""
    if value.is_null:
        return None
    if value.type in INTEGER_TYPES:
        return str(int(value.value))
    if value.type in FLOAT_DTYPES:
        return np.format_float_positional(value.value, trim="-")
    if value.type == TYPE_BOOL:
        return "true" if value.value else "false"
    if value.type == TYPE_EVENT:
        return value.value.name()
    return str(value.value)


def split_type(declared: str, position: Optional[Position]) -> Tuple[str, bool]:
    """Split a declared type such as ``?i32`` into its tag and nullability."""
    nullable = declared.startswith("?")
    tag = declared[1:] if nullable else declared
    if tag == TYPE_I128:
        raise EVLRuntimeError("Can't directly initialize i128 type", kind="InvalidLiteral", position=position)
    if tag not in DECLARABLE_TYPES:
        raise EVLRuntimeError(f"Invalid variable type: {declared}", kind="UnknownType", position=position)
    return tag, nullable


# ---- Assignment policies ----


def _static(name: str, tag: str, nullable: bool, literal: str, position: Optional[Position]) -> Value:
    if literal == "null":
        if not nullable:
            raise EVLRuntimeError(
                f"Can't assign null to non-null variable {name}", kind="NullAssignment", position=position
            )
        if tag == TYPE_EVENT:
            raise EVLRuntimeError("Can't directly initialize event type", kind="InvalidLiteral", position=position)
        return Value(tag, None)
    if tag == TYPE_EVENT:
        raise EVLRuntimeError("Can't directly initialize event type", kind="InvalidLiteral", position=position)
    try:
        return Value(tag, parse_literal(tag, literal))
    except LiteralError as exc:
        raise EVLRuntimeError(str(exc), kind="TypeMismatch", position=position) from None


def coerce(
    value: Value,
    tag: str,
    *,
    nullable: bool,
    cast: bool,
    name: str,
    position: Optional[Position],
) -> Value:
    """Apply the null and cast policies for assigning ``value`` to a ``tag`` slot."""
    if value.is_null and not nullable:
        raise EVLRuntimeError(f"Can't assign null to non-null variable {name}", kind="NullAssignment", position=position)
    if value.type == tag:
        return value
    if value.type == TYPE_I128 and tag in INTEGER_DTYPES:
        if value.is_null:
            return Value(tag, None)
        info = np.iinfo(INTEGER_DTYPES[tag])
        number = int(value.value)
        if number < info.min or number > info.max:
            raise EVLRuntimeError(f"{number} does not fit into type {tag}", kind="CastFailure", position=position)
        return Value(tag, INTEGER_DTYPES[tag](number))
    if not cast:
        raise EVLRuntimeError(
            f"Can't assign type {value.type} to variable {name} of type {tag}",
            kind="TypeMismatch",
            position=position,
        )
    text = render(value)
    if text is None:
        return Value(tag, None)
    try:
        return Value(tag, parse_literal(tag, text))
    except LiteralError as exc:
        raise EVLRuntimeError(f"Can't cast {value.type} to {tag}: {exc}", kind="CastFailure", position=position) from None


def declare_static(name: str, declared: str, literal: str, position: Optional[Position]) -> Variable:
    tag, nullable = split_type(declared, position)
    return Variable(name, _static(name, tag, nullable, literal, position), nullable)


def declare_dynamic(name: str, declared: str, value: Value, cast: bool, position: Optional[Position]) -> Variable:
    tag, nullable = split_type(declared, position)
    return Variable(name, coerce(value, tag, nullable=nullable, cast=cast, name=name, position=position), nullable)


def reassign_static(var: Variable, literal: str, position: Optional[Position]) -> Variable:
    # The declared type sticks across reassignment.
    return Variable(var.name, _static(var.name, var.type, var.nullable, literal, position), var.nullable)


def reassign_dynamic(var: Variable, value: Value, cast: bool, position: Optional[Position]) -> Variable:
    coerced = coerce(value, var.type, nullable=var.nullable, cast=cast, name=var.name, position=position)
    return Variable(var.name, coerced, var.nullable)


def event_variable(name: str, event: Any) -> Variable:
    return Variable(name, Value(TYPE_EVENT, event), False)
