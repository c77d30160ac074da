from __future__ import annotations
import copy
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from extensions import EVLExtensionError
from values import (
    I128_MAX,
    I128_MIN,
    INTEGER_TYPES,
    TYPE_I128,
    TYPE_STRING,
    EVLRuntimeError,
    Value,
    render,
)


STATE_UNBOUND = "unbound"
STATE_BINDING = "binding"
STATE_INVOKED = "invoked"


@dataclass
class EventHost:
    """What an event may touch on the interpreter side."""

    output_sink: Callable[[str], None]
    debug_sink: Optional[Callable[[str], None]] = None

    def debug(self, message: str) -> None:
        if self.debug_sink is not None:
            self.debug_sink(f"DEBUG: {message}")


class Event:
    """Capability set of every dispatchable behaviour.

    An instance is built per dispatch. The interpreter feeds parameters with
    ``accept`` in ascending index order, checks the count once all of them
    are in, then calls ``invoke``. Afterwards ``get_var`` exposes the named
    outputs. An invoked instance is never bound again; use ``clone_self`` or
    the registry for a fresh one.
    """

    event_name = ""

    def __init__(self, host: EventHost) -> None:
        self.host = host
        self.state = STATE_UNBOUND

    def name(self) -> str:
        return self.event_name

    def check_param_count(self, count: int) -> bool:
        return count == 0

    def get_var(self, field: str) -> Optional[Value]:
        return None

    def accept(self, index: int, value: Value) -> bool:
        return False

    def invoke(self) -> None:
        pass

    def clone_self(self) -> "Event":
        return copy.copy(self)

    def cancels_listeners(self) -> bool:
        return False

    def __repr__(self) -> str:
        return f"#{self.name()}"


class OnStart(Event):
    event_name = "OnStart"

    def invoke(self) -> None:
        self.host.debug("START EVENT CALLED")


class Print(Event):
    event_name = "Print"

    def __init__(self, host: EventHost) -> None:
        super().__init__(host)
        self.parts: List[str] = []

    def check_param_count(self, count: int) -> bool:
        return count > 0

    def accept(self, index: int, value: Value) -> bool:
        text = render(value)
        self.parts.append("null" if text is None else text)
        return True

    def message(self) -> Optional[str]:
        return "".join(self.parts) if self.parts else None

    def get_var(self, field: str) -> Optional[Value]:
        if field == "message":
            return Value(TYPE_STRING, self.message())
        return None

    def invoke(self) -> None:
        self.host.output_sink("".join(self.parts))

    def clone_self(self) -> Event:
        clone = copy.copy(self)
        clone.parts = list(self.parts)
        return clone


class ArithmeticEvent(Event):
    """Two integer operands widened into the i128 accumulator."""

    def __init__(self, host: EventHost) -> None:
        super().__init__(host)
        self.num1: Optional[int] = None
        self.num2: Optional[int] = None
        self.result: Optional[int] = None

    def check_param_count(self, count: int) -> bool:
        return count == 2

    def get_var(self, field: str) -> Optional[Value]:
        if field == "num1":
            return Value(TYPE_I128, self.num1)
        if field == "num2":
            return Value(TYPE_I128, self.num2)
        if field == "result":
            return Value(TYPE_I128, self.result)
        return None

    def accept(self, index: int, value: Value) -> bool:
        if value.type not in INTEGER_TYPES or index > 1:
            return False
        number = None if value.is_null else int(value.value)
        if index == 0:
            self.num1 = number
        else:
            self.num2 = number
        return True

    def invoke(self) -> None:
        if self.num1 is None or self.num2 is None:
            return
        result = self.compute(self.num1, self.num2)
        if result < I128_MIN or result > I128_MAX:
            raise EVLRuntimeError(
                f"Result of {self.num1} {self.name()} {self.num2} overflows i128",
                kind="IntegerOverflow",
            )
        self.result = result

    def compute(self, a: int, b: int) -> int:
        raise NotImplementedError


class MathAdd(ArithmeticEvent):
    event_name = "+"

    def compute(self, a: int, b: int) -> int:
        return a + b


class MathSubtract(ArithmeticEvent):
    event_name = "-"

    def compute(self, a: int, b: int) -> int:
        return a - b


class MathMultiply(ArithmeticEvent):
    event_name = "*"

    def compute(self, a: int, b: int) -> int:
        return a * b


def _truncating_div(a: int, b: int) -> int:
    quotient = abs(a) // abs(b)
    return quotient if (a >= 0) == (b >= 0) else -quotient


class MathDivide(ArithmeticEvent):
    event_name = "/"

    def compute(self, a: int, b: int) -> int:
        if b == 0:
            raise EVLRuntimeError("Division by zero", kind="DivisionByZero")
        return _truncating_div(a, b)


class MathModulo(ArithmeticEvent):
    event_name = "%"

    def compute(self, a: int, b: int) -> int:
        if b == 0:
            raise EVLRuntimeError("Modulo by zero", kind="DivisionByZero")
        # sign follows the dividend
        return a - b * _truncating_div(a, b)


BUILTIN_EVENTS: List[type] = [OnStart, Print, MathAdd, MathSubtract, MathMultiply, MathDivide, MathModulo]


class EventRegistry:
    def __init__(self, host: EventHost) -> None:
        self.host = host
        self.table: Dict[str, type] = {}
        for event_cls in BUILTIN_EVENTS:
            self.register(event_cls)

    def register(self, event_cls: type) -> None:
        name = event_cls.event_name
        if name in self.table:
            raise EVLExtensionError(f"Cannot override existing event '{name}'")
        self.table[name] = event_cls

    def register_all(self, event_classes: Iterable[type]) -> None:
        for event_cls in event_classes:
            self.register(event_cls)

    def create(self, name: str) -> Optional[Event]:
        event_cls = self.table.get(name)
        if event_cls is None:
            return None
        return event_cls(self.host)

    def names(self) -> List[str]:
        return list(self.table.keys())
