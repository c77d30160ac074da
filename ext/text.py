"""EVL extension: string events.

Upper takes one string and exposes ``text`` and ``result``.
Concat joins any number of values and exposes ``result``.
"""

from __future__ import annotations

from typing import List, Optional

from events import Event, EventHost
from extensions import ExtensionAPI
from values import TYPE_STRING, Value, render


EVL_EXTENSION_NAME = "text"
EVL_EXTENSION_API_VERSION = 1


class Upper(Event):
    event_name = "Upper"

    def __init__(self, host: EventHost) -> None:
        super().__init__(host)
        self.text: Optional[str] = None
        self.result: Optional[str] = None

    def check_param_count(self, count: int) -> bool:
        return count == 1

    def accept(self, index: int, value: Value) -> bool:
        if index != 0 or value.type != TYPE_STRING:
            return False
        self.text = value.value
        return True

    def invoke(self) -> None:
        if self.text is not None:
            self.result = self.text.upper()

    def get_var(self, field: str) -> Optional[Value]:
        if field == "text":
            return Value(TYPE_STRING, self.text)
        if field == "result":
            return Value(TYPE_STRING, self.result)
        return None


class Concat(Event):
    event_name = "Concat"

    def __init__(self, host: EventHost) -> None:
        super().__init__(host)
        self.parts: List[str] = []
        self.result: Optional[str] = None

    def check_param_count(self, count: int) -> bool:
        return count > 0

    def accept(self, index: int, value: Value) -> bool:
        text = render(value)
        self.parts.append("null" if text is None else text)
        return True

    def invoke(self) -> None:
        self.result = "".join(self.parts)

    def clone_self(self) -> Event:
        clone = Concat(self.host)
        clone.parts = list(self.parts)
        clone.result = self.result
        clone.state = self.state
        return clone

    def get_var(self, field: str) -> Optional[Value]:
        if field == "result":
            return Value(TYPE_STRING, self.result)
        return None


def evl_register(ext: ExtensionAPI) -> None:
    ext.metadata(name=EVL_EXTENSION_NAME, version="0.1.0")
    ext.register_event(Upper)
    ext.register_event(Concat)
