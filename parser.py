from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from lexer import Listener, ScopeEnd, ScopeStart, Sink, Token, pre_parse, tokenize


@dataclass
class EventListener:
    """One brace-delimited block bound to an event name."""

    event: str
    tokens: List[Token]


@dataclass
class Pipeline:
    listeners: Dict[str, List[EventListener]] = field(default_factory=dict)

    def add(self, listener: EventListener) -> None:
        self.listeners.setdefault(listener.event, []).append(listener)

    def get(self, event: str) -> List[EventListener]:
        return self.listeners.get(event, [])

    def names(self) -> List[str]:
        return list(self.listeners.keys())


def group_listeners(tokens: Iterable[Token]) -> Pipeline:
    pipeline = Pipeline()
    depth = 0
    current: Optional[str] = None
    body: List[Token] = []

    for token in tokens:
        if current is None:
            # Anything outside an open listener is dropped.
            if isinstance(token, Listener):
                current = token.name
            continue
        if isinstance(token, ScopeStart):
            depth += 1
        elif isinstance(token, ScopeEnd):
            depth -= 1
        body.append(token)
        if depth == 0:
            pipeline.add(EventListener(event=current, tokens=body))
            current = None
            body = []

    return pipeline


def load_source(
    lines: Sequence[str],
    *,
    warning_sink: Optional[Sink] = None,
    debug_sink: Optional[Sink] = None,
) -> Pipeline:
    instructions = pre_parse(lines)
    tokens = tokenize(instructions, warning_sink=warning_sink, debug_sink=debug_sink)
    return group_listeners(tokens)
