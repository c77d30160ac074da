from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple


class EVLError(Exception):
    """Base class for interpreter errors."""

    def __init__(self, message: str, *, kind: str, position: Optional["Position"] = None) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.position = position

    def __str__(self) -> str:
        if self.position is None:
            return f"{self.message} (unknown position)"
        return f"{self.message} (at {self.position})"


class EVLLoadError(EVLError):
    """Raised when pre-parsing, tokenizing or grouping fails."""


@dataclass(frozen=True)
class Position:
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.line}:{self.column}"


# ---- Tokens ----


@dataclass
class Token:
    position: Position

    def describe(self) -> str:
        return self.__class__.__name__


@dataclass
class Listener(Token):
    name: str

    def describe(self) -> str:
        return self.name


@dataclass
class ScopeStart(Token):
    def describe(self) -> str:
        return "{"


@dataclass
class ScopeEnd(Token):
    def describe(self) -> str:
        return "}"


@dataclass
class Raw(Token):
    text: str

    def describe(self) -> str:
        return self.text


@dataclass
class CallEvent(Token):
    name: str
    params: Optional[Tuple[str, ...]] = None

    def describe(self) -> str:
        return _call_text(f"#{self.name}", self.params)


@dataclass
class InitVariable(Token):
    name: str
    declared_type: str
    is_static: bool
    cast: bool
    value: Optional[str] = None

    def describe(self) -> str:
        head = f"{self.name}({self.declared_type})"
        if self.value is None:
            return head
        op = "=" if self.is_static else ("<=" if self.cast else "<-")
        return f"{head} {op} {self.value};"


@dataclass
class VariableStaticSet(Token):
    name: str
    literal: str

    def describe(self) -> str:
        return f"{self.name} = {self.literal};"


@dataclass
class VariableDynamicSet(Token):
    name: str
    source: str
    cast: bool

    def describe(self) -> str:
        return f"{self.name} {'<=' if self.cast else '<-'} {self.source};"


@dataclass
class VariableEventSet(Token):
    name: str
    event: str
    params: Optional[Tuple[str, ...]] = None

    def describe(self) -> str:
        return f"{self.name} <- " + _call_text(f"#{self.event}", self.params)


@dataclass
class InitVariableEvent(Token):
    name: str
    event: str
    params: Optional[Tuple[str, ...]] = None
    declared_type: str = "event"
    cast: bool = False

    def describe(self) -> str:
        op = "<=" if self.cast else "<-"
        return f"{self.name}({self.declared_type}) {op} " + _call_text(f"#{self.event}", self.params)


def _call_text(head: str, params: Optional[Sequence[str]]) -> str:
    if not params:
        return f"{head};"
    return f"{head} {' '.join(params)};"


EVENT_CALL_TOKENS = (CallEvent, InitVariableEvent, VariableEventSet)

Instruction = Tuple[Position, str]
Sink = Callable[[str], None]

# `name(type)` written as one word
_GLUED_DECL = re.compile(r"([^\s()#\"{}]+)\((\??[A-Za-z0-9_]+)\)")


# ---- Pre-parser ----


def pre_parse(lines: Sequence[str]) -> List[Instruction]:
    """Split raw lines into positioned words, fusing quoted string literals.

    Columns are approximate: a word's column is one plus the summed length of
    the words before it on the same line, counting one separator per word.
    """
    words: List[Instruction] = []
    for line_number, line in enumerate(lines, start=1):
        column = 1
        for word in line.split():
            words.append((Position(line_number, column), word))
            column += len(word) + 1

    out: List[Instruction] = []
    fusing = False
    parts: List[str] = []
    start = Position(0, 0)
    for position, word in words:
        semicolon = word.endswith(";")
        if semicolon:
            word = word[:-1]

        if fusing:
            if word.endswith('"'):
                parts.append(word)
                text = " ".join(parts)
                out.append((start, text + ";" if semicolon else text))
                parts = []
                fusing = False
            else:
                # semicolons inside a literal belong to the literal
                parts.append(word + ";" if semicolon else word)
            continue

        if word.startswith('"') and not (len(word) >= 2 and word.endswith('"')):
            fusing = True
            start = position
            parts = [word + ";" if semicolon else word]
            continue

        out.append((position, word + ";" if semicolon else word))

    if fusing:
        raise EVLLoadError("String not closed", kind="UnterminatedString", position=start)
    return out


# ---- Tokenizer ----


@dataclass
class TokenizerState:
    scope_depth: int = 0
    static_pending: bool = False
    dynamic_pending: bool = False
    cast: bool = False
    listener: Optional[str] = None
    # a listener header was read and its `{` has not been seen yet
    awaiting_body: bool = False
    params: List[str] = field(default_factory=list)


class Tokenizer:
    def __init__(
        self,
        *,
        warning_sink: Optional[Sink] = None,
        debug_sink: Optional[Sink] = None,
    ) -> None:
        self.warning_sink = warning_sink
        self.debug_sink = debug_sink
        self.state = TokenizerState()
        self.tokens: List[Token] = []

    def tokenize(self, instructions: Sequence[Instruction]) -> List[Token]:
        self.state = TokenizerState()
        self.tokens = []
        for position, word in instructions:
            self._consume(position, word)
        if self.state.scope_depth > 0:
            raise EVLLoadError(
                f"Missing exit for {self.state.scope_depth} scope(s)",
                kind="UnbalancedScope",
            )
        if self.state.static_pending or self.state.dynamic_pending:
            raise EVLLoadError("Unterminated assignment at end of input", kind="MissingSemicolon")
        if self.state.awaiting_body:
            raise EVLLoadError(f"Listener {self.state.listener} has no body", kind="UnexpectedToken")
        return self.tokens

    def _consume(self, pos: Position, word: str) -> None:
        state = self.state
        semicolon = word.endswith(";")
        if semicolon:
            word = word[:-1]

        if state.awaiting_body and word != "{":
            raise EVLLoadError(
                f"Expected {{ after listener {state.listener}, found {word}",
                kind="UnexpectedToken",
                position=pos,
            )

        if word == "{" or word == "}":
            self._scope(pos, word)
        elif state.listener is None:
            self._open_listener(pos, word)
        elif word.startswith("#"):
            self._call(pos, word[1:], semicolon)
            semicolon = False
        elif len(word) >= 2 and word.startswith("(") and word.endswith(")"):
            self._declare(pos, word[1:-1])
        elif not (state.static_pending or state.dynamic_pending) and _GLUED_DECL.fullmatch(word):
            name, type_name = _GLUED_DECL.fullmatch(word).groups()
            self.tokens.append(Raw(pos, name))
            self._declare(pos, type_name)
        elif word == "=":
            self._expect_target(pos, (Raw, InitVariable), "No variable name specified", "MissingVariableName")
            state.static_pending = True
        elif word == "<-" or word == "<=":
            self._expect_target(
                pos,
                (Raw, InitVariable) + EVENT_CALL_TOKENS,
                "No dynamic target specified",
                "MissingDynamicTarget",
            )
            state.dynamic_pending = True
            state.cast = word == "<="
        elif state.static_pending:
            self._static_value(pos, word, semicolon)
            semicolon = False
        elif state.dynamic_pending:
            self._dynamic_value(pos, word, semicolon)
            semicolon = False
        else:
            self.tokens.append(Raw(pos, word))

        if semicolon:
            raise EVLLoadError("Unexpected semicolon", kind="UnexpectedSemicolon", position=pos)

    # Handlers

    def _scope(self, pos: Position, word: str) -> None:
        state = self.state
        if state.static_pending or state.dynamic_pending:
            raise EVLLoadError(
                "Missing a semicolon before scope boundary",
                kind="MissingSemicolon",
                position=pos,
            )
        if word == "{":
            if state.listener is None:
                raise EVLLoadError("Scope opened without a listener name", kind="UnexpectedToken", position=pos)
            self.tokens.append(ScopeStart(pos))
            state.scope_depth += 1
            state.awaiting_body = False
            self._debug(f"entered scope (now level {state.scope_depth})")
            return
        state.scope_depth -= 1
        if state.scope_depth < 0:
            raise EVLLoadError(
                f"Tried to exit non-existent scope (scope depth: {state.scope_depth})",
                kind="UnbalancedScope",
                position=pos,
            )
        self.tokens.append(ScopeEnd(pos))
        self._debug(f"exited scope (now level {state.scope_depth})")
        if state.scope_depth == 0:
            self._debug(f"left listener {state.listener}")
            state.listener = None

    def _open_listener(self, pos: Position, word: str) -> None:
        if word.endswith("{") and self.warning_sink is not None:
            self.warning_sink(f'WARNING: Weird event name "{word}", did you forget a whitespace? (at {pos})')
        self.tokens.append(Listener(pos, word))
        self.state.listener = word
        self.state.awaiting_body = True
        self._debug(f"entered listener {word}")

    def _call(self, pos: Position, name: str, semicolon: bool) -> None:
        state = self.state
        if not name:
            raise EVLLoadError("No event to call specified", kind="UnexpectedToken", position=pos)
        if state.static_pending:
            raise EVLLoadError(
                f"Can't assign event #{name} statically, use <- instead",
                kind="UnexpectedToken",
                position=pos,
            )
        if state.dynamic_pending:
            if not self.tokens:
                raise EVLLoadError("Can't pipe event to empty variable", kind="MissingDynamicTarget", position=pos)
            target = self.tokens.pop()
            if isinstance(target, InitVariable):
                if target.value is not None:
                    raise EVLLoadError(
                        f'Can\'t initiate variable "{target.name}" twice!',
                        kind="DoubleInitialization",
                        position=pos,
                    )
                self.tokens.append(
                    InitVariableEvent(pos, target.name, name, None, target.declared_type, state.cast)
                )
            elif isinstance(target, Raw):
                self.tokens.append(VariableEventSet(pos, target.text, name))
            else:
                raise EVLLoadError("Illegal event call (syntax doesn't make sense)", kind="UnexpectedToken", position=pos)
        else:
            self.tokens.append(CallEvent(pos, name))
        self._debug(f"call event {name}")

        # Parameters follow the call until a word ends with ';'.
        state.dynamic_pending = not semicolon
        state.cast = False
        state.params = []

    def _declare(self, pos: Position, type_name: str) -> None:
        target = self.tokens.pop() if self.tokens else None
        if not isinstance(target, Raw):
            raise EVLLoadError("No variable name specified", kind="MissingVariableName", position=pos)
        self._debug(f"variable {target.text} of type {type_name}")
        self.tokens.append(InitVariable(pos, target.text, type_name, True, False))

    def _expect_target(self, pos: Position, allowed: tuple, message: str, kind: str) -> None:
        if not self.tokens or not isinstance(self.tokens[-1], allowed):
            raise EVLLoadError(message, kind=kind, position=pos)

    def _static_value(self, pos: Position, word: str, semicolon: bool) -> None:
        state = self.state
        target = self.tokens.pop()
        if isinstance(target, Raw):
            self._debug(f"change variable {target.text} to {word}")
            self.tokens.append(VariableStaticSet(pos, target.text, word))
        elif isinstance(target, InitVariable):
            if target.value is not None:
                raise EVLLoadError(
                    f'Can\'t initiate variable "{target.name}" twice!',
                    kind="DoubleInitialization",
                    position=pos,
                )
            self._debug(f"initiate variable {target.name} of type {target.declared_type} to {word}")
            self.tokens.append(InitVariable(pos, target.name, target.declared_type, True, False, word))
        else:
            raise EVLLoadError("No variable name specified", kind="MissingVariableName", position=pos)
        if not semicolon:
            raise EVLLoadError("Missing a semicolon after variable declaration", kind="MissingSemicolon", position=pos)
        state.static_pending = False

    def _dynamic_value(self, pos: Position, word: str, semicolon: bool) -> None:
        state = self.state
        target = self.tokens.pop()
        if isinstance(target, EVENT_CALL_TOKENS):
            state.params.append(word)
            if not semicolon:
                self.tokens.append(target)
                return
            params = tuple(state.params)
            if isinstance(target, CallEvent):
                self.tokens.append(CallEvent(pos, target.name, params))
            elif isinstance(target, InitVariableEvent):
                self.tokens.append(
                    InitVariableEvent(pos, target.name, target.event, params, target.declared_type, target.cast)
                )
            else:
                self.tokens.append(VariableEventSet(pos, target.name, target.event, params))
            state.params = []
            state.dynamic_pending = False
            return

        if isinstance(target, Raw):
            self._debug(f"change variable {target.text} to {word}")
            self.tokens.append(VariableDynamicSet(pos, target.text, word, state.cast))
        elif isinstance(target, InitVariable):
            if target.value is not None:
                raise EVLLoadError(
                    f'Can\'t initiate variable "{target.name}" twice!',
                    kind="DoubleInitialization",
                    position=pos,
                )
            self._debug(f"initiate variable {target.name} of type {target.declared_type} to {word}")
            self.tokens.append(InitVariable(pos, target.name, target.declared_type, False, state.cast, word))
        else:
            raise EVLLoadError("No variable name specified", kind="MissingVariableName", position=pos)
        if not semicolon:
            raise EVLLoadError("Missing a semicolon after dynamic declaration", kind="MissingSemicolon", position=pos)
        state.dynamic_pending = False

    def _debug(self, message: str) -> None:
        if self.debug_sink is not None:
            self.debug_sink(f"DEBUG: {message}")


def tokenize(
    instructions: Sequence[Instruction],
    *,
    warning_sink: Optional[Sink] = None,
    debug_sink: Optional[Sink] = None,
) -> List[Token]:
    return Tokenizer(warning_sink=warning_sink, debug_sink=debug_sink).tokenize(instructions)
