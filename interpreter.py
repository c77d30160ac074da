from __future__ import annotations
import json
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from events import STATE_BINDING, STATE_INVOKED, Event, EventHost, EventRegistry
from extensions import HookRegistry, RuntimeServices, build_default_services
from lexer import (
    CallEvent,
    InitVariable,
    InitVariableEvent,
    Position,
    Raw,
    ScopeEnd,
    ScopeStart,
    Token,
    VariableDynamicSet,
    VariableEventSet,
    VariableStaticSet,
)
from parser import Pipeline
from values import (
    TYPE_EVENT,
    TYPE_STRING,
    EVLRuntimeError,
    Scope,
    Value,
    Variable,
    declare_dynamic,
    declare_static,
    event_variable,
    parse_dynamic_literal,
    reassign_dynamic,
    reassign_static,
    split_type,
)


ROOT_EVENT = "OnStart"
DEFAULT_MAX_DEPTH = 512
# upper bound for the interpreter-raised Python recursion limit
PYTHON_FRAME_CEILING = 10000


@dataclass
class Frame:
    """One live event dispatch."""

    name: str
    frame_id: str
    call_location: Optional[Position]


@dataclass
class StepRecord:
    index: int
    step_id: str
    rule: str
    frame_id: Optional[str] = None
    position: Optional[Position] = None
    statement: Optional[str] = None
    previous_id: Optional[str] = None
    # per-scope variable renderings, root first; only kept when verbose
    scopes: Optional[List[Dict[str, str]]] = None


class StepLog:
    """Ordered record of every executed token, used to build tracebacks."""

    def __init__(self, keep_scopes: bool) -> None:
        self.keep_scopes = keep_scopes
        self.records: List[StepRecord] = []
        self._last_in_frame: Dict[str, StepRecord] = {}

    def record(
        self,
        rule: str,
        *,
        frame: Optional[Frame] = None,
        position: Optional[Position] = None,
        statement: Optional[str] = None,
        scopes: Optional[List[Dict[str, str]]] = None,
    ) -> StepRecord:
        index = len(self.records)
        step = StepRecord(
            index=index,
            step_id=f"s_{index:06d}",
            rule=rule,
            frame_id=frame.frame_id if frame else None,
            position=position,
            statement=statement,
            previous_id=self.records[-1].step_id if self.records else None,
            scopes=scopes if self.keep_scopes else None,
        )
        self.records.append(step)
        if frame is not None:
            self._last_in_frame[frame.frame_id] = step
        return step

    def last(self) -> Optional[StepRecord]:
        return self.records[-1] if self.records else None

    def last_in_frame(self, frame_id: str) -> Optional[StepRecord]:
        return self._last_in_frame.get(frame_id)


class Interpreter:
    """Runs a listener pipeline by dispatching events against a scope stack."""

    def __init__(
        self,
        pipeline: Pipeline,
        *,
        filename: str = "<string>",
        verbose: bool = False,
        debug: bool = False,
        max_depth: int = DEFAULT_MAX_DEPTH,
        services: Optional[RuntimeServices] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        warning_sink: Optional[Callable[[str], None]] = None,
        debug_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.pipeline = pipeline
        self.filename = filename
        self.verbose = verbose
        self.max_depth = max_depth
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.output_sink = output_sink or (lambda text: print(text))
        self.warning_sink = warning_sink or (lambda text: print(text, file=sys.stderr))
        if debug:
            self.debug_sink: Optional[Callable[[str], None]] = debug_sink or (lambda text: print(text, file=sys.stderr))
        else:
            self.debug_sink = None
        self.registry = EventRegistry(EventHost(output_sink=self.output_sink, debug_sink=self.debug_sink))
        # Extension events are appended but cannot replace built-in names.
        self.registry.register_all(event_cls for event_cls, _ext in self.services.events)
        known = set(self.registry.names())
        for name in pipeline.names():
            if name not in known:
                self.warning_sink(f'WARNING: Listener for unknown event "{name}" will never run')

        # Index 0 is the permanent root scope.
        self.scopes: List[Scope] = [Scope()]
        self.steps = StepLog(keep_scopes=verbose)
        self.steps.record("SEED", statement="<seed>")
        self.call_stack: List[Frame] = []
        self.frame_counter = 0

    # ---- entry point ----

    def start(self) -> None:
        """Fire the root event and run everything it cascades into."""
        # each dispatch level costs two Python frames: dispatch and execute_token
        needed = min(self.max_depth * 3 + 500, PYTHON_FRAME_CEILING)
        previous_limit = sys.getrecursionlimit()
        if needed > previous_limit:
            sys.setrecursionlimit(needed)
        try:
            self._run_root()
        finally:
            sys.setrecursionlimit(previous_limit)

    def _run_root(self) -> None:
        self._emit_event("program_start", self)
        try:
            self.dispatch(None, None, ROOT_EVENT, None)
        except EVLRuntimeError as error:
            self._emit_event("on_error", self, error)
            error.step_index = self.steps.last().index
            raise
        except RecursionError:
            error = self._at_last_step(
                EVLRuntimeError("Python recursion limit reached while dispatching", kind="RecursionLimitExceeded")
            )
            self._emit_event("on_error", self, error)
            raise error from None
        except Exception as exc:
            self._emit_event("on_error", self, exc)
            raise self._at_last_step(EVLRuntimeError(f"Internal interpreter error: {exc}", kind="Internal")) from exc
        else:
            self._emit_event("program_end", self)

    def _at_last_step(self, error: EVLRuntimeError) -> EVLRuntimeError:
        last = self.steps.last()
        error.position = last.position
        error.step_index = last.index
        return error

    # ---- dispatch ----

    def dispatch(
        self,
        caller: Optional[Event],
        position: Optional[Position],
        name: str,
        params: Optional[Sequence[str]],
    ) -> Event:
        # every dispatch binds a fresh instance; invoked ones are never rebound
        event = self.registry.create(name)
        if event is None:
            raise EVLRuntimeError(f"No such event: {name}", kind="UnknownEvent", position=position)
        if len(self.call_stack) >= self.max_depth:
            raise EVLRuntimeError(
                f"Maximum event depth of {self.max_depth} exceeded while calling {name}",
                kind="RecursionLimitExceeded",
                position=position,
            )
        frame = self._new_frame(name, position)
        self.call_stack.append(frame)

        if caller is not None:
            self._bind(event, caller, position, params or ())
        self._emit_event("before_dispatch", self, event)
        with _stamped(position):
            event.invoke()
        event.state = STATE_INVOKED
        self._debug(f"invoked event {name}")

        for listener in self.pipeline.get(event.name()):
            cancel = False
            for token in listener.tokens:
                if self.execute_token(event, token):
                    cancel = True
            if cancel:
                break

        self._emit_event("after_dispatch", self, event)
        self.call_stack.pop()
        return event

    def _bind(self, event: Event, caller: Event, position: Optional[Position], params: Sequence[str]) -> None:
        count = 0
        for index, param in enumerate(params):
            value = self.resolve_dynamic_value(event.name(), caller, param, position)
            event.state = STATE_BINDING
            with _stamped(position):
                accepted = event.accept(index, value)
            if not accepted:
                raise EVLRuntimeError(
                    f"Invalid event parameter ({param}) for event {event.name()}",
                    kind="InvalidParameter",
                    position=position,
                )
            count += 1
        if not event.check_param_count(count):
            raise EVLRuntimeError(
                f"Incorrect event parameter count for event {event.name()}",
                kind="ParamCountMismatch",
                position=position,
            )

    # ---- tokens ----

    def execute_token(self, caller: Event, token: Token) -> bool:
        """Execute one listener token; returns True when the listener pass should stop."""
        self._log_step(token)
        pos = token.position

        if isinstance(token, ScopeStart):
            self.scopes.append(Scope())
            return False
        if isinstance(token, ScopeEnd):
            if len(self.scopes) <= 1:
                raise EVLRuntimeError("Global scope dropped", kind="EmptyScopeStack", position=pos)
            self.scopes.pop()
            return False
        if isinstance(token, InitVariable):
            self._ensure_new(token.name, pos)
            if token.value is None:
                raise EVLRuntimeError(
                    f"Missing initial value for variable {token.name} (type {token.declared_type})",
                    kind="MissingInitialValue",
                    position=pos,
                )
            if token.is_static:
                var = declare_static(token.name, token.declared_type, token.value, pos)
            else:
                value = self.resolve_dynamic_value(token.name, caller, token.value, pos)
                var = declare_dynamic(token.name, token.declared_type, value, token.cast, pos)
            self.scopes[-1].variables.append(var)
            return False
        if isinstance(token, VariableStaticSet):
            scope_index, var_index = self._require(token.name, pos)
            slot = self.scopes[scope_index].variables
            slot[var_index] = reassign_static(slot[var_index], token.literal, pos)
            return False
        if isinstance(token, VariableDynamicSet):
            scope_index, var_index = self._require(token.name, pos)
            value = self.resolve_dynamic_value(token.name, caller, token.source, pos)
            slot = self.scopes[scope_index].variables
            slot[var_index] = reassign_dynamic(slot[var_index], value, token.cast, pos)
            return False
        if isinstance(token, VariableEventSet):
            self._require(token.name, pos)
            event = self.dispatch(caller, pos, token.event, token.params)
            scope_index, var_index = self._require(token.name, pos)
            self.scopes[scope_index].variables[var_index] = event_variable(token.name, event)
            return event.cancels_listeners()
        if isinstance(token, CallEvent):
            event = self.dispatch(caller, pos, token.name, token.params)
            return event.cancels_listeners()
        if isinstance(token, InitVariableEvent):
            self._ensure_new(token.name, pos)
            tag, _nullable = split_type(token.declared_type, pos)
            event = self.dispatch(caller, pos, token.event, token.params)
            if tag == TYPE_EVENT:
                var = event_variable(token.name, event)
            else:
                # Typed piping reads the event field named after the variable.
                field_value = event.get_var(token.name)
                if field_value is None:
                    raise EVLRuntimeError(
                        f"Event parameter {token.name} not found in event {event.name()}",
                        kind="EventFieldNotFound",
                        position=pos,
                    )
                var = declare_dynamic(token.name, token.declared_type, field_value, token.cast, pos)
            self.scopes[-1].variables.append(var)
            return event.cancels_listeners()
        if isinstance(token, Raw):
            raise EVLRuntimeError(f"Tried to execute unparsed instruction: {token.text}", kind="UnconsumedToken", position=pos)
        raise EVLRuntimeError(f"Unexpected token {token.describe()} in listener body", kind="UnconsumedToken", position=pos)

    # ---- variables ----

    def find_variable(self, name: str) -> Optional[Tuple[int, int]]:
        # Outermost scope first: a root-scope variable wins over a nested one.
        for scope_index, scope in enumerate(self.scopes):
            var_index = scope.index_of(name)
            if var_index is not None:
                return scope_index, var_index
        return None

    def get_variable(self, name: str) -> Optional[Variable]:
        found = self.find_variable(name)
        if found is None:
            return None
        scope_index, var_index = found
        return self.scopes[scope_index].variables[var_index]

    def _require(self, name: str, pos: Position) -> Tuple[int, int]:
        found = self.find_variable(name)
        if found is None:
            raise EVLRuntimeError(f'Variable "{name}" not found in current scope!', kind="VariableNotFound", position=pos)
        return found

    def _ensure_new(self, name: str, pos: Position) -> None:
        if self.scopes[-1].index_of(name) is not None:
            raise EVLRuntimeError(f"Variable {name} already exists in this scope", kind="VariableAlreadyExists", position=pos)

    def resolve_dynamic_value(
        self,
        field_name: str,
        caller: Optional[Event],
        source: str,
        position: Optional[Position],
    ) -> Value:
        if caller is not None and source == caller.name():
            raise EVLRuntimeError(
                f"Reading the current event {source} as a dynamic source is not supported",
                kind="NotSupported",
                position=position,
            )
        var = self.get_variable(source)
        if var is not None:
            if var.type == TYPE_EVENT:
                return self._event_field(var.value.value, field_name, position)
            return var.value
        base, dot, field_part = source.partition(".")
        if dot and field_part:
            holder = self.get_variable(base)
            if holder is not None and holder.type == TYPE_EVENT:
                return self._event_field(holder.value.value, field_part, position)
        if len(source) >= 2 and source.startswith('"') and source.endswith('"'):
            return Value(TYPE_STRING, source[1:-1])
        literal = parse_dynamic_literal(source)
        if literal is not None:
            return literal
        raise EVLRuntimeError(f"Invalid dynamic source for {field_name}: {source}", kind="InvalidDynamicSource", position=position)

    def _event_field(self, event: Event, field_name: str, position: Optional[Position]) -> Value:
        value = event.get_var(field_name)
        if value is None:
            raise EVLRuntimeError(
                f"Event parameter {field_name} not found in event {event.name()}",
                kind="EventFieldNotFound",
                position=position,
            )
        return value

    # ---- bookkeeping ----

    def _new_frame(self, name: str, call_location: Optional[Position]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, frame_id=frame_id, call_location=call_location)

    def _emit_event(self, hook: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(hook, *args, **kwargs)
        except EVLRuntimeError:
            raise
        except Exception as exc:
            raise EVLRuntimeError(
                f"Extension hook '{hook}' failed: {exc}", kind="Internal", position=self.steps.last().position
            ) from exc

    def _log_step(self, token: Token) -> None:
        statement = token.describe()
        self.steps.record(
            token.__class__.__name__,
            frame=self.call_stack[-1] if self.call_stack else None,
            position=token.position,
            statement=statement,
            scopes=[scope.snapshot() for scope in self.scopes] if self.verbose else None,
        )
        self._debug(f"EXECUTE: {statement}")

    def _debug(self, message: str) -> None:
        if self.debug_sink is not None:
            self.debug_sink(f"DEBUG: {message}")


class _stamped:
    """Attach a position to runtime errors raised by event code without one."""

    def __init__(self, position: Optional[Position]) -> None:
        self.position = position

    def __enter__(self) -> None:
        return None

    def __exit__(self, exc_type, exc, tb) -> bool:
        if isinstance(exc, EVLRuntimeError) and exc.position is None:
            exc.position = self.position
        return False


@dataclass
class TracebackFrame:
    name: str
    location: Optional[Position]
    statement: Optional[str]
    step: Optional[StepRecord]


class TracebackFormatter:
    """Renders the dispatch stack left behind by a failed run."""

    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for frame in self.interpreter.call_stack:
            step = self.interpreter.steps.last_in_frame(frame.frame_id)
            frames.append(
                TracebackFrame(
                    name=frame.name,
                    location=step.position if step else frame.call_location,
                    statement=step.statement if step else None,
                    step=step,
                )
            )
        return frames

    def format_text(self, error: EVLRuntimeError, verbose: bool) -> str:
        filename = self.interpreter.filename
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            if frame.location is None:
                lines.append(f"  <unknown location> in {frame.name}")
            else:
                loc = frame.location
                lines.append(f'  File "{filename}", line {loc.line}, column {loc.column}, in {frame.name}')
                if frame.statement:
                    lines.append(f"    {frame.statement}")
            if frame.step is None:
                continue
            lines.append(f"    Step {frame.step.index} ({frame.step.step_id}), rule {frame.step.rule}")
            if verbose and frame.step.scopes is not None:
                for depth, scope in enumerate(frame.step.scopes):
                    rendered = ", ".join(f"{name}={text}" for name, text in scope.items())
                    lines.append(f"    Scope {depth}: {rendered}")
        lines.append(f"{error.__class__.__name__}: {error} (kind: {error.kind})")
        return "\n".join(lines)

    def to_json(self, error: EVLRuntimeError) -> str:
        frames: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            item: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location is not None:
                item["source_location"] = {
                    "file": self.interpreter.filename,
                    "line": frame.location.line,
                    "column": frame.location.column,
                    "statement": frame.statement,
                }
            if frame.step is not None:
                item["step"] = {
                    "index": frame.step.index,
                    "id": frame.step.step_id,
                    "rule": frame.step.rule,
                    "previous_id": frame.step.previous_id,
                }
                if frame.step.scopes is not None:
                    item["scopes"] = frame.step.scopes
            frames.append(item)
        position = error.position
        data = {
            "error": {
                "type": error.__class__.__name__,
                "kind": error.kind,
                "message": error.message,
                "position": None if position is None else {"line": position.line, "column": position.column},
                "failing_step_index": error.step_index,
            },
            "traceback": frames,
        }
        return json.dumps(data, indent=2)
