import json
import sys

import pytest

from conftest import run_source
from events import STATE_INVOKED, Event
from extensions import ExtensionAPI, RuntimeServices
from interpreter import DEFAULT_MAX_DEPTH, Interpreter, TracebackFormatter
from lexer import EVLLoadError, Position, ScopeEnd
from parser import EventListener, Pipeline, load_source
from values import EVLRuntimeError


def failure(source, **kwargs):
    """Run a script expected to fail; returns (error, printed lines, interpreter)."""
    out = []
    pipeline = load_source(source.strip("\n").splitlines())
    interpreter = Interpreter(pipeline, output_sink=out.append, **kwargs)
    with pytest.raises(EVLRuntimeError) as info:
        interpreter.start()
    return info.value, out, interpreter


class TestScenarios:
    def test_print_literal(self, run):
        assert run('OnStart { #Print "hi"; }') == ["hi"]

    def test_piped_addition(self, run):
        assert run("OnStart { result(i64) <- #+ 2 3; #Print result; }") == ["5"]

    def test_unbalanced_source_never_runs(self):
        out = []
        with pytest.raises(EVLLoadError) as info:
            load_source(["OnStart {", '#Print "hi";'])
        assert info.value.kind == "UnbalancedScope"
        assert info.value.position is None
        assert out == []

    def test_sticky_type_stops_at_second_statement(self):
        error, out, _ = failure(
            """
OnStart {
    x(i32) = 5;
    x = "a";
    #Print x;
}
"""
        )
        assert error.kind == "TypeMismatch"
        assert error.position == Position(3, 5)
        assert out == []

    def test_repeated_listener_blocks_run_in_order(self, run):
        source = """
        OnStart { x(i32) = 1; #Print x; }
        OnStart { x(i32) = 2; #Print x; }
        """
        assert run(source) == ["1", "2"]

    def test_division_with_nonzero_divisor(self, run):
        source = """
        OnStart {
            d(event) <- #/ 7 2;
            m(event) <- #% -7 2;
            #Print d.result " " m.result;
        }
        """
        assert run(source) == ["3 -1"]

    @pytest.mark.parametrize("op", ["/", "%"])
    def test_zero_divisor_is_fatal(self, op):
        error, out, _ = failure(f'OnStart {{ #Print "before"; result(i64) <- #{op} 7 0; #Print result; }}')
        assert error.kind == "DivisionByZero"
        assert error.position is not None
        assert out == ["before"]


def test_outer_variable_wins_over_nested_one(run):
    source = """
    OnStart {
        x(i32) = 1;
        {
            x(i32) = 2;
            #Print x;
        }
    }
    """
    assert run(source) == ["1"]


def test_nested_scope_variables_are_dropped(run):
    source = """
    OnStart {
        { y(i32) = 2; }
        y(string) = "gone";
        #Print y;
    }
    """
    assert run(source) == ["gone"]


def test_reassignment_and_cast(run):
    source = """
    OnStart {
        s(string) = "42";
        n(u8) <= s;
        n = 7;
        w(i64) <= n;
        #Print n " " w;
    }
    """
    assert run(source) == ["7 7"]


def test_dynamic_assignment_without_cast_is_a_mismatch():
    error, _, _ = failure('OnStart { s(string) = "42"; n(u8) <- s; }')
    assert error.kind == "TypeMismatch"


def test_null_values(run):
    source = """
    OnStart {
        x(?i32) = null;
        #Print x;
        #Print "x is " x;
    }
    """
    assert run(source) == ["null", "x is null"]


def test_event_set_replaces_variable(run):
    source = """
    OnStart {
        e(event) <- #+ 1 1;
        e <- #* 3 4;
        #Print e.result;
    }
    """
    assert run(source) == ["12"]


def test_event_variable_keeps_operands(run):
    source = """
    OnStart {
        sum(event) <- #+ 40 2;
        #Print sum.num1 "+" sum.num2 "=" sum.result;
    }
    """
    assert run(source) == ["40+2=42"]


def test_listener_on_builtin_event(run):
    source = """
    + { #Print "added"; }
    OnStart { #+ 1 2; #+ 3 4; }
    """
    assert run(source) == ["added", "added"]


def test_variables_are_visible_to_nested_listeners(run):
    source = """
    OnStart { greeting(string) = "hello"; #+ 1 1; }
    + { #Print greeting; }
    """
    assert run(source) == ["hello"]


class TestRuntimeErrors:
    @pytest.mark.parametrize(
        "body, kind",
        [
            ("x(i32) <- OnStart;", "NotSupported"),
            ("#Nope;", "UnknownEvent"),
            ("#+ 1;", "ParamCountMismatch"),
            ("#Print;", "ParamCountMismatch"),
            ('#+ "a" 1;', "InvalidParameter"),
            ("y = 5;", "VariableNotFound"),
            ("y <- 5;", "VariableNotFound"),
            ("x(i32)", "MissingInitialValue"),
            ("stray", "UnconsumedToken"),
            ("x(i32) <- nowhere;", "InvalidDynamicSource"),
            ("missing(i64) <- #+ 1 2;", "EventFieldNotFound"),
            ("e(event) <- #+ 1 2; x(i64) <- e.nothing;", "EventFieldNotFound"),
            ("x(i32) = 1; x(i32) = 2;", "VariableAlreadyExists"),
            ("x(i32) = null;", "NullAssignment"),
            ("x(int) = 1;", "UnknownType"),
            ("x(i128) = 1;", "InvalidLiteral"),
            ("result(u8) <- #+ 300 0;", "CastFailure"),
        ],
    )
    def test_kind(self, body, kind):
        error, _, _ = failure(f"OnStart {{ {body} }}")
        assert error.kind == kind
        assert error.position is not None

    def test_recursion_limit(self):
        error, out, _ = failure('Print { #Print "again"; }\nOnStart { #Print "go"; }', max_depth=16)
        assert error.kind == "RecursionLimitExceeded"
        assert out[0] == "go"
        assert len(out) < 16

    def test_dropping_the_root_scope(self):
        pipeline = Pipeline()
        pipeline.add(EventListener("OnStart", [ScopeEnd(Position(1, 1))]))
        with pytest.raises(EVLRuntimeError) as info:
            Interpreter(pipeline, output_sink=lambda _: None).start()
        assert info.value.kind == "EmptyScopeStack"

    def test_error_records_failing_step(self):
        error, _, interpreter = failure("OnStart { y = 1; }")
        assert error.step_index == interpreter.steps.last().index
        assert str(error).endswith("(at 1:15)")


class Boom(Event):
    event_name = "Boom"

    def invoke(self):
        raise ValueError("kaput")


class Stop(Event):
    event_name = "Stop"

    def cancels_listeners(self):
        return True


def services_with(*event_classes):
    services = RuntimeServices()
    api = ExtensionAPI(services=services, ext_name="tests")
    for event_cls in event_classes:
        api.register_event(event_cls)
    return services, api


def test_cancel_skips_remaining_listeners(run):
    services, _ = services_with(Stop)
    source = """
    OnStart { #Print "first"; #Stop; #Print "rest of first"; }
    OnStart { #Print "second"; }
    """
    assert run(source, services=services) == ["first", "rest of first"]


def test_internal_errors_are_wrapped():
    services, _ = services_with(Boom)
    error, _, _ = failure("OnStart {\n#Boom;\n}", services=services)
    assert error.kind == "Internal"
    assert "kaput" in error.message
    assert isinstance(error.__cause__, ValueError)
    assert error.position == Position(2, 1)


def test_hooks_fire_around_dispatch():
    services, api = services_with()
    seen = []
    api.on_event("program_start", lambda interp: seen.append("start"))
    api.on_event("program_end", lambda interp: seen.append("end"))
    api.on_event("before_dispatch", lambda interp, event: seen.append(f"before {event.name()}"))

    @api.on_event("after_dispatch")
    def after(interp, event):
        seen.append(f"after {event.name()}")

    run_source('OnStart { #Print "x"; }', services=services)
    assert seen == ["start", "before OnStart", "before Print", "after Print", "after OnStart", "end"]


def test_hook_priority_orders_handlers():
    services, api = services_with()
    seen = []
    api.on_event("program_start", lambda interp: seen.append("low"), priority=-1)
    api.on_event("program_start", lambda interp: seen.append("high"), priority=5)
    run_source("OnStart { }", services=services)
    assert seen == ["high", "low"]


def test_on_error_hook_sees_the_error():
    services, api = services_with()
    errors = []
    api.on_event("on_error", lambda interp, error: errors.append(error.kind))
    failure("OnStart { #Nope; }", services=services)
    assert errors == ["UnknownEvent"]


def test_failing_hook_is_internal():
    services, api = services_with()

    def explode(interp, event):
        raise RuntimeError("hook broke")

    api.on_event("before_dispatch", explode)
    error, _, _ = failure("OnStart { }", services=services)
    assert error.kind == "Internal"
    assert "before_dispatch" in error.message


def test_debug_sink_receives_trace():
    lines = []
    run_source('OnStart { #Print "x"; }', debug=True, debug_sink=lines.append)
    assert "DEBUG: START EVENT CALLED" in lines
    assert all(line.startswith("DEBUG: ") for line in lines)
    assert any("EXECUTE" in line for line in lines)


def test_debug_sink_ignored_unless_enabled():
    lines = []
    run_source('OnStart { #Print "x"; }', debug_sink=lines.append)
    assert lines == []


def test_listener_scope_is_released_after_run():
    _, interpreter = run_source("OnStart { e(event) <- #- 1 5; }")
    assert len(interpreter.scopes) == 1
    assert interpreter.scopes[0].variables == []
    assert interpreter.steps.records[0].rule == "SEED"
    assert interpreter.call_stack == []


class TestTraceback:
    SOURCE = """
OnStart {
    x(i32) = 7;
    #Print "ok";
    y = 1;
}
"""

    def test_text(self):
        error, out, interpreter = failure(self.SOURCE, filename="demo.evl")
        assert out == ["ok"]
        lines = TracebackFormatter(interpreter).format_text(error, verbose=False).splitlines()
        assert lines[0] == "Traceback (most recent call last):"
        assert lines[1] == '  File "demo.evl", line 4, column 5, in OnStart'
        assert lines[2] == "    y = 1;"
        assert lines[3].startswith("    Step ") and lines[3].endswith("rule VariableStaticSet")
        assert lines[-1].startswith("EVLRuntimeError: ")
        assert lines[-1].endswith("(kind: VariableNotFound)")
        assert not any("Scope" in line for line in lines)

    def test_verbose_text_shows_scopes(self):
        error, _, interpreter = failure(self.SOURCE, verbose=True)
        text = TracebackFormatter(interpreter).format_text(error, verbose=True)
        assert "Scope 1: x=i32:7" in text

    def test_json(self):
        error, _, interpreter = failure(self.SOURCE, filename="demo.evl", verbose=True)
        data = json.loads(TracebackFormatter(interpreter).to_json(error))
        assert data["error"]["kind"] == "VariableNotFound"
        assert data["error"]["type"] == "EVLRuntimeError"
        assert data["error"]["failing_step_index"] == error.step_index
        assert data["error"]["position"] == {"line": 4, "column": 5}
        (frame,) = data["traceback"]
        assert frame["name"] == "OnStart"
        assert frame["source_location"] == {"file": "demo.evl", "line": 4, "column": 5, "statement": "y = 1;"}
        assert frame["step"]["rule"] == "VariableStaticSet"
        assert frame["scopes"][1] == {"x": "i32:7"}

    def test_nested_frames(self):
        error, _, interpreter = failure('Print { z = 1; }\nOnStart { #Print "go"; }')
        names = [frame.name for frame in TracebackFormatter(interpreter).build_frames()]
        assert names == ["OnStart", "Print"]
        assert error.kind == "VariableNotFound"


def test_listener_for_unknown_event_warns():
    warnings = []
    out, _ = run_source('Tick { #Print "never"; }\nOnStart { }', warning_sink=warnings.append)
    assert out == []
    assert warnings == ['WARNING: Listener for unknown event "Tick" will never run']


def test_leading_null_is_printed(run):
    assert run('OnStart { x(?i32) = null; #Print x " tail"; }') == ["null tail"]


def test_default_depth_limit_stops_a_runaway_cycle():
    limit_before = sys.getrecursionlimit()
    error, out, interpreter = failure('Print { #Print "again"; }\nOnStart { #Print "go"; }')
    assert error.kind == "RecursionLimitExceeded"
    assert f"Maximum event depth of {DEFAULT_MAX_DEPTH}" in error.message
    assert len(interpreter.call_stack) == DEFAULT_MAX_DEPTH
    assert len(out) == DEFAULT_MAX_DEPTH - 1
    assert sys.getrecursionlimit() == limit_before


def test_python_recursion_error_reaches_on_error(monkeypatch):
    services, api = services_with()
    kinds = []
    api.on_event("on_error", lambda interp, error: kinds.append(error.kind))
    interpreter = Interpreter(load_source(["OnStart { }"]), services=services, output_sink=lambda _: None)

    def overflow(*args):
        raise RecursionError("maximum recursion depth exceeded")

    monkeypatch.setattr(interpreter, "dispatch", overflow)
    with pytest.raises(EVLRuntimeError) as info:
        interpreter.start()
    assert info.value.kind == "RecursionLimitExceeded"
    assert kinds == ["RecursionLimitExceeded"]


def test_each_dispatch_binds_a_fresh_instance():
    services, api = services_with()
    seen = []
    api.on_event("before_dispatch", lambda interp, event: seen.append(event))
    run_source("OnStart { #+ 1 2; #+ 3 4; }", services=services)
    adds = [event for event in seen if event.name() == "+"]
    assert len(adds) == 2
    assert adds[0] is not adds[1]
    assert [event.get_var("result").value for event in adds] == [3, 7]
    assert all(event.state == STATE_INVOKED for event in adds)
