from lexer import CallEvent, Listener, Position, Raw, ScopeEnd, ScopeStart
from parser import EventListener, Pipeline, group_listeners, load_source


P = Position(1, 1)


def test_separate_blocks_stay_separate_in_source_order():
    pipeline = load_source([
        "Tick {", '#Print "a";', "}",
        "OnStart {", "}",
        "Tick {", '#Print "b";', "}",
    ])
    ticks = pipeline.get("Tick")
    assert len(ticks) == 2
    assert [t.tokens[1].params for t in ticks] == [('"a"',), ('"b"',)]
    assert pipeline.names() == ["Tick", "OnStart"]


def test_body_is_brace_delimited_and_excludes_header():
    pipeline = load_source(["A { { } }"])
    (listener,) = pipeline.get("A")
    assert [type(t) for t in listener.tokens] == [ScopeStart, ScopeStart, ScopeEnd, ScopeEnd]


def test_tokens_outside_listeners_are_dropped():
    tokens = [
        Raw(P, "before"),
        Listener(P, "A"),
        ScopeStart(P),
        CallEvent(P, "Print", ('"x"',)),
        ScopeEnd(P),
        Raw(P, "after"),
    ]
    pipeline = group_listeners(tokens)
    assert pipeline.names() == ["A"]
    (listener,) = pipeline.get("A")
    assert listener.tokens == tokens[2:5]


def test_unknown_event_has_no_listeners():
    assert Pipeline().get("Nothing") == []


def test_add_appends_per_event():
    pipeline = Pipeline()
    pipeline.add(EventListener("E", [ScopeStart(P), ScopeEnd(P)]))
    pipeline.add(EventListener("E", [ScopeStart(P), ScopeEnd(P)]))
    assert len(pipeline.get("E")) == 2
