"""EVL entry point: command-line host around the loader and the VM."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import EVLExtensionError, load_runtime_services
from interpreter import DEFAULT_MAX_DEPTH, Interpreter, TracebackFormatter
from lexer import EVLLoadError
from parser import load_source
from values import EVLRuntimeError


ACTIONS = ("simulate", "compile")


def read_lines(path: str) -> List[str]:
    with open(path, "r", encoding="utf-8") as handle:
        return handle.read().splitlines()


def simulate(args: argparse.Namespace) -> int:
    try:
        lines = read_lines(args.file)
    except (OSError, UnicodeDecodeError) as exc:
        print(f"Failed to read {args.file}: {exc}", file=sys.stderr)
        return 1

    try:
        services = load_runtime_services(args.ext)
    except EVLExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    warn = lambda text: print(text, file=sys.stderr)
    debug = warn if args.debug else None
    try:
        pipeline = load_source(lines, warning_sink=warn, debug_sink=debug)
    except EVLLoadError as error:
        print(f"LoadError: {error}", file=sys.stderr)
        return 1

    try:
        interpreter = Interpreter(
            pipeline,
            filename=args.file,
            verbose=args.verbose,
            debug=args.debug,
            max_depth=args.max_depth,
            services=services,
            warning_sink=warn,
        )
    except EVLExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    try:
        interpreter.start()
    except EVLRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="EVL event language interpreter")
    parser.add_argument("action", help="Action to execute. Actions: simulate, compile")
    parser.add_argument("file", help="File to perform the action on")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit scope snapshots in tracebacks")
    parser.add_argument("--debug", action="store_true", help="Print tokenizer and VM debug lines to stderr")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH, help="Maximum nested event dispatch depth")
    parser.add_argument("--ext", action="append", default=[], help="Load an event plugin (.py) or pointer file (.evlx)")
    args = parser.parse_args(argv)

    if args.action == "simulate":
        return simulate(args)
    if args.action == "compile":
        # placeholder: nothing is compiled yet
        return 0
    print("Invalid action! Try --help for help", file=sys.stderr)
    return 1


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
