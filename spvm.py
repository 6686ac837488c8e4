"""SPVM command-line entry point."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from interpreter import Interpreter, TracebackFormatter
from lexer import MalformedProgram
from loader import load_program
from state import VMRuntimeError
from operands import Value


def exit_code_for(value: Optional[Value]) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        return 1
    return value


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="SPVM register machine interpreter")
    parser.add_argument("program", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record register snapshots and show them in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--dump-state", action="store_true", help="Print registers and memory after the program finishes")
    parser.add_argument("--max-slots", type=int, default=None, help="Refuse writes to sp[N] at or past this many slots (unbounded by default)")
    args = parser.parse_args(argv)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    try:
        program = load_program(source_text, filename)
    except MalformedProgram as error:
        print(f"{error.__class__.__name__}: {error}", file=sys.stderr)
        return 1

    interpreter = Interpreter(program, verbose=args.verbose, max_slots=args.max_slots)
    try:
        value = interpreter.run()
    except VMRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    finally:
        if args.dump_state:
            print(interpreter.state.format())
    return exit_code_for(value)


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
