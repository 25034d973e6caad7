import asyncio
import sys
from pathlib import Path

from jexl.jexl_context import MapContext
from jexl.jexl_engine import JexlEngine
from jexl.jexl_errors import JexlError
from jexl.jexl_printer import Printer
from jexl.jexl_runtime import ScriptRunner

USAGE = "usage: jexl [--config FILE] [--flags 'FLAGS'] [SCRIPT]"


# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)


def parse_args(argv):
    """Splits argv into (config path, option flags, script path)."""
    config = flags = script = None
    args = list(argv)
    while args:
        arg = args.pop(0)
        if arg in ('--config', '--flags'):
            if not args:
                raise ValueError(f"{arg} needs a value")
            if arg == '--config':
                config = args.pop(0)
            else:
                flags = args.pop(0)
        elif arg.startswith('-'):
            raise ValueError(f"unknown option {arg}")
        elif script is None:
            script = arg
        else:
            raise ValueError(f"unexpected argument {arg}")
    return config, flags, script


def build_engine(config=None, flags=None) -> JexlEngine:
    engine = JexlEngine.from_config(config) if config else JexlEngine()
    if flags:
        engine.options.set_flags(flags)
    return engine


def print_result(result, printer):
    for effect in result.side_effects:
        topics = effect.get('topics')
        if topics == ['stdout']:
            print(effect.get('message', ''))
        elif topics == ['warning']:
            print(f"warning: {effect.get('message', '')}", file=sys.stderr)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
    elif isinstance(result.value, str):
        # a string result is output, not a literal
        print(result.value)
    elif result.value is not None:
        print(printer.pformat(result.value))


def is_incomplete(source: str) -> bool:
    """True while brackets opened outside of string literals are still unclosed."""
    depth = 0
    quote = None
    escaped = False
    for ch in source:
        if quote:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == quote:
                quote = None
        elif ch in ('"', "'"):
            quote = ch
        elif ch in '([{':
            depth += 1
        elif ch in ')]}':
            depth -= 1
    return depth > 0


async def run_script_file(file_path: str, engine: JexlEngine):
    """Run a JEXL script file non-interactively and exit with appropriate status."""
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    result = await ScriptRunner(engine).handle_script(source)
    print_result(result, Printer())
    if result.status == 'error':
        raise SystemExit(1)


def run_command(command: str, runner: ScriptRunner, printer: Printer):
    match command.split():
        case [':vars']:
            for name in sorted(runner.context):
                print(f"{name} = {printer.pformat(runner.context[name])}")
        case [':reset']:
            runner.context = MapContext()
            print("Context cleared.")
        case [':flags']:
            print(runner.engine.options.get_flags())
        case [':flags', *flags]:
            try:
                runner.engine.options.set_flags(flags)
            except ValueError as e:
                print(f"Error: {e}", file=sys.stderr)
                return
            print(runner.engine.options.get_flags())
        case _:
            print(f"unknown command {command}; try :vars, :reset or :flags", file=sys.stderr)


async def main():
    """Run a script file when provided, otherwise start the interactive REPL."""
    try:
        config, flags, script = parse_args(sys.argv[1:])
        engine = build_engine(config, flags)
    except (ValueError, JexlError, OSError) as e:
        print(f"Error: {e}\n{USAGE}", file=sys.stderr)
        raise SystemExit(2)

    if script is not None:
        await run_script_file(script, engine)
        return

    print("JEXL REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    # The context lives for the whole session.
    runner = ScriptRunner(engine)
    printer = Printer()
    pending = []

    while True:
        try:
            raw = await ainput(".. " if pending else ">> ")
            if raw == "":
                raise EOFError
            line = raw.rstrip("\n")

            if not pending:
                stripped = line.strip()
                if not stripped:
                    continue
                if stripped == "exit":
                    break
                if stripped.startswith(":"):
                    run_command(stripped, runner, printer)
                    continue

            pending.append(line)
            source = "\n".join(pending)
            if is_incomplete(source):
                continue
            pending = []

            print_result(await runner.handle_script(source), printer)

        except EOFError:
            print("\nExiting.")
            break


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")


if __name__ == "__main__":
    cli()
