"""
Async host entry point: runs JEXL source on a worker thread and reports the
outcome as an ExecutionResult instead of raising.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from jexl.jexl_closure import Script
from jexl.jexl_context import Cancellation, MapContext
from jexl.jexl_engine import JexlEngine
from jexl.jexl_errors import JexlError, ParsingError, EvalError
from jexl.jexl_printer import Printer

Token = Dict[str, Any]


def source_excerpt(source: str, line: int, col: Optional[int], radius: int = 2) -> str:
    """A few numbered lines around `line`, with a caret under `col`."""
    lines = source.splitlines()
    if not line or not 1 <= line <= len(lines):
        return ""
    first, last = max(1, line - radius), min(len(lines), line + radius)
    width = len(str(last))
    out = []
    for number, text in enumerate(lines[first - 1:last], start=first):
        marker = ">" if number == line else " "
        out.append(f"{marker} {number:>{width}} | {text}")
        if number == line and col is not None:
            out.append(f"  {'':>{width}} | {' ' * max(col - 1, 0)}^")
    return "\n".join(out)


@dataclass
class ExecutionResult:
    """What a run produced: a value or an error report, plus its side effects."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    side_effects: List[Dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == 'success'

    def format_error(self) -> str:
        if self.ok:
            return ""
        message = self.error_message or "Unknown error"
        line = (self.error_token or {}).get('line')
        if line is None or message.startswith("Error on line "):
            return message
        col = self.error_token.get('col')
        where = f"line {line}" if col is None else f"line {line}, col {col}"
        return f"Error on {where}: {message}"


class ScriptRunner:
    """Compiles and executes JEXL source for an async host, reporting instead of raising."""

    def __init__(self, engine: Optional[JexlEngine] = None, context=None):
        self.engine = engine or JexlEngine()
        self.context = context if context is not None else MapContext()
        self.evaluator = None
        self.side_effects: List[Dict] = []

    def _format_stacktrace(self, stack) -> str:
        if not stack:
            return ""
        pf = Printer().pformat

        def fmt(arg):
            match arg:
                case None | bool() | int() | float() | str():
                    return pf(arg)
                case Script():
                    return "fn"
                case list():
                    return f"[#{len(arg)}]"
                case dict():
                    return "{...}"
            if inspect.isroutine(arg) or callable(arg):
                return getattr(arg, '__name__', None) or "<callable>"
            return pf(arg)

        frames = []
        for frame in stack:
            name = frame.get('name') or '<call>'
            args_s = ", ".join(fmt(a) for a in frame.get('args') or [])
            frames.append(f"{name}({args_s})")
        return "JEXL stacktrace: " + " <- ".join(reversed(frames))

    def _format_error(self, e: Exception, source: str) -> tuple[str, Optional[dict]]:
        match e:
            case JexlError():
                msg = f"{e.kind}: {e.detail()}"
                loc = e.loc
            case _:
                msg = f"InternalError: {type(e).__name__}: {e}"
                loc = getattr(getattr(self.evaluator, 'current_node', None), 'loc', None)
        cause = e.__cause__
        if isinstance(e, EvalError) and cause is not None:
            msg = f"{msg}\nCaused by {type(cause).__name__}: {cause}"

        token = dict(loc) if isinstance(loc, dict) else None
        if token and token.get('line') is not None:
            excerpt = source_excerpt(source, token['line'], token.get('col'))
            if excerpt:
                msg = f"{msg}\n{excerpt}"

        if not isinstance(e, ParsingError):
            st = self._format_stacktrace(getattr(e, 'stack', None) or [])
            if st:
                msg += "\n" + st
        return msg, token

    def _execute(self, script: Script, args, cancellation: Cancellation) -> Any:
        self.evaluator = self.engine.create_evaluator(script, self.context, cancellation=cancellation)
        self.evaluator.side_effects = self.side_effects
        return self.evaluator.run(script, args)

    async def handle_script(self, source_code: str, *args, timeout: Optional[float] = None) -> ExecutionResult:
        """
        The main entry point to execute a script.

        Evaluation runs on a worker thread. When the awaiting task is
        cancelled or `timeout` seconds elapse, the evaluation's cancellation
        flag is raised so the worker stops at its next check.
        """
        self.side_effects = []
        self.evaluator = None
        cancellation = Cancellation()
        try:
            script = self.engine.create_script(source_code)
            work = asyncio.to_thread(self._execute, script, args, cancellation)
            try:
                if timeout is not None:
                    value = await asyncio.wait_for(work, timeout)
                else:
                    value = await work
            except (asyncio.CancelledError, asyncio.TimeoutError):
                cancellation.cancel()
                raise
            return ExecutionResult(status='success', value=value, side_effects=self.side_effects)
        except asyncio.TimeoutError:
            msg = "CancelError: timed out"
            self.side_effects.append({'topics': ['stderr'], 'message': msg})
            return ExecutionResult(status='error', error_message=msg, side_effects=self.side_effects)
        except Exception as e:
            err_msg, err_token = self._format_error(e, source_code)
            self.side_effects.append({'topics': ['stderr'], 'message': err_msg})
            return ExecutionResult(
                status='error',
                error_message=err_msg,
                error_token=err_token,
                side_effects=self.side_effects
            )
