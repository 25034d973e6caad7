"""
Scripts and closures as first-class callables.

A Script wraps a parsed top-level script; a Closure wraps a lambda created
while a script runs, together with the cells it captured. Both can be
curried, introspected and called from the host.
"""

import copy
from typing import Any, Dict, List, Optional, Tuple

from jexl.jexl_context import Cancellation
from jexl.jexl_datatypes import Cell, Lambda, Script as ScriptNode
from jexl.jexl_printer import Printer

_printer = Printer()


class Script:
    """A compiled script bound to the engine that created it."""

    def __init__(self, engine, function: ScriptNode, source: Optional[str] = None):
        self.engine = engine
        self.function = function
        self.source = source
        self.captured: Dict[int, Cell] = {}
        self.bound: Tuple[Any, ...] = ()
        self.context = None
        self.options = None
        self._parsed_text: Optional[str] = None

    @property
    def name(self) -> str:
        return 'script'

    @property
    def scope(self):
        return self.function.scope

    # --- Execution ---

    def execute(self, context=None, *args) -> Any:
        return self.engine.evaluate(self, context if context is not None else self.context, args,
                                    options=self.options)

    def __call__(self, *args) -> Any:
        return self.execute(None, *args)

    def callable(self, context=None, *args) -> 'ScriptCallable':
        return ScriptCallable(self, context if context is not None else self.context, args)

    def curry(self, *args) -> 'Script':
        """Binds a prefix of the unbound parameters; extra arguments are ignored."""
        unbound = self.get_unbound_parameters()
        if not args or not unbound:
            return self
        curried = copy.copy(self)
        curried.bound = self.bound + tuple(args[:len(unbound)])
        return curried

    # --- Introspection ---

    def get_parameters(self) -> List[str]:
        return self.scope.get_parameters()

    def get_unbound_parameters(self) -> List[str]:
        return self.get_parameters()[len(self.bound):]

    def get_local_variables(self) -> List[str]:
        return self.scope.get_local_variables()

    def get_captured_variables(self) -> List[str]:
        return self.scope.get_captured_variables()

    def get_variables(self) -> List[List[str]]:
        return [list(path) for path in self.function.variables]

    def get_pragmas(self) -> Dict[str, Any]:
        return dict(getattr(self.function, 'pragmas', {}) or {})

    def get_source(self) -> str:
        return self.source if self.source is not None else self.get_parsed_text()

    def get_parsed_text(self) -> str:
        if self._parsed_text is None:
            self._parsed_text = _printer.pformat(self.function)
        return self._parsed_text

    def _captured_values(self) -> List[Any]:
        # a captured script (such as a recursive self reference) compares by text
        values = []
        for slot in sorted(self.captured):
            value = self.captured[slot].value
            values.append(value.get_parsed_text() if isinstance(value, Script) else value)
        return values

    def __eq__(self, other):
        if self is other:
            return True
        if type(other) is not type(self):
            return NotImplemented
        return (self.get_parsed_text() == other.get_parsed_text()
                and self.bound == other.bound
                and self._captured_values() == other._captured_values())

    def __hash__(self):
        return hash((type(self), self.get_parsed_text(), len(self.bound)))

    def __str__(self):
        return self.get_parsed_text()

    def __repr__(self):
        return f"<{type(self).__name__} {self.get_parsed_text()!r}>"


class Closure(Script):
    """A lambda instance: its node, captured cells and curried arguments."""

    def __init__(self, engine, function: Lambda, captured: Dict[int, Cell], context=None, options=None):
        super().__init__(engine, function)
        self.captured = captured
        self.context = context
        self.options = options

    @property
    def name(self) -> str:
        return self.function.name or 'lambda'

    def get_pragmas(self) -> Dict[str, Any]:
        return {}


class ScriptCallable:
    """A pending, cancellable invocation of a script."""

    def __init__(self, script: Script, context=None, args=()):
        self.script = script
        self.context = context
        self.args = tuple(args)
        self.cancellation = Cancellation()

    def call(self) -> Any:
        return self.script.engine.evaluate(self.script, self.context, self.args,
                                           options=self.script.options, cancellation=self.cancellation)

    __call__ = call

    def cancel(self) -> bool:
        already = self.cancellation.is_cancelled()
        self.cancellation.cancel()
        return not already

    def is_cancelled(self) -> bool:
        return self.cancellation.is_cancelled()

    def is_cancellable(self) -> bool:
        return self.script.engine.options_for(self.script, self.context).cancellable
