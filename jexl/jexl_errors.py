"""
Exception taxonomy for the JEXL runtime.

Every error raised by the parser, scope builder or evaluator derives from
JexlError and carries the source location of the offending node in `loc`
(a dict with line/col/tag/text, the same shape the transformer attaches to
syntax nodes).
"""

from typing import Any, Optional


class JexlError(Exception):
    kind = "JexlError"

    def __init__(self, message: str = "", loc: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.loc = loc
        # call stack at the point of failure, recorded by the evaluator
        self.stack = None

    def detail(self) -> str:
        return self.message

    @property
    def line(self) -> Optional[int]:
        return (self.loc or {}).get('line')

    @property
    def col(self) -> Optional[int]:
        return (self.loc or {}).get('col')

    def with_loc(self, loc: Optional[dict]) -> 'JexlError':
        """Attaches a location if none has been recorded yet."""
        if self.loc is None and loc:
            self.loc = loc
        return self

    def __str__(self) -> str:
        msg = f"{self.kind}: {self.detail()}"
        if self.line is not None and self.col is not None:
            msg += f" (line {self.line}, col {self.col})"
        return msg


class ParsingError(JexlError):
    kind = "ParsingError"


class FeatureError(ParsingError):
    """A construct the engine's Features do not allow."""
    kind = "FeatureError"

    def __init__(self, feature: str, message: str = "", loc: Optional[dict] = None):
        super().__init__(message or feature, loc)
        self.feature = feature

    def detail(self) -> str:
        if self.message and self.message != self.feature:
            return self.message
        return f"{self.feature} is not allowed"


class VariableError(JexlError):
    kind = "VariableError"

    def __init__(self, name: str, undefined: bool = True, loc: Optional[dict] = None):
        super().__init__(name, loc)
        self.name = name
        self.undefined = undefined

    def detail(self) -> str:
        if self.undefined:
            return f"undefined variable {self.name}"
        return f"null value variable {self.name}"


class PropertyError(JexlError):
    kind = "PropertyError"

    def __init__(self, name: Any, loc: Optional[dict] = None):
        super().__init__(str(name), loc)
        self.name = name

    def detail(self) -> str:
        return f"unsolvable property '{self.name}'"


class MethodError(JexlError):
    kind = "MethodError"

    def __init__(self, name: str, signatures=(), loc: Optional[dict] = None, message: str = ""):
        super().__init__(message or name, loc)
        self.name = name
        self.signatures = list(signatures)

    def detail(self) -> str:
        if self.signatures:
            return f"ambiguous method {self.name}: " + ", ".join(self.signatures)
        return f"unsolvable function/method '{self.name}'"


class OperatorError(JexlError):
    kind = "OperatorError"

    def __init__(self, symbol: str, message: str = "", loc: Optional[dict] = None):
        super().__init__(message or symbol, loc)
        self.symbol = symbol

    def detail(self) -> str:
        if self.message and self.message != self.symbol:
            return f"{self.symbol} error: {self.message}"
        return f"{self.symbol} error"


class AssignmentError(JexlError):
    kind = "AssignmentError"

    def __init__(self, name: str, message: str = "", loc: Optional[dict] = None):
        super().__init__(message or name, loc)
        self.name = name

    def detail(self) -> str:
        if self.message and self.message != self.name:
            return self.message
        return f"constant '{self.name}' can not be assigned"


class StackOverflowError(JexlError):
    kind = "StackOverflowError"

    def __init__(self, depth: int, host: bool = False, loc: Optional[dict] = None):
        super().__init__(str(depth), loc)
        self.depth = depth
        self.host = host

    def detail(self) -> str:
        if self.host:
            return f"host stack overflow at depth {self.depth}"
        return f"jexl stack overflow, depth {self.depth} exceeds the configured limit"


class CancelError(JexlError):
    kind = "CancelError"

    def detail(self) -> str:
        return self.message or "execution cancelled"


class TryFailedError(JexlError):
    kind = "TryFailedError"


class ThrowError(JexlError):
    """A value thrown by a script `throw` statement."""
    kind = "ThrowError"

    def __init__(self, value: Any, loc: Optional[dict] = None):
        super().__init__(str(value), loc)
        self.value = value


class AnnotationError(JexlError):
    kind = "AnnotationError"

    def __init__(self, name: str, message: str = "", loc: Optional[dict] = None):
        super().__init__(message or name, loc)
        self.name = name

    def detail(self) -> str:
        if self.message and self.message != self.name:
            return f"@{self.name}: {self.message}"
        return f"unknown annotation @{self.name}"


class EvalError(JexlError):
    """A host callable raised; the original exception is the __cause__."""
    kind = "EvalError"


class AssertionFailedError(JexlError):
    """A failed `assert` while assertions are enabled; script `catch` does not intercept it."""
    kind = "AssertionFailedError"

    def detail(self) -> str:
        return self.message or "assertion failed"
