"""
Contexts hold the variables and functions a script sees from its host.

MapContext is the plain variable store. JexlContext adds the optional
collaborators the evaluator looks for: namespaces, options, a cancellation
handle and an annotation processor.
"""

import threading
import concurrent.futures
from collections import UserDict
from typing import Any, Dict, Optional

from jexl.jexl_errors import AnnotationError


class Cancellation:
    """A cancellation flag; a child is also cancelled when its parent is."""

    def __init__(self, parent: Optional['Cancellation'] = None):
        self.event = threading.Event()
        self.parent = parent

    @classmethod
    def of(cls, handle) -> Optional['Cancellation']:
        """Normalizes a context supplied handle (Cancellation or threading.Event)."""
        if handle is None or isinstance(handle, Cancellation):
            return handle
        wrapped = cls()
        wrapped.event = handle
        return wrapped

    def cancel(self):
        self.event.set()

    def is_cancelled(self) -> bool:
        if self.event.is_set():
            return True
        return self.parent is not None and self.parent.is_cancelled()

    def child(self) -> 'Cancellation':
        return Cancellation(self)


class MapContext(UserDict):
    """A dictionary of variables."""

    def get(self, name: str, default: Any = None) -> Any:
        return self.data.get(name, default)

    def set(self, name: str, value: Any):
        self.data[name] = value

    def has(self, name: str) -> bool:
        return name in self.data

    def remove(self, name: str):
        self.data.pop(name, None)


class JexlContext(MapContext):
    def __init__(self, variables: Optional[Dict[str, Any]] = None, namespaces: Optional[Dict[str, Any]] = None,
                 options=None, cancellation=None, annotations: Optional['AnnotationProcessor'] = None):
        super().__init__(variables or {})
        self.namespaces = dict(namespaces or {})
        self.options = options
        self.cancellation = Cancellation.of(cancellation)
        self.annotations = annotations
        self.pragmas: Dict[str, Any] = {}

    def resolve_namespace(self, name: str) -> Any:
        return self.namespaces.get(name)

    def get_engine_options(self):
        return self.options

    def get_cancellation(self) -> Optional[Cancellation]:
        return self.cancellation

    def process_annotation(self, name: str, args: list, statement) -> Any:
        if self.annotations is None:
            return NotImplemented
        return self.annotations.process(name, args, statement)

    def pragma(self, key: str, value: Any):
        self.pragmas[key] = value


class AnnotationProcessor:
    """
    Runs the statement an annotation decorates.

    Each annotation is a method taking the statement followed by the
    annotation arguments; `process` returns NotImplemented for names it
    does not know. The statement exposes `call(**option_overrides)`,
    `fork()` and `cancel()`.
    """

    def __init__(self):
        self._locks: Dict[int, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def process(self, name: str, args: list, statement) -> Any:
        handler = getattr(self, 'annotation_' + name, None)
        if handler is None:
            return NotImplemented
        return handler(statement, *args)

    def annotation_timeout(self, statement, ms=None, default=None):
        """@timeout(ms[, default]): runs on a worker; cancelled and replaced by default on expiry."""
        if ms is None:
            raise AnnotationError('timeout', "missing duration")
        worker = statement.fork()
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix='jexl-timeout')
        try:
            future = pool.submit(worker.call)
            try:
                return future.result(timeout=float(ms) / 1000.0)
            except concurrent.futures.TimeoutError:
                worker.cancel()
                return default
        finally:
            pool.shutdown(wait=False)

    def annotation_silent(self, statement, flag=True):
        return statement.call(silent=bool(flag))

    def annotation_strict(self, statement, flag=True):
        return statement.call(strict=bool(flag), strict_arithmetic=bool(flag))

    def annotation_lenient(self, statement):
        return statement.call(strict=False, strict_arithmetic=False)

    def annotation_safe(self, statement, flag=True):
        return statement.call(safe=bool(flag))

    def annotation_scale(self, statement, scale):
        return statement.call(math_scale=int(scale))

    def annotation_synchronized(self, statement, target=None):
        key = id(target)
        with self._locks_guard:
            lock = self._locks.setdefault(key, threading.RLock())
        with lock:
            return statement.call()


DEFAULT_ANNOTATIONS = AnnotationProcessor()
