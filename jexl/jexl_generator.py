"""
Lazy sequences produced by `...{ block }`.

The block runs on a worker thread with its own evaluator (sharing the
enclosing frame). Each `yield` hands one value to the consumer and blocks
until the next pull; the consumer and the worker never run at once.

The worker only references the hand-off channel, never the Generator, so a
generator the host drops is collected and its finalizer closes the channel.
"""

import queue
import threading
import weakref
from typing import Any, Optional

from jexl.jexl_datatypes import Block
from jexl.jexl_errors import CancelError

_YIELD, _DONE, _ERROR = 'yield', 'done', 'error'
_RESUME, _CLOSE = 'resume', 'close'


class _Channel:
    """Worker thread state and the two queues between it and the consumer."""

    def __init__(self, evaluator, body: Block):
        self.evaluator = evaluator
        self.evaluator.yielder = self.hand_over
        self.body = body
        self.thread: Optional[threading.Thread] = None
        self.to_consumer: queue.Queue = queue.Queue(maxsize=1)
        self.to_worker: queue.Queue = queue.Queue(maxsize=1)
        self.done = False
        self.closing = False

    # --- Worker side ---

    def work(self):
        try:
            self.evaluator.execute_block(self.body)
        except CancelError as e:
            self.to_consumer.put((_DONE, None) if self.closing else (_ERROR, e))
            return
        except BaseException as e:
            self.to_consumer.put((_ERROR, e))
            return
        self.to_consumer.put((_DONE, None))

    def hand_over(self, value: Any) -> None:
        if self.closing:
            raise CancelError("generator closed")
        self.to_consumer.put((_YIELD, value))
        command = self.to_worker.get()
        if command == _CLOSE:
            raise CancelError("generator closed")

    # --- Consumer side ---

    def pull(self) -> Any:
        if self.done:
            raise StopIteration
        if self.thread is None:
            self.thread = threading.Thread(target=self.work, name='jexl-generator', daemon=True)
            self.thread.start()
        else:
            self.to_worker.put(_RESUME)
        kind, value = self.to_consumer.get()
        if kind == _YIELD:
            return value
        self.done = True
        if kind == _ERROR:
            raise value
        raise StopIteration

    def close(self):
        if self.done:
            return
        self.done = True
        if self.thread is None:
            return
        self.closing = True
        self.to_worker.put(_CLOSE)
        self.to_consumer.get()
        self.thread.join()


class Generator:
    """A cold, pull-driven iterator over the values a block yields."""

    def __init__(self, evaluator, body: Block):
        self._channel = _Channel(evaluator.fork(), body)
        self._finalizer = weakref.finalize(self, self._channel.close)
        self._finalizer.atexit = False

    def __iter__(self):
        return self

    def __next__(self) -> Any:
        return self._channel.pull()

    def close(self):
        """Abandons the generator; a suspended worker unwinds through its finally blocks."""
        self._finalizer()

    def __repr__(self):
        channel = self._channel
        state = 'done' if channel.done else ('running' if channel.thread else 'new')
        return f"<Generator {state}>"
