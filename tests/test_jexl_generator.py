import gc
import threading

import pytest

from jexl.jexl_context import MapContext
from jexl.jexl_engine import JexlEngine
from jexl.jexl_errors import ParsingError, ThrowError


def run_jexl(src: str, variables=None):
    return JexlEngine().create_script(src).execute(MapContext(variables or {}))


def test_spread_generator_into_array():
    assert run_jexl("[...{ yield 1; yield 2 }]") == [1, 2]


def test_generator_reads_enclosing_variables():
    assert run_jexl("var n = 3; [...{ for (var i : 1 .. n) yield i * 10 }]") == [10, 20, 30]


def test_generator_is_lazy():
    log = []
    gen = run_jexl("...{ log.append('a'); yield 1; log.append('b'); yield 2 }", {'log': log})
    # nothing runs until the first pull
    assert log == []
    assert next(gen) == 1
    assert log == ['a']
    assert next(gen) == 2
    assert log == ['a', 'b']
    with pytest.raises(StopIteration):
        next(gen)


def test_close_runs_finally_blocks():
    log = []
    gen = run_jexl("...{ try { yield 1; yield 2 } finally { log.append('closed') } }", {'log': log})
    assert next(gen) == 1
    gen.close()
    assert log == ['closed']
    with pytest.raises(StopIteration):
        next(gen)


def test_close_before_start_is_a_no_op():
    log = []
    gen = run_jexl("...{ log.append('ran'); yield 1 }", {'log': log})
    gen.close()
    assert log == []


def test_errors_reach_the_consumer():
    with pytest.raises(ThrowError):
        run_jexl("[...{ yield 1; throw 'bad' }]")


def test_foreach_over_generator():
    src = "var s = 0; for (var x : ...{ yield 1; yield 2; yield 3 }) s += x; s"
    assert run_jexl(src) == 6


def test_break_abandons_generator():
    log = []
    src = """
        var s = 0;
        for (var x : ...{ try { yield 1; yield 2; yield 3 } finally { log.append('done') } }) {
            s += x;
            if (x == 2) break;
        }
        s
    """
    assert run_jexl(src, {'log': log}) == 3
    assert log == ['done']


def test_yield_outside_generator_is_rejected():
    with pytest.raises(ParsingError):
        JexlEngine().create_script("yield 1")


def _generator_threads():
    return sum(1 for t in threading.enumerate() if t.name == 'jexl-generator')


def test_dropped_generators_release_their_workers():
    log = []
    before = _generator_threads()
    for _ in range(5):
        gen = run_jexl("...{ try { yield 1; yield 2 } finally { log.append('closed') } }", {'log': log})
        assert next(gen) == 1
        del gen
    gc.collect()
    assert log == ['closed'] * 5
    assert _generator_threads() == before
