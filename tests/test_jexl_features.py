"""
Syntax features checked when a script is created, positional registers and
`assert` statements.
"""

import pytest

from jexl.jexl_context import MapContext, JexlContext
from jexl.jexl_engine import JexlEngine
from jexl.jexl_errors import FeatureError, ParsingError, AssertionFailedError
from jexl.jexl_features import Features
from jexl.jexl_options import Options


def create(src: str, features: Features, *names):
    return JexlEngine(features=features).create_script(src, *names)


def assert_refused(src: str, features: Features, feature: str):
    with pytest.raises(FeatureError) as e:
        create(src, features)
    assert e.value.feature == feature


# --- Registers ---

def test_positional_registers():
    script = create("#0 * #1", Features.all(), "#0", "#1")
    assert script.execute(None, 6, 7) == 42
    assert script.get_parameters() == ['#0', '#1']


def test_registers_are_off_by_default():
    with pytest.raises(FeatureError) as e:
        JexlEngine().create_script("#0 * #1", "#0", "#1")
    assert e.value.feature == 'register'
    # still a parsing failure for callers that only know ParsingError
    assert isinstance(e.value, ParsingError)


# --- Individual features ---

@pytest.mark.parametrize("src, features, feature", [
    ("while (x) ;", Features(loops=False), 'loop'),
    ("for (var i : [1]) ;", Features(loops=False), 'loop'),
    ("var x = 1", Features(local_var=False), 'local variable'),
    ("var x = 1; x += 1", Features(side_effect=False), 'side effect'),
    ("y = 2", Features(side_effect_global=False), 'global side effect'),
    ("a.b = 1", Features(side_effect_global=False), 'global side effect'),
    ("function(x) { x }", Features(lambdas=False), 'function'),
    ("(x) => x", Features(fat_arrow=False), 'fat-arrow'),
    ("x -> x", Features(thin_arrow=False), 'thin-arrow'),
    ("'a'.upper()", Features(method_call=False), 'method call'),
    ("[1, 2]", Features(structured_literal=False), 'structured literal'),
    ("{'a': 1}", Features(structured_literal=False), 'structured literal'),
    ("1 .. 3", Features(structured_literal=False), 'structured literal'),
    ("new('str', 1)", Features(new_instance=False), 'create instance'),
    ("a[i]", Features(array_reference_expr=False), 'array reference'),
    ("#pragma x 1\n1", Features(pragma=False), 'pragma'),
    ("#pragma jexl.namespace.m math\n1", Features(namespace_pragma=False), 'namespace pragma'),
    ("@silent x", Features(annotation=False), 'annotation'),
    ("1 lt 2", Features(comparator_names=False), 'comparator names'),
    ("var x = 1; x", Features(script=False), 'script'),
    ("if (true) 1", Features(script=False), 'script'),
])
def test_disabled_feature_is_refused(src, features, feature):
    assert_refused(src, features, feature)


@pytest.mark.parametrize("src, features", [
    ("var x = 1; x = 2; x", Features(side_effect_global=False)),
    ("(x) -> x", Features(fat_arrow=False)),
    ("size('a')", Features(method_call=False)),
    ("a[0]", Features(array_reference_expr=False)),
    ("#pragma x 1\n1", Features(namespace_pragma=False)),
    ("1 < 2", Features(comparator_names=False)),
    ("1 + 2", Features(script=False)),
])
def test_remaining_constructs_still_parse(src, features):
    create(src, features)


def test_feature_error_carries_location():
    with pytest.raises(FeatureError) as e:
        create("1;\nwhile (x) ;", Features(loops=False))
    assert e.value.line == 2
    assert "loop is not allowed" in str(e.value)


def test_reserved_names():
    features = Features().with_reserved(['tmp'])
    for src in ("var tmp = 1", "tmp + 1", "(tmp) -> 1"):
        with pytest.raises(FeatureError) as e:
            create(src, features)
        assert "tmp: reserved name" in str(e.value)
    assert create("other + 1", features).execute(MapContext({'other': 1})) == 2


def test_lexical_feature_scopes_declarations_by_block():
    assert JexlEngine().create_script("var x = 1; var x = 2; x").execute() == 2
    with pytest.raises(ParsingError):
        create("var x = 1; var x = 2; x", Features(lexical=True))


def test_no_features_leaves_plain_expressions():
    features = Features.none()
    assert create("a + b", features).execute(MapContext({'a': 1, 'b': 2})) == 3
    assert_refused("a.b()", features, 'method call')


def test_parse_accepts_features_for_one_call():
    engine = JexlEngine()
    with pytest.raises(FeatureError):
        engine.parse("while (x) ;", features=Features(loops=False))
    engine.parse("while (x) ;")


def test_features_from_config():
    engine = JexlEngine.from_config({'features': {'loops': False, 'reserved_names': ['tmp']}})
    assert engine.features.loops is False
    assert 'tmp' in engine.features.reserved_names
    with pytest.raises(ValueError):
        JexlEngine.from_config({'features': {'teleport': True}})


# --- Assertions ---

def test_assert_is_skipped_unless_enabled():
    engine = JexlEngine()
    assert engine.create_script("assert false").execute() is None
    assert engine.create_script("assert false : 'check'").execute() is None
    # the condition is not even evaluated
    assert engine.create_script("assert boom()").execute() is None


def test_enabled_assertions():
    engine = JexlEngine(assertions=True)
    assert engine.create_script("assert true").execute() is None
    with pytest.raises(AssertionFailedError) as e:
        engine.create_script("assert 1 > 2 : 'check'").execute()
    assert e.value.message == 'check'
    with pytest.raises(AssertionFailedError) as e:
        engine.create_script("assert false").execute()
    assert "assertion failed" in str(e.value)


def test_assertions_enabled_through_context_options_or_pragma():
    engine = JexlEngine()
    context = JexlContext(options=Options(assertions=True))
    with pytest.raises(AssertionFailedError):
        engine.create_script("assert false : 'ctx'").execute(context)
    with pytest.raises(AssertionFailedError):
        engine.create_script("#pragma jexl.options '+assertions'\nassert false").execute()


def test_catch_does_not_intercept_failed_assertions():
    engine = JexlEngine(assertions=True)
    context = MapContext({'log': []})
    src = "try { assert false : 'no' } catch (e) { 'caught' } finally { log.append('finally') }"
    with pytest.raises(AssertionFailedError):
        engine.create_script(src).execute(context)
    assert context['log'] == ['finally']
