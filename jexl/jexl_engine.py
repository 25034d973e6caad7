"""
The engine: parses source into scripts (with a compiled-script cache) and
runs them against a context with the engine's options, arithmetic and
introspection settings.
"""

import importlib
import re
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union

import yaml
from koine import Parser

from jexl.jexl_arithmetic import JexlArithmetic
from jexl.jexl_closure import Script, Closure
from jexl.jexl_context import Cancellation, MapContext
from jexl.jexl_datatypes import Lambda, Pragma, Script as ScriptNode
from jexl.jexl_errors import ParsingError
from jexl.jexl_features import Features, FeatureChecker
from jexl.jexl_interpreter import Evaluator
from jexl.jexl_introspection import Permissions, Uberspect
from jexl.jexl_options import Options, FLAG_NAMES
from jexl.jexl_resolver import ScopeBuilder
from jexl.jexl_transformer import JexlTransformer

OPTIONS_PRAGMA = 'jexl.options'
NAMESPACE_PRAGMA = 'jexl.namespace.'

_LOCATION_RE = re.compile(r"L(\d+):C(\d+)")


def _import_namespace(path: str) -> Any:
    """Imports 'package.module' or 'package.module.Attribute'."""
    try:
        return importlib.import_module(path)
    except ImportError:
        module_name, _, attr = path.rpartition('.')
        if not module_name:
            raise
        return getattr(importlib.import_module(module_name), attr)


class JexlEngine:
    """Creates and runs scripts; safe to share between threads."""

    _parser: Optional[Parser] = None
    _parser_lock = threading.Lock()

    def __init__(self, options: Optional[Options] = None, arithmetic: Optional[JexlArithmetic] = None,
                 permissions: Optional[Permissions] = None, namespaces: Optional[Dict[str, Any]] = None,
                 features: Optional[Features] = None, cache_size: int = 256, **flags):
        self.options = options.copy() if options is not None else Options()
        for key, value in flags.items():
            attr = FLAG_NAMES.get(key, key)
            if not hasattr(self.options, attr):
                raise TypeError(f"unknown engine option '{key}'")
            setattr(self.options, attr, value)
        self.features = features if features is not None else Features()
        self.arithmetic = arithmetic or JexlArithmetic(strict=self.options.strict_arithmetic)
        self.uberspect = Uberspect(permissions)
        self.namespaces: Dict[str, Any] = dict(namespaces or {})
        self.transformer = JexlTransformer()
        self.cache_size = cache_size
        self._cache: 'OrderedDict[Tuple[str, Tuple[str, ...]], Script]' = OrderedDict()
        self._cache_lock = threading.Lock()

        if JexlEngine._parser is None:
            with JexlEngine._parser_lock:
                if JexlEngine._parser is None:
                    grammar_path = Path(__file__).parent.parent / "grammar" / "jexl_grammar.yaml"
                    JexlEngine._parser = Parser.from_file(str(grammar_path))
        self.parser = JexlEngine._parser

    @classmethod
    def from_config(cls, config: Union[str, Path, Dict[str, Any]]) -> 'JexlEngine':
        """
        Builds an engine from a mapping or a YAML file with the keys
        `options`, `features`, `namespaces` (alias -> dotted module path),
        `cache_size` and `permissions` ('restricted' or 'unrestricted').
        """
        if not isinstance(config, dict):
            config = yaml.safe_load(Path(config).read_text()) or {}
        options = Options.from_mapping(config.get('options'))
        namespaces = {alias: _import_namespace(path) if isinstance(path, str) else path
                      for alias, path in (config.get('namespaces') or {}).items()}
        match config.get('permissions', 'restricted'):
            case 'restricted' | None:
                permissions = Permissions.RESTRICTED
            case 'unrestricted':
                permissions = Permissions.UNRESTRICTED
            case Permissions() as given:
                permissions = given
            case other:
                raise ValueError(f"unknown permissions '{other}'")
        return cls(options=options, permissions=permissions, namespaces=namespaces,
                   features=Features.from_mapping(config.get('features')),
                   cache_size=int(config.get('cache_size', 256)))

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse(self, source: str, names: Iterable[str] = (), features: Optional[Features] = None) -> ScriptNode:
        """
        Parses, transforms and resolves a script; raises ParsingError, or
        FeatureError for a construct the features (the engine's by default) refuse.
        """
        features = features if features is not None else self.features
        parse_out = self.parser.parse(source)
        if parse_out.get('status') != 'success':
            message = parse_out.get('message') or 'parse failed'
            m = _LOCATION_RE.search(message)
            loc = {'line': int(m.group(1)), 'col': int(m.group(2))} if m else None
            raise ParsingError(message, loc)
        script = self.transformer.transform_script(parse_out['ast'], tuple(names), source)
        for statement in script.body:
            if isinstance(statement, Pragma):
                script.pragmas[statement.key] = statement.value
        lexical = self.options.lexical or features.lexical
        flags = script.pragmas.get(OPTIONS_PRAGMA)
        if isinstance(flags, str):
            lexical = Options(lexical=lexical).set_flags(flags).lexical
        ScopeBuilder(lexical).build(script)
        FeatureChecker(features).check(script)
        return script

    def create_script(self, source: str, *names: str) -> Script:
        key = (source, tuple(names))
        if self.cache_size > 0:
            with self._cache_lock:
                script = self._cache.get(key)
                if script is not None:
                    self._cache.move_to_end(key)
                    return script
        node = self.parse(source, names)
        script = self._wrap(node, source)
        if self.cache_size > 0:
            with self._cache_lock:
                self._cache[key] = script
                while len(self._cache) > self.cache_size:
                    self._cache.popitem(last=False)
        return script

    def _wrap(self, node: ScriptNode, source: str) -> Script:
        # a script that is only a lambda behaves as that lambda
        if not node.params and not node.pragmas and len(node.body) == 1 and isinstance(node.body[0], Lambda):
            closure = Closure(self, node.body[0], {})
            closure.source = source
            return closure
        return Script(self, node, source)

    def create_expression(self, source: str) -> Script:
        return self.create_script(source)

    def clear_cache(self):
        with self._cache_lock:
            self._cache.clear()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def options_for(self, script: Script, context=None, options: Optional[Options] = None) -> Options:
        """Engine options, replaced by the context's, adjusted by the script pragma."""
        if options is None:
            options = self.options
            getter = getattr(context, 'get_engine_options', None)
            if callable(getter):
                options = getter() or options
            flags = script.get_pragmas().get(OPTIONS_PRAGMA)
            if isinstance(flags, str):
                return options.copy().set_flags(flags)
        return options.for_execution()

    def _namespaces_for(self, script: Script, context) -> Dict[str, Any]:
        namespaces = dict(self.namespaces)
        forward = getattr(context, 'pragma', None)
        for key, value in script.get_pragmas().items():
            if key.startswith(NAMESPACE_PRAGMA) and isinstance(value, str):
                namespaces[key[len(NAMESPACE_PRAGMA):]] = _import_namespace(value)
            elif key != OPTIONS_PRAGMA and callable(forward):
                forward(key, value)
        return namespaces

    def create_evaluator(self, script: Script, context=None, options: Optional[Options] = None,
                         cancellation: Optional[Cancellation] = None) -> Evaluator:
        if context is None:
            context = MapContext()
        if cancellation is None:
            getter = getattr(context, 'get_cancellation', None)
            cancellation = Cancellation.of(getter()) if callable(getter) else None
        return Evaluator(self, context, self.options_for(script, context, options),
                         arithmetic=self.arithmetic, uberspect=self.uberspect,
                         cancellation=cancellation, namespaces=self._namespaces_for(script, context))

    def evaluate(self, script: Script, context=None, args=(), options: Optional[Options] = None,
                 cancellation: Optional[Cancellation] = None) -> Any:
        evaluator = self.create_evaluator(script, context, options, cancellation)
        return evaluator.run(script, args)
