"""
Evaluation options: the flags and numeric settings an engine hands to each
evaluation, with parsing of '+flag -flag' strings and YAML configuration.
"""

import copy
from dataclasses import dataclass, fields
from decimal import Context, ROUND_HALF_EVEN
from typing import Any, Dict, Iterable, Optional, Union

import yaml


# Accepted spellings for each boolean flag.
FLAG_NAMES = {
    'cancellable': 'cancellable',
    'strict': 'strict',
    'silent': 'silent',
    'safe': 'safe',
    'lexical': 'lexical',
    'antish': 'antish',
    'lexicalShade': 'lexical_shade',
    'lexical_shade': 'lexical_shade',
    'strictArithmetic': 'strict_arithmetic',
    'strict_arithmetic': 'strict_arithmetic',
    'sharedInstance': 'shared_instance',
    'assertions': 'assertions',
    'shared_instance': 'shared_instance',
}


@dataclass
class Options:
    """
    Flags:
      strict            undefined variables, properties and methods raise
      silent            lenient failures do not record warning side effects
      safe              `.` and `[` behave like `?.` and `?[`
      lexical           every declaration is block scoped
      lexical_shade     a name is undefined after its declaring block exits
      antish            `a.b.c` may resolve the flat context variable 'a.b.c'
      cancellable       a cancelled evaluation raises CancelError instead of returning None
      strict_arithmetic null operands raise in arithmetic operators
      shared_instance   the engine uses this instance live instead of a copy
      assertions        `assert` statements are checked instead of skipped
    """
    strict: bool = True
    silent: bool = False
    safe: bool = True
    lexical: bool = False
    lexical_shade: bool = False
    antish: bool = True
    cancellable: bool = True
    strict_arithmetic: bool = True
    shared_instance: bool = False
    assertions: bool = False
    math_context: Optional[Context] = None
    math_scale: Optional[int] = None
    stack_overflow: Optional[int] = None

    def set_flags(self, *flags: Union[str, Iterable[str]]) -> 'Options':
        """
        Applies flags such as '+strict', '-safe' or 'lexical' (no sign means on).
        A single string may hold several whitespace separated flags.
        """
        for item in flags:
            words = item.split() if isinstance(item, str) else list(item)
            for word in words:
                value = not word.startswith('-')
                name = word.lstrip('+-')
                attr = FLAG_NAMES.get(name)
                if attr is None:
                    raise ValueError(f"unknown option flag '{name}'")
                setattr(self, attr, value)
        return self

    def get_flags(self) -> str:
        out = []
        for f in fields(self):
            if f.type in (bool, 'bool'):
                out.append(('+' if getattr(self, f.name) else '-') + f.name)
        return ' '.join(out)

    def copy(self) -> 'Options':
        return copy.copy(self)

    def for_execution(self) -> 'Options':
        """The instance an evaluation should use: self when shared, else a copy."""
        return self if self.shared_instance else self.copy()

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> 'Options':
        options = cls()
        for key, value in (data or {}).items():
            if key == 'flags':
                options.set_flags(value)
            elif key in FLAG_NAMES:
                setattr(options, FLAG_NAMES[key], bool(value))
            elif key == 'math_context':
                options.math_context = _math_context(value)
            elif key in ('math_scale', 'stack_overflow'):
                setattr(options, key, None if value is None else int(value))
            else:
                raise ValueError(f"unknown option '{key}'")
        return options

    @classmethod
    def from_yaml(cls, text: str) -> 'Options':
        data = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            raise ValueError("options document must be a mapping")
        return cls.from_mapping(data.get('options', data))


def _math_context(value) -> Context:
    if isinstance(value, Context):
        return value
    if isinstance(value, int):
        return Context(prec=value, rounding=ROUND_HALF_EVEN)
    if isinstance(value, dict):
        return Context(prec=int(value.get('precision', 34)), rounding=value.get('rounding', ROUND_HALF_EVEN))
    raise ValueError(f"invalid math context {value!r}")
