"""
Scope descriptors, frames and lexical block tracking.

A Scope is built once per script or lambda by the ScopeBuilder and maps each
symbol name to a stable slot index. A Frame is the per-invocation storage for
those slots; captured slots share the Cell of the frame that declared them.
"""

from typing import Any, Dict, List, Optional

from jexl.jexl_datatypes import Cell, UNSET


class LexicalScope:
    """Bit set of the slots declared in one open block."""

    def __init__(self, parent: Optional['LexicalScope'] = None, boundary: bool = False):
        self.parent = parent
        # A boundary (lambda or script body) stops upward redeclaration checks.
        self.boundary = boundary
        self.symbols = 0
        self.constants = 0
        self.names: Dict[str, int] = {}

    def has_symbol(self, slot: int) -> bool:
        return bool(self.symbols & (1 << slot))

    def is_constant(self, slot: int) -> bool:
        return bool(self.constants & (1 << slot))

    def add_symbol(self, slot: int, name: Optional[str] = None) -> bool:
        if self.has_symbol(slot):
            return False
        self.symbols |= 1 << slot
        if name is not None:
            self.names[name] = slot
        return True

    def add_constant(self, slot: int, name: Optional[str] = None) -> bool:
        if not self.add_symbol(slot, name):
            return False
        self.constants |= 1 << slot
        return True

    def slots(self) -> List[int]:
        out = []
        bits, i = self.symbols, 0
        while bits:
            if bits & 1:
                out.append(i)
            bits >>= 1
            i += 1
        return out

    def pop(self) -> Optional['LexicalScope']:
        return self.parent


class Scope:
    """Symbol table of a script or lambda: parameters, locals and captured slots."""

    def __init__(self, parent: Optional['Scope'] = None):
        self.parent = parent
        self.names: List[str] = []
        self.slots: Dict[str, int] = {}
        self.param_count = 0
        # captured slot -> slot in the parent scope
        self.captured: Dict[int, int] = {}
        self.constants: set = set()
        self.types: Dict[int, str] = {}
        self.defaults: Dict[int, Any] = {}

    def __len__(self):
        return len(self.names)

    def _add(self, name: str) -> int:
        slot = len(self.names)
        self.names.append(name)
        self.slots[name] = slot
        return slot

    def add_parameter(self, name: str, kind: Optional[str] = None, default=None) -> int:
        slot = self._add(name)
        self.param_count += 1
        if kind and kind not in ('var', 'let'):
            if kind == 'const':
                self.constants.add(slot)
            else:
                self.types[slot] = kind
        if default is not None:
            self.defaults[slot] = default
        return slot

    def get_symbol(self, name: str, capture: bool = True) -> Optional[int]:
        """Finds the slot for `name`, capturing it from enclosing scopes when allowed."""
        slot = self.slots.get(name)
        if slot is None and capture and self.parent is not None:
            parent_slot = self.parent.get_symbol(name, True)
            if parent_slot is not None:
                slot = self._add(name)
                self.captured[slot] = parent_slot
                if parent_slot in self.parent.types:
                    self.types[slot] = self.parent.types[parent_slot]
        return slot

    def declare_variable(self, name: str, kind: Optional[str] = None) -> int:
        slot = self.slots.get(name)
        if slot is None:
            slot = self._add(name)
            # a local redefining a variable of an enclosing scope stays captured
            if self.parent is not None:
                parent_slot = self.parent.get_symbol(name, True)
                if parent_slot is not None:
                    self.captured[slot] = parent_slot
        if kind == 'const':
            self.constants.add(slot)
        elif kind and kind not in ('var', 'let'):
            self.types[slot] = kind
        return slot

    def is_captured(self, slot: int) -> bool:
        return slot in self.captured

    def is_constant(self, slot: int) -> bool:
        return slot in self.constants

    def get_parameters(self) -> List[str]:
        return self.names[:self.param_count]

    def get_local_variables(self) -> List[str]:
        return [n for i, n in enumerate(self.names)
                if i >= self.param_count and i not in self.captured]

    def get_captured_variables(self) -> List[str]:
        return [self.names[i] for i in sorted(self.captured)]

    def create_frame(self, captured_cells: Optional[Dict[int, Cell]] = None) -> 'Frame':
        return Frame(self, captured_cells)


class Frame:
    """Per-invocation slot storage for one Scope."""

    def __init__(self, scope: Scope, captured_cells: Optional[Dict[int, Cell]] = None):
        self.scope = scope
        self.cells: List[Optional[Cell]] = [None] * len(scope)
        if captured_cells:
            for slot, cell in captured_cells.items():
                self.cells[slot] = cell

    def cell(self, slot: int) -> Cell:
        cell = self.cells[slot]
        if cell is None:
            cell = self.cells[slot] = Cell(UNSET)
        return cell

    def get(self, slot: int) -> Any:
        cell = self.cells[slot]
        return UNSET if cell is None else cell.value

    def set(self, slot: int, value: Any):
        self.cell(slot).value = value

    def declare(self, slot: int, value: Any = UNSET) -> Cell:
        """Binds a fresh cell to `slot`; closures created earlier keep the old one."""
        cell = self.cells[slot] = Cell(value)
        return cell

    def capture(self, scope: Scope) -> Dict[int, Cell]:
        """Collects the cells a nested scope captures from this frame."""
        return {slot: self.cell(parent_slot) for slot, parent_slot in scope.captured.items()}

    def __repr__(self):
        values = {n: (c.value if c is not None else UNSET) for n, c in zip(self.scope.names, self.cells)}
        return f"<Frame {values!r}>"
