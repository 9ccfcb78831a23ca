"""
stackslice/spec_state.py
════════════════════════

Abstract machine states naming every value by a symbolic :data:`Var`, and
the configuration that controls how much sharing the naming exposes.

A :class:`State` is attached before and after every instruction and
block of an analysed CFG:

    vstack   top-first tuple of Vars (operand stack)
    locals   one Var per parameter / declared local (fixed length)
    globals  one Var per module global (fixed length)
    memory   (address Var, byte offset) -> value Var, filled lazily

States are never mutated.  Every helper returns a fresh State.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Iterator, List, Mapping, Set, Tuple

from stackslice.errors import StackUnderflowError
from stackslice.variables import MemoryCell, MemoryKey, Var


# ═══════════════════════════════════════════════════════════════════════════
# CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class AnalysisConfig:
    """Precision knobs of the transfer functions.

    None of them changes control flow or legality, only how often two
    program points end up sharing the same Var.

    Attributes
    ----------
    propagate_locals : bool
        ``local.get`` pushes the local's current Var (instead of a fresh
        one) and ``local.set``/``local.tee`` store the stack top.
    propagate_globals : bool
        Same as ``propagate_locals`` for globals.
    use_constants : bool
        ``const`` pushes a :class:`~stackslice.variables.Constant`, so that
        equal literals are identified.
    """

    propagate_locals: bool = True
    propagate_globals: bool = True
    use_constants: bool = True

    def validate(self) -> List[str]:
        """Return a list of validation warnings (empty if valid)."""
        warnings: List[str] = []
        for name in ("propagate_locals", "propagate_globals", "use_constants"):
            if not isinstance(getattr(self, name), bool):
                warnings.append(f"{name} should be a bool, got {getattr(self, name)!r}")
        return warnings


DEFAULT_CONFIG = AnalysisConfig()


# ═══════════════════════════════════════════════════════════════════════════
# STATE
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class State:
    vstack: Tuple[Var, ...] = ()
    locals: Tuple[Var, ...] = ()
    globals: Tuple[Var, ...] = ()
    memory: Mapping[MemoryKey, Var] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "memory", MappingProxyType(dict(self.memory)))

    @classmethod
    def bottom(cls) -> "State":
        """The state of a program point that has not been analysed yet.

        Always the same object: an analysed state of a function without
        locals or globals is equal to it but is not it.
        """
        return _BOTTOM

    def is_bottom(self) -> bool:
        return self is _BOTTOM

    # ── stack ────────────────────────────────────────────────────────────

    def drop(self, n: int, where: str = "") -> "State":
        """Remove the *n* topmost values; raise on underflow."""
        if len(self.vstack) < n:
            raise StackUnderflowError(n, len(self.vstack), where)
        return replace(self, vstack=self.vstack[n:])

    def push(self, var: Var) -> "State":
        return replace(self, vstack=(var,) + self.vstack)

    def top(self, n: int = 1, where: str = "") -> Tuple[Var, ...]:
        """The *n* topmost values, top first."""
        if len(self.vstack) < n:
            raise StackUnderflowError(n, len(self.vstack), where)
        return self.vstack[:n]

    # ── locals / globals / memory ────────────────────────────────────────

    def with_local(self, index: int, var: Var) -> "State":
        return replace(self, locals=_set_at(self.locals, index, var))

    def with_global(self, index: int, var: Var) -> "State":
        return replace(self, globals=_set_at(self.globals, index, var))

    def with_memory(self, address: Var, offset: int, var: Var) -> "State":
        memory = dict(self.memory)
        memory[(address, offset)] = var
        return replace(self, memory=memory)

    def lookup_memory(self, address: Var, offset: int) -> Var:
        """Value known at ``address + offset``, or its :class:`MemoryCell`."""
        return self.memory.get((address, offset), MemoryCell(address, offset))

    # ── rendering ────────────────────────────────────────────────────────

    def to_string(self) -> str:
        heap = ", ".join(f"{a}+{o}: {v}" for (a, o), v in self.memory.items())
        return (
            f"{{vstack: [{', '.join(map(str, self.vstack))}],\n"
            f" locals: [{', '.join(map(str, self.locals))}],\n"
            f" globals: [{', '.join(map(str, self.globals))}],\n"
            f" heap: [{heap}]\n}}"
        )

    def __str__(self) -> str:
        return self.to_string()


_BOTTOM = State()


def _set_at(values: Tuple[Var, ...], index: int, var: Var) -> Tuple[Var, ...]:
    if not 0 <= index < len(values):
        raise IndexError(f"index {index} out of range for {len(values)} slots")
    return values[:index] + (var,) + values[index + 1:]


# ═══════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════


def iter_vars(state: State) -> Iterator[Var]:
    yield from state.vstack
    yield from state.locals
    yield from state.globals
    for (address, _offset), value in state.memory.items():
        yield address
        yield value


def vars_of(state: State) -> Set[Var]:
    """Every Var mentioned by *state*, memory addresses included."""
    return set(iter_vars(state))


def extract_different_vars(before: State, after: State) -> List[Tuple[Var, Var]]:
    """Pairs ``(old, new)`` of positions whose Var differs between states.

    Components are compared position by position.  When lengths differ
    (one side not analysed yet) only the common prefix is compared; memory
    is compared on the keys present in both states.  This relaxation is
    only used here, never while merging.
    """
    pairs: List[Tuple[Var, Var]] = []
    for old_part, new_part in (
        (before.vstack, after.vstack),
        (before.locals, after.locals),
        (before.globals, after.globals),
    ):
        for old, new in zip(old_part, new_part):
            if old != new:
                pairs.append((old, new))
    for key, new in after.memory.items():
        old = before.memory.get(key)
        if old is not None and old != new:
            pairs.append((old, new))
    return pairs
