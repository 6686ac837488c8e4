from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from operands import Register, render_value, describe_value
from state import ExecutionState, TypeMismatch, VMRuntimeError


FORMAT_REGISTER = Register("rax")
ARGUMENT_REGISTER = Register("rbx")
PLACEHOLDER = "{}"


class UnknownSyscall(VMRuntimeError):
    pass


@dataclass(frozen=True)
class SyscallContext:
    state: ExecutionState
    output_sink: Callable[[str], None]
    location: Any  # SourceLocation | None


SyscallImpl = Callable[[SyscallContext], None]


@dataclass(frozen=True)
class Syscall:
    name: str
    impl: SyscallImpl


@dataclass
class SyscallRegistry:
    _calls: Dict[str, Syscall] = field(default_factory=dict)

    def register(self, name: str, impl: SyscallImpl) -> None:
        if not name:
            raise ValueError("Syscall name must be non-empty")
        if name in self._calls:
            raise ValueError(f"Syscall '{name}' is already defined")
        self._calls[name] = Syscall(name=name, impl=impl)

    def has(self, name: str) -> bool:
        return name in self._calls

    def get(self, name: str) -> Syscall:
        try:
            return self._calls[name]
        except KeyError:
            raise UnknownSyscall(f"Unknown syscall '{name}'", rule="syscall")

    def dispatch(self, name: str, ctx: SyscallContext) -> None:
        self.get(name).impl(ctx)


def format_template(template: str, value: Any) -> str:
    """Replace the first placeholder only; later ones stay literal."""
    return template.replace(PLACEHOLDER, render_value(value), 1)


def _printf(ctx: SyscallContext) -> None:
    template = ctx.state.read(FORMAT_REGISTER)
    if not isinstance(template, str):
        raise TypeMismatch(
            f"printf expects a text template in {FORMAT_REGISTER} but it holds {describe_value(template)}",
            location=ctx.location,
            rule="printf",
        )
    ctx.output_sink(format_template(template, ctx.state.read(ARGUMENT_REGISTER)))


def build_default_syscalls(registry: Optional[SyscallRegistry] = None) -> SyscallRegistry:
    registry = registry or SyscallRegistry()
    registry.register("printf", _printf)
    return registry
