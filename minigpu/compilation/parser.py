"""
Kernel source scanning.

Extracts the pieces of WGSL kernel source that the orchestration layer
needs: the declared workgroup size, the compute entry point and the
table of buffer binding declarations. The source is scanned once when a
kernel is loaded; binding lookups afterwards are structured lookups
against the resulting table.

The scanner is not a WGSL parser and does not validate the kernel.
Invalid kernels are reported by the backend at dispatch time.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_WORKGROUP_SIZE: tuple[int, int, int] = (256, 1, 1)
DEFAULT_ENTRY_POINT = "main"

_LINE_COMMENT = re.compile(r"//[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_WORKGROUP_SIZE = re.compile(r"@workgroup_size\s*\(([^)]*)\)")
_INT_LITERAL = re.compile(r"^(\d+)[iu]?$")
_FUNCTION = re.compile(r"((?:@\w+(?:\s*\([^)]*\))?\s*)+)fn\s+(\w+)\s*\(")
_VARIABLE = re.compile(
    r"((?:@\w+\s*\([^)]*\)\s*)+)var\s*(?:<([^>]*)>)?\s*(\w+)\s*:\s*([^;=]+?)\s*;"
)
_GROUP = re.compile(r"@group\s*\(\s*(\d+)\s*\)")
_BINDING = re.compile(r"@binding\s*\(\s*(\d+)\s*\)")


@dataclass(frozen=True)
class BindingDeclaration:
    """A resource binding declared in kernel source."""

    group: int
    binding: int
    name: str
    type_name: str
    address_space: str | None = None  # storage, uniform; None for textures/samplers
    access: str | None = None  # read, read_write; None when not declared

    @property
    def is_buffer(self) -> bool:
        """Check if the declaration binds a buffer."""
        return self.address_space in ("storage", "uniform")


@dataclass(frozen=True)
class KernelSource:
    """Kernel source text plus the metadata scanned from it."""

    code: str
    workgroup_size: tuple[int, int, int] = DEFAULT_WORKGROUP_SIZE
    entry_point: str = DEFAULT_ENTRY_POINT
    bindings: tuple[BindingDeclaration, ...] = ()

    @property
    def source_hash(self) -> str:
        """Short hash identifying the source text."""
        return hashlib.sha256(self.code.encode()).hexdigest()[:16]

    @property
    def slots(self) -> tuple[int, ...]:
        """Binding indices declared in group 0, ascending."""
        return tuple(sorted({b.binding for b in self.bindings if b.group == 0}))

    @property
    def binding_names(self) -> list[str]:
        """Names of all declared bindings in declaration order."""
        return [b.name for b in self.bindings]

    def find(self, name: str) -> BindingDeclaration | None:
        """Look up a binding declaration by variable name."""
        for declaration in self.bindings:
            if declaration.name == name:
                return declaration
        return None

    def declaration_for_slot(self, slot: int, group: int = 0) -> BindingDeclaration | None:
        """Look up a binding declaration by index."""
        for declaration in self.bindings:
            if declaration.group == group and declaration.binding == slot:
                return declaration
        return None


def strip_comments(code: str) -> str:
    """Remove line and block comments from WGSL source."""
    return _LINE_COMMENT.sub("", _BLOCK_COMMENT.sub(" ", code))


def parse_workgroup_size(code: str) -> tuple[int, int, int]:
    """
    Parse the first @workgroup_size attribute.

    Accepts one to three positive integer literals; omitted dimensions
    are 1. Falls back to DEFAULT_WORKGROUP_SIZE when the attribute is
    absent or uses anything other than integer literals (for example
    override constants).

    Args:
        code: Kernel source.

    Returns:
        Workgroup size as an (x, y, z) tuple.
    """
    match = _WORKGROUP_SIZE.search(strip_comments(code))
    if match is None:
        return DEFAULT_WORKGROUP_SIZE

    parts = [p.strip() for p in match.group(1).split(",")]
    if parts and parts[-1] == "":
        parts.pop()  # trailing comma

    if not 1 <= len(parts) <= 3:
        logger.debug(f"Unparsable workgroup size {match.group(0)!r}, using default")
        return DEFAULT_WORKGROUP_SIZE

    dims: list[int] = []
    for part in parts:
        literal = _INT_LITERAL.match(part)
        if literal is None or int(literal.group(1)) < 1:
            logger.debug(f"Unparsable workgroup size {match.group(0)!r}, using default")
            return DEFAULT_WORKGROUP_SIZE
        dims.append(int(literal.group(1)))

    while len(dims) < 3:
        dims.append(1)
    return (dims[0], dims[1], dims[2])


def parse_entry_point(code: str) -> str:
    """Return the name of the first function carrying @compute."""
    for match in _FUNCTION.finditer(strip_comments(code)):
        if re.search(r"@compute\b", match.group(1)):
            return match.group(2)
    return DEFAULT_ENTRY_POINT


def parse_bindings(code: str) -> tuple[BindingDeclaration, ...]:
    """
    Collect every module-scope variable declared with @group and @binding.

    Attribute order does not matter, and declarations may span lines.

    Args:
        code: Kernel source.

    Returns:
        Declarations in source order.
    """
    declarations: list[BindingDeclaration] = []
    for match in _VARIABLE.finditer(strip_comments(code)):
        attributes, template, name, type_name = match.groups()
        group = _GROUP.search(attributes)
        binding = _BINDING.search(attributes)
        if group is None or binding is None:
            continue

        address_space = access = None
        if template:
            parts = [p.strip() for p in template.split(",")]
            address_space = parts[0] or None
            if len(parts) > 1:
                access = parts[1] or None

        declarations.append(
            BindingDeclaration(
                group=int(group.group(1)),
                binding=int(binding.group(1)),
                name=name,
                type_name=" ".join(type_name.split()),
                address_space=address_space,
                access=access,
            )
        )
    return tuple(declarations)


def parse_kernel_source(code: str) -> KernelSource:
    """
    Scan kernel source once.

    Args:
        code: WGSL kernel source text.

    Returns:
        KernelSource with workgroup size, entry point and bindings.
    """
    return KernelSource(
        code=code,
        workgroup_size=parse_workgroup_size(code),
        entry_point=parse_entry_point(code),
        bindings=parse_bindings(code),
    )
