"""In-memory flattened device tree: parsing, editing and serialisation."""

from __future__ import annotations

import logging
import struct
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator

FDT_MAGIC = 0xD00DFEED
FDT_VERSION = 17
FDT_LAST_COMP_VERSION = 16
HEADER_SIZE = 40

_FDT_BEGIN_NODE = 1
_FDT_END_NODE = 2
_FDT_PROP = 3
_FDT_NOP = 4
_FDT_END = 9

_INVALID_PHANDLE = 0xFFFFFFFF


class _DtOverlayFormatter(logging.Formatter):
    _NAMES = {logging.ERROR: "error", logging.WARNING: "warn", logging.DEBUG: "debug"}

    def format(self, record: logging.LogRecord) -> str:
        kind = self._NAMES.get(record.levelno, "?")
        return f"DTOVERLAY[{kind}]: {record.getMessage()}"


log = logging.getLogger("dtbmerge")
if not log.handlers:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(_DtOverlayFormatter())
    log.addHandler(_handler)
    log.propagate = False
log.setLevel(logging.WARNING)


def enable_debug(enable) -> None:
    """Switch debug output on or off."""
    log.setLevel(logging.DEBUG if enable else logging.WARNING)


class FdtError(Exception):
    """A device tree operation failed; ``code`` holds the libfdt-style error number."""

    NOTFOUND = 1
    EXISTS = 2
    NOSPACE = 3
    BADOFFSET = 4
    BADPATH = 5
    BADPHANDLE = 6
    BADSTATE = 7
    TRUNCATED = 8
    BADMAGIC = 9
    BADVERSION = 10
    BADSTRUCTURE = 11
    BADLAYOUT = 12
    INTERNAL = 13
    BADNCELLS = 14
    BADVALUE = 15

    def __init__(self, code: int, message: str | None = None):
        self.code = code
        super().__init__(message or f"FDT error {code}")


def _cstr(value: bytes) -> str:
    return value.split(b"\0", 1)[0].decode("latin-1")


def _as_bytes(value) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8") + b"\0"
    if isinstance(value, int):
        return struct.pack(">I", value & 0xFFFFFFFF)
    raise TypeError(f"cannot store {type(value).__name__} as a property value")


def _align4(n: int) -> int:
    return (n + 3) & ~3


def _name_matches(node_name: str, name: str) -> bool:
    if node_name == name:
        return True
    return "@" not in name and node_name.startswith(name + "@")


@dataclass
class Node:
    """A device tree node holding ordered properties and child nodes."""

    name: str = ""
    properties: dict[str, bytes] = field(default_factory=dict)
    children: list[Node] = field(default_factory=list)
    parent: Node | None = field(default=None, repr=False, compare=False)

    def path(self) -> str:
        parts = []
        node = self
        while node.parent is not None:
            parts.append(node.name)
            node = node.parent
        return "/" + "/".join(reversed(parts))

    def get(self, name: str) -> bytes | None:
        return self.properties.get(name)

    def set(self, name: str, value) -> None:
        """Set a property; a new property is placed before the existing ones."""
        data = _as_bytes(value)
        if name in self.properties:
            self.properties[name] = data
        else:
            self.properties = {name: data, **self.properties}

    def remove(self, name: str) -> None:
        if name not in self.properties:
            raise FdtError(FdtError.NOTFOUND, f"no property '{name}' in {self.path()}")
        del self.properties[name]

    def subnode(self, name: str) -> Node | None:
        """Return the first child whose name matches, ignoring a unit address if none is given."""
        return next((c for c in self.children if _name_matches(c.name, name)), None)

    def add_subnode(self, name: str) -> Node:
        """Create a child node, placed before the existing children."""
        if self.subnode(name) is not None:
            raise FdtError(FdtError.EXISTS, f"node '{name}' already exists in {self.path()}")
        child = Node(name=name, parent=self)
        self.children.insert(0, child)
        return child

    def walk(self) -> Iterator[Node]:
        """Yield this node and all its descendants, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()

    def is_enabled(self) -> bool:
        status = self.get("status")
        return status is not None and _cstr(status) in ("okay", "ok")

    @property
    def phandle(self) -> int:
        """The node's phandle, or 0 if it has none."""
        for prop in ("phandle", "linux,phandle"):
            value = self.get(prop)
            if value is not None and len(value) == 4:
                return struct.unpack(">I", value)[0]
        return 0

    def _detach(self) -> None:
        if self.parent is not None:
            siblings = self.parent.children
            index = next(i for i, c in enumerate(siblings) if c is self)
            del siblings[index]
            self.parent = None


def _parse_struct(block: bytes, strings: bytes) -> Node:
    pos = 0
    stack: list[Node] = []
    root: Node | None = None

    def bad(msg: str) -> FdtError:
        return FdtError(FdtError.BADSTRUCTURE, msg)

    while True:
        if pos + 4 > len(block):
            raise bad("structure block is truncated")
        (tag,) = struct.unpack_from(">I", block, pos)
        pos += 4
        if tag == _FDT_BEGIN_NODE:
            end = block.find(b"\0", pos)
            if end < 0:
                raise bad("unterminated node name")
            node = Node(name=block[pos:end].decode("latin-1"))
            pos = _align4(end + 1)
            if stack:
                node.parent = stack[-1]
                stack[-1].children.append(node)
            elif root is not None:
                raise bad("more than one root node")
            else:
                root = node
            stack.append(node)
        elif tag == _FDT_END_NODE:
            if not stack:
                raise bad("unbalanced end of node")
            stack.pop()
        elif tag == _FDT_PROP:
            if not stack or pos + 8 > len(block):
                raise bad("misplaced or truncated property")
            length, nameoff = struct.unpack_from(">II", block, pos)
            pos += 8
            if pos + length > len(block) or nameoff >= len(strings):
                raise bad("property runs past its block")
            value = block[pos:pos + length]
            pos = _align4(pos + length)
            end = strings.find(b"\0", nameoff)
            if end < 0:
                raise bad("unterminated property name")
            stack[-1].properties[strings[nameoff:end].decode("latin-1")] = value
        elif tag == _FDT_NOP:
            continue
        elif tag == _FDT_END:
            if stack or root is None:
                raise bad("unexpected end of structure")
            return root
        else:
            raise bad(f"unknown tag {tag:#x}")


@dataclass
class DeviceTree:
    """A whole device tree blob, with its memory reservations and trailer."""

    root: Node = field(default_factory=Node)
    reservations: list[tuple[int, int]] = field(default_factory=list)
    boot_cpuid: int = 0
    trailer: bytes = b""
    max_phandle: int = 0
    fixups_applied: bool = False

    @classmethod
    def empty(cls) -> DeviceTree:
        return cls()

    @classmethod
    def from_bytes(cls, data, max_size: int = 0) -> DeviceTree:
        """Parse a blob; anything beyond its total size becomes the trailer."""
        data = bytes(data)
        if max_size > 0 and len(data) > max_size:
            log.error("file too large (%d bytes) for max_size", len(data))
            raise FdtError(FdtError.NOSPACE, "file too large for max_size")
        if len(data) < HEADER_SIZE:
            raise FdtError(FdtError.TRUNCATED, "not a valid FDT - too short")
        (magic, totalsize, off_struct, off_strings, off_rsv, version,
         last_comp, boot_cpuid, size_strings, size_struct) = struct.unpack_from(">10I", data)
        if magic != FDT_MAGIC:
            raise FdtError(FdtError.BADMAGIC, "not a valid FDT - bad magic")
        if version < 16 or last_comp > FDT_VERSION:
            raise FdtError(FdtError.BADVERSION, f"unsupported FDT version {version}")
        if totalsize < HEADER_SIZE or totalsize > len(data):
            raise FdtError(FdtError.TRUNCATED, "not a valid FDT - truncated")
        if version < 17:
            size_struct = totalsize - off_struct
        if (off_struct + size_struct > totalsize or off_strings + size_strings > totalsize
                or off_rsv >= totalsize):
            raise FdtError(FdtError.TRUNCATED, "FDT blocks run past the total size")

        reservations = []
        pos = off_rsv
        while True:
            if pos + 16 > totalsize:
                raise FdtError(FdtError.TRUNCATED, "memory reservation map is truncated")
            address, size = struct.unpack_from(">QQ", data, pos)
            pos += 16
            if address == 0 and size == 0:
                break
            reservations.append((address, size))

        strings = data[off_strings:off_strings + size_strings]
        root = _parse_struct(data[off_struct:off_struct + size_struct], strings)
        tree = cls(root=root, reservations=reservations, boot_cpuid=boot_cpuid,
                   trailer=data[totalsize:])
        tree.max_phandle = max(node.phandle for node in root.walk())
        return tree

    @classmethod
    def load(cls, path, max_size: int = 0) -> DeviceTree:
        return cls.from_bytes(Path(path).read_bytes(), max_size)

    def to_bytes(self) -> bytes:
        """Serialise as a packed blob followed by the trailer."""
        strings = bytearray()
        offsets: dict[str, int] = {}
        block = bytearray()

        def pad() -> None:
            block.extend(b"\0" * (_align4(len(block)) - len(block)))

        def emit(node: Node) -> None:
            block.extend(struct.pack(">I", _FDT_BEGIN_NODE))
            block.extend(node.name.encode("latin-1") + b"\0")
            pad()
            for name, value in node.properties.items():
                if name not in offsets:
                    offsets[name] = len(strings)
                    strings.extend(name.encode("latin-1") + b"\0")
                block.extend(struct.pack(">III", _FDT_PROP, len(value), offsets[name]))
                block.extend(value)
                pad()
            for child in node.children:
                emit(child)
            block.extend(struct.pack(">I", _FDT_END_NODE))

        emit(self.root)
        block.extend(struct.pack(">I", _FDT_END))

        rsv = b"".join(struct.pack(">QQ", a, s) for a, s in self.reservations)
        rsv += struct.pack(">QQ", 0, 0)
        off_rsv = HEADER_SIZE
        off_struct = off_rsv + len(rsv)
        off_strings = off_struct + len(block)
        total = off_strings + len(strings)
        header = struct.pack(">10I", FDT_MAGIC, total, off_struct, off_strings, off_rsv,
                             FDT_VERSION, FDT_LAST_COMP_VERSION, self.boot_cpuid,
                             len(strings), len(block))
        return header + rsv + bytes(block) + bytes(strings) + self.trailer

    def save(self, path) -> None:
        data = self.to_bytes()
        Path(path).write_bytes(data)
        log.debug("wrote %d bytes to '%s'", len(data), path)

    def find_node(self, path: str) -> Node | None:
        """Look up a node by absolute path or alias-relative path."""
        if not path:
            raise FdtError(FdtError.BADPATH, "empty path")
        if path.startswith("/"):
            node: Node | None = self.root
            rest = path
        else:
            head, sep, rest = path.partition("/")
            alias = self.get_alias(head)
            if alias is None or not alias.startswith("/"):
                raise FdtError(FdtError.BADPATH, f"unknown alias '{head}'")
            node = self.find_node(alias)
            rest = sep + rest
        for component in rest.split("/"):
            if node is None:
                return None
            if component:
                node = node.subnode(component)
        return node

    def create_node(self, path: str) -> Node:
        """Return the node at an absolute path, creating it and any parents."""
        if path.endswith("/"):
            path = path[:-1]
        if not path:
            return self.root
        if not path.startswith("/"):
            raise FdtError(FdtError.BADPATH, f"bad path '{path}'")
        node = self.root
        for component in path[1:].split("/"):
            if not component:
                raise FdtError(FdtError.BADPATH, f"bad path '{path}'")
            node = node.subnode(component) or node.add_subnode(component)
        return node

    def delete_node(self, path: str) -> None:
        log.debug("delete_node(%s)", path)
        node = self.find_node(path)
        if node is None:
            raise FdtError(FdtError.NOTFOUND, f"node '{path}' not found")
        if node.parent is None:
            raise FdtError(FdtError.BADOFFSET, "cannot delete the root node")
        node._detach()

    def node_by_phandle(self, phandle: int) -> Node | None:
        if phandle in (0, _INVALID_PHANDLE):
            raise FdtError(FdtError.BADPHANDLE, f"invalid phandle {phandle}")
        return next((n for n in self.root.walk() if n.phandle == phandle), None)

    def find_symbol(self, name: str) -> Node | None:
        """Find a node by alias or by a label in /__symbols__."""
        path = self.get_alias(name)
        if path is None:
            symbols = self.find_node("/__symbols__")
            if symbols is None:
                log.error("no symbols found")
                return None
            raw = symbols.get(name)
            if raw is None:
                return None
            path = _cstr(raw)
        return self.find_node(path)

    def get_alias(self, name: str) -> str | None:
        aliases = self.find_node("/aliases")
        if aliases is None:
            return None
        value = aliases.get(name)
        return None if value is None else _cstr(value)

    def set_alias(self, name: str, value: str) -> None:
        aliases = self.find_node("/aliases") or self.root.add_subnode("aliases")
        aliases.set(name, value)

    def find_matching_node(self, names: Iterable[str], start: Node | None = None) -> Node | None:
        """Return the next node after ``start`` whose name begins with one of ``names``."""
        names = list(names)
        nodes = self.root.walk()
        if start is not None:
            for node in nodes:
                if node is start:
                    break
        for node in nodes:
            if any(node.name.startswith(n) for n in names):
                return node
        return None