"""Merging overlays, fragments and parameters into a base device tree."""

from __future__ import annotations

import struct
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Callable, Iterable

from .fdt import DeviceTree, FdtError, Node, log
from .fixups import rename_node

MAX_PATH = 256
_FRAGMENT_PREFIXES = ("fragment@", "fragment-")
_PHANDLE_PROPS = ("phandle", "linux,phandle")

IntraFragmentMerged = Callable[[DeviceTree, Node, Node], None]


@dataclass(frozen=True)
class Pin:
    """A GPIO pin claimed by a device, with its function and pull (-1 if unset)."""

    pin: int
    function: int = -1
    pull: int = -1


def _to_bytes(value) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8") + b"\0"
    if isinstance(value, int):
        return struct.pack(">I", value & 0xFFFFFFFF)
    raise TypeError(f"cannot store {type(value).__name__} as a property value")


def _cstr(value: bytes) -> str:
    return value.split(b"\0", 1)[0].decode("latin-1")


def _set_or_append(node: Node, name: str, value) -> None:
    """Set a property, except that a non-empty "bootargs" is extended."""
    data = _to_bytes(value)
    existing = node.get(name)
    if name == "bootargs" and existing and existing[0]:
        node.set(name, existing[:-1] + b" " + data)
    else:
        node.set(name, data)


def _clone(node: Node, parent: Node | None = None) -> Node:
    copy = Node(name=node.name, properties=dict(node.properties), parent=parent)
    copy.children = [_clone(child, copy) for child in node.children]
    return copy


def merge_fragment(base_dtb: DeviceTree, target: Node, source: Node, depth: int = 0) -> None:
    """Copy the properties and subnodes of ``source`` into ``target``."""
    log.debug("merge_fragment(%s,%s)", target.path(), source.path())

    for name, value in list(source.properties.items()):
        # Only the top level's phandles belong to the fragment itself
        if name == "name" or (depth == 0 and name in _PHANDLE_PROPS):
            continue
        log.debug("  +prop(%s)", name)
        _set_or_append(target, name, value)

    for child in list(source.children):
        subtarget = target.subnode(child.name) or target.add_subnode(child.name)
        merge_fragment(base_dtb, subtarget, child, depth + 1)

    log.debug("merge_fragment() end")


def _get_target(base_dtb: DeviceTree | None, overlay_dtb: DeviceTree, fragment: Node) -> Node:
    """Locate a fragment's target, in the base tree or (without one) in the overlay."""
    target_path = fragment.get("target-path")
    if target_path is not None:
        if base_dtb is None:
            raise FdtError(FdtError.NOTFOUND, "target-path needs a base tree")
        path = target_path[:-1] if target_path.endswith(b"\0") else target_path
        text = path.decode("latin-1")
        try:
            node = base_dtb.find_node(text)
        except FdtError:
            node = None
        if node is None:
            log.error("invalid target-path '%s'", text)
            raise FdtError(FdtError.NOTFOUND, f"invalid target-path '{text}'")
        return node

    target = fragment.get("target")
    if target is None:
        log.error("no target or target-path")
        raise FdtError(FdtError.NOTFOUND, "no target or target-path")
    if len(target) != 4:
        raise FdtError(FdtError.BADSTRUCTURE, "target is not a single cell")
    (phandle,) = struct.unpack(">I", target)

    if base_dtb is None:
        if phandle >= 0x80000000 or phandle > overlay_dtb.max_phandle:
            raise FdtError(FdtError.NOTFOUND, f"phandle {phandle} not in overlay")
        node = overlay_dtb.node_by_phandle(phandle)
        if node is None:
            raise FdtError(FdtError.NOTFOUND, f"phandle {phandle} not in overlay")
        return node

    try:
        node = base_dtb.node_by_phandle(phandle)
    except FdtError:
        node = None
    if node is None:
        log.error("invalid target (phandle %d)", phandle)
        raise FdtError(FdtError.NOTFOUND, f"invalid target (phandle {phandle})")
    return node


def _overlay_node(fragment: Node) -> Node | None:
    frag_name = fragment.name[len("fragment@"):]
    overlay_node = fragment.subnode("__overlay__")
    if overlay_node is None:
        if fragment.subnode("__dormant__") is not None:
            log.debug("fragment %s disabled", frag_name)
        else:
            log.error("no overlay in fragment %s", frag_name)
    return overlay_node


def _apply_overlay_paths(base_dtb: DeviceTree, strings_node: Node, overlay_dtb: DeviceTree,
                         source: Node, kind: str) -> None:
    """Copy path strings, rebasing "/<fragment>/__overlay__/..." onto the fragment target."""
    for name, value in list(source.properties.items()):
        new_value = value
        path = value.split(b"\0", 1)[0]
        slash = path.find(b"/", 1) if path.startswith(b"/") else -1
        if (slash > 0 and path[slash + 1:slash + 12] == b"__overlay__"
                and path[slash + 12:slash + 13] in (b"", b"/")):
            fragment = overlay_dtb.find_node(path[:slash].decode("latin-1"))
            if fragment is None:
                raise FdtError(FdtError.NOTFOUND, f"no fragment for {_cstr(value)}")
            target = _get_target(base_dtb, overlay_dtb, fragment)
            rest = value[slash + 12:]
            target_path = target.path().encode("latin-1")
            if target_path == b"/":
                rest = rest[1:]  # avoid a '//' when the target is the root
            new_value = target_path + rest
            if len(new_value) >= MAX_PATH:
                log.error("exported symbol path too long for %s", _cstr(value))
                raise FdtError(FdtError.NOSPACE, "exported symbol path too long")
            log.debug("set %s '%s' path to '%s'", kind, name, _cstr(new_value))
        strings_node.set(name, new_value)


def _merge_intra_fragments(overlay_dtb: DeviceTree,
                           on_intra_fragment_merged: IntraFragmentMerged | None) -> None:
    for fragment in list(overlay_dtb.root.children):
        if not fragment.name.startswith(_FRAGMENT_PREFIXES) or fragment.parent is None:
            continue
        overlay_node = _overlay_node(fragment)
        if overlay_node is None:
            continue
        try:
            target = _get_target(None, overlay_dtb, fragment)
        except FdtError:
            continue

        if on_intra_fragment_merged is not None:
            on_intra_fragment_merged(overlay_dtb, overlay_node, target)

        # Merge from a snapshot, since the source may change as the target does
        snapshot = _clone(fragment.subnode("__overlay__") or overlay_node)
        merge_fragment(overlay_dtb, target, snapshot, 0)

        current = fragment.subnode("__overlay__")
        if current is not None:
            rename_node(overlay_dtb, current, "__dormant__")


def _merge_into_base(base_dtb: DeviceTree, overlay_dtb: DeviceTree) -> None:
    for fragment in list(overlay_dtb.root.children):
        if fragment.name == "__symbols__":
            symbols = base_dtb.find_node("/__symbols__")
            if symbols is not None:
                try:
                    _apply_overlay_paths(base_dtb, symbols, overlay_dtb, fragment, "label")
                except FdtError as exc:
                    log.debug("symbols not exported: %s", exc)
            continue
        if not fragment.name.startswith(_FRAGMENT_PREFIXES):
            continue

        overlay_node = _overlay_node(fragment)
        if overlay_node is None:
            continue

        target = _get_target(base_dtb, overlay_dtb, fragment)
        if target.name == "aliases":
            _apply_overlay_paths(base_dtb, target, overlay_dtb, overlay_node, "alias")
        else:
            merge_fragment(base_dtb, target, overlay_node, 0)


def merge_overlay(base_dtb: DeviceTree | None, overlay_dtb: DeviceTree,
                  on_intra_fragment_merged: IntraFragmentMerged | None = None) -> None:
    """Apply the overlay's own fragments, then (given a base) merge it into the base."""
    try:
        filter_symbols(overlay_dtb)
        _merge_intra_fragments(overlay_dtb, on_intra_fragment_merged)
        if base_dtb is None:
            return
        _merge_into_base(base_dtb, overlay_dtb)
    except FdtError:
        log.error("merge failed")
        raise
    base_dtb.max_phandle = overlay_dtb.max_phandle


def filter_symbols(dtb: DeviceTree) -> None:
    """Drop every symbol that is not listed in /__exports__."""
    symbols = dtb.find_node("/__symbols__")
    if symbols is None:
        return
    exports = dtb.find_node("/__exports__")
    if exports is None:
        # No exports: all symbols stay private
        dtb.delete_node("/__symbols__")
        return
    symbols.properties = {name: value for name, value in symbols.properties.items()
                          if name in exports.properties}


def merge_params(dtb: DeviceTree, params) -> None:
    """Set properties named by "<node path>/<property>", creating nodes as needed."""
    items: Iterable = params.items() if isinstance(params, Mapping) else params
    for param, value in items:
        node_path, slash, prop_name = param.rpartition("/")
        if not slash:
            raise FdtError(FdtError.BADPATH, f"parameter '{param}' has no path")
        node = dtb.create_node(node_path or "/")
        _set_or_append(node, prop_name, value)


def set_node_properties(dtb: DeviceTree, path: str, properties) -> Node:
    """Set several properties on a node, creating the node if it is missing."""
    try:
        node = dtb.find_node(path)
    except FdtError:
        node = None
    if node is None:
        node = dtb.create_node(path)
    items: Iterable = properties.items() if isinstance(properties, Mapping) else properties
    for name, value in items:
        node.set(name, _to_bytes(value))
    return node


def create_prop_fragment(dtb: DeviceTree, idx: int, target_phandle: int,
                         prop_name: str, value) -> Node:
    """Add a "fragment-<idx>" that sets one property on the node with ``target_phandle``."""
    fragment = dtb.root.add_subnode(f"fragment-{idx}")
    fragment.set("target", struct.pack(">I", target_phandle & 0xFFFFFFFF))
    overlay_node = fragment.add_subnode("__overlay__")
    overlay_node.set(prop_name, _to_bytes(value))
    return fragment


def dup_property(dtb: DeviceTree, node_path: str, dst: str, src: str) -> None:
    """Copy property ``src`` of a node to ``dst``; a missing node or source is ignored."""
    try:
        node = dtb.find_node(node_path)
    except FdtError:
        node = None
    if node is None:
        return
    value = node.get(src)
    if value is None:
        return
    node.set(dst, value)
    log.debug("%s:%s=%s", node_path, dst, src)


def set_synonym(dtb: DeviceTree, dst: str, src: str) -> None:
    """Make aliases, symbols and overrides named ``dst`` equal those named ``src``."""
    dup_property(dtb, "/aliases", dst, src)
    dup_property(dtb, "/__symbols__", dst, src)
    dup_property(dtb, "/__overrides__", dst, src)


def _cells(value: bytes | None) -> list[int]:
    if not value:
        return []
    usable = len(value) - len(value) % 4
    return [cell for (cell,) in struct.iter_unpack(">I", value[:usable])]


def _pick(cells: list[int], index: int) -> int:
    if not cells:
        return -1
    if len(cells) == 1:
        return cells[0]
    return cells[index] if index < len(cells) else -1


def find_pins_for_device(dtb: DeviceTree, symbol: str) -> list[Pin]:
    """List the pins an enabled device claims through its "pinctrl-0" groups."""
    node = dtb.find_symbol(symbol)
    if node is None:
        raise FdtError(FdtError.NOTFOUND, f"symbol '{symbol}' not found")
    if not node.is_enabled():
        return []

    pins: list[Pin] = []
    for phandle in _cells(node.get("pinctrl-0")):
        try:
            group = dtb.node_by_phandle(phandle)
        except FdtError:
            group = None
        if group is None:
            continue
        funcs = _cells(group.get("brcm,function"))
        pulls = _cells(group.get("brcm,pull"))
        for index, pin in enumerate(_cells(group.get("brcm,pins"))):
            pins.append(Pin(pin, _pick(funcs, index), _pick(pulls, index)))
    return pins