"""Phandle fixups: resolving overlay references and keeping fixup paths in step."""

from __future__ import annotations

import re
import struct

from .fdt import DeviceTree, FdtError, Node, log

_FIXUP_NODES = ("/__fixups__", "/__local_fixups__", "/__symbols__")
_OFFSET_RE = re.compile(r"[ \t\n\v\f\r]*\+?[0-9]+")
_U32 = 0xFFFFFFFF


def _read_u32(data: bytes, offset: int) -> int:
    return struct.unpack_from(">I", data, offset)[0]


def _patch_u32(node: Node, prop_name: str, offset: int, value: int) -> None:
    data = bytearray(node.get(prop_name))
    struct.pack_into(">I", data, offset, value & _U32)
    node.set(prop_name, bytes(data))


def _as_bytes(text) -> bytes:
    return text.encode("latin-1") if isinstance(text, str) else bytes(text)


def _patch_paths(value: bytes, old_path: bytes, dir_len: int,
                 old_name_len: int, new_name: bytes) -> bytes | None:
    """Replace the last component of ``old_path`` wherever it heads a string."""
    parts = value.split(b"\0")
    last = len(parts) - 1
    changed = False
    for i, part in enumerate(parts):
        if not part.startswith(old_path):
            continue
        if len(part) > len(old_path):
            matched = part[len(old_path):len(old_path) + 1] in (b":", b"/")
        else:
            matched = i < last
        if matched:
            parts[i] = part[:dir_len] + new_name + part[dir_len + old_name_len:]
            changed = True
    return b"\0".join(parts) if changed else None


def rename_node(dtb: DeviceTree, node: Node, name: str) -> None:
    """Rename a node, patching fixups, local fixups and symbols that name it."""
    if dtb.fixups_applied:
        node.name = name
        return

    old_path = node.path()
    node.name = name
    old_dir, _, old_name = old_path.rpartition("/")
    if not old_name or name == old_name:
        return

    old_bytes = old_path.encode("latin-1")
    new_bytes = name.encode("latin-1")
    dir_len = len(old_dir.encode("latin-1")) + 1
    old_name_len = len(old_name.encode("latin-1"))

    for holder_path in _FIXUP_NODES:
        holder = dtb.find_node(holder_path)
        if holder is None or holder is dtb.root:
            continue
        for prop_name, value in list(holder.properties.items()):
            patched = _patch_paths(value, old_bytes, dir_len, old_name_len, new_bytes)
            if patched is not None:
                holder.set(prop_name, patched)

    local = dtb.find_node("/__local_fixups__")
    if local is None:
        return
    target: Node | None = local
    for component in old_path.split("/"):
        if component:
            target = target.subnode(component)
            if target is None:
                return
    if target is not local:
        target.name = name


def _apply_fixups(dtb: DeviceTree, stringlist: bytes, phandle: int, relative: bool) -> None:
    """Patch each "path:property:offset" location with a phandle."""
    for entry in stringlist.split(b"\0"):
        if not entry:
            break
        text = entry.decode("latin-1")
        path, sep, rest = text.partition(":")
        if not sep:
            raise FdtError(FdtError.BADSTRUCTURE, f"malformed fixup '{text}'")
        prop_name, sep, offset_str = rest.partition(":")
        if not sep or not _OFFSET_RE.fullmatch(offset_str):
            raise FdtError(FdtError.BADSTRUCTURE, f"malformed fixup '{text}'")
        offset = int(offset_str)

        node = dtb.find_node(path)
        if node is None:
            raise FdtError(FdtError.NOTFOUND, f"fixup node '{path}' not found")
        value = node.get(prop_name)
        if value is None:
            raise FdtError(FdtError.NOTFOUND, f"fixup property '{prop_name}' not found")
        if offset > len(value) - 4:
            raise FdtError(FdtError.BADSTRUCTURE, f"fixup offset {offset} out of range")

        patch = phandle + _read_u32(value, offset) if relative else phandle
        _patch_u32(node, prop_name, offset, patch)


def _apply_fixups_node(dtb: DeviceTree, fix_node: Node, target: Node, phandle_offset: int) -> None:
    """Walk a local-fixups subtree, adding ``phandle_offset`` to each listed cell."""
    for prop_name, offsets in list(fix_node.properties.items()):
        value = target.get(prop_name)
        if value is None:
            raise FdtError(FdtError.BADSTRUCTURE, f"local fixup property '{prop_name}' missing")
        data = bytearray(value)
        for pos in range(0, len(offsets) - 3, 4):
            patch_offset = _read_u32(offsets, pos)
            if patch_offset + 4 > len(data):
                raise FdtError(FdtError.BADSTRUCTURE, f"local fixup offset {patch_offset} out of range")
            struct.pack_into(">I", data, patch_offset,
                             (phandle_offset + _read_u32(data, patch_offset)) & _U32)
        target.set(prop_name, bytes(data))

    for child in list(fix_node.children):
        subtarget = target.subnode(child.name)
        if subtarget is None:
            raise FdtError(FdtError.NOTFOUND, f"local fixup node '{child.name}' not found")
        _apply_fixups_node(dtb, child, subtarget, phandle_offset)


def resolve_phandles(base_dtb: DeviceTree, overlay_dtb: DeviceTree) -> None:
    """Move the overlay's phandles above the base's and update local references."""
    increment = base_dtb.max_phandle
    for node in overlay_dtb.root.walk():
        for prop_name in ("phandle", "linux,phandle"):
            value = node.get(prop_name)
            if value is None:
                continue
            if len(value) < 4:
                log.error("%s property too small", prop_name)
                continue
            if len(value) == 4:
                node.set(prop_name, struct.pack(">I", (_read_u32(value, 0) + increment) & _U32))

    local = overlay_dtb.find_node("/__local_fixups__")
    if local is not None:
        try:
            stringlist = local.get("fixup")
            if stringlist is not None:
                _apply_fixups(overlay_dtb, stringlist, increment, relative=True)
            else:
                _apply_fixups_node(overlay_dtb, local, overlay_dtb.root, increment)
        except FdtError:
            log.error("error applying local fixups")
            raise

    overlay_dtb.max_phandle += increment


def resolve_fixups(base_dtb: DeviceTree, overlay_dtb: DeviceTree) -> None:
    """Point the overlay's external references at nodes of the base tree."""
    fixups = overlay_dtb.find_node("/__fixups__")
    if fixups is None or not fixups.properties:
        return

    symbols = base_dtb.find_node("/__symbols__")
    if symbols is None:
        log.error("no symbols found")
        raise FdtError(FdtError.NOTFOUND, "no symbols found")

    for symbol_name, stringlist in list(fixups.properties.items()):
        if symbol_name.startswith("/"):
            target_path = symbol_name
            ref_type = "path"
        else:
            raw = symbols.get(symbol_name)
            if raw is None:
                log.error("can't find symbol '%s'", symbol_name)
                raise FdtError(FdtError.NOTFOUND, f"can't find symbol '{symbol_name}'")
            target_path = raw.split(b"\0", 1)[0].decode("latin-1")
            ref_type = "symbol"

        try:
            target = base_dtb.find_node(target_path)
        except FdtError:
            target = None
        if target is None:
            log.error("%s '%s' is invalid", ref_type, symbol_name)
            raise FdtError(FdtError.NOTFOUND, f"{ref_type} '{symbol_name}' is invalid")

        target_phandle = target.phandle
        if not target_phandle:
            base_dtb.max_phandle += 1
            target_phandle = base_dtb.max_phandle
            target.set("phandle", struct.pack(">I", target_phandle))

        try:
            _apply_fixups(overlay_dtb, stringlist, target_phandle, relative=False)
        except FdtError:
            log.error("failed to apply fixups")
            raise


def fixup_overlay(base_dtb: DeviceTree, overlay_dtb: DeviceTree) -> None:
    """Resolve external and local phandle references of an overlay."""
    try:
        resolve_fixups(base_dtb, overlay_dtb)
        resolve_phandles(base_dtb, overlay_dtb)
    finally:
        overlay_dtb.fixups_applied = True


def find_fixup(dtb: DeviceTree, fixup_loc: str) -> str | None:
    """Return the symbol whose fixup list holds ``fixup_loc``, if any."""
    fixups = dtb.find_node("/__fixups__")
    if fixups is None:
        return None
    wanted = _as_bytes(fixup_loc)
    for symbol_name, stringlist in fixups.properties.items():
        if wanted in stringlist.split(b"\0")[:-1]:
            return symbol_name
    return None


def add_fixup(dtb: DeviceTree, symbol: str, fixup_loc: str) -> None:
    """Append a fixup location to the list for ``symbol``."""
    fixups = dtb.find_node("/__fixups__")
    if fixups is None:
        raise FdtError(FdtError.NOTFOUND, "no /__fixups__ node")
    existing = fixups.get(symbol) or b""
    fixups.set(symbol, existing + _as_bytes(fixup_loc) + b"\0")


def delete_fixup(dtb: DeviceTree, fixup_loc: str) -> None:
    """Remove a fixup location, dropping the symbol if it was its only one."""
    fixups = dtb.find_node("/__fixups__")
    wanted = _as_bytes(fixup_loc)
    if fixups is not None:
        for symbol_name, stringlist in list(fixups.properties.items()):
            entries = stringlist.split(b"\0")
            terminated = entries[:-1]
            if wanted not in terminated:
                continue
            terminated.remove(wanted)
            if not terminated and not entries[-1]:
                fixups.remove(symbol_name)
            else:
                fixups.set(symbol_name, b"\0".join(terminated + [entries[-1]]))
            return
    raise FdtError(FdtError.NOTFOUND, f"fixup '{fixup_loc}' not found")


def stringlist_replace(strings, src_prefix, dst_prefix) -> bytes | None:
    """Swap ``src_prefix`` for ``dst_prefix`` at the start of each string.

    Returns the new list, or None if nothing was replaced or the list is not
    NUL-terminated.
    """
    data = bytes(strings)
    src = _as_bytes(src_prefix)
    dst = _as_bytes(dst_prefix)
    if not data or not data.endswith(b"\0"):
        return None
    parts = data[:-1].split(b"\0")
    replaced = False
    for i, part in enumerate(parts):
        if part.startswith(src):
            parts[i] = dst + part[len(src):]
            replaced = True
    if not replaced:
        return None
    return b"\0".join(parts) + b"\0"