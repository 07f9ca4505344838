import struct

import pytest

from dtbmerge.fdt import DeviceTree, FdtError
from dtbmerge.fixups import (
    add_fixup,
    delete_fixup,
    find_fixup,
    fixup_overlay,
    rename_node,
    resolve_fixups,
    resolve_phandles,
    stringlist_replace,
)


def u32(value):
    return struct.pack(">I", value)


def make_base():
    base = DeviceTree.empty()
    base.create_node("/soc/uart@7e201000")
    i2c = base.create_node("/soc/i2c")
    i2c.set("phandle", u32(5))
    symbols = base.create_node("/__symbols__")
    symbols.set("uart0", "/soc/uart@7e201000")
    symbols.set("i2c", "/soc/i2c")
    base.max_phandle = 5
    return base


def make_overlay(symbol="uart0"):
    overlay = DeviceTree.empty()
    frag = overlay.create_node("/fragment@0")
    frag.set("target", u32(0xFFFFFFFF))
    overlay.create_node("/fragment@0/__overlay__").set("status", "okay")
    overlay.create_node("/__fixups__").set(symbol, b"/fragment@0:target:0\0")
    return overlay


def test_stringlist_replace_rewrites_matching_prefixes():
    src = b"/fragment@0:reg:0\0/other:x:4\0"
    result = stringlist_replace(src, "/fragment@0:", "/soc/i2c:")
    assert result == b"/soc/i2c:reg:0\0/other:x:4\0"


def test_stringlist_replace_without_match_returns_none():
    assert stringlist_replace(b"/a:b:0\0", "/z:", "/y:") is None


def test_stringlist_replace_malformed_or_empty_returns_none():
    assert stringlist_replace(b"/a:b:0", "/a:", "/y:") is None
    assert stringlist_replace(b"", "/a:", "/y:") is None


def test_add_find_delete_fixup_round_trip():
    dtb = DeviceTree.empty()
    dtb.create_node("/__fixups__")
    add_fixup(dtb, "uart0", "/fragment@0:target:0")
    add_fixup(dtb, "uart0", "/fragment@1:target:0")
    assert find_fixup(dtb, "/fragment@1:target:0") == "uart0"
    delete_fixup(dtb, "/fragment@0:target:0")
    assert find_fixup(dtb, "/fragment@0:target:0") is None
    fixups = dtb.find_node("/__fixups__")
    assert fixups.get("uart0") == b"/fragment@1:target:0\0"


def test_delete_only_fixup_removes_symbol():
    dtb = DeviceTree.empty()
    dtb.create_node("/__fixups__")
    add_fixup(dtb, "uart0", "/fragment@0:target:0")
    delete_fixup(dtb, "/fragment@0:target:0")
    assert dtb.find_node("/__fixups__").get("uart0") is None


def test_delete_missing_fixup_raises_notfound():
    dtb = DeviceTree.empty()
    dtb.create_node("/__fixups__")
    with pytest.raises(FdtError) as info:
        delete_fixup(dtb, "/nowhere:prop:0")
    assert info.value.code == FdtError.NOTFOUND


def test_add_fixup_without_fixups_node_raises():
    with pytest.raises(FdtError) as info:
        add_fixup(DeviceTree.empty(), "uart0", "/a:b:0")
    assert info.value.code == FdtError.NOTFOUND


def test_find_fixup_matches_whole_entries_only():
    dtb = DeviceTree.empty()
    dtb.create_node("/__fixups__").set("uart0", b"/fragment@0:target:0\0")
    assert find_fixup(dtb, "/fragment@0:target") is None


def test_resolve_fixups_assigns_new_phandle():
    base = make_base()
    overlay = make_overlay()
    resolve_fixups(base, overlay)
    uart = base.find_node("/soc/uart@7e201000")
    assert uart.phandle == base.max_phandle
    assert base.max_phandle > 5
    assert overlay.find_node("/fragment@0").get("target") == u32(uart.phandle)


def test_resolve_fixups_reuses_existing_phandle():
    base = make_base()
    overlay = make_overlay("i2c")
    resolve_fixups(base, overlay)
    assert overlay.find_node("/fragment@0").get("target") == u32(5)
    assert base.max_phandle == 5


def test_resolve_fixups_with_path_reference():
    base = make_base()
    overlay = make_overlay("/soc/i2c")
    resolve_fixups(base, overlay)
    assert overlay.find_node("/fragment@0").get("target") == u32(5)


def test_resolve_fixups_unknown_symbol_raises():
    with pytest.raises(FdtError) as info:
        resolve_fixups(make_base(), make_overlay("missing"))
    assert info.value.code == FdtError.NOTFOUND


def test_resolve_fixups_without_symbols_raises():
    with pytest.raises(FdtError) as info:
        resolve_fixups(DeviceTree.empty(), make_overlay())
    assert info.value.code == FdtError.NOTFOUND


def test_resolve_fixups_malformed_entry_raises():
    overlay = make_overlay()
    overlay.find_node("/__fixups__").set("uart0", b"nocolon\0")
    with pytest.raises(FdtError) as info:
        resolve_fixups(make_base(), overlay)
    assert info.value.code == FdtError.BADSTRUCTURE


def make_local_overlay():
    overlay = DeviceTree.empty()
    dev = overlay.create_node("/fragment@0/__overlay__/dev")
    dev.set("phandle", u32(1))
    dev.set("ref", u32(1) + u32(7))
    overlay.max_phandle = 1
    return overlay


def test_resolve_phandles_with_node_style_local_fixups():
    overlay = make_local_overlay()
    overlay.create_node("/__local_fixups__/fragment@0/__overlay__/dev").set("ref", u32(0))
    base = DeviceTree.empty()
    base.max_phandle = 10
    resolve_phandles(base, overlay)
    dev = overlay.find_node("/fragment@0/__overlay__/dev")
    assert dev.phandle == 1 + base.max_phandle
    assert dev.get("ref") == u32(1 + base.max_phandle) + u32(7)
    assert overlay.max_phandle == 1 + base.max_phandle


def test_resolve_phandles_with_string_local_fixups():
    overlay = make_local_overlay()
    overlay.create_node("/__local_fixups__").set(
        "fixup", b"/fragment@0/__overlay__/dev:ref:4\0")
    base = DeviceTree.empty()
    base.max_phandle = 10
    resolve_phandles(base, overlay)
    dev = overlay.find_node("/fragment@0/__overlay__/dev")
    assert dev.get("ref") == u32(1) + u32(7 + base.max_phandle)


def test_resolve_phandles_bad_offset_raises():
    overlay = make_local_overlay()
    overlay.create_node("/__local_fixups__").set(
        "fixup", b"/fragment@0/__overlay__/dev:ref:8\0")
    base = DeviceTree.empty()
    base.max_phandle = 10
    with pytest.raises(FdtError) as info:
        resolve_phandles(base, overlay)
    assert info.value.code == FdtError.BADSTRUCTURE


def test_fixup_overlay_marks_applied():
    base = make_base()
    overlay = make_overlay()
    fixup_overlay(base, overlay)
    assert overlay.fixups_applied is True
    assert overlay.find_node("/fragment@0").get("target") == u32(base.max_phandle)


def test_fixup_overlay_marks_applied_even_on_error():
    overlay = make_overlay("missing")
    with pytest.raises(FdtError):
        fixup_overlay(make_base(), overlay)
    assert overlay.fixups_applied is True


def make_rename_overlay():
    overlay = DeviceTree.empty()
    overlay.create_node("/fragment@0/__overlay__/foo").set("reg", u32(0))
    overlay.create_node("/__fixups__").set(
        "gpio", b"/fragment@0/__overlay__/foo:reg:0\0/fragment@0/__overlay__x:a:0\0")
    overlay.create_node("/__symbols__").set("foo", "/fragment@0/__overlay__/foo")
    overlay.create_node("/__local_fixups__/fragment@0/__overlay__/foo").set("reg", u32(0))
    return overlay


def test_rename_node_patches_fixups_and_symbols():
    overlay = make_rename_overlay()
    node = overlay.find_node("/fragment@0/__overlay__")
    rename_node(overlay, node, "__dormant__")
    assert node.path() == "/fragment@0/__dormant__"
    assert overlay.find_node("/__fixups__").get("gpio") == (
        b"/fragment@0/__dormant__/foo:reg:0\0/fragment@0/__overlay__x:a:0\0")
    assert overlay.find_node("/__symbols__").get("foo") == b"/fragment@0/__dormant__/foo\0"
    assert overlay.find_node("/__local_fixups__/fragment@0/__dormant__/foo") is not None
    assert overlay.find_node("/__local_fixups__/fragment@0/__overlay__") is None


def test_rename_node_after_fixups_only_renames():
    overlay = make_rename_overlay()
    overlay.fixups_applied = True
    node = overlay.find_node("/fragment@0/__overlay__")
    rename_node(overlay, node, "__dormant__")
    assert node.name == "__dormant__"
    assert overlay.find_node("/__symbols__").get("foo") == b"/fragment@0/__overlay__/foo\0"
    assert overlay.find_node("/__local_fixups__/fragment@0/__overlay__/foo") is not None