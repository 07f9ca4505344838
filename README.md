# dtbmerge

A library for reading, editing and writing flattened device tree blobs
(`.dtb`) and for merging device tree overlays (`.dtbo`) into them, offline,
without a running kernel.

## Installation

```
pip install .
```

## Example

```python
from dtbmerge.fdt import DeviceTree
from dtbmerge.fixups import fixup_overlay
from dtbmerge.merge import merge_overlay

base = DeviceTree.load("base.dtb")
overlay = DeviceTree.load("overlays/foo.dtbo")

fixup_overlay(base, overlay)   # resolve phandle references against the base
merge_overlay(base, overlay)   # apply the overlay's fragments to the base
base.save("merged.dtb")
```

Failures raise `dtbmerge.fdt.FdtError`. Its `code` attribute holds an error
number such as `FdtError.NOTFOUND` or `FdtError.BADSTRUCTURE`.

## Modules

### `dtbmerge.fdt`

- `DeviceTree`: a whole blob with its root `Node`, memory reservations and
  any trailing bytes. `DeviceTree.empty()`, `DeviceTree.from_bytes(data,
  max_size)` and `DeviceTree.load(path, max_size)` create one.
  `to_bytes()` and `save(path)` write it back as a packed blob followed by
  the trailer. It also has `find_node` (absolute or alias-relative paths),
  `create_node`, `delete_node`, `node_by_phandle`, `find_symbol`,
  `get_alias`, `set_alias` and `find_matching_node`.
- `Node`: holds ordered properties (raw bytes) and children. It has `path()`,
  `get`, `set`, `remove`, `subnode`, `add_subnode`, `walk()` and
  `is_enabled()`, plus a `phandle` property.
  `set` accepts bytes, a string (stored NUL-terminated) or an integer (stored
  as one big-endian cell).
- `enable_debug(enable)`: switches debug logging on or off. Messages go to
  standard error as `DTOVERLAY[error|warn|debug]: ...`.

### `dtbmerge.fixups`

- `fixup_overlay(base, overlay)`: runs `resolve_fixups` and then
  `resolve_phandles`. `resolve_fixups` points the overlay's `__fixups__`
  references at nodes of the base tree, and gives those nodes phandles where
  they have none. `resolve_phandles` moves the overlay's own phandles above
  the base's and updates `__local_fixups__` references.
- `rename_node(dtb, node, name)`: renames a node and patches fixup, local-fixup
  and symbol paths that refer to it.
- `find_fixup`, `add_fixup`, `delete_fixup` and `stringlist_replace` handle
  the `"path:property:offset"` string lists.

### `dtbmerge.merge`

- `merge_overlay(base, overlay, on_intra_fragment_merged=None)`: first keeps
  only the symbols listed in `/__exports__`. Then it applies the fragments
  that target nodes inside the overlay itself. If `base` is not `None`, it
  then merges the remaining fragments into the base, including exported
  symbols and aliases.
- `merge_fragment`, `filter_symbols`, `merge_params` (`"<node path>/<property>"`
  to value), `set_node_properties`, `create_prop_fragment`, `dup_property` and
  `set_synonym`.
- `find_pins_for_device(dtb, symbol)`: returns a list of `Pin(pin, function,
  pull)` for an enabled device's `pinctrl-0` groups.

### `dtbmerge.overlay_map`

- `platform_for_compatible(compatible)`: maps a NUL-separated compatible list
  to `bcm2835`, `bcm2711` or `bcm2712`, or returns `None`.
- `OverlayMap.load(overlay_dir, compatible)` reads `overlay_map.dtb` from a
  directory. `OverlayMap.from_tree(tree, compatible)` uses a tree that is
  already loaded. `remap(name)` returns the overlay name to use on the
  platform. It returns `None` and logs the reason if the overlay is
  deprecated or not supported there.

## What this package does not do

- It has no command-line program. Every operation is done through the
  library.
- It does not apply overlay parameters. It does not read or evaluate
  `__overrides__` entries, so a `param=value` setting cannot be applied with
  it. `set_synonym` can still copy an `__overrides__` property under a new
  name.

## Running the tests

```
pip install .[test]
pytest
```