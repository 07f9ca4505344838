"""Platform-specific overlay name mapping, driven by an overlay_map.dtb file."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .fdt import DeviceTree, log

MAP_FILE = "overlay_map.dtb"

_PLATFORM_FAMILIES = {
    "bcm2708": "bcm2835",
    "bcm2709": "bcm2835",
    "bcm2710": "bcm2835",
    "bcm2835": "bcm2835",
    "bcm2836": "bcm2835",
    "bcm2837": "bcm2835",
    "bcm2711": "bcm2711",
    "bcm2712": "bcm2712",
}


def _cstr(value: bytes) -> str:
    return value.split(b"\0", 1)[0].decode("latin-1")


def _compatible_strings(compatible) -> list[str]:
    if isinstance(compatible, str):
        data = compatible.encode("latin-1")
    else:
        data = bytes(compatible)
    return [s.decode("latin-1") for s in data.split(b"\0") if s]


def platform_for_compatible(compatible) -> str | None:
    """Return the platform family named by a NUL-separated compatible list.

    Each entry is compared after its vendor prefix (the part up to the first
    comma) is removed; the first entry naming a known SoC wins.
    """
    if compatible is None:
        return None
    for entry in _compatible_strings(compatible):
        _, comma, model = entry.partition(",")
        platform = _PLATFORM_FAMILIES.get(model if comma else entry)
        if platform is not None:
            return platform
    return None


@dataclass
class OverlayMap:
    """Maps overlay names to their platform-specific equivalents."""

    platform: str | None = None
    tree: DeviceTree | None = None

    @classmethod
    def from_tree(cls, tree: DeviceTree | None, compatible) -> OverlayMap:
        """Build a map from an already loaded map tree and a compatible list."""
        if compatible is None:
            return cls()
        platform = platform_for_compatible(compatible)
        if platform is None:
            log.warning("no matching platform found")
            tree = None
        else:
            log.debug("using platform '%s'", platform)
        log.debug("overlay map %sloaded", "" if tree is not None else "not ")
        return cls(platform=platform, tree=tree)

    @classmethod
    def load(cls, overlay_dir, compatible) -> OverlayMap:
        """Read ``overlay_map.dtb`` from ``overlay_dir``, if it is there."""
        if compatible is None:
            return cls()
        path = Path(overlay_dir) / MAP_FILE
        tree = None
        if path.is_file() and platform_for_compatible(compatible) is not None:
            try:
                tree = DeviceTree.load(path, 0)
            except (OSError, ValueError) as exc:
                log.error("failed to load '%s': %s", path, exc)
                tree = None
        return cls.from_tree(tree, compatible)

    def remap(self, overlay: str) -> str | None:
        """Return the name to load for ``overlay`` on this platform.

        Returns None (after logging why) if the overlay is deprecated or not
        supported on the platform.
        """
        tree = self.tree
        while tree is not None:
            entry = tree.root.subnode(overlay)
            if entry is None:
                break

            new_name = entry.get(self.platform) if self.platform else None
            if new_name is not None:
                mapped = _cstr(new_name)
                if mapped:
                    overlay = mapped
                break

            renamed = entry.get("renamed")
            if renamed is not None:
                new = _cstr(renamed)
                log.warning("overlay '%s' has been renamed '%s'", overlay, new)
                overlay = new
                continue

            deprecated = entry.get("deprecated")
            if deprecated is not None:
                log.error("overlay '%s' is deprecated: %s", overlay, _cstr(deprecated))
            else:
                log.error("overlay '%s' is not supported on the '%s' platform",
                          overlay, self.platform)
            return None

        return overlay