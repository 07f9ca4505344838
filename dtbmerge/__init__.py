"""Read, edit and write device tree blobs and merge overlays into them."""

__version__ = "0.1.0"
__all__ = ["fdt", "fixups", "merge", "overlay_map"]