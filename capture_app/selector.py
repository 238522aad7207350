"""Capture source selection: live camera or gallery file picker."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Optional, Set, Type

from .state import EntryMode

if TYPE_CHECKING:
    from .session_manager import CaptureSessionManager

logger = logging.getLogger(__name__)

GALLERY_FLAG = "openGallery"


class EntryFlags:
    """One-shot flags left by the previous screen. Reading a flag clears it."""

    def __init__(self) -> None:
        self._flags: Set[str] = set()

    def set(self, name: str = GALLERY_FLAG) -> None:
        self._flags.add(name)

    def is_set(self, name: str = GALLERY_FLAG) -> bool:
        return name in self._flags

    def consume(self, name: str = GALLERY_FLAG) -> bool:
        present = name in self._flags
        self._flags.discard(name)
        return present


def resolve_entry_mode(mode_hint: Optional[str] = None, flags: Optional[EntryFlags] = None) -> EntryMode:
    """Decide the entry mode from a query hint, falling back to the one-shot gallery flag."""
    gallery_flag = flags.consume(GALLERY_FLAG) if flags is not None else False

    if mode_hint:
        hint = mode_hint.strip().lower()
        if hint == EntryMode.GALLERY.value:
            return EntryMode.GALLERY
        if hint == EntryMode.CAMERA.value:
            return EntryMode.CAMERA
        logger.warning("Unknown entry mode hint %r; ignoring", mode_hint)

    return EntryMode.GALLERY if gallery_flag else EntryMode.CAMERA


class EntryStrategy:
    """How a capture session gets its first frame source."""

    mode: EntryMode

    async def start(self, manager: "CaptureSessionManager") -> None:
        raise NotImplementedError


class CameraEntry(EntryStrategy):
    mode = EntryMode.CAMERA

    async def start(self, manager: "CaptureSessionManager") -> None:
        await manager.start_camera()


class GalleryEntry(EntryStrategy):
    mode = EntryMode.GALLERY

    async def start(self, manager: "CaptureSessionManager") -> None:
        await manager.open_gallery()


_ENTRY_STRATEGIES: Dict[EntryMode, Type[EntryStrategy]] = {
    EntryMode.CAMERA: CameraEntry,
    EntryMode.GALLERY: GalleryEntry,
}


def build_entry(mode: EntryMode) -> EntryStrategy:
    return _ENTRY_STRATEGIES[mode]()


__all__ = [
    "GALLERY_FLAG",
    "EntryFlags",
    "resolve_entry_mode",
    "EntryStrategy",
    "CameraEntry",
    "GalleryEntry",
    "build_entry",
]
