from capture_app.selector import (
    GALLERY_FLAG,
    CameraEntry,
    EntryFlags,
    GalleryEntry,
    build_entry,
    resolve_entry_mode,
)
from capture_app.state import EntryMode


def test_defaults_to_camera_without_hint():
    assert resolve_entry_mode() is EntryMode.CAMERA
    assert resolve_entry_mode(None, EntryFlags()) is EntryMode.CAMERA


def test_query_hint_selects_gallery_and_clears_flag():
    flags = EntryFlags()
    flags.set(GALLERY_FLAG)

    assert resolve_entry_mode("gallery", flags) is EntryMode.GALLERY
    assert not flags.is_set(GALLERY_FLAG)


def test_one_shot_flag_is_consumed_once():
    flags = EntryFlags()
    flags.set()

    assert resolve_entry_mode(None, flags) is EntryMode.GALLERY
    assert resolve_entry_mode(None, flags) is EntryMode.CAMERA


def test_unknown_hint_falls_back_to_flag():
    flags = EntryFlags()
    flags.set()
    assert resolve_entry_mode("selfie", flags) is EntryMode.GALLERY
    assert resolve_entry_mode(" Camera ") is EntryMode.CAMERA


def test_builder_keyed_by_mode():
    assert isinstance(build_entry(EntryMode.CAMERA), CameraEntry)
    assert isinstance(build_entry(EntryMode.GALLERY), GalleryEntry)
    assert build_entry(EntryMode.GALLERY).mode is EntryMode.GALLERY
