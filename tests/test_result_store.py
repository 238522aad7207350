from capture_app.backend.result_store import RESULT_KEY, TIMESTAMP_KEY, ResultStore


async def test_save_then_load(tmp_path):
    store = ResultStore(tmp_path / "store")

    assert await store.load() is None
    assert await store.save({"age": {"20-29": 0.7}}, "2026-01-01T00:00:00+00:00") is True

    stored = await store.load()
    assert stored == {
        RESULT_KEY: {"age": {"20-29": 0.7}},
        TIMESTAMP_KEY: "2026-01-01T00:00:00+00:00",
    }


async def test_unconfigured_store_is_skipped():
    store = ResultStore(None)

    assert not store.available
    assert await store.save({"a": 1}, "now") is False
    assert await store.load() is None


async def test_write_failure_is_reported_not_raised(tmp_path):
    blocker = tmp_path / "occupied"
    blocker.write_text("a file, not a directory")
    store = ResultStore(blocker)

    assert await store.save({"a": 1}, "now") is False
