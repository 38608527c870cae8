import os
import time

from mfdl.core.store import TransientStore


def _touch(p, data=b"x", age=0.0):
    p.write_bytes(data)
    if age:
        t = time.time() - age
        os.utime(p, (t, t))
    return p


def test_find_outputs_by_prefix_skips_partials(store: TransientStore):
    _touch(store.root / "abc.mp4")
    _touch(store.root / "abc.mp4.part")
    _touch(store.root / "abc.f137.mp4")
    _touch(store.root / "abc.ytdl")
    _touch(store.root / "abcdef.mp4")  # otro job con prefijo parecido
    assert [p.name for p in store.find_outputs("abc")] == ["abc.mp4"]


def test_output_template_is_prefix_scoped(store: TransientStore):
    assert store.output_template("job1").endswith("job1.%(ext)s")


def test_remove_only_touches_own_prefix(store: TransientStore):
    _touch(store.root / "a1.mp4")
    _touch(store.root / "a1.mp4.part")
    _touch(store.root / "b2.mp4")
    assert store.remove("a1") == 2
    assert [p.name for p in store.root.iterdir()] == ["b2.mp4"]


def test_sweep_removes_old_entries_and_keeps_fresh(store: TransientStore):
    old = _touch(store.root / "old.mp4", age=7200)
    fresh = _touch(store.root / "running.mp4.part", age=5)
    assert store.sweep(3600) == 1
    assert not old.exists()
    assert fresh.exists()
