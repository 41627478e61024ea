import os
import time

from viralclips import sweeper


def _age(path, seconds):
    stamp = time.time() - seconds
    os.utime(path, (stamp, stamp))


def test_sweep_deletes_only_files_past_max_age(tmp_path):
    uploads = tmp_path / "uploads"
    uploads.mkdir()
    old = uploads / "old.mp4"
    fresh = uploads / "fresh.mp4"
    nested = uploads / "nested"
    nested.mkdir()
    old.write_bytes(b"old")
    fresh.write_bytes(b"fresh")
    _age(old, 7200)
    _age(nested, 7200)

    assert sweeper.sweep([uploads], 3600) == 1
    assert not old.exists()
    assert fresh.exists()
    assert nested.is_dir()


def test_sweep_is_idempotent(tmp_path):
    target = tmp_path / "processed"
    target.mkdir()
    stale = target / "stale.mp4"
    stale.write_bytes(b"x")
    _age(stale, 100)

    assert sweeper.sweep([target], 10) == 1
    assert sweeper.sweep([target], 10) == 0


def test_sweep_skips_missing_directories(tmp_path):
    present = tmp_path / "present"
    present.mkdir()
    (present / "a.srt").write_text("x", encoding="utf-8")

    assert sweeper.sweep([tmp_path / "missing", present], None) == 1


def test_sweep_without_age_removes_everything(tmp_path):
    target = tmp_path / "temp"
    target.mkdir()
    for index in range(3):
        (target / f"file{index}.tmp").write_bytes(b"x")

    assert sweeper.sweep([target], None) == 3
    assert list(target.iterdir()) == []


def test_purge_scratch_leaves_outputs(monkeypatch, tmp_path):
    settings = sweeper.settings
    monkeypatch.setattr(settings, "DATA_DIR", tmp_path)
    settings.ensure_dirs()
    (settings.UPLOADS_DIR / "in.mp4").write_bytes(b"x")
    (settings.TEMP_DIR / "subs.srt").write_text("x", encoding="utf-8")
    kept = settings.PROCESSED_DIR / "out.mp4"
    kept.write_bytes(b"x")

    assert sweeper.purge_scratch() == 2
    assert kept.exists()
