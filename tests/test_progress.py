from pathlib import Path

from prdsched.progress import ProgressLog


def test_append_and_read(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path / "logs" / "progress.txt")

    assert log.read() == ""
    assert log.append("first\n") is True
    assert log.append("second\n") is True

    assert log.read() == "first\nsecond\n"


def test_rotation_keeps_configured_backups(tmp_path: Path) -> None:
    path = tmp_path / "progress.txt"
    log = ProgressLog(path, max_bytes=10, backups=2)

    for line in ("aaaaaaaa\n", "bbbbbbbb\n", "cccccccc\n", "dddddddd\n"):
        log.append(line)

    assert path.read_text(encoding="utf-8") == "dddddddd\n"
    assert (tmp_path / "progress.txt.1").read_text(encoding="utf-8") == "cccccccc\n"
    assert (tmp_path / "progress.txt.2").read_text(encoding="utf-8") == "bbbbbbbb\n"
    assert not (tmp_path / "progress.txt.3").exists()


def test_entry_is_tagged(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path / "progress.txt")

    log.entry("group_complete", "all done")

    assert "[GROUP COMPLETE] all done" in log.read()


def test_append_failure_is_reported_not_raised(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", encoding="utf-8")
    log = ProgressLog(blocker / "progress.txt")

    assert log.append("lost\n") is False
