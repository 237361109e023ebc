"""Tests for scratch.py — handoff file and scratch directory lifecycle."""
import pytest

from t1w_preproc_lsf.scratch import (
    HANDOFF_PREFIX,
    SCRATCH_PREFIX,
    ScratchAllocationError,
    make_scratch_dir,
    new_handoff_file,
    read_handoff,
    remove_scratch_dir,
)


@pytest.fixture
def scratch_root(tmp_path):
    root = tmp_path / "scratch"
    root.mkdir()
    return root


# ---------------------------------------------------------------------------
# new_handoff_file
# ---------------------------------------------------------------------------


def test_new_handoff_file_is_empty_and_unique(tmp_path):
    first = new_handoff_file(tmp_path)
    second = new_handoff_file(tmp_path)
    assert first != second
    assert first.read_text() == ""
    assert first.name.startswith(HANDOFF_PREFIX)
    assert first.suffix == ".txt"


# ---------------------------------------------------------------------------
# make_scratch_dir
# ---------------------------------------------------------------------------


def test_make_scratch_dir_creates_directory(tmp_path, scratch_root):
    handoff = new_handoff_file(tmp_path)
    scratch = make_scratch_dir(scratch_root, handoff)
    assert scratch.is_dir()
    assert scratch.parent == scratch_root
    assert scratch.name.startswith(SCRATCH_PREFIX)


def test_make_scratch_dir_writes_path_to_handoff(tmp_path, scratch_root):
    handoff = new_handoff_file(tmp_path)
    scratch = make_scratch_dir(scratch_root, handoff)
    assert handoff.read_text().strip() == str(scratch)


def test_make_scratch_dir_leaves_no_partial_file(tmp_path, scratch_root):
    handoff = new_handoff_file(tmp_path)
    make_scratch_dir(scratch_root, handoff)
    assert not list(tmp_path.glob("*.partial"))


def test_make_scratch_dir_each_call_is_fresh(tmp_path, scratch_root):
    a = make_scratch_dir(scratch_root, new_handoff_file(tmp_path))
    b = make_scratch_dir(scratch_root, new_handoff_file(tmp_path))
    assert a != b


def test_make_scratch_dir_missing_root_fails_loudly(tmp_path):
    handoff = new_handoff_file(tmp_path)
    with pytest.raises(ScratchAllocationError, match="Could not create"):
        make_scratch_dir(tmp_path / "no-such-root", handoff)
    assert handoff.read_text() == ""


def test_make_scratch_dir_unwritable_handoff_removes_directory(tmp_path, scratch_root):
    handoff = tmp_path / "missing-dir" / "handoff.txt"
    with pytest.raises(ScratchAllocationError, match="handoff"):
        make_scratch_dir(scratch_root, handoff)
    assert list(scratch_root.iterdir()) == []


# ---------------------------------------------------------------------------
# read_handoff
# ---------------------------------------------------------------------------


def test_read_handoff_returns_path_and_deletes_file(tmp_path, scratch_root):
    handoff = new_handoff_file(tmp_path)
    scratch = make_scratch_dir(scratch_root, handoff)
    assert read_handoff(handoff) == scratch
    assert not handoff.exists()


def test_read_handoff_empty_file_raises_and_deletes(tmp_path):
    handoff = new_handoff_file(tmp_path)
    with pytest.raises(ScratchAllocationError, match="empty"):
        read_handoff(handoff)
    assert not handoff.exists()


def test_read_handoff_whitespace_only_is_empty(tmp_path):
    handoff = new_handoff_file(tmp_path)
    handoff.write_text("\n  \n")
    with pytest.raises(ScratchAllocationError):
        read_handoff(handoff)


def test_read_handoff_missing_file_raises(tmp_path):
    with pytest.raises(ScratchAllocationError, match="does not exist"):
        read_handoff(tmp_path / "gone.txt")


def test_read_handoff_is_one_shot(tmp_path, scratch_root):
    handoff = new_handoff_file(tmp_path)
    make_scratch_dir(scratch_root, handoff)
    read_handoff(handoff)
    with pytest.raises(ScratchAllocationError):
        read_handoff(handoff)


# ---------------------------------------------------------------------------
# remove_scratch_dir
# ---------------------------------------------------------------------------


def test_remove_scratch_dir_removes_contents(tmp_path, scratch_root):
    scratch = make_scratch_dir(scratch_root, new_handoff_file(tmp_path))
    (scratch / "sub-01_T1w.nii.gz").touch()
    (scratch / "nested").mkdir()
    (scratch / "nested" / "mask.nii.gz").touch()
    assert remove_scratch_dir(scratch) is True
    assert not scratch.exists()


def test_remove_scratch_dir_already_gone_is_not_an_error(scratch_root):
    assert remove_scratch_dir(scratch_root / f"{SCRATCH_PREFIX}gone") is False


def test_remove_scratch_dir_refuses_foreign_directory(tmp_path):
    precious = tmp_path / "data"
    precious.mkdir()
    (precious / "keep.txt").touch()
    assert remove_scratch_dir(precious) is False
    assert (precious / "keep.txt").exists()


def test_remove_scratch_dir_oserror_is_logged(tmp_path, scratch_root, monkeypatch, caplog):
    scratch = make_scratch_dir(scratch_root, new_handoff_file(tmp_path))

    def boom(path):
        raise PermissionError("denied")

    monkeypatch.setattr("t1w_preproc_lsf.scratch.shutil.rmtree", boom)
    assert remove_scratch_dir(scratch) is False
    assert "could not remove" in caplog.text
