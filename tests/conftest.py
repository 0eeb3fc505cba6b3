"""Shared fixtures: a small source tree and scratch folders."""

import pytest

from tarkeep import Progress, RemapReconciler, write_backup

MARKER = "TEST_BUILD_MARKER"


class RecordingProgress(Progress):
    """Progress that remembers every value it was set to."""
    __slots__ = ['history']

    def __init__(self):
        super().__init__()
        self.history = []

    def set(self, pct):
        super().set(pct)
        self.history.append(pct)


@pytest.fixture
def source(tmp_path):
    """src/Docs/{a.txt, sub/b.txt, empty/}, src/report.docx, src/README"""
    root = tmp_path / "src"
    docs = root / "Docs"
    (docs / "sub").mkdir(parents=True)
    (docs / "empty").mkdir()
    (docs / "a.txt").write_text("alpha")
    (docs / "sub" / "b.txt").write_text("bravo")
    (root / "report.docx").write_bytes(b"docx-bytes")
    (root / "README").write_text("readme")
    return root


@pytest.fixture
def outdir(tmp_path):
    d = tmp_path / "out"
    d.mkdir()
    return d


@pytest.fixture
def restore_root(tmp_path):
    d = tmp_path / "restored"
    d.mkdir()
    return d


@pytest.fixture
def remap(source, restore_root):
    """Send everything recorded under the source tree into restore_root."""
    return RemapReconciler({str(source): str(restore_root)})


@pytest.fixture
def backup(outdir):
    def _backup(paths, **kwargs):
        kwargs.setdefault("build_marker", MARKER)
        kwargs.setdefault("archive_name", "backup.tar")
        return write_backup(paths, outdir, **kwargs)
    return _backup
