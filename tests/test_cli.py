"""The tarkeep command line, end to end."""

import pytest

from tarkeep import main
from conftest import MARKER


def run(*argv):
    main(["--fingerprint", MARKER, *[str(a) for a in argv]])


def only_archive(outdir, pattern="backup_*.tar"):
    found = sorted(outdir.glob(pattern))
    assert len(found) == 1
    return found[0]


class TestCli:
    def test_backup_tree_restore(self, source, outdir, restore_root, capsys):
        run("backup", source / "Docs", source / "README", "--dest", outdir)
        archive = only_archive(outdir)
        assert "Backup created" in capsys.readouterr().out

        run("tree", archive)
        out = capsys.readouterr().out
        assert f"[ ] {source}/" in out
        assert "  [ ] README" in out
        assert "2 items" in out

        run("restore", archive, "--select", source / "Docs" / "a.txt",
            "--remap", f"{source}={restore_root}")
        assert (restore_root / "Docs" / "a.txt").read_text() == "alpha"
        assert not (restore_root / "README").exists()
        assert "1 restored" in capsys.readouterr().out

    def test_gzip_backup(self, source, outdir, restore_root):
        run("backup", source / "README", "--dest", outdir, "--gzip", "--level", "maximum")
        archive = only_archive(outdir, "backup_*.tar.gz")
        assert not list(outdir.glob("*.tar"))
        run("restore", archive, "--remap", f"{source}={restore_root}")
        assert (restore_root / "README").read_text() == "readme"

    def test_select_from_file(self, source, outdir, restore_root, tmp_path):
        run("backup", source / "Docs", "--dest", outdir)
        picks = tmp_path / "picks.txt"
        picks.write_text(f"{source / 'Docs' / 'sub' / 'b.txt'}\n\n")
        run("restore", only_archive(outdir), "--select-from", picks,
            "--remap", f"{source}={restore_root}")
        assert (restore_root / "Docs" / "sub" / "b.txt").exists()
        assert not (restore_root / "Docs" / "a.txt").exists()

    def test_templates(self, source, outdir, tmp_path, capsys):
        template = tmp_path / "t.json"
        run("template-save", template, source / "README", tmp_path / "gone")
        run("template-load", template)
        captured = capsys.readouterr()
        assert str(source / "README") in captured.out
        assert "1 paths, 1 skipped" in captured.out
        assert "missing:" in captured.err

        run("backup", "--template", template, "--dest", outdir)
        assert only_archive(outdir).stat().st_size > 0

    def test_wrong_fingerprint_fails(self, source, outdir, capsys):
        run("backup", source / "README", "--dest", outdir)
        archive = only_archive(outdir)
        with pytest.raises(SystemExit) as exc:
            main(["--fingerprint", "NOT_THIS_BUILD", "tree", str(archive)])
        assert exc.value.code == 1
        assert "Invalid backup fingerprint" in capsys.readouterr().err

    def test_nothing_to_back_up(self, outdir):
        with pytest.raises(SystemExit):
            run("backup", "--dest", outdir)

    def test_bad_remap(self, source, outdir):
        run("backup", source / "README", "--dest", outdir)
        with pytest.raises(SystemExit):
            run("restore", only_archive(outdir), "--remap", "nonsense")

    def test_relative_input_restores_to_its_original_place(self, source, outdir, restore_root,
                                                            monkeypatch):
        monkeypatch.chdir(source)
        run("backup", "README", "--dest", outdir)
        monkeypatch.chdir(outdir)
        run("restore", only_archive(outdir), "--remap", f"{source}={restore_root}")
        assert (restore_root / "README").read_text() == "readme"
        assert not (outdir / "README").exists()
