"""Tests for the batch job entry points"""

import json

import pytest

from conftest import make_image_bytes, open_image
from cli import EXIT_FATAL, EXIT_OK, EXIT_PARTIAL, main
from managers.config_manager import SettingsManager


@pytest.fixture
def settings(tmp_path):
    return SettingsManager(config_file=tmp_path / "config.json", environ={})


def output_json(capsys):
    return json.loads(capsys.readouterr().out)


class TestMigrateCommand:
    """Tests for asset-store migrate"""

    def test_migrate_success(self, tmp_path, settings, capsys):
        root = tmp_path / "articles"
        root.mkdir()
        (root / "a.png").write_bytes(b"a")

        assert main(["migrate", str(root)], settings=settings) == EXIT_OK
        result = output_json(capsys)
        assert result["roots"][0]["moved_count"] == 1
        assert (root / "general" / "a.png").exists()

    def test_migrate_multiple_roots(self, tmp_path, settings, capsys):
        roots = []
        for name in ("articles", "events"):
            root = tmp_path / name
            root.mkdir()
            (root / f"{name}.png").write_bytes(b"x")
            roots.append(str(root))

        assert main(["migrate", *roots], settings=settings) == EXIT_OK
        assert [r["moved"] for r in output_json(capsys)["roots"]] == [["articles.png"], ["events.png"]]

    def test_migrate_partial(self, tmp_path, settings, capsys):
        root = tmp_path / "articles"
        (root / "general").mkdir(parents=True)
        (root / "general" / "a.png").write_bytes(b"old")
        (root / "a.png").write_bytes(b"new")
        (root / "b.png").write_bytes(b"b")

        assert main(["migrate", str(root)], settings=settings) == EXIT_PARTIAL
        result = output_json(capsys)["roots"][0]
        assert result["moved"] == ["b.png"]
        assert result["failed"][0]["error_type"] == "ConflictError"

    def test_migrate_missing_root(self, tmp_path, settings, capsys):
        assert main(["migrate", str(tmp_path / "missing")], settings=settings) == EXIT_FATAL
        assert "error" in output_json(capsys)["roots"][0]

    def test_migrate_defaults_to_configured_root(self, tmp_path, settings, capsys):
        root = tmp_path / "configured"
        root.mkdir()
        (root / "a.png").write_bytes(b"a")
        settings.set_runtime({"storage_root": str(root)})

        assert main(["migrate"], settings=settings) == EXIT_OK
        assert (root / "general" / "a.png").exists()


class TestSweepCommand:
    """Tests for asset-store sweep"""

    def test_sweep_deletes_stale(self, tmp_path, settings, capsys):
        (tmp_path / "temp-100").mkdir()
        (tmp_path / "42").mkdir()

        assert main(["sweep", str(tmp_path)], settings=settings) == EXIT_OK
        result = output_json(capsys)
        assert result["deleted"] == ["temp-100"]
        assert (tmp_path / "42").is_dir()

    def test_sweep_missing_root(self, tmp_path, settings, capsys):
        assert main(["sweep", str(tmp_path / "missing")], settings=settings) == EXIT_FATAL
        assert "error" in output_json(capsys)

    def test_sweep_negative_retention(self, tmp_path, settings, capsys):
        assert main(["sweep", str(tmp_path), "--retention-hours", "-1"], settings=settings) == EXIT_FATAL

    def test_requires_command(self, settings):
        with pytest.raises(SystemExit):
            main([], settings=settings)


class TestOptimizeCommand:
    """Tests for asset-store optimize"""

    @pytest.fixture
    def root(self, tmp_path):
        root = tmp_path / "articles"
        (root / "42").mkdir(parents=True)
        (root / "42" / "cover.png").write_bytes(make_image_bytes(size=(800, 600)))
        return root

    def test_optimize_success(self, root, settings, capsys):
        assert main(["optimize", str(root), "--max-width", "200"], settings=settings) == EXIT_OK
        result = output_json(capsys)
        assert result["optimized"] == ["42/cover.png"]
        assert open_image((root / "42" / "cover.png").read_bytes()).size == (200, 150)

    def test_optimize_dry_run(self, root, settings, capsys):
        before = (root / "42" / "cover.png").read_bytes()

        assert main(["optimize", str(root), "--max-width", "200", "--dry-run"], settings=settings) == EXIT_OK
        assert output_json(capsys)["dry_run"] is True
        assert (root / "42" / "cover.png").read_bytes() == before

    def test_optimize_partial(self, root, settings, capsys):
        (root / "42" / "broken.png").write_bytes(b"not an image")

        assert main(["optimize", str(root)], settings=settings) == EXIT_PARTIAL
        assert output_json(capsys)["failed"][0]["file"] == "42/broken.png"

    def test_optimize_missing_root(self, tmp_path, settings, capsys):
        assert main(["optimize", str(tmp_path / "missing")], settings=settings) == EXIT_FATAL
        assert "error" in output_json(capsys)

    def test_optimize_invalid_quality(self, root, settings, capsys):
        assert main(["optimize", str(root), "--quality", "0"], settings=settings) == EXIT_FATAL
        assert "error" in output_json(capsys)
