"""
Tests for the homelab-provision command line.
"""

import pytest
import yaml

pytest.importorskip("kubernetes")

from homelab.main import main

GOOD = "image: nginx:1.25\ndomain: blog.example.com\nport: 8080\n"


@pytest.mark.unit
class TestCli:
    """Offline rendering through the CLI entry point."""

    def test_renders_fleet_to_file(self, tmp_path, capsys):
        fleet = tmp_path / "fleet"
        fleet.mkdir()
        (fleet / "blog.yaml").write_text(GOOD)
        output = tmp_path / "out.yaml"

        code = main(["--fleet", str(fleet), "--offline", "--output", str(output)])

        assert code == 0
        kinds = [doc["kind"] for doc in yaml.safe_load_all(output.read_text())]
        assert "Deployment" in kinds
        assert "HTTPRoute" in kinds
        err = capsys.readouterr().err
        assert "blog.example.com -> tunnel-abc.example.net" in err

    def test_renders_to_stdout(self, tmp_path, capsys):
        (tmp_path / "blog.yaml").write_text(GOOD)

        code = main(["--fleet", str(tmp_path), "--offline"])

        assert code == 0
        assert "kind: Deployment" in capsys.readouterr().out

    def test_failed_workload_exit_code(self, tmp_path, capsys):
        (tmp_path / "blog.yaml").write_text(GOOD)
        (tmp_path / "broken.yaml").write_text("image: nginx\nport: 80\n")

        code = main(["--fleet", str(tmp_path), "--offline"])

        assert code == 1
        assert "FAILED broken: MalformedDescriptor" in capsys.readouterr().err

    def test_missing_fleet_path(self, tmp_path):
        assert main(["--fleet", str(tmp_path / "missing"), "--offline"]) == 2

    def test_apply_and_offline_conflict(self, tmp_path):
        with pytest.raises(SystemExit):
            main(["--fleet", str(tmp_path), "--apply", "--offline"])
