"""Tests for vml.cli module."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from vml.cli import build_parser, main, split_user
from vml.exceptions import NotRunningError
from vml.models import CreateExistsAction, Settings
from vml.supervisor import VMState


@pytest.fixture
def config_dir(tmp_path):
    path = tmp_path / "config"
    path.mkdir()
    (path / "config.toml").write_text(
        f'ssh-keys = ["ssh-ed25519 AAAAtest test@vml"]\n'
        f"[vml]\n"
        f'vms-dir = "{tmp_path / "vms"}"\n'
        f'images-dir = "{tmp_path / "images"}"\n'
    )
    return path


def _vml(config_dir, *args):
    return main(["--config-dir", str(config_dir), *args])


class TestSplitUser:
    @pytest.mark.parametrize(
        "target,expected",
        [("web", (None, "web")), ("root@web", ("root", "web")), ("@web", (None, "web")), ("a@b@web", ("a@b", "web"))],
    )
    def test_split(self, target, expected):
        assert split_user(target) == expected


class TestParser:
    def test_ssh_remote_command(self):
        args = build_parser().parse_args(["ssh", "-o", "ForwardX11=yes", "root@web", "ls", "-la"])
        assert args.target == "root@web"
        assert args.options == ["ForwardX11=yes"]
        assert args.command == ["ls", "-la"]

    def test_create_defaults(self):
        args = build_parser().parse_args(["create", "web", "-i", "debian-12"])
        assert args.exists == "fail"
        assert args.memory is None

    def test_ssh_forwarding_flags(self):
        args = build_parser().parse_args(["ssh", "-A", "-Y", "web"])
        assert args.flags == ["-A", "-Y"]

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestMain:
    def test_installs_config_on_first_use(self, tmp_path, capsys):
        config_dir = tmp_path / "fresh"
        with patch("vml.config.SYSTEM_CONFIG_DIR", tmp_path / "etc"):
            with patch("vml.cli.Orchestrator.list", return_value=[]):
                assert _vml(config_dir, "list") == 0
        assert (config_dir / "config.toml").is_file()

    def test_list_empty(self, config_dir, capsys):
        assert _vml(config_dir, "list") == 0
        assert "No VMs found" in capsys.readouterr().out

    def test_show_unknown_vm(self, config_dir, capsys):
        assert _vml(config_dir, "show", "ghost") == 1
        err = capsys.readouterr().err
        assert "[ERROR]" in err
        assert "ghost" in err

    def test_image_available(self, config_dir, capsys):
        assert _vml(config_dir, "image", "available") == 0
        assert "debian-12" in capsys.readouterr().out

    def test_image_list_empty(self, config_dir, capsys):
        assert _vml(config_dir, "image", "list") == 0
        assert "No images cached" in capsys.readouterr().out

    def test_image_rm_missing(self, config_dir):
        assert _vml(config_dir, "image", "rm", "debian-12") == 1

    def test_create_passes_settings(self, config_dir):
        with patch("vml.cli.Orchestrator.create") as mock_create:
            assert _vml(config_dir, "create", "web", "-i", "debian-12", "--cpus", "2", "--exists", "ignore") == 0
        args, kwargs = mock_create.call_args
        assert args == ("web",)
        assert kwargs["image"] == "debian-12"
        assert kwargs["exists"] == CreateExistsAction.IGNORE
        assert kwargs["overrides"] == Settings(cpus=2)

    def test_ssh_user_at_name(self, config_dir):
        with patch("vml.cli.Orchestrator.ssh", return_value=0) as mock_ssh:
            assert _vml(config_dir, "ssh", "root@web", "uptime") == 0
        args, kwargs = mock_ssh.call_args
        assert args == ("web",)
        assert kwargs["user"] == "root"
        assert kwargs["command"] == ["uptime"]

    def test_ssh_exit_status_passes_through(self, config_dir):
        with patch("vml.cli.Orchestrator.ssh", return_value=255):
            assert _vml(config_dir, "ssh", "web") == 255

    def test_errors_return_one(self, config_dir, capsys):
        with patch("vml.cli.Orchestrator.stop", side_effect=NotRunningError("VM 'web' is not running")):
            assert _vml(config_dir, "stop", "web") == 1
        assert "is not running" in capsys.readouterr().err

    def test_list_prints_states(self, config_dir, capsys):
        from vml.registry import VMDescriptor

        rows = [
            (VMDescriptor("db.prod", config_dir / "db.prod"), VMState.RUNNING),
            (VMDescriptor("db.test", config_dir / "db.test"), VMState.STOPPED),
        ]
        with patch("vml.cli.Orchestrator.list", return_value=rows):
            assert _vml(config_dir, "list") == 0
            out = capsys.readouterr().out
            assert "db.prod" in out and "running" in out
            assert _vml(config_dir, "list", "--fold") == 0
            assert capsys.readouterr().out == "db\n"

    def test_invalid_config(self, config_dir, capsys):
        (config_dir / "config.toml").write_text("cpus = 'many'\n")
        assert _vml(config_dir, "list") == 1
        assert "cpus" in capsys.readouterr().err

    def test_run_existing_vm_applies_settings_once(self, config_dir):
        with (
            patch("vml.cli.Orchestrator.create") as mock_create,
            patch("vml.cli.Orchestrator.run") as mock_run,
            patch("vml.registry.VMRegistry.exists", return_value=True),
        ):
            assert _vml(config_dir, "run", "web", "--memory", "4G") == 0
        mock_create.assert_not_called()
        assert mock_run.call_args.kwargs["overrides"] == Settings(memory="4G")

    def test_image_store(self, config_dir):
        with patch("vml.cli.Orchestrator.store_image") as mock_store:
            assert _vml(config_dir, "image", "store", "web", "-i", "golden", "--force") == 0
        mock_store.assert_called_once_with("web", image="golden", force=True)
