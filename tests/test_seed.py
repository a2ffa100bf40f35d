"""Tests for vml.seed module."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from vml.config import resolve
from vml.exceptions import SeedBuildError
from vml.models import Settings
from vml.seed import SeedBuilder, collect_ssh_keys, render_meta_data, render_user_data


def _fake_iso_tool(cmd, **kwargs):
    output = Path(cmd[cmd.index("-output") + 1])
    inputs = [Path(arg) for arg in cmd[-2:]]
    output.write_bytes(b"".join(path.read_bytes() for path in inputs))
    return subprocess.CompletedProcess(cmd, 0, "", "")


@pytest.fixture
def fake_iso():
    with (
        patch("vml.seed.find_iso_tool", return_value="/usr/bin/genisoimage"),
        patch("vml.seed.run", side_effect=_fake_iso_tool) as mock_run,
    ):
        yield mock_run


class TestCollectKeys:
    def test_literal_and_file(self, tmp_path, ssh_key):
        key_file = tmp_path / "id.pub"
        key_file.write_text("# comment\nssh-rsa AAAAB3Nza file@host\n\n")
        keys = collect_ssh_keys([ssh_key, str(key_file), str(tmp_path / "missing.pub")])
        assert keys == [ssh_key, "ssh-rsa AAAAB3Nza file@host"]

    def test_duplicates_removed(self, ssh_key):
        assert collect_ssh_keys([ssh_key, ssh_key]) == [ssh_key]


class TestRender:
    def test_meta_data(self):
        cfg = resolve([Settings(hostname="box")], "web")
        assert render_meta_data(cfg) == "instance-id: iid-web\nlocal-hostname: box\n"

    def test_user_data_with_keys(self, ssh_key):
        cfg = resolve([Settings(ssh_keys=[ssh_key], commands=["touch /ok"], ssh_user="alice")], "web")
        text = render_user_data(cfg)
        assert text.startswith("#cloud-config\n")
        data = yaml.safe_load(text)
        user = data["users"][0]
        assert user["name"] == "alice"
        assert user["ssh_authorized_keys"] == [ssh_key]
        assert user["lock_passwd"] is True
        assert data["ssh_pwauth"] is False
        assert data["runcmd"] == ["touch /ok"]
        assert "passwd" not in user

    def test_user_data_with_password(self):
        cfg = resolve([Settings(login="password", password="secret")], "web")
        first = yaml.safe_load(render_user_data(cfg))
        second = yaml.safe_load(render_user_data(cfg))
        assert first["users"][0]["passwd"].startswith("$2b$")
        assert first == second
        assert first["ssh_pwauth"] is True
        assert "secret" not in render_user_data(cfg)

    def test_missing_keys(self, tmp_path):
        cfg = resolve([Settings(ssh_keys=[str(tmp_path / "none.pub")])], "web")
        with pytest.raises(SeedBuildError, match="SSH public key"):
            render_user_data(cfg)

    def test_missing_password(self, ssh_key):
        cfg = resolve([Settings(login="both", ssh_keys=[ssh_key])], "web")
        with pytest.raises(SeedBuildError, match="needs a password"):
            render_user_data(cfg)


class TestSeedBuilder:
    def test_build_writes_seed(self, make_vm, fake_iso):
        vm = make_vm("web")
        path = SeedBuilder().build(vm)
        assert path == vm.seed
        assert b"instance-id: iid-web" in vm.seed.read_bytes()
        assert vm.seed_fingerprint.is_file()
        cmd = fake_iso.call_args.args[0]
        assert cmd[cmd.index("-volid") + 1] == "cidata"
        assert fake_iso.call_args.kwargs["env"]["SOURCE_DATE_EPOCH"] == "0"

    def test_unchanged_config_keeps_existing_seed(self, make_vm, fake_iso):
        vm = make_vm("web")
        builder = SeedBuilder()
        builder.build(vm)
        before = vm.seed.read_bytes()
        mtime = vm.seed.stat().st_mtime_ns
        builder.build(vm)
        assert fake_iso.call_count == 1
        assert vm.seed.read_bytes() == before
        assert vm.seed.stat().st_mtime_ns == mtime

    def test_changed_config_rebuilds(self, make_vm, fake_iso):
        vm = make_vm("web")
        builder = SeedBuilder()
        builder.build(vm)
        vm.config_file.write_text('commands = ["echo changed"]\n')
        builder.build(vm)
        assert fake_iso.call_count == 2
        assert b"echo changed" in vm.seed.read_bytes()

    def test_same_inputs_same_fingerprint(self):
        docs = {"meta-data": "a", "user-data": "b"}
        assert SeedBuilder.fingerprint(docs) == SeedBuilder.fingerprint(dict(reversed(docs.items())))
        assert SeedBuilder.fingerprint(docs) != SeedBuilder.fingerprint({"meta-data": "a", "user-data": "c"})

    def test_no_iso_tool(self, make_vm):
        vm = make_vm("web")
        with patch("vml.seed.find_iso_tool", return_value=None):
            with pytest.raises(SeedBuildError, match="genisoimage"):
                SeedBuilder().build(vm)
        assert not vm.seed.exists()

    def test_tool_failure_leaves_no_partial_seed(self, make_vm):
        vm = make_vm("web")
        error = subprocess.CalledProcessError(1, ["genisoimage"], stderr="disk full")
        with (
            patch("vml.seed.find_iso_tool", return_value="/usr/bin/genisoimage"),
            patch("vml.seed.run", side_effect=error),
        ):
            with pytest.raises(SeedBuildError, match="disk full"):
                SeedBuilder().build(vm)
        assert not vm.seed.exists()
        assert not vm.seed_fingerprint.exists()

    def test_missing_key_fails_before_tool_runs(self, registry, fake_iso, tmp_path):
        registry.defaults = Settings()
        vm = registry.create_directory("web", Settings(ssh_keys=[str(tmp_path / "none.pub")]))
        with pytest.raises(SeedBuildError):
            SeedBuilder().build(vm)
        fake_iso.assert_not_called()
