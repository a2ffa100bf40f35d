"""Tests for vml.registry module."""

from __future__ import annotations

import pytest

from vml.exceptions import AlreadyExistsError, ConfigError, NotFoundError
from vml.models import Settings
from vml.registry import validate_name


class TestValidateName:
    @pytest.mark.parametrize("name", ["web", "db.prod", "a_b-c", "vm1"])
    def test_valid(self, name):
        assert validate_name(name) == name

    @pytest.mark.parametrize("name", ["", ".hidden", "-x", "a/b", "a b", "../etc"])
    def test_invalid(self, name):
        with pytest.raises(ConfigError, match="Invalid VM name"):
            validate_name(name)


class TestDescriptor:
    def test_paths_are_inside_directory(self, make_vm):
        vm = make_vm("web")
        assert vm.disk.name == "web.img"
        assert vm.seed.name == "web-seed.img"
        for path in (vm.monitor_socket, vm.console_socket, vm.pidfile, vm.log_file, vm.seed_fingerprint):
            assert path.parent == vm.directory

    def test_config_reads_file_on_every_access(self, make_vm):
        vm = make_vm("web", cpus=2)
        assert vm.config.cpus == 2
        vm.config_file.write_text("cpus = 4\n")
        assert vm.config.cpus == 4

    def test_overrides_take_precedence(self, registry, make_vm):
        make_vm("web", cpus=2, memory="2G")
        vm = registry.get("web", Settings(cpus=8))
        assert vm.config.cpus == 8
        assert vm.config.memory_mb == 2048

    def test_registry_defaults_apply(self, registry, make_vm):
        registry.defaults = Settings(memory="3G")
        vm = make_vm("web")
        assert vm.config.memory_mb == 3072

    def test_config_error_names_vm(self, make_vm):
        vm = make_vm("web")
        vm.config_file.write_text("cpus = 0\n")
        with pytest.raises(ConfigError, match="VM 'web'"):
            vm.config

    def test_folded_name(self, make_vm):
        assert make_vm("db.prod").folded_name == "db"


class TestRegistry:
    def test_create_and_get(self, registry):
        vm = registry.create_directory("web", Settings(image="debian-12"))
        assert vm.config_file.read_text() == 'image = "debian-12"\n'
        assert registry.get("web").directory == vm.directory
        assert registry.exists("web")

    def test_create_twice(self, registry, make_vm):
        make_vm("web")
        with pytest.raises(AlreadyExistsError):
            registry.create_directory("web")

    def test_get_missing(self, registry):
        with pytest.raises(NotFoundError, match="not found"):
            registry.get("ghost")

    @pytest.mark.parametrize("name", ["bad name", "../escape", ""])
    def test_get_invalid_name_is_not_found(self, registry, name):
        with pytest.raises(NotFoundError, match="Invalid VM name"):
            registry.get(name)

    def test_directory_without_marker_is_not_a_vm(self, registry):
        (registry.vms_dir / "junk").mkdir(parents=True)
        assert not registry.exists("junk")
        assert registry.names() == []
        with pytest.raises(NotFoundError):
            registry.get("junk")

    def test_listing_is_restartable_and_rescans(self, registry, make_vm):
        make_vm("a")
        listing = registry.list()
        assert [vm.name for vm in listing] == ["a"]
        make_vm("b")
        assert sorted(vm.name for vm in listing) == ["a", "b"]
        assert sorted(vm.name for vm in listing) == ["a", "b"]

    def test_listing_filters_names(self, registry, make_vm):
        for name in ("a", "b", "c"):
            make_vm(name)
        assert sorted(vm.name for vm in registry.list(["a", "c", "zzz"])) == ["a", "c"]

    def test_listing_of_missing_root(self, registry):
        assert list(registry.list()) == []

    def test_remove(self, registry, make_vm):
        vm = make_vm("web")
        vm.disk.write_bytes(b"disk")
        registry.remove("web")
        assert not vm.directory.exists()
        with pytest.raises(NotFoundError):
            registry.remove("web")
