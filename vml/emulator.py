"""QEMU command line construction."""

from __future__ import annotations

from typing import List, Optional

from vml.models import VMConfig
from vml.registry import VMDescriptor
from vml.utils import kvm_available, log


def _accel_args(cfg: VMConfig) -> List[str]:
    if cfg.kvm and kvm_available():
        return ["-enable-kvm", "-machine", "q35,accel=kvm", "-cpu", "host"]
    if cfg.kvm:
        log("WARN", "KVM not available (/dev/kvm); using TCG, expect a slow guest")
    return ["-machine", "q35", "-accel", "tcg,thread=multi", "-cpu", "max"]


def _network_args(cfg: VMConfig) -> List[str]:
    if cfg.network == "none":
        return ["-nic", "none"]
    if cfg.network == "bridge":
        netdev = f"bridge,id=net0,br={cfg.bridge}"
    else:
        netdev = f"user,id=net0,hostfwd=tcp:{cfg.ssh_host}:{cfg.ssh_port}-:22"
    return [
        "-netdev",
        netdev,
        "-device",
        f"virtio-net-pci,netdev=net0,mac={cfg.mac}",
    ]


def build_command(vm: VMDescriptor, cfg: VMConfig, seed_attached: Optional[bool] = None) -> List[str]:
    """Full emulator argv for ``vm``: disk, seed, network, resources and both sockets."""
    if seed_attached is None:
        seed_attached = cfg.cloud_init and vm.seed.is_file()

    args: List[str] = [cfg.qemu_binary, "-name", f"{vm.name},process=vml-{vm.name}"]
    args += _accel_args(cfg)
    args += [
        "-smp",
        str(cfg.cpus),
        "-m",
        f"{cfg.memory_mb}M",
        "-drive",
        f"file={vm.disk},format=qcow2,if=virtio",
    ]
    if seed_attached:
        args += ["-drive", f"file={vm.seed},format=raw,if=virtio,readonly=on"]
    args += _network_args(cfg)
    args += [
        "-device",
        "virtio-rng-pci",
        "-qmp",
        f"unix:{vm.monitor_socket},server=on,wait=off",
        "-chardev",
        f"socket,id=console0,path={vm.console_socket},server=on,wait=off",
        "-serial",
        "chardev:console0",
        "-pidfile",
        str(vm.pidfile),
        "-display",
        cfg.display,
    ]
    args += cfg.extra_args
    return args
