import sys
import inspect
from pathlib import Path
from typing import List, Optional, Any, Callable
from unittest.mock import patch, MagicMock

import pytest
from easypy.aliasing import aliases
from easypy.bunch import Bunch

ROOT = Path(__file__).resolve().parents[1]
# Extend python import path to get ibm_vpc_block_csi package from here
sys.path += [ROOT.as_posix()]

from ibm_vpc_block_csi.server import Identity, Controller, Node
from ibm_vpc_block_csi.configuration import Config
from ibm_vpc_block_csi.driver import Driver
from ibm_vpc_block_csi.vpc_client import FakeVpcClient
import ibm_vpc_block_csi.csi_types as types

GiB = 1 << 30

# Restore original methods of the servicers in order to get rid of Instrumented logging layer.
for cls in (Identity, Controller, Node):
    for name, _ in inspect.getmembers(cls.__base__, inspect.isfunction):
        if name.startswith("_"):
            continue
        func = getattr(cls, name)
        setattr(cls, name, func.__wrapped__)
        # Simulate getting __wrapped__ context from function. This logic is used in csi driver so tests should also
        # support this.
        setattr(func, "__wrapped__", func.__wrapped__)


# ----------------------------------------------------------------------------------------------------------------------
# Helper classes and decorators
# ----------------------------------------------------------------------------------------------------------------------


@aliases("mock", static=False)
class FakeMethod:
    """
    Method of FakeMounter that enhances all methods of decorated class with
    MagicMock capabilities eg: 'assert_called', 'call_args', 'assert_called_with' etc.
    """

    def __init__(self, side_effect: Optional[Callable] = None, return_value: Optional = None):
        # Mock to store all execution calls
        self.mock = MagicMock()
        self.side_effect = side_effect
        self.return_value = return_value

    def __call__(self, *args, **kwargs) -> Any:
        self.mock(*args, **kwargs)
        if self.side_effect is not None:
            return self.side_effect(*args, **kwargs)
        return self.return_value


class FakeMounter:
    """Simulate the host: existing paths, the mount table and the formatted devices"""

    def __init__(self, paths=(), mounts=None, block_devices=(), sizes=None):
        """
        Args:
            paths: Paths that exist on the host (device nodes included).
            mounts: Mount table, target path -> source.
            block_devices: Paths that are block device nodes.
            sizes: Size in bytes of block devices, 10GiB when not listed.
        """
        self.paths = set(paths)
        self.mounts = dict(mounts or {})
        self.block_devices = set(block_devices)
        self.sizes = dict(sizes or {})
        self.formatted = {}

        # Methods declaration
        self.make_dir = FakeMethod(side_effect=self.paths.add)
        self.make_file = FakeMethod(side_effect=self.paths.add)
        self.mount = FakeMethod(side_effect=self._mount)
        self.bind_mount = FakeMethod(side_effect=lambda src, tgt, readonly=False: self._mount(src, tgt))
        self.format_and_mount = FakeMethod(side_effect=self._format_and_mount)
        self.cleanup_mount_point = FakeMethod(side_effect=self._cleanup)
        self.resize_fs = FakeMethod()
        self.rescan = FakeMethod()

    def _mount(self, src, tgt, fs_type=None, options=()):
        self.mounts[tgt] = src
        self.paths.add(tgt)

    def _format_and_mount(self, device, tgt, fs_type, options=()):
        self.formatted.setdefault(device, fs_type)
        self._mount(device, tgt, fs_type, options)

    def _cleanup(self, path):
        self.mounts.pop(path, None)
        self.paths.discard(path)

    def is_mount_point(self, path):
        return path in self.mounts

    def device_of(self, path):
        return self.mounts.get(path)

    def path_exists(self, path):
        return path in self.paths

    def is_block_device(self, path):
        return path in self.block_devices

    def block_size(self, device):
        return self.sizes.get(device, 10 * GiB)

    def stats(self, path):
        return Bunch(
            f_frsize=4096, f_blocks=1000, f_bfree=400, f_bavail=300,
            f_files=100, f_ffree=60, f_favail=50,
        )


# ----------------------------------------------------------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def no_sleep():
    """Retry gaps and device settling never really sleep in tests"""
    with patch("ibm_vpc_block_csi.retry.sleep") as retry_sleep, patch("ibm_vpc_block_csi.server.sleep"):
        yield retry_sleep


@pytest.fixture
def config(monkeypatch, tmp_path):
    monkeypatch.setenv("KUBE_NODE_NAME", "node-1")
    monkeypatch.setenv("NODE_WORKER_ID", "kube-worker-1")
    monkeypatch.setenv("NODE_REGION", "us-south")
    monkeypatch.setenv("NODE_ZONE", "us-south-1")
    monkeypatch.setenv("IBMCLOUD_ACCOUNT_ID", "a1b2c3")
    monkeypatch.setenv("CLUSTER_INFO_PATH", str(tmp_path / "cluster-config.json"))
    (tmp_path / "cluster-config.json").write_text('{"cluster_id": "cluster-1"}')
    return Config()


@pytest.fixture
def backend():
    return FakeVpcClient(account_id="a1b2c3")


@pytest.fixture
def mounter():
    return FakeMounter()


@pytest.fixture
def driver(config, backend, mounter):
    return Driver(config, client=backend, mounter=mounter, cpu_count=8)


@pytest.fixture
def controller(driver):
    return Controller(driver)


@pytest.fixture
def node(driver):
    return Node(driver)


@pytest.fixture
def volume_capabilities():
    """Factory for building VolumeCapabilities"""

    def __wrapped(
            fs_type: str = "ext4",
            mount_flags: List[str] = (),
            mode: types.AccessModeType = types.AccessModeType.SINGLE_NODE_WRITER,
            block: bool = False,
    ) -> List[types.VolumeCapability]:
        if block:
            return [
                types.VolumeCapability(
                    block=types.BlockVolume(), access_mode=types.AccessMode(mode=mode),
                )
            ]
        return [
            types.VolumeCapability(
                mount=types.MountVolume(fs_type=fs_type, mount_flags=list(mount_flags)),
                access_mode=types.AccessMode(mode=mode),
            )
        ]

    return __wrapped


@pytest.fixture
def create_volume(controller, volume_capabilities):
    """Create a volume through the controller and return it"""

    def __wrapped(name="pvc-1", gib=20, **parameters):
        parameters = dict(dict(profile="general-purpose", zone="us-south-1", region="us-south"), **parameters)
        resp = controller.CreateVolume(
            name=name,
            capacity_range=types.CapacityRange(required_bytes=gib * GiB, limit_bytes=gib * GiB),
            volume_capabilities=volume_capabilities(),
            parameters=parameters,
            request_id="req-create",
        )
        return resp.volume

    return __wrapped
