from unittest.mock import MagicMock, patch

import pytest
from plumbum import ProcessExecutionError

from ibm_vpc_block_csi.exceptions import UnmountFailed, ResizeFailed
from ibm_vpc_block_csi.mounter import Mounter


@pytest.fixture
def mounter():
    return Mounter()


def test_make_dir_and_cleanup(mounter, tmp_path):
    target = str(tmp_path / "pods" / "mount")

    mounter.make_dir(target)
    assert mounter.path_exists(target)
    assert not mounter.is_mount_point(target)

    mounter.cleanup_mount_point(target)
    assert not mounter.path_exists(target)
    # nothing left to clean
    mounter.cleanup_mount_point(target)


def test_make_file(mounter, tmp_path):
    target = str(tmp_path / "block" / "pvc-1")

    mounter.make_file(target)
    mounter.make_file(target)

    assert mounter.path_exists(target)
    assert not mounter.is_block_device(target)
    mounter.cleanup_mount_point(target)
    assert not mounter.path_exists(target)


def test_stats(mounter, tmp_path):
    stats = mounter.stats(str(tmp_path))
    assert stats.f_blocks > 0
    assert stats.f_frsize > 0


def test_unmount_not_mounted(mounter):
    umount = MagicMock()
    umount.__getitem__.return_value.__and__.side_effect = ProcessExecutionError(
        ["umount", "/mnt/x"], 32, "", "umount: /mnt/x: not mounted."
    )
    with patch("ibm_vpc_block_csi.mounter.cmd") as m_cmd:
        m_cmd.umount = umount
        mounter.unmount("/mnt/x")


def test_unmount_busy(mounter):
    umount = MagicMock()
    umount.__getitem__.return_value.__and__.side_effect = ProcessExecutionError(
        ["umount", "/mnt/x"], 32, "", "umount: /mnt/x: target is busy."
    )
    with patch("ibm_vpc_block_csi.mounter.cmd") as m_cmd:
        m_cmd.umount = umount
        with pytest.raises(UnmountFailed):
            mounter.unmount("/mnt/x")


def test_resize_unsupported_fs(mounter):
    with patch.object(Mounter, "get_fs_type", return_value="btrfs"):
        with pytest.raises(ResizeFailed):
            mounter.resize_fs("/dev/vdb", "/mnt/x")
