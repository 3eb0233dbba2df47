import os
import stat

from plumbum import cmd, local, ProcessExecutionError

from .exceptions import MountFailed, UnmountFailed, FormatFailed, ResizeFailed
from .logging import logger
from .utils import get_mount

EXT_FILESYSTEMS = ("ext2", "ext3", "ext4")


class Mounter:
    """Block device and mount helpers of the node plugin, backed by the host's tools"""

    def is_mount_point(self, path):
        return get_mount(str(path)) is not None

    def device_of(self, path):
        """The source device of the mount at `path` (None if not mounted)"""
        found = get_mount(str(path))
        return found.device if found else None

    def path_exists(self, path):
        return local.path(path).exists()

    def make_dir(self, path):
        local.path(path).mkdir()

    def make_file(self, path):
        path = local.path(path)
        path.dirname.mkdir()
        if not path.exists():
            path.touch()

    def mount(self, src, tgt, fs_type=None, options=()):
        executable = cmd.mount
        if fs_type:
            executable = executable["-t", fs_type]
        options = [o for o in options if o]
        if options:
            executable = executable["-o", ",".join(options)]
        try:
            executable["-v", src, tgt] & logger.pipe_info("mount >>")
        except ProcessExecutionError as exc:
            raise MountFailed(detail=exc.stderr, src=src, tgt=tgt, mount_options=options)

    def bind_mount(self, src, tgt, readonly=False):
        self.mount(src, tgt, options=["bind", "ro"] if readonly else ["bind"])

    def unmount(self, path):
        try:
            cmd.umount[str(path)] & logger.pipe_info("umount >>")
        except ProcessExecutionError as exc:
            if "not mounted" not in exc.stderr:
                raise UnmountFailed(detail=exc.stderr, path=str(path))
            logger.info(f"umount failed - {path} is not mounted (race?)")

    def cleanup_mount_point(self, path):
        """Unmount `path` if mounted and remove it; a missing path is not an error"""
        path = local.path(path)
        if not path.exists():
            logger.info(f"{path} does not exist - no need to clean up")
            return
        if self.is_mount_point(path):
            self.unmount(path)
        if path.is_dir():
            os.rmdir(path)  # never rmtree a former mount point
        else:
            os.remove(path)
        logger.info(f"{path} removed")

    def get_fs_type(self, device):
        """Filesystem on `device`, empty string if unformatted"""
        retcode, stdout, _ = cmd.blkid["-p", "-s", "TYPE", "-o", "value", device].run(retcode=(0, 2))
        return stdout.strip() if retcode == 0 else ""

    def format(self, device, fs_type):
        args = ["-F", "-m0"] if fs_type in EXT_FILESYSTEMS else []
        try:
            local[f"mkfs.{fs_type}"][(*args, device)] & logger.pipe_info("mkfs >>")
        except ProcessExecutionError as exc:
            raise FormatFailed(detail=exc.stderr, device=device, fs_type=fs_type)

    def format_and_mount(self, device, tgt, fs_type, options=()):
        existing = self.get_fs_type(device)
        if not existing:
            logger.info(f"{device} is not formatted, creating {fs_type}")
            self.format(device, fs_type)
        elif existing != fs_type:
            logger.warning(f"{device} is already formatted as {existing}, requested {fs_type}")
            fs_type = existing
        self.mount(device, tgt, fs_type=fs_type, options=options)

    def resize_fs(self, device, mount_path):
        fs_type = self.get_fs_type(device)
        try:
            if fs_type in EXT_FILESYSTEMS:
                cmd.resize2fs[device] & logger.pipe_info("resize2fs >>")
            elif fs_type == "xfs":
                local["xfs_growfs"]["-d", str(mount_path)] & logger.pipe_info("xfs_growfs >>")
            else:
                raise ResizeFailed(device=device, detail=f"unsupported filesystem {fs_type!r}")
        except ProcessExecutionError as exc:
            raise ResizeFailed(device=device, detail=exc.stderr)

    def block_size(self, device):
        return int(cmd.blockdev["--getsize64", device]().strip())

    def rescan(self):
        cmd.udevadm["trigger"] & logger.pipe_info("udevadm >>")

    def stats(self, path):
        return os.statvfs(path)

    def is_block_device(self, path):
        return stat.S_ISBLK(os.stat(path).st_mode)
