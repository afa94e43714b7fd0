"""
Node side iSCSI attachment.

A staged volume is recorded only by two files in its staging directory:

    <staging>/iscsi     the fully qualified target name
    <staging>/device    symlink to the kernel device of LUN 0

so unstaging works from the staging directory alone, also after a restart of the plugin.
"""

import os
import time
import threading
from contextlib import ExitStack

from plumbum import local
from easypy.resilience import retrying, resilient
from easypy.timing import Timer

from .logging import logger
from .exceptions import CommandFailed, DeviceTimeout
from .utils import run_command, get_mount


# iscsiadm exit codes
ISCSI_ERR_IDBM = 6
ISCSI_ERR_SESS_EXISTS = 15
ISCSI_ERR_NO_OBJS_FOUND = 21

# blkid -p exit code when no signature is found
BLKID_NOT_FOUND = 2

SUPPORTED_FS_TYPES = {"ext3", "ext4", "xfs"}
DEFAULT_FS_TYPE = "ext4"

TARGET_MARKER = "iscsi"
DEVICE_MARKER = "device"


class IscsiDatabaseBusy(CommandFailed):
    template = "iscsiadm could not access the node database (exit code {retcode})"


class IscsiAdm:
    """
    The local open-iscsi node database is a single mutable resource,
    so all iscsiadm invocations of this process go through one lock.
    """

    def __init__(self):
        self._lock = threading.Lock()

    def __call__(self, *args, ok_codes=(0,), hide_args=False):
        with self._lock:
            return self._run(*args, ok_codes=ok_codes, hide_args=hide_args)

    @retrying.debug(times=3, acceptable=IscsiDatabaseBusy, sleep=0.1)
    def _run(self, *args, ok_codes, hide_args):
        try:
            return run_command("iscsiadm", *args, ok_codes=ok_codes, hide_args=hide_args)
        except CommandFailed as exc:
            if exc.retcode == ISCSI_ERR_IDBM:
                raise IscsiDatabaseBusy(cmd="iscsiadm", retcode=exc.retcode, stderr=exc.stderr)
            raise


class IscsiSessionManager:

    SYSFS_BLOCK = local.path("/sys/class/block")
    BY_PATH = local.path("/dev/disk/by-path")

    def __init__(self, device_wait_timeout=5, poll_interval=0.01):
        self.iscsiadm = IscsiAdm()
        self.device_wait_timeout = device_wait_timeout
        self.poll_interval = poll_interval

    def device_path(self, iscsi):
        """The device the kernel exposes once a session to LUN 0 of the target is established."""
        return self.BY_PATH / f"ip-{iscsi.portal_with_port}-iscsi-{iscsi.target}-lun-0"

    # ----------------------------
    # iscsiadm node records and sessions
    def add_node(self, iscsi):
        self.iscsiadm("-m", "node", "-T", iscsi.target, "-p", iscsi.portal_with_port, "-o", "new")

        settings = [
            ("node.startup", "manual"),
            # queue I/O while the session is down instead of failing it
            ("node.session.timeo.replacement_timeout", "-1"),
        ]
        if iscsi.in_auth:
            settings += [
                ("node.session.auth.authmethod", "CHAP"),
                ("node.session.auth.username", iscsi.in_auth.username),
                ("node.session.auth.password", iscsi.in_auth.password),
            ]
        if iscsi.out_auth:
            settings += [
                ("node.session.auth.username_in", iscsi.out_auth.username),
                ("node.session.auth.password_in", iscsi.out_auth.password),
            ]
        for name, value in settings:
            self.iscsiadm(
                "-m", "node", "-T", iscsi.target, "-o", "update", "-n", name, "-v", value,
                hide_args=name.startswith("node.session.auth.password"),
            )

    def login(self, target):
        self.iscsiadm("-m", "node", "-T", target, "--login", ok_codes=(0, ISCSI_ERR_SESS_EXISTS))

    def logout(self, target):
        self.iscsiadm("-m", "node", "-T", target, "--logout", ok_codes=(0, ISCSI_ERR_NO_OBJS_FOUND))

    def delete_node(self, target):
        self.iscsiadm("-m", "node", "-T", target, "-o", "delete", ok_codes=(0, ISCSI_ERR_NO_OBJS_FOUND))

    def wait_for_device(self, device):
        timer = Timer(expiration=self.device_wait_timeout)
        while not os.path.exists(device):
            if timer.expired:
                raise DeviceTimeout(device=device, timeout=self.device_wait_timeout)
            time.sleep(self.poll_interval)
        logger.info(f"Device {device} is available")

    # ----------------------------
    # filesystem
    def ensure_filesystem(self, device, fs_type=None):
        """Format the device unless it already carries a filesystem signature."""
        if run_command("blkid", "-p", device, ok_codes=(0, BLKID_NOT_FOUND)) == 0:
            logger.info(f"{device} is already formatted")
            return
        fs_type = fs_type if fs_type in SUPPORTED_FS_TYPES else DEFAULT_FS_TYPE
        logger.info(f"Formatting {device} as {fs_type}")
        run_command(f"mkfs.{fs_type}", device)

    # ----------------------------
    # staging
    def is_staged(self, staging_path) -> bool:
        return local.path(staging_path)[TARGET_MARKER].exists()

    def staged_device(self, staging_path):
        return local.path(staging_path)[DEVICE_MARKER]

    def _compensate(self, rollback, description, func, *args):

        @resilient.error(msg=f"failed to roll back {description}")
        def compensate():
            logger.warning(f"Rolling back {description}")
            func(*args)

        rollback.callback(compensate)

    def stage(self, staging_path, iscsi, fs_type=None):
        """
        Attach the LUN and record it in the staging directory.
        `fs_type` is None for raw block volumes, which are never formatted.
        """
        staging_path = local.path(staging_path)
        if self.is_staged(staging_path):
            logger.info(f"{staging_path} is already staged")
            return

        device = self.device_path(iscsi)
        with ExitStack() as rollback:
            if not os.path.exists(device):
                self.add_node(iscsi)
                self._compensate(rollback, f"node record of {iscsi.target}", self.delete_node, iscsi.target)
                self.login(iscsi.target)
                self._compensate(rollback, f"session to {iscsi.target}", self.logout, iscsi.target)
                self.wait_for_device(device)

            if fs_type is not None:
                self.ensure_filesystem(device, fs_type or DEFAULT_FS_TYPE)

            staging_path.mkdir()
            device_marker = staging_path[DEVICE_MARKER]
            if os.path.lexists(device_marker):
                os.remove(device_marker)
            os.symlink(os.path.realpath(device), device_marker)
            self._compensate(rollback, f"{device_marker}", os.remove, device_marker)
            # the target marker is the commit point of staging
            staging_path[TARGET_MARKER].write(iscsi.target, encoding="utf-8")
            rollback.pop_all()

        logger.info(f"Staged {iscsi.target} at {staging_path}")

    def unstage(self, staging_path):
        staging_path = local.path(staging_path)
        target_marker = staging_path[TARGET_MARKER]
        if not target_marker.exists():
            logger.info(f"{staging_path} is not staged")
            return

        target = target_marker.read(encoding="utf-8").strip()
        self.logout(target)
        self.delete_node(target)
        for marker in (staging_path[DEVICE_MARKER], target_marker):
            if os.path.lexists(marker):
                os.remove(marker)
        logger.info(f"Unstaged {target} from {staging_path}")

    # ----------------------------
    # expansion
    def rescan(self, device):
        rescan = self.SYSFS_BLOCK / os.path.basename(device) / "device" / "rescan"
        logger.info(f"Rescanning {device}")
        with open(rescan, "w") as f:
            f.write("1")

    def expand(self, staging_path, volume_path):
        """Pick up the new size of the LUN and grow a mounted filesystem online. Returns the device."""
        device = os.path.realpath(self.staged_device(staging_path))
        self.rescan(device)

        if not os.path.ismount(volume_path):
            logger.info(f"{volume_path} is not mounted, nothing to resize")
            return device

        fs_type = mount.fstype if (mount := get_mount(volume_path)) else None
        if fs_type in ("ext2", "ext3", "ext4"):
            run_command("resize2fs", device)
        elif fs_type == "xfs":
            run_command("xfs_growfs", volume_path)
        else:
            logger.warning(f"Cannot resize {fs_type or 'unknown'} filesystem on {device}")
        return device
