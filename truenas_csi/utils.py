import os
from hashlib import sha1
from base64 import b32encode
from typing import Optional, Tuple

from plumbum import local

from .logging import logger
from .exceptions import CommandFailed


MOUNT_PREFIX = "/mnt/"

# z-base-32 alphabet (human oriented base32, lowercase)
_ZBASE32 = str.maketrans(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567",
    "ybndrfg8ejkmcpqxot1uwisza345h769",
)


def hash_volume_name(name: str) -> str:
    """Deterministic, dataset-safe name for a CO volume name: z-base-32 of its SHA-1 (32 chars)."""
    return b32encode(sha1(name.encode()).digest()).decode("ascii").translate(_ZBASE32)


def mount_path(dataset: str) -> str:
    """Filesystem path on the NAS under which a dataset is mounted."""
    return f"{MOUNT_PREFIX}{dataset}"


def build_volume_id(backend: str, dataset: str) -> str:
    return f"{backend}:{mount_path(dataset)}"


def parse_volume_id(volume_id: str) -> Optional[Tuple[str, str]]:
    """Split a volume id into (backend, dataset). Return None if it is malformed."""
    backend, sep, path = (volume_id or "").partition(":")
    if not (backend and sep and path.startswith(MOUNT_PREFIX)):
        return None
    dataset = path[len(MOUNT_PREFIX):].strip("/")
    if not dataset or "/" not in dataset:
        return None
    return backend, dataset


def parent_dataset(dataset: str) -> str:
    return dataset.rpartition("/")[0]


def get_mount(target_path):
    import psutil
    target_path = str(target_path)
    for m in psutil.disk_partitions(all=True):
        if m.mountpoint == target_path:
            return m


def run_command(name, *args, ok_codes=(0,), hide_args=False):
    """
    Run a local tool, logging its output.
    Return the exit code if it is one of `ok_codes`, otherwise raise CommandFailed.
    """
    args = [str(a) for a in args]
    logger.info(f"$ {name} {'***' if hide_args else ' '.join(args)}")
    retcode, stdout, stderr = local[name].run(args, retcode=None)
    for line in (stdout + stderr).splitlines():
        logger.debug(f"{name} >> {line}")
    if retcode not in ok_codes:
        raise CommandFailed(cmd=name, retcode=retcode, stderr=stderr.strip())
    return retcode


def remove_path(path):
    """Remove a file, symlink or empty directory. Missing paths are ignored."""
    path = str(path)
    if os.path.isdir(path) and not os.path.islink(path):
        os.rmdir(path)  # never rmtree a path that might still hold data
    elif os.path.lexists(path):
        os.remove(path)
