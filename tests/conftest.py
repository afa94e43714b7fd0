import sys
import inspect
import itertools
from pathlib import Path
from collections import Counter
from typing import List, Optional
from unittest.mock import patch

import pytest
from easypy.bunch import Bunch

ROOT = Path(__file__).resolve().parents[1]
# Extend python import path to get truenas_csi package (and its csi.proto) from here
sys.path += [ROOT.as_posix()]

from truenas_csi.server import CsiIdentity, CsiController, CsiNode, Config
from truenas_csi.backends import load_backends
from truenas_csi.exceptions import ApiError, CommandFailed
from truenas_csi.iscsi import IscsiSessionManager, BLKID_NOT_FOUND
import truenas_csi.csi_types as types

# Restore original methods on servicers in order to get rid of Instrumented logging layer.
for cls in (CsiIdentity, CsiController, CsiNode):
    for name, _ in inspect.getmembers(cls.__base__, inspect.isfunction):
        if name.startswith("_"):
            continue
        func = getattr(cls, name)
        setattr(cls, name, func.__wrapped__)

# Load configuration
import truenas_csi.server

truenas_csi.server.CONF = Config()


BACKENDS = {
    "default": {
        "apiurl": "https://nas.local/api/v2.0",
        "apikey": "1-secret",
        "nfs": {"server": "10.0.0.1", "allowednetworks": ["10.0.0.0/24"]},
        "iscsi": {"portal": "10.0.0.1:3260", "portalid": 1},
        "configurations": {
            "default": {"dataset": "tank/k8s"},
            "retain": {"dataset": "tank/retain", "deletepolicy": "retain"},
            "sparse": {"dataset": "tank/sparse", "sparse": True},
        },
    },
}

ISCSI_BASENAME = "iqn.2005-10.org.freenas.ctl"


# ----------------------------------------------------------------------------------------------------------------------
# Helper classes
# ----------------------------------------------------------------------------------------------------------------------


def _conflict(what):
    return ApiError(response=Bunch(status_code=422, text=f"{what} already exists"))


class FakeNas:
    """
    In-memory TrueNAS, exposing the same operations as NasSession.
    `calls` counts invocations per operation; operations listed in `fail_on` raise HTTP 503.
    """

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.calls = Counter()
        self.ids = itertools.count(1)
        self.datasets = {}
        self.shares = {}
        self.extents = {}
        self.targets = {}
        self.auths = {}
        self.targetextents = {}
        self.permissions = {}

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def _call(self, operation):
        self.calls[operation] += 1
        if operation in self.fail_on:
            raise ApiError(response=Bunch(status_code=503, text=f"{operation} failed"))

    @staticmethod
    def _find(objects, **filters):
        found = [o for o in objects.values() if all(o.get(k) == v for k, v in filters.items())]
        assert len(found) <= 1
        return Bunch(found[0]) if found else None

    # datasets
    def get_dataset(self, name):
        self._call("get_dataset")
        return Bunch(self.datasets[name]) if name in self.datasets else None

    def create_dataset(self, name, type, comments, **properties):
        self._call("create_dataset")
        if name in self.datasets:
            raise _conflict(name)
        self.datasets[name] = Bunch(
            id=name, type=type, comments=comments,
            volsize=properties.get("volsize"),
            refquota=properties.get("refquota"),
            refreservation=properties.get("refreservation"),
            properties=properties,
        )
        return Bunch(self.datasets[name])

    def update_dataset(self, name, **properties):
        self._call("update_dataset")
        self.datasets[name].update(properties)

    def delete_dataset(self, name):
        self._call("delete_dataset")
        self.datasets.pop(name, None)

    def set_dataset_permission(self, name, mode):
        self._call("set_dataset_permission")
        self.permissions[name] = mode

    # nfs
    def get_nfs_share(self, comment):
        self._call("get_nfs_share")
        return self._find(self.shares, comment=comment)

    def create_nfs_share(self, **data):
        self._call("create_nfs_share")
        share = Bunch(id=next(self.ids), enabled=True, **data)
        self.shares[share.id] = share
        return Bunch(share)

    def delete_nfs_share(self, share_id):
        self._call("delete_nfs_share")
        self.shares.pop(share_id, None)

    # iscsi
    def get_iscsi_extent(self, **filters):
        self._call("get_iscsi_extent")
        return self._find(self.extents, **filters)

    def create_iscsi_extent(self, name, disk, comment, serial, pblocksize=False):
        self._call("create_iscsi_extent")
        extent = Bunch(id=next(self.ids), name=name, type="DISK", disk=disk, comment=comment, serial=serial)
        self.extents[extent.id] = extent
        return Bunch(extent)

    def delete_iscsi_extent(self, extent_id):
        self._call("delete_iscsi_extent")
        self.extents.pop(extent_id, None)

    def get_iscsi_target(self, name):
        self._call("get_iscsi_target")
        return self._find(self.targets, name=name)

    def create_iscsi_target(self, name, portal_id, auth_tag):
        self._call("create_iscsi_target")
        target = Bunch(
            id=next(self.ids), name=name,
            groups=[Bunch(portal=portal_id, authmethod="CHAP", auth=auth_tag)],
        )
        self.targets[target.id] = target
        return Bunch(target)

    def delete_iscsi_target(self, target_id):
        self._call("delete_iscsi_target")
        self.targets.pop(target_id, None)
        for association in [a for a in self.targetextents.values() if a.target == target_id]:
            self.targetextents.pop(association.id)

    def get_iscsi_auth(self, **filters):
        self._call("get_iscsi_auth")
        return self._find(self.auths, **filters)

    def get_iscsi_auth_for_target(self, target):
        self._call("get_iscsi_auth_for_target")
        return self._find(self.auths, tag=target.groups[0].auth)

    def create_iscsi_auth(self, tag, user, secret):
        self._call("create_iscsi_auth")
        auth = Bunch(id=next(self.ids), tag=tag, user=user, secret=secret, peeruser="", peersecret="")
        self.auths[auth.id] = auth
        return Bunch(auth)

    def update_iscsi_auth(self, auth_id, **data):
        self._call("update_iscsi_auth")
        self.auths[auth_id].update(data)
        return Bunch(self.auths[auth_id])

    def delete_iscsi_auth(self, auth_id):
        self._call("delete_iscsi_auth")
        self.auths.pop(auth_id, None)

    def get_iscsi_targetextent(self, target_id, extent_id):
        self._call("get_iscsi_targetextent")
        return self._find(self.targetextents, target=target_id, extent=extent_id)

    def create_iscsi_targetextent(self, target_id, extent_id, lunid=0):
        self._call("create_iscsi_targetextent")
        association = Bunch(id=next(self.ids), target=target_id, extent=extent_id, lunid=lunid)
        self.targetextents[association.id] = association
        return Bunch(association)

    def delete_iscsi_targetextent(self, association_id):
        self._call("delete_iscsi_targetextent")
        self.targetextents.pop(association_id, None)

    def get_iscsi_basename(self):
        self._call("get_iscsi_basename")
        return ISCSI_BASENAME


class FakeCommands:
    """
    Stand-in for `run_command`, recording every invocation.
    `retcodes` maps a tool (or 'iscsiadm --login' etc.) to exit codes returned by its next invocations.
    Logging in makes the LUN device appear.
    """

    DEFAULT_RETCODES = {"blkid": BLKID_NOT_FOUND}

    def __init__(self, device: Path, retcodes: Optional[dict] = None, create_device=True):
        self.device = device
        self.retcodes = {k: list(v) for k, v in (retcodes or {}).items()}
        self.create_device = create_device
        self.calls: List[tuple] = []
        self.hidden = []

    def _next_retcode(self, name, args):
        for key in [f"{name} {a}" for a in args] + [name]:
            if self.retcodes.get(key):
                return self.retcodes[key].pop(0)
        return self.DEFAULT_RETCODES.get(name, 0)

    def __call__(self, name, *args, ok_codes=(0,), hide_args=False):
        args = tuple(str(a) for a in args)
        self.calls.append((name,) + args)
        if hide_args:
            self.hidden.append((name,) + args)
        retcode = self._next_retcode(name, args)
        if retcode not in ok_codes:
            raise CommandFailed(cmd=name, retcode=retcode, stderr="")
        if name == "iscsiadm" and "--login" in args and self.create_device:
            self.device.parent.mkdir(parents=True, exist_ok=True)
            self.device.touch()
        return retcode

    def find(self, *args):
        """Invocations containing all of `args`."""
        return [c for c in self.calls if all(a in c for a in args)]


# ----------------------------------------------------------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------------------------------------------------------


@pytest.fixture
def volume_capabilities():
    """Factory for building VolumeCapabilities"""

    def __wrapped(
            mode: types.AccessModeType = types.AccessModeType.SINGLE_NODE_WRITER,
            block: bool = False,
            fs_type: str = "ext4",
            mount_flags: List[str] = (),
    ) -> List[types.VolumeCapability]:
        if block:
            return [types.VolumeCapability(block=types.BlockVolume(), access_mode=types.AccessMode(mode=mode))]
        return [
            types.VolumeCapability(
                mount=types.MountVolume(fs_type=fs_type, mount_flags=mount_flags),
                access_mode=types.AccessMode(mode=mode),
            )
        ]

    return __wrapped


@pytest.fixture
def backends():
    return load_backends(BACKENDS)


@pytest.fixture
def fake_nas():
    return FakeNas()


@pytest.fixture
def controller(backends, fake_nas):
    """Controller talking to the in-memory NAS."""
    with (
        patch.object(CsiController, "backends", backends),
        patch.object(CsiController, "_nas_session", lambda self, backend, context=None: fake_nas),
    ):
        yield CsiController()


@pytest.fixture
def iscsi_env(tmp_path, monkeypatch):
    """Session manager with by-path devices and sysfs redirected into a temporary directory."""
    by_path = tmp_path / "by-path"
    sysfs = tmp_path / "sysfs"
    by_path.mkdir()
    sysfs.mkdir()
    monkeypatch.setattr(IscsiSessionManager, "BY_PATH", by_path)
    monkeypatch.setattr(IscsiSessionManager, "SYSFS_BLOCK", sysfs)
    manager = IscsiSessionManager(device_wait_timeout=0.05, poll_interval=0.01)
    return Bunch(manager=manager, by_path=by_path, sysfs=sysfs, staging=tmp_path / "staging", tmp=tmp_path)
