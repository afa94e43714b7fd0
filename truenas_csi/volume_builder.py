import os
from abc import ABC
from base64 import b64encode
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Optional, Tuple, final

from easypy.resilience import resilient

from . import csi_types as types
from .csi_types import INVALID_ARGUMENT, UNAVAILABLE, UNIMPLEMENTED
from .logging import logger
from .backends import Backend, Configuration
from .nas_session import FILESYSTEM, VOLUME
from .volume_context import VolumeContext, NfsContext, IscsiContext, IscsiAuth
from .utils import hash_volume_name, mount_path, build_volume_id
from .exceptions import (
    Abort,
    ApiError,
    UnexpectedResponse,
    NameCollision,
    VolumeAlreadyExists,
    CapabilitiesChanged,
)


GiB = 1 << 30
DEFAULT_CAPACITY = GiB


def requested_bytes(capacity_range) -> Tuple[int, int]:
    """Return (required_bytes, limit_bytes), defaulting both to 1GiB when no range is given."""
    if not capacity_range or not (capacity_range.required_bytes or capacity_range.limit_bytes):
        return DEFAULT_CAPACITY, DEFAULT_CAPACITY
    return capacity_range.required_bytes, capacity_range.limit_bytes


def effective_capacity(capacity_range) -> int:
    required, limit = requested_bytes(capacity_range)
    return limit or required


def quota_and_reservation(capacity_range) -> Tuple[int, int]:
    """(refquota, refreservation) for a filesystem dataset; an unset side takes the value of the other."""
    refreservation, refquota = requested_bytes(capacity_range)
    return (refquota or refreservation), (refreservation or refquota)


def select_builder(volume_capabilities):
    """
    Choose the builder by the requested capabilities:
    a block capability requires an iSCSI volume, a mount capability shared by several nodes requires NFS.
    """
    if not all(cap.HasField("block") or cap.HasField("mount") for cap in volume_capabilities):
        raise Abort(UNIMPLEMENTED, "Only block and mount access types are supported")
    block = any(cap.HasField("block") for cap in volume_capabilities)
    shared_mount = any(
        cap.HasField("mount") and cap.access_mode.mode in types.MULTI_NODE_ACCESS
        for cap in volume_capabilities
    )
    if block and shared_mount:
        raise Abort(INVALID_ARGUMENT, "Block volumes cannot be shared as multi-node filesystems")
    if shared_mount:
        return FilesystemVolumeBuilder
    return BlockVolumeBuilder


class VolumeBuilderI(ABC):
    """Base Volume Builder interface"""

    DATASET_TYPE: str = None

    def dataset_properties(self) -> dict:
        """Final implementation should return the properties of a newly created dataset."""
        ...

    def get_existing_capacity(self, dataset) -> int:
        """Final implementation should return the capacity of an existing dataset."""
        ...

    def provision(self, rollback: ExitStack, created: bool) -> VolumeContext:
        """
        Final implementation should create (or re-discover) the resources exposing the dataset
        and return the attachment descriptor for the node.
        """
        ...

    @classmethod
    def teardown(cls, nas_session, dataset):
        """Final implementation should remove the resources exposing `dataset` (tolerating missing ones)."""
        ...


@dataclass
class BaseBuilder(VolumeBuilderI):
    """Common builder with shared methods/attributes"""

    # Required
    nas_session: "NasSession"
    backend: Backend
    configuration: Configuration
    name: str  # CO volume name, the idempotency key

    # Optional
    capacity_range: Optional["types.CapacityRange"] = None

    @property
    def dataset_name(self) -> str:
        return f"{self.configuration.dataset}/{hash_volume_name(self.name)}"

    @property
    def volume_id(self) -> str:
        return build_volume_id(self.backend.name, self.dataset_name)

    @property
    def capacity_bytes(self) -> int:
        return effective_capacity(self.capacity_range)

    @classmethod
    def from_parameters(cls, nas_session, backend, configuration, name, capacity_range=None) -> "BaseBuilder":
        """Validate that the configuration supports this kind of volume and return builder instance."""
        cls._check_configuration(backend, configuration)
        return cls(
            nas_session=nas_session,
            backend=backend,
            configuration=configuration,
            name=name,
            capacity_range=capacity_range,
        )

    @classmethod
    def _check_configuration(cls, backend, configuration):
        pass

    def _on_rollback(self, rollback: ExitStack, description: str, func, *args):
        """Register the compensation of a completed step. Compensation failures are logged and skipped."""

        @resilient.error(msg=f"failed to roll back {description}")
        def compensate():
            logger.warning(f"Rolling back {description} ({self.name!r})")
            func(*args)

        rollback.callback(compensate)

    def ensure_dataset(self, rollback: ExitStack) -> bool:
        """Create the dataset, or verify an existing one. Returns True if the dataset was created now."""
        try:
            self.nas_session.create_dataset(
                name=self.dataset_name, type=self.DATASET_TYPE, comments=self.name, **self.dataset_properties()
            )
        except ApiError as exc:
            if exc.status_code is None:
                raise
            # lost a race, or a retry of an earlier attempt
            if not (dataset := self.nas_session.get_dataset(self.dataset_name)):
                raise
            self.verify_existing(dataset)
            logger.info(f"Dataset {self.dataset_name} already exists for {self.name!r}")
            return False

        self._on_rollback(rollback, f"dataset {self.dataset_name}", self.nas_session.delete_dataset, self.dataset_name)
        return True

    def verify_existing(self, dataset):
        if dataset.comments != self.name:
            raise NameCollision(
                f"Dataset {self.dataset_name} belongs to {dataset.comments!r}, not to {self.name!r}"
            )
        if dataset.type != self.DATASET_TYPE:
            raise CapabilitiesChanged(
                f"Volume {self.name!r} already exists as {dataset.type}, requested {self.DATASET_TYPE}"
            )
        if (existing := self.get_existing_capacity(dataset)) != self.capacity_bytes:
            raise VolumeAlreadyExists(
                f"Volume {self.name!r} already exists with capacity {existing}, requested {self.capacity_bytes}"
            )

    def build_volume(self) -> types.Volume:
        """Main build entrypoint. Either every resource is in place or nothing created by this call remains."""
        with ExitStack() as rollback:
            created = self.ensure_dataset(rollback)
            volume_context = self.provision(rollback, created)
            rollback.pop_all()

        return types.Volume(
            capacity_bytes=self.capacity_bytes,
            volume_id=self.volume_id,
            volume_context=volume_context.to_volume_context(),
        )


# ----------------------------------------------------------------------------------------------------------------------
# Final builders
# ----------------------------------------------------------------------------------------------------------------------

@final
class FilesystemVolumeBuilder(BaseBuilder):
    """Filesystem dataset exported over NFS."""

    DATASET_TYPE = FILESYSTEM
    PERMISSION_MODE = "0777"

    @classmethod
    def _check_configuration(cls, backend, configuration):
        if not configuration.nfs:
            raise Abort(UNAVAILABLE, f"NFS is not configured for {backend.name}/{configuration.name}")

    def dataset_properties(self) -> dict:
        refquota, refreservation = quota_and_reservation(self.capacity_range)
        properties = dict(refquota=refquota)
        if not self.configuration.sparse:
            properties.update(refreservation=refreservation)
        return properties

    def get_existing_capacity(self, dataset) -> int:
        return dataset.refquota

    def provision(self, rollback, created) -> VolumeContext:
        path = mount_path(self.dataset_name)
        nfs = self.configuration.nfs
        if created:
            self.nas_session.set_dataset_permission(self.dataset_name, mode=self.PERMISSION_MODE)

        if not (share := self.nas_session.get_nfs_share(comment=self.name)):
            share = self.nas_session.create_nfs_share(
                paths=[path],
                comment=self.name,
                hosts=nfs.allowed_hosts,
                networks=nfs.allowed_networks,
                maproot_user=nfs.maproot_user,
                maproot_group=nfs.maproot_group,
            )
            self._on_rollback(rollback, f"NFS share of {path}", self.nas_session.delete_nfs_share, share.id)
        elif path not in (share.get("paths") or []):
            raise UnexpectedResponse(resource="sharing/nfs", reason=f"share {share.id} does not export {path}")

        return VolumeContext(nfs=NfsContext(address=f"{nfs.server}:{path}"))

    @classmethod
    def teardown(cls, nas_session, dataset):
        path = mount_path(dataset.id)
        if not (share := nas_session.get_nfs_share(comment=dataset.comments)):
            logger.info(f"No NFS share found for {path}")
        elif path not in (share.get("paths") or []):
            logger.warning(f"NFS share {share.id} tagged {dataset.comments!r} does not export {path}, leaving it")
        else:
            nas_session.delete_nfs_share(share.id)


@final
class BlockVolumeBuilder(BaseBuilder):
    """ZFS volume exposed as LUN 0 of a dedicated iSCSI target."""

    DATASET_TYPE = VOLUME
    NEW_AUTH_TAG = -1

    @classmethod
    def _check_configuration(cls, backend, configuration):
        if not configuration.iscsi:
            raise Abort(UNAVAILABLE, f"iSCSI is not configured for {backend.name}/{configuration.name}")

    @property
    def target_name(self) -> str:
        return hash_volume_name(self.name)

    def dataset_properties(self) -> dict:
        properties = dict(volsize=self.capacity_bytes, sparse=self.configuration.sparse)
        if self.configuration.iscsi.volblocksize:
            properties.update(volblocksize=self.configuration.iscsi.volblocksize)
        return properties

    def get_existing_capacity(self, dataset) -> int:
        return dataset.volsize

    def ensure_extent(self, rollback):
        disk = f"zvol/{self.dataset_name}"
        if extent := self.nas_session.get_iscsi_extent(comment=self.name):
            if extent.get("disk") != disk:
                raise UnexpectedResponse(resource="iscsi/extent", reason=f"extent {extent.id} is not backed by {disk}")
            return extent

        extent = self.nas_session.create_iscsi_extent(
            name=self.target_name,
            disk=disk,
            comment=self.name,
            serial=os.urandom(7).hex(),
            pblocksize=self.configuration.iscsi.disable_report_blocksize,
        )
        self._on_rollback(rollback, f"iSCSI extent {extent.id}", self.nas_session.delete_iscsi_extent, extent.id)
        return extent

    def ensure_auth(self, rollback):
        """CHAP credentials are looked up by user name first, so a retried request reuses them."""
        if not (auth := self.nas_session.get_iscsi_auth(user=self.target_name)):
            auth = self.nas_session.create_iscsi_auth(
                tag=self.NEW_AUTH_TAG,
                user=self.target_name,
                secret=b64encode(os.urandom(12)).decode("ascii"),
            )
            self._on_rollback(rollback, f"iSCSI auth {auth.id}", self.nas_session.delete_iscsi_auth, auth.id)
        if auth.tag == self.NEW_AUTH_TAG:
            # the auth group tag is only known after creation
            auth = self.nas_session.update_iscsi_auth(auth.id, tag=auth.id)
        return auth

    def ensure_target(self, rollback):
        if target := self.nas_session.get_iscsi_target(name=self.target_name):
            return target, self.nas_session.get_iscsi_auth_for_target(target)

        auth = self.ensure_auth(rollback)
        target = self.nas_session.create_iscsi_target(
            name=self.target_name, portal_id=self.configuration.iscsi.portal_id, auth_tag=auth.tag
        )
        self._on_rollback(rollback, f"iSCSI target {target.id}", self.nas_session.delete_iscsi_target, target.id)
        return target, auth

    def ensure_association(self, rollback, target, extent):
        if not self.nas_session.get_iscsi_targetextent(target_id=target.id, extent_id=extent.id):
            association = self.nas_session.create_iscsi_targetextent(target_id=target.id, extent_id=extent.id, lunid=0)
            self._on_rollback(
                rollback, f"iSCSI target/extent association {association.id}",
                self.nas_session.delete_iscsi_targetextent, association.id,
            )

    def provision(self, rollback, created) -> VolumeContext:
        extent = self.ensure_extent(rollback)
        target, auth = self.ensure_target(rollback)
        self.ensure_association(rollback, target, extent)
        basename = self.nas_session.get_iscsi_basename()

        in_auth = out_auth = None
        if auth:
            in_auth = IscsiAuth(username=auth.user, password=auth.secret)
            if auth.get("peeruser") and auth.get("peersecret"):
                out_auth = IscsiAuth(username=auth.peeruser, password=auth.peersecret)

        return VolumeContext(iscsi=IscsiContext(
            portal=self.configuration.iscsi.portal,
            target=f"{basename}:{self.target_name}",
            in_auth=in_auth,
            out_auth=out_auth,
        ))

    @classmethod
    def teardown(cls, nas_session, dataset):
        target_name = dataset.id.rpartition("/")[2]
        if target := nas_session.get_iscsi_target(name=target_name):
            auth = nas_session.get_iscsi_auth_for_target(target)
            nas_session.delete_iscsi_target(target.id)
            if auth:
                nas_session.delete_iscsi_auth(auth.id)
        else:
            logger.info(f"No iSCSI target named {target_name}")

        if extent := nas_session.get_iscsi_extent(disk=f"zvol/{dataset.id}"):
            nas_session.delete_iscsi_extent(extent.id)
        else:
            logger.info(f"No iSCSI extent found for {dataset.id}")


BUILDERS = {FILESYSTEM: FilesystemVolumeBuilder, VOLUME: BlockVolumeBuilder}
