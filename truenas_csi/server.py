# Copyright 2015 gRPC authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""TrueNAS CSI plugin: Identity, Controller and Node gRPC services."""

import os
import stat
from concurrent import futures
from functools import wraps
from pprint import pformat
import inspect

from plumbum import cmd
from plumbum import local, ProcessExecutionError
import grpc

from easypy.tokens import CONTROLLER_AND_NODE, CONTROLLER, NODE, DELETE
from easypy.misc import kwargs_resilient
from easypy.caching import cached_property
from easypy.exceptions import TException

from .logging import logger, init_logging
from .utils import get_mount, parse_volume_id, parent_dataset, remove_path
from .proto import csi_pb2_grpc as csi_grpc
from . import csi_types as types
from .csi_types import (
    INVALID_ARGUMENT,
    NOT_FOUND,
    ALREADY_EXISTS,
    UNAVAILABLE,
    INTERNAL,
    UNIMPLEMENTED,
    FAILED_PRECONDITION,
)
from .backends import DEFAULT
from .nas_session import NasSession, FILESYSTEM, VOLUME
from .volume_builder import (
    BUILDERS,
    select_builder,
    effective_capacity,
    quota_and_reservation,
)
from .volume_context import VolumeContext
from .iscsi import IscsiSessionManager
from .exceptions import (
    Abort,
    MountFailed,
    NasError,
    CommandFailed,
    DeviceTimeout,
    BackendNotFound,
    NameCollision,
    VolumeAlreadyExists,
    CapabilitiesChanged,
)
from .configuration import Config


CONF = None

################################################################
#
# Helpers
#
################################################################


# failures of the NAS or of local tools; the CO is expected to retry
RETRYABLE_ERRORS = (NasError, CommandFailed, DeviceTimeout, BackendNotFound, ProcessExecutionError)


def mount(src, tgt, flags=""):
    executable = cmd.mount
    flags = list(filter(None, (f.strip() for f in flags.split(","))))
    if flags:
        executable = executable["-o", ",".join(flags)]
    try:
        executable['-v', src, tgt] & logger.pipe_info("mount >>")
    except ProcessExecutionError as exc:
        raise MountFailed(detail=exc.stderr, src=src, tgt=tgt, mount_options=flags, cmd="mount", retcode=exc.retcode)


def umount(tgt):
    try:
        local.cmd.umount(tgt)
    except ProcessExecutionError as exc:
        if "not mounted" not in exc.stderr:
            raise
        logger.info(f"umount failed - {tgt} is not mounted (race?)")


def _capability_conflict(dataset, volume_capabilities):
    """Return the reason `volume_capabilities` cannot be served by `dataset`, if any."""
    for capability in volume_capabilities:
        if capability.HasField("block") and dataset.type == FILESYSTEM:
            return f"Block access requested for filesystem dataset {dataset.id}"
        if (
            capability.HasField("mount")
            and dataset.type == VOLUME
            and capability.access_mode.mode in types.MULTI_NODE_ACCESS
        ):
            return f"Multi-node filesystem access requested for block dataset {dataset.id}"


# request and response fields carrying CHAP credentials, never logged
SENSITIVE_FIELDS = {"secrets", "volume_context"}
REDACTED = "***"


def _redacted_params(params):
    return {k: (REDACTED if k in SENSITIVE_FIELDS else v) for k, v in params.items()}


def _redact(message):
    for fld, value in message.ListFields():
        is_map = fld.message_type is not None and fld.message_type.GetOptions().map_entry
        if fld.name in SENSITIVE_FIELDS and is_map:
            for key in list(value):
                value[key] = REDACTED
        elif hasattr(value, "ListFields"):
            _redact(value)
        elif fld.message_type is not None and not is_map:
            for item in value:
                _redact(item)


def _redacted(message):
    """Copy of a protobuf message with the values of credential carrying maps masked."""
    if not hasattr(message, "ListFields"):
        return message
    ret = type(message)()
    ret.CopyFrom(message)
    _redact(ret)
    return ret


def _call_timeout(context):
    """NAS requests must not outlive the deadline of the gRPC call."""
    timeout = CONF.nas_timeout
    if context is not None and (remaining := context.time_remaining()) is not None:
        timeout = max(min(timeout, remaining), 1)
    return timeout


class Instrumented:

    SILENCED = ["Probe", "NodeGetCapabilities", "NodeGetVolumeStats"]

    @classmethod
    def logged(cls, func):

        method = func.__name__
        log = logger.debug if (method in cls.SILENCED) else logger.info

        parameters = inspect.signature(func).parameters
        required_params = {k for k, p in parameters.items() if p.default is inspect._empty} - {"self"}

        func = kwargs_resilient(func)

        @wraps(func)
        def wrapper(self, request, context):
            peer = context.peer()
            params = {fld.name: value for fld, value in request.ListFields()}
            params.pop("secrets", None)
            missing_params = required_params - {"request", "context"} - set(params)

            log(f"{peer} >>> {method}:")

            if params:
                for line in pformat(_redacted_params(params)).splitlines():
                    log(f"({method})    {line}")

            try:
                if missing_params:
                    msg = f'Missing required fields: {", ".join(sorted(missing_params))}'
                    logger.error(f"{peer} <<< {method}: {msg}")
                    raise Abort(INVALID_ARGUMENT, msg)

                ret = func(self, request=request, context=context, **params)
            except Abort as exc:
                logger.info(
                    f'{peer} <<< {method} ABORTED with {exc.code} ("{exc.message}")'
                )
                logger.debug("Traceback", exc_info=True)
                context.abort(exc.code, exc.message)
            except RETRYABLE_ERRORS as exc:
                logger.exception(f"Exception during {method}")
                text = exc.render(color=False) if isinstance(exc, TException) else exc.stderr or str(exc)
                context.abort(UNAVAILABLE, f"[{method}]. {text}")
            except TException as exc:
                logger.exception(f"Exception during {method}")
                context.abort(INTERNAL, f"[{method}]. {exc.render(color=False)}")
            except Exception as exc:
                logger.exception(f"Exception during {method}")
                context.abort(INTERNAL, f"[{method}]: {exc}")
            if ret:
                log(f"{peer} <<< {method}:")
                for line in pformat(_redacted(ret)).splitlines():
                    log(f"    {line}")
            log(f"{peer} --- {method}: Done")
            return ret

        return wrapper

    @classmethod
    def __init_subclass__(cls):
        for name, _ in inspect.getmembers(cls.__base__, inspect.isfunction):
            if name.startswith("_"):
                continue
            func = getattr(cls, name)
            setattr(cls, name, cls.logged(func))
        super().__init_subclass__()


################################################################
#
# Identity
#
################################################################


class CsiIdentity(csi_grpc.IdentityServicer, Instrumented):
    def __init__(self):
        self.controller = None
        self.node = None

    def GetPluginInfo(self):
        return types.InfoResp(
            name=CONF.plugin_name,
            vendor_version=CONF.plugin_version,
        )

    def GetPluginCapabilities(self):
        capabilities = [
            types.Capability(volume_expansion=types.Expansion(type=types.ExpansionType.ONLINE))
        ]
        if self.controller:
            capabilities.append(
                types.Capability(service=types.Service(type=types.ServiceType.CONTROLLER_SERVICE))
            )
        return types.CapabilitiesResp(capabilities=capabilities)

    def Probe(self):
        return types.ProbeRespOK


################################################################
#
# Controller
#
################################################################


class CsiController(csi_grpc.ControllerServicer, Instrumented):

    CAPABILITIES = [
        types.CtrlCapabilityType.CREATE_DELETE_VOLUME,
        types.CtrlCapabilityType.EXPAND_VOLUME,
        types.CtrlCapabilityType.SINGLE_NODE_MULTI_WRITER,
    ]

    @property
    def backends(self):
        return CONF.backends

    def _nas_session(self, backend, context=None):
        return NasSession.create(CONF, backend, timeout=_call_timeout(context))

    def _resolve_volume(self, volume_id):
        """Return (backend, dataset name) for a volume id, or None if it cannot refer to a known volume."""
        if not (parsed := parse_volume_id(volume_id)):
            logger.info(f"Malformed volume id: {volume_id!r}")
            return None
        backend_name, dataset_name = parsed
        if not (backend := self.backends.get(backend_name)):
            logger.info(f"Unknown backend {backend_name!r} in volume id {volume_id!r}")
            return None
        return backend, dataset_name

    def ControllerGetCapabilities(self):
        return types.CtrlCapabilityResp(
            capabilities=[
                types.CtrlCapability(rpc=types.CtrlCapability.RPC(type=rpc))
                for rpc in self.CAPABILITIES
            ]
        )

    def CreateVolume(
        self,
        name,
        volume_capabilities,
        capacity_range=None,
        parameters=None,
        context=None,
    ):
        parameters = parameters or dict()
        builder_cls = select_builder(volume_capabilities)

        try:
            backend = self.backends.backend(parameters.get(CONF.backend_parameter, DEFAULT))
            configuration = backend.lookup(parameters.get(CONF.configuration_parameter, DEFAULT))
        except BackendNotFound as exc:
            raise Abort(UNAVAILABLE, exc.render(color=False))

        with self._nas_session(backend, context) as nas_session:
            builder = builder_cls.from_parameters(
                nas_session=nas_session,
                backend=backend,
                configuration=configuration,
                name=name,
                capacity_range=capacity_range,
            )
            try:
                volume = builder.build_volume()
            except NameCollision as exc:
                raise Abort(UNAVAILABLE, exc.message)
            except CapabilitiesChanged as exc:
                raise Abort(INVALID_ARGUMENT, exc.message)
            except VolumeAlreadyExists as exc:
                raise Abort(ALREADY_EXISTS, exc.message)

        return types.CreateResp(volume=volume)

    def DeleteVolume(self, volume_id, context=None):
        if not (resolved := self._resolve_volume(volume_id)):
            return types.DeleteResp()
        backend, dataset_name = resolved

        with self._nas_session(backend, context) as nas_session:
            if not (dataset := nas_session.get_dataset(dataset_name)):
                logger.info(f"Dataset {dataset_name} does not exist")
                return types.DeleteResp()

            if not (builder_cls := BUILDERS.get(dataset.type)):
                raise Abort(UNAVAILABLE, f"Unexpected type of dataset {dataset_name}: {dataset.type}")

            delete_policy = backend.delete_policy(parent_dataset(dataset_name))
            builder_cls.teardown(nas_session, dataset)

            if delete_policy == DELETE:
                nas_session.delete_dataset(dataset_name)
                logger.info(f"Dataset {dataset_name} deleted")
            else:
                logger.info(f"Dataset {dataset_name} retained ({delete_policy})")

        return types.DeleteResp()

    def ValidateVolumeCapabilities(
        self,
        volume_id,
        volume_capabilities,
        volume_context=None,
        parameters=None,
        context=None,
    ):
        if not (parsed := parse_volume_id(volume_id)):
            raise Abort(NOT_FOUND, f"Volume {volume_id} does not exist")
        backend_name, dataset_name = parsed
        if not (backend := self.backends.get(backend_name)):
            raise Abort(UNAVAILABLE, f"No backend found with name {backend_name!r}")

        with self._nas_session(backend, context) as nas_session:
            if not (dataset := nas_session.get_dataset(dataset_name)):
                raise Abort(NOT_FOUND, f"Volume {volume_id} does not exist")

        if reason := _capability_conflict(dataset, volume_capabilities):
            return types.ValidateResp(message=reason)

        confirmed = types.ValidateResp.Confirmed(
            volume_context=volume_context,
            volume_capabilities=volume_capabilities,
            parameters=parameters,
        )
        return types.ValidateResp(confirmed=confirmed)

    def ControllerExpandVolume(self, volume_id, capacity_range, context=None):
        if not (parsed := parse_volume_id(volume_id)):
            raise Abort(NOT_FOUND, f"Volume {volume_id} does not exist")
        backend_name, dataset_name = parsed
        if not (backend := self.backends.get(backend_name)):
            raise Abort(UNAVAILABLE, f"No backend found with name {backend_name!r}")

        with self._nas_session(backend, context) as nas_session:
            if not (dataset := nas_session.get_dataset(dataset_name)):
                raise Abort(NOT_FOUND, f"Volume {volume_id} does not exist")

            if dataset.type == VOLUME:
                volsize = effective_capacity(capacity_range)
                if dataset.volsize != volsize:
                    nas_session.update_dataset(dataset_name, volsize=volsize)
                return types.CtrlExpandResp(capacity_bytes=volsize, node_expansion_required=True)

            if dataset.type == FILESYSTEM:
                refquota, refreservation = quota_and_reservation(capacity_range)
                properties = dict(refquota=refquota)
                if not backend.sparse(parent_dataset(dataset_name)):
                    properties.update(refreservation=refreservation)
                nas_session.update_dataset(dataset_name, **properties)
                return types.CtrlExpandResp(capacity_bytes=refquota, node_expansion_required=False)

        raise Abort(UNAVAILABLE, f"Unexpected type of dataset {dataset_name}: {dataset.type}")


################################################################
#
# Node
#
################################################################


class CsiNode(csi_grpc.NodeServicer, Instrumented):

    CAPABILITIES = [
        types.NodeCapabilityType.STAGE_UNSTAGE_VOLUME,
        types.NodeCapabilityType.EXPAND_VOLUME,
        types.NodeCapabilityType.GET_VOLUME_STATS,
    ]

    @cached_property
    def sessions(self):
        return IscsiSessionManager(device_wait_timeout=CONF.device_wait_timeout)

    def NodeGetCapabilities(self):
        return types.NodeCapabilityResp(
            capabilities=[
                types.NodeCapability(rpc=types.NodeCapability.RPC(type=rpc))
                for rpc in self.CAPABILITIES
            ]
        )

    def NodeStageVolume(
        self,
        volume_id,
        staging_target_path,
        volume_capability,
        volume_context=None,
        publish_context=None,
    ):
        attachment = VolumeContext.from_volume_context(volume_context)
        if not attachment.iscsi:
            logger.info(f"{volume_id} needs no staging")
            return types.StageResp()

        if volume_capability.HasField("block"):
            fs_type = None
        elif volume_capability.HasField("mount"):
            fs_type = volume_capability.mount.fs_type
        else:
            raise Abort(UNIMPLEMENTED, f"Unsupported access type of {volume_id}")

        self.sessions.stage(staging_target_path, attachment.iscsi, fs_type=fs_type)
        return types.StageResp()

    def NodeUnstageVolume(self, volume_id, staging_target_path):
        self.sessions.unstage(staging_target_path)
        return types.UnstageResp()

    def NodePublishVolume(
        self,
        volume_id,
        target_path,
        volume_capability,
        staging_target_path=None,
        readonly=False,
        volume_context=None,
        publish_context=None,
    ):
        target_path = local.path(target_path)
        if os.path.lexists(target_path):
            logger.info(f"{target_path} already exists, {volume_id} is published")
            return types.NodePublishResp()

        attachment = VolumeContext.from_volume_context(volume_context)
        flags = ["ro"] if readonly else []
        if volume_capability.HasField("mount"):
            flags += volume_capability.mount.mount_flags

        if attachment.nfs:
            if not volume_capability.HasField("mount"):
                raise Abort(INVALID_ARGUMENT, f"NFS volume {volume_id} can only be published as a filesystem")
            source = attachment.nfs.address
        elif attachment.iscsi:
            if not staging_target_path:
                raise Abort(FAILED_PRECONDITION, "missing 'staging_target_path'")
            if not self.sessions.is_staged(staging_target_path):
                raise Abort(FAILED_PRECONDITION, f"{volume_id} is not staged at {staging_target_path}")
            source = os.path.realpath(self.sessions.staged_device(staging_target_path))
        else:
            raise Abort(FAILED_PRECONDITION, f"Volume context of {volume_id} has no attachment information")

        if volume_capability.HasField("block"):
            target_path.parent.mkdir()
            os.symlink(source, target_path)
            logger.info(f"linked: {target_path} -> {source}")
        elif volume_capability.HasField("mount"):
            target_path.mkdir()
            logger.info(f"created: {target_path}")
            try:
                mount(source, target_path, flags=",".join(flags))
            except Exception:
                os.rmdir(target_path)
                raise
            logger.info(f"mounted: {target_path} flags: {flags}")
        else:
            raise Abort(UNIMPLEMENTED, f"Unsupported access type of {volume_id}")

        return types.NodePublishResp()

    def NodeUnpublishVolume(self, volume_id, target_path):
        target_path = local.path(target_path)

        if not os.path.lexists(target_path):
            logger.info(f"{target_path} does not exist - no need to remove")
            return types.NodeUnpublishResp()

        if os.path.ismount(target_path):
            umount(target_path)
        else:
            logger.info(f"{target_path} is not mounted")

        logger.info(f"Deleting {target_path}")
        remove_path(target_path)
        logger.info(f"{target_path} removed successfully")
        return types.NodeUnpublishResp()

    def NodeExpandVolume(self, volume_id, volume_path, staging_target_path=None, capacity_range=None):
        if not (staging_target_path and self.sessions.is_staged(staging_target_path)):
            raise Abort(NOT_FOUND, f"{volume_id} is not staged on this node")
        self.sessions.expand(staging_target_path, volume_path)
        if capacity_range:
            return types.NodeExpandResp(capacity_bytes=effective_capacity(capacity_range))
        return types.NodeExpandResp()

    def NodeGetInfo(self):
        return types.NodeInfoResp(node_id=CONF.node_id)

    def NodeGetVolumeStats(self, volume_id, volume_path):
        if os.path.ismount(volume_path):
            # See http://man7.org/linux/man-pages/man2/statfs.2.html for details.
            fstats = os.statvfs(volume_path)
            return types.VolumeStatsResp(
                usage=[
                    types.VolumeUsage(
                        unit=types.UsageUnit.BYTES,
                        available=fstats.f_bavail * fstats.f_bsize,
                        total=fstats.f_blocks * fstats.f_bsize,
                        used=(fstats.f_blocks - fstats.f_bfree) * fstats.f_bsize,
                    ),
                    types.VolumeUsage(
                        unit=types.UsageUnit.INODES,
                        available=fstats.f_ffree,
                        total=fstats.f_files,
                        used=fstats.f_files - fstats.f_ffree,
                    )
                ]
            )

        if os.path.exists(volume_path) and stat.S_ISBLK(os.stat(volume_path).st_mode):
            with open(volume_path, "rb") as f:
                size = f.seek(0, os.SEEK_END)
            return types.VolumeStatsResp(usage=[types.VolumeUsage(unit=types.UsageUnit.BYTES, total=size)])

        raise Abort(NOT_FOUND, f"{volume_path} is neither a mountpoint nor a block device")


def serve():
    global CONF
    CONF = Config()
    init_logging(level=CONF.log_level)
    logger.info("%s: %s", CONF.plugin_name, CONF.plugin_version)

    if not CONF.ssl_verify:
        import urllib3

        urllib3.disable_warnings()

    server = grpc.server(futures.ThreadPoolExecutor(max_workers=CONF.worker_threads))

    identity = CsiIdentity()
    csi_grpc.add_IdentityServicer_to_server(identity, server)

    if CONF.mode in {CONTROLLER, CONTROLLER_AND_NODE}:
        # invalid configuration must prevent startup
        for name in sorted(CONF.backends.backends):
            logger.info(f"Serving backend {name!r}")
        identity.controller = CsiController()
        csi_grpc.add_ControllerServicer_to_server(identity.controller, server)

    if CONF.mode in {NODE, CONTROLLER_AND_NODE}:
        identity.node = CsiNode()
        csi_grpc.add_NodeServicer_to_server(identity.node, server)

    server.add_insecure_port(CONF.endpoint)
    server.start()

    logger.info(f"Server started as '{CONF.mode}', listening on {CONF.endpoint}, spawned threads {CONF.worker_threads}")
    server.wait_for_termination()
