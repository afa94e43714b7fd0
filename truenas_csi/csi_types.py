import grpc
from google.protobuf import wrappers_pb2 as wrappers

from .proto import csi_pb2


class EnumWrapper(object):
    def __init__(self, enum):
        self._enum = enum

    def __getattr__(self, name):
        try:
            return getattr(self._enum, name)
        except AttributeError:
            return self._enum.Value(name)


INVALID_ARGUMENT = grpc.StatusCode.INVALID_ARGUMENT
NOT_FOUND = grpc.StatusCode.NOT_FOUND
ALREADY_EXISTS = grpc.StatusCode.ALREADY_EXISTS
UNAVAILABLE = grpc.StatusCode.UNAVAILABLE
INTERNAL = grpc.StatusCode.INTERNAL
UNIMPLEMENTED = grpc.StatusCode.UNIMPLEMENTED
FAILED_PRECONDITION = grpc.StatusCode.FAILED_PRECONDITION

Bool = wrappers.BoolValue

InfoResp = csi_pb2.GetPluginInfoResponse
NodeInfoResp = csi_pb2.NodeGetInfoResponse

Capability = csi_pb2.PluginCapability
Service = Capability.Service
ServiceType = EnumWrapper(Service.Type)
Expansion = Capability.VolumeExpansion
ExpansionType = EnumWrapper(Expansion.Type)
CtrlCapability = csi_pb2.ControllerServiceCapability
CtrlCapabilityType = EnumWrapper(CtrlCapability.RPC.Type)
CtrlCapabilityResp = csi_pb2.ControllerGetCapabilitiesResponse

NodeCapability = csi_pb2.NodeServiceCapability
NodeCapabilityType = EnumWrapper(NodeCapability.RPC.Type)
NodeCapabilityResp = csi_pb2.NodeGetCapabilitiesResponse

ValidateResp = csi_pb2.ValidateVolumeCapabilitiesResponse
CtrlExpandResp = csi_pb2.ControllerExpandVolumeResponse

CapabilitiesResp = csi_pb2.GetPluginCapabilitiesResponse

VolumeCapability = csi_pb2.VolumeCapability
MountVolume = VolumeCapability.MountVolume
BlockVolume = VolumeCapability.BlockVolume
AccessMode = VolumeCapability.AccessMode
AccessModeType = EnumWrapper(AccessMode.Mode)
CapacityRange = csi_pb2.CapacityRange

StageResp = csi_pb2.NodeStageVolumeResponse
UnstageResp = csi_pb2.NodeUnstageVolumeResponse
NodePublishResp = csi_pb2.NodePublishVolumeResponse
NodeUnpublishResp = csi_pb2.NodeUnpublishVolumeResponse
NodeExpandResp = csi_pb2.NodeExpandVolumeResponse
ProbeRespOK = csi_pb2.ProbeResponse(ready=Bool(value=True))
CreateResp = csi_pb2.CreateVolumeResponse
DeleteResp = csi_pb2.DeleteVolumeResponse
Volume = csi_pb2.Volume

VolumeStatsResp = csi_pb2.NodeGetVolumeStatsResponse
VolumeUsage = csi_pb2.VolumeUsage
UsageUnit = EnumWrapper(VolumeUsage.Unit)

# Access modes that allow more than one node to use the volume at once
MULTI_NODE_ACCESS = {
    AccessModeType.MULTI_NODE_READER_ONLY,
    AccessModeType.MULTI_NODE_SINGLE_WRITER,
    AccessModeType.MULTI_NODE_MULTI_WRITER,
}
