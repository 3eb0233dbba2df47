"""
Short names for the CSI messages used by the Identity, Controller and Node services.
Enums are wrapped so that their values can be reached as attributes, eg. `AccessModeType.SINGLE_NODE_WRITER`.
"""

from google.protobuf import wrappers_pb2 as wrappers
from google.protobuf.timestamp_pb2 import Timestamp

from .proto import csi_pb2


class EnumWrapper(object):
    def __init__(self, enum):
        self._enum = enum

    def __getattr__(self, name):
        try:
            return getattr(self._enum, name)
        except AttributeError:
            return self._enum.Value(name)


# ----------------------------
# Common
VolumeCapability = csi_pb2.VolumeCapability
MountVolume = VolumeCapability.MountVolume
BlockVolume = VolumeCapability.BlockVolume
AccessMode = VolumeCapability.AccessMode
AccessModeType = EnumWrapper(AccessMode.Mode)

CapacityRange = csi_pb2.CapacityRange
Topology = csi_pb2.Topology
TopologyRequirement = csi_pb2.TopologyRequirement

Volume = csi_pb2.Volume
VolumeContentSource = csi_pb2.VolumeContentSource
SnapshotSource = VolumeContentSource.SnapshotSource
Snapshot = csi_pb2.Snapshot

# ----------------------------
# Identity
InfoResp = csi_pb2.GetPluginInfoResponse
Capability = csi_pb2.PluginCapability
Service = Capability.Service
ServiceType = EnumWrapper(Service.Type)
CapabilitiesResp = csi_pb2.GetPluginCapabilitiesResponse
ProbeRespOK = csi_pb2.ProbeResponse(ready=wrappers.BoolValue(value=True))

# ----------------------------
# Controller
CtrlCapability = csi_pb2.ControllerServiceCapability
CtrlCapabilityType = EnumWrapper(CtrlCapability.RPC.Type)
CtrlCapabilityResp = csi_pb2.ControllerGetCapabilitiesResponse

CreateResp = csi_pb2.CreateVolumeResponse
DeleteResp = csi_pb2.DeleteVolumeResponse
CtrlPublishResp = csi_pb2.ControllerPublishVolumeResponse
CtrlUnpublishResp = csi_pb2.ControllerUnpublishVolumeResponse
CtrlExpandResp = csi_pb2.ControllerExpandVolumeResponse
ValidateResp = csi_pb2.ValidateVolumeCapabilitiesResponse
ListResp = csi_pb2.ListVolumesResponse
ListEntry = ListResp.Entry

CreateSnapResp = csi_pb2.CreateSnapshotResponse
DeleteSnapResp = csi_pb2.DeleteSnapshotResponse
ListSnapResp = csi_pb2.ListSnapshotsResponse
SnapEntry = ListSnapResp.Entry

# ----------------------------
# Node
NodeCapability = csi_pb2.NodeServiceCapability
NodeCapabilityType = EnumWrapper(NodeCapability.RPC.Type)
NodeCapabilityResp = csi_pb2.NodeGetCapabilitiesResponse
NodeInfoResp = csi_pb2.NodeGetInfoResponse

StageResp = csi_pb2.NodeStageVolumeResponse
UnstageResp = csi_pb2.NodeUnstageVolumeResponse
NodePublishResp = csi_pb2.NodePublishVolumeResponse
NodeUnpublishResp = csi_pb2.NodeUnpublishVolumeResponse
NodeExpandResp = csi_pb2.NodeExpandVolumeResponse

VolumeStatsResp = csi_pb2.NodeGetVolumeStatsResponse
VolumeUsage = csi_pb2.VolumeUsage
UsageUnit = EnumWrapper(VolumeUsage.Unit)
