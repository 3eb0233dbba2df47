"""
User-facing error catalog.

Every failure that reaches the orchestrator is described by one of the entries below: a stable code,
a description template, a follow-up action and the gRPC status it is reported with.
"""

import grpc
from easypy.bunch import Bunch


INVALID_ARGUMENT = grpc.StatusCode.INVALID_ARGUMENT
NOT_FOUND = grpc.StatusCode.NOT_FOUND
ALREADY_EXISTS = grpc.StatusCode.ALREADY_EXISTS
FAILED_PRECONDITION = grpc.StatusCode.FAILED_PRECONDITION
UNAUTHENTICATED = grpc.StatusCode.UNAUTHENTICATED
RESOURCE_EXHAUSTED = grpc.StatusCode.RESOURCE_EXHAUSTED
INTERNAL = grpc.StatusCode.INTERNAL
UNIMPLEMENTED = grpc.StatusCode.UNIMPLEMENTED
DEADLINE_EXCEEDED = grpc.StatusCode.DEADLINE_EXCEEDED
ABORTED = grpc.StatusCode.ABORTED
UNAVAILABLE = grpc.StatusCode.UNAVAILABLE

CHECK_BACKEND = "Please check 'BackendError' tag for more details"
CHECK_POD = "Please check if there is any error in POD describe related with volume attach"


def _m(status, description, action):
    return Bunch(status=status, description=description, action=action)


CATALOG = dict(
    MethodUnimplemented=_m(
        UNIMPLEMENTED, "'{}' CSI interface method not yet implemented",
        "Please do not use this method as its not implemented yet"),
    SnapshotUnsupported=_m(
        UNIMPLEMENTED, "Snapshot operations are disabled for this cluster",
        "Set IS_SNAPSHOT_ENABLED to 'true' on the controller to use snapshots"),
    MissingVolumeName=_m(
        INVALID_ARGUMENT, "Volume name not provided",
        "Please provide volume name while creating volume"),
    MissingSnapshotName=_m(
        INVALID_ARGUMENT, "Snapshot name not provided",
        "Please provide snapshot name while creating snapshot"),
    MissingSourceVolumeID=_m(
        INVALID_ARGUMENT, "Volume ID not provided",
        "Please provide source volume ID while creating snapshot"),
    UnsupportedVolumeContentSource=_m(
        INVALID_ARGUMENT,
        "Volume Content source is not valid. SnapshotSource should be provided as Volume Content source",
        "Please provide valid volumeContentSource type"),
    NoVolumeCapabilities=_m(
        INVALID_ARGUMENT, "Volume capabilities must be provided",
        "Please provide volume capabilities in the storage class before creating volume"),
    VolumeCapabilitiesNotSupported=_m(
        INVALID_ARGUMENT, "Volume capabilities not supported",
        "Please provide valid volume capabilities while creating volume"),
    InvalidParameters=_m(
        INVALID_ARGUMENT, "Failed to extract parameters",
        "Please provide valid parameters"),
    VolumeCapacityOutOfRange=_m(
        RESOURCE_EXHAUSTED, "Requested capacity '{}' GiB is outside the supported range for profile '{}'",
        "Please request a capacity supported by the volume profile"),
    VolumeNotFound=_m(
        NOT_FOUND, "Volume with ID '{}' not found", CHECK_BACKEND),
    SnapshotNotFound=_m(
        NOT_FOUND, "Snapshot with ID '{}' not found", CHECK_BACKEND),
    InternalError=_m(
        INTERNAL, "Internal error occurred", CHECK_BACKEND),
    VolumeAlreadyExists=_m(
        ALREADY_EXISTS,
        "Volume with name '{}' already exists with same name and it is incompatible size '{}'",
        "Please provide different name or have same size of existing volume"),
    SnapshotAlreadyExists=_m(
        ALREADY_EXISTS, "Snapshot with name '{}' already exists for different volume '{}'",
        "Please provide different name for creating snapshot"),
    VolumeCreationFailed=_m(
        INTERNAL, "Failed to create volume", "Please check the error which return in BackendError tag"),
    VolumeDeletionFailed=_m(
        INTERNAL, "Failed to delete '{}' volume", CHECK_BACKEND),
    SnapshotCreationFailed=_m(
        INTERNAL, "Failed to create snapshot for volume '{}'", CHECK_BACKEND),
    SnapshotDeletionFailed=_m(
        INTERNAL, "Failed to delete '{}' snapshot", CHECK_BACKEND),
    EmptyVolumeID=_m(
        INVALID_ARGUMENT, "VolumeID must be provided",
        "Please provide volume ID for attach/detach or delete it"),
    EmptySnapshotID=_m(
        INVALID_ARGUMENT, "SnapshotID must be provided", "Please provide snapshot ID for deletion"),
    EmptyNodeID=_m(
        INVALID_ARGUMENT, "NodeID is empty", "Please check all node's labels by using kubectl command"),
    EndpointNotReachable=_m(
        UNAVAILABLE, "IAM TOKEN exchange request failed.",
        "Verify that the IAM token exchange endpoint is reachable from the cluster"),
    Timeout=_m(
        DEADLINE_EXCEEDED, "IAM Token exchange endpoint is not reachable.",
        "Wait for a few minutes and try again. If the error persists open a container network issue."),
    FailedPrecondition=_m(
        FAILED_PRECONDITION, "Failed to initialize the provider session",
        "Please check the storage-secret-store and ibm-cloud-credentials secrets"),
    AuthenticationFailed=_m(
        UNAUTHENTICATED, "Failed to get IAM token", CHECK_BACKEND),
    CreateVolumeAttachmentFailed=_m(
        INTERNAL, "Failed to attach volume '{}' to node '{}'", CHECK_BACKEND),
    DetachVolumeFailed=_m(
        INTERNAL, "Failed to detach volume '{}' from node '{}'", CHECK_BACKEND),
    VolumeAttachTimedOut=_m(
        DEADLINE_EXCEEDED, "Volume '{}' was not attached to node '{}' in time", CHECK_BACKEND),
    VolumeDetachTimedOut=_m(
        DEADLINE_EXCEEDED, "Volume '{}' was not detached from node '{}' in time", CHECK_BACKEND),
    VolumeExpansionFailed=_m(
        INTERNAL, "Failed to expand volume '{}' to '{}' GiB", CHECK_BACKEND),
    ListVolumesFailed=_m(
        INTERNAL, "Failed to list volumes", CHECK_BACKEND),
    ListSnapshotsFailed=_m(
        INTERNAL, "Failed to list snapshots", CHECK_BACKEND),
    InvalidStartVolumeID=_m(
        ABORTED,
        "The volume ID '{}' specified in the start parameter of the list volume call could not be found",
        "Please verify that the start volume ID is correct and whether you have access to the volume ID"),
    InvalidStartSnapshotID=_m(
        ABORTED,
        "The snapshot ID '{}' specified in the start parameter of the list snapshot call could not be found",
        "Please verify that the start snapshot ID is correct and whether you have access to the snapshot ID"),
    InvalidListVolumesLimit=_m(
        ABORTED, "The maximum entries '{}' requested for list volumes is invalid",
        "Please provide a non negative max_entries value"),
    EmptyStagingPath=_m(
        INVALID_ARGUMENT, "Staging target path not provided", CHECK_POD),
    EmptyTargetPath=_m(
        INVALID_ARGUMENT, "Target path not provided", CHECK_POD),
    NodeMetadataInitFailed=_m(
        NOT_FOUND, "Failed to initialize node metadata",
        "Please check the node labels as per BackendError, accordingly you may add the labels manually"),
    EmptyVolumePath=_m(
        INVALID_ARGUMENT, "Volume path can not be empty", "Please check if volume is used by POD properly"),
    EmptyDevicePath=_m(
        INVALID_ARGUMENT, "Staging device path must be provided", CHECK_POD),
    NoVolumeCapability=_m(
        INVALID_ARGUMENT, "Volume capability must be provided", CHECK_POD),
    DevicePathNotFound=_m(
        INTERNAL, "Device path '{}' is not present", CHECK_POD),
    TargetPathCreateFailed=_m(
        INTERNAL, "Failed to create target path '{}'", CHECK_POD),
    FormatAndMountFailed=_m(
        INTERNAL, "Failed to format '{}' and mount it at '{}'", CHECK_POD),
    MountFailed=_m(
        INTERNAL, "Failed to mount '{}' at '{}'", CHECK_POD),
    UnmountFailed=_m(
        INTERNAL, "Unmount failed for '{}' target path",
        "Please check if there is any error in POD describe related with volume detach"),
    VolumePathNotFound=_m(
        NOT_FOUND, "VolumePath '{}' does not exist", "Please check if volume is used by POD properly"),
    VolumePathNotMounted=_m(
        FAILED_PRECONDITION, "VolumePath '{}' is not mounted", CHECK_POD),
    FileSystemResizeFailed=_m(
        INTERNAL, "Failed to resize the file system",
        "Please check if there is any error in PVC describe related with volume resize"),
    GetDeviceInfoFailed=_m(
        INTERNAL, "Failed to get device info", "Please check if volume is used by POD properly"),
)


def get_message(code, *args):
    msg = CATALOG[code]
    return Bunch(code=code, status=msg.status, description=msg.description.format(*args), action=msg.action)
