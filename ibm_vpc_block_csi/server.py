import os
import signal
import inspect
from time import sleep, monotonic
from uuid import uuid4
from concurrent import futures
from contextlib import contextmanager
from functools import wraps
from pprint import pformat

import grpc
from plumbum import local

from easypy.misc import kwargs_resilient
from easypy.exceptions import TException
from easypy.collections import separate

from .logging import logger, init_logging
from .utils import (
    patch_traceback_format,
    is_valid_volume_id,
    parse_snapshot_crn,
    string_to_proto_timestamp,
    cancellable_sleep,
)
from .proto import csi_pb2_grpc as csi_grpc
from . import csi_types as types
from .exceptions import (
    Abort,
    UserError,
    ProviderError,
    InvalidParameter,
    CapacityOutOfRange,
    MountFailed,
    FormatFailed,
    ResizeFailed,
    NodeMetadataMissing,
)
from .parameters import (
    GiB,
    DEFAULT_FS,
    REGION_LABEL,
    ZONE_LABEL,
    VolumeRequest,
    capabilities_supported,
    requested_capacity,
)
from .provider import (
    ABSENT_KINDS,
    SNAPSHOT_ID_NOT_FOUND,
    INVALID_LIST_LIMIT,
    START_VOLUME_NOT_FOUND,
    START_SNAPSHOT_NOT_FOUND,
    ATTACH_TIMED_OUT,
    DETACH_TIMED_OUT,
)
from .metrics import record_request, start_metrics_server
from .configuration import Config
from .driver import Driver


################################################################
#
# Helpers
#
################################################################


DEFAULT_LIST_LIMIT = 50
SNAPSHOT_DISABLED_DELAY = 600  # keeps the snapshotter from retrying in a tight loop
UDEV_SETTLE_SECONDS = 20

# Provider failures that keep their own catalog entry whatever the operation
PASSTHROUGH_KINDS = ("AuthenticationFailed", "Timeout", "EndpointNotReachable")


def user_error(exc, request_id, msg_code, *args):
    """Map a provider failure onto the catalog entry of the operation that hit it"""
    if exc.kind in PASSTHROUGH_KINDS:
        return UserError(exc.kind, request_id, error=exc)
    return UserError(msg_code, request_id, error=exc, args=args)


@contextmanager
def provider_errors(request_id, msg_code, *args):
    try:
        yield
    except ProviderError as exc:
        raise user_error(exc, request_id, msg_code, *args) from exc


def parse_endpoint(endpoint):
    """'unix:/csi/csi.sock' (or 'unix:///csi/csi.sock') -> the socket path; None for tcp endpoints"""
    scheme, _, address = endpoint.partition(":")
    if scheme.lower() != "unix":
        return None
    return "/" + address.lstrip("/")


def remove_paths(*paths):
    for path in map(local.path, paths):
        if path.exists():
            logger.info(f"Removing {path}")
            path.delete()


class Instrumented:

    SILENCED = ["Probe", "NodeGetCapabilities"]

    @classmethod
    def logged(cls, func):

        method = func.__name__
        log = logger.debug if (method in cls.SILENCED) else logger.info

        parameters = inspect.signature(func).parameters
        required_params, _ = map(
            set, separate(parameters, key=lambda k: parameters[k].default is inspect._empty)
        )
        required_params.discard("self")
        injected = {"request", "context", "request_id", "secrets"}

        func = kwargs_resilient(func)

        @wraps(func)
        def wrapper(self, request, context):
            peer = context.peer()
            request_id = str(uuid4())
            params = {fld.name: value for fld, value in request.ListFields()}
            # secrets are never logged, they are handed over only to methods that declare them
            secrets = params.pop("secrets", {})
            missing_params = required_params - injected - set(params)

            log(f"{peer} >>> {method}: [{request_id}]")

            if params:
                for line in pformat(params).splitlines():
                    log(f"({method})    {line}")

            if "secrets" in parameters:
                params["secrets"] = dict(secrets)
            if "request_id" in parameters:
                params["request_id"] = request_id

            status = grpc.StatusCode.OK.name
            started = monotonic()
            try:
                if missing_params:
                    msg = f'Missing required fields: {", ".join(sorted(missing_params))}'
                    logger.error(f"{peer} <<< {method}: {msg}")
                    raise Abort(grpc.StatusCode.INVALID_ARGUMENT, msg)

                ret = func(self, request=request, context=context, **params)
            except Abort as exc:
                status = exc.code.name
                logger.info(
                    f'{peer} <<< {method} ABORTED with {exc.code} ("{exc.message}")'
                )
                logger.debug("Traceback", exc_info=True)
                context.abort(exc.code, exc.message)
            except TException as exc:
                status = grpc.StatusCode.UNKNOWN.name
                logger.exception(f"Exception during {method}")
                context.abort(grpc.StatusCode.UNKNOWN, f"[{method}]. {exc.render(color=False)}")
            except Exception as exc:
                status = grpc.StatusCode.UNKNOWN.name
                logger.exception(f"Exception during {method}")
                context.abort(grpc.StatusCode.UNKNOWN, f"[{method}]: {exc}")
            finally:
                record_request(method, status, monotonic() - started)

            if ret:
                log(f"{peer} <<< {method}:")
                for line in pformat(ret).splitlines():
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


class Identity(csi_grpc.IdentityServicer, Instrumented):

    CAPABILITIES = [
        types.ServiceType.CONTROLLER_SERVICE,
        types.ServiceType.VOLUME_ACCESSIBILITY_CONSTRAINTS,
    ]

    def __init__(self, driver):
        self.driver = driver

    def GetPluginInfo(self, request, context):
        return types.InfoResp(
            name=self.driver.name,
            vendor_version=self.driver.version,
        )

    def GetPluginCapabilities(self, request, context):
        return types.CapabilitiesResp(
            capabilities=[
                types.Capability(service=types.Service(type=cap))
                for cap in self.CAPABILITIES
            ]
        )

    def Probe(self, request, context):
        return types.ProbeRespOK


################################################################
#
# Controller
#
################################################################


def snapshot_response(snapshot):
    return types.Snapshot(
        snapshot_id=snapshot.crn or snapshot.id,
        source_volume_id=snapshot.source_volume_id,
        size_bytes=snapshot.size_bytes,
        creation_time=string_to_proto_timestamp(snapshot.created_at),
        ready_to_use=snapshot.ready,
    )


class Controller(csi_grpc.ControllerServicer, Instrumented):

    CAPABILITIES = [
        types.CtrlCapabilityType.CREATE_DELETE_VOLUME,
        types.CtrlCapabilityType.PUBLISH_UNPUBLISH_VOLUME,
        types.CtrlCapabilityType.LIST_VOLUMES,
        types.CtrlCapabilityType.CREATE_DELETE_SNAPSHOT,
        types.CtrlCapabilityType.LIST_SNAPSHOTS,
        types.CtrlCapabilityType.EXPAND_VOLUME,
    ]

    def __init__(self, driver):
        self.driver = driver

    def ControllerGetCapabilities(self):
        return types.CtrlCapabilityResp(
            capabilities=[
                types.CtrlCapability(rpc=types.CtrlCapability.RPC(type=rpc))
                for rpc in self.CAPABILITIES
            ]
        )

    def _find_volume(self, provider, request_id, volume_id="", name=""):
        with provider_errors(request_id, "InternalError"):
            return provider.find_volume(volume_id=volume_id, name=name)

    def _volume_response(self, volume, region="", snapshot_id=""):
        region = volume.region or region
        segments = {REGION_LABEL: region, ZONE_LABEL: volume.zone}
        context = dict(
            segments,
            volumeId=volume.id,
            volumeCRN=volume.crn,
            clusterID=self.driver.cluster_id,
            tags=",".join(volume.tags),
            region=region,
            zone=volume.zone,
        )
        if volume.iops:
            context["iops"] = str(volume.iops)

        content_source = None
        if snapshot_id:
            content_source = types.VolumeContentSource(
                snapshot=types.SnapshotSource(snapshot_id=snapshot_id)
            )
        return types.Volume(
            volume_id=volume.id,
            capacity_bytes=volume.capacity * GiB,
            volume_context=context,
            accessible_topology=[types.Topology(segments=segments)],
            content_source=content_source,
        )

    def CreateVolume(
        self,
        name="",
        capacity_range=None,
        volume_capabilities=(),
        parameters=None,
        secrets=None,
        volume_content_source=None,
        accessibility_requirements=None,
        request_id="",
    ):
        if not name:
            raise UserError("MissingVolumeName", request_id)
        if not volume_capabilities:
            raise UserError("NoVolumeCapabilities", request_id)
        if not capabilities_supported(volume_capabilities):
            raise UserError("VolumeCapabilitiesNotSupported", request_id)

        snapshot_id = ""
        source = parse_snapshot_crn("")
        if volume_content_source is not None:
            if not volume_content_source.HasField("snapshot"):
                raise UserError("UnsupportedVolumeContentSource", request_id)
            snapshot_id = volume_content_source.snapshot.snapshot_id
            source = parse_snapshot_crn(snapshot_id)

        try:
            requested = VolumeRequest.from_parameters(
                name,
                capacity_range,
                volume_capabilities,
                parameters=parameters,
                secrets=secrets,
                accessibility_requirements=accessibility_requirements,
                default_resource_group=self.driver.resource_group_id,
                snapshot_id=source.snapshot_id,
                # a full CRN lets the backend resolve snapshots shared from other accounts
                snapshot_crn=snapshot_id if source.account_id else "",
            )
        except CapacityOutOfRange as exc:
            raise UserError(
                "VolumeCapacityOutOfRange", request_id, error=exc, args=(exc.capacity, exc.profile)
            ) from exc
        except InvalidParameter as exc:
            raise UserError("InvalidParameters", request_id, error=exc) from exc

        provider = self.driver.provider(request_id)
        volume = self._find_volume(provider, request_id, name=requested.name)
        if volume is not None:
            if volume.capacity != requested.capacity:
                raise UserError("VolumeAlreadyExists", request_id, args=(name, volume.capacity))
            logger.info(f"Volume {name} already exists as {volume.id}")
        else:
            try:
                volume = provider.create_volume(requested)
            except ProviderError as exc:
                if exc.kind == SNAPSHOT_ID_NOT_FOUND:
                    raise UserError("SnapshotNotFound", request_id, error=exc, args=(snapshot_id,)) from exc
                raise user_error(exc, request_id, "VolumeCreationFailed") from exc

        return types.CreateResp(
            volume=self._volume_response(volume, region=requested.region, snapshot_id=snapshot_id)
        )

    def DeleteVolume(self, volume_id="", request_id=""):
        if not volume_id:
            raise UserError("EmptyVolumeID", request_id)
        if not is_valid_volume_id(volume_id):
            logger.info(f"{volume_id!r} is not a volume id - nothing to delete")
            return types.DeleteResp()

        provider = self.driver.provider(request_id)
        if self._find_volume(provider, request_id, volume_id=volume_id) is None:
            return types.DeleteResp()

        with provider_errors(request_id, "VolumeDeletionFailed", volume_id):
            provider.delete_volume(volume_id)
        return types.DeleteResp()

    def ControllerPublishVolume(self, volume_id="", node_id="", volume_capability=None, request_id=""):
        if not volume_id:
            raise UserError("EmptyVolumeID", request_id)
        if not node_id:
            raise UserError("EmptyNodeID", request_id)
        if volume_capability is None:
            raise UserError("NoVolumeCapability", request_id)
        if not capabilities_supported([volume_capability]):
            raise UserError("VolumeCapabilitiesNotSupported", request_id)

        with self.driver.node_locks.locked(node_id):
            provider = self.driver.provider(request_id)
            if self._find_volume(provider, request_id, volume_id=volume_id) is None:
                raise UserError("VolumeNotFound", request_id, args=(volume_id,))
            try:
                attachment = provider.attach_volume(volume_id, node_id)
                attachment = provider.wait_for_attach(volume_id, node_id, attachment.id)
            except ProviderError as exc:
                msg_code = "VolumeAttachTimedOut" if exc.kind == ATTACH_TIMED_OUT else "CreateVolumeAttachmentFailed"
                raise user_error(exc, request_id, msg_code, volume_id, node_id) from exc

        return types.CtrlPublishResp(
            publish_context={
                "volume-id": volume_id,
                "node-id": node_id,
                "attach-status": attachment.status,
                "device-path": attachment.device_path,
                "request-id": request_id,
            }
        )

    def ControllerUnpublishVolume(self, volume_id="", node_id="", request_id=""):
        if not volume_id:
            raise UserError("EmptyVolumeID", request_id)
        if not node_id:
            raise UserError("EmptyNodeID", request_id)

        with self.driver.node_locks.locked(node_id):
            provider = self.driver.provider(request_id)
            try:
                if provider.detach_volume(volume_id, node_id) is not None:
                    provider.wait_for_detach(volume_id, node_id)
            except ProviderError as exc:
                msg_code = "VolumeDetachTimedOut" if exc.kind == DETACH_TIMED_OUT else "DetachVolumeFailed"
                raise user_error(exc, request_id, msg_code, volume_id, node_id) from exc
        return types.CtrlUnpublishResp()

    def ControllerExpandVolume(self, volume_id, capacity_range, request_id=""):
        provider = self.driver.provider(request_id)
        volume = self._find_volume(provider, request_id, volume_id=volume_id)
        if volume is None:
            raise UserError("VolumeNotFound", request_id, args=(volume_id,))

        try:
            capacity = requested_capacity(capacity_range, volume.profile)
        except CapacityOutOfRange as exc:
            raise UserError(
                "VolumeCapacityOutOfRange", request_id, error=exc, args=(exc.capacity, exc.profile)
            ) from exc
        except InvalidParameter as exc:
            raise UserError("InvalidParameters", request_id, error=exc) from exc

        with provider_errors(request_id, "VolumeExpansionFailed", volume_id, capacity):
            capacity = provider.expand_volume(volume_id, capacity)
        return types.CtrlExpandResp(capacity_bytes=capacity * GiB, node_expansion_required=True)

    def ValidateVolumeCapabilities(
        self, volume_id, volume_capabilities=(), volume_context=None, parameters=None, request_id="",
    ):
        if not volume_capabilities:
            raise UserError("NoVolumeCapabilities", request_id)

        provider = self.driver.provider(request_id)
        if self._find_volume(provider, request_id, volume_id=volume_id) is None:
            raise UserError("VolumeNotFound", request_id, args=(volume_id,))

        if not capabilities_supported(volume_capabilities):
            return types.ValidateResp(message="Only SINGLE_NODE_WRITER is supported")
        return types.ValidateResp(
            confirmed=types.ValidateResp.Confirmed(
                volume_context=volume_context or {},
                volume_capabilities=volume_capabilities,
                parameters=parameters or {},
            )
        )

    def ListVolumes(self, max_entries=0, starting_token="", request_id=""):
        provider = self.driver.provider(request_id)
        resource_group_id = self.driver.resource_group_id
        filters = {"resource_group.id": resource_group_id} if resource_group_id else None
        try:
            volumes, next_token = provider.list_volumes(
                max_entries or DEFAULT_LIST_LIMIT, start=starting_token, filters=filters
            )
        except ProviderError as exc:
            if exc.kind == INVALID_LIST_LIMIT:
                raise user_error(exc, request_id, "InvalidListVolumesLimit", max_entries) from exc
            if exc.kind == START_VOLUME_NOT_FOUND:
                raise user_error(exc, request_id, "InvalidStartVolumeID", starting_token) from exc
            raise user_error(exc, request_id, "ListVolumesFailed") from exc

        entries = [
            types.ListEntry(
                volume=types.Volume(
                    volume_id=volume.id,
                    capacity_bytes=volume.capacity * GiB,
                    accessible_topology=[types.Topology(segments={ZONE_LABEL: volume.zone})] if volume.zone else [],
                )
            )
            for volume in volumes
        ]
        return types.ListResp(entries=entries, next_token=next_token)

    def _require_snapshots(self, request_id, context):
        if self.driver.config.snapshot_enabled:
            return
        logger.warning(f"Snapshots are disabled, delaying the response by {SNAPSHOT_DISABLED_DELAY}s")
        cancellable_sleep(SNAPSHOT_DISABLED_DELAY, context)
        raise UserError("SnapshotUnsupported", request_id)

    def _is_foreign(self, account_id):
        own = self.driver.account_id
        return bool(own and account_id and own != account_id)

    def CreateSnapshot(self, name="", source_volume_id="", parameters=None, request_id="", context=None):
        self._require_snapshots(request_id, context)
        if not name:
            raise UserError("MissingSnapshotName", request_id)
        if not source_volume_id:
            raise UserError("MissingSourceVolumeID", request_id)

        provider = self.driver.provider(request_id)
        with provider_errors(request_id, "InternalError"):
            snapshot = provider.find_snapshot_by_name(name)
        if snapshot is not None:
            if snapshot.source_volume_id != source_volume_id:
                raise UserError("SnapshotAlreadyExists", request_id, args=(name, source_volume_id))
            logger.info(f"Snapshot {name} of {source_volume_id} already exists as {snapshot.id}")
            return types.CreateSnapResp(snapshot=snapshot_response(snapshot))

        if self._find_volume(provider, request_id, volume_id=source_volume_id) is None:
            raise UserError("VolumeNotFound", request_id, args=(source_volume_id,))

        tags = [t.strip() for t in (parameters or {}).get("tags", "").split(",") if t.strip()]
        try:
            snapshot = provider.create_snapshot(source_volume_id, name, tags=tags)
        except ProviderError as exc:
            delay = self.driver.config.snapshot_create_delay
            logger.error(f"Failed to create snapshot {name}, delaying the response by {delay}s: {exc}")
            cancellable_sleep(delay, context)
            raise user_error(exc, request_id, "SnapshotCreationFailed", source_volume_id) from exc
        return types.CreateSnapResp(snapshot=snapshot_response(snapshot))

    def DeleteSnapshot(self, snapshot_id="", request_id="", context=None):
        self._require_snapshots(request_id, context)
        if not snapshot_id:
            raise UserError("EmptySnapshotID", request_id)

        backend_id = parse_snapshot_crn(snapshot_id).snapshot_id
        provider = self.driver.provider(request_id)
        try:
            provider.get_snapshot(backend_id)
            provider.delete_snapshot(backend_id)
        except ProviderError as exc:
            if exc.kind in ABSENT_KINDS:
                logger.info(f"Snapshot {snapshot_id} is already gone ({exc})")
                return types.DeleteSnapResp()
            raise user_error(exc, request_id, "SnapshotDeletionFailed", snapshot_id) from exc
        return types.DeleteSnapResp()

    def ListSnapshots(
        self, max_entries=0, starting_token="", source_volume_id="", snapshot_id="", request_id="", context=None,
    ):
        self._require_snapshots(request_id, context)
        provider = self.driver.provider(request_id)

        if snapshot_id:
            crn = parse_snapshot_crn(snapshot_id)
            if self._is_foreign(crn.account_id):
                # not visible to this account; restore will go through the CRN
                logger.info(f"Snapshot {snapshot_id} belongs to account {crn.account_id}")
                created = types.Timestamp()
                created.GetCurrentTime()
                snapshot = types.Snapshot(snapshot_id=snapshot_id, ready_to_use=True, creation_time=created)
                return types.ListSnapResp(entries=[types.SnapEntry(snapshot=snapshot)])
            try:
                snapshot = provider.get_snapshot(crn.snapshot_id)
            except ProviderError as exc:
                if exc.kind in ABSENT_KINDS:
                    return types.ListSnapResp()
                raise user_error(exc, request_id, "ListSnapshotsFailed") from exc
            return types.ListSnapResp(entries=[types.SnapEntry(snapshot=snapshot_response(snapshot))])

        filters = {"source_volume.id": source_volume_id} if source_volume_id else None
        try:
            snapshots, next_token = provider.list_snapshots(
                max_entries or DEFAULT_LIST_LIMIT, start=starting_token, filters=filters
            )
        except ProviderError as exc:
            if exc.kind == INVALID_LIST_LIMIT:
                raise user_error(exc, request_id, "InvalidListVolumesLimit", max_entries) from exc
            if exc.kind == START_SNAPSHOT_NOT_FOUND:
                raise user_error(exc, request_id, "InvalidStartSnapshotID", starting_token) from exc
            raise user_error(exc, request_id, "ListSnapshotsFailed") from exc

        return types.ListSnapResp(
            entries=[types.SnapEntry(snapshot=snapshot_response(s)) for s in snapshots],
            next_token=next_token,
        )

    def GetCapacity(self, request_id=""):
        raise UserError("MethodUnimplemented", request_id, args=("GetCapacity",))

    def ControllerGetVolume(self, request_id=""):
        raise UserError("MethodUnimplemented", request_id, args=("ControllerGetVolume",))

    def ControllerModifyVolume(self, request_id=""):
        raise UserError("MethodUnimplemented", request_id, args=("ControllerModifyVolume",))


################################################################
#
# Node
#
################################################################


class Node(csi_grpc.NodeServicer, Instrumented):
    """All node RPCs run one at a time, under the driver's node mutex"""

    CAPABILITIES = [
        types.NodeCapabilityType.STAGE_UNSTAGE_VOLUME,
        types.NodeCapabilityType.GET_VOLUME_STATS,
        types.NodeCapabilityType.EXPAND_VOLUME,
    ]

    def __init__(self, driver):
        self.driver = driver

    @property
    def mounter(self):
        return self.driver.mounter

    def NodeGetCapabilities(self):
        return types.NodeCapabilityResp(
            capabilities=[
                types.NodeCapability(rpc=types.NodeCapability.RPC(type=rpc))
                for rpc in self.CAPABILITIES
            ]
        )

    def _check_capability(self, volume_capability, request_id):
        if volume_capability is None:
            raise UserError("NoVolumeCapability", request_id)
        if not capabilities_supported([volume_capability]):
            raise UserError("VolumeCapabilitiesNotSupported", request_id)

    def _find_device_path(self, device_path, request_id):
        if self.mounter.path_exists(device_path):
            return device_path
        logger.info(f"{device_path} not found, rescanning devices")
        self.mounter.rescan()
        sleep(UDEV_SETTLE_SECONDS)
        if self.mounter.path_exists(device_path):
            return device_path
        raise UserError("DevicePathNotFound", request_id, args=(device_path,))

    def NodeStageVolume(
        self,
        volume_id="",
        staging_target_path="",
        volume_capability=None,
        publish_context=None,
        request_id="",
    ):
        with self.driver.node_mutex:
            if not volume_id:
                raise UserError("EmptyVolumeID", request_id)
            if not staging_target_path:
                raise UserError("EmptyStagingPath", request_id)
            self._check_capability(volume_capability, request_id)

            if volume_capability.HasField("block"):
                logger.info(f"{volume_id} is a raw block volume, nothing to stage")
                return types.StageResp()

            device_path = (publish_context or {}).get("device-path", "")
            if not device_path:
                raise UserError("EmptyDevicePath", request_id)
            device_path = self._find_device_path(device_path, request_id)

            if not self.mounter.path_exists(staging_target_path):
                try:
                    self.mounter.make_dir(staging_target_path)
                except OSError as exc:
                    raise UserError(
                        "TargetPathCreateFailed", request_id, error=exc, args=(staging_target_path,)
                    ) from exc

            mounted = self.mounter.device_of(staging_target_path)
            if mounted:
                if os.path.realpath(mounted) == os.path.realpath(device_path):
                    logger.info(f"{device_path} is already staged at {staging_target_path}")
                    return types.StageResp()
                raise UserError(
                    "MountFailed", request_id, error=f"{staging_target_path} is already mounted from {mounted}",
                    args=(device_path, staging_target_path),
                )

            fs_type = volume_capability.mount.fs_type or DEFAULT_FS
            options = list(volume_capability.mount.mount_flags)
            try:
                self.mounter.format_and_mount(device_path, staging_target_path, fs_type, options)
            except (MountFailed, FormatFailed) as exc:
                raise UserError(
                    "FormatAndMountFailed", request_id, error=exc.render(color=False),
                    args=(device_path, staging_target_path),
                ) from exc

            try:
                self.mounter.resize_fs(device_path, staging_target_path)
            except ResizeFailed as exc:
                logger.warning(f"Could not grow the filesystem on {device_path}: {exc.render(color=False)}")
            return types.StageResp()

    def NodeUnstageVolume(self, volume_id="", staging_target_path="", request_id=""):
        with self.driver.node_mutex:
            if not volume_id:
                raise UserError("EmptyVolumeID", request_id)
            if not staging_target_path:
                raise UserError("EmptyStagingPath", request_id)
            self._cleanup(staging_target_path, request_id)
            return types.UnstageResp()

    def _cleanup(self, path, request_id):
        try:
            self.mounter.cleanup_mount_point(path)
        except (OSError, TException) as exc:
            raise UserError("UnmountFailed", request_id, error=exc, args=(path,)) from exc

    def NodePublishVolume(
        self,
        volume_id="",
        target_path="",
        staging_target_path="",
        volume_capability=None,
        publish_context=None,
        readonly=False,
        request_id="",
    ):
        with self.driver.node_mutex:
            if not volume_id:
                raise UserError("EmptyVolumeID", request_id)
            if not target_path:
                raise UserError("EmptyTargetPath", request_id)
            self._check_capability(volume_capability, request_id)

            if self.mounter.is_mount_point(target_path):
                logger.info(f"{target_path} is already mounted")
                return types.NodePublishResp()

            if volume_capability.HasField("block"):
                device_path = (publish_context or {}).get("device-path", "")
                if not device_path:
                    raise UserError("EmptyDevicePath", request_id)
                source = self._find_device_path(device_path, request_id)
                make_target = self.mounter.make_file
            else:
                if not staging_target_path:
                    raise UserError("EmptyStagingPath", request_id)
                source = staging_target_path
                make_target = self.mounter.make_dir

            try:
                make_target(target_path)
            except OSError as exc:
                raise UserError("TargetPathCreateFailed", request_id, error=exc, args=(target_path,)) from exc
            try:
                self.mounter.bind_mount(source, target_path, readonly=readonly)
            except MountFailed as exc:
                raise UserError(
                    "MountFailed", request_id, error=exc.render(color=False), args=(source, target_path)
                ) from exc
            return types.NodePublishResp()

    def NodeUnpublishVolume(self, volume_id="", target_path="", request_id=""):
        with self.driver.node_mutex:
            if not volume_id:
                raise UserError("EmptyVolumeID", request_id)
            if not target_path:
                raise UserError("EmptyTargetPath", request_id)
            self._cleanup(target_path, request_id)
            return types.NodeUnpublishResp()

    def NodeExpandVolume(
        self, volume_id="", volume_path="", capacity_range=None, volume_capability=None, request_id="",
    ):
        with self.driver.node_mutex:
            if not volume_id:
                raise UserError("EmptyVolumeID", request_id)
            if not volume_path:
                raise UserError("EmptyVolumePath", request_id)

            if volume_capability is not None and volume_capability.HasField("block"):
                device = self.mounter.device_of(volume_path) or volume_path
                return types.NodeExpandResp(capacity_bytes=self._block_size(device, request_id))

            device = self.mounter.device_of(volume_path)
            if not device:
                raise UserError("VolumePathNotMounted", request_id, args=(volume_path,))
            try:
                self.mounter.resize_fs(device, volume_path)
            except ResizeFailed as exc:
                raise UserError("FileSystemResizeFailed", request_id, error=exc.render(color=False)) from exc

            if capacity_range is not None and capacity_range.required_bytes:
                return types.NodeExpandResp(capacity_bytes=capacity_range.required_bytes)
            return types.NodeExpandResp(capacity_bytes=self._block_size(device, request_id))

    def _block_size(self, device, request_id):
        try:
            return self.mounter.block_size(device)
        except (OSError, ValueError, TException) as exc:
            raise UserError("GetDeviceInfoFailed", request_id, error=exc) from exc

    def NodeGetVolumeStats(self, volume_id="", volume_path="", request_id=""):
        with self.driver.node_mutex:
            if not volume_id:
                raise UserError("EmptyVolumeID", request_id)
            if not volume_path:
                raise UserError("EmptyVolumePath", request_id)
            if not self.mounter.path_exists(volume_path):
                raise UserError("VolumePathNotFound", request_id, args=(volume_path,))

            if self.mounter.is_block_device(volume_path):
                total = self._block_size(volume_path, request_id)
                return types.VolumeStatsResp(
                    usage=[types.VolumeUsage(total=total, unit=types.UsageUnit.BYTES)]
                )

            try:
                stats = self.mounter.stats(volume_path)
            except OSError as exc:
                raise UserError("GetDeviceInfoFailed", request_id, error=exc) from exc
            return types.VolumeStatsResp(
                usage=[
                    types.VolumeUsage(
                        available=stats.f_bavail * stats.f_frsize,
                        total=stats.f_blocks * stats.f_frsize,
                        used=(stats.f_blocks - stats.f_bfree) * stats.f_frsize,
                        unit=types.UsageUnit.BYTES,
                    ),
                    types.VolumeUsage(
                        available=stats.f_favail,
                        total=stats.f_files,
                        used=stats.f_files - stats.f_ffree,
                        unit=types.UsageUnit.INODES,
                    ),
                ]
            )

    def NodeGetInfo(self, request_id=""):
        try:
            metadata = self.driver.node_metadata
        except NodeMetadataMissing as exc:
            raise UserError("NodeMetadataInitFailed", request_id, error=exc.render(color=False)) from exc
        return types.NodeInfoResp(
            node_id=metadata.worker_id,
            max_volumes_per_node=self.driver.max_volumes_per_node,
            accessible_topology=types.Topology(
                segments={REGION_LABEL: metadata.region, ZONE_LABEL: metadata.zone}
            ),
        )


################################################################
#
# Serving
#
################################################################


def serve(endpoint, metrics_address=None):
    patch_traceback_format()
    conf = Config()
    init_logging(level=conf.log_level)
    logger.info("%s: %s (%s)", conf.driver_name, conf.driver_version, conf.git_commit)

    driver = Driver(conf)
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=conf.worker_threads))
    csi_grpc.add_IdentityServicer_to_server(Identity(driver), server)
    csi_grpc.add_ControllerServicer_to_server(Controller(driver), server)
    csi_grpc.add_NodeServicer_to_server(Node(driver), server)

    socket_path = parse_endpoint(endpoint)
    if socket_path:
        remove_paths(socket_path)
        server.add_insecure_port(f"unix:{socket_path}")
    else:
        server.add_insecure_port(endpoint.partition(":")[2] if endpoint.startswith("tcp:") else endpoint)
    server.start()

    if socket_path:
        os.chown(socket_path, -1, conf.sidecar_group_id)
        os.chmod(socket_path, 0o660)

    def on_sigterm(signum, frame):
        logger.info("SIGTERM received, shutting down")
        server.stop(grace=None)
        remove_paths(*filter(None, [socket_path, *conf.legacy_plugin_paths]))

    signal.signal(signal.SIGTERM, on_sigterm)

    if metrics_address:
        start_metrics_server(metrics_address)

    if conf.pv_watcher_enabled:
        from .reconciler import PVReconciler
        PVReconciler(driver).start()

    logger.info(f"Server started, listening on {endpoint}, spawned threads {conf.worker_threads}")
    server.wait_for_termination()
