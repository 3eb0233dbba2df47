"""
Provider session: the operations the controller performs against the cloud, with their convergence waits.

Every backend call is funneled through a retry policy (see `retry.py`); failures surface as `ProviderError`
with one of the kinds below and the `BackendError` that caused them.
"""

from easypy.bunch import Bunch

from .exceptions import BackendError, ProviderError
from .logging import request_logger
from .retry import OK, RETRY, STOP, Exponential, CustomGap, is_terminal
from .vpc_client import next_start_token, MAX_LIST_LIMIT

GiB = 1 << 30

STATUS_AVAILABLE = "available"
STATUS_ATTACHED = "attached"
STATUS_DETACHING = "detaching"
SNAPSHOT_STABLE = "stable"

PROVIDER_G2 = "g2"
G2_DEVICE_PREFIX = "/dev/disk/by-id/virtio-"
G2_DEVICE_ID_LEN = 20
GC_DEVICE_PREFIX = "/dev/"

START_NOT_VALID_MSG = "start parameter is not valid"

NOT_FOUND_CODES = frozenset([
    "not_found",
    "volume_id_not_found",
    "volume_name_not_found",
    "snapshot_id_not_found",
    "snapshots_not_found",
    "ST0008",
    "ST0014",
])

# ProviderError kinds
ENTITY_NOT_FOUND = "EntityNotFound"
RETRIEVAL_FAILED = "RetrievalFailed"
CREATE_FAILED = "FailedToPlaceOrder"
SNAPSHOT_ID_NOT_FOUND = "SnapshotIDNotFound"
NOT_IN_VALID_STATE = "VolumeNotInValidState"
DELETE_FAILED = "FailedToDeleteVolume"
EXPAND_FAILED = "FailedToExpandVolume"
UPDATE_FAILED = "FailedToUpdateVolume"
LIST_FAILED = "ListVolumesFailed"
INVALID_LIST_LIMIT = "InvalidListVolumesLimit"
START_VOLUME_NOT_FOUND = "StartVolumeIDNotFound"
START_SNAPSHOT_NOT_FOUND = "StartSnapshotIDNotFound"
SNAPSHOT_CREATE_FAILED = "SnapshotSpaceOrderFailed"
SNAPSHOT_DELETE_FAILED = "SnapshotDeleteFailed"
ATTACH_FAILED = "VolumeAttachFailed"
ATTACH_FIND_FAILED = "VolumeAttachFindFailed"
ATTACH_TIMED_OUT = "VolumeAttachTimedOut"
DETACH_FAILED = "VolumeDetachFailed"
DETACH_TIMED_OUT = "VolumeDetachTimedOut"

ABSENT_KINDS = (ENTITY_NOT_FOUND, RETRIEVAL_FAILED)


def is_not_found(error: BackendError) -> bool:
    return error.code in NOT_FOUND_CODES or error.http_status == 404


def device_path(device_id, provider_type=PROVIDER_G2):
    if not device_id:
        return ""
    if provider_type == PROVIDER_G2:
        return G2_DEVICE_PREFIX + device_id[:G2_DEVICE_ID_LEN]
    return GC_DEVICE_PREFIX + device_id


def volume_info(volume, region=""):
    return Bunch(
        id=volume.id,
        name=volume.get("name", ""),
        capacity=volume.get("capacity", 0),
        iops=str(volume.iops) if volume.get("iops") else "",
        profile=(volume.get("profile") or {}).get("name", ""),
        zone=(volume.get("zone") or {}).get("name", ""),
        region=region,
        resource_group_id=(volume.get("resource_group") or {}).get("id", ""),
        crn=volume.get("crn", ""),
        tags=list(volume.get("user_tags") or []),
        status=volume.get("status", ""),
        created_at=volume.get("created_at", ""),
        snapshot_id=(volume.get("source_snapshot") or {}).get("id", ""),
    )


def snapshot_info(snapshot):
    return Bunch(
        id=snapshot.id,
        crn=snapshot.get("crn", ""),
        name=snapshot.get("name", ""),
        source_volume_id=(snapshot.get("source_volume") or {}).get("id", ""),
        size_bytes=int(snapshot.get("minimum_capacity") or 0) * GiB,
        ready=snapshot.get("lifecycle_state") == SNAPSHOT_STABLE,
        created_at=snapshot.get("created_at", ""),
    )


class ProviderSession:
    """
    Bound to one request: its id is sent to the backend with every call and prefixes every log line.
    `policy` paces the short API calls, `poll_policy` the attach/detach waits.
    """

    def __init__(
            self, client, request_id="", cluster_id="", provider_type=PROVIDER_G2, policy=None, poll_policy=None,
    ):
        self.client = client
        self.request_id = request_id
        self.cluster_id = cluster_id
        self.provider_type = provider_type
        self.policy = policy or Exponential(iks=client.iks)
        self.poll_policy = poll_policy or CustomGap(iks=client.iks)
        self.log = request_logger(request_id)

    def __repr__(self):
        return f"ProviderSession({self.request_id}, {self.provider_type}, iks={self.client.iks})"

    def _call(self, fn, *args, **kwargs):
        return self.policy.call(fn, *args, request_id=self.request_id, **kwargs)

    # ----------------------------
    # Volumes
    def create_volume(self, request):
        """Create the volume described by a `VolumeRequest` and wait for it to become available"""
        template = dict(
            name=request.name,
            capacity=request.capacity,
            profile=dict(name=request.profile),
            zone=dict(name=request.zone),
            user_tags=list(request.tags),
        )
        if request.resource_group_id:
            template["resource_group"] = dict(id=request.resource_group_id)
        if request.iops:
            template["iops"] = int(request.iops)
        if request.throughput is not None:
            template["bandwidth"] = request.throughput
        if request.encryption_key:
            template["encryption_key"] = dict(crn=request.encryption_key)
        if request.snapshot_crn:
            template["source_snapshot"] = dict(crn=request.snapshot_crn)
        elif request.snapshot_id:
            template["source_snapshot"] = dict(id=request.snapshot_id)

        self.log.info(f"Creating volume {request.name} ({request.capacity}GiB, {request.profile}, {request.zone})")
        try:
            volume = self._call(self.client.create_volume, template)
        except BackendError as exc:
            kind = SNAPSHOT_ID_NOT_FOUND if exc.code == "snapshot_id_not_found" else CREATE_FAILED
            raise ProviderError(kind, f"Failed to create volume {request.name}", backend_error=exc) from exc

        volume = self.wait_for_available(volume.id)
        info = volume_info(volume, region=request.region)
        if not info.tags and request.tags:
            info.tags = list(request.tags)
        self.log.info(f"Volume {info.id} is available")
        return info

    def wait_for_available(self, volume_id):
        def attempt():
            try:
                volume = self.client.get_volume(volume_id, request_id=self.request_id)
            except BackendError as exc:
                return (STOP if is_terminal(exc, self.client.iks) else RETRY), exc
            if volume.status == STATUS_AVAILABLE:
                return OK, volume
            return RETRY, ProviderError(NOT_IN_VALID_STATE, f"Volume {volume_id} is {volume.status}")

        try:
            return self.policy.run(attempt, what=f"wait for volume {volume_id}")
        except (BackendError, ProviderError) as exc:
            backend_error = exc if isinstance(exc, BackendError) else None
            raise ProviderError(
                NOT_IN_VALID_STATE, f"Volume {volume_id} did not become available", backend_error=backend_error
            ) from exc

    def _lookup(self, fn, key, what):
        try:
            return self._call(fn, key)
        except BackendError as exc:
            kind = ENTITY_NOT_FOUND if is_not_found(exc) else RETRIEVAL_FAILED
            raise ProviderError(kind, f"{what} {key!r} not found", backend_error=exc) from exc

    def get_volume(self, volume_id):
        return volume_info(self._lookup(self.client.get_volume, volume_id, "Volume"))

    def get_volume_by_name(self, name):
        return volume_info(self._lookup(self.client.get_volume_by_name, name, "Volume with name"))

    def find_volume(self, volume_id="", name=""):
        """The volume, or None when the backend cannot find (or retrieve) it"""
        try:
            return self.get_volume(volume_id) if volume_id else self.get_volume_by_name(name)
        except ProviderError as exc:
            if exc.kind in ABSENT_KINDS:
                self.log.info(f"Volume {volume_id or name} does not exist ({exc})")
                return None
            raise

    def delete_volume(self, volume_id):
        self.log.info(f"Deleting volume {volume_id}")
        try:
            self._call(self.client.delete_volume, volume_id)
        except BackendError as exc:
            if not is_not_found(exc):
                raise ProviderError(DELETE_FAILED, f"Failed to delete volume {volume_id}", backend_error=exc) from exc
        self.wait_for_deletion(volume_id)

    def wait_for_deletion(self, volume_id):
        def attempt():
            try:
                volume = self.client.get_volume(volume_id, request_id=self.request_id)
            except BackendError as exc:
                if is_not_found(exc):
                    return OK, None
                return (STOP if is_terminal(exc, self.client.iks) else RETRY), exc
            return RETRY, ProviderError(DELETE_FAILED, f"Volume {volume_id} is still {volume.status}")

        try:
            self.policy.run(attempt, what=f"wait for deletion of volume {volume_id}")
        except BackendError as exc:
            raise ProviderError(DELETE_FAILED, f"Failed to delete volume {volume_id}", backend_error=exc) from exc

    def expand_volume(self, volume_id, capacity):
        """Grow the volume to `capacity` GiB; returns the resulting capacity"""
        volume = self.get_volume(volume_id)
        if volume.capacity >= capacity:
            self.log.info(f"Volume {volume_id} already has {volume.capacity}GiB (requested {capacity}GiB)")
            return volume.capacity
        self.log.info(f"Expanding volume {volume_id} from {volume.capacity}GiB to {capacity}GiB")
        try:
            self._call(self.client.expand_volume, volume_id, capacity)
        except BackendError as exc:
            raise ProviderError(EXPAND_FAILED, f"Failed to expand volume {volume_id}", backend_error=exc) from exc
        self.wait_for_available(volume_id)
        return capacity

    def update_volume(self, volume_id, tags):
        """Merge `tags` into the volume's tags; the PATCH is skipped when nothing changes"""
        self.wait_for_available(volume_id)
        try:
            volume, etag = self._call(self.client.get_volume_etag, volume_id)
        except BackendError as exc:
            raise ProviderError(UPDATE_FAILED, f"Failed to read volume {volume_id}", backend_error=exc) from exc

        existing = list(volume.get("user_tags") or [])
        merged = existing + [t for t in dict.fromkeys(tags) if t not in existing]
        if set(merged) == set(existing):
            self.log.info(f"Tags of volume {volume_id} are up to date")
            return False
        try:
            self._call(self.client.update_volume, volume_id, dict(user_tags=merged), etag)
        except BackendError as exc:
            raise ProviderError(UPDATE_FAILED, f"Failed to update volume {volume_id}", backend_error=exc) from exc
        self.log.info(f"Volume {volume_id} tagged with {merged}")
        return True

    def _list(self, fn, key, limit, start, filters, invalid_start_kind, what):
        if limit < 0:
            raise ProviderError(INVALID_LIST_LIMIT, f"The maximum entries {limit} requested for {what} is invalid")
        limit = min(limit, MAX_LIST_LIMIT)

        def attempt():
            try:
                return OK, fn(limit, start=start, filters=filters, request_id=self.request_id)
            except BackendError as exc:
                if START_NOT_VALID_MSG in exc.message:
                    return STOP, ProviderError(invalid_start_kind, start, backend_error=exc)
                return (STOP if is_terminal(exc, self.client.iks) else RETRY), exc

        try:
            page = self.policy.run(attempt, what=what)
        except BackendError as exc:
            raise ProviderError(LIST_FAILED, f"Failed to list {what}", backend_error=exc) from exc
        return page.get(key) or [], next_start_token(page)

    def list_volumes(self, limit, start="", filters=None):
        volumes, token = self._list(
            self.client.list_volumes, "volumes", limit, start, filters, START_VOLUME_NOT_FOUND, "volumes"
        )
        return [volume_info(v) for v in volumes], token

    # ----------------------------
    # Snapshots
    def create_snapshot(self, source_volume_id, name, tags=()):
        template = dict(name=name, source_volume=dict(id=source_volume_id))
        if tags:
            template["user_tags"] = list(tags)
        self.log.info(f"Creating snapshot {name} of volume {source_volume_id}")
        try:
            snapshot = self._call(self.client.create_snapshot, template)
        except BackendError as exc:
            raise ProviderError(
                SNAPSHOT_CREATE_FAILED, f"Failed to create snapshot {name} of {source_volume_id}", backend_error=exc
            ) from exc
        return snapshot_info(snapshot)

    def get_snapshot(self, snapshot_id):
        return snapshot_info(self._lookup(self.client.get_snapshot, snapshot_id, "Snapshot"))

    def get_snapshot_by_name(self, name):
        return snapshot_info(self._lookup(self.client.get_snapshot_by_name, name, "Snapshot with name"))

    def find_snapshot_by_name(self, name):
        try:
            return self.get_snapshot_by_name(name)
        except ProviderError as exc:
            if exc.kind in ABSENT_KINDS:
                return None
            raise

    def delete_snapshot(self, snapshot_id):
        self.log.info(f"Deleting snapshot {snapshot_id}")
        try:
            self._call(self.client.delete_snapshot, snapshot_id)
        except BackendError as exc:
            kind = ENTITY_NOT_FOUND if is_not_found(exc) else SNAPSHOT_DELETE_FAILED
            raise ProviderError(kind, f"Failed to delete snapshot {snapshot_id}", backend_error=exc) from exc

    def list_snapshots(self, limit, start="", filters=None):
        snapshots, token = self._list(
            self.client.list_snapshots, "snapshots", limit, start, filters, START_SNAPSHOT_NOT_FOUND, "snapshots"
        )
        return [snapshot_info(s) for s in snapshots], token

    # ----------------------------
    # Attachments
    def _attachment_info(self, attachment, volume_id, instance_id):
        status = attachment.get("status", "")
        device_id = (attachment.get("device") or {}).get("id", "")
        return Bunch(
            id=attachment.id,
            volume_id=(attachment.get("volume") or {}).get("id", volume_id),
            instance_id=instance_id,
            status=status,
            device_path=device_path(device_id, self.provider_type) if status == STATUS_ATTACHED else "",
        )

    def get_volume_attachment(self, volume_id, instance_id, attachment_id=None):
        """Look the attachment up by its id when known, else by the (volume, instance) pair"""
        attachments = self.client.attachments
        kwargs = dict(request_id=self.request_id, cluster_id=self.cluster_id)
        try:
            if attachment_id:
                attachment = self._call(attachments.get, instance_id, attachment_id, **kwargs)
                return self._attachment_info(attachment, volume_id, instance_id)
            items = self._call(attachments.list, instance_id, **kwargs)
        except BackendError as exc:
            raise ProviderError(
                ATTACH_FIND_FAILED, f"Attachment of {volume_id} to {instance_id} not found", backend_error=exc
            ) from exc
        for attachment in items:
            if (attachment.get("volume") or {}).get("id") == volume_id:
                return self._attachment_info(attachment, volume_id, instance_id)
        raise ProviderError(ATTACH_FIND_FAILED, f"no VolumeAttachment Found for {volume_id} on {instance_id}")

    def find_volume_attachment(self, volume_id, instance_id, attachment_id=None):
        try:
            return self.get_volume_attachment(volume_id, instance_id, attachment_id)
        except ProviderError as exc:
            if exc.kind == ATTACH_FIND_FAILED:
                return None
            raise

    def attach_volume(self, volume_id, instance_id):
        """Attach, unless an attachment that is not being torn down already exists"""
        kwargs = dict(request_id=self.request_id, cluster_id=self.cluster_id)

        def attempt():
            current = self.find_volume_attachment(volume_id, instance_id)
            if current is not None and current.status != STATUS_DETACHING:
                self.log.info(f"Volume {volume_id} is already attached to {instance_id} ({current.status})")
                return OK, current
            try:
                attachment = self.client.attachments.attach(instance_id, volume_id, **kwargs)
            except BackendError as exc:
                return (STOP if is_terminal(exc, self.client.iks) else RETRY), exc
            return OK, self._attachment_info(attachment, volume_id, instance_id)

        self.log.info(f"Attaching volume {volume_id} to {instance_id}")
        try:
            return self.policy.run(attempt, what=f"attach {volume_id}")
        except BackendError as exc:
            raise ProviderError(
                ATTACH_FAILED, f"Failed to attach {volume_id} to {instance_id}", backend_error=exc
            ) from exc

    def wait_for_attach(self, volume_id, instance_id, attachment_id=None):
        def attempt():
            try:
                current = self.get_volume_attachment(volume_id, instance_id, attachment_id)
            except ProviderError as exc:
                return STOP, exc
            if current.status == STATUS_ATTACHED:
                return OK, current
            return RETRY, ProviderError(ATTACH_TIMED_OUT, f"Attachment of {volume_id} is {current.status}")

        try:
            return self.poll_policy.run(attempt, what=f"wait for attach of {volume_id}")
        except ProviderError as exc:
            self.log.info(f"Wait for attach timed out ({exc})")
            raise ProviderError(
                ATTACH_TIMED_OUT, f"Volume {volume_id} was not attached to {instance_id}",
                backend_error=exc.backend_error,
            ) from exc

    def detach_volume(self, volume_id, instance_id):
        """Detach, treating an absent or already detaching attachment as done"""
        kwargs = dict(request_id=self.request_id, cluster_id=self.cluster_id)

        def attempt():
            current = self.find_volume_attachment(volume_id, instance_id)
            if current is None or current.status == STATUS_DETACHING:
                self.log.info(f"No active attachment of {volume_id} on {instance_id}")
                return OK, None
            try:
                self.client.attachments.detach(instance_id, current.id, **kwargs)
            except BackendError as exc:
                return (STOP if is_terminal(exc, self.client.iks) else RETRY), exc
            return OK, current

        self.log.info(f"Detaching volume {volume_id} from {instance_id}")
        try:
            return self.policy.run(attempt, what=f"detach {volume_id}")
        except BackendError as exc:
            raise ProviderError(
                DETACH_FAILED, f"Failed to detach {volume_id} from {instance_id}", backend_error=exc
            ) from exc

    def wait_for_detach(self, volume_id, instance_id):
        def attempt():
            try:
                current = self.get_volume_attachment(volume_id, instance_id)
            except ProviderError as exc:
                if exc.kind == ATTACH_FIND_FAILED:
                    return OK, None
                return STOP, exc
            return RETRY, ProviderError(DETACH_TIMED_OUT, f"Attachment of {volume_id} is {current.status}")

        try:
            self.poll_policy.run(attempt, what=f"wait for detach of {volume_id}")
        except ProviderError as exc:
            raise ProviderError(
                DETACH_TIMED_OUT, f"Volume {volume_id} was not detached from {instance_id}",
                backend_error=exc.backend_error,
            ) from exc
        self.log.info(f"Volume {volume_id} is detached from {instance_id}")
