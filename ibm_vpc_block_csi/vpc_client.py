"""
Typed facade over the VPC block storage REST API.

Every operation maps to exactly one HTTP method and path template. Failures are raised as `BackendError`
built from the error envelope of the backend; retries are left to the callers (see `retry.py`).
"""

import itertools
import threading
from collections import Counter, defaultdict
from datetime import datetime, timezone
from pprint import pformat
from uuid import uuid4

import requests
from easypy.bunch import Bunch
from easypy.resilience import retrying

from .exceptions import BackendError, ProviderError
from .logging import logger


USER_AGENT = "IBM-Kubernetes-Service"
MAX_LIST_LIMIT = 100

VOLUMES_PATH = "v1/volumes"
SNAPSHOTS_PATH = "v1/snapshots"
INSTANCE_ATTACHMENTS_PATH = "v1/instances/{instance_id}/volume_attachments"
IKS_STORAGE_PATH = "v2/storage"


def next_start_token(page):
    """Extract the 'start' query value of the page's next.href"""
    href = (page.get("next") or {}).get("href", "")
    if "start=" not in href:
        if href:
            logger.warning(f"next.href is not in expected format: {href}")
        return ""
    return href.split("start=", 1)[1].split("&", 1)[0]


class RESTSession(requests.Session):
    def __init__(self, base_url, token_provider, timeout=120, query=None, resource_group_id="", iks=False):
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.timeout = timeout
        self.query = dict(query or {})
        self.iks = iks
        self.headers["Accept"] = "application/json"
        self.headers["Content-Type"] = "application/json"
        self.headers["User-Agent"] = USER_AGENT
        if resource_group_id:
            self.headers["X-Auth-Resource-Group-ID"] = resource_group_id

    def request(self, verb, path, **kwargs):
        try:
            return self._request(verb, path, **kwargs)
        except retrying.Retry as exc:
            raise ProviderError(
                "AuthenticationFailed", f"[{verb.upper()}] {path} is unauthorized with a freshly issued IAM token",
            ) from exc

    @retrying.debug(times=2, acceptable=retrying.Retry)
    def _request(self, verb, path, *, params=None, data=None, headers=None, request_id=None, with_etag=False):
        verb = verb.upper()
        url = f"{self.base_url}/{path.strip('/')}"
        logger.info(f">>> [{verb}] {url}")
        if data:
            for line in pformat(dict(data=data, params=params)).splitlines():
                logger.info(f"    {line}")

        headers = dict(headers or {})
        headers["Authorization"] = f"Bearer {self.token_provider.get_token()}"
        if request_id:
            headers["X-Request-ID"] = request_id
            headers["X-Transaction-ID"] = request_id  # IKS edge overrides X-Request-ID
        params = dict(self.query, **(params or {}))

        try:
            ret = super().request(verb, url, params=params, json=data, headers=headers, timeout=self.timeout)
        except requests.Timeout as exc:
            raise BackendError("timeout", message=f"Client.Timeout exceeded ([{verb}] {url})", wrapped=exc) from exc
        except requests.ConnectionError as exc:
            raise BackendError("transport", message=f"[{verb}] {url} failed: {exc}", wrapped=exc) from exc

        if ret.status_code == 401:
            self.token_provider.get_token(fresh=True)
            raise retrying.Retry("refresh token")
        if not ret.ok:
            exc = BackendError.from_response(ret, iks=self.iks)
            logger.info(f"<<< [{verb}] {url}: HTTP {ret.status_code} {exc}")
            raise exc

        logger.info(f"<<< [{verb}] {url}")
        body = Bunch.from_dict(ret.json()) if ret.content else None
        logger.debug(f"--- [{verb}] {url}: Done")
        if with_etag:
            return body, ret.headers.get("etag", "")
        return body


class VolumeAttachService:
    """Attachments through the compute instance API"""

    def __init__(self, session):
        self.session = session

    def _path(self, instance_id, *parts):
        return "/".join([INSTANCE_ATTACHMENTS_PATH.format(instance_id=instance_id), *parts])

    def attach(self, instance_id, volume_id, request_id=None, cluster_id=None):
        data = dict(volume=dict(id=volume_id), delete_volume_on_instance_delete=False)
        return self.session.request("post", self._path(instance_id), data=data, request_id=request_id)

    def get(self, instance_id, attachment_id, request_id=None, cluster_id=None):
        return self.session.request("get", self._path(instance_id, attachment_id), request_id=request_id)

    def list(self, instance_id, request_id=None, cluster_id=None):
        page = self.session.request("get", self._path(instance_id), request_id=request_id)
        return page.get("volume_attachments") or []

    def detach(self, instance_id, attachment_id, request_id=None, cluster_id=None):
        return self.session.request("delete", self._path(instance_id, attachment_id), request_id=request_id)


class IKSVolumeAttachService(VolumeAttachService):
    """Attachments multiplexed through the container service, addressed by query parameters"""

    def attach(self, instance_id, volume_id, request_id=None, cluster_id=None):
        params = dict(cluster=cluster_id, worker=instance_id, volumeID=volume_id)
        data = dict(volume=dict(id=volume_id), clusterID=cluster_id, instanceID=instance_id)
        return self.session.request(
            "post", f"{IKS_STORAGE_PATH}/createAttachment", params=params, data=data, request_id=request_id
        )

    def get(self, instance_id, attachment_id, request_id=None, cluster_id=None):
        params = dict(cluster=cluster_id, worker=instance_id, volumeAttachmentID=attachment_id)
        return self.session.request("get", f"{IKS_STORAGE_PATH}/getAttachment", params=params, request_id=request_id)

    def list(self, instance_id, request_id=None, cluster_id=None):
        params = dict(cluster=cluster_id, worker=instance_id)
        page = self.session.request(
            "get", f"{IKS_STORAGE_PATH}/getAttachmentsList", params=params, request_id=request_id
        )
        return page.get("volume_attachments") or []

    def detach(self, instance_id, attachment_id, request_id=None, cluster_id=None):
        params = dict(cluster=cluster_id, worker=instance_id, volumeAttachmentID=attachment_id)
        return self.session.request(
            "delete", f"{IKS_STORAGE_PATH}/deleteAttachment", params=params, request_id=request_id
        )


class VpcClient:
    """
    Volumes, snapshots and attachments of the VPC block service.
    `iks_session`, when given, routes the attachment operations through the container service.
    """

    def __init__(self, session, iks_session=None):
        self.session = session
        self.iks = iks_session is not None
        self.attachments = IKSVolumeAttachService(iks_session) if self.iks else VolumeAttachService(session)

    # ----------------------------
    # Volumes
    def create_volume(self, template, request_id=None):
        return self.session.request("post", VOLUMES_PATH, data=template, request_id=request_id)

    def get_volume(self, volume_id, request_id=None):
        return self.session.request("get", f"{VOLUMES_PATH}/{volume_id}", request_id=request_id)

    def get_volume_etag(self, volume_id, request_id=None):
        return self.session.request("get", f"{VOLUMES_PATH}/{volume_id}", request_id=request_id, with_etag=True)

    def get_volume_by_name(self, name, request_id=None):
        page = self.session.request("get", VOLUMES_PATH, params=dict(name=name), request_id=request_id)
        volumes = page.get("volumes") or []
        if not volumes:
            raise BackendError("vpc", code="volume_name_not_found", http_status=404,
                               message=f"Volume with name {name!r} not found")
        return volumes[0]

    def list_volumes(self, limit, start="", filters=None, request_id=None):
        params = dict(limit=min(limit, MAX_LIST_LIMIT), **(filters or {}))
        if start:
            params["start"] = start
        return self.session.request("get", VOLUMES_PATH, params=params, request_id=request_id)

    def update_volume(self, volume_id, patch, etag, request_id=None):
        return self.session.request(
            "patch", f"{VOLUMES_PATH}/{volume_id}", data=patch, headers={"If-Match": etag}, request_id=request_id
        )

    def expand_volume(self, volume_id, capacity, request_id=None):
        return self.session.request(
            "patch", f"{VOLUMES_PATH}/{volume_id}", data=dict(capacity=capacity), request_id=request_id
        )

    def delete_volume(self, volume_id, request_id=None):
        return self.session.request("delete", f"{VOLUMES_PATH}/{volume_id}", request_id=request_id)

    # ----------------------------
    # Snapshots
    def create_snapshot(self, template, request_id=None):
        return self.session.request("post", SNAPSHOTS_PATH, data=template, request_id=request_id)

    def get_snapshot(self, snapshot_id, request_id=None):
        return self.session.request("get", f"{SNAPSHOTS_PATH}/{snapshot_id}", request_id=request_id)

    def get_snapshot_by_name(self, name, request_id=None):
        page = self.session.request("get", SNAPSHOTS_PATH, params=dict(name=name), request_id=request_id)
        snapshots = page.get("snapshots") or []
        if not snapshots:
            raise BackendError("vpc", code="snapshots_not_found", http_status=404,
                               message=f"Snapshot with name {name!r} not found")
        return snapshots[0]

    def list_snapshots(self, limit, start="", filters=None, request_id=None):
        params = dict(limit=min(limit, MAX_LIST_LIMIT), **(filters or {}))
        if start:
            params["start"] = start
        return self.session.request("get", SNAPSHOTS_PATH, params=params, request_id=request_id)

    def delete_snapshot(self, snapshot_id, request_id=None):
        return self.session.request("delete", f"{SNAPSHOTS_PATH}/{snapshot_id}", request_id=request_id)


# ----------------------------------------------------------------------------------------------------------------------
# In-memory backend
# ----------------------------------------------------------------------------------------------------------------------


def _not_found(code, what):
    return BackendError("vpc", code=code, http_status=404, message=f"{what} not found", trace=str(uuid4()))


class FakeAttachService:
    def __init__(self, backend):
        self.backend = backend

    def attach(self, instance_id, volume_id, request_id=None, cluster_id=None):
        return self.backend.attach(instance_id, volume_id)

    def get(self, instance_id, attachment_id, request_id=None, cluster_id=None):
        return self.backend.get_attachment(instance_id, attachment_id)

    def list(self, instance_id, request_id=None, cluster_id=None):
        return self.backend.list_attachments(instance_id)

    def detach(self, instance_id, attachment_id, request_id=None, cluster_id=None):
        return self.backend.detach(instance_id, attachment_id)


class FakeVpcClient:
    """
    Keeps volumes, snapshots and attachments in memory, following the state transitions of the real service:
    volumes are 'pending' until first read, attachments go 'attaching' -> 'attached' on first read and
    disappear on the first read after a detach.

    `fail` queues errors to be raised by the next calls of an operation, eg:
        client.fail["create_volume"].append(BackendError("vpc", code="internal_error"))
    """

    def __init__(self, iks=False, account_id="a1b2c3"):
        self.iks = iks
        self.account_id = account_id
        self.volumes = {}
        self.snapshots = {}
        self.attached = {}
        self.fail = defaultdict(list)
        self.calls = Counter()
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.attachments = FakeAttachService(self)

    def _check(self, op):
        self.calls[op] += 1
        errors = self.fail.get(op)
        if errors:
            raise errors.pop(0)

    def _new_id(self, prefix):
        return f"r006-{prefix}{next(self._ids):04d}-aaaa-bbbb-cccc"

    @staticmethod
    def _now():
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    def _resolve_snapshot(self, source):
        crn = source.get("crn", "")
        snapshot_id = source.get("id") or crn.rsplit(":", 1)[-1]
        if crn and f":a/{self.account_id}::" not in crn:
            # shared from another account, not tracked here
            return dict(id=snapshot_id, crn=crn)
        if snapshot_id not in self.snapshots:
            raise _not_found("snapshot_id_not_found", f"Snapshot {snapshot_id}")
        return dict(id=snapshot_id, crn=self.snapshots[snapshot_id].crn)

    # ----------------------------
    # Volumes
    def create_volume(self, template, request_id=None):
        with self._lock:
            self._check("create_volume")
            volume_id = self._new_id("vol")
            source = template.get("source_snapshot")
            if source:
                template = dict(template, source_snapshot=self._resolve_snapshot(source))
            volume = Bunch.from_dict(dict(
                template, id=volume_id, status="pending", created_at=self._now(),
                crn=f"crn:v1:bluemix:public:is:{template['zone']['name']}:a/{self.account_id}::volume:{volume_id}",
                user_tags=list(template.get("user_tags") or []),
            ))
            self.volumes[volume_id] = volume
            return volume

    def get_volume(self, volume_id, request_id=None):
        with self._lock:
            self._check("get_volume")
            if volume_id not in self.volumes:
                raise _not_found("volume_id_not_found", f"Volume {volume_id}")
            volume = self.volumes[volume_id]
            if volume.status == "pending":
                volume.status = "available"
            return volume

    def get_volume_etag(self, volume_id, request_id=None):
        volume = self.get_volume(volume_id)
        return volume, f"W/\"{hash(tuple(volume.user_tags))}\""

    def get_volume_by_name(self, name, request_id=None):
        with self._lock:
            self._check("get_volume_by_name")
            for volume in self.volumes.values():
                if volume.name == name:
                    return volume
        raise _not_found("volume_name_not_found", f"Volume with name {name!r}")

    def _page(self, items, key, limit, start, href):
        ids = list(items)
        offset = 0
        if start:
            if start not in items:
                raise BackendError("vpc", code="bad_request", http_status=400,
                                   message="The start parameter is not valid")
            offset = ids.index(start)
        limit = min(limit or 50, MAX_LIST_LIMIT)
        chosen = ids[offset:offset + limit]
        page = Bunch({key: [items[i] for i in chosen], "limit": limit})
        if offset + limit < len(ids):
            page.next = Bunch(href=f"{href}?start={ids[offset + limit]}&limit={limit}")
        return page

    def list_volumes(self, limit, start="", filters=None, request_id=None):
        with self._lock:
            self._check("list_volumes")
            filters = filters or {}
            items = {
                vid: v for vid, v in self.volumes.items()
                if (not filters.get("name") or v.name == filters["name"])
                and (not filters.get("zone.name") or v.zone.name == filters["zone.name"])
                and (not filters.get("resource_group.id") or v.resource_group.id == filters["resource_group.id"])
            }
            return self._page(items, "volumes", limit, start, "https://fake/v1/volumes")

    def update_volume(self, volume_id, patch, etag, request_id=None):
        with self._lock:
            self._check("update_volume")
            self.volumes[volume_id].update(Bunch.from_dict(patch))
            return self.volumes[volume_id]

    def expand_volume(self, volume_id, capacity, request_id=None):
        with self._lock:
            self._check("expand_volume")
            volume = self.volumes[volume_id]
            volume.capacity = capacity
            volume.status = "pending"
            return volume

    def delete_volume(self, volume_id, request_id=None):
        with self._lock:
            self._check("delete_volume")
            if self.volumes.pop(volume_id, None) is None:
                raise _not_found("volume_id_not_found", f"Volume {volume_id}")

    # ----------------------------
    # Snapshots
    def create_snapshot(self, template, request_id=None):
        with self._lock:
            self._check("create_snapshot")
            source_id = template["source_volume"]["id"]
            if source_id not in self.volumes:
                raise _not_found("snapshots_source_volume_not_found", f"Volume {source_id}")
            snapshot_id = self._new_id("snap")
            snapshot = Bunch.from_dict(dict(
                id=snapshot_id, name=template.get("name"), lifecycle_state="stable", created_at=self._now(),
                crn=f"crn:v1:bluemix:public:is:us-south:a/{self.account_id}::snapshot:{snapshot_id}",
                source_volume=dict(id=source_id), minimum_capacity=self.volumes[source_id].capacity,
                resource_group=template.get("resource_group") or {},
            ))
            self.snapshots[snapshot_id] = snapshot
            return snapshot

    def get_snapshot(self, snapshot_id, request_id=None):
        with self._lock:
            self._check("get_snapshot")
            if snapshot_id not in self.snapshots:
                raise _not_found("snapshot_id_not_found", f"Snapshot {snapshot_id}")
            return self.snapshots[snapshot_id]

    def get_snapshot_by_name(self, name, request_id=None):
        with self._lock:
            self._check("get_snapshot_by_name")
            for snapshot in self.snapshots.values():
                if snapshot.name == name:
                    return snapshot
        raise _not_found("snapshots_not_found", f"Snapshot with name {name!r}")

    def list_snapshots(self, limit, start="", filters=None, request_id=None):
        with self._lock:
            self._check("list_snapshots")
            filters = filters or {}
            items = {
                sid: s for sid, s in self.snapshots.items()
                if (not filters.get("name") or s.name == filters["name"])
                and (not filters.get("source_volume.id") or s.source_volume.id == filters["source_volume.id"])
            }
            return self._page(items, "snapshots", limit, start, "https://fake/v1/snapshots")

    def delete_snapshot(self, snapshot_id, request_id=None):
        with self._lock:
            self._check("delete_snapshot")
            if self.snapshots.pop(snapshot_id, None) is None:
                raise _not_found("snapshot_id_not_found", f"Snapshot {snapshot_id}")

    # ----------------------------
    # Attachments
    def attach(self, instance_id, volume_id):
        with self._lock:
            self._check("attach")
            if volume_id not in self.volumes:
                raise _not_found("volume_id_not_found", f"Volume {volume_id}")
            attachment_id = self._new_id("att")
            attachment = Bunch.from_dict(dict(
                id=attachment_id, status="attaching", volume=dict(id=volume_id), instance_id=instance_id,
                device=dict(id=f"{attachment_id}-{volume_id}"), type="data",
            ))
            self.attached[attachment_id] = attachment
            return attachment

    def get_attachment(self, instance_id, attachment_id):
        with self._lock:
            self._check("get_attachment")
            attachment = self.attached.get(attachment_id)
            if attachment is None or attachment.instance_id != instance_id:
                raise _not_found("not_found", f"Volume attachment {attachment_id}")
            if attachment.status == "attaching":
                attachment.status = "attached"
            elif attachment.status == "detaching":
                del self.attached[attachment_id]
                raise _not_found("not_found", f"Volume attachment {attachment_id}")
            return attachment

    def list_attachments(self, instance_id):
        with self._lock:
            self._check("list_attachments")
            found = []
            for attachment in list(self.attached.values()):
                if attachment.instance_id != instance_id:
                    continue
                if attachment.status == "detaching":
                    del self.attached[attachment.id]
                    continue
                if attachment.status == "attaching":
                    attachment.status = "attached"
                found.append(attachment)
            return found

    def detach(self, instance_id, attachment_id):
        with self._lock:
            self._check("detach")
            attachment = self.attached.get(attachment_id)
            if attachment is None:
                raise _not_found("not_found", f"Volume attachment {attachment_id}")
            attachment.status = "detaching"
