"""
Keeps the metadata of provisioned volumes in sync with their PersistentVolume objects.

Every update of a PV that belongs to this driver pushes a set of tags (cluster, reclaim policy,
storage class, claim and provisioner) to the backing volume, and records the outcome as an event
on the PV.
"""

import threading
from datetime import datetime, timezone
from concurrent import futures
from uuid import uuid4

from easypy.caching import cached_property
from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from .driver import kube_core_api
from .exceptions import ProviderError, UserError
from .logging import logger, request_logger


CLUSTER_ID_TAG = "clusterID:"
RECLAIM_POLICY_TAG = "reclaimpolicy:"
STORAGE_CLASS_TAG = "storageclass:"
NAMESPACE_TAG = "namespace:"
PVC_NAME_TAG = "pvc:"
PV_NAME_TAG = "pv:"
PROVISIONER_TAG = "provisioner:"

EVENT_REASON = "VolumeMetaDataSaved"
EVENT_SUCCESS = "Success"
EVENT_NAMESPACE = "default"  # PVs are cluster scoped
PHASE_RELEASED = "Released"

WATCH_TIMEOUT = 300


class PVReconciler:

    def __init__(self, driver, core_api=None, max_workers=4):
        self.driver = driver
        self._core_api = core_api
        self._pool = futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pv-reconciler")
        self._stopped = threading.Event()

    @cached_property
    def core_api(self):
        return self._core_api or kube_core_api()

    def start(self):
        thread = threading.Thread(target=self.run, name="pv-watcher", daemon=True)
        thread.start()
        logger.info(f"PV reconciler started for {self.driver.name}")
        return thread

    def stop(self):
        self._stopped.set()

    def run(self):
        while not self._stopped.is_set():
            try:
                for event in watch.Watch().stream(self.core_api.list_persistent_volume, timeout_seconds=WATCH_TIMEOUT):
                    if event["type"] == "MODIFIED" and self.owns(event["object"]):
                        self._pool.submit(self.on_update, event["object"])
                    if self._stopped.is_set():
                        break
            except ApiException as exc:
                logger.warning(f"PV watch interrupted ({exc.status} {exc.reason}), restarting")

    def owns(self, pv):
        csi = pv.spec.csi if pv is not None and pv.spec is not None else None
        return csi is not None and csi.driver == self.driver.name

    def volume_tags(self, pv):
        """Tags for the volume behind `pv`; a released PV gets none"""
        if pv.status is not None and pv.status.phase == PHASE_RELEASED:
            return []
        attributes = pv.spec.csi.volume_attributes or {}
        tags = [t for t in attributes.get("tags", "").strip().split(",") if t]
        claim = pv.spec.claim_ref
        tags += [
            CLUSTER_ID_TAG + attributes.get("clusterID", ""),
            RECLAIM_POLICY_TAG + (pv.spec.persistent_volume_reclaim_policy or ""),
            STORAGE_CLASS_TAG + (pv.spec.storage_class_name or ""),
            NAMESPACE_TAG + (claim.namespace if claim else ""),
            PVC_NAME_TAG + (claim.name if claim else ""),
            PV_NAME_TAG + pv.metadata.name,
            PROVISIONER_TAG + self.driver.name,
        ]
        return tags

    def on_update(self, pv):
        request_id = str(uuid4())
        log = request_logger(request_id)
        volume_id = pv.spec.csi.volume_handle
        tags = self.volume_tags(pv)
        if not tags:
            log.info(f"PV {pv.metadata.name} is released, not tagging {volume_id}")
            return

        try:
            self.driver.provider(request_id).update_volume(volume_id, tags)
        except (ProviderError, UserError) as exc:
            log.warning(f"Unable to update volume {volume_id}: {exc}")
            self.record_event(pv, "Warning", str(exc))
        else:
            log.info(f"Metadata of volume {volume_id} saved")
            self.record_event(pv, "Normal", EVENT_SUCCESS)

    def record_event(self, pv, event_type, message):
        now = datetime.now(timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{pv.metadata.name}."),
            involved_object=client.V1ObjectReference(
                api_version="v1", kind="PersistentVolume", name=pv.metadata.name, uid=pv.metadata.uid,
            ),
            reason=EVENT_REASON,
            message=message,
            type=event_type,
            source=client.V1EventSource(component=self.driver.config.pod_name),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(EVENT_NAMESPACE, event)
        except ApiException as exc:
            logger.warning(f"Failed to record event on PV {pv.metadata.name}: {exc.reason}")
