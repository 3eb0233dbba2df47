import threading
from contextlib import contextmanager

import psutil
from easypy.bunch import Bunch
from easypy.caching import cached_property
from kubernetes import client as kube_client, config as kube_config

from .configuration import Config
from .exceptions import CredentialsError, NodeMetadataMissing, UserError
from .iam import TokenProvider
from .logging import logger
from .mounter import Mounter
from .parameters import REGION_LABEL, ZONE_LABEL
from .provider import ProviderSession
from .retry import Exponential, CustomGap
from .vpc_client import RESTSession, VpcClient

WORKER_ID_LABEL = "ibm-cloud.kubernetes.io/worker-id"

MAX_VOLUMES_PER_NODE = 12
MAX_VOLUMES_PER_SMALL_NODE = 4
SMALL_NODE_CPUS = 4


class NodeLockSet:
    """One mutex per node id, created on first use and kept for the lifetime of the process"""

    def __init__(self):
        self._locks = {}
        self._guard = threading.Lock()

    def __len__(self):
        return len(self._locks)

    def lock_for(self, node_id):
        with self._guard:
            return self._locks.setdefault(node_id, threading.Lock())

    @contextmanager
    def locked(self, node_id):
        with self.lock_for(node_id):
            yield


def build_vpc_client(settings, cr_token_path=None):
    tokens = TokenProvider.from_settings(settings, cr_token_path=cr_token_path)
    session = RESTSession(
        settings.endpoint_url, tokens,
        timeout=settings.timeout,
        query=dict(version=settings.api_version, generation=settings.api_generation),
        resource_group_id=settings.resource_group_id,
    )
    iks_session = None
    if settings.iks_enabled and settings.iks_endpoint_url:
        iks_session = RESTSession(settings.iks_endpoint_url, tokens, timeout=settings.timeout, iks=True)
    return VpcClient(session, iks_session=iks_session)


def kube_core_api():
    try:
        kube_config.load_incluster_config()
    except kube_config.ConfigException:
        kube_config.load_kube_config()
    return kube_client.CoreV1Api()


def read_node_labels(node_name):
    return kube_core_api().read_node(node_name).metadata.labels or {}


class Driver:
    """
    The state shared by the servicers of one process: configuration, the per-node attach locks,
    the node-plane mutex and the cloud client that provider sessions are built on.
    """

    def __init__(self, config=None, client=None, settings=None, mounter=None, cpu_count=None):
        self.config = config or Config()
        self.node_locks = NodeLockSet()
        self.node_mutex = threading.Lock()
        self.mounter = mounter or Mounter()
        self._client = client
        self._settings = settings
        self._client_lock = threading.Lock()
        self._cpu_count = cpu_count

    def __repr__(self):
        return f"Driver({self.config.driver_name} {self.config.driver_version})"

    @property
    def name(self):
        return self.config.driver_name

    @property
    def version(self):
        return self.config.driver_version

    @property
    def cluster_id(self):
        return self.config.cluster_id

    @property
    def account_id(self):
        return self.config.account_id

    @property
    def resource_group_id(self):
        """Default resource group of new volumes (known once the cloud configuration is loaded)"""
        return self._settings.resource_group_id if self._settings else ""

    @property
    def client(self):
        with self._client_lock:
            if self._client is None:
                if self._settings is None:
                    self._settings = self.config.cloud
                self._client = build_vpc_client(self._settings, cr_token_path=self.config.vault_token_path)
            return self._client

    def provider(self, request_id=""):
        """A provider session for one request; an unusable configuration is a FailedPrecondition"""
        try:
            client = self.client
        except CredentialsError as exc:
            logger.error(f"Cannot initialize the provider session: {exc.render(color=False)}")
            raise UserError("FailedPrecondition", request_id, error=exc.render(color=False)) from exc

        settings = self._settings
        if settings is None:
            return ProviderSession(client, request_id=request_id, cluster_id=self.cluster_id)
        return ProviderSession(
            client,
            request_id=request_id,
            cluster_id=self.cluster_id,
            provider_type=settings.provider_type,
            policy=Exponential(
                max_gap=settings.max_retry_gap, max_attempts=settings.max_retry_attempt, iks=client.iks,
            ),
            poll_policy=CustomGap.from_config(
                settings.min_vpc_retry_gap, settings.min_vpc_retry_gap_attempt, settings.max_vpc_retry_attempt,
                iks=client.iks,
            ),
        )

    @cached_property
    def node_metadata(self):
        """Worker id and topology of this node: from the environment, else from the node's labels"""
        conf = self.config
        metadata = Bunch(worker_id=conf.node_worker_id, region=conf.node_region, zone=conf.node_zone)
        if not all(metadata.values()):
            labels = read_node_labels(conf.node_name)
            metadata.worker_id = metadata.worker_id or labels.get(WORKER_ID_LABEL, "")
            metadata.region = metadata.region or labels.get(REGION_LABEL, "")
            metadata.zone = metadata.zone or labels.get(ZONE_LABEL, "")
        missing = [key for key, value in metadata.items() if not value]
        if missing:
            # not cached, so the labels are read again on the next call
            raise NodeMetadataMissing(node=conf.node_name, missing=", ".join(missing))
        logger.info(f"Node metadata of {conf.node_name}: {metadata}")
        return metadata

    @property
    def max_volumes_per_node(self):
        cpus = self._cpu_count if self._cpu_count is not None else psutil.cpu_count()
        return MAX_VOLUMES_PER_NODE if (cpus or 0) >= SMALL_NODE_CPUS else MAX_VOLUMES_PER_SMALL_NODE
