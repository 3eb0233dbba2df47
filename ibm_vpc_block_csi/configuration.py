import json
import socket
import tomllib

from plumbum import local
from plumbum.typed_env import TypedEnv

from easypy.bunch import Bunch
from easypy.caching import cached_property

from .exceptions import CredentialsError
from .logging import logger


DRIVER_NAME = "vpc.block.csi.ibm.io"
DRIVER_LOG_NAME = "IBM VPC block driver"
DRIVER_GITHUB_NAME = "ibm-vpc-block-csi-driver"

DEFAULT_SNAPSHOT_CREATE_DELAY = 300
MAX_SNAPSHOT_CREATE_DELAY = 900

IAM_PUBLIC_URL = "https://iam.cloud.ibm.com"
IAM_PRIVATE_URL = "https://private.iam.cloud.ibm.com"

VPC_API_VERSION = "2019-07-02"
VPC_API_GENERATION = 2
VPC_API_TIMEOUT = "120s"

# Keys of the ibm-cloud-credentials secret
AUTH_TYPE_KEY = "IBMCLOUD_AUTHTYPE"
API_KEY_KEY = "IBMCLOUD_APIKEY"
PROFILE_ID_KEY = "IBMCLOUD_PROFILEID"
AUTH_IAM = "IAM"
AUTH_POD_IDENTITY = "PODIDENTITY"


class Config(TypedEnv):
    class Path(TypedEnv.Str):
        convert = staticmethod(local.path)

    driver_name = TypedEnv.Str("CSI_DRIVER_NAME", default=DRIVER_NAME)
    driver_version = TypedEnv.Str("CSI_DRIVER_VERSION", default="5.2.0")
    git_commit = TypedEnv.Str("GIT_COMMIT", default="unknown")
    log_level = TypedEnv.Str("CSI_LOG_LEVEL", default="info")
    worker_threads = TypedEnv.Int("CSI_WORKER_THREADS", default=10)

    node_name = TypedEnv.Str("KUBE_NODE_NAME", default=socket.getfqdn())
    node_worker_id = TypedEnv.Str("NODE_WORKER_ID", default="")
    node_region = TypedEnv.Str("NODE_REGION", default="")
    node_zone = TypedEnv.Str("NODE_ZONE", default="")
    pod_name = TypedEnv.Str("POD_NAME", default="")
    account_id = TypedEnv.Str("IBMCLOUD_ACCOUNT_ID", default="")
    sidecar_group_id = TypedEnv.Int("SIDECAR_GROUP_ID", default=0)

    _iks_enabled = TypedEnv.Str("IKS_ENABLED", default="False")
    _snapshot_enabled = TypedEnv.Str("IS_SNAPSHOT_ENABLED", default="true")
    _snapshot_create_delay = TypedEnv.Int("CUSTOM_SNAPSHOT_CREATE_DELAY", default=DEFAULT_SNAPSHOT_CREATE_DELAY)

    vault_token_path = Path("IBMC_VAULT_TOKEN_PATH", default=local.path("/var/run/secrets/tokens/vault-token"))
    secret_config_path = Path("SECRET_CONFIG_PATH", default=local.path("/etc/storage_ibmc"))
    credentials_path = Path(
        "IBMCLOUD_CREDENTIALS_PATH", default=local.path("/etc/ibm-cloud-credentials/ibm-credentials.env")
    )
    cluster_info_path = Path(
        "CLUSTER_INFO_PATH", default=local.path("/etc/storage_ibmc/cluster_info/cluster-config.json")
    )

    legacy_plugin_paths = (
        local.path(f"/var/lib/kubelet/plugins/{DRIVER_NAME}"),
        local.path(f"/var/lib/kubelet/plugins_registry/{DRIVER_NAME}-reg.sock"),
    )

    @property
    def snapshot_enabled(self):
        return self._snapshot_enabled.strip().lower() != "false"

    @property
    def snapshot_create_delay(self):
        return max(0, min(self._snapshot_create_delay, MAX_SNAPSHOT_CREATE_DELAY))

    @property
    def pv_watcher_enabled(self):
        return "csi-controller" in self.pod_name and "True" in self._iks_enabled

    @cached_property
    def cluster_id(self):
        if not self.cluster_info_path.exists():
            return ""
        with self.cluster_info_path.open() as f:
            return json.load(f).get("cluster_id", "")

    @cached_property
    def cloud(self):
        return load_cloud_config(
            self.secret_config_path / "slclient.toml",
            self.credentials_path if self.credentials_path.exists() else None,
        )


def seconds(value):
    """'120s', '2m' or a plain number of seconds"""
    text = str(value).strip()
    if text.endswith("m"):
        return int(float(text[:-1]) * 60)
    return int(float(text.rstrip("s")))


def private_endpoint(url):
    """https://us-south.iaas.cloud.ibm.com -> https://private-us-south.iaas.cloud.ibm.com"""
    prefix = "https://"
    if not url.startswith(prefix) or url.startswith(prefix + "private"):
        return url
    return f"{prefix}private-{url[len(prefix):]}"


def public_iam_url(url):
    return url.replace("://private.", "://", 1)


def parse_ibmcloud_credentials(text):
    """Parse the KEY=VALUE lines of the ibm-cloud-credentials secret"""
    credentials = {}
    for line in text.splitlines():
        key, sep, value = line.strip().partition("=")
        if sep and key:
            credentials[key] = value
    if not credentials:
        raise CredentialsError(reason="credentials are not in the expected KEY=VALUE format")

    auth_type = credentials.get(AUTH_TYPE_KEY)
    if not auth_type:
        raise CredentialsError(reason=f"{AUTH_TYPE_KEY} undefined, expected - {AUTH_IAM} or {AUTH_POD_IDENTITY}")
    if auth_type not in (AUTH_IAM, AUTH_POD_IDENTITY):
        raise CredentialsError(reason=f"unknown credential type {auth_type!r}")
    if auth_type == AUTH_IAM and not credentials.get(API_KEY_KEY):
        raise CredentialsError(reason="API key is empty")
    if auth_type == AUTH_POD_IDENTITY and not credentials.get(PROFILE_ID_KEY):
        raise CredentialsError(reason="Profile ID is empty")
    return Bunch(credentials)


def parse_cloud_config(data, credentials=None):
    """
    Merge the storage-secret-store sections into the settings of a provider session.

    The gen2 (`g2_*`) settings of the [VPC] section override the base ones, and the private
    endpoint is preferred over the public one when both are present.
    """
    vpc = Bunch(data.get("VPC", {}))
    bluemix = Bunch(data.get("Bluemix", {}))
    iks = Bunch(data.get("IKS", {}))
    server = Bunch(data.get("Server", {}))

    settings = Bunch(
        endpoint_url=vpc.get("endpoint_url", ""),
        iam_url=bluemix.get("iam_url") or IAM_PRIVATE_URL,
        auth_type=AUTH_IAM,
        api_key=bluemix.get("iam_api_key", ""),
        profile_id="",
        resource_group_id=vpc.get("resource_group_id", ""),
        api_version=vpc.get("api_version") or VPC_API_VERSION,
        api_generation=VPC_API_GENERATION,
        provider_type="g2" if vpc.get("vpc_block_provider_type", "g2") == "g2" else "gc",
        timeout=seconds(vpc.get("vpc_api_timeout") or VPC_API_TIMEOUT),
        max_retry_attempt=int(vpc.get("max_retry_attempt") or 10),
        max_retry_gap=int(vpc.get("max_retry_gap") or 60),
        min_vpc_retry_gap=int(vpc.get("min_vpc_retry_gap") or 0),
        min_vpc_retry_gap_attempt=int(vpc.get("min_vpc_retry_gap_attempt") or 0),
        max_vpc_retry_attempt=int(vpc.get("max_vpc_retry_attempt") or 0),
        encryption=bool(vpc.get("encryption", False)),
        iks_enabled=bool(iks.get("enabled") or iks.get("iks_enabled") or vpc.get("is_iks", False)),
        iks_endpoint_url=bluemix.get("api_endpoint_url", ""),
        debug_trace=bool(server.get("debug_trace", False)),
    )

    g2_endpoint = vpc.get("g2_riaas_endpoint_private_url") or vpc.get("g2_riaas_endpoint_url")
    if g2_endpoint:
        settings.endpoint_url = g2_endpoint
        settings.provider_type = "g2"
    if vpc.get("g2_token_exchange_endpoint_url"):
        settings.iam_url = vpc.g2_token_exchange_endpoint_url
    if vpc.get("g2_api_key"):
        settings.api_key = vpc.g2_api_key
    if vpc.get("g2_resource_group_id"):
        settings.resource_group_id = vpc.g2_resource_group_id
    if vpc.get("g2_api_version"):
        settings.api_version = vpc.g2_api_version
    if vpc.get("g2_api_generation"):
        settings.api_generation = int(vpc.g2_api_generation)
    if settings.iks_enabled and settings.iks_endpoint_url:
        # attachment calls go through the container service private endpoint
        settings.iks_endpoint_url = private_endpoint(settings.iks_endpoint_url)

    if credentials:
        settings.auth_type = credentials[AUTH_TYPE_KEY]
        if settings.auth_type == AUTH_IAM:
            settings.api_key = credentials[API_KEY_KEY]
        else:
            settings.profile_id = credentials[PROFILE_ID_KEY]

    if settings.auth_type == AUTH_IAM and not settings.api_key:
        raise CredentialsError(reason="empty api key read from the secret")
    if not settings.endpoint_url:
        raise CredentialsError(reason="VPC endpoint url is not configured")
    return settings


def load_cloud_config(toml_path, credentials_path=None):
    if not toml_path.exists():
        raise CredentialsError(reason=f"{toml_path} does not exist")
    with toml_path.open("rb") as f:
        data = tomllib.load(f)
    credentials = None
    if credentials_path is not None:
        credentials = parse_ibmcloud_credentials(credentials_path.read())
    settings = parse_cloud_config(data, credentials)
    logger.info(
        f"Cloud configuration loaded from {toml_path}: endpoint={settings.endpoint_url},"
        f" provider={settings.provider_type}, auth={settings.auth_type}, iks={settings.iks_enabled}"
    )
    return settings
