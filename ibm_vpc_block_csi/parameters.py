import math
from dataclasses import dataclass, field
from typing import List, Optional

from . import csi_types as types
from .exceptions import InvalidParameter, CapacityOutOfRange
from .logging import logger

GiB = 1 << 30

CUSTOM_PROFILE = "custom"
SDP_PROFILE = "sdp"
DEFAULT_PROFILE = "general-purpose"
SUPPORTED_PROFILES = (CUSTOM_PROFILE, DEFAULT_PROFILE, "5iops-tier", "10iops-tier", SDP_PROFILE)
IOPS_PROFILES = (CUSTOM_PROFILE, SDP_PROFILE)

SUPPORTED_FS = ("ext2", "ext3", "ext4", "xfs")
DEFAULT_FS = "ext4"

MIN_CAPACITY = 10
SDP_MIN_CAPACITY = 1
MAX_CAPACITY = 16000
SDP_MAX_CAPACITY = 32000

NAME_MAX_LEN = 63
ZONE_MAX_LEN = 63
REGION_MAX_LEN = 63
RESOURCE_GROUP_MAX_LEN = 32
TAG_MAX_LEN = 128
ENCRYPTION_KEY_MAX_LEN = 256

INT32_MIN, INT32_MAX = -(1 << 31), (1 << 31) - 1

REGION_LABEL = "failure-domain.beta.kubernetes.io/region"
ZONE_LABEL = "failure-domain.beta.kubernetes.io/zone"

# (min GiB, max GiB, min iops, max iops)
CUSTOM_IOPS_BANDS = (
    (10, 39, 100, 1000),
    (40, 79, 100, 2000),
    (80, 99, 100, 4000),
    (100, 499, 100, 6000),
    (500, 999, 100, 10000),
    (1000, 1999, 100, 20000),
)

SUPPORTED_ACCESS_MODES = (types.AccessModeType.SINGLE_NODE_WRITER,)

LENGTH_BOUNDS = dict(
    zone=ZONE_MAX_LEN,
    region=REGION_MAX_LEN,
    tags=TAG_MAX_LEN,
    resourceGroup=RESOURCE_GROUP_MAX_LEN,
    encryptionKey=ENCRYPTION_KEY_MAX_LEN,
)

IGNORED_PARAMETERS = ("classVersion", "generation", "billingType")


def profile_minimum(profile):
    return SDP_MIN_CAPACITY if profile == SDP_PROFILE else MIN_CAPACITY


def profile_maximum(profile):
    return SDP_MAX_CAPACITY if profile == SDP_PROFILE else MAX_CAPACITY


def round_up_gib(num_bytes):
    return math.ceil(num_bytes / GiB)


def requested_capacity(capacity_range, profile=DEFAULT_PROFILE):
    """Return the capacity in GiB to provision for the given `CapacityRange`"""
    minimum = profile_minimum(profile)
    required = capacity_range.required_bytes if capacity_range else 0
    limit = capacity_range.limit_bytes if capacity_range else 0

    if required > 0 and limit > 0 and limit < required:
        raise InvalidParameter(f"limit bytes {limit} is less than required bytes {required}")
    if required <= 0:
        return minimum

    capacity = max(minimum, round_up_gib(required))
    if capacity > profile_maximum(profile):
        raise CapacityOutOfRange(capacity, profile)
    return capacity


def validate_custom_iops(capacity, iops):
    for min_size, max_size, min_iops, max_iops in CUSTOM_IOPS_BANDS:
        if min_size <= capacity <= max_size:
            break
    else:
        raise InvalidParameter(
            f"invalid PVC size for custom class: <{capacity}>. "
            f"Should be in range [{CUSTOM_IOPS_BANDS[0][0]} - {CUSTOM_IOPS_BANDS[-1][1]}]GiB"
        )
    if not min_iops <= iops <= max_iops:
        raise InvalidParameter(
            f"invalid IOPS: <{iops}> for capacity: <{capacity}GiB>. Should be in range [{min_iops} - {max_iops}]"
        )


def capabilities_supported(volume_capabilities):
    return all(c.access_mode.mode in SUPPORTED_ACCESS_MODES for c in volume_capabilities)


def filesystem_type(volume_capabilities):
    """The fs type of the first mount capability; block-only requests get the default"""
    for capability in volume_capabilities:
        if not capability.HasField("mount"):
            continue
        fs_type = capability.mount.fs_type
        if not fs_type:
            return DEFAULT_FS
        if fs_type not in SUPPORTED_FS:
            raise InvalidParameter(f"unsupported fstype <{fs_type}>. Supported types: {list(SUPPORTED_FS)}")
        return fs_type
    return DEFAULT_FS


def preferred_topology(requirement):
    """Segments of the first preferred topology that has any"""
    for topology in (requirement.preferred if requirement is not None else ()):
        if topology.segments:
            return dict(topology.segments)
    raise InvalidParameter(
        "unable to fetch zone information from topology: preferred topologies specified but no segments"
    )


@dataclass
class VolumeRequest:
    """A create-volume request, validated and merged with the storage class and secret parameters"""

    name: str
    capacity: int  # GiB
    fs_type: str = DEFAULT_FS
    profile: str = DEFAULT_PROFILE
    iops: Optional[str] = None
    zone: str = ""
    region: str = ""
    resource_group_id: str = ""
    tags: List[str] = field(default_factory=list)
    encryption_key: str = ""
    throughput: Optional[int] = None
    snapshot_id: str = ""
    snapshot_crn: str = ""

    @property
    def topology_segments(self) -> dict:
        return {REGION_LABEL: self.region, ZONE_LABEL: self.zone}

    @classmethod
    def from_parameters(
            cls,
            name,
            capacity_range,
            volume_capabilities,
            parameters=None,
            secrets=None,
            accessibility_requirements=None,
            default_resource_group="",
            snapshot_id="",
            snapshot_crn="",
    ):
        if len(name) > NAME_MAX_LEN:
            raise InvalidParameter(f"name:<{name}> exceeds {NAME_MAX_LEN} chars")

        settings = dict(tags=[], encrypted="undef")
        apply_parameters(settings, parameters or {})
        # secrets take precedence over the storage class, their tags are appended
        apply_parameters(settings, secrets or {})

        profile = settings.get("profile", DEFAULT_PROFILE)
        capacity = requested_capacity(capacity_range, profile)

        iops = settings.get("iops") or None
        if profile not in IOPS_PROFILES:
            if iops:
                logger.info(f"Ignoring iops {iops} for profile {profile!r}")
            iops = None
        elif iops and profile == CUSTOM_PROFILE:
            validate_custom_iops(capacity, int(iops))

        if not volume_capabilities:
            raise InvalidParameter("volume capabilities are empty")
        fs_type = filesystem_type(volume_capabilities)

        zone = settings.get("zone", "").strip()
        region = settings.get("region", "").strip()
        if not zone and region:
            raise InvalidParameter(f"zone parameter is empty in storage class for region {region}")
        if not region:
            segments = preferred_topology(accessibility_requirements)
            region = segments.get(REGION_LABEL) or segments.get("region", "")
            zone = zone or segments.get(ZONE_LABEL) or segments.get("zone", "")

        encryption_key = settings.get("encryptionKey", "")
        if settings["encrypted"] == "false":
            encryption_key = ""

        return cls(
            name=name,
            capacity=capacity,
            fs_type=fs_type,
            profile=profile,
            iops=iops,
            zone=zone,
            region=region,
            resource_group_id=settings.get("resourceGroup") or default_resource_group,
            tags=settings["tags"],
            encryption_key=encryption_key,
            throughput=settings.get("throughput"),
            snapshot_id=snapshot_id,
            snapshot_crn=snapshot_crn,
        )


def apply_parameters(settings, parameters):
    """Validate `parameters` and merge them into `settings`"""
    for key, value in parameters.items():
        bound = LENGTH_BOUNDS.get(key)
        if bound is not None and len(value) > bound:
            raise InvalidParameter(f"{key}:<{value}> exceeds {bound} chars")

        if key == "profile":
            if value not in SUPPORTED_PROFILES:
                raise InvalidParameter(
                    f"{key}:<{value}> unsupported profile. Supported profiles are: {list(SUPPORTED_PROFILES)}"
                )
            settings[key] = value
        elif key == "tags":
            settings["tags"].extend(t.strip() for t in value.split(",") if t.strip())
        elif key == "encrypted":
            if value not in ("true", "false"):
                raise InvalidParameter(f"'<{value}>' is invalid, value of '{key}' should be [true|false]")
            settings[key] = value
        elif key == "iops":
            if value and not value.isdigit():
                raise InvalidParameter(f"{key}:<{value}> invalid value")
            settings[key] = value
        elif key == "throughput":
            try:
                throughput = int(value)
            except ValueError:
                raise InvalidParameter(f"{key}:<{value}> invalid value") from None
            if not INT32_MIN <= throughput <= INT32_MAX:
                raise InvalidParameter(f"{key}:<{value}> is out of the 32-bit integer range")
            settings[key] = throughput
        elif key in ("zone", "region", "resourceGroup", "encryptionKey"):
            settings[key] = value
        elif key in IGNORED_PARAMETERS:
            logger.info(f"Ignoring storage class parameter {key!r}")
        else:
            raise InvalidParameter(f"<{key}> is an invalid parameter")
