import re
import threading
from datetime import datetime

from plumbum import local
from easypy.bunch import Bunch
from easypy.caching import locking_cache

from . import csi_types as types


PATH_ALIASES = {
    re.compile(".*/site-packages"): "*",
    re.compile("%s/" % local.cwd): "",
}

MIN_VOLUME_ID_SEGMENTS = 5
MIN_CRN_SEGMENTS = 10


@locking_cache
def clean_path(path):
    path = str(local.path(path))
    for regex, alias in PATH_ALIASES.items():
        path = regex.sub(alias, path)
    return path


def get_mount(target_path):
    import psutil
    for m in psutil.disk_partitions(all=True):
        if m.mountpoint == target_path:
            return m


def compact_format_traceback(self):
    """One line per frame: `file:line ..... function >> source`"""
    rows = [(f"  {clean_path(f.filename)}:{f.lineno} ", f" {f.name}", (f.line or "").strip()) for f in self]
    width = max((len(left) + len(right) for left, right, _ in rows), default=0) + 4
    result = []
    for left, right, line in rows:
        item = left.ljust(width - len(right), ".") + right
        result.append(f"{item} >> {line}\n" if line else item + "\n")
    return result


def patch_traceback_format():
    from traceback import StackSummary
    StackSummary.format = compact_format_traceback


def is_valid_volume_id(volume_id: str) -> bool:
    return len(volume_id.split("-")) >= MIN_VOLUME_ID_SEGMENTS


def parse_snapshot_crn(crn: str) -> Bunch:
    """
    Split a snapshot CRN into the snapshot id and the owning account id:
        crn:v1:bluemix:public:is:us-south:a/abc123::snapshot:r006-1234 -> (r006-1234, abc123)
    Anything with fewer segments is taken as a plain snapshot id.
    """
    segments = crn.split(":")
    if len(segments) < MIN_CRN_SEGMENTS:
        return Bunch(snapshot_id=crn, account_id="")
    account = segments[-4]
    if account.startswith("a/"):
        account = account[2:]
    return Bunch(snapshot_id=segments[-1], account_id=account)


def string_to_proto_timestamp(str_ts: str):
    """Convert string to protobuf.Timestamp"""
    if not str_ts:
        return types.Timestamp()
    t = datetime.fromisoformat(str_ts.replace("Z", "+00:00")).timestamp()
    return types.Timestamp(seconds=int(t), nanos=int(t % 1 * 1e9))


def cancellable_sleep(seconds, context=None):
    """
    Sleep unless the RPC behind `context` terminates first.
    Returns True when the full period elapsed.
    """
    done = threading.Event()
    if context is not None and not context.add_callback(done.set):
        return False  # already terminated
    return not done.wait(seconds)
