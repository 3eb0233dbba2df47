"""
Retry engine for calls towards the cloud API.

Two cadences are provided:

* `Exponential` - short API calls. The first gap is 10s, it doubles after the second failure and is capped at 60s.
* `CustomGap` - attach/detach polling. `min_gap` seconds for the first `min_gap_attempts` attempts,
  then `2 * min_gap` (capped at 10s) for `2 * min_gap_attempts` more attempts, then 10s until `max_attempts`.

Both take an attempt function returning `(outcome, payload)`, where outcome is one of OK, RETRY or STOP.
OK returns the payload, STOP raises it (it must be an exception) and RETRY sleeps and tries again.
When the attempts are exhausted the payload of the last attempt is raised.
"""

from time import sleep

from easypy.tokens import Token

from .exceptions import BackendError
from .logging import logger


OK = Token("OK")
RETRY = Token("RETRY")
STOP = Token("STOP")

# Backend codes on which retrying will never help
TERMINAL_VPC_CODES = frozenset([
    "validation_invalid_name",
    "volume_capacity_max",
    "volume_id_invalid",
    "volume_profile_iops_invalid",
    "volume_capacity_zero_or_negative",
    "not_found",
    "volume_id_not_found",
    "volume_name_not_found",
    "volume_profile_capacity_iops_invalid",
    "snapshots_not_found",
    "snapshots_not_authorized",
    "snapshot_id_not_found",
    "snapshots_source_volume_not_found",
    "snapshots_source_volume_not_attached",
    "volume_capacity_maximum",
    "volume_profile_not_found",
    "validation_failed_maximum",
    "validation_failed_anyof",
    "volume_profile_capacity_maxbandwidth_invalid",
    "validation_failed_pattern",
    "not_authorized",
    "unauthorized",
])

TERMINAL_IKS_CODES = frozenset([
    "ST0005",  # worker node could not be found
    "ST0008",  # volume could not be found
    "ST0014",  # volume attachment could not be found
    "ST0015",  # volume attachment request is not valid
    "ST0016",  # volume id is not valid
    "P4106",
    "P4107",
    "P4109",
])

# Codes that look fatal but are known to be transient
RETRYABLE_CODES = frozenset(["internal_error", "invalid_route"])


def is_terminal(error: BackendError, iks: bool = False) -> bool:
    """Whether retrying the call that produced `error` is pointless"""
    if error.code in RETRYABLE_CODES:
        return False
    if iks and error.kind == "iks":
        return error.code in TERMINAL_IKS_CODES
    return error.code in TERMINAL_VPC_CODES or error.code in TERMINAL_IKS_CODES


class RetryPolicy:
    max_attempts = None

    def __init__(self, iks=False):
        self.iks = iks

    def first_gap(self):
        raise NotImplementedError()

    def next_gap(self, attempt, gap):
        raise NotImplementedError()

    def run(self, attempt_fn, what="operation"):
        gap = self.first_gap()
        payload = None
        for attempt in range(self.max_attempts):
            if attempt:
                sleep(gap)
            outcome, payload = attempt_fn()
            if outcome is OK:
                return payload
            if outcome is STOP:
                raise payload
            gap = self.next_gap(attempt, gap)
            if attempt + 1 < self.max_attempts:
                logger.debug(f"{what}: attempt {attempt + 1}/{self.max_attempts} failed, retrying in {gap}s ({payload})")
        logger.warning(f"{what}: giving up after {self.max_attempts} attempts ({payload})")
        raise payload

    def call(self, fn, *args, what=None, **kwargs):
        """Invoke `fn` until it returns, stopping early on terminal backend errors"""

        def attempt():
            try:
                return OK, fn(*args, **kwargs)
            except BackendError as exc:
                return (STOP if is_terminal(exc, self.iks) else RETRY), exc

        return self.run(attempt, what=what or getattr(fn, "__name__", "operation"))


class Exponential(RetryPolicy):

    def __init__(self, initial=10, max_gap=60, max_attempts=10, iks=False):
        super().__init__(iks=iks)
        self.initial = initial
        self.max_gap = max_gap
        self.max_attempts = max_attempts

    def __repr__(self):
        return f"Exponential(initial={self.initial}, max_gap={self.max_gap}, max_attempts={self.max_attempts})"

    def first_gap(self):
        return self.initial

    def next_gap(self, attempt, gap):
        if attempt >= 1:
            gap = min(2 * gap, self.max_gap)
        return gap


class CustomGap(RetryPolicy):

    CONSTANT_GAP = 10

    def __init__(self, min_gap=3, min_gap_attempts=3, max_attempts=46, iks=False):
        super().__init__(iks=iks)
        self.min_gap = min_gap
        self.min_gap_attempts = min_gap_attempts
        self.max_attempts = max_attempts

    def __repr__(self):
        return (
            f"CustomGap(min_gap={self.min_gap}, min_gap_attempts={self.min_gap_attempts},"
            f" max_attempts={self.max_attempts})"
        )

    @classmethod
    def from_config(cls, min_gap=None, min_gap_attempts=None, max_attempts=None, iks=False):
        """Build the polling cadence, ignoring overrides outside the accepted bounds"""
        policy = cls(iks=iks)
        if min_gap and 3 < min_gap < cls.CONSTANT_GAP:
            policy.min_gap = min_gap
        if min_gap_attempts and min_gap_attempts > 0:
            policy.min_gap_attempts = min_gap_attempts
        if max_attempts and max_attempts > 46:
            policy.max_attempts = max_attempts
        return policy

    def first_gap(self):
        return self.min_gap

    def next_gap(self, attempt, gap):
        if attempt + 1 == self.min_gap_attempts:
            gap = min(2 * self.min_gap, self.CONSTANT_GAP)
        elif attempt + 1 == 3 * self.min_gap_attempts:
            gap = self.CONSTANT_GAP
        return gap

    def total_budget(self):
        """Seconds slept when every attempt asks for a retry"""
        gap, total = self.first_gap(), 0
        for attempt in range(self.max_attempts - 1):
            gap = self.next_gap(attempt, gap)
            total += gap
        return total
