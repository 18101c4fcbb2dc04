"""
Central definition of every key written to the store.

Layout: "kasparov:<kind>:<fixed parts>:<instance id>". The instance id always comes last, so it may contain ':' itself
and parse_key() can still split a key back into its parts without ambiguity.
"""

from src.core.exceptions import InvalidRequestError

NAMESPACE = "kasparov"
SEPARATOR = ":"

RECORD = "round"
TALLY = "tally"
JOB = "job"
DAILY_JOB = "daily-job"

# number of fixed parts (after the kind) in front of the instance id
_FIXED_PARTS: dict[str, int] = {RECORD: 0, TALLY: 1, JOB: 0, DAILY_JOB: 0}


def _build(kind: str, instance_id: str, *parts: str) -> str:
    if not instance_id:
        raise InvalidRequestError("An instance id is required to address the store.")
    return SEPARATOR.join([NAMESPACE, kind, *parts, instance_id])


def record_key(instance_id: str) -> str:
    """Round record: position, round number, timestamps, phase."""
    return _build(RECORD, instance_id)


def tally_key(instance_id: str, round_number: int) -> str:
    """Vote tally (hash of Move-Key -> count). Scoped per round so every round starts from an empty tally."""
    if round_number < 1:
        raise InvalidRequestError(f"Round numbers start at 1, got {round_number}.")
    return _build(TALLY, instance_id, str(round_number))


def job_key(instance_id: str) -> str:
    """Id of the recurring resolution job (kept in case the job has to be cancelled)."""
    return _build(JOB, instance_id)


def daily_job_key(instance_id: str) -> str:
    """Id of the daily new-game job registered when the app is installed."""
    return _build(DAILY_JOB, instance_id)


def parse_key(key: str) -> tuple[str, ...]:
    """Inverse of the builders above: (kind, *fixed parts, instance id)"""
    parts = key.split(SEPARATOR, 2)
    if len(parts) != 3 or parts[0] != NAMESPACE or parts[1] not in _FIXED_PARTS:
        raise InvalidRequestError(f"Not a key of this application: {key!r}")
    _, kind, rest = parts
    fields = rest.split(SEPARATOR, _FIXED_PARTS[kind])
    if len(fields) != _FIXED_PARTS[kind] + 1 or not all(fields):
        raise InvalidRequestError(f"Incomplete {kind} key: {key!r}")
    return (kind, *fields)
