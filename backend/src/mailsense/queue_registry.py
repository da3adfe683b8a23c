"""
Central registry for known job types.

Single source of truth for the event names the worker consumes, so they
are not hardcoded across producers and consumers.
"""

MESSAGE_INSERTED = "message/inserted"

# List of all recognized job types
KNOWN_JOB_TYPES: list[str] = [
    MESSAGE_INSERTED,
]


def get_known_job_types() -> list[str]:
    """
    Returns a copy of the list of known job types.

    Returns:
        A list of strings, where each string is a registered job type.
    """
    return KNOWN_JOB_TYPES.copy()
