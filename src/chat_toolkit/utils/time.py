import time


def get_current_timestamp() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)
