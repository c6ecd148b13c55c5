from typing import Optional

import psutil

_GIB = 1024 ** 3


def device_ram_gib() -> int:
    """Physical memory in whole GiB, rounded down."""
    return int(psutil.virtual_memory().total // _GIB)


def ram_shortfall(required_gib: int, available_gib: Optional[int] = None) -> str:
    """
    Return a message explaining why a model needing ``required_gib`` cannot run
    here, or an empty string when the device has enough memory.
    """
    if available_gib is None:
        available_gib = device_ram_gib()
    if required_gib and available_gib < required_gib:
        return f"A device with at least {required_gib} GB of RAM is required (found {available_gib} GB)."
    return ""


# --- Minimal self-test (run this file directly) ---------------------------------
if __name__ == "__main__":
    for need in (0, 5, 8, 64):
        print(f"need={need:3} GiB -> {ram_shortfall(need) or 'ok'}")
