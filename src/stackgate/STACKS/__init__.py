"""
Stacks shipped with stackgate.
"""
import os
from typing import List

STACKS_DIR = os.path.dirname(os.path.abspath(__file__))


def available_stacks() -> List[str]:
    return sorted(
        os.path.splitext(entry)[0]
        for entry in os.listdir(STACKS_DIR)
        if entry.endswith(".yaml")
    )


def bundled_stack_path(name: str) -> str:
    """
    :raises KeyError: If no stack by that name is bundled.
    """
    path = os.path.join(STACKS_DIR, f"{name}.yaml")
    if not os.path.exists(path):
        raise KeyError(f"Unknown stack {name} (available: {', '.join(available_stacks())})")
    return path
