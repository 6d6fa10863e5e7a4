"""
Identifier generation.
"""

import random
import string
import time
import uuid

_BASE36 = string.digits + string.ascii_lowercase


def generate_id() -> str:
    """Generate a graph element id as ``{epoch_millis}_{random_base36}``.

    The millisecond prefix keeps ids lexically sortable by creation time; the 9 random
    base36 characters avoid collisions within the same millisecond.
    """
    suffix = ''.join(random.choices(_BASE36, k=9))
    return f'{int(time.time() * 1000)}_{suffix}'


def generate_memory_id() -> str:
    """Generate a globally unique memory entry id."""
    return str(uuid.uuid4())
