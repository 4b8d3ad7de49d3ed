"""
Instancer - Flag value generation
"""

import uuid

FLAG_TOKEN = "[GUID]"
DEFAULT_FLAG_FORMAT = "flag{[GUID]}"


def generate_flag(flag_format: str | None = None) -> str:
    """
    Render a flag from a contest format string.

    The first ``[GUID]`` is replaced with a random UUID4. Formats without
    the token get it appended so every team still receives a unique value.
    """
    fmt = flag_format or DEFAULT_FLAG_FORMAT
    token = str(uuid.uuid4())
    if FLAG_TOKEN not in fmt:
        return fmt + token
    return fmt.replace(FLAG_TOKEN, token, 1)
