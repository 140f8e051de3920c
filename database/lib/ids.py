"""Row id helpers."""
import uuid
from typing import Union

from errors import NotFound


def parse_uuid(value: Union[str, uuid.UUID], kind: str = 'Record') -> uuid.UUID:
    """Parse a row id taken from a request.

    A malformed id cannot name an existing row, so it is reported as NotFound.
    """
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFound(f"{kind} {value} not found")
