import re
from typing import Callable

# line -> serving endpoint, or None if the line is not the ready signal
ReadyMatcher = Callable[[str], str | None]

URL_PATTERN = re.compile(r"(https?://)([^:\s]+):(\d+)")

def url_after_marker(marker: str, pattern: re.Pattern = URL_PATTERN) -> ReadyMatcher:
    """
    Matcher for services that print a fixed phrase followed by their address,
    e.g. "Running on local URL:  http://127.0.0.1:7860".

    The marker is matched case-insensitively. A line with the marker but no
    well-formed url is not a match.
    """
    needle = marker.lower()

    def match(line: str) -> str | None:
        if needle not in line.lower():
            return None
        m = pattern.search(line)
        if m is None:
            return None
        return m.group(0)

    return match

def never(line: str) -> str | None:
    return None
