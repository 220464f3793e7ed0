# utils.py

import os
import sys
import time
import random
import string
from urllib.parse import urlparse

_ID_CHARS = string.ascii_letters + string.digits
_BASE36 = string.digits + string.ascii_lowercase


def resource_path(rel_path):
    # when frozen by PyInstaller, files are unpacked to _MEIPASS
    base = getattr(sys, "_MEIPASS", os.path.dirname(os.path.abspath(__file__)))
    return os.path.join(base, rel_path)


def get_path(file):
    # absolute paths are used as given
    if os.path.isabs(file):
        return file
    # if frozen (running as EXE), look next to the EXE
    if getattr(sys, "frozen", False):
        return os.path.join(os.path.dirname(sys.executable), file)
    # else (running from source), relative to the working directory
    return os.path.join(os.getcwd(), file)


def now_ms() -> int:
    return int(time.time() * 1000)


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    number = abs(number)
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_random_id(length: int = 12) -> str:
    return "".join(random.choice(_ID_CHARS) for _ in range(length))


def extract_hostname(url: str) -> str:
    """
    Extract the hostname from a URL.

    Returns:
        Lowercase hostname (e.g., "github.com"), '' if the URL has none
    """
    try:
        return (urlparse(url).hostname or '').lower()
    except ValueError:
        return ''

