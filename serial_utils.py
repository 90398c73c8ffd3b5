"""
Serial code, unique code and root key generation.

Generated codes are PREFIX + base36 millisecond timestamp + random base36
suffix, upper-cased. Callers still check uniqueness against the database
and retry on collision.
"""
import re
import time
import secrets
import string
import logging
from typing import Iterable, List
from werkzeug.security import generate_password_hash, check_password_hash

from error_handlers import ValidationError

logger = logging.getLogger(__name__)

BASE36_ALPHABET = string.digits + string.ascii_uppercase
ROOT_KEY_ALPHABET = string.ascii_uppercase + string.digits
SERIAL_PATTERN = re.compile(r'^[A-Z0-9]{6,64}$')
RANDOM_SUFFIX_LENGTH = 6
ROOT_KEY_LENGTH = 4
SEQUENCE_WIDTH = 6


def to_base36(number: int) -> str:
    if number < 0:
        raise ValueError("number must be non-negative")
    if number == 0:
        return '0'
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return ''.join(reversed(digits))


def generate_serial_code(prefix: str = 'SK') -> str:
    """Return a new random code such as ``SKM1X2Y3Z4AB12CD``"""
    timestamp = to_base36(int(time.time() * 1000))
    suffix = ''.join(secrets.choice(BASE36_ALPHABET) for _ in range(RANDOM_SUFFIX_LENGTH))
    return f"{prefix}{timestamp}{suffix}".upper()


def normalize_serial_code(code) -> str:
    """Strip all whitespace and upper-case"""
    if code is None:
        return ''
    return re.sub(r'\s+', '', str(code)).upper()


def validate_serial_code(code) -> str:
    """
    Normalise a caller-supplied code and check it against the serial pattern.

    Returns the normalised code. Raises ValidationError on failure.
    """
    normalized = normalize_serial_code(code)
    if not SERIAL_PATTERN.match(normalized):
        raise ValidationError(
            'Invalid serial code',
            fields={'serial_code': ["Serial code must be 6-64 letters or digits"]}
        )
    return normalized


def format_sequential_serial(prefix: str, number: int) -> str:
    return f"{prefix.upper()}{number:0{SEQUENCE_WIDTH}d}"


def generate_sequential_serials(prefix: str, count: int, start: int = 1) -> List[str]:
    """``generate_sequential_serials('SKA', 3)`` -> SKA000001, SKA000002, SKA000003"""
    return [format_sequential_serial(prefix, start + i) for i in range(count)]


def find_highest_serial_number(serials: Iterable[str], prefix: str) -> int:
    """Highest numeric suffix among ``serials`` that carry ``prefix`` (0 if none)"""
    pattern = re.compile(rf'^{re.escape(prefix.upper())}(\d+)$')
    highest = 0
    for serial in serials:
        if not serial:
            continue
        match = pattern.match(serial.upper())
        if match:
            highest = max(highest, int(match.group(1)))
    return highest


def generate_root_key() -> str:
    return ''.join(secrets.choice(ROOT_KEY_ALPHABET) for _ in range(ROOT_KEY_LENGTH))


def hash_root_key(root_key: str) -> str:
    return generate_password_hash(root_key.upper())


def check_root_key(root_key_hash: str, root_key: str) -> bool:
    if not root_key_hash or not root_key:
        return False
    return check_password_hash(root_key_hash, root_key.upper())
