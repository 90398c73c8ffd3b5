"""
Input Validation Utilities for SilverSeal
Provides reusable validators for admin and public API payloads
"""

import re
import bleach
from typing import Tuple, Optional, Any, Dict, List

from error_handlers import ValidationError


class InputValidator:
    """Centralized input validation utilities"""

    # Code patterns
    SERIAL_PATTERN = r'^[A-Z0-9]{6,64}$'
    PREFIX_PATTERN = r'^[A-Z]{1,8}$'
    ROOT_KEY_PATTERN = r'^[A-Z0-9]{3,4}$'
    EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'

    # Text constraints
    MAX_NAME_LENGTH = 200
    MAX_PERSON_NAME_LENGTH = 100
    MAX_MESSAGE_LENGTH = 2000

    # Numeric constraints
    MAX_WEIGHT = 1000000  # grams
    MAX_PAGE_SIZE = 200
    DEFAULT_PAGE_SIZE = 50

    @staticmethod
    def sanitize_text(text: Any, max_length: Optional[int] = None) -> str:
        """
        Strip HTML and surrounding whitespace from free text

        Args:
            text: Raw input (non-strings become '')
            max_length: Optional maximum length

        Returns:
            Sanitized text
        """
        if not text or not isinstance(text, str):
            return ''

        text = bleach.clean(text, tags=[], attributes={}, strip=True).strip()

        if max_length and len(text) > max_length:
            text = text[:max_length]

        return text

    @staticmethod
    def validate_email(email: Any) -> Tuple[bool, str, str]:
        """
        Validate email address format

        Returns:
            Tuple of (is_valid, cleaned_email, error_message)
        """
        if not email or not isinstance(email, str):
            return False, '', "Email is required"

        email = email.strip().lower()
        if len(email) > 254:
            return False, email, "Email too long"
        if not re.match(InputValidator.EMAIL_PATTERN, email):
            return False, email, "Invalid email format"

        return True, email, ""

    @staticmethod
    def parse_int(value: Any, field: str, errors: Dict[str, List[str]],
                  min_val: Optional[int] = None, max_val: Optional[int] = None,
                  required: bool = True) -> Optional[int]:
        """Parse an integer field, recording a message in ``errors`` on failure"""
        if value is None or value == '':
            if required:
                errors.setdefault(field, []).append(f"{field} is required")
            return None

        if isinstance(value, bool):
            errors.setdefault(field, []).append(f"{field} must be a whole number")
            return None

        try:
            if isinstance(value, float):
                if not value.is_integer():
                    raise ValueError(value)
                value = int(value)
            else:
                value = int(str(value).strip())
        except (ValueError, TypeError):
            errors.setdefault(field, []).append(f"{field} must be a whole number")
            return None

        if min_val is not None and value < min_val:
            errors.setdefault(field, []).append(f"{field} must be at least {min_val}")
            return None
        if max_val is not None and value > max_val:
            errors.setdefault(field, []).append(f"{field} must be at most {max_val}")
            return None

        return value

    @staticmethod
    def parse_price(value: Any, errors: Dict[str, List[str]]) -> Optional[float]:
        if value is None or value == '':
            return None
        if isinstance(value, bool):
            errors.setdefault('price', []).append("price must be a number")
            return None
        try:
            value = float(value)
        except (ValueError, TypeError):
            errors.setdefault('price', []).append("price must be a number")
            return None
        if value < 0:
            errors.setdefault('price', []).append("price cannot be negative")
            return None
        return value

    @staticmethod
    def normalize_code(code: Any) -> str:
        """Trim, upper-case and drop everything that is not alphanumeric"""
        if not code or not isinstance(code, str):
            return ''
        return re.sub(r'[^A-Z0-9]', '', code.strip().upper())

    @staticmethod
    def validate_prefix(prefix: Any, errors: Dict[str, List[str]], field: str = 'serial_prefix') -> Optional[str]:
        if prefix is None or prefix == '':
            return None
        if not isinstance(prefix, str):
            errors.setdefault(field, []).append("Prefix must be text")
            return None
        prefix = prefix.strip().upper()
        if not re.match(InputValidator.PREFIX_PATTERN, prefix):
            errors.setdefault(field, []).append("Prefix must be 1-8 letters")
            return None
        return prefix

    @staticmethod
    def _require_object(data: Any) -> dict:
        if not isinstance(data, dict):
            raise ValidationError('Request body must be a JSON object')
        return data

    @staticmethod
    def validate_product_create(data: Any, max_quantity: int) -> dict:
        """
        Validate a product creation payload

        Accepts name, weight, price, stock and either an explicit
        serial_code or a serial_prefix with quantity for a sequential run.

        Returns:
            Cleaned payload dict

        Raises:
            ValidationError with per-field messages
        """
        data = InputValidator._require_object(data)
        errors: Dict[str, List[str]] = {}

        name = InputValidator.sanitize_text(data.get('name'), InputValidator.MAX_NAME_LENGTH)
        if not name:
            errors.setdefault('name', []).append("name is required")

        weight = InputValidator.parse_int(data.get('weight'), 'weight', errors,
                                          min_val=1, max_val=InputValidator.MAX_WEIGHT)
        price = InputValidator.parse_price(data.get('price'), errors)
        stock = InputValidator.parse_int(data.get('stock'), 'stock', errors, min_val=0, required=False)
        quantity = InputValidator.parse_int(data.get('quantity'), 'quantity', errors,
                                            min_val=1, max_val=max_quantity, required=False) or 1
        serial_prefix = InputValidator.validate_prefix(data.get('serial_prefix'), errors)

        serial_code = None
        raw_code = data.get('serial_code')
        if raw_code not in (None, ''):
            from serial_utils import validate_serial_code
            try:
                serial_code = validate_serial_code(raw_code)
            except ValidationError as e:
                for field, messages in e.fields.items():
                    errors.setdefault(field, []).extend(messages)

        if serial_code and quantity > 1:
            errors.setdefault('quantity', []).append("quantity must be 1 when serial_code is supplied")
        if serial_code and serial_prefix:
            errors.setdefault('serial_code', []).append("serial_code and serial_prefix are mutually exclusive")

        if errors:
            raise ValidationError('Invalid product data', fields=errors)

        return {
            'name': name,
            'weight': weight,
            'price': price,
            'stock': stock,
            'quantity': quantity,
            'serial_code': serial_code,
            'serial_prefix': serial_prefix,
        }

    @staticmethod
    def validate_product_update(data: Any) -> dict:
        """Validate a partial update; only supplied keys are returned"""
        data = InputValidator._require_object(data)
        errors: Dict[str, List[str]] = {}
        cleaned = {}

        if 'name' in data:
            name = InputValidator.sanitize_text(data.get('name'), InputValidator.MAX_NAME_LENGTH)
            if not name:
                errors.setdefault('name', []).append("name cannot be empty")
            cleaned['name'] = name
        if 'weight' in data:
            cleaned['weight'] = InputValidator.parse_int(data.get('weight'), 'weight', errors,
                                                         min_val=1, max_val=InputValidator.MAX_WEIGHT)
        if 'price' in data:
            cleaned['price'] = InputValidator.parse_price(data.get('price'), errors)
        if 'stock' in data:
            cleaned['stock'] = InputValidator.parse_int(data.get('stock'), 'stock', errors,
                                                        min_val=0, required=False)
        if 'serial_code' in data:
            from serial_utils import validate_serial_code
            try:
                cleaned['serial_code'] = validate_serial_code(data.get('serial_code'))
            except ValidationError as e:
                for field, messages in e.fields.items():
                    errors.setdefault(field, []).extend(messages)

        if errors:
            raise ValidationError('Invalid product data', fields=errors)
        if not cleaned:
            raise ValidationError('No updatable fields supplied')

        return cleaned

    @staticmethod
    def validate_gram_create(data: Any, max_quantity: int) -> dict:
        """Validate a gram batch creation payload"""
        data = InputValidator._require_object(data)
        errors: Dict[str, List[str]] = {}

        name = InputValidator.sanitize_text(data.get('name'), InputValidator.MAX_NAME_LENGTH)
        if not name:
            errors.setdefault('name', []).append("name is required")

        weight = InputValidator.parse_int(data.get('weight'), 'weight', errors,
                                          min_val=1, max_val=InputValidator.MAX_WEIGHT)
        quantity = InputValidator.parse_int(data.get('quantity'), 'quantity', errors,
                                            min_val=1, max_val=max_quantity)
        serial_prefix = InputValidator.validate_prefix(data.get('serial_prefix'), errors)

        if errors:
            raise ValidationError('Invalid gram batch data', fields=errors)

        return {
            'name': name,
            'weight': weight,
            'quantity': quantity,
            'serial_prefix': serial_prefix,
        }

    @staticmethod
    def validate_gram_update(data: Any) -> dict:
        data = InputValidator._require_object(data)
        errors: Dict[str, List[str]] = {}
        cleaned = {}

        if 'name' in data:
            name = InputValidator.sanitize_text(data.get('name'), InputValidator.MAX_NAME_LENGTH)
            if not name:
                errors.setdefault('name', []).append("name cannot be empty")
            cleaned['name'] = name
        if 'weight' in data:
            cleaned['weight'] = InputValidator.parse_int(data.get('weight'), 'weight', errors,
                                                         min_val=1, max_val=InputValidator.MAX_WEIGHT)

        if errors:
            raise ValidationError('Invalid gram batch data', fields=errors)
        if not cleaned:
            raise ValidationError('No updatable fields supplied')

        return cleaned

    @staticmethod
    def validate_feedback(data: Any) -> dict:
        """
        Validate a public feedback submission

        Raises:
            ValidationError with per-field messages
        """
        data = InputValidator._require_object(data)
        errors: Dict[str, List[str]] = {}

        name = InputValidator.sanitize_text(data.get('name'), InputValidator.MAX_PERSON_NAME_LENGTH)
        if not name:
            errors.setdefault('name', []).append("name is required")

        is_valid, email, message = InputValidator.validate_email(data.get('email'))
        if not is_valid:
            errors.setdefault('email', []).append(message)

        text = InputValidator.sanitize_text(data.get('message'), InputValidator.MAX_MESSAGE_LENGTH)
        if not text:
            errors.setdefault('message', []).append("message is required")

        if errors:
            raise ValidationError('Invalid feedback', fields=errors)

        return {'name': name, 'email': email, 'message': text}

    @staticmethod
    def validate_root_key_request(data: Any) -> Tuple[str, str]:
        """Validate ``{uniq_code, root_key}`` and return both normalised"""
        data = InputValidator._require_object(data)
        errors: Dict[str, List[str]] = {}

        uniq_code = InputValidator.normalize_code(data.get('uniq_code'))
        if not uniq_code:
            errors.setdefault('uniq_code', []).append("uniq_code is required")

        root_key = InputValidator.normalize_code(data.get('root_key'))
        if not re.match(InputValidator.ROOT_KEY_PATTERN, root_key):
            errors.setdefault('root_key', []).append("root_key must be 3-4 letters or digits")

        if errors:
            raise ValidationError('Invalid root key request', fields=errors)

        return uniq_code, root_key

    @staticmethod
    def validate_qr_selection(data: Any, max_codes: int) -> List[str]:
        """Validate ``{serial_codes: [...]}``; returns normalised codes, duplicates dropped, order kept"""
        data = InputValidator._require_object(data)
        codes = data.get('serial_codes')
        if not isinstance(codes, list) or not codes:
            raise ValidationError('Invalid selection',
                                  fields={'serial_codes': ["serial_codes must be a non-empty list"]})

        selected: List[str] = []
        for code in codes:
            code = InputValidator.normalize_code(code)
            if code and code not in selected:
                selected.append(code)

        if not selected:
            raise ValidationError('Invalid selection',
                                  fields={'serial_codes': ["serial_codes contains no valid codes"]})
        if len(selected) > max_codes:
            raise ValidationError('Invalid selection',
                                  fields={'serial_codes': [f"At most {max_codes} codes fit on one sheet"]})
        return selected

    @staticmethod
    def validate_retention_days(days: Any) -> int:
        """Reject non-numeric and non-positive retention windows"""
        if isinstance(days, bool):
            raise ValidationError('Invalid retention window', fields={'days': ["days must be a positive number"]})
        try:
            value = float(days)
        except (ValueError, TypeError):
            raise ValidationError('Invalid retention window', fields={'days': ["days must be a positive number"]})
        if value != value or value <= 0 or not value.is_integer():  # NaN, non-positive or fractional
            raise ValidationError('Invalid retention window', fields={'days': ["days must be a positive number"]})
        return int(value)

    @staticmethod
    def parse_limit(value: Any, default: Optional[int] = None) -> int:
        """Clamp a ``limit`` query parameter into [1, MAX_PAGE_SIZE]"""
        default = default or InputValidator.DEFAULT_PAGE_SIZE
        try:
            value = int(value) if value else default
        except (ValueError, TypeError):
            value = default
        return max(1, min(value, InputValidator.MAX_PAGE_SIZE))


def get_json_body(request_obj) -> dict:
    """Return the JSON body of a request, raising ValidationError if it is malformed"""
    data = request_obj.get_json(silent=True)
    if data is None:
        if request_obj.content_length:
            raise ValidationError('Request body must be valid JSON')
        return {}
    return InputValidator._require_object(data)
