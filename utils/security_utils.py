"""
Security utilities for credential validation
"""
import re

from errors import ValidationError

SPECIAL_CHARACTERS = re.compile(r'[!@#$%&*(),.?":{}|<>\[\]^_\-+=~]')


def validate_password_strength(password: str, min_length: int = 8) -> None:
    """
    Validate password strength according to security requirements.

    Enforces:
    - Minimum length (configurable, default 8 characters)
    - At least one uppercase letter (A-Z)
    - At least one lowercase letter (a-z)
    - At least one digit (0-9)
    - At least one special character

    Raises:
        ValidationError: If password does not meet strength requirements
    """
    if not password:
        raise ValidationError("Password cannot be empty")

    if len(password) < min_length:
        raise ValidationError(f"Password must be at least {min_length} characters long")

    if not re.search(r'[A-Z]', password):
        raise ValidationError("Password must contain at least one uppercase letter (A-Z)")

    if not re.search(r'[a-z]', password):
        raise ValidationError("Password must contain at least one lowercase letter (a-z)")

    if not re.search(r'[0-9]', password):
        raise ValidationError("Password must contain at least one digit (0-9)")

    if not SPECIAL_CHARACTERS.search(password):
        raise ValidationError("Password must contain at least one special character")
