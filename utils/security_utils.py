"""
Security utilities for credential and chat input validation
"""
import re

# Longest chat message accepted from a user or operator
MAX_MESSAGE_LENGTH = 4000


def validate_password_strength(password: str) -> None:
    """
    Validate password strength according to security requirements.

    Enforces:
    - Minimum length: 12 characters
    - At least one uppercase letter (A-Z)
    - At least one lowercase letter (a-z)
    - At least one digit (0-9)
    - At least one special character (!@#$%^&*(),.?":{}|<>])

    Args:
        password: Password string to validate

    Raises:
        ValueError: If password does not meet strength requirements
    """
    if not password:
        raise ValueError("Password cannot be empty")

    if len(password) < 12:
        raise ValueError("Password must be at least 12 characters long")

    if not re.search(r'[A-Z]', password):
        raise ValueError("Password must contain at least one uppercase letter (A-Z)")

    if not re.search(r'[a-z]', password):
        raise ValueError("Password must contain at least one lowercase letter (a-z)")

    if not re.search(r'[0-9]', password):
        raise ValueError("Password must contain at least one digit (0-9)")

    if not re.search(r'[!@#$%&*(),.?":{}|<>\[\]^]', password):
        raise ValueError("Password must contain at least one special character (!@#$%^&*(),.?\":{}|<>[])")


def sanitize_message_text(text: str) -> str:
    """
    Normalize a chat message before it is stored or sent to the model.

    Strips null bytes and surrounding whitespace.

    Raises:
        ValueError: If the message is empty or longer than MAX_MESSAGE_LENGTH
    """
    if text is None:
        raise ValueError("Message cannot be empty")
    cleaned = text.replace("\x00", "").strip()
    if not cleaned:
        raise ValueError("Message cannot be empty")
    if len(cleaned) > MAX_MESSAGE_LENGTH:
        raise ValueError(f"Message must be at most {MAX_MESSAGE_LENGTH} characters")
    return cleaned
