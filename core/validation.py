"""
Input validation for user-entered fields.

Registration fields, sign-in fields, search queries and message bodies are
checked here before any collaborator call is made, so an incomplete form never
costs a network round-trip.
"""

import re
from typing import Optional

from core.logging_config import get_logger
from core.exceptions import ValidationError

logger = get_logger(__name__)


class InputValidator:
    """Validation helpers for the fields the UI submits"""

    EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
    MAX_USERNAME_LENGTH = 30
    MAX_MESSAGE_LENGTH = 4000

    @staticmethod
    def require(field: str, value: Optional[str]) -> str:
        """Reject missing or blank values"""
        if value is None or not isinstance(value, str) or not value.strip():
            raise ValidationError(field, value, "This field is required")
        return value.strip()

    @staticmethod
    def validate_email(email: Optional[str]) -> str:
        """Validate email address"""
        email = InputValidator.require("email", email)

        if len(email) > 254 or not InputValidator.EMAIL_PATTERN.match(email):
            raise ValidationError("email", email, "Invalid email format")

        return email.lower()

    @staticmethod
    def validate_password(password: Optional[str]) -> str:
        """Passwords are only checked for presence; policy belongs to the auth service"""
        if password is None or not isinstance(password, str) or password == "":
            raise ValidationError("password", "***", "This field is required")
        return password

    @staticmethod
    def validate_username(username: Optional[str]) -> str:
        """Validate username"""
        username = InputValidator.require("username", username)

        if len(username) > InputValidator.MAX_USERNAME_LENGTH:
            raise ValidationError(
                "username",
                username,
                f"Must be no more than {InputValidator.MAX_USERNAME_LENGTH} characters",
            )

        return username

    @staticmethod
    def validate_registration(email: Optional[str], password: Optional[str], username: Optional[str]):
        """Validate the complete registration form, returning cleaned values"""
        cleaned = (
            InputValidator.validate_email(email),
            InputValidator.validate_password(password),
            InputValidator.validate_username(username),
        )
        logger.debug(f"Registration form accepted for {cleaned[0]}")
        return cleaned

    @staticmethod
    def validate_search_query(query: Optional[str]) -> str:
        return InputValidator.require("username", query)

    @staticmethod
    def validate_message_text(text: Optional[str]) -> str:
        text = text or ""
        if len(text) > InputValidator.MAX_MESSAGE_LENGTH:
            raise ValidationError(
                "message",
                text[:50],
                f"Must be no more than {InputValidator.MAX_MESSAGE_LENGTH} characters",
            )
        return text
