"""
Purpose: Guardrails for user input.
Content: early, predictable failures; prevent blank or oversized requests
from reaching the API or the history files.
"""

from ..errors import InputValidationError
from ..models import MAX_MESSAGE_CHARS


class DefaultSecurity:
    def __init__(self, max_input_chars: int = MAX_MESSAGE_CHARS) -> None:
        self.max_input_chars = max_input_chars

    def validate_user_input(self, text: str) -> None:
        if not (text or "").strip():
            raise InputValidationError("Please enter a non-empty message.")
        if len(text) > self.max_input_chars:
            raise InputValidationError(
                f"Your message is too long (limit {self.max_input_chars} characters)."
            )

    def sanitize_for_prompt(self, text: str) -> str:
        return (text or "").replace("\x00", "").strip()
