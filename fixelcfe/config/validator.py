"""Configuration parameter validation."""

from typing import Any, List
from pathlib import Path

from fixelcfe.utils.exceptions import ConfigurationError


class ConfigValidator:
    """Validate configuration parameters.

    Accumulates validation errors and can raise them all at once.

    Attributes:
        errors: List of validation error messages
    """

    def __init__(self):
        self.errors: List[str] = []

    def _is_number(self, value: Any, name: str) -> bool:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            self.errors.append(f"{name} must be a number, got {type(value).__name__}")
            return False
        return True

    def validate_range(self, value: float, low: float, high: float, name: str) -> bool:
        """Validate value lies in the closed interval [low, high].

        Args:
            value: Value to validate
            low: Lower bound (inclusive)
            high: Upper bound (inclusive)
            name: Parameter name for error message

        Returns:
            True if valid, False otherwise
        """
        if not self._is_number(value, name):
            return False

        if not low <= value <= high:
            self.errors.append(f"{name} must be between {low} and {high}, got {value}")
            return False

        return True

    def validate_fraction(self, value: float, name: str) -> bool:
        """Validate value is in [0, 1]."""
        return self.validate_range(value, 0.0, 1.0, name)

    def validate_positive(self, value: float, name: str) -> bool:
        """Validate value is positive.

        Args:
            value: Value to validate
            name: Parameter name for error message

        Returns:
            True if valid, False otherwise
        """
        if not self._is_number(value, name):
            return False

        if value <= 0:
            self.errors.append(f"{name} must be positive, got {value}")
            return False

        return True

    def validate_n_jobs(self, value: int, name: str = "n_jobs") -> bool:
        """Validate a joblib-style job count (positive, or negative for all-but-N cores)."""
        if isinstance(value, bool) or not isinstance(value, int):
            self.errors.append(f"{name} must be an integer, got {type(value).__name__}")
            return False

        if value == 0:
            self.errors.append(f"{name} must not be zero")
            return False

        return True

    def validate_file_exists(self, path: Path, name: str) -> bool:
        """Validate file exists.

        Args:
            path: Path to validate
            name: Parameter name for error message

        Returns:
            True if valid, False otherwise
        """
        if not isinstance(path, Path):
            path = Path(path)

        if not path.exists():
            self.errors.append(f"{name} file not found: {path}")
            return False

        if not path.is_file():
            self.errors.append(f"{name} is not a file: {path}")
            return False

        return True

    def validate_choice(self, value: Any, choices: List[Any], name: str) -> bool:
        """Validate value is in allowed choices.

        Args:
            value: Value to validate
            choices: List of allowed values
            name: Parameter name for error message

        Returns:
            True if valid, False otherwise
        """
        if value not in choices:
            self.errors.append(
                f"{name} must be one of {choices}, got '{value}'"
            )
            return False

        return True

    def raise_if_errors(self) -> None:
        """Raise ConfigurationError if any validation errors occurred.

        Raises:
            ConfigurationError: If there are any validation errors
        """
        if self.errors:
            error_msg = "Configuration validation failed:\n" + "\n".join(
                f"  - {err}" for err in self.errors
            )
            raise ConfigurationError(error_msg)
