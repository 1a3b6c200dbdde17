"""Validation of associative configuration blocks.

Storage settings, credentials and named job configs are loosely typed
mappings supplied by operators. They are checked here before anything is
sent to Coconut so that configuration mistakes surface synchronously.
"""

from collections.abc import Mapping
from typing import Any, Iterable, Optional


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""

    def __init__(self, message: str, attribute: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.attribute = attribute


class AssociativeArrayValidator:
    """Validates that a value is a string-keyed mapping with key constraints.

    Checks run in the order required -> forbidden -> allowed and stop at the
    first failing check. By default only the first offending key is
    reported; with ``check_all_keys`` every offending key of the failing
    check is reported.
    """

    message = "{attribute} must be an associative array."
    required_message = '{attribute} must contain required key(s) "{keys}"'
    forbidden_message = '{attribute} can not contain forbidden key(s) "{keys}"'
    not_allowed_message = '{attribute} contains key(s) that are not allowed "{keys}"'

    def __init__(
        self,
        required_keys: Iterable[str] = (),
        forbidden_keys: Iterable[str] = (),
        allowed_keys: Optional[Iterable[str]] = None,
        check_all_keys: bool = False,
    ):
        self.required_keys = list(required_keys)
        self.forbidden_keys = list(forbidden_keys)
        self.allowed_keys = list(allowed_keys) if allowed_keys is not None else None
        self.check_all_keys = check_all_keys

    @staticmethod
    def is_associative(value: Any) -> bool:
        """Whether value is a mapping whose keys are all strings.

        An empty mapping counts as associative.
        """
        if not isinstance(value, Mapping):
            return False
        return all(isinstance(key, str) for key in value.keys())

    def validate_value(self, value: Any, attribute: str = "value") -> Optional[str]:
        """Return an error message for ``value``, or None when it is valid."""
        if not self.is_associative(value):
            return self.message.format(attribute=attribute)

        missing = [key for key in self.required_keys if key not in value]
        if missing:
            return self._format(self.required_message, attribute, missing)

        forbidden = [key for key in self.forbidden_keys if key in value]
        if forbidden:
            return self._format(self.forbidden_message, attribute, forbidden)

        if self.allowed_keys is not None:
            not_allowed = [key for key in value.keys() if key not in self.allowed_keys]
            if not_allowed:
                return self._format(self.not_allowed_message, attribute, not_allowed)

        return None

    def validate(self, value: Any, attribute: str = "value") -> Mapping:
        """Validate ``value`` and return it unchanged.

        Raises:
            ConfigValidationError: If the value is not valid
        """
        error = self.validate_value(value, attribute)
        if error is not None:
            raise ConfigValidationError(error, attribute=attribute)
        return value

    def _format(self, template: str, attribute: str, keys: list[str]) -> str:
        reported = keys if self.check_all_keys else keys[:1]
        return template.format(attribute=attribute, keys=", ".join(reported))
