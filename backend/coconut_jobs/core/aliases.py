"""Property alias tables for configuration mappings.

Configuration blocks (storage settings, service credentials, notification
settings, volume configs) accept several spellings for the same field:
camelCase variants of snake_case names and historical aliases such as
``bucketId`` for ``bucket``. Each :class:`AliasTable` is built once from the
static field list and resolves incoming keys to their canonical name.
"""

import re
from typing import Any, Iterable, Mapping, Optional

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")


def camel_to_snake(name: str) -> str:
    """Convert ``cacheControl`` to ``cache_control``."""
    return _CAMEL_BOUNDARY.sub(r"_\1", name).lower()


def snake_to_camel(name: str) -> str:
    """Convert ``cache_control`` to ``cacheControl``."""
    head, *tail = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in tail)


class AliasTable:
    """Static mapping of alias names to canonical field names."""

    def __init__(
        self,
        fields: Iterable[str],
        aliases: Optional[Mapping[str, Iterable[str]]] = None,
        camel_case: bool = True,
    ):
        self.fields = tuple(fields)
        self._lookup: dict[str, str] = {}

        for field in self.fields:
            self._lookup[field] = field
            if camel_case:
                self._lookup.setdefault(snake_to_camel(field), field)

        for canonical, names in (aliases or {}).items():
            if canonical not in self.fields:
                raise ValueError(f"Alias target '{canonical}' is not a known field")
            for name in names:
                self._lookup.setdefault(name, canonical)
                if camel_case:
                    self._lookup.setdefault(camel_to_snake(name), canonical)
                    self._lookup.setdefault(snake_to_camel(name), canonical)

    def canonical(self, name: str) -> Optional[str]:
        """Canonical field for ``name``, or None when it is not recognised."""
        return self._lookup.get(name)

    def resolve(self, data: Mapping[str, Any]) -> dict[str, Any]:
        """Return a copy of ``data`` with every known key renamed.

        Unknown keys are kept as given so validators can report them. When
        both a canonical key and one of its aliases are present, the
        canonical key wins.
        """
        resolved: dict[str, Any] = {}
        explicit: set[str] = set()

        for key, value in data.items():
            canonical = self._lookup.get(key, key) if isinstance(key, str) else key
            if canonical in explicit:
                continue
            resolved[canonical] = value
            if key == canonical:
                explicit.add(canonical)

        return resolved


# ============================================
# Alias tables
# ============================================

STORAGE_ALIASES = AliasTable(
    fields=(
        "url", "service", "credentials", "bucket", "region", "path", "secure",
        "acl", "storage_class", "expires", "cache_control", "endpoint",
        "force_path_style",
    ),
    aliases={
        "bucket": ("bucketId", "container"),
    },
)

CREDENTIALS_ALIASES = AliasTable(
    fields=("account_id", "key_id", "secret_key"),
    aliases={
        "account_id": ("account", "username"),
        "key_id": ("accessKeyId", "appKeyId", "apiKey"),
        "secret_key": ("secretAccessKey", "appKey"),
    },
)

NOTIFICATION_ALIASES = AliasTable(
    fields=("type", "url", "metadata", "events", "params", "topic_arn"),
)

VOLUME_ALIASES = AliasTable(
    fields=(
        "handle", "type", "root_url", "path", "bucket", "region", "subfolder",
        "key_id", "secret", "make_uploads_public", "endpoint_url",
    ),
    aliases={
        "root_url": ("url", "baseUrl"),
        "key_id": ("accessKeyId", "keyId"),
        "secret": ("secretAccessKey", "secretKey"),
        "make_uploads_public": ("public",),
    },
)
