"""Storage resolution service.

Turns the ``storage`` parameter of a transcoding request (settings model,
raw mapping, named storage handle or volume handle) into storage settings,
and exposes the configured volumes with their adapters and backends.
"""

import logging
from dataclasses import dataclass
from typing import Any, BinaryIO, Optional, Union

from coconut_jobs.core.config import Settings, settings as default_settings
from coconut_jobs.core.events import EventDispatcher, dispatcher as default_dispatcher
from coconut_jobs.core.metrics import UPLOAD_PROXY_BYTES_TOTAL
from coconut_jobs.core.storage import StorageService, create_backend
from coconut_jobs.core.validators import ConfigValidationError
from coconut_jobs.modules.storage.adapters import (
    VolumeAdapterFactory,
    VolumeAdapterInterface,
)
from coconut_jobs.modules.storage.events import (
    EVENT_AFTER_RESOLVE_VOLUME_STORAGE,
    EVENT_BEFORE_RESOLVE_VOLUME_STORAGE,
    VolumeStorageEvent,
)
from coconut_jobs.modules.storage.models import (
    StorageSettings,
    Volume,
    VolumeConfigurationError,
)

logger = logging.getLogger(__name__)


class InvalidStorageError(ConfigValidationError):
    """Raised when a storage value can not be resolved to storage settings."""
    pass


class StorageResolver:
    """Resolves storages and volumes from application settings."""

    def __init__(
        self,
        app_settings: Optional[Settings] = None,
        events: Optional[EventDispatcher] = None,
    ):
        self.settings = app_settings or default_settings
        self.events = events or default_dispatcher
        self._volumes: Optional[dict[str, Volume]] = None
        self._named_storages: Optional[dict[str, StorageSettings]] = None
        self._volume_storages: dict[str, StorageSettings] = {}

    # ==================== Volumes ====================

    def get_volumes(self) -> dict[str, Volume]:
        """All configured volumes, keyed by handle."""
        if self._volumes is None:
            self._volumes = {
                handle: Volume.from_config(handle, config)
                for handle, config in self.settings.COCONUT_VOLUMES.items()
            }
        return self._volumes

    def get_volume(self, handle: str) -> Optional[Volume]:
        return self.get_volumes().get(handle)

    def require_volume(self, handle: str) -> Volume:
        """Get a volume by handle.

        Raises:
            VolumeConfigurationError: If no volume has this handle
        """
        volume = self.get_volume(handle)
        if volume is None:
            raise VolumeConfigurationError(
                f'Could not find volume "{handle}"', attribute="volume"
            )
        return volume

    def get_adapter(self, volume: Volume) -> VolumeAdapterInterface:
        return VolumeAdapterFactory.create(volume)

    def get_volume_backend(self, volume: Volume) -> StorageService:
        """Storage backend the upload proxy writes the volume's files with."""
        return StorageService(create_backend(volume.storage_config()))

    # ==================== Storages ====================

    def get_named_storages(self) -> dict[str, StorageSettings]:
        if self._named_storages is None:
            self._named_storages = {
                handle: StorageSettings.from_config(config)
                for handle, config in self.settings.COCONUT_STORAGES.items()
            }
        return self._named_storages

    def get_named_storage(self, handle: str) -> Optional[StorageSettings]:
        return self.get_named_storages().get(handle)

    def get_volume_storage(self, volume: Volume) -> StorageSettings:
        """Storage settings for jobs writing to ``volume``.

        Handlers of the before-resolve event may supply the settings; when
        none do, the volume's adapter provides them. Handlers of the
        after-resolve event may then replace or modify them. The result is
        memoized per volume.

        Raises:
            InvalidStorageError: If handlers produced something that is not
                a StorageSettings instance
        """
        if volume.handle not in self._volume_storages:
            event = self.events.trigger(
                EVENT_BEFORE_RESOLVE_VOLUME_STORAGE,
                VolumeStorageEvent(volume=volume, storage=None),
            )
            storage = event.storage

            if not storage:
                storage = self.get_adapter(volume).storage_settings()

            event = self.events.trigger(
                EVENT_AFTER_RESOLVE_VOLUME_STORAGE,
                VolumeStorageEvent(volume=volume, storage=storage),
            )
            storage = event.storage

            if not isinstance(storage, StorageSettings):
                raise InvalidStorageError(
                    f"Resolved storage for volume \"{volume.handle}\" must be "
                    f"an instance of {StorageSettings.__name__}",
                    attribute="storage",
                )

            self._volume_storages[volume.handle] = storage

        return self._volume_storages[volume.handle]

    def parse_storage(
        self, storage: Union[StorageSettings, dict[str, Any], str, Volume, None]
    ) -> Optional[StorageSettings]:
        """Resolve a storage value to storage settings.

        Strings are matched against named storages first, then volume
        handles. Returns None when the value can not be resolved.

        Raises:
            ConfigValidationError: If a mapping is not valid storage config
        """
        if isinstance(storage, StorageSettings):
            return storage
        if isinstance(storage, dict):
            return StorageSettings.from_config(storage)
        if isinstance(storage, str):
            named = self.get_named_storage(storage)
            if named is not None:
                return named
            storage = self.get_volume(storage)
        if isinstance(storage, Volume):
            return self.get_volume_storage(storage)
        return None


# ==================== Upload proxy ====================

class StorageUploadError(Exception):
    """Raised when an uploaded file could not be written to its volume."""
    pass


@dataclass
class UploadResult:
    volume: str
    output_path: str
    file_size: int
    replaced: bool
    url: str


class UploadProxyService:
    """Writes files pushed by Coconut into volumes.

    Used by volumes whose adapter points Coconut at this service's upload
    endpoint instead of the volume's own storage.
    """

    def __init__(self, resolver: Optional[StorageResolver] = None):
        self.resolver = resolver or StorageResolver()

    async def store(
        self,
        volume_handle: str,
        output_path: str,
        fileobj: BinaryIO,
        content_type: str = "application/octet-stream",
    ) -> UploadResult:
        """Write a file to a volume, replacing any file at the same path.

        Raises:
            VolumeConfigurationError: If the volume does not exist
            ValueError: If the path escapes the volume
            StorageUploadError: If the backend failed to write the file
        """
        volume = self.resolver.require_volume(volume_handle)
        path = output_path.strip("/")
        if not path or ".." in path.split("/"):
            raise ValueError(f"Invalid upload output path: {output_path}")

        backend = self.resolver.get_volume_backend(volume)
        replaced = await backend.exists(path)
        if replaced:
            await backend.delete_file(path)

        result = await backend.upload_file(path, fileobj, content_type)
        if not result.success:
            logger.error(
                "Upload proxy failed to write file",
                extra={"volume": volume.handle, "output_path": path, "error": result.error_message},
            )
            raise StorageUploadError(result.error_message or "Upload failed")

        UPLOAD_PROXY_BYTES_TOTAL.labels(volume=volume.handle).inc(result.file_size or 0)
        logger.info(
            "Stored uploaded file",
            extra={"volume": volume.handle, "output_path": path, "replaced": replaced},
        )
        return UploadResult(
            volume=volume.handle,
            output_path=path,
            file_size=result.file_size or 0,
            replaced=replaced,
            url=self.resolver.get_adapter(volume).public_url(path),
        )
