"""Volume adapters.

An adapter knows, for one kind of volume, where Coconut should upload an
output file (upload URL) and where end users retrieve it afterwards (public
URL). Adapters are looked up by volume type in :class:`VolumeAdapterFactory`,
which can be extended at startup.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional
from urllib.parse import quote, urlencode

from coconut_jobs.core.config import settings
from coconut_jobs.core.events import EventDispatcher, dispatcher as default_dispatcher
from coconut_jobs.modules.storage.events import (
    EVENT_REGISTER_VOLUME_ADAPTERS,
    VolumeAdaptersEvent,
)
from coconut_jobs.modules.storage.models import (
    SERVICE_S3,
    ServiceCredentials,
    StorageSettings,
    Volume,
    VolumeConfigurationError,
)

logger = logging.getLogger(__name__)


class UnknownAdapterTypeError(VolumeConfigurationError):
    """Raised when no adapter is registered for a volume type."""
    pass


def join_url(root_url: str, path: str) -> str:
    """Join a root URL and a relative path with exactly one slash between them.

    Repeated slashes inside the path are collapsed and the result never ends
    with a slash.
    """
    segments = [segment for segment in path.split("/") if segment]
    root = root_url.rstrip("/")
    if not segments:
        return root
    return f"{root}/{'/'.join(segments)}"


class VolumeAdapterInterface(ABC):
    """Resolves upload and public URLs for outputs stored in a volume."""

    def __init__(self, volume: Volume):
        self.volume = volume

    @abstractmethod
    def upload_url(self, output_path: str) -> str:
        """URL Coconut uploads the output file at ``output_path`` to."""
        pass

    def public_url(self, output_path: str) -> str:
        """URL end users retrieve the output file from."""
        return join_url(self.volume.root_url, output_path)

    @abstractmethod
    def storage_settings(self) -> StorageSettings:
        """Job-level storage parameters for jobs writing to this volume."""
        pass


class VolumeAdapter(VolumeAdapterInterface):
    """Generic adapter proxying uploads through this service.

    Coconut posts finished files to the upload proxy endpoint, which writes
    them into the volume's storage backend.
    """

    def __init__(self, volume: Volume, upload_endpoint: Optional[str] = None):
        super().__init__(volume)
        self.upload_endpoint = upload_endpoint or settings.upload_url

    def upload_url(self, output_path: str) -> str:
        query = urlencode({"volume": self.volume.handle, "output_path": output_path})
        return f"{self.upload_endpoint}?{query}"

    def storage_settings(self) -> StorageSettings:
        # Coconut appends each output path to the storage URL
        query = urlencode({"volume": self.volume.handle})
        return StorageSettings(url=f"{self.upload_endpoint}?{query}&output_path=")


class AwsS3VolumeAdapter(VolumeAdapterInterface):
    """Adapter uploading straight to an S3 bucket.

    The upload URL embeds the volume credentials:
    ``s3://<key>:<secret>@<bucket>/<subfolder>/<path>``.
    """

    def __init__(self, volume: Volume):
        missing = [
            name for name in ("key_id", "secret", "bucket")
            if not getattr(volume, name)
        ]
        if missing:
            raise VolumeConfigurationError(
                f"volumes.{volume.handle} must define {', '.join(missing)} "
                f"to upload outputs to S3",
                attribute=f"volumes.{volume.handle}",
            )
        super().__init__(volume)

    def _object_path(self, output_path: str) -> str:
        subfolder = self.volume.subfolder.strip("/")
        if subfolder:
            output_path = f"{subfolder}/{output_path}"
        return output_path.strip("/")

    def upload_url(self, output_path: str) -> str:
        key_id = quote(self.volume.key_id, safe="")
        secret = quote(self.volume.secret, safe="")
        upload_url = (
            f"s3://{key_id}:{secret}@{self.volume.bucket}/"
            f"{self._object_path(output_path)}"
        )
        if not self.volume.make_uploads_public:
            upload_url += "?x-amz-acl=private"
        return upload_url

    def storage_settings(self) -> StorageSettings:
        return StorageSettings(
            service=SERVICE_S3,
            bucket=self.volume.bucket,
            region=self.volume.region or None,
            path=self.volume.subfolder.strip("/") or None,
            acl="public-read" if self.volume.make_uploads_public else "private",
            credentials=ServiceCredentials(
                key_id=self.volume.key_id,
                secret_key=self.volume.secret,
            ),
        )


AdapterConstructor = Callable[[Volume], VolumeAdapterInterface]


class VolumeAdapterFactory:
    """Registry of volume adapters keyed by volume type."""

    _builtin: dict[str, AdapterConstructor] = {
        "local": VolumeAdapter,
        "minio": VolumeAdapter,
        "awss3": AwsS3VolumeAdapter,
    }
    _adapters: dict[str, AdapterConstructor] = dict(_builtin)
    _loaded: bool = False

    @classmethod
    def load(cls, events: Optional[EventDispatcher] = None) -> None:
        """Let event handlers register additional adapters.

        Called once at startup; adapters registered by handlers override
        built-in ones for the same type.
        """
        events = events or default_dispatcher
        event = events.trigger(
            EVENT_REGISTER_VOLUME_ADAPTERS,
            VolumeAdaptersEvent(adapters=dict(cls._adapters)),
        )
        cls._adapters = dict(event.adapters)
        cls._loaded = True
        logger.info(
            "Volume adapters loaded",
            extra={"volume_types": sorted(cls._adapters)},
        )

    @classmethod
    def create(cls, volume: Volume) -> VolumeAdapterInterface:
        """Create the adapter for a volume.

        Raises:
            UnknownAdapterTypeError: If no adapter handles the volume's type
            VolumeConfigurationError: If the volume lacks required settings
        """
        if not cls._loaded:
            cls.load()
        constructor = cls._adapters.get(volume.type)
        if constructor is None:
            raise UnknownAdapterTypeError(
                f'Unknown adapter type "{volume.type}" for volume "{volume.handle}"',
                attribute=f"volumes.{volume.handle}",
            )
        return constructor(volume)

    @classmethod
    def register(cls, volume_type: str, constructor: AdapterConstructor) -> None:
        """Register an adapter constructor for a volume type."""
        cls._adapters[volume_type] = constructor

    @classmethod
    def get_supported_types(cls) -> list[str]:
        return list(cls._adapters.keys())

    @classmethod
    def reset(cls) -> None:
        """Restore the built-in adapters."""
        cls._adapters = dict(cls._builtin)
        cls._loaded = False
