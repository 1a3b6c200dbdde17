"""Volume and storage settings models.

A *volume* is a storage location owned by this service (local directory or
bucket) that output files can be written to and served from. *Storage
settings* are the raw ``storage`` parameters of a Coconut job, either
configured as named storages or derived from a volume.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from pydantic import BaseModel

from coconut_jobs.core.aliases import (
    CREDENTIALS_ALIASES,
    STORAGE_ALIASES,
    VOLUME_ALIASES,
)
from coconut_jobs.core.storage import StorageConfig
from coconut_jobs.core.validators import AssociativeArrayValidator, ConfigValidationError


SERVICE_COCONUT = "coconut"
SERVICE_S3 = "s3"
SERVICE_GCS = "gcs"
SERVICE_DOSPACES = "dospaces"
SERVICE_LINODE = "linode"
SERVICE_WASABI = "wasabi"
SERVICE_S3OTHER = "s3other"
SERVICE_BACKBLAZE = "backblaze"
SERVICE_RACKSPACE = "rackspace"
SERVICE_AZURE = "azure"

S3_COMPATIBLE_SERVICES = (
    SERVICE_S3,
    SERVICE_GCS,
    SERVICE_DOSPACES,
    SERVICE_LINODE,
    SERVICE_WASABI,
    SERVICE_S3OTHER,
)

SUPPORTED_SERVICES = (
    SERVICE_COCONUT,
    *S3_COMPATIBLE_SERVICES,
    SERVICE_BACKBLAZE,
    SERVICE_RACKSPACE,
    SERVICE_AZURE,
)

# Services whose storage does not take a region
REGIONLESS_SERVICES = (SERVICE_GCS, SERVICE_DOSPACES, SERVICE_S3OTHER)

CREDENTIAL_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    **{service: ("key_id", "secret_key") for service in S3_COMPATIBLE_SERVICES},
    SERVICE_BACKBLAZE: ("key_id", "secret_key"),
    SERVICE_RACKSPACE: ("account_id", "key_id"),
    SERVICE_AZURE: ("account_id", "key_id"),
}


class VolumeConfigurationError(ConfigValidationError):
    """Raised when a volume is missing or misconfigured."""
    pass


def _present(data: Mapping[str, Any]) -> dict[str, Any]:
    """Drop keys whose value is None or an empty string."""
    return {key: value for key, value in data.items() if value not in (None, "")}


class ServiceCredentials(BaseModel):
    """Credentials for a third-party storage service."""

    account_id: Optional[str] = None
    key_id: Optional[str] = None
    secret_key: Optional[str] = None

    @classmethod
    def from_config(cls, service: str, config: Any) -> "ServiceCredentials":
        """Build credentials for ``service`` from a raw mapping.

        Raises:
            ConfigValidationError: If the mapping misses required credentials
        """
        AssociativeArrayValidator().validate(config, "credentials")
        data = _present(CREDENTIALS_ALIASES.resolve(config))

        AssociativeArrayValidator(
            required_keys=CREDENTIAL_REQUIREMENTS.get(service, ()),
            allowed_keys=CREDENTIALS_ALIASES.fields,
            check_all_keys=True,
        ).validate(data, "credentials")

        return cls(**data)

    def to_params(self, service: str) -> dict[str, str]:
        """Credential parameters as the Coconut API expects them for ``service``."""
        if service in S3_COMPATIBLE_SERVICES:
            params = {
                "access_key_id": self.key_id,
                "secret_access_key": self.secret_key,
            }
        elif service == SERVICE_BACKBLAZE:
            params = {"app_key_id": self.key_id, "app_key": self.secret_key}
        elif service == SERVICE_RACKSPACE:
            params = {"username": self.account_id, "api_key": self.key_id}
        elif service == SERVICE_AZURE:
            params = {"account": self.account_id, "api_key": self.key_id}
        else:
            params = {}
        return _present(params)


class StorageSettings(BaseModel):
    """Storage parameters of a Coconut job.

    Without a ``service`` Coconut uploads outputs over HTTP(S)/FTP to
    ``url``; otherwise the service specific fields apply.
    """

    url: Optional[str] = None
    service: Optional[str] = None
    credentials: Optional[ServiceCredentials] = None
    bucket: Optional[str] = None
    region: Optional[str] = None
    path: Optional[str] = None
    secure: Optional[bool] = None
    acl: Optional[str] = None
    storage_class: Optional[str] = None
    expires: Optional[str] = None
    cache_control: Optional[str] = None
    endpoint: Optional[str] = None
    force_path_style: Optional[bool] = None

    @classmethod
    def from_config(cls, config: Any) -> "StorageSettings":
        """Validate a raw storage mapping and build the settings model.

        Keys may use any alias known to the storage alias table
        (``bucketId``, ``cacheControl``, ...).

        Raises:
            ConfigValidationError: If the mapping is not valid storage config
        """
        AssociativeArrayValidator().validate(config, "storage")
        data = _present(STORAGE_ALIASES.resolve(config))

        AssociativeArrayValidator(
            allowed_keys=STORAGE_ALIASES.fields,
            check_all_keys=True,
        ).validate(data, "storage")

        service = data.get("service")
        if service is not None and service not in SUPPORTED_SERVICES:
            raise ConfigValidationError(
                f'storage service "{service}" is not supported', attribute="storage"
            )

        AssociativeArrayValidator(
            required_keys=cls.required_keys(service),
            check_all_keys=True,
        ).validate(data, "storage")

        if "credentials" in data:
            data["credentials"] = ServiceCredentials.from_config(
                service, data["credentials"]
            )

        return cls(**data)

    @staticmethod
    def required_keys(service: Optional[str]) -> list[str]:
        """Keys a storage mapping must define for ``service``."""
        if not service:
            return ["url"]

        required = ["service"]
        if service in S3_COMPATIBLE_SERVICES:
            required += ["credentials", "bucket"]
            if service not in REGIONLESS_SERVICES:
                required.append("region")
            if service == SERVICE_S3OTHER:
                required.append("endpoint")
        elif service in (SERVICE_BACKBLAZE, SERVICE_RACKSPACE, SERVICE_AZURE):
            required += ["credentials", "bucket"]
        return required

    def to_params(self, include_credentials: bool = True) -> dict[str, Any]:
        """Storage parameters for the Coconut API.

        Args:
            include_credentials: Leave credentials out when False, e.g. for
                parameters that are persisted
        """
        if not self.service:
            return _present({"url": self.url})

        params: dict[str, Any] = {"service": self.service, "path": self.path}
        if include_credentials and self.credentials:
            params["credentials"] = self.credentials.to_params(self.service)

        if self.service in S3_COMPATIBLE_SERVICES:
            params["bucket"] = self.bucket
            params["acl"] = self.acl
            if self.service not in REGIONLESS_SERVICES:
                params["region"] = self.region
            if self.service == SERVICE_S3:
                params["expires"] = self.expires
                params["cache_control"] = self.cache_control
                params["storage_class"] = self.storage_class
            if self.service == SERVICE_S3OTHER:
                params["endpoint"] = self.endpoint
                params["force_path_style"] = self.force_path_style
        elif self.service in (SERVICE_RACKSPACE, SERVICE_AZURE):
            params["container"] = self.bucket
        elif self.service == SERVICE_BACKBLAZE:
            params["bucket_id"] = self.bucket

        return _present(params)


@dataclass
class Volume:
    """A storage location output files are written to and served from."""

    handle: str
    type: str
    root_url: str
    path: str = ""
    bucket: str = ""
    region: str = ""
    subfolder: str = ""
    key_id: str = ""
    secret: str = ""
    make_uploads_public: bool = False
    endpoint_url: Optional[str] = None

    @classmethod
    def from_config(cls, handle: str, config: Any) -> "Volume":
        """Build a volume from its settings mapping.

        Raises:
            VolumeConfigurationError: If the mapping is not a valid volume
        """
        error = AssociativeArrayValidator().validate_value(config, f"volumes.{handle}")
        if error is None:
            data = _present(VOLUME_ALIASES.resolve(config))
            data.pop("handle", None)
            error = AssociativeArrayValidator(
                required_keys=("type", "root_url"),
                allowed_keys=VOLUME_ALIASES.fields,
                check_all_keys=True,
            ).validate_value(data, f"volumes.{handle}")
        if error is not None:
            raise VolumeConfigurationError(error, attribute=f"volumes.{handle}")

        return cls(handle=handle, **data)

    def storage_config(self) -> StorageConfig:
        """Backend configuration used by the upload proxy to write files."""
        if self.type == "local":
            return StorageConfig(backend="local", local_path=self.path or f"./storage/{self.handle}")
        return StorageConfig(
            backend="s3",
            bucket=self.bucket,
            region=self.region,
            access_key=self.key_id,
            secret_key=self.secret,
            endpoint_url=self.endpoint_url,
            subfolder=self.subfolder,
        )

    def descriptor(self, path: str) -> dict[str, Any]:
        """Credential-free storage descriptor persisted on outputs."""
        return {
            "volume": self.handle,
            "path": path,
            "public": self.make_uploads_public,
            "adapter": self.type,
        }
