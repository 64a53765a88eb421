"""Configuration schema using Pydantic."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings

from devicecore.utils.helpers import parse_duration


class ServiceConfig(BaseModel):
    """Identity and startup behaviour of this device-service instance."""
    name: str = "device-simple"  # Instance name, used as owner filter and topic slot
    base_name: str = ""  # Base service name shared by instances; defaults to name
    description: str = ""
    labels: list[str] = Field(default_factory=list)
    request_timeout: str = "5s"  # Metadata dependency probe budget
    startup_retry_interval: str = "1s"

    @property
    def base_service_name(self) -> str:
        return self.base_name or self.name

    @property
    def request_timeout_seconds(self) -> float:
        return max(0.0, parse_duration(self.request_timeout))

    @property
    def startup_retry_interval_seconds(self) -> float:
        return max(0.01, parse_duration(self.startup_retry_interval))


class DiscoveryConfig(BaseModel):
    """Automatic device discovery."""
    enabled: bool = False
    interval: str = "0s"  # <= 0 disables the periodic loop

    @property
    def interval_seconds(self) -> float:
        try:
            return parse_duration(self.interval)
        except ValueError:
            return 0.0


class DeviceConfig(BaseModel):
    """Command path, AutoEvent and health-tracking behaviour."""
    data_transform: bool = True  # Apply base/scale/offset/mask/shift on reads and writes
    max_cmd_ops: int = 128  # Cap on ResourceOperations per DeviceCommand
    async_buffer_size: int = 16  # Publish worker-pool size and async queue capacity
    enable_async_readings: bool = True
    allowed_fails: int = 0  # 0 disables failure tracking
    device_down_timeout: float = 0  # Recovery poll interval in seconds; 0 disables recovery
    profiles_dir: str = ""  # Directory or http(s) index URL
    devices_dir: str = ""
    provision_watchers_dir: str = ""
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)


class MessageBusConfig(BaseModel):
    """Broker connection used for system events, command requests and events."""
    type: str = "mqtt"  # mqtt | memory
    host: str = "localhost"
    port: int = 1883
    client_id: str = ""  # Defaults to the service name
    username: str = ""
    password: str = ""
    keepalive_seconds: int = 60
    qos: int = 0
    tls_enabled: bool = False
    reconnect_min_seconds: int = 1
    reconnect_max_seconds: int = 30
    base_topic_prefix: str = "edgex"
    metadata_service_name: str = "core-metadata"  # Owner of metadata-originated profile deletes


class MetadataConfig(BaseModel):
    """Core-metadata REST client."""
    type: str = "http"  # http | memory
    base_url: str = "http://localhost:59881"
    api_version: str = "v3"
    timeout_seconds: float = 5.0


class ControlConfig(BaseModel):
    """Threaded HTTP control API."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 59999
    max_request_body_bytes: int = 4 * 1024 * 1024
    request_timeout_seconds: float = 30.0


class Config(BaseSettings):
    """Root configuration for devicecore."""
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    device: DeviceConfig = Field(default_factory=DeviceConfig)
    message_bus: MessageBusConfig = Field(default_factory=MessageBusConfig)
    metadata: MetadataConfig = Field(default_factory=MetadataConfig)
    control: ControlConfig = Field(default_factory=ControlConfig)
    driver: dict[str, Any] = Field(default_factory=dict)  # Free-form driver settings
    max_event_size: int = 0  # Bytes; 0 means unlimited

    model_config = ConfigDict(
        env_prefix="DEVICECORE_",
        env_nested_delimiter="__"
    )
