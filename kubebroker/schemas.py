from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict

from .specs.models import PodSpec

class FilesystemAttachment(BaseModel):
    path: str = ""  # Empty = "<storage mount base>/<storage name>"
    read_only: bool = False

class FilesystemParams(BaseModel):
    storage_name: str
    size: int  # MiB
    provider: str = "kubernetes"
    storage_class: Optional[str] = None  # None = unit storage class from settings
    attachment: Optional[FilesystemAttachment] = None
    resource_tags: Dict[str, str] = Field(default_factory=dict)

    @field_validator('size')
    @classmethod
    def validate_size(cls, v):
        if v <= 0:
            raise ValueError('Filesystem size must be a positive number of MiB')
        return v

class CharmStorageParams(BaseModel):
    size: int  # MiB
    provider: str = "kubernetes"
    storage_class: Optional[str] = None  # None = operator storage class from settings
    resource_tags: Dict[str, str] = Field(default_factory=dict)

class OperatorConfig(BaseModel):
    operator_image_path: str
    version: str
    agent_conf: Optional[bytes] = None  # None = the operator config map must already exist
    resource_tags: Dict[str, str] = Field(default_factory=dict)
    charm_storage: CharmStorageParams

class DeviceParams(BaseModel):
    type: str  # Extended resource name, e.g. "nvidia.com/gpu"
    count: int
    attributes: Dict[str, str] = Field(default_factory=dict)

class Constraints(BaseModel):
    mem: Optional[int] = None  # MiB
    cpu_power: Optional[int] = None  # Millicores

    @classmethod
    def parse(cls, value: str) -> "Constraints":
        """
        Parse a constraints string such as "mem=4G cpu-power=500".

        Memory accepts M, G and T suffixes and defaults to MiB.
        Unknown constraint names are ignored.
        """
        multipliers = {"M": 1, "G": 1024, "T": 1024 * 1024}
        result = {}
        for item in (value or "").split():
            key, sep, raw = item.partition("=")
            if not sep:
                raise ValueError(f"malformed constraint {item!r}")
            if key == "mem":
                unit = raw[-1:].upper()
                if unit in multipliers:
                    result["mem"] = int(float(raw[:-1]) * multipliers[unit])
                else:
                    result["mem"] = int(raw)
            elif key == "cpu-power":
                result["cpu_power"] = int(raw)
        return cls(**result)

class ServiceParams(BaseModel):
    pod_spec: Optional[PodSpec] = None  # None = scale the existing workload only
    filesystems: List[FilesystemParams] = Field(default_factory=list)
    devices: List[DeviceParams] = Field(default_factory=list)
    constraints: Constraints = Field(default_factory=Constraints)
    placement: str = ""  # "key=value[,key=value]" node selector
    resource_tags: Dict[str, str] = Field(default_factory=dict)

class ServiceConfig(BaseModel):
    """Application config attributes that shape the Kubernetes service."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    service_type: Optional[str] = Field(default=None, alias="kubernetes-service-type")
    load_balancer_ip: Optional[str] = Field(default=None, alias="kubernetes-service-loadbalancer-ip")
    external_name: Optional[str] = Field(default=None, alias="kubernetes-service-externalname")
    external_ips: List[str] = Field(default_factory=list, alias="kubernetes-service-externalips")
    annotations: Dict[str, str] = Field(default_factory=dict, alias="kubernetes-service-annotations")

    @field_validator('external_ips', mode='before')
    @classmethod
    def split_external_ips(cls, v):
        if isinstance(v, str):
            return [ip.strip() for ip in v.split(",") if ip.strip()]
        return v or []

    @field_validator('annotations', mode='before')
    @classmethod
    def parse_annotations(cls, v):
        # Accept "key=value,key=value" as well as a mapping
        if isinstance(v, str):
            annotations = {}
            for item in v.split(","):
                key, sep, value = item.partition("=")
                if sep and key.strip():
                    annotations[key.strip()] = value.strip()
            return annotations
        return v or {}
