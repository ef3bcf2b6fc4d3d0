"""
Defaults applied to the children of every owner. They are read from the
library config once when the operator starts and passed into the resource
generators explicitly.
"""

# Standard
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
import copy

# First Party
import alog

# Local
from .. import config
from ..certificates import SecretRef
from ..exceptions import assert_valid

log = alog.use_channel("RSDEF")


def to_plain(value: Any) -> Any:
    """Convert aconfig.Config values (and any nested ones) into plain dicts and
    lists so that they compare equal to objects read from the cluster
    """
    if isinstance(value, dict):
        return {key: to_plain(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(val) for val in value]
    return value


@dataclass(frozen=True)
class ResourceDefaults:  # pylint: disable=too-many-instance-attributes
    """Immutable defaults for generated children

    Attributes:
        controlplane_image:  str
            Image used when a ControlPlane does not name one
        dataplane_image:  str
            Image used when a DataPlane does not name one
        controlplane_image_prefixes:  Tuple[str, ...]
            The image repositories accepted for ControlPlanes
        dataplane_image_prefixes:  Tuple[str, ...]
            The image repositories accepted for DataPlanes
        validate_images:  bool
            Whether images outside the accepted repositories are rejected
        cluster_ca:  SecretRef
            The Secret holding the CA that signs the mTLS certificates
        key_usages:  Tuple[str, ...]
            The key usages of the issued mTLS certificates
        controller_name:  str
            The GatewayClass controllerName handled by this operator
    """

    controlplane_image: str
    dataplane_image: str
    controlplane_image_prefixes: Tuple[str, ...]
    dataplane_image_prefixes: Tuple[str, ...]
    cluster_ca: SecretRef
    key_usages: Tuple[str, ...]
    controller_name: str
    validate_images: bool = True
    _controlplane_resources: Dict[str, Any] = field(default_factory=dict)
    _dataplane_resources: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls) -> "ResourceDefaults":
        """Build the defaults from the loaded library config"""
        defaults = cls(
            controlplane_image=config.controlplane.default_image,
            dataplane_image=config.dataplane.default_image,
            controlplane_image_prefixes=tuple(
                config.controlplane.supported_image_prefixes
            ),
            dataplane_image_prefixes=tuple(config.dataplane.supported_image_prefixes),
            cluster_ca=SecretRef(
                namespace=config.cluster_ca.secret_namespace,
                name=config.cluster_ca.secret_name,
            ),
            key_usages=tuple(config.cluster_ca.key_usages),
            controller_name=config.gateway.controller_name,
            validate_images=bool(config.validate_images),
            _controlplane_resources=to_plain(config.controlplane.resources or {}),
            _dataplane_resources=to_plain(config.dataplane.resources or {}),
        )
        log.debug2("Resource defaults: %s", defaults)
        return defaults

    # Callers get copies so the shared defaults can never be mutated through a
    # generated manifest
    @property
    def controlplane_resources(self) -> dict:
        return copy.deepcopy(self._controlplane_resources)

    @property
    def dataplane_resources(self) -> dict:
        return copy.deepcopy(self._dataplane_resources)


## Images ######################################################################


def image_repository(image: str) -> str:
    """Strip the digest and tag from an image reference"""
    repository = image.split("@", 1)[0]
    # A colon after the last slash separates the tag. One before it is a
    # registry port.
    last_slash = repository.rfind("/")
    colon = repository.rfind(":")
    if colon > last_slash:
        repository = repository[:colon]
    return repository


def validate_image(
    image: Optional[str],
    supported_prefixes: Tuple[str, ...],
    enabled: bool = True,
    owner_kind: str = "",
):
    """Reject images that do not come from one of the supported repositories.
    The registry host is ignored so that mirrors of a supported repository
    are accepted.

    Error Semantics: ValidationError, since the owner can never be reconciled
    without a spec change.
    """
    assert_valid(bool(image), f"No image set for {owner_kind}")
    if not enabled:
        return
    repository = image_repository(image)
    parts = repository.split("/")
    candidates = {"/".join(parts[idx:]) for idx in range(len(parts))}
    assert_valid(
        any(prefix in candidates for prefix in supported_prefixes),
        f"Unsupported {owner_kind} image {image}, "
        f"expected one of {list(supported_prefixes)}",
    )
