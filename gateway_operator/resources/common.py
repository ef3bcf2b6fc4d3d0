"""
Helpers shared by the pod template generators of ControlPlanes and DataPlanes
"""

# Standard
from typing import Dict, List, Optional, Union
import copy

# Local
from .. import constants
from ..managed_object import ManagedObject

EnvValue = Union[str, Dict[str, dict]]


def pod_template(pod_template_spec: Optional[dict]) -> dict:
    """Copy the user supplied pod template so the owner spec is never mutated"""
    template = copy.deepcopy(pod_template_spec or {})
    template.setdefault("metadata", {})
    template.setdefault("spec", {})
    return template


def get_container(pod_spec: dict, name: str) -> dict:
    """Find the named container in the pod spec, adding it if missing"""
    containers = pod_spec.setdefault("containers", [])
    for container in containers:
        if container.get("name") == name:
            return container
    container = {"name": name}
    containers.insert(0, container)
    return container


def env_value(env: List[dict], name: str) -> Optional[str]:
    for entry in env or []:
        if entry.get("name") == name:
            return entry.get("value")
    return None


def set_env(container: dict, name: str, value: EnvValue, override: bool = False):
    """Set an env var on the container. Values that are dicts are treated as a
    valueFrom source. Existing entries are only replaced when override is set.
    """
    env = container.setdefault("env", [])
    entry = {"name": name}
    if isinstance(value, dict):
        entry["valueFrom"] = value
    else:
        entry["value"] = value
    for idx, existing in enumerate(env):
        if existing.get("name") == name:
            if override:
                env[idx] = entry
            return
    env.append(entry)


def set_env_defaults(container: dict, defaults: Dict[str, EnvValue]):
    """Add every default env var the user did not set"""
    for name, value in defaults.items():
        set_env(container, name, value)


def set_default_resources(container: dict, resources: dict):
    if not container.get("resources"):
        container["resources"] = resources


def field_ref(field_path: str) -> Dict[str, dict]:
    return {"fieldRef": {"apiVersion": "v1", "fieldPath": field_path}}


def mount_cluster_certificate(
    pod_spec: dict,
    container: dict,
    secret_name: str,
    volume_name: str = constants.CLUSTER_CERTIFICATE_VOLUME,
    mount_path: str = constants.CLUSTER_CERTIFICATE_MOUNT_PATH,
):
    """Mount a certificate Secret into the container. The volume always points
    at the given Secret, replacing whatever a previous generation mounted.
    """
    volume = {
        "name": volume_name,
        "secret": {
            "secretName": secret_name,
            "items": [
                {"key": "tls.crt", "path": "tls.crt"},
                {"key": "tls.key", "path": "tls.key"},
                {"key": "ca.crt", "path": "ca.crt"},
            ],
        },
    }
    volumes = [
        vol
        for vol in pod_spec.get("volumes") or []
        if vol.get("name") != volume_name
    ]
    pod_spec["volumes"] = volumes + [volume]

    mounts = [
        mount
        for mount in container.get("volumeMounts") or []
        if mount.get("name") != volume_name
    ]
    container["volumeMounts"] = mounts + [
        {
            "name": volume_name,
            "mountPath": mount_path,
            "readOnly": True,
        }
    ]


def cluster_certificate_path(filename: str) -> str:
    return f"{constants.CLUSTER_CERTIFICATE_MOUNT_PATH}/{filename}"


def deployment_available(deployment: ManagedObject) -> bool:
    """True if every replica of the Deployment is available and ready and the
    status reflects the current generation
    """
    status = deployment.status
    replicas = status.get("replicas") or 0
    if replicas == 0:
        return False
    if status.get("observedGeneration", deployment.generation) < deployment.generation:
        return False
    return (
        status.get("availableReplicas") == replicas
        and status.get("readyReplicas") == replicas
    )
