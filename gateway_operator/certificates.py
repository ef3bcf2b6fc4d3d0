"""
Issuance of the mTLS leaf certificates shared between ControlPlanes and
DataPlanes. Leaves are signed by a cluster wide CA held in a Secret.

The certificate Secret is converged like any other child, with one difference:
the key material is random, so it is never compared. Drift is detected on the
key-usages annotation and the identity labels only, and any drift reissues the
certificate.
"""

# Standard
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional, Tuple
import base64

# Third Party
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PrivateFormat
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

# First Party
import alog

# Local
from . import constants
from .deploy_manager import DeployManagerBase
from .ensure import LABEL_SECTIONS, ChildRole, EnsureResult, ensure
from .exceptions import assert_cluster, assert_config, assert_precondition
from .managed_object import ManagedObject
from .utils import now

log = alog.use_channel("CERTS")

# Leaf certificates are valid for ~10 years
CERTIFICATE_VALIDITY = timedelta(seconds=315400000)

TLS_SECRET_TYPE = "kubernetes.io/tls"
CA_CERT_KEY = "ca.crt"
TLS_CERT_KEY = "tls.crt"
TLS_KEY_KEY = "tls.key"

# Names accepted in key usage lists mapped onto the KeyUsage flags
_KEY_USAGE_FLAGS = {
    "digital_signature": "digital_signature",
    "content_commitment": "content_commitment",
    "key_encipherment": "key_encipherment",
    "data_encipherment": "data_encipherment",
    "key_agreement": "key_agreement",
    "cert_sign": "key_cert_sign",
    "crl_sign": "crl_sign",
}

# Names accepted in key usage lists mapped onto extended key usages
_EXTENDED_KEY_USAGES = {
    "server_auth": ExtendedKeyUsageOID.SERVER_AUTH,
    "client_auth": ExtendedKeyUsageOID.CLIENT_AUTH,
}


@dataclass(frozen=True)
class SecretRef:
    """Namespace and name of a Secret"""

    namespace: str
    name: str


@dataclass
class CertificateRequest:
    """The desired spec of a certificate Secret"""

    subject: str
    ca_secret_ref: SecretRef
    key_usages: List[str]


## Public ######################################################################


def ensure_certificate(  # pylint: disable=too-many-arguments
    deploy_manager: DeployManagerBase,
    owner: ManagedObject,
    subject: str,
    ca_secret_ref: SecretRef,
    key_usages: List[str],
    identity_labels: Dict[str, str],
    managed_by: str,
) -> Tuple[EnsureResult, Optional[ManagedObject]]:
    """Ensure that the owner has exactly one certificate Secret for the given
    subject, signed by the CA in ca_secret_ref

    Error Semantics: PreconditionError if the CA Secret does not exist yet.
    ConfigError if a key usage is not known.

    Args:
        deploy_manager:  DeployManagerBase
            The deploy manager for all cluster access
        owner:  ManagedObject
            The owner of the certificate
        subject:  str
            The common name and DNS SAN of the leaf
        ca_secret_ref:  SecretRef
            The Secret holding the signing CA
        key_usages:  List[str]
            The key usages of the leaf (digital_signature, server_auth, ...)
        identity_labels:  Dict[str, str]
            Labels identifying the certificate among the owner's Secrets
        managed_by:  str
            The managed-by label value of the owner

    Returns:
        result:  EnsureResult
            What the call did
        secret:  Optional[ManagedObject]
            The certificate Secret. None when duplicates were reduced.
    """
    unknown = [
        usage
        for usage in key_usages
        if usage not in _KEY_USAGE_FLAGS and usage not in _EXTENDED_KEY_USAGES
    ]
    assert_config(not unknown, f"Unknown key usages {unknown}")

    role = ChildRole(
        name="certificate",
        kind="Secret",
        api_version="v1",
        managed_by=managed_by,
        role_labels=dict(identity_labels),
        generate=_generate_secret,
        materialize=lambda _, request: _issue(deploy_manager, request),
        sections=list(LABEL_SECTIONS),
    )
    request = CertificateRequest(
        subject=subject,
        ca_secret_ref=ca_secret_ref,
        key_usages=sorted(key_usages),
    )
    return ensure(deploy_manager, owner, role, request)


def generate_ca(common_name: str) -> Tuple[str, str]:
    """Generate a self-signed ECDSA CA

    Args:
        common_name:  str
            The common name of the CA

    Returns:
        cert_pem:  str
            The PEM encoded CA certificate
        key_pem:  str
            The PEM encoded CA private key
    """
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    issued_at = now()
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(issued_at)
        .not_valid_after(issued_at + CERTIFICATE_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            _key_usage(["digital_signature", "cert_sign", "crl_sign"]),
            critical=True,
        )
        .sign(key, hashes.SHA256())
    )
    return _cert_pem(cert), _key_pem(key)


def ensure_ca_secret(deploy_manager: DeployManagerBase, ca_secret_ref: SecretRef) -> bool:
    """Create the CA Secret if it does not exist

    Returns:
        created:  bool
            True if a new CA was generated
    """
    success, content = deploy_manager.get_object_current_state(
        kind="Secret",
        name=ca_secret_ref.name,
        namespace=ca_secret_ref.namespace,
        api_version="v1",
    )
    assert_cluster(success, f"Failed to look up CA secret {ca_secret_ref}")
    if content is not None:
        return False

    log.info("Generating cluster CA in %s", ca_secret_ref)
    cert_pem, key_pem = generate_ca(f"{constants.OPERATOR_GROUP} CA")
    success, _ = deploy_manager.create_object(
        {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": TLS_SECRET_TYPE,
            "metadata": {
                "name": ca_secret_ref.name,
                "namespace": ca_secret_ref.namespace,
            },
            "data": {
                TLS_CERT_KEY: _b64(cert_pem),
                TLS_KEY_KEY: _b64(key_pem),
            },
        }
    )
    assert_cluster(success, f"Failed to create CA secret {ca_secret_ref}")
    return True


## Implementation ##############################################################


def _generate_secret(owner: ManagedObject, request: CertificateRequest) -> dict:
    """The deterministic part of the certificate Secret"""
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": TLS_SECRET_TYPE,
        "metadata": {
            "generateName": f"{owner.name}-",
            "annotations": {
                constants.CERTIFICATE_KEY_USAGES_ANNOTATION: ",".join(
                    request.key_usages
                ),
            },
        },
    }


def _issue(deploy_manager: DeployManagerBase, request: CertificateRequest) -> dict:
    """Issue a new leaf for the request and return the Secret data section"""
    ca_cert, ca_key, ca_pem = _load_ca(deploy_manager, request.ca_secret_ref)

    log.debug("Issuing certificate for %s", request.subject)
    key = ec.generate_private_key(ec.SECP256R1())
    issued_at = now()
    builder = (
        x509.CertificateBuilder()
        .subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, request.subject)])
        )
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(issued_at)
        .not_valid_after(issued_at + CERTIFICATE_VALIDITY)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(request.subject)]),
            critical=False,
        )
        .add_extension(_key_usage(request.key_usages), critical=True)
    )
    extended = [
        _EXTENDED_KEY_USAGES[usage]
        for usage in request.key_usages
        if usage in _EXTENDED_KEY_USAGES
    ]
    if extended:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage(extended), critical=False
        )
    cert = builder.sign(ca_key, hashes.SHA256())

    return {
        "data": {
            CA_CERT_KEY: _b64(ca_pem),
            TLS_CERT_KEY: _b64(_cert_pem(cert)),
            TLS_KEY_KEY: _b64(_key_pem(key)),
        }
    }


def _load_ca(deploy_manager: DeployManagerBase, ca_secret_ref: SecretRef):
    success, content = deploy_manager.get_object_current_state(
        kind="Secret",
        name=ca_secret_ref.name,
        namespace=ca_secret_ref.namespace,
        api_version="v1",
    )
    assert_cluster(success, f"Failed to look up CA secret {ca_secret_ref}")
    assert_precondition(content is not None, f"CA secret {ca_secret_ref} not found")

    data = content.get("data") or {}
    assert_precondition(
        TLS_CERT_KEY in data and TLS_KEY_KEY in data,
        f"CA secret {ca_secret_ref} is missing {TLS_CERT_KEY} or {TLS_KEY_KEY}",
    )
    ca_pem = base64.b64decode(data[TLS_CERT_KEY]).decode("utf-8")
    ca_cert = x509.load_pem_x509_certificate(ca_pem.encode("utf-8"))
    ca_key = serialization.load_pem_private_key(
        base64.b64decode(data[TLS_KEY_KEY]), password=None
    )
    return ca_cert, ca_key, ca_pem


def _key_usage(usages: List[str]) -> x509.KeyUsage:
    flags = {flag: False for flag in _KEY_USAGE_FLAGS.values()}
    for usage in usages:
        if usage in _KEY_USAGE_FLAGS:
            flags[_KEY_USAGE_FLAGS[usage]] = True
    return x509.KeyUsage(encipher_only=False, decipher_only=False, **flags)


def _cert_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(Encoding.PEM).decode("utf-8")


def _key_pem(key) -> str:
    return key.private_bytes(
        Encoding.PEM,
        PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("utf-8")
