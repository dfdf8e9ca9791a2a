"""Certificate authority for the local cluster.

One self-signed root signs every component's certificate, so each daemon
trusts a single CA file. Keys are written owner-only.
"""

from __future__ import annotations

import base64
import builtins
import datetime
import ipaddress
import os
import threading
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from . import errors
from .shared.paths import ClusterPaths

logger = structlog.get_logger(__name__)

CA_COMMON_NAME = "kubestrap-ca"
KEY_SIZE = 2048
CA_VALIDITY = datetime.timedelta(days=3650)
LEAF_VALIDITY = datetime.timedelta(days=365)
# Tolerate small clock skew between issuance and first use
BACKDATE = datetime.timedelta(minutes=5)


@dataclass(frozen=True)
class CertificateRequest:
    """An identity to issue."""

    name: str
    sans: tuple[str, ...] = ()
    common_name: str | None = None
    organization: str | None = None


@dataclass(frozen=True)
class IssuedCertificate:
    """A certificate/key pair on disk."""

    name: str
    cert_path: Path
    key_path: Path
    sans: tuple[str, ...]
    certificate: x509.Certificate = field(repr=False, compare=False)

    @property
    def common_name(self) -> str:
        attrs = self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        return str(attrs[0].value) if attrs else ""


def _parse_san(value: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(value))
    except ValueError:
        return x509.DNSName(value)


def san_entries(certificate: x509.Certificate) -> list[str]:
    """SAN entries of a certificate as strings, in encoded order."""
    try:
        ext = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    entries: list[str] = []
    for name in ext.value:
        entries.append(str(name.value))
    return entries


def _name(common_name: str, organization: str | None = None) -> x509.Name:
    attributes = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    if organization:
        attributes.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
    return x509.Name(attributes)


class CertificateAuthority:
    """Root key pair plus the certificates it has issued."""

    def __init__(self, paths: ClusterPaths):
        """Initialize certificate authority.

        Args:
            paths: Working directory layout, certificates go to ``certs/``.
        """
        self.paths = paths
        self._key: rsa.RSAPrivateKey | None = None
        self._cert: x509.Certificate | None = None
        self._issued: dict[str, IssuedCertificate] = {}
        self._lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._cert is not None

    @property
    def ca_cert_path(self) -> Path:
        return self.paths.ca_cert

    @property
    def ca_key_path(self) -> Path:
        return self.paths.ca_key

    @property
    def certificate(self) -> x509.Certificate:
        if self._cert is None:
            raise errors.CryptoError("Certificate authority is not initialized")
        return self._cert

    @property
    def issued(self) -> dict[str, IssuedCertificate]:
        with self._lock:
            return dict(self._issued)

    def get(self, name: str) -> IssuedCertificate:
        with self._lock:
            try:
                return self._issued[name]
            except KeyError:
                raise errors.CryptoError(f"No certificate issued for '{name}'") from None

    def initialize(self) -> None:
        """Generate the root key pair and self-signed certificate.

        Raises:
            CryptoError: If already initialized or the primitive fails.
            PermissionError: If the key cannot be written.
        """
        if self._cert is not None:
            raise errors.CryptoError("Certificate authority already initialized")

        try:
            key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
            now = datetime.datetime.now(datetime.timezone.utc)
            subject = _name(CA_COMMON_NAME)
            cert = (
                x509.CertificateBuilder()
                .subject_name(subject)
                .issuer_name(subject)
                .public_key(key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(now - BACKDATE)
                .not_valid_after(now + CA_VALIDITY)
                .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=False,
                        key_encipherment=False,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=True,
                        crl_sign=True,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(
                    x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
                    critical=False,
                )
                .sign(key, hashes.SHA256())
            )
        except (ValueError, TypeError) as e:
            raise errors.CryptoError("Unable to generate root certificate", cause=str(e)) from e

        self._write_cert(self.ca_cert_path, cert)
        self._write_key(self.ca_key_path, key)
        self._key = key
        self._cert = cert
        logger.info("Certificate authority initialized", cert=str(self.ca_cert_path))

    def issue(
        self,
        name: str,
        sans: Sequence[str] = (),
        common_name: str | None = None,
        organization: str | None = None,
    ) -> IssuedCertificate:
        """Issue a leaf certificate signed by the root.

        Re-issuing a name with identical SANs returns the existing pair.

        Raises:
            CryptoError: If the CA is not initialized, the name was issued with
                different SANs, or signing fails.
        """
        if self._key is None or self._cert is None:
            raise errors.CryptoError("Certificate authority is not initialized", component=name)

        requested = tuple(sans)
        with self._lock:
            existing = self._issued.get(name)
        if existing is not None:
            if existing.sans == requested:
                return existing
            raise errors.CryptoError(
                "Certificate already issued with different SANs",
                component=name,
                cause=f"issued {list(existing.sans)}, requested {list(requested)}",
            )

        try:
            key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
            now = datetime.datetime.now(datetime.timezone.utc)
            builder = (
                x509.CertificateBuilder()
                .subject_name(_name(common_name or name, organization))
                .issuer_name(self._cert.subject)
                .public_key(key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(now - BACKDATE)
                .not_valid_after(now + LEAF_VALIDITY)
                .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=False,
                        key_encipherment=True,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=False,
                        crl_sign=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(
                    x509.ExtendedKeyUsage(
                        [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]
                    ),
                    critical=False,
                )
                .add_extension(
                    x509.AuthorityKeyIdentifier.from_issuer_public_key(self._key.public_key()),
                    critical=False,
                )
            )
            if requested:
                builder = builder.add_extension(
                    x509.SubjectAlternativeName([_parse_san(s) for s in requested]),
                    critical=False,
                )
            cert = builder.sign(self._key, hashes.SHA256())
        except (ValueError, TypeError) as e:
            raise errors.CryptoError(
                "Unable to issue certificate", component=name, cause=str(e)
            ) from e

        cert_path = self.paths.cert(name)
        key_path = self.paths.key(name)
        self._write_cert(cert_path, cert)
        self._write_key(key_path, key)

        issued = IssuedCertificate(
            name=name,
            cert_path=cert_path,
            key_path=key_path,
            sans=requested,
            certificate=cert,
        )
        with self._lock:
            self._issued[name] = issued
        logger.debug("Certificate issued", component=name, sans=list(requested))
        return issued

    def issue_all(
        self,
        requests: Iterable[CertificateRequest],
        max_workers: int = 4,
        timeout: float = 60.0,
    ) -> dict[str, IssuedCertificate]:
        """Issue several identities on a bounded thread pool.

        Raises:
            CryptoError: If any issuance fails or the batch exceeds ``timeout``.
        """
        pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pki")
        futures = {
            pool.submit(self.issue, r.name, r.sans, r.common_name, r.organization): r.name
            for r in requests
        }
        done, not_done = wait(futures, timeout=timeout)
        if not_done:
            pool.shutdown(wait=False, cancel_futures=True)
            pending = sorted(futures[f] for f in not_done)
            raise errors.CryptoError(
                f"Certificate issuance timed out after {timeout}s",
                cause=f"pending: {', '.join(pending)}",
            )
        pool.shutdown(wait=True)

        # Surface the first failure in submission order
        return {name: future.result() for future, name in futures.items()}

    def verify(self, certificate: x509.Certificate) -> bool:
        """Check that ``certificate`` was signed by this root."""
        root = self.certificate
        if certificate.issuer != root.subject:
            return False
        try:
            root.public_key().verify(
                certificate.signature,
                certificate.tbs_certificate_bytes,
                padding.PKCS1v15(),
                certificate.signature_hash_algorithm,
            )
        except InvalidSignature:
            return False
        return True

    def kubeconfig(self, identity: str, server: str, cluster_name: str = "kubestrap") -> dict[str, Any]:
        """Build a kubeconfig document embedding the identity's credentials."""
        issued = self.get(identity)
        ca_data = self.certificate.public_bytes(serialization.Encoding.PEM)
        return {
            "apiVersion": "v1",
            "kind": "Config",
            "clusters": [
                {
                    "name": cluster_name,
                    "cluster": {
                        "certificate-authority-data": _b64(ca_data),
                        "server": server,
                    },
                }
            ],
            "users": [
                {
                    "name": identity,
                    "user": {
                        "client-certificate-data": _b64(issued.cert_path.read_bytes()),
                        "client-key-data": _b64(issued.key_path.read_bytes()),
                    },
                }
            ],
            "contexts": [
                {
                    "name": cluster_name,
                    "context": {"cluster": cluster_name, "user": identity},
                }
            ],
            "current-context": cluster_name,
        }

    def write_kubeconfig(self, path: Path, identity: str, server: str) -> Path:
        """Write a kubeconfig for ``identity``. Contains a private key, so owner-only."""
        document = yaml.safe_dump(
            self.kubeconfig(identity, server), default_flow_style=False, sort_keys=False
        )
        self._write_private(path, document.encode())
        logger.debug("Kubeconfig written", identity=identity, path=str(path))
        return path

    def _write_cert(self, path: Path, cert: x509.Certificate) -> None:
        try:
            path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        except builtins.PermissionError as e:
            raise errors.PermissionError(
                "Permission denied writing certificate", path=str(path), cause=str(e)
            ) from e
        except OSError as e:
            raise errors.FilesystemError(
                "Unable to write certificate", path=str(path), cause=str(e)
            ) from e

    def _write_key(self, path: Path, key: rsa.RSAPrivateKey) -> None:
        data = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        self._write_private(path, data)

    def _write_private(self, path: Path, data: bytes) -> None:
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            # Set file permissions to owner-only (600), also for pre-existing files
            os.chmod(path, 0o600)
        except builtins.PermissionError as e:
            raise errors.PermissionError(
                "Permission denied writing private key material", path=str(path), cause=str(e)
            ) from e
        except OSError as e:
            raise errors.FilesystemError(
                "Unable to write private key material", path=str(path), cause=str(e)
            ) from e


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")
