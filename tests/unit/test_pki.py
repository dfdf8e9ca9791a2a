"""Unit tests for the certificate authority."""

from __future__ import annotations

import base64
import builtins
import stat
from unittest.mock import patch

import pytest
import yaml
from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from kubestrap import errors
from kubestrap.pki import CA_COMMON_NAME, CertificateAuthority, CertificateRequest, san_entries


@pytest.fixture(scope="module")
def ca(tmp_path_factory) -> CertificateAuthority:
    """One initialized CA per module, RSA generation is slow."""
    from kubestrap.shared.paths import ensure_dirs

    paths = ensure_dirs(tmp_path_factory.mktemp("pki"))
    authority = CertificateAuthority(paths)
    authority.initialize()
    return authority


class TestInitialize:
    """Tests for root generation."""

    def test_root_written(self, ca):
        """The root certificate and key land in certs/."""
        assert ca.initialized
        assert ca.ca_cert_path.exists()
        assert ca.ca_key_path.exists()
        assert stat.S_IMODE(ca.ca_key_path.stat().st_mode) == 0o600

    def test_root_is_a_ca(self, ca):
        """The root is self-signed with CA basic constraints."""
        cert = ca.certificate
        assert cert.subject == cert.issuer
        assert cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == CA_COMMON_NAME
        assert cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca is True

    def test_initialize_twice(self, ca):
        """The root is never regenerated mid-run."""
        with pytest.raises(errors.CryptoError):
            ca.initialize()

    def test_issue_before_initialize(self, tmp_path):
        """Issuing without a root is a CryptoError."""
        from kubestrap.shared.paths import ensure_dirs

        authority = CertificateAuthority(ensure_dirs(tmp_path))
        with pytest.raises(errors.CryptoError):
            authority.issue("etcd", ["127.0.0.1"])


class TestIssue:
    """Tests for leaf issuance."""

    def test_leaf_verifies_against_root(self, ca):
        """Issued certificates are signed by the root."""
        issued = ca.issue("verify-me", ["127.0.0.1"])
        assert ca.verify(issued.certificate)

    def test_exact_sans(self, ca):
        """The certificate carries exactly the requested SANs."""
        sans = ["10.96.0.1", "127.0.0.1", "localhost", "kubernetes.default.svc"]
        issued = ca.issue("exact-sans", sans)

        assert sorted(san_entries(issued.certificate)) == sorted(sans)

    def test_subject_and_usages(self, ca):
        """Common name, organization and both TLS usages are set."""
        issued = ca.issue(
            "kubelet-test",
            ["127.0.0.1"],
            common_name="system:node:devbox",
            organization="system:nodes",
        )
        subject = issued.certificate.subject
        usages = issued.certificate.extensions.get_extension_for_class(
            x509.ExtendedKeyUsage
        ).value

        assert issued.common_name == "system:node:devbox"
        assert subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)[0].value == "system:nodes"
        assert ExtendedKeyUsageOID.SERVER_AUTH in usages
        assert ExtendedKeyUsageOID.CLIENT_AUTH in usages

    def test_reissue_same_sans(self, ca):
        """Re-issuing with identical SANs returns the same pair."""
        first = ca.issue("same", ["127.0.0.1"])
        second = ca.issue("same", ["127.0.0.1"])
        assert first is second

    def test_reissue_different_sans(self, ca):
        """Issued certificates are immutable."""
        ca.issue("immutable", ["127.0.0.1"])
        with pytest.raises(errors.CryptoError) as exc_info:
            ca.issue("immutable", ["127.0.0.2"])
        assert exc_info.value.component == "immutable"

    def test_private_key_owner_only(self, ca):
        """Leaf keys are written with mode 0600."""
        issued = ca.issue("private", [])
        assert stat.S_IMODE(issued.key_path.stat().st_mode) == 0o600

    def test_foreign_certificate_does_not_verify(self, ca, tmp_path):
        """A leaf from another root is rejected."""
        from kubestrap.shared.paths import ensure_dirs

        other = CertificateAuthority(ensure_dirs(tmp_path))
        other.initialize()
        foreign = other.issue("etcd", ["127.0.0.1"])

        assert not ca.verify(foreign.certificate)

    def test_permission_denied_writing_key(self, ca):
        """An OS permission failure becomes a fatal PermissionError naming the path."""
        with patch("os.open", side_effect=builtins.PermissionError("denied")):
            with pytest.raises(errors.PermissionError) as exc_info:
                ca.issue("denied", [])
        assert exc_info.value.path.endswith("denied.key")
        assert exc_info.value.fatal is True

    def test_get_unknown(self, ca):
        """Looking up an identity that was never issued fails."""
        with pytest.raises(errors.CryptoError):
            ca.get("never-issued")


class TestIssueAll:
    """Tests for batch issuance."""

    def test_issue_all(self, ca):
        """All requests are issued on the pool."""
        requests = [
            CertificateRequest(name=f"batch-{i}", sans=("127.0.0.1",)) for i in range(3)
        ]
        issued = ca.issue_all(requests, max_workers=2, timeout=60)

        assert sorted(issued) == ["batch-0", "batch-1", "batch-2"]
        assert all(ca.verify(c.certificate) for c in issued.values())

    def test_issue_all_timeout(self, ca):
        """A batch exceeding its timeout is a CryptoError."""
        requests = [CertificateRequest(name="slow", sans=("127.0.0.1",))]
        with patch("kubestrap.pki.wait", side_effect=lambda futures, timeout: (set(), set(futures))):
            with pytest.raises(errors.CryptoError) as exc_info:
                ca.issue_all(requests, timeout=0.01)
        assert "timed out" in exc_info.value.message


class TestKubeconfig:
    """Tests for kubeconfig generation."""

    def test_kubeconfig_embeds_credentials(self, ca, tmp_path):
        """The kubeconfig carries the server, root and client pair."""
        issued = ca.issue("admin-test", [], organization="system:masters")
        path = ca.write_kubeconfig(tmp_path / "kubeconfig", "admin-test", "https://127.0.0.1:6443")

        document = yaml.safe_load(path.read_text())
        cluster = document["clusters"][0]["cluster"]
        user = document["users"][0]["user"]

        assert cluster["server"] == "https://127.0.0.1:6443"
        assert base64.b64decode(user["client-certificate-data"]) == issued.cert_path.read_bytes()
        assert base64.b64decode(cluster["certificate-authority-data"]) == ca.ca_cert_path.read_bytes()
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
