"""Certificate utility functions for key generation, serialization, and inspection."""

import uuid
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes

from .models import CertificateBundle, Issuer

# Issuer CNs used by Let's Encrypt's staging hierarchy
STAGING_ISSUER_MARKERS = ("(STAGING)", "Fake LE", "Pretend Pear", "Artificial Apricot")


def generate_private_key(key_size: int = 2048) -> RSAPrivateKey:
    """Generate RSA private key with specified size."""
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )


def serialize_private_key(key: RSAPrivateKey) -> bytes:
    """Serialize private key to PEM format (PKCS8, no encryption)."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def deserialize_private_key(pem_data: bytes) -> PrivateKeyTypes:
    """Deserialize an unencrypted private key from PEM bytes.

    Any key type is accepted; ACME agents commonly issue ECDSA keys.
    """
    return serialization.load_pem_private_key(pem_data, password=None)


def public_key_matches(cert: x509.Certificate, private_key_pem: bytes) -> bool:
    """True if `private_key_pem` holds the private half of the certificate's key.

    Raises:
        ValueError: If the key is not valid PEM
    """
    key = deserialize_private_key(private_key_pem)
    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    encoding = serialization.Encoding.DER
    return key.public_key().public_bytes(encoding, spki) == cert.public_key().public_bytes(
        encoding, spki
    )


def serialize_certificate(cert: x509.Certificate) -> bytes:
    """Serialize certificate to PEM format."""
    return cert.public_bytes(serialization.Encoding.PEM)


def deserialize_certificate(pem_data: bytes) -> x509.Certificate:
    """Deserialize the first (leaf) certificate from PEM bytes.

    A fullchain file holds the leaf followed by intermediates; only the leaf
    describes the served names and expiry.
    """
    return x509.load_pem_x509_certificate(pem_data)


def generate_serial_number() -> int:
    """Generate certificate serial number from UUID4.

    Returns:
        Random 128-bit integer for x509.CertificateBuilder.serial_number()
    """
    return uuid.uuid4().int


def get_certificate_serial_hex(cert: x509.Certificate) -> str:
    """Return certificate serial number as hex with colons (e.g., 3A:F2:B1:...)."""
    serial_hex = f"{cert.serial_number:X}"
    if len(serial_hex) % 2 != 0:
        serial_hex = "0" + serial_hex
    return ":".join(serial_hex[i : i + 2] for i in range(0, len(serial_hex), 2))


def get_common_name(cert: x509.Certificate) -> str | None:
    """Return the subject CN, or None when the subject has no CN."""
    attrs = cert.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
    if not attrs:
        return None
    value = attrs[0].value
    return value if isinstance(value, str) else value.decode("utf-8")


def get_san_dns_names(cert: x509.Certificate) -> list[str]:
    """Return SAN DNS names in certificate order (empty if no SAN extension)."""
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return san.value.get_values_for_type(x509.DNSName)


def classify_issuer(cert: x509.Certificate) -> Issuer:
    """Classify a certificate as self-signed, ACME staging, or ACME production."""
    if cert.issuer == cert.subject:
        return Issuer.SELF_SIGNED
    issuer_text = cert.issuer.rfc4514_string()
    if any(marker in issuer_text for marker in STAGING_ISSUER_MARKERS):
        return Issuer.ACME_STAGING
    return Issuer.ACME_PRODUCTION


def read_bundle(fullchain_path: Path, private_key_path: Path) -> CertificateBundle:
    """Build a CertificateBundle from a PEM chain + key pair on disk.

    Args:
        fullchain_path: PEM file whose first certificate is the leaf
        private_key_path: PEM private key

    Returns:
        CertificateBundle describing the leaf certificate

    Raises:
        OSError: If either file cannot be read
        ValueError: If the chain is not PEM
    """
    cert = deserialize_certificate(fullchain_path.read_bytes())
    names = get_san_dns_names(cert)
    domain = get_common_name(cert) or (names[0] if names else "")
    return CertificateBundle(
        domain=domain,
        alternative_names=[n for n in names if n != domain],
        fullchain_path=fullchain_path,
        private_key_path=private_key_path,
        not_after=cert.not_valid_after_utc,
        issuer=classify_issuer(cert),
        serial=get_certificate_serial_hex(cert),
    )


def parse_alt_names(csv: str | None) -> list[str]:
    """Split a comma-separated name list, trimming blanks and dropping repeats."""
    names: list[str] = []
    for item in (csv or "").split(","):
        item = item.strip()
        if item and item not in names:
            names.append(item)
    return names
