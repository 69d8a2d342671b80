"""
Certificate storage and self-signed generation.

Certificates are cached on disk as PEM pairs so restarts reuse what was
already issued. Private keys are written with owner-only permissions.
"""

from __future__ import annotations

import ipaddress
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from core import constants


_HOSTNAME = re.compile(r"^(?=.{1,253}$)[a-z0-9_]([a-z0-9_-]{0,62})(\.[a-z0-9_]([a-z0-9_-]{0,62}))*$")


def normalize_hostname(hostname: str) -> str:
    """Lower-case a hostname and drop a trailing dot."""
    return (hostname or "").strip().lower().rstrip(".")


def is_valid_cache_name(name: str) -> bool:
    """Return True when a hostname is safe to use as a cache file name."""
    if not name or ".." in name:
        return False
    try:
        ipaddress.ip_address(name)
        return True
    except ValueError:
        return bool(_HOSTNAME.match(name))


@dataclass(frozen=True)
class CertificatePair:
    """PEM-encoded certificate chain and private key."""

    cert_pem: bytes
    key_pem: bytes

    def certificate(self) -> x509.Certificate:
        return x509.load_pem_x509_certificate(self.cert_pem)

    @property
    def not_after(self) -> datetime:
        return self.certificate().not_valid_after_utc

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.not_after

    def needs_renewal(
        self,
        now: Optional[datetime] = None,
        renew_before: timedelta = timedelta(days=constants.CERTIFICATE_RENEW_BEFORE_DAYS),
    ) -> bool:
        return (now or datetime.now(timezone.utc)) + renew_before >= self.not_after


def generate_self_signed(
    hostnames: Iterable[str],
    days: int = constants.SELF_SIGNED_VALID_DAYS,
) -> CertificatePair:
    """
    Generate a self-signed certificate covering the given names.

    IP literals become IP SAN entries; everything else a DNS entry. The
    first name is used as the common name.
    """
    names = [normalize_hostname(h) for h in hostnames if normalize_hostname(h)]
    if not names:
        names = ["localhost"]

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    san_entries = []
    for name in names:
        try:
            san_entries.append(x509.IPAddress(ipaddress.ip_address(name)))
        except ValueError:
            san_entries.append(x509.DNSName(name))

    subject = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, names[0]),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "esmd development"),
    ])
    not_before = datetime.now(timezone.utc) - timedelta(minutes=5)
    not_after = not_before + timedelta(days=days)

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.SubjectAlternativeName(san_entries), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )

    return CertificatePair(
        cert_pem=cert.public_bytes(serialization.Encoding.PEM),
        key_pem=key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ),
    )


def _write_atomic(path: Path, data: bytes, mode: int) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    os.replace(tmp, path)


class CertificateCache:
    """On-disk cache of certificate pairs keyed by hostname."""

    def __init__(self, cache_dir: Path):
        self.cache_dir = Path(cache_dir)

    def paths(self, name: str) -> Tuple[Path, Path]:
        """Return (certificate, key) paths for a cache entry."""
        name = normalize_hostname(name)
        if not is_valid_cache_name(name):
            raise ValueError(f"invalid certificate name {name!r}")
        return self.cache_dir / f"{name}.crt", self.cache_dir / f"{name}.key"

    def load(self, name: str) -> Optional[CertificatePair]:
        """Return the cached pair, or None when missing, unreadable or expired."""
        cert_path, key_path = self.paths(name)
        if not cert_path.is_file() or not key_path.is_file():
            return None
        try:
            pair = CertificatePair(cert_path.read_bytes(), key_path.read_bytes())
            if pair.is_expired():
                return None
        except (OSError, ValueError):
            return None
        return pair

    def store(self, name: str, pair: CertificatePair) -> Tuple[Path, Path]:
        """Persist a pair, replacing any previous entry."""
        cert_path, key_path = self.paths(name)
        self.cache_dir.mkdir(mode=constants.DIRECTORY_MODE, parents=True, exist_ok=True)
        _write_atomic(key_path, pair.key_pem, constants.PRIVATE_KEY_MODE)
        _write_atomic(cert_path, pair.cert_pem, 0o644)
        return cert_path, key_path
