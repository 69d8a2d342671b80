"""
TLS certificate management for the HTTPS listener.

- `core.tls.certificates` for the on-disk cache and self-signed generation
- `core.tls.autotls` for issuers and the SNI-driven certificate manager
"""

from .autotls import CertbotIssuer, CertificateManager, SelfSignedIssuer
from .certificates import CertificateCache, CertificatePair, generate_self_signed

__all__ = [
    "CertbotIssuer",
    "CertificateCache",
    "CertificateManager",
    "CertificatePair",
    "SelfSignedIssuer",
    "generate_self_signed",
]
