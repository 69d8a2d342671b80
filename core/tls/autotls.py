"""
Automatic TLS for the HTTPS listener.

Certificates are obtained per requested hostname and cached on disk.
Issuance goes through certbot's webroot mode; the HTTP-01 challenge files
it writes are served by the plaintext listener. Because that listener runs
on the same event loop that performs TLS handshakes, the SNI callback never
waits for issuance: a cache miss schedules acquisition in a worker thread
and fails only the current handshake.
"""

from __future__ import annotations

import ssl
import subprocess
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from threading import Lock
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from core import constants
from core.logger import UnifiedLogger
from core.runtime.errors import CertificateAcquisitionError
from .certificates import (
    CertificateCache,
    CertificatePair,
    generate_self_signed,
    is_valid_cache_name,
    normalize_hostname,
)

if TYPE_CHECKING:
    from core.runtime.config import ListenerConfig


FALLBACK_CERT_NAME = "_fallback"
FALLBACK_HOSTS = ("localhost", "127.0.0.1", "::1")
FAILURE_BACKOFF_SECONDS = 300.0

Runner = Callable[[Sequence[str], float], subprocess.CompletedProcess]


class CertificateIssuer(Protocol):
    """Anything that can produce a certificate for one hostname."""

    def issue(self, hostname: str) -> CertificatePair:
        ...


class SelfSignedIssuer:
    """Issue locally generated certificates (development)."""

    def issue(self, hostname: str) -> CertificatePair:
        return generate_self_signed([hostname])


def _run(args: Sequence[str], timeout: float) -> subprocess.CompletedProcess:
    return subprocess.run(list(args), capture_output=True, text=True, timeout=timeout, check=False)


class CertbotIssuer:
    """
    Obtain certificates from an ACME CA through certbot's webroot mode.

    Args:
        state_dir: Directory for certbot's config, work and log trees
        webroot: Directory served at /.well-known/acme-challenge/ over plain HTTP
        email: Contact address for the ACME account (optional)
        staging: Use the CA's staging environment
    """

    def __init__(
        self,
        state_dir: Path,
        webroot: Path,
        email: Optional[str] = None,
        staging: bool = False,
        binary: str = constants.CERTBOT_BINARY,
        timeout: float = constants.CERTBOT_TIMEOUT,
        runner: Runner = _run,
    ):
        self.state_dir = Path(state_dir)
        self.webroot = Path(webroot)
        self.email = email
        self.staging = staging
        self.binary = binary
        self.timeout = timeout
        self._runner = runner

    def command(self, hostname: str) -> List[str]:
        cmd = [
            self.binary, "certonly",
            "--webroot", "-w", str(self.webroot),
            "--non-interactive", "--agree-tos", "--keep-until-expiring",
            "--config-dir", str(self.state_dir / "config"),
            "--work-dir", str(self.state_dir / "work"),
            "--logs-dir", str(self.state_dir / "logs"),
            "--cert-name", hostname,
            "-d", hostname,
        ]
        if self.email:
            cmd += ["-m", self.email]
        else:
            cmd.append("--register-unsafely-without-email")
        if self.staging:
            cmd.append("--staging")
        return cmd

    def issue(self, hostname: str) -> CertificatePair:
        self.webroot.mkdir(mode=constants.DIRECTORY_MODE, parents=True, exist_ok=True)
        try:
            result = self._runner(self.command(hostname), self.timeout)
        except FileNotFoundError as e:
            raise CertificateAcquisitionError(hostname, f"{self.binary} not found in PATH") from e
        except subprocess.TimeoutExpired as e:
            raise CertificateAcquisitionError(hostname, f"{self.binary} timed out after {self.timeout:g}s") from e

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip().splitlines()
            reason = detail[-1] if detail else f"exit status {result.returncode}"
            raise CertificateAcquisitionError(hostname, reason)

        live = self.state_dir / "config" / "live" / hostname
        try:
            return CertificatePair(
                cert_pem=(live / "fullchain.pem").read_bytes(),
                key_pem=(live / "privkey.pem").read_bytes(),
            )
        except OSError as e:
            raise CertificateAcquisitionError(hostname, f"certbot output missing: {e}") from e


def _new_server_context(cert_path: Path, key_path: Path) -> ssl.SSLContext:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
    context.set_alpn_protocols(["http/1.1"])
    return context


class CertificateManager:
    """
    Per-hostname certificate contexts for the TLS listener.

    Args:
        cache: On-disk certificate cache
        issuer: Source of new certificates
        accept_tos: Enable on-demand issuance through the SNI callback
        domains: Hostnames allowed for issuance (empty allows any)
        logger: Operational logger
        max_workers: Concurrent acquisitions
    """

    def __init__(
        self,
        cache: CertificateCache,
        issuer: CertificateIssuer,
        *,
        accept_tos: bool,
        domains: Iterable[str] = (),
        logger: Optional[UnifiedLogger] = None,
        max_workers: int = 4,
    ):
        self.cache = cache
        self.issuer = issuer
        self.accept_tos = accept_tos
        self.domains = frozenset(normalize_hostname(d) for d in domains if d)
        self.logger = logger or UnifiedLogger(tag="autotls")
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="autotls")
        self._lock = Lock()
        self._contexts: Dict[str, ssl.SSLContext] = {}
        self._pending: Dict[str, Future] = {}
        self._failures: Dict[str, Tuple[float, str]] = {}

    @classmethod
    def for_listener(cls, config: "ListenerConfig", logger: Optional[UnifiedLogger] = None) -> "CertificateManager":
        """
        Build the manager a listener configuration asks for: certbot issuance
        when the terms of service are accepted, self-signed otherwise.
        """
        if config.accept_tos:
            issuer: CertificateIssuer = CertbotIssuer(
                state_dir=config.cache_dir / "certbot",
                webroot=config.webroot,
            )
        else:
            issuer = SelfSignedIssuer()
        return cls(
            CertificateCache(config.cache_dir),
            issuer,
            accept_tos=config.accept_tos,
            domains=config.domains,
            logger=logger,
        )

    def allows(self, hostname: str) -> bool:
        """Return True when issuance is permitted for the hostname."""
        if not is_valid_cache_name(hostname) or hostname == FALLBACK_CERT_NAME:
            return False
        return not self.domains or hostname in self.domains

    def build_context(self) -> ssl.SSLContext:
        """
        Build the listener's base SSL context.

        It carries a self-signed fallback certificate (used for clients
        that send no SNI, and for every client in development) and, when
        issuance is enabled, the SNI callback that selects per-host contexts.
        """
        pair = self.cache.load(FALLBACK_CERT_NAME)
        if pair is None or pair.needs_renewal():
            pair = generate_self_signed(FALLBACK_HOSTS)
            self.cache.store(FALLBACK_CERT_NAME, pair)
        cert_path, key_path = self.cache.paths(FALLBACK_CERT_NAME)

        context = _new_server_context(cert_path, key_path)
        if self.accept_tos:
            context.sni_callback = self._sni_callback
        return context

    def context_for(self, hostname: str) -> Optional[ssl.SSLContext]:
        """Return a ready context for the hostname from memory or disk."""
        with self._lock:
            context = self._contexts.get(hostname)
        if context is not None:
            return context

        pair = self.cache.load(hostname)
        if pair is None:
            return None
        if pair.needs_renewal():
            self.request(hostname)

        cert_path, key_path = self.cache.paths(hostname)
        context = _new_server_context(cert_path, key_path)
        with self._lock:
            self._contexts[hostname] = context
        return context

    def request(self, hostname: str) -> Optional[Future]:
        """
        Schedule acquisition for a hostname unless one is already running
        or the last attempt failed within the backoff window.
        """
        hostname = normalize_hostname(hostname)
        if not self.allows(hostname):
            return None

        with self._lock:
            pending = self._pending.get(hostname)
            if pending is not None:
                return pending
            failure = self._failures.get(hostname)
            if failure and time.monotonic() - failure[0] < FAILURE_BACKOFF_SECONDS:
                return None
            future = self._executor.submit(self._acquire, hostname)
            self._pending[hostname] = future
        return future

    def warm(self, hostnames: Iterable[str]) -> List[Future]:
        """Start acquisition for hosts that have no cached certificate yet."""
        futures = []
        for hostname in hostnames:
            hostname = normalize_hostname(hostname)
            if not self.allows(hostname) or self.cache.load(hostname) is not None:
                continue
            future = self.request(hostname)
            if future is not None:
                futures.append(future)
        return futures

    def last_failure(self, hostname: str) -> Optional[str]:
        with self._lock:
            failure = self._failures.get(normalize_hostname(hostname))
        return failure[1] if failure else None

    def _acquire(self, hostname: str) -> bool:
        try:
            self.logger.info("Requesting certificate", hostname=hostname)
            pair = self.issuer.issue(hostname)
            cert_path, key_path = self.cache.store(hostname, pair)
            context = _new_server_context(cert_path, key_path)
        except Exception as e:
            error = e if isinstance(e, CertificateAcquisitionError) else CertificateAcquisitionError(hostname, str(e))
            self.logger.error(f"Certificate acquisition failed: {error}", hostname=hostname)
            with self._lock:
                self._failures[hostname] = (time.monotonic(), str(error))
                self._pending.pop(hostname, None)
            return False

        with self._lock:
            self._contexts[hostname] = context
            self._failures.pop(hostname, None)
            self._pending.pop(hostname, None)
        self.logger.info("Certificate issued", hostname=hostname, not_after=pair.not_after.isoformat())
        return True

    def _sni_callback(self, ssl_object, server_name: Optional[str], base_context: ssl.SSLContext):
        if not server_name:
            return None
        hostname = normalize_hostname(server_name)
        if not self.allows(hostname):
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME

        try:
            context = self.context_for(hostname)
        except Exception as e:
            self.logger.error(f"Loading cached certificate failed: {e}", hostname=hostname)
            context = None

        if context is not None:
            ssl_object.context = context
            return None

        self.request(hostname)
        return ssl.ALERT_DESCRIPTION_HANDSHAKE_FAILURE

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
