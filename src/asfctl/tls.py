"""TLS preflight checks for the certificate pair the reverse proxy uses.

Both vhost templates point at a fixed certificate and key. The proxy will
refuse to start when either is missing or unusable, so the reconciler runs
:func:`validate_tls` before applying and reports the findings. The checks
never modify the files.
"""
from __future__ import annotations

import stat
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

WARN_EXPIRY_DAYS = 30


class TLSValidationSeverity(Enum):
    """Validation severities for TLS checks."""

    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class TLSValidationFinding:
    """Individual validation check outcome."""

    scope: str
    check: str
    severity: TLSValidationSeverity
    message: str
    path: Path | None = None


@dataclass(frozen=True)
class TLSValidationReport:
    """Aggregate validation results for the certificate pair."""

    certificate: Path
    key: Path
    domain: str | None
    findings: tuple[TLSValidationFinding, ...]
    not_valid_after: datetime | None = None

    @property
    def has_errors(self) -> bool:
        """Return True when any finding is classified as an error."""
        return any(f.severity is TLSValidationSeverity.ERROR for f in self.findings)

    @property
    def has_warnings(self) -> bool:
        """Return True when the report includes warning findings."""
        return any(f.severity is TLSValidationSeverity.WARNING for f in self.findings)

    @property
    def status(self) -> TLSValidationSeverity:
        """Return the overall status derived from the findings."""
        if self.has_errors:
            return TLSValidationSeverity.ERROR
        if self.has_warnings:
            return TLSValidationSeverity.WARNING
        return TLSValidationSeverity.OK

    def problems(self) -> list[str]:
        """Return the messages of every non-OK finding."""
        return [
            f.message for f in self.findings if f.severity is not TLSValidationSeverity.OK
        ]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the report."""
        return {
            "certificate": str(self.certificate),
            "key": str(self.key),
            "domain": self.domain,
            "status": self.status.value,
            "not_valid_after": (
                self.not_valid_after.isoformat() if self.not_valid_after else None
            ),
            "findings": [
                {
                    "scope": finding.scope,
                    "check": finding.check,
                    "severity": finding.severity.value,
                    "message": finding.message,
                    "path": str(finding.path) if finding.path is not None else None,
                }
                for finding in self.findings
            ],
        }


class PublicKeyProtocol(Protocol):
    """Protocol covering public keys exposing ``public_bytes``."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the public key bytes in the requested encoding/format."""


class PrivateKeyProtocol(Protocol):
    """Protocol for private keys that can provide a matching public key."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the associated public key object."""


def validate_tls(
    certificate: Path,
    key: Path,
    *,
    domain: str | None = None,
    warn_expiry_days: int = WARN_EXPIRY_DAYS,
    now: datetime | None = None,
) -> TLSValidationReport:
    """Validate the certificate/key pair and return a structured report."""
    now = now or datetime.now(UTC)
    findings: list[TLSValidationFinding] = []

    def _add(scope: str, check: str, severity: TLSValidationSeverity, message: str,
             path: Path | None) -> None:
        findings.append(TLSValidationFinding(scope, check, severity, message, path))

    cert_obj: x509.Certificate | None = None
    key_obj: PrivateKeyProtocol | None = None
    not_after: datetime | None = None

    if not certificate.is_file():
        _add("certificate", "exists", TLSValidationSeverity.ERROR,
             f"Certificate not found at {certificate}.", certificate)
    else:
        try:
            cert_obj = _load_certificate(certificate)
            _add("certificate", "parse", TLSValidationSeverity.OK,
                 f"Loaded certificate (serial {cert_obj.serial_number}).", certificate)
        except (OSError, ValueError) as exc:
            _add("certificate", "parse", TLSValidationSeverity.ERROR,
                 f"Failed to parse certificate {certificate}: {exc}", certificate)

    if not key.is_file():
        _add("key", "exists", TLSValidationSeverity.ERROR,
             f"Private key not found at {key}.", key)
    else:
        mode = stat.S_IMODE(key.stat().st_mode)
        if mode & 0o007:
            _add("key", "permissions", TLSValidationSeverity.WARNING,
                 f"Private key {key} is accessible to other users (mode {mode:04o}).", key)
        try:
            key_obj = _load_private_key(key)
            _add("key", "parse", TLSValidationSeverity.OK, "Loaded private key.", key)
        except (OSError, ValueError, TypeError) as exc:
            _add("key", "parse", TLSValidationSeverity.ERROR,
                 f"Failed to parse private key {key}: {exc}", key)

    if cert_obj is not None and key_obj is not None:
        if _public_keys_match(cert_obj, key_obj):
            _add("certificate", "match", TLSValidationSeverity.OK,
                 "Certificate and key match.", certificate)
        else:
            _add("certificate", "match", TLSValidationSeverity.ERROR,
                 f"Certificate {certificate} does not match the key {key}.", certificate)

    if cert_obj is not None:
        not_after = cert_obj.not_valid_after_utc
        if not_after <= now:
            _add("certificate", "expiry", TLSValidationSeverity.ERROR,
                 f"Certificate expired on {not_after.isoformat()}.", certificate)
        elif (not_after - now).days <= warn_expiry_days:
            _add("certificate", "expiry", TLSValidationSeverity.WARNING,
                 f"Certificate expires soon ({not_after.isoformat()}, "
                 f"{(not_after - now).days} day(s) remaining).", certificate)
        else:
            _add("certificate", "expiry", TLSValidationSeverity.OK,
                 f"Certificate valid until {not_after.isoformat()}.", certificate)

        if domain is not None:
            names = certificate_names(cert_obj)
            if any(_name_matches(pattern, domain) for pattern in names):
                _add("certificate", "domain", TLSValidationSeverity.OK,
                     f"Certificate covers {domain}.", certificate)
            else:
                covered = ", ".join(names) or "no names"
                _add("certificate", "domain", TLSValidationSeverity.WARNING,
                     f"Certificate does not cover {domain} (covers {covered}).", certificate)

    return TLSValidationReport(
        certificate=certificate,
        key=key,
        domain=domain,
        findings=tuple(findings),
        not_valid_after=not_after,
    )


def certificate_names(cert: x509.Certificate) -> list[str]:
    """Return the DNS subject alternative names, falling back to the common name."""
    try:
        extension = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return [
            str(attribute.value)
            for attribute in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        ]
    return list(extension.value.get_values_for_type(x509.DNSName))


def _name_matches(pattern: str, domain: str) -> bool:
    pattern = pattern.lower().rstrip(".")
    domain = domain.lower().rstrip(".")
    if pattern.startswith("*."):
        head, _, tail = domain.partition(".")
        return bool(head) and tail == pattern[2:]
    return pattern == domain


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _load_private_key(path: Path) -> PrivateKeyProtocol:
    data = path.read_bytes()
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(PrivateKeyProtocol, private_key)


def _public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


__all__ = [
    "TLSValidationFinding",
    "TLSValidationReport",
    "TLSValidationSeverity",
    "WARN_EXPIRY_DAYS",
    "certificate_names",
    "validate_tls",
]
