"""
Client certificate authorization.

The TLS stack verifies client certificates against the configured root CA.
On top of that, when a certificate subject is configured, only connections
whose leaf certificate carries exactly that subject are admitted. Subjects
are compared in their RFC 4514 rendering, e.g. ``CN=client,O=Example``.

The check runs in the connection's ``connection_made`` callback, after the
handshake and before any HTTP bytes are parsed, so a refused peer never
reaches the application.
"""

import ssl
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from loguru import logger
from uvicorn.protocols.http.h11_impl import H11Protocol

from .config import Settings
from .errors import AuthorizationError, ConfigError


@dataclass(frozen=True)
class TrustPolicy:
    root_bundle: tuple[x509.Certificate, ...] = ()
    root_ca_path: str = ""
    cert_subject: str = ""

    @property
    def requires_client_cert(self) -> bool:
        return bool(self.root_ca_path)

    def root_bundle_pem(self) -> str:
        return "".join(cert.public_bytes(Encoding.PEM).decode("ascii") for cert in self.root_bundle)

    @classmethod
    def load(cls, root_ca_path: str = "", cert_subject: str = "") -> "TrustPolicy":
        """Read and parse the root bundle once at startup."""
        if not root_ca_path:
            if cert_subject:
                raise ConfigError("cert_subject requires root_ca to be configured")
            return cls()
        try:
            pem = Path(root_ca_path).read_bytes()
        except OSError as e:
            raise ConfigError(f"could not read root certificate {root_ca_path}: {e}") from e
        try:
            bundle = tuple(x509.load_pem_x509_certificates(pem))
        except ValueError as e:
            raise ConfigError(f"failed to parse root certificate {root_ca_path}: {e}") from e
        return cls(root_bundle=bundle, root_ca_path=root_ca_path, cert_subject=cert_subject)


@dataclass(frozen=True)
class AuthorizationDecision:
    allowed: bool
    subjects: frozenset[str] = field(default_factory=frozenset)

    def raise_for_denial(self) -> None:
        if not self.allowed:
            raise AuthorizationError(self.subjects)


def subject_of(cert: x509.Certificate) -> str:
    return cert.subject.rfc4514_string()


def authorize(policy: TrustPolicy, verified_chains: Sequence[Sequence[x509.Certificate]]) -> AuthorizationDecision:
    """Decide whether a peer presenting ``verified_chains`` may connect."""
    if not policy.requires_client_cert:
        return AuthorizationDecision(allowed=True)

    subjects: set[str] = set()
    for chain in verified_chains:
        if len(chain) == 0:
            continue
        # the leaf always comes first
        subjects.add(subject_of(chain[0]))
        for cert in chain:
            logger.debug("Got certificate", subject=subject_of(cert), serial=cert.serial_number)

    if not policy.cert_subject:
        # Any chain verified against the root bundle will do, but there must be one.
        return AuthorizationDecision(allowed=bool(subjects), subjects=frozenset(subjects))

    if policy.cert_subject in subjects:
        logger.debug("Allowing certificate", subject=policy.cert_subject)
        return AuthorizationDecision(allowed=True, subjects=frozenset({policy.cert_subject}))

    return AuthorizationDecision(allowed=False, subjects=frozenset(subjects))


def verified_chains_from_ssl(ssl_object: ssl.SSLObject) -> list[list[x509.Certificate]]:
    """Return the peer's verified chain as parsed certificates.

    ``get_verified_chain`` exists from Python 3.13; older interpreters only
    expose the leaf, which the handshake has verified already.
    """
    get_chain = getattr(ssl_object, "get_verified_chain", None)
    if callable(get_chain):
        ders: Iterable[bytes] = get_chain() or []
    else:
        leaf = ssl_object.getpeercert(binary_form=True)
        ders = [leaf] if leaf else []
    chain = [x509.load_der_x509_certificate(der) for der in ders]
    return [chain] if chain else []


def build_server_ssl_context(settings: Settings, policy: TrustPolicy) -> ssl.SSLContext | None:
    server = settings.server
    if not server.tls_enabled:
        return None
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_3
    try:
        context.load_cert_chain(certfile=server.tls_cert, keyfile=server.tls_key)
        if policy.requires_client_cert:
            context.load_verify_locations(cadata=policy.root_bundle_pem())
            context.verify_mode = ssl.CERT_REQUIRED
    except (OSError, ValueError) as e:
        raise ConfigError(f"could not set up TLS: {e}") from e
    return context


class AuthorizingH11Protocol(H11Protocol):
    """uvicorn h11 protocol that refuses peers rejected by the trust policy."""

    trust_policy: TrustPolicy = TrustPolicy()

    def connection_made(self, transport) -> None:  # type: ignore[override]
        super().connection_made(transport)
        if not self.authorize_transport(transport):
            transport.close()

    def authorize_transport(self, transport) -> bool:
        if not self.trust_policy.requires_client_cert:
            return True
        ssl_object = transport.get_extra_info("ssl_object")
        try:
            chains = verified_chains_from_ssl(ssl_object) if ssl_object is not None else []
            authorize(self.trust_policy, chains).raise_for_denial()
        except AuthorizationError as e:
            logger.warning(
                "refused TLS client",
                peer=str(transport.get_extra_info("peername")),
                subjects=sorted(e.subjects),
                error=str(e),
            )
            return False
        except ValueError as e:
            logger.warning("refused TLS client with unparsable certificate", error=str(e))
            return False
        return True


def authorizing_protocol(policy: TrustPolicy) -> type[AuthorizingH11Protocol]:
    return type("BoundAuthorizingH11Protocol", (AuthorizingH11Protocol,), {"trust_policy": policy})
