"""TLS policy for the webhook server.

Turns the --tls-* flag values into an ordered list of mutators that are
applied to the webhook server's SSLContext when the server is built.
"""

import logging
import ssl
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .config import TLSOptions
from .errors import InvalidTLSVersion, TLSRangeInverted, UnknownCipherSuite

logger = logging.getLogger("setup")

TLS_VERSIONS = {
    "TLS12": ssl.TLSVersion.TLSv1_2,
    "TLS13": ssl.TLSVersion.TLSv1_3,
}

# IANA cipher suite name -> OpenSSL name. TLS 1.3 suites map to None:
# OpenSSL always enables them and set_ciphers() does not accept them.
PREFERRED_CIPHERS: Dict[str, Optional[str]] = {
    "TLS_AES_128_GCM_SHA256": None,
    "TLS_AES_256_GCM_SHA384": None,
    "TLS_CHACHA20_POLY1305_SHA256": None,
    "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA": "ECDHE-ECDSA-AES128-SHA",
    "TLS_ECDHE_ECDSA_WITH_AES_256_CBC_SHA": "ECDHE-ECDSA-AES256-SHA",
    "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA": "ECDHE-RSA-AES128-SHA",
    "TLS_ECDHE_RSA_WITH_AES_256_CBC_SHA": "ECDHE-RSA-AES256-SHA",
    "TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256": "ECDHE-ECDSA-AES128-GCM-SHA256",
    "TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384": "ECDHE-ECDSA-AES256-GCM-SHA384",
    "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256": "ECDHE-RSA-AES128-GCM-SHA256",
    "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384": "ECDHE-RSA-AES256-GCM-SHA384",
    "TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305_SHA256": "ECDHE-ECDSA-CHACHA20-POLY1305",
    "TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305_SHA256": "ECDHE-RSA-CHACHA20-POLY1305",
    # legacy names still accepted by the kubernetes component flags
    "TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305": "ECDHE-ECDSA-CHACHA20-POLY1305",
    "TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305": "ECDHE-RSA-CHACHA20-POLY1305",
}

INSECURE_CIPHERS: Dict[str, Optional[str]] = {
    "TLS_RSA_WITH_RC4_128_SHA": "RC4-SHA",
    "TLS_RSA_WITH_3DES_EDE_CBC_SHA": "DES-CBC3-SHA",
    "TLS_RSA_WITH_AES_128_CBC_SHA": "AES128-SHA",
    "TLS_RSA_WITH_AES_256_CBC_SHA": "AES256-SHA",
    "TLS_RSA_WITH_AES_128_CBC_SHA256": "AES128-SHA256",
    "TLS_RSA_WITH_AES_128_GCM_SHA256": "AES128-GCM-SHA256",
    "TLS_RSA_WITH_AES_256_GCM_SHA384": "AES256-GCM-SHA384",
    "TLS_ECDHE_ECDSA_WITH_RC4_128_SHA": "ECDHE-ECDSA-RC4-SHA",
    "TLS_ECDHE_RSA_WITH_RC4_128_SHA": "ECDHE-RSA-RC4-SHA",
    "TLS_ECDHE_RSA_WITH_3DES_EDE_CBC_SHA": "ECDHE-RSA-DES-CBC3-SHA",
    "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA256": "ECDHE-ECDSA-AES128-SHA256",
    "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA256": "ECDHE-RSA-AES128-SHA256",
}


def preferred_cipher_names() -> List[str]:
    """Return the cipher suite names considered secure."""
    return list(PREFERRED_CIPHERS)


def insecure_cipher_names() -> List[str]:
    """Return the cipher suite names that are accepted but insecure."""
    return list(INSECURE_CIPHERS)


@dataclass(frozen=True)
class TLSMutator:
    """A single deferred change to an SSLContext."""
    field: str
    value: Any

    def __call__(self, context: ssl.SSLContext) -> None:
        if self.field == "cipher_suites":
            if self.value:
                context.set_ciphers(":".join(self.value))
            return
        setattr(context, self.field, self.value)


def get_tls_version(version: str) -> ssl.TLSVersion:
    """
    Map a TLS version label to the ssl module constant.

    Raises:
        InvalidTLSVersion: If the label is not TLS12 or TLS13
    """
    try:
        return TLS_VERSIONS[version]
    except (KeyError, TypeError):
        raise InvalidTLSVersion(
            f"unexpected TLS version {version!r} (must be one of: {', '.join(TLS_VERSIONS)})"
        ) from None


def resolve_cipher_suites(names: List[str]) -> Tuple[str, ...]:
    """
    Resolve IANA cipher suite names to OpenSSL cipher names.

    TLS 1.3 suites are accepted but left out of the result.

    Raises:
        UnknownCipherSuite: If a name is in neither registry
    """
    resolved = []
    for name in names:
        if name in PREFERRED_CIPHERS:
            openssl_name = PREFERRED_CIPHERS[name]
        elif name in INSECURE_CIPHERS:
            openssl_name = INSECURE_CIPHERS[name]
        else:
            raise UnknownCipherSuite(f"Cipher suite {name} not supported or doesn't exist")
        if openssl_name and openssl_name not in resolved:
            resolved.append(openssl_name)
    return tuple(resolved)


def build_tls_mutators(options: TLSOptions) -> List[TLSMutator]:
    """
    Build the TLS overrides for the webhook server.

    Args:
        options: TLS flag values

    Returns:
        Mutators in the order they must be applied: minimum version,
        maximum version and, when ciphers were requested, cipher suites.

    Raises:
        InvalidTLSVersion: If a version label is unknown
        TLSRangeInverted: If min version is above max version
        UnknownCipherSuite: If a cipher name is unknown
    """
    min_version = get_tls_version(options.min_version)
    max_version = get_tls_version(options.max_version) if options.max_version else None

    if max_version is not None and min_version > max_version:
        raise TLSRangeInverted(
            f"TLS version flag min version ({options.min_version}) is greater than "
            f"max version ({options.max_version})"
        )

    mutators = [
        TLSMutator("minimum_version", min_version),
        TLSMutator("maximum_version", max_version or ssl.TLSVersion.MAXIMUM_SUPPORTED),
    ]

    cipher_suites = options.cipher_suites or ""
    if (
        min_version == ssl.TLSVersion.TLSv1_3
        and max_version == ssl.TLSVersion.TLSv1_3
        and cipher_suites
    ):
        logger.warning("Cipher suites should not be set for TLS version 1.3. Ignoring ciphers")
        cipher_suites = ""

    if cipher_suites:
        names = [name.strip() for name in cipher_suites.split(",") if name.strip()]
        suites = resolve_cipher_suites(names)
        for name in names:
            if name in INSECURE_CIPHERS:
                logger.warning(f"Use of insecure cipher '{name}' detected.")
        mutators.append(TLSMutator("cipher_suites", suites))

    return mutators


def apply_tls_mutators(context: ssl.SSLContext, mutators: List[TLSMutator]) -> ssl.SSLContext:
    """Apply mutators to context in registration order."""
    for mutate in mutators:
        mutate(context)
    return context
