"""
Security profile policy (OCPP 1.6 security whitepaper profiles 0-2).

Profile 0 connects without credentials, profile 1 adds HTTP Basic auth with
the charge point id as user name and ``AuthorizationKey`` as password,
profile 2 additionally requires ``wss://`` and a trusted root certificate.
"""

import base64
import logging
import ssl
from typing import Any, Dict

from ocpp.v16.enums import CertificateStatus, CertificateUse

from .config import (
    BASIC_SECURITY_PROFILE,
    BASIC_SECURITY_WITH_TLS_PROFILE,
    NO_SECURITY_PROFILE,
    ROOT_CERTIFICATE,
)
from .context import RuntimeContext
from .store import Txn

SECURITY_PROFILE_KEY = "SecurityProfile"
AUTHORIZATION_KEY = "AuthorizationKey"

PROFILES = (NO_SECURITY_PROFILE, BASIC_SECURITY_PROFILE, BASIC_SECURITY_WITH_TLS_PROFILE)


class SecurityProfileError(Exception):
    pass


def parse_profile(value) -> int:
    try:
        profile = int(str(value).strip())
    except ValueError:
        raise SecurityProfileError(f"security profile must be an integer, got {value!r}") from None
    if profile not in PROFILES:
        raise SecurityProfileError(f"security profile: {profile} not supported")
    return profile


class SecurityProfileManager:
    def __init__(self, ctx: RuntimeContext):
        self.ctx = ctx

    def current(self) -> int:
        return self.ctx.store.get(SECURITY_PROFILE_KEY, NO_SECURITY_PROFILE)

    def validate(self, txn: Txn, value) -> bool:
        """Check a requested profile change against the stored state.

        Returns True when the change requires reconnecting. Raises
        SecurityProfileError on the first failed rule.
        """
        requested = parse_profile(value)
        current = txn.get(SECURITY_PROFILE_KEY, NO_SECURITY_PROFILE)
        if requested < current:
            raise SecurityProfileError("cannot set a lower security profile")
        if requested == NO_SECURITY_PROFILE:
            return False

        if requested == BASIC_SECURITY_WITH_TLS_PROFILE:
            if not self.ctx.settings.csms_url.startswith("wss://"):
                raise SecurityProfileError("central system url must be wss:// for this profile")
        if not txn.get(AUTHORIZATION_KEY, ""):
            raise SecurityProfileError("not all security profile keys are set: AuthorizationKey missing")
        if requested == BASIC_SECURITY_WITH_TLS_PROFILE and not self._has_trust_anchor(txn):
            raise SecurityProfileError("not all security profile keys are set: root certificate missing")
        return True

    def override(self, profile) -> None:
        """Administrative reset; the only way to lower the profile."""
        profile = parse_profile(profile)
        self.ctx.store.set(SECURITY_PROFILE_KEY, profile)
        logging.warning(f"Security profile overridden to {profile}")

    def connect_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``websockets.connect`` under the stored profile."""
        with self.ctx.store.view() as txn:
            profile = txn.get(SECURITY_PROFILE_KEY, NO_SECURITY_PROFILE)
            password = txn.get(AUTHORIZATION_KEY, "")
            root_certificate = txn.get(ROOT_CERTIFICATE, "")

        if profile == NO_SECURITY_PROFILE:
            return {}
        if profile not in PROFILES:
            raise SecurityProfileError(f"security profile: {profile} not supported")
        if profile == BASIC_SECURITY_WITH_TLS_PROFILE and not self.ctx.settings.csms_url.startswith("wss://"):
            raise SecurityProfileError("central system url must be wss:// for this profile")
        if not password:
            raise SecurityProfileError("password is not set for this profile")

        options: Dict[str, Any] = {"additional_headers": {"Authorization": self.basic_auth(password)}}
        if profile == BASIC_SECURITY_WITH_TLS_PROFILE:
            options["ssl"] = self._tls_context(root_certificate)
        return options

    def basic_auth(self, password: str) -> str:
        credentials = f"{self.ctx.settings.charge_point_id}:{password}"
        return "Basic " + base64.b64encode(credentials.encode()).decode()

    def install_certificate(self, certificate_type, certificate: str) -> CertificateStatus:
        if certificate_type == CertificateUse.manufacturer_root_certificate:
            logging.info("Charge point does not support ManufacturerRootCertificate installation")
            return CertificateStatus.rejected
        with self.ctx.store.update() as txn:
            max_length = txn.get("CertificateStoreMaxLength", 0)
            if txn.get(ROOT_CERTIFICATE, "") and max_length == 1:
                logging.warning("No more space to install more certificates")
                return CertificateStatus.rejected
            txn.set(ROOT_CERTIFICATE, certificate)
        logging.info("Root certificate installed")
        return CertificateStatus.accepted

    def _has_trust_anchor(self, txn: Txn) -> bool:
        return bool(txn.get(ROOT_CERTIFICATE, "") or self.ctx.settings.ca_cert)

    def _tls_context(self, root_certificate: str) -> ssl.SSLContext:
        try:
            if root_certificate:
                context = ssl.create_default_context(cadata=root_certificate)
            elif self.ctx.settings.ca_cert:
                context = ssl.create_default_context(cafile=self.ctx.settings.ca_cert)
            else:
                raise SecurityProfileError("not all security profile keys are set: root certificate missing")
        except (ssl.SSLError, OSError) as e:
            raise SecurityProfileError(f"failed to load root certificate: {e}") from e
        if self.ctx.settings.skip_hostname_check:
            # simulated environments use certificates issued for other names
            context.check_hostname = False
        return context
