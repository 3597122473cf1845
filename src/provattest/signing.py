from __future__ import annotations

import base64
import json
import logging
import os
from typing import Any, Dict, Optional, Protocol

from cryptography.hazmat.primitives.serialization import Encoding
from pydantic import BaseModel, ConfigDict, Field
from sigstore.dsse import Statement
from sigstore.models import Bundle, ClientTrustConfig
from sigstore.oidc import IdentityToken, Issuer
from sigstore.sign import SigningContext

logger = logging.getLogger(__name__)


class SignResult(BaseModel):
    signature: bytes
    keyid: str = ""
    certificate: Optional[str] = None
    model_config = ConfigDict(extra="forbid", frozen=True)


class LogEntryRef(BaseModel):
    log_index: int = Field(alias="logIndex")
    log_id: str = Field(alias="logId")
    integrated_time: Optional[int] = Field(None, alias="integratedTime")
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


class ContextProvider(Protocol):
    def get(self) -> Dict[str, Any]: ...


class Signer(Protocol):
    def sign(self, payload: bytes) -> SignResult: ...


class TransparencyLog(Protocol):
    def record(self, envelope: bytes) -> LogEntryRef: ...


def trust_config_for(*, staging: bool, offline: bool) -> ClientTrustConfig:
    return (
        ClientTrustConfig.staging(offline=offline)
        if staging
        else ClientTrustConfig.production(offline=offline)
    )


def load_identity_token(
    *,
    identity_token: Optional[str],
    identity_token_env: str,
    interactive_oidc: bool,
    staging: bool,
    offline: bool,
) -> IdentityToken:
    token = identity_token or os.getenv(identity_token_env)
    if token:
        return IdentityToken(token)

    if not interactive_oidc:
        raise ValueError(
            f"missing OIDC token: pass --identity-token, set {identity_token_env}, "
            "or use --interactive-oidc"
        )

    trust_config = trust_config_for(staging=staging, offline=offline)
    issuer = Issuer(trust_config.signing_config.get_oidc_url())
    return issuer.identity_token()


class SigstoreSession:
    """Keyless Sigstore signer that is also its own transparency log.

    Sigstore uploads the DSSE envelope to Rekor as part of signing, so
    ``record`` hands back the entry created by the preceding ``sign`` call.
    """

    def __init__(
        self,
        *,
        identity_token: Optional[str] = None,
        identity_token_env: str = "SIGSTORE_ID_TOKEN",
        interactive_oidc: bool = False,
        staging: bool = False,
        offline: bool = False,
    ) -> None:
        self.identity_token = identity_token
        self.identity_token_env = identity_token_env
        self.interactive_oidc = interactive_oidc
        self.staging = staging
        self.offline = offline
        self._bundle: Optional[Bundle] = None
        self._payload: Optional[bytes] = None
        self._signature: Optional[bytes] = None

    def sign(self, payload: bytes) -> SignResult:
        token = load_identity_token(
            identity_token=self.identity_token,
            identity_token_env=self.identity_token_env,
            interactive_oidc=self.interactive_oidc,
            staging=self.staging,
            offline=self.offline,
        )
        ctx = SigningContext.from_trust_config(
            trust_config_for(staging=self.staging, offline=self.offline)
        )
        logger.debug("requesting signing certificate for %s", token.identity)
        with ctx.signer(token, cache=True) as signer:
            bundle = signer.sign_dsse(Statement(payload))

        envelope = json.loads(bundle.to_json())["dsseEnvelope"]
        signature = envelope["signatures"][0]
        self._bundle = bundle
        self._payload = payload
        self._signature = base64.b64decode(signature["sig"])
        return SignResult(
            signature=self._signature,
            keyid=signature.get("keyid", ""),
            certificate=_certificate_pem(bundle),
        )

    def record(self, envelope: bytes) -> LogEntryRef:
        if self._bundle is None or self._payload is None or self._signature is None:
            raise ValueError("no signed envelope to record; sign() must run first")
        submitted = json.loads(envelope.decode("utf-8"))
        expected_payload = base64.b64encode(self._payload).decode("ascii")
        expected_sig = base64.b64encode(self._signature).decode("ascii")
        if submitted.get("payload") != expected_payload or [
            s.get("sig") for s in submitted.get("signatures", [])
        ] != [expected_sig]:
            raise ValueError("envelope was not signed by this session")
        return log_entry_ref(self._bundle)


def log_entry_ref(bundle: Bundle) -> LogEntryRef:
    if not bundle.log_entry:
        raise ValueError("signing bundle carries no transparency log entry")
    inner = bundle.log_entry._inner
    return LogEntryRef(
        log_index=int(inner.log_index),
        log_id=base64.b64encode(inner.log_id.key_id).decode("ascii"),
        integrated_time=int(inner.integrated_time) if inner.integrated_time else None,
    )


def _certificate_pem(bundle: Bundle) -> str:
    return bundle.signing_certificate.public_bytes(Encoding.PEM).decode("ascii")
